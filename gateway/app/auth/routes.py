"""
Authentication routes for the Keycloak SSO flow.

    GET       /auth/login     -> redirect to the provider authorization endpoint
    GET       /auth/callback  -> finish the login, set the session cookie
    GET|POST  /auth/logout    -> drop the session, clear the cookie
    GET|POST  /auth/token     -> current (or refreshed) access token for the browser

Service errors are caught here and rendered as ``{ok: false, error, detail}``.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response

from ..models import ErrorResponse, TokenResponse, TokenSnapshot, UserProfile
from .errors import AuthError, SsoNotConfigured
from .gate import (
    SESSION_COOKIE_NAME,
    clear_session_cookie,
    get_auth_service,
    get_base_url,
    sanitize_return_to,
    set_session_cookie,
)
from .service import AuthService, short_id


logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


def _error_response(exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _read_json_body(request: Request) -> Dict[str, Any]:
    """Best-effort JSON body for POST routes; anything unparsable counts as empty."""
    if request.method != "POST":
        return {}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get("/login")
async def login(
    request: Request,
    return_to: Optional[str] = Query(None, alias="returnTo", description="Local path to return to after login"),
    prompt: Optional[str] = Query(None, description="OIDC prompt value, e.g. 'login'"),
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Start the Authorization Code + PKCE flow.

    Returns:
        302 to the provider, or 503 when SSO is not configured
    """
    if not auth_service.is_configured():
        return _error_response(SsoNotConfigured())

    try:
        result = await auth_service.begin_login(
            base_url=get_base_url(request),
            return_to=sanitize_return_to(return_to),
            prompt=prompt,
        )
    except AuthError as e:
        logger.error(
            f"Login failed: {e.message}",
            extra={"event": "auth_login_failed", "error": e.kind.value},
        )
        return _error_response(e)

    return RedirectResponse(url=result.redirect_url, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get("/callback")
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, description="State issued by /auth/login"),
    error: Optional[str] = Query(None, description="Error code if the provider refused the login"),
    error_description: Optional[str] = Query(None, description="Provider error description"),
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Handle the provider redirect.

    On success the session cookie is set and the browser is sent to the
    ``returnTo`` path captured at login.
    """
    if not code or not state:
        content = ErrorResponse(error="missing_parameters", detail=(error_description or error) if error else None)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content.model_dump(exclude_none=True))

    try:
        result = await auth_service.handle_callback(code=code, state=state, base_url=get_base_url(request))
    except AuthError as e:
        logger.warning(
            f"Callback failed: {e.message}",
            extra={"event": "auth_callback_failed", "error": e.kind.value},
        )
        return _error_response(e)

    response = RedirectResponse(url=result.redirect_to, status_code=status.HTTP_302_FOUND)
    set_session_cookie(response, request, result.session_id, auth_service.session_cookie_max_age)
    return response


# =============================================================================
# Logout Endpoint
# =============================================================================

@auth_router.api_route("/logout", methods=["GET", "POST"])
async def logout(
    request: Request,
    return_to: Optional[str] = Query(None, alias="returnTo", description="Local path to return to after logout"),
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    End the session. The cookie is always cleared.

    GET, or POST with ``returnTo``, redirects (through the provider end-session
    endpoint when there was a session). POST without ``returnTo`` answers
    ``{ok: true}``.
    """
    if return_to is None:
        body_value = (await _read_json_body(request)).get("returnTo")
        return_to = body_value if isinstance(body_value, str) else None
    local_target = sanitize_return_to(return_to) if return_to else None
    session_id = request.cookies.get(SESSION_COOKIE_NAME)

    redirect: Optional[str] = None
    if auth_service.is_configured():
        try:
            result = await auth_service.logout(session_id, base_url=get_base_url(request), return_to=local_target)
            redirect = result.redirect
        except AuthError as e:
            logger.warning(
                f"Logout failed: {e.message}",
                extra={"event": "auth_logout_failed", "session": short_id(session_id), "error": e.kind.value},
            )
    else:
        auth_service.revoke_session(session_id)

    if request.method == "POST" and not return_to:
        response: Response = JSONResponse(content={"ok": True})
    else:
        response = RedirectResponse(url=redirect or local_target or "/", status_code=status.HTTP_302_FOUND)
    clear_session_cookie(response, request)
    return response


# =============================================================================
# Token Endpoint
# =============================================================================

@auth_router.api_route("/token", methods=["GET", "POST"], response_model=TokenResponse)
async def token(
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Return the session's access token and user.

    POST ``{"refresh": true}`` forces a refresh grant first. The rolling
    session cookie is re-issued on every success.
    """
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    if not session_id:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=ErrorResponse(error="not_authenticated").model_dump(exclude_none=True),
        )

    force_refresh = (await _read_json_body(request)).get("refresh") is True
    try:
        if force_refresh:
            await auth_service.refresh_session(session_id)
        session = auth_service.get_session(session_id)
    except AuthError as e:
        logger.info(
            f"Token refresh failed: {e.message}",
            extra={"event": "auth_refresh_failed", "session": short_id(session_id), "error": e.kind.value},
        )
        session = None

    if session is None:
        response: Response = JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=ErrorResponse(error="not_authenticated").model_dump(exclude_none=True),
        )
        clear_session_cookie(response, request)
        return response

    body = TokenResponse(
        token=TokenSnapshot(
            access_token=session.tokens.access_token,
            expires_at=int(session.expires_at * 1000),
            scope=session.tokens.scope,
            token_type=session.tokens.token_type,
        ),
        user=UserProfile(**session.user.to_public_dict()),
    )
    response = JSONResponse(content=body.to_wire())
    set_session_cookie(response, request, session_id, auth_service.session_cookie_max_age)
    return response


__all__ = ["auth_router"]
