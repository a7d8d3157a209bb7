"""
Authentication gate for gateway routes.

Every protected route resolves the ``ploinky_sso`` session cookie through
``ensure_authenticated`` before doing any work. When SSO is not configured
the gate admits all traffic (legacy mode).

Usage in a router:

    @router.get("/something")
    async def handler(auth: AuthContext = Depends(require_authenticated)):
        ...
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode, urlsplit

from fastapi import Depends, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse

from .errors import AuthError
from .service import AuthService, short_id
from .session import Session, SessionUser


logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "ploinky_sso"
LOGIN_PATH = "/auth/login"


# =============================================================================
# Request Helpers
# =============================================================================

def _forwarded_proto(request: Request) -> Optional[str]:
    value = request.headers.get("x-forwarded-proto")
    if not value:
        return None
    return value.split(",")[0].strip().lower()


def is_secure_request(request: Request) -> bool:
    return request.url.scheme == "https" or _forwarded_proto(request) == "https"


def get_base_url(request: Request) -> str:
    """Public origin of the gateway as seen by the browser."""
    proto = _forwarded_proto(request) or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto}://{host.split(',')[0].strip()}"


def sanitize_return_to(value: Optional[str]) -> str:
    """
    Restrict a post-login target to a local absolute path.

    Anything that could leave the gateway origin (``//host``, ``http://``,
    backslashes) becomes "/".
    """
    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return "/"
    parts = urlsplit(value)
    if parts.scheme or parts.netloc:
        return "/"
    return value


def build_login_url(request: Request) -> str:
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    return f"{LOGIN_PATH}?{urlencode({'returnTo': target})}"


def wants_json(request: Request) -> bool:
    return "application/json" in request.headers.get("accept", "").lower()


# =============================================================================
# Cookies
# =============================================================================

def set_session_cookie(response: Response, request: Request, session_id: str, max_age: int) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=session_id,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="Strict",
        secure=is_secure_request(request),
    )


def clear_session_cookie(response: Response, request: Request) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value="",
        max_age=0,
        path="/",
        httponly=True,
        samesite="Strict",
        secure=is_secure_request(request),
    )


# =============================================================================
# Gate
# =============================================================================

@dataclass
class AuthContext:
    """Result of the gate. ``sso_enabled`` is False in legacy mode."""

    sso_enabled: bool
    user: Optional[SessionUser] = None
    session: Optional[Session] = None
    session_id: Optional[str] = None


class NotAuthenticated(Exception):
    """Raised by the gate; rendered by respond_unauthenticated."""

    def __init__(self, login_url: str, reason: str):
        self.login_url = login_url
        self.reason = reason
        super().__init__(reason)


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


async def ensure_authenticated(request: Request, auth_service: AuthService) -> AuthContext:
    """
    Resolve the session cookie into an identity.

    A missing or expired session gets exactly one refresh attempt.

    Returns:
        AuthContext, also attached to ``request.state``

    Raises:
        NotAuthenticated: If the request carries no usable session
    """
    if not auth_service.is_configured():
        return AuthContext(sso_enabled=False)

    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    if not session_id:
        logger.info(
            f"No session cookie on {request.method} {request.url.path}",
            extra={"event": "auth_missing_cookie"},
        )
        raise NotAuthenticated(build_login_url(request), "auth_missing_cookie")

    session = auth_service.get_session(session_id)
    if session is None:
        try:
            await auth_service.refresh_session(session_id)
        except AuthError as e:
            logger.info(
                f"Session refresh failed: {e.message}",
                extra={"event": "auth_refresh_failed", "session": short_id(session_id), "error": e.kind.value},
            )
        session = auth_service.get_session(session_id)

    if session is None:
        logger.info("Session invalid or expired", extra={"event": "auth_session_invalid", "session": short_id(session_id)})
        raise NotAuthenticated(build_login_url(request), "auth_session_invalid")

    request.state.user = session.user
    request.state.session = session
    request.state.session_id = session_id
    return AuthContext(sso_enabled=True, user=session.user, session=session, session_id=session_id)


async def require_authenticated(
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthContext:
    """FastAPI dependency wrapping ensure_authenticated; re-issues the rolling cookie."""
    context = await ensure_authenticated(request, auth_service)
    if context.session_id:
        set_session_cookie(response, request, context.session_id, auth_service.session_cookie_max_age)
    return context


def respond_unauthenticated(request: Request, exc: NotAuthenticated) -> Response:
    """
    Reject a request the gate did not admit.

    API callers (JSON Accept header or non-GET) get a 401 body with the login
    URL; browsers navigating with GET are redirected to the login route.
    """
    if wants_json(request) or request.method != "GET":
        response: Response = JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"ok": False, "error": "not_authenticated", "login": exc.login_url},
        )
    else:
        response = RedirectResponse(exc.login_url, status_code=status.HTTP_302_FOUND)
    clear_session_cookie(response, request)
    return response


__all__ = [
    "AuthContext",
    "NotAuthenticated",
    "SESSION_COOKIE_NAME",
    "build_login_url",
    "clear_session_cookie",
    "ensure_authenticated",
    "get_auth_service",
    "get_base_url",
    "is_secure_request",
    "require_authenticated",
    "respond_unauthenticated",
    "sanitize_return_to",
    "set_session_cookie",
]
