"""
SSO Auth Service
================

Orchestrates the Authorization Code + PKCE flow against the Keycloak realm:

    begin_login      -> PKCE pair, state, nonce, pending authorization, auth URL
    handle_callback  -> consume state, exchange code, verify ID token, create session
    refresh_session  -> refresh grant, update the session in place
    logout           -> drop the session, build the provider end-session URL

One AuthService instance owns its session store, discovery cache, JWKS cache
and HTTP client. The app factory creates one and exposes it as
``app.state.auth_service``; tests build their own.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from ..config import AuthConfig, Settings, get_settings, load_auth_config
from .errors import (
    InvalidSignature,
    InvalidState,
    MissingIdToken,
    RedirectUriMissing,
    RefreshTokenUnavailable,
    SessionNotFound,
    SsoNotConfigured,
    UnresolvedSigningKey,
)
from .jwks import JwksCache
from .jwt_utils import decode_jwt, validate_claims, verify_signature
from .oidc_client import OIDCClient, validate_metadata
from .pkce import create_pkce_pair
from .session import Session, SessionStore, SessionTokens, SessionUser
from .utils import random_id


logger = logging.getLogger(__name__)

NONCE_BYTES = 16


# =============================================================================
# Results
# =============================================================================

@dataclass
class LoginRedirect:
    redirect_url: str
    state: str


@dataclass
class TokenInfo:
    """Projection of a session's access token handed to the browser."""

    access_token: Optional[str]
    expires_at: float
    scope: Optional[str] = None
    token_type: Optional[str] = None


@dataclass
class CallbackResult:
    session_id: str
    user: SessionUser
    redirect_to: str
    post_logout_redirect_uri: Optional[str]
    tokens: TokenInfo


@dataclass
class LogoutResult:
    redirect: Optional[str]


def short_id(session_id: Optional[str]) -> str:
    """Session id prefix safe to put in logs."""
    return (session_id or "")[:8]


def map_user(claims: Dict[str, Any]) -> SessionUser:
    """Build the session user from verified ID token claims."""
    realm_access = claims.get("realm_access")
    roles = realm_access.get("roles") if isinstance(realm_access, dict) else None
    return SessionUser(
        id=claims.get("sub"),
        username=claims.get("preferred_username") or claims.get("username") or claims.get("email") or "",
        name=claims.get("name") or claims.get("preferred_username") or claims.get("email") or "",
        email=claims.get("email") or None,
        roles=list(roles) if isinstance(roles, list) else [],
        raw=claims,
    )


def _lifetime(value: Any) -> Optional[float]:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


# =============================================================================
# Service
# =============================================================================

class AuthService:
    """
    SSO service for the gateway.

    Args:
        config_loader: Callable returning the current AuthConfig, or None when SSO is off
        http_client: Shared client for provider calls; one is created (and owned) when omitted
        session_store: Pending authorization and session storage
        oidc_client: Discovery/token/logout client
        jwks_cache: Signing key cache
        settings: App settings for TTLs and timeouts
        clock: Time source returning POSIX seconds
    """

    def __init__(
        self,
        config_loader: Callable[[], Optional[AuthConfig]] = load_auth_config,
        http_client: Optional[httpx.AsyncClient] = None,
        session_store: Optional[SessionStore] = None,
        oidc_client: Optional[OIDCClient] = None,
        jwks_cache: Optional[JwksCache] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = settings or get_settings()
        self._config_loader = config_loader
        self._clock = clock

        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

        self.sessions = session_store or SessionStore(
            session_ttl_seconds=settings.SESSION_TTL_SECONDS,
            pending_ttl_seconds=settings.PENDING_AUTH_TTL_SECONDS,
            clock=clock,
        )
        self.oidc = oidc_client or OIDCClient(
            self._http_client,
            metadata_ttl_seconds=settings.METADATA_CACHE_SECONDS,
            clock=clock,
        )
        self.jwks = jwks_cache or JwksCache(
            self._http_client,
            ttl_seconds=settings.JWKS_CACHE_SECONDS,
            clock=clock,
        )

        self._config: Optional[AuthConfig] = None
        self._refreshing: Dict[str, "asyncio.Task[TokenInfo]"] = {}

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def reload_config(self) -> Optional[AuthConfig]:
        """Re-read the provider configuration and drop the discovery and JWKS caches."""
        self._config = self._config_loader()
        self.oidc.clear()
        self.jwks.clear()
        logger.info(
            "SSO configuration loaded" if self._config else "SSO is not configured",
            extra={"event": "auth_config_reloaded"},
        )
        return self._config

    def is_configured(self) -> bool:
        if self._config is None:
            self._config = self._config_loader()
        return self._config is not None

    def _require_config(self) -> AuthConfig:
        if self._config is None:
            self.reload_config()
        if self._config is None:
            raise SsoNotConfigured()
        return self._config

    async def _get_metadata(self, config: AuthConfig) -> Dict[str, Any]:
        return validate_metadata(await self.oidc.get_metadata(config))

    def _resolve_redirect_uri(self, config: AuthConfig, base_url: Optional[str]) -> str:
        if config.redirect_uri:
            return config.redirect_uri
        if not base_url:
            raise RedirectUriMissing()
        return f"{base_url.rstrip('/')}/auth/callback"

    @staticmethod
    def _resolve_post_logout_uri(
        config: AuthConfig,
        base_url: Optional[str],
        return_to: Optional[str] = None,
    ) -> Optional[str]:
        if config.post_logout_redirect_uri:
            return config.post_logout_redirect_uri
        if not base_url:
            return None
        return f"{base_url.rstrip('/')}{return_to or '/'}"

    @property
    def session_cookie_max_age(self) -> int:
        return int(self.sessions.session_ttl_seconds)

    # -------------------------------------------------------------------------
    # Login
    # -------------------------------------------------------------------------

    async def begin_login(
        self,
        base_url: Optional[str] = None,
        return_to: str = "/",
        prompt: Optional[str] = None,
    ) -> LoginRedirect:
        """
        Start a login and return the provider authorization URL.

        Args:
            base_url: Public origin of the gateway, used to derive the callback URL
            return_to: Local path to land on after the callback
            prompt: Optional OIDC ``prompt`` value (e.g. "login")

        Raises:
            SsoNotConfigured: If SSO is disabled
            RedirectUriMissing: If no redirect URI is configured and base_url is missing
            InvalidProviderMetadata: If discovery lacks a required endpoint
        """
        config = self._require_config()
        metadata = await self._get_metadata(config)
        pkce = create_pkce_pair()
        nonce = random_id(NONCE_BYTES)
        redirect_uri = self._resolve_redirect_uri(config, base_url)
        state = self.sessions.create_pending_auth(
            code_verifier=pkce.verifier,
            redirect_uri=redirect_uri,
            return_to=return_to,
            nonce=nonce,
        )
        auth_url = self.oidc.build_auth_url(
            metadata,
            config,
            state=state,
            code_challenge=pkce.challenge,
            redirect_uri=redirect_uri,
            scope=config.scope,
            nonce=nonce,
            prompt=prompt,
        )
        logger.info("Login started", extra={"event": "auth_login_started", "return_to": return_to})
        return LoginRedirect(redirect_url=auth_url, state=state)

    async def handle_callback(
        self,
        code: str,
        state: str,
        base_url: Optional[str] = None,
    ) -> CallbackResult:
        """
        Complete a login from the provider redirect.

        The pending authorization is consumed before anything else, so a
        replayed or forged state fails without contacting the provider.

        Raises:
            InvalidState: Unknown, expired or already used state
            MissingIdToken: Token response without id_token
            UnresolvedSigningKey: Token kid not in the provider JWKS
            InvalidSignature: Signature does not verify
            ProtocolError: Any claim validation failure
            UpstreamError: Provider request failures
        """
        config = self._require_config()
        pending = self.sessions.consume_pending_auth(state)
        if pending is None:
            raise InvalidState()

        metadata = await self._get_metadata(config)
        tokens = await self.oidc.exchange_code_for_tokens(
            metadata,
            config,
            code=code,
            redirect_uri=pending.redirect_uri,
            code_verifier=pending.code_verifier,
        )
        id_token = tokens.get("id_token")
        if not id_token:
            raise MissingIdToken()

        decoded = decode_jwt(id_token)
        jwk = await self.jwks.get_key(metadata["jwks_uri"], decoded.header.get("kid"))
        if not jwk:
            raise UnresolvedSigningKey()
        if not verify_signature(decoded, jwk):
            raise InvalidSignature()

        now = self._clock()
        validate_claims(
            decoded.payload,
            issuer=metadata.get("issuer"),
            client_id=config.client_id,
            nonce=pending.nonce,
            now=now,
        )

        expires_in = _lifetime(tokens.get("expires_in"))
        refresh_expires_in = _lifetime(tokens.get("refresh_expires_in"))
        expires_at = now + (expires_in or self.sessions.session_ttl_seconds)
        refresh_expires_at = now + refresh_expires_in if refresh_expires_in else None

        user = map_user(decoded.payload)
        session_id, _ = self.sessions.create_session(
            user=user,
            tokens=SessionTokens(
                access_token=tokens.get("access_token"),
                refresh_token=tokens.get("refresh_token"),
                id_token=id_token,
                scope=tokens.get("scope"),
                token_type=tokens.get("token_type"),
            ),
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
        )
        logger.info(
            f"Session created for {user.username or user.id}",
            extra={"event": "auth_session_created", "session": short_id(session_id)},
        )
        return CallbackResult(
            session_id=session_id,
            user=user,
            redirect_to=pending.return_to or "/",
            post_logout_redirect_uri=self._resolve_post_logout_uri(config, base_url),
            tokens=TokenInfo(
                access_token=tokens.get("access_token"),
                expires_at=expires_at,
                scope=tokens.get("scope"),
                token_type=tokens.get("token_type"),
            ),
        )

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def get_session(self, session_id: Optional[str]) -> Optional[Session]:
        return self.sessions.get_session(session_id)

    def revoke_session(self, session_id: Optional[str]) -> None:
        if self.sessions.delete_session(session_id) is not None:
            logger.info("Session revoked", extra={"event": "auth_session_revoked", "session": short_id(session_id)})

    async def refresh_session(self, session_id: Optional[str]) -> TokenInfo:
        """
        Run the refresh grant for a session and update it in place.

        Concurrent calls for the same session share one in-flight refresh.

        Raises:
            SessionNotFound: No live or refreshable session for this id
            RefreshTokenUnavailable: The session holds no refresh token
            TokenExchangeFailed: The provider rejected the refresh token
        """
        if not session_id:
            raise SessionNotFound()
        task = self._refreshing.get(session_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(session_id))
            self._refreshing[session_id] = task

            def _forget(done: "asyncio.Task[TokenInfo]", key: str = session_id) -> None:
                if self._refreshing.get(key) is done:
                    del self._refreshing[key]

            task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def _refresh(self, session_id: str) -> TokenInfo:
        config = self._require_config()
        session = self.sessions.get_refreshable_session(session_id)
        if session is None:
            raise SessionNotFound()
        refresh_token = session.tokens.refresh_token
        if not refresh_token:
            raise RefreshTokenUnavailable()

        metadata = await self._get_metadata(config)
        tokens = await self.oidc.refresh_tokens(metadata, config, refresh_token)

        now = self._clock()
        expires_in = _lifetime(tokens.get("expires_in"))
        refresh_expires_in = _lifetime(tokens.get("refresh_expires_in"))
        updated = self.sessions.update_session(
            session_id,
            tokens=SessionTokens(
                access_token=tokens.get("access_token"),
                refresh_token=tokens.get("refresh_token"),
                id_token=tokens.get("id_token"),
                scope=tokens.get("scope"),
                token_type=tokens.get("token_type"),
            ),
            expires_at=now + (expires_in or self.sessions.session_ttl_seconds),
            refresh_expires_at=now + refresh_expires_in if refresh_expires_in else None,
        )
        # Logged out while the grant was in flight.
        if updated is None:
            raise SessionNotFound()

        logger.info("Session refreshed", extra={"event": "auth_session_refreshed", "session": short_id(session_id)})
        return TokenInfo(
            access_token=updated.tokens.access_token,
            expires_at=updated.expires_at,
            scope=updated.tokens.scope,
            token_type=updated.tokens.token_type,
        )

    # -------------------------------------------------------------------------
    # Logout
    # -------------------------------------------------------------------------

    async def logout(
        self,
        session_id: Optional[str],
        base_url: Optional[str] = None,
        return_to: Optional[str] = None,
    ) -> LogoutResult:
        """
        End a session and compute where the browser should go next.

        Idempotent: without a session the local post-logout target is returned.
        """
        config = self._require_config()
        session = self.sessions.delete_session(session_id)
        post_logout_uri = self._resolve_post_logout_uri(config, base_url, return_to)
        if session is None:
            return LogoutResult(redirect=post_logout_uri)

        logger.info("Session logged out", extra={"event": "auth_logout", "session": short_id(session_id)})
        metadata = await self._get_metadata(config)
        logout_url = self.oidc.build_logout_url(
            metadata,
            config,
            id_token_hint=session.tokens.id_token,
            post_logout_redirect_uri=post_logout_uri,
        )
        return LogoutResult(redirect=logout_url or post_logout_uri)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def aclose(self) -> None:
        for task in list(self._refreshing.values()):
            task.cancel()
        self._refreshing.clear()
        if self._owns_http_client:
            await self._http_client.aclose()


__all__ = [
    "AuthService",
    "CallbackResult",
    "LoginRedirect",
    "LogoutResult",
    "TokenInfo",
    "map_user",
]
