"""
Authentication Errors
=====================

Closed set of tagged error types raised by the SSO subsystem.

Every error carries an ``AuthErrorKind`` tag, an HTTP status code suggested
for the route boundary, and a human-readable message. Callers branch on the
class (or on ``kind``), never on the message text.

Families:
    - ConfigurationError: SSO is not configured (disables the gate)
    - ProtocolError: state/token verification failures (fatal to the attempt)
    - UpstreamError: non-2xx or unreachable identity provider endpoints
    - SessionError: session or refresh token missing (forces re-login)
"""

from enum import Enum
from typing import Any, Dict, Optional

from ..models import ErrorResponse


UPSTREAM_BODY_LIMIT = 500


class AuthErrorKind(str, Enum):
    """Stable error tags used in JSON responses and logs."""

    SSO_DISABLED = "sso_disabled"
    REDIRECT_URI_MISSING = "redirect_uri_missing"

    INVALID_STATE = "invalid_state"
    MALFORMED_TOKEN = "malformed_token"
    MALFORMED_KEY = "malformed_key"
    MISSING_ID_TOKEN = "missing_id_token"
    UNRESOLVED_SIGNING_KEY = "unresolved_signing_key"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_ISSUER = "invalid_issuer"
    AUDIENCE_MISMATCH = "audience_mismatch"
    TOKEN_EXPIRED = "token_expired"
    NOT_YET_VALID = "not_yet_valid"
    NONCE_MISMATCH = "nonce_mismatch"

    FETCH_FAILED = "fetch_failed"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    INVALID_METADATA = "invalid_metadata"
    PROVIDER_UNAVAILABLE = "provider_unavailable"

    SESSION_NOT_FOUND = "session_not_found"
    REFRESH_TOKEN_UNAVAILABLE = "refresh_token_unavailable"


class AuthError(Exception):
    """Base exception for the SSO subsystem"""

    kind: AuthErrorKind
    status_code: int = 500
    default_message: str = "Authentication error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Render as the structured JSON body used by the routes."""
        return ErrorResponse(error=self.kind.value, detail=self.message).model_dump()


# =============================================================================
# Configuration
# =============================================================================

class ConfigurationError(AuthError):
    status_code = 503


class SsoNotConfigured(ConfigurationError):
    kind = AuthErrorKind.SSO_DISABLED
    default_message = "SSO is not configured"


class RedirectUriMissing(ConfigurationError):
    kind = AuthErrorKind.REDIRECT_URI_MISSING
    default_message = "Redirect URI missing"


# =============================================================================
# Protocol
# =============================================================================

class ProtocolError(AuthError):
    status_code = 401


class InvalidState(ProtocolError):
    kind = AuthErrorKind.INVALID_STATE
    status_code = 400
    default_message = "Invalid or expired authorization state"


class MalformedToken(ProtocolError):
    kind = AuthErrorKind.MALFORMED_TOKEN
    default_message = "Malformed JWT"


class MalformedKey(ProtocolError):
    kind = AuthErrorKind.MALFORMED_KEY
    default_message = "Malformed JWK"


class MissingIdToken(ProtocolError):
    kind = AuthErrorKind.MISSING_ID_TOKEN
    default_message = "Token response missing id_token"


class UnresolvedSigningKey(ProtocolError):
    kind = AuthErrorKind.UNRESOLVED_SIGNING_KEY
    default_message = "Unable to resolve signing key"


class InvalidSignature(ProtocolError):
    kind = AuthErrorKind.INVALID_SIGNATURE
    default_message = "Invalid token signature"


class InvalidIssuer(ProtocolError):
    kind = AuthErrorKind.INVALID_ISSUER
    default_message = "Invalid token issuer"


class AudienceMismatch(ProtocolError):
    kind = AuthErrorKind.AUDIENCE_MISMATCH
    default_message = "Audience mismatch"


class TokenExpired(ProtocolError):
    kind = AuthErrorKind.TOKEN_EXPIRED
    default_message = "Token expired"


class NotYetValid(ProtocolError):
    kind = AuthErrorKind.NOT_YET_VALID
    default_message = "Token not yet valid"


class NonceMismatch(ProtocolError):
    kind = AuthErrorKind.NONCE_MISMATCH
    default_message = "Nonce mismatch"


# =============================================================================
# Upstream
# =============================================================================

class UpstreamError(AuthError):
    """
    Failure talking to the identity provider.

    Attributes:
        status: Upstream HTTP status, or None when the provider was unreachable
        body: Upstream response body truncated to UPSTREAM_BODY_LIMIT characters
    """

    status_code = 500

    def __init__(
        self,
        message: Optional[str] = None,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ):
        self.status = status
        self.body = (body or "")[:UPSTREAM_BODY_LIMIT]
        if message is None:
            message = self.default_message
            if status is not None:
                message = f"{message} ({status})"
            if self.body:
                message = f"{message}: {self.body}"
        super().__init__(message)


class FetchError(UpstreamError):
    kind = AuthErrorKind.FETCH_FAILED
    default_message = "Identity provider request failed"


class TokenExchangeFailed(UpstreamError):
    kind = AuthErrorKind.TOKEN_EXCHANGE_FAILED
    default_message = "Token request failed"


class InvalidProviderMetadata(UpstreamError):
    kind = AuthErrorKind.INVALID_METADATA
    default_message = "OpenID configuration is incomplete"


class ProviderUnavailable(UpstreamError):
    kind = AuthErrorKind.PROVIDER_UNAVAILABLE
    default_message = "Identity provider unreachable"


# =============================================================================
# Session
# =============================================================================

class SessionError(AuthError):
    status_code = 401


class SessionNotFound(SessionError):
    kind = AuthErrorKind.SESSION_NOT_FOUND
    default_message = "Session not found"


class RefreshTokenUnavailable(SessionError):
    kind = AuthErrorKind.REFRESH_TOKEN_UNAVAILABLE
    default_message = "Refresh token not available"


__all__ = [
    "AuthErrorKind",
    "AuthError",
    "ConfigurationError",
    "SsoNotConfigured",
    "RedirectUriMissing",
    "ProtocolError",
    "InvalidState",
    "MalformedToken",
    "MalformedKey",
    "MissingIdToken",
    "UnresolvedSigningKey",
    "InvalidSignature",
    "InvalidIssuer",
    "AudienceMismatch",
    "TokenExpired",
    "NotYetValid",
    "NonceMismatch",
    "UpstreamError",
    "FetchError",
    "TokenExchangeFailed",
    "InvalidProviderMetadata",
    "ProviderUnavailable",
    "SessionError",
    "SessionNotFound",
    "RefreshTokenUnavailable",
]
