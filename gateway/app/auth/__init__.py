"""
Authentication Package

SSO for the Ploinky gateway against a Keycloak realm using OpenID Connect
(Authorization Code + PKCE), with ID tokens verified locally against the
realm's JWKS.

Key responsibilities:
- Login initiation, callback handling, logout and token endpoints
- ID token decoding, RS256 signature and claim validation
- In-memory pending authorizations and sessions with TTLs
- The per-request authentication gate used by every protected route

Modules:
- routes: Public authentication endpoints (/auth/login, /auth/callback, ...)
- gate: Session cookie handling and ensure_authenticated
- service: AuthService orchestrating the flow
- oidc_client, jwks, jwt_utils, pkce, utils: protocol building blocks
- session: Pending authorization and session storage
- errors: Tagged error taxonomy

The authentication flow:
1. Browser hits /auth/login and is redirected to Keycloak
2. User authenticates with Keycloak
3. Gateway receives the code via /auth/callback and exchanges it for tokens
4. Gateway verifies the ID token, creates a session, sets the ploinky_sso cookie
5. Subsequent requests are admitted by the gate using that cookie
"""

from .gate import AuthContext, NotAuthenticated, ensure_authenticated, require_authenticated
from .routes import auth_router
from .service import AuthService

__all__ = [
    "AuthContext",
    "AuthService",
    "NotAuthenticated",
    "auth_router",
    "ensure_authenticated",
    "require_authenticated",
]
