"""
OpenID Connect client for the Keycloak realm.

Handles:
- Discovery document fetching and caching per (base URL, realm)
- Authorization URL construction (authorization code + PKCE S256)
- Token exchange and refresh grants (form-encoded POSTs)
- RP-initiated logout URL construction
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import httpx

from ..config import AuthConfig
from .errors import (
    FetchError,
    InvalidProviderMetadata,
    ProviderUnavailable,
    TokenExchangeFailed,
)


logger = logging.getLogger(__name__)

DEFAULT_METADATA_TTL_SECONDS = 300
REQUIRED_METADATA_FIELDS = ("authorization_endpoint", "token_endpoint", "jwks_uri", "issuer")


@dataclass
class MetadataEntry:
    fetched_at: float
    data: Dict[str, Any]


# =============================================================================
# URL Helpers
# =============================================================================

def build_realm_base(base_url: str, realm: str) -> str:
    return f"{base_url.rstrip('/')}/realms/{quote(realm, safe='')}"


def build_discovery_url(base_url: str, realm: str) -> str:
    return f"{build_realm_base(base_url, realm)}/.well-known/openid-configuration"


def with_query_params(url: str, params: Dict[str, Optional[str]]) -> str:
    """
    Set query parameters on a URL, replacing existing values of the same name.

    Parameters whose value is None or empty are skipped.
    """
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend((k, v) for k, v in params.items() if v)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def to_form_body(params: Dict[str, Optional[str]]) -> Dict[str, str]:
    """Drop None/empty values from a token request body."""
    return {k: str(v) for k, v in params.items() if v is not None and v != ""}


def validate_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """
    Ensure a discovery document has the endpoints the login flow needs.

    Raises:
        InvalidProviderMetadata: If a required field is missing
    """
    missing = [name for name in REQUIRED_METADATA_FIELDS if not metadata.get(name)]
    if missing:
        raise InvalidProviderMetadata(
            f"OpenID configuration missing: {', '.join(missing)}"
        )
    return metadata


# =============================================================================
# Client
# =============================================================================

class OIDCClient:
    """
    Talks to the provider's discovery, token and logout endpoints.

    The discovery document is cached for ``metadata_ttl_seconds`` per
    ``base_url|realm`` key.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        metadata_ttl_seconds: float = DEFAULT_METADATA_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._http_client = http_client
        self._clock = clock
        self._metadata: Dict[str, MetadataEntry] = {}
        self.metadata_ttl_seconds = metadata_ttl_seconds

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def get_metadata(self, config: AuthConfig) -> Dict[str, Any]:
        """
        Return the realm's OpenID configuration, fetching it when stale.

        Raises:
            FetchError: On a non-2xx or non-JSON discovery response
            ProviderUnavailable: If the provider is unreachable
        """
        key = f"{config.base_url}|{config.realm}"
        cached = self._metadata.get(key)
        if cached and self._clock() - cached.fetched_at < self.metadata_ttl_seconds:
            return cached.data

        url = build_discovery_url(config.base_url, config.realm)
        logger.info(f"Fetching OpenID configuration from {url}")
        try:
            response = await self._http_client.get(url)
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Failed to fetch OpenID configuration: {e}") from e

        if not response.is_success:
            raise FetchError(
                f"Failed to fetch OpenID configuration ({response.status_code})",
                status=response.status_code,
                body=response.text,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise FetchError("OpenID configuration is not JSON", status=response.status_code) from e
        if not isinstance(data, dict):
            raise FetchError("OpenID configuration is not a JSON object", status=response.status_code)

        self._metadata[key] = MetadataEntry(fetched_at=self._clock(), data=data)
        return data

    def clear(self) -> None:
        self._metadata.clear()

    # -------------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------------

    @staticmethod
    def build_auth_url(
        metadata: Dict[str, Any],
        config: AuthConfig,
        state: str,
        code_challenge: str,
        redirect_uri: str,
        scope: Optional[str] = None,
        nonce: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> str:
        """
        Build the authorization endpoint URL for the code + PKCE flow.

        Returns:
            Absolute URL to redirect the browser to
        """
        return with_query_params(
            metadata["authorization_endpoint"],
            {
                "response_type": "code",
                "client_id": config.client_id,
                "scope": scope or config.scope or "openid",
                "state": state,
                "redirect_uri": redirect_uri,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
                "nonce": nonce,
                "prompt": prompt,
            },
        )

    # -------------------------------------------------------------------------
    # Token Endpoint
    # -------------------------------------------------------------------------

    async def _post_token_request(self, token_endpoint: str, body: Dict[str, str], grant: str) -> Dict[str, Any]:
        try:
            response = await self._http_client.post(
                token_endpoint,
                data=body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Token request failed: {e}") from e

        if not response.is_success:
            logger.warning(
                f"Token endpoint rejected {grant} grant ({response.status_code})",
                extra={"event": "auth_token_request_failed", "status": response.status_code},
            )
            raise TokenExchangeFailed(status=response.status_code, body=response.text)

        if not response.text:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise TokenExchangeFailed("Token response is not JSON", status=response.status_code) from e
        if not isinstance(data, dict):
            raise TokenExchangeFailed("Token response is not a JSON object", status=response.status_code)
        return data

    async def exchange_code_for_tokens(
        self,
        metadata: Dict[str, Any],
        config: AuthConfig,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> Dict[str, Any]:
        """
        Exchange an authorization code for tokens.

        Raises:
            TokenExchangeFailed: On a non-2xx token response
        """
        body = to_form_body({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": config.client_id,
            "code_verifier": code_verifier,
            "client_secret": config.client_secret,
        })
        return await self._post_token_request(metadata["token_endpoint"], body, "authorization_code")

    async def refresh_tokens(
        self,
        metadata: Dict[str, Any],
        config: AuthConfig,
        refresh_token: str,
    ) -> Dict[str, Any]:
        """
        Run the refresh_token grant.

        Raises:
            TokenExchangeFailed: On a non-2xx token response
        """
        body = to_form_body({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        })
        return await self._post_token_request(metadata["token_endpoint"], body, "refresh_token")

    # -------------------------------------------------------------------------
    # Logout
    # -------------------------------------------------------------------------

    @staticmethod
    def build_logout_url(
        metadata: Dict[str, Any],
        config: AuthConfig,
        id_token_hint: Optional[str] = None,
        post_logout_redirect_uri: Optional[str] = None,
    ) -> Optional[str]:
        """
        Build the provider end-session URL.

        Returns:
            URL string, or None if the provider publishes no end_session_endpoint
        """
        endpoint = metadata.get("end_session_endpoint")
        if not endpoint:
            return None
        redirect = post_logout_redirect_uri or config.post_logout_redirect_uri or config.redirect_uri
        return with_query_params(
            endpoint,
            {
                "id_token_hint": id_token_hint,
                "post_logout_redirect_uri": redirect,
                "client_id": config.client_id,
            },
        )


__all__ = [
    "OIDCClient",
    "build_discovery_url",
    "build_realm_base",
    "validate_metadata",
    "with_query_params",
    "to_form_body",
    "DEFAULT_METADATA_TTL_SECONDS",
]
