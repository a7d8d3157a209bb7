"""
Time-boxed JWKS cache.

Maps a JWKS URI to the provider's signing keys indexed by ``kid``. A key id
missing from a cached entry triggers exactly one forced refetch, so rotated
keys are picked up without refetching on every verification.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from .errors import FetchError, ProviderUnavailable


logger = logging.getLogger(__name__)

DEFAULT_JWKS_TTL_SECONDS = 300


@dataclass
class JwksEntry:
    fetched_at: float
    keys: Dict[str, Dict[str, Any]] = field(default_factory=dict)


class JwksCache:
    """
    Cache of JSON Web Key Sets keyed by JWKS URI.

    Attributes:
        ttl_seconds: How long a fetched key set is considered fresh
        fetch_count: Number of HTTP fetches performed (useful for diagnostics)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        ttl_seconds: float = DEFAULT_JWKS_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._http_client = http_client
        self._clock = clock
        self._entries: Dict[str, JwksEntry] = {}
        self.ttl_seconds = ttl_seconds
        self.fetch_count = 0

    def _fresh_entry(self, jwks_uri: str) -> Optional[JwksEntry]:
        entry = self._entries.get(jwks_uri)
        if entry and self._clock() - entry.fetched_at < self.ttl_seconds:
            return entry
        return None

    async def _fetch(self, jwks_uri: str) -> JwksEntry:
        self.fetch_count += 1
        try:
            response = await self._http_client.get(jwks_uri)
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Failed to fetch JWKS: {e}") from e

        if not response.is_success:
            raise FetchError(
                f"Failed to fetch JWKS ({response.status_code})",
                status=response.status_code,
                body=response.text,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise FetchError("JWKS response is not JSON", status=response.status_code) from e

        keys: Dict[str, Dict[str, Any]] = {}
        raw_keys = body.get("keys") if isinstance(body, dict) else None
        if isinstance(raw_keys, list):
            for jwk in raw_keys:
                if isinstance(jwk, dict) and jwk.get("kid"):
                    keys[jwk["kid"]] = jwk

        entry = JwksEntry(fetched_at=self._clock(), keys=keys)
        self._entries[jwks_uri] = entry
        logger.info(f"Loaded {len(keys)} signing keys from JWKS", extra={"jwks_uri": jwks_uri})
        return entry

    async def get_key(self, jwks_uri: str, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Resolve the JWK for a key id.

        A fresh entry is served without any request. A stale or missing entry
        is fetched once. If the key id is absent from an entry that was served
        from cache, one forced refetch is made. Never more than one fetch per call.

        Args:
            jwks_uri: Provider JWKS endpoint
            kid: Key id from the token header

        Returns:
            The JWK dict, or None if the key id is unknown

        Raises:
            FetchError: On a non-2xx JWKS response
            ProviderUnavailable: If the JWKS endpoint is unreachable
        """
        if not jwks_uri:
            raise FetchError("JWKS URI missing")
        if not kid:
            return None

        entry = self._fresh_entry(jwks_uri)
        if entry is None:
            entry = await self._fetch(jwks_uri)
            return entry.keys.get(kid)

        jwk = entry.keys.get(kid)
        if jwk is not None:
            return jwk

        logger.info("Signing key not cached, refreshing JWKS", extra={"kid": kid})
        entry = await self._fetch(jwks_uri)
        return entry.keys.get(kid)

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["JwksCache", "JwksEntry", "DEFAULT_JWKS_TTL_SECONDS"]
