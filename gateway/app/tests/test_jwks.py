"""
Tests for the JWKS cache: TTL behaviour, refetch-on-miss and upstream errors.
"""

import httpx
import pytest

from gateway.app.auth.errors import FetchError, ProviderUnavailable
from gateway.app.auth.jwks import JwksCache

from .conftest import TEST_KID, FakeClock, make_jwk


JWKS_URI = "http://idp/realms/ploinky/protocol/openid-connect/certs"


class CountingJwks:
    """JWKS endpoint whose key list can be swapped between calls."""

    def __init__(self, keys=None, status_code=200):
        self.keys = keys if keys is not None else [make_jwk()]
        self.status_code = status_code
        self.requests = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="x" * 2000)
        return httpx.Response(200, json={"keys": self.keys})


@pytest.fixture
def endpoint():
    return CountingJwks()


@pytest.fixture
def cache(endpoint, clock):
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint.handler))
    return JwksCache(client, ttl_seconds=300, clock=clock)


class TestJwksCache:

    @pytest.mark.asyncio
    async def test_first_lookup_fetches_once(self, cache, endpoint):
        jwk = await cache.get_key(JWKS_URI, TEST_KID)
        assert jwk["kid"] == TEST_KID
        assert endpoint.requests == 1
        assert cache.fetch_count == 1

    @pytest.mark.asyncio
    async def test_fresh_entry_makes_no_request(self, cache, endpoint, clock):
        await cache.get_key(JWKS_URI, TEST_KID)
        clock.advance(299)
        assert await cache.get_key(JWKS_URI, TEST_KID) is not None
        assert endpoint.requests == 1

    @pytest.mark.asyncio
    async def test_stale_entry_fetches_exactly_once(self, cache, endpoint, clock):
        await cache.get_key(JWKS_URI, TEST_KID)
        clock.advance(301)
        assert await cache.get_key(JWKS_URI, TEST_KID) is not None
        assert endpoint.requests == 2

    @pytest.mark.asyncio
    async def test_unknown_kid_refetches_once_then_not_found(self, cache, endpoint):
        await cache.get_key(JWKS_URI, TEST_KID)
        assert await cache.get_key(JWKS_URI, "rotated-away") is None
        assert endpoint.requests == 2

    @pytest.mark.asyncio
    async def test_unknown_kid_on_cold_cache_fetches_once(self, cache, endpoint):
        assert await cache.get_key(JWKS_URI, "nope") is None
        assert endpoint.requests == 1

    @pytest.mark.asyncio
    async def test_rotated_key_is_picked_up(self, cache, endpoint):
        await cache.get_key(JWKS_URI, TEST_KID)
        endpoint.keys = [make_jwk(kid="new-key")]
        jwk = await cache.get_key(JWKS_URI, "new-key")
        assert jwk is not None and jwk["kid"] == "new-key"
        assert endpoint.requests == 2

    @pytest.mark.asyncio
    async def test_missing_kid_returns_none_without_fetch(self, cache, endpoint):
        assert await cache.get_key(JWKS_URI, None) is None
        assert endpoint.requests == 0

    @pytest.mark.asyncio
    async def test_clear_forces_refetch(self, cache, endpoint):
        await cache.get_key(JWKS_URI, TEST_KID)
        cache.clear()
        await cache.get_key(JWKS_URI, TEST_KID)
        assert endpoint.requests == 2

    @pytest.mark.asyncio
    async def test_non_2xx_raises_fetch_error_with_truncated_body(self, clock):
        endpoint = CountingJwks(status_code=503)
        client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint.handler))
        cache = JwksCache(client, clock=clock)
        with pytest.raises(FetchError) as exc_info:
            await cache.get_key(JWKS_URI, TEST_KID)
        assert exc_info.value.status == 503
        assert len(exc_info.value.body) == 500

    @pytest.mark.asyncio
    async def test_transport_failure_raises_provider_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        cache = JwksCache(httpx.AsyncClient(transport=httpx.MockTransport(handler)), clock=FakeClock())
        with pytest.raises(ProviderUnavailable):
            await cache.get_key(JWKS_URI, TEST_KID)

    @pytest.mark.asyncio
    async def test_missing_uri_raises(self, cache):
        with pytest.raises(FetchError):
            await cache.get_key("", TEST_KID)
