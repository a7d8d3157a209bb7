"""
Tests for the OIDC client: discovery caching, URL building and token grants.
"""

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from gateway.app.auth.errors import FetchError, InvalidProviderMetadata, ProviderUnavailable, TokenExchangeFailed
from gateway.app.auth.oidc_client import (
    OIDCClient,
    build_discovery_url,
    build_realm_base,
    to_form_body,
    validate_metadata,
    with_query_params,
)
from gateway.app.config import AuthConfig

from .conftest import CLIENT_ID, IDP_BASE_URL, REALM, REALM_URL


@pytest.fixture
def oidc(idp_client, clock):
    return OIDCClient(idp_client, metadata_ttl_seconds=300, clock=clock)


def _query(url: str):
    return parse_qs(urlsplit(url).query)


class TestUrlHelpers:

    def test_realm_base(self):
        assert build_realm_base("http://idp/", "ploinky") == "http://idp/realms/ploinky"

    def test_discovery_url(self):
        assert build_discovery_url("http://idp", "ploinky") == (
            "http://idp/realms/ploinky/.well-known/openid-configuration"
        )

    def test_with_query_params_replaces_and_skips_empty(self):
        url = with_query_params("http://idp/auth?keep=1&scope=old", {"scope": "new", "prompt": None, "x": ""})
        query = _query(url)
        assert query == {"keep": ["1"], "scope": ["new"]}

    def test_form_body_omits_empty_values(self):
        assert to_form_body({"a": "1", "b": None, "c": ""}) == {"a": "1"}

    def test_validate_metadata_requires_endpoints(self):
        with pytest.raises(InvalidProviderMetadata) as exc_info:
            validate_metadata({"issuer": "x", "authorization_endpoint": "y"})
        assert "token_endpoint" in exc_info.value.message
        assert "jwks_uri" in exc_info.value.message


class TestMetadata:

    @pytest.mark.asyncio
    async def test_metadata_is_cached_per_realm(self, oidc, idp, auth_config):
        first = await oidc.get_metadata(auth_config)
        second = await oidc.get_metadata(auth_config)
        assert first["issuer"] == REALM_URL
        assert second is first
        assert idp.discovery_requests == 1

    @pytest.mark.asyncio
    async def test_metadata_refetched_after_ttl(self, oidc, idp, auth_config, clock):
        await oidc.get_metadata(auth_config)
        clock.advance(301)
        await oidc.get_metadata(auth_config)
        assert idp.discovery_requests == 2

    @pytest.mark.asyncio
    async def test_clear_drops_cache(self, oidc, idp, auth_config):
        await oidc.get_metadata(auth_config)
        oidc.clear()
        await oidc.get_metadata(auth_config)
        assert idp.discovery_requests == 2

    @pytest.mark.asyncio
    async def test_unknown_realm_is_fetch_error(self, oidc):
        config = AuthConfig(base_url=IDP_BASE_URL, realm="missing", client_id=CLIENT_ID)
        with pytest.raises(FetchError) as exc_info:
            await oidc.get_metadata(config)
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_unreachable_provider(self, auth_config, clock):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        oidc = OIDCClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), clock=clock)
        with pytest.raises(ProviderUnavailable):
            await oidc.get_metadata(auth_config)


class TestAuthorizationUrl:

    def test_contains_pkce_and_client_parameters(self, idp, auth_config):
        url = OIDCClient.build_auth_url(
            idp.metadata,
            auth_config,
            state="state-1",
            code_challenge="challenge-1",
            redirect_uri="http://gw:8080/auth/callback",
            nonce="nonce-1",
        )
        assert url.startswith(idp.metadata["authorization_endpoint"] + "?")
        query = _query(url)
        assert query["response_type"] == ["code"]
        assert query["client_id"] == [CLIENT_ID]
        assert query["scope"] == ["openid profile email"]
        assert query["state"] == ["state-1"]
        assert query["redirect_uri"] == ["http://gw:8080/auth/callback"]
        assert query["code_challenge"] == ["challenge-1"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["nonce"] == ["nonce-1"]
        assert "prompt" not in query

    def test_prompt_is_forwarded(self, idp, auth_config):
        url = OIDCClient.build_auth_url(
            idp.metadata, auth_config, state="s", code_challenge="c", redirect_uri="http://gw/cb", prompt="login"
        )
        assert _query(url)["prompt"] == ["login"]


class TestTokenGrants:

    @pytest.mark.asyncio
    async def test_code_exchange_posts_form(self, oidc, idp, auth_config):
        tokens = await oidc.exchange_code_for_tokens(
            idp.metadata, auth_config, code="code-1", redirect_uri="http://gw/cb", code_verifier="v" * 43
        )
        assert tokens["access_token"] == "access-initial"
        form = idp.token_requests[-1]
        assert form == {
            "grant_type": "authorization_code",
            "code": "code-1",
            "redirect_uri": "http://gw/cb",
            "client_id": CLIENT_ID,
            "code_verifier": "v" * 43,
        }

    @pytest.mark.asyncio
    async def test_client_secret_is_sent_when_configured(self, oidc, idp):
        config = AuthConfig(base_url=IDP_BASE_URL, realm=REALM, client_id=CLIENT_ID, client_secret="s3cret")
        await oidc.refresh_tokens(idp.metadata, config, "refresh-1")
        form = idp.token_requests[-1]
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"
        assert form["client_secret"] == "s3cret"

    @pytest.mark.asyncio
    async def test_rejected_grant_carries_status_and_body(self, oidc, idp, auth_config):
        idp.token_status = 400
        idp.token_error_body = "e" * 900
        with pytest.raises(TokenExchangeFailed) as exc_info:
            await oidc.refresh_tokens(idp.metadata, auth_config, "refresh-1")
        assert exc_info.value.status == 400
        assert exc_info.value.body == "e" * 500
        assert exc_info.value.status_code == 500


class TestLogoutUrl:

    def test_includes_hint_redirect_and_client(self, idp, auth_config):
        url = OIDCClient.build_logout_url(
            idp.metadata, auth_config, id_token_hint="id-token", post_logout_redirect_uri="http://gw/"
        )
        query = _query(url)
        assert url.startswith(idp.metadata["end_session_endpoint"])
        assert query == {
            "id_token_hint": ["id-token"],
            "post_logout_redirect_uri": ["http://gw/"],
            "client_id": [CLIENT_ID],
        }

    def test_falls_back_to_configured_uris(self, idp):
        config = AuthConfig(
            base_url=IDP_BASE_URL,
            realm=REALM,
            client_id=CLIENT_ID,
            redirect_uri="http://gw/auth/callback",
        )
        assert _query(OIDCClient.build_logout_url(idp.metadata, config))["post_logout_redirect_uri"] == [
            "http://gw/auth/callback"
        ]
        config = config.model_copy(update={"post_logout_redirect_uri": "http://gw/bye"})
        assert _query(OIDCClient.build_logout_url(idp.metadata, config))["post_logout_redirect_uri"] == [
            "http://gw/bye"
        ]

    def test_none_without_end_session_endpoint(self, idp, auth_config):
        metadata = dict(idp.metadata)
        del metadata["end_session_endpoint"]
        assert OIDCClient.build_logout_url(metadata, auth_config) is None
