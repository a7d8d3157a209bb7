"""
Shared fixtures for gateway tests.

Provider traffic goes through an in-process fake Keycloak realm mounted on
``httpx.MockTransport``; ID tokens are minted with PyJWT using a test RSA key.
"""

import time
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, parse_qsl, urlsplit

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from gateway.app.auth.service import AuthService
from gateway.app.auth.session import SessionStore
from gateway.app.config import AuthConfig, Settings


IDP_BASE_URL = "http://idp"
REALM = "ploinky"
CLIENT_ID = "ploinky-router"
REALM_URL = f"{IDP_BASE_URL}/realms/{REALM}"
GATEWAY_URL = "http://gw:8080"
TEST_KID = "test-key-2024"


# Test RSA key pair generation for signing ID tokens
def generate_test_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


TEST_PRIVATE_KEY = generate_test_key()
OTHER_PRIVATE_KEY = generate_test_key()


def private_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def make_jwk(key: rsa.RSAPrivateKey = TEST_PRIVATE_KEY, kid: str = TEST_KID) -> Dict[str, Any]:
    """Public JWK for a test key."""
    jwk = RSAAlgorithm.to_jwk(key.public_key(), as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    jwk["alg"] = "RS256"
    return jwk


def create_id_token(
    claims: Optional[Dict[str, Any]] = None,
    key: rsa.RSAPrivateKey = TEST_PRIVATE_KEY,
    kid: str = TEST_KID,
    now: Optional[float] = None,
) -> str:
    """
    Mint an RS256 ID token for the test realm.

    Args:
        claims: Claims overriding (or, with value None, removing) the defaults
        key: Signing key
        kid: Key id put in the header
        now: Issue time (defaults to time.time())
    """
    now = time.time() if now is None else now
    payload: Dict[str, Any] = {
        "iss": REALM_URL,
        "sub": "user-123",
        "aud": CLIENT_ID,
        "iat": int(now),
        "exp": int(now) + 300,
        "preferred_username": "alice",
        "name": "Alice Example",
        "email": "alice@example.com",
        "realm_access": {"roles": ["admin", "user"]},
    }
    for name, value in (claims or {}).items():
        if value is None:
            payload.pop(name, None)
        else:
            payload[name] = value
    return jwt.encode(payload, private_pem(key), algorithm="RS256", headers={"kid": kid})


class FakeClock:
    """Controllable time source."""

    def __init__(self, now: Optional[float] = None):
        self.now = time.time() if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeKeycloak:
    """
    Minimal Keycloak realm: discovery, JWKS, token and logout endpoints.

    Token responses mint a fresh ID token carrying ``self.nonce``.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.metadata: Dict[str, Any] = {
            "issuer": REALM_URL,
            "authorization_endpoint": f"{REALM_URL}/protocol/openid-connect/auth",
            "token_endpoint": f"{REALM_URL}/protocol/openid-connect/token",
            "jwks_uri": f"{REALM_URL}/protocol/openid-connect/certs",
            "end_session_endpoint": f"{REALM_URL}/protocol/openid-connect/logout",
        }
        self.jwks_keys: List[Dict[str, Any]] = [make_jwk()]
        self.signing_key = TEST_PRIVATE_KEY
        self.signing_kid = TEST_KID
        self.nonce: Optional[str] = None
        self.id_token_claims: Dict[str, Any] = {}
        self.token_status = 200
        self.token_error_body = '{"error":"invalid_grant"}'
        self.expires_in: Optional[int] = 300
        self.refresh_expires_in: Optional[int] = 1800
        self.include_id_token = True
        self.refresh_counter = 0

        self.discovery_requests = 0
        self.jwks_requests = 0
        self.token_requests: List[Dict[str, str]] = []

    @property
    def discovery_url(self) -> str:
        return f"{REALM_URL}/.well-known/openid-configuration"

    def mint_id_token(self) -> str:
        claims = dict(self.id_token_claims)
        if self.nonce is not None:
            claims.setdefault("nonce", self.nonce)
        return create_id_token(claims, key=self.signing_key, kid=self.signing_kid, now=self.clock())

    def _token_response(self, form: Dict[str, str]) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(self.token_status, text=self.token_error_body)

        body: Dict[str, Any] = {
            "token_type": "Bearer",
            "scope": "openid profile email",
        }
        if form.get("grant_type") == "refresh_token":
            self.refresh_counter += 1
            body["access_token"] = f"access-refreshed-{self.refresh_counter}"
            body["refresh_token"] = f"refresh-{self.refresh_counter}"
        else:
            body["access_token"] = "access-initial"
            body["refresh_token"] = "refresh-initial"
            if self.include_id_token:
                body["id_token"] = self.mint_id_token()
        if self.expires_in is not None:
            body["expires_in"] = self.expires_in
        if self.refresh_expires_in is not None:
            body["refresh_expires_in"] = self.refresh_expires_in
        return httpx.Response(200, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url).split("?")[0]
        if request.method == "GET" and url == self.discovery_url:
            self.discovery_requests += 1
            return httpx.Response(200, json=self.metadata)
        if request.method == "GET" and url == self.metadata["jwks_uri"]:
            self.jwks_requests += 1
            return httpx.Response(200, json={"keys": self.jwks_keys})
        if request.method == "POST" and url == self.metadata["token_endpoint"]:
            form = dict(parse_qsl(request.content.decode("utf-8")))
            self.token_requests.append(form)
            return self._token_response(form)
        return httpx.Response(404, text="not found")


def nonce_from_auth_url(auth_url: str) -> str:
    return parse_qs(urlsplit(auth_url).query)["nonce"][0]


def state_from_auth_url(auth_url: str) -> str:
    return parse_qs(urlsplit(auth_url).query)["state"][0]


async def complete_login(service: AuthService, idp: FakeKeycloak, return_to: str = "/"):
    """Run begin_login + handle_callback against the fake realm."""
    login = await service.begin_login(base_url=GATEWAY_URL, return_to=return_to)
    idp.nonce = nonce_from_auth_url(login.redirect_url)
    return await service.handle_callback(code="auth-code", state=login.state, base_url=GATEWAY_URL)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep workspace secrets and KEYCLOAK_* variables out of tests."""
    monkeypatch.setenv("PLOINKY_SECRETS_FILE", str(tmp_path / "missing.secrets"))
    for name in (
        "KEYCLOAK_URL",
        "KEYCLOAK_REALM",
        "KEYCLOAK_CLIENT_ID",
        "KEYCLOAK_CLIENT_SECRET",
        "KEYCLOAK_REDIRECT_URI",
        "KEYCLOAK_LOGOUT_REDIRECT_URI",
        "KEYCLOAK_SCOPE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        PLOINKY_ROUTING_FILE=str(tmp_path / "routing.json"),
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(base_url=IDP_BASE_URL, realm=REALM, client_id=CLIENT_ID)


@pytest.fixture
def idp(clock) -> FakeKeycloak:
    return FakeKeycloak(clock)


@pytest.fixture
def idp_client(idp) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(idp.handler))


@pytest.fixture
def service(auth_config, idp_client, settings, clock) -> AuthService:
    return AuthService(
        config_loader=lambda: auth_config,
        http_client=idp_client,
        session_store=SessionStore(clock=clock),
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def unconfigured_service(idp_client, settings, clock) -> AuthService:
    return AuthService(
        config_loader=lambda: None,
        http_client=idp_client,
        settings=settings,
        clock=clock,
    )
