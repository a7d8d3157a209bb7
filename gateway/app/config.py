"""
Configuration module for the Ploinky Gateway.

This module uses Pydantic Settings to load and validate the gateway's
configuration from an ordered list of named sources, first non-empty wins:

    1. init      - keyword arguments passed to Settings(...)
    2. secrets   - the workspace secrets file (.ploinky/.secrets)
    3. env       - process environment variables
    4. dotenv    - a local .env file

The SSO provider settings (KEYCLOAK_*) are projected into an immutable
AuthConfig snapshot. When the base URL, realm or client id is missing, SSO
is considered disabled and the gateway admits all traffic.
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


logger = logging.getLogger(__name__)

DEFAULT_SECRETS_FILE = os.path.join(".ploinky", ".secrets")
DEFAULT_ROUTING_FILE = os.path.join(".ploinky", "routing.json")
DEFAULT_SCOPE = "openid profile email"


# =============================================================================
# Secrets File Source
# =============================================================================

def parse_secrets(path: Path) -> Dict[str, str]:
    """
    Parse a ``KEY=value`` secrets file.

    Blank lines and lines starting with '#' are ignored. Everything after the
    first '=' is the value. A missing file yields an empty mapping.
    """
    secrets: Dict[str, str] = {}
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return secrets
    except OSError as e:
        logger.warning(f"Could not read secrets file {path}: {e}")
        return secrets

    for line in raw.splitlines():
        if not line or line.strip().startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if sep and key:
            secrets[key] = value
    return secrets


def resolve_var_value(name: str, secrets: Dict[str, str]) -> str:
    """
    Resolve a secret, following ``$OTHER`` aliases.

    Unknown references and alias cycles resolve to an empty string.
    """
    seen: Set[str] = set()
    value = secrets.get(name)
    while isinstance(value, str) and value.startswith("$"):
        ref = value[1:]
        if not ref or ref in seen:
            return ""
        seen.add(ref)
        value = secrets.get(ref)
    return value or ""


class SecretsFileSettingsSource(PydanticBaseSettingsSource):
    """Settings source backed by the workspace secrets file."""

    def __init__(self, settings_cls: Type[BaseSettings], secrets_file: Optional[str] = None):
        super().__init__(settings_cls)
        self.secrets_file = Path(
            secrets_file or os.environ.get("PLOINKY_SECRETS_FILE") or DEFAULT_SECRETS_FILE
        )
        self._secrets = parse_secrets(self.secrets_file)

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        value = resolve_var_value(field_name, self._secrets).strip()
        return (value or None), field_name, False

    def __call__(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for field_name, field in self.settings_cls.model_fields.items():
            value, key, _ = self.get_field_value(field, field_name)
            if value is not None:
                values[key] = value
        return values


# =============================================================================
# Settings
# =============================================================================

class Settings(BaseSettings):
    """
    Gateway settings.

    All configuration for the Keycloak realm (OIDC), session lifetimes,
    provider caches and the HTTP server is defined here.
    """

    # =========================================================================
    # Keycloak / OIDC Provider
    # =========================================================================

    KEYCLOAK_URL: Optional[str] = Field(None, description="Keycloak base URL (e.g., http://127.0.0.1:9090)")
    KEYCLOAK_REALM: Optional[str] = Field(None, description="Realm name")
    KEYCLOAK_CLIENT_ID: Optional[str] = Field(None, description="OIDC client id registered for the gateway")
    KEYCLOAK_CLIENT_SECRET: Optional[str] = Field(None, description="Client secret (confidential clients only)")
    KEYCLOAK_REDIRECT_URI: Optional[str] = Field(
        None,
        description="Callback URL registered in Keycloak; derived from the request when unset",
    )
    KEYCLOAK_LOGOUT_REDIRECT_URI: Optional[str] = Field(None, description="Where Keycloak sends the browser after logout")
    KEYCLOAK_SCOPE: str = Field(DEFAULT_SCOPE, description="Requested scopes")

    # =========================================================================
    # Sessions and Caches
    # =========================================================================

    SESSION_TTL_SECONDS: int = Field(4 * 60 * 60, ge=60, description="Session lifetime and cookie Max-Age")
    PENDING_AUTH_TTL_SECONDS: int = Field(5 * 60, ge=10, description="Lifetime of a started login")
    METADATA_CACHE_SECONDS: int = Field(5 * 60, ge=0, description="OpenID configuration cache TTL")
    JWKS_CACHE_SECONDS: int = Field(5 * 60, ge=0, description="JWKS cache TTL")
    HTTP_TIMEOUT_SECONDS: float = Field(10.0, gt=0, description="Timeout for each provider/agent request")

    # =========================================================================
    # Gateway Server
    # =========================================================================

    PLOINKY_ROUTING_FILE: str = Field(DEFAULT_ROUTING_FILE, description="Agent routing table (JSON)")
    GATEWAY_HOST: str = Field("0.0.0.0", description="Host to bind the gateway server")
    GATEWAY_PORT: int = Field(8080, ge=1, le=65535, description="Port to bind the gateway server")
    ALLOWED_ORIGINS: Optional[str] = Field(None, description="Comma-separated CORS origins (empty disables CORS)")
    LOG_LEVEL: str = Field("INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        env_ignore_empty=True,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            SecretsFileSettingsSource(settings_cls),
            env_settings,
            dotenv_settings,
        )

    @model_validator(mode="before")
    @classmethod
    def drop_blank_values(cls, data: Any) -> Any:
        """Strip string values and treat blank ones as absent."""
        if not isinstance(data, dict):
            return data
        cleaned = {}
        for key, value in data.items():
            if isinstance(value, str):
                value = value.strip()
                if not value:
                    continue
            cleaned[key] = value
        return cleaned

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return level

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def allowed_origins_list(self) -> List[str]:
        if not self.ALLOWED_ORIGINS:
            return []
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def sso_configured(self) -> bool:
        return bool(self.KEYCLOAK_URL and self.KEYCLOAK_REALM and self.KEYCLOAK_CLIENT_ID)


@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance for app-level configuration.

    SSO provider settings are re-read through load_auth_config() instead, so
    that a config reload picks up workspace changes.
    """
    return Settings()


# =============================================================================
# SSO Provider Snapshot
# =============================================================================

class AuthConfig(BaseModel):
    """Immutable snapshot of the identity provider settings."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    realm: str
    client_id: str
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    post_logout_redirect_uri: Optional[str] = None
    scope: str = DEFAULT_SCOPE


def load_auth_config(settings: Optional[Settings] = None) -> Optional[AuthConfig]:
    """
    Read the SSO provider configuration.

    Args:
        settings: Settings to project; a fresh Settings() is read when omitted

    Returns:
        AuthConfig, or None when URL, realm or client id is missing
    """
    if settings is None:
        settings = Settings()
    if not settings.sso_configured:
        return None
    return AuthConfig(
        base_url=settings.KEYCLOAK_URL,
        realm=settings.KEYCLOAK_REALM,
        client_id=settings.KEYCLOAK_CLIENT_ID,
        client_secret=settings.KEYCLOAK_CLIENT_SECRET,
        redirect_uri=settings.KEYCLOAK_REDIRECT_URI,
        post_logout_redirect_uri=settings.KEYCLOAK_LOGOUT_REDIRECT_URI,
        scope=settings.KEYCLOAK_SCOPE or DEFAULT_SCOPE,
    )


__all__ = [
    "AuthConfig",
    "Settings",
    "SecretsFileSettingsSource",
    "get_settings",
    "load_auth_config",
    "parse_secrets",
    "resolve_var_value",
]
