"""
Data Models Module

Pydantic models for the JSON bodies the gateway returns.

Models are organized by functional area:
- Authentication models (token snapshot, user profile)
- Agent routing models (routing table entries)
- Health and error models

Wire field names are camelCase to match the browser clients; Python code
uses the snake_case attribute names.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """Base model serialized with camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# ============================================================================
# Authentication Models
# ============================================================================

class TokenSnapshot(WireModel):
    """Current access token of a session."""
    access_token: Optional[str] = Field(None, alias="accessToken", description="Provider access token")
    expires_at: int = Field(..., alias="expiresAt", description="Access token expiry in epoch milliseconds")
    scope: Optional[str] = Field(None, description="Granted scopes")
    token_type: Optional[str] = Field(None, alias="tokenType", description="Token type (usually Bearer)")


class UserProfile(WireModel):
    """User identity mapped from ID token claims."""
    id: Optional[str] = Field(None, description="Subject identifier (sub)")
    username: str = Field("", description="preferred_username, username or email")
    name: str = Field("", description="Display name")
    email: Optional[str] = Field(None, description="Email address")
    roles: List[str] = Field(default_factory=list, description="Realm roles")


class TokenResponse(WireModel):
    """Body of /auth/token."""
    ok: bool = True
    token: TokenSnapshot
    user: UserProfile


# ============================================================================
# Agent Routing Models
# ============================================================================

class AgentRoute(WireModel):
    """One entry of the routing table (routing.json ``routes`` map)."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    host_port: int = Field(..., alias="hostPort", description="Host port the agent container listens on")
    container: Optional[str] = Field(None, description="Container name")


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    sso: bool = Field(..., description="Whether SSO is configured")


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    ok: bool = False
    error: str = Field(..., description="Error tag")
    detail: Optional[str] = Field(None, description="Human-readable error message")
