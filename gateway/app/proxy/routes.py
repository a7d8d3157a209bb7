"""
Proxy Routes - Agent Request Forwarding
=======================================

Forwards authenticated browser requests to agent containers listed in the
workspace routing table (``.ploinky/routing.json``).

Security Model:
---------------
1. Every request passes the SSO gate (require_authenticated)
2. Client-supplied Authorization, Cookie and X-Ploinky-* headers are dropped
3. The gateway adds the identity headers of the session user and the
   user's access token as a Bearer token
4. Agents trust the identity headers because only the gateway can reach them

Endpoints:
----------
- ANY /apis/{agent}[/{path}]: Forward to http://127.0.0.1:{hostPort}/{path}
- GET /list-agents/: Routing table inspection
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import httpx
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, Response

from ..auth.gate import AuthContext, require_authenticated, set_session_cookie
from ..models import AgentRoute

logger = logging.getLogger(__name__)

# Create router
proxy_router = APIRouter(tags=["agents"])

AGENT_HOST = "127.0.0.1"
DEFAULT_AGENT_PATH = "api"
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]

IDENTITY_HEADER_PREFIX = "x-ploinky-"

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}

# Dropped from agent responses; httpx has already decoded the body.
RESPONSE_DROP_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding", "set-cookie"}


# ============================================================================
# Routing Table
# ============================================================================

def load_agent_routes(routing_file: str) -> Dict[str, Dict[str, Any]]:
    """
    Read the ``routes`` map from the routing file.

    The file is re-read on every call so agents started after the gateway
    are picked up. A missing or unparsable file yields no routes.
    """
    path = Path(routing_file)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read routing file {path}: {e}")
        return {}
    routes = data.get("routes") if isinstance(data, dict) else None
    return routes if isinstance(routes, dict) else {}


def resolve_agent_route(routes: Dict[str, Dict[str, Any]], agent: str) -> Optional[AgentRoute]:
    entry = routes.get(agent)
    if not isinstance(entry, dict) or not entry.get("hostPort"):
        return None
    try:
        return AgentRoute.model_validate(entry)
    except ValueError:
        logger.warning(f"Invalid route entry for agent {agent}")
        return None


# ============================================================================
# Dependencies
# ============================================================================

def get_agent_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.agent_client


def get_routing_file(request: Request) -> str:
    return request.app.state.settings.PLOINKY_ROUTING_FILE


# ============================================================================
# Header Security Functions
# ============================================================================

def build_identity_headers(auth: AuthContext) -> Dict[str, Union[str, bytes]]:
    """
    Identity headers describing the session user.

    User fields are sent as UTF-8 bytes so that non-ASCII names and emails
    reach the agent intact. Empty when SSO is disabled.
    """
    if not auth.sso_enabled or auth.user is None:
        return {}
    user = auth.user
    identity = {
        "X-Ploinky-User-Id": user.id or "",
        "X-Ploinky-User": user.username or "",
        "X-Ploinky-User-Email": user.email or "",
        "X-Ploinky-User-Roles": ",".join(user.roles),
        "X-Ploinky-Session-Id": auth.session_id or "",
    }
    headers: Dict[str, Union[str, bytes]] = {k: v.encode("utf-8") for k, v in identity.items()}
    access_token = auth.session.tokens.access_token if auth.session else None
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


def build_agent_headers(original_headers: Dict[str, Union[str, bytes]], auth: AuthContext) -> Dict[str, Union[str, bytes]]:
    """
    Build headers for the agent request.

    Client-supplied credentials and identity headers are always stripped
    before the gateway's own identity headers are added.
    """
    safe_headers: Dict[str, Union[str, bytes]] = {
        k: v for k, v in original_headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS
        and k.lower() not in ("authorization", "cookie")
        and not k.lower().startswith(IDENTITY_HEADER_PREFIX)
    }
    safe_headers.update(build_identity_headers(auth))
    return safe_headers


def filter_response_headers(headers: httpx.Headers) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in RESPONSE_DROP_HEADERS}


def _with_rolling_cookie(response: Response, request: Request, auth: AuthContext) -> Response:
    if auth.session_id:
        set_session_cookie(
            response,
            request,
            auth.session_id,
            request.app.state.auth_service.session_cookie_max_age,
        )
    return response


# ============================================================================
# Proxy Endpoints
# ============================================================================

@proxy_router.get("/list-agents/")
async def list_agents(
    auth: AuthContext = Depends(require_authenticated),
    routing_file: str = Depends(get_routing_file),
):
    """Return the agent routing table."""
    return {"ok": True, "routes": load_agent_routes(routing_file)}


@proxy_router.api_route("/apis/{agent}", methods=PROXY_METHODS)
@proxy_router.api_route("/apis/{agent}/{path:path}", methods=PROXY_METHODS)
async def proxy_agent(
    request: Request,
    agent: str,
    path: str = "",
    auth: AuthContext = Depends(require_authenticated),
    agent_client: httpx.AsyncClient = Depends(get_agent_client),
    routing_file: str = Depends(get_routing_file),
):
    """
    Forward a request to an agent container.

    Flow:
    1. Gate the request (done by dependency)
    2. Resolve the agent's host port from the routing table
    3. Forward method, path, query and body with identity headers
    4. Relay the agent's status, body and safe headers

    Returns:
        The agent response, or 404/502/504 JSON errors
    """
    routes = load_agent_routes(routing_file)
    route = resolve_agent_route(routes, agent)
    if route is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"ok": False, "error": "agent_not_found", "agent": agent, "available": sorted(routes)},
        )

    target_url = f"http://{AGENT_HOST}:{route.host_port}/{path or DEFAULT_AGENT_PATH}"
    raw_headers = {k.decode("latin-1"): v for k, v in request.headers.raw}
    headers = build_agent_headers(raw_headers, auth)
    body = await request.body()

    logger.info(
        f"Proxying {request.method} to agent {agent}",
        extra={"agent": agent, "path": path, "user": auth.user.username if auth.user else None},
    )

    try:
        upstream = await agent_client.request(
            request.method,
            target_url,
            params=request.query_params.multi_items(),
            headers=headers,
            content=body,
        )
    except httpx.TimeoutException:
        logger.error(f"Agent {agent} timed out", extra={"agent": agent})
        return _with_rolling_cookie(
            JSONResponse(
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                content={"ok": False, "error": "agent_timeout", "agent": agent},
            ),
            request,
            auth,
        )
    except httpx.TransportError as e:
        logger.error(f"Agent {agent} unreachable: {e}", extra={"agent": agent})
        return _with_rolling_cookie(
            JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={"ok": False, "error": "agent_unreachable", "agent": agent, "detail": str(e)},
            ),
            request,
            auth,
        )

    response = Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=filter_response_headers(upstream.headers),
    )
    return _with_rolling_cookie(response, request, auth)


__all__ = [
    "proxy_router",
    "build_agent_headers",
    "build_identity_headers",
    "load_agent_routes",
]
