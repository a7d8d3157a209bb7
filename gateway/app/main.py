"""
FastAPI Gateway Application Factory
===================================

Main entry point for the Ploinky gateway: the single HTTP front door that
authenticates browsers against Keycloak and forwards their requests to
agent containers.

Architecture:
    Browser → Gateway (this service) → Agent containers
                 ↕
              Keycloak (OIDC)

Routers:
    - /auth/*        : SSO flow (login, callback, logout, token)
    - /apis/{agent}  : Authenticated forwarding to agents
    - /list-agents/  : Routing table inspection
    - /health        : Health check endpoint

Environment Variables:
    - KEYCLOAK_URL, KEYCLOAK_REALM, KEYCLOAK_CLIENT_ID: enable SSO when all set
    - KEYCLOAK_CLIENT_SECRET, KEYCLOAK_REDIRECT_URI, KEYCLOAK_LOGOUT_REDIRECT_URI, KEYCLOAK_SCOPE
    - PLOINKY_ROUTING_FILE: Agent routing table (default: .ploinky/routing.json)
    - ALLOWED_ORIGINS: Comma-separated CORS origins (optional)
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn gateway.app.main:app --reload --host 0.0.0.0 --port 8080

    Direct:
        python -m gateway.app.main

Sessions live in process memory, so run a single worker.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gateway import __version__
from gateway.app.auth.errors import AuthError
from gateway.app.auth.gate import NotAuthenticated, respond_unauthenticated
from gateway.app.auth.routes import auth_router
from gateway.app.auth.service import AuthService
from gateway.app.config import Settings, get_settings
from gateway.app.models import ErrorResponse, HealthResponse
from gateway.app.proxy.routes import proxy_router


SERVICE_NAME = "ploinky-gateway"

LOG_FORMAT = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "event": "%(event)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}'


class EventFilter(logging.Filter):
    """Default the ``event`` tag for records logged without one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "event"):
            record.event = "-"
        return True


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(EventFilter())
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=LOG_FORMAT,
        handlers=[handler]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup logs whether SSO is active. Shutdown closes the auth service
    (and its HTTP client when owned) and the agent HTTP client.
    """
    logger = logging.getLogger("gateway.main")
    auth_service: AuthService = app.state.auth_service

    logger.info(
        "Gateway started",
        extra={
            "service": SERVICE_NAME,
            "version": __version__,
            "sso_enabled": auth_service.is_configured(),
        }
    )

    yield

    logger.info("Shutting down gateway")
    await auth_service.aclose()
    if app.state.owns_agent_client:
        await app.state.agent_client.aclose()
    logger.info("Gateway shutdown complete")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    auth_service: Optional[AuthService] = None,
    agent_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: App settings (defaults to the cached get_settings())
        auth_service: SSO service; one is built from settings when omitted
        agent_client: HTTP client for agent forwarding; created when omitted

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Ploinky Gateway",
        description="SSO gateway in front of Ploinky agent containers",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.state.settings = settings
    app.state.auth_service = auth_service or AuthService(settings=settings)
    app.state.owns_agent_client = agent_client is None
    app.state.agent_client = agent_client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    # Configure CORS
    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )

    # Mount routers
    app.include_router(auth_router)
    app.include_router(proxy_router)

    # Health check endpoint
    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(request: Request) -> HealthResponse:
        """
        Health check endpoint.

        Returns:
            HealthResponse: Service health information
        """
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            version=__version__,
            sso=request.app.state.auth_service.is_configured(),
        )

    # Root endpoint
    @app.get("/", tags=["System"])
    async def root() -> Dict[str, Any]:
        """
        Root endpoint with service information.

        Returns:
            dict: Service metadata and available endpoints
        """
        return {
            "service": SERVICE_NAME,
            "version": __version__,
            "endpoints": {
                "health": "/health",
                "docs": "/docs",
                "auth": "/auth",
                "agents": "/apis/{agent}",
                "list_agents": "/list-agents/",
            }
        }

    @app.exception_handler(NotAuthenticated)
    async def not_authenticated_handler(request: Request, exc: NotAuthenticated):
        return respond_unauthenticated(request, exc)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        logging.getLogger("gateway.main").warning(
            f"Auth error: {exc.message}",
            extra={"event": "auth_error", "error": exc.kind.value, "path": request.url.path},
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("gateway.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="internal_server_error",
                detail=str(exc) if settings.LOG_LEVEL == "DEBUG" else None,
            ).model_dump()
        )

    return app


# Create app instance for uvicorn
app = create_app()


def main():
    settings = get_settings()

    uvicorn.run(
        "gateway.app.main:app",
        host=settings.GATEWAY_HOST,
        port=settings.GATEWAY_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
