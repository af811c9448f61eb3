"""MCP Hub - FastAPI Application.

One listener serves every registered provider over MCP Streamable HTTP:

    POST   /{provider}/mcp   client -> server exchange, may initiate a session
    GET    /{provider}/mcp   server -> client notification stream
    DELETE /{provider}/mcp   explicit session termination

plus discovery endpoints for health, providers and live sessions.
"""

from contextlib import asynccontextmanager
from typing import Any, Optional, TextIO

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging
from shared.models import ProviderInfo
from hub.audit import AuditLogger
from hub.core import Hub
from hub.errors import HubError
from hub.transport import SESSION_HEADER, TransportReply
from providers import load_all_providers

logger = get_logger(__name__)

VERSION = "0.1.0"


# Response Models
class HealthResponse(BaseModel):
    """Health check response."""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    version: str
    uptime_seconds: float = Field(alias="uptimeSeconds")
    registered_provider_count: int = Field(alias="registeredProviderCount")


class ProviderListResponse(BaseModel):
    """List of registered providers."""
    total: int
    providers: list[ProviderInfo]


class ConnectionsResponse(BaseModel):
    """Snapshot of the session table."""
    total: int
    sessions: list[dict[str, Any]]


def build_hub(settings: Optional[Settings] = None, log_stream: Optional[TextIO] = None) -> Hub:
    """Create the hub from settings and register every provider."""
    settings = settings or get_settings()
    setup_logging(
        settings.log_level,
        json_output=settings.environment == "production",
        stream=log_stream,
    )

    audit_logger = AuditLogger(
        log_path=settings.hub.audit_log_path,
        enabled=settings.hub.enable_audit,
    )
    hub = Hub(settings=settings, audit_logger=audit_logger)
    load_all_providers(hub)
    return hub


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    hub: Hub = app.state.hub

    logger.info(
        "MCP Hub started",
        providers=[p.name for p in hub.registry.list_providers()],
        port=hub.settings.hub.port,
    )
    hub.start_sweeper()

    yield

    logger.info("Shutting down MCP Hub")
    await hub.shutdown()


def get_hub(request: Request) -> Hub:
    """Dependency returning the hub bound to the application."""
    return request.app.state.hub


def _to_response(reply: TransportReply) -> Response:
    if reply.body is None:
        return Response(status_code=reply.status_code, headers=reply.headers)
    return JSONResponse(content=reply.body, status_code=reply.status_code, headers=reply.headers)


def create_app(hub: Optional[Hub] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        hub: Prebuilt hub; built from settings when omitted
        settings: Settings used to build the hub
    """
    app = FastAPI(
        title="MCP Hub",
        description="Multi-tenant MCP server hub",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.hub = hub or build_hub(settings)

    # CORS middleware; browsers must be able to read the session header
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[SESSION_HEADER],
    )

    @app.exception_handler(HubError)
    async def hub_error_handler(request: Request, exc: HubError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_rpc_error())

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(hub: Hub = Depends(get_hub)):
        """Health check endpoint."""
        return HealthResponse(
            status="ok",
            version=VERSION,
            uptime_seconds=round(hub.uptime_seconds, 1),
            registered_provider_count=len(hub.registry),
        )

    @app.get("/api/mcp/list", response_model=ProviderListResponse, tags=["Discovery"])
    async def list_providers(hub: Hub = Depends(get_hub)):
        """List every registered provider."""
        providers = hub.registry.list_providers()
        return ProviderListResponse(total=len(providers), providers=providers)

    @app.get("/api/connections", response_model=ConnectionsResponse, tags=["Discovery"])
    async def list_connections(hub: Hub = Depends(get_hub)):
        """Live sessions, for debugging."""
        sessions = hub.sessions.snapshot()
        return ConnectionsResponse(total=len(sessions), sessions=sessions)

    @app.post("/{provider}/mcp", tags=["MCP"])
    async def mcp_post(provider: str, request: Request, hub: Hub = Depends(get_hub)):
        """Client to server exchange."""
        reply = await hub.transport.handle_post(
            provider,
            request.headers.get(SESSION_HEADER),
            await request.body(),
        )
        return _to_response(reply)

    @app.get("/{provider}/mcp", tags=["MCP"])
    async def mcp_stream(provider: str, request: Request, hub: Hub = Depends(get_hub)):
        """Server to client notification stream."""
        session = await hub.transport.open_stream(provider, request.headers.get(SESSION_HEADER))

        return StreamingResponse(
            hub.transport.stream_events(session),
            media_type="text/event-stream",
            headers={
                SESSION_HEADER: session.session_id,
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.delete("/{provider}/mcp", tags=["MCP"])
    async def mcp_delete(provider: str, request: Request, hub: Hub = Depends(get_hub)):
        """Explicit session termination."""
        reply = await hub.transport.handle_delete(provider, request.headers.get(SESSION_HEADER))
        return _to_response(reply)

    # Provider-specific routes such as OAuth callbacks
    for descriptor in app.state.hub.registry.descriptors():
        if descriptor.enabled and descriptor.router is not None:
            app.include_router(descriptor.router)

    return app


def main():
    """Run the MCP Hub."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "hub.main:create_app",
        factory=True,
        host=settings.hub.host,
        port=settings.hub.port,
        reload=settings.environment == "development",
    )


if __name__ == "__main__":
    main()
