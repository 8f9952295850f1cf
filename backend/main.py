import logging
import os
import sys
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Receive, Scope, Send

from analytics import get_tool_call_tracker
from api import dashboard_router
from api.auth import ACCESS_FULL, ACCESS_READONLY, resolve_access
from config import configure_logging, load_gateway_config
from db import get_sqlite_client
from mcp_server import create_server, shutdown, startup

logger = logging.getLogger(__name__)

VERSION = "0.4.0"


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class McpEndpoint:
    """
    Streamable HTTP endpoint at /mcp.

    Each access level has its own session manager wrapping a server built
    for that level, so a read-only caller talks to a catalog that simply
    has no write tools.
    """

    def __init__(self) -> None:
        self.managers: Dict[str, StreamableHTTPSessionManager] = {}

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        decision = resolve_access(Request(scope, receive))
        if not decision.granted:
            response = JSONResponse(
                status_code=401,
                content={
                    "error": "mcp_auth_failed",
                    "reason": decision.reason,
                },
                headers={"WWW-Authenticate": "Bearer"},
            )
            await response(scope, receive, send)
            return
        manager = self.managers.get(decision.level)
        if manager is None:
            response = JSONResponse(
                status_code=503,
                content={"error": "mcp_unavailable", "reason": "gateway_not_started"},
            )
            await response(scope, receive, send)
            return
        await manager.handle_request(scope, receive, send)


mcp_endpoint = McpEndpoint()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Switchyard gateway starting...")

    try:
        registry = await startup()
    except Exception as e:
        logger.error("Failed to initialize the catalog store: %s", e)
        raise RuntimeError("Failed to initialize the catalog store during startup") from e
    app.state.registry = registry

    tracker = get_tool_call_tracker()
    try:
        async with AsyncExitStack() as stack:
            for level, read_only in ((ACCESS_FULL, False), (ACCESS_READONLY, True)):
                manager = StreamableHTTPSessionManager(
                    app=create_server(read_only, registry, tracker),
                    json_response=False,
                    stateless=True,
                )
                await stack.enter_async_context(manager.run())
                mcp_endpoint.managers[level] = manager
            yield
    finally:
        mcp_endpoint.managers.clear()
        logger.info("Shutting down adapters and closing database connections...")
        await shutdown(registry)


app = FastAPI(
    title="Switchyard",
    description="Personal MCP aggregation gateway",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(dashboard_router)
app.add_route("/mcp", mcp_endpoint, include_in_schema=False)


@app.get("/")
async def root():
    return {
        "message": "Switchyard MCP gateway",
        "version": VERSION,
        "mcp": "/mcp",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }

    registry = getattr(app.state, "registry", None)
    adapters = registry.describe() if registry is not None else []
    payload["adapters"] = adapters
    if any(item["enabled"] and not item["live"] for item in adapters):
        payload["status"] = "degraded"

    try:
        payload["adapter_health"] = await get_sqlite_client().latest_adapter_health()
    except Exception as e:
        payload["status"] = "degraded"
        payload["adapter_health"] = []
        payload["reason"] = str(e)

    return payload


def run() -> None:
    config = load_gateway_config()
    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    run()
