"""
MCP Server for the Switchyard gateway

One outward MCP server that aggregates:
- native knowledge base tools (notes, bookmarks)
- routing tools and the source routing guide
- every live upstream adapter, mounted under its prefix

Run over stdio:

    python backend/mcp_server.py [--read-only]

A read-only server never lists or accepts write tools.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from adapters.registry import AdapterRegistry, get_adapter_registry
from analytics import ToolCallTracker, get_tool_call_tracker
from config import configure_logging, load_gateway_config
from db import close_sqlite_client, get_context_router, get_sqlite_client
from tools.knowledge_base import register_knowledge_base_tools
from tools.sources import register_source_tools
from tools.surface import ToolSurface

logger = logging.getLogger(__name__)

SERVER_NAME = "switchyard"


def create_surface(
    read_only: bool = False,
    registry: Optional[AdapterRegistry] = None,
    tracker: Optional[ToolCallTracker] = None,
) -> ToolSurface:
    """Build the catalog for one access level: native tools first, then adapters."""
    surface = ToolSurface(SERVER_NAME, read_only=read_only, tracker=tracker)
    register_knowledge_base_tools(surface)
    register_source_tools(surface)
    if registry is not None:
        mounted = registry.register_on_server(surface, read_only=read_only)
        logger.info(
            "Mounted %d adapter tool(s) on the %s surface", mounted, surface.auth_level
        )
    return surface


def create_server(
    read_only: bool = False,
    registry: Optional[AdapterRegistry] = None,
    tracker: Optional[ToolCallTracker] = None,
) -> Server:
    return create_surface(read_only, registry, tracker).build_server()


# =============================================================================
# Startup / Shutdown
# =============================================================================


async def startup(registry: Optional[AdapterRegistry] = None) -> AdapterRegistry:
    """
    Prepare the store and bring the adapters up.

    Migrations failing is fatal. Adapters failing is not: they are recorded
    as down and contribute no tools.
    """
    config = load_gateway_config()
    client = get_sqlite_client()
    applied: List[str] = await client.init_db()
    if applied:
        logger.info("Applied migrations: %s", ", ".join(applied))

    tracker = get_tool_call_tracker()
    await tracker.prune(config.analytics_retention_days)
    get_context_router().add_invalidation_listener(tracker.resolver.invalidate)

    registry = registry or get_adapter_registry()
    await registry.ensure_initialized()
    return registry


async def shutdown(registry: Optional[AdapterRegistry]) -> None:
    if registry is not None:
        await registry.shutdown_all()
    await close_sqlite_client()


async def serve_stdio(read_only: bool = False) -> None:
    registry = await startup()
    try:
        server = create_server(read_only, registry, get_tool_call_tracker())
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await shutdown(registry)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Switchyard MCP gateway over stdio")
    parser.add_argument(
        "--read-only",
        action="store_true",
        help="Expose only read tools; write tools are neither listed nor callable",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging()
    asyncio.run(serve_stdio(read_only=args.read_only))


if __name__ == "__main__":
    main()
