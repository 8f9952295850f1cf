"""
Proxy adapter bridging one upstream MCP server into the gateway catalog.

The upstream connection (a spawned stdio process or a streamable HTTP
session) is opened and closed inside a dedicated background task. The MCP
client transports are anyio context managers whose cancel scopes must be
exited by the task that entered them, so the adapter keeps them alive in one
long-running task and talks to the resulting ClientSession from anywhere.
"""

import asyncio
import logging
import os
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import CallToolResult, ReadResourceResult, Tool
from pydantic import AnyUrl

from .types import (
    AdapterConfig,
    AdapterResourceDefinition,
    AdapterToolDefinition,
    HttpTransport,
    StdioTransport,
)

logger = logging.getLogger(__name__)


def classify_is_write(tool: Tool, write_tools: Optional[Iterable[str]] = None) -> bool:
    """
    Decide whether an upstream tool mutates state.

    An explicit write list wins outright. Otherwise the upstream's own
    annotations decide: destructiveHint=True or readOnlyHint=False mark a
    write tool. No hints at all means read.
    """
    if write_tools is not None:
        return tool.name in set(write_tools)
    annotations = tool.annotations
    if annotations is None:
        return False
    if annotations.destructiveHint is True:
        return True
    if annotations.readOnlyHint is False:
        return True
    return False


class McpProxyAdapter:
    """One upstream MCP server, reached over stdio or streamable HTTP."""

    def __init__(self, config: AdapterConfig) -> None:
        self.config = config
        self._session: Optional[ClientSession] = None
        self._runner: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Event] = None
        self._tools: List[AdapterToolDefinition] = []
        self._resources: List[AdapterResourceDefinition] = []

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def connected(self) -> bool:
        return self._session is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Connect, handshake and discover the upstream catalog.

        Raises whatever the transport or discovery raised; the registry
        decides how fatal that is.
        """
        if self._runner is not None and not self._runner.done():
            return
        loop = asyncio.get_running_loop()
        ready: asyncio.Future = loop.create_future()
        closing = self._closing = asyncio.Event()
        self._runner = asyncio.create_task(
            self._run_connection(ready, closing), name=f"adapter:{self.config.id}"
        )
        try:
            await ready
        except BaseException:
            runner, self._runner = self._runner, None
            if runner is not None and not runner.done():
                runner.cancel()
            raise

    async def _run_connection(self, ready: asyncio.Future, closing: asyncio.Event) -> None:
        try:
            async with AsyncExitStack() as stack:
                session, supports_resources = await self._connect(stack)
                await self._discover(session, supports_resources)
                self._session = session
                if not ready.done():
                    ready.set_result(None)
                await closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.error("[adapter:%s] connection lost: %s", self.config.id, exc)
        finally:
            self._session = None

    async def _connect(self, stack: AsyncExitStack) -> Tuple[ClientSession, bool]:
        """Open the transport, run the MCP handshake.

        Returns the session and whether the upstream serves resources.
        """
        transport = self.config.transport
        if isinstance(transport, StdioTransport):
            params = StdioServerParameters(
                command=transport.command,
                args=list(transport.args),
                env={**os.environ, **transport.env},
            )
            read_stream, write_stream = await stack.enter_async_context(
                stdio_client(params)
            )
        elif isinstance(transport, HttpTransport):
            read_stream, write_stream, _ = await stack.enter_async_context(
                streamablehttp_client(transport.url, headers=dict(transport.headers) or None)
            )
        else:
            raise TypeError(f"Unsupported transport: {type(transport).__name__}")

        session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
        init_result = await session.initialize()
        return session, init_result.capabilities.resources is not None

    async def _discover(self, session: ClientSession, supports_resources: bool) -> None:
        tools: List[Tool] = []
        result = await session.list_tools()
        tools.extend(result.tools)
        while result.nextCursor:
            result = await session.list_tools(cursor=result.nextCursor)
            tools.extend(result.tools)

        allow = set(self.config.tool_filter) if self.config.tool_filter is not None else None
        self._tools = [
            AdapterToolDefinition(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
                is_write=classify_is_write(tool, self.config.write_tools),
            )
            for tool in tools
            if allow is None or tool.name in allow
        ]

        self._resources = []
        if supports_resources:
            listed = await session.list_resources()
            self._resources = [
                AdapterResourceDefinition(
                    uri=str(resource.uri),
                    name=resource.name,
                    description=resource.description or "",
                    mime_type=resource.mimeType,
                )
                for resource in listed.resources
            ]

    async def shutdown(self) -> None:
        """Close the upstream connection. Safe to call repeatedly."""
        runner, self._runner = self._runner, None
        if runner is None:
            return
        if self._closing is not None:
            self._closing.set()
        if runner.done():
            return
        try:
            await runner
        except Exception as exc:
            logger.warning("[adapter:%s] error during shutdown: %s", self.config.id, exc)
        logger.info("[adapter:%s] shut down", self.config.id)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def get_tools(self) -> List[AdapterToolDefinition]:
        return list(self._tools)

    def get_resources(self) -> List[AdapterResourceDefinition]:
        return list(self._resources)

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError(f"Adapter '{self.config.id}' is not connected")
        return self._session

    async def call_tool(self, name: str, args: Dict[str, Any]) -> CallToolResult:
        session = self._require_session()
        timeout = (
            timedelta(seconds=self.config.timeout_seconds)
            if self.config.timeout_seconds
            else None
        )
        return await session.call_tool(name, args, read_timeout_seconds=timeout)

    async def read_resource(self, uri: str) -> ReadResourceResult:
        session = self._require_session()
        return await session.read_resource(AnyUrl(uri))
