"""
Outward tool/resource surface.

Native tools, routing tools and proxied adapter tools all register here
with a JSON Schema and a read/write flag. A surface built for a read-only
session refuses write tools at registration time, so they are never listed
and never callable. `build_server()` exposes the surface as a low-level MCP
server; the same surface instance is also called directly by tests.
"""

import base64
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type, Union

from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from pydantic import AnyUrl, BaseModel

from adapters.schema_utils import schema_to_validator, validate_arguments
from analytics import ToolCallTracker, first_error_text, request_size, response_size

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Union[str, types.CallToolResult]]]
ResourceReader = Callable[[], Awaitable[Union[str, types.ReadResourceResult]]]


def to_json(payload: Any) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


def tool_response(*, ok: bool, message: str = "", **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok)}
    if message:
        payload["message"] = message
    payload.update(extra)
    return to_json(payload)


def error_result(message: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=message)], isError=True
    )


def tool_error(error: Any, **extra: Any) -> types.CallToolResult:
    """JSON `{"ok": false, "error": ...}` body, flagged as an error result."""
    return error_result(tool_response(ok=False, error=str(error), **extra))


def text_result(text: str) -> types.CallToolResult:
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)])


def normalize_uri(uri: str) -> str:
    """Canonical string form, matching what the MCP layer hands back to us."""
    try:
        return str(AnyUrl(uri))
    except ValueError:
        return uri


@dataclass
class RegisteredTool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler
    validator: Type[BaseModel]
    is_write: bool = False

    def to_mcp(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_schema,
            annotations=types.ToolAnnotations(
                readOnlyHint=not self.is_write,
                destructiveHint=self.is_write,
            ),
        )


@dataclass
class RegisteredResource:
    uri: str
    name: str
    description: str
    reader: ResourceReader
    mime_type: Optional[str] = "text/plain"

    def to_mcp(self) -> types.Resource:
        return types.Resource(
            uri=AnyUrl(self.uri),
            name=self.name,
            description=self.description or None,
            mimeType=self.mime_type,
        )


class ToolSurface:
    """The catalog one client session sees."""

    def __init__(
        self,
        name: str = "switchyard",
        read_only: bool = False,
        tracker: Optional[ToolCallTracker] = None,
    ) -> None:
        self.name = name
        self.read_only = read_only
        self.auth_level = "readonly" if read_only else "full"
        self.tracker = tracker
        self._tools: Dict[str, RegisteredTool] = {}
        self._resources: Dict[str, RegisteredResource] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_tool(
        self,
        name: str,
        description: str,
        input_schema: Optional[Dict[str, Any]],
        handler: ToolHandler,
        is_write: bool = False,
    ) -> bool:
        """
        Register a tool. Returns False when the surface is read-only and the
        tool writes; the tool is then not mounted at all.

        Raises:
            ValueError: If a tool with the same name is already mounted
        """
        if self.read_only and is_write:
            return False
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered.")
        schema = dict(input_schema or {})
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        self._tools[name] = RegisteredTool(
            name=name,
            description=description,
            input_schema=schema,
            handler=handler,
            validator=schema_to_validator(schema, name),
            is_write=is_write,
        )
        return True

    def add_resource(
        self,
        uri: str,
        name: str,
        description: str,
        reader: ResourceReader,
        mime_type: Optional[str] = "text/plain",
    ) -> None:
        key = normalize_uri(uri)
        if key in self._resources:
            raise ValueError(f"Resource '{uri}' is already registered.")
        self._resources[key] = RegisteredResource(
            uri=uri, name=name, description=description, reader=reader, mime_type=mime_type
        )

    def tool_names(self) -> List[str]:
        return list(self._tools)

    def get_tool(self, name: str) -> Optional[RegisteredTool]:
        return self._tools.get(name)

    def resource_uris(self) -> List[str]:
        return [resource.uri for resource in self._resources.values()]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def list_tools(self) -> List[types.Tool]:
        return [tool.to_mcp() for tool in self._tools.values()]

    def list_resources(self) -> List[types.Resource]:
        listed = []
        for resource in self._resources.values():
            try:
                listed.append(resource.to_mcp())
            except ValueError as exc:
                logger.warning("Skipping resource with invalid URI %s: %s", resource.uri, exc)
        return listed

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]]) -> types.CallToolResult:
        """Validate, invoke and record one tool call. Never raises for tool failures."""
        started = time.perf_counter()
        result = await self._dispatch(name, arguments or {})
        if self.tracker is not None:
            await self.tracker.record_tool_call(
                tool_name=name,
                auth_level=self.auth_level,
                status="error" if result.isError else "success",
                duration_ms=int((time.perf_counter() - started) * 1000),
                request_size=request_size(arguments),
                response_size=response_size(result),
                error_message=first_error_text(result) if result.isError else None,
            )
        return result

    async def _dispatch(self, name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return error_result(f"Unknown tool: {name}")
        try:
            validated = validate_arguments(tool.validator, arguments)
        except ValueError as exc:
            return error_result(f"{name}: {exc}")
        try:
            outcome = await tool.handler(validated)
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            return error_result(f"Error calling {name}: {exc}")
        if isinstance(outcome, types.CallToolResult):
            return outcome
        return text_result(str(outcome))

    async def read_resource(self, uri: str) -> List[ReadResourceContents]:
        """
        Raises:
            ValueError: If no resource is mounted at `uri`
        """
        resource = self._resources.get(normalize_uri(uri))
        if resource is None:
            raise ValueError(f"Unknown resource: {uri}")
        outcome = await resource.reader()
        if isinstance(outcome, str):
            return [ReadResourceContents(content=outcome, mime_type=resource.mime_type)]
        contents: List[ReadResourceContents] = []
        for item in outcome.contents:
            if isinstance(item, types.TextResourceContents):
                contents.append(ReadResourceContents(content=item.text, mime_type=item.mimeType))
            else:
                contents.append(
                    ReadResourceContents(
                        content=base64.b64decode(item.blob), mime_type=item.mimeType
                    )
                )
        return contents

    # ------------------------------------------------------------------
    # MCP server
    # ------------------------------------------------------------------

    def build_server(self) -> Server:
        server: Server = Server(self.name)

        @server.list_tools()
        async def _list_tools() -> List[types.Tool]:
            return self.list_tools()

        @server.call_tool(validate_input=False)
        async def _call_tool(name: str, arguments: Dict[str, Any]) -> Iterable[types.ContentBlock]:
            result = await self.call_tool(name, arguments)
            if result.isError:
                # The low-level server turns a raised error into an isError result.
                raise RuntimeError(first_error_text(result) or f"Error calling {name}")
            return result.content

        @server.list_resources()
        async def _list_resources() -> List[types.Resource]:
            return self.list_resources()

        @server.read_resource()
        async def _read_resource(uri: AnyUrl) -> Iterable[ReadResourceContents]:
            return await self.read_resource(str(uri))

        return server
