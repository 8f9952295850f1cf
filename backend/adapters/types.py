"""Shared types for upstream adapters."""

from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field


class StdioTransport(BaseModel):
    """Spawn a local process and speak MCP over its stdin/stdout."""

    type: Literal["stdio"] = "stdio"
    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)


class HttpTransport(BaseModel):
    """Connect to a streamable HTTP MCP endpoint."""

    type: Literal["http"] = "http"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)


Transport = Annotated[Union[StdioTransport, HttpTransport], Field(discriminator="type")]


class RoutingHint(BaseModel):
    context: str
    reason: str = ""


class AccountConfig(BaseModel):
    """A logical account served through a shared upstream connection.

    Callers select the account by passing `account` as a tool argument;
    routing treats each account as its own source.
    """

    id: str
    name: str
    description: str = ""
    account: str
    rules: List[RoutingHint] = Field(default_factory=list)


class AdapterConfig(BaseModel):
    id: str
    name: str
    prefix: str
    description: str = ""
    enabled: bool = True
    transport: Transport
    tool_filter: Optional[List[str]] = None
    write_tools: Optional[List[str]] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    requires_env: List[str] = Field(default_factory=list)
    rules: List[RoutingHint] = Field(default_factory=list)
    accounts: List[AccountConfig] = Field(default_factory=list)


@dataclass
class AdapterToolDefinition:
    name: str
    description: str
    input_schema: Dict[str, Any]
    is_write: bool = False


@dataclass
class AdapterResourceDefinition:
    uri: str
    name: str
    description: str = ""
    mime_type: Optional[str] = None


@dataclass
class AdapterHealth:
    adapter_id: str
    status: Literal["up", "down"]
    init_duration_ms: int
    tool_count: int = 0
    resource_count: int = 0
    error_message: Optional[str] = None


class SourceAdapter(Protocol):
    """What the registry needs from an adapter."""

    config: AdapterConfig

    async def initialize(self) -> None: ...

    def get_tools(self) -> List[AdapterToolDefinition]: ...

    def get_resources(self) -> List[AdapterResourceDefinition]: ...

    async def call_tool(self, name: str, args: Dict[str, Any]) -> Any: ...

    async def read_resource(self, uri: str) -> Any: ...

    async def shutdown(self) -> None: ...
