from .types import (
    AccountConfig,
    AdapterConfig,
    AdapterResourceDefinition,
    AdapterToolDefinition,
    HttpTransport,
    StdioTransport,
)

__all__ = [
    "AccountConfig",
    "AdapterConfig",
    "AdapterResourceDefinition",
    "AdapterToolDefinition",
    "HttpTransport",
    "StdioTransport",
]
