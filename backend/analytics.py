"""
Call and adapter-health analytics.

Every outward tool call and every adapter initialization attempt lands in
an append-only table. Recording is best-effort: a failing insert is logged
and swallowed so analytics can never break a tool call.
"""

import json
import logging
from typing import Any, Dict, Optional

from mcp.types import CallToolResult, TextContent
from sqlalchemy import select

from adapters.types import AdapterHealth
from db.sqlite_client import Source, SQLiteClient, get_sqlite_client, split_csv

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 500


def estimate_tokens(response_size: int) -> int:
    """Rough token cost: about four characters per token."""
    return int(round(max(0, response_size) / 4))


def request_size(arguments: Optional[Dict[str, Any]]) -> int:
    if not arguments:
        return 0
    return len(json.dumps(arguments, ensure_ascii=False, default=str))


def response_size(result: Optional[CallToolResult]) -> int:
    if result is None:
        return 0
    return sum(len(block.text) for block in result.content if isinstance(block, TextContent))


def _truncate(message: Optional[str]) -> Optional[str]:
    return message[:ERROR_MESSAGE_LIMIT] if message else None


def first_error_text(result: CallToolResult) -> Optional[str]:
    for block in result.content:
        if isinstance(block, TextContent):
            return block.text[:ERROR_MESSAGE_LIMIT]
    return None


class SourceResolver:
    """Cached map from outward tool name to the source that provides it."""

    def __init__(self, client: SQLiteClient) -> None:
        self.client = client
        self._by_tool: Optional[Dict[str, str]] = None

    async def resolve(self, tool_name: str) -> Optional[str]:
        if self._by_tool is None:
            mapping: Dict[str, str] = {}
            async with self.client.session() as session:
                result = await session.execute(
                    select(Source.id, Source.tools).where(Source.tools != "")
                )
                for source_id, tools in result.all():
                    for name in split_csv(tools):
                        mapping.setdefault(name, source_id)
            self._by_tool = mapping
        return self._by_tool.get(tool_name)

    def invalidate(self) -> None:
        self._by_tool = None


class ToolCallTracker:
    def __init__(self, client: SQLiteClient, resolver: Optional[SourceResolver] = None) -> None:
        self.client = client
        self.resolver = resolver or SourceResolver(client)

    async def record_tool_call(
        self,
        *,
        tool_name: str,
        auth_level: str,
        status: str,
        duration_ms: int,
        request_size: int = 0,
        response_size: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            source_id = await self.resolver.resolve(tool_name)
            await self.client.insert_tool_call(
                tool_name=tool_name,
                source_id=source_id,
                auth_level=auth_level,
                status=status,
                duration_ms=int(duration_ms),
                request_size=int(request_size),
                response_size=int(response_size),
                token_estimate=estimate_tokens(response_size),
                error_message=_truncate(error_message),
            )
        except Exception as exc:
            logger.warning("Failed to record tool call %s: %s", tool_name, exc)

    async def record_adapter_health(self, health: AdapterHealth) -> None:
        try:
            await self.client.insert_adapter_health(
                adapter_id=health.adapter_id,
                status=health.status,
                init_duration_ms=int(health.init_duration_ms),
                tool_count=health.tool_count,
                resource_count=health.resource_count,
                error_message=_truncate(health.error_message),
            )
        except Exception as exc:
            logger.warning("Failed to record health for adapter %s: %s", health.adapter_id, exc)

    async def prune(self, retention_days: int) -> Dict[str, int]:
        """Drop analytics rows older than the retention window; never raises."""
        try:
            removed = await self.client.prune_analytics(retention_days)
        except Exception as exc:
            logger.warning("Analytics prune failed: %s", exc)
            return {"tool_calls": 0, "adapter_health": 0}
        if removed["tool_calls"] or removed["adapter_health"]:
            logger.info(
                "Pruned %d tool call(s) and %d health row(s) older than %d day(s)",
                removed["tool_calls"],
                removed["adapter_health"],
                retention_days,
            )
        return removed


# =============================================================================
# Global Singleton
# =============================================================================

_tracker: Optional[ToolCallTracker] = None


def get_tool_call_tracker() -> ToolCallTracker:
    global _tracker
    if _tracker is None or _tracker.client is not get_sqlite_client():
        _tracker = ToolCallTracker(get_sqlite_client())
    return _tracker


def reset_tool_call_tracker() -> None:
    global _tracker
    _tracker = None
