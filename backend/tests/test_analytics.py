from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from mcp import types

from adapters.types import AdapterHealth
from analytics import ToolCallTracker, estimate_tokens, request_size, response_size
from db.sqlite_client import SQLiteClient, ToolCall


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def test_token_estimate_is_a_quarter_of_the_response_size() -> None:
    assert estimate_tokens(0) == 0
    assert estimate_tokens(400) == 100
    assert estimate_tokens(-5) == 0


def test_sizes_count_arguments_and_text_blocks() -> None:
    result = types.CallToolResult(
        content=[
            types.TextContent(type="text", text="abcd"),
            types.ImageContent(type="image", data="aGk=", mimeType="image/png"),
            types.TextContent(type="text", text="ef"),
        ]
    )

    assert request_size(None) == 0
    assert request_size({"q": "x"}) == len('{"q": "x"}')
    assert response_size(result) == 6


@pytest.mark.asyncio
async def test_calls_are_recorded_and_filtered(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "analytics.db"))
    await client.init_db()
    tracker = ToolCallTracker(client)
    try:
        await tracker.record_tool_call(
            tool_name="search-notes", auth_level="full", status="success", duration_ms=12,
            response_size=80,
        )
        await tracker.record_tool_call(
            tool_name="gh-search", auth_level="readonly", status="error", duration_ms=30,
            error_message="x" * 900,
        )
        errors = await client.tool_call_log("24h", status="error")
        stats = await client.usage_stats("all")
    finally:
        await client.close()

    assert errors["total"] == 1
    [call] = errors["calls"]
    assert call["tool_name"] == "gh-search"
    assert call["source_id"] is None
    assert len(call["error_message"]) == 500
    assert stats["token_estimate"] == 20
    assert stats["by_source"] == {"kb-notes": 1, "unknown": 1}


@pytest.mark.asyncio
async def test_recording_failures_never_propagate(tmp_path: Path, monkeypatch) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "analytics.db"))
    await client.init_db()
    tracker = ToolCallTracker(client)

    async def _broken_insert(**values):
        raise RuntimeError("disk full")

    monkeypatch.setattr(client, "insert_tool_call", _broken_insert)
    monkeypatch.setattr(client, "insert_adapter_health", _broken_insert)
    try:
        await tracker.record_tool_call(
            tool_name="search-notes", auth_level="full", status="success", duration_ms=1
        )
        await tracker.record_adapter_health(AdapterHealth("docs", "down", 5, error_message="boom"))
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_prune_drops_rows_older_than_the_retention_window(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "analytics.db"))
    await client.init_db()
    tracker = ToolCallTracker(client)
    old = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=45)
    try:
        async with client.session() as session:
            session.add(ToolCall(tool_name="old", status="success", called_at=old))
            session.add(ToolCall(tool_name="new", status="success"))
        await tracker.record_adapter_health(AdapterHealth("docs", "up", 8, tool_count=3))
        removed = await tracker.prune(30)
        remaining = await client.tool_call_log("all")
        health = await client.latest_adapter_health()
    finally:
        await client.close()

    assert removed == {"tool_calls": 1, "adapter_health": 0}
    assert [call["tool_name"] for call in remaining["calls"]] == ["new"]
    assert health[0]["tool_count"] == 3
