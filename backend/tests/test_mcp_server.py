import json
from pathlib import Path

import pytest

import adapters.registry as registry_module
import analytics as analytics_module
import db.routing as routing_module
import db.sqlite_client as sqlite_client_module
from adapters.registry import AdapterRegistry
from analytics import get_tool_call_tracker
from db.sqlite_client import get_sqlite_client
from mcp_server import create_server, create_surface, parse_args, shutdown, startup
from tools.sources import ROUTING_GUIDE_URI

READ_TOOLS = {"search-notes", "get-note", "search-bookmarks", "get-source-routing", "list-sources"}


@pytest.fixture
def gateway_env(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")
    monkeypatch.setenv("ADAPTERS_CONFIG", str(tmp_path / "missing-adapters.yaml"))
    monkeypatch.delenv("DB_MIGRATION_LOCK_FILE", raising=False)
    monkeypatch.setattr(sqlite_client_module, "_sqlite_client", None)
    monkeypatch.setattr(routing_module, "_context_router", None)
    monkeypatch.setattr(analytics_module, "_tracker", None)
    monkeypatch.setattr(registry_module, "_registry", None)
    return tmp_path


def _payload(result) -> dict:
    return json.loads(result.content[0].text)


def test_read_only_surface_lists_only_read_tools() -> None:
    read_only = create_surface(read_only=True)
    full = create_surface()

    assert set(read_only.tool_names()) == READ_TOOLS
    assert len(full.tool_names()) == 15
    assert all(not tool.annotations.destructiveHint for tool in read_only.list_tools())
    assert full.get_tool("delete-note").is_write is True


@pytest.mark.asyncio
async def test_write_tools_cannot_be_called_on_a_read_only_surface() -> None:
    surface = create_surface(read_only=True)

    result = await surface.call_tool("create-note", {"title": "t", "content": "c"})

    assert result.isError is True
    assert result.content[0].text == "Unknown tool: create-note"


def test_server_is_named_after_the_gateway() -> None:
    assert create_server(read_only=True).name == "switchyard"


def test_parse_args_read_only_flag() -> None:
    assert parse_args([]).read_only is False
    assert parse_args(["--read-only"]).read_only is True


@pytest.mark.asyncio
async def test_note_lifecycle_through_the_surface(gateway_env: Path) -> None:
    registry = await startup(AdapterRegistry())
    try:
        surface = create_surface(registry=registry)
        created = _payload(
            await surface.call_tool(
                "create-note",
                {"title": "Gateway plan", "content": "Route code questions to github", "tags": ["mcp"]},
            )
        )
        note_id = created["note"]["id"]
        found = _payload(await surface.call_tool("search-notes", {"query": "github"}))
        updated = _payload(
            await surface.call_tool("update-note", {"id": note_id, "tags": ["mcp", "routing"]})
        )
        deleted = _payload(await surface.call_tool("delete-note", {"id": note_id}))
        missing = await surface.call_tool("get-note", {"id": note_id})
    finally:
        await shutdown(registry)

    assert created["ok"] is True
    assert created["note"]["tags"] == ["mcp"]
    assert [note["id"] for note in found["notes"]] == [note_id]
    assert updated["note"]["tags"] == ["mcp", "routing"]
    assert updated["note"]["title"] == "Gateway plan"
    assert deleted["ok"] is True
    assert missing.isError is True
    assert _payload(missing) == {"ok": False, "error": f"Note {note_id} not found."}


@pytest.mark.asyncio
async def test_saving_a_bookmark_twice_updates_it(gateway_env: Path) -> None:
    registry = await startup(AdapterRegistry())
    try:
        surface = create_surface(registry=registry)
        first = _payload(
            await surface.call_tool("save-bookmark", {"url": "https://modelcontextprotocol.io"})
        )
        second = _payload(
            await surface.call_tool(
                "save-bookmark",
                {"url": "https://modelcontextprotocol.io", "title": "MCP", "tags": ["protocol"]},
            )
        )
        tagged = _payload(await surface.call_tool("search-bookmarks", {"tag": "protocol"}))
    finally:
        await shutdown(registry)

    assert first["bookmark"]["title"] == "https://modelcontextprotocol.io"
    assert second["bookmark"]["id"] == first["bookmark"]["id"]
    assert second["bookmark"]["title"] == "MCP"
    assert tagged["count"] == 1


@pytest.mark.asyncio
async def test_routing_tools_answer_and_validate(gateway_env: Path) -> None:
    registry = await startup(AdapterRegistry())
    try:
        surface = create_surface(registry=registry)
        routing = await surface.call_tool("get-source-routing", {"context": "code"})
        missing_argument = await surface.call_tool("get-source-routing", {})
        unknown_source = await surface.call_tool(
            "set-source-rule", {"context": "code", "source_id": "nope"}
        )
        added = _payload(
            await surface.call_tool(
                "set-source-rule",
                {"context": "code", "source_id": "ext-writings", "reason": "engineering blog"},
            )
        )
        listing = _payload(await surface.call_tool("list-sources", {}))
    finally:
        await shutdown(registry)

    assert routing.isError is False
    assert routing.content[0].text.startswith('Source routing for "code":')
    assert missing_argument.isError is True
    assert missing_argument.content[0].text.startswith("get-source-routing:")
    assert unknown_source.isError is True
    assert "Source 'nope' not found" in _payload(unknown_source)["error"]
    assert added["message"] == "Added rule code -> ext-writings at priority 3."
    assert {source["id"] for source in listing["sources"]} == {
        "ext-writings",
        "kb-bookmarks",
        "kb-notes",
    }


@pytest.mark.asyncio
async def test_resources_render_guide_and_knowledge_base_stats(gateway_env: Path) -> None:
    registry = await startup(AdapterRegistry())
    try:
        surface = create_surface(registry=registry)
        await surface.call_tool("create-note", {"title": "n", "content": "c", "tags": ["mcp"]})
        guide = await surface.read_resource(ROUTING_GUIDE_URI)
        stats = await surface.read_resource("switchyard://kb/stats")
        tags = await surface.read_resource("switchyard://kb/tags")
    finally:
        await shutdown(registry)

    assert guide[0].mime_type == "text/markdown"
    assert guide[0].content.startswith("# Source Routing Guide")
    assert json.loads(stats[0].content)["notes"] == 1
    assert json.loads(tags[0].content) == {"mcp": 1}


@pytest.mark.asyncio
async def test_native_calls_are_recorded_with_their_source(gateway_env: Path) -> None:
    registry = await startup(AdapterRegistry())
    try:
        surface = create_surface(read_only=True, registry=registry, tracker=get_tool_call_tracker())
        await surface.call_tool("search-notes", {"query": "anything"})
        await surface.call_tool("get-note", {"id": 404})
        stats = await get_sqlite_client().usage_stats("24h")
    finally:
        await shutdown(registry)

    by_tool = {item["tool_name"]: item for item in stats["by_tool"]}
    assert stats["total_calls"] == 2
    assert stats["by_auth_level"] == {"readonly": 2}
    assert by_tool["search-notes"]["source_id"] == "kb-notes"
    assert by_tool["get-note"]["errors"] == 1
