from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
from mcp import types

from adapters.registry import AdapterRegistry, adapter_resource_uri, rewrite_resource_contents
from adapters.types import (
    AdapterConfig,
    AdapterResourceDefinition,
    AdapterToolDefinition,
)
from analytics import ToolCallTracker
from db.routing import ContextRouter, RoutingGuideCache
from db.sqlite_client import SQLiteClient
from tools.surface import ToolSurface, normalize_uri


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _config(adapter_id: str, **overrides: Any) -> AdapterConfig:
    payload: Dict[str, Any] = {
        "id": adapter_id,
        "name": adapter_id.title(),
        "prefix": f"{adapter_id}-",
        "transport": {"type": "stdio", "command": f"{adapter_id}-mcp"},
    }
    payload.update(overrides)
    return AdapterConfig.model_validate(payload)


def _schema() -> Dict[str, Any]:
    return {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]}


class _FakeAdapter:
    def __init__(
        self,
        config: AdapterConfig,
        tools: Sequence[AdapterToolDefinition] = (),
        resources: Sequence[AdapterResourceDefinition] = (),
        fail_with: Optional[Exception] = None,
        call_error: Optional[Exception] = None,
        shutdown_error: Optional[Exception] = None,
    ) -> None:
        self.config = config
        self._tools = list(tools)
        self._resources = list(resources)
        self.fail_with = fail_with
        self.call_error = call_error
        self.shutdown_error = shutdown_error
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.shutdowns = 0
        self.ready = False

    async def initialize(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.ready = True

    def get_tools(self) -> List[AdapterToolDefinition]:
        return list(self._tools) if self.ready else []

    def get_resources(self) -> List[AdapterResourceDefinition]:
        return list(self._resources) if self.ready else []

    async def call_tool(self, name: str, args: Dict[str, Any]) -> types.CallToolResult:
        self.calls.append((name, args))
        if self.call_error is not None:
            raise self.call_error
        if name == "fails-upstream":
            return types.CallToolResult(
                content=[types.TextContent(type="text", text="rate limited")], isError=True
            )
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=f"{self.config.id}:{name}:{args}")]
        )

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        return types.ReadResourceResult(
            contents=[types.TextResourceContents(uri=uri, text=f"contents of {uri}", mimeType="text/plain")]
        )

    async def shutdown(self) -> None:
        self.shutdowns += 1
        if self.shutdown_error is not None:
            raise self.shutdown_error


async def _store(tmp_path: Path) -> Tuple[SQLiteClient, ContextRouter, ToolCallTracker]:
    client = SQLiteClient(_sqlite_url(tmp_path / "registry.db"))
    await client.init_db()
    router = ContextRouter(client, guide_cache=RoutingGuideCache(60))
    tracker = ToolCallTracker(client)
    router.add_invalidation_listener(tracker.resolver.invalidate)
    return client, router, tracker


def _registry(
    adapters: Sequence[_FakeAdapter], router: ContextRouter, tracker: ToolCallTracker
) -> AdapterRegistry:
    by_id = {adapter.config.id: adapter for adapter in adapters}
    return AdapterRegistry(
        [adapter.config for adapter in adapters],
        router=router,
        tracker=tracker,
        adapter_factory=lambda config: by_id[config.id],
    )


@pytest.mark.asyncio
async def test_failing_adapter_does_not_block_the_others(tmp_path: Path) -> None:
    client, router, tracker = await _store(tmp_path)
    healthy = _FakeAdapter(
        _config("docs"), tools=[AdapterToolDefinition("search", "Search docs", _schema())]
    )
    broken = _FakeAdapter(_config("mail"), fail_with=ConnectionError("spawn failed"))
    registry = _registry([healthy, broken], router, tracker)
    try:
        await registry.ensure_initialized()
        surface = ToolSurface()
        mounted = registry.register_on_server(surface)
        result = await surface.call_tool("docs-search", {"q": "routing"})
        health = {row["adapter_id"]: row for row in await client.latest_adapter_health()}
        described = registry.describe()
    finally:
        await registry.shutdown_all()
        await client.close()

    assert registry.initialized is True
    assert mounted == 1
    assert surface.tool_names() == ["docs-search"]
    assert result.isError is False
    assert healthy.calls == [("search", {"q": "routing"})]
    assert health["docs"]["status"] == "up"
    assert health["docs"]["tool_count"] == 1
    assert health["mail"]["status"] == "down"
    assert "spawn failed" in health["mail"]["error_message"]
    assert [item["id"] for item in described if item["live"]] == ["docs"]


@pytest.mark.asyncio
async def test_ensure_initialized_runs_once(tmp_path: Path) -> None:
    client, router, tracker = await _store(tmp_path)
    adapter = _FakeAdapter(_config("docs"))
    registry = _registry([adapter], router, tracker)
    try:
        await registry.ensure_initialized()
        await registry.ensure_initialized()
        history = await client.adapter_health_history("docs")
    finally:
        await registry.shutdown_all()
        await client.close()

    assert len(history) == 1


@pytest.mark.asyncio
async def test_disabled_adapters_are_never_started(tmp_path: Path) -> None:
    client, router, tracker = await _store(tmp_path)
    adapter = _FakeAdapter(_config("docs", enabled=False))
    registry = _registry([adapter], router, tracker)
    try:
        await registry.ensure_initialized()
        source = await client.get_source("docs")
    finally:
        await client.close()

    assert adapter.ready is False
    assert source is None


@pytest.mark.asyncio
async def test_read_only_mount_skips_write_tools(tmp_path: Path) -> None:
    client, router, tracker = await _store(tmp_path)
    adapter = _FakeAdapter(
        _config("docs"),
        tools=[
            AdapterToolDefinition("search", "", _schema(), is_write=False),
            AdapterToolDefinition("publish", "", _schema(), is_write=True),
        ],
    )
    registry = _registry([adapter], router, tracker)
    try:
        await registry.ensure_initialized()
        read_only = ToolSurface(read_only=True)
        full = ToolSurface()
        registry.register_on_server(read_only, read_only=True)
        registry.register_on_server(full)
        blocked = await read_only.call_tool("docs-publish", {"q": "x"})
    finally:
        await registry.shutdown_all()
        await client.close()

    assert read_only.tool_names() == ["docs-search"]
    assert sorted(full.tool_names()) == ["docs-publish", "docs-search"]
    assert blocked.isError is True
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_upstream_failures_come_back_as_error_results(tmp_path: Path) -> None:
    client, router, tracker = await _store(tmp_path)
    raising = _FakeAdapter(
        _config("docs"),
        tools=[AdapterToolDefinition("search", "", _schema())],
        call_error=TimeoutError("upstream timed out"),
    )
    reporting = _FakeAdapter(
        _config("mail"), tools=[AdapterToolDefinition("fails-upstream", "", {})]
    )
    registry = _registry([raising, reporting], router, tracker)
    try:
        await registry.ensure_initialized()
        surface = ToolSurface()
        registry.register_on_server(surface)
        wrapped = await surface.call_tool("docs-search", {"q": "x"})
        passed_through = await surface.call_tool("mail-fails-upstream", {})
        invalid = await surface.call_tool("docs-search", {})
    finally:
        await registry.shutdown_all()
        await client.close()

    assert wrapped.isError is True
    assert wrapped.content[0].text == "Error calling docs-search: upstream timed out"
    assert passed_through.isError is True
    assert passed_through.content[0].text == "rate limited"
    assert invalid.isError is True
    assert "docs-search" in invalid.content[0].text
    assert raising.calls == [("search", {"q": "x"})]


@pytest.mark.asyncio
async def test_resources_are_exposed_under_synthetic_uris(tmp_path: Path) -> None:
    client, router, tracker = await _store(tmp_path)
    adapter = _FakeAdapter(
        _config("docs"),
        resources=[AdapterResourceDefinition("file:///notes/readme.md", "readme", "Readme")],
    )
    registry = _registry([adapter], router, tracker)
    synthetic = adapter_resource_uri("docs", "file:///notes/readme.md")
    try:
        await registry.ensure_initialized()
        surface = ToolSurface()
        registry.register_on_server(surface)
        contents = await surface.read_resource(synthetic)
        source = await client.get_source("docs")
    finally:
        await registry.shutdown_all()
        await client.close()

    assert synthetic == "switchyard://adapter/docs/file:///notes/readme.md"
    assert surface.resource_uris() == [synthetic]
    assert contents[0].content == "contents of file:///notes/readme.md"
    assert source["resources"] == [synthetic]


def test_rewritten_resource_contents_point_at_the_synthetic_uri() -> None:
    original = types.ReadResourceResult(
        contents=[
            types.TextResourceContents(uri="file:///a.md", text="a", mimeType="text/markdown"),
            types.BlobResourceContents(uri="file:///b.png", blob="aGk=", mimeType="image/png"),
        ]
    )
    synthetic = adapter_resource_uri("docs", "file:///a.md")

    rewritten = rewrite_resource_contents(original, synthetic)

    assert {str(item.uri) for item in rewritten.contents} == {normalize_uri(synthetic)}
    assert rewritten.contents[0].text == "a"
    assert rewritten.contents[1].blob == "aGk="


@pytest.mark.asyncio
async def test_catalog_sync_keeps_user_ordering(tmp_path: Path) -> None:
    client, router, tracker = await _store(tmp_path)
    adapter = _FakeAdapter(
        _config("docs", rules=[{"context": "code", "reason": "API docs"}]),
        tools=[AdapterToolDefinition("search", "", _schema())],
    )
    registry = _registry([adapter], router, tracker)
    try:
        await registry.ensure_initialized()
        initial = await router.get_routing("code")
        await router.reorder("code", ["docs", "kb-bookmarks", "kb-notes"])
        await registry.sync_sources_to_db()
        after_sync = await router.get_routing("code")
        source = await client.get_source("docs")
    finally:
        await registry.shutdown_all()
        await client.close()

    assert [(rule.source_id, rule.priority) for rule in initial.rules][-1] == ("docs", 3)
    assert [rule.source_id for rule in after_sync.rules] == [
        "docs",
        "kb-bookmarks",
        "kb-notes",
    ]
    assert source["tools"] == ["docs-search"]


@pytest.mark.asyncio
async def test_accounts_become_logical_sources(tmp_path: Path) -> None:
    client, router, tracker = await _store(tmp_path)
    adapter = _FakeAdapter(
        _config(
            "google",
            name="Google",
            accounts=[
                {
                    "id": "google-work",
                    "name": "Work Google",
                    "account": "me@work.example.com",
                    "rules": [{"context": "product-and-project-strategy", "reason": "work docs"}],
                },
                {"id": "google-personal", "name": "Personal Google", "account": "me@example.com"},
            ],
        ),
        tools=[AdapterToolDefinition("search_drive", "", _schema())],
    )
    registry = _registry([adapter], router, tracker)
    try:
        await registry.ensure_initialized()
        work = await client.get_source("google-work")
        personal = await client.get_source("google-personal")
        strategy = await router.get_routing("product-and-project-strategy")
    finally:
        await registry.shutdown_all()
        await client.close()

    assert work["tools"] == ["google-search_drive"]
    assert work["description"].endswith('Pass account="me@work.example.com" to the Google tools.')
    assert personal["description"] == 'Pass account="me@example.com" to the Google tools.'
    assert [rule.source_id for rule in strategy.rules] == ["kb-notes", "google-work"]


@pytest.mark.asyncio
async def test_proxied_calls_are_recorded_against_their_source(tmp_path: Path) -> None:
    client, router, tracker = await _store(tmp_path)
    adapter = _FakeAdapter(
        _config("docs"), tools=[AdapterToolDefinition("search", "", _schema())]
    )
    registry = _registry([adapter], router, tracker)
    try:
        await registry.ensure_initialized()
        surface = ToolSurface(tracker=tracker)
        registry.register_on_server(surface)
        await surface.call_tool("docs-search", {"q": "one"})
        await surface.call_tool("docs-search", {})
        stats = await client.usage_stats("24h")
    finally:
        await registry.shutdown_all()
        await client.close()

    assert stats["total_calls"] == 2
    assert stats["errors"] == 1
    assert stats["by_source"] == {"docs": 2}
    assert stats["by_auth_level"] == {"full": 2}


@pytest.mark.asyncio
async def test_shutdown_all_survives_a_failing_adapter(tmp_path: Path) -> None:
    client, router, tracker = await _store(tmp_path)
    noisy = _FakeAdapter(_config("docs"), shutdown_error=RuntimeError("already gone"))
    quiet = _FakeAdapter(_config("mail"))
    registry = _registry([noisy, quiet], router, tracker)
    try:
        await registry.ensure_initialized()
        await registry.shutdown_all()
    finally:
        await client.close()

    assert noisy.shutdowns == 1
    assert quiet.shutdowns == 1
    assert registry.live_adapters() == []


def test_duplicate_adapter_ids_are_rejected() -> None:
    adapter = _FakeAdapter(_config("docs"))
    registry = AdapterRegistry(adapter_factory=lambda config: adapter)
    registry.add_adapter(adapter)

    with pytest.raises(ValueError, match="already registered"):
        registry.add_adapter(_FakeAdapter(_config("docs")))
