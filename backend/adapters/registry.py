"""
Adapter registry.

Owns every configured upstream adapter, initializes them concurrently with
per-adapter fault isolation, merges their catalogs into the sources table
and mounts their tools/resources on an outward ToolSurface under a stable
per-adapter namespace.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from mcp import types
from pydantic import AnyUrl

from analytics import ToolCallTracker, get_tool_call_tracker
from config import URI_SCHEME, load_adapter_configs
from db.routing import ContextRouter, get_context_router
from tools.surface import ToolSurface, error_result

from .mcp_proxy import McpProxyAdapter
from .types import AdapterConfig, AdapterHealth, SourceAdapter

logger = logging.getLogger(__name__)


def adapter_resource_uri(adapter_id: str, original_uri: str) -> str:
    """Synthetic outward URI that hides the upstream's own identifier."""
    return f"{URI_SCHEME}://adapter/{adapter_id}/{original_uri}"


def rewrite_resource_contents(result: types.ReadResourceResult, uri: str) -> types.ReadResourceResult:
    """Point every returned content block at the synthetic URI."""
    outward = AnyUrl(uri)
    return result.model_copy(
        update={"contents": [item.model_copy(update={"uri": outward}) for item in result.contents]}
    )


class AdapterRegistry:
    """The set of upstream adapters for this process."""

    def __init__(
        self,
        configs: Iterable[AdapterConfig] = (),
        router: Optional[ContextRouter] = None,
        tracker: Optional[ToolCallTracker] = None,
        adapter_factory: Callable[[AdapterConfig], SourceAdapter] = McpProxyAdapter,
    ) -> None:
        self._router = router
        self._tracker = tracker
        self._adapters: Dict[str, SourceAdapter] = {}
        self._live: set = set()
        self._initialized = False
        self._init_lock = asyncio.Lock()
        for config in configs:
            self.add_adapter(adapter_factory(config))

    @property
    def router(self) -> ContextRouter:
        return self._router or get_context_router()

    @property
    def tracker(self) -> ToolCallTracker:
        return self._tracker or get_tool_call_tracker()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def add_adapter(self, adapter: SourceAdapter) -> None:
        adapter_id = adapter.config.id
        if adapter_id in self._adapters:
            raise ValueError(f"Adapter '{adapter_id}' is already registered.")
        self._adapters[adapter_id] = adapter

    def get_adapter(self, adapter_id: str) -> Optional[SourceAdapter]:
        return self._adapters.get(adapter_id)

    def enabled_adapters(self) -> List[SourceAdapter]:
        return [adapter for adapter in self._adapters.values() if adapter.config.enabled]

    def live_adapters(self) -> List[SourceAdapter]:
        return [adapter for adapter in self.enabled_adapters() if adapter.config.id in self._live]

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": adapter.config.id,
                "name": adapter.config.name,
                "prefix": adapter.config.prefix,
                "enabled": adapter.config.enabled,
                "live": adapter.config.id in self._live,
                "tool_count": len(adapter.get_tools()),
                "resource_count": len(adapter.get_resources()),
            }
            for adapter in self._adapters.values()
        ]

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def ensure_initialized(self) -> None:
        """Bring up every enabled adapter once; later calls return immediately."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            try:
                health = await asyncio.gather(
                    *(self._initialize_one(adapter) for adapter in self.enabled_adapters())
                )
                for record in health:
                    await self.tracker.record_adapter_health(record)
                self.router.invalidate()
                self.tracker.resolver.invalidate()
                await self.sync_sources_to_db()
            finally:
                self._initialized = True

    async def _initialize_one(self, adapter: SourceAdapter) -> AdapterHealth:
        adapter_id = adapter.config.id
        started = time.perf_counter()
        try:
            await adapter.initialize()
        except Exception as exc:
            elapsed = int((time.perf_counter() - started) * 1000)
            logger.error("[adapter:%s] failed to initialize: %s", adapter_id, exc)
            return AdapterHealth(
                adapter_id=adapter_id,
                status="down",
                init_duration_ms=elapsed,
                error_message=str(exc) or type(exc).__name__,
            )
        elapsed = int((time.perf_counter() - started) * 1000)
        self._live.add(adapter_id)
        tools, resources = adapter.get_tools(), adapter.get_resources()
        logger.info(
            "[adapter:%s] initialized in %dms: %d tool(s), %d resource(s)",
            adapter_id,
            elapsed,
            len(tools),
            len(resources),
        )
        return AdapterHealth(
            adapter_id=adapter_id,
            status="up",
            init_duration_ms=elapsed,
            tool_count=len(tools),
            resource_count=len(resources),
        )

    async def sync_sources_to_db(self) -> None:
        """
        Merge adapter catalogs into the store.

        One source per enabled adapter, one logical source per configured
        account, and every configured routing rule ensured with set-rule
        semantics so user reordering is never overwritten.
        """
        router = self.router
        for adapter in self.enabled_adapters():
            config = adapter.config
            tool_names = [f"{config.prefix}{tool.name}" for tool in adapter.get_tools()]
            resource_uris = [
                adapter_resource_uri(config.id, resource.uri) for resource in adapter.get_resources()
            ]
            await router.register_source(
                config.id, config.name, config.description, tool_names, resource_uris
            )
            for hint in config.rules:
                await router.set_rule(hint.context, config.id, hint.reason)

            for account in config.accounts:
                description = (
                    f"{account.description} " if account.description else ""
                ) + f"Pass account=\"{account.account}\" to the {config.name} tools."
                await router.register_source(account.id, account.name, description, tool_names, [])
                for hint in account.rules:
                    await router.set_rule(hint.context, account.id, hint.reason)

    # ------------------------------------------------------------------
    # Mounting
    # ------------------------------------------------------------------

    def register_on_server(self, surface: ToolSurface, read_only: bool = False) -> int:
        """
        Mount every live adapter's tools and resources on `surface`.

        Write tools are skipped entirely when `read_only` is set.

        Returns:
            Number of tools mounted
        """
        mounted = 0
        for adapter in self.live_adapters():
            config = adapter.config
            for tool in adapter.get_tools():
                if read_only and tool.is_write:
                    continue
                prefixed = f"{config.prefix}{tool.name}"
                try:
                    added = surface.add_tool(
                        prefixed,
                        tool.description,
                        tool.input_schema,
                        self._tool_handler(adapter, tool.name, prefixed),
                        is_write=tool.is_write,
                    )
                except ValueError as exc:
                    logger.warning("[adapter:%s] skipping tool %s: %s", config.id, prefixed, exc)
                    continue
                mounted += int(added)

            for resource in adapter.get_resources():
                synthetic = adapter_resource_uri(config.id, resource.uri)
                try:
                    surface.add_resource(
                        synthetic,
                        f"{config.prefix}{resource.name}",
                        resource.description,
                        self._resource_reader(adapter, resource.uri, synthetic),
                        mime_type=resource.mime_type,
                    )
                except ValueError as exc:
                    logger.warning(
                        "[adapter:%s] skipping resource %s: %s", config.id, resource.uri, exc
                    )
        return mounted

    @staticmethod
    def _tool_handler(adapter: SourceAdapter, name: str, prefixed: str):
        async def handler(arguments: Dict[str, Any]) -> types.CallToolResult:
            try:
                return await adapter.call_tool(name, arguments)
            except Exception as exc:
                logger.warning("[adapter:%s] %s failed: %s", adapter.config.id, prefixed, exc)
                return error_result(f"Error calling {prefixed}: {exc}")

        return handler

    @staticmethod
    def _resource_reader(adapter: SourceAdapter, original_uri: str, synthetic_uri: str):
        async def reader() -> types.ReadResourceResult:
            result = await adapter.read_resource(original_uri)
            return rewrite_resource_contents(result, synthetic_uri)

        return reader

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown_all(self) -> None:
        """Close every adapter; a failure to close one is logged and skipped."""

        async def _close(adapter: SourceAdapter) -> None:
            try:
                await adapter.shutdown()
            except Exception as exc:
                logger.warning("[adapter:%s] shutdown failed: %s", adapter.config.id, exc)

        await asyncio.gather(*(_close(adapter) for adapter in self._adapters.values()))
        self._live.clear()


# =============================================================================
# Global Singleton
# =============================================================================

_registry: Optional[AdapterRegistry] = None


def get_adapter_registry() -> AdapterRegistry:
    """Registry built from the adapter YAML on first use."""
    global _registry
    if _registry is None:
        _registry = AdapterRegistry(load_adapter_configs())
    return _registry


def reset_adapter_registry() -> None:
    global _registry
    _registry = None
