"""
Context routing engine.

Answers "which sources, in what order, for context X" and edits the rule
set while keeping each context's priorities a dense 1..N sequence. Every
committed mutation invalidates the routing-guide cache and notifies any
registered listeners (e.g. the tool-name to source resolver).
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import EXTERNAL_SOURCE_PREFIX, FALLBACK_CONTEXT, load_gateway_config
from .sqlite_client import (
    Context,
    Source,
    SourceRule,
    SQLiteClient,
    get_sqlite_client,
    join_csv,
    source_to_dict,
    split_csv,
)

logger = logging.getLogger(__name__)


def is_external_source(source_id: str) -> bool:
    """External-only sources are hints for separately managed integrations."""
    return source_id.startswith(EXTERNAL_SOURCE_PREFIX)


@dataclass
class RoutingRule:
    context: str
    source_id: str
    source_name: str
    priority: int
    reason: str
    tools: List[str] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)

    @property
    def external(self) -> bool:
        return is_external_source(self.source_id)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["external"] = self.external
        return payload


@dataclass
class RoutingAnswer:
    """Result of a routing lookup.

    `resolved_context` is the context whose rules were returned: the
    requested one, the fallback context, or None when neither has rules.
    """

    context: str
    resolved_context: Optional[str]
    fallback: bool
    rules: List[RoutingRule]

    @property
    def has_guidance(self) -> bool:
        return bool(self.rules)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "resolved_context": self.resolved_context,
            "fallback": self.fallback,
            "rules": [rule.to_dict() for rule in self.rules],
        }

    def to_text(self, fallback_context: str = FALLBACK_CONTEXT) -> str:
        if not self.rules:
            return (
                f'No routing rules found for context "{self.context}" or '
                f'"{fallback_context}". Use any available tools.'
            )
        lines = []
        for rule in self.rules:
            line = f"{rule.priority}. {rule.source_name}: {rule.reason}"
            if rule.external:
                line += " (external integration, not proxied here)"
            line += (
                f"\n   Tools: {', '.join(rule.tools) or 'none'}"
                f" | Resources: {', '.join(rule.resources) or 'none'}"
            )
            lines.append(line)
        body = "\n\n".join(lines)
        if self.fallback:
            return (
                f'No specific rules for "{self.context}". '
                f"Falling back to {self.resolved_context} routing:\n\n{body}"
            )
        return f'Source routing for "{self.context}":\n\n{body}'


class RoutingGuideCache:
    """Time-bounded memo of the rendered routing guide."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._text: Optional[str] = None
        self._expires_at = 0.0

    def get(self) -> Optional[str]:
        if self._text is None or self._clock() >= self._expires_at:
            return None
        return self._text

    def put(self, text: str) -> None:
        self._text = text
        self._expires_at = self._clock() + self.ttl_seconds

    def invalidate(self) -> None:
        self._text = None
        self._expires_at = 0.0


# =============================================================================
# Renumbering
# =============================================================================


async def renumber(session: AsyncSession, rule_ids: Sequence[int]) -> None:
    """
    Assign priorities 1..N to `rule_ids` (one context) in the given order.

    Rows pass through negative priorities first so UNIQUE(context, priority)
    never sees two rows on the same rank mid-update.
    """
    for phase_sign in (-1, 1):
        for position, rule_id in enumerate(rule_ids, start=1):
            await session.execute(
                update(SourceRule)
                .where(SourceRule.id == rule_id)
                .values(priority=phase_sign * position)
                .execution_options(synchronize_session=False)
            )


async def compact(session: AsyncSession, context: str) -> None:
    """Close any gaps in one context's priority sequence, preserving order."""
    rows = (
        await session.execute(
            select(SourceRule.id, SourceRule.priority)
            .where(SourceRule.context == context)
            .order_by(SourceRule.priority, SourceRule.id)
        )
    ).all()
    if all(row.priority == position for position, row in enumerate(rows, start=1)):
        return
    await renumber(session, [row.id for row in rows])


def _clean(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string.")
    return value.strip()


class ContextRouter:
    """Reads and edits the context -> ranked sources rule set."""

    def __init__(
        self,
        client: SQLiteClient,
        guide_cache: Optional[RoutingGuideCache] = None,
        fallback_context: str = FALLBACK_CONTEXT,
    ) -> None:
        self.client = client
        self.guide_cache = guide_cache or RoutingGuideCache(
            load_gateway_config().routing_guide_ttl_sec
        )
        self.fallback_context = fallback_context
        self._listeners: List[Callable[[], None]] = []

    def add_invalidation_listener(self, listener: Callable[[], None]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def invalidate(self) -> None:
        """Drop every cache derived from the sources/contexts/rules tables."""
        self.guide_cache.invalidate()
        for listener in self._listeners:
            listener()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _rules_for(self, session: AsyncSession, context: str) -> List[RoutingRule]:
        result = await session.execute(
            select(SourceRule, Source)
            .join(Source, Source.id == SourceRule.source_id)
            .where(SourceRule.context == context)
            .order_by(SourceRule.priority)
        )
        return [
            RoutingRule(
                context=rule.context,
                source_id=rule.source_id,
                source_name=source.name,
                priority=rule.priority,
                reason=rule.reason or "",
                tools=split_csv(source.tools),
                resources=split_csv(source.resources),
            )
            for rule, source in result.all()
        ]

    async def get_routing(self, context: str) -> RoutingAnswer:
        """Rules for `context`, else the fallback context's rules, else nothing."""
        context = _clean(context, "context")
        async with self.client.session() as session:
            rules = await self._rules_for(session, context)
            if rules:
                return RoutingAnswer(context, context, False, rules)
            if context != self.fallback_context:
                fallback_rules = await self._rules_for(session, self.fallback_context)
                if fallback_rules:
                    return RoutingAnswer(context, self.fallback_context, True, fallback_rules)
        return RoutingAnswer(context, None, False, [])

    async def list_rules(self, context: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """All rules grouped by context, each group in priority order."""
        async with self.client.session() as session:
            stmt = (
                select(SourceRule, Source)
                .join(Source, Source.id == SourceRule.source_id)
                .order_by(SourceRule.context, SourceRule.priority)
            )
            if context is not None:
                stmt = stmt.where(SourceRule.context == context)
            result = await session.execute(stmt)
            grouped: Dict[str, List[Dict[str, Any]]] = {}
            for rule, source in result.all():
                grouped.setdefault(rule.context, []).append(
                    {
                        "source_id": rule.source_id,
                        "source_name": source.name,
                        "priority": rule.priority,
                        "reason": rule.reason or "",
                        "external": is_external_source(rule.source_id),
                    }
                )
            return grouped

    async def list_contexts(self) -> List[Dict[str, Any]]:
        async with self.client.session() as session:
            counts = dict(
                (
                    await session.execute(
                        select(SourceRule.context, func.count(SourceRule.id)).group_by(
                            SourceRule.context
                        )
                    )
                ).all()
            )
            result = await session.execute(select(Context).order_by(Context.name))
            return [
                {
                    "name": row.name,
                    "description": row.description or "",
                    "rule_count": int(counts.get(row.name, 0)),
                }
                for row in result.scalars().all()
            ]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def set_rule(self, context: str, source_id: str, reason: str = "") -> Dict[str, Any]:
        """
        Upsert a (context, source) rule.

        An existing pair only has its reason updated; a new pair is appended
        at max(priority)+1. Unknown contexts are created on the fly.

        Raises:
            ValueError: If the source does not exist (nothing is written)
        """
        context = _clean(context, "context")
        source_id = _clean(source_id, "source_id")
        reason = (reason or "").strip()
        async with self.client.session() as session:
            if await session.get(Source, source_id) is None:
                available = (
                    await session.execute(select(Source.id).order_by(Source.id))
                ).scalars().all()
                raise ValueError(
                    f"Source '{source_id}' not found. Available: {', '.join(available) or 'none'}"
                )
            if await session.get(Context, context) is None:
                session.add(Context(name=context, description=""))

            existing = (
                await session.execute(
                    select(SourceRule).where(
                        SourceRule.context == context, SourceRule.source_id == source_id
                    )
                )
            ).scalar_one_or_none()
            if existing is not None:
                existing.reason = reason
                created = False
                priority = existing.priority
            else:
                max_priority = (
                    await session.execute(
                        select(func.max(SourceRule.priority)).where(SourceRule.context == context)
                    )
                ).scalar_one()
                priority = int(max_priority or 0) + 1
                session.add(
                    SourceRule(context=context, source_id=source_id, priority=priority, reason=reason)
                )
                created = True
        self.invalidate()
        return {
            "context": context,
            "source_id": source_id,
            "priority": priority,
            "reason": reason,
            "created": created,
        }

    async def delete_rule(self, context: str, source_id: str) -> Dict[str, Any]:
        """
        Remove a rule and compact the remaining priorities of its context.

        Raises:
            LookupError: If the rule does not exist
        """
        context = _clean(context, "context")
        source_id = _clean(source_id, "source_id")
        async with self.client.session() as session:
            result = await session.execute(
                delete(SourceRule).where(
                    SourceRule.context == context, SourceRule.source_id == source_id
                )
            )
            if not result.rowcount:
                raise LookupError(f"No rule for source '{source_id}' in context '{context}'.")
            await compact(session, context)
            remaining = await self._rules_for(session, context)
        self.invalidate()
        return {
            "context": context,
            "deleted": source_id,
            "rules": [rule.to_dict() for rule in remaining],
        }

    async def reorder(self, context: str, source_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """
        Rewrite a context's order so `source_ids[0]` gets priority 1, etc.

        Raises:
            ValueError: If `source_ids` is not exactly the context's current
                source set (missing, extra or duplicated ids); nothing changes
        """
        context = _clean(context, "context")
        submitted = [_clean(source_id, "source_id") for source_id in source_ids]
        duplicates = sorted({sid for sid in submitted if submitted.count(sid) > 1})
        if duplicates:
            raise ValueError(f"Duplicate source ids in reorder: {', '.join(duplicates)}")

        async with self.client.session() as session:
            rows = (
                await session.execute(
                    select(SourceRule.id, SourceRule.source_id).where(SourceRule.context == context)
                )
            ).all()
            existing = {row.source_id: row.id for row in rows}
            if not existing:
                raise ValueError(f"Context '{context}' has no rules to reorder.")
            missing = sorted(set(existing) - set(submitted))
            unknown = sorted(set(submitted) - set(existing))
            if missing or unknown:
                problems = []
                if missing:
                    problems.append(f"missing: {', '.join(missing)}")
                if unknown:
                    problems.append(f"not in context: {', '.join(unknown)}")
                raise ValueError(
                    f"Reorder for '{context}' must list exactly its current sources ({'; '.join(problems)})."
                )
            await renumber(session, [existing[source_id] for source_id in submitted])
            reordered = await self._rules_for(session, context)
        self.invalidate()
        return [rule.to_dict() for rule in reordered]

    async def register_source(
        self,
        source_id: str,
        name: str,
        description: str = "",
        tools: Optional[List[str]] = None,
        resources: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Create or overwrite a source row."""
        source = await self.client.upsert_source(
            _clean(source_id, "source_id"),
            _clean(name, "name"),
            description,
            tools,
            resources,
        )
        self.invalidate()
        return source

    async def describe_context(self, name: str, description: str) -> Dict[str, Any]:
        name = _clean(name, "name")
        async with self.client.session() as session:
            row = await session.get(Context, name)
            if row is None:
                session.add(Context(name=name, description=description or ""))
            else:
                row.description = description or ""
        self.invalidate()
        return {"name": name, "description": description or ""}

    # -------------------------------------------------------------------------
    # Guide
    # -------------------------------------------------------------------------

    async def routing_guide(self) -> str:
        cached = self.guide_cache.get()
        if cached is not None:
            return cached
        text = await self._build_guide()
        self.guide_cache.put(text)
        return text

    async def _build_guide(self) -> str:
        async with self.client.session() as session:
            sources = [
                source_to_dict(row)
                for row in (
                    await session.execute(select(Source).order_by(Source.name, Source.id))
                ).scalars().all()
            ]
            descriptions = {
                row.name: row.description or ""
                for row in (await session.execute(select(Context))).scalars().all()
            }
            result = await session.execute(
                select(SourceRule, Source.name)
                .join(Source, Source.id == SourceRule.source_id)
                .order_by(SourceRule.context, SourceRule.priority)
            )
            grouped: Dict[str, List[Any]] = {}
            for rule, source_name in result.all():
                grouped.setdefault(rule.context, []).append((rule, source_name))

        lines = [
            "# Source Routing Guide",
            "",
            "Use this guide to determine which tools and sources to prioritize "
            "based on the type of question or task.",
            "",
            "## Available Sources",
            "",
        ]
        for source in sources:
            lines.append(f"### {source['name']} (`{source['id']}`)")
            if source["description"]:
                lines.append(source["description"])
            if is_external_source(source["id"]):
                lines.append(
                    "External-only: reachable through a separately managed integration, "
                    "not proxied by this gateway."
                )
            if source["tools"]:
                lines.append(f"Tools: {join_csv(source['tools'])}")
            if source["resources"]:
                lines.append(f"Resources: {join_csv(source['resources'])}")
            lines.append("")

        lines.extend(
            [
                "## Contextual Rules",
                "",
                "Identify the context of the request and follow the priority order "
                f"below (1 = highest). Unlisted contexts fall back to `{self.fallback_context}`.",
                "",
            ]
        )
        for context, rules in grouped.items():
            lines.append(f"### {context}")
            if descriptions.get(context):
                lines.append(f"_{descriptions[context]}_")
            for rule, source_name in rules:
                marker = " (external)" if is_external_source(rule.source_id) else ""
                lines.append(f"{rule.priority}. **{source_name}**{marker}: {rule.reason}")
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"


# =============================================================================
# Global Singleton
# =============================================================================

_context_router: Optional[ContextRouter] = None


def get_context_router() -> ContextRouter:
    """Get the global ContextRouter bound to the global SQLiteClient."""
    global _context_router
    if _context_router is None or _context_router.client is not get_sqlite_client():
        _context_router = ContextRouter(get_sqlite_client())
    return _context_router


def reset_context_router() -> None:
    global _context_router
    _context_router = None
