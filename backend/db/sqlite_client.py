"""
SQLite Client for the Switchyard catalog store

This module implements the persisted state of the gateway:
- Sources, contexts and priority-ordered routing rules
- Native knowledge base (notes with optional FTS5, bookmarks)
- Append-only call and adapter-health logs with retention pruning
"""

import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    delete,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import DEFAULT_DATABASE_URL
from .migration_runner import _extract_sqlite_file_path, apply_pending_migrations

logger = logging.getLogger(__name__)

Base = declarative_base()

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """
    Register explicit sqlite adapters for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _utc_now_naive() -> datetime:
    """Naive UTC datetime, the storage format of every timestamp column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def split_csv(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def join_csv(values: Optional[List[str]]) -> str:
    return ",".join(item.strip() for item in (values or []) if item and item.strip())


ANALYTICS_PERIODS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "all": None,
}


# =============================================================================
# ORM Models
# =============================================================================


class Source(Base):
    """A capability provider: a native tool group, an adapter, or an external hint.

    `tools` and `resources` are comma-joined name lists kept for discovery.
    """

    __tablename__ = "sources"

    id = Column(String(128), primary_key=True)
    name = Column(String(256), nullable=False)
    description = Column(Text, nullable=False, default="", server_default=text("''"))
    tools = Column(Text, nullable=False, default="", server_default=text("''"))
    resources = Column(Text, nullable=False, default="", server_default=text("''"))


class Context(Base):
    """A named task category that routing rules rank sources for."""

    __tablename__ = "contexts"

    name = Column(String(128), primary_key=True)
    description = Column(Text, nullable=False, default="", server_default=text("''"))


class SourceRule(Base):
    """(context, source, priority) with a reason.

    Priorities within one context are always the dense sequence 1..N.
    """

    __tablename__ = "source_rules"
    __table_args__ = (
        UniqueConstraint("context", "source_id", name="uq_source_rules_context_source"),
        UniqueConstraint("context", "priority", name="uq_source_rules_context_priority"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    context = Column(String(128), nullable=False)
    source_id = Column(
        String(128), ForeignKey("sources.id", ondelete="CASCADE"), nullable=False
    )
    priority = Column(Integer, nullable=False, default=1)
    reason = Column(Text, nullable=False, default="", server_default=text("''"))


class Note(Base):
    __tablename__ = "notes"
    __table_args__ = (Index("idx_notes_updated_at", "updated_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    tags = Column(Text, nullable=False, default="", server_default=text("''"))
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive)


class Bookmark(Base):
    __tablename__ = "bookmarks"
    __table_args__ = (Index("idx_bookmarks_created_at", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(Text, nullable=False, unique=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False, default="", server_default=text("''"))
    tags = Column(Text, nullable=False, default="", server_default=text("''"))
    created_at = Column(DateTime, default=_utc_now_naive)


class ToolCall(Base):
    """Append-only log of outward tool invocations."""

    __tablename__ = "tool_calls"
    __table_args__ = (
        Index("idx_tool_calls_called_at", "called_at"),
        Index("idx_tool_calls_tool_name", "tool_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tool_name = Column(String(256), nullable=False)
    source_id = Column(String(128), nullable=True)
    auth_level = Column(String(16), nullable=False, default="full")
    status = Column(String(16), nullable=False)  # success | error
    duration_ms = Column(Integer, nullable=False, default=0)
    request_size = Column(Integer, nullable=False, default=0)
    response_size = Column(Integer, nullable=False, default=0)
    token_estimate = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    called_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class AdapterHealthRecord(Base):
    """Append-only log of adapter initialization attempts."""

    __tablename__ = "adapter_health"
    __table_args__ = (Index("idx_adapter_health_adapter_checked", "adapter_id", "checked_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    adapter_id = Column(String(128), nullable=False)
    status = Column(String(8), nullable=False)  # up | down
    init_duration_ms = Column(Integer, nullable=False, default=0)
    tool_count = Column(Integer, nullable=False, default=0)
    resource_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    checked_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class SchemaMigration(Base):
    """Named migration steps that have changed this store at least once."""

    __tablename__ = "schema_migrations"

    name = Column(String(128), primary_key=True)
    applied_at = Column(Text, nullable=False)


def source_to_dict(source: Source) -> Dict[str, Any]:
    return {
        "id": source.id,
        "name": source.name,
        "description": source.description or "",
        "tools": split_csv(source.tools),
        "resources": split_csv(source.resources),
    }


def _note_to_dict(note: Note) -> Dict[str, Any]:
    return {
        "id": note.id,
        "title": note.title,
        "content": note.content,
        "tags": split_csv(note.tags),
        "created_at": _iso(note.created_at),
        "updated_at": _iso(note.updated_at),
    }


def _bookmark_to_dict(bookmark: Bookmark) -> Dict[str, Any]:
    return {
        "id": bookmark.id,
        "url": bookmark.url,
        "title": bookmark.title,
        "description": bookmark.description or "",
        "tags": split_csv(bookmark.tags),
        "created_at": _iso(bookmark.created_at),
    }


def _fts_query(query: str) -> str:
    """Quote each term so user input never hits FTS5 query syntax."""
    terms = [term.replace('"', '""') for term in query.split() if term.strip()]
    return " ".join(f'"{term}"' for term in terms)


class SQLiteClient:
    """
    Async SQLite client for catalog, knowledge base and analytics storage.

    Routing-rule mutations live in `db.routing.ContextRouter`, which uses
    this client's sessions.
    """

    def __init__(self, database_url: str):
        """
        Initialize the SQLite client.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///switchyard.db"
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        event.listen(self.engine.sync_engine, "connect", self._enable_foreign_keys)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._fts_available = False

    @staticmethod
    def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    async def init_db(self) -> List[str]:
        """Create tables, then run the migration sequence.

        Returns:
            Names of migration steps that changed the store on this boot

        Raises:
            RuntimeError: If any migration step fails
        """
        database_file = _extract_sqlite_file_path(self.database_url)
        if database_file is not None:
            database_file.parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            applied = await apply_pending_migrations(self.database_url)
        except Exception as exc:
            raise RuntimeError(f"Schema migration failed: {exc}") from exc
        async with self.engine.connect() as conn:
            result = await conn.execute(
                text("SELECT name FROM sqlite_master WHERE type='table' AND name='notes_fts'")
            )
            self._fts_available = result.first() is not None
        return applied

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # =========================================================================
    # Sources
    # =========================================================================

    async def upsert_source(
        self,
        source_id: str,
        name: str,
        description: str = "",
        tools: Optional[List[str]] = None,
        resources: Optional[List[str]] = None,
        session: Optional[AsyncSession] = None,
    ) -> Dict[str, Any]:
        """Insert or overwrite a source row."""
        values = {
            "id": source_id,
            "name": name,
            "description": description or "",
            "tools": join_csv(tools),
            "resources": join_csv(resources),
        }
        stmt = sqlite_insert(Source).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Source.id],
            set_={key: stmt.excluded[key] for key in ("name", "description", "tools", "resources")},
        )
        if session is not None:
            await session.execute(stmt)
        else:
            async with self.session() as own_session:
                await own_session.execute(stmt)
        return {**values, "tools": split_csv(values["tools"]), "resources": split_csv(values["resources"])}

    async def get_source(self, source_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            source = await session.get(Source, source_id)
            return source_to_dict(source) if source else None

    async def list_sources(self) -> List[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(select(Source).order_by(Source.name, Source.id))
            return [source_to_dict(row) for row in result.scalars().all()]

    # =========================================================================
    # Notes
    # =========================================================================

    async def create_note(self, title: str, content: str, tags: Optional[List[str]] = None) -> Dict[str, Any]:
        if not title.strip():
            raise ValueError("title must not be empty.")
        async with self.session() as session:
            now = _utc_now_naive()
            note = Note(
                title=title.strip(),
                content=content,
                tags=join_csv(tags),
                created_at=now,
                updated_at=now,
            )
            session.add(note)
            await session.flush()
            return _note_to_dict(note)

    async def get_note(self, note_id: int) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            note = await session.get(Note, note_id)
            return _note_to_dict(note) if note else None

    async def update_note(
        self,
        note_id: int,
        title: Optional[str] = None,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Patch a note. Fields left as None are unchanged.

        Raises:
            ValueError: If nothing is being changed or the note is missing
        """
        if title is None and content is None and tags is None:
            raise ValueError("Provide at least one of title, content or tags.")
        async with self.session() as session:
            note = await session.get(Note, note_id)
            if note is None:
                raise ValueError(f"Note {note_id} not found.")
            if title is not None:
                if not title.strip():
                    raise ValueError("title must not be empty.")
                note.title = title.strip()
            if content is not None:
                note.content = content
            if tags is not None:
                note.tags = join_csv(tags)
            note.updated_at = _utc_now_naive()
            await session.flush()
            return _note_to_dict(note)

    async def delete_note(self, note_id: int) -> bool:
        async with self.session() as session:
            result = await session.execute(delete(Note).where(Note.id == note_id))
            return (result.rowcount or 0) > 0

    async def search_notes(
        self, query: str = "", tag: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """
        Search notes by text and/or tag.

        Uses the FTS5 index when present (ranked by bm25), otherwise a
        substring match on title and content ordered by recency.
        """
        limit = max(1, min(int(limit), 100))
        query = (query or "").strip()
        async with self.session() as session:
            if query and self._fts_available:
                match = _fts_query(query)
                rows = await session.execute(
                    text(
                        "SELECT rowid FROM notes_fts WHERE notes_fts MATCH :match "
                        "ORDER BY bm25(notes_fts) LIMIT :limit"
                    ),
                    {"match": match, "limit": limit * 4 if tag else limit},
                )
                ranked_ids = [row[0] for row in rows.all()]
                if not ranked_ids:
                    return []
                result = await session.execute(select(Note).where(Note.id.in_(ranked_ids)))
                by_id = {note.id: note for note in result.scalars().all()}
                notes = [by_id[note_id] for note_id in ranked_ids if note_id in by_id]
            else:
                stmt = select(Note)
                if query:
                    pattern = f"%{query}%"
                    stmt = stmt.where(or_(Note.title.like(pattern), Note.content.like(pattern)))
                stmt = stmt.order_by(Note.updated_at.desc(), Note.id.desc())
                if not tag:
                    stmt = stmt.limit(limit)
                result = await session.execute(stmt)
                notes = list(result.scalars().all())

        items = [_note_to_dict(note) for note in notes]
        if tag:
            wanted = tag.strip().lower()
            items = [item for item in items if wanted in {t.lower() for t in item["tags"]}]
        return items[:limit]

    # =========================================================================
    # Bookmarks
    # =========================================================================

    async def save_bookmark(
        self,
        url: str,
        title: str,
        description: str = "",
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Save a bookmark; saving an existing URL updates it in place."""
        if not url.strip():
            raise ValueError("url must not be empty.")
        stmt = sqlite_insert(Bookmark).values(
            url=url.strip(),
            title=title.strip() or url.strip(),
            description=description or "",
            tags=join_csv(tags),
            created_at=_utc_now_naive(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Bookmark.url],
            set_={
                "title": stmt.excluded.title,
                "description": stmt.excluded.description,
                "tags": stmt.excluded.tags,
            },
        )
        async with self.session() as session:
            await session.execute(stmt)
            result = await session.execute(select(Bookmark).where(Bookmark.url == url.strip()))
            return _bookmark_to_dict(result.scalar_one())

    async def search_bookmarks(
        self, query: str = "", tag: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 100))
        stmt = select(Bookmark)
        query = (query or "").strip()
        if query:
            pattern = f"%{query}%"
            stmt = stmt.where(
                or_(
                    Bookmark.title.like(pattern),
                    Bookmark.description.like(pattern),
                    Bookmark.url.like(pattern),
                )
            )
        stmt = stmt.order_by(Bookmark.created_at.desc(), Bookmark.id.desc())
        async with self.session() as session:
            result = await session.execute(stmt)
            items = [_bookmark_to_dict(row) for row in result.scalars().all()]
        if tag:
            wanted = tag.strip().lower()
            items = [item for item in items if wanted in {t.lower() for t in item["tags"]}]
        return items[:limit]

    async def delete_bookmark(self, bookmark_id: int) -> bool:
        async with self.session() as session:
            result = await session.execute(delete(Bookmark).where(Bookmark.id == bookmark_id))
            return (result.rowcount or 0) > 0

    async def knowledge_base_tags(self) -> Dict[str, int]:
        """Tag usage counts across notes and bookmarks."""
        counts: Dict[str, int] = {}
        async with self.session() as session:
            for column in (Note.tags, Bookmark.tags):
                result = await session.execute(select(column))
                for (raw,) in result.all():
                    for tag in split_csv(raw):
                        counts[tag] = counts.get(tag, 0) + 1
        return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))

    async def knowledge_base_stats(self) -> Dict[str, Any]:
        async with self.session() as session:
            notes = (await session.execute(select(func.count(Note.id)))).scalar_one()
            bookmarks = (await session.execute(select(func.count(Bookmark.id)))).scalar_one()
            last_note = (await session.execute(select(func.max(Note.updated_at)))).scalar_one()
        return {
            "notes": int(notes),
            "bookmarks": int(bookmarks),
            "last_note_update": _iso(last_note),
            "full_text_search": self._fts_available,
        }

    # =========================================================================
    # Analytics
    # =========================================================================

    async def insert_tool_call(self, **values: Any) -> None:
        async with self.session() as session:
            session.add(ToolCall(**values))

    async def insert_adapter_health(self, **values: Any) -> None:
        async with self.session() as session:
            session.add(AdapterHealthRecord(**values))

    async def prune_analytics(self, retention_days: int) -> Dict[str, int]:
        """Delete call and health rows older than the retention window."""
        cutoff = _utc_now_naive() - timedelta(days=max(1, int(retention_days)))
        async with self.session() as session:
            calls = await session.execute(delete(ToolCall).where(ToolCall.called_at < cutoff))
            health = await session.execute(
                delete(AdapterHealthRecord).where(AdapterHealthRecord.checked_at < cutoff)
            )
        return {
            "tool_calls": calls.rowcount or 0,
            "adapter_health": health.rowcount or 0,
        }

    @staticmethod
    def _period_start(period: str) -> Optional[datetime]:
        if period not in ANALYTICS_PERIODS:
            raise ValueError(
                f"Unknown period '{period}'. Use one of: {', '.join(ANALYTICS_PERIODS)}"
            )
        window = ANALYTICS_PERIODS[period]
        return _utc_now_naive() - window if window is not None else None

    async def usage_stats(self, period: str = "24h") -> Dict[str, Any]:
        """Aggregate call counts, latency and token cost for a period."""
        since = self._period_start(period)
        conditions = [ToolCall.called_at >= since] if since is not None else []
        async with self.session() as session:
            totals = (
                await session.execute(
                    select(
                        func.count(ToolCall.id),
                        func.sum(case((ToolCall.status == "error", 1), else_=0)),
                        func.avg(ToolCall.duration_ms),
                        func.sum(ToolCall.token_estimate),
                    ).where(*conditions)
                )
            ).one()
            by_tool = await session.execute(
                select(
                    ToolCall.tool_name,
                    ToolCall.source_id,
                    func.count(ToolCall.id).label("calls"),
                    func.sum(case((ToolCall.status == "error", 1), else_=0)).label("errors"),
                    func.avg(ToolCall.duration_ms).label("avg_ms"),
                    func.sum(ToolCall.token_estimate).label("tokens"),
                )
                .where(*conditions)
                .group_by(ToolCall.tool_name, ToolCall.source_id)
                .order_by(func.count(ToolCall.id).desc(), ToolCall.tool_name)
            )
            by_auth = await session.execute(
                select(ToolCall.auth_level, func.count(ToolCall.id))
                .where(*conditions)
                .group_by(ToolCall.auth_level)
            )
            tools = [
                {
                    "tool_name": row.tool_name,
                    "source_id": row.source_id,
                    "calls": int(row.calls),
                    "errors": int(row.errors or 0),
                    "avg_duration_ms": round(float(row.avg_ms or 0.0), 1),
                    "token_estimate": int(row.tokens or 0),
                }
                for row in by_tool.all()
            ]
            auth_levels = {level: int(count) for level, count in by_auth.all()}

        total_calls, errors, avg_ms, tokens = totals
        by_source: Dict[str, int] = {}
        for item in tools:
            key = item["source_id"] or "unknown"
            by_source[key] = by_source.get(key, 0) + item["calls"]
        return {
            "period": period,
            "total_calls": int(total_calls or 0),
            "errors": int(errors or 0),
            "avg_duration_ms": round(float(avg_ms or 0.0), 1),
            "token_estimate": int(tokens or 0),
            "by_tool": tools,
            "by_source": by_source,
            "by_auth_level": auth_levels,
        }

    async def tool_call_log(
        self,
        period: str = "24h",
        tool_name: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        since = self._period_start(period)
        conditions = []
        if since is not None:
            conditions.append(ToolCall.called_at >= since)
        if tool_name:
            conditions.append(ToolCall.tool_name == tool_name)
        if status:
            conditions.append(ToolCall.status == status)
        limit = max(1, min(int(limit), 500))
        offset = max(0, int(offset))
        async with self.session() as session:
            total = (
                await session.execute(select(func.count(ToolCall.id)).where(*conditions))
            ).scalar_one()
            result = await session.execute(
                select(ToolCall)
                .where(*conditions)
                .order_by(ToolCall.called_at.desc(), ToolCall.id.desc())
                .limit(limit)
                .offset(offset)
            )
            rows = [
                {
                    "id": row.id,
                    "tool_name": row.tool_name,
                    "source_id": row.source_id,
                    "auth_level": row.auth_level,
                    "status": row.status,
                    "duration_ms": row.duration_ms,
                    "request_size": row.request_size,
                    "response_size": row.response_size,
                    "token_estimate": row.token_estimate,
                    "error_message": row.error_message,
                    "called_at": _iso(row.called_at),
                }
                for row in result.scalars().all()
            ]
        return {"total": int(total), "limit": limit, "offset": offset, "calls": rows}

    async def latest_adapter_health(self) -> List[Dict[str, Any]]:
        """Most recent health row per adapter."""
        latest = (
            select(
                AdapterHealthRecord.adapter_id,
                func.max(AdapterHealthRecord.id).label("latest_id"),
            )
            .group_by(AdapterHealthRecord.adapter_id)
            .subquery()
        )
        async with self.session() as session:
            result = await session.execute(
                select(AdapterHealthRecord)
                .join(latest, AdapterHealthRecord.id == latest.c.latest_id)
                .order_by(AdapterHealthRecord.adapter_id)
            )
            return [self._health_to_dict(row) for row in result.scalars().all()]

    async def adapter_health_history(self, adapter_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(
                select(AdapterHealthRecord)
                .where(AdapterHealthRecord.adapter_id == adapter_id)
                .order_by(AdapterHealthRecord.id.desc())
                .limit(max(1, min(int(limit), 200)))
            )
            return [self._health_to_dict(row) for row in result.scalars().all()]

    @staticmethod
    def _health_to_dict(row: AdapterHealthRecord) -> Dict[str, Any]:
        return {
            "adapter_id": row.adapter_id,
            "status": row.status,
            "init_duration_ms": row.init_duration_ms,
            "tool_count": row.tool_count,
            "resource_count": row.resource_count,
            "error_message": row.error_message,
            "checked_at": _iso(row.checked_at),
        }


# =============================================================================
# Global Singleton
# =============================================================================

_sqlite_client: Optional[SQLiteClient] = None


def get_sqlite_client() -> SQLiteClient:
    """Get the global SQLiteClient instance."""
    global _sqlite_client
    if _sqlite_client is None:
        database_url = os.getenv("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL
        _sqlite_client = SQLiteClient(database_url)
    return _sqlite_client


async def close_sqlite_client():
    """Close the global SQLiteClient connection."""
    global _sqlite_client
    if _sqlite_client:
        await _sqlite_client.close()
        _sqlite_client = None
