"""
SQLite migration sequencer for Switchyard.

Migrations are named Python steps applied in a fixed order at every startup.
Each step inspects the store first and returns False when its target state
already holds; otherwise it changes the store and returns True. Every step
runs inside its own BEGIN IMMEDIATE transaction, so a failing step leaves
the store exactly as it found it.

The first time a step changes the store its name is recorded in
`schema_migrations`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout

from .seeds import (
    DEFAULT_CONTEXTS,
    DEFAULT_RULES,
    DEFAULT_SOURCES,
    LEGACY_WRITINGS_SOURCE_ID,
    RENAMED_CONTEXTS_V1,
    STALE_SOURCE_IDS_V1,
    WRITINGS_DESCRIPTION_V1,
    WRITINGS_SOURCE_ID,
    WRITINGS_STALE_DESCRIPTIONS,
)

logger = logging.getLogger(__name__)

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")


@dataclass(frozen=True)
class MigrationStep:
    """A named, idempotent change. `apply` returns True if it changed anything."""

    name: str
    apply: Callable[[sqlite3.Connection], bool]


def _extract_sqlite_file_path(database_url: str) -> Optional[Path]:
    """
    Extract a local file path from a sqlite SQLAlchemy URL.

    Supports:
    - sqlite+aiosqlite:///absolute/path.db
    - sqlite:///absolute/path.db
    """
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = database_url[len(prefix) :]
        raw_path = raw_path.split("?", 1)[0].split("#", 1)[0]
        raw_path = unquote(raw_path)
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        "Unsupported DATABASE_URL for migration runner. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


# =============================================================================
# Helpers shared by steps
# =============================================================================


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def _has_unique_index(conn: sqlite3.Connection, table: str, columns: Sequence[str]) -> bool:
    for index in conn.execute(f"PRAGMA index_list('{table}')").fetchall():
        if not index["unique"]:
            continue
        info = conn.execute(f"PRAGMA index_info('{index['name']}')").fetchall()
        indexed = [row["name"] for row in sorted(info, key=lambda row: row["seqno"])]
        if indexed == list(columns):
            return True
    return False


def renumber_rules(conn: sqlite3.Connection, rule_ids: Sequence[int]) -> None:
    """
    Assign priorities 1..N to `rule_ids` (all from one context) in order.

    Rows first move through negative priorities so no intermediate state
    collides under UNIQUE(context, priority).
    """
    for position, rule_id in enumerate(rule_ids, start=1):
        conn.execute("UPDATE source_rules SET priority = ? WHERE id = ?", (-position, rule_id))
    for position, rule_id in enumerate(rule_ids, start=1):
        conn.execute("UPDATE source_rules SET priority = ? WHERE id = ?", (position, rule_id))


def compact_context(conn: sqlite3.Connection, context: str) -> bool:
    """Renumber one context to a dense 1..N sequence. Returns True if anything moved."""
    rows = conn.execute(
        "SELECT id, priority FROM source_rules WHERE context = ? ORDER BY priority, id",
        (context,),
    ).fetchall()
    if all(row["priority"] == position for position, row in enumerate(rows, start=1)):
        return False
    renumber_rules(conn, [row["id"] for row in rows])
    return True


# =============================================================================
# Steps
# =============================================================================


def _source_rules_unique_priority(conn: sqlite3.Connection) -> bool:
    if not _table_exists(conn, "source_rules"):
        return False
    if _has_unique_index(conn, "source_rules", ("context", "priority")) and _has_unique_index(
        conn, "source_rules", ("context", "source_id")
    ):
        return False

    # Keep the best-ranked row of any duplicated (context, source_id) pair.
    conn.execute(
        """
        DELETE FROM source_rules
        WHERE EXISTS (
            SELECT 1 FROM source_rules AS other
            WHERE other.context = source_rules.context
              AND other.source_id = source_rules.source_id
              AND (other.priority < source_rules.priority
                   OR (other.priority = source_rules.priority AND other.id < source_rules.id))
        )
        """
    )
    contexts = [
        row["context"]
        for row in conn.execute("SELECT DISTINCT context FROM source_rules").fetchall()
    ]
    for context in contexts:
        compact_context(conn, context)

    conn.execute(
        """
        CREATE TABLE source_rules_new (
            id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
            context VARCHAR(128) NOT NULL,
            source_id VARCHAR(128) NOT NULL REFERENCES sources (id) ON DELETE CASCADE,
            priority INTEGER NOT NULL,
            reason TEXT DEFAULT '' NOT NULL,
            CONSTRAINT uq_source_rules_context_source UNIQUE (context, source_id),
            CONSTRAINT uq_source_rules_context_priority UNIQUE (context, priority)
        )
        """
    )
    conn.execute(
        "INSERT INTO source_rules_new (id, context, source_id, priority, reason) "
        "SELECT id, context, source_id, priority, COALESCE(reason, '') FROM source_rules"
    )
    conn.execute("DROP TABLE source_rules")
    conn.execute("ALTER TABLE source_rules_new RENAME TO source_rules")
    return True


def _seed_default_sources(conn: sqlite3.Connection) -> bool:
    if not _table_exists(conn, "sources") or not _table_exists(conn, "source_rules"):
        return False
    if conn.execute("SELECT COUNT(*) FROM sources").fetchone()[0] > 0:
        return False
    conn.executemany(
        "INSERT OR IGNORE INTO sources (id, name, description, tools, resources) "
        "VALUES (?, ?, ?, ?, ?)",
        DEFAULT_SOURCES,
    )
    conn.executemany(
        "INSERT OR IGNORE INTO source_rules (context, source_id, priority, reason) "
        "VALUES (?, ?, ?, ?)",
        DEFAULT_RULES,
    )
    return True


def _seed_default_contexts(conn: sqlite3.Connection) -> bool:
    if not _table_exists(conn, "contexts"):
        return False
    if conn.execute("SELECT COUNT(*) FROM contexts").fetchone()[0] > 0:
        return False
    conn.executemany(
        "INSERT OR IGNORE INTO contexts (name, description) VALUES (?, ?)",
        list(DEFAULT_CONTEXTS.items()),
    )
    return True


def _remove_stale_sources_v1(conn: sqlite3.Connection) -> bool:
    if not _table_exists(conn, "sources"):
        return False
    placeholders = ",".join("?" for _ in STALE_SOURCE_IDS_V1)
    existing = [
        row["id"]
        for row in conn.execute(
            f"SELECT id FROM sources WHERE id IN ({placeholders})", STALE_SOURCE_IDS_V1
        ).fetchall()
    ]
    if not existing:
        return False

    for source_id in existing:
        contexts = [
            row["context"]
            for row in conn.execute(
                "SELECT DISTINCT context FROM source_rules WHERE source_id = ?", (source_id,)
            ).fetchall()
        ]
        conn.execute("DELETE FROM source_rules WHERE source_id = ?", (source_id,))
        conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        for context in contexts:
            compact_context(conn, context)
        logger.info("[migrate] removed stale source %s", source_id)
    return True


def _external_writings_source_v1(conn: sqlite3.Connection) -> bool:
    if not _table_exists(conn, "sources") or not _table_exists(conn, "source_rules"):
        return False
    legacy = conn.execute(
        "SELECT name, description, tools, resources FROM sources WHERE id = ?",
        (LEGACY_WRITINGS_SOURCE_ID,),
    ).fetchone()
    # A legacy row that gained tools is a real source now; leave it alone.
    if legacy is None or legacy["tools"] or legacy["resources"]:
        return False
    if conn.execute(
        "SELECT 1 FROM sources WHERE id = ?", (WRITINGS_SOURCE_ID,)
    ).fetchone() is not None:
        return False

    conn.execute(
        "INSERT INTO sources (id, name, description, tools, resources) VALUES (?, ?, ?, '', '')",
        (WRITINGS_SOURCE_ID, legacy["name"], legacy["description"]),
    )
    conn.execute(
        "UPDATE source_rules SET source_id = ? WHERE source_id = ?",
        (WRITINGS_SOURCE_ID, LEGACY_WRITINGS_SOURCE_ID),
    )
    conn.execute("DELETE FROM sources WHERE id = ?", (LEGACY_WRITINGS_SOURCE_ID,))
    logger.info(
        "[migrate] moved source %s -> %s", LEGACY_WRITINGS_SOURCE_ID, WRITINGS_SOURCE_ID
    )
    return True


def _writings_description_v1(conn: sqlite3.Connection) -> bool:
    if not _table_exists(conn, "sources"):
        return False
    row = conn.execute(
        "SELECT description FROM sources WHERE id = ?", (WRITINGS_SOURCE_ID,)
    ).fetchone()
    if row is None or row["description"] not in WRITINGS_STALE_DESCRIPTIONS:
        return False
    conn.execute(
        "UPDATE sources SET description = ? WHERE id = ?",
        (WRITINGS_DESCRIPTION_V1, WRITINGS_SOURCE_ID),
    )
    return True


def _rename_project_management_context_v1(conn: sqlite3.Connection) -> bool:
    if not _table_exists(conn, "contexts") or not _table_exists(conn, "source_rules"):
        return False
    changed = False
    for old_name, new_name in RENAMED_CONTEXTS_V1:
        has_context = conn.execute(
            "SELECT 1 FROM contexts WHERE name = ?", (old_name,)
        ).fetchone()
        old_rules = conn.execute(
            "SELECT id, source_id FROM source_rules WHERE context = ? ORDER BY priority, id",
            (old_name,),
        ).fetchall()
        if has_context is None and not old_rules:
            continue

        conn.execute(
            "INSERT OR IGNORE INTO contexts (name, description) VALUES (?, ?)",
            (new_name, DEFAULT_CONTEXTS.get(new_name, "")),
        )
        kept = {
            row["source_id"]
            for row in conn.execute(
                "SELECT source_id FROM source_rules WHERE context = ?", (new_name,)
            ).fetchall()
        }
        next_priority = conn.execute(
            "SELECT COALESCE(MAX(priority), 0) FROM source_rules WHERE context = ?",
            (new_name,),
        ).fetchone()[0]
        for rule in old_rules:
            if rule["source_id"] in kept:
                # The target context already ranks this source; its ordering wins.
                conn.execute("DELETE FROM source_rules WHERE id = ?", (rule["id"],))
                continue
            next_priority += 1
            conn.execute(
                "UPDATE source_rules SET context = ?, priority = ? WHERE id = ?",
                (new_name, next_priority, rule["id"]),
            )
        compact_context(conn, new_name)
        conn.execute("DELETE FROM contexts WHERE name = ?", (old_name,))
        logger.info("[migrate] renamed context %s -> %s", old_name, new_name)
        changed = True
    return changed


def _backfill_rule_contexts(conn: sqlite3.Connection) -> bool:
    if not _table_exists(conn, "contexts") or not _table_exists(conn, "source_rules"):
        return False
    missing = [
        row["context"]
        for row in conn.execute(
            "SELECT DISTINCT context FROM source_rules "
            "WHERE context NOT IN (SELECT name FROM contexts) ORDER BY context"
        ).fetchall()
    ]
    if not missing:
        return False
    conn.executemany(
        "INSERT INTO contexts (name, description) VALUES (?, ?)",
        [(name, DEFAULT_CONTEXTS.get(name, "")) for name in missing],
    )
    return True


def _notes_fts_index(conn: sqlite3.Connection) -> bool:
    if not _table_exists(conn, "notes") or _table_exists(conn, "notes_fts"):
        return False
    try:
        conn.execute(
            "CREATE VIRTUAL TABLE notes_fts USING fts5("
            "title, content, tags, content='notes', content_rowid='id')"
        )
    except sqlite3.OperationalError as exc:
        if "fts5" not in str(exc).lower():
            raise
        # SQLite builds without FTS5 fall back to LIKE search.
        logger.warning("[migrate] FTS5 unavailable, notes search uses LIKE: %s", exc)
        return False

    conn.execute(
        "INSERT INTO notes_fts(rowid, title, content, tags) "
        "SELECT id, title, content, tags FROM notes"
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
            INSERT INTO notes_fts(rowid, title, content, tags)
                VALUES (new.id, new.title, new.content, new.tags);
        END
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
            INSERT INTO notes_fts(notes_fts, rowid, title, content, tags)
                VALUES ('delete', old.id, old.title, old.content, old.tags);
        END
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE ON notes BEGIN
            INSERT INTO notes_fts(notes_fts, rowid, title, content, tags)
                VALUES ('delete', old.id, old.title, old.content, old.tags);
            INSERT INTO notes_fts(rowid, title, content, tags)
                VALUES (new.id, new.title, new.content, new.tags);
        END
        """
    )
    return True


MIGRATION_STEPS: Sequence[MigrationStep] = (
    MigrationStep("source_rules_unique_priority", _source_rules_unique_priority),
    MigrationStep("seed_default_sources", _seed_default_sources),
    MigrationStep("seed_default_contexts", _seed_default_contexts),
    MigrationStep("remove_stale_sources_v1", _remove_stale_sources_v1),
    MigrationStep("external_writings_source_v1", _external_writings_source_v1),
    MigrationStep("writings_description_v1", _writings_description_v1),
    MigrationStep("rename_project_management_context_v1", _rename_project_management_context_v1),
    MigrationStep("backfill_rule_contexts", _backfill_rule_contexts),
    MigrationStep("notes_fts_index", _notes_fts_index),
)


# =============================================================================
# Sequencer
# =============================================================================


class MigrationSequencer:
    """Run the ordered migration steps under a cross-process file lock."""

    def __init__(
        self,
        database_url: str,
        steps: Optional[Sequence[MigrationStep]] = None,
        lock_file_path: Optional[Path] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_url = database_url
        self.database_file = _extract_sqlite_file_path(database_url)
        self.steps = tuple(steps if steps is not None else MIGRATION_STEPS)
        default_lock_file: Optional[Path]
        if self.database_file is not None:
            default_lock_file = (
                self.database_file.with_suffix(
                    self.database_file.suffix + ".migrate.lock"
                )
                if self.database_file.suffix
                else Path(f"{self.database_file}.migrate.lock")
            )
        else:
            default_lock_file = None
        configured_env_lock_raw = os.getenv("DB_MIGRATION_LOCK_FILE", "").strip()
        configured_env_lock = self._normalize_lock_path(configured_env_lock_raw)
        explicit_lock_path = self._normalize_lock_path(lock_file_path)
        self.lock_file_path = (
            explicit_lock_path
            if explicit_lock_path is not None
            else configured_env_lock
            if configured_env_lock is not None
            else default_lock_file
        )
        env_timeout = os.getenv("DB_MIGRATION_LOCK_TIMEOUT_SEC")
        if env_timeout is not None:
            try:
                lock_timeout_seconds = float(env_timeout)
            except ValueError:
                pass
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    def _normalize_lock_path(
        self, raw_path: Optional[Union[Path, str]]
    ) -> Optional[Path]:
        if raw_path is None:
            return None
        text_value = str(raw_path).strip()
        if not text_value:
            return None
        candidate = Path(text_value).expanduser()
        if candidate.is_absolute():
            return candidate.resolve()
        if self.database_file is not None:
            return (self.database_file.parent / candidate).resolve()
        return candidate.resolve()

    async def apply_pending(self) -> List[str]:
        """Run every step and return the names of those that changed the store."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def _apply_pending_sync(self) -> List[str]:
        if self.database_file is None:
            # In-memory DBs are already created from current metadata every boot.
            return []

        if self.lock_file_path is not None:
            self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
            lock = FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds)
            try:
                with lock:
                    return self._apply_unlocked()
            except Timeout as exc:
                raise RuntimeError(
                    "Timed out waiting for migration lock: "
                    f"{self.lock_file_path} ({self.lock_timeout_seconds}s)"
                ) from exc
        return self._apply_unlocked()

    def _apply_unlocked(self) -> List[str]:
        if self.database_file is None:
            return []
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.database_file, isolation_level=None)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._ensure_schema_table(conn)

            changed: List[str] = []
            for step in self.steps:
                with self._transaction(conn):
                    if not step.apply(conn):
                        continue
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_migrations(name, applied_at) VALUES (?, ?)",
                        (step.name, datetime.now(timezone.utc).isoformat()),
                    )
                changed.append(step.name)
                logger.info("[migrate] applied %s", step.name)
            return changed
        finally:
            conn.close()

    @staticmethod
    @contextmanager
    def _transaction(conn: sqlite3.Connection) -> Iterator[None]:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    @staticmethod
    def _ensure_schema_table(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                name VARCHAR(128) NOT NULL PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )


async def apply_pending_migrations(database_url: str) -> List[str]:
    """Convenience wrapper used by SQLite client startup."""
    sequencer = MigrationSequencer(database_url=database_url)
    return await sequencer.apply_pending()
