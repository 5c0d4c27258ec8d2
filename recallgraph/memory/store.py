"""SQLite storage layer for the knowledge graph and episodic memories.

This module provides the GraphStore class which owns the single aiosqlite
connection used by every component. It exposes a small set of
parameter-bound primitives (fetch/execute) over four logical tables:

- knowledge_entities
- knowledge_relationships
- knowledge_contradictions
- episodic_memories
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional, Sequence

import aiosqlite
from loguru import logger

from recallgraph.errors import StoreError

SCHEMA = """
CREATE TABLE IF NOT EXISTS knowledge_entities (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    properties TEXT NOT NULL,      -- JSON object
    confidence REAL NOT NULL,
    sources TEXT NOT NULL,         -- JSON array
    created INTEGER NOT NULL,
    updated INTEGER NOT NULL,
    UNIQUE (name, type)
);

CREATE TABLE IF NOT EXISTS knowledge_relationships (
    id TEXT PRIMARY KEY,
    source_entity_id TEXT NOT NULL,
    target_entity_id TEXT NOT NULL,
    type TEXT NOT NULL,
    properties TEXT NOT NULL,
    confidence REAL NOT NULL,
    sources TEXT NOT NULL,
    created INTEGER NOT NULL,
    updated INTEGER NOT NULL,
    UNIQUE (source_entity_id, target_entity_id, type),
    FOREIGN KEY (source_entity_id) REFERENCES knowledge_entities(id) ON DELETE CASCADE,
    FOREIGN KEY (target_entity_id) REFERENCES knowledge_entities(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS knowledge_contradictions (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL,
    property_name TEXT NOT NULL,
    conflicting_values TEXT NOT NULL,        -- JSON array [old, new]
    related_entity_ids TEXT NOT NULL,
    related_relationship_ids TEXT NOT NULL,
    sources TEXT NOT NULL,
    confidence REAL NOT NULL,
    status TEXT NOT NULL,
    resolution TEXT,
    resolved_value TEXT,                     -- JSON
    created INTEGER NOT NULL,
    updated INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS episodic_memories (
    id TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    content TEXT NOT NULL,
    importance REAL NOT NULL DEFAULT 0.5,
    context TEXT,
    source TEXT,
    metadata TEXT                            -- JSON object
);

CREATE INDEX IF NOT EXISTS idx_knowledge_entities_name ON knowledge_entities(name);
CREATE INDEX IF NOT EXISTS idx_knowledge_entities_type ON knowledge_entities(type);
CREATE INDEX IF NOT EXISTS idx_knowledge_entities_confidence ON knowledge_entities(confidence);
CREATE INDEX IF NOT EXISTS idx_knowledge_relationships_source ON knowledge_relationships(source_entity_id);
CREATE INDEX IF NOT EXISTS idx_knowledge_relationships_target ON knowledge_relationships(target_entity_id);
CREATE INDEX IF NOT EXISTS idx_knowledge_relationships_type ON knowledge_relationships(type);
CREATE INDEX IF NOT EXISTS idx_knowledge_contradictions_entity ON knowledge_contradictions(entity_id, property_name);
CREATE INDEX IF NOT EXISTS idx_knowledge_contradictions_status ON knowledge_contradictions(status);
CREATE INDEX IF NOT EXISTS idx_episodic_memories_timestamp ON episodic_memories(timestamp);
CREATE INDEX IF NOT EXISTS idx_episodic_memories_source ON episodic_memories(source);
CREATE INDEX IF NOT EXISTS idx_episodic_memories_context ON episodic_memories(context);
"""


def placeholders(count: int) -> str:
    """Return ``?, ?, ...`` for an ``IN (...)`` clause of ``count`` items."""
    if count <= 0:
        raise ValueError("placeholders() needs at least one item")
    return ", ".join("?" for _ in range(count))


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so user text matches literally (use ESCAPE '\\')."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class GraphStore:
    """
    aiosqlite-based backing store.

    Uses WAL mode (Write-Ahead Logging) so readers don't block the writer.
    One connection is shared; a semaphore bounds how much work may be queued
    on it at once. No transactions span calls: every statement commits.
    """

    def __init__(
        self,
        db_path: Path | str = ":memory:",
        max_concurrency: int = 8,
        wal: bool = True,
    ):
        """
        Initialize the store.

        Args:
            db_path: SQLite file path, or ":memory:"
            max_concurrency: Max statements queued on the connection at once
            wal: Enable WAL journal mode (ignored for in-memory databases)
        """
        self.db_path = db_path
        self.wal = wal
        self._conn: Optional[aiosqlite.Connection] = None
        self._init_lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(max(1, max_concurrency))

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def initialize(self) -> None:
        """Open the connection and create tables (idempotent)."""
        await self._get_connection()

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create the database connection."""
        if self._conn is not None:
            return self._conn

        async with self._init_lock:
            if self._conn is not None:
                return self._conn

            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            try:
                conn = await aiosqlite.connect(str(self.db_path))
                conn.row_factory = aiosqlite.Row

                if self.wal and self.db_path != ":memory:":
                    await conn.execute("PRAGMA journal_mode=WAL;")
                    await conn.execute("PRAGMA synchronous=NORMAL;")
                await conn.execute("PRAGMA foreign_keys=ON;")

                await conn.executescript(SCHEMA)
                await conn.commit()
            except (aiosqlite.Error, OSError) as e:
                raise StoreError(f"Failed to open backing store {self.db_path}: {e}") from e

            self._conn = conn
            logger.info(f"GraphStore initialized: {self.db_path}")
            return conn

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        """Run a SELECT and return every row."""
        conn = await self._get_connection()
        async with self._slots:
            try:
                async with conn.execute(sql, tuple(params)) as cursor:
                    return list(await cursor.fetchall())
            except aiosqlite.Error as e:
                raise StoreError(f"Query failed: {e}") from e

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        """Run a SELECT and return the first row, or None."""
        conn = await self._get_connection()
        async with self._slots:
            try:
                async with conn.execute(sql, tuple(params)) as cursor:
                    return await cursor.fetchone()
            except aiosqlite.Error as e:
                raise StoreError(f"Query failed: {e}") from e

    async def fetch_value(self, sql: str, params: Sequence[Any] = (), default: Any = None) -> Any:
        """Run an aggregate query and return its first column."""
        row = await self.fetch_one(sql, params)
        if row is None or row[0] is None:
            return default
        return row[0]

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and commit. Returns the affected row count."""
        conn = await self._get_connection()
        async with self._slots:
            try:
                cursor = await conn.execute(sql, tuple(params))
                await conn.commit()
                return cursor.rowcount
            except aiosqlite.Error as e:
                raise StoreError(f"Write failed: {e}") from e

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.debug("GraphStore connection closed")

    async def __aenter__(self) -> "GraphStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
