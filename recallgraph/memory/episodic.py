"""Episodic memory storage.

Timestamped records of what the assistant observed or was told, kept in
the ``episodic_memories`` table and (optionally) embedded in the memory
namespace of the vector index for similarity retrieval.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import aiosqlite
from loguru import logger

from recallgraph.errors import CollaboratorUnavailable, ValidationError
from recallgraph.memory.embedding_index import MemoryEmbeddingIndex
from recallgraph.memory.models import EpisodicMemory, MemoryPage
from recallgraph.memory.properties import clamp_confidence
from recallgraph.memory.store import GraphStore, escape_like
from recallgraph.utils.ids import new_id, now_ms
from recallgraph.utils.text import query_terms

MAX_QUERY_TERMS = 8
DEFAULT_PAGE_SIZE = 20


class EpisodicMemoryStore:
    """Default episodic store over GraphStore."""

    def __init__(
        self,
        store: GraphStore,
        embeddings: Optional[MemoryEmbeddingIndex] = None,
    ):
        """
        Args:
            store: Backing store
            embeddings: Memory embedding index (similarity retrieval is lexical without it)
        """
        self.store = store
        self.embeddings = embeddings

    async def store_memory(
        self,
        content: str,
        source: Optional[str] = None,
        context: Optional[str] = None,
        importance: float = 0.5,
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> str:
        """
        Store a new episodic memory.

        Args:
            content: What happened
            source: Where it came from ("chat", "calendar", ...)
            context: Category tag ("preferences", "personal", ...)
            importance: 0-1 importance
            metadata: Free-form extras
            timestamp: Epoch milliseconds (defaults to now)

        Returns:
            The memory id
        """
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Memory content must be a non-empty string")

        memory = EpisodicMemory(
            id=new_id(),
            timestamp=timestamp if timestamp is not None else now_ms(),
            content=content,
            importance=clamp_confidence(importance, 0.5),
            context=context,
            source=source,
            metadata=dict(metadata or {}),
        )
        await self.store.execute(
            """
            INSERT INTO episodic_memories (id, timestamp, content, importance, context, source, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                memory.id,
                memory.timestamp,
                memory.content,
                memory.importance,
                memory.context,
                memory.source,
                json.dumps(memory.metadata, default=str),
            ),
        )
        logger.debug(f"Memory stored: {memory.id}")

        if self.embeddings is not None:
            await self.embeddings.embed(memory)
        return memory.id

    async def retrieve_memories(
        self,
        query: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        source: Optional[str] = None,
        context: Optional[str] = None,
        limit: int = 10,
    ) -> list[EpisodicMemory]:
        """
        Retrieve memories by time window, source, context and content words.

        A memory matches the text if its content contains any word of the
        query (three or more characters, ``key:value`` annotations ignored).
        A query with no such words matches everything.

        Returns:
            Newest first, at most ``limit``
        """
        where, params = self._where(
            start_time=start_time, end_time=end_time, source=source, context=context
        )
        terms = list(dict.fromkeys(query_terms(query)))[:MAX_QUERY_TERMS]
        if terms:
            where.append("(" + " OR ".join("content LIKE ? ESCAPE '\\'" for _ in terms) + ")")
            params.extend(f"%{escape_like(t)}%" for t in terms)

        sql = "SELECT * FROM episodic_memories"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = await self.store.fetch_all(sql, params)
        return [self._row_to_memory(r) for r in rows]

    # =========================================================================
    # Paginated listing
    # =========================================================================

    async def get_memories(
        self,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        source: Optional[str] = None,
        context: Optional[str] = None,
        min_importance: Optional[float] = None,
        max_importance: Optional[float] = None,
        content_search: Optional[str] = None,
        sort_by_importance: bool = False,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        include_total: bool = True,
    ) -> MemoryPage:
        """
        List memories one page at a time.

        Args:
            start_time: Earliest timestamp (inclusive)
            end_time: Latest timestamp (inclusive)
            source: Exact source
            context: Exact context
            min_importance: Lowest importance (inclusive)
            max_importance: Highest importance (inclusive)
            content_search: Literal substring of the content
            sort_by_importance: Most important first instead of newest first
            page: 1-based page number
            page_size: Memories per page
            include_total: Also count every match (one extra query)

        Returns:
            The requested page and its position in the listing
        """
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError(f"page must be a positive integer, got {page!r}")
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size < 1:
            raise ValidationError(f"page_size must be a positive integer, got {page_size!r}")

        where, params = self._where(
            start_time=start_time,
            end_time=end_time,
            source=source,
            context=context,
            min_importance=min_importance,
            max_importance=max_importance,
            content_search=content_search,
        )
        clause = " WHERE " + " AND ".join(where) if where else ""

        total_items = total_pages = None
        if include_total:
            total_items = int(await self.store.fetch_value(
                f"SELECT COUNT(*) FROM episodic_memories{clause}", params, default=0
            ))
            total_pages = -(-total_items // page_size)

        order = "importance DESC, timestamp DESC" if sort_by_importance else "timestamp DESC"
        rows = await self.store.fetch_all(
            f"SELECT * FROM episodic_memories{clause} ORDER BY {order} LIMIT ? OFFSET ?",
            [*params, page_size, (page - 1) * page_size],
        )
        items = [self._row_to_memory(r) for r in rows]

        if include_total:
            has_next = page < total_pages
        else:
            has_next = len(items) == page_size
        return MemoryPage(
            items=items,
            page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_prev_page=page > 1,
            has_next_page=has_next,
        )

    async def get_memories_by_context(self, context: str, **pagination: Any) -> MemoryPage:
        return await self.get_memories(context=context, **pagination)

    async def get_memories_by_source(self, source: str, **pagination: Any) -> MemoryPage:
        return await self.get_memories(source=source, **pagination)

    async def get_memories_by_importance(
        self, min_importance: float, max_importance: float = 1.0, **pagination: Any
    ) -> MemoryPage:
        """Memories with importance in ``[min_importance, max_importance]``, most important first."""
        return await self.get_memories(
            min_importance=min_importance,
            max_importance=max_importance,
            sort_by_importance=True,
            **pagination,
        )

    async def get_memories_by_time_range(
        self, start_time: int, end_time: Optional[int] = None, **pagination: Any
    ) -> MemoryPage:
        """Memories from ``start_time`` up to ``end_time`` (default: now)."""
        return await self.get_memories(
            start_time=start_time,
            end_time=end_time if end_time is not None else now_ms(),
            **pagination,
        )

    async def search_memories(self, search_term: str, **pagination: Any) -> MemoryPage:
        """Memories whose content contains ``search_term`` literally."""
        return await self.get_memories(content_search=search_term, **pagination)

    @staticmethod
    def _where(
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        source: Optional[str] = None,
        context: Optional[str] = None,
        min_importance: Optional[float] = None,
        max_importance: Optional[float] = None,
        content_search: Optional[str] = None,
    ) -> tuple[list[str], list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, op, value in (
            ("timestamp", ">=", start_time),
            ("timestamp", "<=", end_time),
            ("source", "=", source),
            ("context", "=", context),
            ("importance", ">=", min_importance),
            ("importance", "<=", max_importance),
        ):
            if value is not None:
                clauses.append(f"{column} {op} ?")
                params.append(value)
        if content_search:
            clauses.append("content LIKE ? ESCAPE '\\'")
            params.append(f"%{escape_like(content_search)}%")
        return clauses, params

    async def retrieve_by_similarity(
        self, query: str, limit: int = 10, min_score: float = 0.5
    ) -> list[EpisodicMemory]:
        """Semantic retrieval, falling back to ``retrieve_memories`` when unavailable."""
        if self.embeddings is None:
            return await self.retrieve_memories(query, limit=limit)
        try:
            hits = await self.embeddings.similarity_search(
                query, min_score=min_score, limit=limit, raise_on_error=True
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Memory similarity search unavailable, using keyword search: {e}")
            return await self.retrieve_memories(query, limit=limit)

        memories = []
        for hit in hits:
            memory = await self.get_memory(hit.entity_id)
            if memory is None:
                logger.debug(f"Skipping dangling embedding for missing memory {hit.entity_id}")
                continue
            memories.append(memory)
        return memories

    async def get_memory(self, memory_id: str) -> Optional[EpisodicMemory]:
        row = await self.store.fetch_one(
            "SELECT * FROM episodic_memories WHERE id = ?", (memory_id,)
        )
        return self._row_to_memory(row) if row else None

    async def update_memory(
        self,
        memory_id: str,
        content: Optional[str] = None,
        importance: Optional[float] = None,
        context: Optional[str] = None,
        source: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Update fields of a memory; None leaves a field unchanged.

        Metadata is merged into the existing map. A content change refreshes
        the embedding.

        Returns:
            False if the memory does not exist
        """
        memory = await self.get_memory(memory_id)
        if memory is None:
            return False

        content_changed = content is not None and content != memory.content
        if content is not None:
            if not content.strip():
                raise ValidationError("Memory content must be a non-empty string")
            memory.content = content
        if importance is not None:
            memory.importance = clamp_confidence(importance, memory.importance)
        if context is not None:
            memory.context = context
        if source is not None:
            memory.source = source
        if metadata:
            memory.metadata.update(metadata)

        await self.store.execute(
            """
            UPDATE episodic_memories
            SET content = ?, importance = ?, context = ?, source = ?, metadata = ?
            WHERE id = ?
            """,
            (
                memory.content,
                memory.importance,
                memory.context,
                memory.source,
                json.dumps(memory.metadata, default=str),
                memory_id,
            ),
        )
        if content_changed and self.embeddings is not None:
            await self.embeddings.update(memory)
        return True

    async def delete_memory(self, memory_id: str) -> bool:
        """Delete a memory and (best effort) its embedding."""
        count = await self.store.execute(
            "DELETE FROM episodic_memories WHERE id = ?", (memory_id,)
        )
        if not count:
            return False
        if self.embeddings is not None and not await self.embeddings.delete(memory_id):
            logger.warning(f"Embedding for deleted memory {memory_id} left dangling in the index")
        return True

    async def count(self) -> int:
        return int(await self.store.fetch_value(
            "SELECT COUNT(*) FROM episodic_memories", default=0
        ))

    def _row_to_memory(self, row: aiosqlite.Row) -> EpisodicMemory:
        """Convert a database row to an EpisodicMemory object."""
        return EpisodicMemory(
            id=row['id'],
            timestamp=row['timestamp'],
            content=row['content'],
            importance=row['importance'] if row['importance'] is not None else 0.5,
            context=row['context'],
            source=row['source'],
            metadata=json.loads(row['metadata']) if row['metadata'] else {},
        )
