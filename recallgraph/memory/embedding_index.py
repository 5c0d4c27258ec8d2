"""Namespaced embedding indexes for entities and episodic memories.

Both indexes share one vector index; every vector is keyed
``"{namespace}:{id}"`` and tagged with its namespace in metadata so a query
only ever sees its own kind of item. The relational store stays the source
of truth: write failures here are logged and never abort the owning write,
and read failures degrade to an empty result.
"""

from __future__ import annotations

from typing import Any, Generic, Optional, TypeVar, Union

from loguru import logger

from recallgraph.errors import CollaboratorUnavailable
from recallgraph.memory.collaborators import (
    DEFAULT_TIMEOUT_SECONDS,
    EmbeddingModel,
    VectorIndexClient,
    call_collaborator,
)
from recallgraph.memory.models import Entity, EntityEmbedding, EpisodicMemory, SimilarityResult
from recallgraph.utils.ids import now_ms, split_vector_key, vector_key

ItemT = TypeVar("ItemT")

# Keys owned by the index; caller extras never override them
RESERVED_METADATA_KEYS = ("id", "text", "timestamp", "entityType", "namespace", "name")

Query = Union[str, list[float], EntityEmbedding]


class NamespacedEmbeddingIndex(Generic[ItemT]):
    """
    Base class for an embedding index restricted to one namespace.

    Subclasses say how an item becomes text (``_describe``); everything else
    (embedding, upserting, querying, deleting) is shared.
    """

    namespace: str = ""

    def __init__(
        self,
        model: EmbeddingModel,
        index: VectorIndexClient,
        timeout: Optional[float] = DEFAULT_TIMEOUT_SECONDS,
    ):
        """
        Args:
            model: Embedding model collaborator
            index: Vector index collaborator (shared across namespaces)
            timeout: Seconds allowed per collaborator call
        """
        self.model = model
        self.index = index
        self.timeout = timeout

    def _describe(self, item: ItemT) -> tuple[str, str, str, str]:
        """Return (item id, canonical text, type tag, display name)."""
        raise NotImplementedError

    def key(self, item_id: str) -> str:
        return vector_key(self.namespace, item_id)

    async def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        vectors = await call_collaborator(
            "embedding model", self.model.embed(texts), self.timeout
        )
        if len(vectors) != len(texts):
            raise CollaboratorUnavailable(
                "embedding model",
                ValueError(f"Expected {len(texts)} vectors, got {len(vectors)}"),
            )
        return [list(v) for v in vectors]

    def _build(
        self,
        item: ItemT,
        vector: list[float],
        metadata: Optional[dict[str, Any]],
        timestamp: int,
    ) -> tuple[EntityEmbedding, dict[str, Any]]:
        item_id, text, type_tag, name = self._describe(item)
        stored = {k: v for k, v in (metadata or {}).items() if k not in RESERVED_METADATA_KEYS}
        stored.update({
            "id": item_id,
            "text": text,
            "timestamp": timestamp,
            "entityType": type_tag,
            "namespace": self.namespace,
            "name": name,
        })
        embedding = EntityEmbedding(
            id=item_id,
            vector=vector,
            text=text,
            entity_type=type_tag,
            timestamp=timestamp,
            metadata=dict(metadata or {}),
        )
        return embedding, stored

    async def embed(
        self, item: ItemT, metadata: Optional[dict[str, Any]] = None
    ) -> Optional[EntityEmbedding]:
        """
        Embed one item and upsert it into the index.

        Args:
            item: The entity or memory to embed
            metadata: Extra metadata stored alongside the vector

        Returns:
            The stored embedding, or None if a collaborator failed.
        """
        results = await self._embed_many([item], [metadata])
        return results[0] if results else None

    async def embed_batch(
        self,
        items: list[ItemT],
        metadata: Optional[list[Optional[dict[str, Any]]]] = None,
    ) -> list[EntityEmbedding]:
        """
        Embed many items with one model call and one upsert.

        Returns:
            Stored embeddings in input order, or [] if a collaborator failed.
        """
        if not items:
            return []
        extras = metadata if metadata is not None else [None] * len(items)
        return await self._embed_many(items, extras)

    async def _embed_many(
        self,
        items: list[ItemT],
        extras: list[Optional[dict[str, Any]]],
    ) -> list[EntityEmbedding]:
        texts = [self._describe(item)[1] for item in items]
        timestamp = now_ms()
        try:
            vectors = await self._embed_texts(texts)
            built = [
                self._build(item, vector, extra, timestamp)
                for item, vector, extra in zip(items, vectors, extras)
            ]
            await call_collaborator(
                "vector index",
                self.index.upsert([(self.key(e.id), e.vector, stored) for e, stored in built]),
                self.timeout,
            )
        except CollaboratorUnavailable as e:
            logger.error(f"Failed to embed {len(items)} {self.namespace} item(s): {e}")
            return []

        logger.debug(f"Embedded {len(built)} {self.namespace} item(s)")
        return [embedding for embedding, _ in built]

    async def _resolve_query(self, query: Query) -> list[float]:
        if isinstance(query, EntityEmbedding):
            return list(query.vector)
        if isinstance(query, str):
            return (await self._embed_texts([query]))[0]
        return list(query)

    async def similarity_search(
        self,
        query: Query,
        min_score: float = 0.7,
        limit: int = 10,
        entity_type: Optional[str] = None,
        metadata_filter: Optional[dict[str, Any]] = None,
        raise_on_error: bool = False,
    ) -> list[SimilarityResult]:
        """
        Find items similar to a text, a vector or an existing embedding.

        Args:
            query: Text to embed, a raw vector, or an EntityEmbedding
            min_score: Results scoring below this are dropped
            limit: Maximum number of results
            entity_type: Restrict to one type tag
            metadata_filter: Extra equality filters on stored metadata
            raise_on_error: Raise CollaboratorUnavailable instead of returning []

        Returns:
            Results with ``score >= min_score``, highest score first.
        """
        if limit <= 0:
            return []

        filter = dict(metadata_filter or {})
        filter["namespace"] = self.namespace
        if entity_type:
            filter["entityType"] = entity_type

        try:
            vector = await self._resolve_query(query)
            hits = await call_collaborator(
                "vector index",
                self.index.query(vector, top_k=limit, filter=filter, return_metadata=True),
                self.timeout,
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Similarity search over {self.namespace} unavailable: {e}")
            if raise_on_error:
                raise
            return []

        results = []
        for hit in hits:
            namespace, item_id = split_vector_key(hit["id"])
            if namespace != self.namespace:
                continue
            score = float(hit.get("score", 0.0))
            if score < min_score:
                continue
            meta = dict(hit.get("metadata") or {})
            results.append(SimilarityResult(
                entity_id=meta.pop("id", item_id),
                score=score,
                entity_type=meta.pop("entityType", ""),
                entity_name=meta.pop("name", ""),
                metadata=meta,
            ))

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    async def get(self, item_id: str) -> Optional[EntityEmbedding]:
        """Fetch the stored embedding for an item, or None."""
        try:
            found = await call_collaborator(
                "vector index", self.index.get_by_ids([self.key(item_id)]), self.timeout
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Failed to fetch embedding for {self.namespace} {item_id}: {e}")
            return None
        if not found:
            return None

        meta = dict(found[0].get("metadata") or {})
        return EntityEmbedding(
            id=meta.pop("id", item_id),
            vector=list(found[0]["values"]),
            text=meta.pop("text", ""),
            entity_type=meta.pop("entityType", ""),
            timestamp=int(meta.pop("timestamp", 0)),
            metadata={k: v for k, v in meta.items() if k not in RESERVED_METADATA_KEYS},
        )

    async def delete(self, item_id: str) -> bool:
        """Delete one item's embedding. Returns False on collaborator failure."""
        return await self.delete_batch([item_id])

    async def delete_batch(self, item_ids: list[str]) -> bool:
        """Delete several embeddings in one call. Returns False on failure."""
        if not item_ids:
            return True
        try:
            await call_collaborator(
                "vector index",
                self.index.delete_by_ids([self.key(i) for i in item_ids]),
                self.timeout,
            )
        except CollaboratorUnavailable as e:
            logger.error(f"Failed to delete {len(item_ids)} {self.namespace} embedding(s): {e}")
            return False
        return True

    async def update(
        self, item: ItemT, metadata: Optional[dict[str, Any]] = None
    ) -> Optional[EntityEmbedding]:
        """Replace an item's embedding (delete, then embed)."""
        item_id = self._describe(item)[0]
        await self.delete(item_id)
        return await self.embed(item, metadata)


class EntityEmbeddingIndex(NamespacedEmbeddingIndex[Entity]):
    """Embeddings of knowledge graph entities, text ``"{name} ({type})"``."""

    namespace = "entity"

    def _describe(self, item: Entity) -> tuple[str, str, str, str]:
        return item.id, item.embedding_text, item.entity_type, item.name


class MemoryEmbeddingIndex(NamespacedEmbeddingIndex[EpisodicMemory]):
    """Embeddings of episodic memories, text = memory content."""

    namespace = "memory"

    def _describe(self, item: EpisodicMemory) -> tuple[str, str, str, str]:
        return item.id, item.content, item.context or "memory", item.source or ""
