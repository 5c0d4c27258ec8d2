"""Graph queries: filtered listing, search, path-finding and statistics.

This is a best-effort discovery surface. Every read against the backing
store may fail on its own; the engine logs the failure and carries on with
whatever it has instead of raising.
"""

import asyncio
from collections import deque
from typing import Any, Optional

from loguru import logger

from recallgraph.config.schema import GraphConfig
from recallgraph.errors import CollaboratorUnavailable, StoreError
from recallgraph.memory.contradictions import ContradictionTracker
from recallgraph.memory.embedding_index import EntityEmbeddingIndex
from recallgraph.memory.entities import EntityStore
from recallgraph.memory.models import (
    Entity,
    GraphPath,
    GraphQueryResult,
    GraphStats,
    Relationship,
    SimilarityResult,
)
from recallgraph.memory.relationships import RelationshipStore
from recallgraph.memory.store import GraphStore


class GraphQueryEngine:
    """
    Read-side of the knowledge graph.

    Composes the entity and relationship stores, the contradiction ledger
    and (optionally) the entity embedding index.
    """

    def __init__(
        self,
        store: GraphStore,
        entities: EntityStore,
        relationships: RelationshipStore,
        contradictions: ContradictionTracker,
        embeddings: Optional[EntityEmbeddingIndex] = None,
        config: Optional[GraphConfig] = None,
    ):
        self.store = store
        self.entities = entities
        self.relationships = relationships
        self.contradictions = contradictions
        self.embeddings = embeddings
        self.config = config or GraphConfig()

    # =========================================================================
    # Filtered listing
    # =========================================================================

    async def query_graph(
        self,
        entity_types: Optional[list[str]] = None,
        entity_names: Optional[list[str]] = None,
        relationship_types: Optional[list[str]] = None,
        min_confidence: float = 0.0,
        limit: int = 100,
        offset: int = 0,
    ) -> GraphQueryResult:
        """
        List entities matching type/name filters and the edges around them.

        Every (type, name) combination is one bound query; results are
        unioned, deduplicated, sorted by confidence and paginated. Edges are
        those touching a selected entity, filtered by type and confidence and
        capped at ``2 * limit``.

        Args:
            entity_types: Allowed entity types (None or empty = any)
            entity_names: Allowed exact names (None or empty = any)
            relationship_types: Allowed edge types (None or empty = any)
            min_confidence: Confidence floor for entities and edges
            limit: Page size
            offset: Page start

        Returns:
            GraphQueryResult with totals counted over the confidence floor
        """
        types = list(entity_types or []) or [None]
        names = list(entity_names or []) or [None]

        try:
            candidates = await self._select_entities(types, names, min_confidence, offset + limit)
        except StoreError as e:
            logger.warning(f"Bound entity query failed, scanning the full table instead: {e}")
            candidates = await self._scan_entities(types, names, min_confidence)

        unique: dict[str, Entity] = {}
        for entity in candidates:
            unique.setdefault(entity.id, entity)
        ranked = sorted(unique.values(), key=lambda e: e.confidence, reverse=True)
        entities = ranked[offset:offset + limit]

        relationships: list[Relationship] = []
        if entities:
            ids = [e.id for e in entities]
            try:
                relationships = await self.relationships.get_for_entities(
                    ids, relationship_types or None, min_confidence, limit * 2
                )
            except StoreError as e:
                logger.warning(f"Bound relationship query failed, scanning the full table instead: {e}")
                relationships = await self._scan_relationships(ids, relationship_types, min_confidence)
                relationships = relationships[:limit * 2]

        total_entities, total_relationships = await asyncio.gather(
            self._safe(self.entities.count(min_confidence), 0, "entity count"),
            self._safe(self.relationships.count(min_confidence), 0, "relationship count"),
        )

        return GraphQueryResult(
            entities=entities,
            relationships=relationships,
            total_entities=total_entities,
            total_relationships=total_relationships,
        )

    async def _select_entities(
        self,
        types: list[Optional[str]],
        names: list[Optional[str]],
        min_confidence: float,
        cap: int,
    ) -> list[Entity]:
        found: list[Entity] = []
        for entity_type in types:
            for name in names:
                sql = "SELECT * FROM knowledge_entities WHERE confidence >= ?"
                params: list[Any] = [min_confidence]
                if entity_type is not None:
                    sql += " AND type = ?"
                    params.append(entity_type)
                if name is not None:
                    sql += " AND name = ?"
                    params.append(name)
                # Each list is sorted, so the top ``cap`` of the union come from the top ``cap`` of each
                sql += " ORDER BY confidence DESC LIMIT ?"
                params.append(cap)
                rows = await self.store.fetch_all(sql, params)
                found.extend(self.entities.row_to_entity(r) for r in rows)
        return found

    async def _scan_entities(
        self,
        types: list[Optional[str]],
        names: list[Optional[str]],
        min_confidence: float,
    ) -> list[Entity]:
        try:
            rows = await self.store.fetch_all("SELECT * FROM knowledge_entities")
        except StoreError as e:
            logger.warning(f"Entity table scan failed, returning no entities: {e}")
            return []

        wanted_types = {t for t in types if t is not None}
        wanted_names = {n for n in names if n is not None}
        return [
            entity for entity in map(self.entities.row_to_entity, rows)
            if entity.confidence >= min_confidence
            and (not wanted_types or entity.entity_type in wanted_types)
            and (not wanted_names or entity.name in wanted_names)
        ]

    async def _scan_relationships(
        self,
        entity_ids: list[str],
        relationship_types: Optional[list[str]],
        min_confidence: float,
    ) -> list[Relationship]:
        try:
            rows = await self.store.fetch_all(
                "SELECT * FROM knowledge_relationships ORDER BY confidence DESC"
            )
        except StoreError as e:
            logger.warning(f"Relationship table scan failed, returning no relationships: {e}")
            return []

        ids = set(entity_ids)
        types = set(relationship_types or [])
        return [
            rel for rel in map(self.relationships.row_to_relationship, rows)
            if rel.confidence >= min_confidence
            and (rel.source_entity_id in ids or rel.target_entity_id in ids)
            and (not types or rel.relationship_type in types)
        ]

    async def _safe(self, awaitable, default: Any, what: str) -> Any:
        try:
            return await awaitable
        except StoreError as e:
            logger.warning(f"Failed to compute {what}: {e}")
            return default

    # =========================================================================
    # Search
    # =========================================================================

    async def search_graph(self, text: str, limit: int = 100, offset: int = 0) -> GraphQueryResult:
        """
        Free-text search over the graph.

        Empty text returns the most recently updated entities. Otherwise
        semantic search is tried first (threshold ``search_min_score``) and a
        lexical name/type match is used when it is unavailable or finds
        nothing. Never raises.
        """
        text = (text or "").strip()
        try:
            if not text:
                entities = await self.entities.list_recent(limit, offset)
            else:
                entities = await self._semantic_entities(text, limit, offset)
                if entities is None:
                    entities = await self.entities.search_by_text(text, limit, offset)
        except StoreError as e:
            logger.warning(f"Graph search for {text!r} failed: {e}")
            return GraphQueryResult()

        relationships = await self._safe(
            self._search_relationships(text, entities, limit), [], f"relationships for {text!r}"
        )

        return GraphQueryResult(
            entities=entities,
            relationships=relationships,
            total_entities=len(entities),
            total_relationships=len(relationships),
        )

    async def _semantic_entities(self, text: str, limit: int, offset: int) -> Optional[list[Entity]]:
        """Semantic hits resolved to live entities, or None to fall back to lexical search."""
        if self.embeddings is None:
            return None
        try:
            hits = await self.embeddings.similarity_search(
                text,
                min_score=self.config.search_min_score,
                limit=offset + limit,
                raise_on_error=True,
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Semantic search unavailable, falling back to lexical search: {e}")
            return None

        found = {e.id: e for e in await self.entities.get_by_ids([h.entity_id for h in hits])}
        entities = []
        for hit in hits:
            entity = found.get(hit.entity_id)
            if entity is None:
                logger.debug(f"Skipping dangling embedding for missing entity {hit.entity_id}")
                continue
            entities.append(entity)

        if not entities:
            logger.debug(f"No semantic matches for {text!r}, falling back to lexical search")
            return None
        return entities[offset:offset + limit]

    async def _search_relationships(
        self, text: str, entities: list[Entity], limit: int
    ) -> list[Relationship]:
        found: dict[str, Relationship] = {}
        if entities:
            for rel in await self.relationships.get_for_entities([e.id for e in entities]):
                found.setdefault(rel.id, rel)
        if text:
            for rel in await self.relationships.search_by_type_text(text, limit):
                found.setdefault(rel.id, rel)
        return list(found.values())[:limit]

    async def find_similar_entities(
        self,
        entity_id: str,
        limit: int = 10,
        min_score: Optional[float] = None,
    ) -> list[SimilarityResult]:
        """
        Entities semantically close to an existing one (itself excluded).

        Uses the stored embedding when there is one, the entity's canonical
        text otherwise.
        """
        if self.embeddings is None:
            return []
        try:
            entity = await self.entities.get_by_id(entity_id)
        except StoreError as e:
            logger.warning(f"Failed to load entity {entity_id}: {e}")
            return []
        if entity is None:
            return []

        query = await self.embeddings.get(entity_id) or entity.embedding_text
        threshold = self.config.similarity_min_score if min_score is None else min_score
        hits = await self.embeddings.similarity_search(query, min_score=threshold, limit=limit + 1)
        return [h for h in hits if h.entity_id != entity_id][:limit]

    # =========================================================================
    # Path-finding
    # =========================================================================

    async def find_paths(
        self, source_id: str, target_id: str, max_depth: Optional[int] = None
    ) -> list[GraphPath]:
        """
        Breadth-first search for paths between two entities.

        Edges are walked in both directions. Each entity is visited at most
        once across the whole search, so only the first (shortest) path to
        any intermediate entity is kept; several edges arriving at the target
        from different branches each yield a path.

        Args:
            source_id: Start entity
            target_id: End entity
            max_depth: Maximum number of hops (defaults to ``max_path_depth``)

        Returns:
            Paths in discovery order (shortest first), [] if none or unknown ids
        """
        max_depth = self.config.max_path_depth if max_depth is None else max_depth
        try:
            return await self._find_paths(source_id, target_id, max_depth)
        except StoreError as e:
            logger.warning(f"Path search {source_id} -> {target_id} failed: {e}")
            return []

    async def _find_paths(self, source_id: str, target_id: str, max_depth: int) -> list[GraphPath]:
        endpoints = {e.id: e for e in await self.entities.get_by_ids([source_id, target_id])}
        if source_id not in endpoints or target_id not in endpoints:
            return []
        if source_id == target_id:
            return [GraphPath(entities=[endpoints[source_id]])]
        if max_depth <= 0:
            return []

        visited = {source_id}
        queue: deque[tuple[str, list[str], list[Relationship]]] = deque([(source_id, [source_id], [])])
        found: list[tuple[list[str], list[Relationship]]] = []

        while queue:
            node, path, edges = queue.popleft()
            if len(edges) >= max_depth:
                continue

            for rel in await self.relationships.get_for_entities([node]):
                neighbor = rel.other_end(node)
                if neighbor == target_id:
                    found.append((path + [neighbor], edges + [rel]))
                elif neighbor not in visited:
                    visited.add(neighbor)
                    queue.append((neighbor, path + [neighbor], edges + [rel]))

        if not found:
            return []

        needed = {entity_id for ids, _ in found for entity_id in ids}
        by_id = {e.id: e for e in await self.entities.get_by_ids(list(needed))}
        paths = []
        for ids, edges in found:
            if all(entity_id in by_id for entity_id in ids):
                paths.append(GraphPath(entities=[by_id[i] for i in ids], relationships=edges))
        logger.debug(f"Found {len(paths)} path(s) {source_id} -> {target_id}")
        return paths

    # =========================================================================
    # Statistics
    # =========================================================================

    async def get_stats(self) -> GraphStats:
        """Counts, type distributions and average confidences across the graph."""
        (
            entity_count,
            relationship_count,
            contradiction_count,
            unresolved,
            entity_types,
            relationship_types,
            entity_confidence,
            relationship_confidence,
        ) = await asyncio.gather(
            self._safe(self.entities.count(), 0, "entity count"),
            self._safe(self.relationships.count(), 0, "relationship count"),
            self._safe(self.contradictions.count(), 0, "contradiction count"),
            self._safe(self.contradictions.unresolved_count(), 0, "unresolved contradiction count"),
            self._safe(self.entities.type_distribution(), {}, "entity type distribution"),
            self._safe(self.relationships.type_distribution(), {}, "relationship type distribution"),
            self._safe(self.entities.average_confidence(), 0.0, "entity confidence"),
            self._safe(self.relationships.average_confidence(), 0.0, "relationship confidence"),
        )
        return GraphStats(
            entity_count=entity_count,
            relationship_count=relationship_count,
            contradiction_count=contradiction_count,
            unresolved_contradictions=unresolved,
            entity_type_distribution=entity_types,
            relationship_type_distribution=relationship_types,
            average_entity_confidence=entity_confidence,
            average_relationship_confidence=relationship_confidence,
        )
