"""Knowledge graph facade.

KnowledgeGraph wires the entity and relationship stores, the contradiction
ledger, the entity embedding index and the query engine over one backing
store, and adds the operations that span several of them: resolving a
contradiction back into the entity, and turning categorized knowledge
entries into graph facts.
"""

import re
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from recallgraph.config.schema import Config
from recallgraph.memory.collaborators import EmbeddingModel, VectorIndexClient
from recallgraph.memory.contradictions import ContradictionTracker
from recallgraph.memory.embedding_index import EntityEmbeddingIndex
from recallgraph.memory.embeddings import create_embedding_model
from recallgraph.memory.entities import EntityStore
from recallgraph.memory.models import (
    Contradiction,
    Entity,
    GraphPath,
    GraphQueryResult,
    GraphStats,
    KnowledgeEntry,
    Relationship,
    SimilarityResult,
)
from recallgraph.memory.query import GraphQueryEngine
from recallgraph.memory.relationships import RelationshipStore
from recallgraph.memory.store import GraphStore
from recallgraph.memory.vector_index import VectorIndex

_FACT_RE = re.compile(r"(.+?)\s+(.+?)\s+(.+)", re.DOTALL)
_NUMERIC_RE = re.compile(r"^[0-9.]+$")


def _first_line(text: str) -> str:
    return text.split("\n", 1)[0].strip()


class KnowledgeGraph:
    """
    Entry point for the knowledge graph.

    Example:
        graph = KnowledgeGraph.from_config(config)
        await graph.initialize()
        john = await graph.create_or_update_entity("John", "person", {"age": 30})
        result = await graph.search_graph("john")
        await graph.close()
    """

    def __init__(
        self,
        store: GraphStore,
        config: Optional[Config] = None,
        embedding_model: Optional[EmbeddingModel] = None,
        vector_index: Optional[VectorIndexClient] = None,
    ):
        """
        Initialize the knowledge graph.

        Args:
            store: Backing store shared by every component
            config: Configuration (defaults if None)
            embedding_model: Embedding collaborator; semantic search is off without it
            vector_index: Vector index collaborator; semantic search is off without it
        """
        self.config = config or Config()
        self.store = store
        self.vector_index = vector_index

        graph_config = self.config.graph
        self.embeddings: Optional[EntityEmbeddingIndex] = None
        if embedding_model is not None and vector_index is not None:
            self.embeddings = EntityEmbeddingIndex(
                embedding_model, vector_index, self.config.collaborators.timeout_seconds
            )

        self.contradictions = ContradictionTracker(store, graph_config.default_confidence)
        self.entities = EntityStore(store, self.contradictions, self.embeddings, graph_config)
        self.relationships = RelationshipStore(store, self.entities, self.contradictions, graph_config)
        self.query = GraphQueryEngine(
            store,
            self.entities,
            self.relationships,
            self.contradictions,
            self.embeddings,
            graph_config,
        )

    @classmethod
    def from_config(
        cls,
        config: Config,
        embedding_model: Optional[EmbeddingModel] = None,
        vector_index: Optional[VectorIndexClient] = None,
    ) -> "KnowledgeGraph":
        """
        Build a graph with the store, model and index the configuration names.

        Explicit collaborators override the configured ones.
        """
        store = GraphStore(config.db_path, config.store.max_concurrency, config.store.wal)
        model = embedding_model or create_embedding_model(config.embedding)
        if vector_index is None:
            index_config = config.index
            directory: Optional[Path] = config.workspace_path / "memory" if index_config.persist else None
            vector_index = VectorIndex(
                dimension=config.embedding.dimension,
                ef_construction=index_config.ef_construction,
                M=index_config.m,
                ef_search=index_config.ef_search,
                max_elements=index_config.max_elements,
                name=index_config.name,
                directory=directory,
            )
        return cls(store, config, model, vector_index)

    async def initialize(self) -> None:
        """Open the backing store and load the vector index."""
        await self.store.initialize()
        if isinstance(self.vector_index, VectorIndex):
            self.vector_index.initialize()
        logger.info("Knowledge graph initialized")

    async def close(self) -> None:
        """Persist the vector index (if configured) and close the store."""
        if isinstance(self.vector_index, VectorIndex):
            self.vector_index.close()
        await self.store.close()

    async def __aenter__(self) -> "KnowledgeGraph":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Entities and relationships
    # =========================================================================

    async def create_or_update_entity(
        self,
        name: str,
        entity_type: str,
        properties: Optional[dict[str, Any]] = None,
        confidence: Optional[float] = None,
        sources: Optional[list[str]] = None,
    ) -> str:
        return await self.entities.create_or_update(name, entity_type, properties, confidence, sources)

    async def create_or_update_relationship(
        self,
        source_entity_id: str,
        target_entity_id: str,
        relationship_type: str,
        properties: Optional[dict[str, Any]] = None,
        confidence: Optional[float] = None,
        sources: Optional[list[str]] = None,
    ) -> str:
        return await self.relationships.create_or_update(
            source_entity_id, target_entity_id, relationship_type, properties, confidence, sources
        )

    async def get_entity(self, entity_id: str) -> Optional[Entity]:
        return await self.entities.get_by_id(entity_id)

    async def get_relationship(self, relationship_id: str) -> Optional[Relationship]:
        return await self.relationships.get_by_id(relationship_id)

    async def delete_entity(self, entity_id: str) -> bool:
        return await self.entities.delete(entity_id)

    async def delete_relationship(self, relationship_id: str) -> bool:
        return await self.relationships.delete(relationship_id)

    # =========================================================================
    # Contradictions
    # =========================================================================

    async def get_unresolved_contradictions(self, limit: int = 100, offset: int = 0) -> list[Contradiction]:
        return await self.contradictions.list_unresolved(limit, offset)

    async def resolve_contradiction(
        self, contradiction_id: str, resolved_value: Any, resolution: str = ""
    ) -> bool:
        """
        Resolve a contradiction and write the winning value into the entity.

        Returns:
            False if the contradiction is unknown
        """
        contradiction = await self.contradictions.get(contradiction_id)
        if contradiction is None:
            return False

        if not await self.contradictions.resolve(contradiction_id, resolved_value, resolution):
            return False

        if contradiction.related_relationship_ids:
            owner = self.relationships
        else:
            owner = self.entities
        if not await owner.set_property(contradiction.entity_id, contradiction.property_name, resolved_value):
            logger.warning(
                f"Contradiction {contradiction_id} resolved but {contradiction.entity_id} no longer exists"
            )
        return True

    async def ignore_contradiction(self, contradiction_id: str, reason: str = "") -> bool:
        return await self.contradictions.ignore(contradiction_id, reason)

    # =========================================================================
    # Queries
    # =========================================================================

    async def query_graph(self, **filters: Any) -> GraphQueryResult:
        """See GraphQueryEngine.query_graph."""
        return await self.query.query_graph(**filters)

    async def search_graph(self, text: str, limit: int = 100, offset: int = 0) -> GraphQueryResult:
        return await self.query.search_graph(text, limit, offset)

    async def find_paths(
        self, source_id: str, target_id: str, max_depth: Optional[int] = None
    ) -> list[GraphPath]:
        return await self.query.find_paths(source_id, target_id, max_depth)

    async def find_similar_entities(
        self, entity_id: str, limit: int = 10, min_score: Optional[float] = None
    ) -> list[SimilarityResult]:
        return await self.query.find_similar_entities(entity_id, limit, min_score)

    async def get_stats(self) -> GraphStats:
        return await self.query.get_stats()

    # =========================================================================
    # Knowledge ingestion
    # =========================================================================

    async def ingest_knowledge(self, entries: list[KnowledgeEntry]) -> int:
        """
        Turn categorized knowledge entries into entities and relationships.

        - ``fact``: "subject predicate object" becomes a subject entity with
          the predicate as a property; a non-numeric object also becomes an
          entity linked to the subject by a predicate-typed relationship.
        - ``concept``: the first line names a concept entity; metadata become
          its properties.
        - ``event``: the first line names an event entity; each
          ``metadata["participants"]`` entry becomes a participant linked by
          ``has_participant``.
        - anything else: a generic entity typed by the category.

        Returns:
            Number of entries that produced at least one entity
        """
        extracted = 0
        for entry in entries:
            handler = {
                "fact": self._ingest_fact,
                "concept": self._ingest_concept,
                "event": self._ingest_event,
            }.get(entry.category, self._ingest_generic)
            if await handler(entry):
                extracted += 1

        logger.info(f"Ingested {extracted}/{len(entries)} knowledge entries")
        return extracted

    async def _ingest_fact(self, entry: KnowledgeEntry) -> bool:
        match = _FACT_RE.match(entry.content.strip())
        if not match:
            logger.debug(f"Fact does not look like subject/predicate/object: {entry.content!r}")
            return False

        subject, predicate, obj = (part.strip() for part in match.groups())
        sources = [entry.source]
        subject_id = await self.entities.create_or_update(
            subject, "subject", {predicate: obj}, entry.confidence, sources
        )
        if not _NUMERIC_RE.match(obj):
            object_id = await self.entities.create_or_update(
                obj, "object", {}, entry.confidence, sources
            )
            await self.relationships.create_or_update(
                subject_id, object_id, predicate, {}, entry.confidence, sources
            )
        return True

    async def _ingest_concept(self, entry: KnowledgeEntry) -> bool:
        name = _first_line(entry.content)
        if not name:
            return False
        await self.entities.create_or_update(
            name, "concept", dict(entry.metadata), entry.confidence, [entry.source]
        )
        return True

    async def _ingest_event(self, entry: KnowledgeEntry) -> bool:
        name = _first_line(entry.content)
        if not name:
            return False

        metadata = dict(entry.metadata)
        participants = metadata.get("participants")
        properties = {
            "date": metadata.get("date"),
            "location": metadata.get("location"),
            "description": entry.content,
            **metadata,
        }
        sources = [entry.source]
        event_id = await self.entities.create_or_update(
            name, "event", properties, entry.confidence, sources
        )

        if isinstance(participants, list):
            for participant in participants:
                if not isinstance(participant, str) or not participant.strip():
                    continue
                participant_id = await self.entities.create_or_update(
                    participant, "participant", {}, entry.confidence, sources
                )
                await self.relationships.create_or_update(
                    event_id, participant_id, "has_participant", {}, entry.confidence, sources
                )
        return True

    async def _ingest_generic(self, entry: KnowledgeEntry) -> bool:
        name = _first_line(entry.content)
        if not name:
            return False
        properties = {"content": entry.content, "tags": list(entry.tags), **entry.metadata}
        await self.entities.create_or_update(
            name, entry.category, properties, entry.confidence, [entry.source]
        )
        return True
