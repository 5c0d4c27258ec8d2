"""Data models for the knowledge graph and memory retrieval.

This module defines the structures shared by the stores, the query engine
and the retrieval pipeline: entities, relationships, contradictions,
embeddings, episodic memories and the result types handed back to callers.
Timestamps are epoch milliseconds, matching the backing store columns.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from recallgraph.memory.properties import PropertyMap


@dataclass
class Entity:
    """A named, typed node in the knowledge graph.

    Identity key is ``(name, entity_type)``: re-asserting the same pair
    merges into this row instead of creating a new one.
    """
    id: str
    name: str
    entity_type: str  # "person", "place", "concept", ...
    properties: PropertyMap = field(default_factory=dict)
    confidence: float = 0.7
    sources: list[str] = field(default_factory=list)  # Set semantics, stable order
    created: int = 0
    updated: int = 0

    @property
    def embedding_text(self) -> str:
        """Canonical text used for the entity's embedding."""
        return f"{self.name} ({self.entity_type})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.entity_type,
            "properties": self.properties,
            "confidence": self.confidence,
            "sources": list(self.sources),
            "created": self.created,
            "updated": self.updated,
        }


@dataclass
class Relationship:
    """A typed, directed edge between two entities.

    Identity key is ``(source_entity_id, target_entity_id, relationship_type)``.
    """
    id: str
    source_entity_id: str
    target_entity_id: str
    relationship_type: str  # "knows", "works_at", "has_participant", ...
    properties: PropertyMap = field(default_factory=dict)
    confidence: float = 0.7
    sources: list[str] = field(default_factory=list)
    created: int = 0
    updated: int = 0

    def other_end(self, entity_id: str) -> str:
        """Return the endpoint opposite ``entity_id``."""
        if self.source_entity_id == entity_id:
            return self.target_entity_id
        return self.source_entity_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sourceEntityId": self.source_entity_id,
            "targetEntityId": self.target_entity_id,
            "type": self.relationship_type,
            "properties": self.properties,
            "confidence": self.confidence,
            "sources": list(self.sources),
            "created": self.created,
            "updated": self.updated,
        }


class ContradictionStatus(str, Enum):
    """Lifecycle of a recorded contradiction."""
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    IGNORED = "ignored"


@dataclass
class Contradiction:
    """Two sourced assertions that disagree about the same property.

    ``conflicting_values`` holds ``[old_value, new_value]`` as first seen.
    Only an explicit caller action moves it out of ``unresolved``.
    """
    id: str
    entity_id: str
    property_name: str
    conflicting_values: list[Any] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    confidence: float = 0.0
    status: ContradictionStatus = ContradictionStatus.UNRESOLVED
    resolution: Optional[str] = None
    resolved_value: Any = None
    related_entity_ids: list[str] = field(default_factory=list)
    related_relationship_ids: list[str] = field(default_factory=list)
    created: int = 0
    updated: int = 0

    @property
    def is_unresolved(self) -> bool:
        return self.status == ContradictionStatus.UNRESOLVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entityId": self.entity_id,
            "propertyName": self.property_name,
            "conflictingValues": list(self.conflicting_values),
            "sources": list(self.sources),
            "confidence": self.confidence,
            "status": self.status.value,
            "resolution": self.resolution,
            "resolvedValue": self.resolved_value,
            "relatedEntityIds": list(self.related_entity_ids),
            "relatedRelationshipIds": list(self.related_relationship_ids),
            "created": self.created,
            "updated": self.updated,
        }


@dataclass
class EntityEmbedding:
    """Vector representation of an entity (or, symmetrically, a memory)."""
    id: str  # Owning entity/memory id
    vector: list[float]
    text: str  # What was embedded
    entity_type: str
    timestamp: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SimilarityResult:
    """One hit from a similarity search."""
    entity_id: str
    score: float
    entity_type: str = ""
    entity_name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityId": self.entity_id,
            "score": self.score,
            "entityType": self.entity_type,
            "entityName": self.entity_name,
            "metadata": self.metadata,
        }


@dataclass
class EpisodicMemory:
    """A timestamped record of something the assistant observed or was told."""
    id: str
    timestamp: int
    content: str
    importance: float = 0.5
    context: Optional[str] = None
    source: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "content": self.content,
            "importance": self.importance,
            "context": self.context,
            "source": self.source,
            "metadata": self.metadata,
        }


@dataclass
class MemoryPage:
    """One page of episodic memories plus where it sits in the full listing.

    ``total_items`` and ``total_pages`` are None when the count was skipped;
    ``has_next_page`` is then a guess from whether the page came back full.
    """
    items: list[EpisodicMemory]
    page: int
    page_size: int
    total_items: Optional[int] = None
    total_pages: Optional[int] = None
    has_prev_page: bool = False
    has_next_page: bool = False

    @property
    def prev_page(self) -> Optional[int]:
        return self.page - 1 if self.has_prev_page else None

    @property
    def next_page(self) -> Optional[int]:
        return self.page + 1 if self.has_next_page else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [m.to_dict() for m in self.items],
            "pagination": {
                "page": self.page,
                "pageSize": self.page_size,
                "totalItems": self.total_items,
                "totalPages": self.total_pages,
                "hasPrevPage": self.has_prev_page,
                "hasNextPage": self.has_next_page,
                "prevPage": self.prev_page,
                "nextPage": self.next_page,
            },
        }


@dataclass
class RankedMemory(EpisodicMemory):
    """An episodic memory scored against a query."""
    relevance_score: float = 0.0
    relevance_reasons: Optional[list[str]] = None
    factors: Optional[dict[str, float]] = None  # Per-factor breakdown

    @classmethod
    def from_memory(
        cls,
        memory: EpisodicMemory,
        relevance_score: float,
        relevance_reasons: Optional[list[str]] = None,
        factors: Optional[dict[str, float]] = None,
    ) -> "RankedMemory":
        return cls(
            id=memory.id,
            timestamp=memory.timestamp,
            content=memory.content,
            importance=memory.importance,
            context=memory.context,
            source=memory.source,
            metadata=dict(memory.metadata),
            relevance_score=relevance_score,
            relevance_reasons=relevance_reasons,
            factors=factors,
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["relevanceScore"] = self.relevance_score
        if self.relevance_reasons is not None:
            data["relevanceReasons"] = list(self.relevance_reasons)
        if self.factors is not None:
            data["factors"] = dict(self.factors)
        return data


@dataclass
class MemoryFeedback:
    """User feedback on one memory of one retrieval (ratings 1-5)."""
    query_id: str
    memory_id: str
    relevance_rating: float
    accuracy_rating: float
    user_comment: Optional[str] = None


@dataclass
class RetrievalMetadata:
    """Bookkeeping attached to a retrieval result."""
    feedback_collected: list[str] = field(default_factory=list)
    learning_insights: list[str] = field(default_factory=list)
    temporal_context: dict[str, Any] = field(default_factory=dict)


@dataclass
class MemoryRetrievalResult:
    """Outcome of one ``retrieve_memories`` call, kept in the query history."""
    query_id: str
    original_query: str
    memories: list[RankedMemory]
    timestamp: int
    enhanced_query: Optional[str] = None
    metadata: RetrievalMetadata = field(default_factory=RetrievalMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "queryId": self.query_id,
            "originalQuery": self.original_query,
            "enhancedQuery": self.enhanced_query,
            "memories": [m.to_dict() for m in self.memories],
            "timestamp": self.timestamp,
            "metadata": {
                "feedbackCollected": list(self.metadata.feedback_collected),
                "learningInsights": list(self.metadata.learning_insights),
                "temporalContext": dict(self.metadata.temporal_context),
            },
        }


@dataclass
class LearningInteraction:
    """An event handed to the learning collaborator."""
    type: str  # "memory_retrieval", "memory_feedback", "conversation", "tool_usage"
    data: dict[str, Any]
    timestamp: int


@dataclass
class GraphQueryResult:
    """Entities and relationships matching a graph query or search."""
    entities: list[Entity] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)
    total_entities: int = 0
    total_relationships: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "relationships": [r.to_dict() for r in self.relationships],
            "totalEntities": self.total_entities,
            "totalRelationships": self.total_relationships,
        }


@dataclass
class GraphPath:
    """A chain of entities joined by relationships, source first."""
    entities: list[Entity] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)

    @property
    def hops(self) -> int:
        return len(self.relationships)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "relationships": [r.to_dict() for r in self.relationships],
        }


@dataclass
class GraphStats:
    """Aggregate statistics about the knowledge graph."""
    entity_count: int = 0
    relationship_count: int = 0
    contradiction_count: int = 0
    unresolved_contradictions: int = 0
    entity_type_distribution: dict[str, int] = field(default_factory=dict)
    relationship_type_distribution: dict[str, int] = field(default_factory=dict)
    average_entity_confidence: float = 0.0
    average_relationship_confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityCount": self.entity_count,
            "relationshipCount": self.relationship_count,
            "contradictionCount": self.contradiction_count,
            "unresolvedContradictions": self.unresolved_contradictions,
            "entityTypeDistribution": dict(self.entity_type_distribution),
            "relationshipTypeDistribution": dict(self.relationship_type_distribution),
            "averageEntityConfidence": self.average_entity_confidence,
            "averageRelationshipConfidence": self.average_relationship_confidence,
        }


@dataclass
class KnowledgeEntry:
    """A categorized piece of knowledge to be turned into graph facts."""
    content: str
    category: str  # "fact", "concept", "event", or any other label
    confidence: float = 0.7
    source: str = "knowledge_base"
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
