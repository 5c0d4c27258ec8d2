"""recallgraph Memory System

A local-first knowledge graph (entities, relationships, contradictions)
with semantic search, plus a learning-enhanced episodic memory retrieval
pipeline.
"""

from recallgraph.memory.models import (
    Contradiction,
    ContradictionStatus,
    Entity,
    EntityEmbedding,
    EpisodicMemory,
    GraphPath,
    GraphQueryResult,
    GraphStats,
    KnowledgeEntry,
    LearningInteraction,
    MemoryFeedback,
    MemoryPage,
    MemoryRetrievalResult,
    RankedMemory,
    Relationship,
    RetrievalMetadata,
    SimilarityResult,
)
from recallgraph.memory.store import GraphStore
from recallgraph.memory.embeddings import (
    EmbeddingProvider,
    HashingEmbeddingModel,
    create_embedding_model,
    cosine_similarity,
)
from recallgraph.memory.vector_index import VectorIndex
from recallgraph.memory.embedding_index import (
    EntityEmbeddingIndex,
    MemoryEmbeddingIndex,
)
from recallgraph.memory.contradictions import ContradictionTracker
from recallgraph.memory.entities import EntityStore
from recallgraph.memory.relationships import RelationshipStore
from recallgraph.memory.query import GraphQueryEngine
from recallgraph.memory.graph import KnowledgeGraph
from recallgraph.memory.episodic import EpisodicMemoryStore
from recallgraph.memory.ranking import RelevanceRanking
from recallgraph.memory.temporal import TemporalContextManager
from recallgraph.memory.learning import LearnedPattern, LearningSystem
from recallgraph.memory.history import QueryHistory
from recallgraph.memory.background import BackgroundTasks
from recallgraph.memory.retrieval import MemoryRetrievalPipeline, Timeframe

__all__ = [
    "Contradiction",
    "ContradictionStatus",
    "Entity",
    "EntityEmbedding",
    "EpisodicMemory",
    "MemoryPage",
    "GraphPath",
    "GraphQueryResult",
    "GraphStats",
    "KnowledgeEntry",
    "LearningInteraction",
    "MemoryFeedback",
    "MemoryRetrievalResult",
    "RankedMemory",
    "Relationship",
    "RetrievalMetadata",
    "SimilarityResult",
    "GraphStore",
    "EmbeddingProvider",
    "HashingEmbeddingModel",
    "create_embedding_model",
    "cosine_similarity",
    "VectorIndex",
    "EntityEmbeddingIndex",
    "MemoryEmbeddingIndex",
    "ContradictionTracker",
    "EntityStore",
    "RelationshipStore",
    "GraphQueryEngine",
    "KnowledgeGraph",
    "EpisodicMemoryStore",
    "RelevanceRanking",
    "TemporalContextManager",
    "LearnedPattern",
    "LearningSystem",
    "QueryHistory",
    "BackgroundTasks",
    "MemoryRetrievalPipeline",
    "Timeframe",
]
