"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StoreConfig(Base):
    """Backing store (SQLite) configuration."""
    db_path: str = "memory/recallgraph.db"   # Relative to workspace, or ":memory:"
    max_concurrency: int = 8                 # Queued statements allowed at once
    wal: bool = True                         # WAL journal for concurrent readers


class GraphConfig(Base):
    """Knowledge graph merge and query tuning."""
    default_confidence: float = 0.7          # Used when a new assertion has none
    contradiction_threshold: float = 0.01    # Relative numeric drift tolerated before recording
    search_min_score: float = 0.5            # searchGraph semantic threshold (broad)
    similarity_min_score: float = 0.7        # Plain similarity lookup threshold
    max_path_depth: int = 3


class EmbeddingConfig(Base):
    """Embedding provider configuration."""
    provider: str = "local"                  # "local" (FastEmbed) or "hashing"
    local_model: str = "BAAI/bge-small-en-v1.5"
    dimension: int = 384                     # bge-small-en-v1.5 = 384 dimensions


class VectorIndexConfig(Base):
    """HNSW vector index configuration."""
    name: str = "knowledge"
    ef_construction: int = 200
    m: int = 16
    ef_search: int = 256
    max_elements: int = 10000                # Grows automatically when full
    persist: bool = False                    # Save index files under the workspace


class CollaboratorConfig(Base):
    """Timeouts applied to external collaborator calls."""
    timeout_seconds: float = 5.0
    background_timeout_seconds: float = 30.0


class RetrievalConfig(Base):
    """Memory retrieval pipeline configuration."""
    default_limit: int = 10
    default_min_relevance: float = 0.3
    history_max_entries: int = 500
    history_ttl_seconds: float = 3600.0
    temporal_update_interval_seconds: float = 900.0   # 15 minutes
    max_learning_interactions: int = 1000


class Config(BaseSettings):
    """Root configuration for recallgraph."""

    model_config = SettingsConfigDict(
        env_prefix="RECALLGRAPH_",
        env_nested_delimiter="__",
    )

    workspace: str = "~/.recallgraph/workspace"
    store: StoreConfig = Field(default_factory=StoreConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    index: VectorIndexConfig = Field(default_factory=VectorIndexConfig)
    collaborators: CollaboratorConfig = Field(default_factory=CollaboratorConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.workspace).expanduser()

    @property
    def db_path(self) -> Path | str:
        """Resolve the database path against the workspace."""
        if self.store.db_path == ":memory:":
            return ":memory:"
        path = Path(self.store.db_path).expanduser()
        if path.is_absolute():
            return path
        return self.workspace_path / path
