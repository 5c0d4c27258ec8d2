"""recallgraph - knowledge graph and episodic memory retrieval for assistants."""

__version__ = "0.1.0"

from recallgraph.errors import (
    CollaboratorUnavailable,
    MissingEndpointError,
    NotFoundError,
    RecallGraphError,
    StoreError,
    UnknownQueryError,
    ValidationError,
)

__all__ = [
    "__version__",
    "CollaboratorUnavailable",
    "MissingEndpointError",
    "NotFoundError",
    "RecallGraphError",
    "StoreError",
    "UnknownQueryError",
    "ValidationError",
]
