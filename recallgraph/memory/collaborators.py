"""Contracts for the external collaborators this core depends on.

Each protocol lists only what the graph and retrieval code actually call.
Default implementations live next door (embeddings, vector_index, episodic,
ranking, learning, temporal); anything with matching async methods can be
injected instead.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, Protocol, TypeVar, runtime_checkable

from loguru import logger

from recallgraph.errors import CollaboratorUnavailable
from recallgraph.memory.models import (
    EpisodicMemory,
    LearningInteraction,
    MemoryFeedback,
    RankedMemory,
)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 5.0


@runtime_checkable
class EmbeddingModel(Protocol):
    """Batched text embedding."""

    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...


@runtime_checkable
class VectorIndexClient(Protocol):
    """Namespaced vector index."""

    async def upsert(self, items: list[tuple[str, list[float], dict[str, Any]]]) -> None:
        ...

    async def query(
        self,
        vector: list[float],
        top_k: int = 10,
        filter: Optional[dict[str, Any]] = None,
        return_metadata: bool = True,
    ) -> list[dict[str, Any]]:
        """Return ``[{"id", "score", "metadata"}]`` sorted by descending score."""
        ...

    async def delete_by_ids(self, ids: list[str]) -> int:
        ...

    async def get_by_ids(self, ids: list[str]) -> list[dict[str, Any]]:
        """Return ``[{"id", "values", "metadata"}]`` for ids that exist."""
        ...


@runtime_checkable
class LearningCollaborator(Protocol):
    """Rewrites queries and learns from interactions."""

    async def apply_learning(self, text: str) -> str:
        ...

    async def learn_from_interaction(self, interaction: LearningInteraction) -> bool:
        ...


@runtime_checkable
class RankingCollaborator(Protocol):
    """Scores memories against a query and absorbs feedback."""

    async def rank_memories(
        self,
        memories: list[EpisodicMemory],
        query: str,
        min_relevance_score: float = 0.3,
        max_results: int = 10,
        include_reasons: bool = False,
        recency_boost: bool = True,
        feedback_boost: bool = True,
    ) -> list[RankedMemory]:
        ...

    async def process_feedback(self, feedback: MemoryFeedback) -> None:
        ...


@runtime_checkable
class TemporalContextProvider(Protocol):
    """Supplies the current temporal context as a flat map."""

    async def get_current_context(self) -> dict[str, Any]:
        ...

    async def record_interaction(self, interaction_type: str) -> None:
        ...


@runtime_checkable
class EpisodicStore(Protocol):
    """Where episodic memories come from."""

    async def retrieve_memories(
        self,
        query: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        source: Optional[str] = None,
        context: Optional[str] = None,
        limit: int = 10,
    ) -> list[EpisodicMemory]:
        ...


async def call_collaborator(
    name: str,
    awaitable: Awaitable[T],
    timeout: Optional[float] = DEFAULT_TIMEOUT_SECONDS,
) -> T:
    """
    Await a collaborator call with a timeout.

    Any exception (including the timeout) is re-raised as
    CollaboratorUnavailable so callers can pick their fallback in one place.
    Cancellation of the caller is propagated unchanged.

    Args:
        name: Collaborator name for logs and the error
        awaitable: The pending call
        timeout: Seconds to wait, None for no limit

    Returns:
        Whatever the collaborator returned.
    """
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.CancelledError:
        raise
    except asyncio.TimeoutError as e:
        logger.warning(f"{name} timed out after {timeout}s")
        raise CollaboratorUnavailable(name, e) from e
    except CollaboratorUnavailable:
        raise
    except Exception as e:
        raise CollaboratorUnavailable(name, e) from e
