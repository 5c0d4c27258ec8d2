"""Learning-enhanced memory retrieval.

The pipeline behind "what do I remember about X": it enriches the query with
temporal context and learned hints, pulls candidates from the episodic
store, ranks them, remembers the result so feedback can be attached later,
and feeds every interaction back to the learning collaborator.
"""

import re
from enum import Enum
from typing import Any, Callable, Optional, Union

from loguru import logger

from recallgraph.config.schema import Config, RetrievalConfig
from recallgraph.errors import CollaboratorUnavailable, UnknownQueryError, ValidationError
from recallgraph.memory.background import BackgroundTasks
from recallgraph.memory.collaborators import (
    DEFAULT_TIMEOUT_SECONDS,
    EpisodicStore,
    LearningCollaborator,
    RankingCollaborator,
    TemporalContextProvider,
    call_collaborator,
)
from recallgraph.memory.history import QueryHistory
from recallgraph.memory.models import (
    LearningInteraction,
    MemoryFeedback,
    MemoryRetrievalResult,
    RankedMemory,
    RetrievalMetadata,
)
from recallgraph.utils.ids import new_query_id, now_ms

_CONTEXT_TAG_RE = re.compile(r"context:(\w+)")

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class Timeframe(str, Enum):
    """How far back a retrieval looks."""
    IMMEDIATE = "immediate"  # 15 minutes
    RECENT = "recent"  # 6 hours
    MEDIUM = "medium"  # 7 days
    LONG_TERM = "longTerm"  # 90 days
    ALL = "all"

    @property
    def lookback_ms(self) -> Optional[int]:
        return {
            Timeframe.IMMEDIATE: 15 * MINUTE_MS,
            Timeframe.RECENT: 6 * HOUR_MS,
            Timeframe.MEDIUM: 7 * DAY_MS,
            Timeframe.LONG_TERM: 90 * DAY_MS,
            Timeframe.ALL: None,
        }[self]

    @classmethod
    def parse(cls, value: Union[str, "Timeframe"]) -> "Timeframe":
        if isinstance(value, cls):
            return value
        normalized = str(value).replace("_", "").replace("-", "").lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise ValidationError(f"Unknown context timeframe: {value!r}")


def _format_context_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).replace(" ", "_")


class MemoryRetrievalPipeline:
    """
    Timeframe-scoped, learning-assisted retrieval with feedback capture.

    Collaborator failures degrade where a fallback exists (no temporal
    context, raw query, unranked results); the episodic store and feedback
    processing have none and raise CollaboratorUnavailable.
    """

    def __init__(
        self,
        episodic: EpisodicStore,
        learning: LearningCollaborator,
        ranking: RankingCollaborator,
        temporal: TemporalContextProvider,
        history: Optional[QueryHistory] = None,
        background: Optional[BackgroundTasks] = None,
        config: Optional[RetrievalConfig] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Args:
            episodic: Source of episodic memories
            learning: Query rewriting and interaction learning
            ranking: Relevance ranking and feedback
            temporal: Current temporal context
            history: Where results are kept for feedback (bounded default)
            background: Runner for fire-and-forget learning calls
            config: Retrieval defaults
            timeout: Seconds allowed per collaborator call
            clock: Epoch milliseconds
        """
        self.config = config or RetrievalConfig()
        self.episodic = episodic
        self.learning = learning
        self.ranking = ranking
        self.temporal = temporal
        if history is None:
            history = QueryHistory(
                self.config.history_max_entries, self.config.history_ttl_seconds
            )
        self.history = history
        self.background = background if background is not None else BackgroundTasks()
        self.timeout = timeout
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        config: Config,
        episodic: EpisodicStore,
        learning: Optional[LearningCollaborator] = None,
        ranking: Optional[RankingCollaborator] = None,
        temporal: Optional[TemporalContextProvider] = None,
    ) -> "MemoryRetrievalPipeline":
        """Build a pipeline with the default collaborators where none are given."""
        from recallgraph.memory.learning import LearningSystem
        from recallgraph.memory.ranking import RelevanceRanking
        from recallgraph.memory.temporal import TemporalContextManager

        retrieval = config.retrieval
        return cls(
            episodic=episodic,
            learning=learning or LearningSystem(retrieval.max_learning_interactions),
            ranking=ranking or RelevanceRanking(),
            temporal=temporal or TemporalContextManager(retrieval.temporal_update_interval_seconds),
            history=QueryHistory(retrieval.history_max_entries, retrieval.history_ttl_seconds),
            background=BackgroundTasks(config.collaborators.background_timeout_seconds),
            config=retrieval,
            timeout=config.collaborators.timeout_seconds,
        )

    async def retrieve_memories(
        self,
        query: str,
        context_timeframe: Union[str, Timeframe] = Timeframe.ALL,
        enhance_query: bool = True,
        min_relevance_score: Optional[float] = None,
        limit: Optional[int] = None,
        tags: Optional[list[str]] = None,
        sources: Optional[list[str]] = None,
    ) -> MemoryRetrievalResult:
        """
        Retrieve and rank memories for a query.

        Args:
            query: What to look for
            context_timeframe: immediate, recent, medium, longTerm or all
            enhance_query: Add temporal context and learned hints to the query
            min_relevance_score: Drop memories scoring below this
            limit: Maximum number of memories returned
            tags: The first tag filters by memory context
            sources: The first source filters by memory source

        Returns:
            The result, also kept in the query history under its ``query_id``

        Raises:
            ValidationError: on an empty query, bad limit or unknown timeframe
            CollaboratorUnavailable: if the episodic store fails
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string")
        timeframe = Timeframe.parse(context_timeframe)
        limit = self.config.default_limit if limit is None else limit
        if limit < 0:
            raise ValidationError(f"limit must be >= 0, got {limit}")
        min_score = self.config.default_min_relevance if min_relevance_score is None else min_relevance_score

        query_id = new_query_id()
        timestamp = self.clock()

        temporal_context = await self._temporal_context()
        await self._record_interaction("memory_retrieval")

        search_query = query
        insights: list[str] = []
        if enhance_query:
            search_query, insights = await self._enhance(query, temporal_context)

        lookback = timeframe.lookback_ms
        memories = await call_collaborator(
            "episodic store",
            self.episodic.retrieve_memories(
                search_query,
                start_time=timestamp - lookback if lookback is not None else None,
                end_time=None,
                source=sources[0] if sources else None,
                context=tags[0] if tags else None,
                limit=limit * 2,
            ),
            self.timeout,
        )

        try:
            ranked = await call_collaborator(
                "ranking",
                self.ranking.rank_memories(
                    memories,
                    search_query,
                    min_relevance_score=min_score,
                    max_results=limit,
                    include_reasons=True,
                    recency_boost=True,
                    feedback_boost=True,
                ),
                self.timeout,
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Ranking unavailable, returning unranked memories: {e}")
            ranked = [
                RankedMemory.from_memory(m, 0.0, ["Ranking unavailable"]) for m in memories
            ]

        kept = [m for m in ranked if m.relevance_score >= min_score]
        kept.sort(key=lambda m: m.relevance_score, reverse=True)
        kept = kept[:limit]

        result = MemoryRetrievalResult(
            query_id=query_id,
            original_query=query,
            enhanced_query=search_query if search_query != query else None,
            memories=kept,
            timestamp=timestamp,
            metadata=RetrievalMetadata(
                feedback_collected=[],
                learning_insights=insights,
                temporal_context=temporal_context,
            ),
        )
        self.history.put(result)
        self.background.spawn(self._learn_from_retrieval(result), name=f"learn-retrieval-{query_id}")

        logger.debug(f"Query {query_id}: {len(kept)}/{len(memories)} memories kept")
        return result

    async def _temporal_context(self) -> dict[str, Any]:
        try:
            context = await call_collaborator(
                "temporal context", self.temporal.get_current_context(), self.timeout
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Temporal context unavailable: {e}")
            return {}
        return dict(context or {})

    async def _record_interaction(self, interaction_type: str) -> None:
        try:
            await call_collaborator(
                "temporal context",
                self.temporal.record_interaction(interaction_type),
                self.timeout,
            )
        except CollaboratorUnavailable as e:
            logger.debug(f"Could not record {interaction_type} interaction: {e}")

    async def _enhance(self, query: str, context: dict[str, Any]) -> tuple[str, list[str]]:
        """Append context and apply learning. Falls back to the raw query."""
        annotations = " ".join(f"{k}:{_format_context_value(v)}" for k, v in context.items())
        text = f"{query} {annotations}" if annotations else query

        try:
            enhanced = await call_collaborator(
                "learning", self.learning.apply_learning(text), self.timeout
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Query enhancement failed, using the raw query: {e}")
            return query, []
        if not isinstance(enhanced, str) or not enhanced.strip():
            logger.warning("Learning returned an empty query, using the raw query")
            return query, []

        insights: list[str] = []
        if enhanced != query:
            insights.append("Applied learning to enhance query")
            already = set(_CONTEXT_TAG_RE.findall(query))
            for category in dict.fromkeys(_CONTEXT_TAG_RE.findall(enhanced)):
                if category not in already:
                    insights.append(f"Added {category} context to improve relevance")
        return enhanced, insights

    async def _learn_from_retrieval(self, result: MemoryRetrievalResult) -> None:
        interaction = LearningInteraction(
            type="memory_retrieval",
            data={
                "query": result.original_query,
                "enhancedQuery": result.enhanced_query,
                "retrievedMemories": [
                    {"id": m.id, "relevanceScore": m.relevance_score, "content": m.content}
                    for m in result.memories
                ],
                "temporalContext": dict(result.metadata.temporal_context),
            },
            timestamp=result.timestamp,
        )
        await call_collaborator(
            "learning", self.learning.learn_from_interaction(interaction), self.timeout
        )

    async def record_retrieval_feedback(
        self,
        query_id: str,
        memory_id: str,
        relevance_rating: float,
        accuracy_rating: float,
        user_comment: Optional[str] = None,
    ) -> None:
        """
        Attach user feedback to a memory of an earlier retrieval.

        Raises:
            UnknownQueryError: the query id is not (or no longer) in the history
            ValidationError: a rating is outside 1-5
            CollaboratorUnavailable: the ranking collaborator rejected the feedback
        """
        result = self.history.get(query_id)
        if result is None:
            raise UnknownQueryError(query_id)
        for label, rating in (("relevance", relevance_rating), ("accuracy", accuracy_rating)):
            if isinstance(rating, bool) or not isinstance(rating, (int, float)) or not 1 <= rating <= 5:
                raise ValidationError(f"{label} rating must be between 1 and 5, got {rating!r}")

        feedback = MemoryFeedback(
            query_id=query_id,
            memory_id=memory_id,
            relevance_rating=relevance_rating,
            accuracy_rating=accuracy_rating,
            user_comment=user_comment,
        )
        await call_collaborator("ranking", self.ranking.process_feedback(feedback), self.timeout)
        result.metadata.feedback_collected.append(memory_id)
        await self._record_interaction("memory_feedback")

        memory = next((m for m in result.memories if m.id == memory_id), None)
        if memory is None:
            logger.debug(f"Feedback for memory {memory_id} not in query {query_id}; not learned from")
            return

        interaction = LearningInteraction(
            type="memory_feedback",
            data={
                "query": result.original_query,
                "enhancedQuery": result.enhanced_query,
                "memory": {
                    "id": memory.id,
                    "content": memory.content,
                    "relevanceScore": memory.relevance_score,
                    "actualRelevance": relevance_rating / 5,
                    "accuracyRating": accuracy_rating / 5,
                    "userComment": user_comment,
                },
                "temporalContext": dict(result.metadata.temporal_context),
            },
            timestamp=self.clock(),
        )
        try:
            await call_collaborator(
                "learning", self.learning.learn_from_interaction(interaction), self.timeout
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Learning from feedback on {query_id} failed: {e}")

        logger.info(f"Recorded feedback for memory {memory_id} in query {query_id}")

    def get_retrieval_result(self, query_id: str) -> Optional[MemoryRetrievalResult]:
        return self.history.get(query_id)

    async def drain(self) -> None:
        """Wait for outstanding background learning calls."""
        await self.background.drain()

    async def close(self) -> None:
        await self.background.close()
