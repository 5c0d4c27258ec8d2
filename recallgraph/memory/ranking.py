"""Relevance ranking for episodic memories.

Scores memories against a query with a lexical base score, then applies
multiplicative boosts for recency and for past user feedback. ``key:value``
context annotations on the query are ignored when scoring.
"""

from typing import Callable, Optional

from loguru import logger

from recallgraph.memory.models import EpisodicMemory, MemoryFeedback, RankedMemory
from recallgraph.utils.ids import now_ms
from recallgraph.utils.text import split_annotations

RECENCY_WINDOW_MS = 30 * 24 * 60 * 60 * 1000  # 30 days
MAX_RECENCY_BOOST = 0.3
FEEDBACK_WEIGHT = 0.5
TERM_WEIGHT = 0.7
EXACT_PHRASE_BONUS = 0.3


class RelevanceRanking:
    """
    Default ranking collaborator.

    Scoring:
    - base = 0.7 * (fraction of query words longer than two characters found
      in the content) + 0.3 if the whole query appears verbatim, capped at 1
    - recency boost: up to 0.3, decaying linearly to 0 over 30 days
    - feedback boost: 0.5 * mean normalized relevance rating of the memory
    - each boost multiplies the score by ``1 + boost``, capped at 1
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        """
        Args:
            clock: Returns the current time in epoch milliseconds
        """
        self.clock = clock
        self._feedback: dict[str, list[MemoryFeedback]] = {}  # query_id -> feedback
        self._boost_cache: dict[str, float] = {}  # memory_id -> feedback boost

    def base_score(self, memory: EpisodicMemory, query: str) -> float:
        plain, _ = split_annotations(query)
        normalized_query = plain.lower()
        content = (memory.content or "").lower()

        terms = normalized_query.split()
        if not terms:
            return 0.0

        matched = sum(1 for term in terms if len(term) > 2 and term in content)
        term_match = matched / len(terms)
        exact = EXACT_PHRASE_BONUS if normalized_query in content else 0.0
        return min(1.0, term_match * TERM_WEIGHT + exact)

    def recency_boost(self, memory: EpisodicMemory) -> float:
        age = max(0, self.clock() - memory.timestamp)
        if age > RECENCY_WINDOW_MS:
            return 0.0
        return MAX_RECENCY_BOOST * (1 - age / RECENCY_WINDOW_MS)

    def feedback_boost(self, memory_id: str) -> float:
        cached = self._boost_cache.get(memory_id)
        if cached is not None:
            return cached

        ratings = [
            (fb.relevance_rating - 1) / 4
            for history in self._feedback.values()
            for fb in history
            if fb.memory_id == memory_id
        ]
        boost = FEEDBACK_WEIGHT * (sum(ratings) / len(ratings)) if ratings else 0.0
        self._boost_cache[memory_id] = boost
        return boost

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
        """
        Score, filter and order memories for a query.

        Args:
            memories: Candidates
            query: Query text (context annotations are ignored)
            min_relevance_score: Drop anything scoring below this
            max_results: Maximum number returned
            include_reasons: Attach reasons and a per-factor breakdown
            recency_boost: Apply the recency boost
            feedback_boost: Apply the feedback boost

        Returns:
            Ranked memories, highest score first
        """
        ranked: list[RankedMemory] = []
        for memory in memories:
            base = self.base_score(memory, query)
            recency = self.recency_boost(memory) if recency_boost else 0.0
            feedback = self.feedback_boost(memory.id) if feedback_boost else 0.0

            score = base
            reasons: list[str] = []
            if recency_boost:
                score = min(1.0, score * (1 + recency))
                if recency > 0.1:
                    reasons.append("Boosted due to recency")
            if feedback_boost:
                score = min(1.0, score * (1 + feedback))
                if feedback > 0.1:
                    reasons.append("Boosted based on previous feedback")

            if score < min_relevance_score:
                continue

            ranked.append(RankedMemory.from_memory(
                memory,
                relevance_score=score,
                relevance_reasons=reasons if include_reasons else None,
                factors={"content_match": base, "recency": recency, "feedback": feedback}
                if include_reasons else None,
            ))

        ranked.sort(key=lambda m: m.relevance_score, reverse=True)
        return ranked[:max_results]

    async def process_feedback(self, feedback: MemoryFeedback) -> None:
        """Record feedback; the memory's boost is recomputed on next use."""
        self._feedback.setdefault(feedback.query_id, []).append(feedback)
        self._boost_cache.pop(feedback.memory_id, None)
        logger.debug(f"Processed feedback for memory {feedback.memory_id} in query {feedback.query_id}")

    def feedback_for(self, memory_id: Optional[str] = None) -> list[MemoryFeedback]:
        """All recorded feedback, optionally for one memory."""
        return [
            fb
            for history in self._feedback.values()
            for fb in history
            if memory_id is None or fb.memory_id == memory_id
        ]
