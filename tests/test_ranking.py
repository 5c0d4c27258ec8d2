"""Tests for relevance ranking."""

import pytest

from recallgraph.memory.models import EpisodicMemory, MemoryFeedback
from recallgraph.memory.ranking import RECENCY_WINDOW_MS, RelevanceRanking

NOW = 10 * RECENCY_WINDOW_MS


def memory(memory_id: str, content: str, age_ms: int = RECENCY_WINDOW_MS * 2) -> EpisodicMemory:
    return EpisodicMemory(id=memory_id, timestamp=NOW - age_ms, content=content)


@pytest.fixture
def ranking():
    return RelevanceRanking(clock=lambda: NOW)


class TestBaseScore:
    """Tests for the lexical base score."""

    def test_exact_phrase_scores_full(self, ranking):
        """An exact phrase match scores 1.0."""
        assert ranking.base_score(memory("m", "I love green tea"), "green tea") == pytest.approx(1.0)

    def test_partial_match(self, ranking):
        """Test a partial word match scores in between."""
        score = ranking.base_score(memory("m", "green apples"), "green tea")
        assert score == pytest.approx(0.35)

    def test_short_words_never_match(self, ranking):
        """Words of two letters or less are ignored."""
        assert ranking.base_score(memory("m", "a b c"), "a b") == pytest.approx(0.3)

    def test_annotations_ignored(self, ranking):
        """Test key:value annotations do not affect the base score."""
        plain = ranking.base_score(memory("m", "green tea"), "green tea")
        annotated = ranking.base_score(memory("m", "green tea"), "green tea timeOfDay:morning context:preferences")
        assert annotated == plain

    def test_empty_query(self, ranking):
        """An empty query scores zero."""
        assert ranking.base_score(memory("m", "anything"), "") == 0.0


class TestBoosts:
    """Tests for recency and feedback boosts."""

    def test_recency_decays_linearly(self, ranking):
        """Test the recency boost decays linearly."""
        assert ranking.recency_boost(memory("m", "x", age_ms=0)) == pytest.approx(0.3)
        assert ranking.recency_boost(memory("m", "x", age_ms=RECENCY_WINDOW_MS // 2)) == pytest.approx(0.15)
        assert ranking.recency_boost(memory("m", "x", age_ms=RECENCY_WINDOW_MS + 1)) == 0.0

    @pytest.mark.asyncio
    async def test_feedback_boost(self, ranking):
        """Test feedback raises later scores."""
        assert ranking.feedback_boost("m") == 0.0

        await ranking.process_feedback(MemoryFeedback("q1", "m", relevance_rating=5, accuracy_rating=5))
        assert ranking.feedback_boost("m") == pytest.approx(0.5)

        await ranking.process_feedback(MemoryFeedback("q2", "m", relevance_rating=1, accuracy_rating=1))
        assert ranking.feedback_boost("m") == pytest.approx(0.25)
        assert len(ranking.feedback_for("m")) == 2


class TestRankMemories:
    """Tests for rank_memories."""

    @pytest.mark.asyncio
    async def test_orders_filters_and_limits(self, ranking):
        """Test ranking sorts, applies the threshold and limits."""
        memories = [
            memory("weak", "green apples"),
            memory("strong", "I love green tea"),
            memory("none", "running shoes"),
        ]
        ranked = await ranking.rank_memories(memories, "green tea", min_relevance_score=0.3, max_results=5)

        assert [m.id for m in ranked] == ["strong", "weak"]
        assert ranked[0].relevance_reasons is None

    @pytest.mark.asyncio
    async def test_reasons_and_factors(self, ranking):
        """Test ranked memories carry reasons and factors."""
        fresh = memory("fresh", "green apples", age_ms=0)
        await ranking.process_feedback(MemoryFeedback("q", "fresh", relevance_rating=5, accuracy_rating=4))

        [ranked] = await ranking.rank_memories([fresh], "green tea", include_reasons=True)

        assert ranked.relevance_score == pytest.approx(min(1.0, 0.35 * 1.3 * 1.5))
        assert ranked.relevance_reasons == ["Boosted due to recency", "Boosted based on previous feedback"]
        assert ranked.factors == {
            "content_match": pytest.approx(0.35),
            "recency": pytest.approx(0.3),
            "feedback": pytest.approx(0.5),
        }

    @pytest.mark.asyncio
    async def test_boosts_can_be_disabled(self, ranking):
        """Boosts are skipped when turned off."""
        fresh = memory("fresh", "green apples", age_ms=0)
        [ranked] = await ranking.rank_memories(
            [fresh], "green tea", recency_boost=False, feedback_boost=False
        )
        assert ranked.relevance_score == pytest.approx(0.35)

    @pytest.mark.asyncio
    async def test_max_results(self, ranking):
        """Test max_results caps the output."""
        memories = [memory(str(i), "green tea") for i in range(5)]
        assert len(await ranking.rank_memories(memories, "green tea", max_results=2)) == 2
