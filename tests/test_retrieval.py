"""Tests for the learning-enhanced memory retrieval pipeline."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from recallgraph.errors import CollaboratorUnavailable, UnknownQueryError, ValidationError
from recallgraph.memory.episodic import EpisodicMemoryStore
from recallgraph.memory.history import QueryHistory
from recallgraph.memory.learning import LearningSystem
from recallgraph.memory.models import EpisodicMemory, RankedMemory
from recallgraph.memory.ranking import RelevanceRanking
from recallgraph.memory.temporal import TemporalContextManager
from recallgraph.memory.retrieval import DAY_MS, HOUR_MS, MemoryRetrievalPipeline, Timeframe
from recallgraph.utils.ids import now_ms

MORNING_CONTEXT = {"timeOfDay": "morning", "isWorkHours": True, "season": "summer"}


class StaticTemporal:
    """Temporal collaborator returning a fixed context."""

    def __init__(self, context=None):
        self.context = MORNING_CONTEXT if context is None else context
        self.interactions = []

    async def get_current_context(self):
        return dict(self.context)

    async def record_interaction(self, interaction_type):
        self.interactions.append(interaction_type)


class SlowRanking(RelevanceRanking):
    """Ranking collaborator that never answers in time."""

    async def rank_memories(self, *args, **kwargs):
        await asyncio.sleep(1)
        return []


class RecordingEpisodic:
    """Episodic store handing back fixed memories and noting each request."""

    def __init__(self, memories):
        self.memories = memories
        self.requests = []

    async def retrieve_memories(self, query, **filters):
        self.requests.append(filters)
        return list(self.memories)


class CarelessRanking:
    """Ranking collaborator that ignores the threshold, the order and the limit."""

    def __init__(self, scores):
        self.scores = scores

    async def rank_memories(self, memories, query, **options):
        return [RankedMemory.from_memory(m, s) for m, s in zip(memories, self.scores)]

    async def process_feedback(self, feedback):
        pass


@pytest.fixture
async def episodic(store):
    episodic_store = EpisodicMemoryStore(store)
    now = now_ms()
    await episodic_store.store_memory("I like green tea in the morning", context="preferences", timestamp=now - 5 * 60 * 1000)
    await episodic_store.store_memory("My job is at the green energy lab", context="professional", timestamp=now - 2 * DAY_MS)
    await episodic_store.store_memory("Green tea party last year", context="personal", timestamp=now - 200 * DAY_MS)
    await episodic_store.store_memory("Bought running shoes", source="shop", timestamp=now - HOUR_MS)
    return episodic_store


@pytest.fixture
def learning():
    return LearningSystem()


@pytest.fixture
def ranking():
    return RelevanceRanking()


@pytest.fixture
async def pipeline(episodic, learning, ranking):
    retrieval = MemoryRetrievalPipeline(episodic, learning, ranking, StaticTemporal(), timeout=1.0)
    yield retrieval
    await retrieval.close()


class TestTimeframe:
    """Tests for Timeframe parsing."""

    def test_parse(self):
        """Test timeframe parsing from names and aliases."""
        assert Timeframe.parse("longTerm") == Timeframe.LONG_TERM
        assert Timeframe.parse("long_term") == Timeframe.LONG_TERM
        assert Timeframe.parse(Timeframe.RECENT) == Timeframe.RECENT
        with pytest.raises(ValidationError):
            Timeframe.parse("forever")

    def test_lookback(self):
        """Each timeframe has its lookback window."""
        assert Timeframe.IMMEDIATE.lookback_ms == 15 * 60 * 1000
        assert Timeframe.RECENT.lookback_ms == 6 * HOUR_MS
        assert Timeframe.MEDIUM.lookback_ms == 7 * DAY_MS
        assert Timeframe.LONG_TERM.lookback_ms == 90 * DAY_MS
        assert Timeframe.ALL.lookback_ms is None


class TestRetrieveMemories:
    """Tests for retrieve_memories."""

    @pytest.mark.asyncio
    async def test_enhanced_retrieval(self, pipeline):
        """Test the query picks up temporal context and a learned category."""
        result = await pipeline.retrieve_memories("green tea I like", min_relevance_score=0.1)

        assert result.original_query == "green tea I like"
        assert result.enhanced_query.startswith("green tea I like timeOfDay:morning isWorkHours:true")
        assert result.enhanced_query.endswith("context:preferences")
        assert result.metadata.learning_insights == [
            "Applied learning to enhance query",
            "Added preferences context to improve relevance",
        ]
        assert result.metadata.temporal_context == MORNING_CONTEXT
        assert result.memories[0].content == "I like green tea in the morning"
        scores = [m.relevance_score for m in result.memories]
        assert scores == sorted(scores, reverse=True)
        assert all(score >= 0.1 for score in scores)

    @pytest.mark.asyncio
    async def test_without_enhancement(self, pipeline):
        """Test retrieval with query enhancement turned off."""
        result = await pipeline.retrieve_memories("green tea", enhance_query=False)

        assert result.enhanced_query is None
        assert result.metadata.learning_insights == []

    @pytest.mark.asyncio
    async def test_timeframe_restricts_window(self, pipeline):
        """Test the timeframe limits how far back memories are read."""
        recent = await pipeline.retrieve_memories("green", context_timeframe="recent", min_relevance_score=0.0)
        medium = await pipeline.retrieve_memories("green", context_timeframe="medium", min_relevance_score=0.0)
        everything = await pipeline.retrieve_memories("green", min_relevance_score=0.0)

        assert len(recent.memories) == 1
        assert len(medium.memories) == 2
        assert len(everything.memories) == 3

    @pytest.mark.asyncio
    async def test_tags_and_sources(self, pipeline):
        """Tags and sources are passed through as filters."""
        tagged = await pipeline.retrieve_memories("green", tags=["professional"], min_relevance_score=0.0)
        sourced = await pipeline.retrieve_memories("shoes", sources=["shop"], min_relevance_score=0.0)

        assert [m.context for m in tagged.memories] == ["professional"]
        assert [m.source for m in sourced.memories] == ["shop"]

    @pytest.mark.asyncio
    async def test_limit(self, pipeline):
        """Test the result honours the limit."""
        result = await pipeline.retrieve_memories("green", limit=1, min_relevance_score=0.0)
        assert len(result.memories) == 1

    @pytest.mark.asyncio
    async def test_invalid_input(self, pipeline):
        """Test bad queries and limits are rejected."""
        with pytest.raises(ValidationError):
            await pipeline.retrieve_memories("   ")
        with pytest.raises(ValidationError):
            await pipeline.retrieve_memories("tea", limit=-1)
        with pytest.raises(ValidationError):
            await pipeline.retrieve_memories("tea", context_timeframe="someday")

    @pytest.mark.asyncio
    async def test_result_kept_in_history(self, pipeline):
        """Every result is kept in the query history."""
        result = await pipeline.retrieve_memories("green tea")
        assert pipeline.get_retrieval_result(result.query_id) is result
        assert pipeline.get_retrieval_result("unknown") is None

    @pytest.mark.asyncio
    async def test_learns_from_retrieval_in_background(self, pipeline, learning):
        """Test learning runs in the background after retrieval."""
        result = await pipeline.retrieve_memories("green tea")
        await pipeline.drain()

        [interaction] = list(learning.interactions)
        assert interaction.type == "memory_retrieval"
        assert interaction.data["query"] == "green tea"
        assert [m["id"] for m in interaction.data["retrievedMemories"]] == [m.id for m in result.memories]

    @pytest.mark.asyncio
    async def test_contract_enforced_over_careless_ranking(self, learning):
        """Test the pipeline filters, sorts and cuts whatever ranking returns."""
        memories = [EpisodicMemory(id=f"m{i}", timestamp=i, content=f"memory {i}") for i in range(6)]
        episodic = RecordingEpisodic(memories)
        ranking = CarelessRanking([0.2, 0.9, 0.5, 0.1, 0.7, 0.95])
        pipeline = MemoryRetrievalPipeline(episodic, learning, ranking, StaticTemporal())

        result = await pipeline.retrieve_memories("memory", limit=3, min_relevance_score=0.4)
        scores = [m.relevance_score for m in result.memories]

        assert [m.id for m in result.memories] == ["m5", "m1", "m4"]
        assert scores == sorted(scores, reverse=True)
        assert all(score >= 0.4 for score in scores)
        assert episodic.requests[0]["limit"] == 6
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_interactions_reported_to_temporal_context(self, episodic, learning, ranking):
        """Test retrievals and feedback show up as the last interaction type."""
        temporal = TemporalContextManager()
        pipeline = MemoryRetrievalPipeline(episodic, learning, ranking, temporal)

        first = await pipeline.retrieve_memories("green tea", min_relevance_score=0.0)
        second = await pipeline.retrieve_memories("green tea", min_relevance_score=0.0)
        await pipeline.record_retrieval_feedback(second.query_id, second.memories[0].id, 4, 4)
        context = await temporal.get_current_context()

        assert "lastInteractionType" not in first.metadata.temporal_context
        assert second.metadata.temporal_context["lastInteractionType"] == "memory_retrieval"
        assert context["lastInteractionType"] == "memory_feedback"
        await pipeline.close()


class TestDegradation:
    """Tests for collaborator failures."""

    @pytest.mark.asyncio
    async def test_temporal_failure_gives_empty_context(self, episodic, learning, ranking):
        """A temporal failure gives an empty context."""
        temporal = AsyncMock()
        temporal.get_current_context.side_effect = RuntimeError("clock broke")
        pipeline = MemoryRetrievalPipeline(episodic, learning, ranking, temporal)

        result = await pipeline.retrieve_memories("green tea")
        assert result.metadata.temporal_context == {}
        assert result.memories
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_learning_failure_uses_raw_query(self, episodic, ranking):
        """Test a learning failure falls back to the raw query."""
        learning = AsyncMock()
        learning.apply_learning.side_effect = RuntimeError("learning down")
        pipeline = MemoryRetrievalPipeline(episodic, learning, ranking, StaticTemporal())

        result = await pipeline.retrieve_memories("green tea")
        await pipeline.drain()

        assert result.enhanced_query is None
        assert result.metadata.learning_insights == []
        assert result.memories

    @pytest.mark.asyncio
    async def test_ranking_timeout_returns_unranked(self, episodic, learning):
        """Test a ranking timeout returns memories unranked."""
        pipeline = MemoryRetrievalPipeline(episodic, learning, SlowRanking(), StaticTemporal(), timeout=0.05)

        result = await pipeline.retrieve_memories("green", min_relevance_score=0.0)

        assert len(result.memories) == 3
        assert all(m.relevance_score == 0.0 for m in result.memories)
        assert result.memories[0].relevance_reasons == ["Ranking unavailable"]
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_ranking_failure_with_threshold_returns_nothing(self, episodic, learning):
        """Unranked memories cannot pass a relevance threshold."""
        ranking = AsyncMock()
        ranking.rank_memories.side_effect = RuntimeError("ranking down")
        pipeline = MemoryRetrievalPipeline(episodic, learning, ranking, StaticTemporal())

        result = await pipeline.retrieve_memories("green", min_relevance_score=0.3)
        assert result.memories == []
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_episodic_failure_raises(self, learning, ranking):
        """Test an episodic failure propagates."""
        episodic = AsyncMock()
        episodic.retrieve_memories.side_effect = RuntimeError("db gone")
        pipeline = MemoryRetrievalPipeline(episodic, learning, ranking, StaticTemporal())

        with pytest.raises(CollaboratorUnavailable):
            await pipeline.retrieve_memories("green tea")

    @pytest.mark.asyncio
    async def test_background_learning_failure_is_swallowed(self, episodic, ranking):
        """Background learning failures do not reach the caller."""
        learning = AsyncMock()
        learning.apply_learning.return_value = "green tea"
        learning.learn_from_interaction.side_effect = RuntimeError("learning down")
        pipeline = MemoryRetrievalPipeline(episodic, learning, ranking, StaticTemporal())

        result = await pipeline.retrieve_memories("green tea")
        await pipeline.drain()

        assert result.memories
        assert pipeline.background.failures == 1


class TestFeedback:
    """Tests for record_retrieval_feedback."""

    @pytest.mark.asyncio
    async def test_feedback_recorded(self, pipeline, ranking, learning):
        """Test feedback is recorded on the result."""
        result = await pipeline.retrieve_memories("green tea I like", min_relevance_score=0.1)
        await pipeline.drain()
        memory = result.memories[0]

        await pipeline.record_retrieval_feedback(result.query_id, memory.id, 5, 4, "spot on")

        assert result.metadata.feedback_collected == [memory.id]
        [feedback] = ranking.feedback_for(memory.id)
        assert feedback.user_comment == "spot on"

        interaction = list(learning.interactions)[-1]
        assert interaction.type == "memory_feedback"
        assert interaction.data["memory"]["actualRelevance"] == 1.0
        assert interaction.data["memory"]["accuracyRating"] == 0.8
        assert interaction.data["memory"]["userComment"] == "spot on"

    @pytest.mark.asyncio
    async def test_feedback_boosts_later_ranking(self, pipeline):
        """Test feedback raises the memory in later retrievals."""
        first = await pipeline.retrieve_memories("green apples", min_relevance_score=0.0)
        target = first.memories[-1]
        before = target.relevance_score

        await pipeline.record_retrieval_feedback(first.query_id, target.id, 5, 5)
        second = await pipeline.retrieve_memories("green apples", min_relevance_score=0.0)

        after = next(m for m in second.memories if m.id == target.id)
        assert after.relevance_score > before

    @pytest.mark.asyncio
    async def test_unknown_query_rejected_before_mutation(self, pipeline, ranking):
        """Unknown query ids are rejected before anything changes."""
        with pytest.raises(UnknownQueryError):
            await pipeline.record_retrieval_feedback("missing", "m", 5, 5)
        assert ranking.feedback_for() == []

    @pytest.mark.asyncio
    async def test_expired_query_is_unknown(self, episodic, learning, ranking):
        """Test an expired query id is treated as unknown."""
        now = [0.0]
        history = QueryHistory(ttl_seconds=60, clock=lambda: now[0])
        pipeline = MemoryRetrievalPipeline(episodic, learning, ranking, StaticTemporal(), history=history)
        result = await pipeline.retrieve_memories("green tea")

        now[0] = 120
        with pytest.raises(UnknownQueryError):
            await pipeline.record_retrieval_feedback(result.query_id, "m", 5, 5)
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_ratings_validated(self, pipeline, ranking):
        """Ratings outside 1-5 are rejected."""
        result = await pipeline.retrieve_memories("green tea")

        with pytest.raises(ValidationError):
            await pipeline.record_retrieval_feedback(result.query_id, "m", 0, 3)
        with pytest.raises(ValidationError):
            await pipeline.record_retrieval_feedback(result.query_id, "m", 3, 6)
        assert ranking.feedback_for() == []
        assert result.metadata.feedback_collected == []

    @pytest.mark.asyncio
    async def test_ranking_rejection_propagates(self, episodic, learning):
        """Test a ranking failure on feedback propagates."""
        ranking = RelevanceRanking()
        pipeline = MemoryRetrievalPipeline(episodic, learning, ranking, StaticTemporal())
        result = await pipeline.retrieve_memories("green tea")
        ranking.process_feedback = AsyncMock(side_effect=RuntimeError("ranking down"))

        with pytest.raises(CollaboratorUnavailable):
            await pipeline.record_retrieval_feedback(result.query_id, "m", 4, 4)
        assert result.metadata.feedback_collected == []
        await pipeline.close()

    @pytest.mark.asyncio
    async def test_feedback_for_memory_not_in_result(self, pipeline, learning):
        """Test feedback for a memory outside the result skips learning."""
        result = await pipeline.retrieve_memories("green tea")
        await pipeline.drain()
        seen = len(learning.interactions)

        await pipeline.record_retrieval_feedback(result.query_id, "other-memory", 3, 3)

        assert result.metadata.feedback_collected == ["other-memory"]
        assert len(learning.interactions) == seen

    @pytest.mark.asyncio
    async def test_injected_history_is_used_even_when_empty(self, episodic, learning, ranking):
        """Test an empty injected history is kept instead of replaced by a default."""
        history = QueryHistory(max_entries=3)
        pipeline = MemoryRetrievalPipeline(episodic, learning, ranking, StaticTemporal(), history=history)

        result = await pipeline.retrieve_memories("green tea")

        assert pipeline.history is history
        assert history.get(result.query_id) is result
        await pipeline.close()


class TestFromConfig:
    """Tests for building the pipeline from configuration."""

    @pytest.mark.asyncio
    async def test_defaults(self, config, episodic):
        """Test the pipeline built from config."""
        pipeline = MemoryRetrievalPipeline.from_config(config, episodic)

        assert isinstance(pipeline.learning, LearningSystem)
        assert pipeline.history.max_entries == config.retrieval.history_max_entries
        assert pipeline.timeout == config.collaborators.timeout_seconds

        result = await pipeline.retrieve_memories("green tea")
        assert result.query_id
        await pipeline.close()
