"""Keyword-driven learning collaborator.

Rewrites queries by tagging them with the context category they are about
(preferences, personal, professional) and keeps a bounded log of
interactions. Feedback on retrievals that used a category nudges that
category's confidence up or down.
"""

import re
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from recallgraph.memory.models import LearningInteraction
from recallgraph.utils.ids import now_ms
from recallgraph.utils.text import split_annotations

FEEDBACK_STEP = 0.05


@dataclass
class LearnedPattern:
    """A query-rewriting rule and how much it is trusted."""
    id: str
    pattern: str  # Human-readable description
    category: str  # Appended as "context:<category>"
    keywords: list[str]
    confidence: float
    source: str = "system"
    examples: list[str] = field(default_factory=list)
    timestamp: int = 0
    uses: int = 0

    def matches(self, text: str) -> bool:
        lowered = text.lower()
        return any(re.search(rf"\b{re.escape(k)}", lowered) for k in self.keywords)


def default_patterns() -> list[LearnedPattern]:
    now = now_ms()
    return [
        LearnedPattern(
            id="preferences",
            pattern="Questions about preferences look at context:preferences memories",
            category="preferences",
            keywords=["prefer", "like"],
            confidence=0.85,
            examples=["What are my preferences?", "What do I like?"],
            timestamp=now,
        ),
        LearnedPattern(
            id="personal",
            pattern="Questions about personal details look at context:personal memories",
            category="personal",
            keywords=["birthday", "personal"],
            confidence=0.8,
            examples=["When is my birthday?"],
            timestamp=now,
        ),
        LearnedPattern(
            id="professional",
            pattern="Mentions of work or job look at context:professional memories",
            category="professional",
            keywords=["work", "job", "professional"],
            confidence=0.9,
            examples=["What's my job title?", "Where do I work?"],
            timestamp=now,
        ),
    ]


class LearningSystem:
    """
    Default learning collaborator.

    ``apply_learning`` appends the first matching ``context:<category>`` tag;
    only the plain words of the query are matched, never the ``key:value``
    context already appended to it.
    """

    def __init__(
        self,
        max_interactions: int = 1000,
        patterns: Optional[list[LearnedPattern]] = None,
    ):
        self.interactions: deque[LearningInteraction] = deque(maxlen=max_interactions)
        self.patterns: dict[str, LearnedPattern] = {
            p.id: p for p in (patterns if patterns is not None else default_patterns())
        }
        self.counts: Counter[str] = Counter()
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "conversation": self._learn_from_conversation,
            "memory_retrieval": self._learn_from_memory_retrieval,
            "memory_feedback": self._learn_from_memory_feedback,
            "tool_usage": self._learn_from_tool_usage,
        }

    async def apply_learning(self, text: str) -> str:
        plain, _ = split_annotations(text)
        for pattern in self.patterns.values():
            if pattern.matches(plain):
                pattern.uses += 1
                return f"{text} context:{pattern.category}"
        return text

    async def learn_from_interaction(self, interaction: LearningInteraction) -> bool:
        """
        Record an interaction and learn from it.

        Returns:
            False for an unknown interaction type (still recorded)
        """
        self.interactions.append(interaction)
        handler = self._handlers.get(interaction.type)
        if handler is None:
            logger.debug(f"Unknown interaction type: {interaction.type}")
            return False

        self.counts[interaction.type] += 1
        await handler(interaction.data or {})
        return True

    async def get_learned_patterns(self) -> list[LearnedPattern]:
        return list(self.patterns.values())

    async def _learn_from_conversation(self, data: dict[str, Any]) -> None:
        logger.debug(f"Learning from conversation ({len(data)} field(s))")

    async def _learn_from_memory_retrieval(self, data: dict[str, Any]) -> None:
        memories = data.get("retrievedMemories") or []
        logger.debug(f"Learning from retrieval of {len(memories)} memories for {data.get('query')!r}")

    async def _learn_from_memory_feedback(self, data: dict[str, Any]) -> None:
        memory = data.get("memory") or {}
        relevance = memory.get("actualRelevance")
        enhanced = data.get("enhancedQuery") or ""
        if relevance is None or not enhanced:
            return

        # 0.6 (a 3/5 rating) is neutral
        delta = FEEDBACK_STEP * (float(relevance) - 0.6) / 0.4
        for pattern in self.patterns.values():
            if f"context:{pattern.category}" in enhanced:
                pattern.confidence = min(1.0, max(0.0, pattern.confidence + delta))
                logger.debug(f"Pattern {pattern.id} confidence -> {pattern.confidence:.2f}")

    async def _learn_from_tool_usage(self, data: dict[str, Any]) -> None:
        logger.debug(f"Learning from tool usage: {data.get('toolName')} (success={data.get('success')})")
