"""Bounded history of memory retrieval results, keyed by query id."""

import time
from collections import OrderedDict
from typing import Callable, Iterator, Optional

from loguru import logger

from recallgraph.memory.models import MemoryRetrievalResult


class QueryHistory:
    """
    LRU cache of retrieval results with a maximum age.

    Results are kept so feedback can be attached to them later. Entries older
    than ``ttl_seconds`` (since stored) are dropped on access; once
    ``max_entries`` is reached the least recently used entry is evicted.
    """

    def __init__(
        self,
        max_entries: int = 500,
        ttl_seconds: Optional[float] = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_entries: Capacity
            ttl_seconds: Maximum age of an entry, None for no limit
            clock: Monotonic seconds
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: OrderedDict[str, tuple[float, MemoryRetrievalResult]] = OrderedDict()

    def _expired(self, stored_at: float) -> bool:
        return self.ttl_seconds is not None and self.clock() - stored_at > self.ttl_seconds

    def put(self, result: MemoryRetrievalResult) -> None:
        self._entries[result.query_id] = (self.clock(), result)
        self._entries.move_to_end(result.query_id)
        self.prune()
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted query {evicted} from history")

    def get(self, query_id: str) -> Optional[MemoryRetrievalResult]:
        entry = self._entries.get(query_id)
        if entry is None:
            return None
        stored_at, result = entry
        if self._expired(stored_at):
            del self._entries[query_id]
            return None
        self._entries.move_to_end(query_id)
        return result

    def prune(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        if self.ttl_seconds is None:
            return 0
        expired = [qid for qid, (stored_at, _) in self._entries.items() if self._expired(stored_at)]
        for qid in expired:
            del self._entries[qid]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, query_id: object) -> bool:
        return isinstance(query_id, str) and self.get(query_id) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))
