"""Utility helpers for recallgraph."""

from recallgraph.utils.ids import new_id, new_query_id, now_ms, split_vector_key, vector_key
from recallgraph.utils.logging import configure_logging

__all__ = [
    "configure_logging",
    "new_id",
    "new_query_id",
    "now_ms",
    "split_vector_key",
    "vector_key",
]
