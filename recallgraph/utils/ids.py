"""Helpers for identifiers, vector keys and timestamps."""

from __future__ import annotations

import time
import uuid

NAMESPACE_SEPARATOR = ":"


def new_id() -> str:
    """Generate a new opaque row identifier."""
    return str(uuid.uuid4())


def new_query_id() -> str:
    """Generate a new id for a memory retrieval query."""
    return uuid.uuid4().hex


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def vector_key(namespace: str, item_id: str) -> str:
    """Build the vector index key for an item (e.g. ``entity:<id>``)."""
    return f"{namespace}{NAMESPACE_SEPARATOR}{item_id}"


def split_vector_key(key: str) -> tuple[str | None, str]:
    """Split a vector key into (namespace, id).

    Keys without a namespace return ``(None, key)``.
    """
    namespace, sep, item_id = key.partition(NAMESPACE_SEPARATOR)
    if not sep:
        return None, key
    return namespace, item_id
