"""Typed property values for entities and relationships.

Properties are string-keyed maps whose values are restricted to a small
JSON-compatible union (null, bool, number, string, list, map). Restricting
the union is what makes merges and contradiction checks well defined across
types.
"""

from __future__ import annotations

import json
import math
from typing import Any, Union

from recallgraph.errors import ValidationError

PropertyValue = Union[None, bool, int, float, str, list["PropertyValue"], dict[str, "PropertyValue"]]
PropertyMap = dict[str, PropertyValue]

KIND_NULL = "null"
KIND_BOOL = "bool"
KIND_NUMBER = "number"
KIND_STRING = "string"
KIND_LIST = "list"
KIND_MAP = "map"


def value_kind(value: Any) -> str:
    """Return the type tag of a property value.

    Raises:
        ValidationError: if the value is outside the supported union.
    """
    if value is None:
        return KIND_NULL
    # bool before number: bool is an int subclass
    if isinstance(value, bool):
        return KIND_BOOL
    if isinstance(value, (int, float)):
        return KIND_NUMBER
    if isinstance(value, str):
        return KIND_STRING
    if isinstance(value, (list, tuple, set, frozenset)):
        return KIND_LIST
    if isinstance(value, dict):
        return KIND_MAP
    raise ValidationError(f"Unsupported property value type: {type(value).__name__}")


def normalize_value(value: Any) -> PropertyValue:
    """Coerce a value into the property union (tuples/sets become lists)."""
    kind = value_kind(value)
    if kind == KIND_NUMBER and isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"Non-finite number is not a valid property value: {value}")
    if kind == KIND_LIST:
        items = sorted(value, key=canonical_json) if isinstance(value, (set, frozenset)) else value
        return [normalize_value(v) for v in items]
    if kind == KIND_MAP:
        return normalize_properties(value)
    return value


def normalize_properties(properties: dict[str, Any] | None) -> PropertyMap:
    """Validate and normalize a property map.

    Raises:
        ValidationError: on non-string keys or unsupported values.
    """
    if properties is None:
        return {}
    if not isinstance(properties, dict):
        raise ValidationError(f"Properties must be a mapping, got {type(properties).__name__}")
    normalized: PropertyMap = {}
    for key, value in properties.items():
        if not isinstance(key, str):
            raise ValidationError(f"Property keys must be strings, got {key!r}")
        normalized[key] = normalize_value(value)
    return normalized


def canonical_json(value: Any) -> str:
    """Stable JSON encoding used for structural comparison."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _fold(text: str) -> str:
    return " ".join(text.split()).casefold()


def values_conflict(old: PropertyValue, new: PropertyValue, threshold: float = 0.0) -> bool:
    """Decide whether replacing ``old`` with ``new`` is a material disagreement.

    Args:
        old: Value currently stored
        new: Incoming value
        threshold: Relative tolerance for numeric drift (0 = any change)

    Returns:
        True when the change should be recorded as a contradiction.
    """
    # Absence is not an assertion
    if old is None or new is None:
        return False

    old_kind = value_kind(old)
    new_kind = value_kind(new)
    if old_kind != new_kind:
        return True

    if old_kind == KIND_NUMBER:
        scale = max(abs(old), abs(new), 1.0)
        return abs(old - new) > threshold * scale
    if old_kind == KIND_STRING:
        return _fold(old) != _fold(new)
    if old_kind == KIND_BOOL:
        return old != new
    return canonical_json(old) != canonical_json(new)


def merge_properties(
    existing: PropertyMap,
    incoming: PropertyMap,
    threshold: float = 0.0,
) -> tuple[PropertyMap, list[tuple[str, PropertyValue, PropertyValue]]]:
    """Shallow-merge ``incoming`` over ``existing``.

    Returns:
        Tuple of (merged map, conflicts) where each conflict is
        ``(key, old_value, new_value)`` for a key whose value changed
        materially. New keys win in the merged map either way.
    """
    merged: PropertyMap = dict(existing)
    conflicts: list[tuple[str, PropertyValue, PropertyValue]] = []
    for key, new_value in incoming.items():
        if key in existing and values_conflict(existing[key], new_value, threshold):
            conflicts.append((key, existing[key], new_value))
        merged[key] = new_value
    return merged, conflicts


def union_sources(existing: list[str], incoming: list[str] | None) -> list[str]:
    """Set-union of provenance strings, keeping first-seen order."""
    merged = list(dict.fromkeys(existing))
    for source in incoming or []:
        if source not in merged:
            merged.append(source)
    return merged


def clamp_confidence(value: float | None, default: float) -> float:
    """Clamp a confidence into [0, 1], substituting ``default`` for None."""
    if value is None:
        value = default
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Confidence must be a number, got {value!r}") from None
    if math.isnan(value):
        raise ValidationError("Confidence must not be NaN")
    return min(1.0, max(0.0, value))
