"""Query text helpers."""

import re

# "key:value" tokens appended to a query as context, e.g. "timeOfDay:morning"
_ANNOTATION_RE = re.compile(r"^[A-Za-z_][\w-]*:\S+$")


def split_annotations(text: str) -> tuple[str, list[str]]:
    """
    Separate ``key:value`` context annotations from the words of a query.

    Returns:
        Tuple of (plain text, annotations), both in original order.
    """
    plain: list[str] = []
    annotations: list[str] = []
    for token in (text or "").split():
        (annotations if _ANNOTATION_RE.match(token) else plain).append(token)
    return " ".join(plain), annotations


def query_terms(text: str, min_length: int = 3) -> list[str]:
    """Lowercased words of a query, annotations removed, short words dropped."""
    plain, _ = split_annotations(text)
    return [t for t in plain.lower().split() if len(t) >= min_length]
