"""
aggregate.py - Merge the entries of all lists sharing a tag.

Each tag gets its own sorted, duplicate free tuple. Sorting is by code point,
which makes the result independent of the order in which lists finished.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable, NamedTuple, Sequence


class Normalization(str, Enum):
    """How entries are compared for deduplication."""

    NONE = "none"
    LOWERCASE = "lowercase"


class Contribution(NamedTuple):
    """Entries of one successfully processed list."""

    list_id: str
    tags: Sequence[str]
    values: Iterable[str]


def normalize_entry(value: str, mode: Normalization = Normalization.NONE) -> str:
    """
    Example:
        >>> normalize_entry("Ads.Example.COM.", Normalization.LOWERCASE)
        'ads.example.com'
        >>> normalize_entry("Ads.Example.COM.")
        'Ads.Example.COM.'
    """
    if mode is Normalization.LOWERCASE:
        return value.lower().strip().rstrip(".")
    return value


def aggregate(
    contributions: Iterable[Contribution],
    tags: Iterable[str],
    normalization: Normalization = Normalization.NONE,
) -> dict[str, tuple[str, ...]]:
    """
    Build the aggregated set of every tag.

    Args:
        contributions: One entry per list that completed extraction
        tags: Every configured tag; tags without contributors map to ()
        normalization: Applied to each value before deduplication

    Returns:
        Mapping of tag to sorted unique entries, keyed in the order of `tags`
        followed by any tag only seen in contributions
    """
    buckets: dict[str, set[str]] = {tag: set() for tag in tags}
    for contribution in contributions:
        values = {normalize_entry(value, normalization) for value in contribution.values}
        values.discard("")
        for tag in contribution.tags:
            buckets.setdefault(tag, set()).update(values)
    return {tag: tuple(sorted(entries)) for tag, entries in buckets.items()}
