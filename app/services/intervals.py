"""
Half-open interval arithmetic used by availability and conflict checks.

An interval is a ``(start, end)`` tuple of aware datetimes meaning
``[start, end)``. Touching intervals do not overlap.
"""

from datetime import datetime
from typing import Iterable, List, Tuple

Interval = Tuple[datetime, datetime]


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """True when [a_start, a_end) and [b_start, b_end) share an instant."""
    return a_start < b_end and b_start < a_end


def contains(outer: Interval, inner: Interval) -> bool:
    return outer[0] <= inner[0] and inner[1] <= outer[1]


def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    """
    Merge overlapping or adjacent intervals.

    Returns a new list sorted by start; empty intervals are dropped.
    """
    ordered = sorted((i for i in intervals if i[0] < i[1]), key=lambda i: i[0])
    if not ordered:
        return []

    merged = [ordered[0]]
    for start, end in ordered[1:]:
        last_start, last_end = merged[-1]
        if start <= last_end:
            if end > last_end:
                merged[-1] = (last_start, end)
        else:
            merged.append((start, end))
    return merged


def subtract_interval(interval: Interval, block: Interval) -> List[Interval]:
    """
    Remove ``block`` from ``interval``.

    Returns zero, one or two intervals.
    """
    start, end = interval
    block_start, block_end = block

    if not overlaps(start, end, block_start, block_end):
        return [interval]

    pieces = []
    if block_start > start:
        pieces.append((start, block_start))
    if block_end < end:
        pieces.append((block_end, end))
    return pieces


def subtract_all(intervals: Iterable[Interval], blocks: Iterable[Interval]) -> List[Interval]:
    """Subtract every block from every interval and return the merged remainder."""
    remaining = merge_intervals(intervals)
    for block in merge_intervals(blocks):
        next_remaining = []
        for interval in remaining:
            next_remaining.extend(subtract_interval(interval, block))
        remaining = next_remaining
        if not remaining:
            break
    return merge_intervals(remaining)
