"""Reconciliation of incremental job log batches into a bounded local buffer.

Entries are deduplicated by ``seq`` and kept in arrival order. The server may
resend entries after retries, so an incoming batch can overlap what is
already held. When the buffer grows past ``MAX_LOG_ENTRIES`` the oldest
entries are dropped first.

All functions here are pure: they never mutate their arguments and return
the input list itself when no change is needed.
"""

from typing import List, Sequence, Set

from .models import LogEntry
from .settings import MAX_LOG_ENTRIES


def needs_normalize(entries: Sequence[LogEntry], limit: int = MAX_LOG_ENTRIES) -> bool:
    """Return True when ``entries`` is oversized or repeats a ``seq``."""
    if len(entries) > limit:
        return True
    seen: Set[int] = set()
    for entry in entries:
        if entry.seq in seen:
            return True
        seen.add(entry.seq)
    return False


def normalize_logs(entries: List[LogEntry], limit: int = MAX_LOG_ENTRIES) -> List[LogEntry]:
    """Deduplicate by ``seq`` and bound the buffer to ``limit`` entries.

    Among duplicates the most recently arrived occurrence is the one kept.
    """
    if not entries or not needs_normalize(entries, limit):
        return entries
    seen: Set[int] = set()
    kept: List[LogEntry] = []
    for entry in reversed(entries):
        if entry.seq in seen:
            continue
        seen.add(entry.seq)
        kept.append(entry)
        if len(kept) == limit:
            break
    kept.reverse()
    return kept


def append_logs(current: List[LogEntry], incoming: List[LogEntry], limit: int = MAX_LOG_ENTRIES) -> List[LogEntry]:
    """Merge a newly received batch into ``current``.

    A clean batch that fits is simply concatenated. Anything else (a resent
    ``seq``, or a result over ``limit``) is concatenated and normalized, so
    a resent entry takes the position of its latest arrival.
    """
    if not incoming:
        return normalize_logs(current, limit) if len(current) > limit else current

    if not current:
        return normalize_logs(incoming, limit)

    merged = current + incoming
    if len(merged) > limit:
        return normalize_logs(merged, limit)

    seen: Set[int] = {entry.seq for entry in current}
    clean = len(seen) == len(current)
    for entry in incoming:
        if not clean:
            break
        if entry.seq in seen:
            clean = False
        seen.add(entry.seq)
    return merged if clean else normalize_logs(merged, limit)
