"""Pure status arithmetic over effective ranges.

A record is authoritative on the half-open range ``[effective_from,
effective_to)``; ``effective_to = None`` means open-ended. Nothing here
touches the database, so the functions work on ORM rows and plain objects
alike.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional


class RecordStatus(Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


def resolve_status(record, now: datetime) -> RecordStatus:
    if getattr(record, "cancelled_at", None) is not None:
        return RecordStatus.CANCELLED
    if now < record.effective_from:
        return RecordStatus.UPCOMING
    if record.effective_to is not None and now >= record.effective_to:
        return RecordStatus.EXPIRED
    return RecordStatus.ACTIVE


def is_active(record, now: datetime) -> bool:
    return resolve_status(record, now) is RecordStatus.ACTIVE


def pick_current(records: Iterable, now: datetime):
    """Return the record active at ``now``, or None.

    Should several records claim ``now`` for one subject, the one that
    started last wins.
    """
    current = None
    for record in records:
        if not is_active(record, now):
            continue
        if current is None or record.effective_from > current.effective_from:
            current = record
    return current


def countdown(record, now: datetime) -> timedelta:
    """Time left until activation; zero once the record has started."""
    remaining = record.effective_from - now
    return remaining if remaining > timedelta(0) else timedelta(0)


def hours_until(record, now: datetime) -> int:
    return int(countdown(record, now).total_seconds() // 3600)


def ranges_overlap(
    a_from: datetime,
    a_to: Optional[datetime],
    b_from: datetime,
    b_to: Optional[datetime],
) -> bool:
    a_ends_after_b_starts = a_to is None or a_to > b_from
    b_ends_after_a_starts = b_to is None or b_to > a_from
    return a_ends_after_b_starts and b_ends_after_a_starts
