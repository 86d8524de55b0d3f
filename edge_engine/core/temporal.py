"""Strict-before assertions for every input that feeds a prediction.

The rule is simple: anything used to predict a game must have an effective
timestamp strictly earlier than that game's start.  Equal timestamps are a
violation.  These checks are always on; there is no flag to disable them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from edge_engine.core.errors import LeakageViolation


def assert_before(
    effective_at: Optional[datetime],
    cutoff: datetime,
    what: str,
    event_id: Optional[str] = None,
) -> None:
    """Raise :class:`LeakageViolation` unless ``effective_at < cutoff``.

    ``effective_at=None`` means "no timestamp yet" (a freshly seeded rating
    that has never been updated) and always passes.
    """
    if effective_at is None:
        return
    if not effective_at < cutoff:
        raise LeakageViolation(what, effective_at, cutoff, event_id=event_id)


def assert_all_before(
    stamps: Iterable[Optional[datetime]],
    cutoff: datetime,
    what: str,
    event_id: Optional[str] = None,
) -> None:
    for ts in stamps:
        assert_before(ts, cutoff, what, event_id=event_id)


def assert_chronological(
    previous: Optional[datetime],
    current: datetime,
    what: str,
    event_id: Optional[str] = None,
) -> None:
    """Raise when ``current`` precedes ``previous`` (out-of-order replay)."""
    if previous is not None and current < previous:
        raise LeakageViolation(
            f"{what} replayed out of order (previous {previous!s})",
            current,
            previous,
            event_id=event_id,
        )
