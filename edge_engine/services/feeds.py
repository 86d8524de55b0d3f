"""
Feed interfaces for the external collaborators the engine reads from.

Ingestion and storage live outside this package.  The engine only sees
these ABCs; tests and the CLI use the in-memory implementations below,
which are loaded from frozen snapshots.

Every "as of" query returns rows captured strictly before the cutoff.
Market reads go through :class:`MarketSnapshot` so that one edge
computation sees one consistent view of a book's quotes.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from edge_engine.core.errors import IncompleteFetchError, LeakageViolation
from edge_engine.models import (
    AWAY, HOME, OVER, SPREAD, UNDER,
    GameResult, MarketLine, SecondaryMetrics,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_PAGES = 10_000


# ---------------------------------------------------------------------------
# Paging
# ---------------------------------------------------------------------------

def fetch_all_pages(
    fetch_page: Callable[[int, int], Tuple[List[T], Optional[int]]],
    page_size: int = 1000,
    source: str = "feed",
) -> List[T]:
    """
    Drain a paged source completely.

    ``fetch_page(offset, limit)`` returns ``(rows, declared_total)``; the
    total may be ``None`` when the source does not report one.  Paging stops
    at the first short page.  When a total is declared and the row count
    does not match it, :class:`IncompleteFetchError` is raised so that a
    silently truncated result never reaches rating sequencing.
    """
    if page_size <= 0:
        raise ValueError("page_size must be positive")

    rows: List[T] = []
    declared: Optional[int] = None
    for page in range(_MAX_PAGES):
        batch, total = fetch_page(page * page_size, page_size)
        if total is not None:
            declared = total
        rows.extend(batch)
        if len(batch) < page_size:
            break
    else:
        raise IncompleteFetchError(source, declared or -1, len(rows))

    if declared is not None and len(rows) != declared:
        raise IncompleteFetchError(source, declared, len(rows))

    logger.info("%s: fetched %d rows in %d page(s)", source, len(rows), page + 1)
    return rows


# ---------------------------------------------------------------------------
# Consistent market view
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MarketSnapshot:
    """
    All quotes for one (event, book, market_type) as of a single instant.

    ``as_of`` is the read cutoff the snapshot was taken at; ``captured_at``
    is when its latest quote was observed, and is what leakage checks
    compare against kickoff.  Construction fails with
    :class:`LeakageViolation` if any row was captured after ``as_of`` (a
    torn read), and with ``ValueError`` if rows from another event, book or
    market are mixed in.
    """
    event_id: str
    book: str
    market_type: str
    as_of: datetime
    rows: Tuple[MarketLine, ...]

    def __post_init__(self):
        if not self.rows:
            raise ValueError(f"{self.event_id}/{self.book}: empty market snapshot")
        for row in self.rows:
            if (row.event_id, row.book, row.market_type) != (
                self.event_id, self.book, self.market_type
            ):
                raise ValueError(
                    f"snapshot for {self.event_id}/{self.book}/{self.market_type} "
                    f"contains row {row.event_id}/{row.book}/{row.market_type}"
                )
            if row.captured_at > self.as_of:
                raise LeakageViolation(
                    f"{self.market_type} line from {row.book}",
                    row.captured_at, self.as_of, event_id=self.event_id,
                )

    @property
    def latest(self) -> MarketLine:
        return max(self.rows, key=lambda r: r.captured_at)

    @property
    def points(self) -> float:
        return self.latest.points

    @property
    def captured_at(self) -> datetime:
        return self.latest.captured_at

    def price_for(self, side: str) -> Optional[int]:
        quotes = [r for r in self.rows if r.side == side]
        if not quotes:
            return None
        return max(quotes, key=lambda r: r.captured_at).price


def _sides_for(market_type: str) -> Tuple[str, str]:
    return (HOME, AWAY) if market_type == SPREAD else (OVER, UNDER)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class GameResultFeed(ABC):
    """Chronologically queryable, idempotently re-fetchable game results."""

    @abstractmethod
    def games(self, seasons: Optional[Iterable[int]] = None) -> List[GameResult]:
        """Return every game (final or not) for the given seasons."""


class MarketLineFeed(ABC):
    """Append-only time series of captured quotes."""

    @abstractmethod
    def lines(self, event_id: str, market_type: str) -> List[MarketLine]:
        """Every captured row for the event and market, any book."""

    def snapshot(
        self,
        event_id: str,
        market_type: str,
        as_of: datetime,
        book: Optional[str] = None,
    ) -> Optional[MarketSnapshot]:
        """
        Consistent view of the quotes captured strictly before ``as_of``.

        With ``book=None`` the book of the most recent qualifying quote is
        used.  For each side only that side's latest row is kept.
        """
        eligible = [r for r in self.lines(event_id, market_type) if r.captured_at < as_of]
        if book is not None:
            eligible = [r for r in eligible if r.book == book]
        if not eligible:
            return None
        chosen_book = book or max(eligible, key=lambda r: r.captured_at).book
        latest_by_side: Dict[str, MarketLine] = {}
        for row in eligible:
            if row.book != chosen_book:
                continue
            current = latest_by_side.get(row.side)
            if current is None or row.captured_at >= current.captured_at:
                latest_by_side[row.side] = row
        rows = tuple(sorted(latest_by_side.values(), key=lambda r: (r.captured_at, r.side)))
        return MarketSnapshot(
            event_id=event_id,
            book=chosen_book,
            market_type=market_type,
            as_of=as_of,
            rows=rows,
        )

    def latest_before(
        self,
        event_id: str,
        market_type: str,
        before: datetime,
        book: Optional[str] = None,
    ) -> Optional[MarketSnapshot]:
        return self.snapshot(event_id, market_type, before, book=book)

    def closing_line(
        self,
        event_id: str,
        market_type: str,
        start_time: datetime,
        book: Optional[str] = None,
    ) -> Optional[MarketSnapshot]:
        """The last quote captured before kickoff."""
        return self.snapshot(event_id, market_type, start_time, book=book)

    def history(
        self,
        event_id: str,
        market_type: str,
        before: datetime,
        book: Optional[str] = None,
    ) -> List[MarketLine]:
        """Chronological quotes captured strictly before ``before``."""
        rows = [
            r for r in self.lines(event_id, market_type)
            if r.captured_at < before and (book is None or r.book == book)
        ]
        return sorted(rows, key=lambda r: r.captured_at)


class SecondaryMetricsFeed(ABC):
    """Per-team-per-week efficiency indices; some team-weeks are absent."""

    @abstractmethod
    def metrics(self, team_id: str, season: int) -> List[SecondaryMetrics]:
        """Every row for the team-season, any order."""

    def latest_before(
        self, team_id: str, season: int, before: datetime
    ) -> Optional[SecondaryMetrics]:
        eligible = [m for m in self.metrics(team_id, season) if m.as_of < before]
        if not eligible:
            return None
        return max(eligible, key=lambda m: m.as_of)


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryGameFeed(GameResultFeed):

    def __init__(self, games: Iterable[GameResult]):
        self._games = list(games)

    def games(self, seasons: Optional[Iterable[int]] = None) -> List[GameResult]:
        if seasons is None:
            return list(self._games)
        wanted = set(seasons)
        return [g for g in self._games if g.season in wanted]


class InMemoryMarketFeed(MarketLineFeed):

    def __init__(self, lines: Iterable[MarketLine] = ()):
        self._rows: Dict[Tuple[str, str], List[MarketLine]] = defaultdict(list)
        for line in lines:
            self.append(line)

    def append(self, line: MarketLine) -> None:
        valid = _sides_for(line.market_type)
        if line.side not in valid:
            raise ValueError(
                f"{line.event_id}: side {line.side!r} invalid for {line.market_type}"
            )
        self._rows[(line.event_id, line.market_type)].append(line)

    def lines(self, event_id: str, market_type: str) -> List[MarketLine]:
        return list(self._rows.get((event_id, market_type), ()))


class InMemoryMetricsFeed(SecondaryMetricsFeed):

    def __init__(self, rows: Iterable[SecondaryMetrics] = ()):
        self._rows: Dict[Tuple[str, int], List[SecondaryMetrics]] = defaultdict(list)
        for row in rows:
            self._rows[(row.team_id, row.season)].append(row)

    def metrics(self, team_id: str, season: int) -> List[SecondaryMetrics]:
        return list(self._rows.get((team_id, season), ()))


# ---------------------------------------------------------------------------
# Frozen snapshot loading
# ---------------------------------------------------------------------------

def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        raise ValueError(f"timestamp {value!r} has no UTC offset")
    return ts


def feeds_from_snapshot(
    data: Dict,
) -> Tuple[InMemoryGameFeed, InMemoryMarketFeed, InMemoryMetricsFeed]:
    """
    Build in-memory feeds from a frozen JSON snapshot.

    Expected shape::

        {"games":   [{"event_id", "season", "week", "home_team_id",
                      "away_team_id", "start_time", "home_score", ...}],
         "lines":   [{"event_id", "book", "market_type", "side",
                      "points", "captured_at", "price"}],
         "metrics": [{"team_id", "season", "week", "as_of", ...}]}

    Timestamps are ISO-8601 and must carry an offset.  ``lines`` and
    ``metrics`` are optional.
    """
    games = [
        GameResult(**{**row, "start_time": _parse_ts(row["start_time"])})
        for row in data.get("games", [])
    ]
    lines = [
        MarketLine(**{**row, "captured_at": _parse_ts(row["captured_at"])})
        for row in data.get("lines", [])
    ]
    metrics = [
        SecondaryMetrics(**{**row, "as_of": _parse_ts(row["as_of"])})
        for row in data.get("metrics", [])
    ]
    logger.info(
        "Snapshot loaded: %d games, %d lines, %d metric rows",
        len(games), len(lines), len(metrics),
    )
    return InMemoryGameFeed(games), InMemoryMarketFeed(lines), InMemoryMetricsFeed(metrics)
