"""
Edge evaluation and the keyed edge board.

Sign convention, used everywhere in this package:

    edge = market_line - model_line

Spreads (home perspective, negative = home favoured)
    edge > 0  → the market has home as a bigger underdog than the model → bet HOME
    edge < 0  → bet AWAY
Totals
    edge > 0  → the model total is below the market → bet UNDER
    edge < 0  → bet OVER
edge == 0 → no side.

Qualification (first failing rule is the reason code):

    SANITY_GATE      the market adjustment failed its plausibility ceiling
    DISAGREEMENT     projection signals disagree by more than max_disagreement
    NO_EDGE          edge is exactly zero
    EDGE_TOO_SMALL   |edge| <  min_edge
    EDGE_TOO_LARGE   |edge| >= max_edge
    QUALIFIED        otherwise
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from edge_engine.core.model_config import EdgeRules, ModelConfig
from edge_engine.core.temporal import assert_before
from edge_engine.models import (
    AWAY, HOME, NO_SIDE, OVER, SPREAD, TOTAL, UNDER,
    GameContext, MarketProjection, Projection,
)
from edge_engine.schemas import EdgeRecord
from edge_engine.services.calibration import lookup
from edge_engine.services.feeds import MarketSnapshot
from edge_engine.services.market import MarketAdjuster

logger = logging.getLogger(__name__)

REASON_QUALIFIED = "QUALIFIED"
REASON_SANITY_GATE = "SANITY_GATE"
REASON_DISAGREEMENT = "DISAGREEMENT"
REASON_NO_EDGE = "NO_EDGE"
REASON_EDGE_TOO_SMALL = "EDGE_TOO_SMALL"
REASON_EDGE_TOO_LARGE = "EDGE_TOO_LARGE"

WARN_LARGE_EDGE = "LARGE_EDGE"
WARN_CAUTION = "CAUTION"
WARN_SMALL_EDGE = "SMALL_EDGE"


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def compute_edge(market_line: float, model_line: float) -> float:
    return market_line - model_line


def side_for(market_type: str, edge: float) -> str:
    if market_type not in (SPREAD, TOTAL):
        raise ValueError(f"unknown market type {market_type!r}")
    if edge == 0:
        return NO_SIDE
    if market_type == SPREAD:
        return HOME if edge > 0 else AWAY
    return UNDER if edge > 0 else OVER


def edge_warnings(abs_edge: float, rules: EdgeRules) -> List[str]:
    if abs_edge >= rules.large_edge_warning:
        return [WARN_LARGE_EDGE]
    if abs_edge >= rules.caution_edge_warning:
        return [WARN_CAUTION]
    if abs_edge < rules.min_edge:
        return [WARN_SMALL_EDGE]
    return []


def qualify(
    abs_edge: float,
    rules: EdgeRules,
    disagreement: Optional[float] = None,
    sanity_gate_failed: bool = False,
) -> Tuple[bool, str]:
    """Return ``(qualifies, reason_code)`` for an edge magnitude."""
    if sanity_gate_failed:
        return False, REASON_SANITY_GATE
    if disagreement is not None and disagreement > rules.max_disagreement:
        return False, REASON_DISAGREEMENT
    if abs_edge == 0:
        return False, REASON_NO_EDGE
    if abs_edge < rules.min_edge:
        return False, REASON_EDGE_TOO_SMALL
    if abs_edge >= rules.max_edge:
        return False, REASON_EDGE_TOO_LARGE
    return True, REASON_QUALIFIED


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------

class EdgeEvaluator:
    """Turns a model line and a market snapshot into an EdgeRecord."""

    def __init__(self, config: ModelConfig):
        self.config = config

    def evaluate(
        self,
        snapshot: MarketSnapshot,
        model_line: float,
        capped_edge: Optional[float] = None,
        disagreement: Optional[float] = None,
        sanity_gate_failed: bool = False,
        warnings: Iterable[str] = (),
        start_time: Optional[datetime] = None,
    ) -> EdgeRecord:
        if start_time is not None:
            assert_before(
                snapshot.captured_at, start_time, f"{snapshot.market_type} market line",
                event_id=snapshot.event_id,
            )
        rules = self.config.edge_rules
        market_line = snapshot.points
        raw_edge = compute_edge(market_line, model_line)
        if capped_edge is None:
            capped_edge = raw_edge
        abs_edge = abs(raw_edge)

        qualifies, reason = qualify(abs_edge, rules, disagreement, sanity_gate_failed)
        calibrated = lookup(self.config.calibration, abs_edge)
        all_warnings = list(warnings) + edge_warnings(abs_edge, rules)

        record = EdgeRecord(
            event_id=snapshot.event_id,
            book=snapshot.book,
            market_type=snapshot.market_type,
            market_line=market_line,
            model_line=model_line,
            raw_edge=raw_edge,
            capped_edge=capped_edge,
            side=side_for(snapshot.market_type, raw_edge),
            confidence_tier=calibrated.confidence_tier,
            qualifies=qualifies,
            reason_code=reason,
            win_probability=calibrated.win_probability,
            expected_value=calibrated.expected_value,
            disagreement=disagreement,
            warnings=all_warnings,
            model_version=self.config.version,
        )
        logger.debug(
            "%s/%s/%s edge %+.2f → %s (%s)",
            record.event_id, record.book, record.market_type,
            raw_edge, record.side, reason,
        )
        return record

    def from_projection(
        self,
        projection: Projection,
        snapshot: MarketSnapshot,
        start_time: Optional[datetime] = None,
    ) -> EdgeRecord:
        if snapshot.market_type != SPREAD:
            raise ValueError("ensemble projections only price spreads")
        if projection.event_id != snapshot.event_id:
            raise ValueError(
                f"projection {projection.event_id} does not match snapshot {snapshot.event_id}"
            )
        return self.evaluate(
            snapshot,
            model_line=projection.spread,
            disagreement=projection.disagreement,
            warnings=projection.warnings,
            start_time=start_time,
        )

    def from_market_projection(
        self,
        projection: MarketProjection,
        snapshot: MarketSnapshot,
        start_time: Optional[datetime] = None,
    ) -> EdgeRecord:
        if projection.market_line != snapshot.points:
            raise ValueError(
                f"{snapshot.event_id}: projection was anchored on {projection.market_line}, "
                f"snapshot reads {snapshot.points}"
            )
        # the edge is the uncapped adjustment; the capped line is what we publish
        record = self.evaluate(
            snapshot,
            model_line=snapshot.points - projection.raw_adjustment,
            capped_edge=projection.capped_edge,
            sanity_gate_failed=projection.sanity_gate_failed,
            warnings=projection.warnings,
            start_time=start_time,
        )
        return record.model_copy(update={"model_line": projection.model_line})


# ---------------------------------------------------------------------------
# Keyed board
# ---------------------------------------------------------------------------

class EdgeBoard:
    """
    Current EdgeRecord per (event_id, book, market_type).

    A spread key is priced from the ensemble projection when one is held
    for the event, otherwise from the event's market context.  Totals are
    always market-anchored.  A new market snapshot, projection or context
    for an event triggers a recompute of every record that depends on it.
    Snapshots whose latest quote is older than the one already held for a
    key are ignored.
    """

    def __init__(self, evaluator: EdgeEvaluator, adjuster: Optional[MarketAdjuster] = None):
        self.evaluator = evaluator
        self.adjuster = adjuster or MarketAdjuster(evaluator.config.market)
        self._projections: Dict[str, Tuple[Projection, datetime]] = {}
        self._contexts: Dict[str, GameContext] = {}
        self._snapshots: Dict[Tuple[str, str, str], MarketSnapshot] = {}
        self._records: Dict[Tuple[str, str, str], EdgeRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def _recompute(self, key: Tuple[str, str, str]) -> Optional[EdgeRecord]:
        event_id, _, market_type = key
        snapshot = self._snapshots.get(key)
        if snapshot is None:
            return None
        held = self._projections.get(event_id)
        ctx = self._contexts.get(event_id)
        if market_type == SPREAD and held is not None:
            projection, start_time = held
            record = self.evaluator.from_projection(projection, snapshot, start_time=start_time)
        elif ctx is not None:
            if market_type == SPREAD:
                market_projection = self.adjuster.project_spread(snapshot, ctx)
            else:
                market_projection = self.adjuster.project_total(snapshot, ctx)
            record = self.evaluator.from_market_projection(
                market_projection, snapshot, start_time=ctx.game.start_time,
            )
        else:
            return None
        self._records[key] = record
        return record

    def _recompute_event(self, event_id: str) -> List[EdgeRecord]:
        updated = []
        for key in sorted(self._snapshots):
            if key[0] == event_id:
                record = self._recompute(key)
                if record is not None:
                    updated.append(record)
        return updated

    def on_projection(self, projection: Projection, start_time: datetime) -> List[EdgeRecord]:
        self._projections[projection.event_id] = (projection, start_time)
        return self._recompute_event(projection.event_id)

    def on_context(self, ctx: GameContext) -> List[EdgeRecord]:
        """Register (or replace) the market-adjustment inputs for an event."""
        self._contexts[ctx.game.event_id] = ctx
        return self._recompute_event(ctx.game.event_id)

    def on_snapshot(self, snapshot: MarketSnapshot) -> Optional[EdgeRecord]:
        key = (snapshot.event_id, snapshot.book, snapshot.market_type)
        held = self._snapshots.get(key)
        if held is not None and snapshot.captured_at < held.captured_at:
            logger.debug("%s: ignoring stale snapshot from %s", key, snapshot.captured_at)
            return self._records.get(key)
        self._snapshots[key] = snapshot
        return self._recompute(key)

    def upsert(self, record: EdgeRecord) -> None:
        """Store a record computed elsewhere.  The next recompute of its key replaces it."""
        self._records[record.key] = record

    def get(self, event_id: str, book: str, market_type: str) -> Optional[EdgeRecord]:
        return self._records.get((event_id, book, market_type))

    def records(self) -> List[EdgeRecord]:
        return [self._records[k] for k in sorted(self._records)]

    def qualified(self) -> List[EdgeRecord]:
        return [r for r in self.records() if r.qualifies]
