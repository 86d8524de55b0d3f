"""
Edge-size calibration.

Two directions:

* **Lookup** (live): map |edge| onto the frozen CalibrationTable.  Buckets
  are half-open ``[min, max)``; anything below the first bucket gets the
  table's "too small" default and anything at or above the last bucket's
  upper bound gets the "too large" default.
* **Curve building** (re-validation): tabulate graded backtest picks by
  edge bucket to derive candidate constants.  A new table only becomes
  live through the backtest acceptance gate.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from scipy.stats import norm

from edge_engine.core.model_config import (
    TIER_HIGH, TIER_LOW, TIER_MEDIUM, TIER_SKIP, TIER_VERY_HIGH,
    CalibrationBucket, CalibrationOutcome, CalibrationTable,
)
from edge_engine.core.odds_math import expected_value, roi_at_standard_vig
from edge_engine.models import BetResult

logger = logging.getLogger(__name__)

DEFAULT_CURVE_BOUNDS = (0.0, 0.5, 1.0, 1.5, 2.0, 2.5, 3.0, 4.0, 5.0, 7.0, 10.0)

# Below this many picks a bucket's own win rate is replaced by the
# cumulative win rate at its lower bound.
MIN_BUCKET_SAMPLE = 30


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

def find_bucket(table: CalibrationTable, abs_edge: float) -> Optional[CalibrationBucket]:
    if abs_edge < 0:
        raise ValueError(f"abs_edge must be non-negative, got {abs_edge!r}")
    for bucket in table.buckets:
        if bucket.contains(abs_edge):
            return bucket
    return None


def lookup(table: CalibrationTable, abs_edge: float) -> CalibrationOutcome:
    """Frozen {win_probability, expected_value, confidence_tier} for an edge size."""
    bucket = find_bucket(table, abs_edge)
    if bucket is not None:
        return CalibrationOutcome(
            bucket.win_probability, bucket.expected_value, bucket.confidence_tier
        )
    if abs_edge < table.lower_bound:
        return table.too_small
    return table.too_large


def cover_probability(abs_edge: float, margin_sd: float) -> float:
    """P(the side with the edge covers), normal margin around the model line."""
    return float(norm.cdf(abs_edge / margin_sd))


def confidence_tier(abs_edge: float, win_probability: float) -> str:
    """Tier from edge size and an observed or calibrated win rate."""
    if abs_edge >= 3 and win_probability >= 0.58:
        return TIER_VERY_HIGH
    if abs_edge >= 2 and win_probability >= 0.55:
        return TIER_HIGH
    if abs_edge >= 1 and win_probability >= 0.53:
        return TIER_MEDIUM
    if abs_edge >= 0.5 and win_probability >= 0.51:
        return TIER_LOW
    return TIER_SKIP


# ---------------------------------------------------------------------------
# Curve building
# ---------------------------------------------------------------------------

def _record(results: Sequence[BetResult]) -> Dict[str, int]:
    wins = sum(1 for r in results if r.covered is True)
    losses = sum(1 for r in results if r.covered is False)
    return {"wins": wins, "losses": losses, "pushes": len(results) - wins - losses}


def build_calibration_curve(
    results: Iterable[BetResult],
    bounds: Sequence[float] = DEFAULT_CURVE_BOUNDS,
) -> Dict:
    """
    Win rate, ROI and EV by |edge| bucket, plus cumulative win rate by threshold.

    The last bucket is open-ended.  ROI is at a flat -110; EV is per unit
    staked at the observed win rate.
    """
    picks = list(results)
    points: List[Dict] = []
    for i, lo in enumerate(bounds):
        hi = bounds[i + 1] if i + 1 < len(bounds) else None
        members = [r for r in picks if r.abs_edge >= lo and (hi is None or r.abs_edge < hi)]
        rec = _record(members)
        decided = rec["wins"] + rec["losses"]
        win_rate = rec["wins"] / decided if decided else 0.0
        points.append({
            "min_edge": lo,
            "max_edge": hi,
            "sample": len(members),
            **rec,
            "win_rate": round(win_rate, 4),
            "roi": round(roi_at_standard_vig(rec["wins"], rec["losses"]), 4),
            "expected_value": round(expected_value(win_rate), 4) if decided else 0.0,
        })

    cumulative: Dict[float, float] = {}
    for threshold in bounds:
        decided = [r for r in picks if r.abs_edge >= threshold and r.covered is not None]
        wins = sum(1 for r in decided if r.covered)
        cumulative[threshold] = round(wins / len(decided), 4) if decided else 0.0

    overall = _record(picks)
    decided = overall["wins"] + overall["losses"]
    return {
        "points": points,
        "cumulative_win_rate": cumulative,
        "overall_win_rate": round(overall["wins"] / decided, 4) if decided else 0.0,
        "overall_roi": round(roi_at_standard_vig(overall["wins"], overall["losses"]), 4),
        "total": len(picks),
    }


def calibrated_win_rate(curve: Dict, abs_edge: float) -> float:
    """Bucket win rate, falling back to the cumulative rate for thin buckets."""
    for point in curve["points"]:
        hi = point["max_edge"]
        if abs_edge >= point["min_edge"] and (hi is None or abs_edge < hi):
            if point["sample"] < MIN_BUCKET_SAMPLE:
                return curve["cumulative_win_rate"].get(point["min_edge"], point["win_rate"])
            return point["win_rate"]
    return curve["overall_win_rate"]


def table_from_curve(
    curve: Dict,
    version: str,
    min_edge: float,
    max_edge: float,
    too_small: CalibrationOutcome,
    too_large: CalibrationOutcome,
) -> CalibrationTable:
    """
    Candidate CalibrationTable from a curve, restricted to ``[min_edge, max_edge)``.

    The result must still pass the backtest acceptance gate before use.
    """
    buckets = []
    for point in curve["points"]:
        hi = point["max_edge"]
        if hi is None or point["min_edge"] < min_edge or hi > max_edge:
            continue
        p = calibrated_win_rate(curve, point["min_edge"])
        buckets.append(CalibrationBucket(
            min_edge=point["min_edge"],
            max_edge=hi,
            win_probability=p,
            expected_value=round(expected_value(p) * 100.0, 2),
            confidence_tier=confidence_tier(point["min_edge"], p),
        ))
    logger.info("Candidate calibration %s: %d bucket(s)", version, len(buckets))
    return CalibrationTable(
        version=version, buckets=tuple(buckets), too_small=too_small, too_large=too_large,
    )
