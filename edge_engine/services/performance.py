"""
Performance statistics over graded picks.

All public functions take a list of BetResult and return plain dicts or
tuples so they can be used by the backtest harness, the monitoring report
and the CLI without importing each other.

    win_rate = wins / (wins + losses)                    (pushes excluded)
    roi      = total_profit / (decisions * stake)
    clv      = mean CLV in points over all picks
    brier    = mean((predicted_prob - covered)^2)        (pushes excluded)

``predicted_prob`` is the probability implied by the price of the side
taken (-110 when the quote has no price).

Uncertainty comes from a percentile bootstrap: resample picks with
replacement a fixed number of times using ``np.random.default_rng(seed)``.
The seed is always reported next to the interval.
"""

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import spearmanr

from edge_engine.models import BetResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _safe_roi(profit: float, risked: float) -> float:
    return profit / risked if risked > 0 else 0.0


def _win_rate(wins: int, total: int) -> float:
    return wins / total if total > 0 else 0.0


def _mean(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def _record(results: Sequence[BetResult]) -> Tuple[int, int, int]:
    wins = sum(1 for r in results if r.covered is True)
    losses = sum(1 for r in results if r.covered is False)
    return wins, losses, len(results) - wins - losses


# ---------------------------------------------------------------------------
# Point estimates
# ---------------------------------------------------------------------------

def roi(results: Sequence[BetResult], stake: float = 1.0) -> float:
    wins, losses, _ = _record(results)
    return _safe_roi(sum(r.profit for r in results), (wins + losses) * stake)


def mean_clv(results: Sequence[BetResult]) -> float:
    return _mean([r.clv for r in results]) or 0.0


def brier(results: Sequence[BetResult]) -> Optional[float]:
    return _mean([r.brier_component for r in results if r.brier_component is not None])


def summarize(results: Sequence[BetResult], stake: float = 1.0) -> Dict:
    wins, losses, pushes = _record(results)
    return {
        "bets": len(results),
        "wins": wins,
        "losses": losses,
        "pushes": pushes,
        "win_rate": round(_win_rate(wins, wins + losses), 4),
        "roi": roi(results, stake),
        "clv": mean_clv(results),
        "brier": brier(results),
        "profit": sum(r.profit for r in results),
    }


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

def bootstrap_intervals(
    results: Sequence[BetResult],
    iterations: int = 1000,
    seed: int = 42,
    confidence: float = 0.95,
    stake: float = 1.0,
) -> Dict[str, Tuple[float, float, float]]:
    """
    ``{"roi"|"clv"|"brier": (estimate, lower, upper)}`` by percentile bootstrap.

    With no picks every interval is ``(0, 0, 0)``.  Resamples without any
    decided bet contribute NaN to ROI/Brier and are ignored by the
    percentile.
    """
    if iterations <= 0:
        raise ValueError("iterations must be positive")
    if not 0 < confidence < 1:
        raise ValueError("confidence must be within (0, 1)")

    n = len(results)
    if n == 0:
        return {"roi": (0.0, 0.0, 0.0), "clv": (0.0, 0.0, 0.0), "brier": (0.0, 0.0, 0.0)}

    profit = np.array([r.profit for r in results], dtype=float)
    decided = np.array([r.covered is not None for r in results], dtype=float)
    clv = np.array([r.clv for r in results], dtype=float)
    brier_parts = np.array(
        [r.brier_component if r.brier_component is not None else 0.0 for r in results],
        dtype=float,
    )

    rng = np.random.default_rng(seed)
    idx = rng.integers(0, n, size=(iterations, n))

    n_decided = decided[idx].sum(axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        roi_samples = np.where(n_decided > 0, profit[idx].sum(axis=1) / (n_decided * stake), np.nan)
        brier_samples = np.where(n_decided > 0, brier_parts[idx].sum(axis=1) / n_decided, np.nan)
    clv_samples = clv[idx].mean(axis=1)

    tail = (1.0 - confidence) / 2.0 * 100.0
    q = [tail, 100.0 - tail]

    def _interval(estimate: Optional[float], samples: np.ndarray) -> Tuple[float, float, float]:
        finite = samples[np.isfinite(samples)]
        if estimate is None or finite.size == 0:
            return (0.0, 0.0, 0.0)
        lo, hi = np.percentile(finite, q)
        return (float(estimate), float(lo), float(hi))

    return {
        "roi": _interval(roi(results, stake), roi_samples),
        "clv": _interval(mean_clv(results), clv_samples),
        "brier": _interval(brier(results), brier_samples),
    }


# ---------------------------------------------------------------------------
# Edge buckets
# ---------------------------------------------------------------------------

def edge_buckets(
    results: Sequence[BetResult],
    bounds: Sequence[float] = (0.0, 1.0, 2.0, 3.0, 4.0, 5.0),
    stake: float = 1.0,
) -> List[Dict]:
    """Per-bucket record by |edge|; the last bucket is open-ended."""
    rows = []
    for i, lo in enumerate(bounds):
        hi = bounds[i + 1] if i + 1 < len(bounds) else None
        members = [r for r in results if r.abs_edge >= lo and (hi is None or r.abs_edge < hi)]
        wins, losses, pushes = _record(members)
        rows.append({
            "label": f"{lo:g}-{hi:g}" if hi is not None else f"{lo:g}+",
            "min_edge": lo,
            "max_edge": hi,
            "bets": len(members),
            "wins": wins,
            "losses": losses,
            "pushes": pushes,
            "win_rate": round(_win_rate(wins, wins + losses), 4),
            "roi": round(roi(members, stake), 4),
        })
    return rows


def monotonicity(buckets: List[Dict], min_decisions: int = 1) -> Optional[float]:
    """
    Spearman rank correlation between bucket order and bucket win rate.

    +1 means win rate rises with every step up in edge size.  Buckets with
    fewer than ``min_decisions`` graded bets are ignored; ``None`` when
    fewer than two buckets remain or the win rates are all equal.
    """
    usable = [b for b in buckets if b["wins"] + b["losses"] >= min_decisions]
    if len(usable) < 2:
        return None
    rates = [b["win_rate"] for b in usable]
    if len(set(rates)) < 2:
        return None
    rho, _ = spearmanr(range(len(usable)), rates)
    if rho is None or math.isnan(rho):
        return None
    return float(rho)
