"""
Live-performance monitoring.

Public API:
  check_calibration_drift(results, table)  → List[CalibrationDrift]
  drift_report(results, table)              → Dict (per-bucket audit, "status" key)
  check_performance_alerts(results)         → List[Alert]

Everything here is observational.  Calibration constants are frozen with
their CalibrationTable version; a drift finding is a prompt for a human to
run a full re-validation, never an automatic adjustment.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from scipy.stats import norm

from edge_engine.core.errors import CalibrationDrift
from edge_engine.core.model_config import CalibrationTable
from edge_engine.models import BetResult
from edge_engine.services.calibration import find_bucket

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tuning constants
# ---------------------------------------------------------------------------

# Minimum graded bets in a bucket before drift is assessed
_MIN_DRIFT_SAMPLE = 30

# Two-sided significance for the bucket win-rate test
_DRIFT_ALPHA = 0.05

_CLV_WINDOW = 50
_CLV_MIN_SAMPLE = 10
_CLV_CRITICAL = -0.5        # points
_DRAWDOWN_WARNING = 10.0    # units
_DRAWDOWN_INFO = 5.0        # units
_STREAK_WARNING = 10
_STREAK_INFO = 7


# ---------------------------------------------------------------------------
# Alert dataclass
# ---------------------------------------------------------------------------

@dataclass
class Alert:
    alert_type: str
    severity: str             # INFO | WARNING | CRITICAL
    message: str
    threshold: Optional[float] = None
    current_value: Optional[float] = None
    recommendation: str = ""

    def to_dict(self) -> dict:
        return {
            "alert_type": self.alert_type,
            "severity": self.severity,
            "message": self.message,
            "threshold": self.threshold,
            "current_value": self.current_value,
            "recommendation": self.recommendation,
        }


# ---------------------------------------------------------------------------
# Calibration drift
# ---------------------------------------------------------------------------

def _bucket_rows(results: Sequence[BetResult], table: CalibrationTable) -> List[Dict]:
    rows = []
    for bucket in table.buckets:
        members = [
            r for r in results
            if r.covered is not None and find_bucket(table, r.abs_edge) is bucket
        ]
        wins = sum(1 for r in members if r.covered)
        n = len(members)
        rows.append({
            "bucket": bucket.label,
            "expected": bucket.win_probability,
            "observed": wins / n if n else None,
            "sample": n,
        })
    return rows


def check_calibration_drift(
    results: Sequence[BetResult],
    table: CalibrationTable,
    min_sample: int = _MIN_DRIFT_SAMPLE,
    alpha: float = _DRIFT_ALPHA,
) -> List[CalibrationDrift]:
    """
    Buckets whose observed win rate differs significantly from the frozen one.

    Uses a normal approximation to the binomial: drift when
    ``|observed - expected| > z * sqrt(p (1 - p) / n)``.
    """
    z = norm.ppf(1.0 - alpha / 2.0)
    findings = []
    for row in _bucket_rows(results, table):
        if row["sample"] < min_sample:
            continue
        p, n = row["expected"], row["sample"]
        se = math.sqrt(p * (1.0 - p) / n)
        if abs(row["observed"] - p) > z * se:
            finding = CalibrationDrift(row["bucket"], p, row["observed"], n)
            logger.warning("Calibration drift: %s", finding)
            findings.append(finding)
    return findings


def drift_report(
    results: Sequence[BetResult],
    table: CalibrationTable,
    min_sample: int = _MIN_DRIFT_SAMPLE,
) -> Dict:
    rows = _bucket_rows(results, table)
    findings = check_calibration_drift(results, table, min_sample)
    assessed = sum(1 for r in rows if r["sample"] >= min_sample)
    if assessed == 0:
        status = "insufficient_data"
    elif findings:
        status = "drift_detected"
    else:
        status = "calibrated"
    return {
        "status": status,
        "calibration_version": table.version,
        "buckets": rows,
        "drifted": [f.bucket for f in findings],
        "action": "re-validate" if findings else "none",
    }


# ---------------------------------------------------------------------------
# Performance alerts
# ---------------------------------------------------------------------------

def _max_drawdown(profits: Sequence[float]) -> float:
    running = peak = max_dd = 0.0
    for pl in profits:
        running += pl
        peak = max(peak, running)
        max_dd = max(max_dd, peak - running)
    return max_dd


def _losing_streak(results: Sequence[BetResult]) -> int:
    streak = 0
    for r in reversed(results):
        if r.covered is None:
            continue
        if r.covered:
            break
        streak += 1
    return streak


def check_performance_alerts(
    results: Sequence[BetResult],
    table: Optional[CalibrationTable] = None,
) -> List[Alert]:
    """
    Evaluate alert conditions over chronologically ordered graded bets.

    Conditions checked:
      1. CRITICAL  mean CLV (last 50) < -0.5 pts
      2. WARNING   mean CLV (last 50) < 0
      3. WARNING   drawdown > 10 units
      4. INFO      drawdown > 5 units
      5. WARNING   10+ consecutive losses
      6. INFO      7-9 consecutive losses
      7. WARNING   calibration drift in any bucket (when a table is given)
    """
    alerts: List[Alert] = []
    if not results:
        return alerts

    recent_clv = [r.clv for r in results[-_CLV_WINDOW:]]
    if len(recent_clv) >= _CLV_MIN_SAMPLE:
        mean_clv = sum(recent_clv) / len(recent_clv)
        if mean_clv < _CLV_CRITICAL:
            alerts.append(Alert(
                alert_type="CLV_NEGATIVE",
                severity="CRITICAL",
                message=f"Mean CLV over last {len(recent_clv)} bets is {mean_clv:+.2f} pts",
                threshold=_CLV_CRITICAL,
                current_value=round(mean_clv, 3),
                recommendation="Stop betting and review bet timing and line sources.",
            ))
        elif mean_clv < 0.0:
            alerts.append(Alert(
                alert_type="CLV_DECLINING",
                severity="WARNING",
                message=f"Mean CLV over last {len(recent_clv)} bets dropped to {mean_clv:+.2f} pts",
                threshold=0.0,
                current_value=round(mean_clv, 3),
                recommendation="Review recent games where closing value was lost.",
            ))

    drawdown = _max_drawdown([r.profit for r in results])
    if drawdown > _DRAWDOWN_WARNING:
        alerts.append(Alert(
            alert_type="DRAWDOWN_HIGH",
            severity="WARNING",
            message=f"Peak-to-trough drawdown reached {drawdown:.1f} units",
            threshold=_DRAWDOWN_WARNING,
            current_value=round(drawdown, 2),
            recommendation="Compare live edge buckets with the frozen calibration.",
        ))
    elif drawdown > _DRAWDOWN_INFO:
        alerts.append(Alert(
            alert_type="DRAWDOWN_ELEVATED",
            severity="INFO",
            message=f"Drawdown at {drawdown:.1f} units",
            threshold=_DRAWDOWN_INFO,
            current_value=round(drawdown, 2),
        ))

    streak = _losing_streak(results)
    if streak >= _STREAK_WARNING:
        alerts.append(Alert(
            alert_type="LOSING_STREAK",
            severity="WARNING",
            message=f"{streak} consecutive losses",
            threshold=float(_STREAK_WARNING),
            current_value=float(streak),
            recommendation="Check data freshness before the next card.",
        ))
    elif streak >= _STREAK_INFO:
        alerts.append(Alert(
            alert_type="LOSING_STREAK",
            severity="INFO",
            message=f"{streak} consecutive losses",
            threshold=float(_STREAK_INFO),
            current_value=float(streak),
        ))

    if table is not None:
        for finding in check_calibration_drift(results, table):
            alerts.append(Alert(
                alert_type="CALIBRATION_DRIFT",
                severity="WARNING",
                message=str(finding),
                threshold=finding.expected,
                current_value=round(finding.observed, 4),
                recommendation="Run a full re-validation backtest; constants stay frozen until it passes.",
            ))

    return alerts
