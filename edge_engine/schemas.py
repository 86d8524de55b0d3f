"""
Pydantic schemas for the records the engine exposes to collaborators.

The Edge record and the Backtest report are the only outward contracts.
Using explicit schemas instead of raw dicts keeps field names stable for
whatever consumes them (dashboards, storage jobs, the CLI's JSON output).
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Edge record
# ---------------------------------------------------------------------------

class EdgeRecord(BaseModel):
    """
    One priced opportunity, keyed by (event_id, book, market_type).

    ``raw_edge`` is always ``market_line - model_line``.  For spreads a
    positive edge means the home side; for totals a positive edge means
    the under.
    """

    event_id: str
    book: str
    market_type: Literal["spread", "total"]
    market_line: float
    model_line: float
    raw_edge: float
    capped_edge: float
    side: Literal["home", "away", "over", "under", "none"]
    confidence_tier: str
    qualifies: bool
    reason_code: str
    win_probability: float = Field(..., ge=0.0, le=1.0)
    expected_value: float = Field(..., description="Percent of stake, e.g. 13.64")
    disagreement: Optional[float] = Field(None, ge=0.0)
    warnings: List[str] = Field(default_factory=list)
    model_version: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.event_id, self.book, self.market_type)

    @field_validator("side")
    @classmethod
    def validate_side_matches_market(cls, v: str, info) -> str:
        market_type = info.data.get("market_type")
        if market_type == "spread" and v in ("over", "under"):
            raise ValueError(f"side {v!r} is not valid for a spread")
        if market_type == "total" and v in ("home", "away"):
            raise ValueError(f"side {v!r} is not valid for a total")
        return v

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "example": {
                "event_id": "401520281",
                "book": "consensus",
                "market_type": "spread",
                "market_line": -3.0,
                "model_line": -5.7,
                "raw_edge": 2.7,
                "capped_edge": 2.7,
                "side": "home",
                "confidence_tier": "very-high",
                "qualifies": True,
                "reason_code": "QUALIFIED",
                "win_probability": 0.595,
                "expected_value": 13.64,
                "warnings": [],
            }
        },
    }


# ---------------------------------------------------------------------------
# Backtest report
# ---------------------------------------------------------------------------

class Interval(BaseModel):
    """Point estimate with a bootstrap percentile interval."""

    estimate: float
    lower: float
    upper: float

    @model_validator(mode="after")
    def check_order(self) -> "Interval":
        if self.lower > self.upper:
            raise ValueError(f"interval lower {self.lower} > upper {self.upper}")
        return self


class EdgeBucketStats(BaseModel):
    label: str
    min_edge: float
    max_edge: Optional[float] = Field(None, description="None = unbounded")
    bets: int
    wins: int
    losses: int
    pushes: int
    win_rate: float
    roi: float


class SubPeriodStats(BaseModel):
    label: str
    bets: int
    clv: Optional[float]
    brier: Optional[float]
    monotonicity: Optional[float]


class BacktestReport(BaseModel):
    """Aggregate result of one harness run over the held-out test seasons."""

    model_version: str
    config_fingerprint: str
    run_fingerprint: str
    test_start_season: int
    bets: int
    wins: int
    losses: int
    pushes: int
    win_rate: float
    roi: Interval
    clv: Interval
    brier: Interval
    monotonicity: Optional[float] = Field(
        None, description="Spearman rho of bucket order vs. win rate"
    )
    edge_buckets: List[EdgeBucketStats] = Field(default_factory=list)
    sub_periods: List[SubPeriodStats] = Field(default_factory=list)
    exclusions: Dict[int, Dict[str, int]] = Field(
        default_factory=dict, description="season → reason → count"
    )
    warnings: Dict[str, int] = Field(default_factory=dict)
    bootstrap_iterations: int
    bootstrap_seed: int
    decision: Optional[Literal["keep", "reject"]] = None
    criteria_improved: List[str] = Field(default_factory=list)
    decision_notes: List[str] = Field(default_factory=list)

    def aggregate_view(self) -> dict:
        """Deterministic aggregates (identical across replays of one input)."""
        return self.model_dump(exclude={"decision", "criteria_improved", "decision_notes"})
