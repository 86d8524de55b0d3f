"""
Domain records shared across services.

Inputs from external feeds (GameResult, MarketLine, SecondaryMetrics,
InjuryReport, WeatherReport) are frozen: once a row exists it is never
mutated.  TeamRating is the only mutable record, and only the rating
engine writes to it.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

# Market types
SPREAD = "spread"
TOTAL = "total"

# Sides
HOME = "home"
AWAY = "away"
OVER = "over"
UNDER = "under"
NO_SIDE = "none"


# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------

@dataclass
class TeamRating:
    """Per-team-per-season strength estimate.

    ``as_of`` is the start time of the last game folded into ``rating``;
    ``None`` until the first update of the season.
    """
    team_id: str
    season: int
    rating: float
    games_played: int = 0
    as_of: Optional[datetime] = None
    seeded_from_prior: bool = False

    def __post_init__(self):
        if not math.isfinite(self.rating):
            raise ValueError(f"{self.team_id}/{self.season}: rating must be finite")


# ---------------------------------------------------------------------------
# External feed rows
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GameResult:
    event_id: str
    season: int
    week: int
    home_team_id: str
    away_team_id: str
    start_time: datetime
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    neutral_site: bool = False

    @property
    def is_final(self) -> bool:
        return self.home_score is not None and self.away_score is not None

    @property
    def home_margin(self) -> Optional[int]:
        if not self.is_final:
            return None
        return self.home_score - self.away_score

    @property
    def total_points(self) -> Optional[int]:
        if not self.is_final:
            return None
        return self.home_score + self.away_score


@dataclass(frozen=True)
class MarketLine:
    """One captured quote.

    Spread ``points`` are always from the home perspective (negative = home
    favoured) regardless of ``side``; ``side`` says which ticket ``price``
    belongs to.  Total ``points`` are the posted over/under.
    """
    event_id: str
    book: str
    market_type: str
    side: str
    points: float
    captured_at: datetime
    price: Optional[int] = None


@dataclass(frozen=True)
class SecondaryMetrics:
    """Efficiency indices for a team-week.  Any field may be absent."""
    team_id: str
    season: int
    week: int
    as_of: datetime
    composite_index: Optional[float] = None
    off_efficiency: Optional[float] = None
    def_efficiency: Optional[float] = None
    pace: Optional[float] = None
    conference: Optional[str] = None
    conference_rating: Optional[float] = None

    @property
    def net_efficiency(self) -> Optional[float]:
        if self.off_efficiency is None or self.def_efficiency is None:
            return None
        return self.off_efficiency - self.def_efficiency


@dataclass(frozen=True)
class InjuryReport:
    team_id: str
    player: str
    reported_at: datetime
    is_quarterback: bool = False
    status: str = "out"


@dataclass(frozen=True)
class WeatherReport:
    event_id: str
    observed_at: datetime
    wind_mph: float = 0.0
    precipitation: bool = False
    indoor: bool = False


@dataclass(frozen=True)
class GameContext:
    """Everything the market-anchored adjustment may read for one game.

    Missing pieces stay ``None``; the adjustment treats them as neutral and
    records a warning.
    """
    game: GameResult
    home_metrics: Optional[SecondaryMetrics] = None
    away_metrics: Optional[SecondaryMetrics] = None
    injuries: Optional[List[InjuryReport]] = None
    weather: Optional[WeatherReport] = None
    home_rest_days: Optional[int] = None
    away_rest_days: Optional[int] = None
    line_history: Optional[List[MarketLine]] = None


# ---------------------------------------------------------------------------
# Derived records
# ---------------------------------------------------------------------------

@dataclass
class Projection:
    """Pre-game spread projection (negative = home favoured)."""
    event_id: str
    model_version: str
    generated_at: datetime
    spread: float
    component_breakdown: Dict[str, float]
    weights_used: Dict[str, float]
    disagreement: float
    warnings: List[str] = field(default_factory=list)
    inputs_as_of: Dict[str, Optional[datetime]] = field(default_factory=dict)


@dataclass
class MarketProjection:
    """Market-anchored line with every adjustment exposed for audit."""
    event_id: str
    market_type: str
    market_line: float
    factors: Dict[str, float]
    raw_adjustment: float
    capped_adjustment: float
    model_line: float
    raw_edge: float
    capped_edge: float
    uncertainty: float
    confidence: str
    sanity_gate_failed: bool = False
    warnings: List[str] = field(default_factory=list)
    explanation: List[str] = field(default_factory=list)


@dataclass
class BetResult:
    """Graded outcome of one backtest pick.  Ephemeral; never stored."""
    event_id: str
    season: int
    week: int
    market_type: str
    side: str
    edge: float
    bet_line: float
    closing_line: float
    price: Optional[int]
    covered: Optional[bool]
    profit: float
    clv: float
    predicted_prob: float
    qualifies: bool
    brier_component: Optional[float] = None

    @property
    def abs_edge(self) -> float:
        return abs(self.edge)

    @property
    def is_push(self) -> bool:
        return self.covered is None
