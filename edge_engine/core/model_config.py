"""Versioned, immutable model configuration: every tunable constant in one place.

This module is the **registry** for every coefficient the engine uses.
Nowhere else in the codebase should a K-factor, home-field figure,
calibration bucket, or edge band be hard-coded.

Architecture
------------
* Component bundles (:class:`RatingConfig`, :class:`ProjectionConfig`,
  :class:`MarketCoefficients`, :class:`EdgeRules`, :class:`CalibrationTable`)
  are frozen dataclasses that validate themselves on construction.
* :class:`ModelConfig` groups them under a single ``version`` string.
* :class:`ConfigRegistry` is the only way to *load* a config for live use.
  A config is registered together with the :class:`AcceptanceRecord`
  produced by a passing backtest; :meth:`ConfigRegistry.load` refuses
  anything else with :class:`~edge_engine.core.errors.UnvalidatedConfigError`.

Rating-engine variants are named constructors on :class:`RatingConfig`
rather than separate engines.  None of them is implicitly "production":
callers pick one explicitly and the registry records which version passed.

Typical usage::

    from dataclasses import replace
    from edge_engine.core.model_config import ModelConfig, RatingConfig

    cfg = ModelConfig.baseline()
    candidate = replace(cfg, version="v1.1-dynamic-k",
                        rating=RatingConfig.dynamic_k())
"""

from __future__ import annotations

import hashlib
import json
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, Final, Optional, Tuple

from edge_engine.core.errors import UnvalidatedConfigError

# ---------------------------------------------------------------------------
# Strategy identifiers
# ---------------------------------------------------------------------------

K_FIXED: Final[str] = "fixed"
K_DYNAMIC: Final[str] = "dynamic"

MARGIN_NONE: Final[str] = "none"
MARGIN_BLOWOUT_CAP: Final[str] = "blowout_cap"
MARGIN_LOG: Final[str] = "log_margin"

_K_STRATEGIES: Final[frozenset] = frozenset({K_FIXED, K_DYNAMIC})
_MARGIN_STRATEGIES: Final[frozenset] = frozenset(
    {MARGIN_NONE, MARGIN_BLOWOUT_CAP, MARGIN_LOG}
)

TIER_VERY_HIGH: Final[str] = "very-high"
TIER_HIGH: Final[str] = "high"
TIER_MEDIUM: Final[str] = "medium"
TIER_LOW: Final[str] = "low"
TIER_SKIP: Final[str] = "skip"

_WEIGHT_SUM_TOL: Final[float] = 1e-9


# ---------------------------------------------------------------------------
# Rating engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RatingConfig:
    """Constants for the Elo-style rating engine.

    Attributes:
        baseline: Rating assigned to a team with no history (1500).
        carryover: Fraction of a team's distance from ``baseline`` kept
            across a season rollover.  0.67 keeps two thirds.
        k_strategy: ``"fixed"`` uses ``k_factor`` for every game;
            ``"dynamic"`` uses ``new_team_k`` until a team has played
            ``established_games`` games this season, then ``established_k``.
        margin_strategy: Exactly one of ``"none"``, ``"blowout_cap"``
            (K multiplied by ``blowout_fraction`` when the margin exceeds
            ``blowout_threshold``) and ``"log_margin"`` (multiplier
            ``log(max(margin, 1) + 1) × margin_scale``).  They never compose.
        zero_sum: When True, one Δ is computed per game and applied as
            home += Δ, away −= Δ.  When False each side is updated with its
            own K and expectation.
        home_bonus_elo: Elo points added to the home rating inside the
            expected-score computation.  0 keeps the pure logistic form.
        recency_window: Number of recent rating deltas kept per team-season
            for the projection-time recency boost.  0 disables the mode.
        recency_decay: Geometric decay applied to older deltas (most recent
            weight 1, next ``decay``, then ``decay²`` ...).
        recency_weight: Scale applied to the decayed mean delta.
    """

    baseline: float = 1500.0
    carryover: float = 0.67

    k_strategy: str = K_FIXED
    k_factor: float = 20.0
    new_team_k: float = 32.0
    established_k: float = 20.0
    established_games: int = 5

    margin_strategy: str = MARGIN_NONE
    blowout_threshold: float = 21.0
    blowout_fraction: float = 0.5
    margin_scale: float = 1.0

    zero_sum: bool = True
    home_bonus_elo: float = 0.0

    recency_window: int = 0
    recency_decay: float = 0.7
    recency_weight: float = 0.2

    def __post_init__(self) -> None:
        if self.k_strategy not in _K_STRATEGIES:
            raise ValueError(f"unknown k_strategy {self.k_strategy!r}")
        if self.margin_strategy not in _MARGIN_STRATEGIES:
            raise ValueError(f"unknown margin_strategy {self.margin_strategy!r}")
        if not 0.0 <= self.carryover <= 1.0:
            raise ValueError(f"carryover {self.carryover!r} must be within [0, 1]")
        if not 0.0 < self.blowout_fraction < 1.0:
            raise ValueError(
                f"blowout_fraction {self.blowout_fraction!r} must be within (0, 1)"
            )
        if min(self.k_factor, self.new_team_k, self.established_k) <= 0:
            raise ValueError("K factors must be positive")
        if self.recency_window < 0:
            raise ValueError("recency_window must be >= 0")
        if not 0.0 < self.recency_decay <= 1.0:
            raise ValueError("recency_decay must be within (0, 1]")

    # ------------------------------------------------------------------ #
    #  Named constructors                                                  #
    # ------------------------------------------------------------------ #

    @classmethod
    def plain(cls) -> "RatingConfig":
        """Fixed K=20, no margin term, zero-sum."""
        return cls()

    @classmethod
    def dynamic_k(cls) -> "RatingConfig":
        """New-team bootstrap K with a blowout cap on lopsided results."""
        return cls(k_strategy=K_DYNAMIC, margin_strategy=MARGIN_BLOWOUT_CAP)

    @classmethod
    def margin_weighted(cls) -> "RatingConfig":
        """Fixed K scaled by the log margin-of-victory multiplier."""
        return cls(margin_strategy=MARGIN_LOG)

    @classmethod
    def recency_weighted(cls, window: int = 5) -> "RatingConfig":
        """Plain updates plus a projection-time boost from the last ``window`` games."""
        return cls(recency_window=window)


# ---------------------------------------------------------------------------
# Ensemble projection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EnsembleWeights:
    """Fixed blend weights for the three projection signals (must sum to 1)."""

    rating: float = 0.5
    composite: float = 0.3
    efficiency: float = 0.2

    def __post_init__(self) -> None:
        values = (self.rating, self.composite, self.efficiency)
        if any(v < 0 for v in values):
            raise ValueError(f"ensemble weights must be non-negative: {values}")
        if abs(sum(values) - 1.0) > _WEIGHT_SUM_TOL:
            raise ValueError(f"ensemble weights must sum to 1, got {sum(values)!r}")

    def as_dict(self) -> Dict[str, float]:
        return {
            "rating": self.rating,
            "composite": self.composite,
            "efficiency": self.efficiency,
        }


@dataclass(frozen=True)
class ProjectionConfig:
    """Spread-projection constants.

    Attributes:
        divisor: Rating points per point of spread (25 Elo ≈ 1 point).
        home_field_advantage: Points credited to the home side.  Dropped
            for neutral-site games.
        composite_hfa_share: Fraction of the home-field term applied to the
            composite-index signal (the index already embeds some venue
            effect).
        efficiency_scale: Points per unit of per-play efficiency differential.
        spread_increment: Round the blended spread to this increment
            (``0.5`` for half points); ``None`` keeps full precision.
        margin_sd: Standard deviation of the final margin around the
            projected line, used to turn a point edge into a cover probability.
    """

    divisor: float = 25.0
    home_field_advantage: float = 2.5
    composite_hfa_share: float = 0.5
    efficiency_scale: float = 35.0
    weights: EnsembleWeights = field(default_factory=EnsembleWeights)
    spread_increment: Optional[float] = None
    margin_sd: float = 13.5

    def __post_init__(self) -> None:
        if self.divisor <= 0:
            raise ValueError("divisor must be positive")
        if self.margin_sd <= 0:
            raise ValueError("margin_sd must be positive")
        if self.spread_increment is not None and self.spread_increment <= 0:
            raise ValueError("spread_increment must be positive when set")


# ---------------------------------------------------------------------------
# Market-calibrated adjustment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FactorBounds:
    """Per-factor clip applied before weighting (points)."""

    conference: float = 3.0
    injuries: float = 7.0
    line_movement: float = 1.0
    weather: float = 3.0
    situational: float = 2.0
    pace: float = 3.0


@dataclass(frozen=True)
class FactorWeights:
    """Weight applied to each clipped factor in the adjustment sum."""

    conference: float = 1.0
    injuries: float = 1.0
    line_movement: float = 1.0
    weather: float = 1.0
    situational: float = 0.6
    pace: float = 1.0


@dataclass(frozen=True)
class MarketCoefficients:
    """Coefficients for the market-anchored model.

    ``max_total_adjustment`` caps the weighted sum that moves the model
    line away from the market.  ``plausibility_ceiling`` is the sanity
    gate: a *raw* adjustment beyond it marks the result as untrustworthy.
    """

    conference_strength_weight: float = 0.4
    injury_qb_weight: float = 3.0
    injury_non_qb_weight: float = 0.5
    sharp_movement_weight: float = 0.5
    sharp_movement_scale: float = 3.0
    pace_weight: float = 0.3
    wind_threshold_mph: float = 15.0
    wind_weight_per_10mph: float = 0.3
    precip_total_impact: float = 1.5
    precip_spread_impact: float = 0.5
    league_avg_pace: float = 70.0
    rest_day_value: float = 0.5

    bounds: FactorBounds = field(default_factory=FactorBounds)
    weights: FactorWeights = field(default_factory=FactorWeights)

    max_total_adjustment: float = 5.0
    plausibility_ceiling: float = 10.0

    cross_conference_uncertainty: float = 1.0
    early_season_uncertainty: float = 1.5
    early_season_weeks: int = 3
    totals_uncertainty: float = 1.5
    min_actionable_edge: float = 2.0

    def __post_init__(self) -> None:
        if self.max_total_adjustment <= 0:
            raise ValueError("max_total_adjustment must be positive")
        if self.plausibility_ceiling < self.max_total_adjustment:
            raise ValueError("plausibility_ceiling must be >= max_total_adjustment")


# ---------------------------------------------------------------------------
# Edge qualification and calibration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EdgeRules:
    """Qualification band and warning thresholds (points).

    An edge qualifies when ``min_edge <= |edge| < max_edge`` and the
    projection's signal disagreement does not exceed ``max_disagreement``.
    """

    min_edge: float = 2.5
    max_edge: float = 5.0
    max_disagreement: float = 5.0
    large_edge_warning: float = 10.0
    caution_edge_warning: float = 5.0

    def __post_init__(self) -> None:
        if not 0 <= self.min_edge < self.max_edge:
            raise ValueError("require 0 <= min_edge < max_edge")


@dataclass(frozen=True)
class CalibrationBucket:
    """Frozen backtest result for edges in ``[min_edge, max_edge)``.

    ``expected_value`` is a percentage of stake (``13.64`` means +13.64%).
    """

    min_edge: float
    max_edge: float
    win_probability: float
    expected_value: float
    confidence_tier: str

    @property
    def label(self) -> str:
        return f"[{self.min_edge:g},{self.max_edge:g})"

    def contains(self, abs_edge: float) -> bool:
        return self.min_edge <= abs_edge < self.max_edge


@dataclass(frozen=True)
class CalibrationOutcome:
    win_probability: float
    expected_value: float
    confidence_tier: str


@dataclass(frozen=True)
class CalibrationTable:
    """Ordered, contiguous calibration buckets plus out-of-range defaults.

    These constants are versioned with the table; changing any of them
    requires a full re-validation run.
    """

    version: str
    buckets: Tuple[CalibrationBucket, ...]
    too_small: CalibrationOutcome
    too_large: CalibrationOutcome

    def __post_init__(self) -> None:
        if not self.buckets:
            raise ValueError("calibration table needs at least one bucket")
        for prev, nxt in zip(self.buckets, self.buckets[1:]):
            if not math.isclose(prev.max_edge, nxt.min_edge):
                raise ValueError(
                    f"calibration buckets must be contiguous: {prev.label} → {nxt.label}"
                )
        for b in self.buckets:
            if not b.min_edge < b.max_edge:
                raise ValueError(f"empty calibration bucket {b.label}")

    @property
    def lower_bound(self) -> float:
        return self.buckets[0].min_edge

    @property
    def upper_bound(self) -> float:
        return self.buckets[-1].max_edge

    @classmethod
    def default(cls) -> "CalibrationTable":
        """Spread calibration frozen from the 2022-2024 replay."""
        return cls(
            version="spread-cal-2024.1",
            buckets=(
                CalibrationBucket(2.5, 3.0, 0.595, 13.64, TIER_VERY_HIGH),
                CalibrationBucket(3.0, 4.0, 0.558, 6.61, TIER_HIGH),
                CalibrationBucket(4.0, 5.0, 0.548, 4.55, TIER_MEDIUM),
            ),
            too_small=CalibrationOutcome(0.49, -7.00, TIER_LOW),
            too_large=CalibrationOutcome(0.46, -11.00, TIER_SKIP),
        )


# ---------------------------------------------------------------------------
# Top-level bundle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelConfig:
    """Everything needed to reproduce a model's projections and edges."""

    version: str
    rating: RatingConfig = field(default_factory=RatingConfig)
    projection: ProjectionConfig = field(default_factory=ProjectionConfig)
    market: MarketCoefficients = field(default_factory=MarketCoefficients)
    edge_rules: EdgeRules = field(default_factory=EdgeRules)
    calibration: CalibrationTable = field(default_factory=CalibrationTable.default)
    description: str = ""

    def __post_init__(self) -> None:
        if not self.version:
            raise ValueError("ModelConfig.version must be a non-empty string")

    @classmethod
    def baseline(cls) -> "ModelConfig":
        return cls(version="v1.0-elo", description="Plain Elo, fixed K, zero-sum")

    def fingerprint(self) -> str:
        """Stable SHA-256 digest of every constant in the bundle."""
        payload = json.dumps(asdict(self), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Acceptance gate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AcceptanceRecord:
    """Proof that a config passed the backtest promotion gate."""

    model_version: str
    config_fingerprint: str
    run_fingerprint: str
    decision: str
    criteria_improved: Tuple[str, ...]
    accepted_at: datetime

    @property
    def accepted(self) -> bool:
        return self.decision == "keep"


class ConfigRegistry:
    """Holds configs that have passed validation.  No module-level instance."""

    def __init__(self) -> None:
        self._configs: Dict[str, ModelConfig] = {}
        self._records: Dict[str, AcceptanceRecord] = {}

    def register(self, config: ModelConfig, record: AcceptanceRecord) -> None:
        if not record.accepted:
            raise UnvalidatedConfigError(
                f"{config.version}: acceptance decision was {record.decision!r}"
            )
        if record.model_version != config.version:
            raise UnvalidatedConfigError(
                f"acceptance record is for {record.model_version!r}, "
                f"not {config.version!r}"
            )
        if record.config_fingerprint != config.fingerprint():
            raise UnvalidatedConfigError(
                f"{config.version}: constants changed since validation"
            )
        self._configs[config.version] = config
        self._records[config.version] = record

    def load(self, version: str) -> ModelConfig:
        try:
            return self._configs[version]
        except KeyError:
            raise UnvalidatedConfigError(
                f"{version!r} has not passed the acceptance gate"
            ) from None

    def record(self, version: str) -> AcceptanceRecord:
        self.load(version)
        return self._records[version]

    def versions(self) -> Tuple[str, ...]:
        return tuple(sorted(self._configs))
