"""
Market-anchored projection.

Instead of projecting a line from scratch, start from the latest observed
market line and move it by a small number of named, bounded factors that
the market may underweight.

Spreads (positive factor = home better than the market thinks):

    conference    (home_conf_rating - away_conf_rating) * conference_strength_weight
    injuries      away_injury_points - home_injury_points
    line_movement sharp_signal * sharp_movement_weight        (signal in [-1, 1])
    weather       margin compression toward the underdog in wind / rain
    situational   (home_rest_days - away_rest_days) * rest_day_value

Totals (positive factor = fewer points than the market expects):

    weather       wind and precipitation scoring suppression
    pace          -(combined pace above league average) * pace_weight

Each factor is clipped to its own bound, then weighted and summed.  The sum
is capped at ``max_total_adjustment``:

    model_line = market_line - capped_adjustment
    raw_edge   = raw_adjustment         (market_line - uncapped model line)
    capped_edge = capped_adjustment

A factor whose inputs are unavailable contributes exactly 0 and adds a
``MISSING_<FACTOR>`` warning.  A raw adjustment beyond
``plausibility_ceiling`` sets ``sanity_gate_failed``; the numbers are kept
for audit and the edge evaluator refuses to recommend it.
"""

import logging
import math
from typing import Dict, List, Optional, Tuple

from edge_engine.core.errors import MissingData, SanityGateFailure
from edge_engine.core.model_config import MarketCoefficients
from edge_engine.core.temporal import assert_all_before, assert_before
from edge_engine.models import (
    SPREAD, TOTAL,
    GameContext, MarketLine, MarketProjection,
)
from edge_engine.services.feeds import MarketSnapshot

logger = logging.getLogger(__name__)

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"

# Totals confidence bands (points of capped edge)
_TOTAL_HIGH_EDGE = 3.0
_TOTAL_MEDIUM_EDGE = 2.0


def _clip(value: float, bound: float) -> float:
    return max(-bound, min(bound, value))


def _sign(value: float) -> float:
    return math.copysign(1.0, value) if value != 0 else 0.0


def sharp_movement_signal(
    history: List[MarketLine], scale: float = 3.0
) -> Optional[float]:
    """
    Direction and strength of line movement from open to latest, in [-1, 1].

    Spread points are home-perspective, so a line moving from -3 to -4.5
    (more money on home) gives a positive, home-favouring signal.  ``scale``
    points of movement saturate the signal.  Fewer than two quotes → None.
    """
    if len(history) < 2:
        return None
    ordered = sorted(history, key=lambda r: r.captured_at)
    movement = ordered[-1].points - ordered[0].points
    return _clip(-movement / scale, 1.0)


class MarketAdjuster:
    """Applies bounded factor adjustments on top of an observed market line."""

    def __init__(self, coefficients: Optional[MarketCoefficients] = None):
        self.coefficients = coefficients or MarketCoefficients()

    # ------------------------------------------------------------------
    # Factor inputs
    # ------------------------------------------------------------------

    def _conference_factor(self, ctx: GameContext) -> Tuple[Optional[float], bool]:
        """Returns (factor, is_cross_conference)."""
        home, away = ctx.home_metrics, ctx.away_metrics
        cross = (
            home is not None and away is not None
            and home.conference is not None and away.conference is not None
            and home.conference != away.conference
        )
        if home is None or away is None:
            return None, cross
        if home.conference is not None and home.conference == away.conference:
            return 0.0, False
        if home.conference_rating is None or away.conference_rating is None:
            return None, cross
        diff = home.conference_rating - away.conference_rating
        return diff * self.coefficients.conference_strength_weight, cross

    def _injury_points(self, ctx: GameContext) -> Optional[Tuple[float, float]]:
        if ctx.injuries is None:
            return None
        c = self.coefficients
        game = ctx.game
        assert_all_before(
            (i.reported_at for i in ctx.injuries), game.start_time,
            "injury report", event_id=game.event_id,
        )
        home_pts = away_pts = 0.0
        for injury in ctx.injuries:
            if injury.status != "out":
                continue
            impact = c.injury_qb_weight if injury.is_quarterback else c.injury_non_qb_weight
            if injury.team_id == game.home_team_id:
                home_pts += impact
            elif injury.team_id == game.away_team_id:
                away_pts += impact
        return home_pts, away_pts

    def _weather_excess(self, ctx: GameContext) -> Optional[Tuple[float, bool]]:
        """(wind effect in points, precipitation) or None when unknown."""
        weather = ctx.weather
        if weather is None:
            return None
        assert_before(
            weather.observed_at, ctx.game.start_time, "weather report",
            event_id=ctx.game.event_id,
        )
        if weather.indoor:
            return 0.0, False
        c = self.coefficients
        excess = max(0.0, weather.wind_mph - c.wind_threshold_mph)
        return c.wind_weight_per_10mph * excess / 10.0, weather.precipitation

    def _line_history(self, ctx: GameContext) -> Optional[List[MarketLine]]:
        if ctx.line_history is None:
            return None
        assert_all_before(
            (r.captured_at for r in ctx.line_history), ctx.game.start_time,
            "line history", event_id=ctx.game.event_id,
        )
        return ctx.line_history

    # ------------------------------------------------------------------
    # Shared assembly
    # ------------------------------------------------------------------

    def _check_snapshot(self, snapshot: MarketSnapshot, ctx: GameContext, market_type: str):
        if snapshot.market_type != market_type:
            raise ValueError(
                f"{snapshot.event_id}: expected a {market_type} snapshot, "
                f"got {snapshot.market_type}"
            )
        if snapshot.event_id != ctx.game.event_id:
            raise ValueError(
                f"snapshot {snapshot.event_id} does not belong to {ctx.game.event_id}"
            )
        assert_before(
            snapshot.captured_at, ctx.game.start_time, f"{market_type} market line",
            event_id=ctx.game.event_id,
        )
        for side, metrics in (("home", ctx.home_metrics), ("away", ctx.away_metrics)):
            if metrics is not None:
                assert_before(
                    metrics.as_of, ctx.game.start_time, f"{side} secondary metrics",
                    event_id=ctx.game.event_id,
                )

    def _combine(
        self,
        ctx: GameContext,
        market_type: str,
        market_line: float,
        raw_factors: Dict[str, Optional[float]],
        uncertainty: float,
        explanation: List[str],
    ) -> MarketProjection:
        c = self.coefficients
        warnings: List[str] = []
        factors: Dict[str, float] = {}
        for name, value in raw_factors.items():
            if value is None:
                missing = MissingData(name)
                warnings.append(missing.warning)
                logger.warning("%s: %s, factor treated as neutral", ctx.game.event_id, missing)
                factors[name] = 0.0
                continue
            bound = getattr(c.bounds, name)
            clipped = _clip(value, bound)
            if clipped != value:
                explanation.append(f"{name} clipped {value:+.2f} → {clipped:+.2f}")
            factors[name] = clipped * getattr(c.weights, name)

        raw_adjustment = sum(factors.values())
        capped = _sign(raw_adjustment) * min(abs(raw_adjustment), c.max_total_adjustment)

        sanity_failed = abs(raw_adjustment) > c.plausibility_ceiling
        if sanity_failed:
            failure = SanityGateFailure(raw_adjustment, c.plausibility_ceiling)
            warnings.append(failure.code)
            logger.warning("%s: %s", ctx.game.event_id, failure)

        for name, value in factors.items():
            if abs(value) >= 0.5:
                explanation.append(f"{name}: {value:+.1f} pts")

        if market_type == SPREAD:
            effective = abs(capped) - uncertainty
            if effective >= c.min_actionable_edge + 1:
                confidence = CONFIDENCE_HIGH
            elif effective >= c.min_actionable_edge:
                confidence = CONFIDENCE_MEDIUM
            else:
                confidence = CONFIDENCE_LOW
        elif abs(capped) >= _TOTAL_HIGH_EDGE:
            confidence = CONFIDENCE_HIGH
        elif abs(capped) >= _TOTAL_MEDIUM_EDGE:
            confidence = CONFIDENCE_MEDIUM
        else:
            confidence = CONFIDENCE_LOW

        return MarketProjection(
            event_id=ctx.game.event_id,
            market_type=market_type,
            market_line=market_line,
            factors=factors,
            raw_adjustment=raw_adjustment,
            capped_adjustment=capped,
            model_line=market_line - capped,
            raw_edge=raw_adjustment,
            capped_edge=capped,
            uncertainty=uncertainty,
            confidence=confidence,
            sanity_gate_failed=sanity_failed,
            warnings=warnings,
            explanation=explanation,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def project_spread(self, snapshot: MarketSnapshot, ctx: GameContext) -> MarketProjection:
        self._check_snapshot(snapshot, ctx, SPREAD)
        c = self.coefficients
        game = ctx.game
        market_line = snapshot.points
        explanation: List[str] = []

        conference, cross_conference = self._conference_factor(ctx)

        injury_points = self._injury_points(ctx)
        injuries = None
        if injury_points is not None:
            home_pts, away_pts = injury_points
            injuries = away_pts - home_pts

        history = self._line_history(ctx)
        signal = (
            sharp_movement_signal(history, c.sharp_movement_scale)
            if history is not None else None
        )
        line_movement = signal * c.sharp_movement_weight if signal is not None else None

        weather = None
        weather_excess = self._weather_excess(ctx)
        if weather_excess is not None:
            wind_effect, precip = weather_excess
            compression = wind_effect + (c.precip_spread_impact if precip else 0.0)
            # market_line < 0 → home favoured; compression helps the underdog
            weather = _sign(market_line) * compression

        situational = None
        if ctx.home_rest_days is not None and ctx.away_rest_days is not None:
            situational = (ctx.home_rest_days - ctx.away_rest_days) * c.rest_day_value

        uncertainty = 0.0
        if cross_conference:
            uncertainty += c.cross_conference_uncertainty
            explanation.append("cross-conference: +uncertainty")
        if game.week <= c.early_season_weeks:
            uncertainty += c.early_season_uncertainty
            explanation.append(f"early season (week {game.week}): +uncertainty")
        if game.neutral_site:
            explanation.append("neutral site")

        return self._combine(
            ctx, SPREAD, market_line,
            {
                "conference": conference,
                "injuries": injuries,
                "line_movement": line_movement,
                "weather": weather,
                "situational": situational,
            },
            uncertainty,
            explanation,
        )

    def project_total(self, snapshot: MarketSnapshot, ctx: GameContext) -> MarketProjection:
        self._check_snapshot(snapshot, ctx, TOTAL)
        c = self.coefficients
        explanation: List[str] = []

        weather = None
        weather_excess = self._weather_excess(ctx)
        if weather_excess is not None:
            wind_effect, precip = weather_excess
            weather = wind_effect + (c.precip_total_impact if precip else 0.0)
            if ctx.weather is not None and ctx.weather.indoor:
                explanation.append("indoor game: weather not a factor")

        pace = None
        home, away = ctx.home_metrics, ctx.away_metrics
        if home is not None and away is not None and home.pace is not None and away.pace is not None:
            combined = (home.pace + away.pace) - 2.0 * c.league_avg_pace
            pace = -combined * c.pace_weight

        return self._combine(
            ctx, TOTAL, snapshot.points,
            {"weather": weather, "pace": pace},
            c.totals_uncertainty,
            explanation,
        )
