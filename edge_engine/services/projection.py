"""
Ensemble spread projection.

Three independent signals each produce a home-perspective spread
(negative = home favoured), each with its own home-field term:

    rating      -((home_rating - away_rating) / divisor + hfa)
    composite   -((home_index - away_index) + hfa * composite_hfa_share)
    efficiency  -((home_net - away_net) * efficiency_scale + hfa)

The blend uses the fixed weights from ProjectionConfig.  When a signal is
unavailable its weight is redistributed proportionally over the signals
that remain, so a missing source never drags the spread toward zero, and a
warning is attached to the projection.

``disagreement = max(components) - min(components)`` is reported for the
edge evaluator's confidence gate.

Every input is checked against the game's start time before use.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from edge_engine.core.errors import MissingData
from edge_engine.core.model_config import ModelConfig, ProjectionConfig
from edge_engine.core.temporal import assert_before
from edge_engine.models import GameResult, Projection, SecondaryMetrics
from edge_engine.services.rating_store import RatingStore
from edge_engine.services.ratings import RatingEngine

logger = logging.getLogger(__name__)


def rating_spread(
    home_rating: float,
    away_rating: float,
    divisor: float = 25.0,
    home_field_advantage: float = 2.5,
) -> float:
    """Pure-rating spread.  1600 vs 1400 at 25/2.5 → -10.5."""
    return -((home_rating - away_rating) / divisor + home_field_advantage)


def round_to_increment(value: float, increment: Optional[float]) -> float:
    if not increment:
        return value
    return round(value / increment) * increment


class EnsembleProjector:
    """Builds Projection records from ratings and secondary metrics."""

    def __init__(
        self,
        config: ModelConfig,
        store: RatingStore,
        engine: Optional[RatingEngine] = None,
    ):
        self.config = config
        self.store = store
        self.engine = engine

    @property
    def projection_config(self) -> ProjectionConfig:
        return self.config.projection

    def _check_metrics(
        self, metrics: Optional[SecondaryMetrics], game: GameResult, side: str
    ) -> Optional[SecondaryMetrics]:
        if metrics is None:
            return None
        assert_before(
            metrics.as_of, game.start_time, f"{side} secondary metrics", event_id=game.event_id
        )
        return metrics

    def project(
        self,
        game: GameResult,
        home_metrics: Optional[SecondaryMetrics] = None,
        away_metrics: Optional[SecondaryMetrics] = None,
        generated_at: Optional[datetime] = None,
    ) -> Projection:
        """
        Project the home-perspective spread for ``game``.

        Raises:
            LeakageViolation: any rating or metric is not strictly older
                than ``game.start_time``, or ``generated_at`` is not.
            MissingData: no weighted signal is available at all.
        """
        cfg = self.projection_config
        if generated_at is not None:
            assert_before(generated_at, game.start_time, "projection", event_id=game.event_id)

        home = self.store.rating_before(
            game.home_team_id, game.season, game.start_time, event_id=game.event_id
        )
        away = self.store.rating_before(
            game.away_team_id, game.season, game.start_time, event_id=game.event_id
        )
        home_metrics = self._check_metrics(home_metrics, game, "home")
        away_metrics = self._check_metrics(away_metrics, game, "away")

        warnings: List[str] = []
        hfa = 0.0 if game.neutral_site else cfg.home_field_advantage

        home_rating, away_rating = home.rating, away.rating
        if self.engine is not None and self.engine.config.recency_window > 0:
            home_rating += self.engine.recency_boost(game.home_team_id, game.season)
            away_rating += self.engine.recency_boost(game.away_team_id, game.season)

        components: Dict[str, float] = {
            "rating": rating_spread(home_rating, away_rating, cfg.divisor, hfa),
        }

        if (
            home_metrics is not None and away_metrics is not None
            and home_metrics.composite_index is not None
            and away_metrics.composite_index is not None
        ):
            diff = home_metrics.composite_index - away_metrics.composite_index
            components["composite"] = -(diff + hfa * cfg.composite_hfa_share)
        else:
            warnings.append(MissingData("composite").warning)

        home_net = home_metrics.net_efficiency if home_metrics is not None else None
        away_net = away_metrics.net_efficiency if away_metrics is not None else None
        if home_net is not None and away_net is not None:
            components["efficiency"] = -((home_net - away_net) * cfg.efficiency_scale + hfa)
        else:
            warnings.append(MissingData("efficiency").warning)

        weights = cfg.weights.as_dict()
        usable = {name: weights[name] for name in components if weights[name] > 0}
        total_weight = sum(usable.values())
        if total_weight <= 0:
            raise MissingData("weighted projection signal")
        weights_used = {name: w / total_weight for name, w in usable.items()}
        if len(weights_used) < sum(1 for w in weights.values() if w > 0):
            logger.warning(
                "%s: projecting with %s only (weights re-normalised)",
                game.event_id, sorted(weights_used),
            )

        spread = sum(weights_used[name] * components[name] for name in weights_used)
        spread = round_to_increment(spread, cfg.spread_increment)

        values = [components[name] for name in weights_used]
        disagreement = max(values) - min(values)

        return Projection(
            event_id=game.event_id,
            model_version=self.config.version,
            generated_at=generated_at or datetime.now(timezone.utc),
            spread=spread,
            component_breakdown=components,
            weights_used=weights_used,
            disagreement=disagreement,
            warnings=warnings,
            inputs_as_of={
                "home_rating": home.as_of,
                "away_rating": away.as_of,
                "home_metrics": home_metrics.as_of if home_metrics else None,
                "away_metrics": away_metrics.as_of if away_metrics else None,
            },
        )
