"""
Elo-style rating update engine.

One engine, configured by :class:`~edge_engine.core.model_config.RatingConfig`:

    expected(A, B) = 1 / (1 + 10 ** ((rB - rA) / 400))
    delta          = K * multiplier * (actual - expected)

K strategies
    fixed    - ``k_factor`` for every game
    dynamic  - ``new_team_k`` until ``established_games`` this season,
               ``established_k`` afterwards

Margin strategies (never combined)
    none         - multiplier 1
    blowout_cap  - K * ``blowout_fraction`` when |margin| > ``blowout_threshold``
    log_margin   - multiplier ``log(max(|margin|, 1) + 1) * margin_scale``

Zero-sum mode (default) uses one game K, the mean of both sides' K, and
applies ``home += delta, away -= delta``.  Independent mode updates each
side with its own K.

Games must arrive in ascending (season, start_time) order.  The engine reads
each team's rating through ``RatingStore.rating_before`` so a rating that
already includes a later game can never be used.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from edge_engine.core.model_config import (
    K_DYNAMIC, MARGIN_BLOWOUT_CAP, MARGIN_LOG, RatingConfig,
)
from edge_engine.core.temporal import assert_chronological
from edge_engine.models import GameResult, TeamRating
from edge_engine.services.rating_store import RatingStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RatingUpdate:
    """Audit record for one applied game."""
    event_id: str
    season: int
    home_before: float
    away_before: float
    home_after: float
    away_after: float
    expected_home: float
    actual_home: float
    k_home: float
    k_away: float
    multiplier: float

    @property
    def home_delta(self) -> float:
        return self.home_after - self.home_before

    @property
    def away_delta(self) -> float:
        return self.away_after - self.away_before


def expected_score(rating_a: float, rating_b: float) -> float:
    """Probability-like expected score of A against B (logistic, base 10, scale 400)."""
    return 1.0 / (1.0 + 10.0 ** ((rating_b - rating_a) / 400.0))


def actual_score(home_score: int, away_score: int) -> float:
    """1 for a home win, 0.5 for a tie, 0 for a home loss."""
    if home_score > away_score:
        return 1.0
    if home_score < away_score:
        return 0.0
    return 0.5


class RatingEngine:
    """Consumes completed games and writes updated ratings into a RatingStore."""

    def __init__(self, store: RatingStore, config: Optional[RatingConfig] = None):
        self.store = store
        self.config = config or store.config
        self._last_start: Optional[datetime] = None
        self._recent: Dict[Tuple[str, int], Deque[float]] = {}

    # ------------------------------------------------------------------
    # Step size
    # ------------------------------------------------------------------

    def base_k(self, rating: TeamRating) -> float:
        cfg = self.config
        if cfg.k_strategy == K_DYNAMIC:
            if rating.games_played < cfg.established_games:
                return cfg.new_team_k
            return cfg.established_k
        return cfg.k_factor

    def effective_k(
        self, home: TeamRating, away: TeamRating, margin: float
    ) -> Tuple[float, float]:
        """Per-side K after the blowout cap (when that strategy is active)."""
        k_home, k_away = self.base_k(home), self.base_k(away)
        cfg = self.config
        if cfg.margin_strategy == MARGIN_BLOWOUT_CAP and abs(margin) > cfg.blowout_threshold:
            k_home *= cfg.blowout_fraction
            k_away *= cfg.blowout_fraction
        return k_home, k_away

    def game_k(self, home: TeamRating, away: TeamRating, margin: float) -> float:
        """Single K used for a zero-sum update: the mean of the two sides."""
        k_home, k_away = self.effective_k(home, away, margin)
        return (k_home + k_away) / 2.0

    def margin_multiplier(self, margin: float) -> float:
        if self.config.margin_strategy != MARGIN_LOG:
            return 1.0
        return math.log(max(abs(margin), 1.0) + 1.0) * self.config.margin_scale

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update(self, game: GameResult) -> RatingUpdate:
        """Apply one completed game to both teams' ratings."""
        if not game.is_final:
            raise ValueError(f"{game.event_id}: cannot rate a game without a final score")
        assert_chronological(self._last_start, game.start_time, "game", event_id=game.event_id)

        home = self.store.rating_before(
            game.home_team_id, game.season, game.start_time, event_id=game.event_id
        )
        away = self.store.rating_before(
            game.away_team_id, game.season, game.start_time, event_id=game.event_id
        )
        home_before, away_before = home.rating, away.rating

        margin = game.home_margin
        expected_home = expected_score(home_before + self.config.home_bonus_elo, away_before)
        actual_home = actual_score(game.home_score, game.away_score)
        multiplier = self.margin_multiplier(margin)
        k_home, k_away = self.effective_k(home, away, margin)

        if self.config.zero_sum:
            k = (k_home + k_away) / 2.0
            k_home = k_away = k
            delta = k * multiplier * (actual_home - expected_home)
            home_delta, away_delta = delta, -delta
        else:
            home_delta = k_home * multiplier * (actual_home - expected_home)
            away_delta = k_away * multiplier * ((1.0 - actual_home) - (1.0 - expected_home))

        self.store.update(game.home_team_id, game.season, home_before + home_delta, game.start_time)
        self.store.update(game.away_team_id, game.season, away_before + away_delta, game.start_time)
        self._remember(game.home_team_id, game.season, home_delta)
        self._remember(game.away_team_id, game.season, away_delta)
        self._last_start = game.start_time

        logger.debug(
            "%s: %s %.1f→%.1f, %s %.1f→%.1f (exp=%.3f act=%.1f K=%.1f/%.1f m=%.2f)",
            game.event_id,
            game.home_team_id, home_before, home_before + home_delta,
            game.away_team_id, away_before, away_before + away_delta,
            expected_home, actual_home, k_home, k_away, multiplier,
        )
        return RatingUpdate(
            event_id=game.event_id,
            season=game.season,
            home_before=home_before,
            away_before=away_before,
            home_after=home_before + home_delta,
            away_after=away_before + away_delta,
            expected_home=expected_home,
            actual_home=actual_home,
            k_home=k_home,
            k_away=k_away,
            multiplier=multiplier,
        )

    def process(self, games: Iterable[GameResult]) -> List[RatingUpdate]:
        """Apply every final game in (season, start_time) order."""
        ordered = sorted(games, key=lambda g: (g.season, g.start_time, g.event_id))
        updates = []
        skipped = 0
        for game in ordered:
            if not game.is_final:
                skipped += 1
                continue
            updates.append(self.update(game))
        logger.info("Rated %d games (%d without a final score skipped)", len(updates), skipped)
        return updates

    def reset_season(self, from_season: int, to_season: int) -> int:
        """Regress every ``from_season`` rating toward baseline into ``to_season``."""
        return self.store.rollover(from_season, to_season)

    # ------------------------------------------------------------------
    # Recency boost
    # ------------------------------------------------------------------

    def _remember(self, team_id: str, season: int, delta: float) -> None:
        window = self.config.recency_window
        if window <= 0:
            return
        key = (team_id, season)
        if key not in self._recent:
            self._recent[key] = deque(maxlen=window)
        self._recent[key].append(delta)

    def recent_deltas(self, team_id: str, season: int) -> List[float]:
        return list(self._recent.get((team_id, season), ()))

    def recency_boost(self, team_id: str, season: int) -> float:
        """
        Projection-time adjustment from a team's recent form.

        Decay-weighted mean of the last ``recency_window`` deltas (newest
        weight 1) times ``recency_weight``.  The stored rating is untouched.
        """
        deltas = self.recent_deltas(team_id, season)
        if not deltas:
            return 0.0
        decay = self.config.recency_decay
        weights = [decay ** i for i in range(len(deltas))]
        newest_first = list(reversed(deltas))
        weighted = sum(w * d for w, d in zip(weights, newest_first)) / sum(weights)
        return weighted * self.config.recency_weight
