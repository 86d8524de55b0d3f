"""
Per-team-per-season rating storage.

A RatingStore is an ordinary object passed to whatever needs it.  There is
no module-level instance: two backtests in the same process never share
ratings.

Seeding rule for a team first referenced in a season:

    rating = baseline + (prior_season_rating - baseline) * carryover

when the team has a rating in ``season - 1``, else ``baseline``.
"""

import logging
import math
from datetime import datetime
from typing import Dict, Iterator, Optional, Tuple

from edge_engine.core.model_config import RatingConfig
from edge_engine.core.temporal import assert_before, assert_chronological
from edge_engine.models import TeamRating

logger = logging.getLogger(__name__)


def regress(rating: float, baseline: float, carryover: float) -> float:
    """Pull ``rating`` toward ``baseline`` keeping ``carryover`` of the gap."""
    return baseline + (rating - baseline) * carryover


class RatingStore:
    """Mutable map of (team_id, season) → :class:`TeamRating`."""

    def __init__(self, config: Optional[RatingConfig] = None):
        self.config = config or RatingConfig()
        self._ratings: Dict[Tuple[str, int], TeamRating] = {}

    def __contains__(self, key: Tuple[str, int]) -> bool:
        return key in self._ratings

    def __iter__(self) -> Iterator[TeamRating]:
        return iter(list(self._ratings.values()))

    def __len__(self) -> int:
        return len(self._ratings)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, team_id: str, season: int) -> TeamRating:
        """Return the team-season rating, seeding it lazily on first reference."""
        key = (team_id, season)
        existing = self._ratings.get(key)
        if existing is not None:
            return existing

        prior = self._ratings.get((team_id, season - 1))
        if prior is not None:
            value = regress(prior.rating, self.config.baseline, self.config.carryover)
            seeded = True
        else:
            value = self.config.baseline
            seeded = False
        rating = TeamRating(
            team_id=team_id, season=season, rating=value, seeded_from_prior=seeded,
        )
        self._ratings[key] = rating
        return rating

    def peek(self, team_id: str, season: int) -> Optional[TeamRating]:
        """Return the rating if one exists, without seeding."""
        return self._ratings.get((team_id, season))

    def rating_before(
        self,
        team_id: str,
        season: int,
        before: datetime,
        event_id: Optional[str] = None,
    ) -> TeamRating:
        """
        Rating for a prediction at ``before``.

        Raises LeakageViolation when the stored rating already includes a
        game starting at or after ``before``.
        """
        rating = self.get(team_id, season)
        assert_before(rating.as_of, before, f"rating for {team_id}", event_id=event_id)
        return rating

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def seed(self, team_id: str, season: int, rating: float) -> TeamRating:
        """Explicitly set a season's starting rating (e.g. from a snapshot)."""
        if not math.isfinite(rating):
            raise ValueError(f"{team_id}/{season}: seed rating must be finite")
        existing = self._ratings.get((team_id, season))
        if existing is not None and existing.games_played > 0:
            raise ValueError(
                f"{team_id}/{season}: cannot reseed after {existing.games_played} games"
            )
        seeded = TeamRating(team_id=team_id, season=season, rating=rating)
        self._ratings[(team_id, season)] = seeded
        return seeded

    def update(
        self, team_id: str, season: int, rating: float, as_of: datetime
    ) -> TeamRating:
        """Record a post-game rating and count the game."""
        if not math.isfinite(rating):
            raise ValueError(f"{team_id}/{season}: updated rating must be finite")
        current = self.get(team_id, season)
        assert_chronological(current.as_of, as_of, f"rating update for {team_id}")
        current.rating = rating
        current.games_played += 1
        current.as_of = as_of
        return current

    def rollover(self, from_season: int, to_season: int) -> int:
        """
        Seed ``to_season`` for every team rated in ``from_season``.

        Returns the number of teams rolled over.  Teams already present in
        ``to_season`` are left alone.
        """
        if to_season <= from_season:
            raise ValueError("to_season must follow from_season")
        count = 0
        for (team_id, season), rating in list(self._ratings.items()):
            if season != from_season or (team_id, to_season) in self._ratings:
                continue
            self._ratings[(team_id, to_season)] = TeamRating(
                team_id=team_id,
                season=to_season,
                rating=regress(rating.rating, self.config.baseline, self.config.carryover),
                seeded_from_prior=True,
            )
            count += 1
        logger.info("Rolled %d team ratings from %d into %d", count, from_season, to_season)
        return count

    def snapshot(self, season: int) -> Dict[str, float]:
        return {r.team_id: r.rating for r in self._ratings.values() if r.season == season}
