"""
Assemble SecondaryMetrics from several partial sources.

Efficiency numbers come from different providers at different times.
Contributions are merged per (team_id, season) with these rules:

* **Last write wins, per field.**  A later ``add`` overwrites only the
  fields it actually supplies; ``None`` never erases an earlier value.
* ``week`` is the highest week seen and ``as_of`` the latest timestamp seen,
  so a merged record is never treated as older than its newest ingredient.
* Every field remembers which source wrote it (``provenance``).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Tuple

from edge_engine.models import SecondaryMetrics

logger = logging.getLogger(__name__)

METRIC_FIELDS = (
    "composite_index",
    "off_efficiency",
    "def_efficiency",
    "pace",
    "conference",
    "conference_rating",
)


class MetricsBuilder:

    def __init__(self):
        self._values: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self._sources: Dict[Tuple[str, int], Dict[str, str]] = {}
        self._stamps: Dict[Tuple[str, int], Tuple[int, datetime]] = {}

    def add(
        self,
        team_id: str,
        season: int,
        week: int,
        as_of: datetime,
        source: str,
        **fields: Any,
    ) -> None:
        unknown = set(fields) - set(METRIC_FIELDS)
        if unknown:
            raise ValueError(f"unknown metric field(s): {sorted(unknown)}")

        key = (team_id, season)
        values = self._values.setdefault(key, {})
        sources = self._sources.setdefault(key, {})
        for name, value in fields.items():
            if value is None:
                continue
            if name in values and values[name] != value:
                logger.debug(
                    "%s/%s %s: %s overrides %s (%r → %r)",
                    team_id, season, name, source, sources[name], values[name], value,
                )
            values[name] = value
            sources[name] = source

        prev = self._stamps.get(key)
        if prev is None:
            self._stamps[key] = (week, as_of)
        else:
            self._stamps[key] = (max(prev[0], week), max(prev[1], as_of))

    def build(self, team_id: str, season: int) -> SecondaryMetrics:
        key = (team_id, season)
        if key not in self._stamps:
            raise KeyError(f"no metrics contributed for {team_id}/{season}")
        week, as_of = self._stamps[key]
        return SecondaryMetrics(
            team_id=team_id, season=season, week=week, as_of=as_of, **self._values[key]
        )

    def build_all(self) -> List[SecondaryMetrics]:
        return [self.build(team_id, season) for team_id, season in sorted(self._stamps)]

    def provenance(self, team_id: str, season: int) -> Dict[str, str]:
        return dict(self._sources.get((team_id, season), {}))
