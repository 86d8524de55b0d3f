"""Exception and flag types shared by every layer of the engine.

Two families live here:

* **Fatal**: :class:`LeakageViolation`, :class:`UnvalidatedConfigError`,
  :class:`IncompleteFetchError`.  These propagate to the caller and abort
  whatever run is in progress.  Nothing inside the engine catches them.
* **Recoverable**: :class:`MissingData`, :class:`SanityGateFailure`,
  :class:`CalibrationDrift`.  These are raised only by the helpers that
  build them; the services convert them into warning codes or flags on the
  result object and carry on.

Every exception exposes a short machine-readable ``code`` so results can
carry ``warnings: List[str]`` without holding exception objects.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class EdgeEngineError(Exception):
    """Base class for every error raised by the engine."""

    code: str = "EDGE_ENGINE_ERROR"


# ---------------------------------------------------------------------------
# Fatal
# ---------------------------------------------------------------------------


class LeakageViolation(EdgeEngineError):
    """An input with an effective timestamp at or after a game's start was
    used to predict that game.

    Never caught internally.  A backtest that raises this is invalid in its
    entirety.
    """

    code = "LEAKAGE"

    def __init__(
        self,
        what: str,
        effective_at: Optional[datetime],
        cutoff: datetime,
        event_id: Optional[str] = None,
    ):
        self.what = what
        self.effective_at = effective_at
        self.cutoff = cutoff
        self.event_id = event_id
        where = f" for event {event_id}" if event_id else ""
        super().__init__(
            f"{what}{where} is effective at {effective_at!s} which is not "
            f"strictly before {cutoff!s}"
        )


class UnvalidatedConfigError(EdgeEngineError):
    """A model configuration was loaded without a passing acceptance record."""

    code = "UNVALIDATED_CONFIG"


class IncompleteFetchError(EdgeEngineError):
    """A paged retrieval returned fewer rows than the source declared."""

    code = "INCOMPLETE_FETCH"

    def __init__(self, source: str, expected: int, received: int):
        self.source = source
        self.expected = expected
        self.received = received
        super().__init__(
            f"{source}: expected {expected} rows, received {received}"
        )


# ---------------------------------------------------------------------------
# Recoverable / observational
# ---------------------------------------------------------------------------


class MissingData(EdgeEngineError):
    """An optional input (secondary metric, market line, factor) is absent."""

    code = "MISSING_DATA"

    def __init__(self, what: str):
        self.what = what
        super().__init__(f"missing {what}")

    @property
    def warning(self) -> str:
        return f"MISSING_{self.what.upper()}"


class SanityGateFailure(EdgeEngineError):
    """A computed adjustment exceeds the plausibility ceiling."""

    code = "SANITY_GATE"

    def __init__(self, value: float, ceiling: float):
        self.value = value
        self.ceiling = ceiling
        super().__init__(
            f"adjustment {value:+.2f} exceeds plausibility ceiling {ceiling:.2f}"
        )


class CalibrationDrift(EdgeEngineError):
    """Live results diverge from a frozen calibration bucket.

    Observational only: it is returned in monitoring reports, not raised.
    """

    code = "CALIBRATION_DRIFT"

    def __init__(self, bucket: str, expected: float, observed: float, sample: int):
        self.bucket = bucket
        self.expected = expected
        self.observed = observed
        self.sample = sample
        super().__init__(
            f"bucket {bucket}: expected win rate {expected:.3f}, "
            f"observed {observed:.3f} over {sample} bets"
        )
