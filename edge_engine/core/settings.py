"""Runtime settings read from the environment (and an optional ``.env`` file).

Model constants never live here: they belong to versioned
:class:`~edge_engine.core.model_config.ModelConfig` bundles.  This module
only covers *how* the engine runs: log level, bootstrap size and seed, stake
unit, bet lead time.

Environment variables
---------------------
``EDGE_LOG_LEVEL``              logging level name (default ``INFO``)
``EDGE_BOOTSTRAP_ITERATIONS``   bootstrap resamples (default 1000)
``EDGE_BOOTSTRAP_SEED``         bootstrap RNG seed (default 42)
``EDGE_STAKE_UNIT``             units risked per bet (default 1.0)
``EDGE_BET_LEAD_MINUTES``       minutes before start the bet line is read (default 60)
``EDGE_BOOK``                   book to price against (default: most recent quote)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Final, Optional

from dotenv import load_dotenv

LOG_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class EngineSettings:
    log_level: str = "INFO"
    bootstrap_iterations: int = 1000
    bootstrap_seed: int = 42
    stake_unit: float = 1.0
    bet_lead_minutes: int = 60
    book: Optional[str] = None

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineSettings":
        """Build settings from ``os.environ``, loading ``.env`` first when asked."""
        if dotenv:
            load_dotenv()
        return cls(
            log_level=os.getenv("EDGE_LOG_LEVEL", "INFO").upper(),
            bootstrap_iterations=int(os.getenv("EDGE_BOOTSTRAP_ITERATIONS", "1000")),
            bootstrap_seed=int(os.getenv("EDGE_BOOTSTRAP_SEED", "42")),
            stake_unit=float(os.getenv("EDGE_STAKE_UNIT", "1.0")),
            bet_lead_minutes=int(os.getenv("EDGE_BET_LEAD_MINUTES", "60")),
            book=os.getenv("EDGE_BOOK") or None,
        )


def configure_logging(level: str = "INFO") -> None:
    """Root logging setup for scripts.  Library code only calls ``getLogger``."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
