"""
Closing Line Value (CLV) in points.

CLV is the favourable (positive) or unfavourable (negative) movement of the
line between the moment a bet is taken and the market's closing quote.

    Spread, home bet   clv = bet_line - closing_line
    Spread, away bet   clv = closing_line - bet_line
    Total,  over bet   clv = closing_line - bet_line
    Total,  under bet  clv = bet_line - closing_line

Spread lines are home-perspective.  Taking home at -3 when the game closes
at -3.5 is +0.5: home needed to win by less than the market later demanded.
"""

import logging
from dataclasses import dataclass

from edge_engine.models import AWAY, HOME, OVER, SPREAD, TOTAL, UNDER

logger = logging.getLogger(__name__)

# One point of line value is worth roughly 20 cents of price
CENTS_PER_POINT = 20.0


@dataclass
class CLVResult:
    """CLV for a single bet."""

    market_type: str
    side: str
    bet_line: float
    closing_line: float
    clv_points: float       # positive = beat the close

    @property
    def clv_cents(self) -> float:
        return self.clv_points * CENTS_PER_POINT

    def is_positive(self) -> bool:
        return self.clv_points > 0

    def grade(self) -> str:
        if self.clv_points >= 1.5:
            return "STRONG+"
        elif self.clv_points >= 0.5:
            return "POSITIVE"
        elif self.clv_points > -0.5:
            return "NEUTRAL"
        elif self.clv_points > -1.5:
            return "NEGATIVE"
        return "STRONG-"


def clv_points(market_type: str, side: str, bet_line: float, closing_line: float) -> float:
    move = closing_line - bet_line
    if market_type == SPREAD:
        if side == HOME:
            return -move
        if side == AWAY:
            return move
    elif market_type == TOTAL:
        if side == OVER:
            return move
        if side == UNDER:
            return -move
    raise ValueError(f"no CLV convention for {market_type!r}/{side!r}")


def calculate_clv(
    market_type: str, side: str, bet_line: float, closing_line: float
) -> CLVResult:
    return CLVResult(
        market_type=market_type,
        side=side,
        bet_line=bet_line,
        closing_line=closing_line,
        clv_points=clv_points(market_type, side, bet_line, closing_line),
    )
