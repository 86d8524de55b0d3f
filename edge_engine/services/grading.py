"""
Bet grading (pure functions, no feeds).

A bet is graded against the line it was taken at:

    spread, home   home_margin + line      > 0 win, == 0 push, < 0 loss
    spread, away   -(home_margin + line)   > 0 win, == 0 push, < 0 loss
    total,  over   total_points - line     > 0 win, == 0 push, < 0 loss
    total,  under  line - total_points     > 0 win, == 0 push, < 0 loss

Payout is the explicit American price when one is known and the standard
-110 otherwise.  A push returns the stake: zero profit, and it is left out
of win-rate denominators.
"""

from dataclasses import dataclass
from typing import Optional

from edge_engine.core.odds_math import settle
from edge_engine.models import AWAY, HOME, OVER, SPREAD, TOTAL, UNDER, GameResult


@dataclass
class OutcomeResult:
    covered: Optional[bool]     # True = win, False = loss, None = push
    profit: float
    result_margin: float        # points by which the ticket won (negative = lost)

    @property
    def label(self) -> str:
        if self.covered is None:
            return "push"
        return "win" if self.covered else "loss"


def cover_margin(game: GameResult, market_type: str, side: str, line: float) -> float:
    if not game.is_final:
        raise ValueError(f"{game.event_id}: cannot grade a game without a final score")
    if market_type == SPREAD:
        home_result = game.home_margin + line
        if side == HOME:
            return home_result
        if side == AWAY:
            return -home_result
    elif market_type == TOTAL:
        if side == OVER:
            return game.total_points - line
        if side == UNDER:
            return line - game.total_points
    raise ValueError(f"cannot grade side {side!r} on a {market_type!r} market")


def grade_bet(
    game: GameResult,
    market_type: str,
    side: str,
    line: float,
    price: Optional[int] = None,
    stake: float = 1.0,
) -> OutcomeResult:
    margin = cover_margin(game, market_type, side, line)
    covered = None if margin == 0 else margin > 0
    return OutcomeResult(
        covered=covered,
        profit=settle(covered, price, stake),
        result_margin=margin,
    )
