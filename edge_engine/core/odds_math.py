"""Fundamental odds mathematics: the single source of truth for prices.

Every function here is **pure**: no I/O, no logging, no side effects.
Import from this module; never reimplement locally in services.

The pillars exposed are:

1. **Odds conversion**: American ↔ decimal ↔ implied probability.
2. **Payouts**: profit on a winning ticket, breakeven win rate.
3. **Expected value**: per-unit EV of a bet at a known win probability.

Design decisions
----------------
* Prices are American odds (``int`` or ``float``) because every market-line
  feed the engine consumes reports them that way.
* A missing price always means the standard ``-110`` fixed-vig price
  (:data:`STANDARD_PRICE`).  Callers pass ``None`` rather than guessing.
* Expected values are returned as a *fraction of stake*; the calibration
  tables store them as percentages, so multiply by 100 when comparing.

Run tests with::

    pytest tests/test_odds_math.py -v
"""

from __future__ import annotations

from typing import Final, Optional

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

#: American-odds magnitude floor.  Values below this indicate a data error.
_MIN_ODDS_MAGNITUDE: Final[int] = 100

#: Standard fixed-vig price used when a line carries no explicit price.
STANDARD_PRICE: Final[int] = -110

#: Breakeven win rate at -110 (110 / 210).
BREAKEVEN_STANDARD: Final[float] = 110.0 / 210.0


# ---------------------------------------------------------------------------
# Odds conversion
# ---------------------------------------------------------------------------


def american_to_decimal(american: int | float) -> float:
    """Convert American odds to decimal (European) format.

    Decimal odds represent the total payout per unit staked, **including**
    the return of the stake itself.  Examples::

        american_to_decimal(-110) → 1.9091   (risk 110 to win 100)
        american_to_decimal(+150) → 2.5000   (risk 100 to win 150)

    Raises:
        ValueError: If ``|american| < 100``, which is not a representable
            American odds value.
    """
    if abs(american) < _MIN_ODDS_MAGNITUDE:
        raise ValueError(
            f"Invalid American odds {american!r}: magnitude must be ≥ 100. "
            "Check upstream line parsing for data errors."
        )
    if american > 0:
        return american / 100.0 + 1.0
    return 100.0 / abs(american) + 1.0


def implied_prob(american: int | float) -> float:
    """Raw implied probability from American odds (vig-inclusive).

    This is also the breakeven win rate for a bet at that price::

        implied_prob(-110) → 0.5238
        implied_prob(+150) → 0.4000
    """
    return 1.0 / american_to_decimal(american)


def decimal_to_american(decimal_odds: float) -> int:
    """Convert decimal odds to the nearest American integer.

    Raises:
        ValueError: If ``decimal_odds <= 1.0`` (no profit is possible).
    """
    if decimal_odds <= 1.0:
        raise ValueError(f"Decimal odds {decimal_odds!r} must be > 1.0.")
    if decimal_odds >= 2.0:
        return round((decimal_odds - 1.0) * 100)
    return round(-100.0 / (decimal_odds - 1.0))


# ---------------------------------------------------------------------------
# Payouts
# ---------------------------------------------------------------------------


def resolve_price(price: Optional[int | float]) -> int | float:
    """Return ``price`` or the standard -110 when no explicit price exists."""
    return STANDARD_PRICE if price is None else price


def win_profit(price: Optional[int | float] = None, stake: float = 1.0) -> float:
    """Profit (excluding returned stake) on a winning ticket.

    ``win_profit(-110) → 0.9091`` per unit; ``win_profit(+150) → 1.5``.
    """
    return stake * (american_to_decimal(resolve_price(price)) - 1.0)


def settle(
    outcome: Optional[bool],
    price: Optional[int | float] = None,
    stake: float = 1.0,
) -> float:
    """Profit for a graded bet.

    Args:
        outcome: ``True`` = win, ``False`` = loss, ``None`` = push.
        price: American odds for the side taken; ``None`` means -110.
        stake: Units risked.

    Returns:
        ``win_profit`` on a win, ``-stake`` on a loss, ``0.0`` on a push.
    """
    if outcome is None:
        return 0.0
    if outcome:
        return win_profit(price, stake)
    return -stake


def breakeven(price: Optional[int | float] = None) -> float:
    """Win rate needed to break even at ``price`` (default -110)."""
    return implied_prob(resolve_price(price))


# ---------------------------------------------------------------------------
# Expected value
# ---------------------------------------------------------------------------


def expected_value(win_prob: float, price: Optional[int | float] = None) -> float:
    """Per-unit expected value of a bet.

    ``EV = p × profit_on_win − (1 − p)``.  At -110 a 59.5% bettor earns
    ≈ +0.136 per unit staked.

    Raises:
        ValueError: If ``win_prob`` is outside ``[0, 1]``.
    """
    if not 0.0 <= win_prob <= 1.0:
        raise ValueError(f"win_prob {win_prob!r} must be within [0, 1]")
    return win_prob * win_profit(price) - (1.0 - win_prob)


def roi_at_standard_vig(wins: int, losses: int) -> float:
    """ROI of a flat -110 record as a fraction of amount risked.

    ``(wins × 100 − losses × 110) / ((wins + losses) × 110)``; zero when
    there are no decisions.
    """
    decided = wins + losses
    if decided == 0:
        return 0.0
    return (wins * 100.0 - losses * 110.0) / (decided * 110.0)
