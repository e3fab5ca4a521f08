# settlement.py
"""
Settlement & Payout Calculator

Pure functions, no I/O. The engine calls compute_payout() for every
cash-out (manual or auto) and tally_round() once, on the bet book snapshot
taken at crash time.

    gross  = floor(stake * multiplier)
    profit = min(gross - stake, max_profit)
    tax    = floor(profit * TAX_RATE) if profit > 0 and not demo else 0
    net    = stake + profit - tax
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from settings import TAX_RATE
from utils import floor_units

ZERO = Decimal("0")


@dataclass(frozen=True)
class Payout:
    stake: Decimal
    multiplier: Decimal
    gross: Decimal
    profit: Decimal
    tax: Decimal
    net: Decimal


def compute_payout(
    stake: Decimal,
    multiplier: Decimal,
    demo: bool = False,
    tax_rate: Decimal = TAX_RATE,
    max_profit: Optional[Decimal] = None,
) -> Payout:
    if stake <= 0:
        raise ValueError("Stake must be positive")
    if multiplier < 1:
        raise ValueError("Multiplier must be >= 1.00")

    gross = floor_units(stake * multiplier)
    profit = gross - stake
    if max_profit is not None and profit > max_profit:
        profit = max_profit
        gross = stake + profit

    tax = floor_units(profit * tax_rate) if profit > 0 and not demo else ZERO
    net = stake + (profit - tax)
    return Payout(stake, multiplier, gross, profit, tax, net)


# =====================================================
# ROUND TALLY
# =====================================================

@dataclass(frozen=True)
class SettledBet:
    """What the tally needs from a bet at crash time."""
    stake: Decimal
    net_payout: Optional[Decimal]   # None = still in flight at crash = lost


@dataclass(frozen=True)
class RoundTally:
    bet_count: int
    total_staked: Decimal
    player_losses: Decimal      # stakes the house keeps
    player_wins: Decimal        # net payout above stake, paid by the house
    total_paid: Decimal         # everything credited back to players

    @property
    def house_net(self) -> Decimal:
        return self.player_losses - self.player_wins


def tally_round(bets: Iterable[SettledBet]) -> RoundTally:
    count = 0
    staked = losses = wins = paid = ZERO
    for bet in bets:
        count += 1
        staked += bet.stake
        if bet.net_payout is None:
            losses += bet.stake
        else:
            wins += bet.net_payout - bet.stake
            paid += bet.net_payout
    return RoundTally(count, staked, losses, wins, paid)
