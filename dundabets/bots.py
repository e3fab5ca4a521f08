# bots.py
"""
Simulated crowd for the live bets panel.

Display only: a BotCrowd never receives the LedgerStore, so nothing it does
can move real or demo money. The engine hands it the phase changes and the
multiplier samples it needs.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Any

FAKE_PLAYERS = [
    "Brian", "Kevin", "Dennis", "Wanjiku", "Njoroge", "Kamau", "Odhiambo", "Mercy", "Faith",
    "Otieno", "Ochieng", "Kibet", "Juma", "Mwangi", "Maina", "Karanja", "Muthoni", "Njeri",
    "Akinyi", "Adhiambo", "Omondi", "Owino", "Kimani", "Chebet", "Koech", "Simba", "Mfalme",
    "Rashid", "Zainab", "Wafula", "Nyambura", "Githae", "Kiplagat", "Rotich", "Baraza",
]

MIN_CROWD = 99
MAX_CROWD = 145
CASHOUT_FLOOR = Decimal("1.05")
CASHOUT_CHANCE_PER_TICK = 0.02


@dataclass
class BotPlayer:
    id: str
    name: str
    bet_amount: int
    cashed_out_at: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "bet_amount": self.bet_amount,
            "cashed_out_at": float(self.cashed_out_at) if self.cashed_out_at else None,
        }


def weighted_bet(min_bet: Decimal, rng: random.Random) -> int:
    """
    70% small (20-100), 20% medium (100-1000), 10% large (1000-5000),
    never below the room minimum, rounded up to the nearest 10.
    """
    floor = int(math.ceil(min_bet))
    roll = rng.random()
    if roll < 0.7:
        low, high = max(floor, 20), 100
    elif roll < 0.9:
        low, high = max(floor, 100), 1000
    else:
        low, high = max(floor, 1000), 5000
    bet = rng.randint(low, max(low, high))
    return int(math.ceil(bet / 10) * 10)


class BotCrowd:
    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()
        self.players: List[BotPlayer] = []
        self.online = 0

    def populate(self, min_bet: Decimal) -> None:
        """Fresh crowd, e.g. after a room switch."""
        count = self._rng.randint(MIN_CROWD, MAX_CROWD)
        self.players = []
        for i in range(count):
            base = FAKE_PLAYERS[i % len(FAKE_PLAYERS)]
            name = base if i < len(FAKE_PLAYERS) else f"{base} {self._rng.randint(0, 999)}"
            self.players.append(BotPlayer(f"bot-{i}", name, weighted_bet(min_bet, self._rng)))
        self.online = int(count * (1.2 + self._rng.random() * 0.2))

    def new_round(self, min_bet: Decimal) -> None:
        """Re-deal stakes for the round that is taking off."""
        if not self.players:
            self.populate(min_bet)
            return
        for player in self.players:
            player.bet_amount = weighted_bet(min_bet, self._rng)
            player.cashed_out_at = None
        variance = self._rng.randint(-5, 4)
        self.online = max(self.online + variance, len(self.players) + 5)

    def on_tick(self, multiplier: Decimal) -> int:
        """Random cash-outs above 1.05x. Returns how many bots cashed out."""
        if multiplier <= CASHOUT_FLOOR:
            return 0
        cashed = 0
        for player in self.players:
            if player.cashed_out_at is None and self._rng.random() < CASHOUT_CHANCE_PER_TICK:
                player.cashed_out_at = multiplier
                cashed += 1
        return cashed

    def summary(self) -> Dict[str, Any]:
        return {
            "online": self.online,
            "players": len(self.players),
            "cashed_out": sum(1 for p in self.players if p.cashed_out_at is not None),
            "total_bet": sum(p.bet_amount for p in self.players),
        }

    def leaderboard(self, limit: int = 20) -> List[Dict[str, Any]]:
        ranked = sorted(self.players, key=lambda p: p.bet_amount, reverse=True)
        return [p.to_dict() for p in ranked[:limit]]
