"""
Tests for the simulated crowd

Validates:
1. Weighted stakes respect the room minimum and round up to 10
2. Crowd size and online count
3. Cash-outs only above 1.05x, once per bot
4. The crowd never touches the ledger
"""

import random
from decimal import Decimal

from bots import MAX_CROWD, MIN_CROWD, BotCrowd, weighted_bet


def test_weighted_bet_bounds():
    rng = random.Random(3)
    for min_bet in (Decimal("10"), Decimal("100"), Decimal("500")):
        for _ in range(300):
            bet = weighted_bet(min_bet, rng)
            assert bet % 10 == 0
            assert bet >= min_bet
            assert bet <= 5000


def test_populate_size():
    crowd = BotCrowd(random.Random(5))
    crowd.populate(Decimal("10"))
    assert MIN_CROWD <= len(crowd.players) <= MAX_CROWD
    assert crowd.online >= int(len(crowd.players) * 1.2)


def test_no_cash_out_at_or_below_floor():
    crowd = BotCrowd(random.Random(8))
    crowd.populate(Decimal("10"))
    assert crowd.on_tick(Decimal("1.05")) == 0
    assert crowd.summary()["cashed_out"] == 0


def test_cash_outs_happen_once():
    crowd = BotCrowd(random.Random(9))
    crowd.new_round(Decimal("10"))
    total = sum(crowd.on_tick(Decimal("2.00")) for _ in range(2000))
    assert total == len(crowd.players)
    assert crowd.on_tick(Decimal("3.00")) == 0
    first = crowd.players[0].cashed_out_at
    assert first == Decimal("2.00")


def test_new_round_resets_cash_outs():
    crowd = BotCrowd(random.Random(10))
    crowd.populate(Decimal("10"))
    for _ in range(500):
        crowd.on_tick(Decimal("1.50"))
    crowd.new_round(Decimal("10"))
    assert crowd.summary()["cashed_out"] == 0
    assert crowd.summary()["online"] >= len(crowd.players) + 5


def test_leaderboard_sorted():
    crowd = BotCrowd(random.Random(12))
    crowd.populate(Decimal("100"))
    board = crowd.leaderboard(5)
    assert len(board) == 5
    stakes = [row["bet_amount"] for row in board]
    assert stakes == sorted(stakes, reverse=True)


def test_crowd_has_no_store_reference():
    crowd = BotCrowd()
    assert not any("store" in name or "ledger" in name for name in vars(crowd))
