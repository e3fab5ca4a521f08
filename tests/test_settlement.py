"""
Tests for payout math and the round tally

Validates:
1. Worked payout scenarios (taxed, demo)
2. Whole-unit flooring and the per-round profit cap
3. Invalid inputs
4. House net from a bet book snapshot
"""

from decimal import Decimal

import pytest

from settlement import SettledBet, compute_payout, tally_round


# ============================================================
# compute_payout
# ============================================================

def test_taxed_win():
    """Stake 1000 at 3.00x: gross 3000, profit 2000, tax 400, net 2600."""
    p = compute_payout(Decimal("1000"), Decimal("3.00"))
    assert (p.gross, p.profit, p.tax, p.net) == (
        Decimal("3000"), Decimal("2000"), Decimal("400"), Decimal("2600")
    )


def test_demo_win_is_untaxed():
    """Stake 100 at 1.92x on demo: gross 192, profit 92, net 192."""
    p = compute_payout(Decimal("100"), Decimal("1.92"), demo=True)
    assert (p.gross, p.profit, p.tax, p.net) == (
        Decimal("192"), Decimal("92"), Decimal("0"), Decimal("192")
    )


def test_gross_and_tax_are_floored():
    # 15 * 1.33 = 19.95 -> 19; profit 4; tax 0.8 -> 0
    p = compute_payout(Decimal("15"), Decimal("1.33"))
    assert p.gross == Decimal("19")
    assert p.tax == Decimal("0")
    assert p.net == Decimal("19")


def test_cash_out_at_one_returns_stake():
    p = compute_payout(Decimal("50"), Decimal("1.00"))
    assert p.profit == 0
    assert p.net == Decimal("50")


def test_profit_cap():
    p = compute_payout(Decimal("1000"), Decimal("100.00"), max_profit=Decimal("5000"))
    assert p.profit == Decimal("5000")
    assert p.gross == Decimal("6000")
    assert p.tax == Decimal("1000")
    assert p.net == Decimal("5000")


@pytest.mark.parametrize("stake,mult", [("0", "2.00"), ("-5", "2.00"), ("10", "0.99")])
def test_invalid_inputs(stake, mult):
    with pytest.raises(ValueError):
        compute_payout(Decimal(stake), Decimal(mult))


# ============================================================
# tally_round
# ============================================================

def test_two_losing_bets_go_to_house():
    """Bets 100 and 200 lost: house keeps 300."""
    tally = tally_round([SettledBet(Decimal("100"), None), SettledBet(Decimal("200"), None)])
    assert tally.bet_count == 2
    assert tally.player_losses == Decimal("300")
    assert tally.player_wins == Decimal("0")
    assert tally.house_net == Decimal("300")


def test_mixed_round():
    tally = tally_round([
        SettledBet(Decimal("1000"), Decimal("2600")),  # won 1600 net of tax
        SettledBet(Decimal("500"), None),
    ])
    assert tally.total_staked == Decimal("1500")
    assert tally.total_paid == Decimal("2600")
    assert tally.house_net == Decimal("500") - Decimal("1600")


def test_empty_round():
    tally = tally_round([])
    assert tally.bet_count == 0
    assert tally.house_net == 0
