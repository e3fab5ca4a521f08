"""
Tests for AdminConsole

Validates:
1. Non-admin callers are refused and the attempt is logged
2. Round control reaches the right table
3. Account, config and treasury actions leave a system log trail
4. Backup through the console
5. Deletes and restores are refused while bets are open
"""

from decimal import Decimal

import pytest

from admin import AdminConsole
from engine import GameState
from errors import AuthorizationError, StateError
from schemas import RoundSource, Severity
from settings import CRASH_DISPLAY_SEC, HOUSE_STARTING_BALANCE


@pytest.fixture
def console(store, engine):
    return AdminConsole(store, {"standard": engine})


async def run_until_crash(table, clock):
    while table.phase != GameState.CRASHED:
        clock.advance(0.5)
        await table.tick()


# ============================================================
# Authorization
# ============================================================

@pytest.mark.parametrize("actor", ["254700000001", "ghost"])
async def test_non_admin_refused(console, store, player, actor):
    with pytest.raises(AuthorizationError):
        await console.set_balance(actor, player, Decimal("1"))
    logs = await store.get_system_logs()
    assert logs[0].action == "UNAUTHORIZED"
    assert logs[0].severity == Severity.WARNING
    assert (await store.get_account(player)).balance == Decimal("10000")


async def test_reports_require_admin(console, player):
    with pytest.raises(AuthorizationError):
        await console.list_accounts(player)


async def test_unknown_table(console, operator):
    with pytest.raises(ValueError):
        await console.force_crash_now(operator, "moon")


# ============================================================
# Round control
# ============================================================

async def test_override_then_force_crash(console, store, engine, operator, clock, fly):
    staged = await console.set_next_crash_override(operator, "standard", "25")
    assert staged == Decimal("25.00")

    await fly(engine)
    assert engine.current_round.crash_point == Decimal("25.00")

    clock.advance(4)
    await engine.tick()
    value = await console.force_crash_now(operator, "standard")
    await engine.tick()

    record = (await store.get_round_history())[0]
    assert record.source == RoundSource.ADMIN
    assert record.forced and record.crash_point == value
    actions = [log.action for log in await store.get_system_logs()]
    assert "FORCE_CRASH" in actions and "CRASH_OVERRIDE" in actions


async def test_force_crash_when_idle(console, operator):
    with pytest.raises(StateError):
        await console.force_crash_now(operator, "standard")


async def test_client_seed_applies_next_round(console, engine, operator, fly):
    await console.set_client_seed(operator, "standard", "my-seed")
    await fly(engine)
    assert engine.fairness()["current"]["client_seed"] == "my-seed"


# ============================================================
# Accounts, config, treasury
# ============================================================

async def test_account_actions(console, store, operator, player):
    assert await console.set_balance(operator, player, "500") == Decimal("500")
    assert (await console.freeze(operator, player)).is_frozen is True
    assert (await console.ban(operator, player, False)).is_banned is False
    await console.delete_account(operator, player)
    identities = [a.identity for a in await console.list_accounts(operator)]
    assert player not in identities


async def test_delete_refused_while_bet_is_open(console, store, engine, operator, player, clock, fly):
    await engine.place_bet(player, 0, Decimal("100"))
    with pytest.raises(StateError):
        await console.delete_account(operator, player)

    await fly(engine, crash_at="1.20")
    with pytest.raises(StateError):
        await console.delete_account(operator, player)
    assert (await store.get_account(player)).balance == Decimal("9900")

    await run_until_crash(engine, clock)
    clock.advance(CRASH_DISPLAY_SEC)
    await engine.tick()
    await console.delete_account(operator, player)


async def test_delete_refused_for_queued_bet(console, engine, operator, player, fly):
    await fly(engine, crash_at="50.00")
    await engine.place_bet(player, 1, Decimal("100"))
    with pytest.raises(StateError):
        await console.delete_account(operator, player)


async def test_config_update(console, operator):
    config = await console.update_config(operator, {"rtp": 98, "max_bet": 10000})
    assert config.rtp == Decimal("98")
    assert config.max_bet == Decimal("10000")


async def test_treasury(console, store, operator):
    await console.house_deposit(operator, "1000")
    balance = await console.house_withdraw(operator, "400", "BANK", "ACC-1")
    assert balance == HOUSE_STARTING_BALANCE + 600
    stats = await console.house_stats(operator)
    assert stats["house"].balance == balance
    assert len(stats["recent_entries"]) == 2
    assert stats["tables"]["standard"]["status"] == "IDLE"


async def test_round_history_and_logs(console, engine, operator, clock, fly):
    await fly(engine, crash_at="1.20")
    await run_until_crash(engine, clock)
    rounds = await console.round_history(operator, room="standard")
    assert len(rounds) == 1
    logs = await console.system_logs(operator)
    assert logs


async def test_backup_round_trip(console, store, operator, player):
    dump = await console.export_backup(operator)
    await store.deposit(player, Decimal("999"))
    await console.import_backup(operator, dump)
    assert (await store.get_account(player)).balance == Decimal("10000")
    history = await console.account_transactions(operator, player)
    assert history == []


async def test_restore_refused_while_bets_are_open(console, store, engine, operator, player):
    dump = await console.export_backup(operator)
    await engine.place_bet(player, 0, Decimal("100"))
    with pytest.raises(StateError):
        await console.import_backup(operator, dump)
    assert (await store.get_account(player)).balance == Decimal("9900")
