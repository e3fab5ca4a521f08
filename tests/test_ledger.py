"""
Tests for LedgerStore

Validates:
1. Fixed rows on init (root admin, house, config)
2. Account creation and lookup
3. apply(): debits, credits, rejection without partial writes, history cap
4. Freeze / ban asymmetry and the blocked-debit audit entry
5. Admin account actions and root protection
6. House treasury and round settlement
7. Game config merge, validation and fallback
8. Backup export / import
"""

import json
from decimal import Decimal

import pytest
from pydantic import ValidationError

import db
from errors import (
    AccountBannedError,
    AccountExistsError,
    AccountFrozenError,
    AccountNotFoundError,
    AuthorizationError,
    BackupError,
    HouseFundsError,
    InsufficientFundsError,
)
from schemas import HouseEntryType, Role, RoundRecord, RoundSource, TransactionType
from settings import ACCOUNT_HISTORY_LIMIT, DEMO_STARTING_BALANCE, HOUSE_STARTING_BALANCE, ROOT_IDENTITY


def _round(round_id, demo=False, crash="1.50"):
    return RoundRecord(
        round_id=round_id,
        room="standard",
        crash_point=Decimal(crash),
        target_crash=Decimal(crash),
        edge=Decimal("0.04"),
        round_hash="sha256:" + "0" * 64,
        server_seed="s",
        client_seed="c",
        nonce=1,
        source=RoundSource.FAIR,
        is_demo=demo,
    )


# ============================================================
# Init & accounts
# ============================================================

async def test_init_creates_fixed_rows(store):
    root = await store.get_account(ROOT_IDENTITY)
    assert root.role == Role.ADMIN
    house = await store.get_house()
    assert house.balance == HOUSE_STARTING_BALANCE
    assert len(house.profit_history) == 1
    config = await store.get_game_config()
    assert config.rtp == Decimal("96")


async def test_init_is_idempotent(store):
    await store.init()
    accounts = await store.get_all_accounts()
    assert [a.identity for a in accounts] == [ROOT_IDENTITY]


async def test_new_account_defaults(store):
    account = await store.get_or_create_account("254711111111")
    assert account.balance == 0
    assert account.demo_balance == DEMO_STARTING_BALANCE
    assert account.role == Role.PLAYER
    again = await store.get_or_create_account("254711111111")
    assert again.identity == account.identity


async def test_duplicate_account_rejected(store, player):
    with pytest.raises(AccountExistsError):
        await store.create_account(player)


async def test_missing_account(store):
    with pytest.raises(AccountNotFoundError):
        await store.get_account("nobody")
    with pytest.raises(AccountNotFoundError):
        await store.apply("nobody", Decimal("10"), TransactionType.DEPOSIT)


# ============================================================
# apply()
# ============================================================

async def test_debit_and_credit_record_balance_after(store, player):
    after_bet = await store.apply(player, Decimal("-250"), TransactionType.BET, room="Standard Room")
    after_win = await store.apply(player, Decimal("480"), TransactionType.WIN, multiplier=Decimal("1.92"))
    assert after_bet == Decimal("9750")
    assert after_win == Decimal("10230")

    history = await store.get_transactions(player)
    assert [t.type for t in history[:2]] == [TransactionType.WIN, TransactionType.BET]
    assert history[0].balance_after == Decimal("10230")
    assert history[0].multiplier == Decimal("1.92")


async def test_overdraft_leaves_nothing_behind(store, player):
    before = await store.get_transactions(player)
    with pytest.raises(InsufficientFundsError):
        await store.apply(player, Decimal("-10000.01"), TransactionType.BET)
    account = await store.get_account(player)
    assert account.balance == Decimal("10000")
    assert len(await store.get_transactions(player)) == len(before)


async def test_demo_wallet_is_isolated(store, player):
    await store.apply(player, Decimal("-100"), TransactionType.BET, demo=True)
    account = await store.get_account(player)
    assert account.balance == Decimal("10000")
    assert account.demo_balance == DEMO_STARTING_BALANCE - 100
    history = await store.get_transactions(player)
    assert history[0].is_demo


async def test_history_is_capped(store, player):
    for _ in range(ACCOUNT_HISTORY_LIMIT + 5):
        await store.apply(player, Decimal("1"), TransactionType.DEPOSIT)
    history = await store.get_transactions(player, limit=1000)
    assert len(history) == ACCOUNT_HISTORY_LIMIT
    assert history[0].balance_after == Decimal("10000") + ACCOUNT_HISTORY_LIMIT + 5


async def test_deposit_and_withdraw_totals(store, player):
    await store.deposit(player, Decimal("500"))
    await store.withdraw(player, Decimal("200"))
    account = await store.get_account(player)
    assert account.balance == Decimal("10300")
    assert account.total_deposited == Decimal("500")
    assert account.total_withdrawn == Decimal("200")
    with pytest.raises(ValueError):
        await store.deposit(player, Decimal("0"))


# ============================================================
# Freeze / ban
# ============================================================

async def test_frozen_blocks_real_debits_only(store, player):
    await store.set_frozen(player, True, ROOT_IDENTITY)

    with pytest.raises(AccountFrozenError):
        await store.apply(player, Decimal("-10"), TransactionType.BET)
    # Credits and demo play still go through
    assert await store.apply(player, Decimal("10"), TransactionType.WIN) == Decimal("10010")
    await store.apply(player, Decimal("-10"), TransactionType.BET, demo=True)

    logs = await store.get_system_logs()
    assert any(log.action == "DEBIT_BLOCKED" for log in logs)


async def test_frozen_error_is_authorization_error(store, player):
    await store.set_frozen(player, True, ROOT_IDENTITY)
    with pytest.raises(AuthorizationError):
        await store.withdraw(player, Decimal("10"))


async def test_banned_blocks_all_debits(store, player):
    await store.set_banned(player, True, ROOT_IDENTITY)
    with pytest.raises(AccountBannedError):
        await store.apply(player, Decimal("-10"), TransactionType.BET, demo=True)
    await store.apply(player, Decimal("5"), TransactionType.DEPOSIT)


async def test_system_log_is_capped_for_every_writer(store, player, monkeypatch):
    monkeypatch.setattr(db, "SYSTEM_LOG_LIMIT", 5)
    for i in range(8):
        await store.set_frozen(player, i % 2 == 0, ROOT_IDENTITY)
    await store.set_balance(player, Decimal("42"), ROOT_IDENTITY)

    logs = await store.get_system_logs(100)
    assert len(logs) == 5
    assert logs[0].action == "BALANCE_ADJUST"


async def test_root_is_protected(store):
    with pytest.raises(AuthorizationError):
        await store.set_banned(ROOT_IDENTITY, True, "ops")
    with pytest.raises(AuthorizationError):
        await store.delete_account(ROOT_IDENTITY, "ops")


async def test_set_balance_records_delta(store, player):
    await store.set_balance(player, Decimal("7500"), ROOT_IDENTITY)
    history = await store.get_transactions(player)
    assert history[0].type == TransactionType.ADMIN_ADJUST
    assert history[0].amount == Decimal("-2500")
    assert history[0].balance_after == Decimal("7500")
    logs = await store.get_system_logs()
    assert logs[0].action == "BALANCE_ADJUST"


async def test_delete_account(store, player):
    await store.delete_account(player, ROOT_IDENTITY)
    with pytest.raises(AccountNotFoundError):
        await store.get_account(player)


# ============================================================
# House & rounds
# ============================================================

async def test_losing_round_credits_house(store):
    await store.record_round(_round("r1"), Decimal("300"), Decimal("0"))
    house = await store.get_house()
    assert house.balance == HOUSE_STARTING_BALANCE + 300
    assert house.total_profit == Decimal("300")
    entries = await store.get_house_entries()
    assert entries[0].round_id == "r1"


async def test_winning_round_counts_payouts(store):
    await store.record_round(_round("r2"), Decimal("0"), Decimal("1600"))
    house = await store.get_house()
    assert house.balance == HOUSE_STARTING_BALANCE - 1600
    assert house.total_payouts == Decimal("1600")


async def test_demo_round_is_archived_only(store):
    await store.record_round(_round("d1", demo=True), Decimal("300"), Decimal("0"))
    house = await store.get_house()
    assert house.balance == HOUSE_STARTING_BALANCE
    assert await store.count_rounds() == 1
    history = await store.get_round_history(room="standard")
    assert history[0].is_demo


async def test_house_withdraw_limits(store):
    with pytest.raises(HouseFundsError):
        await store.house_withdraw(HOUSE_STARTING_BALANCE + 1, ROOT_IDENTITY)
    balance = await store.house_withdraw(Decimal("1000"), ROOT_IDENTITY, "MPESA", "254700000000")
    assert balance == HOUSE_STARTING_BALANCE - 1000
    balance = await store.house_deposit(Decimal("250"), ROOT_IDENTITY)
    assert balance == HOUSE_STARTING_BALANCE - 750


async def test_treasury_moves_are_house_entries(store):
    await store.house_deposit(Decimal("250"), ROOT_IDENTITY)
    await store.house_withdraw(Decimal("100"), ROOT_IDENTITY)
    entries = await store.get_house_entries(2)
    assert [e.type for e in entries] == [HouseEntryType.HOUSE_WITHDRAW, HouseEntryType.HOUSE_DEPOSIT]
    assert await store.get_transactions(ROOT_IDENTITY) == []


# ============================================================
# Config
# ============================================================

async def test_config_merges_nested_security(store):
    config = await store.update_game_config({"security": {"require_2fa": True}}, ROOT_IDENTITY)
    assert config.security.require_2fa is True
    assert config.security.anti_fraud_ai is True
    stored = await store.get_game_config()
    assert stored.security.require_2fa is True


async def test_invalid_config_is_rejected(store):
    with pytest.raises(ValidationError):
        await store.update_game_config({"min_bet": 100, "max_bet": 50}, ROOT_IDENTITY)
    assert (await store.get_game_config()).max_bet == Decimal("5000")


# ============================================================
# Backup
# ============================================================

async def test_export_import_round_trip(store, player):
    await store.apply(player, Decimal("-100"), TransactionType.BET)
    await store.record_round(_round("r9"), Decimal("100"), Decimal("0"))
    await store.update_game_config({"rtp": 97}, ROOT_IDENTITY)
    dump = await store.export_database()
    assert json.loads(dump)["version"] == 1

    await store.apply(player, Decimal("-900"), TransactionType.BET)
    await store.import_database(dump)

    account = await store.get_account(player)
    assert account.balance == Decimal("9900")
    assert (await store.get_house()).balance == HOUSE_STARTING_BALANCE + 100
    assert (await store.get_game_config()).rtp == Decimal("97")
    assert (await store.get_round_history())[0].round_id == "r9"
    assert (await store.get_system_logs())[0].action == "DB_IMPORT"


async def test_import_rejects_garbage(store, player):
    with pytest.raises(BackupError):
        await store.import_database('{"accounts": "nope"}')
    assert (await store.get_account(player)).balance == Decimal("10000")
