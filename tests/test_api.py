"""
Tests for the HTTP API (FastAPI TestClient, tick loops disabled)

Validates:
1. Player endpoints: init, deposit / withdraw, bet, cancel, history
2. Error mapping: 400 / 402 / 403 / 404 / 409 / 422
3. Fairness and verification endpoints
4. Admin RPCs and reports
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app import create_app
from fairness import commitment_hash, derive_crash_point
from settings import ROOT_IDENTITY

PLAYER = "254722000000"


@pytest.fixture
def client(database_url):
    app = create_app(database_url, autostart=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def funded(client):
    client.post("/api/init", json={"identity": PLAYER})
    client.post("/api/deposit", json={"identity": PLAYER, "amount": 1000})
    return PLAYER


# ============================================================
# Player
# ============================================================

def test_init_creates_account(client):
    res = client.post("/api/init", json={"identity": PLAYER})
    assert res.status_code == 200
    body = res.json()
    assert body["balance"] == 0
    assert body["demo_balance"] == 50000
    assert body["role"] == "player"


def test_deposit_and_withdraw(client, funded):
    res = client.post("/api/withdraw", json={"identity": funded, "amount": 300})
    assert res.json()["balance"] == 700
    res = client.post("/api/withdraw", json={"identity": funded, "amount": 5000})
    assert res.status_code == 402


def test_place_and_cancel_bet(client, funded):
    res = client.post("/api/place-bet", json={"identity": funded, "amount": 200, "slot": 1})
    assert res.status_code == 200
    assert res.json()["status"] == "accepted"
    assert res.json()["new_balance"] == 800

    res = client.post("/api/cancel-bet", json={"identity": funded, "slot": 1})
    assert res.json()["balance"] == 1000

    history = client.get(f"/api/transactions/{funded}").json()
    assert [t["type"] for t in history[:3]] == ["refund", "bet", "deposit"]


def test_demo_table_uses_demo_wallet(client, funded):
    res = client.post("/api/place-bet", json={"identity": funded, "amount": 100, "table": "demo"})
    assert res.json()["new_balance"] == 49900


def test_auto_cashout_setting(client, funded):
    res = client.post("/api/auto-cashout", json={"identity": funded, "multiplier": 2.5})
    assert res.json()["auto_cashout"] == 2.5
    res = client.post("/api/auto-cashout", json={"identity": funded})
    assert res.json()["auto_cashout"] is None


def test_open_bets_listing(client, funded):
    client.post("/api/place-bet", json={"identity": funded, "amount": 150, "slot": 1})
    bets = client.get(f"/api/bets/{funded}").json()["bets"]
    assert [(b["slot"], b["amount"], b["cashed_out"]) for b in bets] == [(1, 150, False)]
    assert client.get(f"/api/bets/{funded}", params={"room": "vip"}).json()["bets"] == []


def test_crowd(client):
    body = client.get("/api/crowd", params={"limit": 3}).json()
    assert body["players"] >= 99
    assert len(body["leaderboard"]) == 3
    amounts = [p["bet_amount"] for p in body["leaderboard"]]
    assert amounts == sorted(amounts, reverse=True)


# ============================================================
# Error mapping
# ============================================================

def test_cashout_while_idle_is_conflict(client, funded):
    client.post("/api/place-bet", json={"identity": funded, "amount": 100})
    res = client.post("/api/cashout", json={"identity": funded})
    assert res.status_code == 409
    assert res.json()["error"] == "Game State Conflict"


def test_stake_below_room_minimum(client, funded):
    res = client.post("/api/place-bet", json={"identity": funded, "amount": 200, "table": "vip"})
    assert res.status_code == 400


def test_insufficient_funds(client, funded):
    client.post("/api/place-bet", json={"identity": funded, "amount": 900})
    res = client.post("/api/place-bet", json={"identity": funded, "amount": 900, "slot": 1})
    assert res.status_code == 402


def test_unknown_account(client):
    res = client.post("/api/place-bet", json={"identity": "nobody", "amount": 100})
    assert res.status_code == 404


def test_admin_may_not_bet(client):
    res = client.post("/api/place-bet", json={"identity": ROOT_IDENTITY, "amount": 100})
    assert res.status_code == 403


def test_frozen_account(client, funded):
    client.post("/api/admin/freeze", json={"actor": ROOT_IDENTITY, "identity": funded})
    res = client.post("/api/place-bet", json={"identity": funded, "amount": 100})
    assert res.status_code == 403
    assert res.json()["error"] == "Account Frozen"


def test_unknown_table(client, funded):
    res = client.get("/api/state", params={"room": "moon"})
    assert res.status_code == 422


# ============================================================
# State & fairness
# ============================================================

def test_state_and_fairness(client):
    state = client.get("/api/state", params={"room": "turbo"}).json()
    assert state["status"] == "IDLE"
    assert state["room"] == "turbo"
    fairness = client.get("/api/fairness").json()
    assert fairness["current"] is None
    assert fairness["client_seed"]


def test_verify_endpoint(client):
    seed = "f" * 64
    expected = derive_crash_point(seed, "client", 5, Decimal("0.04"))
    res = client.get("/api/verify", params={"server_seed": seed, "client_seed": "client", "nonce": 5})
    assert res.json()["crash_point"] == float(expected)

    res = client.get("/api/verify", params={
        "server_seed": seed,
        "client_seed": "client",
        "nonce": 5,
        "edge": 0.04,
        "crash_point": float(expected),
        "round_hash": commitment_hash(seed),
    })
    assert res.json()["valid"] is True


# ============================================================
# Admin
# ============================================================

def test_admin_requires_role(client, funded):
    res = client.post("/api/admin/override", json={"actor": funded, "value": 2.0})
    assert res.status_code == 403
    res = client.get("/api/admin/accounts", params={"actor": funded})
    assert res.status_code == 403


def test_admin_round_control(client):
    res = client.post("/api/admin/override", json={"actor": ROOT_IDENTITY, "value": 3.0})
    assert res.json()["staged"] == 3.0
    res = client.post("/api/admin/force-crash", json={"actor": ROOT_IDENTITY})
    assert res.status_code == 409


def test_admin_balance_and_config(client, funded):
    res = client.post("/api/admin/balance", json={"actor": ROOT_IDENTITY, "identity": funded, "amount": 42})
    assert res.json()["balance"] == 42
    res = client.post("/api/admin/config", json={"actor": ROOT_IDENTITY, "changes": {"max_bet": 1}})
    assert res.status_code == 422
    res = client.post("/api/admin/config", json={"actor": ROOT_IDENTITY, "changes": {"enable_chat": False}})
    assert res.status_code == 200
    assert res.json()["enable_chat"] is False


def test_admin_house(client):
    res = client.post("/api/admin/house/withdraw", json={"actor": ROOT_IDENTITY, "amount": 10_000_000})
    assert res.status_code == 409
    res = client.post("/api/admin/house/deposit", json={"actor": ROOT_IDENTITY, "amount": 100})
    assert res.json()["house_balance"] == 500100
    stats = client.get("/api/admin/house", params={"actor": ROOT_IDENTITY}).json()
    assert set(stats["tables"]) == {"standard", "vip", "turbo", "demo"}


def test_admin_backup(client, funded):
    backup = client.post("/api/admin/export", json={"actor": ROOT_IDENTITY}).json()["backup"]
    client.post("/api/deposit", json={"identity": funded, "amount": 1})
    res = client.post("/api/admin/import", json={"actor": ROOT_IDENTITY, "backup": backup})
    assert res.json()["status"] == "restored"
    assert client.post("/api/init", json={"identity": funded}).json()["balance"] == 1000

    res = client.post("/api/admin/import", json={"actor": ROOT_IDENTITY, "backup": "{}"})
    assert res.status_code == 400


def test_admin_delete_with_open_bet(client, funded):
    client.post("/api/place-bet", json={"identity": funded, "amount": 100})
    res = client.post("/api/admin/delete", json={"actor": ROOT_IDENTITY, "identity": funded})
    assert res.status_code == 409

    client.post("/api/cancel-bet", json={"identity": funded, "slot": 0})
    res = client.post("/api/admin/delete", json={"actor": ROOT_IDENTITY, "identity": funded})
    assert res.json()["status"] == "deleted"


def test_admin_reports(client, funded):
    accounts = client.get("/api/admin/accounts", params={"actor": ROOT_IDENTITY}).json()
    assert {a["identity"] for a in accounts} == {ROOT_IDENTITY, funded}
    logs = client.get("/api/admin/logs", params={"actor": ROOT_IDENTITY}).json()
    assert isinstance(logs, list)
    rounds = client.get("/api/admin/rounds", params={"actor": ROOT_IDENTITY}).json()
    assert rounds == []
