# app.py
"""
DundaBets Crash – HTTP Entry Point

Responsibilities:
- FastAPI app factory (create_app) wiring one LedgerStore to the tables
- Request Validation (Pydantic)
- Engine / ledger errors -> HTTP status codes
- Player API, provable fairness API, admin RPCs and reports

Integration:
- Uses engine.py (CrashEngine per table, background tick loop)
- Uses db.py (LedgerStore, atomic transactions, Decimal)
- Uses admin.py (role-checked admin operations)

Tables: one real-money engine per room plus a "demo" table on the
standard room playing with demo wallets.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from admin import AdminConsole
from db import LedgerStore
from engine import CrashEngine
from errors import (
    AccountBannedError,
    AccountExistsError,
    AccountFrozenError,
    AccountNotFoundError,
    AuthorizationError,
    BackupError,
    BetError,
    EngineError,
    HouseFundsError,
    InsufficientFundsError,
    StateError,
)
from fairness import derive_crash_point, verify_round
from settings import DATABASE_URL, DEFAULT_HOUSE_EDGE, DEFAULT_ROOM, LOG_LEVEL, ROOMS

logger = logging.getLogger("dundabets.app")

DEMO_TABLE = "demo"

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class UserInitRequest(BaseModel):
    identity: str = Field(..., min_length=1, max_length=64)


class BetRequest(BaseModel):
    identity: str = Field(..., min_length=1)
    table: str = DEFAULT_ROOM
    slot: int = Field(0, ge=0)
    amount: float = Field(..., gt=0)  # Input is float, converted to Decimal internally
    auto_cashout: Optional[float] = Field(None, gt=1.0)


class SlotRequest(BaseModel):
    identity: str = Field(..., min_length=1)
    table: str = DEFAULT_ROOM
    slot: int = Field(0, ge=0)


class AutoCashoutRequest(SlotRequest):
    multiplier: Optional[float] = Field(None, gt=1.0)


class PaymentRequest(BaseModel):
    identity: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    method: str = "MPESA"


class AdminRequest(BaseModel):
    actor: str = Field(..., min_length=1)


class TableAdminRequest(AdminRequest):
    table: str = DEFAULT_ROOM


class OverrideRequest(TableAdminRequest):
    value: float = Field(..., ge=1.0)


class ClientSeedRequest(TableAdminRequest):
    client_seed: str = Field(..., min_length=1)


class AccountAdminRequest(AdminRequest):
    identity: str = Field(..., min_length=1)


class BalanceRequest(AccountAdminRequest):
    amount: float = Field(..., ge=0)


class FlagRequest(AccountAdminRequest):
    status: bool = True


class ConfigRequest(AdminRequest):
    changes: Dict[str, Any]


class HouseMoveRequest(AdminRequest):
    amount: float = Field(..., gt=0)
    method: str = "MPESA"
    destination: str = ""


class ImportRequest(AdminRequest):
    backup: str = Field(..., min_length=2)


# =====================================================
# ERROR MAPPING
# =====================================================

# Looked up along the exception's MRO, most specific first
ERROR_STATUS = {
    StateError: (status.HTTP_409_CONFLICT, "Game State Conflict"),
    BetError: (status.HTTP_400_BAD_REQUEST, "Invalid Bet"),
    InsufficientFundsError: (status.HTTP_402_PAYMENT_REQUIRED, "Insufficient Funds"),
    AuthorizationError: (status.HTTP_403_FORBIDDEN, "Forbidden"),
    AccountFrozenError: (status.HTTP_403_FORBIDDEN, "Account Frozen"),
    AccountBannedError: (status.HTTP_403_FORBIDDEN, "Account Banned"),
    AccountNotFoundError: (status.HTTP_404_NOT_FOUND, "Account Not Found"),
    AccountExistsError: (status.HTTP_409_CONFLICT, "Account Exists"),
    HouseFundsError: (status.HTTP_409_CONFLICT, "Insufficient House Funds"),
    BackupError: (status.HTTP_400_BAD_REQUEST, "Invalid Backup"),
    EngineError: (status.HTTP_400_BAD_REQUEST, "Request Rejected"),
    ValueError: (status.HTTP_422_UNPROCESSABLE_ENTITY, "Value Error"),
}


def _register_error_handlers(app: FastAPI) -> None:
    for exc_class, (code, title) in ERROR_STATUS.items():

        async def handler(_: Request, exc: Exception, code: int = code, title: str = title):
            return JSONResponse(
                status_code=code,
                content={"error": title, "detail": str(exc)},
            )

        app.add_exception_handler(exc_class, handler)


# =====================================================
# APP FACTORY
# =====================================================

def create_app(
    database_url: str = DATABASE_URL,
    autostart: bool = True,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    Args:
        database_url: any SQLAlchemy async URL.
        autostart:    run the tick loops in the background. Tests pass
                      False and drive the engines directly.
        clock:        time source shared by every table.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Startup: Initializing Database...")
        store = LedgerStore(database_url)
        await store.init()

        engines: Dict[str, CrashEngine] = {
            room_id: CrashEngine(store, room_id, clock=clock) for room_id in ROOMS
        }
        engines[DEMO_TABLE] = CrashEngine(store, DEFAULT_ROOM, demo=True, clock=clock)

        for engine in engines.values():
            await engine.initialize()
            if autostart:
                await engine.start()

        app.state.store = store
        app.state.engines = engines
        app.state.admin = AdminConsole(store, engines)

        yield

        logger.info("Shutdown: Cleaning up...")
        for engine in engines.values():
            await engine.stop()
        await store.close()

    app = FastAPI(
        title="DundaBets Crash API",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)

    def table(request: Request, name: str) -> CrashEngine:
        try:
            return request.app.state.engines[name]
        except KeyError:
            raise ValueError(f"Unknown table: {name}") from None

    def store_of(request: Request) -> LedgerStore:
        return request.app.state.store

    def admin_of(request: Request) -> AdminConsole:
        return request.app.state.admin

    # =====================================================
    # API – GAME STATE
    # =====================================================

    @app.get("/api/state")
    async def api_state(request: Request, room: str = DEFAULT_ROOM):
        """
        High-frequency polling endpoint for game state.
        """
        return await table(request, room).get_state()

    @app.get("/api/fairness")
    async def api_fairness(request: Request, room: str = DEFAULT_ROOM):
        return table(request, room).fairness()

    @app.get("/api/bets/{identity}")
    async def api_bets(identity: str, request: Request, room: str = DEFAULT_ROOM):
        """Live and queued bets of one player at a table."""
        return {"bets": table(request, room).get_bets(identity)}

    @app.get("/api/crowd")
    async def api_crowd(request: Request, room: str = DEFAULT_ROOM, limit: int = 20):
        crowd = table(request, room).crowd
        return {**crowd.summary(), "leaderboard": crowd.leaderboard(limit)}

    @app.get("/api/verify")
    async def api_verify(
        server_seed: str,
        client_seed: str,
        nonce: int,
        edge: float = float(DEFAULT_HOUSE_EDGE),
        crash_point: Optional[float] = None,
        round_hash: Optional[str] = None,
        demo: bool = False,
    ):
        """
        Recompute a crash point from revealed seeds; optionally check it
        against a published result.
        """
        edge_dec = Decimal(str(edge))
        computed = derive_crash_point(server_seed, client_seed, nonce, edge_dec, demo=demo)
        result: Dict[str, Any] = {"crash_point": float(computed)}
        if crash_point is not None:
            result["valid"] = verify_round(
                server_seed,
                client_seed,
                nonce,
                edge_dec,
                Decimal(str(crash_point)),
                round_hash=round_hash,
                demo=demo,
            )
        return result

    # =====================================================
    # API – USER
    # =====================================================

    @app.post("/api/init")
    async def api_init(payload: UserInitRequest, request: Request):
        """
        Initialize user session and fetch balances.
        """
        account = await store_of(request).get_or_create_account(payload.identity)
        return {
            "identity": account.identity,
            "role": account.role.value,
            "balance": float(account.balance),  # Convert Decimal to float for JSON
            "demo_balance": float(account.demo_balance),
            "is_frozen": account.is_frozen,
        }

    @app.post("/api/deposit")
    async def api_deposit(payload: PaymentRequest, request: Request):
        balance = await store_of(request).deposit(
            payload.identity, Decimal(str(payload.amount)), payload.method
        )
        return {"status": "ok", "balance": float(balance)}

    @app.post("/api/withdraw")
    async def api_withdraw(payload: PaymentRequest, request: Request):
        balance = await store_of(request).withdraw(
            payload.identity, Decimal(str(payload.amount)), payload.method
        )
        return {"status": "ok", "balance": float(balance)}

    @app.get("/api/transactions/{identity}")
    async def api_transactions(identity: str, request: Request, limit: int = 50):
        return await store_of(request).get_transactions(identity, limit)

    # =====================================================
    # API – BETTING & CASHOUT
    # =====================================================

    @app.post("/api/place-bet")
    async def api_place_bet(payload: BetRequest, request: Request):
        """
        The engine escrows the stake through the ledger before registering
        the bet, so there is nothing to roll back on rejection.
        """
        engine = table(request, payload.table)
        bet = await engine.place_bet(
            payload.identity,
            payload.slot,
            Decimal(str(payload.amount)),
            payload.auto_cashout,
        )
        account = await store_of(request).get_account(payload.identity)
        return {
            "status": "queued" if bet["queued"] else "accepted",
            "bet": bet,
            "new_balance": float(account.wallet(engine.demo)),
        }

    @app.post("/api/cancel-bet")
    async def api_cancel_bet(payload: SlotRequest, request: Request):
        balance = await table(request, payload.table).cancel_bet(payload.identity, payload.slot)
        return {"status": "cancelled", "balance": float(balance)}

    @app.post("/api/cashout")
    async def api_cashout(payload: SlotRequest, request: Request):
        """
        Engine is the authority on the multiplier and the payout.
        """
        engine = table(request, payload.table)
        bet = await engine.cash_out(payload.identity, payload.slot)
        account = await store_of(request).get_account(payload.identity)
        return {
            "status": "cashed_out",
            "bet": bet,
            "balance": float(account.wallet(engine.demo)),
        }

    @app.post("/api/auto-cashout")
    async def api_auto_cashout(payload: AutoCashoutRequest, request: Request):
        threshold = await table(request, payload.table).set_auto_cash_out(
            payload.identity, payload.slot, payload.multiplier
        )
        return {"auto_cashout": float(threshold) if threshold is not None else None}

    # =====================================================
    # API – ADMIN
    # =====================================================

    @app.post("/api/admin/force-crash")
    async def api_force_crash(payload: TableAdminRequest, request: Request):
        value = await admin_of(request).force_crash_now(payload.actor, payload.table)
        return {"crash_point": float(value)}

    @app.post("/api/admin/override")
    async def api_override(payload: OverrideRequest, request: Request):
        staged = await admin_of(request).set_next_crash_override(
            payload.actor, payload.table, Decimal(str(payload.value))
        )
        return {"staged": float(staged)}

    @app.post("/api/admin/client-seed")
    async def api_client_seed(payload: ClientSeedRequest, request: Request):
        await admin_of(request).set_client_seed(payload.actor, payload.table, payload.client_seed)
        return {"status": "ok"}

    @app.post("/api/admin/balance")
    async def api_set_balance(payload: BalanceRequest, request: Request):
        balance = await admin_of(request).set_balance(
            payload.actor, payload.identity, Decimal(str(payload.amount))
        )
        return {"identity": payload.identity, "balance": float(balance)}

    @app.post("/api/admin/freeze")
    async def api_freeze(payload: FlagRequest, request: Request):
        return await admin_of(request).freeze(payload.actor, payload.identity, payload.status)

    @app.post("/api/admin/ban")
    async def api_ban(payload: FlagRequest, request: Request):
        return await admin_of(request).ban(payload.actor, payload.identity, payload.status)

    @app.post("/api/admin/delete")
    async def api_delete(payload: AccountAdminRequest, request: Request):
        await admin_of(request).delete_account(payload.actor, payload.identity)
        return {"status": "deleted"}

    @app.post("/api/admin/config")
    async def api_config(payload: ConfigRequest, request: Request):
        return await admin_of(request).update_config(payload.actor, payload.changes)

    @app.post("/api/admin/house/deposit")
    async def api_house_deposit(payload: HouseMoveRequest, request: Request):
        balance = await admin_of(request).house_deposit(payload.actor, Decimal(str(payload.amount)))
        return {"house_balance": float(balance)}

    @app.post("/api/admin/house/withdraw")
    async def api_house_withdraw(payload: HouseMoveRequest, request: Request):
        balance = await admin_of(request).house_withdraw(
            payload.actor, Decimal(str(payload.amount)), payload.method, payload.destination
        )
        return {"house_balance": float(balance)}

    @app.post("/api/admin/export")
    async def api_export(payload: AdminRequest, request: Request):
        return {"backup": await admin_of(request).export_backup(payload.actor)}

    @app.post("/api/admin/import")
    async def api_import(payload: ImportRequest, request: Request):
        await admin_of(request).import_backup(payload.actor, payload.backup)
        return {"status": "restored"}

    # =====================================================
    # API – ADMIN REPORTS
    # =====================================================

    @app.get("/api/admin/rounds")
    async def api_rounds(request: Request, actor: str, limit: int = 50, room: Optional[str] = None):
        return await admin_of(request).round_history(actor, limit, room)

    @app.get("/api/admin/logs")
    async def api_logs(request: Request, actor: str, limit: int = 200):
        return await admin_of(request).system_logs(actor, limit)

    @app.get("/api/admin/house")
    async def api_house(request: Request, actor: str):
        return await admin_of(request).house_stats(actor)

    @app.get("/api/admin/accounts")
    async def api_accounts(request: Request, actor: str):
        return await admin_of(request).list_accounts(actor)

    return app


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
