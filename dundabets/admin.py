# admin.py
"""
Admin Control Surface

Responsibilities:
- Role check on every call (AuthorizationError + system log on failure)
- Round control: force crash, staged crash override, client seed
- Account control: balance, freeze, ban, delete
- Treasury, game config, backup export / import
- Reports for the admin dashboard

The console owns no state: it forwards to the LedgerStore and to the
running engines it was given, keyed by table name.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from db import LedgerStore
from engine import CrashEngine
from errors import AccountNotFoundError, AuthorizationError, StateError
from schemas import (
    AccountSnapshot,
    GameConfig,
    HouseEntryRecord,
    HouseSnapshot,
    RoundRecord,
    Severity,
    SystemLogRecord,
    TransactionRecord,
)
from utils import format_balance, format_multiplier

logger = logging.getLogger("dundabets.admin")


class AdminConsole:
    def __init__(self, store: LedgerStore, engines: Mapping[str, CrashEngine]) -> None:
        self._store = store
        self._engines = engines

    # =====================================================
    # ACCESS
    # =====================================================

    async def _require_admin(self, actor: str) -> AccountSnapshot:
        try:
            account = await self._store.get_account(actor)
        except AccountNotFoundError:
            account = None

        if account is None or not account.is_admin:
            logger.warning(f"Unauthorized admin call by {actor!r}")
            await self._store.log_system_action(
                actor, "UNAUTHORIZED", "Admin action attempted without admin role", Severity.WARNING
            )
            raise AuthorizationError("Admin privileges required")
        return account

    def _engine(self, table: str) -> CrashEngine:
        try:
            return self._engines[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}") from None

    # =====================================================
    # ROUND CONTROL
    # =====================================================

    async def force_crash_now(self, actor: str, table: str) -> Decimal:
        await self._require_admin(actor)
        value = await self._engine(table).force_crash_now()
        await self._store.log_system_action(
            actor, "FORCE_CRASH", f"Forced crash in {table} at {format_multiplier(value)}", Severity.WARNING
        )
        return value

    async def set_next_crash_override(self, actor: str, table: str, value: Any) -> Decimal:
        await self._require_admin(actor)
        staged = self._engine(table).set_next_crash_override(value)
        await self._store.log_system_action(
            actor, "CRASH_OVERRIDE", f"Next crash in {table} set to {format_multiplier(staged)}", Severity.WARNING
        )
        return staged

    async def set_client_seed(self, actor: str, table: str, client_seed: str) -> None:
        await self._require_admin(actor)
        self._engine(table).set_client_seed(client_seed)
        await self._store.log_system_action(
            actor, "CLIENT_SEED", f"Client seed for {table} changed to {client_seed.strip()}"
        )

    # =====================================================
    # ACCOUNTS
    # =====================================================

    async def set_balance(self, actor: str, identity: str, amount: Any) -> Decimal:
        await self._require_admin(actor)
        balance = await self._store.set_balance(identity, amount, actor)
        logger.info(f"{actor} set balance of {identity} to {format_balance(balance)}")
        return balance

    async def freeze(self, actor: str, identity: str, status: bool = True) -> AccountSnapshot:
        await self._require_admin(actor)
        return await self._store.set_frozen(identity, status, actor)

    async def ban(self, actor: str, identity: str, status: bool = True) -> AccountSnapshot:
        await self._require_admin(actor)
        return await self._store.set_banned(identity, status, actor)

    def _tables_holding(self, identity: Optional[str] = None) -> List[str]:
        """Tables with open bets, optionally only those of `identity`."""
        tables = []
        for name, engine in self._engines.items():
            accounts = engine.open_accounts()
            if (identity in accounts) if identity is not None else accounts:
                tables.append(name)
        return tables

    async def delete_account(self, actor: str, identity: str) -> None:
        await self._require_admin(actor)
        tables = self._tables_holding(identity)
        if tables:
            raise StateError(f"{identity} has open bets at {', '.join(tables)}")
        await self._store.delete_account(identity, actor)
        logger.warning(f"{actor} deleted account {identity}")

    # =====================================================
    # CONFIG & TREASURY
    # =====================================================

    async def update_config(self, actor: str, changes: Dict[str, Any]) -> GameConfig:
        await self._require_admin(actor)
        return await self._store.update_game_config(changes, actor)

    async def house_deposit(self, actor: str, amount: Any) -> Decimal:
        await self._require_admin(actor)
        return await self._store.house_deposit(amount, actor)

    async def house_withdraw(
        self,
        actor: str,
        amount: Any,
        method: str = "MPESA",
        destination: str = "",
    ) -> Decimal:
        await self._require_admin(actor)
        return await self._store.house_withdraw(amount, actor, method, destination)

    # =====================================================
    # BACKUP
    # =====================================================

    async def export_backup(self, actor: str) -> str:
        await self._require_admin(actor)
        return await self._store.export_database(actor)

    async def import_backup(self, actor: str, raw: str) -> None:
        await self._require_admin(actor)
        # A restore replaces every wallet; escrowed stakes would be orphaned
        tables = self._tables_holding()
        if tables:
            raise StateError(f"Open bets at {', '.join(tables)}; restore between rounds")
        await self._store.import_database(raw, actor)

    # =====================================================
    # REPORTS
    # =====================================================

    async def list_accounts(self, actor: str) -> List[AccountSnapshot]:
        await self._require_admin(actor)
        return await self._store.get_all_accounts()

    async def account_transactions(self, actor: str, identity: str, limit: int = 100) -> List[TransactionRecord]:
        await self._require_admin(actor)
        return await self._store.get_transactions(identity, limit)

    async def round_history(self, actor: str, limit: int = 50, room: Optional[str] = None) -> List[RoundRecord]:
        await self._require_admin(actor)
        return await self._store.get_round_history(limit, room)

    async def system_logs(self, actor: str, limit: int = 200) -> List[SystemLogRecord]:
        await self._require_admin(actor)
        return await self._store.get_system_logs(limit)

    async def house_stats(self, actor: str) -> Dict[str, Any]:
        await self._require_admin(actor)
        house: HouseSnapshot = await self._store.get_house()
        entries: List[HouseEntryRecord] = await self._store.get_house_entries(20)
        return {
            "house": house,
            "recent_entries": entries,
            "tables": {name: engine.snapshot() for name, engine in self._engines.items()},
        }
