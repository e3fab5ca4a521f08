# db.py
"""
Ledger Store – Production Grade

Responsibilities:
- Async database engine & session lifecycle (one LedgerStore per process)
- Accounts with isolated real / demo wallets
- Single balance mutation entrypoint with an immutable transaction trail
- House treasury, round audit log, admin system log
- Game config persistence, backup export / import

Every public method runs in its own database transaction: it either commits
completely or raises and leaves nothing behind.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    delete,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

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
from schemas import (
    AccountBackup,
    AccountSnapshot,
    BackupPayload,
    GameConfig,
    HouseEntryRecord,
    HouseEntryType,
    HouseSnapshot,
    Role,
    RoundRecord,
    RoundSource,
    Severity,
    SystemLogRecord,
    TransactionRecord,
    TransactionType,
)
from settings import (
    ACCOUNT_HISTORY_LIMIT,
    DATABASE_URL,
    DB_ECHO,
    DEMO_STARTING_BALANCE,
    HOUSE_SNAPSHOT_LIMIT,
    HOUSE_STARTING_BALANCE,
    ROOT_IDENTITY,
    ROUND_LOG_LIMIT,
    SYSTEM_LOG_LIMIT,
)
from utils import CENT, format_balance, safe_decimal

logger = logging.getLogger("dundabets.db")

ZERO = Decimal("0")


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


def _money(**kw) -> Any:
    # PRECISION: 18 digits total, 2 after decimal.
    return mapped_column(Numeric(18, 2), nullable=False, **kw)


# =====================================================
# MODELS
# =====================================================

class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Phone number or username
    identity: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    role: Mapped[Role] = mapped_column(
        Enum(Role, name="account_role"),
        nullable=False,
        default=Role.PLAYER,
    )

    balance: Mapped[Decimal] = _money(default=ZERO)
    demo_balance: Mapped[Decimal] = _money(default=DEMO_STARTING_BALANCE)
    total_deposited: Mapped[Decimal] = _money(default=ZERO)
    total_withdrawn: Mapped[Decimal] = _money(default=ZERO)

    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.now,
        onupdate=datetime.now,
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class Transaction(Base):
    """
    Immutable ledger record (append-only).
    Only ever deleted by history trimming, oldest first.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type"),
        nullable=False,
    )

    # Signed amount: -10.00 for bet, +20.00 for win
    amount: Mapped[Decimal] = _money()
    balance_after: Mapped[Decimal] = _money()

    multiplier: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    room: Mapped[str | None] = mapped_column(String(64), nullable=True)
    round_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    note: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_demo: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.now)

    account: Mapped[Account] = relationship(back_populates="transactions")


class House(Base):
    """Single-row treasury aggregate (id = 1)."""

    __tablename__ = "house"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    balance: Mapped[Decimal] = _money()
    total_profit: Mapped[Decimal] = _money(default=ZERO)
    total_payouts: Mapped[Decimal] = _money(default=ZERO)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.now,
        onupdate=datetime.now,
    )


class HouseSnapshotRow(Base):
    """Bounded balance series for reporting."""

    __tablename__ = "house_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    balance: Mapped[Decimal] = _money()
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.now)


class HouseEntry(Base):
    """Every treasury movement, with the balance it produced."""

    __tablename__ = "house_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[HouseEntryType] = mapped_column(
        Enum(HouseEntryType, name="house_entry_type"),
        nullable=False,
    )
    amount: Mapped[Decimal] = _money()
    balance_after: Mapped[Decimal] = _money()
    round_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    note: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.now)


class RoundLog(Base):
    __tablename__ = "round_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    round_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    room: Mapped[str] = mapped_column(String(32), nullable=False)

    # Realized value players saw; differs from target only on force-crash
    crash_point: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    target_crash: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    edge: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)

    round_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    server_seed: Mapped[str] = mapped_column(String(128), nullable=False)
    client_seed: Mapped[str] = mapped_column(String(128), nullable=False)
    nonce: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[RoundSource] = mapped_column(
        Enum(RoundSource, name="round_source"),
        nullable=False,
    )
    forced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_demo: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    bet_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_staked: Mapped[Decimal] = _money(default=ZERO)
    total_paid: Mapped[Decimal] = _money(default=ZERO)
    house_net: Mapped[Decimal] = _money(default=ZERO)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.now)


class SystemLog(Base):
    __tablename__ = "system_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="")
    severity: Mapped[Severity] = mapped_column(
        Enum(Severity, name="log_severity"),
        nullable=False,
        default=Severity.INFO,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.now)


class GameConfigRow(Base):
    """Single row (id = 1) holding GameConfig as JSON."""

    __tablename__ = "game_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.now,
        onupdate=datetime.now,
    )


# =====================================================
# STORE
# =====================================================

def _deep_merge(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class LedgerStore:
    """
    Persistent ledger. Constructed once at process start and handed to the
    engines and the admin console; nothing reaches it through globals.

    apply() is the only way an account balance moves during play.
    """

    def __init__(self, database_url: str = DATABASE_URL, echo: bool = DB_ECHO) -> None:
        self.database_url = database_url
        self._engine = create_async_engine(
            database_url,
            echo=echo,
            future=True,
            # SSL is critical for Postgres in production
            connect_args={"ssl": "require"} if "postgresql" in database_url else {},
        )
        self._sessions = async_sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
        )

    # =====================================================
    # LIFECYCLE
    # =====================================================

    async def init(self) -> None:
        """
        Creates all tables and the fixed rows (root admin, house, config).
        Safe to run on every startup.
        """
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with self._transaction() as session:
            await self._ensure_fixed_rows(session)

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._sessions() as session:
            async with session.begin():
                yield session

    async def _ensure_fixed_rows(self, session: AsyncSession) -> None:
        root = await self._find_account(session, ROOT_IDENTITY)
        if root is None:
            session.add(Account(
                identity=ROOT_IDENTITY,
                role=Role.ADMIN,
                balance=ZERO,
                demo_balance=ZERO,
            ))
        elif root.role != Role.ADMIN:
            root.role = Role.ADMIN

        if await session.get(House, 1) is None:
            session.add(House(id=1, balance=HOUSE_STARTING_BALANCE))
            session.add(HouseSnapshotRow(balance=HOUSE_STARTING_BALANCE))

        if await session.get(GameConfigRow, 1) is None:
            session.add(GameConfigRow(id=1, payload=GameConfig().model_dump_json()))

    # =====================================================
    # ACCOUNTS
    # =====================================================

    async def _find_account(
        self,
        session: AsyncSession,
        identity: str,
        for_update: bool = False,
    ) -> Optional[Account]:
        stmt = select(Account).where(Account.identity == identity)
        if for_update:
            # Only works on Postgres/MySQL, ignored on SQLite
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _require_account(
        self,
        session: AsyncSession,
        identity: str,
        for_update: bool = False,
    ) -> Account:
        account = await self._find_account(session, identity, for_update)
        if account is None:
            raise AccountNotFoundError(f"Account not found: {identity}")
        return account

    async def create_account(
        self,
        identity: str,
        role: Role = Role.PLAYER,
        balance: Decimal = ZERO,
        demo_balance: Decimal = DEMO_STARTING_BALANCE,
    ) -> AccountSnapshot:
        identity = identity.strip()
        if not identity:
            raise ValueError("Identity must not be empty")
        try:
            async with self._transaction() as session:
                account = Account(
                    identity=identity,
                    role=role,
                    balance=safe_decimal(balance),
                    demo_balance=safe_decimal(demo_balance),
                )
                session.add(account)
                await session.flush()
                return AccountSnapshot.model_validate(account)
        except IntegrityError:
            raise AccountExistsError(f"Account already exists: {identity}") from None

    async def get_or_create_account(self, identity: str) -> AccountSnapshot:
        """
        Fetches an account or creates a player with default wallets.
        """
        try:
            return await self.get_account(identity)
        except AccountNotFoundError:
            pass
        try:
            return await self.create_account(identity)
        except AccountExistsError:
            # Created in parallel
            return await self.get_account(identity)

    async def get_account(self, identity: str) -> AccountSnapshot:
        async with self._transaction() as session:
            account = await self._require_account(session, identity)
            return AccountSnapshot.model_validate(account)

    async def get_all_accounts(self) -> List[AccountSnapshot]:
        async with self._transaction() as session:
            result = await session.execute(select(Account).order_by(Account.id))
            return [AccountSnapshot.model_validate(a) for a in result.scalars()]

    async def get_transactions(
        self,
        identity: str,
        limit: int = ACCOUNT_HISTORY_LIMIT,
    ) -> List[TransactionRecord]:
        """Most recent first."""
        async with self._transaction() as session:
            account = await self._require_account(session, identity)
            result = await session.execute(
                select(Transaction)
                .where(Transaction.account_id == account.id)
                .order_by(Transaction.id.desc())
                .limit(limit)
            )
            return [TransactionRecord.model_validate(t) for t in result.scalars()]

    # =====================================================
    # BALANCE MUTATION
    # =====================================================

    async def apply(
        self,
        identity: str,
        amount: Decimal,
        tx_type: TransactionType,
        *,
        demo: bool = False,
        multiplier: Optional[Decimal] = None,
        room: Optional[str] = None,
        round_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Decimal:
        """
        Atomic wallet update + immutable ledger entry.

        Args:
            amount: signed change. Negative values are debits and are
                    rejected for banned accounts, for frozen real wallets
                    and whenever the wallet would go below zero.
            demo:   act on the demo wallet instead of the real one.

        Returns:
            The wallet balance after the change.
        """
        amount = safe_decimal(amount).quantize(CENT)
        try:
            async with self._transaction() as session:
                account = await self._require_account(session, identity, for_update=True)

                if amount < 0:
                    if account.is_banned:
                        raise AccountBannedError(f"Account {identity} is banned")
                    if account.is_frozen and not demo:
                        raise AccountFrozenError(f"Account {identity} funds are frozen")

                current = account.demo_balance if demo else account.balance
                new_balance = current + amount
                if new_balance < 0:
                    raise InsufficientFundsError(
                        f"Insufficient balance: {format_balance(current)} available"
                    )

                if demo:
                    account.demo_balance = new_balance
                else:
                    account.balance = new_balance
                    if tx_type == TransactionType.DEPOSIT:
                        account.total_deposited += amount
                    elif tx_type == TransactionType.WITHDRAW:
                        account.total_withdrawn += abs(amount)

                self._append_transaction(
                    session, account, tx_type, amount, new_balance,
                    demo=demo, multiplier=multiplier, room=room,
                    round_id=round_id, note=note,
                )
                await session.flush()
                await self._trim_history(session, account.id)
                return new_balance
        except (AccountFrozenError, AccountBannedError) as exc:
            logger.warning(f"Debit blocked for {identity}: {exc}")
            await self.log_system_action(
                "system", "DEBIT_BLOCKED", f"{identity}: {exc}", Severity.WARNING
            )
            raise

    def _append_transaction(
        self,
        session: AsyncSession,
        account: Account,
        tx_type: TransactionType,
        amount: Decimal,
        balance_after: Decimal,
        **extra: Any,
    ) -> None:
        session.add(Transaction(
            account_id=account.id,
            type=tx_type,
            amount=amount,
            balance_after=balance_after,
            multiplier=extra.get("multiplier"),
            room=extra.get("room"),
            round_id=extra.get("round_id"),
            note=extra.get("note"),
            is_demo=extra.get("demo", False),
        ))

    async def _trim_history(self, session: AsyncSession, account_id: int) -> None:
        stale = (
            select(Transaction.id)
            .where(Transaction.account_id == account_id)
            .order_by(Transaction.id.desc())
            .offset(ACCOUNT_HISTORY_LIMIT)
        )
        await session.execute(
            delete(Transaction)
            .where(Transaction.id.in_(stale))
            .execution_options(synchronize_session=False)
        )

    async def deposit(self, identity: str, amount: Decimal, method: str = "MPESA") -> Decimal:
        """Simulated gateway deposit into the real wallet."""
        amount = safe_decimal(amount)
        if amount <= 0:
            raise ValueError("Deposit must be positive")
        return await self.apply(
            identity, amount, TransactionType.DEPOSIT, note=f"{method} deposit"
        )

    async def withdraw(self, identity: str, amount: Decimal, method: str = "MPESA") -> Decimal:
        """Simulated gateway withdrawal from the real wallet."""
        amount = safe_decimal(amount)
        if amount <= 0:
            raise ValueError("Withdrawal must be positive")
        return await self.apply(
            identity, -amount, TransactionType.WITHDRAW, note=f"{method} withdrawal"
        )

    # =====================================================
    # ADMIN ACCOUNT ACTIONS
    # =====================================================

    async def set_balance(self, identity: str, amount: Decimal, actor: str) -> Decimal:
        """
        Overwrites the real wallet. Bypasses delta validation but records the
        observed delta as admin_adjust so the trail still adds up.
        """
        amount = safe_decimal(amount).quantize(CENT)
        if amount < 0:
            raise ValueError("Balance cannot be negative")
        async with self._transaction() as session:
            account = await self._require_account(session, identity, for_update=True)
            delta = amount - account.balance
            account.balance = amount
            self._append_transaction(
                session, account, TransactionType.ADMIN_ADJUST, delta, amount,
                note="Admin manual adjustment",
            )
            await self._add_system_log(
                session, actor, "BALANCE_ADJUST",
                f"Set balance for {identity} to {format_balance(amount)} (delta {format_balance(delta)})",
            )
            await session.flush()
            await self._trim_history(session, account.id)
            return amount

    def _protect_root(self, identity: str) -> None:
        if identity == ROOT_IDENTITY:
            raise AuthorizationError("Root account is protected")

    async def set_frozen(self, identity: str, status: bool, actor: str) -> AccountSnapshot:
        self._protect_root(identity)
        async with self._transaction() as session:
            account = await self._require_account(session, identity, for_update=True)
            account.is_frozen = status
            await self._add_system_log(
                session, actor, "FREEZE_FUNDS" if status else "UNFREEZE_FUNDS", f"User {identity}"
            )
            await session.flush()
            return AccountSnapshot.model_validate(account)

    async def set_banned(self, identity: str, status: bool, actor: str) -> AccountSnapshot:
        self._protect_root(identity)
        async with self._transaction() as session:
            account = await self._require_account(session, identity, for_update=True)
            account.is_banned = status
            await self._add_system_log(
                session, actor, "BAN_USER" if status else "UNBAN_USER", f"User {identity}"
            )
            await session.flush()
            return AccountSnapshot.model_validate(account)

    async def delete_account(self, identity: str, actor: str) -> None:
        self._protect_root(identity)
        async with self._transaction() as session:
            account = await self._require_account(session, identity)
            await session.delete(account)
            await self._add_system_log(
                session, actor, "DELETE_USER", f"Deleted user {identity}", Severity.CRITICAL
            )

    # =====================================================
    # HOUSE TREASURY
    # =====================================================

    async def _house(self, session: AsyncSession) -> House:
        result = await session.execute(select(House).where(House.id == 1).with_for_update())
        return result.scalar_one()

    async def _move_house(
        self,
        session: AsyncSession,
        house: House,
        amount: Decimal,
        entry_type: HouseEntryType,
        round_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> None:
        house.balance += amount
        session.add(HouseEntry(
            type=entry_type,
            amount=amount,
            balance_after=house.balance,
            round_id=round_id,
            note=note,
        ))
        session.add(HouseSnapshotRow(balance=house.balance))
        await session.flush()
        stale = (
            select(HouseSnapshotRow.id)
            .order_by(HouseSnapshotRow.id.desc())
            .offset(HOUSE_SNAPSHOT_LIMIT)
        )
        await session.execute(
            delete(HouseSnapshotRow)
            .where(HouseSnapshotRow.id.in_(stale))
            .execution_options(synchronize_session=False)
        )

    async def get_house(self) -> HouseSnapshot:
        async with self._transaction() as session:
            house = await session.get(House, 1)
            result = await session.execute(select(HouseSnapshotRow).order_by(HouseSnapshotRow.id))
            return HouseSnapshot(
                balance=house.balance,
                total_profit=house.total_profit,
                total_payouts=house.total_payouts,
                profit_history=[(row.created_at, row.balance) for row in result.scalars()],
            )

    async def get_house_entries(self, limit: int = 100) -> List[HouseEntryRecord]:
        """Most recent first."""
        async with self._transaction() as session:
            result = await session.execute(
                select(HouseEntry).order_by(HouseEntry.id.desc()).limit(limit)
            )
            return [HouseEntryRecord.model_validate(e) for e in result.scalars()]

    async def house_deposit(self, amount: Decimal, actor: str) -> Decimal:
        amount = safe_decimal(amount).quantize(CENT)
        if amount <= 0:
            raise ValueError("Deposit must be positive")
        async with self._transaction() as session:
            house = await self._house(session)
            await self._move_house(session, house, amount, HouseEntryType.HOUSE_DEPOSIT,
                                   note=f"Deposit by {actor}")
            await self._add_system_log(session, actor, "HOUSE_DEPOSIT", f"Deposited {format_balance(amount)}")
            return house.balance

    async def house_withdraw(
        self,
        amount: Decimal,
        actor: str,
        method: str = "MPESA",
        destination: str = "",
    ) -> Decimal:
        amount = safe_decimal(amount).quantize(CENT)
        if amount <= 0:
            raise ValueError("Withdrawal must be positive")
        async with self._transaction() as session:
            house = await self._house(session)
            if house.balance < amount:
                raise HouseFundsError("Insufficient House Funds")
            await self._move_house(session, house, -amount, HouseEntryType.HOUSE_WITHDRAW,
                                   note=f"{method} to {destination}".strip())
            await self._add_system_log(
                session, actor, "HOUSE_WITHDRAW",
                f"Withdrew {format_balance(amount)} via {method} to {destination}",
            )
            return house.balance

    # =====================================================
    # ROUNDS
    # =====================================================

    async def record_round(
        self,
        record: RoundRecord,
        player_losses: Decimal,
        player_wins: Decimal,
    ) -> None:
        """
        Archives a settled round and applies its net result to the treasury
        in one transaction. Demo rounds are archived only.
        """
        async with self._transaction() as session:
            session.add(RoundLog(**record.model_dump(exclude={"created_at"})))

            if not record.is_demo:
                net_change = player_losses - player_wins
                house = await self._house(session)
                if net_change > 0:
                    house.total_profit += net_change
                elif net_change < 0:
                    house.total_payouts += -net_change
                await self._move_house(session, house, net_change, HouseEntryType.ROUND,
                                       round_id=record.round_id)

            await session.flush()
            stale = select(RoundLog.id).order_by(RoundLog.id.desc()).offset(ROUND_LOG_LIMIT)
            await session.execute(
                delete(RoundLog)
                .where(RoundLog.id.in_(stale))
                .execution_options(synchronize_session=False)
            )

    async def get_round_history(
        self,
        limit: int = 50,
        room: Optional[str] = None,
    ) -> List[RoundRecord]:
        """Most recent first."""
        async with self._transaction() as session:
            stmt = select(RoundLog).order_by(RoundLog.id.desc()).limit(limit)
            if room is not None:
                stmt = stmt.where(RoundLog.room == room)
            result = await session.execute(stmt)
            return [RoundRecord.model_validate(r) for r in result.scalars()]

    async def count_rounds(self, room: Optional[str] = None) -> int:
        async with self._transaction() as session:
            stmt = select(func.count(RoundLog.id))
            if room is not None:
                stmt = stmt.where(RoundLog.room == room)
            return (await session.execute(stmt)).scalar_one()

    # =====================================================
    # GAME CONFIG
    # =====================================================

    async def get_game_config(self) -> GameConfig:
        """
        Current config. A missing or unreadable row yields the defaults,
        never an exception.
        """
        async with self._transaction() as session:
            row = await session.get(GameConfigRow, 1)
        if row is None:
            logger.warning("Game config row missing, using defaults")
            return GameConfig()
        try:
            return GameConfig.model_validate_json(row.payload)
        except ValidationError as exc:
            logger.warning(f"Stored game config is malformed, using defaults: {exc}")
            return GameConfig()

    async def update_game_config(self, changes: Dict[str, Any], actor: str) -> GameConfig:
        """
        Merges `changes` (nested `security` merged key by key), validates,
        writes immediately. Raises pydantic's ValidationError (a ValueError)
        on bad values.
        """
        current = await self.get_game_config()
        merged = _deep_merge(current.model_dump(mode="json"), changes)
        config = GameConfig.model_validate(merged)
        async with self._transaction() as session:
            row = await session.get(GameConfigRow, 1)
            if row is None:
                row = GameConfigRow(id=1, payload="")
                session.add(row)
            row.payload = config.model_dump_json()
            await self._add_system_log(
                session, actor, "CONFIG_UPDATE",
                f"Updated: {json.dumps(changes, default=str, sort_keys=True)}",
                Severity.WARNING,
            )
        return config

    # =====================================================
    # SYSTEM LOG
    # =====================================================

    async def _add_system_log(
        self,
        session: AsyncSession,
        actor: str,
        action: str,
        details: str,
        severity: Severity = Severity.INFO,
    ) -> None:
        """Append inside the caller's transaction and keep the newest SYSTEM_LOG_LIMIT rows."""
        session.add(SystemLog(actor=actor, action=action, details=details, severity=severity))
        await session.flush()
        stale = select(SystemLog.id).order_by(SystemLog.id.desc()).offset(SYSTEM_LOG_LIMIT)
        await session.execute(
            delete(SystemLog)
            .where(SystemLog.id.in_(stale))
            .execution_options(synchronize_session=False)
        )

    async def log_system_action(
        self,
        actor: str,
        action: str,
        details: str,
        severity: Severity = Severity.INFO,
    ) -> None:
        async with self._transaction() as session:
            await self._add_system_log(session, actor, action, details, severity)

    async def get_system_logs(self, limit: int = SYSTEM_LOG_LIMIT) -> List[SystemLogRecord]:
        """Most recent first."""
        async with self._transaction() as session:
            result = await session.execute(
                select(SystemLog).order_by(SystemLog.id.desc()).limit(limit)
            )
            return [SystemLogRecord.model_validate(s) for s in result.scalars()]

    # =====================================================
    # BACKUP
    # =====================================================

    async def export_database(self, actor: str = ROOT_IDENTITY) -> str:
        house = await self.get_house()
        config = await self.get_game_config()
        async with self._transaction() as session:
            accounts = (await session.execute(select(Account).order_by(Account.id))).scalars().all()
            account_dumps = [
                AccountBackup(
                    **AccountSnapshot.model_validate(a).model_dump(),
                    history=[
                        TransactionRecord.model_validate(t)
                        for t in sorted(a.transactions, key=lambda t: t.id)
                    ],
                )
                for a in accounts
            ]
            entries = (await session.execute(select(HouseEntry).order_by(HouseEntry.id))).scalars()
            rounds = (await session.execute(select(RoundLog).order_by(RoundLog.id))).scalars()
            logs = (await session.execute(select(SystemLog).order_by(SystemLog.id))).scalars()

            payload = BackupPayload(
                exported_at=datetime.now(),
                accounts=account_dumps,
                house=house,
                house_entries=[HouseEntryRecord.model_validate(e) for e in entries],
                config=config,
                round_history=[RoundRecord.model_validate(r) for r in rounds],
                system_logs=[SystemLogRecord.model_validate(s) for s in logs],
            )

        await self.log_system_action(actor, "DB_EXPORT", "Database exported")
        return payload.model_dump_json(indent=2)

    async def import_database(self, raw: str, actor: str = ROOT_IDENTITY) -> None:
        """
        Replaces every table with the contents of an export. All or nothing.
        """
        try:
            payload = BackupPayload.model_validate_json(raw)
        except ValidationError as exc:
            raise BackupError(f"Invalid backup: {exc.error_count()} problem(s)") from exc

        async with self._transaction() as session:
            for model in (Transaction, Account, HouseSnapshotRow, HouseEntry,
                          House, RoundLog, SystemLog, GameConfigRow):
                await session.execute(delete(model).execution_options(synchronize_session=False))

            for acc in payload.accounts:
                account = Account(**acc.model_dump(exclude={"history"}))
                session.add(account)
                await session.flush()
                for tx in sorted(acc.history, key=lambda t: t.id):
                    session.add(Transaction(account_id=account.id, **tx.model_dump(exclude={"id"})))

            house = payload.house
            session.add(House(
                id=1,
                balance=house.balance,
                total_profit=house.total_profit,
                total_payouts=house.total_payouts,
            ))
            for created_at, balance in house.profit_history:
                session.add(HouseSnapshotRow(balance=balance, created_at=created_at))
            for entry in payload.house_entries:
                session.add(HouseEntry(**entry.model_dump(exclude={"id"})))
            for record in payload.round_history:
                session.add(RoundLog(**record.model_dump(exclude_none=True)))
            for log in payload.system_logs:
                session.add(SystemLog(**log.model_dump(exclude={"id"})))
            session.add(GameConfigRow(id=1, payload=payload.config.model_dump_json()))

            await session.flush()
            await self._ensure_fixed_rows(session)
            await self._add_system_log(
                session, actor, "DB_IMPORT", "Database imported/restored", Severity.CRITICAL
            )
        logger.warning(f"Database restored from backup by {actor}")
