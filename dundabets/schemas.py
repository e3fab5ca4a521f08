# schemas.py
"""
Pydantic schemas for runtime configuration and ledger snapshots.

GameConfig is the admin-editable rule set stored in the database.
The *Snapshot models are point-in-time, read-only views handed out by
LedgerStore so callers never hold live ORM rows.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =====================================================
# ENUMS
# =====================================================

class Role(str, enum.Enum):
    PLAYER = "player"
    ADMIN = "admin"


class TransactionType(str, enum.Enum):
    BET = "bet"
    WIN = "win"
    REFUND = "refund"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    ADMIN_ADJUST = "admin_adjust"
    # Treasury kinds are only read back from imported history;
    # live treasury moves are written as HouseEntry rows
    HOUSE_WITHDRAW = "house_withdraw"
    HOUSE_DEPOSIT = "house_deposit"


class HouseEntryType(str, enum.Enum):
    ROUND = "round"
    HOUSE_DEPOSIT = "house_deposit"
    HOUSE_WITHDRAW = "house_withdraw"


class Severity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RoundSource(str, enum.Enum):
    FAIR = "fair"       # HMAC derivation with house edge
    DEMO = "demo"       # HMAC derivation, demo bias
    ADMIN = "admin"     # staged override


# =====================================================
# GAME CONFIG
# =====================================================

class SecurityConfig(BaseModel):
    require_2fa: bool = False
    ip_whitelist: bool = False
    anti_fraud_ai: bool = True


class GameConfig(BaseModel):
    """Admin-editable rules, read on every bet and every crash draw."""
    maintenance_mode: bool = False
    rtp: Decimal = Field(Decimal("96"), gt=0, le=100)
    min_bet: Decimal = Field(Decimal("10"), gt=0)
    max_bet: Decimal = Field(Decimal("5000"), gt=0)
    max_profit_per_round: Decimal = Field(Decimal("1000000"), gt=0)
    house_edge_enabled: bool = True
    enable_chat: bool = True
    enable_demo: bool = True
    security: SecurityConfig = Field(default_factory=SecurityConfig)

    @field_validator("max_bet")
    @classmethod
    def _max_not_below_min(cls, v: Decimal, info) -> Decimal:
        min_bet = info.data.get("min_bet")
        if min_bet is not None and v < min_bet:
            raise ValueError("max_bet must be >= min_bet")
        return v


# =====================================================
# SNAPSHOTS
# =====================================================

class _Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)


class TransactionRecord(_Snapshot):
    id: int
    type: TransactionType
    amount: Decimal
    balance_after: Decimal
    multiplier: Optional[Decimal] = None
    room: Optional[str] = None
    round_id: Optional[str] = None
    note: Optional[str] = None
    is_demo: bool = False
    created_at: datetime


class AccountSnapshot(_Snapshot):
    identity: str
    role: Role
    balance: Decimal
    demo_balance: Decimal
    is_frozen: bool
    is_banned: bool
    total_deposited: Decimal
    total_withdrawn: Decimal
    created_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def wallet(self, demo: bool) -> Decimal:
        return self.demo_balance if demo else self.balance


class HouseSnapshot(_Snapshot):
    balance: Decimal
    total_profit: Decimal
    total_payouts: Decimal
    profit_history: list[tuple[datetime, Decimal]] = Field(default_factory=list)


class HouseEntryRecord(_Snapshot):
    id: int
    type: HouseEntryType
    amount: Decimal
    balance_after: Decimal
    round_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime


class RoundRecord(_Snapshot):
    round_id: str
    room: str
    crash_point: Decimal
    target_crash: Decimal
    edge: Decimal
    round_hash: str
    server_seed: str
    client_seed: str
    nonce: int
    source: RoundSource
    forced: bool = False
    is_demo: bool = False
    bet_count: int = 0
    total_staked: Decimal = Decimal("0")
    total_paid: Decimal = Decimal("0")
    house_net: Decimal = Decimal("0")
    created_at: Optional[datetime] = None


class SystemLogRecord(_Snapshot):
    id: int
    actor: str
    action: str
    details: str
    severity: Severity
    created_at: datetime


# =====================================================
# BACKUP
# =====================================================

class AccountBackup(AccountSnapshot):
    history: list[TransactionRecord] = Field(default_factory=list)


class BackupPayload(BaseModel):
    """Full export of the ledger, as written by LedgerStore.export_database()."""
    version: int = 1
    exported_at: datetime
    accounts: list[AccountBackup]
    house: HouseSnapshot
    house_entries: list[HouseEntryRecord] = Field(default_factory=list)
    config: GameConfig = Field(default_factory=GameConfig)
    round_history: list[RoundRecord] = Field(default_factory=list)
    system_logs: list[SystemLogRecord] = Field(default_factory=list)
