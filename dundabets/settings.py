# settings.py
"""
Runtime Settings – DundaBets Crash

Responsibilities:
- Environment driven constants (database, timing, economics)
- Room catalogue (min bet + house edge override per room)

Game rules that admins change at runtime (RTP, bet limits, maintenance)
live in the database as GameConfig, not here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

# =====================================================
# DATABASE
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./dundabets.db"
)

DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =====================================================
# ECONOMICS
# =====================================================

TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.20"))

# Used whenever the stored RTP is missing or produces an edge outside [0, 1)
DEFAULT_HOUSE_EDGE = Decimal(os.getenv("DEFAULT_HOUSE_EDGE", "0.04"))

MIN_CRASH = Decimal("1.00")
MAX_CRASH = Decimal(os.getenv("MAX_CRASH", "200000.00"))

HOUSE_STARTING_BALANCE = Decimal(os.getenv("HOUSE_STARTING_BALANCE", "500000"))
DEMO_STARTING_BALANCE = Decimal(os.getenv("DEMO_STARTING_BALANCE", "50000"))

# =====================================================
# ROUND TIMING
# =====================================================

# multiplier(t) = e^(GROWTH_RATE * t), t in seconds. 0.15 doubles in ~4.6s.
GROWTH_RATE = float(os.getenv("GROWTH_RATE", "0.15"))

IDLE_DURATION_SEC = float(os.getenv("IDLE_DURATION_SEC", "12"))
CRASH_DISPLAY_SEC = float(os.getenv("CRASH_DISPLAY_SEC", "3"))
# Shorter pause used when a join-in-progress lands on an already crashed round
JOIN_CRASH_DISPLAY_SEC = 2.0
TICK_SECONDS = float(os.getenv("TICK_SECONDS", "0.016"))

MAX_BET_SLOTS = 2

# =====================================================
# RETENTION
# =====================================================

ACCOUNT_HISTORY_LIMIT = 100
ROUND_LOG_LIMIT = 500
SYSTEM_LOG_LIMIT = 200
HOUSE_SNAPSHOT_LIMIT = 50

# =====================================================
# FAIRNESS
# =====================================================

DEFAULT_CLIENT_SEED = os.getenv(
    "DEFAULT_CLIENT_SEED",
    "0000000000000000000301e2c99a22f357947137f884f3780365735165839019",
)

ROOT_IDENTITY = "root"

# =====================================================
# ROOMS
# =====================================================


@dataclass(frozen=True)
class Room:
    id: str
    name: str
    min_bet: Decimal
    # None means "derive from GameConfig.rtp"
    house_edge: Optional[Decimal] = None


ROOMS: Dict[str, Room] = {
    "standard": Room("standard", "Standard Room", Decimal("10")),
    "vip": Room("vip", "VIP Lounge", Decimal("500"), Decimal("0.02")),
    "turbo": Room("turbo", "Turbo Room", Decimal("100"), Decimal("0.05")),
}

DEFAULT_ROOM = "standard"


def get_room(room_id: str) -> Room:
    try:
        return ROOMS[room_id]
    except KeyError:
        raise ValueError(f"Unknown room: {room_id}") from None
