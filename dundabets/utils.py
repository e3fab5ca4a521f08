# utils.py
"""
Utility functions for DundaBets Crash

Includes:
- Cryptographic & Provably Fair primitives (seeds, HMAC, SHA-256)
- Decimal helpers (truncation, clamping, safe parsing)
- Number / time formatting for ledger notes and the CLI
"""

from __future__ import annotations

import secrets
import hashlib
import hmac
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_FLOOR
from typing import Union, Optional

logger = logging.getLogger("dundabets.utils")

NumberType = Union[float, Decimal, int, str]

# 52 bits = 13 hex digits, the widest slice a double can hold exactly
HASH_SLICE_HEX = 13
HASH_SLICE_SPACE = Decimal(2 ** 52)

CENT = Decimal("0.01")
UNIT = Decimal("1")

# =========================
# RANDOM & PROVABLY FAIR
# =========================

def generate_server_seed(length: int = 32) -> str:
    """Fresh per-round secret (hex). Revealed only after the round crashes."""
    return secrets.token_hex(length)


def generate_unique_id(length: int = 8) -> str:
    """Short hex id for rounds and audit rows."""
    return secrets.token_hex(length)


def hmac_sha256(key: str, message: str) -> str:
    """HMAC-SHA256(key, message) as lowercase hex. key = server seed, message = "client_seed:nonce"."""
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_sha256(value: str) -> str:
    """SHA-256 hex digest; the published commitment to a server seed."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hex_to_unit(hash_hex: str, offset: int = 0) -> Decimal:
    """
    Map 13 hex digits of a hash, starting at `offset`, onto [0, 1).
    """
    chunk = hash_hex[offset:offset + HASH_SLICE_HEX]
    if len(chunk) != HASH_SLICE_HEX:
        raise ValueError(f"Hash too short for offset {offset}")
    return Decimal(int(chunk, 16)) / HASH_SLICE_SPACE


# =========================
# DECIMAL HELPERS
# =========================

def truncate_cents(value: Decimal) -> Decimal:
    """floor(value * 100) / 100 for non-negative values."""
    return value.quantize(CENT, rounding=ROUND_DOWN)


def floor_units(value: Decimal) -> Decimal:
    """floor() to whole currency units."""
    return value.quantize(UNIT, rounding=ROUND_FLOOR)


def clamp_decimal(value: Decimal, min_value: Decimal, max_value: Decimal) -> Decimal:
    return max(min_value, min(value, max_value))


def safe_decimal(value: NumberType, default: Optional[str] = None) -> Decimal:
    """
    Convert input to Decimal via str() so floats keep their printed value.
    Raises ValueError when no default is given and the value is not numeric.
    """
    try:
        result = Decimal(str(value))
        if not result.is_finite():
            raise InvalidOperation
        return result
    except (InvalidOperation, TypeError, ValueError):
        if default is None:
            raise ValueError(f"Not a number: {value!r}") from None
        logger.warning(f"Failed to convert {value!r} to Decimal, using default {default}")
        return Decimal(default)


# =========================
# FORMATTING
# =========================

def format_balance(amount: NumberType) -> str:
    """Two-decimal money string for ledger notes and logs ("0.00" on bad input)."""
    try:
        return f"{Decimal(str(amount)):.2f}"
    except (ValueError, TypeError, InvalidOperation):
        logger.warning(f"Cannot format {amount!r} as money")
        return "0.00"


def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    try:
        return f"x{Decimal(str(mult)):.2f}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"


def format_timestamp(ts: Optional[datetime] = None) -> str:
    """ISO timestamp, seconds precision. Defaults to now."""
    return (ts or datetime.now()).isoformat(timespec="seconds")
