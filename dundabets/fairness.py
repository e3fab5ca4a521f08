# fairness.py
"""
Randomness & Provable Fairness

Responsibilities:
- Resolve the house edge for a room from GameConfig (with safe fallback)
- Derive crash points from HMAC_SHA256(server_seed, "client_seed:nonce")
- Publish a commitment before the round, reveal the seed after it
- Hold the single-use admin override for the next round

Verification formula (what players can recompute):

    h = HMAC_SHA256(server_seed, f"{client_seed}:{nonce}")
    r = int(h[:13], 16) / 2**52
    crash = clamp(floor((1 - edge) / (1 - r) * 100) / 100, 1.00, MAX_CRASH)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any

from errors import BetError
from schemas import GameConfig, RoundSource
from settings import (
    DEFAULT_CLIENT_SEED,
    DEFAULT_HOUSE_EDGE,
    MAX_CRASH,
    MIN_CRASH,
    Room,
)
from utils import (
    HASH_SLICE_HEX,
    clamp_decimal,
    generate_server_seed,
    hash_sha256,
    hex_to_unit,
    hmac_sha256,
    safe_decimal,
    truncate_cents,
)

logger = logging.getLogger("dundabets.fairness")

ONE = Decimal("1")

# Demo bias buckets
DEMO_SHORT_PROB = Decimal("0.5")
DEMO_SHORT_MIN, DEMO_SHORT_SPAN = Decimal("1.50"), Decimal("3.50")
DEMO_HYPE_PROB = Decimal("0.05")
DEMO_HYPE_MIN, DEMO_HYPE_SPAN = Decimal("10.00"), Decimal("90.00")

ADMIN_HASH_SUFFIX = "_ADMIN"


# =====================================================
# HOUSE EDGE
# =====================================================

def resolve_house_edge(config: Optional[GameConfig], room: Room) -> Decimal:
    """
    Edge for the next draw in `room`.

    RTP 96 -> 0.04. A room's own edge replaces the RTP-derived one, and a
    disabled edge always wins. Anything unusable falls back to
    DEFAULT_HOUSE_EDGE instead of failing the round.
    """
    if config is None:
        logger.warning("GameConfig unavailable, using default house edge")
        return DEFAULT_HOUSE_EDGE

    if not config.house_edge_enabled:
        return Decimal("0")

    if room.house_edge is not None:
        edge = room.house_edge
    else:
        try:
            edge = (Decimal("100") - safe_decimal(config.rtp)) / Decimal("100")
        except ValueError:
            logger.warning(f"Malformed RTP {config.rtp!r}, using default house edge")
            return DEFAULT_HOUSE_EDGE

    if not (Decimal("0") <= edge < ONE):
        logger.warning(f"House edge {edge} out of range, using default")
        return DEFAULT_HOUSE_EDGE
    return edge


# =====================================================
# CRASH POINT MATH
# =====================================================

def crash_point_from_uniform(r: Decimal, edge: Decimal) -> Decimal:
    """
    Inverse-uniform crash curve: floor((1 - e) / (1 - r) * 100) / 100,
    clamped to [MIN_CRASH, MAX_CRASH].
    """
    r = Decimal(r)
    edge = Decimal(edge)
    if not (Decimal("0") <= r < ONE):
        raise ValueError(f"r must be in [0, 1), got {r}")
    if not (Decimal("0") <= edge < ONE):
        raise ValueError(f"edge must be in [0, 1), got {edge}")

    raw = (ONE - edge) / (ONE - r)
    return clamp_decimal(truncate_cents(raw), MIN_CRASH, MAX_CRASH)


def crash_point_from_hash(hash_hex: str, edge: Decimal) -> Decimal:
    return crash_point_from_uniform(hex_to_unit(hash_hex), edge)


def demo_crash_point_from_hash(hash_hex: str) -> Decimal:
    """
    Demo tables: mostly short 1.50x-5.00x rounds, a 5% chance of a
    10x-100x "hype" round, otherwise the zero-edge curve.
    """
    r = hex_to_unit(hash_hex)
    u = hex_to_unit(hash_hex, offset=HASH_SLICE_HEX)

    if r < DEMO_SHORT_PROB:
        return truncate_cents(DEMO_SHORT_MIN + u * DEMO_SHORT_SPAN)
    if u < DEMO_HYPE_PROB:
        # Re-spread u over the hype bucket so the bucket is uniform
        return truncate_cents(DEMO_HYPE_MIN + (u / DEMO_HYPE_PROB) * DEMO_HYPE_SPAN)
    return crash_point_from_uniform(r, Decimal("0"))


def round_message(client_seed: str, nonce: int) -> str:
    return f"{client_seed}:{nonce}"


def derive_crash_point(
    server_seed: str,
    client_seed: str,
    nonce: int,
    edge: Decimal,
    demo: bool = False,
) -> Decimal:
    """Deterministic: the same inputs always give the same crash point."""
    digest = hmac_sha256(server_seed, round_message(client_seed, nonce))
    if demo:
        return demo_crash_point_from_hash(digest)
    return crash_point_from_hash(digest, edge)


def commitment_hash(server_seed: str, admin: bool = False) -> str:
    published = "sha256:" + hash_sha256(server_seed)
    return published + ADMIN_HASH_SUFFIX if admin else published


def verify_round(
    server_seed: str,
    client_seed: str,
    nonce: int,
    edge: Decimal,
    crash_point: Decimal,
    round_hash: Optional[str] = None,
    demo: bool = False,
) -> bool:
    """
    True if the revealed seed matches the published hash (when given) and
    reproduces `crash_point`. Admin-overridden rounds never verify.
    """
    if round_hash is not None:
        if round_hash.endswith(ADMIN_HASH_SUFFIX):
            return False
        if commitment_hash(server_seed) != round_hash:
            return False
    expected = derive_crash_point(server_seed, client_seed, nonce, edge, demo=demo)
    return expected == Decimal(crash_point)


# =====================================================
# ADMIN OVERRIDE
# =====================================================

class PendingOverride:
    """
    Single-slot holder for an admin-staged crash value.

    put() replaces whatever is staged; take() returns and clears it in one
    step, so no two rounds can observe the same override. Both are plain
    synchronous methods: under asyncio nothing can interleave inside them.
    """

    def __init__(self) -> None:
        self._value: Optional[Decimal] = None

    def put(self, value: Decimal) -> None:
        value = safe_decimal(value)
        if not (MIN_CRASH <= value <= MAX_CRASH):
            raise BetError(f"Override must be between {MIN_CRASH} and {MAX_CRASH}")
        self._value = truncate_cents(value)

    def take(self) -> Optional[Decimal]:
        value, self._value = self._value, None
        return value

    def peek(self) -> Optional[Decimal]:
        return self._value


# =====================================================
# PER-ROUND DRAW
# =====================================================

@dataclass(frozen=True)
class Commitment:
    round_hash: str
    server_seed: str
    client_seed: str
    nonce: int
    source: RoundSource

    def public(self) -> Dict[str, Any]:
        """Safe to show while the round is live."""
        return {
            "hash": self.round_hash,
            "client_seed": self.client_seed,
            "nonce": self.nonce,
        }

    def reveal(self) -> Dict[str, Any]:
        return {**self.public(), "server_seed": self.server_seed, "source": self.source.value}


@dataclass(frozen=True)
class CrashDraw:
    crash_point: Decimal
    edge: Decimal
    commitment: Commitment


class CrashPointGenerator:
    """
    Produces one CrashDraw per round. Owns the client seed, the nonce
    counter and the admin override slot for a single engine.
    """

    def __init__(
        self,
        client_seed: str = DEFAULT_CLIENT_SEED,
        nonce: int = 0,
        demo: bool = False,
    ) -> None:
        self.client_seed = client_seed
        self.nonce = nonce
        self.demo = demo
        self.override = PendingOverride()

    def set_client_seed(self, client_seed: str) -> None:
        client_seed = client_seed.strip()
        if not client_seed:
            raise BetError("Client seed must not be empty")
        self.client_seed = client_seed

    def next_round(self, config: Optional[GameConfig], room: Room) -> CrashDraw:
        self.nonce += 1
        server_seed = generate_server_seed()
        edge = resolve_house_edge(config, room)

        staged = self.override.take()
        if staged is not None:
            logger.warning(f"Admin override consumed for nonce {self.nonce}")
            return CrashDraw(
                crash_point=staged,
                edge=edge,
                commitment=Commitment(
                    round_hash=commitment_hash(server_seed, admin=True),
                    server_seed=server_seed,
                    client_seed=self.client_seed,
                    nonce=self.nonce,
                    source=RoundSource.ADMIN,
                ),
            )

        crash_point = derive_crash_point(
            server_seed, self.client_seed, self.nonce, edge, demo=self.demo
        )
        return CrashDraw(
            crash_point=crash_point,
            edge=edge,
            commitment=Commitment(
                round_hash=commitment_hash(server_seed),
                server_seed=server_seed,
                client_seed=self.client_seed,
                nonce=self.nonce,
                source=RoundSource.DEMO if self.demo else RoundSource.FAIR,
            ),
        )
