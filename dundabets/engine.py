# engine.py
"""
Crash Game Engine – Production Grade

Responsibilities:
- Strict State Machine (IDLE -> FLYING -> CRASHED -> IDLE)
- Provably fair crash draw per round (fairness.py)
- Bet book: MAX_BET_SLOTS per account, escrowed stakes, auto / manual cash-out
- Exactly-once settlement per bet and per round
- Deadline timers evaluated by the same heartbeat that drives the flight

Time only enters through the injected `clock`; the multiplier is recomputed
from it on every tick, never accumulated.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from bots import BotCrowd
from db import LedgerStore
from errors import (
    AuthorizationError,
    BetError,
    ConsistencyError,
    LedgerError,
    StateError,
)
from fairness import CrashDraw, CrashPointGenerator
from schemas import GameConfig, RoundRecord, Severity, TransactionType
from settings import (
    CRASH_DISPLAY_SEC,
    DEFAULT_CLIENT_SEED,
    DEFAULT_ROOM,
    GROWTH_RATE,
    IDLE_DURATION_SEC,
    JOIN_CRASH_DISPLAY_SEC,
    MAX_BET_SLOTS,
    MAX_CRASH,
    TICK_SECONDS,
    Room,
    get_room,
)
from settlement import Payout, SettledBet, RoundTally, compute_payout, tally_round
from utils import format_multiplier, generate_unique_id, safe_decimal, truncate_cents

logger = logging.getLogger("dundabets.engine")

ONE = Decimal("1.00")
MIN_AUTO_CASHOUT = Decimal("1.01")
HISTORY_SIZE = 20

# Beyond this exponent the multiplier is past MAX_CRASH anyway
MAX_EXPONENT = math.log(float(MAX_CRASH)) + 1.0

Clock = Callable[[], float]


# =========================
# ENUMS
# =========================

class GameState(str, Enum):
    IDLE = "IDLE"       # Accepting bets, countdown running
    FLYING = "FLYING"   # Multiplier rising
    CRASHED = "CRASHED" # Settled, short display pause


# =========================
# MULTIPLIER CURVE
# =========================

def multiplier_at(elapsed: float) -> Decimal:
    """
    Pure function: seconds -> multiplier.
    Formula: e^(GROWTH_RATE * t), truncated to 2 decimals.
    """
    if elapsed <= 0:
        return ONE
    exponent = GROWTH_RATE * elapsed
    if exponent >= MAX_EXPONENT:
        return MAX_CRASH
    return truncate_cents(Decimal(math.exp(exponent)))


def elapsed_for_multiplier(multiplier: Decimal) -> float:
    """Inverse of multiplier_at: seconds of flight needed to reach `multiplier`."""
    return math.log(float(multiplier)) / GROWTH_RATE


# =========================
# DOMAIN MODELS
# =========================

BetKey = Tuple[str, int]


@dataclass
class Bet:
    account: str
    slot: int
    amount: Decimal
    demo: bool
    round_id: Optional[str] = None
    queued: bool = False
    placed_at: float = field(default_factory=time.time)

    # Outcome, written once
    cash_out_multiplier: Optional[Decimal] = None
    payout: Optional[Payout] = None

    @property
    def key(self) -> BetKey:
        return (self.account, self.slot)

    @property
    def settled(self) -> bool:
        return self.cash_out_multiplier is not None

    def settle(self, multiplier: Decimal, payout: Payout) -> None:
        if self.settled:
            raise ConsistencyError(f"Bet {self.key} already settled at {self.cash_out_multiplier}")
        self.cash_out_multiplier = multiplier
        self.payout = payout

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "slot": self.slot,
            "amount": float(self.amount),
            "round_id": self.round_id,
            "queued": self.queued,
            "cashed_out": self.settled,
            "multiplier": float(self.cash_out_multiplier) if self.cash_out_multiplier else None,
            "payout": float(self.payout.net) if self.payout else None,
            "tax": float(self.payout.tax) if self.payout else None,
        }


@dataclass
class GameRound:
    round_id: str
    draw: CrashDraw
    started_at: float
    config: GameConfig

    # Realized value set by force-crash; the drawn target never changes
    forced_crash: Optional[Decimal] = None
    crashed_at: Optional[float] = None

    @property
    def crash_point(self) -> Decimal:
        return self.draw.crash_point

    @property
    def effective_crash(self) -> Decimal:
        return self.forced_crash if self.forced_crash is not None else self.draw.crash_point


# =========================
# ENGINE CLASS
# =========================

class CrashEngine:
    """
    One table: a room, a wallet kind (real or demo) and a round loop.

    Every public coroutine takes `self._lock`, so a tick, a bet and a
    cash-out never interleave. Balances are only touched through the
    LedgerStore, after validation and before in-memory state changes.
    """

    def __init__(
        self,
        store: LedgerStore,
        room_id: str = DEFAULT_ROOM,
        demo: bool = False,
        clock: Clock = time.time,
        crowd: Optional[BotCrowd] = None,
        rng: Optional[random.Random] = None,
        client_seed: str = DEFAULT_CLIENT_SEED,
    ) -> None:
        self._store = store
        self._clock = clock
        self._lock = asyncio.Lock()
        self._rng = rng or random.Random()
        self._generator = CrashPointGenerator(client_seed=client_seed, demo=demo)
        self._crowd = crowd or BotCrowd(self._rng)

        self.room: Room = get_room(room_id)
        self.demo = demo
        self.phase = GameState.IDLE

        self._round: Optional[GameRound] = None
        self._last_round: Optional[GameRound] = None
        self._round_active = False
        self._pending_round_id = generate_unique_id()

        self._bets: Dict[BetKey, Bet] = {}
        self._queued: Dict[BetKey, Bet] = {}
        self._auto: Dict[BetKey, Decimal] = {}

        # Single timer slot: scheduling replaces, never stacks
        self._deadline: Optional[float] = None
        self._deadline_action: Optional[Callable[[float], Awaitable[None]]] = None

        self._history: Deque[Decimal] = deque(maxlen=HISTORY_SIZE)
        self._task: Optional[asyncio.Task] = None
        self._initialized = False

    # =====================================================
    # LIFECYCLE
    # =====================================================

    async def initialize(self) -> None:
        """Resume the nonce sequence and schedule the first take-off."""
        async with self._lock:
            if self._initialized:
                return
            self._generator.nonce = await self._store.count_rounds()
            config = await self._store.get_game_config()
            self._crowd.populate(self.min_bet(config))
            self._schedule(self._clock(), IDLE_DURATION_SEC, self._take_off)
            self._initialized = True
            logger.info(f"Engine ready: room={self.room.id} demo={self.demo}")

    async def start(self) -> None:
        await self.initialize()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except ConsistencyError:
                logger.critical("Settlement invariant violated, stopping engine", exc_info=True)
                raise
            except Exception:
                # Store failures leave the round retryable on the next tick
                logger.exception(f"Tick failed in room {self.room.id}")
            await asyncio.sleep(TICK_SECONDS)

    # =====================================================
    # TIMERS
    # =====================================================

    def _schedule(
        self,
        now: float,
        delay: float,
        action: Callable[[float], Awaitable[None]],
    ) -> None:
        self._deadline = now + delay
        self._deadline_action = action

    def _cancel_timer(self) -> None:
        self._deadline = None
        self._deadline_action = None

    # =====================================================
    # HEARTBEAT
    # =====================================================

    async def tick(self) -> Dict[str, Any]:
        """
        One frame: advance the flight or fire a due phase transition.
        Returns the public state after the frame.
        """
        async with self._lock:
            now = self._clock()
            if self.phase == GameState.FLYING:
                await self._advance_flight(now)
            elif self._deadline is not None and now >= self._deadline:
                action = self._deadline_action
                self._cancel_timer()
                await action(now)
            return self._snapshot(now)

    async def _advance_flight(self, now: float) -> None:
        rnd = self._round
        # One sample per tick, never above the crash value
        sample = min(multiplier_at(now - rnd.started_at), rnd.effective_crash)

        # Auto cash-outs run before crash detection: a threshold reached
        # in the crashing tick is a win
        for key, bet in list(self._bets.items()):
            threshold = self._auto.get(key)
            if threshold is None or bet.settled:
                continue
            if sample >= threshold:
                try:
                    await self._settle_bet(bet, sample)
                except LedgerError as e:
                    # The bet rides on as a loss; crash detection must still run
                    self._auto.pop(key, None)
                    logger.error(f"Auto cash-out for {bet.account} slot {bet.slot} failed: {e}")
                    await self._store.log_system_action(
                        "system", "AUTO_CASHOUT_FAILED",
                        f"Round {rnd.round_id}: {bet.account} slot {bet.slot} at "
                        f"{format_multiplier(sample)} ({type(e).__name__}: {e})",
                        Severity.CRITICAL,
                    )

        self._crowd.on_tick(sample)

        if sample >= rnd.effective_crash:
            await self._crash(now)

    # =====================================================
    # TRANSITIONS
    # =====================================================

    async def _take_off(
        self,
        now: float,
        elapsed: float = 0.0,
        draw: Optional[CrashDraw] = None,
    ) -> None:
        """IDLE -> FLYING"""
        config = await self._store.get_game_config()
        if draw is None:
            draw = self._generator.next_round(config, self.room)

        self._round = GameRound(
            round_id=self._pending_round_id,
            draw=draw,
            started_at=now - elapsed,
            config=config,
        )
        self._round_active = True
        self.phase = GameState.FLYING
        for bet in self._bets.values():
            bet.round_id = self._round.round_id
        self._crowd.new_round(self.min_bet(config))

        logger.info(
            f"Round {self._round.round_id} took off in {self.room.id} "
            f"(bets={len(self._bets)}, hash={draw.commitment.round_hash}, nonce={draw.commitment.nonce})"
        )

    async def _crash(self, now: float, display: float = CRASH_DISPLAY_SEC) -> Optional[RoundTally]:
        """
        FLYING -> CRASHED. Settles the round against the house exactly once.
        """
        if not self._round_active:
            return None
        self._round_active = False

        rnd = self._round
        crash_value = rnd.effective_crash
        book = list(self._bets.values())
        tally = tally_round(
            SettledBet(b.amount, b.payout.net if b.payout else None) for b in book
        )
        commitment = rnd.draw.commitment
        record = RoundRecord(
            round_id=rnd.round_id,
            room=self.room.id,
            crash_point=crash_value,
            target_crash=rnd.crash_point,
            edge=rnd.draw.edge,
            round_hash=commitment.round_hash,
            server_seed=commitment.server_seed,
            client_seed=commitment.client_seed,
            nonce=commitment.nonce,
            source=commitment.source,
            forced=rnd.forced_crash is not None,
            is_demo=self.demo,
            bet_count=tally.bet_count,
            total_staked=tally.total_staked,
            total_paid=tally.total_paid,
            house_net=Decimal("0") if self.demo else tally.house_net,
        )

        try:
            await self._store.record_round(record, tally.player_losses, tally.player_wins)
        except Exception:
            # Nothing was written; let the next tick settle this round again
            self._round_active = True
            raise

        rnd.crashed_at = now
        self.phase = GameState.CRASHED
        self._history.append(crash_value)
        self._last_round = rnd
        self._schedule(now, display, self._return_to_idle)

        logger.info(
            f"Round {rnd.round_id} crashed at {format_multiplier(crash_value)} "
            f"(source={commitment.source.value}, forced={record.forced}, house_net={record.house_net})"
        )
        return tally

    async def _return_to_idle(self, now: float) -> None:
        """CRASHED -> IDLE"""
        self._enter_idle(now, IDLE_DURATION_SEC)

    def _enter_idle(self, now: float, countdown: float) -> None:
        self.phase = GameState.IDLE
        self._round = None
        self._pending_round_id = generate_unique_id()

        # Clear the settled book; bets queued during the flight join this round
        self._bets = self._queued
        self._queued = {}
        for bet in self._bets.values():
            bet.queued = False
            bet.round_id = self._pending_round_id

        self._schedule(now, countdown, self._take_off)

    # =====================================================
    # SETTLEMENT
    # =====================================================

    async def _settle_bet(self, bet: Bet, multiplier: Decimal) -> Payout:
        rnd = self._round
        if rnd is None or self._bets.get(bet.key) is not bet or bet.round_id != rnd.round_id:
            raise ConsistencyError(f"Bet {bet.key} is not part of the current round")
        if bet.settled:
            raise ConsistencyError(f"Bet {bet.key} already settled")

        payout = compute_payout(
            bet.amount,
            multiplier,
            demo=bet.demo,
            max_profit=rnd.config.max_profit_per_round,
        )
        await self._store.apply(
            bet.account,
            payout.net,
            TransactionType.WIN,
            demo=bet.demo,
            multiplier=multiplier,
            room=self.room.name,
            round_id=rnd.round_id,
            note=f"win_{format_multiplier(multiplier)}",
        )
        bet.settle(multiplier, payout)

        logger.info(
            f"{bet.account} slot {bet.slot} cashed out at {format_multiplier(multiplier)} "
            f"(net={payout.net}, tax={payout.tax})"
        )
        return payout

    # =====================================================
    # LIMITS
    # =====================================================

    def min_bet(self, config: GameConfig) -> Decimal:
        return max(self.room.min_bet, config.min_bet)

    def bet_limits(self, config: GameConfig) -> Tuple[Decimal, Decimal]:
        return self.min_bet(config), config.max_bet

    def _check_slot(self, slot: int) -> None:
        if not isinstance(slot, int) or not (0 <= slot < MAX_BET_SLOTS):
            raise BetError(f"Slot must be between 0 and {MAX_BET_SLOTS - 1}")

    def _parse_amount(self, value: Any, label: str) -> Decimal:
        try:
            return safe_decimal(value)
        except ValueError:
            raise BetError(f"Invalid {label}: {value!r}") from None

    def _parse_auto(self, value: Any) -> Optional[Decimal]:
        if value is None:
            return None
        threshold = truncate_cents(self._parse_amount(value, "auto cash-out"))
        if threshold < MIN_AUTO_CASHOUT:
            raise BetError(f"Auto cash-out must be at least {MIN_AUTO_CASHOUT}")
        return threshold

    # =====================================================
    # BETTING ACTIONS
    # =====================================================

    async def place_bet(
        self,
        account: str,
        slot: int,
        amount: Any,
        auto_cash_out: Any = None,
    ) -> Dict[str, Any]:
        """
        Escrows the stake immediately. During IDLE the bet joins the coming
        round; during FLYING / CRASHED it is queued for the one after.
        """
        self._check_slot(slot)
        stake = self._parse_amount(amount, "bet amount")
        threshold = self._parse_auto(auto_cash_out)

        async with self._lock:
            config = await self._store.get_game_config()
            player = await self._store.get_account(account)

            if player.is_admin:
                raise AuthorizationError("Admin accounts cannot place bets")
            if config.maintenance_mode:
                raise AuthorizationError("System is under maintenance")
            if self.demo and not config.enable_demo:
                raise StateError("Demo play is disabled")

            low, high = self.bet_limits(config)
            if not (low <= stake <= high):
                raise BetError(f"Bet must be between {low} and {high}")

            queued = self.phase != GameState.IDLE
            book = self._queued if queued else self._bets
            key = (account, slot)
            if key in book:
                raise BetError("Slot already has a bet")

            round_id = None if queued else self._pending_round_id
            await self._store.apply(
                account,
                -stake,
                TransactionType.BET,
                demo=self.demo,
                room=self.room.name,
                round_id=round_id,
                note="queued for next round" if queued else None,
            )

            bet = Bet(
                account=account,
                slot=slot,
                amount=stake,
                demo=self.demo,
                round_id=round_id,
                queued=queued,
                placed_at=self._clock(),
            )
            book[key] = bet
            if threshold is not None:
                self._auto[key] = threshold
            return bet.to_dict()

    async def cancel_bet(self, account: str, slot: int) -> Decimal:
        """IDLE only. Refunds the full stake; returns the new wallet balance."""
        self._check_slot(slot)
        async with self._lock:
            if self.phase != GameState.IDLE:
                raise StateError("Bets can only be cancelled before take-off")
            bet = self._bets.get((account, slot))
            if bet is None:
                raise BetError("No bet in this slot")

            balance = await self._store.apply(
                account,
                bet.amount,
                TransactionType.REFUND,
                demo=bet.demo,
                room=self.room.name,
                round_id=bet.round_id,
                note="Bet cancelled",
            )
            del self._bets[bet.key]
            return balance

    async def cash_out(self, account: str, slot: int) -> Dict[str, Any]:
        """
        Settles at the live multiplier at the instant of the request.
        """
        self._check_slot(slot)
        async with self._lock:
            if self.phase != GameState.FLYING:
                raise StateError("Round not active")

            bet = self._bets.get((account, slot))
            if bet is None:
                raise BetError("Bet not found")
            if bet.settled:
                raise BetError("Already cashed out")

            now = self._clock()
            rnd = self._round
            live = multiplier_at(now - rnd.started_at)

            # The heartbeat has not caught up with the crash yet: run it now
            if live >= rnd.effective_crash:
                await self._advance_flight(now)
                if not bet.settled:
                    raise StateError("Plane crashed")
            else:
                await self._settle_bet(bet, live)

            return bet.to_dict()

    async def set_auto_cash_out(self, account: str, slot: int, multiplier: Any) -> Optional[Decimal]:
        """Set or clear (None) the threshold for a slot. Persists across rounds."""
        self._check_slot(slot)
        threshold = self._parse_auto(multiplier)
        async with self._lock:
            key = (account, slot)
            if threshold is None:
                self._auto.pop(key, None)
            else:
                self._auto[key] = threshold
            return threshold

    # =====================================================
    # ADMIN ACTIONS
    # =====================================================

    async def force_crash_now(self) -> Decimal:
        """
        Realize the crash at the current multiplier. The next tick crashes;
        bets already settled stay settled.
        """
        async with self._lock:
            if self.phase != GameState.FLYING or not self._round_active:
                raise StateError("No round in flight")
            rnd = self._round
            live = min(multiplier_at(self._clock() - rnd.started_at), rnd.effective_crash)
            rnd.forced_crash = live
            self._cancel_timer()
            logger.warning(f"Round {rnd.round_id} force-crashed at {format_multiplier(live)}")
            return live

    def set_next_crash_override(self, value: Any) -> Decimal:
        """Stage a crash value for the next round only; replaces any staged value."""
        self._generator.override.put(value)
        staged = self._generator.override.peek()
        logger.warning(f"Crash override {format_multiplier(staged)} staged for room {self.room.id}")
        return staged

    def set_client_seed(self, client_seed: str) -> None:
        """Applies from the next round on."""
        self._generator.set_client_seed(client_seed)

    async def switch_room(self, room_id: str, join_in_progress: Optional[bool] = None) -> Dict[str, Any]:
        """
        Re-parent the table onto another room. Pending timers are dropped,
        escrowed bets refunded, and the table either joins a round already
        in progress or starts a short countdown.
        """
        room = get_room(room_id)
        async with self._lock:
            if self.phase == GameState.FLYING and any(not b.settled for b in self._bets.values()):
                raise StateError("Cannot switch rooms while bets are in flight")

            now = self._clock()
            self._cancel_timer()

            # A flight with only settled bets still owes the house its result
            if self.phase == GameState.FLYING and self._round_active:
                rnd = self._round
                rnd.forced_crash = min(multiplier_at(now - rnd.started_at), rnd.effective_crash)
                await self._crash(now)
                self._cancel_timer()

            refundable = list(self._queued.values())
            if self.phase == GameState.IDLE:
                refundable.extend(self._bets.values())
            for bet in refundable:
                await self._store.apply(
                    bet.account,
                    bet.amount,
                    TransactionType.REFUND,
                    demo=bet.demo,
                    room=self.room.name,
                    round_id=bet.round_id,
                    note="Room switched",
                )
                if bet.queued:
                    del self._queued[bet.key]
                else:
                    del self._bets[bet.key]

            previous = self.room.id
            self.room = room
            self._bets = {}
            self._queued = {}
            self._round = None

            config = await self._store.get_game_config()
            self._crowd.populate(self.min_bet(config))

            join = join_in_progress if join_in_progress is not None else self._rng.random() < 0.7
            if join:
                await self._join_in_progress(now, config)
            else:
                self._enter_idle(now, 1.0 + self._rng.random() * 9.0)

            logger.info(f"Switched {previous} -> {room.id} (join_in_progress={join})")
            return self._snapshot(now)

    async def _join_in_progress(self, now: float, config: GameConfig) -> None:
        draw = self._generator.next_round(config, self.room)
        self._pending_round_id = generate_unique_id()

        safe_max = min(draw.crash_point * Decimal("0.95"), Decimal("10"))
        span = max(Decimal("0"), safe_max - MIN_AUTO_CASHOUT)
        shown = truncate_cents(MIN_AUTO_CASHOUT + Decimal(str(self._rng.random())) * span)

        if shown >= draw.crash_point:
            # Landed on a round that is already over
            self._round = GameRound(self._pending_round_id, draw, now, config)
            self._round_active = True
            self.phase = GameState.FLYING
            await self._crash(now, display=JOIN_CRASH_DISPLAY_SEC)
            return

        await self._take_off(now, elapsed=elapsed_for_multiplier(shown), draw=draw)

    # =====================================================
    # READ MODELS
    # =====================================================

    def _live_multiplier(self, now: float) -> Decimal:
        if self.phase == GameState.FLYING and self._round:
            return min(multiplier_at(now - self._round.started_at), self._round.effective_crash)
        if self.phase == GameState.CRASHED and self._round:
            return self._round.effective_crash
        return ONE

    def _snapshot(self, now: float) -> Dict[str, Any]:
        rnd = self._round
        crashed = self.phase == GameState.CRASHED
        elapsed_ms = 0
        if rnd and self.phase != GameState.IDLE:
            end = rnd.crashed_at if crashed and rnd.crashed_at else now
            elapsed_ms = int((end - rnd.started_at) * 1000)

        return {
            "status": self.phase.value,
            "room": self.room.id,
            "demo": self.demo,
            "round_id": rnd.round_id if rnd else self._pending_round_id,
            "multiplier": float(self._live_multiplier(now)),
            "elapsed_ms": elapsed_ms,
            "hash": rnd.draw.commitment.round_hash if rnd else None,
            # Secret until the round is over
            "crash_point": float(rnd.effective_crash) if crashed and rnd else None,
            "next_round_at": self._deadline if self.phase == GameState.IDLE else None,
            "history": [float(x) for x in self._history],
            "crowd": self._crowd.summary(),
        }

    def snapshot(self) -> Dict[str, Any]:
        return self._snapshot(self._clock())

    async def get_state(self) -> Dict[str, Any]:
        async with self._lock:
            return self._snapshot(self._clock())

    def fairness(self) -> Dict[str, Any]:
        """Live commitment plus the revealed seeds of the last settled round."""
        current = self._round.draw.commitment.public() if self._round else None
        previous = None
        if self._last_round and self._last_round.crashed_at is not None:
            previous = {
                **self._last_round.draw.commitment.reveal(),
                "round_id": self._last_round.round_id,
                "crash_point": float(self._last_round.effective_crash),
                "edge": float(self._last_round.draw.edge),
            }
        return {
            "client_seed": self._generator.client_seed,
            "current": current,
            "previous": previous,
        }

    def get_bets(self, account: str) -> List[Dict[str, Any]]:
        bets = [b for b in self._bets.values() if b.account == account]
        bets += [b for b in self._queued.values() if b.account == account]
        return [b.to_dict() for b in bets]

    def open_accounts(self) -> Set[str]:
        """Accounts with a bet in the book or the queue."""
        return {b.account for b in list(self._bets.values()) + list(self._queued.values())}

    def auto_cash_out(self, account: str, slot: int) -> Optional[Decimal]:
        return self._auto.get((account, slot))

    @property
    def crowd(self) -> BotCrowd:
        return self._crowd

    @property
    def current_round(self) -> Optional[GameRound]:
        return self._round
