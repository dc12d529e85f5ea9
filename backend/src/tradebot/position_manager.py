"""
Position tracking and automated exits (trailing stop / safety / timeout).

Each open position gets its own monitor task. A monitor moves through
explicit states:

    Entered -> Monitoring(counter) -> Closing(reason) -> Closed(sentinel)
                                                      -> Abandoned(reason)

Trailing-stop hysteresis lives in TrailingStop so it can be exercised
without any I/O.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from . import telegram_service as fmt
from .models import ABANDONED_UNSELLABLE, MANUAL_OR_EXTERNAL_SELL, Position, utcnow
from .seller import CascadingSeller

logger = logging.getLogger(__name__)

# relative slack so a price exactly at the stop still counts after float rounding
STOP_TOLERANCE = 1e-9


class ExitReason(Enum):
    TRAILING_STOP = "trailing_stop"
    SAFETY_FAILED = "safety_failed"
    TIME_EXIT = "time_exit"


@dataclass(frozen=True)
class Entered:
    pass


@dataclass(frozen=True)
class Monitoring:
    counter: int = 0


@dataclass(frozen=True)
class Closing:
    reason: ExitReason


@dataclass(frozen=True)
class Closed:
    sentinel: Optional[str] = None


@dataclass(frozen=True)
class Abandoned:
    reason: str


MonitorState = Union[Entered, Monitoring, Closing, Closed, Abandoned]


def is_terminal(state: MonitorState) -> bool:
    return isinstance(state, (Closed, Abandoned))


class TrailingStop:
    """
    Running peak plus a breach counter. A tick at or below
    peak * (1 - trail) counts as a breach; any other tick resets the
    counter. The stop fires once `confirmations` consecutive breaches
    have been seen.
    """

    def __init__(self, trail_fraction: float, confirmations: int, highest: float = 0.0):
        self.trail_fraction = trail_fraction
        self.confirmations = confirmations
        self.highest = highest
        self.counter = 0

    @property
    def stop_price(self) -> float:
        return self.highest * (1 - self.trail_fraction)

    def update_peak(self, price: float) -> bool:
        if price > self.highest:
            self.highest = price
            return True
        return False

    def check(self, price: float) -> bool:
        if price <= self.stop_price * (1 + STOP_TOLERANCE):
            self.counter += 1
        else:
            self.counter = 0
        return self.counter >= self.confirmations


class PositionMonitor:
    def __init__(
        self,
        ctx,
        position: Position,
        seller: CascadingSeller,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ctx = ctx
        self.cfg = ctx.config
        self.position = position
        self.seller = seller
        self.clock = clock
        self.state: MonitorState = Entered()
        self.stop = TrailingStop(
            trail_fraction=self.cfg.trailing_stop_fraction,
            confirmations=self.cfg.stop_confirmation_ticks,
            highest=position.highest_price or position.entry_price,
        )
        self.started_at = clock()
        self.last_safety_check = self.started_at
        self.close_attempts = 0
        self.last_price: Optional[float] = None

    @property
    def mint(self) -> str:
        return self.position.mint

    async def run(self) -> MonitorState:
        logger.info(
            f"[POSITIONS] Monitoring {self.mint[:8]}... (trade {self.position.id}, "
            f"entry ${self.position.entry_price:.10f}, peak ${self.stop.highest:.10f})"
        )
        while not is_terminal(self.state) and not self.ctx.shutdown.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[POSITIONS] Tick error for {self.mint[:8]}...")
                await self.recover(e)
                continue
            if not is_terminal(self.state):
                await self.ctx.sleep(self.cfg.price_check_interval_sec)
        logger.info(f"[POSITIONS] Monitor for {self.mint[:8]}... exiting in state {self.state}")
        return self.state

    async def tick(self) -> MonitorState:
        if isinstance(self.state, Closing):
            await self._liquidate(self.state.reason)
            return self.state

        position = self.position
        balance = await self.ctx.wallet.token_balance(position.mint)
        if self.ctx.wallet.is_dust(balance, position.decimals):
            await self._balance_gone()
            return self.state

        price = await self.ctx.jupiter.reference_price(
            position.mint, position.decimals, self.cfg.quote_mint, self.cfg.quote_decimals
        )
        self.last_price = price
        if self.stop.update_peak(price):
            position.highest_price = price
            await self.ctx.store.update_peak(position.id, price)

        now = self.clock()
        reason: Optional[ExitReason] = None

        if now - self.started_at >= timedelta(seconds=self.cfg.stop_grace_period_sec):
            if self.stop.check(price):
                reason = ExitReason.TRAILING_STOP
            self.state = Monitoring(self.stop.counter)
            if self.stop.counter:
                logger.info(
                    f"[POSITIONS] {position.mint[:8]}... below stop ${self.stop.stop_price:.10f} "
                    f"({self.stop.counter}/{self.stop.confirmations})"
                )
        elif isinstance(self.state, Entered):
            self.state = Monitoring(0)

        if reason is None and now - self.last_safety_check >= timedelta(seconds=self.cfg.safety_recheck_interval_sec):
            self.last_safety_check = now
            verdict = await self.ctx.gate.check(position.mint)
            if not verdict.passed:
                await self.ctx.notifier.send(fmt.safety_exit(position.mint, verdict.reason))
                reason = ExitReason.SAFETY_FAILED

        if reason is None and position.holding_hours(now) > self.cfg.max_holding_hours:
            if position.pl_fraction(price) <= self.cfg.timeout_pl_threshold:
                reason = ExitReason.TIME_EXIT

        if reason is not None:
            await self.ctx.notifier.send(fmt.sell_triggered(position.mint, reason.value, price, self.stop.highest))
            await self._liquidate(reason)
        return self.state

    async def _balance_gone(self) -> None:
        if self.position.sold_amount > 0:
            # Earlier tranches sold; let the seller book the final PnL.
            await self._liquidate(ExitReason.TRAILING_STOP)
            return
        await self.ctx.store.close_external(self.position.id)
        await self.ctx.notifier.send(fmt.external_close(self.position.mint))
        self.state = Closed(MANUAL_OR_EXTERNAL_SELL)

    async def _liquidate(self, reason: ExitReason) -> None:
        self.state = Closing(reason)
        result = await self.seller.liquidate(self.position)
        if result.closed:
            self.state = Closed(MANUAL_OR_EXTERNAL_SELL if result.external else self.position.sell_tx)
            return
        self.close_attempts += 1
        if self.close_attempts >= self.cfg.max_close_attempts:
            await self.abandon(f"{self.close_attempts} liquidation attempts left a balance")

    async def abandon(self, reason: str) -> None:
        await self.ctx.store.mark_abandoned(self.position.id, ABANDONED_UNSELLABLE)
        await self.ctx.notifier.send(fmt.position_abandoned(self.position.mint, reason))
        logger.error(f"[POSITIONS] Abandoned {self.position.mint[:8]}...: {reason}")
        self.state = Abandoned(reason)

    async def recover(self, error: Exception) -> None:
        """After a tick error: stop if the tokens are gone, otherwise pause and resume."""
        if self.ctx.auto_repair is not None:
            await self.ctx.auto_repair.handle(error)
        try:
            balance = await self.ctx.wallet.token_balance(self.position.mint)
            if self.ctx.wallet.is_dust(balance, self.position.decimals):
                await self._balance_gone()
                return
        except Exception as e:
            logger.error(f"[POSITIONS] Recovery balance check failed for {self.mint[:8]}...: {e}")
        await self.ctx.notifier.send(fmt.monitor_paused(self.mint, str(error), self.cfg.recovery_cooldown_sec))
        await self.ctx.sleep(self.cfg.recovery_cooldown_sec)


class PositionManager:
    def __init__(self, ctx, seller: Optional[CascadingSeller] = None):
        self.ctx = ctx
        self.cfg = ctx.config
        self.seller = seller or CascadingSeller(ctx)
        self.monitors: Dict[int, PositionMonitor] = {}
        self.tasks: Dict[int, asyncio.Task] = {}
        self.exits_executed = 0
        self.external_closes = 0
        self.abandoned = 0
        self.total_realized_pnl = 0.0

    def start_monitoring(self, position: Position) -> PositionMonitor:
        if position.id in self.tasks and not self.tasks[position.id].done():
            return self.monitors[position.id]
        monitor = PositionMonitor(self.ctx, position, self.seller)
        self.monitors[position.id] = monitor
        task = asyncio.create_task(monitor.run(), name=f"monitor-{position.id}")
        task.add_done_callback(lambda t, pid=position.id: self._on_done(pid, t))
        self.tasks[position.id] = task
        return monitor

    def _on_done(self, trade_id: int, task: asyncio.Task) -> None:
        self.tasks.pop(trade_id, None)
        monitor = self.monitors.pop(trade_id, None)
        if task.cancelled() or monitor is None:
            return
        if task.exception() is not None:
            logger.error(f"[POSITIONS] Monitor for trade {trade_id} crashed: {task.exception()}")
            return
        state = monitor.state
        if isinstance(state, Closed):
            if state.sentinel == MANUAL_OR_EXTERNAL_SELL:
                self.external_closes += 1
            else:
                self.exits_executed += 1
                self.total_realized_pnl += monitor.position.pnl or 0.0
        elif isinstance(state, Abandoned):
            self.abandoned += 1

    async def resume_open_positions(self) -> int:
        stale = await self.ctx.store.abandon_stale(self.cfg.resume_max_age_hours)
        if stale:
            await self.ctx.notifier.send(
                fmt.position_abandoned(f"{stale} trade(s)", f"open longer than {self.cfg.resume_max_age_hours:.0f}h")
            )
        resumed = 0
        for position in await self.ctx.store.open_trades():
            if position.decimals is None:
                position.decimals = await self.ctx.wallet.token_decimals(position.mint)
            self.start_monitoring(position)
            resumed += 1
        logger.info(f"[POSITIONS] Resumed {resumed} open position(s)")
        return resumed

    def active_count(self) -> int:
        return sum(1 for t in self.tasks.values() if not t.done())

    def get_open_positions(self) -> List[Position]:
        return [m.position for m in self.monitors.values()]

    async def wait_closed(self, timeout: Optional[float] = None) -> None:
        tasks = list(self.tasks.values())
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"[POSITIONS] Cancelled {len(pending)} monitor(s) still running at shutdown")
            await asyncio.gather(*pending, return_exceptions=True)

    def get_stats(self) -> dict:
        positions = []
        for monitor in self.monitors.values():
            entry = monitor.position.to_dict()
            entry["state"] = type(monitor.state).__name__
            entry["last_price"] = monitor.last_price
            entry["stop_price"] = monitor.stop.stop_price
            positions.append(entry)
        return {
            "open_positions": self.active_count(),
            "exits_executed": self.exits_executed,
            "external_closes": self.external_closes,
            "abandoned": self.abandoned,
            "total_realized_pnl_usd": round(self.total_realized_pnl, 4),
            "positions": positions,
        }
