"""
Signal intake: pulls fresh signals from the shared queue and applies the
open-position and cooldown rules.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from .models import Signal, utcnow

logger = logging.getLogger(__name__)


class SignalIntake:
    def __init__(
        self,
        store,
        cooldown_hours: float = 1.0,
        max_age_minutes: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cooldown = timedelta(hours=cooldown_hours)
        self.max_age = timedelta(minutes=max_age_minutes)
        self.clock = clock

    async def next_signal(self) -> Optional[Signal]:
        """Oldest unprocessed signal inside the freshness window; older ones are expired."""
        cutoff = self.clock() - self.max_age
        expired = await self.store.expire_stale_signals(cutoff)
        if expired:
            logger.info(f"[SIGNAL] Expired {expired} stale signal(s)")
        return await self.store.next_signal(cutoff)

    async def is_actionable(self, mint: str) -> Tuple[bool, str]:
        if await self.store.has_open_position(mint):
            return False, "open position exists"
        last_closed = await self.store.last_closed_at(mint)
        if last_closed is not None and self.clock() - last_closed < self.cooldown:
            remaining = self.cooldown - (self.clock() - last_closed)
            return False, f"cooldown active ({remaining.total_seconds() / 60:.0f} min left)"
        return True, ""

    async def discard(self, signal: Signal, reason: str) -> None:
        await self.store.mark_signal_processed(signal.id)
        logger.info(f"[SIGNAL] Signal {signal.id} for {signal.mint[:8]}... consumed: {reason}")
