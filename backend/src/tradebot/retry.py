"""
Bounded retry with backoff, shared by quotes, swap builds, balance reads,
sell tranches and the confirmation fallback.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


def _always(exc: BaseException) -> bool:
    return True


@dataclass
class RetryPolicy:
    attempts: int = 3
    # Pause before the first attempt (used when waiting for a transaction to land).
    initial_delay: float = 0.0
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    # Exception types eligible for retry; the predicate narrows further.
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    predicate: Callable[[BaseException], bool] = field(default=_always)
    sleep: Optional[Callable[[float], Awaitable[Any]]] = field(default=None, repr=False)

    def delays(self) -> List[float]:
        """Pause taken after each failed attempt except the last."""
        out: List[float] = []
        delay = self.base_delay
        for _ in range(max(self.attempts - 1, 0)):
            out.append(min(delay, self.max_delay))
            delay *= self.multiplier
        return out

    async def _pause(self, seconds: float) -> None:
        await (self.sleep or asyncio.sleep)(seconds)

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on) and self.predicate(exc)

    async def run(self, func: Callable[..., Awaitable[Any]], *args, label: Optional[str] = None, **kwargs) -> Any:
        name = label or getattr(func, "__name__", "call")
        delays = self.delays()
        last_exc: Optional[BaseException] = None
        if self.initial_delay > 0:
            await self._pause(self.initial_delay)
        for attempt in range(1, self.attempts + 1):
            try:
                return await func(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_exc = e
                if not self.is_retryable(e) or attempt >= self.attempts:
                    raise
                delay = delays[attempt - 1]
                logger.warning(
                    f"[RETRY] {name} failed (attempt {attempt}/{self.attempts}): {e}; retrying in {delay:.1f}s"
                )
                await self._pause(delay)
        # attempts < 1
        raise RuntimeError(f"{name}: retry policy allows no attempts") from last_exc
