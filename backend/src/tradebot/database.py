"""
Persistence layer: trades (positions) and the shared signal queue.

PostgreSQL via an asyncpg pool. The pool is held by the store rather than a
module global so an emergency reconnect can swap in a fresh one.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

import asyncpg

from .errors import DuplicatePositionError
from .models import ABANDONED_STALE, MANUAL_OR_EXTERNAL_SELL, Position, Signal, utcnow

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS trades (
        id SERIAL PRIMARY KEY,
        mint TEXT NOT NULL,
        bought_amount DOUBLE PRECISION NOT NULL,
        spent_usdc DOUBLE PRECISION NOT NULL,
        buy_tx TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        sold_amount DOUBLE PRECISION,
        received_usdc DOUBLE PRECISION,
        pnl DOUBLE PRECISION,
        sell_tx TEXT,
        closed_at TIMESTAMPTZ
    )
    """,
    "ALTER TABLE trades ADD COLUMN IF NOT EXISTS decimals INTEGER",
    "ALTER TABLE trades ADD COLUMN IF NOT EXISTS highest_price DOUBLE PRECISION",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS trades_one_open_per_mint
        ON trades (mint) WHERE closed_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS signals (
        id SERIAL PRIMARY KEY,
        mint TEXT NOT NULL,
        signal_ts BIGINT NOT NULL,
        ema_cross BOOLEAN,
        vol_spike BOOLEAN,
        rsi DOUBLE PRECISION,
        notified BOOLEAN DEFAULT FALSE
    )
    """,
    "ALTER TABLE signals ADD COLUMN IF NOT EXISTS processed BOOLEAN NOT NULL DEFAULT FALSE",
    "CREATE INDEX IF NOT EXISTS signals_pending ON signals (signal_ts) WHERE processed = FALSE",
]

_TRADE_COLUMNS = (
    "id, mint, bought_amount, spent_usdc, buy_tx, created_at, decimals, highest_price, "
    "sold_amount, received_usdc, pnl, sell_tx, closed_at"
)


async def create_pool(dsn: str, min_size: int = 1, max_size: int = 5) -> asyncpg.Pool:
    return await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size, command_timeout=30)


def _to_unix(ts: datetime) -> int:
    # signal_ts is written by the producer in unix seconds
    return int(ts.timestamp())


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3"
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def row_to_position(row) -> Position:
    return Position(
        id=row["id"],
        mint=row["mint"],
        bought_amount=float(row["bought_amount"]),
        spent_usd=float(row["spent_usdc"]),
        buy_tx=row["buy_tx"] or "",
        created_at=row["created_at"],
        decimals=row["decimals"],
        highest_price=row["highest_price"],
        sold_amount=float(row["sold_amount"] or 0),
        received_usd=float(row["received_usdc"] or 0),
        pnl=row["pnl"],
        sell_tx=row["sell_tx"],
        closed_at=row["closed_at"],
    )


class TradeStore:
    def __init__(self, pool: asyncpg.Pool, pool_factory: Optional[Callable[[], Awaitable[asyncpg.Pool]]] = None):
        self.pool = pool
        self.pool_factory = pool_factory

    async def init_schema(self) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for stmt in SCHEMA:
                    await conn.execute(stmt)
        logger.info("[DB] Schema ready")

    # Signals

    async def next_signal(self, cutoff: datetime) -> Optional[Signal]:
        row = await self.pool.fetchrow(
            """
            SELECT id, mint, signal_ts FROM signals
            WHERE processed = FALSE AND signal_ts >= $1
            ORDER BY signal_ts ASC, id ASC
            LIMIT 1
            """,
            _to_unix(cutoff),
        )
        if row is None:
            return None
        created = datetime.fromtimestamp(row["signal_ts"], tz=timezone.utc)
        return Signal(id=row["id"], mint=row["mint"], created_at=created)

    async def expire_stale_signals(self, cutoff: datetime) -> int:
        status = await self.pool.execute(
            "UPDATE signals SET processed = TRUE WHERE processed = FALSE AND signal_ts < $1",
            _to_unix(cutoff),
        )
        return _affected(status)

    async def mark_signal_processed(self, signal_id: int) -> None:
        await self.pool.execute("UPDATE signals SET processed = TRUE WHERE id = $1", signal_id)

    # Position lookups

    async def has_open_position(self, mint: str) -> bool:
        return bool(
            await self.pool.fetchval(
                "SELECT EXISTS(SELECT 1 FROM trades WHERE mint = $1 AND closed_at IS NULL)", mint
            )
        )

    async def last_closed_at(self, mint: str) -> Optional[datetime]:
        return await self.pool.fetchval(
            "SELECT MAX(closed_at) FROM trades WHERE mint = $1 AND closed_at IS NOT NULL", mint
        )

    async def open_trades(self) -> List[Position]:
        rows = await self.pool.fetch(
            f"SELECT {_TRADE_COLUMNS} FROM trades WHERE closed_at IS NULL ORDER BY created_at ASC"
        )
        return [row_to_position(r) for r in rows]

    async def get_trade(self, trade_id: int) -> Optional[Position]:
        row = await self.pool.fetchrow(f"SELECT {_TRADE_COLUMNS} FROM trades WHERE id = $1", trade_id)
        return row_to_position(row) if row else None

    async def count_open(self) -> int:
        return int(await self.pool.fetchval("SELECT COUNT(*) FROM trades WHERE closed_at IS NULL"))

    async def count_open_older_than(self, hours: float) -> int:
        return int(
            await self.pool.fetchval(
                "SELECT COUNT(*) FROM trades WHERE closed_at IS NULL AND created_at < NOW() - $1::float8 * INTERVAL '1 hour'",
                float(hours),
            )
        )

    async def ping(self) -> bool:
        return await self.pool.fetchval("SELECT 1") == 1

    # Position writes, all single-row updates keyed by id

    async def insert_trade(
        self,
        mint: str,
        bought_amount: float,
        spent_usd: float,
        buy_tx: str,
        decimals: int,
        entry_price: float,
    ) -> Position:
        try:
            row = await self.pool.fetchrow(
                f"""
                INSERT INTO trades (mint, bought_amount, spent_usdc, buy_tx, decimals, highest_price, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING {_TRADE_COLUMNS}
                """,
                mint,
                float(bought_amount),
                float(spent_usd),
                buy_tx,
                decimals,
                float(entry_price),
                utcnow(),
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicatePositionError(f"open position already exists for {mint}") from e
        logger.info(f"[DB] Trade {row['id']} opened for {mint}")
        return row_to_position(row)

    async def update_peak(self, trade_id: int, highest_price: float) -> None:
        await self.pool.execute(
            "UPDATE trades SET highest_price = $2 WHERE id = $1 AND closed_at IS NULL",
            trade_id,
            float(highest_price),
        )

    async def record_tranche(self, trade_id: int, sold_amount: float, received_usd: float, sell_tx: str) -> None:
        await self.pool.execute(
            """
            UPDATE trades
            SET sold_amount = COALESCE(sold_amount, 0) + $2,
                received_usdc = COALESCE(received_usdc, 0) + $3,
                sell_tx = $4
            WHERE id = $1 AND closed_at IS NULL
            """,
            trade_id,
            float(sold_amount),
            float(received_usd),
            sell_tx,
        )

    async def close_trade(self, trade_id: int, pnl: float, sell_tx: Optional[str]) -> bool:
        status = await self.pool.execute(
            """
            UPDATE trades
            SET pnl = $2, sell_tx = COALESCE($3, sell_tx), closed_at = NOW()
            WHERE id = $1 AND closed_at IS NULL
            """,
            trade_id,
            float(pnl),
            sell_tx,
        )
        return _affected(status) == 1

    async def close_external(self, trade_id: int) -> bool:
        status = await self.pool.execute(
            "UPDATE trades SET sell_tx = $2, closed_at = NOW() WHERE id = $1 AND closed_at IS NULL",
            trade_id,
            MANUAL_OR_EXTERNAL_SELL,
        )
        return _affected(status) == 1

    async def mark_abandoned(self, trade_id: int, reason: str) -> bool:
        status = await self.pool.execute(
            "UPDATE trades SET sell_tx = $2, closed_at = NOW() WHERE id = $1 AND closed_at IS NULL",
            trade_id,
            reason,
        )
        return _affected(status) == 1

    async def abandon_stale(self, max_age_hours: float) -> int:
        status = await self.pool.execute(
            """
            UPDATE trades SET sell_tx = $2, closed_at = NOW()
            WHERE closed_at IS NULL AND created_at < NOW() - $1::float8 * INTERVAL '1 hour'
            """,
            float(max_age_hours),
            ABANDONED_STALE,
        )
        count = _affected(status)
        if count:
            logger.warning(f"[DB] Abandoned {count} open trade(s) older than {max_age_hours}h")
        return count

    # Pool lifecycle

    async def replace_pool(self, new_pool: asyncpg.Pool) -> None:
        old = self.pool
        self.pool = new_pool
        old.terminate()
        logger.warning("[DB] Connection pool replaced")

    async def reconnect(self) -> None:
        if self.pool_factory is None:
            raise RuntimeError("no pool factory configured")
        await self.replace_pool(await self.pool_factory())

    async def close(self) -> None:
        await self.pool.close()
        logger.info("[DB] Pool closed")
