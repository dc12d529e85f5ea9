"""
Process-wide collaborators, built once at startup and handed to every component.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp
from solana.rpc.async_api import AsyncClient

from .config import TradebotConfig, load_keypair
from .database import TradeStore, create_pool
from .diagnostics import AutoRepair
from .jupiter import JupiterClient
from .risk_sources import RugCheckClient
from .safety import SafetyGate
from .signals import SignalIntake
from .submitter import TransactionSubmitter
from .telegram_service import Notifier
from .wallet import Wallet

logger = logging.getLogger(__name__)


@dataclass
class TradingContext:
    config: TradebotConfig
    store: Any
    wallet: Any
    jupiter: Any
    submitter: Any
    notifier: Any
    gate: Any
    intake: Any
    auto_repair: Optional[Any] = None
    rpc: Optional[AsyncClient] = None
    session: Optional[aiohttp.ClientSession] = None
    instance_id: str = ""
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)

    async def sleep(self, seconds: float) -> None:
        """Sleep that returns early once shutdown has been requested."""
        if self.shutdown.is_set():
            return
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def close(self) -> None:
        try:
            await self.store.close()
        finally:
            if self.rpc is not None:
                await self.rpc.close()
            if self.session is not None:
                await self.session.close()


async def build_context(cfg: TradebotConfig) -> TradingContext:
    keypair = load_keypair(cfg)
    instance_id = secrets.token_hex(3)
    session = aiohttp.ClientSession()
    rpc = AsyncClient(cfg.rpc_url, timeout=cfg.request_timeout_sec)
    try:
        pool = await create_pool(cfg.database_url)
    except Exception:
        await rpc.close()
        await session.close()
        raise

    async def _new_pool():
        return await create_pool(cfg.database_url)

    store = TradeStore(pool, pool_factory=_new_pool)
    notifier = Notifier(session, cfg.telegram_token, cfg.telegram_chat_id, instance_id=instance_id)
    submitter = TransactionSubmitter(
        rpc,
        keypair,
        confirm_timeout=cfg.confirm_timeout_sec,
        fallback_attempts=cfg.confirm_fallback_attempts,
        fallback_delay=cfg.confirm_fallback_delay_sec,
    )
    wallet = Wallet(rpc, keypair, submitter, delegate=cfg.aggregator_program_id, dust_decimals=cfg.dust_decimals)
    jupiter = JupiterClient(
        session,
        base_url=cfg.jupiter_url,
        slippage_bps=cfg.slippage_bps,
        timeout=cfg.request_timeout_sec,
        attempts=cfg.quote_attempts,
    )
    rugcheck = RugCheckClient(session, base_url=cfg.rugcheck_url, timeout=cfg.request_timeout_sec)
    gate = SafetyGate(
        jupiter,
        rugcheck,
        notifier,
        quote_mint=cfg.quote_mint,
        trade_amount_raw=cfg.trade_amount_raw,
        max_impact_pct=cfg.safe_price_impact_pct,
        no_route_attempts=cfg.no_route_attempts,
    )
    intake = SignalIntake(store, cooldown_hours=cfg.cooldown_hours, max_age_minutes=cfg.signal_max_age_minutes)
    logger.info(f"[MAIN] Context ready: instance {instance_id}, wallet {wallet.address}")
    return TradingContext(
        config=cfg,
        store=store,
        wallet=wallet,
        jupiter=jupiter,
        submitter=submitter,
        notifier=notifier,
        gate=gate,
        intake=intake,
        auto_repair=AutoRepair(store, notifier),
        rpc=rpc,
        session=session,
        instance_id=instance_id,
    )
