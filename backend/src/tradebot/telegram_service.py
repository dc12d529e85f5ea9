"""
Telegram notifications.

Fire-and-forget: a failed send is logged and reported as False, never raised,
so a dead chat can't stall a trade.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
SOLSCAN_TX = "https://solscan.io/tx/"


class Notifier:
    def __init__(
        self,
        session: Optional[aiohttp.ClientSession],
        bot_token: str = "",
        chat_id: str = "",
        instance_id: str = "",
        timeout: float = 10.0,
    ):
        self.session = session
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.instance_id = instance_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.enabled = bool(bot_token and chat_id and session is not None)
        self.sent = 0
        self.failed = 0
        if not self.enabled:
            logger.info("[TELEGRAM] Bot token or chat id not configured - notifications disabled")

    def _prefix(self, text: str) -> str:
        return f"[{self.instance_id}] {text}" if self.instance_id else text

    async def send(self, text: str) -> bool:
        message = self._prefix(text)
        logger.info(f"[TELEGRAM] {message}")
        if not self.enabled:
            return False
        url = f"{TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": message,
            "disable_web_page_preview": True,
        }
        try:
            async with self.session.post(url, json=payload, timeout=self.timeout) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    logger.error(f"[TELEGRAM] Error: {resp.status} - {body[:200]}")
                    self.failed += 1
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[TELEGRAM] Error sending message: {e}")
            self.failed += 1
            return False
        self.sent += 1
        return True


# Message formats. Plain text only.


def _short(mint: str) -> str:
    return f"{mint[:6]}...{mint[-4:]}" if len(mint) > 12 else mint


def buy_executed(mint: str, spent_usd: float, bought: float, price: float, signature: str) -> str:
    return (
        f"BUY {_short(mint)}\n"
        f"Spent: ${spent_usd:.2f}\n"
        f"Received: {bought:,.4f} tokens\n"
        f"Entry price: ${price:.10f}\n"
        f"Tx: {SOLSCAN_TX}{signature}"
    )


def buy_failed(mint: str, error: str) -> str:
    return f"BUY FAILED {_short(mint)}: {error}"


def safety_rejected(mint: str, reason: str) -> str:
    return f"SKIP {_short(mint)}: safety check failed ({reason})"


def risk_provider_down(mint: str, error: str) -> str:
    return f"RugCheck unavailable for {_short(mint)}, failing closed: {error}"


def insufficient_balance(mint: str, have: float, need: float) -> str:
    return f"SKIP {_short(mint)}: USDC balance ${have:.2f} below trade size ${need:.2f}"


def sell_triggered(mint: str, reason: str, price: float, highest: float) -> str:
    return (
        f"SELL TRIGGERED {_short(mint)} ({reason})\n"
        f"Price: ${price:.10f}\n"
        f"Peak: ${highest:.10f}"
    )


def tranche_sold(mint: str, pct: int, amount: float, received_usd: float, signature: str) -> str:
    price = received_usd / amount if amount else 0.0
    return (
        f"SOLD {pct}% tranche of {_short(mint)}\n"
        f"Amount: {amount:,.4f} @ ${price:.10f}\n"
        f"Received: ${received_usd:.2f}\n"
        f"Tx: {SOLSCAN_TX}{signature}"
    )


def trade_complete(mint: str, spent_usd: float, received_usd: float, pnl: float) -> str:
    pct = (pnl / spent_usd * 100) if spent_usd else 0.0
    return (
        f"TRADE COMPLETE {_short(mint)}\n"
        f"Spent: ${spent_usd:.2f}\n"
        f"Received: ${received_usd:.2f}\n"
        f"PnL: ${pnl:+.2f} ({pct:+.1f}%)"
    )


def sell_incomplete(mint: str, reason: str) -> str:
    return f"SELL INCOMPLETE {_short(mint)}: {reason}. Position stays open, retrying next cycle."


def external_close(mint: str) -> str:
    return f"Position {_short(mint)} closed externally (balance is zero). Marked as manual/external sell."


def monitor_paused(mint: str, error: str, cooldown: float) -> str:
    return f"TSL Paused for {_short(mint)}: {error}. Resuming in {cooldown:.0f}s."


def position_abandoned(mint: str, reason: str) -> str:
    return f"ABANDONED {_short(mint)}: {reason}. Manual action required."


def safety_exit(mint: str, reason: str) -> str:
    return f"EMERGENCY EXIT {_short(mint)}: periodic safety check failed ({reason})"


def bot_started(open_positions: int) -> str:
    return f"Trade bot started. Resuming {open_positions} open position(s)."


def bot_stopping(reason: str) -> str:
    return f"Trade bot shutting down: {reason}"


def loop_error(error: str) -> str:
    return f"Main loop error: {error}"
