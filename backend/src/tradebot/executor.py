"""
Buy path: signal -> intake rules -> balance -> safety gate -> swap -> open trade.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import telegram_service as fmt
from .errors import BuyError, DuplicatePositionError, InsufficientBalanceError, TradebotError
from .models import Position, Signal

logger = logging.getLogger(__name__)


class TradeExecutor:
    def __init__(self, ctx):
        self.ctx = ctx
        self.cfg = ctx.config
        self.buys_executed = 0
        self.buys_failed = 0

    async def process_signal(self, signal: Signal) -> Optional[Position]:
        """
        Act on one signal. The signal is consumed up front so it is never
        acted on twice; every rejection is logged and most are notified.
        Returns the opened position, or None when nothing was bought.
        """
        mint = signal.mint
        actionable, reason = await self.ctx.intake.is_actionable(mint)
        if not actionable:
            await self.ctx.intake.discard(signal, f"skipped: {reason}")
            return None
        await self.ctx.intake.discard(signal, "accepted")

        try:
            await self._require_quote_balance()
        except InsufficientBalanceError as e:
            logger.warning(f"[BUY] {mint[:8]}... discarded: {e}")
            await self.ctx.notifier.send(fmt.insufficient_balance(mint, e.have, e.need))
            return None

        verdict = await self.ctx.gate.check(mint)
        if not verdict.passed:
            await self.ctx.notifier.send(fmt.safety_rejected(mint, verdict.reason))
            return None

        try:
            position = await self.buy(mint)
        except TradebotError as e:
            self.buys_failed += 1
            logger.error(f"[BUY] {mint[:8]}... failed: {e}")
            await self.ctx.notifier.send(fmt.buy_failed(mint, str(e)))
            return None
        return position

    async def _require_quote_balance(self) -> None:
        raw = await self.ctx.wallet.token_balance(self.cfg.quote_mint)
        have = raw / 10 ** self.cfg.quote_decimals
        if have < self.cfg.amount_to_swap_usd:
            raise InsufficientBalanceError(have, self.cfg.amount_to_swap_usd)

    async def buy(self, mint: str) -> Position:
        cfg = self.cfg
        wallet = self.ctx.wallet
        decimals = await wallet.token_decimals(mint)
        amount_raw = cfg.trade_amount_raw

        approved = False
        try:
            if cfg.approve_before_swap:
                await wallet.approve(cfg.quote_mint, amount_raw)
                approved = True
            quote = await self.ctx.jupiter.get_quote(cfg.quote_mint, mint, amount_raw)
            swap = await self.ctx.jupiter.get_swap_transaction(quote, wallet.address)
            signature = await self.ctx.submitter.submit_and_confirm(
                swap.transaction_b64, swap.last_valid_block_height
            )
        finally:
            if approved:
                await self._revoke_quietly(cfg.quote_mint)

        bought = quote.out_amount / 10 ** decimals
        spent = quote.in_amount / 10 ** cfg.quote_decimals if quote.in_amount else cfg.amount_to_swap_usd
        if bought <= 0:
            raise BuyError(f"swap for {mint} reported zero output")
        price = spent / bought

        try:
            position = await self.ctx.store.insert_trade(
                mint=mint,
                bought_amount=bought,
                spent_usd=spent,
                buy_tx=signature,
                decimals=decimals,
                entry_price=price,
            )
        except DuplicatePositionError:
            logger.critical(f"[BUY] Bought {mint} ({signature}) but an open row already exists")
            raise
        except Exception as e:
            logger.critical(f"[BUY] Bought {mint} ({signature}) but could not record it: {e}")
            raise BuyError(f"bought {mint} in {signature} but failed to record trade: {e}") from e

        self.buys_executed += 1
        logger.info(f"[BUY] {mint[:8]}... bought {bought:,.4f} for ${spent:.2f} @ ${price:.10f} ({signature})")
        await self.ctx.notifier.send(fmt.buy_executed(mint, spent, bought, price, signature))
        return position

    async def _revoke_quietly(self, mint: str) -> None:
        # the swap has already settled; a failed revoke must not lose it
        try:
            await self.ctx.wallet.revoke(mint)
        except Exception as e:
            logger.warning(f"[BUY] Revoke failed for {mint[:8]}...: {e}")
