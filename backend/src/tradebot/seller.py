"""
Cascading liquidation: 100%, then 50%, then 25% of whatever balance is left,
re-reading the on-chain balance before every tranche.
"""

from __future__ import annotations

import logging
from typing import Tuple

from . import telegram_service as fmt
from .errors import BalanceUnavailableError, NoRouteError, TradebotError
from .models import LiquidationResult, Position
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

TRANCHES = (100, 50, 25)


def _tranche_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, (NoRouteError, BalanceUnavailableError))


class CascadingSeller:
    def __init__(self, ctx, tranches: Tuple[int, ...] = TRANCHES):
        self.ctx = ctx
        self.cfg = ctx.config
        self.tranches = tranches
        self.tranche_retry = RetryPolicy(
            attempts=self.cfg.sell_tranche_attempts,
            base_delay=2.0,
            multiplier=2.0,
            retry_on=(TradebotError,),
            predicate=_tranche_retryable,
        )

    async def liquidate(self, position: Position) -> LiquidationResult:
        wallet = self.ctx.wallet
        mint = position.mint
        decimals = position.decimals
        result = LiquidationResult()
        approved = False

        for pct in self.tranches:
            balance = await wallet.token_balance(mint)
            if wallet.is_dust(balance, decimals):
                break
            amount = balance * pct // 100
            if amount <= 0:
                continue
            approved = approved or self.cfg.approve_before_swap
            try:
                sold_raw, received_raw, signature = await self.tranche_retry.run(
                    self._sell_tranche, mint, amount, label=f"sell {pct}% {mint[:6]}"
                )
            except TradebotError as e:
                result.tranches_failed += 1
                logger.warning(f"[SELL] {pct}% tranche of {mint[:8]}... failed: {e}")
                continue

            sold = sold_raw / 10 ** decimals
            received = received_raw / 10 ** self.cfg.quote_decimals
            result.sold_amount += sold
            result.received_usd += received
            result.sell_tx = signature
            result.tranches_sold += 1
            position.sold_amount += sold
            position.received_usd += received
            position.sell_tx = signature
            await self.ctx.store.record_tranche(position.id, sold, received, signature)
            await self.ctx.notifier.send(fmt.tranche_sold(mint, pct, sold, received, signature))
            # let the balance settle before the next read
            await self.ctx.sleep(self.cfg.tranche_settle_sec)

        remaining = await wallet.token_balance(mint)
        if not wallet.is_dust(remaining, decimals):
            if approved:
                await self._revoke_quietly(mint)
            logger.warning(
                f"[SELL] {mint[:8]}... still holds {remaining} raw after cascade "
                f"({result.tranches_sold} sold, {result.tranches_failed} failed)"
            )
            await self.ctx.notifier.send(
                fmt.sell_incomplete(mint, f"{result.tranches_failed} tranche(s) failed, balance remains")
            )
            return result

        result.closed = True
        if position.sold_amount <= 0:
            result.external = True
            await self.ctx.store.close_external(position.id)
            logger.info(f"[SELL] {mint[:8]}... balance already gone; closed as external sell")
            await self.ctx.notifier.send(fmt.external_close(mint))
            return result

        pnl = position.received_usd - position.spent_usd
        result.pnl = pnl
        position.pnl = pnl
        await self.ctx.store.close_trade(position.id, pnl, position.sell_tx)
        logger.info(
            f"[SELL] {mint[:8]}... closed: spent ${position.spent_usd:.2f}, "
            f"received ${position.received_usd:.2f}, pnl ${pnl:+.2f}"
        )
        await self.ctx.notifier.send(fmt.trade_complete(mint, position.spent_usd, position.received_usd, pnl))
        return result

    async def _sell_tranche(self, mint: str, amount: int) -> Tuple[int, int, str]:
        cfg = self.cfg
        if cfg.approve_before_swap:
            await self.ctx.wallet.approve(mint, amount)
        quote = await self.ctx.jupiter.get_quote(mint, cfg.quote_mint, amount)
        swap = await self.ctx.jupiter.get_swap_transaction(quote, self.ctx.wallet.address)
        signature = await self.ctx.submitter.submit_and_confirm(swap.transaction_b64, swap.last_valid_block_height)
        return quote.in_amount or amount, quote.out_amount, signature

    async def _revoke_quietly(self, mint: str) -> None:
        # best effort; the cascade outcome stands either way
        try:
            await self.ctx.wallet.revoke(mint)
        except Exception as e:
            logger.warning(f"[SELL] Revoke failed for {mint[:8]}...: {e}")
