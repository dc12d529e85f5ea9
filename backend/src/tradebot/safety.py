"""
Pre-entry and periodic safety gate.

Two independent checks, both fail-closed:
  1. Round-trip simulation: quote trade-size quote currency into the token,
     then quote the resulting token amount back. The summed price impact of
     both legs must stay under the configured threshold.
  2. RugCheck report: any liquidity risk rated "danger" fails the token.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import telegram_service as fmt
from .errors import NoRouteError, QuoteError, RiskProviderUnavailableError
from .jupiter import JupiterClient
from .models import SafetyVerdict
from .retry import RetryPolicy
from .risk_sources import RugCheckClient, liquidity_danger

logger = logging.getLogger(__name__)


class SafetyGate:
    def __init__(
        self,
        jupiter: JupiterClient,
        rugcheck: RugCheckClient,
        notifier,
        quote_mint: str,
        trade_amount_raw: int,
        max_impact_pct: float,
        no_route_attempts: int = 3,
        no_route_delay: float = 1.0,
    ):
        self.jupiter = jupiter
        self.rugcheck = rugcheck
        self.notifier = notifier
        self.quote_mint = quote_mint
        self.trade_amount_raw = trade_amount_raw
        self.max_impact_pct = max_impact_pct
        self.no_route_retry = RetryPolicy(
            attempts=no_route_attempts,
            base_delay=no_route_delay,
            multiplier=2.0,
            retry_on=(NoRouteError,),
        )

    async def check(self, mint: str) -> SafetyVerdict:
        verdict = await self.round_trip_impact(mint)
        if not verdict.passed:
            logger.warning(f"[SAFETY] {mint[:8]}... failed: {verdict.reason}")
            return verdict
        risk = await self.rug_check(mint)
        if not risk.passed:
            risk.price_impact_pct = verdict.price_impact_pct
            logger.warning(f"[SAFETY] {mint[:8]}... failed: {risk.reason}")
            return risk
        logger.info(f"[SAFETY] {mint[:8]}... passed (round trip {verdict.price_impact_pct:.2f}%)")
        return verdict

    async def round_trip_impact(self, mint: str, amount_raw: Optional[int] = None) -> SafetyVerdict:
        amount = amount_raw or self.trade_amount_raw
        try:
            buy = await self.no_route_retry.run(
                self.jupiter.get_quote, self.quote_mint, mint, amount, label=f"buy sim {mint[:6]}"
            )
            sell = await self.no_route_retry.run(
                self.jupiter.get_quote, mint, self.quote_mint, buy.out_amount, label=f"sell sim {mint[:6]}"
            )
        except NoRouteError as e:
            return SafetyVerdict.fail(f"no route: {e}")
        except QuoteError as e:
            return SafetyVerdict.fail(f"quote unavailable: {e}")
        except Exception as e:
            logger.exception(f"[SAFETY] Unexpected simulation error for {mint}")
            return SafetyVerdict.fail(f"simulation error: {e}")

        impact = buy.price_impact_pct + sell.price_impact_pct
        if impact > self.max_impact_pct:
            return SafetyVerdict(
                passed=False,
                price_impact_pct=impact,
                reason=f"round-trip impact {impact:.2f}% above {self.max_impact_pct:.2f}%",
            )
        return SafetyVerdict(passed=True, price_impact_pct=impact, reason="ok")

    async def rug_check(self, mint: str) -> SafetyVerdict:
        try:
            report = await self.rugcheck.report(mint)
        except RiskProviderUnavailableError as e:
            await self.notifier.send(fmt.risk_provider_down(mint, str(e)))
            return SafetyVerdict.fail(f"risk provider unavailable: {e}")
        dangers = liquidity_danger(report)
        if dangers:
            return SafetyVerdict(
                passed=False,
                price_impact_pct=0.0,
                reason=f"liquidity risk: {', '.join(dangers)}",
                risks=dangers,
            )
        return SafetyVerdict(passed=True, price_impact_pct=0.0, reason="ok")
