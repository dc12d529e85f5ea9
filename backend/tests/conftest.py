# backend/tests/conftest.py
"""
Shared fixtures: in-memory stand-ins for the store, the wallet, the
aggregator and the submitter. Swaps submitted through FakeSubmitter are
applied to FakeWallet balances so cascades see real balance changes.
"""
import itertools
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from tradebot.config import TradebotConfig, USDC_MINT
from tradebot.context import TradingContext
from tradebot.errors import DuplicatePositionError, NoRouteError
from tradebot.models import ABANDONED_STALE, MANUAL_OR_EXTERNAL_SELL, Position, Quote, SafetyVerdict, Signal, SwapTransaction
from tradebot.signals import SignalIntake
from tradebot.wallet import dust_threshold

MINT = "So1aNaTokenMint1111111111111111111111111111"
TOKEN_DECIMALS = 6


def utc(**delta) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**delta)


class FakeStore:
    def __init__(self):
        self.trades: Dict[int, Position] = {}
        self.signals: List[dict] = []
        self.peaks: List[float] = []
        self.tranches: List[tuple] = []
        self.reconnects = 0
        self.ping_error: Optional[Exception] = None
        self._ids = itertools.count(1)

    def add_signal(self, mint: str, age: timedelta = timedelta(seconds=10)) -> int:
        sid = len(self.signals) + 1
        self.signals.append({"id": sid, "mint": mint, "created_at": datetime.now(timezone.utc) - age, "processed": False})
        return sid

    def add_trade(self, **kwargs) -> Position:
        defaults = dict(
            id=next(self._ids),
            mint=MINT,
            bought_amount=1000.0,
            spent_usd=100.0,
            buy_tx="buysig",
            created_at=datetime.now(timezone.utc),
            decimals=TOKEN_DECIMALS,
        )
        defaults.update(kwargs)
        position = Position(**defaults)
        self.trades[position.id] = position
        return position

    async def expire_stale_signals(self, cutoff):
        n = 0
        for s in self.signals:
            if not s["processed"] and s["created_at"] < cutoff:
                s["processed"] = True
                n += 1
        return n

    async def next_signal(self, cutoff):
        pending = [s for s in self.signals if not s["processed"] and s["created_at"] >= cutoff]
        if not pending:
            return None
        s = min(pending, key=lambda r: (r["created_at"], r["id"]))
        return Signal(id=s["id"], mint=s["mint"], created_at=s["created_at"])

    async def mark_signal_processed(self, signal_id):
        for s in self.signals:
            if s["id"] == signal_id:
                s["processed"] = True

    async def has_open_position(self, mint):
        return any(p.mint == mint and p.closed_at is None for p in self.trades.values())

    async def last_closed_at(self, mint):
        closed = [p.closed_at for p in self.trades.values() if p.mint == mint and p.closed_at is not None]
        return max(closed) if closed else None

    async def open_trades(self):
        return [p for p in self.trades.values() if p.closed_at is None]

    async def count_open(self):
        return len(await self.open_trades())

    async def count_open_older_than(self, hours):
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        return len([p for p in await self.open_trades() if p.created_at < cutoff])

    async def ping(self):
        if self.ping_error:
            raise self.ping_error
        return True

    async def insert_trade(self, mint, bought_amount, spent_usd, buy_tx, decimals, entry_price):
        if await self.has_open_position(mint):
            raise DuplicatePositionError(mint)
        return self.add_trade(
            mint=mint,
            bought_amount=bought_amount,
            spent_usd=spent_usd,
            buy_tx=buy_tx,
            decimals=decimals,
            highest_price=entry_price,
        )

    async def update_peak(self, trade_id, highest_price):
        self.peaks.append(highest_price)

    async def record_tranche(self, trade_id, sold_amount, received_usd, sell_tx):
        self.tranches.append((trade_id, sold_amount, received_usd, sell_tx))

    def _close(self, trade_id, sell_tx, pnl=None):
        p = self.trades[trade_id]
        if p.closed_at is not None:
            return False
        p.closed_at = datetime.now(timezone.utc)
        if sell_tx is not None:
            p.sell_tx = sell_tx
        p.pnl = pnl
        return True

    async def close_trade(self, trade_id, pnl, sell_tx):
        return self._close(trade_id, sell_tx, pnl)

    async def close_external(self, trade_id):
        return self._close(trade_id, MANUAL_OR_EXTERNAL_SELL)

    async def mark_abandoned(self, trade_id, reason):
        return self._close(trade_id, reason)

    async def abandon_stale(self, max_age_hours):
        cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
        stale = [p for p in await self.open_trades() if p.created_at < cutoff]
        for p in stale:
            self._close(p.id, ABANDONED_STALE)
        return len(stale)

    async def reconnect(self):
        self.reconnects += 1

    async def close(self):
        pass


class FakeWallet:
    address = "WaLLet1111111111111111111111111111111111111"

    def __init__(self, dust_decimals: int = 3):
        self.balances: Dict[str, int] = {}
        self.decimals: Dict[str, int] = {USDC_MINT: 6, MINT: TOKEN_DECIMALS}
        self.dust_decimals = dust_decimals
        self.balance_reads: List[tuple] = []
        self.approvals: List[tuple] = []
        self.revokes: List[str] = []
        self.balance_error: Optional[Exception] = None
        self.revoke_error: Optional[Exception] = None

    async def token_balance(self, mint):
        if self.balance_error:
            raise self.balance_error
        value = self.balances.get(mint, 0)
        self.balance_reads.append((mint, value))
        return value

    async def token_decimals(self, mint):
        return self.decimals[mint]

    def is_dust(self, raw_amount, decimals):
        return raw_amount <= dust_threshold(decimals, self.dust_decimals)

    async def approve(self, mint, amount):
        self.approvals.append((mint, amount))
        return "approvesig"

    async def revoke(self, mint):
        self.revokes.append(mint)
        if self.revoke_error:
            raise self.revoke_error
        return "revokesig"


class FakeJupiter:
    """Constant-price aggregator: `prices[mint]` is the USD price of one whole token."""

    def __init__(self, wallet: FakeWallet):
        self.wallet = wallet
        self.prices: Dict[str, float] = {MINT: 0.1}
        self.price_path: List[float] = []
        self.impact_pct = 0.5
        self.errors: List[Exception] = []
        self.quotes: List[Quote] = []
        self.swaps: Dict[str, Quote] = {}

    async def get_quote(self, input_mint, output_mint, amount):
        if self.errors:
            raise self.errors.pop(0)
        if input_mint == USDC_MINT:
            price = self.prices[output_mint]
            dec = self.wallet.decimals[output_mint]
            out = int(amount / 10 ** 6 / price * 10 ** dec)
        else:
            price = self.prices[input_mint]
            dec = self.wallet.decimals[input_mint]
            out = int(amount / 10 ** dec * price * 10 ** 6)
        if out <= 0:
            raise NoRouteError("zero", status=200, code="ZERO_OUTPUT")
        quote = Quote(input_mint, output_mint, int(amount), out, self.impact_pct, raw={"n": len(self.quotes)})
        self.quotes.append(quote)
        return quote

    async def get_swap_transaction(self, quote, wallet):
        tx_id = f"tx{len(self.swaps) + 1}"
        self.swaps[tx_id] = quote
        return SwapTransaction(transaction_b64=tx_id, last_valid_block_height=1000)

    async def reference_price(self, mint, decimals, quote_mint, quote_decimals):
        if self.errors:
            raise self.errors.pop(0)
        if self.price_path:
            self.prices[mint] = self.price_path.pop(0)
        return self.prices[mint]


class FakeSubmitter:
    def __init__(self, wallet: FakeWallet, jupiter: FakeJupiter):
        self.wallet = wallet
        self.jupiter = jupiter
        self.submitted: List[Quote] = []
        self.failures: List[Exception] = []

    async def submit_and_confirm(self, raw_tx_b64, last_valid_block_height=None):
        if self.failures:
            raise self.failures.pop(0)
        quote = self.jupiter.swaps[raw_tx_b64]
        self.wallet.balances[quote.input_mint] = self.wallet.balances.get(quote.input_mint, 0) - quote.in_amount
        self.wallet.balances[quote.output_mint] = self.wallet.balances.get(quote.output_mint, 0) + quote.out_amount
        self.submitted.append(quote)
        return f"sig{len(self.submitted)}"


class FakeNotifier:
    def __init__(self):
        self.messages: List[str] = []

    async def send(self, text):
        self.messages.append(text)
        return True

    def contains(self, needle: str) -> bool:
        return any(needle in m for m in self.messages)


class FakeGate:
    def __init__(self):
        self.verdicts: List[SafetyVerdict] = []
        self.calls: List[str] = []

    async def check(self, mint):
        self.calls.append(mint)
        if self.verdicts:
            return self.verdicts.pop(0)
        return SafetyVerdict(passed=True, price_impact_pct=1.2, reason="ok")


@pytest.fixture
def config():
    return TradebotConfig(
        rpc_url="http://localhost:8899",
        database_url="postgresql://localhost/test",
        wallet_private_key="unused",
        amount_to_swap_usd=100.0,
        trailing_stop_pct=10.0,
        safe_price_impact_pct=5.0,
        stop_confirmation_ticks=3,
        stop_grace_period_sec=0,
        price_check_interval_sec=0,
        signal_check_interval_sec=0,
        recovery_cooldown_sec=0,
        error_cooldown_sec=0,
        sell_tranche_attempts=1,
        max_close_attempts=3,
        tranche_settle_sec=0,
        approve_before_swap=True,
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def jupiter(wallet):
    return FakeJupiter(wallet)


@pytest.fixture
def submitter(wallet, jupiter):
    return FakeSubmitter(wallet, jupiter)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def gate():
    return FakeGate()


@pytest.fixture
def ctx(config, store, wallet, jupiter, submitter, notifier, gate):
    return TradingContext(
        config=config,
        store=store,
        wallet=wallet,
        jupiter=jupiter,
        submitter=submitter,
        notifier=notifier,
        gate=gate,
        intake=SignalIntake(store, cooldown_hours=config.cooldown_hours, max_age_minutes=config.signal_max_age_minutes),
        instance_id="abc123",
    )
