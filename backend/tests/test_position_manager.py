import asyncio

import pytest

from conftest import MINT, utc

from tradebot.errors import QuoteError, TransactionFailedError
from tradebot.models import ABANDONED_STALE, ABANDONED_UNSELLABLE, MANUAL_OR_EXTERNAL_SELL, SafetyVerdict
from tradebot.position_manager import (
    Abandoned,
    Closed,
    Closing,
    Entered,
    ExitReason,
    Monitoring,
    PositionManager,
    PositionMonitor,
    TrailingStop,
)
from tradebot.seller import CascadingSeller

HELD = 1000 * 10 ** 6


class TestTrailingStop:
    def test_peak_only_moves_up(self):
        stop = TrailingStop(0.10, 3, highest=1.0)
        assert stop.update_peak(1.5)
        assert not stop.update_peak(1.2)
        assert stop.highest == 1.5
        assert stop.stop_price == pytest.approx(1.35)

    def test_fires_after_consecutive_breaches(self):
        stop = TrailingStop(0.10, 3, highest=1.0)
        assert not stop.check(0.89)
        assert not stop.check(0.88)
        assert stop.check(0.87)

    def test_recovery_resets_counter(self):
        stop = TrailingStop(0.10, 3, highest=1.0)
        stop.check(0.85)
        stop.check(0.85)
        assert not stop.check(0.95)
        assert stop.counter == 0
        assert not stop.check(0.85)
        assert stop.counter == 1

    def test_price_exactly_at_stop_is_a_breach(self):
        stop = TrailingStop(0.25, 1, highest=4.0)
        assert stop.check(3.0)

    def test_decimal_stop_boundary_survives_float_rounding(self):
        # 0.00077 * 0.9 rounds to just under 0.000693
        stop = TrailingStop(0.10, 1, highest=0.00077)
        assert stop.check(0.000693)

    def test_just_above_stop_is_not_a_breach(self):
        stop = TrailingStop(0.10, 1, highest=0.00077)
        assert not stop.check(0.0006931)


def make_monitor(ctx, position):
    return PositionMonitor(ctx, position, CascadingSeller(ctx))


@pytest.mark.asyncio
async def test_rise_then_fall_triggers_full_liquidation(ctx, store, wallet, jupiter, notifier):
    position = store.add_trade()
    wallet.balances[MINT] = HELD
    jupiter.price_path = [0.1, 0.15, 0.2, 0.17, 0.17, 0.17]

    state = await make_monitor(ctx, position).run()

    assert isinstance(state, Closed)
    assert store.peaks == [0.15, 0.2]
    closed = store.trades[position.id]
    assert closed.closed_at is not None
    assert closed.pnl == pytest.approx(70.0)
    assert wallet.balances[MINT] == 0
    assert notifier.contains("SELL TRIGGERED")
    assert notifier.contains("TRADE COMPLETE")


@pytest.mark.asyncio
async def test_doubling_then_exact_trailing_drop_sells(ctx, store, wallet, jupiter, notifier):
    position = store.add_trade(spent_usd=0.385)
    wallet.balances[MINT] = HELD
    jupiter.price_path = [0.00077, 0.000693, 0.000693, 0.000693]

    state = await make_monitor(ctx, position).run()

    assert isinstance(state, Closed)
    assert store.peaks == [0.00077]
    assert wallet.balances[MINT] == 0
    assert store.trades[position.id].pnl == pytest.approx(0.693 - 0.385, abs=1e-5)
    assert notifier.contains("trailing_stop")


@pytest.mark.asyncio
async def test_zero_balance_closes_as_external_without_selling(ctx, store, wallet, jupiter, submitter):
    position = store.add_trade()
    wallet.balances[MINT] = 0

    monitor = make_monitor(ctx, position)
    await monitor.tick()

    assert monitor.state == Closed(MANUAL_OR_EXTERNAL_SELL)
    assert store.trades[position.id].sell_tx == MANUAL_OR_EXTERNAL_SELL
    assert jupiter.quotes == []
    assert submitter.submitted == []


@pytest.mark.asyncio
async def test_dust_balance_counts_as_gone(ctx, store, wallet):
    position = store.add_trade()
    wallet.balances[MINT] = 999  # below 0.001 token at 6 decimals
    monitor = make_monitor(ctx, position)
    await monitor.tick()
    assert isinstance(monitor.state, Closed)


@pytest.mark.asyncio
async def test_timeout_while_profitable_keeps_monitoring(ctx, store, wallet, jupiter, submitter):
    position = store.add_trade(created_at=utc(hours=30))
    wallet.balances[MINT] = HELD
    jupiter.prices[MINT] = 0.12

    monitor = make_monitor(ctx, position)
    for _ in range(3):
        await monitor.tick()

    assert monitor.state == Monitoring(0)
    assert submitter.submitted == []
    assert store.trades[position.id].closed_at is None


@pytest.mark.asyncio
async def test_timeout_at_loss_exits(ctx, store, wallet, jupiter, notifier):
    position = store.add_trade(created_at=utc(hours=30))
    wallet.balances[MINT] = HELD
    jupiter.prices[MINT] = 0.095

    monitor = make_monitor(ctx, position)
    await monitor.tick()

    assert isinstance(monitor.state, Closed)
    assert store.trades[position.id].pnl == pytest.approx(-5.0)
    assert notifier.contains("time_exit")


@pytest.mark.asyncio
async def test_periodic_safety_failure_exits_immediately(ctx, config, store, wallet, gate, notifier):
    config.safety_recheck_interval_sec = 0
    gate.verdicts.append(SafetyVerdict.fail("liquidity risk: Low Liquidity", 0.0))
    position = store.add_trade()
    wallet.balances[MINT] = HELD

    monitor = make_monitor(ctx, position)
    await monitor.tick()

    assert gate.calls == [MINT]
    assert isinstance(monitor.state, Closed)
    assert notifier.contains("EMERGENCY EXIT")
    assert notifier.contains(ExitReason.SAFETY_FAILED.value)


@pytest.mark.asyncio
async def test_grace_period_suppresses_stop(ctx, config, store, wallet, jupiter):
    config.stop_grace_period_sec = 3600
    position = store.add_trade()
    wallet.balances[MINT] = HELD
    jupiter.prices[MINT] = 0.05

    monitor = make_monitor(ctx, position)
    assert isinstance(monitor.state, Entered)
    for _ in range(5):
        await monitor.tick()

    assert monitor.state == Monitoring(0)
    assert store.trades[position.id].closed_at is None


@pytest.mark.asyncio
async def test_resumed_position_keeps_persisted_peak(ctx, store, wallet, jupiter):
    position = store.add_trade(highest_price=0.3)
    wallet.balances[MINT] = HELD
    jupiter.prices[MINT] = 0.26

    monitor = make_monitor(ctx, position)
    await monitor.tick()

    assert monitor.stop.highest == 0.3
    assert monitor.state == Monitoring(1)


@pytest.mark.asyncio
async def test_tick_error_with_tokens_held_pauses_and_resumes(ctx, store, wallet, jupiter, notifier):
    position = store.add_trade()
    wallet.balances[MINT] = HELD
    jupiter.errors.append(QuoteError("upstream 502", status=502))
    jupiter.price_path = [0.2, 0.1, 0.1, 0.1]

    state = await make_monitor(ctx, position).run()

    assert notifier.contains("TSL Paused")
    assert isinstance(state, Closed)
    assert store.trades[position.id].closed_at is not None


@pytest.mark.asyncio
async def test_tick_error_with_balance_gone_closes_external(ctx, store, wallet, jupiter):
    position = store.add_trade()
    wallet.balances[MINT] = HELD

    class Vanish(Exception):
        pass

    async def boom(*args, **kwargs):
        wallet.balances[MINT] = 0
        raise Vanish("rpc hiccup")

    jupiter.reference_price = boom
    monitor = make_monitor(ctx, position)
    await monitor.run()

    assert monitor.state == Closed(MANUAL_OR_EXTERNAL_SELL)


@pytest.mark.asyncio
async def test_unsellable_position_is_abandoned_after_repeated_attempts(ctx, config, store, wallet, jupiter, submitter, notifier):
    config.max_close_attempts = 2
    position = store.add_trade(created_at=utc(hours=30))
    wallet.balances[MINT] = HELD
    jupiter.prices[MINT] = 0.05
    submitter.failures.extend(TransactionFailedError("slippage") for _ in range(6))

    monitor = make_monitor(ctx, position)
    await monitor.tick()
    assert monitor.state == Closing(ExitReason.TIME_EXIT)
    assert store.trades[position.id].closed_at is None

    await monitor.tick()
    assert isinstance(monitor.state, Abandoned)
    assert store.trades[position.id].sell_tx == ABANDONED_UNSELLABLE
    assert notifier.contains("ABANDONED")


@pytest.mark.asyncio
async def test_manager_resumes_open_and_abandons_stale(ctx, store, wallet, notifier):
    stale = store.add_trade(mint="StaleMint", created_at=utc(hours=100))
    fresh = store.add_trade(decimals=None)
    wallet.balances[MINT] = 0

    manager = PositionManager(ctx)
    resumed = await manager.resume_open_positions()
    await manager.wait_closed(timeout=2)
    await asyncio.sleep(0)

    assert resumed == 1
    assert store.trades[stale.id].sell_tx == ABANDONED_STALE
    assert store.trades[fresh.id].sell_tx == MANUAL_OR_EXTERNAL_SELL
    assert fresh.decimals == 6
    assert manager.active_count() == 0
    assert manager.get_stats()["external_closes"] == 1


@pytest.mark.asyncio
async def test_manager_stops_monitors_on_shutdown(ctx, config, store, wallet, jupiter):
    config.price_check_interval_sec = 30
    position = store.add_trade()
    wallet.balances[MINT] = HELD

    manager = PositionManager(ctx)
    manager.start_monitoring(position)
    await asyncio.sleep(0.01)
    assert manager.active_count() == 1
    stats = manager.get_stats()
    assert stats["positions"][0]["mint"] == MINT

    ctx.shutdown.set()
    await manager.wait_closed(timeout=2)

    assert manager.active_count() == 0
    assert store.trades[position.id].closed_at is None
