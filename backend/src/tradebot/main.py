"""
Trade bot entry point: signal loop, position monitors, diagnostics and a
liveness endpoint, all on one event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from functools import partial
from typing import Optional

from aiohttp import web

from . import telegram_service as fmt
from .config import TradebotConfig
from .context import TradingContext, build_context
from .diagnostics import Diagnostics, ErrorPatternHandler
from .errors import ConfigError
from .executor import TradeExecutor
from .models import utcnow
from .position_manager import PositionManager

logger = logging.getLogger(__name__)


async def main_loop(ctx: TradingContext, executor: TradeExecutor, manager: PositionManager) -> None:
    cfg = ctx.config
    while not ctx.shutdown.is_set():
        try:
            if manager.active_count() < cfg.max_open_positions:
                sig = await ctx.intake.next_signal()
                if sig is not None:
                    logger.info(f"[MAIN] Signal {sig.id} for {sig.mint}")
                    position = await executor.process_signal(sig)
                    if position is not None:
                        manager.start_monitoring(position)
        except Exception as e:
            logger.exception("[MAIN] Loop error")
            await ctx.notifier.send(fmt.loop_error(str(e)))
            if ctx.auto_repair is not None:
                await ctx.auto_repair.handle(e)
            await ctx.sleep(cfg.error_cooldown_sec)
            continue
        await ctx.sleep(cfg.signal_check_interval_sec)
    logger.info("[MAIN] Signal loop stopped")


async def diagnostics_loop(ctx: TradingContext, diagnostics: Diagnostics) -> None:
    while not ctx.shutdown.is_set():
        await ctx.sleep(ctx.config.diagnostics_interval_sec)
        if ctx.shutdown.is_set():
            break
        try:
            report = await diagnostics.run()
            if ctx.auto_repair is not None:
                await ctx.auto_repair.handle(report)
        except Exception:
            logger.exception("[DIAG] Diagnostics run failed")


def create_health_app(ctx: TradingContext, manager: PositionManager) -> web.Application:
    async def health(request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "timestamp": utcnow().isoformat(),
                "instance": ctx.instance_id,
                "open_positions": manager.active_count(),
                "shutting_down": ctx.shutdown.is_set(),
            }
        )

    async def stats(request: web.Request) -> web.Response:
        return web.json_response(manager.get_stats(), dumps=partial(json.dumps, default=str))

    app = web.Application()
    app.router.add_get("/", health)
    app.router.add_get("/health", health)
    app.router.add_get("/stats", stats)
    return app


async def start_health_server(ctx: TradingContext, manager: PositionManager, port: int) -> web.AppRunner:
    runner = web.AppRunner(create_health_app(ctx, manager))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info(f"[MAIN] Health endpoint on :{port}/health")
    return runner


def install_signal_handlers(ctx: TradingContext) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(signame: str) -> None:
        if not ctx.shutdown.is_set():
            logger.info(f"[MAIN] {signame} received, shutting down")
            ctx.shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(ctx.shutdown.set))


async def run(cfg: TradebotConfig) -> None:
    ctx = await build_context(cfg)
    error_handler = ErrorPatternHandler()
    logging.getLogger().addHandler(error_handler)
    install_signal_handlers(ctx)

    manager = PositionManager(ctx)
    executor = TradeExecutor(ctx)
    diagnostics = Diagnostics(ctx.store, error_handler=error_handler, log_path=cfg.diagnostics_log)
    runner: Optional[web.AppRunner] = None
    diag_task: Optional[asyncio.Task] = None
    stop_reason = "shutdown requested"
    try:
        await ctx.store.init_schema()
        resumed = await manager.resume_open_positions()
        await ctx.notifier.send(fmt.bot_started(resumed))
        if cfg.health_port:
            runner = await start_health_server(ctx, manager, cfg.health_port)
        diag_task = asyncio.create_task(diagnostics_loop(ctx, diagnostics), name="diagnostics")
        await main_loop(ctx, executor, manager)
    except Exception as e:
        stop_reason = f"fatal error: {e}"
        logger.exception("[MAIN] Fatal error")
        raise
    finally:
        ctx.shutdown.set()
        await ctx.notifier.send(fmt.bot_stopping(stop_reason))
        await manager.wait_closed(timeout=cfg.confirm_timeout_sec + 30)
        if diag_task is not None:
            diag_task.cancel()
            await asyncio.gather(diag_task, return_exceptions=True)
        if runner is not None:
            await runner.cleanup()
        logging.getLogger().removeHandler(error_handler)
        await ctx.close()
        logger.info("[MAIN] Stopped")


def main() -> None:
    try:
        cfg = TradebotConfig.from_env()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"[MAIN] Configuration error: {e}")
        sys.exit(1)
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run(cfg))


if __name__ == "__main__":
    main()
