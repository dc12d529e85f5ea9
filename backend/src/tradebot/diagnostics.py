"""
Health probes and the one automatic repair the bot is allowed to make:
rebuilding the database pool after the connection is lost.
"""

from __future__ import annotations

import json
import logging
import os
from collections import deque
from dataclasses import asdict, dataclass, field
from time import time
from typing import Deque, Dict, List, Optional, Tuple

import asyncpg

from .models import utcnow

logger = logging.getLogger(__name__)

HEALTHY = "HEALTHY"
WARNING = "WARNING"
CRITICAL = "CRITICAL"
_SEVERITY = {HEALTHY: 0, WARNING: 1, CRITICAL: 2}

# log substring -> pattern name
ERROR_PATTERNS: Dict[str, str] = {
    "COULD_NOT_FIND_ANY_ROUTE": "no_route",
    "NO_ROUTES_FOUND": "no_route",
    "block height exceeded": "tx_expired",
    "TransactionExpiredBlockheightExceeded": "tx_expired",
    "not found after expiry": "tx_expired",
    "Connection terminated": "db_connection",
    "connection was closed": "db_connection",
    "ConnectionDoesNotExistError": "db_connection",
    "rate limited": "rate_limited",
    " 429": "rate_limited",
    "insufficient": "insufficient_funds",
}

DB_CONNECTION_MARKERS = ("Connection terminated", "connection was closed", "connection is closed")


class ErrorPatternHandler(logging.Handler):
    """Counts known error patterns seen in WARNING+ log records over a sliding window."""

    def __init__(self, window_sec: float = 3600.0):
        super().__init__(level=logging.WARNING)
        self.window_sec = window_sec
        self.events: Deque[Tuple[float, str]] = deque(maxlen=5000)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return
        if record.exc_info and record.exc_info[1] is not None:
            message = f"{message} {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        for needle, name in ERROR_PATTERNS.items():
            if needle in message:
                self.events.append((record.created, name))
                break

    def counts(self, now: Optional[float] = None) -> Dict[str, int]:
        cutoff = (now or time()) - self.window_sec
        out: Dict[str, int] = {}
        for ts, name in self.events:
            if ts >= cutoff:
                out[name] = out.get(name, 0) + 1
        return out


@dataclass
class HealthReport:
    status: str = HEALTHY
    issues: List[str] = field(default_factory=list)
    details: Dict[str, object] = field(default_factory=dict)
    checked_at: str = field(default_factory=lambda: utcnow().isoformat())
    database_ok: bool = True

    def flag(self, severity: str, issue: str) -> None:
        self.issues.append(f"{severity}: {issue}")
        if _SEVERITY[severity] > _SEVERITY[self.status]:
            self.status = severity

    def to_dict(self) -> dict:
        return asdict(self)


class Diagnostics:
    def __init__(
        self,
        store,
        error_handler: Optional[ErrorPatternHandler] = None,
        log_path: Optional[str] = None,
        max_open_positions: int = 5,
        stale_hours: float = 24.0,
        db_error_threshold: int = 3,
        error_threshold: int = 10,
    ):
        self.store = store
        self.error_handler = error_handler
        self.log_path = log_path
        self.max_open_positions = max_open_positions
        self.stale_hours = stale_hours
        self.db_error_threshold = db_error_threshold
        self.error_threshold = error_threshold
        self.last_report: Optional[HealthReport] = None

    async def run(self) -> HealthReport:
        report = HealthReport()
        try:
            if not await self.store.ping():
                report.database_ok = False
                report.flag(CRITICAL, "database ping returned unexpected result")
        except Exception as e:
            report.database_ok = False
            report.flag(CRITICAL, f"database unreachable: {e}")

        if report.database_ok:
            open_count = await self.store.count_open()
            stale = await self.store.count_open_older_than(self.stale_hours)
            report.details["open_positions"] = open_count
            report.details["stale_positions"] = stale
            if open_count > self.max_open_positions:
                report.flag(WARNING, f"{open_count} open positions (more than {self.max_open_positions})")
            if stale:
                report.flag(WARNING, f"{stale} position(s) open longer than {self.stale_hours:.0f}h")

        if self.error_handler is not None:
            counts = self.error_handler.counts()
            report.details["error_patterns"] = counts
            for name, count in counts.items():
                if name == "db_connection" and count >= self.db_error_threshold:
                    report.flag(CRITICAL, f"{count} database connection errors in the last hour")
                elif count >= self.error_threshold:
                    report.flag(WARNING, f"{count} '{name}' errors in the last hour")

        self.last_report = report
        log = logger.info if report.status == HEALTHY else logger.warning
        log(f"[DIAG] {report.status} {'; '.join(report.issues)}")
        self._write(report)
        return report

    def _write(self, report: HealthReport) -> None:
        if not self.log_path:
            return
        try:
            directory = os.path.dirname(self.log_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(report.to_dict(), default=str) + "\n")
        except OSError as e:
            logger.error(f"[DIAG] Could not write diagnostics log: {e}")


def is_connection_error(error: BaseException) -> bool:
    if isinstance(error, (asyncpg.PostgresConnectionError, asyncpg.InterfaceError, ConnectionError)):
        return True
    text = str(error)
    return any(marker in text for marker in DB_CONNECTION_MARKERS)


class AutoRepair:
    """Rebuilds the store's pool after database connection loss, at most once per interval."""

    def __init__(self, store, notifier, min_interval_sec: float = 60.0):
        self.store = store
        self.notifier = notifier
        self.min_interval_sec = min_interval_sec
        self.last_repair = 0.0
        self.repairs = 0

    def needs_repair(self, subject) -> bool:
        if isinstance(subject, HealthReport):
            return subject.status == CRITICAL and not subject.database_ok
        if isinstance(subject, BaseException):
            return is_connection_error(subject)
        return False

    async def handle(self, subject) -> bool:
        """Returns True when a reconnect was performed. Never raises."""
        if not self.needs_repair(subject):
            return False
        now = time()
        if now - self.last_repair < self.min_interval_sec:
            logger.info("[DIAG] Reconnect skipped, last attempt too recent")
            return False
        self.last_repair = now
        await self.notifier.send("Database connection lost. Rebuilding connection pool.")
        try:
            await self.store.reconnect()
        except Exception as e:
            logger.error(f"[DIAG] Emergency reconnect failed: {e}")
            await self.notifier.send(f"Database reconnect failed: {e}")
            return False
        self.repairs += 1
        await self.notifier.send("Database connection pool rebuilt.")
        return True
