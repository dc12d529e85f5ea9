"""
External risk source: RugCheck token reports.

Unlike best-effort enrichment, the bot treats an unreachable provider as a
failed check, so every failure mode here raises RiskProviderUnavailableError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

import aiohttp

from .errors import RiskProviderUnavailableError

logger = logging.getLogger(__name__)


class RugCheckClient:
    def __init__(self, session: aiohttp.ClientSession, base_url: str = "https://api.rugcheck.xyz/v1", timeout: float = 10.0):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def report(self, mint: str) -> Dict[str, Any]:
        url = f"{self.base_url}/tokens/{mint}/report"
        try:
            async with self.session.get(url, timeout=self.timeout) as resp:
                if resp.status != 200:
                    raise RiskProviderUnavailableError(f"RugCheck returned {resp.status} for {mint}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RiskProviderUnavailableError(f"RugCheck request failed: {e}") from e
        if not isinstance(data, dict):
            raise RiskProviderUnavailableError("RugCheck report is not a JSON object")
        return data


def liquidity_danger(report: Dict[str, Any]) -> List[str]:
    """Names of liquidity risks the report rates as danger."""
    found = []
    for risk in report.get("risks") or []:
        name = str(risk.get("name", ""))
        level = str(risk.get("level", "")).lower()
        if "liquidity" in name.lower() and level == "danger":
            found.append(name)
    return found
