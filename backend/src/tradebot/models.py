"""
Records shared between intake, execution, monitoring and the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

MANUAL_OR_EXTERNAL_SELL = "MANUAL_OR_EXTERNAL_SELL"
ABANDONED_STALE = "ABANDONED_STALE"
ABANDONED_UNSELLABLE = "ABANDONED_UNSELLABLE"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Signal:
    id: int
    mint: str
    created_at: datetime

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.created_at).total_seconds()


@dataclass
class Position:
    id: int
    mint: str
    bought_amount: float
    spent_usd: float
    buy_tx: str
    created_at: datetime
    decimals: Optional[int]
    highest_price: Optional[float] = None
    sold_amount: float = 0.0
    received_usd: float = 0.0
    pnl: Optional[float] = None
    sell_tx: Optional[str] = None
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.highest_price is None:
            self.highest_price = self.entry_price

    @property
    def entry_price(self) -> float:
        return self.spent_usd / self.bought_amount if self.bought_amount else 0.0

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    def holding_hours(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.created_at).total_seconds() / 3600

    def pl_fraction(self, price: float) -> float:
        if not self.entry_price:
            return 0.0
        return (price - self.entry_price) / self.entry_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mint": self.mint,
            "bought_amount": self.bought_amount,
            "spent_usd": self.spent_usd,
            "entry_price": self.entry_price,
            "highest_price": self.highest_price,
            "sold_amount": self.sold_amount,
            "received_usd": self.received_usd,
            "buy_tx": self.buy_tx,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Quote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class SwapTransaction:
    transaction_b64: str
    last_valid_block_height: Optional[int] = None


@dataclass
class SafetyVerdict:
    passed: bool
    price_impact_pct: float
    reason: str = ""
    risks: List[str] = field(default_factory=list)

    @classmethod
    def fail(cls, reason: str, price_impact_pct: float = float("inf")) -> "SafetyVerdict":
        return cls(passed=False, price_impact_pct=price_impact_pct, reason=reason)


@dataclass
class LiquidationResult:
    sold_amount: float = 0.0
    received_usd: float = 0.0
    sell_tx: Optional[str] = None
    closed: bool = False
    external: bool = False
    tranches_sold: int = 0
    tranches_failed: int = 0
    pnl: Optional[float] = None

    @property
    def any_success(self) -> bool:
        return self.tranches_sold > 0
