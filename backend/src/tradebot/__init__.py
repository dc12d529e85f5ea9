# Signal-driven Solana trade bot
from .config import TradebotConfig, load_keypair
from .context import TradingContext, build_context
from .database import TradeStore, create_pool
from .diagnostics import AutoRepair, Diagnostics, ErrorPatternHandler, HealthReport
from .executor import TradeExecutor
from .jupiter import JupiterClient
from .models import (
    ABANDONED_STALE,
    ABANDONED_UNSELLABLE,
    MANUAL_OR_EXTERNAL_SELL,
    LiquidationResult,
    Position,
    Quote,
    SafetyVerdict,
    Signal,
    SwapTransaction,
)
from .position_manager import PositionManager, PositionMonitor, TrailingStop
from .retry import RetryPolicy
from .safety import SafetyGate
from .seller import CascadingSeller
from .signals import SignalIntake
from .submitter import TransactionSubmitter
from .telegram_service import Notifier
from .wallet import Wallet

__all__ = [
    "TradebotConfig",
    "load_keypair",
    "TradingContext",
    "build_context",
    "TradeStore",
    "create_pool",
    "AutoRepair",
    "Diagnostics",
    "ErrorPatternHandler",
    "HealthReport",
    "TradeExecutor",
    "JupiterClient",
    "ABANDONED_STALE",
    "ABANDONED_UNSELLABLE",
    "MANUAL_OR_EXTERNAL_SELL",
    "LiquidationResult",
    "Position",
    "Quote",
    "SafetyVerdict",
    "Signal",
    "SwapTransaction",
    "PositionManager",
    "PositionMonitor",
    "TrailingStop",
    "RetryPolicy",
    "SafetyGate",
    "CascadingSeller",
    "SignalIntake",
    "TransactionSubmitter",
    "Notifier",
    "Wallet",
]
