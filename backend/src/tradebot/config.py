"""
Runtime configuration, read once from the environment at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from base58 import b58decode
from solders.keypair import Keypair

from .errors import ConfigError

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDC_DECIMALS = 6
JUPITER_PROGRAM_ID = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class TradebotConfig:
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    database_url: str = ""
    wallet_private_key: str = field(default="", repr=False)
    wallet_keypair_path: str = ""
    telegram_token: str = field(default="", repr=False)
    telegram_chat_id: str = ""
    jupiter_url: str = "https://quote-api.jup.ag/v6"
    rugcheck_url: str = "https://api.rugcheck.xyz/v1"
    quote_mint: str = USDC_MINT
    quote_decimals: int = USDC_DECIMALS
    aggregator_program_id: str = JUPITER_PROGRAM_ID

    # Trading
    amount_to_swap_usd: float = 10.0
    trailing_stop_pct: float = 10.0
    safe_price_impact_pct: float = 5.0
    slippage_bps: int = 50
    approve_before_swap: bool = True

    # Timing
    price_check_interval_sec: float = 5.0
    signal_check_interval_sec: float = 5.0
    max_holding_hours: float = 24.0
    timeout_pl_threshold: float = -0.01
    cooldown_hours: float = 1.0
    signal_max_age_minutes: float = 15.0
    stop_confirmation_ticks: int = 3
    stop_grace_period_sec: float = 60.0
    safety_recheck_interval_sec: float = 3600.0
    recovery_cooldown_sec: float = 60.0
    resume_max_age_hours: float = 72.0
    error_cooldown_sec: float = 30.0

    # Limits and retries
    max_open_positions: int = 1
    dust_decimals: int = 3
    quote_attempts: int = 3
    no_route_attempts: int = 3
    sell_tranche_attempts: int = 3
    max_close_attempts: int = 5
    confirm_fallback_attempts: int = 3
    confirm_fallback_delay_sec: float = 5.0
    tranche_settle_sec: float = 5.0
    request_timeout_sec: float = 15.0
    confirm_timeout_sec: float = 90.0

    # Ops
    health_port: int = 8080
    diagnostics_interval_sec: float = 600.0
    diagnostics_log: str = os.path.join("logs", "tradebot-diagnostics.jsonl")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "TradebotConfig":
        cfg = cls(
            rpc_url=os.getenv("SOLANA_RPC_URL", "").strip(),
            database_url=os.getenv("DATABASE_URL", "").strip(),
            wallet_private_key=os.getenv("WALLET_PRIVATE_KEY", "").strip(),
            wallet_keypair_path=os.getenv("WALLET_KEYPAIR_PATH", "").strip(),
            telegram_token=os.getenv("TELEGRAM_BOT_TOKEN", os.getenv("TELEGRAM_TOKEN", "")).strip(),
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID", "").strip(),
            jupiter_url=os.getenv("JUPITER_API_URL", "https://quote-api.jup.ag/v6").rstrip("/"),
            rugcheck_url=os.getenv("RUGCHECK_API_URL", "https://api.rugcheck.xyz/v1").rstrip("/"),
            amount_to_swap_usd=float(os.getenv("AMOUNT_TO_SWAP_USD", "10")),
            trailing_stop_pct=float(os.getenv("TRAILING_STOP_PERCENTAGE", "10")),
            safe_price_impact_pct=float(os.getenv("SAFE_PRICE_IMPACT_PERCENT", "5")),
            slippage_bps=int(os.getenv("SLIPPAGE_BPS", "50")),
            approve_before_swap=_env_bool("APPROVE_BEFORE_SWAP", True),
            price_check_interval_sec=float(os.getenv("PRICE_CHECK_INTERVAL_MS", "5000")) / 1000,
            signal_check_interval_sec=float(os.getenv("SIGNAL_CHECK_INTERVAL_MS", "5000")) / 1000,
            max_holding_hours=float(os.getenv("MAX_HOLDING_TIME_HOURS", "24")),
            timeout_pl_threshold=float(os.getenv("TIMEOUT_SELL_PL_THRESHOLD", "-0.01")),
            cooldown_hours=float(os.getenv("COOLDOWN_HOURS", "1.0")),
            signal_max_age_minutes=float(os.getenv("SIGNAL_MAX_AGE_MINUTES", "15")),
            stop_confirmation_ticks=int(os.getenv("STOP_CONFIRMATION_TICKS", "3")),
            stop_grace_period_sec=float(os.getenv("STOP_GRACE_PERIOD_SEC", "60")),
            safety_recheck_interval_sec=float(os.getenv("SAFETY_RECHECK_INTERVAL_SEC", "3600")),
            recovery_cooldown_sec=float(os.getenv("RECOVERY_COOLDOWN_SEC", "60")),
            resume_max_age_hours=float(os.getenv("RESUME_MAX_AGE_HOURS", "72")),
            error_cooldown_sec=float(os.getenv("ERROR_COOLDOWN_SEC", "30")),
            max_open_positions=int(os.getenv("MAX_OPEN_POSITIONS", "1")),
            dust_decimals=int(os.getenv("DUST_DECIMALS", "3")),
            quote_attempts=int(os.getenv("QUOTE_ATTEMPTS", "3")),
            no_route_attempts=int(os.getenv("NO_ROUTE_ATTEMPTS", "3")),
            sell_tranche_attempts=int(os.getenv("SELL_TRANCHE_ATTEMPTS", "3")),
            max_close_attempts=int(os.getenv("MAX_CLOSE_ATTEMPTS", "5")),
            confirm_fallback_attempts=int(os.getenv("CONFIRM_FALLBACK_ATTEMPTS", "3")),
            confirm_fallback_delay_sec=float(os.getenv("CONFIRM_FALLBACK_DELAY_SEC", "5")),
            tranche_settle_sec=float(os.getenv("TRANCHE_SETTLE_SEC", "5")),
            request_timeout_sec=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "15")),
            confirm_timeout_sec=float(os.getenv("CONFIRM_TIMEOUT_SECONDS", "90")),
            health_port=int(os.getenv("HEALTH_PORT", os.getenv("PORT", "8080"))),
            diagnostics_interval_sec=float(os.getenv("DIAGNOSTICS_INTERVAL_SEC", "600")),
            diagnostics_log=os.getenv("DIAGNOSTICS_LOG", os.path.join("logs", "tradebot-diagnostics.jsonl")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        missing = [
            name
            for name, value in (
                ("SOLANA_RPC_URL", self.rpc_url),
                ("DATABASE_URL", self.database_url),
            )
            if not value
        ]
        if not self.wallet_private_key and not self.wallet_keypair_path:
            missing.append("WALLET_PRIVATE_KEY")
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")
        if self.amount_to_swap_usd <= 0:
            raise ConfigError("AMOUNT_TO_SWAP_USD must be positive")
        if not 0 < self.trailing_stop_pct < 100:
            raise ConfigError("TRAILING_STOP_PERCENTAGE must be between 0 and 100")
        if self.stop_confirmation_ticks < 1:
            raise ConfigError("STOP_CONFIRMATION_TICKS must be at least 1")
        if self.max_open_positions < 1:
            raise ConfigError("MAX_OPEN_POSITIONS must be at least 1")

    @property
    def trailing_stop_fraction(self) -> float:
        return self.trailing_stop_pct / 100

    @property
    def trade_amount_raw(self) -> int:
        return int(round(self.amount_to_swap_usd * 10 ** self.quote_decimals))

    @property
    def notifications_enabled(self) -> bool:
        return bool(self.telegram_token and self.telegram_chat_id)


def load_keypair(cfg: TradebotConfig) -> Keypair:
    """
    Load a Keypair from WALLET_PRIVATE_KEY (base58-encoded 64-byte secret),
    falling back to the file named by WALLET_KEYPAIR_PATH.
    """
    secret: Optional[str] = cfg.wallet_private_key
    if not secret and cfg.wallet_keypair_path:
        if not os.path.exists(cfg.wallet_keypair_path):
            raise ConfigError(f"Keypair file not found: {cfg.wallet_keypair_path}")
        with open(cfg.wallet_keypair_path, "r", encoding="utf-8") as f:
            secret = f.read().strip()
    if not secret:
        raise ConfigError("No wallet secret configured")
    try:
        secret_bytes = b58decode(secret)
    except ValueError as e:
        raise ConfigError(f"Wallet secret is not valid base58: {e}") from e
    if len(secret_bytes) != 64:
        raise ConfigError("Invalid key length; expected 64-byte secret key")
    return Keypair.from_bytes(secret_bytes)
