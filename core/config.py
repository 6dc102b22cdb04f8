import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigError

DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"
# USDC on Base Sepolia
DEFAULT_ASSET = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"


def _get(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(key)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    public_base_url: str = "http://localhost:8787"
    host: str = "0.0.0.0"
    port: int = 8787
    log_level: str = "INFO"

    discord_public_key: Optional[str] = None
    discord_application_id: Optional[str] = None
    discord_bot_token: Optional[str] = None
    discord_guild_id: Optional[int] = None

    telegram_token: Optional[str] = None
    telegram_webhook_secret: Optional[str] = None

    worker_url: str = "http://localhost:8788"
    worker_timeout: float = 120.0
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    facilitator_timeout: float = 15.0

    pay_to: str = ""
    price_amount: str = "100000"
    price_display: str = "$0.10"
    asset: str = DEFAULT_ASSET
    asset_name: str = "USDC"
    network: str = "base-sepolia"
    max_timeout_seconds: int = 300

    pending_ttl: float = 30 * 60
    pagination_ttl: float = 60 * 60
    page_size: int = 5
    reaper_interval: float = 30 * 60
    delivery_timeout: float = 5.0
    delivery_retry_delay: float = 3.0

    lookback_default: int = 60
    lookback_min: int = 1
    lookback_max: int = 24 * 60
    history_limit: int = 1000

    @property
    def telegram_webhook(self) -> bool:
        return bool(self.telegram_webhook_secret)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        guild_raw = _get(env, "DISCORD_GUILD_ID")
        settings = cls(
            public_base_url=(_get(env, "PUBLIC_BASE_URL", cls.public_base_url) or "").rstrip("/"),
            host=_get(env, "HOST", cls.host),
            port=_get_int(env, "PORT", cls.port),
            log_level=(_get(env, "LOG_LEVEL", cls.log_level) or "INFO").upper(),
            discord_public_key=_get(env, "DISCORD_PUBLIC_KEY"),
            discord_application_id=_get(env, "DISCORD_APPLICATION_ID"),
            discord_bot_token=_get(env, "DISCORD_BOT_TOKEN"),
            discord_guild_id=int(guild_raw) if guild_raw and guild_raw.isdigit() else None,
            telegram_token=_get(env, "TELEGRAM_TOKEN"),
            telegram_webhook_secret=_get(env, "TELEGRAM_WEBHOOK_SECRET"),
            worker_url=(_get(env, "WORKER_URL", cls.worker_url) or "").rstrip("/"),
            worker_timeout=_get_float(env, "WORKER_TIMEOUT_SECS", cls.worker_timeout),
            facilitator_url=(_get(env, "FACILITATOR_URL", cls.facilitator_url) or "").rstrip("/"),
            facilitator_timeout=_get_float(env, "FACILITATOR_TIMEOUT_SECS", cls.facilitator_timeout),
            pay_to=_get(env, "PAY_TO_ADDRESS", "") or "",
            price_amount=_get(env, "PRICE_AMOUNT", cls.price_amount),
            price_display=_get(env, "PRICE_DISPLAY", cls.price_display),
            asset=_get(env, "PAYMENT_ASSET", cls.asset),
            asset_name=_get(env, "PAYMENT_ASSET_NAME", cls.asset_name),
            network=_get(env, "PAYMENT_NETWORK", cls.network),
            max_timeout_seconds=_get_int(env, "PAYMENT_MAX_TIMEOUT_SECS", cls.max_timeout_seconds),
            pending_ttl=_get_float(env, "PENDING_TTL_SECS", cls.pending_ttl),
            pagination_ttl=_get_float(env, "PAGINATION_TTL_SECS", cls.pagination_ttl),
            page_size=_get_int(env, "PAGE_SIZE", cls.page_size),
            reaper_interval=_get_float(env, "REAPER_INTERVAL_SECS", cls.reaper_interval),
            delivery_timeout=_get_float(env, "DELIVERY_TIMEOUT_SECS", cls.delivery_timeout),
            delivery_retry_delay=_get_float(env, "DELIVERY_RETRY_DELAY_SECS", cls.delivery_retry_delay),
            lookback_default=_get_int(env, "LOOKBACK_DEFAULT", cls.lookback_default),
            lookback_min=_get_int(env, "LOOKBACK_MIN", cls.lookback_min),
            lookback_max=_get_int(env, "LOOKBACK_MAX", cls.lookback_max),
            history_limit=_get_int(env, "HISTORY_LIMIT", cls.history_limit),
        )
        if not settings.price_amount.isdigit():
            raise ConfigError("PRICE_AMOUNT must be an integer amount in the asset's atomic units")
        if settings.lookback_min > settings.lookback_max:
            raise ConfigError("LOOKBACK_MIN must not exceed LOOKBACK_MAX")
        if settings.page_size < 1:
            raise ConfigError("PAGE_SIZE must be positive")
        return settings

    def missing_required(self) -> list:
        missing = []
        if not self.pay_to:
            missing.append("PAY_TO_ADDRESS")
        if not self.worker_url:
            missing.append("WORKER_URL")
        if not self.discord_public_key and not self.telegram_token:
            missing.append("DISCORD_PUBLIC_KEY or TELEGRAM_TOKEN")
        return missing
