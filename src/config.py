"""
Centralized configuration with environment variable overrides.

Provider credentials, scheduling grid, booking behaviour and vendor
settings are all configurable here. Nothing is hardcoded in the
scheduling or booking logic.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

VALID_ENVIRONMENTS = ("development", "staging", "production")

_SLOT_PATTERN = re.compile(r"^(\d{2}):(\d{2})-(\d{2}):(\d{2})$")


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_bool(env_var: str, default: str) -> bool:
    """Parse a boolean flag; accepts 1/0, true/false, yes/no, on/off."""
    raw = os.getenv(env_var, default).strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Invalid boolean for {env_var}: {raw!r}")


def parse_slot_grid(raw: str) -> list[tuple[str, str]]:
    """Split ``"09:00-11:00,11:00-13:00"`` into ``[("09:00", "11:00"), ...]``.

    Raises ValueError on malformed windows or windows that end before
    they start.
    """
    windows: list[tuple[str, str]] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        match = _SLOT_PATTERN.match(chunk)
        if match is None:
            raise ValueError(f"Invalid slot window {chunk!r}, expected HH:MM-HH:MM")
        start_h, start_m, end_h, end_m = (int(part) for part in match.groups())
        if start_h > 23 or end_h > 23 or start_m > 59 or end_m > 59:
            raise ValueError(f"Invalid slot window {chunk!r}")
        if (start_h, start_m) >= (end_h, end_m):
            raise ValueError(f"Slot window {chunk!r} must end after it starts")
        windows.append((f"{start_h:02d}:{start_m:02d}", f"{end_h:02d}:{end_m:02d}"))
    if not windows:
        raise ValueError("SLOT_GRID must define at least one window")
    return windows


@dataclass(frozen=True)
class ProviderConfig:
    """Calendar provider (Lark) credentials and HTTP behaviour."""

    base_url: str = os.getenv("LARK_BASE_URL", "https://open.larksuite.com")
    app_id: str = os.getenv("LARK_APP_ID", "")
    app_secret: str = os.getenv("LARK_APP_SECRET", "")
    redirect_uri: str = os.getenv(
        "LARK_REDIRECT_URI", "http://localhost:3000/api/lark/oauth/callback"
    )
    timeout_seconds: float = _safe_float("PROVIDER_TIMEOUT_SECONDS", "30")
    token_refresh_buffer_seconds: int = _safe_int("TOKEN_REFRESH_BUFFER_SECONDS", "60")
    calendar_cache_ttl_seconds: int = _safe_int("CALENDAR_CACHE_TTL_SECONDS", "300")
    max_retries: int = _safe_int("PROVIDER_MAX_RETRIES", "3")
    backoff_seconds: float = _safe_float("PROVIDER_BACKOFF_SECONDS", "1.0")


@dataclass(frozen=True)
class SchedulingConfig:
    """Slot grid, civil timezone and availability computation limits."""

    timezone: str = os.getenv("BUSINESS_TIMEZONE", "Asia/Singapore")
    slot_grid: str = os.getenv(
        "SLOT_GRID", "09:00-11:00,11:00-13:00,14:00-16:00,16:00-18:00"
    )
    availability_window_days: int = _safe_int("AVAILABILITY_WINDOW_DAYS", "14")
    include_weekends: bool = _safe_bool("INCLUDE_WEEKENDS", "false")
    max_concurrency: int = _safe_int("AVAILABILITY_MAX_CONCURRENCY", "5")

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class BookingConfig:
    """Booking orchestration behaviour and local storage paths."""

    environment: str = os.getenv("APP_ENV", "development")
    mock_calendar_booking: bool = _safe_bool("MOCK_CALENDAR_BOOKING", "false")
    mock_fallback_enabled: bool = _safe_bool("MOCK_FALLBACK_ENABLED", "true")
    resource_directory_path: str = os.getenv("RESOURCE_DIRECTORY_PATH", "config/resources.json")
    token_store_path: str = os.getenv("TOKEN_STORE_PATH", ".tokens.json")
    crm_instance_url: str = os.getenv(
        "CRM_INSTANCE_URL", "https://storehub.lightning.force.com"
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def allows_mock_fallback(self) -> bool:
        return self.mock_fallback_enabled and not self.is_production


@dataclass(frozen=True)
class VendorConfig:
    """External installation vendor ticketing API."""

    api_url: str = os.getenv(
        "VENDOR_API_URL", "https://storehub.trackking.biz/api/ticket/create"
    )
    api_token: str = os.getenv("VENDOR_API_TOKEN", "")
    name: str = os.getenv("VENDOR_NAME", "Surftek")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    booking: BookingConfig = field(default_factory=BookingConfig)
    vendor: VendorConfig = field(default_factory=VendorConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if config.provider.timeout_seconds <= 0:
        raise ValueError(
            f"PROVIDER_TIMEOUT_SECONDS must be > 0, got {config.provider.timeout_seconds}"
        )
    if config.provider.token_refresh_buffer_seconds < 0:
        raise ValueError(
            "TOKEN_REFRESH_BUFFER_SECONDS must be >= 0, "
            f"got {config.provider.token_refresh_buffer_seconds}"
        )
    if config.provider.calendar_cache_ttl_seconds < 0:
        raise ValueError(
            "CALENDAR_CACHE_TTL_SECONDS must be >= 0, "
            f"got {config.provider.calendar_cache_ttl_seconds}"
        )
    if config.provider.max_retries < 0:
        raise ValueError(
            f"PROVIDER_MAX_RETRIES must be >= 0, got {config.provider.max_retries}"
        )
    if config.provider.backoff_seconds < 0:
        raise ValueError(
            f"PROVIDER_BACKOFF_SECONDS must be >= 0, got {config.provider.backoff_seconds}"
        )
    if config.scheduling.max_concurrency < 1:
        raise ValueError(
            "AVAILABILITY_MAX_CONCURRENCY must be >= 1, "
            f"got {config.scheduling.max_concurrency}"
        )
    if config.scheduling.availability_window_days < 1:
        raise ValueError(
            "AVAILABILITY_WINDOW_DAYS must be >= 1, "
            f"got {config.scheduling.availability_window_days}"
        )
    try:
        ZoneInfo(config.scheduling.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(
            f"BUSINESS_TIMEZONE is not a known timezone: {config.scheduling.timezone!r}"
        ) from None

    parse_slot_grid(config.scheduling.slot_grid)

    if config.booking.environment not in VALID_ENVIRONMENTS:
        raise ValueError(
            f"APP_ENV must be one of {VALID_ENVIRONMENTS}, got {config.booking.environment!r}"
        )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info(
        "Configuration loaded for environment '%s' (timezone %s)",
        config.booking.environment, config.scheduling.timezone,
    )
    return config


# Singleton instance
settings = load_config()
