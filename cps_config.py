"""
Chhaya Printing Solution (CPS) - Configuration
Environment-driven settings for the invoice ledger service.
"""

from dataclasses import dataclass, field
from typing import List
import os

from dotenv import load_dotenv

load_dotenv()

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "https://www.chhayaprintingsolution.in",
    "https://chhayaprintingsolution.in",
]


@dataclass(frozen=True)
class Settings:
    admin_code: str = ""
    session_secret: str = "change-me-session-secret"
    developer_unlock_key: str = ""

    # "timed" locks expire after lockout_minutes; "permanent" needs an unlock
    lockout_policy: str = "timed"
    max_attempts: int = 3
    lockout_minutes: int = 30
    attempt_record_ttl_minutes: int = 60
    sweep_interval_seconds: int = 3600

    session_ttl_hours: int = 24
    session_cookie_name: str = "admin-token"
    app_env: str = "development"
    allowed_origins: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    currency_symbol: str = "₹"
    log_level: str = "INFO"

    @property
    def secure_cookies(self) -> bool:
        return self.app_env == "production"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_settings() -> Settings:
    """Build settings from the process environment (and a .env file if present)."""
    origins = os.getenv("CORS_ALLOWED_ORIGINS")
    policy = os.getenv("LOCKOUT_POLICY", "timed").strip().lower()
    if policy not in ("timed", "permanent"):
        raise ValueError(f"LOCKOUT_POLICY must be 'timed' or 'permanent', got {policy!r}")

    return Settings(
        admin_code=os.getenv("ADMIN_CODE", ""),
        session_secret=os.getenv("SESSION_SECRET", Settings.session_secret),
        developer_unlock_key=os.getenv("DEVELOPER_UNLOCK_KEY", ""),
        lockout_policy=policy,
        max_attempts=_int_env("LOGIN_MAX_ATTEMPTS", 3),
        lockout_minutes=_int_env("LOCKOUT_MINUTES", 30),
        attempt_record_ttl_minutes=_int_env("ATTEMPT_RECORD_TTL_MINUTES", 60),
        sweep_interval_seconds=_int_env("ATTEMPT_SWEEP_INTERVAL_SECONDS", 3600),
        session_ttl_hours=_int_env("SESSION_TTL_HOURS", 24),
        app_env=os.getenv("APP_ENV", "development"),
        allowed_origins=(
            [o.strip() for o in origins.split(",") if o.strip()]
            if origins else list(DEFAULT_ALLOWED_ORIGINS)
        ),
        currency_symbol=os.getenv("CURRENCY_SYMBOL", "₹"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
