import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Calendar boundaries (usage windows, reminders, reports, job cadences)
    BUSINESS_TIMEZONE: str = "Africa/Nairobi"
    DEFAULT_CURRENCY: str = "KES"

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    REMINDER_DAYS: str = "3,7,14"  # comma-separated
    REMINDER_DEDUPE_HOURS: int = 24
    NOTIFICATION_RETENTION_DAYS: int = 90
    SWEEP_BATCH_SIZE: int = 100
    SWEEP_MAX_BATCHES: int = 50
    STALE_PENDING_HOURS: int = 24

    # Admin input limits
    MAX_CUSTOM_DURATION_DAYS: int = 730
    MAX_ADJUSTMENT_DAYS: int = 365
    ADMIN_NOTES_MAX_LENGTH: int = 500

    # Billing cycle discounts
    QUARTERLY_DISCOUNT: float = 0.05
    YEARLY_DISCOUNT: float = 0.15

    # Audit logging
    AUDIT_ENABLED: bool = True

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def reminder_days(self) -> List[int]:
        """Reminder thresholds in days, ascending and de-duplicated."""
        days = set()
        for part in (self.REMINDER_DAYS or "").split(","):
            part = part.strip()
            if part:
                days.add(int(part))
        return sorted(days)


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("cargo_subscriptions")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    problems = []
    try:
        ZoneInfo(cfg.BUSINESS_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        problems.append(f"BUSINESS_TIMEZONE={cfg.BUSINESS_TIMEZONE!r} is not a known timezone")
    try:
        if any(day <= 0 for day in cfg.reminder_days()):
            problems.append("REMINDER_DAYS must contain positive integers")
    except ValueError:
        problems.append("REMINDER_DAYS must be a comma-separated list of integers")

    if problems:
        message = "; ".join(problems)
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
