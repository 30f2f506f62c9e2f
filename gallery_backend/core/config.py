import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_BASIC: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None
    STRIPE_PRICE_STUDIO: Optional[str] = None

    # Identity directory (Clerk public metadata push)
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_API_BASE: str = "https://api.clerk.com/v1"

    # Transactional email (Resend)
    RESEND_API_KEY: Optional[str] = None
    RESEND_API_BASE: str = "https://api.resend.com"
    EMAIL_FROM: str = "12img <billing@12img.com>"
    APP_BASE_URL: str = "http://localhost:3000"
    # Operator inbox for cancellation alerts; unset disables them
    ADMIN_NOTIFICATION_EMAIL: Optional[str] = None
    NOTIFY_ON_CANCELLATION: bool = True

    # Outbound HTTP timeout for collaborator calls (seconds)
    OUTBOUND_TIMEOUT_SECONDS: float = 10.0

    # Job and admin access
    CRON_SECRET: Optional[str] = None
    ADMIN_KEY: Optional[str] = None

    # Lifecycle policy
    GRACE_PERIOD_DAYS: int = 21
    DELETION_HORIZON_DAYS: int = 90
    DELETION_WARNING_LEAD_DAYS: int = 7
    FREE_PLAN_GALLERY_LIMIT: int = 3

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("gallery")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "CRON_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.GRACE_PERIOD_DAYS <= 0 or cfg.DELETION_HORIZON_DAYS <= 0:
        message = "GRACE_PERIOD_DAYS and DELETION_HORIZON_DAYS must be positive"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
