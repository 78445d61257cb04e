import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    ENVIRONMENT: str = "dev"  # "dev" | "test" | "prod"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None

    # Gateway selection: "fake" | "fake_card" | "stripe"
    BILLING_GATEWAY: str = "fake"
    BILLING_CURRENCY: str = "EUR"
    BILLING_APP_NAME: str = "TimePerk"

    # Trial
    BILLING_TRIAL_DAYS: int = 15
    BILLING_TRIAL_PLAN: str = "enterprise"

    # Pricing (per user, per month)
    BILLING_TEAM_PRICE_PER_USER: float = 44.0
    BILLING_ENTERPRISE_PRICE_PER_USER: float = 59.0
    BILLING_TEAM_ADDON_PCT: float = 0.18

    # Requested limits above this are stored as unlimited (None)
    BILLING_UNLIMITED_USER_THRESHOLD: int = 500

    # Dunning
    BILLING_DUNNING_ENABLED: bool = True
    BILLING_MAX_RETRY_ATTEMPTS: int = 3
    BILLING_GRACE_PERIOD_DAYS: int = 7

    # Pause/resume
    BILLING_RESTRICT_ACCESS_WHEN_PAUSED: bool = True

    # ERP invoice sync
    BILLING_ERP_NOTIFY_EMAIL: Optional[str] = None
    BILLING_ERP_LEGAL_DEADLINE_DAYS: int = 15

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
    log = logger or logging.getLogger("billing")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = ["DATABASE_URL"]
    if cfg.BILLING_GATEWAY == "stripe":
        required_keys.append("STRIPE_SECRET_KEY")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.BILLING_MAX_RETRY_ATTEMPTS < 1 or cfg.BILLING_GRACE_PERIOD_DAYS < 1:
        message = "Dunning requires BILLING_MAX_RETRY_ATTEMPTS >= 1 and BILLING_GRACE_PERIOD_DAYS >= 1"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
