import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional

from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    AUTO_CREATE_TABLES: bool = True

    # Auth
    JWT_SECRET: str = "change-me"
    JWT_EXPIRES_DAYS: int = 7

    # Generative text (post generation collaborator)
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.1-8b-instant"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PREMIUM_PRICE_ID: str = "price_premium_monthly_gbp"
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Plans and quotas
    TRIAL_DAYS: int = 7
    TRIAL_GENERATION_LIMIT: int = 10
    PREMIUM_GENERATION_LIMIT: int = 100
    PREMIUM_PRICE: float = 9.99
    CURRENCY: str = "gbp"
    USAGE_PERIOD_DAYS: int = 31
    WEBHOOK_DEDUP_DAYS: int = 30

    # App URLs
    FRONTEND_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


@dataclass(frozen=True)
class EntitlementConfig:
    """Plan, quota and billing constants shared by every entitlement component.

    Built once from Settings and passed to each component at construction so
    the quota table is never re-declared per call site.
    """

    plan_quotas: Dict[str, int] = field(default_factory=lambda: {"none": 0, "trial": 10, "premium": 100})
    premium_price_id: str = "price_premium_monthly_gbp"
    premium_price: float = 9.99
    currency: str = "gbp"
    trial_days: int = 7
    usage_period_days: int = 31
    webhook_dedup_days: int = 30
    frontend_url: str = "http://localhost:3000"
    purchasable_plans: FrozenSet[str] = frozenset({"premium"})

    def quota(self, plan: str) -> int:
        return self.plan_quotas.get(str(plan), 0)

    @property
    def checkout_success_url(self) -> str:
        return f"{self.frontend_url}/dashboard?success=true&session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.frontend_url}/pricing?canceled=true"

    @property
    def portal_return_url(self) -> str:
        return f"{self.frontend_url}/dashboard"


def build_entitlement_config(settings_obj: Optional[Settings] = None) -> EntitlementConfig:
    cfg = settings_obj or settings
    return EntitlementConfig(
        plan_quotas={
            "none": 0,
            "trial": cfg.TRIAL_GENERATION_LIMIT,
            "premium": cfg.PREMIUM_GENERATION_LIMIT,
        },
        premium_price_id=cfg.STRIPE_PREMIUM_PRICE_ID,
        premium_price=cfg.PREMIUM_PRICE,
        currency=cfg.CURRENCY,
        trial_days=cfg.TRIAL_DAYS,
        usage_period_days=cfg.USAGE_PERIOD_DAYS,
        webhook_dedup_days=cfg.WEBHOOK_DEDUP_DAYS,
        frontend_url=cfg.FRONTEND_URL.rstrip("/"),
    )


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("logtopost")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if getattr(cfg, "ENV", "development") == "production" and getattr(cfg, "JWT_SECRET", None) == "change-me":
        missing.append("JWT_SECRET")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
