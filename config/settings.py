"""
Configuration settings for the entitlement service
"""
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Normalized plan IDs
PLAN_FREE = "FREE"
PLAN_PLUS = "PLUS"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Core authentication and security
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_id_plus_monthly: Optional[str] = Field(
        default="price_plus_monthly", alias="STRIPE_PRICE_ID_PLUS_MONTHLY"
    )
    stripe_price_id_plus_yearly: Optional[str] = Field(
        default="price_plus_yearly", alias="STRIPE_PRICE_ID_PLUS_YEARLY"
    )

    # Trial configuration
    trial_period_days: int = Field(default=7, alias="TRIAL_PERIOD_DAYS")
    trial_expiring_soon_days: int = Field(default=2, alias="TRIAL_EXPIRING_SOON_DAYS")

    # Bounded waits on the two suspension points (provider call, store call)
    billing_timeout_seconds: float = Field(default=10.0, alias="BILLING_TIMEOUT_SECONDS")
    store_timeout_seconds: float = Field(default=5.0, alias="STORE_TIMEOUT_SECONDS")

    # Infrastructure configuration
    database_url: Optional[str] = Field(
        default="sqlite+aiosqlite:///./entitlements.db", alias="DATABASE_URL"
    )

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:3000", alias="FRONTEND_URL")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    @property
    def plus_price_ids(self) -> List[str]:
        """Whitelisted price IDs accepted by checkout (all of them sell PLUS)."""
        return [
            price_id
            for price_id in (self.stripe_price_id_plus_monthly, self.stripe_price_id_plus_yearly)
            if price_id
        ]


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or bool(settings.env and settings.env.lower() == "production")
