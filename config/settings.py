"""
Configuration settings for the application
"""
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Normalized plan IDs
PLAN_FREE = "free"
PLAN_PRO = "pro"
PLAN_PRO_PLUS = "pro_plus"
PLAN_STARTER = "starter"  # legacy, still honoured by has_plan

PAID_PLANS = (PLAN_PRO, PLAN_PRO_PLUS)


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_pro: Optional[str] = Field(default=None, alias="STRIPE_PRICE_PRO")
    stripe_price_pro_plus: Optional[str] = Field(default=None, alias="STRIPE_PRICE_PRO_PLUS")
    trial_period_days: int = Field(default=3, alias="TRIAL_PERIOD_DAYS")

    # LLM provider
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_memo_model: str = Field(default="gpt-4.1-mini", alias="OPENAI_MEMO_MODEL")
    openai_scoring_model: str = Field(default="gpt-4o-mini", alias="OPENAI_SCORING_MODEL")

    # Third-party identity provider (session JWT verification)
    auth_jwt_secret: Optional[str] = Field(default=None, alias="AUTH_JWT_SECRET")
    auth_jwks_url: Optional[str] = Field(default=None, alias="AUTH_JWKS_URL")
    auth_issuer: Optional[str] = Field(default=None, alias="AUTH_ISSUER")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./underwrite.db", alias="DATABASE_URL")
    rate_limit_per_minute: int = Field(default=60, alias="RATE_LIMIT_PER_MINUTE")

    # Benchmark datasets
    benchmark_data_dir: str = Field(default="./data", alias="BENCHMARK_DATA_DIR")

    # Public URL of the web app (redirects, Stripe return URLs, CORS)
    app_url: str = Field(default="http://localhost:3000", alias="APP_URL")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")


# Instantiate settings object
settings = Settings()

BENCHMARK_DIR = Path(settings.benchmark_data_dir)

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or bool(settings.env and settings.env.lower() == "production")
