import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv


@dataclass
class Settings:
    # Database
    database_url: str

    # Redis (rate limits, worker notifications)
    redis_url: str

    # Auth
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"

    # Shared secret for scheduler-invoked endpoints
    cron_secret: Optional[str] = None

    # Payments
    stripe_secret_key: Optional[str] = None
    stripe_timeout_seconds: float = 10.0
    payment_currency: str = "usd"

    # Email
    mailersend_api_key: Optional[str] = None
    mailersend_from_email: str = "noreply@hirepipe.io"
    mailersend_from_name: str = "Hirepipe"
    app_base_url: str = "http://localhost:5173"
    admin_email: Optional[str] = None

    # Pipeline policy
    offer_default_expiry_days: int = 7
    guarantee_period_days: int = 90
    upfront_percentage: int = 50
    remaining_due_days: int = 30
    job_max_age_days: int = 60
    command_rate_limit_per_minute: int = 60
    introduction_protection_days: int = 365
    introduction_token_expiry_days: int = 7

    # Server
    port: int = 8000


# Global settings instance
_settings: Optional[Settings] = None


def load_settings() -> Settings:
    global _settings
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    jwt_secret_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_secret_key:
        # Generate a default for development, but warn
        import secrets
        jwt_secret_key = secrets.token_urlsafe(32)
        print("[WARNING] JWT_SECRET_KEY not set. Using random key (tokens won't survive restarts)")

    upfront_percentage = int(os.getenv("UPFRONT_PERCENTAGE", "50"))
    if not 0 <= upfront_percentage <= 100:
        raise ValueError("UPFRONT_PERCENTAGE must be between 0 and 100")

    _settings = Settings(
        database_url=database_url.strip().strip('"'),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        jwt_secret_key=jwt_secret_key,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        cron_secret=os.getenv("CRON_SECRET") or None,
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
        stripe_timeout_seconds=float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10")),
        payment_currency=os.getenv("PAYMENT_CURRENCY", "usd").lower(),
        mailersend_api_key=os.getenv("MAILERSEND_API_KEY") or None,
        mailersend_from_email=os.getenv("MAILERSEND_FROM_EMAIL", "noreply@hirepipe.io"),
        mailersend_from_name=os.getenv("MAILERSEND_FROM_NAME", "Hirepipe"),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:5173").rstrip("/"),
        admin_email=os.getenv("ADMIN_EMAIL") or None,
        offer_default_expiry_days=int(os.getenv("OFFER_DEFAULT_EXPIRY_DAYS", "7")),
        guarantee_period_days=int(os.getenv("GUARANTEE_PERIOD_DAYS", "90")),
        upfront_percentage=upfront_percentage,
        remaining_due_days=int(os.getenv("REMAINING_DUE_DAYS", "30")),
        job_max_age_days=int(os.getenv("JOB_MAX_AGE_DAYS", "60")),
        command_rate_limit_per_minute=int(os.getenv("COMMAND_RATE_LIMIT_PER_MINUTE", "60")),
        introduction_protection_days=int(os.getenv("INTRODUCTION_PROTECTION_DAYS", "365")),
        introduction_token_expiry_days=int(os.getenv("INTRODUCTION_TOKEN_EXPIRY_DAYS", "7")),
        port=int(os.getenv("PORT", "8000")),
    )
    return _settings


def get_settings() -> Settings:
    """Get the loaded settings. Must call load_settings() first."""
    global _settings
    if _settings is None:
        raise RuntimeError("Settings not initialized. Call load_settings() first.")
    return _settings
