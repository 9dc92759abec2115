"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Search Metering API"
    api_version: str = "0.1.0"
    api_description: str = "Usage metering and referral rewards for paid searches"
    public_base_url: str = "https://upblock.ai"

    # Caller identity - HS256 JWTs issued by the identity provider
    auth_jwt_secret: str = ""
    auth_jwt_audience: str = "authenticated"

    # Service-to-service key for billing events
    service_api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "search-metering-api"

    # Migrations
    run_migrations_on_startup: bool = False

    # Entitlement Configuration
    trial_base_allowance: int = 0  # Free searches before signing up
    trial_signup_bonus: int = 2  # Free searches granted with an account
    subscription_monthly_quota: int = 10  # PRO searches per billing month
    recheck_window_days: int = 7

    # Billing event grants
    starter_pack_credits: int = 3
    bulk_pack_credits: int = 20

    # Referral Program
    referral_reward_credits: int = 3
    max_referrals_per_user: int = 10
    referral_milestones: str = "5,10"  # Comma-separated referral counts
    referral_reminder_delay_hours: int = 48
    referral_code_length: int = 6

    # Phone verification
    phone_code_ttl_minutes: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def referral_milestone_set(self) -> frozenset[int]:
        """Parse the configured milestone counts."""
        milestones: set[int] = set()
        for raw in self.referral_milestones.split(","):
            raw = raw.strip()
            if raw:
                milestones.add(int(raw))
        return frozenset(milestones)

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.trial_base_allowance < 0 or self.trial_signup_bonus < 0:
            errors.append("Trial allowances cannot be negative")

        if self.subscription_monthly_quota <= 0:
            errors.append("SUBSCRIPTION_MONTHLY_QUOTA must be positive")

        if self.recheck_window_days <= 0:
            errors.append("RECHECK_WINDOW_DAYS must be positive")

        if self.referral_reward_credits <= 0:
            errors.append("REFERRAL_REWARD_CREDITS must be positive")

        try:
            _ = self.referral_milestone_set
        except ValueError:
            errors.append(f"REFERRAL_MILESTONES must be integers, got: {self.referral_milestones}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
