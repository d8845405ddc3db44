"""
Qontax Recurrence — Configuration via environment variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class ConfigurationError(RuntimeError):
    """Raised when a setting required to run the engine is missing."""


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./qontax.db",
        description="Async SQLAlchemy DB URL",
    )

    # Email / SMTP (alert channel)
    smtp_host: str = Field(default="smtp.gmail.com")
    smtp_port: int = Field(default=587)
    smtp_email: str = Field(default="", description="Sender address for alert emails")
    smtp_app_password: str = Field(default="", description="SMTP password / app password")
    alert_sender_name: str = Field(default="Qontax")

    # Webhook (alert channel)
    webhook_timeout_secs: int = Field(default=10)

    # Recurrence engine
    recurrence_max_concurrency: int = Field(
        default=1, description="Contracts processed in parallel within one run",
    )
    recurrence_run_timeout_secs: int = Field(
        default=120, description="Wall-clock budget for one engine run",
    )
    vip_amount_threshold: float = Field(
        default=10000, description="Amounts at or above this are reported as VIP",
    )

    # Daily scheduler (the "cron" trigger)
    scheduler_enabled: bool = Field(default=False)
    scheduler_hour_utc: int = Field(default=9, ge=0, le=23)

    # HTTP status used for infrastructure failures of /recurring/process.
    # 200 keeps the invoking platform from retrying the whole run.
    failure_status_code: int = Field(default=200)

    @property
    def email_configured(self) -> bool:
        return bool(self.smtp_email and self.smtp_app_password)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()


def require_configured(s: Settings | None = None) -> None:
    """Raise ConfigurationError when the engine cannot reach its store."""
    s = s or settings
    if not s.database_url:
        raise ConfigurationError("Missing configuration: DATABASE_URL is not set")
