"""Application configuration via environment variables and .env file."""

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")

CONTROLLER_MODES = ("unifi", "mock", "none")
NOTIFIER_MODES = ("log", "smtp", "webhook")


@dataclass(frozen=True)
class RateLimitConfig:
    """Limits for one rate-limited action.

    ``lockout`` is optional: when set, hitting the ceiling stamps a lock
    that denies every attempt until it passes.
    """

    max_attempts: int
    window: timedelta
    lockout: timedelta | None = None


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "GUESTGATE_",
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Database
    db_path: Path = Path("./data/guestgate.db")

    # Logging
    log_level: str = "info"

    # Network controller
    controller_mode: str = "none"
    unifi_url: str = "https://192.168.1.1:8443"
    unifi_username: str = "admin"
    unifi_password: str | None = None
    unifi_site: str = "default"
    unifi_verify_ssl: bool = True
    controller_timeout: float = 10.0  # seconds, per request

    # Authorization policy
    allow_offline_auth: bool = False  # never enable in production
    guest_auth_days: int = 7
    max_extend_days: int = 30

    # Verification codes
    code_ttl_minutes: int = 10
    code_max_attempts: int = 3
    resend_cooldown_seconds: int = 30
    max_resends: int = 3
    allow_disposable_emails: bool = False

    # Rate limits (attempts per window)
    rate_limit_verify: int = 5
    rate_limit_resend: int = 3
    rate_limit_admin_login: int = 5

    # Background jobs (seconds)
    scheduler_enabled: bool = True
    connection_sync_interval: int = 60
    dpi_cache_interval: int = 300
    auth_sync_interval: int = 300
    cleanup_interval: int = 300
    expiry_reminder_throttle: int = 12 * 60 * 60
    retention_days: int = 30
    dpi_top_apps_limit: int = 10

    # Notifications
    notifier_mode: str = "log"
    smtp_host: str = "localhost"
    smtp_port: int = 1025
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = False
    email_from: str = "Guest WiFi <wifi@localhost>"
    admin_emails: list[str] = []
    webhook_url: str | None = None

    # Shared secret for the job trigger endpoint (omit to leave it open)
    cron_secret: str | None = None

    # Admin authentication (optional, omit to disable)
    auth_username: str = "admin"
    auth_password: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("admin_emails", mode="before")
    @classmethod
    def parse_admin_emails(cls, v: object) -> list[str]:
        """Parse comma-separated string or list."""
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        if isinstance(v, list):
            return [s for s in v if s]
        return []

    @field_validator("controller_mode", "notifier_mode", mode="before")
    @classmethod
    def lower_mode(cls, v: object) -> object:
        return v.strip().lower() if isinstance(v, str) else v

    def rate_limit_configs(self) -> dict[str, RateLimitConfig]:
        """Per-action limits: verify 5/h, resend 3/h, admin_login 5/15min + 30min
        lockout."""
        return {
            "verify": RateLimitConfig(self.rate_limit_verify, timedelta(hours=1)),
            "resend": RateLimitConfig(self.rate_limit_resend, timedelta(hours=1)),
            "admin_login": RateLimitConfig(
                self.rate_limit_admin_login,
                timedelta(minutes=15),
                lockout=timedelta(minutes=30),
            ),
        }


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()


settings = Settings()
