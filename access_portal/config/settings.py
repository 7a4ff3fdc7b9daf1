"""Application settings using Pydantic."""
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database settings."""
    url: str = "sqlite+aiosqlite:///./data/access_portal.db"
    echo: bool = False  # Log SQL statements


class AuthSettings(BaseSettings):
    """Bearer token settings."""
    # Secret key for signing tokens (MUST be set in production)
    secret_key: str = "CHANGE_ME_IN_PRODUCTION_32_CHARS!"
    algorithm: str = "HS256"
    access_token_expiry_minutes: int = 8 * 60

    # Granted the admin role by the seed command
    bootstrap_admin_email: str = "admin@example.com"


class AuditSettings(BaseSettings):
    """Audit logging configuration."""
    file_enabled: bool = False
    file_path: str = "/var/log/access-portal/audit.log"
    siem_enabled: bool = False
    siem_webhook_url: str | None = None


class NotificationSettings(BaseSettings):
    """Notification dispatch settings.

    The "log" backend writes every notification to the application log and is
    the default for development. The "slack" backend delivers direct messages
    through the Slack Web API and requires a bot token.
    """
    backend: str = "log"  # log, slack
    slack_bot_token: str | None = None

    # Base URL of the portal frontend, used to build deep links
    frontend_url: str = "http://localhost:5173"


class CsvImportSettings(BaseSettings):
    """Limits for CSV grant imports."""
    max_file_bytes: int = 5 * 1024 * 1024
    max_rows: int = 1000


class Settings(BaseSettings):
    """Main application settings."""
    model_config = SettingsConfigDict(
        env_prefix="ACCESS_PORTAL_",
        env_nested_delimiter="__",
    )

    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    csv: CsvImportSettings = Field(default_factory=CsvImportSettings)

    @property
    def slack_enabled(self) -> bool:
        """Check if Slack delivery is configured."""
        return self.notifications.backend == "slack" and bool(
            self.notifications.slack_bot_token
        )


settings = Settings()
