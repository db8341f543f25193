"""Application configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # App Settings
    APP_NAME: str = "Workflow Automation Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, testing, production

    # Definitions
    DEFINITIONS_PATH: str = "./workflows"

    # Execution
    WORKER_COUNT: int = 1  # >1 runs a pool keyed by instance id
    ENFORCE_STEP_TIMEOUTS: bool = False  # timeout_seconds is advisory unless set
    MAX_DELAY_SECONDS: float = 3600.0

    # Scheduler
    SCHEDULER_POLL_INTERVAL: float = 1.0
    SCHEDULER_TIMEZONE: str = "UTC"

    # Step handler defaults
    DATABASE_URL: str = "sqlite:///./workflows.db"
    SCRIPT_SHELL: str = "/bin/sh"
    HTTP_DEFAULT_TIMEOUT: float = 30.0
    DOCUMENT_OUTPUT_DIR: str = "./documents"

    # Notifications
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_ADDRESS: str = "workflows@localhost"
    SMTP_USE_TLS: bool = True
    NOTIFICATION_WEBHOOK_URL: str = ""

    # Status views
    DISPLAY_MAX_LIST_ITEMS: int = 20
    DISPLAY_MAX_STRING_LENGTH: int = 2000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_testing(self) -> bool:
        return self.ENVIRONMENT == "testing"

    @property
    def notification_config(self) -> dict:
        """Channel configs for the NotificationManager."""
        config = {
            "email": {
                "smtp_host": self.SMTP_HOST,
                "smtp_port": self.SMTP_PORT,
                "smtp_user": self.SMTP_USER,
                "smtp_password": self.SMTP_PASSWORD,
                "from_address": self.SMTP_FROM_ADDRESS,
                "use_tls": self.SMTP_USE_TLS,
            },
        }
        if self.NOTIFICATION_WEBHOOK_URL:
            config["webhook"] = {"url": self.NOTIFICATION_WEBHOOK_URL}
        return config

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
