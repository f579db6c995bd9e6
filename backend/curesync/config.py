from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "CureSync"
    environment: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./curesync.db"

    # Base URL for backend API (used by integrations)
    api_base_url: str = "http://localhost:8000"

    # Telegram bot token from .env
    telegram_bot_token: str | None = None

    # Host notification capability. A headless host never schedules alarms.
    notifications_capable: bool = True
    # Answer the host gives when asked for notification permission:
    # granted | denied | undetermined
    notifications_permission: str = "granted"
    reminder_category: str = "medication"
    alarm_poll_interval_sec: int = 30

    fda_base_url: str = "https://api.fda.gov/drug/label.json"
    fda_timeout_sec: float = 10.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )


settings = Settings()
