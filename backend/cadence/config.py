from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Cadence"
    environment: str = "dev"

    database_url: str = "sqlite:///./cadence.db"

    # Used when a user or routine has no timezone of its own
    default_timezone: str = "UTC"

    log_path: str = "logs/cadence.log"
    log_level: str = "INFO"

    # Delayed job queue
    reminder_concurrency: int = 10
    notification_concurrency: int = 20
    email_concurrency: int = 10
    job_attempts: int = 3
    job_backoff_seconds: float = 2.0

    # Periodic sweeps
    routine_reset_interval_sec: int = 60
    overdue_milestone_check_hour: int = 9

    # Web Push (VAPID)
    vapid_public_key: str | None = None
    vapid_private_key: str | None = None
    vapid_subject: str = "mailto:admin@example.com"

    # SMTP
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
