from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = "sqlite:///./gymbooking.db"
    sqlite_busy_timeout_seconds: int = 30
    timezone: str = "Europe/Madrid"
    log_level: str = "INFO"

    booking_horizon_weeks: int = 8
    cancellation_window_minutes: int = 60
    capped_monthly_quota: int = 12
    free_training_duration_minutes: int = 60
    reserve_max_attempts: int = 10

    reminder_lead_minutes: int = 60
    reminder_tolerance_minutes: int = 7

    bootstrap_admin_user_id: str = "admin"


settings = Settings()
