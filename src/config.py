from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    timezone: str = "Africa/Cairo"
    sqlite_path: str = "data/app.db"
    log_path: str = "logs/app.log"
    log_level: str = "INFO"
    recurrence_enabled: bool = True
    recurrence_roll_on_startup: bool = True
    recurrence_batch_limit: int = 500
    run_migrations_on_startup: bool = True


settings = Settings()
