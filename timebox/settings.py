from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str | None = Field(None, alias="DATABASE_URL")
    google_token_encryption_key: str = Field("", alias="GOOGLE_TOKEN_ENCRYPTION_KEY")

    calendar_timezone: str = Field("UTC", alias="CALENDAR_TIMEZONE")
    calendar_client_id: str | None = Field(None, alias="CALENDAR_CLIENT_ID")
    calendar_client_secret: str | None = Field(None, alias="CALENDAR_CLIENT_SECRET")

    user_email: str = Field("me@localhost", alias="TIMEBOX_USER_EMAIL")
    cache_dir: str = Field(".timebox-cache", alias="TIMEBOX_CACHE_DIR")
    app_calendar_name: str = Field("Timebox", alias="TIMEBOX_APP_CALENDAR_NAME")
    sync_interval_seconds: int = Field(300, alias="TIMEBOX_SYNC_INTERVAL_SECONDS")
    sync_window_days: int = Field(45, alias="TIMEBOX_SYNC_WINDOW_DAYS")
    time_format: str = Field("24h", alias="TIMEBOX_TIME_FORMAT")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def use_12h_clock(self) -> bool:
        return self.time_format.strip().lower() == "12h"


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
