from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", alias="LOG_LEVEL")


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    env: str = Field(default="development", alias="APP_ENV")
    host: str = Field(default="0.0.0.0", alias="APP_HOST")
    port: int = Field(default=8000, alias="APP_PORT")

    database_url: str = Field(default="sqlite:///./data/dispatch.db", alias="DATABASE_URL")

    voice_api_base_url: str = Field(default="", alias="VOICE_API_BASE_URL")
    voice_calls_path: str = Field(default="/call", alias="VOICE_CALLS_PATH")
    voice_api_key: str | None = Field(default=None, alias="VOICE_API_KEY")
    voice_driver_agent_id: str | None = Field(default=None, alias="VOICE_DRIVER_AGENT_ID")
    voice_from_number: str | None = Field(default=None, alias="VOICE_FROM_NUMBER")
    voice_webhook_url: str | None = Field(default=None, alias="VOICE_WEBHOOK_URL")
    voice_webhook_token: str | None = Field(default=None, alias="VOICE_WEBHOOK_TOKEN")
    voice_http_timeout_seconds: float = Field(default=15.0, alias="VOICE_HTTP_TIMEOUT_SECONDS")

    messaging_api_url: str = Field(
        default="https://public.doubletick.io/whatsapp/message/template", alias="MESSAGING_API_URL"
    )
    messaging_api_key: str | None = Field(default=None, alias="MESSAGING_API_KEY")
    messaging_template_name: str = Field(default="ambulance_alert", alias="MESSAGING_TEMPLATE_NAME")

    phone_country_code: str = Field(default="91", alias="PHONE_COUNTRY_CODE")

    call_max_wait_seconds: float = Field(default=120.0, alias="CALL_MAX_WAIT_SECONDS")
    call_poll_interval_seconds: float = Field(default=5.0, alias="CALL_POLL_INTERVAL_SECONDS")
    advance_delay_seconds: float = Field(default=5.0, alias="ADVANCE_DELAY_SECONDS")
    dispatch_workers: int = Field(default=8, alias="DISPATCH_WORKERS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def logging(self) -> LoggingConfig:
        return LoggingConfig(LOG_LEVEL=self.log_level)


@lru_cache
def get_settings() -> AppConfig:
    return AppConfig()
