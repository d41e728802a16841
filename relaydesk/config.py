from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Message Store
    DATABASE_URL: str = "sqlite:///./relaydesk.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Directory service (identity lookup + conversation clock)
    DIRECTORY_API_BASE: str = "http://localhost:9999/api/v1"

    # Relay bot API, e.g. https://relay.example.com:8443/<bot-token>
    RELAY_API_URL: str = ""
    RELAY_CHAT_ID: int = 777000
    RELAY_CHAT_TYPE: int = 1

    # Delivery pipeline policy
    ORDERING_PRECHECK: bool = True
    VERIFY_AFTER_SEND: bool = False
    CLOCK_FAIL_OPEN: bool = True
    SEND_DELAY_SECONDS: float = 0.5
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Zone used for scheduled times given without an offset
    DEFAULT_TIMEZONE: str = "UTC"

    # Relay error text that means "timestamp not after the last message"
    ORDER_ERROR_PATTERN: str = (
        r"(?i)(time_error|time\s*order|out of order|earlier than|not after|"
        r"时间顺序|时间错误)"
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
