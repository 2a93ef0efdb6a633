"""
Configuration for the order-trade service.

All settings can be overridden with ``TRADE__``-prefixed environment variables
or a ``.env`` file next to the process working directory.
"""
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="TRADE__",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(default="sqlite:///./skill_trade.db")
    db_echo: bool = Field(default=False)
    db_pool_size: int = Field(default=10)
    lock_timeout_seconds: float = Field(default=5.0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # API
    api_title: str = Field(default="Skill Trade API")
    api_version: str = Field(default="1.0.0")
    api_root_path: str = Field(default="")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v

    @field_validator("lock_timeout_seconds")
    @classmethod
    def validate_lock_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
