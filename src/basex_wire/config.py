"""
Client Configuration

pydantic-settings model describing how to reach and authenticate against a
BaseX server. Values can be given directly or loaded from the environment:

    BASEX_HOST, BASEX_PORT, BASEX_USER, BASEX_PASSWORD,
    BASEX_TIMEOUT, BASEX_CHUNK_SIZE, BASEX_LOG_LEVEL

Empty variables are ignored. Invalid values raise ValueError
(pydantic.ValidationError).
"""

from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .protocol import DEFAULT_CHUNK_SIZE, DEFAULT_PORT

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ClientConfig(BaseSettings):
    """Connection settings for Client.from_config()"""

    model_config = SettingsConfigDict(
        env_prefix="BASEX_",
        env_ignore_empty=True,
        extra="ignore",
    )

    host: str = Field(default="localhost", min_length=1)
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    user: str = "admin"
    password: SecretStr = SecretStr("admin")
    timeout: Optional[float] = Field(default=None, gt=0)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=64)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}, got {value!r}")
        return level

    @classmethod
    def from_env(cls, prefix: str = "BASEX_") -> "ClientConfig":
        """Load settings from environment variables named ``<prefix><FIELD>``"""
        return cls(_env_prefix=prefix)
