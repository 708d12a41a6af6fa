"""
Switchyard Configuration Management

Centralized configuration using pydantic-settings with environment variable support.
"""

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from switchyard.realtime.protocol import (
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_RECONNECT_AFTER,
    DEFAULT_REJOIN_AFTER,
    DEFAULT_TIMEOUT,
    DEFAULT_VSN,
    MAX_PUSH_BUFFER_SIZE,
)


def _parse_backoff(v: str | list[float] | tuple[float, ...]) -> list[float]:
    if isinstance(v, str):
        return [float(delay.strip()) for delay in v.split(",") if delay.strip()]
    return list(v)


class ClientOptions(BaseModel):
    """Tuning knobs for a ConnectionManager."""

    params: dict[str, str] = Field(default_factory=dict)
    access_token: str | None = None

    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    heartbeat_interval: float = Field(default=DEFAULT_HEARTBEAT_INTERVAL, gt=0)
    reconnect_after: tuple[float, ...] = Field(default=DEFAULT_RECONNECT_AFTER, min_length=1)
    rejoin_after: tuple[float, ...] = Field(default=DEFAULT_REJOIN_AFTER, min_length=1)

    vsn: Literal["1.0.0", "2.0.0"] = DEFAULT_VSN
    max_push_buffer_size: int = Field(default=MAX_PUSH_BUFFER_SIZE, ge=1)

    @field_validator("reconnect_after", "rejoin_after", mode="before")
    @classmethod
    def parse_backoff(cls, v: str | list[float]) -> list[float]:
        return _parse_backoff(v)


class Settings(BaseSettings):
    """Application settings loaded from SWITCHYARD_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SWITCHYARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ══════════════════════════════════════════════════════════════
    # Endpoint
    # ══════════════════════════════════════════════════════════════
    realtime_url: str = "ws://localhost:4000/socket"
    api_key: str = ""
    access_token: str | None = None
    vsn: Literal["1.0.0", "2.0.0"] = DEFAULT_VSN

    # ══════════════════════════════════════════════════════════════
    # Logging
    # ══════════════════════════════════════════════════════════════
    log_level: str = "INFO"

    # ══════════════════════════════════════════════════════════════
    # Timing (seconds)
    # ══════════════════════════════════════════════════════════════
    timeout: float = DEFAULT_TIMEOUT
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    reconnect_after: Annotated[list[float], NoDecode] = list(DEFAULT_RECONNECT_AFTER)
    rejoin_after: Annotated[list[float], NoDecode] = list(DEFAULT_REJOIN_AFTER)

    # ══════════════════════════════════════════════════════════════
    # Limits
    # ══════════════════════════════════════════════════════════════
    max_push_buffer_size: int = MAX_PUSH_BUFFER_SIZE

    @field_validator("reconnect_after", "rejoin_after", mode="before")
    @classmethod
    def parse_backoff(cls, v: str | list[float]) -> list[float]:
        return _parse_backoff(v)

    def client_options(self) -> ClientOptions:
        """Build connection options from these settings."""
        params = {"apikey": self.api_key} if self.api_key else {}
        return ClientOptions(
            params=params,
            access_token=self.access_token,
            timeout=self.timeout,
            heartbeat_interval=self.heartbeat_interval,
            reconnect_after=tuple(self.reconnect_after),
            rejoin_after=tuple(self.rejoin_after),
            vsn=self.vsn,
            max_push_buffer_size=self.max_push_buffer_size,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
