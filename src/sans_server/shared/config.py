"""Configuration management using pydantic-settings."""

from functools import lru_cache
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sans_server.shared.models import HTTP_METHODS, Method

LOG_SHORTCUTS = {
    "silent": {"silent": True},
    "verbose": {"verbose": True},
}


class LogSettings(BaseModel):
    """Controls how the events of a request are written to the log."""

    silent: bool = Field(default=False, description="Suppress all request logs")
    grouped: bool = Field(default=True, description="Write all events of a request as one block once it settles")
    verbose: bool = Field(default=False, description="Include event details")
    time_diff: bool = Field(default=True, description="Show time since the previous event")
    duration: bool = Field(default=False, description="Show time since the request started")
    timestamp: bool = Field(default=False, description="Show the timestamp of each event")


class ServerSettings(BaseSettings):
    """Server settings, loaded from keyword arguments or environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SANS_SERVER_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    timeout: float = Field(default=30, description="Seconds before a request times out, 0 disables", ge=0)
    logs: LogSettings = Field(default_factory=LogSettings, description="Request log output")
    supported_methods: list[Method] = Field(
        default_factory=lambda: list(HTTP_METHODS), description="Methods accepted by the method check"
    )
    method_check: bool = Field(default=True, description="Reject unsupported methods with 405")
    rejectable: bool = Field(default=False, description="Reject the outcome instead of resolving to a 500")
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("logs", mode="before")
    @classmethod
    def expand_shortcut(cls, value: Any) -> Any:
        if isinstance(value, str):
            if value not in LOG_SHORTCUTS:
                raise ValueError(f"Unknown logs shortcut {value!r}, expected one of {sorted(LOG_SHORTCUTS)}")
            return dict(LOG_SHORTCUTS[value])
        return value

    @field_validator("supported_methods", mode="before")
    @classmethod
    def upper_case_methods(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [item.upper() if isinstance(item, str) else item for item in value]
        return value

    @field_validator("supported_methods")
    @classmethod
    def reject_marker(cls, value: list[Method]) -> list[Method]:
        if Method.NOT_MATCHED in value:
            raise ValueError("NOT_MATCHED cannot be a supported method")
        return value


@lru_cache
def get_settings() -> ServerSettings:
    """Get the application settings instance."""
    return ServerSettings()
