"""
Engine configuration, read from SQLENGINE_* environment variables or a .env file.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SQLENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = Field(
        default="WARNING",
        description="Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    max_sql_length: int = Field(
        default=65536,
        ge=1,
        description="Statements longer than this many characters are rejected before tokenizing"
    )

    prompt: str = Field(default="db> ", description="REPL prompt")
    continuation_prompt: str = Field(default="... ", description="REPL prompt for continuation lines")

    api_host: str = Field(default="127.0.0.1", description="Interface the HTTP API binds to")
    api_port: int = Field(default=8000, ge=1, le=65535, description="Port the HTTP API listens on")
    api_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL the web console uses to reach the HTTP API"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Invalid log level '{v}'")
        return level


_settings: Optional[EngineSettings] = None


def get_settings(force_reload: bool = False) -> EngineSettings:
    """Process-wide settings instance.

    Args:
        force_reload: Build a fresh instance, picking up environment changes.
    """
    global _settings

    if _settings is None or force_reload:
        _settings = EngineSettings()

    return _settings
