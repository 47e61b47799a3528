"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (Cloud Run injects via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class TrustModel(str, Enum):
    """Which proxy header is trusted to carry the client address.

    Exactly one model is active per deployment. Trusting a header that the
    proxy in front of the service does not overwrite lets clients spoof
    their address.
    """

    FORWARDED_FOR = "forwarded_for"
    EDGE_HEADER = "edge_header"


def _build_server_settings() -> "ServerSettings":
    """Build server settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return ServerSettings()  # type: ignore[call-arg]


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    See _build_server_settings() for rationale about the type ignore.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class ServerSettings(BaseSettings):
    """Listener and lifecycle configuration."""

    host: str = Field(
        "0.0.0.0",
        description="Interface the listener binds to",
    )
    port: int = Field(
        8080,
        description="TCP port; Cloud Run injects PORT",
        validation_alias=AliasChoices("PORT", "SERVER_PORT"),
        ge=0,
        le=65535,
    )
    shutdown_grace_seconds: float = Field(
        10.0,
        description="Time in-flight requests get to finish after SIGTERM",
        gt=0,
    )
    keep_alive_seconds: int = Field(
        120,
        description="Idle keep-alive timeout for client connections",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="SERVER_",
        case_sensitive=False,
        populate_by_name=True,
    )


class AppSettings(BaseSettings):
    """Request pipeline configuration."""

    trust_model: TrustModel = Field(
        TrustModel.FORWARDED_FOR,
        description="Proxy header trust model (forwarded_for or edge_header)",
    )
    edge_header: str = Field(
        "X-Real-IP",
        description="Header set by the edge proxy when trust_model=edge_header",
        min_length=1,
    )
    request_timeout_seconds: float = Field(
        10.0,
        description="Wall-clock budget for handling one request",
        gt=0,
    )

    rate_limit_enabled: bool = Field(
        True,
        description="Enable per-client rate limiting on the IP endpoints",
    )
    rate_limit_requests: int = Field(
        120,
        description="Maximum number of requests allowed per window (per client)",
        ge=1,
    )
    rate_limit_window_seconds: int = Field(
        60,
        description="Rate limit window size in seconds",
        ge=1,
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    output: str = Field("stdout", description="stdout or file")
    file_path: str | None = Field(
        None,
        description="Log file path when output=file",
    )
    max_bytes: int = Field(
        0,
        description="Rotate the log file at this size; 0 disables rotation",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the request correlation id",
    )
    mask_client_ip: bool = Field(
        False,
        description="Log client addresses truncated to /24 (IPv4) or /48 (IPv6)",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    server: ServerSettings = Field(default_factory=_build_server_settings)
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
