"""
Centralized configuration with validation.

Uses pydantic-settings to load and validate all settings at startup.
Precedence: environment -> .env -> ~/.postgres-cleanup.conf -> defaults.
Fail fast with clear error messages if the windows are misconfigured.
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import ClassVar

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

USER_CONFIG_FILE = Path.home() / ".postgres-cleanup.conf"


class Settings(BaseSettings):
    """Cleanup pipeline settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=(str(USER_CONFIG_FILE), ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Databases
    MAIN_DATABASE_URL: str = Field(
        default="postgresql+psycopg2://localhost:5432/postgres",
        description="Primary (operational) database URL",
    )
    ARCHIVE_DATABASE_URL: str = Field(
        default="postgresql+psycopg2://localhost:5432/postgres_archive",
        description="Archive database URL",
    )
    SCHEMA: str | None = Field(
        default="backtest",
        description="Schema holding metadata/signals/fills in both databases",
    )

    # Temporal windows (days)
    RECENT_DAYS: int = Field(default=7, description="Rows newer than this stay in the main database")
    BACKUP_DAYS: int = Field(default=14, description="Lower edge of the backup window")
    PURGE_DAYS: int = Field(default=14, description="Archive rows older than this are purged")

    # Resource constraints
    MAX_RUNTIME_MINUTES: int = Field(default=5, description="Abort between stages after this runtime")
    MAX_MEMORY_GB: int = Field(default=1, description="Virtual memory limit applied by the CLI")
    BATCH_SIZE: int = Field(default=10000, description="Rows per batch when copying to the archive")
    STATEMENT_TIMEOUT_SECONDS: int = Field(default=300, description="Per-statement timeout")
    CONNECT_TIMEOUT_SECONDS: int = Field(default=5, description="Connection timeout")

    # Locking
    LOCK_DIR: str = Field(default="/tmp", description="Directory for the run lock file")
    LOCK_NAME: str = Field(default="main", description="Lock name, one per main/archive pair")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="DEBUG, INFO, WARNING, ERROR")
    LOG_JSON: bool = Field(default=True, description="Emit single-line JSON logs")
    LOG_FILE: str | None = Field(
        default="/var/log/postgres-cleanup.log",
        description="Append log lines to this file (empty to disable)",
    )
    SYSLOG_ENABLED: bool = Field(default=False, description="Also forward logs to syslog")

    # Metrics
    METRICS_DIR: str = Field(
        default="/var/lib/node_exporter/textfile_collector",
        description="node_exporter textfile collector directory",
    )
    METRICS_FILE: str = Field(default="postgres_cleanup.prom")

    # Admin API
    ADMIN_API_KEY: str | None = Field(default=None, description="API key for admin endpoints")

    IDENTIFIER_PATTERN: ClassVar[re.Pattern] = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

    @field_validator(
        "RECENT_DAYS",
        "BACKUP_DAYS",
        "PURGE_DAYS",
        "MAX_RUNTIME_MINUTES",
        "MAX_MEMORY_GB",
        "BATCH_SIZE",
        "STATEMENT_TIMEOUT_SECONDS",
        "CONNECT_TIMEOUT_SECONDS",
    )
    @classmethod
    def require_positive(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be positive integer, got: {v}")
        return v

    @field_validator("SCHEMA")
    @classmethod
    def validate_schema_name(cls, v: str | None) -> str | None:
        """PostgreSQL identifier rules: alphanumeric + underscore, max 63 chars."""
        if v in (None, ""):
            return None
        if not cls.IDENTIFIER_PATTERN.match(v) or len(v) > 63:
            raise ValueError(f"invalid schema name: {v}")
        return v

    @field_validator("MAIN_DATABASE_URL", "ARCHIVE_DATABASE_URL")
    @classmethod
    def fix_database_url(cls, v: str) -> str:
        """Plain postgresql:// URLs need the psycopg2 driver spelled out for SQLAlchemy."""
        if v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+psycopg2://", 1)
        return v

    @field_validator("LOG_FILE")
    @classmethod
    def empty_log_file_disables(cls, v: str | None) -> str | None:
        return v or None

    @model_validator(mode="after")
    def check_window_order(self) -> "Settings":
        if self.RECENT_DAYS >= self.BACKUP_DAYS:
            raise ValueError(
                f"RECENT_DAYS ({self.RECENT_DAYS}) must be smaller than BACKUP_DAYS ({self.BACKUP_DAYS})"
            )
        return self

    @property
    def metrics_path(self) -> Path:
        return Path(self.METRICS_DIR) / self.METRICS_FILE


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings. Call at startup to validate config."""
    return Settings()
