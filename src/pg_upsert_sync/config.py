"""
pg-upsert-sync Configuration System.

Type-safe configuration using Pydantic. Settings can be loaded from:
1. Environment variables (prefixed with PG_UPSERT_SYNC_)
2. Config file (JSON or TOML)
3. CLI arguments (highest priority)

Config files may use the camelCase keys of the legacy JSON format
("leaderDSN", "iterationSleepInterval", "replicationMode", ...) or the
snake_case field names.

Example usage:
    from pg_upsert_sync.config import Settings

    settings = Settings.from_file("config.json")
    for table in settings.tables:
        print(table.name, table.replication_mode)
"""

from __future__ import annotations

import json
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReplicationMode(str, Enum):
    """How rows are applied to the follower."""

    UPSERT = "upsert"
    INSERT = "insert"
    INSERT_SERIAL = "insert-serial"


TABLE_COLUMN_DEFAULTS = {
    "id_column": "id",
    "created_at_column": "created_at",
    "updated_at_column": "updated_at",
}


class TableSyncConfig(BaseModel):
    """Replication policy for one table. Immutable once loaded."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=1, description="Table to replicate")
    replication_mode: ReplicationMode = Field(
        default=ReplicationMode.UPSERT,
        alias="replicationMode",
        description="upsert, insert or insert-serial",
    )
    id_column: str = Field(default="id", alias="idColumn")
    created_at_column: str = Field(default="created_at", alias="createdAtColumn")
    updated_at_column: str = Field(default="updated_at", alias="updatedAtColumn")
    max_record_age_seconds: float = Field(
        default=0.0,
        ge=0,
        alias="maxRecordAgeSeconds",
        description="Skip rows created longer ago than this (0 = scan whole table)",
    )

    @field_validator("replication_mode", mode="before")
    @classmethod
    def default_mode(cls, v: Any) -> Any:
        """An empty mode means upsert."""
        if v in ("", None):
            return ReplicationMode.UPSERT
        return v

    @field_validator(*TABLE_COLUMN_DEFAULTS, mode="before")
    @classmethod
    def default_column(cls, v: Any, info: ValidationInfo) -> Any:
        """An empty column name falls back to the default."""
        if v in ("", None):
            return TABLE_COLUMN_DEFAULTS[info.field_name]
        return v


class RunSettings(BaseModel):
    """Run loop behaviour."""

    model_config = ConfigDict(populate_by_name=True)

    iteration_sleep_interval: float = Field(
        default=60.0,
        ge=0,
        alias="iterationSleepInterval",
        description="Seconds to sleep between cycles (fractional allowed)",
    )
    exit_on_completion: bool = Field(
        default=False,
        alias="exitOnCompletion",
        description="Exit once a cycle replicates zero rows",
    )


class SyncSettings(BaseModel):
    """Synchronizer behaviour."""

    model_config = ConfigDict(populate_by_name=True)

    clock_synchronization_margin_seconds: float = Field(
        default=0.0,
        ge=0,
        alias="clockSynchronizationMarginSeconds",
        description="Re-scan rows updated this long before the last sync",
    )
    leader_isolation: Literal["serializable", "repeatable read"] = Field(
        default="serializable",
        alias="leaderIsolation",
        description="Isolation level of the read-only leader transaction",
    )
    dry_run: bool = Field(
        default=False,
        alias="dryRun",
        description="Generate statements but roll back the follower transaction",
    )


class ProgressSettings(BaseModel):
    """Where the sync watermark is persisted."""

    model_config = ConfigDict(populate_by_name=True)

    backend: Literal["database", "file"] = Field(
        default="database",
        description="Store sync records in the follower, or a timestamp file",
    )
    timestamp_file_path: Path | None = Field(
        default=None,
        alias="timestampFilePath",
        description="Timestamp file for the file backend",
    )
    records_table: str = Field(
        default="unprivileged_replication_sync_records",
        alias="recordsTable",
        description="Bookkeeping table for the database backend",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of rotated log files to keep",
    )


# camelCase keys accepted at the top level of a config file
_TOP_LEVEL_ALIASES = {
    "leaderDSN": "leader_dsn",
    "followerDSN": "follower_dsn",
}


class Settings(BaseSettings):
    """
    Main settings class for pg-upsert-sync.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments, including the values from_file()
       reads from a config file
    2. Environment variables (PG_UPSERT_SYNC_* prefix)
    3. .env file
    4. Defaults

    A config file therefore wins over the environment; environment
    variables only fill in settings the file leaves out.

    Example:
        export PG_UPSERT_SYNC_LEADER_DSN="postgres://reader@leader/app"
        export PG_UPSERT_SYNC_RUN__EXIT_ON_COMPLETION=true
        settings = Settings.from_file("config.json")
    """

    model_config = SettingsConfigDict(
        env_prefix="PG_UPSERT_SYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    leader_dsn: SecretStr = Field(
        default=SecretStr(""),
        description="Connection string of the database rows are read from",
    )
    follower_dsn: SecretStr = Field(
        default=SecretStr(""),
        description="Connection string of the database rows are written to",
    )

    run: RunSettings = Field(default_factory=RunSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    progress: ProgressSettings = Field(default_factory=ProgressSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    tables: list[TableSyncConfig] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def accept_camel_case(cls, data: Any) -> Any:
        """Map the legacy camelCase config format onto the field names."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for camel, snake in _TOP_LEVEL_ALIASES.items():
            if camel in data:
                data[snake] = data.pop(camel)
        # A top-level timestamp file selects the file backend
        path = data.pop("timestampFilePath", None) or data.pop("timestamp_file_path", None)
        if path:
            progress = dict(data.get("progress") or {})
            progress.setdefault("timestamp_file_path", path)
            progress.setdefault("backend", "file")
            data["progress"] = progress
        return data

    @field_validator("leader_dsn", "follower_dsn", mode="before")
    @classmethod
    def validate_dsn(cls, v: Any) -> SecretStr:
        """Handle DSNs from various sources."""
        if isinstance(v, SecretStr):
            return v
        if isinstance(v, str):
            return SecretStr(v)
        return SecretStr("")

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a JSON or TOML config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls(**data)

    def validate_required(self) -> list[str]:
        """Check settings a replication run cannot start without. Returns list of errors."""
        errors = []
        if not self.leader_dsn.get_secret_value():
            errors.append("leader_dsn is required")
        if not self.follower_dsn.get_secret_value():
            errors.append("follower_dsn is required")
        if not self.tables:
            errors.append("at least one table must be configured")
        if self.progress.backend == "file" and self.progress.timestamp_file_path is None:
            errors.append("progress.timestamp_file_path is required for the file backend")
        return errors


def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            data.update(overrides)
            return Settings(**data)
        return settings
    return Settings(**overrides)
