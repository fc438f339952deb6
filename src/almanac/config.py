"""Almanac configuration loading and validation.

Reads ``almanac.toml``, resolves ``${VAR}`` environment references, and
validates every section into an :class:`AlmanacConfig`.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_SCOPE_ID = "primary-calendar-aggregate"
DEFAULT_CONFIG_FILENAME = "almanac.toml"
GOOGLE_CALENDAR_BASE_URL = "https://www.googleapis.com/calendar/v3"

# ${NAME} references inside TOML string values.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when almanac configuration is missing, malformed, or invalid."""


class SyncSettings(BaseModel):
    """``[almanac.sync]``: pass cadence, lock, breaker, and fetch windows."""

    model_config = ConfigDict(extra="forbid")

    interval_minutes: int = Field(default=5, gt=0)
    lock_timeout_minutes: int = Field(default=5, gt=0)
    max_consecutive_errors: int = Field(default=3, gt=0)
    full_sync_past_days: int = Field(default=90, ge=0)
    full_sync_future_days: int = Field(default=365, gt=0)
    expansion_future_days: int = Field(default=730, gt=0)


class QueueSettings(BaseModel):
    """``[almanac.queue]``: outbound mutation retry bound."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=5, gt=0)


class RemoteSettings(BaseModel):
    """``[almanac.remote]``: remote calendar endpoint and credentials source."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = GOOGLE_CALENDAR_BASE_URL
    access_token_env: str = "ALMANAC_ACCESS_TOKEN"
    timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("base_url must be a non-empty string")
        return normalized


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    format: Literal["text", "json"] = "text"
    log_root: str | None = None

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("format", mode="before")
    @classmethod
    def _lower_format(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class DbSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "almanac"
    schema_name: str | None = Field(default=None, alias="schema")

    @field_validator("name")
    @classmethod
    def _non_empty_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("db name must be a non-empty string")
        return normalized

    @field_validator("schema_name")
    @classmethod
    def _valid_schema(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if _DB_SCHEMA_PATTERN.fullmatch(normalized) is None:
            raise ValueError(f"Expected a SQL identifier-style schema name, got {value!r}")
        return normalized


class AlmanacConfig(BaseModel):
    """Validated ``[almanac]`` table."""

    model_config = ConfigDict(extra="forbid")

    scope_id: str = DEFAULT_SCOPE_ID
    sync: SyncSettings = Field(default_factory=SyncSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    db: DbSettings = Field(default_factory=DbSettings)

    @field_validator("scope_id")
    @classmethod
    def _non_empty_scope(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("scope_id must be a non-empty string")
        return normalized


def resolve_env_vars(value: Any) -> Any:
    """Substitute ``${VAR}`` references in every string of a parsed TOML tree.

    Raises :class:`ConfigError` naming each referenced variable that is unset.
    """
    if isinstance(value, str):
        unset = [name for name in _ENV_VAR_PATTERN.findall(value) if name not in os.environ]
        if unset:
            raise ConfigError(
                f"Unset environment variable(s) {', '.join(sorted(set(unset)))} "
                f"referenced by config value {value!r}"
            )
        return _ENV_VAR_PATTERN.sub(lambda m: os.environ[m.group(1)], value)
    if isinstance(value, dict):
        return {key: resolve_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    return value


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in ("almanac", *error["loc"]))
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


def parse_config(data: dict[str, Any]) -> AlmanacConfig:
    """Validate an already-parsed TOML document."""
    data = resolve_env_vars(data)
    section = data.get("almanac", {})
    if not isinstance(section, dict):
        raise ConfigError("[almanac] must be a TOML table")
    try:
        return AlmanacConfig.model_validate(section)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config: {_format_validation_error(exc)}") from exc


def load_config(path: Path | None = None) -> AlmanacConfig:
    """Load and validate ``almanac.toml``.

    ``path`` may point at the file itself or at the directory holding it.
    A missing default file yields all-default settings; an explicitly
    given path that does not exist is an error.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    if path is None:
        toml_path = Path.cwd() / DEFAULT_CONFIG_FILENAME
        if not toml_path.exists():
            return AlmanacConfig()
    else:
        toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path
        if not toml_path.exists():
            raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
    return parse_config(data)
