"""Typed settings for the Aularis pipeline.

Configuration lives in a YAML file and is validated through Pydantic models
so every service receives checked values. Environment variables prefixed with
``AULARIS_`` override file values, which is how credentials are usually
supplied in deployment.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from aularis.errors import ConfigurationError
from aularis.orchestrator.retry_policy import RetryPolicy


DEFAULT_WORKSPACE_PATH = Path.home() / ".aularis"
DEFAULT_CONFIG_PATH = DEFAULT_WORKSPACE_PATH / "config.yaml"


class TunnelSettings(BaseModel):
    """SSH tunnel and remote enrolment database."""

    enabled: bool = Field(False, description="Discover tenants through the tunnel")
    ssh_host: str = Field("", description="SSH bastion host")
    ssh_port: int = Field(22, ge=1, le=65535)
    ssh_username: str = Field("", description="SSH login user")
    ssh_private_key_path: Optional[Path] = Field(default=None, description="Private key file")
    ssh_password: Optional[SecretStr] = Field(default=None, description="SSH password")
    known_hosts_path: Optional[Path] = Field(
        default=None, description="known_hosts file; host key checking is off when unset"
    )
    db_host: str = Field("127.0.0.1", description="Database host as seen from the SSH host")
    db_port: int = Field(3306, ge=1, le=65535)
    db_user: str = Field("", description="Database user")
    db_password: SecretStr = Field(default=SecretStr(""), description="Database password")
    db_name: str = Field("", description="Database schema")
    local_port: int = Field(33061, ge=0, le=65535, description="Local forward port, 0 for any")
    connect_timeout_seconds: float = Field(30.0, gt=0, le=600)
    teacher_role_id: int = Field(17, description="Enrolment role that marks a teacher")
    tenant_url_template: str = Field(
        "https://{host}.utel.edu.mx", description="Base URL for a discovered tenant"
    )

    @field_validator("tenant_url_template")
    @classmethod
    def _validate_template(cls, value: str) -> str:
        if "{host}" not in value:
            raise ValueError("tenant_url_template must contain '{host}'")
        return value


class QueueSettings(BaseModel):
    """Analysis work queue and its consumer pool."""

    database_path: Optional[Path] = Field(
        default=None, description="SQLite database; defaults to <workspace>/aularis.db"
    )
    concurrency: int = Field(2, ge=1, le=32, description="Concurrent analysis jobs")
    staleness_hours: float = Field(4.0, ge=0, description="Completed analyses younger than this are kept")
    retention_hours: float = Field(24.0, gt=0, description="Completed entries older than this are purged")
    max_attempts: int = Field(3, ge=1, le=10)
    submit_stagger_seconds: float = Field(1.0, ge=0, description="Delay step between submitted jobs")
    poll_interval_seconds: float = Field(30.0, gt=0, description="Due-entry polling interval")
    stall_timeout_minutes: int = Field(30, ge=1, description="Processing entries older than this are reset")
    analysis_timeout_seconds: Optional[float] = Field(300.0, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


class StateBackend(str, Enum):
    """Where the shared process snapshot is kept."""

    FILE = "file"
    SQLITE = "sqlite"
    MEMORY = "memory"


class StateSettings(BaseModel):
    """Shared run-state snapshot."""

    backend: StateBackend = StateBackend.FILE
    path: Optional[Path] = Field(default=None, description="JSON file or SQLite database")
    run_timeout_minutes: int = Field(30, ge=1, description="Active snapshots older than this are abandoned")


class ScheduleSettings(BaseModel):
    """Timer triggers."""

    enabled: bool = True
    cron_expressions: List[str] = Field(default_factory=lambda: ["0 8 * * *", "0 16 * * *"])
    timezone: str = "America/Mexico_City"
    cleanup_cron: str = "0 2 * * *"
    health_check_cron: str = "0 * * * *"
    wait_for_drain: bool = Field(True, description="Timer runs wait for the queue to drain")
    drain_timeout_seconds: Optional[float] = Field(3600.0, gt=0)

    @field_validator("cron_expressions")
    @classmethod
    def _validate_cron_list(cls, value: List[str]) -> List[str]:
        for expression in value:
            _check_cron(expression)
        return value

    @field_validator("cleanup_cron", "health_check_cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        return _check_cron(value)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value


class TenantSettings(BaseModel):
    """A statically configured tenant."""

    id: str
    name: Optional[str] = None
    base_url: str


class CollaboratorSettings(BaseModel):
    """Import paths of the externally supplied callables."""

    content_fetcher: Optional[str] = Field(default=None, description="module:attribute")
    analysis_executor: Optional[str] = Field(default=None, description="module:attribute")

    @field_validator("content_fetcher", "analysis_executor")
    @classmethod
    def _validate_import_path(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value.count(":") != 1:
            raise ValueError("expected 'module:attribute'")
        return value


class Settings(BaseModel):
    """Root configuration."""

    model_config = ConfigDict(extra="forbid")

    workspace_path: Path = DEFAULT_WORKSPACE_PATH
    log_level: str = "INFO"
    tunnel: TunnelSettings = Field(default_factory=TunnelSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    tenants: List[TenantSettings] = Field(default_factory=list)
    collaborators: CollaboratorSettings = Field(default_factory=CollaboratorSettings)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        upper = value.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return upper

    @property
    def queue_database_path(self) -> Path:
        return self.queue.database_path or self.workspace_path / "aularis.db"

    @property
    def state_path(self) -> Path:
        if self.state.path is not None:
            return self.state.path
        if self.state.backend == StateBackend.SQLITE:
            return self.queue_database_path
        return self.workspace_path / "process_state.json"

    @property
    def log_dir(self) -> Path:
        return self.workspace_path / "logs"


def _check_cron(expression: str) -> str:
    if not croniter.is_valid(expression):
        raise ValueError(f"Invalid cron expression: {expression}")
    return expression


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from YAML, apply environment overrides and validate.

    A missing file is not an error: defaults plus environment overrides are
    used instead.

    Raises:
        ConfigurationError: If the file cannot be parsed or fails validation
    """
    path = path or Path(os.getenv("AULARIS_CONFIG", str(DEFAULT_CONFIG_PATH)))
    data: Dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(
                f"Invalid YAML in {path}: {exc}", details={"config_path": str(path)}
            ) from exc
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration root must be a mapping: {path}",
                details={"config_path": str(path)},
            )

    data = _apply_env_overrides(data)
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        error_details = [
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ConfigurationError(
            f"Invalid configuration: {'; '.join(error_details)}",
            details={"config_path": str(path)},
        ) from exc


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to YAML with secrets masked."""

    payload = settings.model_dump(mode="json")
    payload = _mask_secret_fields(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(payload, f, default_flow_style=False, sort_keys=False)


def validate_settings_file(path: Path) -> List[str]:
    """Return validation errors for a configuration file (empty if valid)."""
    if not path.exists():
        return [f"Configuration file not found: {path}"]
    try:
        with open(path, encoding="utf-8") as f:
            Settings.model_validate(yaml.safe_load(f) or {})
    except ValidationError as exc:
        return [
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
    except yaml.YAMLError as exc:
        return [f"Failed to parse configuration: {exc}"]
    return []


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    _set_env_override(data, "workspace_path", "AULARIS_WORKSPACE")
    _set_env_override(data, "log_level", "AULARIS_LOG_LEVEL")

    tunnel = data.setdefault("tunnel", {})
    _set_env_override(tunnel, "enabled", "AULARIS_TUNNEL_ENABLED", cast_bool=True)
    _set_env_override(tunnel, "ssh_host", "AULARIS_SSH_HOST")
    _set_env_override(tunnel, "ssh_port", "AULARIS_SSH_PORT", cast_int=True)
    _set_env_override(tunnel, "ssh_username", "AULARIS_SSH_USERNAME")
    _set_env_override(tunnel, "ssh_private_key_path", "AULARIS_SSH_KEY_PATH")
    _set_env_override(tunnel, "ssh_password", "AULARIS_SSH_PASSWORD")
    _set_env_override(tunnel, "db_host", "AULARIS_DB_HOST")
    _set_env_override(tunnel, "db_port", "AULARIS_DB_PORT", cast_int=True)
    _set_env_override(tunnel, "db_user", "AULARIS_DB_USER")
    _set_env_override(tunnel, "db_password", "AULARIS_DB_PASSWORD")
    _set_env_override(tunnel, "db_name", "AULARIS_DB_NAME")
    _set_env_override(tunnel, "local_port", "AULARIS_LOCAL_PORT", cast_int=True)

    queue = data.setdefault("queue", {})
    _set_env_override(queue, "database_path", "AULARIS_QUEUE_DB")
    _set_env_override(queue, "concurrency", "AULARIS_QUEUE_CONCURRENCY", cast_int=True)

    state = data.setdefault("state", {})
    _set_env_override(state, "backend", "AULARIS_STATE_BACKEND")
    _set_env_override(state, "path", "AULARIS_STATE_PATH")

    schedule = data.setdefault("schedule", {})
    _set_env_override(schedule, "enabled", "AULARIS_SCHEDULE_ENABLED", cast_bool=True)
    _set_env_override(schedule, "timezone", "AULARIS_TIMEZONE")
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    if cast_bool:
        mapping[key] = raw.lower() in {"1", "true", "yes"}
    elif cast_int:
        try:
            mapping[key] = int(raw)
        except ValueError as exc:
            raise ConfigurationError(f"{env_name} must be an integer") from exc
    else:
        mapping[key] = raw


def _mask_secret_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    tunnel = payload.get("tunnel", {})
    for key in ("ssh_password", "db_password"):
        if tunnel.get(key):
            tunnel[key] = "***"
    return payload
