"""
Configuration models and loader for Pool Backup Autopilot.

Two kinds of configuration live here:

* Daemon settings (pool, paths, logging, maintenance windows, managed units),
  loaded from YAML and validated with Pydantic.
* The backup service record (configuration plus observable status), which is
  updated at runtime through the service facade and persisted in the state
  database.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from core.errors import ConfigInvalidError

SUPPORTED_BACKENDS = ["s3"]
WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class ConfigError(ConfigInvalidError):
    """Raised when the daemon settings file is missing, unreadable or invalid."""


# ============================================================================
# Backup service configuration (update/read surface)
# ============================================================================


class S3BackendConfig(BaseModel):
    """S3-compatible object storage backend."""

    model_config = ConfigDict(extra="forbid")

    endpoint: str = Field("", description="S3 endpoint host[:port]")
    bucket: str = Field("", description="Bucket holding the repository")
    access_key: str = Field("", description="Access key ID")
    secret_key: str = Field("", description="Secret access key")
    region: str = Field("", description="Optional bucket region")
    disable_tls: bool = Field(False, description="Talk plain HTTP to the endpoint")

    def missing_fields(self) -> List[str]:
        """Return the names of required fields that are empty."""
        required = ["endpoint", "bucket", "access_key", "secret_key"]
        return [name for name in required if not getattr(self, name)]


class BackendConfig(BaseModel):
    """
    Repository backend, a tagged variant keyed by type.

    Only one variant may be populated and it must match type. Completeness of
    the variant is checked by the repository connector so an incomplete
    backend can still be stored and reported in last_status.
    """

    model_config = ConfigDict(extra="forbid")

    type: str = Field("", description="Backend kind (currently only 's3')")
    s3: Optional[S3BackendConfig] = Field(None, description="S3 backend settings")

    @field_validator("type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        """Backend type is case-insensitive."""
        return (v or "").strip().lower()


RETENTION_TIERS = (
    "keep_latest",
    "keep_hourly",
    "keep_daily",
    "keep_weekly",
    "keep_monthly",
    "keep_annual",
)


class RetentionPolicy(BaseModel):
    """
    Repository retention rules by recency tier.

    Zero or absent means "do not constrain by this rule".
    """

    model_config = ConfigDict(extra="forbid")

    keep_latest: Optional[int] = Field(None, ge=0)
    keep_hourly: Optional[int] = Field(None, ge=0)
    keep_daily: Optional[int] = Field(None, ge=0)
    keep_weekly: Optional[int] = Field(None, ge=0)
    keep_monthly: Optional[int] = Field(None, ge=0)
    keep_annual: Optional[int] = Field(None, ge=0)

    def as_flags(self) -> Dict[str, int]:
        """
        Return the rules that constrain retention, keyed by flag name.

        Example:
            >>> RetentionPolicy(keep_daily=7).as_flags()
            {'keep-daily': 7}
        """
        return {flag: value for flag, value in self.as_policy_flags().items() if value}

    def as_policy_flags(self) -> Dict[str, int]:
        """
        Return every tier keyed by flag name, with 0 for absent rules.

        Writing all tiers replaces whatever an earlier policy stored for the
        ones this policy leaves out.

        Example:
            >>> RetentionPolicy(keep_daily=7).as_policy_flags()["keep-hourly"]
            0
        """
        return {
            name.replace("_", "-"): getattr(self, name) or 0
            for name in RETENTION_TIERS
        }

    def is_empty(self) -> bool:
        """True when no rule constrains retention (no pruning requested)."""
        return not self.as_flags()


class BackupServiceConfig(BaseModel):
    """Backup service configuration, applied as a whole on update."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(False, description="Enable the backup service")
    repository_password: str = Field(
        "", description="Repository encryption password (required when enabled)"
    )
    backend: BackendConfig = Field(default_factory=BackendConfig)
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    backup_frequency: str = Field(
        "", description="Duration between backups; empty means once per maintenance window"
    )
    # One-shot command: setting a new value triggers a restore, the field is
    # cleared again once the attempt finishes.
    restore_snapshot_id: str = Field("", description="Snapshot to restore")

    @field_validator("backup_frequency", "restore_snapshot_id", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        """Accept null for optional string fields."""
        if v is None:
            return ""
        return v.strip() if isinstance(v, str) else v


class SnapshotInfo(BaseModel):
    """A snapshot held in the remote repository."""

    model_config = ConfigDict(extra="ignore")

    id: str
    time: Optional[datetime] = None
    size: int = 0
    source: str = ""
    description: str = ""


class BackupServiceState(BaseModel):
    """Observable status of the backup service."""

    model_config = ConfigDict(extra="ignore")

    repository_connected: bool = False
    last_backup: Optional[datetime] = None
    last_backup_window: Optional[str] = None
    last_status: str = ""
    in_progress: bool = False
    progress: float = Field(0, ge=0, le=100)
    available_snapshots: List[SnapshotInfo] = Field(default_factory=list)


class BackupServiceRecord(BaseModel):
    """Persisted configuration and status of the backup service."""

    model_config = ConfigDict(extra="ignore")

    state: BackupServiceState = Field(default_factory=BackupServiceState)
    config: BackupServiceConfig = Field(default_factory=BackupServiceConfig)


@dataclass(frozen=True)
class RestoreCommand:
    """
    A restore request carried by a configuration update.

    Derived from the incoming update against the previously persisted
    configuration; only a transition to a new non-empty snapshot ID counts.
    """

    snapshot_id: str

    @classmethod
    def from_update(
        cls, old: BackupServiceConfig, new: BackupServiceConfig
    ) -> Optional["RestoreCommand"]:
        """
        Return the restore command in an update, or None.

        Example:
            >>> RestoreCommand.from_update(old, new.model_copy(update={"restore_snapshot_id": "k123"}))
            RestoreCommand(snapshot_id='k123')
        """
        requested = new.restore_snapshot_id
        if requested and requested != old.restore_snapshot_id:
            return cls(snapshot_id=requested)
        return None


# ============================================================================
# Daemon settings (YAML)
# ============================================================================


class DaemonSettings(BaseModel):
    """Where the service runs and what it protects."""

    model_config = ConfigDict(extra="forbid")

    service_name: str = Field("backup", description="Name of this service in the unit registry")
    pool: str = Field("local", description="ZFS pool to back up")
    cache_dataset: str = Field("kopia-cache", description="Dataset holding the engine cache")
    cache_dir: Path = Field(
        Path("/var/lib/pool-autopilot/kopia"), description="Mountpoint of the cache dataset"
    )
    state_db: Path = Field(
        Path("/var/lib/pool-autopilot/state.db"), description="SQLite state database"
    )
    poll_interval_seconds: int = Field(60, description="Scheduler polling interval")
    staging_dir_name: str = Field(
        ".restore-staging", description="Staging directory created under the pool mount"
    )

    @field_validator("poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, v: int) -> int:
        """Scheduling granularity must be one minute or finer."""
        if v < 1 or v > 60:
            raise ValueError("Poll interval must be between 1 and 60 seconds")
        return v

    @field_validator("cache_dir", "state_db")
    @classmethod
    def validate_absolute(cls, v: Path) -> Path:
        """Ensure paths are absolute."""
        if not v.is_absolute():
            raise ValueError(f"Path must be absolute: {v}")
        return v

    @field_validator("staging_dir_name")
    @classmethod
    def validate_staging_name(cls, v: str) -> str:
        """Staging directory must be a single path component."""
        if not v or v in (".", "..") or "/" in v:
            raise ValueError("Staging directory name must be a single path component")
        return v


class LoggingSettings(BaseModel):
    """Logging configuration passed to lib.logger.setup_logger()."""

    model_config = ConfigDict(extra="forbid")

    level: str = Field("INFO", description="Minimum log level")
    file: Optional[Path] = Field(None, description="Log file path")
    console: bool = Field(True, description="Log to stderr")
    rotation: Union[str, int] = Field("10 MB", description="Log rotation trigger")
    retention: Union[str, int] = Field("30 days", description="Rotated log retention")
    compression: Optional[str] = Field("gz", description="Rotated log compression")


class ToolSettings(BaseModel):
    """Binaries invoked for external operations."""

    model_config = ConfigDict(extra="forbid")

    kopia: str = "kopia"
    zfs: str = "zfs"
    zpool: str = "zpool"
    rsync: str = "rsync"
    systemctl: str = "systemctl"


class MaintenanceWindowConfig(BaseModel):
    """
    A recurring maintenance window.

    An end time at or before the start time means the window runs past
    midnight. An empty days list means every day.
    """

    model_config = ConfigDict(extra="forbid")

    start: str = Field(..., description="Start time of day (HH:MM)")
    end: str = Field(..., description="End time of day (HH:MM)")
    days: List[str] = Field(default_factory=list, description="Weekdays (mon..sun)")

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, v: str) -> str:
        """Validate HH:MM format."""
        if not _TIME_OF_DAY.match(v.strip()):
            raise ValueError(f"Time must be in HH:MM format, got {v!r}")
        return v.strip()

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: List[str]) -> List[str]:
        """Normalize weekday names to three-letter lowercase."""
        days = []
        for day in v:
            short = day.strip().lower()[:3]
            if short not in WEEKDAYS:
                raise ValueError(f"Day must be one of {WEEKDAYS}, got {day!r}")
            days.append(short)
        return days


class ManagedUnitConfig(BaseModel):
    """A service or application stopped and restarted around a restore."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Unit name")
    kind: str = Field("service", description="'service' or 'application'")
    type: str = Field("systemd", description="'systemd' or 'docker'")
    enabled: bool = Field(True, description="Whether the unit should be running")
    unit_name: Optional[str] = Field(None, description="systemd unit (defaults to name)")
    container_name: Optional[str] = Field(None, description="Docker container name")
    health_check_url: Optional[str] = Field(None, description="Checked after restart")

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        """Validate unit kind."""
        allowed = ["service", "application"]
        if v.lower() not in allowed:
            raise ValueError(f"Unit kind must be one of {allowed}")
        return v.lower()

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Validate unit type."""
        allowed = ["systemd", "docker"]
        if v.lower() not in allowed:
            raise ValueError(f"Unit type must be one of {allowed}")
        return v.lower()

    @model_validator(mode="after")
    def default_container_name(self) -> "ManagedUnitConfig":
        """Docker units act on the container named after the unit by default."""
        if self.type == "docker" and self.container_name is None:
            self.container_name = self.name
        return self


class AutopilotConfig(BaseModel):
    """Root of the daemon settings file."""

    model_config = ConfigDict(extra="forbid")

    daemon: DaemonSettings = Field(default_factory=DaemonSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    maintenance_windows: List[MaintenanceWindowConfig] = Field(default_factory=list)
    units: List[ManagedUnitConfig] = Field(default_factory=list)
    # Seeds the service configuration when nothing has been persisted yet
    backup: Optional[BackupServiceConfig] = None

    @model_validator(mode="after")
    def validate_unique_units(self) -> "AutopilotConfig":
        """Unit names identify units in the registry."""
        seen = set()
        for unit in self.units:
            if unit.name in seen:
                raise ValueError(f"Duplicate unit name: {unit.name}")
            seen.add(unit.name)
        return self


class ConfigLoader:
    """
    Daemon settings loader with YAML parsing, Pydantic validation and
    dot-notation access.

    Example:
        >>> loader = ConfigLoader(Path("/etc/pool-autopilot/config.yaml"))
        >>> loader.get("daemon.pool")
        'local'
        >>> loader.get_array("maintenance_windows")
        [MaintenanceWindowConfig(...)]
    """

    MAX_DOT_DEPTH = 5

    def __init__(
        self,
        config_path: Optional[Path] = None,
        merge_configs: Optional[List[Path]] = None,
    ):
        """
        Load configuration from a file.

        Args:
            config_path: Path to the primary YAML configuration file
            merge_configs: Optional list of additional config files to merge

        Raises:
            ConfigError: If a file is missing, unparsable or invalid
        """
        self.config_path = config_path
        self.merge_configs = merge_configs or []
        self._raw_config: Dict[str, Any] = {}
        self._validated_config: Optional[AutopilotConfig] = None

        if config_path is not None:
            self._raw_config = self._load_yaml(Path(config_path))

        for merge_path in self.merge_configs:
            self._raw_config = self._merge_configs(
                self._raw_config, self._load_yaml(Path(merge_path))
            )

        self._validate()

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        """
        Load a YAML file and return parsed content.

        Raises:
            ConfigError: If the file doesn't exist or cannot be parsed
        """
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                content = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML file {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file {path}: {e}") from e

        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigError(
                f"Configuration must be a YAML dictionary, got {type(content).__name__}"
            )
        return content

    def _merge_configs(
        self, base: Dict[str, Any], override: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Recursively merge two configuration dictionaries.

        Later values override earlier ones. Lists are replaced, except 'units'
        and 'maintenance_windows' which are appended.
        """
        result = base.copy()

        for key, value in override.items():
            if key in ("units", "maintenance_windows") and isinstance(value, list):
                existing = result.get(key)
                result[key] = (existing + value) if isinstance(existing, list) else value
            elif isinstance(result.get(key), dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _validate(self) -> None:
        """
        Validate the raw configuration.

        Raises:
            ConfigError: With every validation error listed
        """
        try:
            self._validated_config = AutopilotConfig.model_validate(self._raw_config)
        except ValidationError as e:
            error_msg = f"Configuration validation failed with {len(e.errors())} error(s):\n"
            for error in e.errors():
                loc = ".".join(str(part) for part in error["loc"])
                error_msg += f"  - {loc}: {error['msg']}\n"
            raise ConfigError(error_msg.rstrip()) from e

    @property
    def settings(self) -> AutopilotConfig:
        """Validated settings model."""
        assert self._validated_config is not None
        return self._validated_config

    def get(self, key: str, default: Any = None, required: bool = False) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Dot-separated key path (e.g., "daemon.pool")
            default: Default value if key doesn't exist
            required: Raise ConfigError instead of returning default

        Raises:
            ValueError: If key depth exceeds MAX_DOT_DEPTH
            ConfigError: If required and the key is missing or None

        Example:
            >>> loader.get("daemon.poll_interval_seconds")
            60
        """
        keys = key.split(".")
        if len(keys) > self.MAX_DOT_DEPTH:
            raise ValueError(
                f"Dot notation depth exceeds maximum of {self.MAX_DOT_DEPTH} levels: {key}"
            )

        current: Any = self._validated_config
        for part in keys:
            if isinstance(current, BaseModel) and part in type(current).model_fields:
                current = getattr(current, part)
            elif isinstance(current, dict) and part in current:
                current = current[part]
            else:
                current = None
                break

        if current is None:
            if required:
                raise ConfigError(f"Required configuration value missing: {key}")
            return default

        return current

    def get_array(self, key: str) -> List[Any]:
        """Get a list value, or an empty list if missing or not a list."""
        value = self.get(key, [])
        if not isinstance(value, list):
            return []
        return value

