"""
Tests for ConfigLoader and the configuration models.

Tests cover:
- Loading valid configurations
- Validation errors for invalid configs
- Dot notation access
- Config merging
- Backup service models (backend, retention, restore command)
"""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from core.config_loader import (
    AutopilotConfig,
    BackendConfig,
    BackupServiceConfig,
    ConfigError,
    ConfigLoader,
    DaemonSettings,
    MaintenanceWindowConfig,
    ManagedUnitConfig,
    RestoreCommand,
    RetentionPolicy,
    S3BackendConfig,
)
from core.errors import ConfigInvalidError


def write_config(tmp_path, data):
    """Write data as a settings file and return its path."""
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture
def fixtures_dir():
    """Return path to test fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def valid_config_path(fixtures_dir):
    return fixtures_dir / "valid_config.yaml"


@pytest.fixture
def valid_loader(valid_config_path):
    """Return ConfigLoader with valid config."""
    return ConfigLoader(valid_config_path)


class TestConfigLoading:
    """Test successful configuration loading."""

    def test_load_valid_config(self, valid_loader):
        """Test loading a valid configuration file."""
        settings = valid_loader.settings

        assert isinstance(settings, AutopilotConfig)
        assert settings.daemon.pool == "tank"
        assert settings.daemon.poll_interval_seconds == 30
        assert settings.tools.kopia == "/usr/bin/kopia"
        assert settings.tools.zfs == "zfs"

    def test_load_minimal_config_applies_defaults(self, fixtures_dir):
        """Test defaults for a minimal file."""
        settings = ConfigLoader(fixtures_dir / "minimal_config.yaml").settings

        assert settings.daemon.pool == "local"
        assert settings.daemon.service_name == "backup"
        assert settings.daemon.poll_interval_seconds == 60
        assert settings.maintenance_windows == []
        assert settings.backup is None

    def test_backup_section_seeds_service_config(self, valid_loader):
        """Test the optional backup section."""
        backup = valid_loader.settings.backup

        assert backup.enabled is True
        assert backup.backend.type == "s3"
        assert backup.backend.s3.bucket == "pool-backups"
        assert backup.retention.as_flags() == {"keep-daily": 7, "keep-weekly": 4}

    def test_window_days_normalized(self, valid_loader):
        """Test that weekday names are normalized."""
        windows = valid_loader.get_array("maintenance_windows")

        assert windows[0].days == []
        assert windows[1].days == ["sat", "sun"]

    def test_docker_unit_defaults_container_name(self, valid_loader):
        """Test that docker units act on the container named after them."""
        units = {unit.name: unit for unit in valid_loader.get_array("units")}

        assert units["gitea"].container_name == "gitea"
        assert units["postgres"].container_name is None


class TestConfigErrors:
    """Test error reporting."""

    def test_missing_file_raises_config_error(self, tmp_path):
        """Test that a missing file raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            ConfigLoader(tmp_path / "missing.yaml")

    def test_config_error_is_config_invalid(self):
        """Test that loader errors belong to the service error taxonomy."""
        assert issubclass(ConfigError, ConfigInvalidError)

    def test_malformed_yaml_raises_config_error(self, tmp_path):
        """Test unparsable YAML."""
        path = tmp_path / "broken.yaml"
        path.write_text("daemon: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigError, match="Failed to parse YAML"):
            ConfigLoader(path)

    def test_non_mapping_raises_config_error(self, tmp_path):
        """Test that a YAML list is rejected."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="must be a YAML dictionary"):
            ConfigLoader(path)

    def test_empty_file_uses_defaults(self, tmp_path):
        """Test that an empty file is valid."""
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")

        assert ConfigLoader(path).get("daemon.pool") == "local"

    def test_invalid_config_lists_every_error(self, fixtures_dir):
        """Test that all validation errors are aggregated."""
        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader(fixtures_dir / "invalid_config.yaml")

        message = str(exc_info.value)
        assert "daemon.poll_interval_seconds" in message
        assert "daemon.cache_dir" in message
        assert "maintenance_windows.0.start" in message
        assert "units.0.kind" in message

    def test_unknown_keys_rejected(self, tmp_path):
        """Test extra='forbid'."""
        with pytest.raises(ConfigError, match="daemon.pol"):
            ConfigLoader(write_config(tmp_path, {"daemon": {"pol": "typo"}}))

    def test_duplicate_unit_names_rejected(self, tmp_path):
        """Test unit name uniqueness."""
        with pytest.raises(ConfigError, match="Duplicate unit name"):
            ConfigLoader(write_config(tmp_path, {"units": [{"name": "a"}, {"name": "a"}]}))


class TestDotNotation:
    """Test get() with dot notation."""

    def test_nested_value(self, valid_loader):
        assert valid_loader.get("backup.backend.s3.endpoint") == "s3.example.com"

    def test_missing_value_returns_default(self, valid_loader):
        assert valid_loader.get("daemon.nonexistent", "fallback") == "fallback"

    def test_required_missing_raises(self, fixtures_dir):
        loader = ConfigLoader(fixtures_dir / "minimal_config.yaml")

        with pytest.raises(ConfigError, match="Required configuration value missing"):
            loader.get("backup.repository_password", required=True)

    def test_depth_limit(self, valid_loader):
        with pytest.raises(ValueError, match="depth exceeds"):
            valid_loader.get("a.b.c.d.e.f")

    def test_get_array_for_non_list(self, valid_loader):
        assert valid_loader.get_array("daemon.pool") == []


class TestMerging:
    """Test merging override files."""

    def test_merge_overrides_and_appends(self, valid_config_path, fixtures_dir):
        """Test that scalars are overridden and unit/window lists appended."""
        loader = ConfigLoader(
            valid_config_path, merge_configs=[fixtures_dir / "merge_override.yaml"]
        )

        assert loader.get("daemon.pool") == "backup-pool"
        assert loader.get("daemon.poll_interval_seconds") == 30
        assert loader.get("logging.level") == "WARNING"
        assert [u.name for u in loader.get_array("units")] == ["postgres", "gitea", "nextcloud"]
        assert len(loader.get_array("maintenance_windows")) == 3


class TestDaemonSettings:
    """Test DaemonSettings validation."""

    @pytest.mark.parametrize("interval", [0, 61])
    def test_poll_interval_bounds(self, interval):
        with pytest.raises(ValidationError, match="between 1 and 60"):
            DaemonSettings(poll_interval_seconds=interval)

    @pytest.mark.parametrize("name", ["", "..", "a/b"])
    def test_staging_name_single_component(self, name):
        with pytest.raises(ValidationError, match="single path component"):
            DaemonSettings(staging_dir_name=name)


class TestMaintenanceWindowConfig:
    """Test MaintenanceWindowConfig validation."""

    @pytest.mark.parametrize("value", ["1:00", "24:00", "12:60", "noon"])
    def test_invalid_time(self, value):
        with pytest.raises(ValidationError, match="HH:MM"):
            MaintenanceWindowConfig(start=value, end="05:00")

    def test_invalid_day(self):
        with pytest.raises(ValidationError, match="Day must be one of"):
            MaintenanceWindowConfig(start="01:00", end="05:00", days=["funday"])


class TestManagedUnitConfig:
    """Test ManagedUnitConfig validation."""

    def test_kind_and_type_normalized(self):
        unit = ManagedUnitConfig(name="gitea", kind="Application", type="Docker")

        assert unit.kind == "application"
        assert unit.type == "docker"

    def test_invalid_type(self):
        with pytest.raises(ValidationError, match="Unit type must be one of"):
            ManagedUnitConfig(name="x", type="podman")


class TestBackupServiceModels:
    """Test the backup service configuration models."""

    def test_backend_type_lowercased(self):
        assert BackendConfig(type=" S3 ").type == "s3"

    def test_s3_missing_fields(self):
        s3 = S3BackendConfig(endpoint="s3.example.com", bucket="b")

        assert s3.missing_fields() == ["access_key", "secret_key"]

    def test_s3_optional_fields_default(self):
        s3 = S3BackendConfig()

        assert s3.region == ""
        assert s3.disable_tls is False

    def test_empty_retention(self):
        """Test that absent and zero rules do not constrain retention."""
        assert RetentionPolicy().is_empty()
        assert RetentionPolicy(keep_latest=0, keep_daily=0).is_empty()
        assert RetentionPolicy().as_flags() == {}

    def test_retention_flags(self):
        policy = RetentionPolicy(keep_latest=10, keep_annual=2)

        assert policy.as_flags() == {"keep-latest": 10, "keep-annual": 2}
        assert not policy.is_empty()

    def test_policy_flags_cover_every_tier(self):
        policy = RetentionPolicy(keep_daily=7)

        assert policy.as_policy_flags() == {
            "keep-latest": 0,
            "keep-hourly": 0,
            "keep-daily": 7,
            "keep-weekly": 0,
            "keep-monthly": 0,
            "keep-annual": 0,
        }

    def test_negative_retention_rejected(self):
        with pytest.raises(ValidationError):
            RetentionPolicy(keep_daily=-1)

    def test_null_strings_become_empty(self):
        config = BackupServiceConfig(backup_frequency=None, restore_snapshot_id=None)

        assert config.backup_frequency == ""
        assert config.restore_snapshot_id == ""

    def test_service_config_round_trip(self, enabled_config):
        """Test that the update surface round-trips through JSON."""
        dumped = enabled_config.model_dump(mode="json")

        assert BackupServiceConfig.model_validate(dumped) == enabled_config
        assert set(dumped) == {
            "enabled",
            "repository_password",
            "backend",
            "retention",
            "backup_frequency",
            "restore_snapshot_id",
        }


class TestRestoreCommand:
    """Test detection of restore requests in updates."""

    def test_new_snapshot_id_is_a_command(self, enabled_config):
        new = enabled_config.model_copy(update={"restore_snapshot_id": "k123"})

        assert RestoreCommand.from_update(enabled_config, new) == RestoreCommand("k123")

    def test_unchanged_snapshot_id_is_not_a_command(self, enabled_config):
        old = enabled_config.model_copy(update={"restore_snapshot_id": "k123"})
        new = enabled_config.model_copy(update={"restore_snapshot_id": "k123"})

        assert RestoreCommand.from_update(old, new) is None

    def test_empty_snapshot_id_is_not_a_command(self, enabled_config):
        old = enabled_config.model_copy(update={"restore_snapshot_id": "k123"})

        assert RestoreCommand.from_update(old, enabled_config) is None

    def test_changed_snapshot_id_is_a_command(self, enabled_config):
        old = enabled_config.model_copy(update={"restore_snapshot_id": "k123"})
        new = enabled_config.model_copy(update={"restore_snapshot_id": "k456"})

        assert RestoreCommand.from_update(old, new).snapshot_id == "k456"
