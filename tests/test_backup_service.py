"""
Tests for the BackupService facade.

Tests cover:
- Reading status with snapshot refresh
- Applying configuration updates
- The self-clearing restore trigger
- Lifecycle (start, stop, interrupted cycle recovery)
"""

from datetime import datetime
from unittest.mock import patch

import pytest

from core.config_loader import BackupServiceConfig, SnapshotInfo
from core.errors import (
    ConfigInvalidError,
    CycleInProgressError,
    RepositoryUnavailableError,
    RestorePreconditionError,
    RestoreStepError,
)
from core.service import BackupService
from core.status import SERVICE_RECORD_KEY


class TestGet:
    """Test the read surface."""

    def test_refreshes_snapshots_when_connected(self, connected_service, fake_engine):
        fake_engine.snapshots = [
            SnapshotInfo(id="k1", time=datetime(2024, 1, 14, 2, 0), size=1024, source="/local")
        ]

        record = connected_service.get()

        assert [s.id for s in record.state.available_snapshots] == ["k1"]

    def test_refresh_failure_keeps_last_list(self, connected_service, fake_engine):
        fake_engine.snapshots = [SnapshotInfo(id="k1")]
        connected_service.get()
        fake_engine.fail_list = "network unreachable"

        record = connected_service.get()

        assert [s.id for s in record.state.available_snapshots] == ["k1"]

    def test_disabled_service_does_not_query_engine(self, service, fake_engine):
        service.get()

        assert fake_engine.calls_to("list_snapshots") == []

    def test_read_during_cycle_is_not_blocked(self, connected_service, fake_engine):
        connected_service.tracker.try_begin("Creating Kopia snapshot")
        fake_engine.snapshots = [SnapshotInfo(id="k1")]

        record = connected_service.get()

        assert record.state.in_progress is True
        assert [s.id for s in record.state.available_snapshots] == ["k1"]


class TestUpdate:
    """Test configuration updates."""

    def test_enabling_connects_and_stores_config(self, service, enabled_config, fake_engine):
        record = service.update(enabled_config)

        assert record.config == enabled_config
        assert record.state.repository_connected is True
        assert fake_engine.calls_to("connect_repository") == [("connect_repository", "s3")]

    def test_config_persisted(self, service, enabled_config, state_manager):
        service.update(enabled_config)

        stored = state_manager.get(SERVICE_RECORD_KEY)
        assert stored["config"]["backend"]["s3"]["bucket"] == "pool-backups"

    def test_invalid_backend_stored_but_reported(self, service, enabled_config):
        broken = enabled_config.model_copy(update={"repository_password": ""})

        with pytest.raises(ConfigInvalidError, match="repository_password"):
            service.update(broken)

        assert service.tracker.config.enabled is True
        assert service.tracker.state.last_status.startswith("Backend configuration invalid")

    def test_unreachable_repository_reported(self, service, enabled_config, fake_engine):
        fake_engine.fail_connect = "dial tcp: timeout"
        fake_engine.fail_create = "dial tcp: timeout"

        with pytest.raises(RepositoryUnavailableError):
            service.update(enabled_config)

        assert service.tracker.state.repository_connected is False

    def test_disabling_stops_and_disconnects(self, connected_service, enabled_config):
        with patch.object(connected_service, "stop", wraps=connected_service.stop) as stop:
            connected_service.update(enabled_config.model_copy(update={"enabled": False}))

        stop.assert_called_once()
        assert connected_service.tracker.state.repository_connected is False
        assert connected_service.should_start() is False

    def test_enabling_starts_service(self, service, enabled_config):
        with patch.object(service, "start") as start:
            service.update(enabled_config)

        start.assert_called_once()

    def test_update_does_not_touch_status(self, connected_service, enabled_config):
        connected_service.tracker.update_state(last_backup_window="always-20240115")

        connected_service.update(enabled_config.model_copy(update={"backup_frequency": "6h"}))

        assert connected_service.tracker.state.last_backup_window == "always-20240115"
        assert connected_service.tracker.config.backup_frequency == "6h"


class TestRestoreTrigger:
    """Test restore requests carried by updates."""

    def test_restore_runs_and_trigger_cleared(
        self, connected_service, enabled_config, fake_engine, state_manager
    ):
        record = connected_service.update(
            enabled_config.model_copy(update={"restore_snapshot_id": "k123"})
        )

        assert fake_engine.calls_to("restore_snapshot")[0][1] == "k123"
        assert record.state.last_status == "Restore completed successfully"
        assert record.config.restore_snapshot_id == ""
        assert state_manager.get(SERVICE_RECORD_KEY)["config"]["restore_snapshot_id"] == ""

    def test_failed_restore_still_clears_trigger(
        self, connected_service, enabled_config, fake_engine, state_manager
    ):
        fake_engine.fail_restore = "snapshot not found"

        with pytest.raises(RestoreStepError):
            connected_service.update(
                enabled_config.model_copy(update={"restore_snapshot_id": "k123"})
            )

        assert state_manager.get(SERVICE_RECORD_KEY)["config"]["restore_snapshot_id"] == ""

    def test_failed_restore_aborts_rest_of_update(
        self, connected_service, enabled_config, fake_engine
    ):
        fake_engine.fail_restore = "snapshot not found"
        update = enabled_config.model_copy(
            update={"restore_snapshot_id": "k123", "backup_frequency": "6h"}
        )

        with pytest.raises(RestoreStepError):
            connected_service.update(update)

        assert connected_service.tracker.config.backup_frequency == ""

    def test_restore_while_disconnected(self, service, enabled_config, fake_units, fake_engine):
        """Restore without a repository session stops nothing."""
        service.tracker.set_config(enabled_config)

        with pytest.raises(RestorePreconditionError):
            service.update(enabled_config.model_copy(update={"restore_snapshot_id": "k123"}))

        assert service.tracker.state.in_progress is False
        assert fake_units.calls == []
        assert service.tracker.config.restore_snapshot_id == ""

    def test_restore_during_cycle_rejected(self, connected_service, enabled_config, fake_units):
        connected_service.tracker.try_begin("Creating Kopia snapshot")
        update = enabled_config.model_copy(
            update={"restore_snapshot_id": "k123", "backup_frequency": "6h"}
        )

        with pytest.raises(CycleInProgressError):
            connected_service.update(update)

        assert fake_units.calls == []
        assert connected_service.tracker.config.backup_frequency == ""

    def test_repeated_update_without_trigger_is_noop(
        self, connected_service, enabled_config, fake_engine
    ):
        connected_service.update(enabled_config)
        connected_service.update(enabled_config)

        assert fake_engine.calls_to("restore_snapshot") == []

    def test_perform_restore_directly(self, connected_service, fake_engine):
        connected_service.perform_restore("k999")

        assert fake_engine.calls_to("restore_snapshot")[0][1] == "k999"


class TestLifecycle:
    """Test start, stop and recovery."""

    def test_supported_follows_engine(self, service, fake_engine):
        assert service.supported() is True

        fake_engine.available = False

        assert service.supported() is False

    def test_should_start(self, service, connected_service):
        assert connected_service.should_start() is True

    def test_run_backup(self, connected_service):
        connected_service.run_backup()

        assert connected_service.tracker.state.last_status == "Backup completed successfully"

    def test_recover_interrupted_cycle(
        self, settings, state_manager, fake_engine, fake_zfs, fake_mirror, fake_units, clock
    ):
        first = BackupService(
            settings, state_manager, engine=fake_engine, snapshot_plugin=fake_zfs,
            mirror=fake_mirror, units=fake_units, clock=clock, background=False,
        )
        first.tracker.try_begin("Creating Kopia snapshot")
        first.tracker.advance(25, "Creating Kopia snapshot")

        second = BackupService(
            settings, state_manager, engine=fake_engine, snapshot_plugin=fake_zfs,
            mirror=fake_mirror, units=fake_units, clock=clock, background=False,
        )
        assert second.tracker.state.in_progress is True

        assert second.recover_interrupted() is True

        state = second.tracker.state
        assert state.in_progress is False
        assert state.progress == 0
        assert state.last_status == "Previous operation interrupted"

    def test_seeded_from_settings(self, settings, state_manager, enabled_config, fake_engine):
        seeded = settings.model_copy(update={"backup": enabled_config})

        service = BackupService(seeded, state_manager, engine=fake_engine, background=False)

        assert service.tracker.config == enabled_config

    def test_background_scheduler_thread(self, settings, state_manager, fake_engine, fake_zfs):
        service = BackupService(
            settings, state_manager, engine=fake_engine, snapshot_plugin=fake_zfs
        )

        service.start()
        try:
            assert service._scheduler_thread.is_alive()
        finally:
            service.stop()

        assert service._scheduler_thread is None
        assert service.wait(timeout=0) is True


class TestDefaultAdapters:
    """Test that real adapters are built from settings."""

    def test_defaults(self, settings, state_manager):
        service = BackupService(settings, state_manager, background=False)

        assert service.engine.name == "KopiaPlugin"
        assert service.engine.cache_dir == settings.daemon.cache_dir
        assert service.snapshot_plugin.name == "ZfsPlugin"
        assert service.mirror.name == "RsyncPlugin"
        assert service.units.name == "GenericUnitRegistry"


def test_service_config_defaults_disabled():
    assert BackupServiceConfig().enabled is False
