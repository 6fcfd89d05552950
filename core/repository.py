"""
Repository session management.

Keeps the backup engine connected to the configured remote repository,
creating the repository the first time a backend is used.
"""

import hashlib
import json
from pathlib import Path
from typing import Optional

from core.config_loader import SUPPORTED_BACKENDS, BackendConfig
from core.errors import BackupEngineError, ConfigInvalidError, RepositoryUnavailableError
from core.snapshots import SnapshotManager
from core.status import StatusTracker
from lib.logger import get_logger
from plugins.base import BackupEnginePlugin


def validate_backend(backend: BackendConfig, password: str) -> None:
    """
    Check that backend and password are complete enough to connect.

    Raises:
        ConfigInvalidError: Describing the first problem found
    """
    if not backend.type:
        raise ConfigInvalidError("backend type is required")
    if backend.type not in SUPPORTED_BACKENDS:
        raise ConfigInvalidError(f"unsupported backend type: {backend.type}")

    if backend.type == "s3":
        if backend.s3 is None:
            raise ConfigInvalidError("S3 backend configuration missing")
        missing = backend.s3.missing_fields()
        if missing:
            raise ConfigInvalidError(f"S3 backend missing {', '.join(missing)}")

    if not password:
        raise ConfigInvalidError("repository_password is required")


def _fingerprint(backend: BackendConfig, password: str) -> str:
    payload = json.dumps(
        {"backend": backend.model_dump(mode="json"), "password": password},
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class RepositoryConnector:
    """
    Connects the backup engine to its repository.

    Connecting is idempotent: a second call with the same backend and
    password does nothing once the session is established.

    Attributes:
        engine: Backup engine adapter
        snapshots: Snapshot manager, used to provision the cache dataset
        tracker: Service record the connection status is written to
        pool: Pool hosting the cache dataset
        cache_dataset: Dataset name (under pool) holding the engine cache
        cache_dir: Mountpoint of the cache dataset
    """

    def __init__(
        self,
        engine: BackupEnginePlugin,
        snapshots: SnapshotManager,
        tracker: StatusTracker,
        pool: str,
        cache_dataset: str,
        cache_dir: Path,
    ):
        self.engine = engine
        self.snapshots = snapshots
        self.tracker = tracker
        self.pool = pool
        self.cache_dataset = cache_dataset
        self.cache_dir = Path(cache_dir)
        self.logger = get_logger()
        self._connected_as: Optional[str] = None

    def ensure_cache_dataset(self) -> None:
        """
        Create the engine cache dataset on the pool if it is missing.

        Raises:
            SnapshotOperationError: If the dataset cannot be created
        """
        created = self.snapshots.ensure_dataset(
            self.pool,
            self.cache_dataset,
            {"mountpoint": str(self.cache_dir), "canmount": "on"},
        )
        if created:
            self.logger.info(f"Created cache dataset {self.pool}/{self.cache_dataset}")

    def ensure_connected(self, backend: BackendConfig, password: str) -> None:
        """
        Establish a session with the repository, creating it if needed.

        Raises:
            ConfigInvalidError: If backend or password are incomplete
            SnapshotOperationError: If the cache dataset cannot be created
            RepositoryUnavailableError: If the repository can neither be
                connected to nor created
        """
        try:
            validate_backend(backend, password)
        except ConfigInvalidError as e:
            self._connected_as = None
            self.tracker.update_state(
                repository_connected=False,
                last_status=f"Backend configuration invalid: {e}",
            )
            self.logger.error(f"Backend configuration invalid: {e}")
            raise

        self.ensure_cache_dataset()

        fingerprint = _fingerprint(backend, password)
        if self._connected_as == fingerprint and self.tracker.state.repository_connected:
            self.logger.debug("Repository already connected")
            return

        try:
            self._connect_or_create(backend, password)
        except BackupEngineError as e:
            self._connected_as = None
            message = f"Failed to connect or initialize repository: {e}"
            self.tracker.update_state(repository_connected=False, last_status=message)
            self.logger.error(message)
            raise RepositoryUnavailableError(message) from e

        self._connected_as = fingerprint
        self.tracker.update_state(repository_connected=True, last_status="Repository connected")
        self.logger.info(f"Connected to {backend.type} repository")

    def _connect_or_create(self, backend: BackendConfig, password: str) -> None:
        try:
            self.engine.connect_repository(backend, password)
            return
        except BackupEngineError as e:
            self.logger.info(f"Connecting to repository failed, trying to create it: {e}")

        self.engine.create_repository(backend, password)
        self.engine.connect_repository(backend, password)

    def disconnect(self) -> None:
        """Forget the current session."""
        self._connected_as = None
        self.tracker.update_state(repository_connected=False)
