"""
Kopia backup engine plugin.

Drives the kopia CLI: repository create/connect on an S3 backend, snapshot
upload, listing, retention and restore. All invocations are blocking and a
non-zero exit is the only failure signal.
"""

import json
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config_loader import (
    BackendConfig,
    RetentionPolicy,
    S3BackendConfig,
    SnapshotInfo,
)
from core.errors import BackupEngineError, ConfigInvalidError
from lib.commands import CommandError, CommandResult, run_command
from lib.utils import parse_engine_timestamp
from plugins.base import BackupEnginePlugin


class KopiaPlugin(BackupEnginePlugin):
    """
    Backup engine adapter for the kopia CLI.

    Attributes:
        binary: kopia executable
        cache_dir: Directory exported as KOPIA_CACHE_DIRECTORY to every call
    """

    def __init__(self, binary: str = "kopia", cache_dir: Optional[Path] = None):
        super().__init__({"binary": binary, "cache_dir": cache_dir})
        self.binary = binary
        self.cache_dir = cache_dir

    @property
    def name(self) -> str:
        return "KopiaPlugin"

    def is_available(self) -> bool:
        """True if the kopia binary is on PATH."""
        return shutil.which(self.binary) is not None

    def _run(self, *args: str) -> CommandResult:
        env = None
        if self.cache_dir is not None:
            env = {"KOPIA_CACHE_DIRECTORY": str(self.cache_dir)}

        try:
            return run_command([self.binary, *args], env=env)
        except CommandError as e:
            raise BackupEngineError(str(e)) from e

    @staticmethod
    def _s3_args(s3: S3BackendConfig, password: str) -> List[str]:
        args = [
            "s3",
            "--bucket", s3.bucket,
            "--endpoint", s3.endpoint,
            "--access-key", s3.access_key,
            "--secret-access-key", s3.secret_key,
            "--password", password,
        ]
        if s3.disable_tls:
            args.append("--disable-tls")
        if s3.region:
            args.extend(["--region", s3.region])
        return args

    def _backend_args(self, backend: BackendConfig, password: str) -> List[str]:
        if not password:
            raise ConfigInvalidError("repository_password is required")

        if backend.type == "s3":
            if backend.s3 is None:
                raise ConfigInvalidError("S3 backend configuration missing")
            return self._s3_args(backend.s3, password)

        raise ConfigInvalidError(f"unsupported backend type: {backend.type}")

    def create_repository(self, backend: BackendConfig, password: str) -> None:
        """Run `kopia repository create <backend>`."""
        self.logger.info(f"Creating {backend.type} repository")
        self._run("repository", "create", *self._backend_args(backend, password))

    def connect_repository(self, backend: BackendConfig, password: str) -> None:
        """Run `kopia repository connect <backend>`."""
        self.logger.debug(f"Connecting to {backend.type} repository")
        self._run("repository", "connect", *self._backend_args(backend, password))

    def create_snapshot(self, path: Path, description: str) -> None:
        """Upload path as a new snapshot."""
        self.logger.info(f"Uploading snapshot of {path}")
        self._run("snapshot", "create", str(path), "--description", description)

    def list_snapshots(self) -> List[SnapshotInfo]:
        """
        Parse `kopia snapshot list --json` into SnapshotInfo records.

        Raises:
            BackupEngineError: If the command fails or prints malformed JSON
        """
        result = self._run("snapshot", "list", "--json")

        try:
            raw = json.loads(result.stdout) if result.stdout.strip() else []
        except json.JSONDecodeError as e:
            raise BackupEngineError(f"failed to parse snapshot list: {e}") from e

        if not isinstance(raw, list):
            raise BackupEngineError("failed to parse snapshot list: expected a JSON array")

        return [self._to_snapshot_info(entry) for entry in raw]

    @staticmethod
    def _to_snapshot_info(entry: Dict[str, Any]) -> SnapshotInfo:
        try:
            started = entry.get("startTime")
            return SnapshotInfo(
                id=str(entry["id"]),
                time=parse_engine_timestamp(started) if started else None,
                size=int((entry.get("stats") or {}).get("totalSize") or 0),
                source=str((entry.get("source") or {}).get("path") or ""),
                description=str(entry.get("description") or ""),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise BackupEngineError(f"failed to parse snapshot list entry: {e}") from e

    def expire_snapshots(self, retention: RetentionPolicy) -> None:
        """
        Apply retention.

        Sets every tier on the global policy, 0 for the ones retention leaves
        out, then expires snapshots of every source. Each backup uploads from
        a differently named snapshot path, so per-source policies would never
        match.
        """
        if retention.is_empty():
            return

        policy_args = ["policy", "set", "--global"]
        for flag, value in retention.as_policy_flags().items():
            policy_args.extend([f"--{flag}", str(value)])

        self._run(*policy_args)
        self._run("snapshot", "expire", "--all", "--delete")

    def restore_snapshot(self, snapshot_id: str, target: Path) -> None:
        """Restore snapshot_id into target."""
        self.logger.info(f"Restoring snapshot {snapshot_id} into {target}")
        self._run("snapshot", "restore", snapshot_id, str(target))
