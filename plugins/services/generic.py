"""
Generic unit registry for systemd services and Docker applications.

The restore cycle quiesces every managed unit before touching pool data and
brings them back afterwards. Services are systemd units driven through
systemctl, applications are Docker containers driven through the Docker SDK.
Either kind may use either type.
"""

from typing import List, Optional, Sequence

import docker
import requests

from core.config_loader import ManagedUnitConfig
from lib.commands import CommandError, run_command
from plugins.base import UnitRegistryPlugin


class UnitOperationError(Exception):
    """Raised when a managed unit cannot be started or stopped."""


class GenericUnitRegistry(UnitRegistryPlugin):
    """
    Unit registry backed by configuration.

    Units keep the order they are configured in, which is their startup
    order.

    Attributes:
        systemctl: systemctl executable
        _docker_client: Cached Docker client
    """

    def __init__(
        self,
        units: Optional[Sequence[ManagedUnitConfig]] = None,
        systemctl: str = "systemctl",
    ):
        super().__init__({"systemctl": systemctl})
        self._units: List[ManagedUnitConfig] = list(units or [])
        self.systemctl = systemctl
        self._docker_client: Optional[docker.DockerClient] = None

    @property
    def name(self) -> str:
        return "GenericUnitRegistry"

    def _get_docker_client(self) -> docker.DockerClient:
        """
        Get or create Docker client.

        Raises:
            ConnectionError: If unable to connect to Docker daemon
        """
        if self._docker_client is not None:
            return self._docker_client

        try:
            self.logger.debug("Connecting to Docker daemon")
            client = docker.from_env()
            client.ping()
        except docker.errors.DockerException as e:
            error_msg = f"Failed to connect to Docker daemon: {e}"
            self.logger.error(error_msg)
            raise ConnectionError(error_msg) from e

        self._docker_client = client
        return client

    def _container(self, unit: ManagedUnitConfig):
        container_name = unit.container_name or unit.name
        try:
            return self._get_docker_client().containers.get(container_name)
        except docker.errors.NotFound as e:
            raise UnitOperationError(f"Container not found: {container_name}") from e

    def _systemctl(self, action: str, unit: ManagedUnitConfig) -> None:
        unit_name = unit.unit_name or unit.name
        try:
            run_command([self.systemctl, action, unit_name])
        except CommandError as e:
            raise UnitOperationError(f"systemctl {action} {unit_name} failed: {e}") from e

    def units(self, kind: Optional[str] = None) -> List[ManagedUnitConfig]:
        if kind is None:
            return list(self._units)
        return [unit for unit in self._units if unit.kind == kind]

    def should_start(self, unit: ManagedUnitConfig) -> bool:
        return unit.enabled

    def start(self, unit: ManagedUnitConfig) -> None:
        """
        Start a unit.

        Raises:
            UnitOperationError: If the unit cannot be started
            ConnectionError: If the Docker daemon is unreachable
        """
        self.logger.debug(f"Starting {unit.type} unit {unit.name}")

        if unit.type == "systemd":
            self._systemctl("start", unit)
            return

        try:
            self._container(unit).start()
        except docker.errors.APIError as e:
            raise UnitOperationError(f"Failed to start container for {unit.name}: {e}") from e

    def stop(self, unit: ManagedUnitConfig) -> None:
        """
        Stop a unit.

        Raises:
            UnitOperationError: If the unit cannot be stopped
            ConnectionError: If the Docker daemon is unreachable
        """
        self.logger.debug(f"Stopping {unit.type} unit {unit.name}")

        if unit.type == "systemd":
            self._systemctl("stop", unit)
            return

        try:
            self._container(unit).stop()
        except docker.errors.APIError as e:
            raise UnitOperationError(f"Failed to stop container for {unit.name}: {e}") from e

    def validate(self, unit: ManagedUnitConfig) -> bool:
        """
        Check that a unit is running and, if configured, answers its health
        check URL with HTTP 200.
        """
        try:
            if unit.type == "docker":
                container = self._container(unit)
                if container.status != "running":
                    self.logger.error(
                        f"Container for {unit.name} is not running: {container.status}"
                    )
                    return False

                health = container.attrs.get("State", {}).get("Health", {})
                if health and health.get("Status") not in ["healthy", "none"]:
                    self.logger.error(
                        f"Container for {unit.name} is unhealthy: {health.get('Status')}"
                    )
                    return False
            else:
                self._systemctl("is-active", unit)

        except (UnitOperationError, ConnectionError) as e:
            self.logger.error(f"Unit {unit.name} is not healthy: {e}")
            return False

        if unit.health_check_url:
            try:
                response = requests.get(unit.health_check_url, timeout=10)
            except requests.RequestException as e:
                self.logger.error(f"Health check request failed for {unit.name}: {e}")
                return False

            if response.status_code != 200:
                self.logger.error(
                    f"Health check failed for {unit.health_check_url}: "
                    f"status {response.status_code}"
                )
                return False

        self.logger.debug(f"Unit {unit.name} is healthy")
        return True
