"""
Deployment context for the podbox deployment orchestrator.

The DeploymentContext is the single mutable object passed to every
component. It carries the configuration, the collaborators, the derived
staging/live paths, and the last known state of each supervised service,
so that no component reaches for ambient global state.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from podbox_deploy.collaborators.database import DatabaseTool, PostgresTool
from podbox_deploy.collaborators.filesystem import Filesystem
from podbox_deploy.collaborators.probe import HttpProbe, HttpxProbe
from podbox_deploy.collaborators.services import (
    ServiceController,
    SystemdServiceController,
)

if TYPE_CHECKING:
    from podbox_deploy.config import DeployConfig

# Staged update layout, relative to the staging directory
STAGED_BACKEND_DIR = "back"
STAGED_ASSETS_DIR = "pwa"
STAGED_DATABASE_DUMP = "db.dump"
STAGED_VERSION_FILE = "VERSION"


class ServiceState(str, Enum):
    """Last known state of a supervised service."""

    UNKNOWN = "unknown"
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class DeploymentContext:
    """
    Encapsulates everything one orchestration run operates on.

    Attributes:
        config: Loaded deployment configuration.
        services: Service supervisor.
        database: Database dump/restore tool.
        probe: HTTP probe used by the health verifier.
        filesystem: Filesystem tree operations.
        service_states: Last known state per service name, updated by the
            start/stop/restart helpers below.
    """

    config: DeployConfig
    services: ServiceController
    database: DatabaseTool
    probe: HttpProbe
    filesystem: Filesystem = field(default_factory=Filesystem)
    service_states: dict[str, ServiceState] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: DeployConfig) -> DeploymentContext:
        """Build a context wired to the production collaborators."""
        return cls(
            config=config,
            services=SystemdServiceController(
                timeout=config.services.command_timeout_seconds
            ),
            database=PostgresTool(config.database),
            probe=HttpxProbe(timeout=config.health.request_timeout_seconds),
            filesystem=Filesystem(),
        )

    # Well-known locations

    @property
    def staging_dir(self) -> Path:
        return self.config.paths.staging_dir

    @property
    def live_dir(self) -> Path:
        return self.config.paths.live_dir

    @property
    def backend_service(self) -> str:
        return self.config.services.backend

    @property
    def proxy_service(self) -> str:
        return self.config.services.proxy

    def staged(self, name: str) -> Path:
        """Path of an entry in the staged update."""
        return self.staging_dir / name

    def live(self, name: str) -> Path:
        """Path of an entry in the live deployment."""
        return self.live_dir / name

    # Service lifecycle, tracked

    async def start_service(self, name: str) -> None:
        """Start a service and record its state."""
        await self._drive(name, self.services.start, ServiceState.RUNNING)

    async def stop_service(self, name: str) -> None:
        """Stop a service and record its state."""
        await self._drive(name, self.services.stop, ServiceState.STOPPED)

    async def restart_service(self, name: str) -> None:
        """Restart a service and record its state."""
        await self._drive(name, self.services.restart, ServiceState.RUNNING)

    async def _drive(
        self,
        name: str,
        action: Callable[[str], Awaitable[None]],
        target: ServiceState,
    ) -> None:
        try:
            await action(name)
        except Exception:
            self.service_states[name] = ServiceState.UNKNOWN
            raise
        self.service_states[name] = target

    def service_snapshot(self) -> dict[str, str]:
        """Return the tracked service states as plain strings."""
        return {name: state.value for name, state in self.service_states.items()}
