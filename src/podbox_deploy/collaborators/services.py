"""
Service supervisor integration.

This module defines the ServiceController interface used by the updaters,
the health verifier and the rollback manager, and its systemd
implementation. Every systemctl call is bounded by a timeout; a call that
exceeds it raises CollaboratorTimeoutError instead of hanging the run.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from podbox_deploy.collaborators.process import run_command
from podbox_deploy.errors import CollaboratorError
from podbox_deploy.logging import get_logger

logger = get_logger(__name__)


class ServiceController(ABC):
    """
    Starts, stops and inspects named services.

    Implementations raise CollaboratorError when a command fails. is_active
    never raises for an inactive service; it returns False.
    """

    @abstractmethod
    async def start(self, name: str) -> None:
        """Start a service."""

    @abstractmethod
    async def stop(self, name: str) -> None:
        """Stop a service."""

    @abstractmethod
    async def restart(self, name: str) -> None:
        """Restart a service (starting it if it is stopped)."""

    @abstractmethod
    async def is_active(self, name: str) -> bool:
        """Return True if the service is running."""


async def _run_systemctl(
    *args: str,
    timeout: float = 60.0,
) -> tuple[int, str, str]:
    """
    Run a systemctl command.

    Args:
        *args: Arguments to pass to systemctl.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        CollaboratorError: If systemctl is not available.
        CollaboratorTimeoutError: If the command times out.
    """
    return await run_command("systemctl", *args, timeout=timeout)


class SystemdServiceController(ServiceController):
    """ServiceController backed by systemctl."""

    def __init__(self, timeout: float = 60.0) -> None:
        """
        Initialize the controller.

        Args:
            timeout: Upper bound for each systemctl invocation in seconds.
        """
        self.timeout = timeout

    async def _command(self, verb: str, name: str) -> None:
        logger.info(f"systemctl {verb} {name}", extra={"service": name})
        returncode, stdout, stderr = await _run_systemctl(
            verb, name, timeout=self.timeout
        )
        if returncode != 0:
            output = (stderr or stdout).strip()
            logger.error(
                f"systemctl {verb} {name} failed: {output}",
                extra={"service": name, "returncode": returncode},
            )
            raise CollaboratorError(
                f"Failed to {verb} {name}: {output or f'exit code {returncode}'}",
                details={"service": name, "verb": verb, "returncode": returncode},
            )

    async def start(self, name: str) -> None:
        await self._command("start", name)

    async def stop(self, name: str) -> None:
        await self._command("stop", name)

    async def restart(self, name: str) -> None:
        await self._command("restart", name)

    async def is_active(self, name: str) -> bool:
        returncode, _, _ = await _run_systemctl(
            "is-active", "--quiet", name, timeout=self.timeout
        )
        return returncode == 0
