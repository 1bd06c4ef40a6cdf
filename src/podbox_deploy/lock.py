"""
Single-run guard for the deployment orchestrator.

Only one orchestration run may mutate the live deployment at a time. The
DeploymentLock takes a non-blocking exclusive flock on a lock file for the
whole run and releases it on every exit path. The kernel drops the lock if
the process is killed, so a crashed run never leaves a stale lock behind.
"""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from types import TracebackType
from typing import IO

from podbox_deploy.errors import ConfigError, DeploymentLockedError
from podbox_deploy.logging import get_logger

logger = get_logger(__name__)


class DeploymentLock:
    """
    Exclusive, scoped lock around an orchestration run.

    Example:
        >>> with DeploymentLock(Path("/run/podbox-deploy/deploy.lock")):
        ...     ...  # run the deployment
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._fd: IO[str] | None = None

    @property
    def held(self) -> bool:
        """Whether this instance currently holds the lock."""
        return self._fd is not None

    def acquire(self) -> None:
        """
        Acquire the lock without blocking.

        Raises:
            DeploymentLockedError: If another run holds the lock.
            ConfigError: If the lock file cannot be created or opened.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = open(self.path, "a+")
        except OSError as exc:
            raise ConfigError(
                f"Cannot open lock file {self.path}: {exc}",
                details={"lock_file": str(self.path)},
            ) from exc

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            fd.close()
            raise DeploymentLockedError(
                "Another deployment run is in progress",
                details={"lock_file": str(self.path)},
            ) from exc
        except OSError as exc:
            fd.close()
            raise ConfigError(
                f"Cannot lock {self.path}: {exc}",
                details={"lock_file": str(self.path)},
            ) from exc

        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        self._fd = fd
        logger.debug("Acquired deployment lock", extra={"lock_file": str(self.path)})

    def release(self) -> None:
        """Release the lock if held."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            self._fd.close()
            self._fd = None
        logger.debug("Released deployment lock", extra={"lock_file": str(self.path)})

    def __enter__(self) -> DeploymentLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
