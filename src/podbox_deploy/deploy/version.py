"""
Deployment record for the podbox deployment orchestrator.

The deployment record is a single-line file holding the identifier of the
live version. External tooling (the update poller) reads it to decide
whether a newer release is available, treating a missing file as version 0.
"""

from __future__ import annotations

import os
from pathlib import Path

from podbox_deploy.logging import get_logger

logger = get_logger(__name__)


class VersionRecord:
    """Reads and writes the deployment record file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def read(self) -> str | None:
        """
        Return the recorded version, or None if no record exists.

        Raises:
            OSError: If the file exists but cannot be read.
        """
        if not self.path.exists():
            logger.warning(f"Version file {self.path} not found")
            return None
        value = self.path.read_text().strip()
        return value or None

    def write(self, version: str) -> None:
        """
        Atomically replace the record with ``version``.

        Raises:
            OSError: If the record cannot be written.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_name(f".{self.path.name}.tmp")
        with open(temp_file, "w") as f:
            f.write(f"{version}\n")
            f.flush()
            os.fsync(f.fileno())
        temp_file.replace(self.path)
        logger.info(f"Recorded version {version}", extra={"path": str(self.path)})

    def clear(self) -> None:
        """Remove the record."""
        self.path.unlink(missing_ok=True)
        logger.info("Cleared version record", extra={"path": str(self.path)})
