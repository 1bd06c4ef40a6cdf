"""
Database dump/restore integration.

The DatabaseTool interface produces and consumes opaque backup artifacts.
PostgresTool implements it with the PostgreSQL client programs:

- dump:            pg_dump --clean --if-exists (plain SQL, self-sufficient on replay)
- restore:         psql -v ON_ERROR_STOP=1 -f <artifact>
- drop_database:   DROP DATABASE ... WITH (FORCE) from the maintenance database
- create_database: CREATE DATABASE ... from the maintenance database

The password is handed to the client programs via PGPASSWORD in the child
environment only; it never appears in argv or in log records.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from podbox_deploy.collaborators.process import run_command
from podbox_deploy.errors import CollaboratorError
from podbox_deploy.logging import get_logger

if TYPE_CHECKING:
    from podbox_deploy.config import DatabaseConfig

logger = get_logger(__name__)


def quote_identifier(name: str) -> str:
    """Quote a SQL identifier for PostgreSQL."""
    return '"' + name.replace('"', '""') + '"'


class DatabaseTool(ABC):
    """Dumps, restores, drops and creates the live database."""

    @abstractmethod
    async def dump(self, artifact: Path) -> None:
        """Write a dump of the live database to ``artifact``."""

    @abstractmethod
    async def restore(self, artifact: Path) -> None:
        """Replay ``artifact`` against the live database."""

    @abstractmethod
    async def drop_database(self, *, force: bool = True) -> None:
        """Drop the live database, disconnecting sessions when ``force``."""

    @abstractmethod
    async def create_database(self) -> None:
        """Create an empty live database."""


class PostgresTool(DatabaseTool):
    """DatabaseTool backed by pg_dump and psql."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._config = config

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        if self._config.password:
            env["PGPASSWORD"] = self._config.password
        return env

    def _connection_args(self, database: str) -> list[str]:
        return [
            "-U",
            self._config.user,
            "-h",
            self._config.host,
            "-p",
            str(self._config.port),
            "-d",
            database,
        ]

    async def _run(self, program: str, *args: str) -> None:
        returncode, stdout, stderr = await run_command(
            program,
            *args,
            timeout=self._config.command_timeout_seconds,
            env=self._env(),
        )
        if returncode != 0:
            output = (stderr or stdout).strip()
            raise CollaboratorError(
                f"{program} exited with code {returncode}: {output}",
                details={
                    "program": program,
                    "returncode": returncode,
                    "database": self._config.name,
                },
            )
        if stderr.strip():
            logger.debug(f"{program} stderr: {stderr.strip()}")

    async def dump(self, artifact: Path) -> None:
        logger.info(
            f"Dumping database {self._config.name} to {artifact}",
            extra={"database": self._config.name},
        )
        await self._run(
            "pg_dump",
            *self._connection_args(self._config.name),
            "--clean",
            "--if-exists",
            "-f",
            str(artifact),
        )

    async def restore(self, artifact: Path) -> None:
        logger.info(
            f"Restoring database {self._config.name} from {artifact}",
            extra={"database": self._config.name},
        )
        await self._run(
            "psql",
            *self._connection_args(self._config.name),
            "-v",
            "ON_ERROR_STOP=1",
            "-q",
            "-f",
            str(artifact),
        )

    async def drop_database(self, *, force: bool = True) -> None:
        statement = f"DROP DATABASE IF EXISTS {quote_identifier(self._config.name)}"
        if force:
            statement += " WITH (FORCE)"
        logger.info(f"Dropping database {self._config.name}")
        await self._run(
            "psql",
            *self._connection_args(self._config.maintenance_db),
            "-c",
            statement + ";",
        )

    async def create_database(self) -> None:
        logger.info(f"Creating database {self._config.name}")
        await self._run(
            "psql",
            *self._connection_args(self._config.maintenance_db),
            "-c",
            f"CREATE DATABASE {quote_identifier(self._config.name)};",
        )
