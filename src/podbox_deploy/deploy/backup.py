"""
Backup management for the podbox deployment orchestrator.

A backup unit is a point-in-time snapshot of the live deployment directory
and the live database, stored as a sibling directory under the backup root:

    <backup_root>/<prefix><timestamp>/
        services/              full copy of the live directory tree
        db_<timestamp>.dump    database artifact
        backup.timestamp       marker file holding <timestamp>

Units are assembled under a hidden ``.partial`` name and renamed into place
only once all three parts exist, so a unit is either fully present or not
visible at all. Units are never modified or deleted here; retention is
handled outside this tool.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from podbox_deploy.errors import BackupError, BackupErrorKind, CollaboratorError
from podbox_deploy.logging import get_logger

if TYPE_CHECKING:
    from podbox_deploy.context import DeploymentContext

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S%f"
# Units written by the legacy shell deployer carry second resolution
LEGACY_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
_TIMESTAMP_WIDTH = 20

SNAPSHOT_DIR_NAME = "services"
MARKER_FILE_NAME = "backup.timestamp"
ARTIFACT_GLOB = "db_*.dump"
PARTIAL_SUFFIX = ".partial"


def artifact_name(timestamp: str) -> str:
    """File name of the database artifact for ``timestamp``."""
    return f"db_{timestamp}.dump"


def timestamp_sort_key(timestamp: str) -> str:
    """Ordering key that sorts legacy and current timestamps together."""
    return timestamp.ljust(_TIMESTAMP_WIDTH, "0")


def parse_timestamp(timestamp: str) -> datetime:
    """
    Parse a backup timestamp.

    Raises:
        ValueError: If the timestamp is in neither supported format.
    """
    fmt = LEGACY_TIMESTAMP_FORMAT if len(timestamp) == 14 else TIMESTAMP_FORMAT
    return datetime.strptime(timestamp, fmt).replace(tzinfo=UTC)


class BackupUnit(BaseModel):
    """
    One immutable point-in-time snapshot.

    Attributes:
        timestamp: Creation-time identifier; directory suffix and ordering key.
        path: Directory holding the unit.
        filesystem_snapshot: Copy of the live directory tree.
        database_artifact: Database dump file.
        created_at: Creation time (UTC).
    """

    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(..., pattern=r"^\d{14}(\d{6})?$")
    path: Path
    filesystem_snapshot: Path
    database_artifact: Path
    created_at: datetime

    @property
    def sort_key(self) -> str:
        return timestamp_sort_key(self.timestamp)

    def has_artifact(self) -> bool:
        """Whether the database artifact exists and is non-empty."""
        return (
            self.database_artifact.is_file()
            and self.database_artifact.stat().st_size > 0
        )

    def is_complete(self) -> bool:
        """Whether both the filesystem snapshot and the artifact are present."""
        return self.filesystem_snapshot.is_dir() and self.has_artifact()


class BackupManager:
    """
    Creates and lists backup units.

    The manager owns the backup root; the rollback manager only reads from it.
    """

    def __init__(self, ctx: DeploymentContext) -> None:
        self._ctx = ctx
        self._root = ctx.config.paths.backup_root
        self._prefix = ctx.config.paths.backup_prefix

    @property
    def root(self) -> Path:
        return self._root

    def _unit_from_dir(self, path: Path) -> BackupUnit | None:
        marker = path / MARKER_FILE_NAME
        try:
            timestamp = marker.read_text().strip()
            created_at = parse_timestamp(timestamp)
        except (OSError, ValueError) as e:
            logger.warning(
                f"Ignoring backup directory without a valid marker: {path}",
                extra={"path": str(path), "error": str(e)},
            )
            return None

        artifacts = sorted(path.glob(ARTIFACT_GLOB))
        artifact = artifacts[0] if artifacts else path / artifact_name(timestamp)

        return BackupUnit(
            timestamp=timestamp,
            path=path,
            filesystem_snapshot=path / SNAPSHOT_DIR_NAME,
            database_artifact=artifact,
            created_at=created_at,
        )

    def list_backups(self) -> list[BackupUnit]:
        """
        List finalized backup units, oldest first.

        Partial directories and directories without a readable marker are
        skipped.
        """
        if not self._root.is_dir():
            return []

        units = []
        for entry in self._root.iterdir():
            if not entry.name.startswith(self._prefix) or not entry.is_dir():
                continue
            unit = self._unit_from_dir(entry)
            if unit is not None:
                units.append(unit)

        units.sort(key=lambda u: u.sort_key)
        return units

    def latest_backup(self) -> BackupUnit | None:
        """Return the most recent backup unit by timestamp, if any."""
        units = self.list_backups()
        return units[-1] if units else None

    def _new_timestamp(self) -> str:
        now = datetime.now(UTC)
        latest = self.latest_backup()
        if latest is not None and timestamp_sort_key(
            now.strftime(TIMESTAMP_FORMAT)
        ) <= latest.sort_key:
            # Clock went backwards or two runs within the same microsecond
            now = latest.created_at + timedelta(microseconds=1)
        return now.strftime(TIMESTAMP_FORMAT)

    async def create_backup(self) -> BackupUnit:
        """
        Snapshot the live directory tree and database into a new unit.

        Returns:
            The finalized BackupUnit.

        Raises:
            BackupError: FILESYSTEM_COPY_FAILED or DATABASE_DUMP_FAILED.
        """
        ctx = self._ctx
        fs = ctx.filesystem
        timestamp = self._new_timestamp()
        final_dir = self._root / f"{self._prefix}{timestamp}"
        partial_dir = self._root / f".{self._prefix}{timestamp}{PARTIAL_SUFFIX}"

        logger.info(
            f"[backup] creating backup in {final_dir}",
            extra={"phase": "backup", "timestamp": timestamp},
        )

        if not fs.is_dir(ctx.live_dir):
            raise BackupError(
                BackupErrorKind.FILESYSTEM_COPY_FAILED,
                f"Live deployment directory does not exist: {ctx.live_dir}",
                details={"live_dir": str(ctx.live_dir)},
            )

        try:
            partial_dir.mkdir(parents=True)
        except OSError as e:
            raise BackupError(
                BackupErrorKind.FILESYSTEM_COPY_FAILED,
                f"Cannot create backup directory {partial_dir}: {e}",
                details={"path": str(partial_dir)},
            ) from e

        try:
            unit = await self._fill(partial_dir, final_dir, timestamp)
        except BackupError:
            self._discard(partial_dir)
            raise

        logger.info(
            f"[backup] backup {timestamp} complete",
            extra={"phase": "backup", "path": str(final_dir)},
        )
        return unit

    async def _fill(self, partial_dir: Path, final_dir: Path, timestamp: str) -> BackupUnit:
        ctx = self._ctx

        try:
            ctx.filesystem.copy_tree(ctx.live_dir, partial_dir / SNAPSHOT_DIR_NAME)
        except CollaboratorError as e:
            raise BackupError(
                BackupErrorKind.FILESYSTEM_COPY_FAILED,
                f"Filesystem backup failed: {e.message}",
                details=e.details,
            ) from e

        artifact = partial_dir / artifact_name(timestamp)
        try:
            await ctx.database.dump(artifact)
        except CollaboratorError as e:
            raise BackupError(
                BackupErrorKind.DATABASE_DUMP_FAILED,
                f"Database dump failed: {e.message}",
                details=e.details,
            ) from e

        if not artifact.is_file() or artifact.stat().st_size == 0:
            raise BackupError(
                BackupErrorKind.DATABASE_DUMP_FAILED,
                "Database dump produced no output",
                details={"artifact": str(artifact)},
            )

        try:
            (partial_dir / MARKER_FILE_NAME).write_text(f"{timestamp}\n")
            partial_dir.rename(final_dir)
        except OSError as e:
            raise BackupError(
                BackupErrorKind.FILESYSTEM_COPY_FAILED,
                f"Cannot finalize backup {final_dir}: {e}",
                details={"path": str(final_dir)},
            ) from e

        return BackupUnit(
            timestamp=timestamp,
            path=final_dir,
            filesystem_snapshot=final_dir / SNAPSHOT_DIR_NAME,
            database_artifact=final_dir / artifact_name(timestamp),
            created_at=parse_timestamp(timestamp),
        )

    def _discard(self, partial_dir: Path) -> None:
        try:
            self._ctx.filesystem.remove_tree(partial_dir)
        except CollaboratorError as e:
            logger.warning(
                f"Could not remove incomplete backup {partial_dir}: {e.message}",
                extra={"path": str(partial_dir)},
            )
