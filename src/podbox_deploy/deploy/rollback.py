"""
Rollback for the podbox deployment orchestrator.

Rollback is whole-system and always targets the most recent backup unit:
both services are stopped, the live directory tree is replaced by the
unit's snapshot, the unit's database artifact is replayed, and both
services are started again. A failed verification does not say which
component is at fault, so no component is rolled back on its own.

Any failure here is fatal; the operator has to intervene manually.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from podbox_deploy.deploy.backup import BackupManager, BackupUnit
from podbox_deploy.errors import CollaboratorError, RollbackError, RollbackErrorKind
from podbox_deploy.logging import get_logger

if TYPE_CHECKING:
    from podbox_deploy.context import DeploymentContext

logger = get_logger(__name__)


class RollbackManager:
    """Restores the live deployment from the latest backup unit."""

    def __init__(
        self,
        ctx: DeploymentContext,
        backups: BackupManager | None = None,
    ) -> None:
        """
        Initialize the RollbackManager.

        Args:
            ctx: Deployment context.
            backups: BackupManager used to discover units (read only).
        """
        self._ctx = ctx
        self._backups = backups or BackupManager(ctx)

    def get_rollback_target(self) -> BackupUnit:
        """
        Select the most recent backup unit.

        Raises:
            RollbackError: NO_BACKUP_AVAILABLE or NO_ARTIFACT_AVAILABLE.
        """
        unit = self._backups.latest_backup()
        if unit is None:
            raise RollbackError(
                RollbackErrorKind.NO_BACKUP_AVAILABLE,
                f"[rollback] no backups found under {self._backups.root}",
                details={"backup_root": str(self._backups.root)},
            )

        if not unit.has_artifact():
            raise RollbackError(
                RollbackErrorKind.NO_ARTIFACT_AVAILABLE,
                f"[rollback] no DB dump found in {unit.path}",
                details={"backup": str(unit.path)},
            )

        if not self._ctx.filesystem.is_dir(unit.filesystem_snapshot):
            raise RollbackError(
                RollbackErrorKind.FILESYSTEM_RESTORE_FAILED,
                f"[rollback] no filesystem snapshot in {unit.path}",
                details={"backup": str(unit.path)},
            )

        return unit

    async def rollback(self) -> BackupUnit:
        """
        Restore filesystem and database state from the latest backup unit.

        The unit is validated before anything is stopped or removed.

        Returns:
            The unit that was restored.

        Raises:
            RollbackError: If the rollback could not be completed.
        """
        ctx = self._ctx
        unit = self.get_rollback_target()

        logger.info(
            f"[rollback] restoring from {unit.path}",
            extra={"phase": "rollback", "backup": unit.timestamp},
        )

        for service in (ctx.proxy_service, ctx.backend_service):
            await self._control(ctx.stop_service, "stop", service)

        try:
            ctx.filesystem.remove_tree(ctx.live_dir)
            ctx.filesystem.copy_tree(unit.filesystem_snapshot, ctx.live_dir)
        except CollaboratorError as e:
            raise RollbackError(
                RollbackErrorKind.FILESYSTEM_RESTORE_FAILED,
                f"[rollback] filesystem restore failed: {e.message}",
                details={"backup": str(unit.path), **e.details},
            ) from e

        logger.info(
            f"[rollback] restoring DB from {unit.database_artifact}",
            extra={"phase": "rollback"},
        )
        try:
            await ctx.database.restore(unit.database_artifact)
        except CollaboratorError as e:
            raise RollbackError(
                RollbackErrorKind.DATABASE_RESTORE_FAILED,
                f"[rollback] database restore failed: {e.message}",
                details={"backup": str(unit.path), **e.details},
            ) from e

        for service in (ctx.backend_service, ctx.proxy_service):
            await self._control(ctx.start_service, "start", service)

        logger.info("[rollback] done", extra={"phase": "rollback", "backup": unit.timestamp})
        return unit

    @staticmethod
    async def _control(
        action: Callable[[str], Awaitable[None]],
        verb: str,
        service: str,
    ) -> None:
        try:
            await action(service)
        except CollaboratorError as e:
            raise RollbackError(
                RollbackErrorKind.SERVICE_CONTROL_FAILED,
                f"[rollback] failed to {verb} {service}: {e.message}",
                details={"service": service, **e.details},
            ) from e
