"""
Component updaters for the podbox deployment orchestrator.

Each updater replaces one subsystem of the live deployment with its staged
counterpart, coordinating with the service supervisor:

- BackendUpdater:  stop backend, replace <live>/back, fix permissions, restart backend
- AssetUpdater:    replace <live>/pwa, fix permissions, restart the proxy
- DatabaseUpdater: stop backend, drop + recreate the database, replay db.dump, start backend
- ContentUpdater:  copy auxiliary content to the external volume if it is mounted

Staged trees are moved, not copied: after a successful update they no
longer exist in the staging directory. Updaters never retry; every failure
is raised as UpdateError and the orchestrator decides what happens next.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from podbox_deploy.context import (
    STAGED_ASSETS_DIR,
    STAGED_BACKEND_DIR,
    STAGED_DATABASE_DUMP,
)
from podbox_deploy.errors import CollaboratorError, UpdateError, UpdateErrorKind
from podbox_deploy.logging import get_logger

if TYPE_CHECKING:
    from podbox_deploy.context import DeploymentContext

logger = get_logger(__name__)


class ComponentUpdater(ABC):
    """
    Base class for component updaters.

    Attributes:
        name: Component name used in logs and errors.
        fatal: Whether a failure of this updater must trigger a rollback.
    """

    name: str = "component"
    fatal: bool = True

    def __init__(self, ctx: DeploymentContext) -> None:
        self._ctx = ctx

    @abstractmethod
    async def update(self) -> None:
        """
        Replace the component's live state with the staged one.

        Raises:
            UpdateError: If the component could not be updated.
        """

    def _error(
        self,
        kind: UpdateErrorKind,
        message: str,
        cause: CollaboratorError | None = None,
    ) -> UpdateError:
        details = dict(cause.details) if cause is not None else {}
        return UpdateError(kind, self.name, message, details=details)

    def _require_source(self, path: Path) -> None:
        if not self._ctx.filesystem.exists(path):
            raise self._error(
                UpdateErrorKind.SOURCE_MISSING,
                f"[{self.name}] staged source missing: {path}",
            )

    async def _stop(self, service: str) -> None:
        try:
            await self._ctx.stop_service(service)
        except CollaboratorError as e:
            raise self._error(
                UpdateErrorKind.SERVICE_CONTROL_FAILED,
                f"[{self.name}] failed to stop {service}: {e.message}",
                e,
            ) from e

    async def _start(self, service: str, *, restart: bool = False) -> None:
        verb = "restart" if restart else "start"
        try:
            if restart:
                await self._ctx.restart_service(service)
            else:
                await self._ctx.start_service(service)
        except CollaboratorError as e:
            logger.error(
                f"[{self.name}] failed to {verb} {service}",
                extra={"component": self.name, "service": service},
            )
            raise self._error(
                UpdateErrorKind.SERVICE_CONTROL_FAILED,
                f"[{self.name}] failed to {verb} {service}: {e.message}",
                e,
            ) from e


class _TreeUpdater(ComponentUpdater):
    """Remove/move/permission pattern shared by backend and assets."""

    staged_name: str

    def _replace_tree(self, source: Path, destination: Path) -> None:
        ctx = self._ctx
        fs = ctx.filesystem

        try:
            fs.remove_tree(destination)
        except CollaboratorError as e:
            raise self._error(
                UpdateErrorKind.DESTINATION_BUSY,
                f"[{self.name}] cannot remove {destination}: {e.message}",
                e,
            ) from e

        try:
            fs.move_tree(source, destination)
        except CollaboratorError as e:
            raise self._error(
                UpdateErrorKind.DESTINATION_BUSY,
                f"[{self.name}] cannot move {source} to {destination}: {e.message}",
                e,
            ) from e

        policy = ctx.config.permissions
        try:
            fs.apply_permissions(
                destination,
                owner=policy.owner,
                group=policy.group,
                dir_mode=policy.dir_mode,
                file_mode=policy.file_mode,
            )
        except CollaboratorError as e:
            raise self._error(
                UpdateErrorKind.PERMISSIONS_FAILED,
                f"[{self.name}] cannot apply permissions to {destination}: {e.message}",
                e,
            ) from e


class BackendUpdater(_TreeUpdater):
    """Replaces the backend code tree."""

    name = "backend"
    staged_name = STAGED_BACKEND_DIR

    async def update(self) -> None:
        ctx = self._ctx
        source = ctx.staged(self.staged_name)
        destination = ctx.live(self.staged_name)

        logger.info(
            f"[update_backend] replacing {destination}",
            extra={"phase": "update_backend"},
        )
        self._require_source(source)

        # The old process must release the tree before it is replaced
        await self._stop(ctx.backend_service)
        self._replace_tree(source, destination)
        await self._start(ctx.backend_service, restart=True)

        logger.info("[update_backend] done", extra={"phase": "update_backend"})


class AssetUpdater(_TreeUpdater):
    """Replaces the static web asset tree and reloads the proxy."""

    name = "assets"
    staged_name = STAGED_ASSETS_DIR

    async def update(self) -> None:
        ctx = self._ctx
        source = ctx.staged(self.staged_name)
        destination = ctx.live(self.staged_name)

        logger.info(
            f"[update_pwa] replacing {destination}",
            extra={"phase": "update_pwa"},
        )
        self._require_source(source)
        self._replace_tree(source, destination)
        await self._start(ctx.proxy_service, restart=True)

        logger.info("[update_pwa] done", extra={"phase": "update_pwa"})


class DatabaseUpdater(ComponentUpdater):
    """Replaces the live database with the staged dump."""

    name = "database"

    async def update(self) -> None:
        await self.replace_database(self._ctx.staged(STAGED_DATABASE_DUMP))

    async def replace_database(self, dump_path: Path) -> None:
        """
        Drop and recreate the live database, then replay ``dump_path``.

        A failure after the drop leaves the database empty or half-restored;
        the backup unit taken at the start of the run is what recovers it.

        Raises:
            UpdateError: SOURCE_MISSING, SERVICE_CONTROL_FAILED,
                SCHEMA_RESET_FAILED or RESTORE_FAILED.
        """
        ctx = self._ctx
        db_name = ctx.config.database.name

        logger.info(
            f"[update_db] dropping & recreating {db_name} database",
            extra={"phase": "update_db"},
        )
        self._require_source(dump_path)

        # No open connections during a destructive schema replace
        await self._stop(ctx.backend_service)

        try:
            await ctx.database.drop_database(force=True)
            await ctx.database.create_database()
        except CollaboratorError as e:
            raise self._error(
                UpdateErrorKind.SCHEMA_RESET_FAILED,
                f"[{self.name}] cannot reset database {db_name}: {e.message}",
                e,
            ) from e

        try:
            await ctx.database.restore(dump_path)
        except CollaboratorError as e:
            raise self._error(
                UpdateErrorKind.RESTORE_FAILED,
                f"[{self.name}] replay of {dump_path} failed: {e.message}",
                e,
            ) from e

        await self._start(ctx.backend_service)

        logger.info("[update_db] done", extra={"phase": "update_db"})


class ContentUpdater(ComponentUpdater):
    """
    Copies auxiliary content to the optional external volume.

    A missing volume or missing staged content is a no-op. Copy failures are
    reported but are not fatal to the deployment.
    """

    name = "content"
    fatal = False

    async def update(self) -> None:
        ctx = self._ctx
        content = ctx.config.content
        source = ctx.staged(content.source_subdir)
        destination = content.mount_point / content.dest_subdir / content.source_subdir

        if not ctx.filesystem.is_mount(content.mount_point):
            logger.info(
                f"[update_contents] {content.mount_point} not mounted, skipping",
                extra={"phase": "update_contents"},
            )
            return

        if not ctx.filesystem.is_dir(source):
            logger.info(
                f"[update_contents] no staged content at {source}, skipping",
                extra={"phase": "update_contents"},
            )
            return

        logger.info(
            f"[update_contents] copying {source} to {destination}",
            extra={"phase": "update_contents"},
        )
        try:
            ctx.filesystem.copy_tree(source, destination, merge=True)
        except CollaboratorError as e:
            raise self._error(
                UpdateErrorKind.CONTENT_COPY_FAILED,
                f"[{self.name}] cannot copy content to {destination}: {e.message}",
                e,
            ) from e

        logger.info("[update_contents] done", extra={"phase": "update_contents"})
