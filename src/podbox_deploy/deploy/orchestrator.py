"""
Deployment orchestrator for the podbox deployment.

This module implements the DeploymentOrchestrator state machine that
sequences one deployment run:

    idle → backing_up → updating_backend → updating_assets → updating_database
         → updating_content → recording_version → verifying → succeeded

Any error after the backup has been taken moves the run to rolling_back and
then to failed, whatever the outcome of the rollback. A failed backup moves
straight to failed: nothing has been changed yet, and there is nothing to
roll back to.

The current state is written to a state file after every transition so an
operator can see where the last run stopped.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from podbox_deploy.context import STAGED_VERSION_FILE
from podbox_deploy.deploy.backup import BackupManager, BackupUnit
from podbox_deploy.deploy.health import HealthVerifier
from podbox_deploy.deploy.rollback import RollbackManager
from podbox_deploy.deploy.updaters import (
    AssetUpdater,
    BackendUpdater,
    ComponentUpdater,
    ContentUpdater,
    DatabaseUpdater,
)
from podbox_deploy.deploy.version import VersionRecord
from podbox_deploy.errors import (
    ConfigError,
    DeployError,
    HealthCheckError,
    InvalidTransitionError,
    UpdateError,
)
from podbox_deploy.lock import DeploymentLock
from podbox_deploy.logging import get_logger

if TYPE_CHECKING:
    from podbox_deploy.context import DeploymentContext

logger = get_logger(__name__)


class DeploymentState(str, Enum):
    """
    States for the deployment state machine.

    State transitions:
    - idle → backing_up (deployment run)
    - idle → rolling_back (manual rollback)
    - backing_up → updating_backend | failed
    - updating_* / recording_version / verifying → next state | rolling_back
    - verifying → succeeded
    - rolling_back → failed (deployment run, whatever the rollback outcome)
    - rolling_back → succeeded (manual rollback completed)
    """

    IDLE = "idle"
    BACKING_UP = "backing_up"
    UPDATING_BACKEND = "updating_backend"
    UPDATING_ASSETS = "updating_assets"
    UPDATING_DATABASE = "updating_database"
    UPDATING_CONTENT = "updating_content"
    RECORDING_VERSION = "recording_version"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


# Valid state transitions
_VALID_TRANSITIONS: dict[DeploymentState, set[DeploymentState]] = {
    DeploymentState.IDLE: {DeploymentState.BACKING_UP, DeploymentState.ROLLING_BACK},
    DeploymentState.BACKING_UP: {DeploymentState.UPDATING_BACKEND, DeploymentState.FAILED},
    DeploymentState.UPDATING_BACKEND: {
        DeploymentState.UPDATING_ASSETS,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.UPDATING_ASSETS: {
        DeploymentState.UPDATING_DATABASE,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.UPDATING_DATABASE: {
        DeploymentState.UPDATING_CONTENT,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.UPDATING_CONTENT: {
        DeploymentState.RECORDING_VERSION,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.RECORDING_VERSION: {
        DeploymentState.VERIFYING,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.VERIFYING: {DeploymentState.SUCCEEDED, DeploymentState.ROLLING_BACK},
    DeploymentState.ROLLING_BACK: {DeploymentState.FAILED, DeploymentState.SUCCEEDED},
    DeploymentState.SUCCEEDED: set(),
    DeploymentState.FAILED: set(),
}

_TERMINAL_STATES = {DeploymentState.SUCCEEDED, DeploymentState.FAILED}


class ExitCode(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    FAILED = 1
    ROLLBACK_FAILED = 3
    LOCKED = 4
    CONFIG_ERROR = 5


class DeploymentOutcome(str, Enum):
    """How a run ended."""

    SUCCEEDED = "succeeded"
    BACKUP_FAILED = "backup_failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


_EXIT_CODES: dict[DeploymentOutcome, ExitCode] = {
    DeploymentOutcome.SUCCEEDED: ExitCode.SUCCESS,
    DeploymentOutcome.BACKUP_FAILED: ExitCode.FAILED,
    DeploymentOutcome.ROLLED_BACK: ExitCode.FAILED,
    DeploymentOutcome.ROLLBACK_FAILED: ExitCode.ROLLBACK_FAILED,
}


class DeploymentStateData(BaseModel):
    """Persisted state of the current (or last) run."""

    state: str = Field(
        default=DeploymentState.IDLE.value,
        description="Current state machine state",
    )
    release_version: str | None = Field(
        default=None,
        description="Version being deployed",
    )
    previous_version: str | None = Field(
        default=None,
        description="Deployment record value before the run",
    )
    backup_timestamp: str | None = Field(
        default=None,
        description="Timestamp of the backup unit taken by this run",
    )
    started_at: str | None = Field(
        default=None,
        description="ISO 8601 timestamp when the run started",
    )
    last_transition_at: str | None = Field(
        default=None,
        description="ISO 8601 timestamp of last state transition",
    )
    failed_state: str | None = Field(
        default=None,
        description="State in which the run failed",
    )
    error_message: str | None = Field(
        default=None,
        description="Error message if the run failed",
    )


class DeploymentResult(BaseModel):
    """Summary of a finished run."""

    outcome: DeploymentOutcome
    exit_code: int
    release_version: str | None = None
    previous_version: str | None = None
    backup_timestamp: str | None = None
    failed_state: str | None = None
    error: dict[str, Any] | None = None
    rollback_error: dict[str, Any] | None = None
    health_results: list[dict[str, Any]] = Field(default_factory=list)
    service_states: dict[str, str] = Field(default_factory=dict)

    @property
    def status_line(self) -> str:
        """Final operator-facing status line."""
        if self.outcome == DeploymentOutcome.SUCCEEDED:
            return "SUCCESS"
        if self.outcome == DeploymentOutcome.ROLLBACK_FAILED:
            return "FAILED (rollback also failed - manual intervention required)"
        if self.outcome == DeploymentOutcome.ROLLED_BACK:
            return "FAILED (rolled back)"
        return "FAILED (backup failed, nothing changed)"


def _error_dict(error: BaseException) -> dict[str, Any]:
    if isinstance(error, DeployError):
        return error.to_dict()
    return {"error_code": "internal", "message": str(error), "details": {}}


class DeploymentOrchestrator:
    """
    Runs one deployment through the state machine.

    An orchestrator instance handles a single run; create a new one for the
    next run.

    Attributes:
        state: Current state machine state.
        state_data: Persisted state data.
    """

    def __init__(
        self,
        ctx: DeploymentContext,
        backups: BackupManager | None = None,
        rollback_manager: RollbackManager | None = None,
        verifier: HealthVerifier | None = None,
        version_record: VersionRecord | None = None,
    ) -> None:
        """
        Initialize the DeploymentOrchestrator.

        Args:
            ctx: Deployment context shared by all components.
            backups: Backup manager (built from ctx if omitted).
            rollback_manager: Rollback manager (built from ctx if omitted).
            verifier: Health verifier (built from ctx if omitted).
            version_record: Deployment record (built from ctx if omitted).
        """
        self._ctx = ctx
        self._backups = backups or BackupManager(ctx)
        self._rollback = rollback_manager or RollbackManager(ctx, self._backups)
        self._verifier = verifier or HealthVerifier(ctx)
        self._version = version_record or VersionRecord(ctx.config.paths.version_file)
        self._state_file = ctx.config.paths.state_file
        self._state_data = DeploymentStateData()
        self._version_written = False
        self._transition_callbacks: list[Callable[[DeploymentStateData], None]] = []

    @property
    def state(self) -> DeploymentState:
        """Get the current state."""
        return DeploymentState(self._state_data.state)

    @property
    def state_data(self) -> DeploymentStateData:
        """Get the state data."""
        return self._state_data

    def add_transition_callback(
        self, callback: Callable[[DeploymentStateData], None]
    ) -> None:
        """Add a callback to be notified of state changes."""
        self._transition_callbacks.append(callback)

    def _notify(self) -> None:
        for callback in self._transition_callbacks:
            try:
                callback(self._state_data)
            except Exception as e:
                logger.warning(f"Transition callback failed: {e}")

    def _transition_to(
        self,
        new_state: DeploymentState,
        *,
        error_message: str | None = None,
    ) -> None:
        """
        Transition to a new state.

        Raises:
            InvalidTransitionError: If the transition is not valid.
        """
        current = self.state

        if new_state not in _VALID_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS[current]
                    ),
                },
            )

        logger.info(
            f"State transition: {current.value} -> {new_state.value}",
            extra={
                "old_state": current.value,
                "new_state": new_state.value,
                "release_version": self._state_data.release_version,
            },
        )

        self._state_data.state = new_state.value
        self._state_data.last_transition_at = datetime.now(UTC).isoformat()
        if error_message is not None:
            self._state_data.error_message = error_message

        self._save_state()
        self._notify()

    def _save_state(self) -> None:
        """Save current state to disk; failures are logged, never fatal."""
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self._state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(self._state_data.model_dump(), f, indent=2)
            temp_file.replace(self._state_file)
        except OSError as e:
            logger.warning(f"Failed to save deployment state: {e}")

    def _warn_on_unfinished_run(self) -> None:
        """Log if the previous run never reached a terminal state."""
        try:
            if not self._state_file.exists():
                return
            with open(self._state_file) as f:
                previous = DeploymentStateData(**json.load(f))
            previous_state = DeploymentState(previous.state)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to read previous deployment state: {e}")
            return

        if previous_state not in _TERMINAL_STATES | {DeploymentState.IDLE}:
            logger.warning(
                f"Previous run stopped in state {previous.state}; "
                "the live deployment may be inconsistent",
                extra={
                    "previous_state": previous.state,
                    "previous_release": previous.release_version,
                    "previous_started_at": previous.started_at,
                },
            )

    def _read_recorded_version(self) -> str | None:
        try:
            return self._version.read()
        except OSError as e:
            raise ConfigError(
                f"Cannot read version file {self._version.path}: {e}",
                details={"version_file": str(self._version.path)},
            ) from e

    def resolve_release_version(self) -> str:
        """
        Determine the version identifier for this run.

        Uses the configured release_version, else the staged VERSION file.

        Raises:
            ConfigError: If neither is available.
        """
        configured = self._ctx.config.release_version
        if configured:
            return configured

        version_file = self._ctx.staged(STAGED_VERSION_FILE)
        try:
            staged = version_file.read_text().strip()
        except OSError:
            staged = ""
        if staged:
            return staged

        raise ConfigError(
            "No release version: set release_version or ship a VERSION file "
            "with the staged update",
            details={"version_file": str(version_file)},
        )

    def _updaters(self) -> list[tuple[DeploymentState, ComponentUpdater]]:
        ctx = self._ctx
        return [
            (DeploymentState.UPDATING_BACKEND, BackendUpdater(ctx)),
            (DeploymentState.UPDATING_ASSETS, AssetUpdater(ctx)),
            (DeploymentState.UPDATING_DATABASE, DatabaseUpdater(ctx)),
            (DeploymentState.UPDATING_CONTENT, ContentUpdater(ctx)),
        ]

    def _result(self, outcome: DeploymentOutcome, **kwargs: Any) -> DeploymentResult:
        return DeploymentResult(
            outcome=outcome,
            exit_code=int(_EXIT_CODES[outcome]),
            release_version=self._state_data.release_version,
            previous_version=self._state_data.previous_version,
            backup_timestamp=self._state_data.backup_timestamp,
            failed_state=self._state_data.failed_state,
            service_states=self._ctx.service_snapshot(),
            **kwargs,
        )

    async def run(self) -> DeploymentResult:
        """
        Run a full deployment under the deployment lock.

        Returns:
            DeploymentResult describing the outcome.

        Raises:
            DeploymentLockedError: If another run is in progress.
            ConfigError: If no release version can be determined, or the lock
                file or version file cannot be used.
            InvalidTransitionError: If this orchestrator was already used.
        """
        with DeploymentLock(self._ctx.config.paths.lock_file):
            return await self._run()

    async def _run(self) -> DeploymentResult:
        if self.state != DeploymentState.IDLE:
            raise InvalidTransitionError(
                f"Cannot start a run while in {self.state.value} state",
                details={"current_state": self.state.value},
            )

        release_version = self.resolve_release_version()
        self._warn_on_unfinished_run()

        self._state_data.release_version = release_version
        self._state_data.started_at = datetime.now(UTC).isoformat()
        self._state_data.previous_version = self._read_recorded_version()

        logger.info(
            f"[deploy] starting at {self._state_data.started_at}",
            extra={
                "release_version": release_version,
                "previous_version": self._state_data.previous_version,
            },
        )

        # Backup: the only gate that must pass before anything is changed
        self._transition_to(DeploymentState.BACKING_UP)
        try:
            unit: BackupUnit = await self._backups.create_backup()
        except Exception as e:
            return self._fail_before_mutation(e)
        self._state_data.backup_timestamp = unit.timestamp

        health_results: list[dict[str, Any]] = []
        try:
            for state, updater in self._updaters():
                self._transition_to(state)
                await self._run_updater(updater)

            self._transition_to(DeploymentState.RECORDING_VERSION)
            self._version.write(release_version)
            self._version_written = True

            self._transition_to(DeploymentState.VERIFYING)
            results = await self._verifier.verify()
            health_results = [r.to_dict() for r in results]
        except Exception as e:
            # Everything after the backup is covered by rollback
            if isinstance(e, HealthCheckError):
                health_results = list(e.details.get("results", []))
            return await self._roll_back(e, health_results)

        self._transition_to(DeploymentState.SUCCEEDED)
        result = self._result(DeploymentOutcome.SUCCEEDED, health_results=health_results)
        logger.info(f"[deploy] {result.status_line}", extra={"release_version": release_version})
        return result

    async def _run_updater(self, updater: ComponentUpdater) -> None:
        try:
            await updater.update()
        except UpdateError as e:
            if updater.fatal:
                raise
            logger.warning(
                f"[deploy] {updater.name} update failed (non-fatal): {e.message}",
                extra={"component": updater.name, "error_code": e.error_code},
            )

    def _fail_before_mutation(self, error: Exception) -> DeploymentResult:
        message = getattr(error, "message", str(error))
        self._state_data.failed_state = self.state.value
        logger.error(
            f"[deploy] backup failed, aborting before any change: {message}",
            extra={"error_code": getattr(error, "error_code", "internal")},
        )
        self._transition_to(DeploymentState.FAILED, error_message=message)
        result = self._result(DeploymentOutcome.BACKUP_FAILED, error=_error_dict(error))
        logger.error(f"[deploy] {result.status_line}")
        return result

    async def _roll_back(
        self,
        error: Exception,
        health_results: list[dict[str, Any]],
    ) -> DeploymentResult:
        message = getattr(error, "message", str(error))
        self._state_data.failed_state = self.state.value
        logger.error(
            f"[deploy] {self.state.value} failed: {message}; rolling back",
            extra={"error_code": getattr(error, "error_code", "internal")},
            exc_info=not isinstance(error, DeployError),
        )
        self._transition_to(DeploymentState.ROLLING_BACK, error_message=message)

        try:
            await self._rollback.rollback()
        except Exception as rollback_error:
            rb_message = getattr(rollback_error, "message", str(rollback_error))
            logger.critical(
                f"[deploy] rollback failed: {rb_message}",
                extra={
                    "error_code": getattr(rollback_error, "error_code", "internal"),
                    "service_states": self._ctx.service_snapshot(),
                },
                exc_info=not isinstance(rollback_error, DeployError),
            )
            self._transition_to(
                DeploymentState.FAILED,
                error_message=f"{message}; rollback failed: {rb_message}",
            )
            result = self._result(
                DeploymentOutcome.ROLLBACK_FAILED,
                error=_error_dict(error),
                rollback_error=_error_dict(rollback_error),
                health_results=health_results,
            )
            logger.critical(f"[deploy] {result.status_line}")
            return result

        self._restore_version_record()
        self._transition_to(DeploymentState.FAILED)
        result = self._result(
            DeploymentOutcome.ROLLED_BACK,
            error=_error_dict(error),
            health_results=health_results,
        )
        logger.error(f"[deploy] {result.status_line}")
        return result

    def _restore_version_record(self) -> None:
        """Point the deployment record back at the version that is live again."""
        if not self._version_written:
            return
        if not self._ctx.config.restore_version_on_rollback:
            logger.warning(
                "Version record left at the rolled-back release "
                f"{self._state_data.release_version}",
            )
            return

        previous = self._state_data.previous_version
        try:
            if previous is None:
                self._version.clear()
            else:
                self._version.write(previous)
        except OSError as e:
            logger.error(f"Failed to restore version record: {e}")

    async def run_rollback(self) -> DeploymentResult:
        """
        Manually roll back to the latest backup unit, under the deployment lock.

        Returns:
            DeploymentResult with outcome SUCCEEDED or ROLLBACK_FAILED.

        Raises:
            DeploymentLockedError: If another run is in progress.
            ConfigError: If the lock file or version file cannot be used.
        """
        with DeploymentLock(self._ctx.config.paths.lock_file):
            if self.state != DeploymentState.IDLE:
                raise InvalidTransitionError(
                    f"Cannot roll back while in {self.state.value} state",
                    details={"current_state": self.state.value},
                )

            self._state_data.started_at = datetime.now(UTC).isoformat()
            self._state_data.previous_version = self._read_recorded_version()
            self._transition_to(DeploymentState.ROLLING_BACK)

            try:
                unit = await self._rollback.rollback()
            except Exception as e:
                message = getattr(e, "message", str(e))
                logger.critical(
                    f"[rollback] failed: {message}",
                    extra={"service_states": self._ctx.service_snapshot()},
                    exc_info=not isinstance(e, DeployError),
                )
                self._state_data.failed_state = DeploymentState.ROLLING_BACK.value
                self._transition_to(DeploymentState.FAILED, error_message=message)
                return self._result(
                    DeploymentOutcome.ROLLBACK_FAILED, rollback_error=_error_dict(e)
                )

            self._state_data.backup_timestamp = unit.timestamp
            self._transition_to(DeploymentState.SUCCEEDED)
            return self._result(DeploymentOutcome.SUCCEEDED)
