"""
Tests for the deployment orchestrator.

Tests cover:
- DeploymentState enum and transition table
- DeploymentStateData / DeploymentResult models
- Full deployment runs (success, rollback, rollback failure, backup failure)
- Version record handling across rollback
- Release version resolution, locking and state persistence
- Manual rollback
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from conftest import BACKEND_URL, FakeDatabaseTool, FakeProbe, FakeServiceController

from podbox_deploy.collaborators.filesystem import Filesystem
from podbox_deploy.config import DeployConfig
from podbox_deploy.context import DeploymentContext
from podbox_deploy.deploy.backup import BackupManager
from podbox_deploy.deploy.orchestrator import (
    _VALID_TRANSITIONS,
    DeploymentOrchestrator,
    DeploymentOutcome,
    DeploymentResult,
    DeploymentState,
    DeploymentStateData,
    ExitCode,
)
from podbox_deploy.deploy.rollback import RollbackManager
from podbox_deploy.errors import (
    CollaboratorError,
    ConfigError,
    DeploymentLockedError,
    InvalidTransitionError,
)
from podbox_deploy.lock import DeploymentLock


def _tree(root: Path) -> dict[str, bytes]:
    """Relative path -> content for every file below root."""
    return {
        str(p.relative_to(root)): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()
    }


class _FailingContentCopy(Filesystem):
    def __init__(self, mount_point: Path) -> None:
        self.mount_point = mount_point

    def is_mount(self, path: Path) -> bool:
        return path == self.mount_point

    def copy_tree(self, src: Path, dst: Path, *, merge: bool = False) -> None:
        if merge:
            raise CollaboratorError("Read-only file system", details={"dst": str(dst)})
        super().copy_tree(src, dst, merge=merge)


@pytest.fixture
def previous_version(deploy_config: DeployConfig) -> str:
    """Record version 1 as live."""
    path = deploy_config.paths.version_file
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("1\n")
    return "1"


@pytest.fixture
def transitions() -> list[str]:
    return []


@pytest.fixture
def orchestrator(ctx: DeploymentContext, transitions: list[str]) -> DeploymentOrchestrator:
    orch = DeploymentOrchestrator(ctx)
    orch.add_transition_callback(lambda data: transitions.append(data.state))
    return orch


# =============================================================================
# DeploymentState Tests
# =============================================================================


class TestDeploymentState:
    """Tests for DeploymentState enum and transitions."""

    def test_state_values(self) -> None:
        """Test that all states have the expected string values."""
        assert [s.value for s in DeploymentState] == [
            "idle",
            "backing_up",
            "updating_backend",
            "updating_assets",
            "updating_database",
            "updating_content",
            "recording_version",
            "verifying",
            "succeeded",
            "rolling_back",
            "failed",
        ]

    def test_backup_failure_skips_rollback(self) -> None:
        """Test backing_up can fail directly but never roll back."""
        valid = _VALID_TRANSITIONS[DeploymentState.BACKING_UP]

        assert DeploymentState.FAILED in valid
        assert DeploymentState.ROLLING_BACK not in valid

    @pytest.mark.parametrize(
        "state",
        [
            DeploymentState.UPDATING_BACKEND,
            DeploymentState.UPDATING_ASSETS,
            DeploymentState.UPDATING_DATABASE,
            DeploymentState.UPDATING_CONTENT,
            DeploymentState.RECORDING_VERSION,
            DeploymentState.VERIFYING,
        ],
    )
    def test_mutating_states_roll_back(self, state: DeploymentState) -> None:
        """Test every state after the backup can only advance or roll back."""
        valid = _VALID_TRANSITIONS[state]

        assert DeploymentState.ROLLING_BACK in valid
        assert DeploymentState.FAILED not in valid
        assert len(valid) == 2

    def test_terminal_states(self) -> None:
        """Test succeeded and failed have no exits."""
        assert _VALID_TRANSITIONS[DeploymentState.SUCCEEDED] == set()
        assert _VALID_TRANSITIONS[DeploymentState.FAILED] == set()

    def test_exit_codes(self) -> None:
        """Test the process exit codes."""
        assert ExitCode.SUCCESS == 0
        assert ExitCode.FAILED == 1
        assert ExitCode.ROLLBACK_FAILED == 3
        assert ExitCode.LOCKED == 4
        assert ExitCode.CONFIG_ERROR == 5


# =============================================================================
# Model Tests
# =============================================================================


class TestModels:
    """Tests for DeploymentStateData and DeploymentResult."""

    def test_state_data_defaults(self) -> None:
        """Test a fresh state is idle and empty."""
        data = DeploymentStateData()

        assert data.state == "idle"
        assert data.release_version is None
        assert data.backup_timestamp is None

    @pytest.mark.parametrize(
        ("outcome", "line"),
        [
            (DeploymentOutcome.SUCCEEDED, "SUCCESS"),
            (DeploymentOutcome.ROLLED_BACK, "FAILED (rolled back)"),
            (
                DeploymentOutcome.ROLLBACK_FAILED,
                "FAILED (rollback also failed - manual intervention required)",
            ),
            (DeploymentOutcome.BACKUP_FAILED, "FAILED (backup failed, nothing changed)"),
        ],
    )
    def test_status_line(self, outcome: DeploymentOutcome, line: str) -> None:
        """Test the operator-facing status line."""
        assert DeploymentResult(outcome=outcome, exit_code=0).status_line == line


# =============================================================================
# Transition Tests
# =============================================================================


class TestTransitions:
    """Tests for the state machine guard rails."""

    def test_invalid_transition_raises(self, orchestrator: DeploymentOrchestrator) -> None:
        """Test skipping states is rejected."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            orchestrator._transition_to(DeploymentState.VERIFYING)

        assert exc_info.value.details["current_state"] == "idle"
        assert exc_info.value.details["valid_transitions"] == ["backing_up", "rolling_back"]
        assert orchestrator.state is DeploymentState.IDLE

    @pytest.mark.asyncio
    async def test_orchestrator_is_single_use(
        self,
        orchestrator: DeploymentOrchestrator,
        live_tree: Path,
        stage_update: Callable[..., Path],
    ) -> None:
        """Test a finished orchestrator refuses a second run."""
        stage_update("2")
        await orchestrator.run()

        with pytest.raises(InvalidTransitionError):
            await orchestrator.run()

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_run(
        self,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
    ) -> None:
        """Test a broken transition callback is only logged."""
        stage_update("2")
        orch = DeploymentOrchestrator(ctx)
        orch.add_transition_callback(lambda data: 1 / 0)

        result = await orch.run()

        assert result.outcome is DeploymentOutcome.SUCCEEDED


# =============================================================================
# Successful run Tests
# =============================================================================


class TestSuccessfulRun:
    """Tests for the success path."""

    @pytest.mark.asyncio
    async def test_success(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        previous_version: str,
        services: FakeServiceController,
        database: FakeDatabaseTool,
    ) -> None:
        """Test version recorded, services running, backup taken."""
        staging = stage_update("2")

        result = await orchestrator.run()

        assert result.outcome is DeploymentOutcome.SUCCEEDED
        assert result.exit_code == 0
        assert result.release_version == "2"
        assert result.previous_version == "1"
        assert ctx.config.paths.version_file.read_text() == "2\n"
        assert services.running == {"podbox", "nginx"}
        assert result.service_states == {"podbox": "running", "nginx": "running"}
        assert (live_tree / "back" / "app.py").read_text() == "backend v2\n"
        assert (live_tree / "pwa" / "index.html").read_text() == "pwa v2\n"
        assert (live_tree / ".env").exists()
        assert database.content == "db v2"
        assert not (staging / "back").exists()
        assert not (staging / "pwa").exists()
        assert len(result.health_results) == 4

        backups = BackupManager(ctx).list_backups()
        assert [b.timestamp for b in backups] == [result.backup_timestamp]
        assert (backups[0].filesystem_snapshot / "back" / "app.py").read_text() == "backend v1\n"

    @pytest.mark.asyncio
    async def test_state_sequence(
        self,
        orchestrator: DeploymentOrchestrator,
        live_tree: Path,
        stage_update: Callable[..., Path],
        transitions: list[str],
    ) -> None:
        """Test every state is visited in order."""
        stage_update("2")

        await orchestrator.run()

        assert transitions == [
            "backing_up",
            "updating_backend",
            "updating_assets",
            "updating_database",
            "updating_content",
            "recording_version",
            "verifying",
            "succeeded",
        ]

    @pytest.mark.asyncio
    async def test_backend_completes_before_assets(
        self,
        orchestrator: DeploymentOrchestrator,
        live_tree: Path,
        stage_update: Callable[..., Path],
        services: FakeServiceController,
    ) -> None:
        """Test the backend restart precedes any proxy action."""
        stage_update("2")

        await orchestrator.run()

        assert services.calls.index(("restart", "podbox")) < services.calls.index(
            ("restart", "nginx")
        )

    @pytest.mark.asyncio
    async def test_state_file_written(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
    ) -> None:
        """Test the last state is persisted for operators."""
        stage_update("2")

        result = await orchestrator.run()

        data = json.loads(ctx.config.paths.state_file.read_text())
        assert data["state"] == "succeeded"
        assert data["release_version"] == "2"
        assert data["backup_timestamp"] == result.backup_timestamp
        assert data["started_at"] is not None

    @pytest.mark.asyncio
    async def test_state_file_failure_not_fatal(
        self,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        tmp_path: Path,
    ) -> None:
        """Test an unwritable state file does not fail the run."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        ctx.config.paths.state_file = blocker / "state.json"
        stage_update("2")

        result = await DeploymentOrchestrator(ctx).run()

        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_idempotent_reruns(
        self,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        database: FakeDatabaseTool,
    ) -> None:
        """Test two runs with the same staged inputs give the same result."""
        stage_update("2")
        first = await DeploymentOrchestrator(ctx).run()
        after_first = _tree(live_tree)
        db_after_first = database.content

        stage_update("2")
        second = await DeploymentOrchestrator(ctx).run()

        assert first.exit_code == second.exit_code == 0
        assert _tree(live_tree) == after_first
        assert database.content == db_after_first

        latest = BackupManager(ctx).latest_backup()
        assert latest.timestamp == second.backup_timestamp
        assert _tree(latest.filesystem_snapshot) == after_first
        assert latest.database_artifact.read_text() == db_after_first

    @pytest.mark.asyncio
    async def test_content_failure_is_warning(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test a failed content copy does not fail the deployment."""
        staging = stage_update("2")
        (staging / "images").mkdir()
        ctx.filesystem = _FailingContentCopy(ctx.config.content.mount_point)
        caplog.set_level(logging.WARNING, logger="podbox_deploy")

        result = await orchestrator.run()

        assert result.outcome is DeploymentOutcome.SUCCEEDED
        assert any(
            "content update failed (non-fatal)" in r.getMessage() for r in caplog.records
        )


# =============================================================================
# Release version Tests
# =============================================================================


class TestReleaseVersion:
    """Tests for release version resolution."""

    def test_configured_version_wins(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        stage_update: Callable[..., Path],
    ) -> None:
        """Test release_version overrides the staged VERSION file."""
        stage_update("2")
        ctx.config.release_version = "2.1"

        assert orchestrator.resolve_release_version() == "2.1"

    def test_staged_version_file(
        self,
        orchestrator: DeploymentOrchestrator,
        stage_update: Callable[..., Path],
    ) -> None:
        """Test the staged VERSION file is used otherwise."""
        stage_update("7")

        assert orchestrator.resolve_release_version() == "7"

    @pytest.mark.asyncio
    async def test_no_version_aborts_before_backup(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        services: FakeServiceController,
    ) -> None:
        """Test a run without any version identifier changes nothing."""
        stage_update("2", with_version_file=False)

        with pytest.raises(ConfigError):
            await orchestrator.run()

        assert services.calls == []
        assert BackupManager(ctx).list_backups() == []
        assert orchestrator.state is DeploymentState.IDLE

    @pytest.mark.asyncio
    async def test_unreadable_version_record_aborts_before_backup(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        services: FakeServiceController,
    ) -> None:
        """Test a version file that cannot be read is a ConfigError."""
        stage_update("2")
        ctx.config.paths.version_file.mkdir(parents=True)

        with pytest.raises(ConfigError) as exc_info:
            await orchestrator.run()

        assert exc_info.value.details["version_file"] == str(ctx.config.paths.version_file)
        assert services.calls == []
        assert BackupManager(ctx).list_backups() == []


# =============================================================================
# Failed run Tests
# =============================================================================


class TestFailedRun:
    """Tests for failure handling and rollback."""

    @pytest.mark.asyncio
    async def test_backup_failure_never_rolls_back(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        services: FakeServiceController,
        database: FakeDatabaseTool,
        transitions: list[str],
    ) -> None:
        """Test a failed backup ends the run before any change."""
        staging = stage_update("2")
        database.fail("dump")
        before = _tree(live_tree)

        with patch.object(RollbackManager, "rollback", new_callable=AsyncMock) as rollback:
            result = await orchestrator.run()

        rollback.assert_not_awaited()
        assert result.outcome is DeploymentOutcome.BACKUP_FAILED
        assert result.exit_code == 1
        assert result.error["error_code"] == "database_dump_failed"
        assert transitions == ["backing_up", "failed"]
        assert services.calls == []
        assert _tree(live_tree) == before
        assert (staging / "back").exists()
        assert BackupManager(ctx).list_backups() == []

    @pytest.mark.asyncio
    async def test_health_failure_rolls_back(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        previous_version: str,
        probe: FakeProbe,
        database: FakeDatabaseTool,
        services: FakeServiceController,
        transitions: list[str],
    ) -> None:
        """Test a backend root answering 200 rolls everything back."""
        stage_update("2")
        probe.statuses[BACKEND_URL] = 200

        result = await orchestrator.run()

        assert result.outcome is DeploymentOutcome.ROLLED_BACK
        assert result.exit_code == 1
        assert result.failed_state == "verifying"
        assert result.error["error_code"] == "unexpected_status"
        assert result.error["details"]["check"] == "backend_health"
        assert [r["name"] for r in result.health_results][-1] == "backend_health"
        assert transitions[-2:] == ["rolling_back", "failed"]

        unit = BackupManager(ctx).latest_backup()
        assert _tree(live_tree) == _tree(unit.filesystem_snapshot)
        assert (live_tree / "back" / "app.py").read_text() == "backend v1\n"
        assert database.content == unit.database_artifact.read_text() == "db v1"
        assert services.running == {"podbox", "nginx"}

    @pytest.mark.asyncio
    async def test_version_record_restored(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        previous_version: str,
        probe: FakeProbe,
    ) -> None:
        """Test the record points at the version that is live again."""
        stage_update("2")
        probe.statuses[BACKEND_URL] = 500

        await orchestrator.run()

        assert ctx.config.paths.version_file.read_text() == "1\n"

    @pytest.mark.asyncio
    async def test_version_record_cleared_when_none_before(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        probe: FakeProbe,
    ) -> None:
        """Test a record created by the failed run is removed again."""
        stage_update("2")
        probe.statuses[BACKEND_URL] = 500

        await orchestrator.run()

        assert not ctx.config.paths.version_file.exists()

    @pytest.mark.asyncio
    async def test_version_record_kept_when_configured(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        previous_version: str,
        probe: FakeProbe,
    ) -> None:
        """Test restore_version_on_rollback=False leaves the failed version recorded."""
        ctx.config.restore_version_on_rollback = False
        stage_update("2")
        probe.statuses[BACKEND_URL] = 500

        await orchestrator.run()

        assert ctx.config.paths.version_file.read_text() == "2\n"

    @pytest.mark.asyncio
    async def test_missing_staged_backend(
        self,
        orchestrator: DeploymentOrchestrator,
        live_tree: Path,
        stage_update: Callable[..., Path],
        previous_version: str,
        services: FakeServiceController,
        transitions: list[str],
        ctx: DeploymentContext,
    ) -> None:
        """Test SOURCE_MISSING rolls back and restarts the services."""
        staging = stage_update("2")
        Filesystem().remove_tree(staging / "back")

        result = await orchestrator.run()

        assert result.exit_code == 1
        assert result.outcome is DeploymentOutcome.ROLLED_BACK
        assert result.error["error_code"] == "source_missing"
        assert result.failed_state == "updating_backend"
        assert "updating_assets" not in transitions
        assert services.calls[-2:] == [("start", "podbox"), ("start", "nginx")]
        assert services.running == {"podbox", "nginx"}
        assert ctx.config.paths.version_file.read_text() == "1\n"

    @pytest.mark.asyncio
    async def test_rollback_failure(
        self,
        orchestrator: DeploymentOrchestrator,
        live_tree: Path,
        stage_update: Callable[..., Path],
        database: FakeDatabaseTool,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test a failed rollback exits with the distinct fatal code."""
        stage_update("2")
        database.fail("restore")
        caplog.set_level(logging.CRITICAL, logger="podbox_deploy")

        result = await orchestrator.run()

        assert result.outcome is DeploymentOutcome.ROLLBACK_FAILED
        assert result.exit_code == 3
        assert result.error["error_code"] == "restore_failed"
        assert result.rollback_error["error_code"] == "database_restore_failed"
        assert orchestrator.state is DeploymentState.FAILED
        assert any("manual intervention required" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_rollback_without_backups(
        self,
        ctx: DeploymentContext,
        deploy_config: DeployConfig,
        live_tree: Path,
        stage_update: Callable[..., Path],
        probe: FakeProbe,
        tmp_path: Path,
    ) -> None:
        """Test NO_BACKUP_AVAILABLE during rollback exits with code 3."""
        empty_config = deploy_config.model_copy(deep=True)
        empty_config.paths.backup_root = tmp_path / "empty"
        empty_ctx = DeploymentContext(
            config=empty_config,
            services=ctx.services,
            database=ctx.database,
            probe=ctx.probe,
        )
        orchestrator = DeploymentOrchestrator(
            ctx,
            rollback_manager=RollbackManager(ctx, BackupManager(empty_ctx)),
        )
        stage_update("2")
        probe.statuses[BACKEND_URL] = 200

        result = await orchestrator.run()

        assert result.exit_code == int(ExitCode.ROLLBACK_FAILED)
        assert result.rollback_error["error_code"] == "no_backup_available"

    @pytest.mark.asyncio
    async def test_unexpected_error_rolls_back(
        self,
        orchestrator: DeploymentOrchestrator,
        live_tree: Path,
        stage_update: Callable[..., Path],
        database: FakeDatabaseTool,
    ) -> None:
        """Test a non-deployment exception after the backup still rolls back."""
        stage_update("2")

        with patch(
            "podbox_deploy.deploy.orchestrator.AssetUpdater.update",
            AsyncMock(side_effect=RuntimeError("disk vanished")),
        ):
            result = await orchestrator.run()

        assert result.outcome is DeploymentOutcome.ROLLED_BACK
        assert result.error == {
            "error_code": "internal",
            "message": "disk vanished",
            "details": {},
        }
        assert (live_tree / "back" / "app.py").read_text() == "backend v1\n"

    @pytest.mark.asyncio
    async def test_unfinished_previous_run_logged(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test a state file left mid-run is reported."""
        state_file = ctx.config.paths.state_file
        state_file.parent.mkdir(parents=True, exist_ok=True)
        state_file.write_text(json.dumps({"state": "updating_database"}))
        stage_update("2")
        caplog.set_level(logging.WARNING, logger="podbox_deploy")

        await orchestrator.run()

        assert any(
            "Previous run stopped in state updating_database" in r.getMessage()
            for r in caplog.records
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content",
        ['{"state": "bogus"}', '["updating_backend"]', "not json"],
    )
    async def test_corrupt_state_file_does_not_abort(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        caplog: pytest.LogCaptureFixture,
        content: str,
    ) -> None:
        """Test an unreadable state file is reported and the run goes ahead."""
        state_file = ctx.config.paths.state_file
        state_file.parent.mkdir(parents=True, exist_ok=True)
        state_file.write_text(content)
        stage_update("2")
        caplog.set_level(logging.WARNING, logger="podbox_deploy")

        result = await orchestrator.run()

        assert result.exit_code == 0
        assert (live_tree / "back" / "app.py").read_text() == "backend v2\n"
        assert any(
            "Failed to read previous deployment state" in r.getMessage()
            for r in caplog.records
        )


# =============================================================================
# Locking Tests
# =============================================================================


class TestLocking:
    """Tests for the single-run guard."""

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        services: FakeServiceController,
    ) -> None:
        """Test a second run fails fast while the lock is held."""
        stage_update("2")

        with DeploymentLock(ctx.config.paths.lock_file):
            with pytest.raises(DeploymentLockedError):
                await orchestrator.run()

        assert services.calls == []
        assert orchestrator.state is DeploymentState.IDLE

    @pytest.mark.asyncio
    async def test_lock_released_after_run(
        self,
        orchestrator: DeploymentOrchestrator,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        probe: FakeProbe,
    ) -> None:
        """Test the lock is free again after a failed run."""
        stage_update("2")
        probe.statuses[BACKEND_URL] = 200

        await orchestrator.run()

        with DeploymentLock(ctx.config.paths.lock_file) as lock:
            assert lock.held


# =============================================================================
# Manual rollback Tests
# =============================================================================


class TestManualRollback:
    """Tests for run_rollback."""

    @pytest.mark.asyncio
    async def test_restores_pre_deploy_state(
        self,
        ctx: DeploymentContext,
        live_tree: Path,
        stage_update: Callable[..., Path],
        database: FakeDatabaseTool,
    ) -> None:
        """Test a manual rollback after a good run restores the prior release."""
        before = _tree(live_tree)
        stage_update("2")
        deployed = await DeploymentOrchestrator(ctx).run()

        result = await DeploymentOrchestrator(ctx).run_rollback()

        assert result.outcome is DeploymentOutcome.SUCCEEDED
        assert result.exit_code == 0
        assert result.backup_timestamp == deployed.backup_timestamp
        assert _tree(live_tree) == before
        assert database.content == "db v1"

    @pytest.mark.asyncio
    async def test_no_backups(
        self,
        ctx: DeploymentContext,
        services: FakeServiceController,
        transitions: list[str],
        orchestrator: DeploymentOrchestrator,
    ) -> None:
        """Test a manual rollback with nothing to restore exits with code 3."""
        result = await orchestrator.run_rollback()

        assert result.outcome is DeploymentOutcome.ROLLBACK_FAILED
        assert result.exit_code == 3
        assert result.rollback_error["error_code"] == "no_backup_available"
        assert transitions == ["rolling_back", "failed"]
        assert services.calls == []
