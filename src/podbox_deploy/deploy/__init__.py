"""
Deployment phases for the podbox deployment orchestrator.

This package implements one deployment run:
- Backup units (filesystem snapshot + database artifact)
- Component updaters for backend, assets, database and content
- Health verification of the updated system
- Whole-system rollback to the latest backup unit
- Deployment record (version file) handling
- The orchestrator state machine sequencing all of the above
"""

from podbox_deploy.deploy.backup import BackupManager, BackupUnit
from podbox_deploy.deploy.health import HealthCheckResult, HealthVerifier
from podbox_deploy.deploy.orchestrator import (
    DeploymentOrchestrator,
    DeploymentOutcome,
    DeploymentResult,
    DeploymentState,
    DeploymentStateData,
    ExitCode,
)
from podbox_deploy.deploy.rollback import RollbackManager
from podbox_deploy.deploy.updaters import (
    AssetUpdater,
    BackendUpdater,
    ComponentUpdater,
    ContentUpdater,
    DatabaseUpdater,
)
from podbox_deploy.deploy.version import VersionRecord

__all__ = [
    # Backups
    "BackupManager",
    "BackupUnit",
    # Updaters
    "ComponentUpdater",
    "BackendUpdater",
    "AssetUpdater",
    "DatabaseUpdater",
    "ContentUpdater",
    # Verification and rollback
    "HealthVerifier",
    "HealthCheckResult",
    "RollbackManager",
    # Deployment record
    "VersionRecord",
    # State machine
    "DeploymentOrchestrator",
    "DeploymentOutcome",
    "DeploymentResult",
    "DeploymentState",
    "DeploymentStateData",
    "ExitCode",
]
