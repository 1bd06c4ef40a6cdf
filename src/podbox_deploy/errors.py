"""
Error types for the podbox deployment orchestrator.

This module defines the DeployError base class and its subclasses. Every
failure inside a deployment phase is expressed as one of these types with a
closed set of named conditions (an Enum "kind"), never a bare string, so the
orchestrator can decide between rollback and termination.

Collaborator failures (systemctl, pg_dump/psql, HTTP probes) are raised as
CollaboratorError and translated by the calling component into its own
taxonomy with ``raise ... from exc``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class DeployError(Exception):
    """
    Base exception class for deployment errors.

    Attributes:
        error_code: Internal error code string (e.g., "source_missing",
            "no_backup_available", "invalid_transition").
        message: Human-readable error message.
        details: Optional structured details (paths, service names, ...).

    Example:
        >>> raise DeployError(
        ...     error_code="invalid_transition",
        ...     message="Cannot go from idle to verifying",
        ...     details={"current_state": "idle"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a DeployError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Phase errors
# =============================================================================


class BackupErrorKind(str, Enum):
    """Conditions under which a backup unit cannot be created."""

    FILESYSTEM_COPY_FAILED = "filesystem_copy_failed"
    DATABASE_DUMP_FAILED = "database_dump_failed"


class BackupError(DeployError):
    """
    Error raised when the Backup Manager cannot create a backup unit.

    A backup failure aborts the deployment before any destructive step.
    """

    def __init__(
        self,
        kind: BackupErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a BackupError."""
        super().__init__(error_code=kind.value, message=message, details=details)
        self.kind = kind


class UpdateErrorKind(str, Enum):
    """Conditions under which a component updater fails."""

    SOURCE_MISSING = "source_missing"
    DESTINATION_BUSY = "destination_busy"
    PERMISSIONS_FAILED = "permissions_failed"
    SERVICE_CONTROL_FAILED = "service_control_failed"
    SCHEMA_RESET_FAILED = "schema_reset_failed"
    RESTORE_FAILED = "restore_failed"
    CONTENT_COPY_FAILED = "content_copy_failed"


class UpdateError(DeployError):
    """
    Error raised when a component updater cannot replace its subsystem.

    Attributes:
        kind: The failing condition.
        component: Name of the updater that failed (e.g., "backend").
    """

    def __init__(
        self,
        kind: UpdateErrorKind,
        component: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize an UpdateError."""
        details = {"component": component, **(details or {})}
        super().__init__(error_code=kind.value, message=message, details=details)
        self.kind = kind
        self.component = component


class HealthCheckErrorKind(str, Enum):
    """Conditions under which post-deploy verification fails."""

    SERVICE_INACTIVE = "service_inactive"
    UNEXPECTED_STATUS = "unexpected_status"
    PROBE_FAILED = "probe_failed"


class HealthCheckError(DeployError):
    """
    Error raised when a health check fails after an update.

    Attributes:
        kind: The failing condition.
        check: Name of the failing check (e.g., "backend_health").
    """

    def __init__(
        self,
        kind: HealthCheckErrorKind,
        check: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a HealthCheckError."""
        details = {"check": check, **(details or {})}
        super().__init__(error_code=kind.value, message=message, details=details)
        self.kind = kind
        self.check = check


class RollbackErrorKind(str, Enum):
    """Conditions under which a rollback cannot complete."""

    NO_BACKUP_AVAILABLE = "no_backup_available"
    NO_ARTIFACT_AVAILABLE = "no_artifact_available"
    FILESYSTEM_RESTORE_FAILED = "filesystem_restore_failed"
    DATABASE_RESTORE_FAILED = "database_restore_failed"
    SERVICE_CONTROL_FAILED = "service_control_failed"


class RollbackError(DeployError):
    """
    Error raised when a rollback fails.

    This is fatal: no further recovery is attempted and the operator has to
    intervene manually.
    """

    def __init__(
        self,
        kind: RollbackErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a RollbackError."""
        super().__init__(error_code=kind.value, message=message, details=details)
        self.kind = kind


# =============================================================================
# Collaborator and infrastructure errors
# =============================================================================


class CollaboratorError(DeployError):
    """
    Error raised by an external collaborator (systemctl, pg_dump, psql, HTTP).

    This error maps to the "collaborator_failed" error code. Components catch
    it and re-raise their own phase error.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a CollaboratorError."""
        super().__init__(
            error_code="collaborator_failed", message=message, details=details
        )


class CollaboratorTimeoutError(CollaboratorError):
    """Error raised when a collaborator call exceeds its time bound."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a CollaboratorTimeoutError."""
        super().__init__(message=message, details=details)
        self.error_code = "timeout"


class ConfigError(DeployError):
    """Error raised when the configuration cannot be loaded or is invalid."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ConfigError."""
        super().__init__(error_code="invalid_config", message=message, details=details)


class DeploymentLockedError(DeployError):
    """Error raised when another deployment run holds the lock."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DeploymentLockedError."""
        super().__init__(
            error_code="deployment_in_progress", message=message, details=details
        )


class InvalidTransitionError(DeployError):
    """Error raised when the orchestrator is asked for an illegal transition."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidTransitionError."""
        super().__init__(
            error_code="invalid_transition", message=message, details=details
        )
