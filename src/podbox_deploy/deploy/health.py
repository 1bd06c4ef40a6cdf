"""
Health verification after an update.

Checks run in order and stop at the first failure:
1. backend service is active
2. proxy service is active
3. (settling delay)
4. the backend's internal root returns the "no route bound" status (404)
5. the public root returns 200

Any failure is a hard failure: no retries, no partial credit.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from podbox_deploy.errors import (
    CollaboratorError,
    HealthCheckError,
    HealthCheckErrorKind,
)
from podbox_deploy.logging import get_logger

if TYPE_CHECKING:
    from podbox_deploy.context import DeploymentContext

logger = get_logger(__name__)


class HealthCheckResult:
    """Result of a health check."""

    def __init__(
        self,
        name: str,
        passed: bool,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the health check result.

        Args:
            name: Name of the health check.
            passed: Whether the check passed.
            message: Optional message describing the result.
            details: Optional additional details.
        """
        self.name = name
        self.passed = passed
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "details": self.details,
        }


class HealthVerifier:
    """
    Decides whether the freshly deployed system may stay live.

    ``verify`` returns the passing results or raises HealthCheckError naming
    the first failing check.
    """

    def __init__(self, ctx: DeploymentContext) -> None:
        self._ctx = ctx
        self._config = ctx.config.health

    async def check_service_active(self, service: str) -> HealthCheckResult:
        """Check that ``service`` is running."""
        name = f"service_{service}"
        try:
            active = await self._ctx.services.is_active(service)
        except CollaboratorError as e:
            return HealthCheckResult(
                name=name,
                passed=False,
                message=f"Error checking service {service}: {e.message}",
                details={"service": service, "error": e.error_code},
            )

        return HealthCheckResult(
            name=name,
            passed=active,
            message=f"{service}: {'OK' if active else 'FAILED'}",
            details={"service": service, "active": active},
        )

    async def check_http_status(
        self,
        name: str,
        url: str,
        expected_status: int,
    ) -> HealthCheckResult:
        """Check that GET ``url`` answers with ``expected_status``."""
        try:
            status = await self._ctx.probe.get(url)
        except CollaboratorError as e:
            return HealthCheckResult(
                name=name,
                passed=False,
                message=f"{name}: {e.message}",
                details={"url": url, "error": e.error_code},
            )

        return HealthCheckResult(
            name=name,
            passed=status == expected_status,
            message=f"{name}: {status}",
            details={"url": url, "status_code": status, "expected": expected_status},
        )

    async def verify(self) -> list[HealthCheckResult]:
        """
        Run all checks in order, stopping at the first failure.

        Returns:
            The results of all checks (all passed).

        Raises:
            HealthCheckError: Naming the first failing check.
        """
        ctx = self._ctx
        results: list[HealthCheckResult] = []

        logger.info("[tests] checking services are running", extra={"phase": "verify"})
        for service in (ctx.backend_service, ctx.proxy_service):
            result = await self.check_service_active(service)
            self._record(results, result)
            if not result.passed:
                raise HealthCheckError(
                    HealthCheckErrorKind.SERVICE_INACTIVE,
                    result.name,
                    f"Service {service} is not active",
                    details={"results": [r.to_dict() for r in results]},
                )

        if self._config.settle_delay_seconds > 0:
            logger.debug(f"Waiting {self._config.settle_delay_seconds}s for services to settle")
            await asyncio.sleep(self._config.settle_delay_seconds)

        logger.info("[tests] checking HTTP endpoints", extra={"phase": "verify"})
        probes = (
            ("backend_health", self._config.backend_url, self._config.backend_expected_status),
            ("public_root", self._config.public_url, self._config.public_expected_status),
        )
        for name, url, expected in probes:
            result = await self.check_http_status(name, url, expected)
            self._record(results, result)
            if not result.passed:
                kind = (
                    HealthCheckErrorKind.UNEXPECTED_STATUS
                    if "status_code" in result.details
                    else HealthCheckErrorKind.PROBE_FAILED
                )
                raise HealthCheckError(
                    kind,
                    name,
                    f"Health check {name} failed: {result.message}",
                    details={"results": [r.to_dict() for r in results]},
                )

        logger.info("[tests] all checks passed", extra={"phase": "verify"})
        return results

    @staticmethod
    def _record(results: list[HealthCheckResult], result: HealthCheckResult) -> None:
        results.append(result)
        if result.passed:
            logger.info(f"  {result.message}", extra={"check": result.name})
        else:
            logger.error(f"  {result.message}", extra={"check": result.name})
