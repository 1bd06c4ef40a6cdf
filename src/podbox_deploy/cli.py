"""
Command-line entry point for the podbox deployment orchestrator.

Usage:
    podbox-deploy [--config PATH] [--log-level LEVEL] [--debug]
                  [--release-version V] [--rollback]

The exit status reflects the outcome (see ExitCode): 0 on success, 1 when
the run failed (rolled back, or aborted before any change), 3 when the
rollback failed as well, 4 when another run holds the lock and 5 on a
configuration error (including an unusable lock or version file).
"""

from __future__ import annotations

import asyncio
import sys

from podbox_deploy.config import build_arg_parser, load_config
from podbox_deploy.context import DeploymentContext
from podbox_deploy.deploy.orchestrator import DeploymentOrchestrator, ExitCode
from podbox_deploy.errors import ConfigError, DeploymentLockedError
from podbox_deploy.logging import get_logger, setup_logging

logger = get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    """
    Run a deployment (or a manual rollback) and return the exit status.

    Args:
        argv: Command-line arguments without the program name. Defaults to
            ``sys.argv[1:]``.

    Returns:
        Process exit status.
    """
    if argv is None:
        argv = sys.argv[1:]

    args = build_arg_parser().parse_args(argv)

    # Until the configuration is known, errors still need to reach the operator
    setup_logging(level="INFO", json_format=False)

    try:
        config = load_config(cli_args=argv)
    except ConfigError as e:
        logger.error(f"Configuration error: {e.message}", extra={"details": e.details})
        return int(ExitCode.CONFIG_ERROR)

    setup_logging(config.logging)

    ctx = DeploymentContext.from_config(config)
    orchestrator = DeploymentOrchestrator(ctx)

    try:
        if args.rollback:
            result = asyncio.run(orchestrator.run_rollback())
        else:
            result = asyncio.run(orchestrator.run())
    except DeploymentLockedError as e:
        logger.error(e.message, extra={"details": e.details})
        return int(ExitCode.LOCKED)
    except ConfigError as e:
        logger.error(f"Configuration error: {e.message}", extra={"details": e.details})
        return int(ExitCode.CONFIG_ERROR)

    logger.info(
        f"Finished: {result.status_line}",
        extra={"outcome": result.outcome.value, "exit_code": result.exit_code},
    )
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
