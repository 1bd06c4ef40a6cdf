"""
Shared subprocess helper for the command-line collaborators.

systemctl, pg_dump and psql are all run through run_command so that every
external process wait has the same time bound and error mapping.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping

from podbox_deploy.errors import CollaboratorError, CollaboratorTimeoutError


async def run_command(
    program: str,
    *args: str,
    timeout: float,
    env: Mapping[str, str] | None = None,
) -> tuple[int, str, str]:
    """
    Run an external command and wait for it to finish.

    Args:
        program: Executable name or path.
        *args: Arguments to pass to the program.
        timeout: Maximum time to wait in seconds.
        env: Full environment for the child process (None inherits ours).

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        CollaboratorError: If the program is not installed.
        CollaboratorTimeoutError: If the command does not finish in time.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            program,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as exc:
        raise CollaboratorError(
            f"{program} not available",
            details={"program": program},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise CollaboratorTimeoutError(
            f"{program} timed out after {timeout}s",
            details={"program": program, "args": list(args), "timeout_seconds": timeout},
        ) from exc

    return (
        proc.returncode or 0,
        stdout.decode(errors="replace") if stdout else "",
        stderr.decode(errors="replace") if stderr else "",
    )
