"""
Async subprocess helper used for git, tar and the dependency installer.

Every command runs through ``run_command`` so failure handling is uniform:
a missing executable or non-zero exit raises ``CommandError`` carrying the
command line, exit status and captured stderr.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from exceptions import CommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Captured output of a finished subprocess."""

    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""


async def run_command(
    command: Sequence[str],
    cwd: Optional[Union[str, Path]] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run *command* and return its captured output.

    Parameters
    ----------
    command : sequence of str
        Executable followed by its arguments (no shell).
    cwd : str | Path | None
        Working directory for the process.
    timeout : float | None
        Seconds to wait before killing the process.  ``None`` waits forever.

    Raises
    ------
    CommandError
        If the executable is missing, the process times out, or it exits
        with a non-zero status.
    """
    cmd = [str(part) for part in command]
    logger.debug("Running %s (cwd=%s)", " ".join(cmd), cwd)

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise CommandError(
            f"{cmd[0]} is not installed or not found in PATH",
            command=cmd,
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise CommandError(
            f"command timed out after {timeout}s: {' '.join(cmd)}",
            command=cmd,
        )

    result = CommandResult(
        command=cmd,
        returncode=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )

    if result.returncode != 0:
        raise CommandError(
            f"command failed (exit {result.returncode}): "
            f"{' '.join(cmd)}\n{result.stderr.strip()}",
            command=cmd,
            returncode=result.returncode,
            stderr=result.stderr,
        )

    return result
