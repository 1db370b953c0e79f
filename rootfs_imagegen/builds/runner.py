"""Structured invocation of external tools.

This module handles:
- Running bootstrap, filesystem and archive commands with subprocess
- Capturing exit code and output into a ToolResult
- Mapping failures to ToolInvocationError

Commands block until completion; there is no timeout.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from rootfs_imagegen.errors import ToolInvocationError

logger = logging.getLogger(__name__)

Command = Sequence[str | Path]


@dataclass
class ToolResult:
    """Result of an external command.

    Attributes:
        command: The command that was executed (shell-quoted).
        exit_code: Process exit code.
        stdout: Captured standard output ("" when not captured).
        stderr: Captured standard error ("" when not captured).
        started_at: Start time.
        finished_at: Finish time.
    """

    command: str
    exit_code: int
    stdout: str
    stderr: str
    started_at: datetime
    finished_at: datetime

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def format_command(cmd: Command) -> str:
    """Render a command for logs and error messages."""
    return shlex.join(str(part) for part in cmd)


def run_tool(
    cmd: Command,
    cwd: Path | None = None,
    env_override: Mapping[str, str] | None = None,
    capture: bool = False,
) -> ToolResult:
    """Run an external command.

    A nonzero exit is reported in the result, not raised.

    Args:
        cmd: Command and arguments.
        cwd: Working directory.
        env_override: Variables added to the inherited environment.
        capture: Capture stdout/stderr instead of streaming them.

    Returns:
        ToolResult with execution details.

    Raises:
        ToolInvocationError: If the command cannot be started.
    """
    argv = [str(part) for part in cmd]
    cmd_str = format_command(argv)
    logger.info("Running: %s", cmd_str)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    started_at = datetime.now(timezone.utc)
    try:
        result = subprocess.run(
            argv,
            cwd=cwd,
            env=env,
            capture_output=capture,
            text=True,
            check=False,
        )
    except OSError as e:
        raise ToolInvocationError(
            f"Failed to execute {argv[0]}: {e}",
            command=cmd_str,
            code="execution_error",
        ) from e
    finished_at = datetime.now(timezone.utc)

    if result.returncode != 0:
        logger.debug("Command exited %d: %s", result.returncode, cmd_str)

    return ToolResult(
        command=cmd_str,
        exit_code=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        started_at=started_at,
        finished_at=finished_at,
    )


def check_tool(
    cmd: Command,
    cwd: Path | None = None,
    env_override: Mapping[str, str] | None = None,
    capture: bool = False,
) -> ToolResult:
    """Run an external command and require it to succeed.

    Raises:
        ToolInvocationError: If the command exits nonzero or cannot start.
    """
    result = run_tool(cmd, cwd=cwd, env_override=env_override, capture=capture)
    if not result.success:
        message = f"Command failed with exit code {result.exit_code}: {result.command}"
        if result.stderr:
            message = f"{message}\n{result.stderr.strip()}"
        logger.error("%s", message)
        raise ToolInvocationError(
            message,
            command=result.command,
            exit_code=result.exit_code,
            stderr=result.stderr,
        )
    return result


__all__ = [
    "ToolResult",
    "check_tool",
    "format_command",
    "run_tool",
]
