"""
External command runner.

All tool adapters (backup engine, ZFS, rsync, systemctl) run their binaries
through run_command() so failures surface the same way: a CommandError that
carries the exit code and stderr of the failed invocation.
"""

import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from lib.logger import get_logger

# Flags whose following argument must never reach the logs
SECRET_FLAGS = ("--password", "--secret-access-key", "--access-key")


class CommandError(Exception):
    """
    Raised when an external command cannot be started or exits non-zero.

    Attributes:
        args_list: Command line that was run (secrets masked)
        returncode: Exit code, or None if the binary could not be started
        stderr: Captured standard error
    """

    def __init__(
        self,
        message: str,
        args_list: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.args_list = args_list or []
        self.returncode = returncode
        self.stderr = stderr


@dataclass
class CommandResult:
    """Output of a successful command."""

    args: List[str]
    stdout: str
    stderr: str
    returncode: int = 0


def mask_secrets(args: Sequence[str]) -> List[str]:
    """
    Return a copy of args with the values of secret flags replaced.

    Example:
        >>> mask_secrets(["kopia", "--password", "hunter2"])
        ['kopia', '--password', '***']
    """
    masked: List[str] = []
    hide_next = False
    for arg in args:
        if hide_next:
            masked.append("***")
            hide_next = False
            continue
        flag, sep, _ = arg.partition("=")
        if flag in SECRET_FLAGS:
            if sep:
                masked.append(f"{flag}=***")
            else:
                masked.append(arg)
                hide_next = True
            continue
        masked.append(arg)
    return masked


def run_command(
    args: Sequence[str],
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> CommandResult:
    """
    Run an external command and wait for it to finish.

    Args:
        args: Command and arguments
        env: Extra environment variables merged over the current environment
        cwd: Working directory

    Returns:
        CommandResult with captured stdout/stderr

    Raises:
        CommandError: If the binary is missing or exits with a non-zero code
    """
    logger = get_logger()
    args_list = [str(a) for a in args]
    display = mask_secrets(args_list)

    child_env = None
    if env:
        child_env = os.environ.copy()
        child_env.update(env)

    logger.debug(f"Running command: {' '.join(display)}")

    try:
        result = subprocess.run(
            args_list,
            capture_output=True,
            text=True,
            check=False,
            env=child_env,
            cwd=cwd,
        )
    except FileNotFoundError as e:
        raise CommandError(
            f"Command not found: {args_list[0]}", args_list=display
        ) from e
    except (OSError, subprocess.SubprocessError) as e:
        raise CommandError(
            f"Failed to run {args_list[0]}: {e}", args_list=display
        ) from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        detail = stderr or (result.stdout or "").strip() or "no output"
        raise CommandError(
            f"{args_list[0]} exited with code {result.returncode}: {detail}",
            args_list=display,
            returncode=result.returncode,
            stderr=stderr,
        )

    return CommandResult(
        args=display,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        returncode=result.returncode,
    )
