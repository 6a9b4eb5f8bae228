"""
Shell command adapter — the SINGLE PLACE where child processes run.

Install actions (package managers, git, npm, language bootstrappers)
and presence probes all go through ``run_command``.  The contract with
those external tools is deliberately thin: invoke, observe the exit
status, keep a tail of the output for error messages.  Structured
output is never parsed here.

``run_command`` never raises.  Failures come back as a CommandResult
with ``ok=False``; callers that need an exception use ``check_command``.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass

from aiprovision.core.errors import ActionFailure

logger = logging.getLogger(__name__)

_TAIL = 2000

_VERSION_RE = re.compile(r"(\d+(?:\.\d+)*)")


@dataclass
class CommandResult:
    """Outcome of a single child process."""

    command: str
    ok: bool
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str = ""
    elapsed_ms: int = 0


def format_command(cmd: str | list[str]) -> str:
    """Printable form of a command (string or argv list)."""
    if isinstance(cmd, str):
        return cmd
    return " ".join(cmd)


def run_command(
    cmd: str | list[str],
    *,
    cwd: str | os.PathLike[str] | None = None,
    env_overrides: dict[str, str] | None = None,
    timeout: int = 3600,
) -> CommandResult:
    """Run a command and capture its output.

    A string runs through ``/bin/sh`` (pipes such as
    ``curl -fsSL https://pyenv.run | bash`` need it); a list runs
    directly.

    Args:
        cmd: Command string or argv list.
        cwd: Working directory for the command.
        env_overrides: Extra env vars, ``$VAR`` references expanded
            against the current environment.
        timeout: Seconds before the process is killed.

    Returns:
        CommandResult — ``ok`` is True only for exit code 0.
    """
    printable = format_command(cmd)

    env = os.environ.copy()
    if env_overrides:
        for key, value in env_overrides.items():
            env[key] = os.path.expandvars(value)

    logger.debug("Executing: %s (cwd=%s)", printable, cwd)
    start = time.monotonic()
    try:
        result = subprocess.run(
            cmd,
            shell=isinstance(cmd, str),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            command=printable,
            ok=False,
            error=f"Command timed out ({timeout}s)",
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )
    except OSError as e:
        # Missing executable, bad cwd, permission denied
        return CommandResult(command=printable, ok=False, error=str(e))

    elapsed_ms = int((time.monotonic() - start) * 1000)
    stdout = result.stdout[-_TAIL:] if result.stdout else ""
    stderr = result.stderr[-_TAIL:] if result.stderr else ""

    if result.returncode == 0:
        return CommandResult(
            command=printable,
            ok=True,
            exit_code=0,
            stdout=stdout,
            stderr=stderr,
            elapsed_ms=elapsed_ms,
        )

    return CommandResult(
        command=printable,
        ok=False,
        exit_code=result.returncode,
        stdout=stdout,
        stderr=stderr,
        error=f"Command failed (exit {result.returncode})",
        elapsed_ms=elapsed_ms,
    )


def check_command(
    cmd: str | list[str],
    *,
    cwd: str | os.PathLike[str] | None = None,
    env_overrides: dict[str, str] | None = None,
    timeout: int = 3600,
) -> CommandResult:
    """Like ``run_command`` but raise ActionFailure on a non-zero exit."""
    result = run_command(cmd, cwd=cwd, env_overrides=env_overrides, timeout=timeout)
    if not result.ok:
        raise ActionFailure(
            f"{result.error}: {result.command}",
            command=result.command,
            exit_code=result.exit_code,
            stderr=result.stderr,
        )
    logger.debug("✓ %s (%dms)", result.command, result.elapsed_ms)
    return result


def which(name: str, env_overrides: dict[str, str] | None = None) -> str | None:
    """Locate an executable, honouring a PATH override if one is given."""
    path = None
    if env_overrides and "PATH" in env_overrides:
        path = os.path.expandvars(env_overrides["PATH"])
    return shutil.which(name, path=path)


def parse_version(text: str) -> tuple[int, ...] | None:
    """First dotted number in ``text``: ``"v22.3.0"`` → ``(22, 3, 0)``."""
    match = _VERSION_RE.search(text or "")
    if match is None:
        return None
    return tuple(int(part) for part in match.group(1).split("."))


def version_at_least(found: tuple[int, ...], minimum: tuple[int, ...]) -> bool:
    """Compare versions, padding the shorter one with zeros."""
    width = max(len(found), len(minimum))
    return found + (0,) * (width - len(found)) >= minimum + (0,) * (width - len(minimum))
