"""
Error taxonomy for install actions.

Only action-level failures are exceptions.  Everything else in the
taxonomy is a plain return value:

    presence check failed   → gate reports "absent"
    no credential for URL   → resolver returns None
    token rejected          → probe returns False

Action failures are raised inside install actions and transfers, and
caught by the retry executor at the unit boundary.  They never reach
the top of the process.
"""

from __future__ import annotations


class ActionFailure(Exception):
    """A unit's install step failed.

    Args:
        message: Human-readable reason.
        command: The command line that failed, if any.
        exit_code: Process exit code, if any.
        stderr: Tail of the process stderr, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        exit_code: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        if self.stderr:
            last = self.stderr.strip().splitlines()[-1:] or [""]
            return f"{base}: {last[0]}"
        return base


class TransferFailure(ActionFailure):
    """A file transfer failed (HTTP error, size or checksum mismatch)."""
