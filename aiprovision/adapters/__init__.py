"""Adapters — bindings to the external tools install actions drive.

Public re-exports for convenient access.
"""

from aiprovision.adapters.shell.command import CommandResult, check_command, run_command

__all__ = [
    "CommandResult",
    "check_command",
    "run_command",
]
