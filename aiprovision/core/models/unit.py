"""
Unit models — the installable things the runner walks over.

Units are built once from the loaded configuration and consumed
exactly once per run.  They are frozen: nothing about a unit changes
while the run is in progress.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from aiprovision.core.models.download import DownloadSpec


@dataclass(frozen=True)
class RetryPolicy:
    """How hard to try before giving up on an action.

    Args:
        max_auto_attempts: Attempts made without asking anybody.
        allow_interactive: Whether the operator may be asked to keep
            retrying once the automatic attempts are used up.  Ignored
            when the run is not interactive.
        delay: Seconds to wait before the first automatic retry.
        backoff: Multiplier applied to the delay after every retry.
        max_delay: Upper bound for a single wait.
    """

    max_auto_attempts: int = 3
    allow_interactive: bool = False
    delay: float = 1.0
    backoff: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Wait before automatic retry number ``attempt`` (1-based)."""
        return min(self.delay * (self.backoff ** max(attempt - 1, 0)), self.max_delay)


@dataclass(frozen=True)
class InstallUnit:
    """One installable component.

    ``presence_check`` must be side-effect free.  ``install_action``
    may touch the filesystem, the network and child processes, and
    signals failure by raising.
    """

    name: str
    presence_check: Callable[[], bool]
    install_action: Callable[[], object]
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    description: str = ""
    requires: tuple[str, ...] = ()


@dataclass(frozen=True)
class TextRewrite:
    """Replace ``old`` with ``new`` in a text file."""

    path: Path
    old: str
    new: str


@dataclass(frozen=True)
class DownloadVariant:
    """Two mutually exclusive download sets gated by a token probe.

    When the probe's token is valid the licensed set is fetched,
    otherwise the fallback set is fetched and ``fallback_rewrites``
    are applied (e.g. pointing a workflow file at the open model).
    """

    probe: str
    licensed: tuple[DownloadSpec, ...] = ()
    fallback: tuple[DownloadSpec, ...] = ()
    fallback_rewrites: tuple[TextRewrite, ...] = ()


@dataclass(frozen=True)
class DownloadUnit:
    """A batch of files fetched by the download orchestrator."""

    name: str
    destination_dir: Path
    specs: tuple[DownloadSpec, ...] = ()
    variant: DownloadVariant | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    description: str = ""
    requires: tuple[str, ...] = ()


Unit = InstallUnit | DownloadUnit
