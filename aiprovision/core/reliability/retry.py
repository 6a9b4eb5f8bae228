"""
Retry executor — bounded automatic retries with optional escalation.

Algorithm per action:

    attempt → ok?            → success
            → failed, n < max → wait (exponential backoff) → attempt
            → failed, n = max → interactive and allowed?
                                   yes → ask operator: retry? → counter reset
                                                        no   → abandoned
                                   no  → give up

A failing action never escapes as an exception: the executor returns
a RetryResult carrying a FailureReason with the last error.  Waiting
blocks only the caller's own retry loop.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import click

from aiprovision.core.models.unit import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class FailureReason:
    """Why an action ended up failed."""

    unit: str
    error: str
    attempts: int
    abandoned: bool = False


@dataclass
class RetryResult:
    """Result of running an action through the executor."""

    ok: bool
    attempts: int
    value: Any = None
    failure: FailureReason | None = None


def _confirm_retry(description: str) -> bool:
    """Ask the operator whether to keep going (defaults to no)."""
    try:
        return click.confirm(f"Failed: {description}. Retry?", default=False, err=True)
    except click.Abort:
        # EOF or Ctrl-C at the prompt
        return False


def stdin_is_interactive() -> bool:
    try:
        return sys.stdin.isatty()
    except (AttributeError, ValueError):
        return False


class RetryExecutor:
    """Runs actions under a RetryPolicy.

    Args:
        interactive: Whether an operator is there to answer prompts.
            Defaults to "stdin is a terminal".
        prompt: Called with the action description once the automatic
            attempts are used up; returns True to keep retrying.
        sleep: Wait function (tests pass a no-op).
    """

    def __init__(
        self,
        interactive: bool | None = None,
        prompt: Callable[[str], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._interactive = stdin_is_interactive() if interactive is None else interactive
        self._prompt = prompt or _confirm_retry
        self._sleep = sleep
        # Concurrent downloads may reach the prompt at the same time
        self._prompt_lock = threading.Lock()

    @property
    def interactive(self) -> bool:
        return self._interactive

    def execute(
        self,
        action: Callable[[], Any],
        policy: RetryPolicy,
        description: str,
        unit: str | None = None,
    ) -> RetryResult:
        """Run ``action`` until it succeeds or the policy says stop.

        Args:
            action: Zero-argument callable; raising means failure.
            policy: Attempt bound and escalation settings.
            description: What the action does, for log lines and the prompt.
            unit: Unit name recorded in the FailureReason
                (defaults to ``description``).

        Returns:
            RetryResult — ``attempts`` counts every call of ``action``,
            including those made after an operator-approved reset.
        """
        unit = unit or description
        max_auto = max(policy.max_auto_attempts, 1)
        total = 0
        tries = 0
        last_error = ""

        while True:
            total += 1
            try:
                value = action()
            except Exception as e:
                tries += 1
                last_error = str(e) or e.__class__.__name__
                logger.warning("Attempt #%d failed: %s — %s", total, description, last_error)
            else:
                logger.info("Success: %s", description)
                return RetryResult(ok=True, attempts=total, value=value)

            if tries < max_auto:
                self._sleep(policy.delay_for(tries))
                continue

            if policy.allow_interactive and self._interactive:
                with self._prompt_lock:
                    again = self._prompt(description)
                if again:
                    logger.info("Retrying on operator request: %s", description)
                    tries = 0
                    continue
                logger.error("Giving up: %s (abandoned by operator)", description)
                return RetryResult(
                    ok=False,
                    attempts=total,
                    failure=FailureReason(
                        unit=unit, error=last_error, attempts=total, abandoned=True,
                    ),
                )

            logger.error("Giving up: %s after %d attempts", description, total)
            return RetryResult(
                ok=False,
                attempts=total,
                failure=FailureReason(unit=unit, error=last_error, attempts=total),
            )
