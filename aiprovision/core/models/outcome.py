"""
Outcome model — the per-unit result contract.

Every unit and every download spec ends a run with exactly one
Outcome.  The runner, the retry executor and the download
orchestrator NEVER raise for a failed unit — the failure is captured
here and accumulated in the run report.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

OutcomeStatus = Literal["skipped", "succeeded", "failed"]


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Outcome(BaseModel):
    """Terminal status of one unit or one download spec.

    ``abandoned`` marks a failure the operator chose to give up on at
    the interactive retry prompt.  Such failures are reported but do
    not, on their own, make the run exit non-zero.
    """

    name: str
    status: OutcomeStatus = "succeeded"
    attempts: int = 0

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    message: str = ""
    error: str | None = None
    abandoned: bool = False

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the unit ended in a non-failed state."""
        return self.status != "failed"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    @classmethod
    def succeeded(
        cls,
        name: str,
        message: str = "",
        **kwargs: Any,
    ) -> Outcome:
        """Create a success outcome."""
        return cls(name=name, status="succeeded", message=message, **kwargs)

    @classmethod
    def failure(
        cls,
        name: str,
        error: str,
        **kwargs: Any,
    ) -> Outcome:
        """Create a failure outcome."""
        return cls(name=name, status="failed", error=error, **kwargs)

    @classmethod
    def skip(
        cls,
        name: str,
        reason: str = "",
        **kwargs: Any,
    ) -> Outcome:
        """Create a skip outcome."""
        return cls(name=name, status="skipped", message=reason, **kwargs)
