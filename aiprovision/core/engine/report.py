"""
Run report — accumulate outcomes and decide the exit status.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from aiprovision.core.models.outcome import Outcome


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"run-{now}-{short}"


@dataclass
class RunReport:
    """Outcomes of one provisioning run, in the order they were recorded.

    Outcomes are append-only while the run is in progress and
    read-only once it has finished.
    """

    run_id: str = field(default_factory=generate_run_id)
    profile: str = ""
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    ended_at: str = ""
    dry_run: bool = False
    disabled: bool = False
    outcomes: list[Outcome] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, outcome: Outcome) -> None:
        with self._lock:
            self.outcomes.append(outcome)

    def extend(self, outcomes: list[Outcome]) -> None:
        with self._lock:
            self.outcomes.extend(outcomes)

    def finish(self) -> None:
        self.ended_at = datetime.now(UTC).isoformat()

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "succeeded")

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)

    @property
    def failed_names(self) -> list[str]:
        return [o.name for o in self.outcomes if o.failed]

    @property
    def all_ok(self) -> bool:
        return self.failed == 0

    @property
    def status(self) -> str:
        if self.failed == 0:
            return "ok"
        if self.succeeded + self.skipped > 0:
            return "partial"
        return "failed"

    @property
    def exit_code(self) -> int:
        """1 if any failure the operator did not explicitly abandon, else 0."""
        return 1 if any(o.failed and not o.abandoned for o in self.outcomes) else 0

    def get(self, name: str) -> Outcome | None:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None

    def summary(self) -> str:
        """One-line summary naming every failed unit."""
        line = (
            f"{self.succeeded} succeeded, {self.skipped} skipped, "
            f"{self.failed} failed"
        )
        if self.failed:
            line += f" — failed: {', '.join(self.failed_names)}"
        return line

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "profile": self.profile,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "dry_run": self.dry_run,
            "disabled": self.disabled,
            "status": self.status,
            "exit_code": self.exit_code,
            "total": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_names": self.failed_names,
            "outcomes": [o.model_dump(mode="json") for o in self.outcomes],
        }
