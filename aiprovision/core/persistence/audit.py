"""
Audit ledger — one NDJSON line per provisioning run.

Real runs (not dry runs) append an entry to
``<workspace>/.state/audit.ndjson``: which profile ran, how many units
succeeded, were skipped or failed, and which ones failed.  ``aiprovision
history`` reads it back.  Lines are only ever appended.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from aiprovision.core.engine.report import RunReport

logger = logging.getLogger(__name__)

STATE_DIR = ".state"
LEDGER_FILE = "audit.ndjson"


class AuditEntry(BaseModel):
    """Summary of one provisioning run."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    profile: str = ""

    status: str = ""               # ok, partial, failed, disabled
    exit_code: int = 0
    units_total: int = 0
    units_succeeded: int = 0
    units_skipped: int = 0
    units_failed: int = 0
    duration_ms: int = 0

    failed_units: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    # transfer backend, selected units, ...
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_report(cls, report: RunReport, duration_ms: int = 0, **context: Any) -> AuditEntry:
        failed = [o for o in report.outcomes if o.failed]
        return cls(
            run_id=report.run_id,
            profile=report.profile,
            status="disabled" if report.disabled else report.status,
            exit_code=report.exit_code,
            units_total=report.total,
            units_succeeded=report.succeeded,
            units_skipped=report.skipped,
            units_failed=len(failed),
            duration_ms=duration_ms,
            failed_units=[o.name for o in failed],
            errors=[f"{o.name}: {o.error}" for o in failed],
            context=context,
        )


class AuditWriter:
    """Append-only access to the run ledger.

    Args:
        path: Explicit ledger file.
        workspace: Workspace whose ``.state/audit.ndjson`` is used
            when no path is given.
    """

    def __init__(self, path: Path | None = None, workspace: Path | None = None):
        if path is None:
            path = (workspace or Path()) / STATE_DIR / LEDGER_FILE
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        """Append ``entry``.  A failed write is logged, never raised."""
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.error("Cannot append to audit ledger %s: %s", self._path, e)
            return
        logger.debug("Audit entry %s appended to %s", entry.run_id, self._path)

    def _lines(self) -> Iterator[tuple[int, str]]:
        if not self._path.is_file():
            return
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for number, line in enumerate(f, start=1):
                    if line.strip():
                        yield number, line
        except OSError as e:
            logger.error("Cannot read audit ledger %s: %s", self._path, e)

    def read_all(self) -> list[AuditEntry]:
        """Every readable entry, oldest first.  Corrupt lines are skipped."""
        entries = []
        for number, line in self._lines():
            try:
                entries.append(AuditEntry.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("Skipping corrupt audit line %d: %s", number, e)
        return entries

    def read_recent(self, n: int = 20) -> list[AuditEntry]:
        if n <= 0:
            return []
        return self.read_all()[-n:]

    def entry_count(self) -> int:
        return sum(1 for _ in self._lines())
