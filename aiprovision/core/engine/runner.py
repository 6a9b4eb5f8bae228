"""
Provisioning runner — walk the registry and produce a RunReport.

Per unit, in declaration order:

    InstallUnit:   gate → present → Skipped
                        → absent  → requires on PATH? → no → Failed
                                  → retry executor → Succeeded / Failed
    DownloadUnit:  variant selection → all files present → Skipped per file
                   → requires on PATH? → no → Failed
                   → orchestrator → one outcome per file → fallback rewrites

``requires`` only matters when an action is about to run, so a present
unit is skipped even if its tools are gone.

Units run sequentially; a unit's failure is recorded and the run moves
on.  Nothing raised by a unit's action escapes ``run``.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from pathlib import Path

from aiprovision.adapters.shell.command import which
from aiprovision.core.engine.gate import should_install
from aiprovision.core.engine.registry import UnitRegistry
from aiprovision.core.engine.report import RunReport
from aiprovision.core.models.outcome import Outcome
from aiprovision.core.models.unit import DownloadUnit, InstallUnit, Unit
from aiprovision.core.reliability.retry import RetryExecutor
from aiprovision.core.services.credentials import TokenProber
from aiprovision.core.services.downloads import (
    DownloadOrchestrator,
    all_present,
    apply_rewrites,
    select_specs,
)

logger = logging.getLogger(__name__)

_MARKERS = {"succeeded": "✓", "failed": "✗", "skipped": "⊘"}


class ProvisioningRunner:
    """Drives a provisioning run.

    Args:
        executor: Retry executor for install actions.
        orchestrator: Download orchestrator for download units.
        prober: Token prober for licensed/fallback selection.
        dry_run: Evaluate presence checks only; run nothing.
        skip_marker: Path whose existence disables the whole run.
        env_overrides: Environment used when looking up ``requires``.
    """

    def __init__(
        self,
        executor: RetryExecutor,
        orchestrator: DownloadOrchestrator | None = None,
        prober: TokenProber | None = None,
        dry_run: bool = False,
        skip_marker: str | Path | None = None,
        env_overrides: dict[str, str] | None = None,
    ):
        self.executor = executor
        self.orchestrator = orchestrator
        self.prober = prober
        self.dry_run = dry_run
        self.skip_marker = Path(skip_marker) if skip_marker else None
        self.env_overrides = env_overrides or {}

    def run(self, registry: UnitRegistry, profile: str = "") -> RunReport:
        report = RunReport(profile=profile, dry_run=self.dry_run)

        if self.skip_marker is not None and self.skip_marker.exists():
            logger.info("Provisioning disabled: %s exists", self.skip_marker)
            report.disabled = True
            report.finish()
            return report

        logger.info(
            "Provisioning %d unit(s)%s", len(registry), " (dry run)" if self.dry_run else ""
        )

        for unit in registry:
            for outcome in self._run_unit(unit):
                report.record(outcome)
                self._log_outcome(outcome)

        report.finish()
        logger.info("Provisioning complete: %s", report.summary())
        return report

    # ── Per unit ────────────────────────────────────────────────

    def _run_unit(self, unit: Unit) -> list[Outcome]:
        if isinstance(unit, DownloadUnit):
            return self._run_downloads(unit)
        return [self._run_install(unit)]

    def _missing_prerequisites(self, unit: Unit) -> Outcome | None:
        missing = [tool for tool in unit.requires if which(tool, self.env_overrides) is None]
        if not missing:
            return None
        logger.error("%s: missing prerequisite(s): %s", unit.name, ", ".join(missing))
        return Outcome.failure(
            unit.name,
            f"Missing prerequisite(s): {', '.join(missing)}",
            metadata={"missing": missing},
        )

    def _run_install(self, unit: InstallUnit) -> Outcome:
        if not should_install(unit):
            logger.info("%s already present. Skipping.", unit.name)
            return Outcome.skip(unit.name, "already present")

        if self.dry_run:
            return Outcome.skip(unit.name, "would install")

        missing = self._missing_prerequisites(unit)
        if missing is not None:
            return missing

        started_at = datetime.now(UTC).isoformat()
        start = time.monotonic()
        logger.info("Installing %s%s", unit.name, f": {unit.description}" if unit.description else "")

        try:
            res = self.executor.execute(
                unit.install_action, unit.retry_policy, f"install {unit.name}", unit=unit.name,
            )
        except Exception as e:
            logger.exception("Unexpected error installing %s", unit.name)
            return Outcome.failure(unit.name, f"Unexpected error: {e}", started_at=started_at)

        common = {
            "attempts": res.attempts,
            "started_at": started_at,
            "duration_ms": int((time.monotonic() - start) * 1000),
        }
        if res.ok:
            return Outcome.succeeded(unit.name, "installed", **common)

        assert res.failure is not None
        return Outcome.failure(
            unit.name, res.failure.error, abandoned=res.failure.abandoned, **common,
        )

    def _run_downloads(self, unit: DownloadUnit) -> list[Outcome]:
        if self.dry_run:
            count = len(unit.specs)
            if unit.variant is not None:
                count += max(len(unit.variant.licensed), len(unit.variant.fallback))
            return [Outcome.skip(unit.name, f"would download up to {count} file(s)")]

        if self.orchestrator is None or (unit.variant is not None and self.prober is None):
            return [Outcome.failure(unit.name, "No download orchestrator configured")]

        try:
            specs, rewrites = select_specs(unit, self.prober)
        except KeyError as e:
            return [Outcome.failure(unit.name, f"Unknown token probe: {e}")]

        if not specs:
            return [Outcome.skip(unit.name, "nothing to download")]

        if unit.requires and not all_present(unit.destination_dir, specs):
            missing = self._missing_prerequisites(unit)
            if missing is not None:
                return [missing]

        outcomes = self.orchestrator.fetch_all(
            unit.destination_dir, specs, unit=unit.name, policy=unit.retry_policy,
        )

        if rewrites:
            try:
                apply_rewrites(rewrites)
            except (OSError, UnicodeDecodeError) as e:
                logger.error("%s: rewrite failed: %s", unit.name, e)
                outcomes.append(Outcome.failure(f"{unit.name}/rewrite", str(e)))

        return outcomes

    @staticmethod
    def _log_outcome(outcome: Outcome) -> None:
        marker = _MARKERS.get(outcome.status, "?")
        detail = outcome.error if outcome.failed else outcome.message
        logger.info("%s %s → %s%s", marker, outcome.name, outcome.status, f" ({detail})" if detail else "")
