"""
Download orchestrator — fetch a batch of files, skipping what's there.

Per file:

    derive name → already on disk? → Skipped (no network at all)
                → resolve credential → transfer (under retry) → Succeeded / Failed

Independent specs are transferred concurrently through a bounded
thread pool.  The only shared state is the outcome table, which is
written under a lock and returned in spec order.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path

from aiprovision.core.errors import TransferFailure
from aiprovision.core.execution.transfer import Transfer, _fmt_size, verify_checksum
from aiprovision.core.models.download import DownloadSpec
from aiprovision.core.models.outcome import Outcome
from aiprovision.core.models.unit import DownloadUnit, RetryPolicy, TextRewrite
from aiprovision.core.reliability.retry import RetryExecutor
from aiprovision.core.services.credentials import CredentialResolver, TokenProber

logger = logging.getLogger(__name__)


class DownloadOrchestrator:
    """Fetch batches of DownloadSpecs.

    Args:
        resolver: Credential lookup per URL.
        transfer: Backend that moves bytes.
        executor: Retry executor wrapping each transfer.
        policy: Retry policy for every transfer in the batch.
        concurrency: Maximum simultaneous transfers.
    """

    def __init__(
        self,
        resolver: CredentialResolver,
        transfer: Transfer,
        executor: RetryExecutor,
        policy: RetryPolicy | None = None,
        concurrency: int = 4,
    ):
        self.resolver = resolver
        self.transfer = transfer
        self.executor = executor
        self.policy = policy or RetryPolicy()
        self.concurrency = max(concurrency, 1)

    def fetch_all(
        self,
        destination_dir: Path | str,
        specs: Iterable[DownloadSpec],
        unit: str = "downloads",
        policy: RetryPolicy | None = None,
    ) -> list[Outcome]:
        """Fetch every spec not already present.

        Args:
            destination_dir: Directory for specs without their own.
            specs: Files to fetch.
            unit: Prefix for outcome names (``<unit>/<filename>``).
            policy: Overrides the orchestrator's retry policy.

        Returns:
            One Outcome per spec, in the order given.
        """
        destination_dir = Path(destination_dir)
        policy = policy or self.policy
        specs = list(specs)

        outcomes: dict[int, Outcome] = {}
        lock = threading.Lock()

        def record(index: int, outcome: Outcome) -> None:
            with lock:
                outcomes[index] = outcome

        pending: list[tuple[int, DownloadSpec, Path, str]] = []
        seen: set[Path] = set()

        for index, spec in enumerate(specs):
            try:
                name = spec.target_name
            except ValueError as e:
                logger.error("%s", e)
                record(index, Outcome.failure(f"{unit}/{spec.url}", str(e)))
                continue

            target_dir = spec.destination_dir or destination_dir
            target = target_dir / name
            label = f"{unit}/{name}"

            if target in seen:
                logger.info("%s listed twice — skipping duplicate", name)
                record(index, Outcome.skip(label, "duplicate entry in batch"))
                continue
            seen.add(target)

            try:
                target_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error("Cannot create %s: %s", target_dir, e)
                record(index, Outcome.failure(label, f"Cannot create {target_dir}: {e}"))
                continue

            if target.exists():
                logger.info("%s already exists. Skipping.", name)
                record(
                    index,
                    Outcome.skip(label, "already present", metadata={"path": str(target)}),
                )
                continue

            pending.append((index, spec, target, label))

        if pending:
            logger.info(
                "Downloading %d file(s) to %s (%d already present)",
                len(pending),
                destination_dir,
                len(specs) - len(pending),
            )
            workers = min(self.concurrency, len(pending))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [
                    (index, pool.submit(self._fetch_one, spec, target, label, policy))
                    for index, spec, target, label in pending
                ]
                for index, future in futures:
                    record(index, future.result())

        return [outcomes[i] for i in sorted(outcomes)]

    def _fetch_one(
        self,
        spec: DownloadSpec,
        target: Path,
        label: str,
        policy: RetryPolicy,
    ) -> Outcome:
        started_at = datetime.now(UTC).isoformat()
        start = time.monotonic()

        token = self.resolver.resolve(spec.url)
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        logger.info("Downloading %s%s", target.name, " (authenticated)" if token else "")

        def action():
            result = self.transfer.fetch(spec.url, target, headers)
            if spec.sha256 and not verify_checksum(target, spec.sha256):
                target.unlink(missing_ok=True)
                raise TransferFailure(f"Checksum mismatch for {target.name}")
            return result

        outcome_meta = {
            "url": spec.url,
            "path": str(target),
            "authenticated": bool(token),
            "transfer": self.transfer.name,
        }

        try:
            res = self.executor.execute(action, policy, f"download {target.name}", unit=label)
        except Exception as e:
            # Covers errors outside the action itself, e.g. the prompt failing
            logger.exception("Unexpected error downloading %s", target.name)
            return Outcome.failure(label, f"Unexpected error: {e}", metadata=outcome_meta)

        common = {
            "attempts": res.attempts,
            "started_at": started_at,
            "duration_ms": int((time.monotonic() - start) * 1000),
            "metadata": outcome_meta,
        }
        if res.ok:
            size = getattr(res.value, "size_bytes", 0)
            outcome_meta["size_bytes"] = size
            return Outcome.succeeded(label, f"Downloaded {_fmt_size(size)}", **common)

        assert res.failure is not None
        return Outcome.failure(
            label,
            res.failure.error,
            abandoned=res.failure.abandoned,
            **common,
        )


# ── Licensed / fallback selection ───────────────────────────────


def select_specs(
    unit: DownloadUnit,
    prober: TokenProber,
) -> tuple[list[DownloadSpec], list[TextRewrite]]:
    """Specs to fetch for a download unit, plus rewrites to apply.

    Plain specs are always included.  With a variant, the token probe
    decides between the licensed and the fallback set; only the
    fallback set carries rewrites.
    """
    specs = list(unit.specs)
    rewrites: list[TextRewrite] = []

    variant = unit.variant
    if variant is not None:
        if prober.is_valid(variant.probe):
            specs.extend(variant.licensed)
        else:
            specs.extend(variant.fallback)
            rewrites.extend(variant.fallback_rewrites)

    return specs, rewrites


def all_present(destination_dir: Path | str, specs: Iterable[DownloadSpec]) -> bool:
    """True when every spec's target file already exists."""
    for spec in specs:
        try:
            if not spec.target_path(Path(destination_dir)).exists():
                return False
        except ValueError:
            return False
    return True


def apply_rewrites(rewrites: Sequence[TextRewrite]) -> list[str]:
    """Apply text replacements in place.

    Missing files are skipped with a warning (the file may come from a
    unit that failed).  Returns the paths actually changed.
    """
    changed: list[str] = []
    for rw in rewrites:
        if not rw.path.is_file():
            logger.warning("Rewrite target missing: %s", rw.path)
            continue
        text = rw.path.read_text(encoding="utf-8")
        if rw.old not in text:
            continue
        rw.path.write_text(text.replace(rw.old, rw.new), encoding="utf-8")
        logger.info("Rewrote %s: %s → %s", rw.path.name, rw.old, rw.new)
        changed.append(str(rw.path))
    return changed
