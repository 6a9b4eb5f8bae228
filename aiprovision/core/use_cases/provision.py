"""
Provision use cases — the vertical slices behind the CLI commands.

``run_provisioning`` goes from "which config?" to an audited RunReport:
load config, apply env overrides, build the unit registry, wire the
retry executor, transfer backend and download orchestrator, run, and
append the result to the audit ledger.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from aiprovision.core.config.loader import (
    ConfigError,
    apply_env_overrides,
    find_config_file,
    load_config,
    load_profile,
)
from aiprovision.core.engine.gate import should_install
from aiprovision.core.engine.registry import RegistryError
from aiprovision.core.engine.report import RunReport
from aiprovision.core.engine.runner import ProvisioningRunner
from aiprovision.core.execution.transfer import Transfer, select_transfer
from aiprovision.core.models.config import ProvisionConfig
from aiprovision.core.models.download import CredentialRule, DownloadSpec
from aiprovision.core.models.outcome import Outcome
from aiprovision.core.models.unit import DownloadUnit
from aiprovision.core.persistence.audit import AuditEntry, AuditWriter
from aiprovision.core.reliability.retry import RetryExecutor
from aiprovision.core.services.credentials import CredentialResolver, TokenProber
from aiprovision.core.services.downloads import DownloadOrchestrator
from aiprovision.core.services.units import Placeholders, build_registry, unit_environment

logger = logging.getLogger(__name__)

# Used by ad-hoc downloads when no config is available
DEFAULT_CREDENTIALS = [
    CredentialRule(host="huggingface.co", secret_env_var="HF_TOKEN"),
    CredentialRule(host="civitai.com", secret_env_var="CIVITAI_TOKEN"),
]

# Relative to the workspace (or home without a config)
EXTRA_MODELS_DIR = Path("PresetModels", "extra_models")


@dataclass
class ProvisionResult:
    """Result of a provisioning run."""

    report: RunReport | None = None
    config: ProvisionConfig | None = None
    workspace: Path | None = None
    audit_path: Path | None = None
    error: str | None = None

    @property
    def exit_code(self) -> int:
        if self.error:
            return 2
        return self.report.exit_code if self.report else 0

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            return result

        result["profile"] = self.config.name if self.config else ""
        result["workspace"] = str(self.workspace)
        if self.audit_path:
            result["audit_path"] = str(self.audit_path)
        if self.report:
            result["report"] = self.report.to_dict()
        return result


@dataclass
class UnitInfo:
    """One line of the ``units`` listing."""

    name: str
    kind: str
    description: str = ""
    present: bool | None = None
    files: int = 0
    requires: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind,
            "description": self.description,
            "present": self.present,
            "files": self.files,
            "requires": self.requires,
        }


def resolve_config(
    config_path: Path | None = None,
    profile: str | None = None,
    workspace: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> ProvisionConfig:
    """Load config from a file or a bundled profile, with overrides.

    Raises:
        ConfigError: If nothing can be loaded or it is invalid.
    """
    if config_path is not None and profile:
        raise ConfigError("Use either --config or --profile, not both.")

    if profile:
        config = load_profile(profile)
    else:
        config = load_config(config_path)

    return apply_env_overrides(config, environ=environ, workspace=workspace)


def run_provisioning(
    config_path: Path | None = None,
    profile: str | None = None,
    workspace: str | None = None,
    units: list[str] | None = None,
    exclude: list[str] | None = None,
    concurrency: int | None = None,
    interactive: bool | None = None,
    dry_run: bool = False,
    audit: bool = True,
    environ: Mapping[str, str] | None = None,
    executor: RetryExecutor | None = None,
    transfer: Transfer | None = None,
    home: str | None = None,
) -> ProvisionResult:
    """Provision everything the config declares.

    Args:
        config_path: Explicit provision.yml (default: search upward).
        profile: Bundled profile name instead of a file.
        workspace: Workspace override (beats ``$WORKSPACE``).
        units: Only these units.
        exclude: Skip these units.
        concurrency: Download workers (default: config value).
        interactive: Whether failed actions may prompt the operator.
        dry_run: Evaluate presence checks only.
        audit: Append the result to the audit ledger.
        environ: Environment snapshot (default: ``os.environ``).
        executor: Pre-built retry executor (tests).
        transfer: Pre-built transfer backend (tests).
        home: Home directory for ``{home}`` (tests).

    Returns:
        ProvisionResult — ``error`` set for configuration problems only.
    """
    result = ProvisionResult()
    environ = dict(os.environ if environ is None else environ)

    # ── Load config ──────────────────────────────────────────────
    try:
        config = resolve_config(config_path, profile, workspace, environ)
    except ConfigError as e:
        result.error = str(e)
        return result
    result.config = config

    ph = Placeholders.for_config(config, home=home)
    result.workspace = Path(ph.values["workspace"])

    # ── Wire services ────────────────────────────────────────────
    resolver = CredentialResolver(config.credentials, environ)
    transfer = transfer or select_transfer(config.transfer, config.segments)
    executor = executor or RetryExecutor(interactive=interactive)

    try:
        registry = build_registry(config, transfer, resolver, home=home)
        registry = registry.select(units, exclude)
    except (ConfigError, RegistryError) as e:
        result.error = str(e)
        return result

    orchestrator = DownloadOrchestrator(
        resolver,
        transfer,
        executor,
        policy=config.retry.to_policy(),
        concurrency=concurrency or config.concurrency,
    )
    prober = TokenProber(config.token_probes, resolver)

    runner = ProvisioningRunner(
        executor,
        orchestrator,
        prober,
        dry_run=dry_run,
        skip_marker=ph.expand(config.skip_marker) if config.skip_marker else None,
        env_overrides=unit_environment(config, home=home),
    )

    # ── Run ──────────────────────────────────────────────────────
    start = time.monotonic()
    report = runner.run(registry, profile=config.name)
    result.report = report

    # ── Write audit log ──────────────────────────────────────────
    if audit and not dry_run:
        writer = AuditWriter(workspace=result.workspace)
        writer.write(
            AuditEntry.from_report(
                report,
                duration_ms=int((time.monotonic() - start) * 1000),
                transfer=transfer.name,
                selected=registry.names(),
            )
        )
        result.audit_path = writer.path

    return result


def list_units(
    config: ProvisionConfig,
    environ: Mapping[str, str] | None = None,
    home: str | None = None,
) -> list[UnitInfo]:
    """Describe every unit and whether it is already present.

    Download units report their file count; their presence is decided
    per file at run time.
    """
    resolver = CredentialResolver(config.credentials, environ)
    transfer = select_transfer(config.transfer, config.segments)
    registry = build_registry(config, transfer, resolver, home=home)

    infos = []
    for spec, unit in zip(config.units, registry):
        info = UnitInfo(
            name=unit.name,
            kind=spec.kind,
            description=unit.description,
            requires=list(unit.requires),
        )
        if isinstance(unit, DownloadUnit):
            info.files = len(unit.specs)
            if unit.variant is not None:
                info.files += max(len(unit.variant.licensed), len(unit.variant.fallback))
        else:
            info.present = not should_install(unit)
        infos.append(info)
    return infos


def fetch_urls(
    urls: list[str],
    destination_dir: Path,
    config: ProvisionConfig | None = None,
    concurrency: int = 4,
    interactive: bool | None = None,
    environ: Mapping[str, str] | None = None,
    executor: RetryExecutor | None = None,
    transfer: Transfer | None = None,
) -> list[Outcome]:
    """Download an ad-hoc list of URLs into one directory.

    Credentials come from ``config`` when given, else the default
    Hugging Face / Civitai rules.

    Raises:
        ValueError: If a URL is not an absolute http(s) URL.
    """
    rules = config.credentials if config is not None else DEFAULT_CREDENTIALS
    resolver = CredentialResolver(rules, environ)
    if transfer is None:
        transfer = (
            select_transfer(config.transfer, config.segments) if config else select_transfer()
        )
    executor = executor or RetryExecutor(interactive=interactive)
    policy = config.retry.to_policy() if config else None

    specs = [DownloadSpec(url=url) for url in urls]
    orchestrator = DownloadOrchestrator(
        resolver, transfer, executor, policy=policy, concurrency=concurrency,
    )
    return orchestrator.fetch_all(destination_dir, specs, unit="fetch")


def default_fetch_dir(config: ProvisionConfig | None = None, home: str | None = None) -> Path:
    """Where ad-hoc downloads land when no directory is given."""
    if config is None:
        return Path(home or Path.home()) / EXTRA_MODELS_DIR
    return Path(Placeholders.for_config(config, home=home).values["workspace"]) / EXTRA_MODELS_DIR


def probe_token(
    config: ProvisionConfig,
    name: str,
    environ: Mapping[str, str] | None = None,
) -> bool:
    """Run one named token probe.

    Raises:
        KeyError: If the config declares no such probe.
    """
    resolver = CredentialResolver(config.credentials, environ)
    return TokenProber(config.token_probes, resolver).is_valid(name)


def optional_config(
    config_path: Path | None = None,
    profile: str | None = None,
    workspace: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> ProvisionConfig | None:
    """Config if one is given or found, else None.

    Raises:
        ConfigError: If a config exists but is invalid.
    """
    if config_path is None and not profile and find_config_file() is None:
        return None
    return resolve_config(config_path, profile, workspace, environ)
