"""
Unit builders — turn the declarative config into executable units.

Each unit kind pairs a side-effect-free presence check with an install
action.  Placeholders (``{workspace}``, ``{home}``, ``vars`` keys) are
expanded here, once, so the units themselves hold concrete paths.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
from collections.abc import Callable, Mapping
from pathlib import Path

from aiprovision.adapters.shell.command import (
    check_command,
    parse_version,
    run_command,
    version_at_least,
    which,
)
from aiprovision.core.config.loader import ConfigError
from aiprovision.core.engine.registry import RegistryError, UnitRegistry
from aiprovision.core.errors import ActionFailure, TransferFailure
from aiprovision.core.execution.transfer import Transfer, verify_checksum
from aiprovision.core.models.config import (
    AptUnitSpec,
    BinaryUnitSpec,
    Command,
    CommandUnitSpec,
    DownloadsUnitSpec,
    FileSpec,
    GitUnitSpec,
    PipUnitSpec,
    PresenceCheckSpec,
    ProvisionConfig,
    UnitSpec,
)
from aiprovision.core.models.download import DownloadSpec
from aiprovision.core.models.unit import (
    DownloadUnit,
    DownloadVariant,
    InstallUnit,
    RetryPolicy,
    TextRewrite,
    Unit,
)
from aiprovision.core.services.credentials import CredentialResolver

logger = logging.getLogger(__name__)

# {name} but not ${name}, so shell parameter expansion survives
_PLACEHOLDER_RE = re.compile(r"(?<!\$)\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Leading distribution name of a pip requirement ("torch>=2.1" → "torch")
_REQ_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*")

_PROBE_TIMEOUT = 60


# ── Placeholders ────────────────────────────────────────────────


class Placeholders:
    """Expands ``{key}`` references; unknown keys are left untouched."""

    def __init__(self, values: Mapping[str, str]):
        self.values = dict(values)

    @classmethod
    def for_config(cls, config: ProvisionConfig, home: str | None = None) -> Placeholders:
        home = home or str(Path.home())
        workspace = os.path.expanduser(config.workspace)
        if config.workspace == "~" or config.workspace.startswith("~/"):
            workspace = home + config.workspace[1:]

        ph = cls({"workspace": workspace, "home": home})
        # vars may refer to earlier vars
        for key, value in config.vars.items():
            ph.values[key] = ph.expand(value)
        return ph

    def expand(self, text: str) -> str:
        return _PLACEHOLDER_RE.sub(
            lambda m: self.values.get(m.group(1), m.group(0)), text
        )

    def command(self, cmd: Command) -> Command:
        if isinstance(cmd, str):
            return self.expand(cmd)
        return [self.expand(part) for part in cmd]

    def path(self, text: str) -> Path:
        return Path(self.expand(text))


# ── Presence checks ─────────────────────────────────────────────


def make_presence_check(
    check: PresenceCheckSpec | None,
    ph: Placeholders,
    env: dict[str, str],
) -> Callable[[], bool]:
    """Build a check from a ``check`` block.  No block ⇒ never present."""
    if check is None:
        return lambda: False

    path = ph.path(check.path) if check.path else None
    command = ph.expand(check.command) if check.command else None
    version_cmd = ph.command(check.version_command) if check.version_command else None
    if check.min_version and version_cmd is None:
        version_cmd = [command, "--version"]
    minimum = parse_version(check.min_version) if check.min_version else None
    probe = ph.command(check.probe) if check.probe else None

    def present() -> bool:
        if path is not None and not path.exists():
            return False
        if command is not None and which(command, env) is None:
            return False
        if minimum is not None:
            result = run_command(version_cmd, env_overrides=env, timeout=_PROBE_TIMEOUT)
            if not result.ok:
                return False
            found = parse_version(result.stdout or result.stderr)
            if found is None or not version_at_least(found, minimum):
                logger.debug("Version %s below required %s", found, check.min_version)
                return False
        if probe is not None:
            result = run_command(probe, env_overrides=env, timeout=_PROBE_TIMEOUT)
            if not result.ok:
                return False
            if check.output_contains is not None and check.output_contains not in result.stdout:
                return False
        return True

    return present


# ── Builders per kind ───────────────────────────────────────────


class UnitBuilder:
    """Builds units for one config.

    Args:
        config: The validated config (overrides already applied).
        transfer: Backend for binary downloads.
        resolver: Credentials for binary downloads.
        home: Home directory for ``{home}`` (default: the real one).
        euid: Effective uid, decides whether apt needs sudo.
    """

    def __init__(
        self,
        config: ProvisionConfig,
        transfer: Transfer,
        resolver: CredentialResolver,
        home: str | None = None,
        euid: int | None = None,
    ):
        self.config = config
        self.transfer = transfer
        self.resolver = resolver
        self.ph = Placeholders.for_config(config, home=home)
        self.euid = os.geteuid() if euid is None else euid
        self.env = {k: self.ph.expand(v) for k, v in config.env.items()}

    @property
    def workspace(self) -> Path:
        return Path(self.ph.values["workspace"])

    def build(self, spec: UnitSpec) -> Unit:
        builders = {
            "command": self._command,
            "git": self._git,
            "binary": self._binary,
            "apt": self._apt,
            "pip": self._pip,
            "downloads": self._downloads,
        }
        return builders[spec.kind](spec)

    # ── Helpers ─────────────────────────────────────────────────

    def _policy(self, spec: UnitSpec) -> RetryPolicy:
        return (spec.retry or self.config.retry).to_policy()

    def _env(self, spec: UnitSpec) -> dict[str, str]:
        return {**self.env, **{k: self.ph.expand(v) for k, v in spec.env.items()}}

    def _pip_argv(self, pip: str | None) -> list[str]:
        return shlex.split(self.ph.expand(pip or self.config.pip))

    def _unit(self, spec: UnitSpec, present, action, requires=()) -> InstallUnit:
        return InstallUnit(
            name=spec.name,
            presence_check=present,
            install_action=action,
            retry_policy=self._policy(spec),
            description=spec.description,
            requires=tuple(dict.fromkeys([*requires, *spec.requires])),
        )

    # ── Kinds ───────────────────────────────────────────────────

    def _command(self, spec: CommandUnitSpec) -> InstallUnit:
        env = self._env(spec)
        commands = [self.ph.command(c) for c in spec.run]
        cwd = self.ph.path(spec.cwd) if spec.cwd else None

        def install() -> None:
            for cmd in commands:
                check_command(cmd, cwd=cwd, env_overrides=env, timeout=spec.timeout)

        return self._unit(spec, make_presence_check(spec.check, self.ph, env), install)

    def _git(self, spec: GitUnitSpec) -> InstallUnit:
        env = self._env(spec)
        dest = self.ph.path(spec.dest)
        repo = self.ph.expand(spec.repo)
        auto_update = self.config.auto_update
        post_install = [self.ph.command(c) for c in spec.post_install]
        pip = self._pip_argv(None)

        def present() -> bool:
            return dest.exists() and not auto_update

        def install() -> None:
            if (dest / ".git").is_dir():
                logger.info("Updating %s", dest)
                check_command(["git", "-C", str(dest), "pull"], env_overrides=env, timeout=spec.timeout)
            elif dest.exists() and any(dest.iterdir()):
                raise ActionFailure(f"{dest} exists but is not a git checkout")
            else:
                cmd = ["git", "clone"]
                if spec.recursive:
                    cmd.append("--recursive")
                if spec.branch:
                    cmd += ["-b", spec.branch]
                cmd += [repo, str(dest)]
                check_command(cmd, env_overrides=env, timeout=spec.timeout)

            if spec.requirements and (dest / "requirements.txt").is_file():
                check_command(
                    [*pip, "install", "-r", "requirements.txt"],
                    cwd=dest, env_overrides=env, timeout=spec.timeout,
                )
            for cmd in post_install:
                check_command(cmd, cwd=dest, env_overrides=env, timeout=spec.timeout)

        return self._unit(spec, present, install, requires=["git"])

    def _binary(self, spec: BinaryUnitSpec) -> InstallUnit:
        dest = self.ph.path(spec.dest)
        url = self.ph.expand(spec.url)
        transfer, resolver = self.transfer, self.resolver

        def install() -> None:
            token = resolver.resolve(url)
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            transfer.fetch(url, dest, headers)
            if spec.sha256 and not verify_checksum(dest, spec.sha256):
                dest.unlink(missing_ok=True)
                raise TransferFailure(f"Checksum mismatch for {dest.name}")
            if spec.executable:
                dest.chmod(dest.stat().st_mode | 0o111)

        return self._unit(spec, dest.exists, install)

    def _apt(self, spec: AptUnitSpec) -> InstallUnit:
        env = {"DEBIAN_FRONTEND": "noninteractive", **self._env(spec)}
        packages = [self.ph.expand(p) for p in spec.packages]
        sudo = [] if self.euid == 0 else ["sudo"]

        def present() -> bool:
            return run_command(["dpkg", "-s", *packages], timeout=_PROBE_TIMEOUT).ok

        def install() -> None:
            if spec.update:
                check_command([*sudo, "apt-get", "update"], env_overrides=env, timeout=spec.timeout)
            check_command(
                [*sudo, "apt-get", "install", "-y", *packages],
                env_overrides=env, timeout=spec.timeout,
            )

        return self._unit(spec, present, install, requires=["apt-get", *sudo])

    def _pip(self, spec: PipUnitSpec) -> InstallUnit:
        env = self._env(spec)
        pip = self._pip_argv(spec.pip)
        packages = [self.ph.expand(p) for p in spec.packages]
        names = []
        for req in packages:
            match = _REQ_NAME_RE.match(req)
            names.append(match.group(0) if match else req)

        def present() -> bool:
            return all(
                run_command([*pip, "show", name], env_overrides=env, timeout=_PROBE_TIMEOUT).ok
                for name in names
            )

        def install() -> None:
            cmd = [*pip, "install"]
            if spec.upgrade:
                cmd.append("--upgrade")
            check_command([*cmd, *packages], env_overrides=env, timeout=spec.timeout)

        return self._unit(spec, present, install)

    def _file(self, f: FileSpec) -> DownloadSpec:
        return DownloadSpec(
            url=self.ph.expand(f.url),
            destination_dir=self.ph.path(f.dest) if f.dest else None,
            filename=f.filename,
            sha256=f.sha256,
        )

    def _downloads(self, spec: DownloadsUnitSpec) -> DownloadUnit:
        variant = None
        if spec.variant is not None:
            v = spec.variant
            variant = DownloadVariant(
                probe=v.probe,
                licensed=tuple(self._file(f) for f in v.licensed),
                fallback=tuple(self._file(f) for f in v.fallback),
                fallback_rewrites=tuple(
                    TextRewrite(path=self.ph.path(r.path), old=r.old, new=r.new)
                    for r in v.fallback_rewrites
                ),
            )
        return DownloadUnit(
            name=spec.name,
            destination_dir=self.ph.path(spec.dest),
            specs=tuple(self._file(f) for f in spec.files),
            variant=variant,
            retry_policy=self._policy(spec),
            description=spec.description,
            requires=tuple(spec.requires),
        )


def build_registry(
    config: ProvisionConfig,
    transfer: Transfer,
    resolver: CredentialResolver,
    home: str | None = None,
    euid: int | None = None,
) -> UnitRegistry:
    """Build every unit of ``config`` into an ordered registry.

    Raises:
        ConfigError: If a unit cannot be built (e.g. a download URL
            that is not absolute after placeholder expansion).
    """
    builder = UnitBuilder(config, transfer, resolver, home=home, euid=euid)
    registry = UnitRegistry()
    for spec in config.units:
        try:
            registry.add(builder.build(spec))
        except (ValueError, RegistryError) as e:
            raise ConfigError(f"Unit '{spec.name}': {e}") from e
    return registry


def unit_environment(config: ProvisionConfig, home: str | None = None) -> dict[str, str]:
    """Config-level environment overrides with placeholders expanded."""
    ph = Placeholders.for_config(config, home=home)
    return {k: ph.expand(v) for k, v in config.env.items()}
