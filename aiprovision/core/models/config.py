"""
Provisioning configuration — the schema of a provision.yml profile.

A profile is pure data: the workspace, the credential table, the
token probes and the ordered list of units.  Placeholders such as
``{workspace}`` are kept verbatim here and expanded when the unit
registry is built.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator

from aiprovision.core.models.download import CredentialRule
from aiprovision.core.models.unit import RetryPolicy

Command = str | list[str]


class RetrySettings(BaseModel):
    """Retry policy as written in YAML."""

    max_auto_attempts: int = Field(default=3, ge=1)
    allow_interactive: bool = True
    delay: float = Field(default=1.0, ge=0)
    backoff: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_auto_attempts=self.max_auto_attempts,
            allow_interactive=self.allow_interactive,
            delay=self.delay,
            backoff=self.backoff,
            max_delay=self.max_delay,
        )


class TokenProbeSpec(BaseModel):
    """A well-known endpoint that answers 200 only for a valid token."""

    url: str
    secret_env_var: str
    timeout: float = 10.0


class PresenceCheckSpec(BaseModel):
    """Side-effect-free "is it already there?" test.

    Every key that is set must hold for the unit to count as present.
    """

    path: str | None = None
    command: str | None = None
    version_command: Command | None = None
    min_version: str | None = None
    probe: Command | None = None
    output_contains: str | None = None

    @model_validator(mode="after")
    def _check_pairs(self) -> PresenceCheckSpec:
        if self.min_version and not (self.version_command or self.command):
            raise ValueError("min_version needs version_command or command")
        if self.output_contains is not None and not self.probe:
            raise ValueError("output_contains needs probe")
        return self


class FileSpec(BaseModel):
    """One file entry of a downloads unit."""

    url: str
    filename: str | None = None
    dest: str | None = None
    sha256: str | None = None


class RewriteSpec(BaseModel):
    path: str
    old: str
    new: str


class VariantSpec(BaseModel):
    """Licensed vs. fallback file sets, chosen by a token probe."""

    probe: str
    licensed: list[FileSpec] = Field(default_factory=list)
    fallback: list[FileSpec] = Field(default_factory=list)
    fallback_rewrites: list[RewriteSpec] = Field(default_factory=list)


# ── Unit kinds ──────────────────────────────────────────────────


class _UnitBase(BaseModel):
    name: str
    description: str = ""
    requires: list[str] = Field(default_factory=list)
    retry: RetrySettings | None = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout: int = 3600


class CommandUnitSpec(_UnitBase):
    """Run shell commands unless the check says it's already done."""

    kind: Literal["command"]
    run: list[Command]
    check: PresenceCheckSpec | None = None
    cwd: str | None = None


class GitUnitSpec(_UnitBase):
    """Clone (or update) a repository, then run post-install steps."""

    kind: Literal["git"]
    repo: str
    dest: str
    branch: str | None = None
    recursive: bool = False
    requirements: bool = False
    post_install: list[Command] = Field(default_factory=list)


class BinaryUnitSpec(_UnitBase):
    """Download a single file to a fixed path."""

    kind: Literal["binary"]
    url: str
    dest: str
    executable: bool = True
    sha256: str | None = None


class AptUnitSpec(_UnitBase):
    kind: Literal["apt"]
    packages: list[str]
    update: bool = True


class PipUnitSpec(_UnitBase):
    kind: Literal["pip"]
    packages: list[str]
    pip: str | None = None
    upgrade: bool = False


class DownloadsUnitSpec(_UnitBase):
    """A batch of files, optionally with a licensed/fallback variant."""

    kind: Literal["downloads"]
    dest: str
    files: list[FileSpec] = Field(default_factory=list)
    variant: VariantSpec | None = None


UnitSpec = Annotated[
    CommandUnitSpec
    | GitUnitSpec
    | BinaryUnitSpec
    | AptUnitSpec
    | PipUnitSpec
    | DownloadsUnitSpec,
    Field(discriminator="kind"),
]


class ProvisionConfig(BaseModel):
    """Root configuration — loaded from provision.yml or a bundled profile."""

    name: str = "default"
    description: str = ""

    workspace: str = "~"
    auto_update: bool = False
    concurrency: int = Field(default=4, ge=1)
    transfer: Literal["auto", "http", "aria2"] = "auto"
    segments: int = Field(default=8, ge=1)
    skip_marker: str | None = None
    pip: str = "pip"

    vars: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    credentials: list[CredentialRule] = Field(default_factory=list)
    token_probes: dict[str, TokenProbeSpec] = Field(default_factory=dict)
    units: list[UnitSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_units(self) -> ProvisionConfig:
        seen: set[str] = set()
        for unit in self.units:
            if unit.name in seen:
                raise ValueError(f"Duplicate unit name: {unit.name!r}")
            seen.add(unit.name)
            if isinstance(unit, DownloadsUnitSpec) and unit.variant:
                if unit.variant.probe not in self.token_probes:
                    raise ValueError(
                        f"Unit {unit.name!r} uses unknown token probe "
                        f"{unit.variant.probe!r}"
                    )
        return self

    def get_unit(self, name: str) -> UnitSpec | None:
        """Look up a unit declaration by name."""
        for unit in self.units:
            if unit.name == name:
                return unit
        return None

    def unit_names(self) -> list[str]:
        return [u.name for u in self.units]
