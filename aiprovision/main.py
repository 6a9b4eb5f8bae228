"""
aiprovision — CLI entrypoint.

Usage:
    aiprovision --help
    aiprovision -p vastai run
    aiprovision -c provision.yml run -u comfyui -j 8
    aiprovision units
    aiprovision history
    aiprovision profiles
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from aiprovision import __version__
from aiprovision.core.observability.logging_config import settings_from_env, setup_logging
from aiprovision.ui.cli.output import STATUS_COLORS, echo_outcomes


@click.group()
@click.version_option(version=__version__, prog_name="aiprovision")
@click.option(
    "--verbose", "-v", is_flag=True,
    help="Show outcome details, and log at INFO even when PROV_LOG_LEVEL is higher.",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, dir_okay=False),
    default=None,
    help="Path to provision.yml (default: auto-detect).",
)
@click.option("--profile", "-p", default=None, help="Use a bundled profile (user, root, vastai, ...).")
@click.option(
    "--workspace",
    "-w",
    default=None,
    help="Workspace directory (overrides $WORKSPACE and the config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    profile: str | None,
    workspace: str | None,
) -> None:
    """aiprovision — idempotent provisioning for AI workstations."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["profile"] = profile
    ctx.obj["workspace"] = workspace

    # ── Logging setup (once, at process start) ──────────────────
    settings = settings_from_env()
    if debug:
        settings["level"] = "DEBUG"
    elif verbose:
        settings["level"] = "INFO"
    elif quiet:
        settings["level"] = "ERROR"
    setup_logging(**settings)


def _load_config_or_exit(ctx: click.Context):
    from aiprovision.core.config.loader import ConfigError
    from aiprovision.core.use_cases.provision import resolve_config

    try:
        return resolve_config(
            config_path=ctx.obj.get("config_path"),
            profile=ctx.obj.get("profile"),
            workspace=ctx.obj.get("workspace"),
        )
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)


@cli.command()
@click.option("--unit", "-u", "units", multiple=True, help="Only run this unit (repeatable).")
@click.option("--exclude", "-x", multiple=True, help="Skip this unit (repeatable).")
@click.option("--jobs", "-j", type=click.IntRange(min=1), default=None, help="Parallel downloads.")
@click.option(
    "--interactive/--no-interactive",
    default=None,
    help="Ask before giving up on a failed step (default: when stdin is a terminal).",
)
@click.option("--dry-run", is_flag=True, help="Check what is installed without changing anything.")
@click.option("--no-audit", is_flag=True, help="Don't append this run to the audit ledger.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    units: tuple[str, ...],
    exclude: tuple[str, ...],
    jobs: int | None,
    interactive: bool | None,
    dry_run: bool,
    no_audit: bool,
    as_json: bool,
) -> None:
    """Provision every unit that is not already present.

    Examples:

        aiprovision -p vastai run

        aiprovision run -u koboldcpp -u models --no-interactive

        aiprovision run --dry-run
    """
    from aiprovision.core.use_cases.provision import run_provisioning

    result = run_provisioning(
        config_path=ctx.obj.get("config_path"),
        profile=ctx.obj.get("profile"),
        workspace=ctx.obj.get("workspace"),
        units=list(units) or None,
        exclude=list(exclude) or None,
        concurrency=jobs,
        interactive=interactive,
        dry_run=dry_run,
        audit=not no_audit,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(2)

    report = result.report
    assert report is not None
    assert result.config is not None

    if report.disabled:
        click.secho("⊘ Provisioning disabled by marker file", fg="yellow")
        return

    mode_label = "[dry-run] " if dry_run else ""
    click.secho(
        f"\n⚡ {mode_label}provision — {result.config.name}",
        fg="cyan",
        bold=True,
    )
    click.echo(f"   Workspace: {result.workspace} | Outcomes: {report.total}")
    click.echo()

    echo_outcomes(report.outcomes, verbose=ctx.obj.get("verbose", False))

    # Summary
    click.echo()
    click.secho(
        f"   Result: {report.summary()}",
        fg=STATUS_COLORS.get(report.status, "white"),
        bold=True,
    )
    click.echo()
    sys.exit(report.exit_code)


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def units(ctx: click.Context, as_json: bool) -> None:
    """List the configured units and whether they are present."""
    from aiprovision.core.config.loader import ConfigError
    from aiprovision.core.use_cases.provision import list_units

    config = _load_config_or_exit(ctx)
    try:
        infos = list_units(config)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)

    if as_json:
        click.echo(json.dumps([i.to_dict() for i in infos], indent=2))
        return

    click.secho(f"\n📋 {config.name}", fg="cyan", bold=True)
    if config.description:
        click.echo(f"   {config.description}")
    click.echo()

    for info in infos:
        if info.kind == "downloads":
            click.secho(f"   ↓ {info.name}", fg="white", nl=False)
            click.echo(f" [{info.kind}] {info.files} file(s)")
        elif info.present:
            click.secho(f"   ✓ {info.name}", fg="green", nl=False)
            click.echo(f" [{info.kind}]")
        else:
            click.secho(f"   • {info.name}", fg="yellow", nl=False)
            click.echo(f" [{info.kind}] not installed")
        if info.description and ctx.obj.get("verbose"):
            click.echo(f"     │ {info.description}")
    click.echo()


@cli.command()
@click.option("-n", "count", type=click.IntRange(min=1), default=10, help="Number of entries.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, count: int, as_json: bool) -> None:
    """Show recent provisioning runs from the audit ledger."""
    from aiprovision.core.persistence.audit import AuditWriter
    from aiprovision.core.services.units import Placeholders

    config = _load_config_or_exit(ctx)
    workspace = Path(Placeholders.for_config(config).values["workspace"])
    entries = AuditWriter(workspace=workspace).read_recent(count)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("No provisioning runs recorded yet.")
        return

    for entry in entries:
        color = STATUS_COLORS.get(entry.status, "white")
        click.echo(f"   {entry.timestamp[:19]}  {entry.profile:<10} ", nl=False)
        click.secho(f"{entry.status:<8}", fg=color, nl=False)
        click.echo(
            f" {entry.units_succeeded} ok, {entry.units_skipped} skipped, "
            f"{entry.units_failed} failed"
        )
        if entry.failed_units:
            click.echo(f"     │ failed: {', '.join(entry.failed_units)}")


@cli.command()
def profiles() -> None:
    """List the bundled profiles usable with --profile."""
    from aiprovision.core.config.loader import list_profiles, load_profile

    for name in list_profiles():
        config = load_profile(name)
        click.secho(f"   {name:<10}", fg="cyan", nl=False)
        click.echo(f" {config.description}")


# ── Register sub-command groups from aiprovision/ui/cli/ ──────────

from aiprovision.ui.cli.downloads import downloads

cli.add_command(downloads)


if __name__ == "__main__":
    cli()
