"""
CLI commands for ad-hoc downloads and token checks.

Thin wrappers over ``aiprovision.core.use_cases.provision``.

Usage::

    aiprovision downloads fetch https://huggingface.co/.../model.gguf -d models
    aiprovision downloads fetch            # prompts for URLs
    aiprovision downloads probe huggingface
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from aiprovision.ui.cli.output import echo_outcomes, exit_code_for


def _prompt_urls() -> list[str]:
    """Read URLs from the operator until an empty line."""
    urls = []
    click.echo("Enter download URLs, one per line (empty line to start):")
    while True:
        url = click.prompt("URL", default="", show_default=False).strip()
        if not url:
            return urls
        urls.append(url)


@click.group()
def downloads() -> None:
    """Downloads — fetch files and check access tokens."""


@downloads.command()
@click.argument("urls", nargs=-1)
@click.option(
    "--dest", "-d",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory to download into (default: <workspace>/PresetModels/extra_models).",
)
@click.option("--jobs", "-j", type=click.IntRange(min=1), default=4, help="Parallel downloads.")
@click.option("--interactive/--no-interactive", default=None, help="Ask before giving up on a file.")
@click.pass_context
def fetch(
    ctx: click.Context,
    urls: tuple[str, ...],
    dest: str | None,
    jobs: int,
    interactive: bool | None,
) -> None:
    """Download URLs, skipping files that already exist.

    Tokens for Hugging Face and Civitai are taken from HF_TOKEN and
    CIVITAI_TOKEN (or the credential table of the loaded config).
    """
    from aiprovision.core.config.loader import ConfigError
    from aiprovision.core.reliability.retry import stdin_is_interactive
    from aiprovision.core.use_cases.provision import (
        default_fetch_dir,
        fetch_urls,
        optional_config,
    )

    url_list = list(urls)
    if not url_list:
        if not stdin_is_interactive():
            click.secho("❌ No URLs given.", fg="red", err=True)
            sys.exit(2)
        url_list = _prompt_urls()
        if not url_list:
            click.echo("Nothing to download.")
            return

    try:
        config = optional_config(
            ctx.obj.get("config_path"), ctx.obj.get("profile"), ctx.obj.get("workspace"),
        )
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)

    try:
        outcomes = fetch_urls(
            url_list,
            Path(dest) if dest else default_fetch_dir(config),
            config=config,
            concurrency=jobs,
            interactive=interactive,
        )
    except ValueError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)

    click.echo()
    echo_outcomes(outcomes, verbose=ctx.obj.get("verbose", False))
    click.echo()
    sys.exit(exit_code_for(outcomes))


@downloads.command()
@click.argument("name")
@click.pass_context
def probe(ctx: click.Context, name: str) -> None:
    """Check whether the token behind probe NAME is accepted.

    Exits 0 when the token is valid, 1 when it is missing or rejected.
    """
    from aiprovision.core.config.loader import ConfigError
    from aiprovision.core.use_cases.provision import probe_token, resolve_config

    try:
        config = resolve_config(ctx.obj.get("config_path"), ctx.obj.get("profile"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)

    if name not in config.token_probes:
        available = ", ".join(sorted(config.token_probes)) or "none"
        click.secho(f"❌ Unknown token probe '{name}'. Available: {available}", fg="red", err=True)
        sys.exit(2)

    if probe_token(config, name):
        click.secho(f"✅ {name}: token accepted", fg="green")
        return

    spec = config.token_probes[name]
    click.secho(f"✗ {name}: token missing or rejected ({spec.secret_env_var})", fg="yellow")
    sys.exit(1)
