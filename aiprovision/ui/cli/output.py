"""
Terminal rendering shared by the CLI commands.
"""

from __future__ import annotations

from collections.abc import Iterable

import click

from aiprovision.core.models.outcome import Outcome

STATUS_COLORS = {"ok": "green", "partial": "yellow", "failed": "red", "disabled": "yellow"}


def echo_outcome(outcome: Outcome, verbose: bool = False) -> None:
    timing = f" ({outcome.duration_ms}ms)" if outcome.duration_ms else ""
    if outcome.skipped:
        click.secho(f"   ⊘ {outcome.name} ", fg="yellow", nl=False)
        click.echo(f"({outcome.message})" if outcome.message else "")
    elif outcome.failed:
        click.secho(f"   ✗ {outcome.name}", fg="red", nl=False)
        suffix = " [abandoned]" if outcome.abandoned else ""
        click.echo(f"{timing}{suffix}")
        if outcome.error:
            for line in outcome.error.split("\n")[:5]:
                click.echo(f"     │ {line}")
    else:
        click.secho(f"   ✓ {outcome.name}", fg="green", nl=False)
        click.echo(timing)
        if verbose and outcome.message:
            click.echo(f"     │ {outcome.message}")


def echo_outcomes(outcomes: Iterable[Outcome], verbose: bool = False) -> None:
    for outcome in outcomes:
        echo_outcome(outcome, verbose=verbose)


def exit_code_for(outcomes: Iterable[Outcome]) -> int:
    """1 if any failure the operator did not abandon, else 0."""
    return 1 if any(o.failed and not o.abandoned for o in outcomes) else 0
