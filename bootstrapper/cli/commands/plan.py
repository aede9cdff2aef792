"""``bootstrapper plan NAME`` — dry run: show what deploy would execute.

Missing keys and verifier sources are generated (planning needs them), but
no transaction is sent and no state is recorded.
"""

from __future__ import annotations

from pathlib import Path

import typer

from bootstrapper.cli.common import console, fail, make_settings, open_bootstrapper, plan_table
from bootstrapper.errors import BootstrapperError
from bootstrapper.models.config import load_config
from bootstrapper.models.steps import StepKind


def plan_cmd(
    deployment_name: str = typer.Argument(..., help="Name scoping state and cache."),
    config: Path = typer.Option(None, "--config", "-c", help="Deployment YAML file."),
    deployments_dir: Path = typer.Option(None, "--deployments-dir", help="Root of deployment state."),
    cache_dir: Path = typer.Option(None, "--cache-dir", help="Artifact cache directory."),
) -> None:
    """Show the ordered steps a deploy would run."""
    settings = make_settings(config=config, deployments_dir=deployments_dir, cache_dir=cache_dir)
    engine = open_bootstrapper(settings, deployment_name)

    try:
        plan = engine.plan(load_config(settings.config))
    except BootstrapperError as exc:
        fail(f"Planning failed: {exc}")

    if plan.is_empty:
        console.print("[green]Nothing to do: every step is already completed.[/green]")
    else:
        console.print(plan_table(plan))
        counts = [
            f"{len(plan.steps_of_kind(kind))} {kind.value}"
            for kind in StepKind
            if plan.steps_of_kind(kind)
        ]
        console.print(f"[bold]{len(plan.steps)} step(s):[/bold] {', '.join(counts)}")

    if plan.satisfied:
        console.print(f"[dim]{len(plan.satisfied)} step(s) already completed.[/dim]")
    for group_id, message in sorted(plan.failures.items()):
        console.print(f"[red]Group {group_id} cannot be planned:[/red] {message}")
    if plan.failures:
        raise typer.Exit(code=1)
