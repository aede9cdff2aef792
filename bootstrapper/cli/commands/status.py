"""``bootstrapper status NAME`` — show the persisted record of a deployment."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from bootstrapper.cli.common import console, make_settings, open_bootstrapper, status_text


def status_cmd(
    deployment_name: str = typer.Argument(..., help="Deployment to inspect."),
    deployments_dir: Path = typer.Option(None, "--deployments-dir", help="Root of deployment state."),
) -> None:
    """List every recorded step with its status and address."""
    settings = make_settings(deployments_dir=deployments_dir)
    record = open_bootstrapper(settings, deployment_name).status()

    if not record.steps:
        console.print(f"[dim]No recorded steps for deployment {deployment_name}.[/dim]")
        return

    table = Table(title=f"Deployment {deployment_name}")
    table.add_column("Step", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Address")
    table.add_column("Checkpoints", justify="right")
    table.add_column("Notes")

    for step_id, rec in sorted(record.steps.items()):
        notes = ""
        if rec.needs_review:
            notes = f"[bold red]needs review[/bold red]: {rec.error}"
        elif rec.error:
            notes = rec.error
        elif rec.pending is not None:
            notes = f"unconfirmed tx {rec.pending.tx_hash} (nonce {rec.pending.nonce})"
        table.add_row(
            step_id,
            status_text(rec.status),
            rec.address or "",
            str(len(rec.checkpoints)) if rec.checkpoints else "",
            notes,
        )
    console.print(table)

    review = record.needing_review()
    if review:
        console.print(
            f"[yellow]{len(review)} step(s) need review. "
            f"Use 'bootstrapper resolve {deployment_name} STEP_ID' once the outcome is known.[/yellow]"
        )
