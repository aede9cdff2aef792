"""``bootstrapper resolve NAME STEP_ID`` — settle a step flagged for review.

A step is flagged when a transaction was submitted but its outcome could
not be established.  After checking the chain, the operator either records
the deployed address (``--address``) or clears the flag so the next deploy
retries the step (``--retry``).
"""

from __future__ import annotations

from pathlib import Path

import typer

from bootstrapper.cli.common import console, fail, make_settings, open_bootstrapper, status_text
from bootstrapper.errors import BootstrapperError


def resolve_cmd(
    deployment_name: str = typer.Argument(..., help="Deployment holding the step."),
    step_id: str = typer.Argument(..., help="Step to resolve."),
    address: str = typer.Option(None, "--address", help="Record the step as completed at this address."),
    retry: bool = typer.Option(False, "--retry", help="Clear the review flag and retry on next deploy."),
    deployments_dir: Path = typer.Option(None, "--deployments-dir", help="Root of deployment state."),
) -> None:
    """Mark a reviewed step completed, or release it for retry."""
    if bool(address) == retry:
        fail("Pass exactly one of --address or --retry.")

    settings = make_settings(deployments_dir=deployments_dir)
    engine = open_bootstrapper(settings, deployment_name)
    try:
        record = engine.resolve(step_id, address=address)
    except BootstrapperError as exc:
        fail(str(exc))

    rec = record.get(step_id)
    console.print(f"[bold]{step_id}[/bold] is now {status_text(rec.status)}")
    if address:
        console.print(f"[dim]Recorded address {address}.[/dim]")
    else:
        console.print("[dim]The step will be retried on the next deploy.[/dim]")
