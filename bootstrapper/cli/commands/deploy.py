"""``bootstrapper deploy NAME`` — plan, execute and report a deployment.

Re-running the same command after any failure or interruption resumes where
the previous run stopped; completed steps are never repeated.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.panel import Panel
from rich.table import Table

from bootstrapper.cli.common import console, fail, make_settings, open_bootstrapper, status_text
from bootstrapper.errors import BootstrapperError, ConcurrentDeploymentError, PlanningError
from bootstrapper.models.config import load_config
from bootstrapper.models.steps import StepStatus

RESUME_HINT = "Re-run the same command to resume; completed steps will not be repeated."


def deploy_cmd(
    deployment_name: str = typer.Argument(..., help="Name scoping state, cache and report."),
    config: Path = typer.Option(None, "--config", "-c", help="Deployment YAML file."),
    rpc_url: str = typer.Option(None, "--rpc-url", help="JSON-RPC endpoint."),
    private_key: str = typer.Option(None, "--private-key", help="Deployer private key."),
    etherscan_api_key: str = typer.Option(None, "--etherscan-api-key", help="Explorer API key."),
    deployments_dir: Path = typer.Option(None, "--deployments-dir", help="Root of deployment state."),
    cache_dir: Path = typer.Option(None, "--cache-dir", help="Artifact cache directory."),
    contracts_dir: Path = typer.Option(None, "--contracts-dir", help="Foundry contracts project."),
    pipelined: bool = typer.Option(
        None,
        "--pipelined/--sequential",
        help="Submit independent verifier deployments before awaiting receipts.",
    ),
) -> None:
    """Deploy every missing verifier and group lookup table."""
    settings = make_settings(
        config=config,
        rpc_url=rpc_url,
        private_key=private_key,
        etherscan_api_key=etherscan_api_key,
        deployments_dir=deployments_dir,
        cache_dir=cache_dir,
        contracts_dir=contracts_dir,
        pipelined=pipelined,
    )
    engine = open_bootstrapper(settings, deployment_name)

    try:
        deployment_config = load_config(settings.config)
        result = engine.deploy(deployment_config)
    except ConcurrentDeploymentError as exc:
        fail(str(exc))
    except PlanningError as exc:
        fail(f"Planning failed: {exc}")
    except BootstrapperError as exc:
        fail(str(exc), hint=RESUME_HINT)

    if result.reconciled:
        console.print(
            f"[yellow]Reconciled {len(result.reconciled)} unconfirmed step(s) "
            "from an earlier run.[/yellow]"
        )

    table = Table(title=f"Deployment {deployment_name}")
    table.add_column("Step", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Address / Error")
    for outcome in result.outcomes:
        detail = outcome.address if outcome.status == StepStatus.COMPLETED else outcome.error
        table.add_row(outcome.step_id, status_text(outcome.status), detail or "")
    if result.outcomes:
        console.print(table)

    for group_id, message in sorted(result.plan.failures.items()):
        console.print(f"[red]Group {group_id} was not planned:[/red] {message}")

    if not result.succeeded:
        failed = result.failed
        message = (
            f"Step {failed[0].step_id} failed: {failed[0].error}"
            if failed
            else "Some groups could not be planned."
        )
        fail(message, hint=RESUME_HINT)

    done = len(result.outcomes)
    console.print(
        Panel(
            "\n".join([
                "[bold green]Deployment complete.[/bold green]",
                "",
                f"[bold]Steps executed:[/bold]   {done}",
                f"[bold]Already done:[/bold]     {len(result.plan.satisfied)}",
                f"[bold]Report:[/bold]           {result.report_path}",
            ]),
            title="[bold]Bootstrapper[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
