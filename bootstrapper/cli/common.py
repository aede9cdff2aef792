"""Shared CLI plumbing: settings overrides, logging, engine factory, tables."""

from __future__ import annotations

import logging
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from bootstrapper.config import BootstrapperSettings
from bootstrapper.core.orchestrator import Bootstrapper
from bootstrapper.models.steps import DeploymentPlan, StepStatus

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES: dict[StepStatus, str] = {
    StepStatus.PENDING: "dim",
    StepStatus.IN_PROGRESS: "yellow",
    StepStatus.COMPLETED: "green",
    StepStatus.FAILED: "red",
}


def setup_logging(level: str) -> None:
    """Route stdlib logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def make_settings(**overrides: Any) -> BootstrapperSettings:
    """Settings from env/.env with CLI options layered on top (None = unset)."""
    return BootstrapperSettings(**{k: v for k, v in overrides.items() if v is not None})


def open_bootstrapper(settings: BootstrapperSettings, deployment_name: str) -> Bootstrapper:
    """Build the engine or exit with a readable error."""
    try:
        return Bootstrapper(settings, deployment_name)
    except ValueError as exc:
        fail(str(exc))


def fail(message: str, *, hint: str | None = None) -> NoReturn:
    lines = [f"[bold red]{message}[/bold red]"]
    if hint:
        lines += ["", f"[dim]{hint}[/dim]"]
    console.print(Panel("\n".join(lines), title="[bold]Bootstrapper[/bold]", border_style="red"))
    raise typer.Exit(code=1)


def status_text(status: StepStatus) -> str:
    style = STATUS_STYLES.get(status, "")
    return f"[{style}]{status.value}[/{style}]"


def plan_table(plan: DeploymentPlan, title: str | None = None) -> Table:
    table = Table(title=title or f"Plan for {plan.deployment_name}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Description")
    table.add_column("Depends on", style="dim")
    table.add_column("Status", justify="center")

    for index, step in enumerate(plan.steps, start=1):
        table.add_row(
            str(index),
            step.step_id,
            step.describe(),
            str(len(step.depends_on)) if step.depends_on else "-",
            status_text(step.status),
        )
    return table

