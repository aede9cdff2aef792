"""Main Typer application — imports and registers all CLI commands.

Entry point: ``bootstrapper`` (configured via pyproject.toml scripts).

Commands: deploy, plan, status, resolve, init-config.
"""

from __future__ import annotations

import typer

from bootstrapper.cli.commands.deploy import deploy_cmd
from bootstrapper.cli.commands.init_config import init_config_cmd
from bootstrapper.cli.commands.plan import plan_cmd
from bootstrapper.cli.commands.resolve import resolve_cmd
from bootstrapper.cli.commands.status import status_cmd
from bootstrapper.cli.common import make_settings, setup_logging

app = typer.Typer(
    name="bootstrapper",
    help="Bootstrapper: idempotent deployment of ZK verifier contracts.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None, "--log-level", help="Logging level (default from BOOTSTRAPPER_LOG_LEVEL)."
    ),
) -> None:
    """Configure logging before any command runs."""
    setup_logging(log_level or make_settings().log_level)


# Register subcommands
app.command(name="deploy", help="Plan, execute and report a deployment.")(deploy_cmd)
app.command(name="plan", help="Show the steps a deploy would execute.")(plan_cmd)
app.command(name="status", help="Show the recorded state of a deployment.")(status_cmd)
app.command(name="resolve", help="Settle a step that needs review.")(resolve_cmd)
app.command(name="init-config", help="Write a starter deployment YAML.")(init_config_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
