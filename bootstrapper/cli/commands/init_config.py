"""``bootstrapper init-config`` — write a starter deployment YAML."""

from __future__ import annotations

from pathlib import Path

import typer

from bootstrapper.cli.common import console, fail
from bootstrapper.errors import ConfigValidationError
from bootstrapper.models.config import dump_config, parse_config


def _parse_sizes(text: str | None) -> list[int] | None:
    if text is None:
        return None
    try:
        return [int(part) for part in text.split(",") if part.strip()]
    except ValueError:
        fail(f"Batch sizes must be comma-separated integers, got {text!r}")


def init_config_cmd(
    output: Path = typer.Option(Path("deployment.yml"), "--output", "-o", help="File to write."),
    group_id: int = typer.Option(0, "--group", help="Id of the first group."),
    tree_depth: int = typer.Option(30, "--tree-depth", help="Merkle tree depth (16-32)."),
    batch_sizes: str = typer.Option("10,100", "--batch-sizes", help="Insertion batch sizes."),
    deletion_batch_sizes: str = typer.Option(
        None, "--deletion-batch-sizes", help="Deletion batch sizes (optional)."
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write a single-group configuration to start from."""
    if output.exists() and not force:
        fail(f"{output} already exists.", hint="Pass --force to overwrite it.")

    group: dict = {
        "tree_depth": tree_depth,
        "insertion_batch_sizes": _parse_sizes(batch_sizes),
    }
    deletion = _parse_sizes(deletion_batch_sizes)
    if deletion is not None:
        group["deletion_batch_sizes"] = deletion

    try:
        config = parse_config({"groups": {group_id: group}})
    except ConfigValidationError as exc:
        fail(str(exc))

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(dump_config(config), encoding="utf-8")
    console.print(f"[green]Wrote[/green] {output}")
