"""Bootstrapper CLI — Typer-based command-line interface.

Provides the ``bootstrapper`` command with subcommands for deploying,
dry-run planning, inspecting state, resolving steps that need review and
writing a starter configuration.

All output uses Rich for formatted terminal display.
"""
