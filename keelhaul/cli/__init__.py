"""Keelhaul CLI — Typer-based command-line interface.

Provides the ``keelhaul`` command with subcommands for deploying a build,
previewing the remote plan, and inspecting the audit ledger.

All output uses Rich for formatted terminal display.
"""
