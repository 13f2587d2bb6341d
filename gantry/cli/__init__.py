"""Gantry CLI — Typer-based command-line interface.

Provides the ``gantry`` command with subcommands for running and planning
pipelines and for inspecting past runs, their ledgers, and their artifacts.

All output uses Rich for formatted terminal display.
"""
