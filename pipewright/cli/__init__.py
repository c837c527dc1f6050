"""Pipewright CLI — Typer-based command-line interface.

Provides the ``pipewright`` command with subcommands for validating a
pipeline definition, evaluating trigger events, running the pipeline and
running a self-contained demo.

All output uses Rich for formatted terminal display.
"""
