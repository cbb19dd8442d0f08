"""CLI command modules for klettrack."""

from klettrack.cli.commands.sync import cmd_sync

__all__ = ["cmd_sync"]
