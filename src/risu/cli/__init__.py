"""
Risu CLI — local-first notes with encrypted sync.

The main Click group is defined here and every command module
registers itself through a ``register_*_commands`` function.

Entry point: risu.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="risu")
def main():
    """Risu — local-first notes, end-to-end encrypted sync."""


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .notes import register_notes_commands
from .sync_cmd import register_sync_commands

register_notes_commands(main)
register_sync_commands(main)
