"""Shared utilities for the CLI command modules.

Provides the Rich console, the app factory and status formatting.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console

from .. import RISU_HOME
from ..app import NoteApp
from ..config import configure_logging, load_config
from ..models import DecryptStatus, SyncState, SyncStatus

logger = logging.getLogger("risu.cli")

console = Console()


def open_app(home: Optional[str] = None) -> NoteApp:
    """Load config, start file logging and build the app."""
    home_path = Path(home or RISU_HOME).expanduser()
    config = load_config(home_path)
    configure_logging(home_path, config.log_level)
    return NoteApp(home_path, config)


def status_label(status: SyncStatus) -> str:
    """Rich markup for a sync status."""
    label = {
        SyncState.OFFLINE: "[dim]OFFLINE[/]",
        SyncState.SYNCING: "[bold cyan]SYNCING[/]",
        SyncState.SYNCED: "[bold green]SYNCED[/]",
        SyncState.ERROR: "[bold red]ERROR[/]",
    }.get(status.state, "[dim]UNKNOWN[/]")
    if status.detail:
        label += f" [red]{status.detail}[/]"
    return label


def decrypt_label(status: DecryptStatus) -> str:
    return {
        DecryptStatus.DECRYPTED: "[green]ok[/]",
        DecryptStatus.PLAINTEXT_LEGACY: "[yellow]legacy[/]",
        DecryptStatus.PENDING_KEY: "[cyan]locked[/]",
        DecryptStatus.FAILED: "[red]failed[/]",
    }.get(status, "[dim]?[/]")
