"""Sync commands: sync, status, reset-local."""

from __future__ import annotations

import sys

import click
from rich.panel import Panel
from rich.table import Table

from ._common import console, logger, open_app, status_label
from ..app import NoteApp
from ..errors import AuthError, KeyMaterialError, LocalIOError, NetworkError, SyncAborted


def _ensure_unlocked(app: NoteApp, passphrase) -> bool:
    """Derive the key if E2E is set up and the key is not held yet."""
    if not app.config.e2e_enabled or app.keys.has_key() or not app.keys.salt():
        return True
    if passphrase is None:
        if not sys.stdin.isatty():
            console.print("  [yellow]Locked:[/] pass --passphrase or set RISU_PASSPHRASE.")
            return False
        passphrase = click.prompt("  Passphrase", hide_input=True)
    console.print("  Deriving key...", end=" ")
    try:
        app.unlock(passphrase)
    except KeyMaterialError as exc:
        console.print(f"[red]{exc}[/]")
        return False
    console.print("[green]unlocked[/]")
    return True


def _yes_no(value: bool) -> str:
    return "[green]yes[/]" if value else "[dim]no[/]"


def register_sync_commands(main: click.Group) -> None:
    """Register sync, status and reset-local on the main CLI group."""

    @main.command()
    @click.option("--home", default=None, help="Risu home directory.", type=click.Path())
    @click.option(
        "--passphrase", default=None, envvar="RISU_PASSPHRASE",
        help="Encryption passphrase (prompted when needed).",
    )
    def sync(home, passphrase):
        """Pull remote changes, then push local edits."""
        app = open_app(home)
        if not app.session.is_authenticated:
            console.print("[bold red]Not logged in.[/] Sign in with the Risu app first.")
            sys.exit(1)

        console.print()
        if not _ensure_unlocked(app, passphrase):
            console.print("  [dim]Pulling only; local edits stay queued until unlocked.[/]")

        console.print("  Syncing...", end=" ")
        try:
            report = app.sync_now()
        except NetworkError as exc:
            console.print(f"[yellow]offline[/] [dim]{exc}[/]\n")
            sys.exit(1)
        except AuthError as exc:
            console.print(f"[red]rejected[/] {exc}\n")
            sys.exit(1)
        except (LocalIOError, SyncAborted) as exc:
            logger.error("CLI sync failed: %s", exc)
            console.print(f"[red]failed[/] {exc}\n")
            sys.exit(1)
        finally:
            app.stop()

        console.print("[green]done[/]")
        if report.pull is not None:
            p = report.pull
            console.print(
                f"  [dim]pulled[/] {p.applied} [dim]new,[/] {p.legacy} [dim]legacy,[/] "
                f"{p.pending_key} [dim]locked,[/] {p.failed} [dim]failed ({p.pages} pages, cursor {p.cursor})[/]"
            )
        if report.push is not None:
            if report.push.skipped_reason:
                console.print(f"  [dim]push skipped: {report.push.skipped_reason}[/]")
            else:
                console.print(f"  [dim]pushed[/] {report.push.uploaded} [dim](cursor {report.push.cursor})[/]")
        console.print()

    @main.command()
    @click.option("--home", default=None, help="Risu home directory.", type=click.Path())
    def status(home):
        """Show sync state, key state and cursors."""
        app = open_app(home)
        info = app.summary()

        console.print()
        console.print(
            Panel(
                f"[bold]Risu[/] {info['home']}\n{status_label(info['status'])}",
                title="Sync",
                border_style="bright_blue",
            )
        )

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("Logged in", _yes_no(info["authenticated"]))
        table.add_row("End-to-end", _yes_no(info["e2e_enabled"] and info["salt_present"]))
        table.add_row("Unlocked", _yes_no(info["unlocked"]))
        table.add_row("Notes", str(info["notes"]))
        table.add_row("Pull cursor", str(info["pull_cursor"]))
        table.add_row("Push cursor", str(info["push_cursor"]))
        console.print(table)
        console.print()

    @main.command("reset-local")
    @click.option("--home", default=None, help="Risu home directory.", type=click.Path())
    @click.option("--remote", is_flag=True, help="Also delete the account's remote notes.")
    @click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
    def reset_local(home, remote, yes):
        """Delete every local note, cursor and key on this device."""
        what = "local AND remote" if remote else "local"
        if not yes and not click.confirm(f"  Delete all {what} Risu data?", default=False):
            console.print("  [dim]Cancelled.[/]")
            return
        app = open_app(home)
        app.reset_local(remote=remote)
        console.print(f"  [green]Reset complete.[/] [dim]{what} data cleared[/]")
