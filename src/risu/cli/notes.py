"""Note commands: notes, show, add, delete."""

from __future__ import annotations

import sys

import click
from rich.panel import Panel
from rich.table import Table

from ._common import console, decrypt_label, open_app


def register_notes_commands(main: click.Group) -> None:
    """Register the note editing commands on the main CLI group."""

    @main.command()
    @click.option("--home", default=None, help="Risu home directory.", type=click.Path())
    @click.option("--all", "include_deleted", is_flag=True, help="Include deleted notes.")
    def notes(home, include_deleted):
        """List notes, most recently updated first."""
        app = open_app(home)
        items = app.notes(include_deleted=include_deleted)
        if not items:
            console.print("\n  [dim]No notes yet.[/] Add one with [bold]risu add[/].\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("ID", style="dim")
        table.add_column("Title", style="bold")
        table.add_column("State")
        table.add_column("Updated", style="dim")
        for note in items:
            title = note.title
            if note.is_deleted:
                title = f"[strike]{title}[/]"
            if note.dirty:
                title += " [yellow]*[/]"
            table.add_row(
                note.id[:8],
                title,
                decrypt_label(note.decrypt_status),
                note.updated_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print()
        console.print(table)
        console.print()

    @main.command()
    @click.argument("note_id")
    @click.option("--home", default=None, help="Risu home directory.", type=click.Path())
    def show(note_id, home):
        """Print one note. NOTE_ID may be a unique prefix."""
        app = open_app(home)
        matches = [n for n in app.notes(include_deleted=True) if n.id.startswith(note_id)]
        if len(matches) != 1:
            what = "No note" if not matches else f"{len(matches)} notes"
            console.print(f"[bold red]{what} matching[/] {note_id}")
            sys.exit(1)
        note = matches[0]
        console.print(
            Panel(
                note.body,
                title=f"{note.title}  {decrypt_label(note.decrypt_status)}",
                subtitle=note.id,
                border_style="bright_blue",
            )
        )

    @main.command()
    @click.argument("body", required=False)
    @click.option("--title", default=None, help="Explicit title (default: first line).")
    @click.option("--id", "note_id", default=None, help="Overwrite the note with this id.")
    @click.option("--home", default=None, help="Risu home directory.", type=click.Path())
    def add(body, title, note_id, home):
        """Add a note. Reads BODY from stdin when omitted."""
        if body is None:
            body = click.get_text_stream("stdin").read()
        app = open_app(home)
        note = app.save_note(body, note_id=note_id, title=title)
        console.print(f"  [green]Saved[/] [bold]{note.title}[/] [dim]{note.id}[/]")

    @main.command()
    @click.argument("note_id")
    @click.option("--home", default=None, help="Risu home directory.", type=click.Path())
    def delete(note_id, home):
        """Delete a note; the deletion syncs like an edit."""
        app = open_app(home)
        note = app.delete_note(note_id)
        if note is None:
            console.print(f"[bold red]No note[/] {note_id}")
            sys.exit(1)
        console.print(f"  [green]Deleted[/] [bold]{note.title}[/]")
