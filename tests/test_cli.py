"""Tests for the risu command line."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from risu.app import NoteApp
from risu.cli import main
from risu.config import RisuConfig
from risu.errors import NetworkError
from risu.models import Session

from conftest import FAST_KDF, FakeFeed


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def patched_app(home: Path, cli_feed: FakeFeed):
    """Route every command to an app with the in-memory feed."""

    def factory(home_arg=None):
        return NoteApp(home, config=RisuConfig(), feed=cli_feed, kdf_params=FAST_KDF)

    with patch("risu.cli.notes.open_app", factory), patch("risu.cli.sync_cmd.open_app", factory):
        yield factory


class TestNotesCommands:
    """Tests for notes, add, show and delete."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "risu" in result.output

    def test_empty_list(self, runner, patched_app) -> None:
        result = runner.invoke(main, ["notes"])
        assert result.exit_code == 0
        assert "No notes yet" in result.output

    def test_add_then_list(self, runner, patched_app) -> None:
        result = runner.invoke(main, ["add", "# Groceries\nmilk"])
        assert result.exit_code == 0
        assert "Saved" in result.output
        result = runner.invoke(main, ["notes"])
        assert "Groceries" in result.output

    def test_add_from_stdin(self, runner, patched_app) -> None:
        result = runner.invoke(main, ["add", "--title", "Piped"], input="from stdin\n")
        assert result.exit_code == 0
        assert patched_app().notes()[0].body == "from stdin\n"

    def test_show_by_prefix(self, runner, patched_app) -> None:
        note = patched_app().save_note("full body text")
        result = runner.invoke(main, ["show", note.id[:8]])
        assert result.exit_code == 0
        assert "full body text" in result.output

    def test_show_unknown(self, runner, patched_app) -> None:
        result = runner.invoke(main, ["show", "zzzz"])
        assert result.exit_code == 1

    def test_delete(self, runner, patched_app) -> None:
        note = patched_app().save_note("bye")
        result = runner.invoke(main, ["delete", note.id])
        assert result.exit_code == 0
        assert patched_app().notes() == []


class TestSyncCommands:
    """Tests for sync, status and reset-local."""

    def test_sync_requires_login(self, runner, patched_app) -> None:
        result = runner.invoke(main, ["sync"])
        assert result.exit_code == 1
        assert "Not logged in" in result.output

    def test_sync_pulls(self, runner, patched_app, cli_feed) -> None:
        patched_app().login(Session(token="tok"))
        cli_feed.add("a", "remote note")
        result = runner.invoke(main, ["sync"])
        assert result.exit_code == 0, result.output
        assert "done" in result.output
        assert patched_app().notes()[0].body == "remote note"

    def test_sync_unlocks_with_passphrase(self, runner, patched_app, cli_feed) -> None:
        app = patched_app()
        app.login(Session(token="tok"))
        app.enable_e2e("pw")
        app.save_note("to push")
        result = runner.invoke(main, ["sync", "--passphrase", "pw"])
        assert result.exit_code == 0, result.output
        assert "unlocked" in result.output
        assert len(cli_feed.pushed) == 1

    def test_wrong_passphrase_pulls_only(self, runner, patched_app, cli_feed) -> None:
        app = patched_app()
        app.login(Session(token="tok"))
        app.enable_e2e("pw")
        app.save_note("stays local")
        result = runner.invoke(main, ["sync", "--passphrase", "wrong"])
        assert result.exit_code == 0, result.output
        assert "Pulling only" in result.output
        assert "push skipped: locked" in result.output
        assert cli_feed.pushed == []

    def test_sync_offline(self, runner, patched_app, cli_feed) -> None:
        patched_app().login(Session(token="tok"))
        cli_feed.fail_fetch = NetworkError("down")
        result = runner.invoke(main, ["sync"])
        assert result.exit_code == 1
        assert "offline" in result.output

    def test_status(self, runner, patched_app) -> None:
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 0
        assert "OFFLINE" in result.output
        assert "Pull cursor" in result.output

    def test_reset_requires_confirmation(self, runner, patched_app) -> None:
        patched_app().save_note("keep me")
        result = runner.invoke(main, ["reset-local"], input="n\n")
        assert "Cancelled" in result.output
        assert len(patched_app().notes()) == 1

    def test_reset_with_yes(self, runner, patched_app) -> None:
        patched_app().save_note("drop me")
        result = runner.invoke(main, ["reset-local", "--yes"])
        assert result.exit_code == 0
        assert patched_app().notes() == []
