"""Tests for the NoteApp wiring."""

from __future__ import annotations

import threading

import pytest

from risu.app import SALT_PUBLISH_PENDING, NoteApp
from risu.crypto import derive_key, make_validator
from risu.errors import AuthError, InvalidPassphraseError, NetworkError, SaltConflictError
from risu.keys import SALT_KEY
from risu.models import DecryptStatus, Session, SyncDirection, SyncState

from conftest import FAST_KDF


def _login(app: NoteApp, **kwargs) -> None:
    app.login(Session(token="tok", **kwargs))


class TestNotes:
    """Tests for note editing through the app."""

    def test_save_and_list(self, app: NoteApp) -> None:
        app.save_note("# Hello\nworld")
        assert [n.title for n in app.notes()] == ["Hello"]

    def test_delete(self, app: NoteApp) -> None:
        note = app.save_note("bye")
        app.delete_note(note.id)
        assert app.notes() == []
        assert app.delete_note("missing") is None


class TestSessionFlow:
    """Tests for login, unlock and logout."""

    def test_first_device_enable_e2e_then_sync(self, app, feed) -> None:
        _login(app)
        salt = app.enable_e2e("correct horse")
        assert feed.salt == salt
        assert feed.validator is not None
        app.save_note("secret stuff")
        report = app.sync_now()
        assert report.push.uploaded == 1
        assert "secret" not in feed.pushed[0].body
        assert app.status().state == SyncState.SYNCED

    def test_enable_e2e_requires_login(self, app) -> None:
        with pytest.raises(AuthError):
            app.enable_e2e("pw")

    def test_second_device_adopts_salt(self, app, home, feed) -> None:
        salt = "c2FsdHNhbHRzYWx0c2FsdA=="
        _login(app, salt=salt)
        assert app.keys.salt() == salt
        key = app.unlock("pass").key
        assert key == derive_key("pass", salt, FAST_KDF)

    def test_validator_rejects_wrong_passphrase(self, app) -> None:
        salt = "c2FsdHNhbHRzYWx0c2FsdA=="
        validator = make_validator(derive_key("right", salt, FAST_KDF))
        _login(app, salt=salt, validator=validator)
        with pytest.raises(InvalidPassphraseError):
            app.unlock("wrong")
        assert app.unlock("right") is not None

    def test_salt_conflict_surfaces(self, app) -> None:
        app.store.set_kv(SALT_KEY, "bG9jYWxsb2NhbGxvY2FsbA==")
        with pytest.raises(SaltConflictError):
            _login(app, salt="cmVtb3RlcmVtb3RlcmVtbw==")
        assert app.status().state == SyncState.ERROR

    def test_deferred_salt_publication(self, app, feed) -> None:
        app.store.set_kv(SALT_KEY, "bG9jYWxsb2NhbGxvY2FsbA==")
        feed.fail_publish = NetworkError("offline")
        _login(app)
        assert app.store.get_kv(SALT_PUBLISH_PENDING) == "1"

        feed.fail_publish = None
        assert app.publish_pending_salt() is True
        assert feed.salt == "bG9jYWxsb2NhbGxvY2FsbA=="
        assert app.store.get_kv(SALT_PUBLISH_PENDING) is None

    def test_logout_is_offline_immediately(self, app, feed) -> None:
        _login(app)
        app.enable_e2e("pw")
        app.sync_now()
        assert app.status().state == SyncState.SYNCED
        app.logout()
        assert app.status().state == SyncState.OFFLINE
        assert app.keys.has_key() is False
        assert app.session.is_authenticated is False

    def test_session_survives_restart(self, app, home, feed) -> None:
        _login(app)
        again = NoteApp(home, config=app.config, feed=feed, kdf_params=FAST_KDF)
        assert again.session.current.token == "tok"

    def test_key_arrival_recovers_pending_notes(self, app, feed) -> None:
        salt = "c2FsdHNhbHRzYWx0c2FsdA=="
        _login(app, salt=salt)
        account_key = derive_key("pw", salt, FAST_KDF)
        feed.add_encrypted("n1", account_key, "Hello", position=10)
        app.sync_now()
        assert app.store.get("n1").decrypt_status == DecryptStatus.PENDING_KEY

        fetches = feed.calls["fetch"]
        app.unlock("pw")
        assert app.store.get("n1").body == "Hello"
        assert feed.calls["fetch"] == fetches


class TestReset:
    """Tests for reset_local."""

    def test_first_run_state(self, app, feed) -> None:
        _login(app)
        app.enable_e2e("pw")
        feed.add("remote", "r")
        app.save_note("local")
        app.sync_now()

        app.reset_local()
        assert app.store.count_notes() == 0
        assert app.reconciler.cursors.get("notes", SyncDirection.PULL) == 0
        assert app.reconciler.cursors.get("notes", SyncDirection.PUSH) == 0
        assert app.keys.has_key() is False
        assert app.keys.salt() is None
        assert app.status().state == SyncState.OFFLINE
        assert feed.calls["reset_remote"] == 0

    def test_remote_reset(self, app, feed) -> None:
        app.reset_local(remote=True)
        assert feed.calls["reset_remote"] == 1

    def test_remote_reset_failure_still_resets_locally(self, app, feed, monkeypatch) -> None:
        app.save_note("x")

        def boom():
            raise NetworkError("down")

        monkeypatch.setattr(feed, "reset_remote", boom)
        app.reset_local(remote=True)
        assert app.store.count_notes() == 0

    def test_waits_for_running_pass(self, app, feed) -> None:
        _login(app)
        feed.add("a", "x")
        entered = threading.Event()
        release = threading.Event()
        original = feed.fetch_changes

        def slow_fetch(*args):
            entered.set()
            release.wait(5)
            return original(*args)

        feed.fetch_changes = slow_fetch
        errors = []

        def run():
            try:
                app.sync_now()
            except Exception as exc:
                errors.append(exc)

        worker = threading.Thread(target=run)
        worker.start()
        assert entered.wait(5)
        threading.Timer(0.1, release.set).start()
        app.reset_local()
        worker.join(5)

        assert app.store.count_notes() == 0
        assert app.reconciler.cursors.get("notes", SyncDirection.PULL) == 0
        assert len(errors) == 1
