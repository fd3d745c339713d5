"""
SyncDaemon — the background sync worker.

Runs pull-then-push for the configured collection on a timer, or right
away when ``trigger()`` is called (key unlocked, note saved, user asked).
After a network failure the wait grows exponentially:

    delay = min(sync_interval * 2 ** failures, max_backoff)

and drops back to ``sync_interval`` after the next success. ``stop()``
wakes the worker, cancels an in-flight pass and joins the thread.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import RisuConfig
from .errors import AuthError, LocalIOError, NetworkError, RisuError, SyncAborted
from .models import SyncReport
from .reconciler import Reconciler

logger = logging.getLogger("risu.daemon")

JOIN_TIMEOUT = 5.0


class DaemonState:
    """Thread-safe counters and recent errors of the sync worker."""

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_sync: Optional[datetime] = None
        self.last_attempt: Optional[datetime] = None
        self.syncs_completed: int = 0
        self.notes_pulled: int = 0
        self.notes_pushed: int = 0
        self.consecutive_failures: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def snapshot(self) -> dict:
        """Serializable view of the current state."""
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "last_sync": self.last_sync.isoformat() if self.last_sync else None,
                "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
                "syncs_completed": self.syncs_completed,
                "notes_pulled": self.notes_pulled,
                "notes_pushed": self.notes_pushed,
                "consecutive_failures": self.consecutive_failures,
                "recent_errors": self.errors[-10:],
            }

    def record_sync(self, report: SyncReport) -> None:
        with self._lock:
            now = datetime.now(timezone.utc)
            self.last_attempt = now
            self.consecutive_failures = 0
            if report.coalesced or (report.pull is None and report.push is None):
                return
            self.last_sync = now
            self.syncs_completed += 1
            if report.pull:
                self.notes_pulled += report.pull.applied + report.pull.legacy
            if report.push:
                self.notes_pushed += report.push.uploaded

    def record_failure(self, error: str, count: bool = True) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc)
            self.last_attempt = ts
            if count:
                self.consecutive_failures += 1
            self.errors.append(f"[{ts.isoformat()}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]

    def mark_running(self, running: bool) -> None:
        with self._lock:
            self.running = running
            if running:
                self.started_at = datetime.now(timezone.utc)

    @property
    def failures(self) -> int:
        with self._lock:
            return self.consecutive_failures


class SyncDaemon:
    """Timer and on-demand driver for ``Reconciler.sync``.

    Args:
        reconciler: The Reconciler to drive.
        config: Interval and backoff settings.
        before_sync: Optional hook run before every pass (pending salt
            publication, token checks). Its RisuErrors are logged and
            do not prevent the pass.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        config: Optional[RisuConfig] = None,
        before_sync: Optional[Callable[[], None]] = None,
    ):
        self.reconciler = reconciler
        self.config = config or RisuConfig()
        self.state = DaemonState()
        self._before_sync = before_sync
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker. The first pass runs immediately."""
        if self.running:
            return
        self._stop_event.clear()
        self.reconciler.cancel_event.clear()
        self._wake.set()

        self.state.mark_running(True)

        self._thread = threading.Thread(target=self._loop, name="risu-sync", daemon=True)
        self._thread.start()
        logger.info(
            "Sync daemon started (interval %.0fs, max backoff %.0fs)",
            self.config.sync_interval, self.config.max_backoff,
        )

    def stop(self) -> None:
        """Stop promptly: wake the worker and cancel the running pass."""
        self._stop_event.set()
        self.reconciler.cancel_event.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=JOIN_TIMEOUT)
            if self._thread.is_alive():
                logger.warning("Sync worker did not stop within %.0fs", JOIN_TIMEOUT)
            self._thread = None
        self.state.mark_running(False)
        logger.info("Sync daemon stopped")

    def trigger(self) -> None:
        """Ask for a pass as soon as possible."""
        self._wake.set()

    def next_delay(self) -> float:
        failures = self.state.failures
        if failures == 0:
            return self.config.sync_interval
        return min(self.config.sync_interval * 2 ** failures, self.config.max_backoff)

    # -------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake.wait(timeout=self.next_delay())
            if self._stop_event.is_set():
                break
            self._wake.clear()
            self.run_once()

    def run_once(self) -> Optional[SyncReport]:
        """One pass with error accounting. Never raises."""
        if self._before_sync is not None:
            try:
                self._before_sync()
            except RisuError as exc:
                logger.warning("Pre-sync step failed: %s", exc)
                self.state.record_failure(f"pre-sync: {exc}", count=False)
            except Exception as exc:
                logger.exception("Pre-sync step crashed")
                self.state.record_failure(f"pre-sync: {exc}", count=False)

        try:
            report = self.reconciler.sync()
        except NetworkError as exc:
            self.state.record_failure(f"network: {exc}")
            logger.warning("Sync failed, next try in %.0fs", self.next_delay())
            return None
        except AuthError as exc:
            self.state.record_failure(f"auth: {exc}")
            return None
        except SyncAborted as exc:
            self.state.record_failure(f"aborted: {exc}", count=False)
            return None
        except LocalIOError as exc:
            logger.error("Local store failure, sync halted: %s", exc)
            self.state.record_failure(f"local storage: {exc}")
            return None
        except RisuError as exc:
            logger.error("Sync error: %s", exc)
            self.state.record_failure(str(exc))
            return None
        except Exception as exc:
            logger.exception("Unexpected sync failure")
            self.state.record_failure(f"unexpected: {exc}")
            return None

        self.state.record_sync(report)
        return report
