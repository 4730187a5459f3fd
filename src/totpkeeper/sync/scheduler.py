"""Periodic, connectivity-gated sync of the account store with the server.

State machine: idle -> syncing -> (idle | failed).

A single background thread wakes when the next sync is due (measured on the
monotonic clock, so a suspended process catches up on ``resume()`` rather
than trusting a frozen timer), when a refresh is requested, or when
connectivity comes back. Calls that arrive while a sync is running are
dropped, never queued. Errors are recorded in ``SyncState`` and never escape
the timer thread.

Each sync:
  1. fetch the remote list (bounded by the client's timeout)
  2. merge it with a snapshot of the store and push the merged list
  3. commit through ``AccountStore.reconcile``, which re-merges against the
     store as it is at that moment so edits made during the round trip
     survive
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

from totpkeeper.clock import Clock, system_clock, utc_now
from totpkeeper.errors import SyncError
from totpkeeper.models import (
    Account,
    Credentials,
    SyncOutcome,
    SyncReport,
    SyncState,
    SyncStatus,
)
from totpkeeper.store import AccountStore
from totpkeeper.sync.merge import MergeResult, merge_remote

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_S = 60.0
# How soon to retry a refresh request that arrived while a sync was running
REFRESH_POLL_S = 1.0


class RemoteSource(Protocol):
    def fetch_accounts(self, credentials: Credentials) -> list[Account]: ...

    def push_accounts(self, credentials: Credentials, accounts: list[Account]) -> None: ...


class SyncScheduler:
    """Drives syncs for one store. Each instance owns its own SyncState."""

    def __init__(
        self,
        store: AccountStore,
        remote: RemoteSource,
        credentials: Credentials | Callable[[], Credentials],
        connectivity: Callable[[], bool] | None = None,
        clock: Clock | None = None,
        interval_s: float = DEFAULT_INTERVAL_S,
    ) -> None:
        self._store = store
        self._remote = remote
        self._credentials = credentials if callable(credentials) else (lambda: credentials)
        self._connectivity = connectivity or (lambda: True)
        self._clock = clock or system_clock
        self.interval_s = interval_s

        self._state = SyncState()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None
        self._refresh_requested = False
        self._was_connected: bool | None = None
        self._next_due = self._clock.monotonic()

    # --- State ---

    @property
    def state(self) -> SyncState:
        """Snapshot of the current sync state."""
        with self._lock:
            return dataclasses.replace(self._state)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    @property
    def refresh_requested(self) -> bool:
        return self._refresh_requested

    def status(self) -> dict[str, Any]:
        state = self.state
        return {
            "running": self.is_running,
            "status": str(state.status),
            "last_sync_at": state.last_sync_at.isoformat() if state.last_sync_at else None,
            "last_error": state.last_error,
            "last_error_kind": state.last_error_kind,
            "interval_s": self.interval_s,
        }

    # --- Triggers ---

    def sync_now(self) -> SyncReport:
        """Run one sync unless gated; returns what happened.

        Offline, missing credentials, or a sync already in flight make this
        a no-op with a ``skipped`` report.
        """
        credentials = self._credentials()
        if not credentials.complete:
            return SyncReport(outcome=SyncOutcome.SKIPPED, reason="credentials incomplete")
        connected = bool(self._connectivity())
        self._observe_connectivity(connected)
        if not connected:
            return SyncReport(outcome=SyncOutcome.SKIPPED, reason="offline")

        with self._lock:
            if self._state.in_flight:
                logger.debug("Sync already in flight, dropping request")
                return SyncReport(outcome=SyncOutcome.SKIPPED, reason="sync in progress")
            self._state.status = SyncStatus.SYNCING
            self._refresh_requested = False

        try:
            merged = self._sync(credentials)
        except SyncError as e:
            logger.warning("Sync failed (%s): %s", e.kind, e)
            self._finish(error=str(e), error_kind=e.kind)
            return SyncReport(outcome=SyncOutcome.FAILED, reason=str(e), error_kind=e.kind)
        except Exception as e:
            self._finish(error=f"Unexpected sync failure: {e}", error_kind="server")
            raise

        self._finish()
        logger.info(
            "Sync complete: %d inserted, %d updated", len(merged.inserted), len(merged.updated)
        )
        return SyncReport(
            outcome=SyncOutcome.COMPLETED,
            inserted=len(merged.inserted),
            updated=len(merged.updated),
        )

    def request_refresh(self) -> None:
        """Ask for fresh data on the next tick, which is brought forward.

        An in-flight sync is never interrupted; the request waits for it.
        """
        self._refresh_requested = True
        self._wake.set()

    def on_connectivity_change(self, connected: bool) -> None:
        """Push-style connectivity signal; going online triggers a sync."""
        self._observe_connectivity(connected)

    def resume(self) -> None:
        """Call when the app returns from the background to re-check due time."""
        self._wake.set()

    # --- Timer ---

    def start(self) -> None:
        """Start the background timer thread. The first sync runs immediately."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._next_due = self._clock.monotonic()
        self._thread = threading.Thread(target=self._loop, name="sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started (every %.0fs)", self.interval_s)

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the timer thread, letting an in-flight sync finish."""
        self._stop_event.set()
        self._wake.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Sync scheduler stopped")

    def seconds_until_due(self) -> float:
        remaining = max(0.0, self._next_due - self._clock.monotonic())
        if self._refresh_requested:
            return min(remaining, REFRESH_POLL_S)
        return remaining

    def run_pending(self) -> SyncReport | None:
        """One timer step: sync if due or requested. Never raises."""
        if not (self._refresh_requested or self._clock.monotonic() >= self._next_due):
            return None
        self._next_due = self._clock.monotonic() + self.interval_s
        try:
            return self.sync_now()
        except Exception:
            logger.error("Unhandled error in timer-driven sync", exc_info=True)
            return None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            self._wake.wait(self.seconds_until_due())
            self._wake.clear()

    # --- Internals ---

    def _sync(self, credentials: Credentials) -> MergeResult:
        remote = self._remote.fetch_accounts(credentials)
        planned = merge_remote(self._store.list(), remote)
        if planned.needs_push:
            self._remote.push_accounts(credentials, planned.accounts)

        committed: list[MergeResult] = []

        def plan(current):
            result = merge_remote(current, remote)
            committed.append(result)
            return result.accounts

        self._store.reconcile(plan)
        return committed[-1]

    def _finish(self, error: str | None = None, error_kind: str | None = None) -> None:
        with self._lock:
            if error is None:
                self._state.status = SyncStatus.IDLE
                self._state.last_sync_at = utc_now(self._clock)
            else:
                self._state.status = SyncStatus.FAILED
            self._state.last_error = error
            self._state.last_error_kind = error_kind

    def _observe_connectivity(self, connected: bool) -> None:
        previous, self._was_connected = self._was_connected, connected
        # The first observation counts as a transition from offline.
        if connected and previous is not True:
            logger.info("Connectivity restored, scheduling sync")
            self.request_refresh()
