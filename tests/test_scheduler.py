"""Tests for the sync scheduler."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from conftest import SECRET_A, SECRET_B, SECRET_C
from totpkeeper.errors import SyncAuthError, SyncNetworkError, SyncServerError, SyncTimeout
from totpkeeper.models import Account, Credentials, SyncOutcome, SyncStatus
from totpkeeper.sync.scheduler import SyncScheduler

CREDS = Credentials(server_url="https://door.example.com", access_token="tok", username="org/alice")
T0 = datetime(2023, 11, 1, tzinfo=UTC)


class FakeRemote:
    def __init__(self, accounts=None, error=None):
        self.accounts = list(accounts or [])
        self.error = error
        self.fetch_calls = 0
        self.pushed = []
        self.gate: threading.Event | None = None
        self.entered = threading.Event()
        self.on_fetch = None

    def fetch_accounts(self, credentials):
        self.fetch_calls += 1
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.on_fetch is not None:
            self.on_fetch()
        if self.error is not None:
            raise self.error
        return list(self.accounts)

    def push_accounts(self, credentials, accounts):
        self.pushed.append(list(accounts))


def _remote_account(account_id, name, secret, at=T0):
    return Account(id=account_id, account_name=name, secret_key=secret, changed_at=at)


def _scheduler(store, remote, clock, **kwargs):
    kwargs.setdefault("credentials", CREDS)
    return SyncScheduler(store, remote, clock=clock, **kwargs)


def test_sync_inserts_remote_accounts(store, clock):
    remote = FakeRemote([_remote_account("r1", "server", SECRET_B)])
    scheduler = _scheduler(store, remote, clock)

    report = scheduler.sync_now()

    assert report.outcome == SyncOutcome.COMPLETED
    assert report.inserted == 1
    assert [a.id for a in store.list()] == ["r1"]
    state = scheduler.state
    assert state.status == SyncStatus.IDLE
    assert state.last_sync_at is not None
    assert state.last_error is None


def test_sync_keeps_local_accounts_and_pushes_them(store, clock):
    local_id = store.insert("offline", SECRET_A)
    remote = FakeRemote([_remote_account("r1", "server", SECRET_B)])
    scheduler = _scheduler(store, remote, clock)

    scheduler.sync_now()

    assert [a.id for a in store.list()] == ["r1", local_id]
    assert [a.id for a in remote.pushed[0]] == ["r1", local_id]


def test_no_push_when_already_in_step(store, clock):
    remote = FakeRemote([_remote_account("r1", "server", SECRET_B)])
    scheduler = _scheduler(store, remote, clock)
    scheduler.sync_now()
    scheduler.sync_now()
    assert remote.pushed == []


def test_last_writer_wins_by_timestamp(store, clock):
    local_id = store.insert("local name", SECRET_A)
    local = store.get(local_id)
    newer = local.changed_at + timedelta(seconds=10)
    remote = FakeRemote([_remote_account(local_id, "server name", SECRET_A, at=newer)])
    _scheduler(store, remote, clock).sync_now()
    assert store.get(local_id).account_name == "server name"


def test_concurrent_sync_calls_fetch_once(store, clock):
    remote = FakeRemote([_remote_account("r1", "server", SECRET_B)])
    remote.gate = threading.Event()
    scheduler = _scheduler(store, remote, clock)

    results = []
    worker = threading.Thread(target=lambda: results.append(scheduler.sync_now()))
    worker.start()
    assert remote.entered.wait(5)

    assert scheduler.state.in_flight
    second = scheduler.sync_now()
    remote.gate.set()
    worker.join(5)

    assert second.outcome == SyncOutcome.SKIPPED
    assert second.reason == "sync in progress"
    assert results[0].outcome == SyncOutcome.COMPLETED
    assert remote.fetch_calls == 1


@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (SyncNetworkError("no route"), "network"),
        (SyncAuthError("token expired"), "auth"),
        (SyncServerError("HTTP 500"), "server"),
        (SyncTimeout("timed out"), "timeout"),
    ],
)
def test_failure_leaves_store_untouched(store, clock, error, kind):
    store.insert("alice", SECRET_A)
    store.insert("bob", SECRET_B)
    before = store.list()
    revision = store.revision
    scheduler = _scheduler(store, FakeRemote(error=error), clock)

    report = scheduler.sync_now()

    assert report.outcome == SyncOutcome.FAILED
    assert report.error_kind == kind
    assert store.list() == before
    assert store.revision == revision
    state = scheduler.state
    assert state.status == SyncStatus.FAILED
    assert state.last_error == str(error)
    assert state.last_error_kind == kind


def test_push_failure_leaves_store_untouched(store, clock):
    store.insert("alice", SECRET_A)
    before = store.list()

    class PushFails(FakeRemote):
        def push_accounts(self, credentials, accounts):
            raise SyncServerError("write rejected")

    remote = PushFails([_remote_account("r1", "server", SECRET_B)])
    report = _scheduler(store, remote, clock).sync_now()
    assert report.outcome == SyncOutcome.FAILED
    assert store.list() == before


def test_recovers_after_failure(store, clock):
    remote = FakeRemote(error=SyncNetworkError("down"))
    scheduler = _scheduler(store, remote, clock)
    scheduler.sync_now()
    remote.error = None
    report = scheduler.sync_now()
    assert report.outcome == SyncOutcome.COMPLETED
    assert scheduler.state.status == SyncStatus.IDLE
    assert scheduler.state.last_error is None


def test_edits_during_fetch_are_merged(store, clock):
    remote = FakeRemote([_remote_account("r1", "server", SECRET_B)])
    added = []
    remote.on_fetch = lambda: added.append(store.insert("made during sync", SECRET_C))
    _scheduler(store, remote, clock).sync_now()
    assert [a.id for a in store.list()] == ["r1", added[0]]


def test_offline_is_noop(store, clock):
    remote = FakeRemote()
    report = _scheduler(store, remote, clock, connectivity=lambda: False).sync_now()
    assert report.outcome == SyncOutcome.SKIPPED
    assert report.reason == "offline"
    assert remote.fetch_calls == 0


def test_incomplete_credentials_is_noop(store, clock):
    remote = FakeRemote()
    creds = Credentials(server_url="https://door.example.com", access_token="", username="org/alice")
    report = _scheduler(store, remote, clock, credentials=creds).sync_now()
    assert report.reason == "credentials incomplete"
    assert remote.fetch_calls == 0


def test_credentials_callable_is_read_each_time(store, clock):
    current = {"creds": Credentials()}
    remote = FakeRemote()
    scheduler = _scheduler(store, remote, clock, credentials=lambda: current["creds"])
    assert scheduler.sync_now().outcome == SyncOutcome.SKIPPED
    current["creds"] = CREDS
    assert scheduler.sync_now().outcome == SyncOutcome.COMPLETED


def test_schedulers_have_independent_state(store, clock):
    failing = _scheduler(store, FakeRemote(error=SyncTimeout("slow")), clock)
    healthy = _scheduler(store, FakeRemote(), clock)
    failing.sync_now()
    healthy.sync_now()
    assert failing.state.status == SyncStatus.FAILED
    assert healthy.state.status == SyncStatus.IDLE


def test_state_accessor_returns_snapshot(store, clock):
    scheduler = _scheduler(store, FakeRemote(), clock)
    snapshot = scheduler.state
    snapshot.status = SyncStatus.SYNCING
    assert scheduler.state.status == SyncStatus.IDLE


def test_run_pending_follows_interval(store, clock):
    remote = FakeRemote()
    scheduler = _scheduler(store, remote, clock, interval_s=60)

    assert scheduler.run_pending() is not None
    assert remote.fetch_calls == 1
    clock.advance(30)
    assert scheduler.run_pending() is None
    assert scheduler.seconds_until_due() == pytest.approx(30)
    clock.advance(30)
    assert scheduler.run_pending() is not None
    assert remote.fetch_calls == 2


def test_resume_after_long_suspend_syncs_once(store, clock):
    remote = FakeRemote()
    scheduler = _scheduler(store, remote, clock, interval_s=60)
    scheduler.run_pending()
    clock.advance(600)
    scheduler.resume()
    scheduler.run_pending()
    scheduler.run_pending()
    assert remote.fetch_calls == 2


def test_request_refresh_runs_on_next_tick(store, clock):
    remote = FakeRemote()
    scheduler = _scheduler(store, remote, clock, interval_s=60)
    scheduler.run_pending()
    scheduler.request_refresh()
    assert scheduler.refresh_requested
    assert scheduler.seconds_until_due() <= 1.0
    scheduler.run_pending()
    assert remote.fetch_calls == 2
    assert not scheduler.refresh_requested


def test_connectivity_restored_triggers_sync(store, clock):
    online = {"value": False}
    remote = FakeRemote()
    scheduler = _scheduler(store, remote, clock, connectivity=lambda: online["value"], interval_s=60)
    scheduler.run_pending()
    assert remote.fetch_calls == 0

    online["value"] = True
    scheduler.on_connectivity_change(True)
    assert scheduler.refresh_requested
    scheduler.run_pending()
    assert remote.fetch_calls == 1


def test_timer_never_raises(store, clock):
    class Broken(FakeRemote):
        def fetch_accounts(self, credentials):
            raise KeyError("unexpected")

    scheduler = _scheduler(store, Broken(), clock)
    assert scheduler.run_pending() is None
    assert scheduler.state.status == SyncStatus.FAILED
    with pytest.raises(KeyError):
        scheduler.sync_now()


def test_background_thread_start_stop(store):
    remote = FakeRemote([_remote_account("r1", "server", SECRET_B)])
    scheduler = SyncScheduler(store, remote, credentials=CREDS, interval_s=60)
    scheduler.start()
    try:
        assert remote.entered.wait(5)
        assert scheduler.is_running
    finally:
        scheduler.stop(timeout=5)
    assert not scheduler.is_running
    assert remote.fetch_calls == 1
    assert scheduler.status()["status"] == "idle"


def test_sync_never_leaves_duplicate_accounts(store, clock):
    alice = store.insert("alice", SECRET_A)
    bob = store.insert("bob", SECRET_A)
    later = datetime(2030, 1, 1, tzinfo=UTC)
    remote = FakeRemote([
        _remote_account(alice, "alice", SECRET_A),
        _remote_account(bob, "alice", SECRET_A, at=later),
    ])

    report = _scheduler(store, remote, clock).sync_now()

    assert report.outcome == SyncOutcome.COMPLETED
    keys = [a.identity_key for a in store.list()]
    assert len(keys) == len(set(keys))
    assert store.get(bob).account_name == "bob"


def test_first_connectivity_signal_online_triggers_sync(store, clock):
    remote = FakeRemote()
    scheduler = _scheduler(store, remote, clock, interval_s=60)
    scheduler.on_connectivity_change(True)
    assert scheduler.refresh_requested
    scheduler.run_pending()
    assert remote.fetch_calls == 1
    assert not scheduler.refresh_requested
