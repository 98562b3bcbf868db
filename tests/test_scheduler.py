"""Tests for the auto-sync pollers."""

from __future__ import annotations

import asyncio

import pytest

from calsync.models import IntegrationPatch, IntegrationRecord, SyncStatus
from calsync.scheduler import AutoSyncPoller, AutoSyncScheduler, should_auto_sync
from tests.conftest import NOW_MS, USER_ID, connect_user, events_page

pytestmark = pytest.mark.unit

INTERVAL_MS = 15 * 60 * 1000


def _record(**fields) -> IntegrationRecord:
    return IntegrationRecord(refresh_token="r", **fields)


class TestShouldAutoSync:
    def test_disconnected_is_skipped(self):
        assert not should_auto_sync(None, now=NOW_MS, interval_ms=INTERVAL_MS)
        assert not should_auto_sync(IntegrationRecord(), now=NOW_MS, interval_ms=INTERVAL_MS)

    def test_persisted_syncing_status_is_left_to_the_lease(self):
        record = _record(last_sync_status=SyncStatus.SYNCING, last_synced_at=NOW_MS - 1000)

        assert not should_auto_sync(record, now=NOW_MS, interval_ms=INTERVAL_MS)
        assert should_auto_sync(record, now=NOW_MS, interval_ms=INTERVAL_MS, force=True)
        assert should_auto_sync(
            _record(last_sync_status=SyncStatus.SYNCING), now=NOW_MS, interval_ms=INTERVAL_MS
        )

    def test_never_synced_is_due(self):
        assert should_auto_sync(_record(), now=NOW_MS, interval_ms=INTERVAL_MS)

    def test_staleness_decides(self):
        fresh = _record(last_synced_at=NOW_MS - INTERVAL_MS + 1)
        stale = _record(last_synced_at=NOW_MS - INTERVAL_MS)

        assert not should_auto_sync(fresh, now=NOW_MS, interval_ms=INTERVAL_MS)
        assert should_auto_sync(stale, now=NOW_MS, interval_ms=INTERVAL_MS)
        assert should_auto_sync(fresh, now=NOW_MS, interval_ms=INTERVAL_MS, force=True)

    def test_errored_integration_is_retried(self):
        record = _record(last_sync_status=SyncStatus.ERROR, last_synced_at=NOW_MS - INTERVAL_MS)

        assert should_auto_sync(record, now=NOW_MS, interval_ms=INTERVAL_MS)


class TestAutoSyncPoller:
    def test_interval_must_be_positive(self, orchestrator):
        with pytest.raises(ValueError):
            AutoSyncPoller(orchestrator, USER_ID, interval_seconds=0)

    async def test_tick_runs_a_due_sync(self, orchestrator, store, google, clock):
        await connect_user(store)
        google.queue_events("c1", events_page([], next_sync_token="tok"))
        poller = AutoSyncPoller(orchestrator, USER_ID, clock=clock)

        summary = await poller.tick()

        assert summary is not None
        assert summary.synced_calendars == ["c1"]

    async def test_tick_skips_fresh_integration(self, orchestrator, store, google, clock):
        await connect_user(store, last_synced_at=NOW_MS - 1000)
        poller = AutoSyncPoller(orchestrator, USER_ID, clock=clock)

        assert await poller.tick() is None
        assert google.requests == []

    async def test_forced_tick_bypasses_min_interval(self, orchestrator, store, google, clock):
        await connect_user(store, last_synced_at=NOW_MS - 1000)
        google.queue_events("c1", events_page([], next_sync_token="tok"))
        poller = AutoSyncPoller(orchestrator, USER_ID, clock=clock)

        summary = await poller.tick(force=True)

        assert summary is not None

    async def test_lease_conflict_is_swallowed(self, orchestrator, store, google, clock):
        await connect_user(store)
        await store.acquire_sync_lease(USER_ID, "someone-else", 600)
        poller = AutoSyncPoller(orchestrator, USER_ID, clock=clock)

        assert await poller.tick() is None

    async def test_crashed_run_is_recovered_once_its_lease_expires(
        self, orchestrator, store, google, clock
    ):
        await connect_user(store, last_synced_at=NOW_MS - INTERVAL_MS)
        await store.acquire_sync_lease(USER_ID, "crashed-worker", 600)
        await store.update_integration(
            USER_ID,
            IntegrationPatch(last_sync_status=SyncStatus.SYNCING, last_sync_error="stale"),
        )
        poller = AutoSyncPoller(orchestrator, USER_ID, clock=clock)

        assert await poller.tick(force=True) is None
        assert google.requests == []

        clock.advance(3600 * 1000)
        google.queue_events("c1", events_page([], next_sync_token="tok"))

        summary = await poller.tick(force=True)

        assert summary is not None
        record = await store.load_integration(USER_ID)
        assert record.last_sync_status == SyncStatus.IDLE
        assert record.last_sync_error is None
        assert store.leases == {}

    async def test_loop_syncs_then_stops(self, orchestrator, store, google, clock):
        await connect_user(store)
        google.queue_events("c1", events_page([], next_sync_token="tok"))
        poller = AutoSyncPoller(orchestrator, USER_ID, interval_seconds=3600, clock=clock)

        poller.start()
        for _ in range(200):
            record = await store.load_integration(USER_ID)
            if record.last_synced_at is not None and record.last_sync_status == SyncStatus.IDLE:
                break
            await asyncio.sleep(0.01)
        assert poller.running

        await poller.stop()

        assert not poller.running
        assert len(google.event_requests("c1")) == 1
        assert (await store.load_integration(USER_ID)).last_sync_status == SyncStatus.IDLE


class TestAutoSyncScheduler:
    async def test_watch_is_idempotent_and_unwatch_stops(self, orchestrator, store):
        scheduler = AutoSyncScheduler(orchestrator, interval_seconds=3600)

        first = scheduler.watch(USER_ID)
        second = scheduler.watch(USER_ID)

        assert first is second
        assert scheduler.watched_user_ids == [USER_ID]
        assert scheduler.trigger(USER_ID) is True
        assert scheduler.trigger("nobody") is False

        await scheduler.shutdown()

        assert scheduler.watched_user_ids == []
        assert not first.running
