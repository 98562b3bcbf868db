"""Background auto-sync pollers.

One asyncio task per watched user wakes every ``interval_seconds`` (or
immediately after ``trigger()``) and runs a sync when the integration is
connected and stale. The sync lease decides whether another run is
already in flight.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from calsync.errors import CalendarSyncError, SyncInProgressError, SyncRateLimitedError
from calsync.models import IntegrationRecord, SyncSummary, now_ms
from calsync.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_AUTO_SYNC_INTERVAL_SECONDS = 15 * 60


def should_auto_sync(
    integration: IntegrationRecord | None,
    *,
    now: int,
    interval_ms: int,
    force: bool = False,
) -> bool:
    """Decide whether a poll tick should start a sync.

    Disconnected integrations are always skipped. A persisted ``syncing``
    status is not consulted: the run's lease rejects a live run and lets a
    crashed one be taken over. A forced tick ignores staleness; otherwise a
    never-synced integration is due at once and a synced one is due
    ``interval_ms`` after its last sync.
    """
    if integration is None or not integration.connected:
        return False
    if force or integration.last_synced_at is None:
        return True
    return now - integration.last_synced_at >= interval_ms


class AutoSyncPoller:
    """Periodic sync loop for one user."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        user_id: str,
        *,
        interval_seconds: float = DEFAULT_AUTO_SYNC_INTERVAL_SECONDS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._orchestrator = orchestrator
        self._user_id = user_id
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._force_sync_event = asyncio.Event()

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(
            self._run_sync_poller(), name=f"calsync-auto-sync-{self._user_id}"
        )
        logger.info(
            "Auto-sync poller started (user_id=%s, interval=%ds)",
            self._user_id,
            int(self._interval_seconds),
        )

    def trigger(self) -> None:
        """Wake the poller for an immediate, forced sync."""
        self._force_sync_event.set()

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def tick(self, *, force: bool = False) -> SyncSummary | None:
        """Run one poll step; returns the summary when a sync ran."""
        integration = await self._orchestrator.store.load_integration(self._user_id)
        if not should_auto_sync(
            integration,
            now=self._clock(),
            interval_ms=int(self._interval_seconds * 1000),
            force=force,
        ):
            return None
        try:
            return await self._orchestrator.run(self._user_id, enforce_min_interval=not force)
        except (SyncInProgressError, SyncRateLimitedError) as exc:
            logger.info("Auto-sync skipped for user %s: %s", self._user_id, exc)
            return None

    async def _run_sync_poller(self) -> None:
        force = False
        while True:
            try:
                await self.tick(force=force)
            except CalendarSyncError as exc:
                logger.warning("Auto-sync failed for user %s: %s", self._user_id, exc)
            except Exception as exc:
                logger.error("Auto-sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(
                    self._force_sync_event.wait(), timeout=self._interval_seconds
                )
                self._force_sync_event.clear()
                force = True
                logger.debug("Auto-sync poller: immediate sync triggered")
            except TimeoutError:
                force = False


class AutoSyncScheduler:
    """Owns the pollers of every watched user."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        interval_seconds: float = DEFAULT_AUTO_SYNC_INTERVAL_SECONDS,
    ) -> None:
        self._orchestrator = orchestrator
        self._interval_seconds = interval_seconds
        self._pollers: dict[str, AutoSyncPoller] = {}

    @property
    def watched_user_ids(self) -> list[str]:
        return sorted(self._pollers)

    def watch(self, user_id: str) -> AutoSyncPoller:
        poller = self._pollers.get(user_id)
        if poller is None:
            poller = AutoSyncPoller(
                self._orchestrator, user_id, interval_seconds=self._interval_seconds
            )
            self._pollers[user_id] = poller
        poller.start()
        return poller

    async def unwatch(self, user_id: str) -> None:
        poller = self._pollers.pop(user_id, None)
        if poller is not None:
            await poller.stop()

    def trigger(self, user_id: str) -> bool:
        poller = self._pollers.get(user_id)
        if poller is None:
            return False
        poller.trigger()
        return True

    async def shutdown(self) -> None:
        for user_id in list(self._pollers):
            await self.unwatch(user_id)
