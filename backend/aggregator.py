"""CycleSafe Backend — Alert aggregation

Polls the backend cluster feed, the cached weather-derived alerts and the
official GeoJSON feeds, merges them by clusterId and publishes one
immutable Snapshot per completed cycle.

At most one cycle is in flight. Any trigger (timer tick, "maybe changed",
return to foreground, startup) cancels the running cycle and starts a new
one, so the published snapshot always comes from the newest cycle that
finished. Merging and publishing run with no await in between, so a
superseding trigger can only land while sources are still being fetched.
"""

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol, Sequence

from cache import KeyValueStore
from config import (
    POLL_INTERVAL_SEC,
    ALERTS_LIST_KEY, ALERTS_TOTAL_KEY, ALERTS_UPDATED_KEY, WEATHER_ALERTS_KEY,
)
from data_fetchers import last_known_location
from models import AlertRecord, Snapshot

logger = logging.getLogger("cyclesafe.aggregator")

Location = Optional[tuple[float, float]]
SnapshotListener = Callable[[Snapshot], None]


class AlertSource(Protocol):
    name: str

    async def fetch(self, location: Location, now: float) -> list[AlertRecord]: ...


class CycleState(str, Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    MERGING = "MERGING"
    PUBLISHED = "PUBLISHED"


def merge_alerts(records: Iterable[AlertRecord], now: float) -> list[AlertRecord]:
    """Drop expired alerts, keep the latest-expiring copy per clusterId, sort.

    On equal expiresAt the later record wins. Only expiry decides; other
    fields of the losing copy are not reconciled.
    """
    by_id: dict[str, AlertRecord] = {}
    for alert in records:
        if alert.expiresAt <= now or not alert.clusterId:
            continue
        prev = by_id.get(alert.clusterId)
        if prev is None or alert.expiresAt >= prev.expiresAt:
            by_id[alert.clusterId] = alert

    merged = list(by_id.values())
    merged.sort(key=lambda a: a.expiresAt, reverse=True)
    return merged


class AlertAggregator:
    """Owns the polling timer, the in-flight cycle and the last snapshot."""

    def __init__(
        self,
        store: KeyValueStore,
        backend: AlertSource,
        weather: AlertSource,
        official: Sequence[AlertSource] = (),
        interval: float = POLL_INTERVAL_SEC,
        location_provider: Optional[Callable[[], Location]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        # Concatenation order decides ties in merge_alerts
        self.sources: list[AlertSource] = [backend, weather, *official]
        self.interval = interval
        self._location_provider = location_provider or (lambda: last_known_location(store))
        self._clock = clock

        self.state = CycleState.IDLE
        self._snapshot = Snapshot()
        self._listeners: list[SnapshotListener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._generation = 0
        self._visible = True
        self._store_unsubs: list[Callable[[], None]] = []

    # ── lifecycle ──

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    def start(self):
        """Start polling on the running loop and kick one cycle immediately."""
        self.stop()
        self._loop = asyncio.get_running_loop()
        self._timer = self._loop.create_task(self._poll_loop())
        self._store_unsubs.append(self.store.subscribe(WEATHER_ALERTS_KEY, self._on_store_change))
        logger.info(f"Alert polling started (every {self.interval:.0f}s, {len(self.sources)} sources)")
        self.trigger_now()

    def stop(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._inflight is not None:
            self._inflight.cancel()
            self._inflight = None
        for unsub in self._store_unsubs:
            unsub()
        self._store_unsubs.clear()
        if self._loop is not None:
            logger.info("Alert polling stopped")
        self._loop = None
        self.state = CycleState.IDLE

    # ── triggers ──

    def trigger_now(self) -> asyncio.Task:
        """Start a fresh cycle, cancelling any cycle still fetching."""
        if self._inflight is not None and not self._inflight.done():
            logger.debug("Superseding in-flight alert cycle")
            self._inflight.cancel()
        self._generation += 1
        task = asyncio.get_running_loop().create_task(self._run_cycle(self._generation))
        self._inflight = task
        return task

    async def refresh(self) -> Optional[Snapshot]:
        """Run a cycle and wait for it; None if it was superseded."""
        task = self.trigger_now()
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    def notify_maybe_changed(self):
        """Something upstream may have changed; re-poll now. Thread-safe."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._trigger_if_running)

    def set_visible(self, visible: bool):
        """Foreground/background signal. Regaining visibility re-polls."""
        was_visible = self._visible
        self._visible = visible
        if visible and not was_visible:
            self.notify_maybe_changed()

    def _trigger_if_running(self):
        if self.running:
            self.trigger_now()

    def _on_store_change(self, key: str, value: Optional[str]):
        self.notify_maybe_changed()

    # ── subscribers ──

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── cycle ──

    async def _poll_loop(self):
        while True:
            await asyncio.sleep(self.interval)
            if self._visible:
                self.trigger_now()
            else:
                logger.debug("Skipping alert poll while not visible")

    async def _run_cycle(self, generation: int) -> Optional[Snapshot]:
        self.state = CycleState.FETCHING
        location = self._location_provider()
        fetched_at = self._clock()
        try:
            results = await asyncio.gather(
                *(source.fetch(location, fetched_at) for source in self.sources),
                return_exceptions=True,
            )
        except asyncio.CancelledError:
            logger.debug(f"Alert cycle {generation} cancelled")
            raise

        if generation != self._generation:
            return None

        self.state = CycleState.MERGING
        records: list[AlertRecord] = []
        for source, result in zip(self.sources, results):
            if isinstance(result, asyncio.CancelledError):
                continue
            if isinstance(result, BaseException):
                logger.warning(f"Alert source {getattr(source, 'name', source)} failed: {result}")
                continue
            records.extend(result)

        now = self._clock()
        merged = merge_alerts(records, now)
        snapshot = Snapshot(alerts=tuple(merged), total=len(merged), updatedAt=int(now * 1000))
        self._publish(snapshot)
        if self._inflight is asyncio.current_task():
            self._inflight = None
        logger.info(f"Alert cycle {generation}: {len(records)} fetched, {snapshot.total} published")
        return snapshot

    def _publish(self, snapshot: Snapshot):
        self._snapshot = snapshot
        self.store.set_many({
            ALERTS_LIST_KEY: json.dumps([a.model_dump(exclude_none=True) for a in snapshot.alerts], default=str),
            ALERTS_TOTAL_KEY: str(snapshot.total),
            ALERTS_UPDATED_KEY: str(snapshot.updatedAt),
        })
        self.state = CycleState.PUBLISHED
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Snapshot listener failed: {e}")
