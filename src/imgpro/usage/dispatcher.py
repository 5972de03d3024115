"""Routes usage events to per-site trackers and drives their flush alarms."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Callable, Mapping, Optional, Set

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from ..common.schemas import UsageEvent
from ..common.settings import EdgeSettings
from .billing import BillingSink
from .store import UsageStateStore
from .tracker import SiteUsageTracker

LOGGER = structlog.get_logger("imgpro.usage.dispatcher")

USAGE_EVENTS_COUNTER = GLOBAL_REGISTRY.register(Counter("imgpro_usage_events_total", "Usage events accepted"))
USAGE_DROPPED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgpro_usage_events_dropped_total", "Usage events dropped before reaching a tracker")
)
TRACKERS_GAUGE = GLOBAL_REGISTRY.register(Gauge("imgpro_usage_trackers_active", "Trackers resident in memory"))

NEGATIVE_LOOKUP_TTL_SECONDS = 300.0
MAX_CACHED_DOMAINS = 10_000


class UsageDispatcher:
    """Owns the live ``SiteUsageTracker`` instances.

    ``submit`` only enqueues, so the request path never waits on usage
    bookkeeping. A router task hands each event to its site's tracker. Domains
    that need a billing lookup are resolved in their own task, with their
    events parked meanwhile, so a slow lookup never holds up other sites. A
    sweep task fires due flush alarms (including ones missed while the process
    was down), evicts idle trackers and expires negative lookups.
    """

    def __init__(
        self,
        store: UsageStateStore,
        sink: Optional[BillingSink],
        *,
        site_ids: Mapping[str, int] | None = None,
        flush_interval: float = 60.0,
        failure_alert_threshold: int = 5,
        queue_size: int = 1000,
        sweep_interval: float = 1.0,
        idle_seconds: float = 300.0,
        max_cached_domains: int = MAX_CACHED_DOMAINS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._sink = sink
        self._site_ids = {domain.lower(): site_id for domain, site_id in (site_ids or {}).items()}
        self._flush_interval = flush_interval
        self._failure_alert_threshold = failure_alert_threshold
        self._queue_size = max(1, queue_size)
        self._sweep_interval = max(0.01, sweep_interval)
        self._idle_seconds = idle_seconds
        self._max_cached_domains = max(1, max_cached_domains)
        self._clock = clock

        self._intake: asyncio.Queue[tuple[str, bool]] = asyncio.Queue(maxsize=self._queue_size)
        self._trackers: dict[int, SiteUsageTracker] = {}
        self._trackers_lock = asyncio.Lock()
        self._resolved: OrderedDict[str, int] = OrderedDict()
        self._unresolved: OrderedDict[str, float] = OrderedDict()
        self._parked: dict[str, list[bool]] = {}
        self._lookups: dict[str, asyncio.Task] = {}
        self._alarms_running: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    @classmethod
    def from_settings(cls, settings: EdgeSettings) -> "UsageDispatcher":
        sink = BillingSink(settings.billing_database_url) if settings.billing_database_url else None
        return cls(
            UsageStateStore(settings.usage_database_url),
            sink,
            site_ids=settings.site_ids,
            flush_interval=settings.usage_flush_interval_seconds,
            failure_alert_threshold=settings.usage_failure_alert_threshold,
            queue_size=settings.usage_queue_size,
            sweep_interval=settings.usage_sweep_interval_seconds,
            idle_seconds=settings.usage_idle_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self._sink is not None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cached_domains(self) -> int:
        return len(self._resolved) + len(self._unresolved)

    def tracker(self, site_id: int) -> Optional[SiteUsageTracker]:
        return self._trackers.get(site_id)

    async def start(self) -> None:
        """Open both databases and recover missed alarms.

        On failure everything opened so far is closed again and the error is
        raised; the dispatcher stays stopped.
        """
        if self._running:
            return
        try:
            await self._store.open()
            if self._sink is not None:
                await self._sink.open()
            else:
                LOGGER.warning("usage_billing_unconfigured", detail="usage events will be dropped")

            # Alarms that came due while the process was down fire now.
            await self.sweep()
        except Exception:
            await self._close_databases()
            raise
        self._running = True

        for coro, name in ((self._route_loop(), "usage-router"), (self._sweep_loop(), "usage-sweep")):
            task = asyncio.create_task(coro, name=name)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        LOGGER.info("usage_dispatcher_started", billing=self.enabled, sweep_interval=self._sweep_interval)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        try:
            await asyncio.wait_for(self._intake.join(), timeout=5.0)
        except asyncio.TimeoutError:
            LOGGER.warning("usage_intake_drain_timeout", pending=self._intake.qsize())
        lookups = list(self._lookups.values())
        if lookups:
            _, unfinished = await asyncio.wait(lookups, timeout=5.0)
            if unfinished:
                LOGGER.warning("usage_lookup_drain_timeout", domains=sorted(self._parked))

        pending = [*self._tasks, *lookups]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._lookups.clear()
        self._parked.clear()

        for tracker in list(self._trackers.values()):
            await tracker.stop()
        self._trackers.clear()
        TRACKERS_GAUGE.set(0)

        await self._close_databases()
        LOGGER.info("usage_dispatcher_stopped")

    async def _close_databases(self) -> None:
        if self._sink is not None:
            await self._sink.close()
        await self._store.close()

    def submit(self, domain: str, cache_hit: bool) -> bool:
        """Queue one served image for accounting; never blocks."""
        if self._sink is None or not self._running:
            USAGE_DROPPED_COUNTER.inc(reason="disabled")
            return False
        try:
            self._intake.put_nowait((domain.lower(), cache_hit))
        except asyncio.QueueFull:
            USAGE_DROPPED_COUNTER.inc(reason="intake_full")
            LOGGER.warning("usage_event_dropped", domain=domain, reason="intake_full")
            return False
        return True

    def cached_site(self, domain: str) -> tuple[bool, Optional[int]]:
        """``(True, site_id)`` when the answer is known without asking billing; ``site_id`` may be ``None``."""
        domain = domain.lower()
        if domain in self._site_ids:
            return True, self._site_ids[domain]
        if domain in self._resolved:
            self._resolved.move_to_end(domain)
            return True, self._resolved[domain]
        if self._sink is None:
            return True, None
        missed_at = self._unresolved.get(domain)
        if missed_at is not None:
            if self._clock() - missed_at < NEGATIVE_LOOKUP_TTL_SECONDS:
                return True, None
            del self._unresolved[domain]
        return False, None

    async def resolve_site(self, domain: str) -> Optional[int]:
        domain = domain.lower()
        known, site_id = self.cached_site(domain)
        if known:
            return site_id

        site_id = await self._sink.lookup_site_id(domain)
        if site_id is None:
            self._remember(self._unresolved, domain, self._clock())
        else:
            self._unresolved.pop(domain, None)
            self._remember(self._resolved, domain, site_id)
        return site_id

    def _remember(self, cache: OrderedDict, domain: str, value) -> None:
        cache[domain] = value
        cache.move_to_end(domain)
        while len(cache) > self._max_cached_domains:
            cache.popitem(last=False)

    async def tracker_for(self, site_id: int) -> SiteUsageTracker:
        tracker = self._trackers.get(site_id)
        if tracker is not None:
            return tracker
        async with self._trackers_lock:
            tracker = self._trackers.get(site_id)
            if tracker is None:
                tracker = SiteUsageTracker(
                    site_id,
                    self._store,
                    self._sink,
                    flush_interval=self._flush_interval,
                    failure_alert_threshold=self._failure_alert_threshold,
                    queue_size=self._queue_size,
                    clock=self._clock,
                )
                await tracker.start()
                self._trackers[site_id] = tracker
                TRACKERS_GAUGE.set(len(self._trackers))
        return tracker

    async def dispatch(self, domain: str, cache_hit: bool) -> bool:
        site_id = await self.resolve_site(domain)
        return await self._deliver(domain, site_id, cache_hit)

    async def _deliver(self, domain: str, site_id: Optional[int], cache_hit: bool) -> bool:
        if site_id is None:
            USAGE_DROPPED_COUNTER.inc(reason="unknown_site")
            LOGGER.debug("usage_site_unresolved", domain=domain)
            return False
        tracker = await self.tracker_for(site_id)
        if not tracker.enqueue(UsageEvent(site_id=site_id, domain=domain, cache_hit=cache_hit)):
            USAGE_DROPPED_COUNTER.inc(reason="tracker_full")
            LOGGER.warning("usage_event_dropped", domain=domain, site_id=site_id, reason="tracker_full")
            return False
        USAGE_EVENTS_COUNTER.inc()
        return True

    async def _route(self, domain: str, cache_hit: bool) -> None:
        known, site_id = self.cached_site(domain)
        if known:
            await self._deliver(domain, site_id, cache_hit)
            return

        parked = self._parked.setdefault(domain, [])
        if len(parked) >= self._queue_size:
            USAGE_DROPPED_COUNTER.inc(reason="lookup_backlog")
            LOGGER.warning("usage_event_dropped", domain=domain, reason="lookup_backlog")
            return
        parked.append(cache_hit)
        if domain not in self._lookups:
            self._lookups[domain] = asyncio.create_task(self._resolve_parked(domain), name=f"usage-lookup-{domain}")

    async def _resolve_parked(self, domain: str) -> None:
        try:
            site_id = await self.resolve_site(domain)
        except Exception:  # noqa: BLE001
            LOGGER.exception("usage_site_lookup_failed", domain=domain)
            site_id = None
        # Later events for this domain now hit the cache or start a fresh lookup.
        events = self._parked.pop(domain, [])
        self._lookups.pop(domain, None)
        for cache_hit in events:
            try:
                await self._deliver(domain, site_id, cache_hit)
            except Exception:  # noqa: BLE001
                USAGE_DROPPED_COUNTER.inc(reason="error")
                LOGGER.exception("usage_dispatch_failed", domain=domain)

    async def _route_loop(self) -> None:
        while True:
            domain, cache_hit = await self._intake.get()
            try:
                await self._route(domain, cache_hit)
            except Exception:  # noqa: BLE001
                USAGE_DROPPED_COUNTER.inc(reason="error")
                LOGGER.exception("usage_dispatch_failed", domain=domain)
            finally:
                self._intake.task_done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception:  # noqa: BLE001
                LOGGER.exception("usage_sweep_failed")

    async def sweep(self) -> None:
        """Fire every due alarm once, evict idle trackers and expire negative lookups."""
        now = self._clock()
        due = [site_id for site_id in await self._store.due_alarms(now) if site_id not in self._alarms_running]
        if due:
            await asyncio.gather(*(self._fire_alarm(site_id) for site_id in due))
        await self._evict_idle(now)
        self._expire_unresolved(now)

    def _expire_unresolved(self, now: float) -> None:
        expired = [d for d, missed_at in self._unresolved.items() if now - missed_at >= NEGATIVE_LOOKUP_TTL_SECONDS]
        for domain in expired:
            del self._unresolved[domain]

    async def _fire_alarm(self, site_id: int) -> None:
        self._alarms_running.add(site_id)
        try:
            tracker = await self.tracker_for(site_id)
            await tracker.alarm()
        except Exception:  # noqa: BLE001
            LOGGER.exception("usage_alarm_failed", site_id=site_id)
        finally:
            self._alarms_running.discard(site_id)

    async def _evict_idle(self, now: float) -> None:
        for site_id, tracker in list(self._trackers.items()):
            if site_id in self._alarms_running or not tracker.is_idle(now, self._idle_seconds):
                continue
            self._trackers.pop(site_id, None)
            TRACKERS_GAUGE.set(len(self._trackers))
            await tracker.stop()
            LOGGER.debug("usage_tracker_evicted", site_id=site_id)
