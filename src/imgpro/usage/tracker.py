"""Per-site usage aggregation with periodic flushes to the billing database."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import UsageCounters, UsageEvent
from .billing import BillingSink
from .store import UsageStateStore

LOGGER = structlog.get_logger("imgpro.usage.tracker")
TRACER = trace.get_tracer("imgpro.usage")

FLUSH_COUNTER = GLOBAL_REGISTRY.register(Counter("imgpro_usage_flushes_total", "Usage flushes written to billing"))
FLUSH_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgpro_usage_flush_failures_total", "Usage flushes that failed to reach billing")
)
FLUSH_ALERT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgpro_usage_flush_alerts_total", "Flushes failing past the alert threshold")
)

DEFAULT_FLUSH_INTERVAL = 60.0
DEFAULT_FAILURE_ALERT_THRESHOLD = 5


class SiteUsageTracker:
    """Single writer for one site's counters.

    Events arrive on the tracker's own queue and are applied one at a time by
    its consumer task; every change is persisted before the next event is
    taken. ``alarm`` flushes the accumulated counters to the billing sink and
    subtracts exactly what was flushed, so events recorded while the billing
    write is in flight are kept for the next period.
    """

    def __init__(
        self,
        site_id: int,
        store: UsageStateStore,
        sink: Optional[BillingSink],
        *,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        failure_alert_threshold: int = DEFAULT_FAILURE_ALERT_THRESHOLD,
        queue_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.site_id = site_id
        self._store = store
        self._sink = sink
        self._flush_interval = flush_interval
        self._failure_alert_threshold = max(1, failure_alert_threshold)
        self._clock = clock
        self._queue: asyncio.Queue[UsageEvent] = asyncio.Queue(maxsize=max(1, queue_size))
        self._persist_lock = asyncio.Lock()
        self._consumer: Optional[asyncio.Task] = None
        self._recording = False

        self._initialized = False
        self._domain = ""
        self._requests = 0
        self._cache_hits = 0
        self._cache_misses = 0
        self._flush_failures = 0
        self.last_activity = clock()

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def snapshot(self) -> UsageCounters:
        return UsageCounters(
            site_id=self.site_id,
            domain=self._domain,
            requests=self._requests,
            cache_hits=self._cache_hits,
            cache_misses=self._cache_misses,
            consecutive_flush_failures=self._flush_failures,
        )

    def is_idle(self, now: float, idle_seconds: float) -> bool:
        return not self._recording and self._queue.empty() and now - self.last_activity >= idle_seconds

    async def start(self) -> None:
        """Rehydrate from the store and make sure a flush is scheduled."""
        if self.running:
            return
        await self.load()
        self._consumer = asyncio.create_task(self._consume(), name=f"usage-tracker-{self.site_id}")

    async def load(self) -> None:
        stored = await self._store.load(self.site_id)
        if stored is not None:
            self._domain = stored.domain
            self._requests = stored.requests
            self._cache_hits = stored.cache_hits
            self._cache_misses = stored.cache_misses
            self._flush_failures = stored.flush_failures
            self._initialized = bool(stored.domain)

        # An alarm that survived a restart keeps its original fire time.
        if self._sink is not None and await self._store.get_alarm(self.site_id) is None:
            await self._store.set_alarm(self.site_id, self._clock() + self._flush_interval)

    async def stop(self, timeout: float = 5.0) -> None:
        """Apply queued events, then stop the consumer."""
        if self._consumer is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("usage_tracker_drain_timeout", site_id=self.site_id, pending=self._queue.qsize())
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None

    def enqueue(self, event: UsageEvent) -> bool:
        """Hand an event to the consumer without waiting; ``False`` when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            self._recording = True
            try:
                await self.record(event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("usage_record_failed", site_id=self.site_id, domain=event.domain)
            finally:
                self._recording = False
                self._queue.task_done()

    async def record(self, event: UsageEvent) -> None:
        if not self._initialized:
            self._domain = event.domain
            self._initialized = True
        elif event.site_id != self.site_id:
            LOGGER.warning("usage_event_misaddressed", site_id=self.site_id, event_site_id=event.site_id)

        self._requests += 1
        if event.cache_hit:
            self._cache_hits += 1
        else:
            self._cache_misses += 1
        self.last_activity = self._clock()
        await self._persist_counters()

    async def _persist_counters(self, *, include_failures: bool = False) -> None:
        async with self._persist_lock:
            values = {
                "domain": self._domain,
                "requests": self._requests,
                "cache_hits": self._cache_hits,
                "cache_misses": self._cache_misses,
            }
            if include_failures:
                values["flush_failures"] = self._flush_failures
            await self._store.put(self.site_id, **values)

    async def _persist_failures(self) -> None:
        async with self._persist_lock:
            await self._store.put(self.site_id, flush_failures=self._flush_failures)

    async def alarm(self) -> None:
        """Flush accumulated usage; always leaves a next flush scheduled unless billing is unconfigured."""
        if self._sink is None:
            LOGGER.error("usage_billing_unconfigured", site_id=self.site_id, domain=self._domain)
            self._requests = 0
            self._cache_hits = 0
            self._cache_misses = 0
            async with self._persist_lock:
                await self._store.delete_all(self.site_id)
            return

        try:
            if self._requests == 0:
                return
            await self._flush(self._sink)
        finally:
            try:
                await self._store.set_alarm(self.site_id, self._clock() + self._flush_interval)
            except Exception:  # noqa: BLE001
                LOGGER.critical("usage_alarm_reschedule_failed", site_id=self.site_id, exc_info=True)

    async def _flush(self, sink: BillingSink) -> None:
        requests = self._requests
        cache_hits = self._cache_hits
        cache_misses = self._cache_misses
        now = int(self._clock())

        with TRACER.start_as_current_span("usage.flush") as span:
            span.set_attribute("imgpro.site_id", self.site_id)
            span.set_attribute("imgpro.requests", requests)
            try:
                await sink.record_usage(
                    self.site_id,
                    requests=requests,
                    cache_hits=cache_hits,
                    cache_misses=cache_misses,
                    now=now,
                )
            except Exception as exc:  # noqa: BLE001
                span.record_exception(exc)
                await self._record_flush_failure(exc, requests)
                return

            self._requests -= requests
            self._cache_hits -= cache_hits
            self._cache_misses -= cache_misses
            self._flush_failures = 0
            FLUSH_COUNTER.inc()
            try:
                await self._persist_counters(include_failures=True)
            except Exception:  # noqa: BLE001
                LOGGER.critical(
                    "usage_persist_after_flush_failed",
                    site_id=self.site_id,
                    flushed_requests=requests,
                    detail="billing updated but counters not persisted; a restart may re-flush this amount",
                    exc_info=True,
                )
                return

        LOGGER.info(
            "usage_flushed",
            site_id=self.site_id,
            domain=self._domain,
            requests=requests,
            cache_hits=cache_hits,
            cache_misses=cache_misses,
        )

    async def _record_flush_failure(self, exc: Exception, requests: int) -> None:
        self._flush_failures += 1
        FLUSH_FAILURE_COUNTER.inc()
        try:
            await self._persist_failures()
        except Exception:  # noqa: BLE001
            LOGGER.error("usage_failure_count_persist_failed", site_id=self.site_id, exc_info=True)

        LOGGER.error(
            "usage_flush_failed",
            site_id=self.site_id,
            domain=self._domain,
            requests=requests,
            consecutive_failures=self._flush_failures,
            error=str(exc),
        )
        if self._flush_failures >= self._failure_alert_threshold:
            FLUSH_ALERT_COUNTER.inc()
            LOGGER.error(
                "usage_flush_alert",
                site_id=self.site_id,
                domain=self._domain,
                consecutive_failures=self._flush_failures,
                threshold=self._failure_alert_threshold,
            )
