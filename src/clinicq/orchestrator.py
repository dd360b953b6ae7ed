"""
Debounced, per-clinic recalculation driver.

Disruptive events for a clinic are buffered and a debounce timer is armed
(or re-armed). When it fires, the buffered batch is drained into a single
recalculation pass. A clinic never has two passes in flight: anything that
arrives while a pass runs buys exactly one follow-up pass. A periodic sweep
raises synthetic disruptions for appointments silently running over and for
clock deadlines (grace periods, waitlist holds, unanswered early offers)
that only a pass can act on.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from cachetools import TTLCache

from .clock import Clock, timestamp_timer
from .config import QueueSettings
from .errors import InvariantViolation
from .models import Disruption, DomainEvent
from .service import PassReport, QueueService

logger = logging.getLogger(__name__)


class EstimationOrchestrator:
    def __init__(
        self,
        service: QueueService,
        settings: Optional[QueueSettings] = None,
        clock: Optional[Clock] = None,
        history_size: int = 100,
    ):
        self.service = service
        self.bus = service.bus
        self.detector = service.detector
        self.settings = settings or service.settings
        self.clock = clock or service.clock
        self._seen: TTLCache = TTLCache(
            maxsize=self.settings.cache_maxsize,
            ttl=self.settings.seen_event_ttl_seconds,
            timer=timestamp_timer(self.clock),
        )
        self._pending: Dict[str, Dict[str, Disruption]] = {}
        self._debounce_tasks: Dict[str, asyncio.Task] = {}
        self._running: Dict[str, asyncio.Task] = {}
        self._rerun: Set[str] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.passes: Dict[str, int] = defaultdict(int)
        self.failed: Dict[str, int] = defaultdict(int)
        self.reports: Deque[PassReport] = deque(maxlen=history_size)
        self.failures: Deque[Tuple[str, Exception]] = deque(maxlen=history_size)

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    async def start(self) -> None:
        if self.running:
            return
        self._unsubscribe = self.bus.subscribe(self.handle_event)
        if self.settings.sweep_interval_seconds > 0:
            self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Estimation orchestrator started (debounce %.2fs, sweep every %.0fs)",
            self.settings.debounce_seconds,
            self.settings.sweep_interval_seconds,
        )

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        tasks = list(self._debounce_tasks.values()) + list(self._running.values())
        if self._sweeper is not None:
            tasks.append(self._sweeper)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._debounce_tasks.clear()
        self._running.clear()
        self._pending.clear()
        self._rerun.clear()
        self._sweeper = None
        logger.info("Estimation orchestrator stopped")

    async def handle_event(self, event: DomainEvent) -> None:
        if event.event_id in self._seen:
            logger.debug("Duplicate event %s ignored", event.event_id)
            return
        self._seen[event.event_id] = True
        disruption = self.detector.classify(event)
        if disruption is not None:
            self.submit(disruption)

    def submit(self, disruption: Disruption) -> None:
        if not self.running:
            logger.debug("Orchestrator stopped; dropping %s for %s", disruption.type.value, disruption.clinic_id)
            return
        clinic_id = disruption.clinic_id
        batch = self._pending.setdefault(clinic_id, {})
        batch.setdefault(disruption.key, disruption)
        logger.debug("Disruption %s queued for clinic %s", disruption.type.value, clinic_id)

        # Refresh the timer; the newest disruption restarts the window.
        existing = self._debounce_tasks.get(clinic_id)
        if existing is not None:
            existing.cancel()
        self._debounce_tasks[clinic_id] = asyncio.create_task(self._debounced(clinic_id))

    def pending(self, clinic_id: str) -> List[Disruption]:
        return list(self._pending.get(clinic_id, {}).values())

    async def _debounced(self, clinic_id: str) -> None:
        try:
            await asyncio.sleep(self.settings.debounce_seconds)
        except asyncio.CancelledError:
            logger.debug("Debounce for clinic %s refreshed or cancelled", clinic_id)
            raise
        if self._debounce_tasks.get(clinic_id) is asyncio.current_task():
            self._debounce_tasks.pop(clinic_id, None)
        self._trigger(clinic_id)

    def _trigger(self, clinic_id: str) -> None:
        if clinic_id in self._running:
            self._rerun.add(clinic_id)
            logger.debug("Pass in flight for clinic %s; one more queued", clinic_id)
            return
        self._running[clinic_id] = asyncio.create_task(self._run(clinic_id))

    async def _run(self, clinic_id: str) -> None:
        try:
            while True:
                self._rerun.discard(clinic_id)
                batch = list(self._pending.pop(clinic_id, {}).values())
                await self._pass(clinic_id, batch)
                if clinic_id not in self._rerun:
                    break
        finally:
            self._running.pop(clinic_id, None)

    async def _pass(self, clinic_id: str, batch: List[Disruption]) -> None:
        try:
            report = await self.service.recalculate(clinic_id, batch)
        except InvariantViolation as exc:
            logger.error("Recalculation halted for clinic %s: %s", clinic_id, exc)
            self.failed[clinic_id] += 1
            self.failures.append((clinic_id, exc))
            return
        except Exception as exc:
            logger.exception("Recalculation pass failed for clinic %s", clinic_id)
            self.failed[clinic_id] += 1
            self.failures.append((clinic_id, exc))
            return
        self.passes[clinic_id] += 1
        self.reports.append(report)

    async def drain(self) -> None:
        """Fire every armed debounce timer now and wait for the resulting passes."""
        for clinic_id, task in list(self._debounce_tasks.items()):
            task.cancel()
            self._debounce_tasks.pop(clinic_id, None)
            self._trigger(clinic_id)
        running = list(self._running.values())
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    async def sweep(self) -> List[Disruption]:
        found = await self.service.sweep_clinics()
        for disruption in found:
            self.submit(disruption)
        return found

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Overrun sweep failed")
