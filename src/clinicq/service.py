"""
Queue service: the operations exposed to the front desk and the recalculation
pass run by the orchestrator.

Every mutation for a clinic happens under that clinic's lock, on entries
freshly loaded from the repository. Only entries that actually changed are
written back. Events are published after the lock is released.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .clock import Clock, SystemClock
from .config import QueueSettings
from .disruption import RECALCULATION, DisruptionDetector
from .errors import ConflictError, InvariantViolation, NotFoundError, ValidationError
from .estimators import EstimationContext, EstimatorChain, ResultCache
from .events import InMemoryEventBus
from .models import (
    AppointmentStatus,
    ClinicQueueConfig,
    Disruption,
    DomainEvent,
    EstimationResult,
    EventType,
    QueueEntry,
    QueueSummary,
    WaitlistEntry,
    WaitlistRequest,
)
from .notifications import LoggingNotificationSink, NotificationSink, notify_safely
from .predictor import Predictor
from .store import QueueRepository, QueueStore
from .strategies import (
    GapOutcome,
    ModeStrategy,
    check_positions,
    finalize_no_shows,
    freed_slots,
    strategy_for,
)
from .waitlist import WAITLIST, GapManager, WaitlistManager, confirm_hold

logger = logging.getLogger(__name__)

SCHEDULE = "schedule"
APPEND = "append"

PositionStrategy = Union[str, int]


@dataclass
class PassReport:
    clinic_id: str
    disruptions: int = 0
    no_shows: List[str] = field(default_factory=list)
    released_holds: List[str] = field(default_factory=list)
    promotions: List[str] = field(default_factory=list)
    reordered: List[str] = field(default_factory=list)
    estimates: Dict[str, EstimationResult] = field(default_factory=dict)


def _find(entries: Sequence[QueueEntry], entry_id: str) -> QueueEntry:
    for entry in entries:
        if entry.entry_id == entry_id:
            return entry
    raise NotFoundError(f"Entry {entry_id} not found", entry_id=entry_id)


def _minutes(delta: timedelta) -> float:
    return delta.total_seconds() / 60


class QueueService:
    def __init__(
        self,
        repository: QueueRepository,
        bus: Optional[InMemoryEventBus] = None,
        clock: Optional[Clock] = None,
        settings: Optional[QueueSettings] = None,
        predictor: Optional[Predictor] = None,
        notifier: Optional[NotificationSink] = None,
    ):
        self.clock = clock or SystemClock()
        self.settings = settings or QueueSettings()
        self.bus = bus or InMemoryEventBus()
        self.notifier = notifier or LoggingNotificationSink()
        self.store = QueueStore(repository, self.clock)
        self.waitlist = WaitlistManager(self.settings, self.clock)
        self.gaps = GapManager(self.waitlist, self.settings)
        self.detector = DisruptionDetector(self.settings)
        self.chain = EstimatorChain.default(self.settings, self.clock, predictor)
        self.cache = ResultCache(self.settings, self.clock)
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, clinic_id: str) -> asyncio.Lock:
        if clinic_id not in self._locks:
            self._locks[clinic_id] = asyncio.Lock()
        return self._locks[clinic_id]

    async def strategy(self, clinic_id: str) -> ModeStrategy:
        config = await self.store.config(clinic_id)
        return strategy_for(config, self.gaps, self.settings)

    # ------------------------------------------------------------------ helpers

    def _event(self, event_type: EventType, clinic_id: str, entry_id: Optional[str], **payload) -> DomainEvent:
        return DomainEvent(event_type, clinic_id, entry_id, self.clock.now(), payload)

    async def _publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            await self.bus.publish(event)

    async def _persist(self, entries: Sequence[QueueEntry], before: Dict[str, QueueEntry]) -> List[QueueEntry]:
        """Write back changed entries; a cancellation waits for the whole batch to land."""
        write = asyncio.ensure_future(self._write_changed(entries, before))
        try:
            return await asyncio.shield(write)
        except asyncio.CancelledError:
            await asyncio.wait({write})
            if write.exception() is not None:
                logger.error("Write interrupted by cancellation failed: %s", write.exception())
            else:
                logger.warning("Cancelled while saving %d entries; finished the write first", len(entries))
            raise

    async def _write_changed(
        self, entries: Sequence[QueueEntry], before: Dict[str, QueueEntry]
    ) -> List[QueueEntry]:
        saved = []
        for entry in entries:
            if before.get(entry.entry_id) != entry:
                await self.store.save(entry)
                saved.append(entry)
        return saved

    @staticmethod
    def _snapshot(entries: Sequence[QueueEntry]) -> Dict[str, QueueEntry]:
        return {e.entry_id: copy.copy(e) for e in entries}

    def _promotion_events(self, outcome: GapOutcome) -> List[DomainEvent]:
        events = []
        for gap in outcome.gaps:
            events.append(
                self._event(
                    EventType.SLOT_FREED,
                    gap.clinic_id,
                    gap.source_entry_id,
                    slot_start=gap.slot_start,
                    slot_end=gap.slot_end,
                )
            )
        for promotion in outcome.promotions:
            events.append(
                self._event(
                    EventType.WAITLIST_PROMOTED,
                    promotion.gap.clinic_id,
                    promotion.entry.entry_id,
                    kind=promotion.kind,
                    slot_start=promotion.gap.slot_start,
                    waitlist_id=promotion.waitlist_entry.waitlist_id if promotion.waitlist_entry else None,
                )
            )
        return events

    async def _notify_outcome(self, outcome: GapOutcome) -> None:
        for promotion in outcome.promotions:
            at = promotion.gap.slot_start.strftime("%H:%M")
            if promotion.created:
                message = (
                    f"A slot at {at} opened up. Confirm within "
                    f"{self.settings.waitlist_accept_window_minutes} minutes to keep it."
                )
            else:
                message = f"You can now be seen at {at}."
            await notify_safely(self.notifier, promotion.entry.patient_id, message)
        for entry in outcome.offers:
            await notify_safely(
                self.notifier,
                entry.patient_id,
                "An earlier slot is free. Come in now if you can and check in at the desk.",
            )

    # --------------------------------------------------------------- operations

    async def call_next_patient(
        self,
        clinic_id: str,
        staff_id: Optional[str] = None,
        now: Optional[datetime] = None,
        entry_id: Optional[str] = None,
    ) -> QueueEntry:
        """Move the next patient to in-progress; `entry_id` calls a specific patient instead."""
        now = now or self.clock.now()
        async with self.lock(clinic_id):
            entries = await self.store.entries(clinic_id, now.date())
            before = self._snapshot(entries)
            strategy = await self.strategy(clinic_id)
            pick = strategy.select_next(entries, now)
            if entry_id is not None:
                chosen = _find(entries, entry_id)
                if not chosen.is_present or not chosen.is_waiting:
                    raise ValidationError(f"Entry {entry_id} is not waiting in the clinic", entry_id=entry_id)
                override = pick is None or pick.entry_id != chosen.entry_id
                if override and pick is not None:
                    pick.skip_count += 1
            elif pick is None:
                raise NotFoundError(f"No eligible patient waiting in clinic {clinic_id}", clinic_id=clinic_id)
            else:
                chosen, override = pick, False

            chosen.transition(AppointmentStatus.IN_PROGRESS)
            chosen.called_at = now
            await self._persist(entries, before)

        self.cache.invalidate(chosen.entry_id)
        logger.info(
            "Called %s in clinic %s (staff=%s, late=%s, override=%s)",
            chosen.entry_id,
            clinic_id,
            staff_id,
            chosen.is_late,
            override,
        )
        await self._publish(
            [
                self._event(
                    EventType.PATIENT_CALLED,
                    clinic_id,
                    chosen.entry_id,
                    staff_id=staff_id,
                    is_late=chosen.is_late,
                    override=override,
                )
            ]
        )
        await notify_safely(self.notifier, chosen.patient_id, "It is your turn. Please proceed to the consultation room.")
        return chosen

    async def check_in(self, entry_id: str) -> QueueEntry:
        stored = await self.store.entry(entry_id)
        if stored.is_absent:
            return await self.mark_returned(entry_id)
        if stored.status == AppointmentStatus.NO_SHOW:
            return await self._late_after_no_show(stored)

        now = self.clock.now()
        events = []
        async with self.lock(stored.clinic_id):
            entries = await self.store.entries(stored.clinic_id, stored.appointment_date)
            before = self._snapshot(entries)
            entry = _find(entries, entry_id)
            if entry.status != AppointmentStatus.SCHEDULED:
                raise ValidationError(
                    f"Entry {entry_id} cannot check in from status {entry.status.value}", entry_id=entry_id
                )
            if entry.hold_expires_at is not None:
                confirm_hold(entry, self.waitlist, now)
            entry.is_present = True
            entry.checked_in_at = now
            entry.transition(AppointmentStatus.WAITING)

            strategy = await self.strategy(entry.clinic_id)
            placement = None
            filled_gap = False
            if entry.slot_released:
                placement = strategy.reinsert(entry, entries, now)
            elif entry.scheduled_start is not None and now < entry.scheduled_start:
                promotion = strategy.fill_with_early_arrival(entry, entries, now)
                if promotion is not None:
                    filled_gap = promotion.entry.entry_id == entry.entry_id
                    events.extend(self._promotion_events(GapOutcome(promotions=[promotion])))
            await self._persist(entries, before)

        logger.info("Checked in %s in clinic %s", entry_id, entry.clinic_id)
        events.insert(
            0,
            self._event(
                EventType.CHECKED_IN,
                entry.clinic_id,
                entry_id,
                scheduled_start=entry.scheduled_start,
                checked_in_at=now,
                placement=placement,
                filled_gap=filled_gap,
            ),
        )
        await self._publish(events)
        return entry

    async def mark_absent(self, entry_id: str, reason: Optional[str] = None) -> QueueEntry:
        stored = await self.store.entry(entry_id)
        now = self.clock.now()
        async with self.lock(stored.clinic_id):
            entry = await self.store.entry(entry_id)
            if not entry.is_waiting:
                raise ValidationError(
                    f"Entry {entry_id} cannot be marked absent from status {entry.status.value}", entry_id=entry_id
                )
            if entry.is_absent:
                raise ValidationError(f"Entry {entry_id} is already marked absent", entry_id=entry_id)
            entry.is_present = False
            entry.marked_absent_at = now
            entry.skip_count += 1
            await self.store.save(entry)

        self.cache.invalidate(entry_id)
        logger.info("Marked %s absent in clinic %s: %s", entry_id, entry.clinic_id, reason or "no reason given")
        await self._publish(
            [self._event(EventType.PATIENT_ABSENT, entry.clinic_id, entry_id, reason=reason or "absent")]
        )
        return entry

    async def mark_returned(self, entry_id: str) -> QueueEntry:
        stored = await self.store.entry(entry_id)
        if stored.status == AppointmentStatus.NO_SHOW:
            return await self._late_after_no_show(stored)

        now = self.clock.now()
        async with self.lock(stored.clinic_id):
            entries = await self.store.entries(stored.clinic_id, stored.appointment_date)
            before = self._snapshot(entries)
            entry = _find(entries, entry_id)
            if not entry.is_absent or not entry.is_waiting:
                raise ValidationError(f"Entry {entry_id} is not marked absent", entry_id=entry_id)
            entry.is_present = True
            entry.marked_absent_at = None
            if entry.checked_in_at is None:
                entry.checked_in_at = now
            if entry.status == AppointmentStatus.SCHEDULED:
                entry.transition(AppointmentStatus.WAITING)
            strategy = await self.strategy(entry.clinic_id)
            placement = strategy.reinsert(entry, entries, now)
            await self._persist(entries, before)

        logger.info("Entry %s returned to clinic %s (%s)", entry_id, entry.clinic_id, placement)
        await self._publish(
            [self._event(EventType.PATIENT_RETURNED, entry.clinic_id, entry_id, placement=placement)]
        )
        return entry

    async def _late_after_no_show(self, missed: QueueEntry) -> QueueEntry:
        """A no-show turning up later queues with walk-ins and waits on the waitlist for a slot."""
        now = self.clock.now()
        async with self.lock(missed.clinic_id):
            entries = await self.store.entries(missed.clinic_id, missed.appointment_date)
            suffix = sum(1 for e in entries if e.entry_id.startswith(f"{missed.entry_id}-late"))
            entry = QueueEntry(
                entry_id=f"{missed.entry_id}-late" + (f"{suffix + 1}" if suffix else ""),
                clinic_id=missed.clinic_id,
                patient_id=missed.patient_id,
                scheduled_start=missed.scheduled_start,
                scheduled_end=missed.scheduled_end,
                appointment_date=missed.appointment_date,
                status=AppointmentStatus.WAITING,
                is_present=True,
                checked_in_at=now,
                appointment_type=missed.appointment_type,
                is_emergency=missed.is_emergency,
                is_vip=missed.is_vip,
                estimated_duration_minutes=missed.estimated_duration_minutes,
                is_late=True,
                created_at=now,
                sequence=self.store.next_sequence(),
            )
            entry.slot_start = None
            entry.slot_end = None
            entry.queue_position = 1 + sum(1 for e in entries if not e.is_terminal)
            self.waitlist.add_returning(entry)
            await self.store.save(entry)

        logger.info("No-show %s arrived late; re-queued as %s", missed.entry_id, entry.entry_id)
        await self._publish(
            [self._event(EventType.PATIENT_RETURNED, entry.clinic_id, entry.entry_id, placement=WAITLIST)]
        )
        return entry

    async def add_to_queue(self, entry: QueueEntry, position_strategy: PositionStrategy = SCHEDULE) -> QueueEntry:
        explicit = isinstance(position_strategy, int) and not isinstance(position_strategy, bool)
        if not explicit and position_strategy not in (SCHEDULE, APPEND):
            raise ValidationError(f"Unknown position strategy {position_strategy!r}", entry_id=entry.entry_id)
        if explicit and position_strategy < 1:
            raise ValidationError(f"Queue position must be at least 1, got {position_strategy}")
        if not entry.is_walk_in and entry.scheduled_start is None:
            raise ValidationError("Scheduled entries need a start time", entry_id=entry.entry_id)

        now = self.clock.now()
        async with self.lock(entry.clinic_id):
            config = await self.store.config(entry.clinic_id)
            entries = await self.store.entries(entry.clinic_id, entry.appointment_date)
            if any(e.entry_id == entry.entry_id for e in entries):
                raise ConflictError(f"Entry {entry.entry_id} already queued", entry_id=entry.entry_id)
            self._check_capacity(entry, entries, config)

            before = self._snapshot(entries)
            entry.sequence = self.store.next_sequence()
            entry.created_at = entry.created_at or now
            if entry.is_walk_in and entry.checked_in_at is None:
                entry.is_present = True
                entry.checked_in_at = now
                entry.status = AppointmentStatus.WAITING

            strategy = await self.strategy(entry.clinic_id)
            ordered = strategy.order(entries + [entry], now)
            if position_strategy != SCHEDULE:
                ordered.remove(entry)
            if position_strategy == APPEND:
                ordered.append(entry)
            elif explicit:
                if position_strategy > len(ordered) + 1:
                    raise ValidationError(
                        f"Queue position {position_strategy} beyond end of queue ({len(ordered) + 1})",
                        entry_id=entry.entry_id,
                    )
                ordered.insert(position_strategy - 1, entry)
            for position, queued in enumerate(ordered, start=1):
                queued.queue_position = position

            await self.store.save(entry)
            await self._persist(entries, before)

        logger.info(
            "Added %s to clinic %s at position %d (%s)",
            entry.entry_id,
            entry.clinic_id,
            entry.queue_position,
            position_strategy,
        )
        await self._publish(
            [
                self._event(
                    EventType.PATIENT_ADDED,
                    entry.clinic_id,
                    entry.entry_id,
                    is_walk_in=entry.is_walk_in,
                    is_emergency=entry.is_emergency,
                    position=entry.queue_position,
                )
            ]
        )
        return entry

    @staticmethod
    def _check_capacity(entry: QueueEntry, entries: Sequence[QueueEntry], config: ClinicQueueConfig) -> None:
        if entry.is_walk_in or config.daily_capacity is None:
            return
        booked = sum(1 for e in entries if not e.is_walk_in and e.status != AppointmentStatus.CANCELLED)
        if booked >= config.daily_capacity:
            raise ConflictError(
                f"Clinic {config.clinic_id} is fully booked ({booked}/{config.daily_capacity})",
                entry_id=entry.entry_id,
            )

    async def complete(self, entry_id: str) -> QueueEntry:
        stored = await self.store.entry(entry_id)
        config = await self.store.config(stored.clinic_id)
        now = self.clock.now()
        async with self.lock(stored.clinic_id):
            entry = await self.store.entry(entry_id)
            entry.transition(AppointmentStatus.COMPLETED)
            entry.completed_at = now
            entry.is_present = False
            await self.store.save(entry)

        started = entry.called_at or entry.checked_in_at or now
        actual = round(_minutes(now - started), 1)
        expected = entry.estimated_duration_minutes or config.average_service_minutes
        self.cache.invalidate(entry_id)
        logger.info("Completed %s in clinic %s after %.1f min", entry_id, entry.clinic_id, actual)
        await self._publish(
            [
                self._event(
                    EventType.APPOINTMENT_COMPLETED,
                    entry.clinic_id,
                    entry_id,
                    actual_minutes=actual,
                    expected_minutes=expected,
                )
            ]
        )
        return entry

    async def cancel(self, entry_id: str, reason: Optional[str] = None) -> QueueEntry:
        stored = await self.store.entry(entry_id)
        async with self.lock(stored.clinic_id):
            entry = await self.store.entry(entry_id)
            if entry.hold_expires_at is not None and not entry.is_terminal:
                self.gaps.decline(entry)
            else:
                entry.transition(AppointmentStatus.CANCELLED)
            entry.is_present = False
            await self.store.save(entry)

        self.cache.invalidate(entry_id)
        logger.info("Cancelled %s in clinic %s: %s", entry_id, entry.clinic_id, reason or "no reason given")
        await self._publish(
            [self._event(EventType.APPOINTMENT_CANCELLED, entry.clinic_id, entry_id, reason=reason or "cancelled")]
        )
        return entry

    async def reorder(
        self,
        entry_id: str,
        new_position: int,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> QueueEntry:
        """Manual override of one entry's position; others shift to keep 1..N."""
        stored = await self.store.entry(entry_id)
        async with self.lock(stored.clinic_id):
            entries = await self.store.entries(stored.clinic_id, stored.appointment_date)
            before = self._snapshot(entries)
            entry = _find(entries, entry_id)
            if not entry.is_waiting:
                raise ValidationError(f"Entry {entry_id} is not waiting", entry_id=entry_id)
            active = sorted((e for e in entries if not e.is_terminal), key=lambda e: (e.queue_position, e.sequence))
            if not 1 <= new_position <= len(active):
                raise ValidationError(
                    f"Position {new_position} outside 1..{len(active)}", entry_id=entry_id
                )
            old_position = entry.queue_position
            if new_position == old_position:
                raise ValidationError(f"Entry {entry_id} is already at position {new_position}", entry_id=entry_id)
            active.remove(entry)
            active.insert(new_position - 1, entry)
            for position, queued in enumerate(active, start=1):
                queued.queue_position = position
            await self._persist(entries, before)

        logger.info(
            "Entry %s moved %d -> %d by %s: %s", entry_id, old_position, new_position, performed_by, reason
        )
        await self._publish(
            [
                self._event(
                    EventType.QUEUE_REORDERED,
                    entry.clinic_id,
                    entry_id,
                    source="manual",
                    performed_by=performed_by,
                    reason=reason or "manual override",
                    old_position=old_position,
                    new_position=new_position,
                )
            ]
        )
        return entry

    async def join_waitlist(self, request: WaitlistRequest) -> WaitlistEntry:
        config = await self.store.config(request.clinic_id)
        return self.waitlist.join(request, config)

    async def confirm_promotion(self, entry_id: str) -> QueueEntry:
        stored = await self.store.entry(entry_id)
        now = self.clock.now()
        async with self.lock(stored.clinic_id):
            entry = await self.store.entry(entry_id)
            confirm_hold(entry, self.waitlist, now)
            await self.store.save(entry)

        logger.info("Waitlist promotion %s confirmed", entry_id)
        await self._publish(
            [
                self._event(
                    EventType.WAITLIST_PROMOTED,
                    entry.clinic_id,
                    entry_id,
                    confirmed=True,
                    waitlist_id=entry.waitlist_id,
                )
            ]
        )
        return entry

    async def queue_summary(self, clinic_id: str, day: Optional[date] = None) -> QueueSummary:
        day = day or self.clock.now().date()
        entries = await self.store.entries(clinic_id, day)
        counts = {status: 0 for status in AppointmentStatus}
        for entry in entries:
            counts[entry.status] += 1
        waits = [
            _minutes(e.called_at - e.checked_in_at)
            for e in entries
            if e.called_at is not None and e.checked_in_at is not None
        ]
        return QueueSummary(
            clinic_id=clinic_id,
            day=day,
            total=len(entries),
            scheduled=counts[AppointmentStatus.SCHEDULED],
            waiting=counts[AppointmentStatus.WAITING],
            in_progress=counts[AppointmentStatus.IN_PROGRESS],
            completed=counts[AppointmentStatus.COMPLETED],
            cancelled=counts[AppointmentStatus.CANCELLED],
            no_show=counts[AppointmentStatus.NO_SHOW],
            absent=sum(1 for e in entries if e.is_absent and e.is_waiting),
            average_wait_minutes=round(sum(waits) / len(waits), 1) if waits else 0.0,
            queue_length=sum(1 for e in entries if e.is_waiting and e.is_present),
        )

    # --------------------------------------------------------------- estimation

    async def estimate_wait_time(self, entry_id: str, bypass_cache: bool = False) -> EstimationResult:
        if not bypass_cache:
            cached = self.cache.get(entry_id)
            if cached is not None:
                logger.debug("Estimate cache hit for %s", entry_id)
                return cached

        entry = await self.store.entry(entry_id)
        entries = await self.store.entries(entry.clinic_id, entry.appointment_date)
        config = await self.store.config(entry.clinic_id)
        context = await self._context(entry, entries, config)
        result = await self.chain.estimate(context)
        self.cache.put(entry_id, result)

        async with self.lock(entry.clinic_id):
            fresh = await self.store.entry(entry_id)
            fresh.estimate = result
            await self.store.save(fresh)
        return result

    async def _context(
        self, entry: QueueEntry, entries: Sequence[QueueEntry], config: ClinicQueueConfig
    ) -> EstimationContext:
        now = self.clock.now()
        history = await self.store.history(entry.clinic_id, entry.appointment_type)
        service_minutes = float(history.average_service_minutes or config.average_service_minutes)

        ahead = sum(
            1
            for e in entries
            if e.is_waiting and e.entry_id != entry.entry_id and 0 < e.queue_position < entry.queue_position
        )
        remaining = 0.0
        delay = 0.0
        for running in entries:
            if running.status != AppointmentStatus.IN_PROGRESS or running.called_at is None:
                continue
            expected = running.estimated_duration_minutes or service_minutes
            remaining += max(0.0, expected - _minutes(now - running.called_at))
            if running.slot_start is not None:
                delay = max(delay, _minutes(running.called_at - running.slot_start))
        staff = max(1, config.active_staff_count)
        return EstimationContext(
            entry=entry,
            now=now,
            patients_ahead=ahead,
            average_service_minutes=service_minutes,
            active_staff_count=staff,
            buffer_minutes=config.buffer_minutes,
            current_delay_minutes=delay + remaining / staff,
            history=history,
            ml_enabled=config.ml_enabled,
        )

    # ------------------------------------------------------------ recalculation

    async def recalculate(self, clinic_id: str, disruptions: Sequence[Disruption] = ()) -> PassReport:
        """One recalculation pass for a clinic. Raises InvariantViolation before writing if ordering breaks."""
        now = self.clock.now()
        report = PassReport(clinic_id=clinic_id, disruptions=len(disruptions))
        outcome = GapOutcome()
        async with self.lock(clinic_id):
            config = await self.store.config(clinic_id)
            strategy = strategy_for(config, self.gaps, self.settings)
            entries = await self.store.entries(clinic_id, now.date())
            before = self._snapshot(entries)
            checkpoint = self.gaps.checkpoint()

            try:
                report.no_shows = [e.entry_id for e in finalize_no_shows(entries, now, config.grace_period)]
                report.released_holds = [e.entry_id for e in self.gaps.release_expired_holds(entries, now)]
                self.waitlist.expire_stale(clinic_id, now)
                self.gaps.prune(clinic_id, now.date())
                for freed in freed_slots(entries):
                    outcome.extend(strategy.on_slot_freed(freed, entries, now))
                outcome.extend(strategy.resolve_gaps(clinic_id, entries, now))
                report.promotions = [p.entry.entry_id for p in outcome.promotions]

                changed = strategy.recompute_positions(entries, now)
                check_positions(entries, clinic_id)
            except InvariantViolation:
                self.gaps.rollback(checkpoint)
                raise
            report.reordered = [e.entry_id for e in changed if not e.is_terminal]
            await self._persist(entries, before)
            for entry in entries:
                if entry.is_terminal:
                    self.cache.invalidate(entry.entry_id)
            targets = [e for e in entries if e.is_waiting]

        report.estimates = await self._estimate_all(targets, entries, config)
        logger.info(
            "Recalculated clinic %s: %d disruptions, %d no-shows, %d promotions, %d reordered",
            clinic_id,
            report.disruptions,
            len(report.no_shows),
            len(report.promotions),
            len(report.reordered),
        )

        await self._notify_outcome(outcome)
        events = self._promotion_events(outcome)
        events.append(
            self._event(
                EventType.QUEUE_REORDERED,
                clinic_id,
                None,
                source=RECALCULATION,
                positions={e.entry_id: e.queue_position for e in entries if not e.is_terminal},
            )
        )
        events.append(
            self._event(
                EventType.ESTIMATION_UPDATED,
                clinic_id,
                None,
                estimates={k: v.predicted_minutes for k, v in report.estimates.items()},
            )
        )
        await self._publish(events)
        return report

    async def _estimate_all(
        self, targets: Sequence[QueueEntry], entries: Sequence[QueueEntry], config: ClinicQueueConfig
    ) -> Dict[str, EstimationResult]:
        if not targets:
            return {}
        contexts = [await self._context(entry, entries, config) for entry in targets]
        results = await asyncio.gather(*(self.chain.estimate(ctx) for ctx in contexts))
        estimates = dict(zip((e.entry_id for e in targets), results))
        for entry_id, result in estimates.items():
            self.cache.put(entry_id, result)

        clinic_id = targets[0].clinic_id
        async with self.lock(clinic_id):
            fresh = await self.store.entries(clinic_id, targets[0].appointment_date)
            for entry in fresh:
                result = estimates.get(entry.entry_id)
                if result is not None and not entry.is_terminal:
                    entry.estimate = result
                    await self.store.save(entry)
        return estimates

    async def sweep_clinics(self) -> List[Disruption]:
        """Overrunning appointments and lapsed clock deadlines across every clinic."""
        now = self.clock.now()
        found: List[Disruption] = []
        for clinic_id in await self.store.clinic_ids():
            config = await self.store.config(clinic_id)
            entries = await self.store.entries(clinic_id, now.date())
            found.extend(self.detector.sweep(entries, now, config.average_service_minutes))
            open_gaps = self.gaps.open_gaps(clinic_id, now)
            found.extend(self.detector.deadlines(entries, open_gaps, now, config.grace_period))
        return found
