"""
Waitlist and gap management: fill slots freed by cancellations and no-shows.

Promotion order for a freed slot is strict: a present patient who arrived
early for a later slot, then the top matching waitlist entry, then a present
walk-in. Waitlist entries rank by the lowest (priority, created_at) tuple.
"""

from __future__ import annotations

import copy
import itertools
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from . import scoring
from .clock import Clock
from .config import QueueSettings
from .errors import NotFoundError, ValidationError
from .models import (
    AppointmentStatus,
    ClinicQueueConfig,
    Gap,
    QueueEntry,
    WaitlistEntry,
    WaitlistRequest,
    WaitlistStatus,
)

logger = logging.getLogger(__name__)

EARLY_ARRIVAL = "early_arrival"
WAITLIST = "waitlist"
WALK_IN = "walk_in"


def would_displace(entry: QueueEntry, slot_start: datetime, entries: Sequence[QueueEntry]) -> bool:
    """True if a present patient booked before `entry` holds a slot at or after `slot_start`."""
    for other in entries:
        if other.entry_id == entry.entry_id or not other.is_waiting or not other.is_present:
            continue
        if other.walk_in_priority or other.scheduled_start is None or other.slot_start is None:
            continue
        if entry.scheduled_start is not None and other.scheduled_start >= entry.scheduled_start:
            continue
        if other.slot_start >= slot_start:
            return True
    return False


@dataclass
class Promotion:
    kind: str
    gap: Gap
    entry: QueueEntry
    waitlist_entry: Optional[WaitlistEntry] = None
    created: bool = False


@dataclass
class Checkpoint:
    """Gap and waitlist state captured before a recalculation pass mutates it."""

    gaps: Dict[str, List[Gap]]
    gap_state: Dict[str, Gap]
    waitlist_state: Dict[str, WaitlistEntry]


class WaitlistManager:
    def __init__(self, settings: QueueSettings, clock: Clock):
        self.settings = settings
        self.clock = clock
        self._entries: Dict[str, WaitlistEntry] = {}
        self._sequence = itertools.count(1)

    def join(self, request: WaitlistRequest, config: ClinicQueueConfig) -> WaitlistEntry:
        if not config.allow_overflow:
            raise ValidationError(f"Clinic {request.clinic_id} does not accept waitlist requests")
        if (
            request.preferred_start is not None
            and request.preferred_end is not None
            and request.preferred_start >= request.preferred_end
        ):
            raise ValidationError("Preferred time window is empty")
        priority = self.settings.default_waitlist_priority if request.priority is None else request.priority
        entry = WaitlistEntry(
            waitlist_id=uuid.uuid4().hex[:12],
            clinic_id=request.clinic_id,
            requested_date=request.requested_date,
            priority=priority,
            created_at=self.clock.now(),
            patient_id=request.patient_id,
            preferred_start=request.preferred_start,
            preferred_end=request.preferred_end,
            sequence=next(self._sequence),
        )
        self._entries[entry.waitlist_id] = entry
        logger.info("Waitlist join %s for clinic %s (priority %s)", entry.waitlist_id, entry.clinic_id, priority)
        return entry

    def add_returning(self, entry: QueueEntry) -> WaitlistEntry:
        """Queue a patient who held a slot that is gone, ahead of ordinary requests."""
        existing = self.for_source(entry.entry_id)
        if existing is not None:
            return existing
        wl = WaitlistEntry(
            waitlist_id=uuid.uuid4().hex[:12],
            clinic_id=entry.clinic_id,
            requested_date=entry.appointment_date,
            priority=self.settings.returned_waitlist_priority,
            created_at=self.clock.now(),
            patient_id=entry.patient_id,
            source_entry_id=entry.entry_id,
            sequence=next(self._sequence),
        )
        self._entries[wl.waitlist_id] = wl
        entry.waitlist_id = wl.waitlist_id
        return wl

    def get(self, waitlist_id: str) -> WaitlistEntry:
        try:
            return self._entries[waitlist_id]
        except KeyError:
            raise NotFoundError(f"Waitlist entry {waitlist_id} not found") from None

    def find(self, waitlist_id: str) -> Optional[WaitlistEntry]:
        return self._entries.get(waitlist_id)

    def for_source(self, entry_id: str) -> Optional[WaitlistEntry]:
        for wl in self._entries.values():
            if wl.source_entry_id == entry_id and wl.status == WaitlistStatus.WAITING:
                return wl
        return None

    def waiting(self, clinic_id: str) -> List[WaitlistEntry]:
        return sorted(
            (w for w in self._entries.values() if w.clinic_id == clinic_id and w.status == WaitlistStatus.WAITING),
            key=lambda w: (w.priority, w.created_at, w.sequence),
        )

    def candidates(
        self,
        clinic_id: str,
        slot_start: datetime,
        slot_end: Optional[datetime],
        exclude: Iterable[str] = (),
    ) -> List[WaitlistEntry]:
        skip = set(exclude)
        return [
            w
            for w in self.waiting(clinic_id)
            if w.waitlist_id not in skip and w.matches(clinic_id, slot_start, slot_end)
        ]

    def expire_stale(self, clinic_id: str, now: datetime) -> List[WaitlistEntry]:
        """Expire requests for past days and forget the clinic's past-day records."""
        expired = [wl for wl in self.waiting(clinic_id) if wl.requested_date < now.date()]
        for wl in expired:
            wl.status = WaitlistStatus.EXPIRED
        stale = [
            key for key, wl in self._entries.items() if wl.clinic_id == clinic_id and wl.requested_date < now.date()
        ]
        for key in stale:
            del self._entries[key]
        return expired

    def snapshot(self) -> Dict[str, WaitlistEntry]:
        return {key: copy.copy(wl) for key, wl in self._entries.items()}

    def restore(self, saved: Dict[str, WaitlistEntry]) -> None:
        for key in [k for k in self._entries if k not in saved]:
            del self._entries[key]
        for key, state in saved.items():
            if key in self._entries:
                vars(self._entries[key]).update(vars(state))
            else:
                self._entries[key] = state


class GapManager:
    def __init__(self, waitlist: WaitlistManager, settings: QueueSettings):
        self.waitlist = waitlist
        self.settings = settings
        self._gaps: Dict[str, List[Gap]] = {}

    def open_gap(self, freed: QueueEntry, now: datetime) -> Optional[Gap]:
        if freed.slot_start is None or freed.is_walk_in:
            return None
        if freed.slot_end is not None and freed.slot_end <= now:
            return None  # slot already in the past
        gaps = self._gaps.setdefault(freed.clinic_id, [])
        for gap in gaps:
            if gap.source_entry_id == freed.entry_id:
                return gap
        gap = Gap(
            clinic_id=freed.clinic_id,
            slot_start=freed.slot_start,
            slot_end=freed.slot_end,
            source_entry_id=freed.entry_id,
            opened_at=now,
        )
        gaps.append(gap)
        freed.slot_released = True
        logger.info("Gap opened in clinic %s at %s (from %s)", gap.clinic_id, gap.slot_start, freed.entry_id)
        return gap

    def gaps(self, clinic_id: str) -> List[Gap]:
        return list(self._gaps.get(clinic_id, []))

    def open_gaps(self, clinic_id: str, now: Optional[datetime] = None) -> List[Gap]:
        gaps = [g for g in self._gaps.get(clinic_id, []) if g.status == "open"]
        if now is not None:
            for gap in gaps:
                if gap.slot_end is not None and gap.slot_end <= now:
                    gap.status = "expired"
            gaps = [g for g in gaps if g.status == "open"]
        return sorted(gaps, key=lambda g: g.slot_start)

    def prune(self, clinic_id: str, day: date) -> None:
        """Forget gaps from days before `day`."""
        gaps = self._gaps.get(clinic_id)
        if gaps:
            self._gaps[clinic_id] = [g for g in gaps if g.slot_start.date() >= day]

    def checkpoint(self) -> Checkpoint:
        return Checkpoint(
            gaps={clinic_id: list(gaps) for clinic_id, gaps in self._gaps.items()},
            gap_state={g.gap_id: copy.deepcopy(g) for gaps in self._gaps.values() for g in gaps},
            waitlist_state=self.waitlist.snapshot(),
        )

    def rollback(self, checkpoint: Checkpoint) -> None:
        """Undo gap and waitlist changes made since `checkpoint` was taken."""
        self._gaps = {clinic_id: list(gaps) for clinic_id, gaps in checkpoint.gaps.items()}
        for gaps in self._gaps.values():
            for gap in gaps:
                vars(gap).update(vars(copy.deepcopy(checkpoint.gap_state[gap.gap_id])))
        self.waitlist.restore(checkpoint.waitlist_state)

    def gap_filled_by(self, entry_id: str) -> Optional[Gap]:
        for gaps in self._gaps.values():
            for gap in gaps:
                if gap.filled_by == entry_id:
                    return gap
        return None

    def fill(
        self,
        gap: Gap,
        entries: List[QueueEntry],
        now: datetime,
        early_arrivals: bool = True,
        waitlist: bool = True,
        walk_ins: bool = True,
    ) -> Optional[Promotion]:
        if gap.status != "open":
            return None

        if early_arrivals:
            early = self._early_arrival(gap, entries, now)
            if early is not None:
                self.assign(gap, early)
                early.gap_filler = True
                logger.info("Gap %s filled by early arrival %s", gap.gap_id, early.entry_id)
                return Promotion(EARLY_ARRIVAL, gap, early)

        if waitlist:
            for wl in self.waitlist.candidates(gap.clinic_id, gap.slot_start, gap.slot_end, exclude=gap.declined):
                promotion = self._promote_waitlist(gap, wl, entries, now)
                if promotion is not None:
                    return promotion

        if walk_ins:
            walk_in = self._walk_in(gap, entries, now)
            if walk_in is not None:
                self.assign(gap, walk_in)
                walk_in.gap_filler = True
                logger.info("Gap %s filled by walk-in %s", gap.gap_id, walk_in.entry_id)
                return Promotion(WALK_IN, gap, walk_in)
        return None

    def release_expired_holds(self, entries: Sequence[QueueEntry], now: datetime) -> List[QueueEntry]:
        """Cancel unconfirmed waitlist promotions and reopen their gaps."""
        released = []
        for entry in entries:
            if entry.hold_expires_at is None or entry.hold_expires_at > now or entry.is_terminal:
                continue
            self.decline(entry)
            logger.info("Waitlist hold on %s expired unconfirmed", entry.entry_id)
            released.append(entry)
        return released

    def decline(self, entry: QueueEntry) -> None:
        """Cancel a held promotion; the waitlist entry goes back to the pool and the gap reopens."""
        entry.transition(AppointmentStatus.CANCELLED)
        entry.hold_expires_at = None
        entry.slot_released = True
        wl = self.waitlist.find(entry.waitlist_id) if entry.waitlist_id else None
        if wl is not None:
            wl.status = WaitlistStatus.WAITING
            wl.promoted_appointment_id = None
        gap = self.gap_filled_by(entry.entry_id)
        if gap is not None:
            gap.status = "open"
            gap.filled_by = None
            if wl is not None:
                gap.declined.append(wl.waitlist_id)

    def assign(self, gap: Gap, entry: QueueEntry) -> None:
        entry.slot_start = gap.slot_start
        entry.slot_end = gap.slot_end
        gap.status = "filled"
        gap.filled_by = entry.entry_id

    def _early_arrival(self, gap: Gap, entries: Sequence[QueueEntry], now: datetime) -> Optional[QueueEntry]:
        early = [
            e
            for e in entries
            if scoring.is_candidate(e, now)
            and not e.walk_in_priority
            and e.slot_start is not None
            and e.slot_start > gap.slot_start
        ]
        if not early:
            return None
        return min(early, key=lambda e: (e.slot_start, e.sequence))

    def _walk_in(self, gap: Gap, entries: Sequence[QueueEntry], now: datetime) -> Optional[QueueEntry]:
        walk_ins = [e for e in entries if scoring.is_candidate(e, now) and e.walk_in_priority and not e.gap_filler]
        if not walk_ins:
            return None
        return scoring.rank(walk_ins, now, self.settings.weights)[0]

    def _promote_waitlist(
        self, gap: Gap, wl: WaitlistEntry, entries: List[QueueEntry], now: datetime
    ) -> Optional[Promotion]:
        if wl.source_entry_id is not None:
            source = next((e for e in entries if e.entry_id == wl.source_entry_id), None)
            if source is None or source.is_terminal:
                wl.status = WaitlistStatus.EXPIRED
                return None
            if would_displace(source, gap.slot_start, entries):
                return None
            self.assign(gap, source)
            source.is_late = False
            source.gap_filler = True
            wl.status = WaitlistStatus.PROMOTED
            wl.promoted_appointment_id = source.entry_id
            logger.info("Gap %s given back to returning patient %s", gap.gap_id, source.entry_id)
            return Promotion(WAITLIST, gap, source, wl)

        entry = QueueEntry(
            entry_id=f"wl-{wl.waitlist_id}",
            clinic_id=gap.clinic_id,
            patient_id=wl.patient_id,
            scheduled_start=gap.slot_start,
            scheduled_end=gap.slot_end,
            appointment_date=gap.slot_start.date(),
            waitlist_id=wl.waitlist_id,
            waitlist_booking=True,
            hold_expires_at=now + timedelta(minutes=self.settings.waitlist_accept_window_minutes),
            created_at=now,
        )
        if any(e.entry_id == entry.entry_id for e in entries):
            entry.entry_id = f"wl-{wl.waitlist_id}-{uuid.uuid4().hex[:6]}"
        self.assign(gap, entry)
        wl.status = WaitlistStatus.HELD
        wl.promoted_appointment_id = entry.entry_id
        entries.append(entry)
        logger.info("Waitlist %s promoted into gap %s as %s", wl.waitlist_id, gap.gap_id, entry.entry_id)
        return Promotion(WAITLIST, gap, entry, wl, created=True)


def confirm_hold(entry: QueueEntry, waitlist: WaitlistManager, now: datetime) -> None:
    if entry.hold_expires_at is None:
        raise ValidationError(f"Entry {entry.entry_id} has no pending waitlist hold", entry_id=entry.entry_id)
    entry.hold_expires_at = None
    entry.confirmed_at = now
    if entry.waitlist_id:
        wl = waitlist.get(entry.waitlist_id)
        wl.status = WaitlistStatus.PROMOTED
