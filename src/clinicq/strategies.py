"""
Queue mode strategies: who is called next, how freed slots are filled, and
where a returning patient is re-inserted.

Fixed keeps the booked timetable and only moves patients into freed slots.
Fluid ranks everyone present by score. Hybrid selects like Fixed but offers
freed slots to later patients first and batches gap resolution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from . import scoring
from .config import QueueSettings
from .errors import InvariantViolation
from .models import AppointmentStatus, ClinicQueueConfig, Gap, QueueEntry, QueueMode
from .waitlist import GapManager, Promotion, would_displace

logger = logging.getLogger(__name__)

ORIGINAL_SLOT = "original_slot"
NEXT_SLOT = "next_slot"
WAITLIST = "waitlist"


@dataclass
class GapOutcome:
    gaps: List[Gap] = field(default_factory=list)
    promotions: List[Promotion] = field(default_factory=list)
    offers: List[QueueEntry] = field(default_factory=list)  # "come early" invitations

    def extend(self, other: "GapOutcome") -> None:
        self.gaps.extend(other.gaps)
        self.promotions.extend(other.promotions)
        self.offers.extend(other.offers)


def in_progress(entries: Sequence[QueueEntry]) -> List[QueueEntry]:
    running = [e for e in entries if e.status == AppointmentStatus.IN_PROGRESS]
    return sorted(running, key=lambda e: (e.called_at or e.checked_in_at or datetime.min, e.sequence))


def freed_slots(entries: Sequence[QueueEntry]) -> List[QueueEntry]:
    """Cancelled or no-show bookings whose slot has not been handed on yet."""
    return [
        e
        for e in entries
        if e.status in (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW)
        and not e.is_walk_in
        and not e.slot_released
        and e.slot_start is not None
        and e.called_at is None
    ]


def no_show_deadline(entry: QueueEntry, grace: timedelta) -> Optional[datetime]:
    """When an absent or never-arrived entry becomes a no-show; None if it cannot."""
    if not entry.is_waiting or entry.is_present or entry.hold_expires_at is not None:
        return None
    if entry.marked_absent_at is not None:
        return entry.marked_absent_at + grace
    if entry.checked_in_at is None and entry.scheduled_start is not None:
        base = entry.scheduled_start
        if entry.confirmed_at is not None and entry.confirmed_at > base:
            base = entry.confirmed_at
        return base + grace
    return None


def finalize_no_shows(entries: Sequence[QueueEntry], now: datetime, grace: timedelta) -> List[QueueEntry]:
    """Mark entries NO_SHOW once their grace period lapsed without presence."""
    finalized = []
    for entry in entries:
        deadline = no_show_deadline(entry, grace)
        if deadline is not None and now >= deadline:
            entry.transition(AppointmentStatus.NO_SHOW)
            finalized.append(entry)
            logger.info("Entry %s in clinic %s finalized as no-show", entry.entry_id, entry.clinic_id)
    return finalized


def check_positions(entries: Sequence[QueueEntry], clinic_id: str) -> None:
    active = [e for e in entries if not e.is_terminal]
    positions = sorted(e.queue_position for e in active)
    if any(p < 1 for p in positions):
        raise InvariantViolation(f"Non-positive queue position in clinic {clinic_id}", clinic_id=clinic_id)
    if positions != list(range(1, len(active) + 1)):
        raise InvariantViolation(
            f"Queue positions in clinic {clinic_id} are not a permutation of 1..{len(active)}: {positions}",
            clinic_id=clinic_id,
        )


class ModeStrategy:
    mode: QueueMode

    def __init__(self, gaps: GapManager, settings: QueueSettings):
        self.gaps = gaps
        self.waitlist = gaps.waitlist
        self.settings = settings

    @property
    def weights(self):
        return self.settings.weights

    def select_next(self, entries: Sequence[QueueEntry], now: datetime) -> Optional[QueueEntry]:
        raise NotImplementedError

    def order(self, entries: Sequence[QueueEntry], now: datetime) -> List[QueueEntry]:
        raise NotImplementedError

    def on_slot_freed(self, freed: QueueEntry, entries: List[QueueEntry], now: datetime) -> GapOutcome:
        raise NotImplementedError

    def resolve_gaps(self, clinic_id: str, entries: List[QueueEntry], now: datetime) -> GapOutcome:
        return GapOutcome()

    def fill_with_early_arrival(
        self, entry: QueueEntry, entries: List[QueueEntry], now: datetime
    ) -> Optional[Promotion]:
        return None

    def check_order(self, ordered: Sequence[QueueEntry], clinic_id: str) -> None:
        pass

    def recompute_positions(self, entries: Sequence[QueueEntry], now: datetime) -> List[QueueEntry]:
        """Renumber non-terminal entries 1..N; returns the entries whose position changed."""
        ordered = self.order(entries, now)
        clinic_id = ordered[0].clinic_id if ordered else ""
        self.check_order(ordered, clinic_id)
        changed = []
        for position, entry in enumerate(ordered, start=1):
            if entry.queue_position != position:
                entry.queue_position = position
                changed.append(entry)
        for entry in entries:
            if entry.is_terminal and entry.queue_position != 0:
                entry.queue_position = 0
                changed.append(entry)
        return changed

    def reinsert(self, entry: QueueEntry, entries: Sequence[QueueEntry], now: datetime) -> str:
        """Place a returning patient: original slot, then an open gap, then the waitlist."""
        if entry.slot_start is None:
            return ORIGINAL_SLOT
        if not entry.slot_released:
            entry.is_late = False
            return ORIGINAL_SLOT

        for gap in self.gaps.open_gaps(entry.clinic_id, now):
            if would_displace(entry, gap.slot_start, entries):
                continue
            self.gaps.assign(gap, entry)
            entry.slot_released = False
            entry.gap_filler = True
            entry.is_late = False
            logger.info("Returning patient %s moved into gap at %s", entry.entry_id, gap.slot_start)
            return NEXT_SLOT

        entry.is_late = True
        self.waitlist.add_returning(entry)
        logger.info("Returning patient %s lost the slot; queued with walk-ins and waitlisted", entry.entry_id)
        return WAITLIST

    def _consume_slots(self, chosen: QueueEntry, entries: Sequence[QueueEntry], now: datetime) -> None:
        # Calling someone else past an absent patient's start gives that slot away.
        limit = chosen.slot_start if not chosen.walk_in_priority and chosen.slot_start is not None else None
        for entry in entries:
            if entry.entry_id == chosen.entry_id or entry.is_present or not entry.is_waiting:
                continue
            if entry.is_walk_in or entry.slot_start is None or entry.slot_released:
                continue
            if entry.slot_start <= now and (limit is None or entry.slot_start < limit):
                entry.slot_released = True
                logger.debug("Slot of absent entry %s consumed by call of %s", entry.entry_id, chosen.entry_id)


class FixedStrategy(ModeStrategy):
    mode = QueueMode.FIXED

    def fill_with_early_arrival(
        self, entry: QueueEntry, entries: List[QueueEntry], now: datetime
    ) -> Optional[Promotion]:
        """Offer the earliest open gap before this patient's slot to the early arrivals."""
        if entry.walk_in_priority or entry.slot_start is None:
            return None
        earlier = [g for g in self.gaps.open_gaps(entry.clinic_id, now) if g.slot_start < entry.slot_start]
        if not earlier:
            return None
        return self.gaps.fill(earlier[0], entries, now, waitlist=False, walk_ins=False)

    def select_next(self, entries: Sequence[QueueEntry], now: datetime) -> Optional[QueueEntry]:
        candidates = [e for e in entries if scoring.is_candidate(e, now)]
        if not candidates:
            return None

        promoted = [
            e
            for e in candidates
            if e.waitlist_booking and not e.walk_in_priority and e.slot_start is not None and e.slot_start <= now
        ]
        scheduled = [e for e in candidates if not e.walk_in_priority and e.slot_start is not None]
        if promoted:
            chosen = min(promoted, key=lambda e: (e.slot_start, e.sequence))
        elif scheduled:
            chosen = min(scheduled, key=lambda e: (e.slot_start, e.sequence))
        else:
            chosen = scoring.rank(candidates, now, self.weights)[0]

        if chosen.is_late and scheduled:
            raise InvariantViolation(
                f"Late entry {chosen.entry_id} selected ahead of present scheduled patients",
                clinic_id=chosen.clinic_id,
            )
        self._consume_slots(chosen, entries, now)
        return chosen

    def order(self, entries: Sequence[QueueEntry], now: datetime) -> List[QueueEntry]:
        active = [e for e in entries if not e.is_terminal]
        waiting = [e for e in active if e.is_waiting]
        slotted = sorted(
            (e for e in waiting if not e.walk_in_priority and e.slot_start is not None),
            key=lambda e: (e.slot_start, e.sequence),
        )
        taken = {e.entry_id for e in slotted}
        rest = scoring.rank([e for e in waiting if e.entry_id not in taken], now, self.weights)
        return in_progress(active) + slotted + rest

    def check_order(self, ordered: Sequence[QueueEntry], clinic_id: str) -> None:
        late_seen: Optional[QueueEntry] = None
        for entry in ordered:
            if not entry.is_waiting:
                continue
            if entry.is_late and entry.is_present:
                late_seen = late_seen or entry
            elif late_seen is not None and entry.is_present and not entry.walk_in_priority:
                raise InvariantViolation(
                    f"Late entry {late_seen.entry_id} ordered ahead of scheduled patient {entry.entry_id}",
                    clinic_id=clinic_id,
                )

    def on_slot_freed(self, freed: QueueEntry, entries: List[QueueEntry], now: datetime) -> GapOutcome:
        outcome = GapOutcome()
        gap = self.gaps.open_gap(freed, now)
        if gap is None:
            return outcome
        outcome.gaps.append(gap)
        promotion = self.gaps.fill(gap, entries, now)
        if promotion is not None:
            outcome.promotions.append(promotion)
        return outcome

    def resolve_gaps(self, clinic_id: str, entries: List[QueueEntry], now: datetime) -> GapOutcome:
        outcome = GapOutcome()
        for gap in self.gaps.open_gaps(clinic_id, now):
            promotion = self.gaps.fill(gap, entries, now)
            if promotion is not None:
                outcome.promotions.append(promotion)
        return outcome


class HybridStrategy(FixedStrategy):
    mode = QueueMode.HYBRID

    def on_slot_freed(self, freed: QueueEntry, entries: List[QueueEntry], now: datetime) -> GapOutcome:
        # Gaps are only opened here; resolve_gaps fills the whole batch in slot order.
        outcome = GapOutcome()
        gap = self.gaps.open_gap(freed, now)
        if gap is None:
            return outcome
        outcome.gaps.append(gap)
        outcome.offers.extend(self._cascade(gap, entries, now))
        return outcome

    def resolve_gaps(self, clinic_id: str, entries: List[QueueEntry], now: datetime) -> GapOutcome:
        outcome = GapOutcome()
        patience = timedelta(minutes=self.settings.early_accept_wait_minutes)
        for gap in self.gaps.open_gaps(clinic_id, now):
            promotion = self.gaps.fill(gap, entries, now, waitlist=False, walk_ins=False)
            if promotion is None and (not gap.notified or now - gap.opened_at >= patience):
                gap.escalated = True
                promotion = self.gaps.fill(gap, entries, now, early_arrivals=False)
            if promotion is not None:
                outcome.promotions.append(promotion)
        return outcome

    def _cascade(self, gap: Gap, entries: Sequence[QueueEntry], now: datetime) -> List[QueueEntry]:
        upcoming = sorted(
            (
                e
                for e in entries
                if e.is_waiting
                and not e.is_present
                and not e.walk_in_priority
                and e.slot_start is not None
                and e.slot_start > now
                and e.slot_start > gap.slot_start
                and e.early_offer_sent_at is None
                and e.hold_expires_at is None
            ),
            key=lambda e: (e.slot_start, e.sequence),
        )
        offers = upcoming[: self.settings.cascade_size]
        for entry in offers:
            entry.early_offer_sent_at = now
            gap.notified.append(entry.entry_id)
        if offers:
            logger.info("Offered gap at %s to %d upcoming patients", gap.slot_start, len(offers))
        return offers


class FluidStrategy(ModeStrategy):
    mode = QueueMode.FLUID

    def select_next(self, entries: Sequence[QueueEntry], now: datetime) -> Optional[QueueEntry]:
        candidates = [e for e in entries if scoring.is_candidate(e, now)]
        if not candidates:
            return None
        chosen = scoring.rank(candidates, now, self.weights)[0]
        self._consume_slots(chosen, entries, now)
        return chosen

    def order(self, entries: Sequence[QueueEntry], now: datetime) -> List[QueueEntry]:
        active = [e for e in entries if not e.is_terminal]
        waiting = [e for e in active if e.is_waiting]
        return in_progress(active) + scoring.rank(waiting, now, self.weights)

    def on_slot_freed(self, freed: QueueEntry, entries: List[QueueEntry], now: datetime) -> GapOutcome:
        # Everyone shifts up on recompute; only the waitlist can claim the freed time.
        outcome = GapOutcome()
        gap = self.gaps.open_gap(freed, now)
        if gap is None:
            return outcome
        outcome.gaps.append(gap)
        promotion = self.gaps.fill(gap, entries, now, early_arrivals=False, walk_ins=False)
        if promotion is not None:
            outcome.promotions.append(promotion)
        return outcome

    def resolve_gaps(self, clinic_id: str, entries: List[QueueEntry], now: datetime) -> GapOutcome:
        outcome = GapOutcome()
        for gap in self.gaps.open_gaps(clinic_id, now):
            promotion = self.gaps.fill(gap, entries, now, early_arrivals=False, walk_ins=False)
            if promotion is not None:
                outcome.promotions.append(promotion)
        return outcome


STRATEGIES: Dict[QueueMode, type] = {
    QueueMode.FIXED: FixedStrategy,
    QueueMode.FLUID: FluidStrategy,
    QueueMode.HYBRID: HybridStrategy,
}


def strategy_for(config: ClinicQueueConfig, gaps: GapManager, settings: QueueSettings) -> ModeStrategy:
    return STRATEGIES[QueueMode(config.mode)](gaps, settings)
