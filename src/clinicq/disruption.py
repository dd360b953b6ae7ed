"""
Classify domain events as disruptive (needing a recalculation) or not.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from .config import QueueSettings
from .models import AppointmentStatus, Disruption, DisruptionType, DomainEvent, EventType, Gap, QueueEntry
from .strategies import no_show_deadline

logger = logging.getLogger(__name__)

RECALCULATION = "recalculation"


class DisruptionDetector:
    """Stateless rules; the only state is the thresholds it was built with."""

    def __init__(self, settings: QueueSettings):
        self.settings = settings

    def classify(self, event: DomainEvent) -> Optional[Disruption]:
        kind = self._kind(event)
        if kind is None:
            logger.debug("Event %s for %s is not disruptive", event.event_type.value, event.entry_id)
            return None
        return Disruption(
            type=kind,
            clinic_id=event.clinic_id,
            timestamp=event.occurred_at,
            entry_id=event.entry_id,
            reason=str(event.payload.get("reason", event.event_type.value)),
            event_id=event.event_id,
        )

    def _kind(self, event: DomainEvent) -> Optional[DisruptionType]:
        payload = event.payload
        etype = event.event_type

        if etype == EventType.PATIENT_CALLED:
            if payload.get("override"):
                return DisruptionType.MANUAL_OVERRIDE
            if payload.get("is_late"):
                return DisruptionType.LATE_PATIENT_CALLED
            return DisruptionType.PATIENT_CALLED
        if etype == EventType.PATIENT_ABSENT:
            return DisruptionType.NO_SHOW_DETECTED
        if etype == EventType.PATIENT_RETURNED:
            return DisruptionType.PATIENT_RETURNED
        if etype == EventType.QUEUE_REORDERED:
            if payload.get("source") == RECALCULATION:
                return None
            return DisruptionType.QUEUE_REORDERED
        if etype == EventType.CHECKED_IN:
            if payload.get("filled_gap"):
                return DisruptionType.EARLY_CHECK_IN
            return DisruptionType.LATE_ARRIVAL if self._is_late_check_in(payload) else None
        if etype == EventType.APPOINTMENT_COMPLETED:
            return DisruptionType.DURATION_DEVIATION if self._deviates(payload) else None
        if etype == EventType.APPOINTMENT_CANCELLED:
            return DisruptionType.SLOT_FREED
        if etype == EventType.PATIENT_ADDED:
            if payload.get("is_walk_in") or payload.get("is_emergency"):
                return DisruptionType.WALK_IN_ADDED
            return None
        # Slot, promotion and estimation events are emitted by recalculation itself.
        return None

    def _is_late_check_in(self, payload) -> bool:
        scheduled: Optional[datetime] = payload.get("scheduled_start")
        checked_in: Optional[datetime] = payload.get("checked_in_at")
        if scheduled is None or checked_in is None:
            return False
        return checked_in > scheduled + timedelta(minutes=self.settings.lateness_threshold_minutes)

    def _deviates(self, payload) -> bool:
        actual = payload.get("actual_minutes")
        expected = payload.get("expected_minutes")
        if actual is None or expected is None:
            return False
        return abs(float(actual) - float(expected)) > self.settings.duration_tolerance_minutes

    def sweep(self, entries: Sequence[QueueEntry], now: datetime, default_minutes: int) -> List[Disruption]:
        """Synthetic disruptions for appointments running past expected x overrun factor."""
        found = []
        for entry in entries:
            if entry.status != AppointmentStatus.IN_PROGRESS:
                continue
            started = entry.called_at or entry.checked_in_at
            if started is None:
                continue
            expected = entry.estimated_duration_minutes or default_minutes
            elapsed = (now - started).total_seconds() / 60
            if elapsed > expected * self.settings.overrun_factor:
                found.append(
                    Disruption(
                        type=DisruptionType.APPOINTMENT_OVERRUNNING,
                        clinic_id=entry.clinic_id,
                        timestamp=now,
                        entry_id=entry.entry_id,
                        reason=f"running {elapsed:.0f} min against {expected} expected",
                    )
                )
        if found:
            logger.info("Sweep found %d overrunning appointments", len(found))
        return found

    def deadlines(
        self,
        entries: Sequence[QueueEntry],
        gaps: Sequence[Gap],
        now: datetime,
        grace: timedelta,
    ) -> List[Disruption]:
        """Synthetic disruptions for clock-only transitions that need a pass to take effect.

        Covers lapsed no-show grace periods, expired waitlist holds and freed
        slots whose "come early" offers went unanswered past the accept wait.
        """
        found = []
        for entry in entries:
            deadline = no_show_deadline(entry, grace)
            if deadline is not None and now >= deadline:
                found.append(self._lapsed(entry.clinic_id, entry.entry_id, now, "grace period over"))
            elif entry.hold_expires_at is not None and not entry.is_terminal and now >= entry.hold_expires_at:
                found.append(self._lapsed(entry.clinic_id, entry.entry_id, now, "waitlist hold expired"))

        patience = timedelta(minutes=self.settings.early_accept_wait_minutes)
        for gap in gaps:
            if gap.status == "open" and gap.notified and not gap.escalated and now - gap.opened_at >= patience:
                found.append(self._lapsed(gap.clinic_id, gap.source_entry_id, now, "early offers unanswered"))
        if found:
            logger.info("Sweep found %d lapsed deadlines", len(found))
        return found

    @staticmethod
    def _lapsed(clinic_id: str, entry_id: Optional[str], now: datetime, reason: str) -> Disruption:
        return Disruption(
            type=DisruptionType.DEADLINE_LAPSED,
            clinic_id=clinic_id,
            timestamp=now,
            entry_id=entry_id,
            reason=reason,
        )
