"""
Typed containers used throughout the queue core.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .errors import ValidationError


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


TERMINAL_STATUSES = {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}

ALLOWED_TRANSITIONS: Dict[AppointmentStatus, Set[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.WAITING,
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.WAITING: {
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.IN_PROGRESS: {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED},
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.NO_SHOW: set(),
}


class QueueMode(str, Enum):
    FIXED = "fixed"
    FLUID = "fluid"
    HYBRID = "hybrid"


class DisruptionType(str, Enum):
    LATE_PATIENT_CALLED = "late_patient_called"
    PATIENT_CALLED = "patient_called"
    NO_SHOW_DETECTED = "no_show_detected"
    MANUAL_OVERRIDE = "manual_override"
    EARLY_CHECK_IN = "early_check_in"
    LATE_ARRIVAL = "late_arrival"
    QUEUE_REORDERED = "queue_reordered"
    APPOINTMENT_OVERRUNNING = "appointment_overrunning"
    PATIENT_RETURNED = "patient_returned"
    DURATION_DEVIATION = "duration_deviation"
    SLOT_FREED = "slot_freed"
    WALK_IN_ADDED = "walk_in_added"
    DEADLINE_LAPSED = "deadline_lapsed"


class EventType(str, Enum):
    PATIENT_ADDED = "queue.patient.added"
    CHECKED_IN = "queue.patient.checked_in"
    PATIENT_CALLED = "queue.patient.called"
    PATIENT_ABSENT = "queue.patient.marked_absent"
    PATIENT_RETURNED = "queue.patient.returned"
    APPOINTMENT_COMPLETED = "queue.appointment.completed"
    APPOINTMENT_CANCELLED = "queue.appointment.cancelled"
    QUEUE_REORDERED = "queue.reordered"
    SLOT_FREED = "queue.slot.freed"
    WAITLIST_PROMOTED = "queue.waitlist.promoted"
    ESTIMATION_UPDATED = "queue.estimation.updated"


class EstimationSource(str, Enum):
    ML = "ml"
    RULE_BASED = "rule-based"
    HISTORICAL = "historical-average"
    FALLBACK = "fallback"


class WaitlistStatus(str, Enum):
    WAITING = "waiting"
    HELD = "held"  # promoted, awaiting confirmation
    PROMOTED = "promoted"
    EXPIRED = "expired"


@dataclass
class EstimationResult:
    predicted_minutes: int
    confidence: float
    source: EstimationSource
    computed_at: datetime
    expires_at: datetime
    features: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueueEntry:
    entry_id: str
    clinic_id: str
    patient_id: Optional[str]  # None for guests
    scheduled_start: Optional[datetime]  # None for walk-ins
    scheduled_end: Optional[datetime]
    appointment_date: date
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    is_present: bool = False
    checked_in_at: Optional[datetime] = None
    called_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    queue_position: int = 0
    is_walk_in: bool = False
    skip_count: int = 0
    appointment_type: str = "consultation"
    is_emergency: bool = False
    is_vip: bool = False
    estimated_duration_minutes: Optional[int] = None
    slot_start: Optional[datetime] = None
    slot_end: Optional[datetime] = None
    marked_absent_at: Optional[datetime] = None
    is_late: bool = False
    slot_released: bool = False
    gap_filler: bool = False
    waitlist_id: Optional[str] = None
    waitlist_booking: bool = False  # created from a waitlist request for a freed slot
    hold_expires_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    early_offer_sent_at: Optional[datetime] = None
    estimate: Optional[EstimationResult] = None
    created_at: Optional[datetime] = None
    sequence: int = 0
    version: int = 0

    def __post_init__(self) -> None:
        if self.slot_start is None:
            self.slot_start = self.scheduled_start
        if self.slot_end is None:
            self.slot_end = self.scheduled_end

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self.status in (AppointmentStatus.SCHEDULED, AppointmentStatus.WAITING)

    @property
    def is_absent(self) -> bool:
        return self.marked_absent_at is not None and not self.is_present

    @property
    def walk_in_priority(self) -> bool:
        # Late arrivals whose slot was filled queue with walk-ins.
        return self.is_walk_in or self.is_late

    def transition(self, new_status: AppointmentStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValidationError(
                f"Illegal status transition {self.status.value} -> {new_status.value}",
                entry_id=self.entry_id,
            )
        self.status = new_status


@dataclass
class ClinicQueueConfig:
    clinic_id: str
    mode: QueueMode = QueueMode.FIXED
    grace_period: timedelta = timedelta(minutes=10)
    allow_overflow: bool = False
    daily_capacity: Optional[int] = None
    buffer_minutes: int = 0
    average_service_minutes: int = 15
    active_staff_count: int = 1
    ml_enabled: bool = False


@dataclass
class Disruption:
    type: DisruptionType
    clinic_id: str
    timestamp: datetime
    entry_id: Optional[str]
    reason: str = ""
    event_id: Optional[str] = None

    @property
    def key(self) -> str:
        return self.event_id or f"{self.type.value}:{self.entry_id}:{self.timestamp.isoformat()}"


@dataclass
class WaitlistEntry:
    waitlist_id: str
    clinic_id: str
    requested_date: date
    priority: int
    created_at: datetime
    patient_id: Optional[str] = None
    preferred_start: Optional[time] = None
    preferred_end: Optional[time] = None
    source_entry_id: Optional[str] = None  # set for patients who held a slot
    status: WaitlistStatus = WaitlistStatus.WAITING
    promoted_appointment_id: Optional[str] = None
    sequence: int = 0

    def matches(self, clinic_id: str, slot_start: datetime, slot_end: Optional[datetime]) -> bool:
        if self.clinic_id != clinic_id or self.requested_date != slot_start.date():
            return False
        if self.preferred_start is not None and slot_start.time() < self.preferred_start:
            return False
        if self.preferred_end is not None:
            end = (slot_end or slot_start).time()
            if end > self.preferred_end:
                return False
        return True


@dataclass
class WaitlistRequest:
    clinic_id: str
    requested_date: date
    patient_id: Optional[str] = None
    preferred_start: Optional[time] = None
    preferred_end: Optional[time] = None
    priority: Optional[int] = None


@dataclass
class Gap:
    clinic_id: str
    slot_start: datetime
    slot_end: Optional[datetime]
    source_entry_id: str
    opened_at: datetime
    status: str = "open"  # open / filled / expired
    filled_by: Optional[str] = None
    declined: List[str] = field(default_factory=list)
    notified: List[str] = field(default_factory=list)
    escalated: bool = False  # offers lapsed; handed to the waitlist and walk-ins
    gap_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass
class HistoricalStats:
    average_wait: Optional[float] = None
    average_wait_by_type: Dict[str, float] = field(default_factory=dict)
    average_wait_by_time_slot: Dict[str, float] = field(default_factory=dict)
    average_service_minutes: Optional[float] = None
    sample_size: int = 0


@dataclass
class DomainEvent:
    event_type: EventType
    clinic_id: str
    entry_id: Optional[str]
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class QueueSummary:
    clinic_id: str
    day: date
    total: int
    scheduled: int
    waiting: int
    in_progress: int
    completed: int
    cancelled: int
    no_show: int
    absent: int
    average_wait_minutes: float
    queue_length: int


def time_slot_label(moment: datetime) -> str:
    if moment.hour < 12:
        return "morning"
    if moment.hour < 17:
        return "afternoon"
    return "evening"


@dataclass
class VisitPlan:
    """What one simulated patient will do during the day."""

    entry_id: str
    patient_id: str
    appointment_type: str
    slot_start: Optional[datetime]  # None for walk-ins
    slot_end: Optional[datetime]
    arrives_at: Optional[datetime]  # None for no-shows
    service_minutes: int
    cancels_at: Optional[datetime] = None
    is_walk_in: bool = False
    is_emergency: bool = False
    is_vip: bool = False
