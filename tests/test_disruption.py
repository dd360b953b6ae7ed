from datetime import timedelta

import pytest

from clinicq.config import QueueSettings
from clinicq.disruption import RECALCULATION, DisruptionDetector
from clinicq.models import AppointmentStatus, DisruptionType, DomainEvent, EventType, Gap

from conftest import CLINIC, at, make_entry


def event(event_type, **payload):
    return DomainEvent(event_type, CLINIC, "a", at(10, 0), payload)


@pytest.fixture
def detector():
    return DisruptionDetector(QueueSettings())


class TestClassify:
    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({}, DisruptionType.PATIENT_CALLED),
            ({"is_late": True}, DisruptionType.LATE_PATIENT_CALLED),
            ({"is_late": True, "override": True}, DisruptionType.MANUAL_OVERRIDE),
        ],
    )
    def test_calls_always_disrupt(self, detector, payload, expected):
        assert detector.classify(event(EventType.PATIENT_CALLED, **payload)).type == expected

    def test_absence_and_return(self, detector):
        assert detector.classify(event(EventType.PATIENT_ABSENT)).type == DisruptionType.NO_SHOW_DETECTED
        assert detector.classify(event(EventType.PATIENT_RETURNED)).type == DisruptionType.PATIENT_RETURNED

    def test_manual_reorder_disrupts_but_recalculation_does_not(self, detector):
        manual = detector.classify(event(EventType.QUEUE_REORDERED, source="manual"))
        assert manual.type == DisruptionType.QUEUE_REORDERED
        assert detector.classify(event(EventType.QUEUE_REORDERED, source=RECALCULATION)) is None

    def test_check_in_only_disrupts_past_lateness_threshold(self, detector):
        on_time = event(EventType.CHECKED_IN, scheduled_start=at(10, 0), checked_in_at=at(10, 10))
        late = event(EventType.CHECKED_IN, scheduled_start=at(10, 0), checked_in_at=at(10, 11))
        walk_in = event(EventType.CHECKED_IN, scheduled_start=None, checked_in_at=at(10, 11))
        assert detector.classify(on_time) is None
        assert detector.classify(late).type == DisruptionType.LATE_ARRIVAL
        assert detector.classify(walk_in) is None

    def test_gap_filling_check_in_is_early_check_in(self, detector):
        filled = event(EventType.CHECKED_IN, scheduled_start=at(11, 0), checked_in_at=at(9, 30), filled_gap=True)
        assert detector.classify(filled).type == DisruptionType.EARLY_CHECK_IN

    def test_completion_only_disrupts_on_deviation(self, detector):
        normal = event(EventType.APPOINTMENT_COMPLETED, actual_minutes=22, expected_minutes=15)
        long = event(EventType.APPOINTMENT_COMPLETED, actual_minutes=26, expected_minutes=15)
        assert detector.classify(normal) is None
        assert detector.classify(long).type == DisruptionType.DURATION_DEVIATION

    def test_cancellation_frees_slot(self, detector):
        disruption = detector.classify(event(EventType.APPOINTMENT_CANCELLED, reason="sick"))
        assert disruption.type == DisruptionType.SLOT_FREED
        assert disruption.reason == "sick"

    def test_only_walk_ins_disrupt_on_add(self, detector):
        assert detector.classify(event(EventType.PATIENT_ADDED, is_walk_in=False)) is None
        walk_in = detector.classify(event(EventType.PATIENT_ADDED, is_walk_in=True))
        assert walk_in.type == DisruptionType.WALK_IN_ADDED
        emergency = detector.classify(event(EventType.PATIENT_ADDED, is_emergency=True))
        assert emergency.type == DisruptionType.WALK_IN_ADDED

    @pytest.mark.parametrize(
        "event_type",
        [EventType.SLOT_FREED, EventType.WAITLIST_PROMOTED, EventType.ESTIMATION_UPDATED],
    )
    def test_recalculation_output_is_not_disruptive(self, detector, event_type):
        assert detector.classify(event(event_type)) is None

    def test_disruption_keeps_event_identity(self, detector):
        source = event(EventType.PATIENT_ABSENT)
        disruption = detector.classify(source)
        assert disruption.event_id == source.event_id
        assert disruption.key == source.event_id
        assert disruption.clinic_id == CLINIC
        assert disruption.entry_id == "a"


class TestSweep:
    def _running(self, called_at, minutes=None):
        entry = make_entry("a", at(9, 0), estimated_duration_minutes=minutes)
        entry.status = AppointmentStatus.IN_PROGRESS
        entry.called_at = called_at
        return entry

    def test_overrunning_appointment_is_reported(self, detector):
        entry = self._running(at(9, 0), minutes=10)
        found = detector.sweep([entry], at(9, 16), default_minutes=15)
        assert [d.type for d in found] == [DisruptionType.APPOINTMENT_OVERRUNNING]
        assert found[0].entry_id == "a"

    def test_within_overrun_factor_is_quiet(self, detector):
        entry = self._running(at(9, 0), minutes=10)
        assert detector.sweep([entry], at(9, 15), default_minutes=15) == []

    def test_clinic_default_duration_applies(self, detector):
        entry = self._running(at(9, 0))
        assert detector.sweep([entry], at(9, 22), default_minutes=15) == []
        assert len(detector.sweep([entry], at(9, 23), default_minutes=15)) == 1

    def test_waiting_entries_are_ignored(self, detector):
        entry = make_entry("a", at(9, 0))
        assert detector.sweep([entry], at(12, 0) + timedelta(hours=1), default_minutes=15) == []


class TestDeadlines:
    GRACE = timedelta(minutes=10)

    def _gap(self, notified=("b",), escalated=False):
        return Gap(
            clinic_id=CLINIC,
            slot_start=at(10, 0),
            slot_end=at(10, 30),
            source_entry_id="a",
            opened_at=at(9, 0),
            notified=list(notified),
            escalated=escalated,
        )

    def test_grace_period_lapse(self, detector):
        entry = make_entry("a", at(9, 0))
        assert detector.deadlines([entry], [], at(9, 9), self.GRACE) == []
        found = detector.deadlines([entry], [], at(9, 10), self.GRACE)
        assert [(d.type, d.entry_id) for d in found] == [(DisruptionType.DEADLINE_LAPSED, "a")]

    def test_present_patient_has_no_deadline(self, detector):
        entry = make_entry("a", at(9, 0), is_present=True, checked_in_at=at(8, 50))
        assert detector.deadlines([entry], [], at(12, 0), self.GRACE) == []

    def test_expired_hold(self, detector):
        entry = make_entry("wl-1", at(10, 0), hold_expires_at=at(9, 30))
        assert detector.deadlines([entry], [], at(9, 29), self.GRACE) == []
        assert len(detector.deadlines([entry], [], at(9, 30), self.GRACE)) == 1

    def test_unanswered_offers_lapse_once(self, detector):
        assert detector.deadlines([], [self._gap()], at(9, 9), self.GRACE) == []
        assert len(detector.deadlines([], [self._gap()], at(9, 10), self.GRACE)) == 1
        assert detector.deadlines([], [self._gap(escalated=True)], at(9, 30), self.GRACE) == []
        assert detector.deadlines([], [self._gap(notified=())], at(9, 30), self.GRACE) == []
