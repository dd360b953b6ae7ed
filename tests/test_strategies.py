"""
Mode strategies: selection, ordering, gap filling and re-insertion.
"""

from datetime import timedelta

import pytest

from clinicq.errors import InvariantViolation
from clinicq.models import AppointmentStatus, ClinicQueueConfig, QueueMode, WaitlistRequest
from clinicq.strategies import (
    NEXT_SLOT,
    ORIGINAL_SLOT,
    WAITLIST,
    FixedStrategy,
    FluidStrategy,
    HybridStrategy,
    check_positions,
    finalize_no_shows,
    strategy_for,
)
from clinicq.waitlist import EARLY_ARRIVAL
from clinicq.waitlist import WAITLIST as WAITLIST_KIND

from conftest import CLINIC, DAY, at, make_entry


def present(entry, checked_in_at):
    entry.is_present = True
    entry.checked_in_at = checked_in_at
    entry.status = AppointmentStatus.WAITING
    return entry


def cancelled(entry):
    entry.status = AppointmentStatus.CANCELLED
    return entry


class TestStrategySelection:
    def test_strategy_follows_clinic_mode(self, gaps, settings):
        for mode, cls in (
            (QueueMode.FIXED, FixedStrategy),
            (QueueMode.FLUID, FluidStrategy),
            (QueueMode.HYBRID, HybridStrategy),
        ):
            config = ClinicQueueConfig(clinic_id=CLINIC, mode=mode)
            assert type(strategy_for(config, gaps, settings)) is cls


class TestScenarioFixed:
    @pytest.mark.asyncio
    async def test_absent_first_patient_is_skipped_without_moving_later_ones(self, service, clock):
        for entry_id, start in (("e1000", at(10, 0)), ("e1030", at(10, 30)), ("e1100", at(11, 0))):
            await service.add_to_queue(make_entry(entry_id, start))

        clock.set(at(10, 2))
        await service.check_in("e1030")
        await service.check_in("e1100")

        clock.set(at(10, 11))
        called = await service.call_next_patient(CLINIC)

        assert called.entry_id == "e1030"
        later = await service.store.entry("e1100")
        assert later.queue_position == 3
        assert later.slot_start == at(11, 0)
        assert later.status == AppointmentStatus.WAITING
        skipped = await service.store.entry("e1000")
        assert skipped.slot_released

    @pytest.mark.asyncio
    async def test_late_no_show_never_displaces_present_scheduled_patient(self, service, clock):
        await service.add_to_queue(make_entry("e0900", at(9, 0)))
        await service.add_to_queue(make_entry("e0930", at(9, 30)))
        await service.add_to_queue(make_entry("e1000", at(10, 0)))

        clock.set(at(8, 55))
        await service.check_in("e0930")

        clock.set(at(9, 11))
        report = await service.recalculate(CLINIC)
        assert report.no_shows == ["e0900"]
        assert report.promotions == ["e0930"]

        clock.set(at(9, 15))
        late = await service.check_in("e0900")
        assert late.entry_id == "e0900-late"
        assert late.is_late and late.slot_start is None
        assert service.waitlist.for_source(late.entry_id) is not None

        clock.set(at(9, 16))
        await service.check_in("e1000")
        first = await service.call_next_patient(CLINIC)
        assert first.entry_id == "e0930"

        clock.set(at(9, 40))
        await service.complete("e0930")
        second = await service.call_next_patient(CLINIC)
        assert second.entry_id == "e1000"

    @pytest.mark.asyncio
    async def test_late_no_show_given_a_freed_slot_waits_behind_earlier_booking(self, service, clock):
        await service.add_to_queue(make_entry("e0900", at(9, 0)))
        await service.add_to_queue(make_entry("e1000", at(10, 0)))
        await service.add_to_queue(make_entry("e1020", at(10, 20)))

        clock.set(at(9, 11))
        await service.recalculate(CLINIC)
        clock.set(at(9, 30))
        late = await service.check_in("e0900")
        clock.set(at(9, 50))
        await service.check_in("e1000")

        clock.set(at(9, 55))
        await service.cancel("e1020")
        report = await service.recalculate(CLINIC)
        assert report.promotions == [late.entry_id]
        returned = await service.store.entry(late.entry_id)
        assert returned.slot_start == at(10, 20) and not returned.waitlist_booking

        clock.set(at(10, 25))
        first = await service.call_next_patient(CLINIC)
        assert first.entry_id == "e1000"

    @pytest.mark.asyncio
    async def test_new_waitlist_booking_is_called_once_its_slot_starts(self, service, clock):
        await service.add_to_queue(make_entry("e0900", at(9, 0)))
        await service.add_to_queue(make_entry("e0930", at(9, 30)))
        await service.join_waitlist(WaitlistRequest(clinic_id=CLINIC, requested_date=DAY, patient_id="p-wl"))

        clock.set(at(8, 40))
        await service.cancel("e0900")
        report = await service.recalculate(CLINIC)
        (promoted_id,) = report.promotions
        await service.confirm_promotion(promoted_id)
        await service.check_in(promoted_id)
        await service.check_in("e0930")

        clock.set(at(9, 0))
        called = await service.call_next_patient(CLINIC)
        assert called.entry_id == promoted_id
        assert called.waitlist_booking


class TestScenarioFluid:
    @pytest.mark.asyncio
    async def test_positions_shift_up_after_no_show(self, make_service, clock):
        service = make_service(QueueMode.FLUID)
        for entry_id, start in (("e1000", at(10, 0)), ("e1030", at(10, 30)), ("e1100", at(11, 0))):
            await service.add_to_queue(make_entry(entry_id, start))

        clock.set(at(10, 5))
        await service.check_in("e1030")
        clock.set(at(10, 6))
        await service.check_in("e1100")

        clock.set(at(10, 11))
        report = await service.recalculate(CLINIC)

        assert report.no_shows == ["e1000"]
        positions = {e.entry_id: e.queue_position for e in await service.store.entries(CLINIC, DAY)}
        assert positions == {"e1000": 0, "e1030": 1, "e1100": 2}


class TestReinsert:
    def _returning(self):
        entry = present(make_entry("r", at(9, 45)), at(9, 50))
        entry.slot_released = True
        return entry

    def test_keeps_original_slot_while_not_released(self, gaps, settings):
        entry = present(make_entry("r", at(9, 45)), at(9, 50))
        entry.is_late = True
        placement = FixedStrategy(gaps, settings).reinsert(entry, [entry], at(9, 50))
        assert placement == ORIGINAL_SLOT
        assert not entry.is_late

    def test_takes_next_gap_that_displaces_nobody(self, gaps, settings):
        returning = self._returning()
        other = present(make_entry("p", at(9, 30)), at(9, 20))
        freed = cancelled(make_entry("c", at(10, 0)))
        gap = gaps.open_gap(freed, at(9, 50))

        placement = FixedStrategy(gaps, settings).reinsert(returning, [other, returning, freed], at(9, 50))

        assert placement == NEXT_SLOT
        assert returning.slot_start == at(10, 0)
        assert returning.gap_filler and not returning.slot_released
        assert gap.filled_by == "r"

    def test_falls_back_to_waitlist_when_gap_would_displace(self, gaps, settings):
        returning = self._returning()
        other = present(make_entry("p", at(9, 30)), at(9, 20))
        freed = cancelled(make_entry("c", at(9, 15), minutes=40))
        gap = gaps.open_gap(freed, at(9, 50))

        placement = FixedStrategy(gaps, settings).reinsert(returning, [other, returning, freed], at(9, 50))

        assert placement == WAITLIST
        assert returning.is_late
        assert gap.status == "open"
        waiting = gaps.waitlist.for_source("r")
        assert waiting is not None
        assert waiting.priority == settings.returned_waitlist_priority
        assert returning.waitlist_id == waiting.waitlist_id


class TestNoShowFinalization:
    grace = timedelta(minutes=10)

    def test_never_checked_in_after_grace(self):
        entry = make_entry("a", at(10, 0))
        assert finalize_no_shows([entry], at(10, 9), self.grace) == []
        assert finalize_no_shows([entry], at(10, 10), self.grace) == [entry]
        assert entry.status == AppointmentStatus.NO_SHOW

    def test_absent_patient_counts_from_marked_absent(self):
        entry = present(make_entry("a", at(10, 0)), at(9, 55))
        entry.is_present = False
        entry.marked_absent_at = at(10, 20)
        assert finalize_no_shows([entry], at(10, 29), self.grace) == []
        assert finalize_no_shows([entry], at(10, 30), self.grace) == [entry]

    def test_pending_hold_is_not_a_no_show(self):
        entry = make_entry("wl-1", at(10, 0))
        entry.hold_expires_at = at(11, 0)
        assert finalize_no_shows([entry], at(10, 30), self.grace) == []

    def test_late_confirmation_moves_the_deadline(self):
        entry = make_entry("wl-1", at(10, 0))
        entry.confirmed_at = at(10, 5)
        assert finalize_no_shows([entry], at(10, 12), self.grace) == []
        assert finalize_no_shows([entry], at(10, 15), self.grace) == [entry]

    def test_present_patient_is_never_finalized(self):
        entry = present(make_entry("a", at(10, 0)), at(10, 0))
        assert finalize_no_shows([entry], at(12, 0), self.grace) == []


class TestPositions:
    def test_duplicate_positions_raise(self):
        a, b = make_entry("a", at(9, 0)), make_entry("b", at(9, 30))
        a.queue_position = b.queue_position = 1
        with pytest.raises(InvariantViolation):
            check_positions([a, b], CLINIC)

    def test_terminal_entries_are_ignored(self):
        a, b = make_entry("a", at(9, 0)), cancelled(make_entry("b", at(9, 30)))
        a.queue_position, b.queue_position = 1, 1
        check_positions([a, b], CLINIC)

    def test_recompute_clears_terminal_positions(self, gaps, settings):
        a, b = make_entry("a", at(9, 0)), cancelled(make_entry("b", at(9, 30)))
        a.queue_position, b.queue_position = 2, 1
        changed = FixedStrategy(gaps, settings).recompute_positions([a, b], at(8, 0))
        assert (a.queue_position, b.queue_position) == (1, 0)
        assert {e.entry_id for e in changed} == {"a", "b"}

    def test_fixed_rejects_late_entry_ahead_of_scheduled_patient(self, gaps, settings):
        late = present(make_entry("late", at(9, 0)), at(9, 40))
        late.is_late = True
        booked = present(make_entry("b", at(9, 30)), at(9, 25))
        with pytest.raises(InvariantViolation):
            FixedStrategy(gaps, settings).check_order([late, booked], CLINIC)

    def test_fixed_orders_walk_ins_after_slotted_patients(self, gaps, settings):
        walk_in = present(make_entry("w", None, is_emergency=True), at(9, 0))
        booked = present(make_entry("b", at(9, 30)), at(9, 25))
        ordered = FixedStrategy(gaps, settings).order([walk_in, booked], at(9, 30))
        assert [e.entry_id for e in ordered] == ["b", "w"]


class TestHybrid:
    def _day(self):
        freed = cancelled(make_entry("c", at(10, 0)))
        upcoming = [make_entry(f"u{i}", at(10, 30) + timedelta(minutes=30 * i)) for i in range(4)]
        return freed, upcoming

    def test_cascades_offers_to_next_upcoming_patients(self, gaps, settings):
        freed, upcoming = self._day()
        entries = [freed] + upcoming
        outcome = HybridStrategy(gaps, settings).on_slot_freed(freed, entries, at(9, 40))

        assert len(outcome.gaps) == 1
        assert outcome.promotions == []
        assert [e.entry_id for e in outcome.offers] == ["u0", "u1", "u2"]
        assert all(e.early_offer_sent_at == at(9, 40) for e in outcome.offers)
        assert upcoming[3].early_offer_sent_at is None
        assert outcome.gaps[0].notified == ["u0", "u1", "u2"]

    def test_accepted_offer_fills_the_gap(self, gaps, settings):
        freed, upcoming = self._day()
        entries = [freed] + upcoming
        strategy = HybridStrategy(gaps, settings)
        strategy.on_slot_freed(freed, entries, at(9, 40))

        present(upcoming[1], at(9, 43))
        outcome = strategy.resolve_gaps(CLINIC, entries, at(9, 44))

        assert len(outcome.promotions) == 1
        assert outcome.promotions[0].kind == EARLY_ARRIVAL
        assert upcoming[1].slot_start == at(10, 0)

    def test_waitlist_only_after_patience_runs_out(self, gaps, settings):
        freed, upcoming = self._day()
        entries = [freed] + upcoming
        strategy = HybridStrategy(gaps, settings)
        strategy.on_slot_freed(freed, entries, at(9, 40))
        gaps.waitlist.join(
            WaitlistRequest(clinic_id=CLINIC, requested_date=DAY, patient_id="wl-patient"),
            ClinicQueueConfig(clinic_id=CLINIC, allow_overflow=True),
        )

        assert strategy.resolve_gaps(CLINIC, entries, at(9, 45)).promotions == []

        patience = settings.early_accept_wait_minutes
        outcome = strategy.resolve_gaps(CLINIC, entries, at(9, 40) + timedelta(minutes=patience))
        assert len(outcome.promotions) == 1
        promotion = outcome.promotions[0]
        assert promotion.kind == WAITLIST_KIND and promotion.created
        assert promotion.entry.patient_id == "wl-patient"


class TestFluidGaps:
    def test_freed_slot_goes_to_waitlist_not_early_arrivals(self, gaps, settings):
        freed = cancelled(make_entry("c", at(10, 0)))
        early = present(make_entry("p", at(10, 30)), at(9, 40))
        gaps.waitlist.join(
            WaitlistRequest(clinic_id=CLINIC, requested_date=DAY, patient_id="wl-patient"),
            ClinicQueueConfig(clinic_id=CLINIC, allow_overflow=True),
        )
        entries = [freed, early]

        outcome = FluidStrategy(gaps, settings).on_slot_freed(freed, entries, at(9, 45))

        assert [p.kind for p in outcome.promotions] == [WAITLIST_KIND]
        assert early.slot_start == at(10, 30)
        assert len(entries) == 3

    def test_gap_stays_open_without_waitlist(self, gaps, settings):
        freed = cancelled(make_entry("c", at(10, 0)))
        early = present(make_entry("p", at(10, 30)), at(9, 40))
        outcome = FluidStrategy(gaps, settings).on_slot_freed(freed, [freed, early], at(9, 45))
        assert outcome.promotions == []
        assert [g.slot_start for g in gaps.open_gaps(CLINIC)] == [at(10, 0)]
