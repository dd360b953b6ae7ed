"""
End-to-end clinic day: generation -> booking -> minute-by-minute queue -> KPIs.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .clock import ManualClock
from .config import QueueSettings, SimulationConfig
from .data_generation import (
    DEFAULT_DATA_DIR,
    TYPE_SERVICE_FACTOR,
    aggregate_history,
    day_exists,
    generate_day,
    generate_history,
    generate_waitlist,
    load_data,
    save_data,
)
from .errors import NotFoundError, ValidationError
from .models import (
    AppointmentStatus,
    ClinicQueueConfig,
    EstimationResult,
    EstimationSource,
    QueueEntry,
    QueueMode,
    VisitPlan,
)
from .orchestrator import EstimationOrchestrator
from .predictor import Predictor
from .service import QueueService
from .store import InMemoryRepository

logger = logging.getLogger(__name__)

SWEEP_EVERY_MINUTES = 5
CLOSING_SLACK = timedelta(hours=4)


class ClinicDaySimulation:
    def __init__(
        self,
        cfg: SimulationConfig,
        data_dir: Optional[Path] = None,
        regenerate: bool = False,
        persist: bool = False,
        predictor: Optional[Predictor] = None,
        settings: Optional[QueueSettings] = None,
    ):
        self.cfg = cfg
        self.data_dir = data_dir or DEFAULT_DATA_DIR
        self.regenerate = regenerate
        self.persist = persist
        self.predictor = predictor
        # No real sleeping: passes are drained once per simulated minute.
        self.settings = settings or QueueSettings(debounce_seconds=0.0, sweep_interval_seconds=0.0)
        self.first_estimates: Dict[str, EstimationResult] = {}

    def run(self) -> Tuple[pd.DataFrame, Dict[str, float]]:
        return asyncio.run(self.run_async())

    def _load_or_generate(self) -> Tuple[List[VisitPlan], pd.DataFrame]:
        if self.persist and not self.regenerate and day_exists(self.data_dir, self.cfg.day):
            return load_data(self.data_dir)
        plans = generate_day(self.cfg)
        history = generate_history(self.cfg)
        if self.persist:
            save_data(plans, history, self.data_dir)
        return plans, history

    async def run_async(self) -> Tuple[pd.DataFrame, Dict[str, float]]:
        cfg = self.cfg
        plans, history = self._load_or_generate()
        opening = datetime.combine(cfg.day, cfg.day_start)
        clock = ManualClock(opening - timedelta(minutes=30))

        config = ClinicQueueConfig(
            clinic_id=cfg.clinic_id,
            mode=QueueMode(cfg.mode),
            grace_period=timedelta(minutes=cfg.grace_minutes),
            allow_overflow=True,
            daily_capacity=cfg.patients,
            average_service_minutes=int(round(cfg.service_mean)),
            active_staff_count=cfg.staff,
            ml_enabled=self.predictor is not None,
        )
        repository = InMemoryRepository([config], {cfg.clinic_id: aggregate_history(history)})
        service = QueueService(repository, clock=clock, settings=self.settings, predictor=self.predictor)
        orchestrator = EstimationOrchestrator(service)

        await orchestrator.start()
        try:
            await self._book(service, plans)
            for request in generate_waitlist(cfg):
                await service.join_waitlist(request)
            await self._run_day(service, orchestrator, clock, plans)
        finally:
            await orchestrator.stop()

        entries = await service.store.entries(cfg.clinic_id, cfg.day)
        df = self._to_dataframe(entries)
        metrics = self._compute_metrics(df, orchestrator)
        return df, metrics

    def _expected_minutes(self, appointment_type: str) -> int:
        return int(round(self.cfg.service_mean * TYPE_SERVICE_FACTOR.get(appointment_type, 1.0)))

    def _entry(self, plan: VisitPlan) -> QueueEntry:
        return QueueEntry(
            entry_id=plan.entry_id,
            clinic_id=self.cfg.clinic_id,
            patient_id=plan.patient_id,
            scheduled_start=plan.slot_start,
            scheduled_end=plan.slot_end,
            appointment_date=self.cfg.day,
            appointment_type=plan.appointment_type,
            is_walk_in=plan.is_walk_in,
            is_emergency=plan.is_emergency,
            is_vip=plan.is_vip,
            estimated_duration_minutes=self._expected_minutes(plan.appointment_type),
        )

    async def _book(self, service: QueueService, plans: List[VisitPlan]) -> None:
        for plan in plans:
            if not plan.is_walk_in:
                await service.add_to_queue(self._entry(plan))

    async def _run_day(
        self,
        service: QueueService,
        orchestrator: EstimationOrchestrator,
        clock: ManualClock,
        plans: List[VisitPlan],
    ) -> None:
        cfg = self.cfg
        service_minutes = {p.entry_id: p.service_minutes for p in plans}
        cancels = sorted((p for p in plans if p.cancels_at is not None), key=lambda p: p.cancels_at)
        arrivals = sorted((p for p in plans if p.arrives_at is not None), key=lambda p: p.arrives_at)
        confirmations: Dict[str, Optional[datetime]] = {}
        promoted_arrivals: Dict[str, datetime] = {}
        busy: Dict[int, Tuple[str, datetime]] = {}

        horizon = max(
            [p.slot_end or p.arrives_at for p in plans if (p.slot_end or p.arrives_at) is not None],
            default=clock.now(),
        )
        end = horizon + CLOSING_SLACK
        minute = 0

        while clock.now() <= end:
            now = clock.now()

            while cancels and cancels[0].cancels_at <= now:
                plan = cancels.pop(0)
                await service.cancel(plan.entry_id, reason="patient cancelled")

            while arrivals and arrivals[0].arrives_at <= now:
                await self._arrive(service, arrivals.pop(0))

            await self._follow_promotions(service, now, confirmations, promoted_arrivals)

            for staff, (entry_id, finish) in list(busy.items()):
                if finish <= now:
                    await service.complete(entry_id)
                    del busy[staff]

            for staff in range(cfg.staff):
                if staff in busy:
                    continue
                try:
                    called = await service.call_next_patient(cfg.clinic_id, staff_id=f"staff-{staff + 1}")
                except NotFoundError:
                    break
                base_id = called.entry_id.split("-late")[0]
                duration = service_minutes.get(base_id, int(round(cfg.service_mean)))
                busy[staff] = (called.entry_id, now + timedelta(minutes=duration))

            if minute % SWEEP_EVERY_MINUTES == 0:
                await orchestrator.sweep()
            await orchestrator.drain()

            if now > horizon and not busy and not arrivals and not promoted_arrivals:
                summary = await service.queue_summary(cfg.clinic_id, cfg.day)
                if summary.queue_length == 0:
                    break
            clock.advance(minutes=1)
            minute += 1

        # Close out the day so unattended bookings end up as no-shows.
        await service.recalculate(cfg.clinic_id)
        logger.info("Simulated day ended at %s", clock.now().strftime("%H:%M"))

    async def _arrive(self, service: QueueService, plan: VisitPlan) -> None:
        if plan.is_walk_in:
            entry = await service.add_to_queue(self._entry(plan))
        else:
            try:
                entry = await service.check_in(plan.entry_id)
            except ValidationError as exc:
                logger.debug("Arrival of %s ignored: %s", plan.entry_id, exc)
                return
        self.first_estimates[entry.entry_id] = await service.estimate_wait_time(entry.entry_id)

    async def _follow_promotions(
        self,
        service: QueueService,
        now: datetime,
        confirmations: Dict[str, Optional[datetime]],
        promoted_arrivals: Dict[str, datetime],
    ) -> None:
        # Promoted waitlist patients confirm after a short delay and then travel in.
        for entry in await service.store.entries(self.cfg.clinic_id, self.cfg.day):
            if entry.hold_expires_at is not None and entry.entry_id not in confirmations:
                confirmations[entry.entry_id] = now + timedelta(minutes=self.cfg.confirm_after_minutes)
                promoted_arrivals[entry.entry_id] = now + timedelta(minutes=self.cfg.travel_minutes)

        for entry_id, due in list(confirmations.items()):
            if due is not None and due <= now:
                confirmations[entry_id] = None
                try:
                    await service.confirm_promotion(entry_id)
                except ValidationError as exc:
                    logger.debug("Promotion %s not confirmed: %s", entry_id, exc)

        for entry_id, due in list(promoted_arrivals.items()):
            if due <= now:
                del promoted_arrivals[entry_id]
                try:
                    entry = await service.check_in(entry_id)
                except ValidationError as exc:
                    logger.debug("Promoted patient %s did not check in: %s", entry_id, exc)
                    continue
                self.first_estimates[entry.entry_id] = await service.estimate_wait_time(entry.entry_id)

    def _to_dataframe(self, entries: List[QueueEntry]) -> pd.DataFrame:
        records = []
        for e in entries:
            wait = None
            if e.called_at is not None and e.checked_in_at is not None:
                wait = (e.called_at - e.checked_in_at).total_seconds() / 60
            first = self.first_estimates.get(e.entry_id)
            start_delay = None
            if e.called_at is not None and e.slot_start is not None:
                start_delay = (e.called_at - e.slot_start).total_seconds() / 60
            records.append(
                {
                    "entry_id": e.entry_id,
                    "patient_id": e.patient_id,
                    "appointment_type": e.appointment_type,
                    "is_walk_in": e.is_walk_in,
                    "is_late": e.is_late,
                    "gap_filler": e.gap_filler,
                    "from_waitlist": e.waitlist_id is not None,
                    "status": e.status.value,
                    "scheduled_start": e.scheduled_start,
                    "slot_start": e.slot_start,
                    "checked_in_at": e.checked_in_at,
                    "called_at": e.called_at,
                    "completed_at": e.completed_at,
                    "wait_minutes": wait,
                    "start_delay_minutes": start_delay,
                    "first_estimate": first.predicted_minutes if first else None,
                    "estimate_source": first.source.value if first else None,
                    "estimate_confidence": first.confidence if first else None,
                    "skip_count": e.skip_count,
                }
            )
        df = pd.DataFrame.from_records(records)
        if not df.empty:
            estimate = pd.to_numeric(df["first_estimate"], errors="coerce")
            df["estimate_error"] = (estimate - pd.to_numeric(df["wait_minutes"], errors="coerce")).abs()
        return df

    def _compute_metrics(self, df: pd.DataFrame, orchestrator: EstimationOrchestrator) -> Dict[str, float]:
        metrics: Dict[str, float] = {}
        if df.empty:
            return metrics
        scheduled = df[~df["is_walk_in"]]
        waits = df["wait_minutes"].dropna()
        metrics["entries"] = int(len(df))
        metrics["served"] = int((df["status"] == AppointmentStatus.COMPLETED.value).sum())
        metrics["no_show_rate"] = float((scheduled["status"] == AppointmentStatus.NO_SHOW.value).mean())
        metrics["mean_wait"] = _mean(waits)
        metrics["p90_wait"] = float(np.percentile(waits, 90)) if not waits.empty else 0.0
        metrics["mean_start_delay"] = _mean(df["start_delay_minutes"])
        metrics["estimate_mae"] = _mean(df["estimate_error"])
        sources = df["estimate_source"].dropna()
        metrics["fallback_share"] = (
            float((sources == EstimationSource.FALLBACK.value).mean()) if not sources.empty else 0.0
        )
        metrics["waitlist_promotions"] = int(df["from_waitlist"].sum())
        metrics["recalculation_passes"] = int(sum(orchestrator.passes.values()))
        metrics["failed_passes"] = int(sum(orchestrator.failed.values()))
        return metrics


def _mean(series: pd.Series) -> float:
    values = pd.to_numeric(series, errors="coerce").dropna()
    return float(values.mean()) if not values.empty else 0.0
