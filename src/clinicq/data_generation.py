"""
Synthetic clinic days and wait-time history.

A generated day is a list of VisitPlan rows: booked slots with drawn
arrival offsets, no-shows, cancellations, walk-ins and service durations.
History is a table of past waits aggregated into HistoricalStats for the
estimators. Both round-trip through CSV so runs can be replayed.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from pathlib import Path
from random import Random
from typing import List, Optional

import numpy as np
import pandas as pd

from .config import APPOINTMENT_TYPES, SimulationConfig
from .models import HistoricalStats, VisitPlan, WaitlistRequest, time_slot_label

DEFAULT_DATA_DIR = Path(__file__).resolve().parents[2] / "data"
DAY_CSV = "day.csv"
HISTORY_CSV = "history.csv"

# Relative frequency of appointment types on a typical day.
TYPE_WEIGHTS = [0.40, 0.25, 0.05, 0.10, 0.10, 0.10]
# Service length multiplier by type.
TYPE_SERVICE_FACTOR = {
    "consultation": 1.0,
    "follow_up": 0.7,
    "emergency": 1.4,
    "procedure": 1.6,
    "vaccination": 0.5,
    "screening": 0.8,
}


def _service_minutes(rng: np.random.Generator, cfg: SimulationConfig, appointment_type: str) -> int:
    minutes = rng.normal(cfg.service_mean, cfg.service_std) * TYPE_SERVICE_FACTOR[appointment_type]
    return int(np.clip(round(minutes), 5, 90))


def generate_day(cfg: SimulationConfig) -> List[VisitPlan]:
    rng = Random(cfg.seed)
    nrng = np.random.default_rng(cfg.seed)
    opening = datetime.combine(cfg.day, cfg.day_start)
    plans: List[VisitPlan] = []

    for i in range(cfg.patients):
        slot_start = opening + timedelta(minutes=i * cfg.slot_minutes // max(1, cfg.staff))
        slot_end = slot_start + timedelta(minutes=cfg.slot_minutes)
        appointment_type = rng.choices(APPOINTMENT_TYPES, weights=TYPE_WEIGHTS)[0]

        arrives_at: Optional[datetime] = None
        cancels_at: Optional[datetime] = None
        roll = rng.random()
        if roll < cfg.cancel_rate:
            lead = rng.randint(20, 180)
            cancels_at = max(opening - timedelta(minutes=30), slot_start - timedelta(minutes=lead))
        elif roll >= cfg.cancel_rate + cfg.no_show_rate:
            offset = float(nrng.normal(cfg.lateness_mean, cfg.lateness_std))
            arrives_at = slot_start + timedelta(minutes=round(offset))

        plans.append(
            VisitPlan(
                entry_id=f"appt-{i + 1:03d}",
                patient_id=f"patient-{i + 1:03d}",
                appointment_type=appointment_type,
                slot_start=slot_start,
                slot_end=slot_end,
                arrives_at=arrives_at,
                service_minutes=_service_minutes(nrng, cfg, appointment_type),
                cancels_at=cancels_at,
                is_vip=rng.random() < 0.05,
            )
        )

    last_slot = opening + timedelta(minutes=cfg.patients * cfg.slot_minutes // max(1, cfg.staff))
    span = max(60, int((last_slot - opening).total_seconds() // 60))
    for j in range(cfg.walk_ins):
        emergency = rng.random() < 0.15
        appointment_type = "emergency" if emergency else rng.choice(["consultation", "follow_up", "vaccination"])
        plans.append(
            VisitPlan(
                entry_id=f"walkin-{j + 1:03d}",
                patient_id=f"walkin-patient-{j + 1:03d}",
                appointment_type=appointment_type,
                slot_start=None,
                slot_end=None,
                arrives_at=opening + timedelta(minutes=rng.randint(0, span)),
                service_minutes=_service_minutes(nrng, cfg, appointment_type),
                is_walk_in=True,
                is_emergency=emergency,
            )
        )
    return plans


def generate_waitlist(cfg: SimulationConfig) -> List[WaitlistRequest]:
    rng = Random(cfg.seed + 7)
    requests = []
    for k in range(cfg.waitlist_size):
        start_hour = cfg.day_start.hour + rng.randint(0, 4)
        window_start = datetime.combine(cfg.day, cfg.day_start).replace(hour=start_hour)
        window_end = window_start + timedelta(hours=rng.randint(2, 5))
        requests.append(
            WaitlistRequest(
                clinic_id=cfg.clinic_id,
                requested_date=cfg.day,
                patient_id=f"waitlist-patient-{k + 1:03d}",
                preferred_start=window_start.time(),
                preferred_end=window_end.time(),
                priority=rng.randint(1, 10),
            )
        )
    return requests


def generate_history(cfg: SimulationConfig) -> pd.DataFrame:
    """Past waits: queue length drives wait, plus type and time-of-day noise."""
    nrng = np.random.default_rng(cfg.seed + 123)
    records = []
    for day_index in range(1, cfg.history_days + 1):
        day = cfg.day - timedelta(days=day_index)
        for index in range(cfg.history_per_day):
            queue_length = max(5, int(round(nrng.normal(18, 4))))
            patients_ahead = int(np.clip(round(nrng.normal(queue_length / 2, queue_length / 6)), 0, queue_length))
            appointment_type = APPOINTMENT_TYPES[int(nrng.integers(len(APPOINTMENT_TYPES)))]
            hour = 8 + int(index / cfg.history_per_day * 9)
            wait = max(0.0, round(nrng.normal(18 + patients_ahead * 0.4, 6)))
            service = max(8.0, round(nrng.normal(cfg.service_mean, 3)))
            records.append(
                {
                    "day": day,
                    "hour": hour,
                    "appointment_type": appointment_type,
                    "queue_length": queue_length,
                    "patients_ahead": patients_ahead,
                    "is_walk_in": bool(nrng.random() < 0.2),
                    "wait_minutes": wait,
                    "service_minutes": service,
                }
            )
    return pd.DataFrame.from_records(records)


def aggregate_history(df: pd.DataFrame) -> HistoricalStats:
    if df.empty:
        return HistoricalStats()
    slots = df["hour"].map(lambda h: time_slot_label(datetime(2000, 1, 1, int(h))))
    by_type = df.groupby("appointment_type")["wait_minutes"].mean().round(1)
    by_slot = df.groupby(slots)["wait_minutes"].mean().round(1)
    return HistoricalStats(
        average_wait=round(float(df["wait_minutes"].mean()), 1),
        average_wait_by_type={str(k): float(v) for k, v in by_type.items()},
        average_wait_by_time_slot={str(k): float(v) for k, v in by_slot.items()},
        average_service_minutes=round(float(df["service_minutes"].mean()), 1),
        sample_size=int(len(df)),
    )


# ---------------- Persistence helpers ----------------


def plans_to_df(plans: List[VisitPlan]) -> pd.DataFrame:
    records = []
    for p in plans:
        records.append(
            {
                "entry_id": p.entry_id,
                "patient_id": p.patient_id,
                "appointment_type": p.appointment_type,
                "slot_start": p.slot_start,
                "slot_end": p.slot_end,
                "arrives_at": p.arrives_at,
                "service_minutes": p.service_minutes,
                "cancels_at": p.cancels_at,
                "is_walk_in": p.is_walk_in,
                "is_emergency": p.is_emergency,
                "is_vip": p.is_vip,
            }
        )
    return pd.DataFrame.from_records(records)


def _when(value) -> Optional[datetime]:
    return pd.to_datetime(value).to_pydatetime() if pd.notna(value) else None


def _plan_from_row(row: pd.Series) -> VisitPlan:
    return VisitPlan(
        entry_id=str(row["entry_id"]),
        patient_id=str(row["patient_id"]),
        appointment_type=str(row["appointment_type"]),
        slot_start=_when(row["slot_start"]),
        slot_end=_when(row["slot_end"]),
        arrives_at=_when(row["arrives_at"]),
        service_minutes=int(row["service_minutes"]),
        cancels_at=_when(row["cancels_at"]),
        is_walk_in=bool(row["is_walk_in"]),
        is_emergency=bool(row["is_emergency"]),
        is_vip=bool(row["is_vip"]),
    )


def save_data(plans: List[VisitPlan], history: pd.DataFrame, out_dir: Path = DEFAULT_DATA_DIR) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    plans_to_df(plans).to_csv(out_dir / DAY_CSV, index=False)
    history.to_csv(out_dir / HISTORY_CSV, index=False)


def load_data(data_dir: Path = DEFAULT_DATA_DIR):
    day_path = data_dir / DAY_CSV
    history_path = data_dir / HISTORY_CSV
    if not (day_path.exists() and history_path.exists()):
        raise FileNotFoundError(f"Missing day/history CSV under {data_dir}")
    plans = [_plan_from_row(r) for _, r in pd.read_csv(day_path).iterrows()]
    plans.sort(key=lambda p: (p.slot_start or p.arrives_at or datetime.max, p.entry_id))
    history = pd.read_csv(history_path)
    return plans, history


def day_exists(data_dir: Path, day: date) -> bool:
    day_path = data_dir / DAY_CSV
    if not day_path.exists() or not (data_dir / HISTORY_CSV).exists():
        return False
    slots = pd.read_csv(day_path, usecols=["slot_start"])["slot_start"].dropna()
    return not slots.empty and pd.to_datetime(slots.iloc[0]).date() == day
