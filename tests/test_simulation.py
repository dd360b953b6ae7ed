"""
Synthetic data and the end-to-end clinic day.
"""

import pytest
from typer.testing import CliRunner

from clinicq.cli import app
from clinicq.config import MODES, SimulationConfig
from clinicq.data_generation import (
    aggregate_history,
    day_exists,
    generate_day,
    generate_history,
    load_data,
    save_data,
)
from clinicq.models import AppointmentStatus
from clinicq.simulation import ClinicDaySimulation


def booked_ids(df):
    return sorted(i for i in df["entry_id"] if not i.startswith("wl-"))


def small(**overrides):
    base = dict(patients=6, walk_ins=1, waitlist_size=1, history_days=2, history_per_day=10)
    base.update(overrides)
    return SimulationConfig(**base)


class TestDataGeneration:
    def test_day_is_reproducible(self):
        assert generate_day(small()) == generate_day(small())

    def test_day_shape(self):
        cfg = small()
        plans = generate_day(cfg)
        booked = [p for p in plans if not p.is_walk_in]
        walk_ins = [p for p in plans if p.is_walk_in]
        assert len(booked) == cfg.patients
        assert len(walk_ins) == cfg.walk_ins
        assert all(p.slot_start is None and p.arrives_at is not None for p in walk_ins)
        assert all(p.arrives_at is None for p in booked if p.cancels_at is not None)
        assert all(p.slot_start.date() == cfg.day for p in booked)

    def test_history_aggregates(self):
        cfg = small()
        stats = aggregate_history(generate_history(cfg))
        assert stats.sample_size == cfg.history_days * cfg.history_per_day
        assert stats.average_wait > 0
        assert set(stats.average_wait_by_time_slot) <= {"morning", "afternoon", "evening"}

    def test_csv_round_trip(self, tmp_path):
        cfg = small()
        plans, history = generate_day(cfg), generate_history(cfg)
        assert not day_exists(tmp_path, cfg.day)
        save_data(plans, history, tmp_path)
        assert day_exists(tmp_path, cfg.day)
        loaded, loaded_history = load_data(tmp_path)
        by_id = {p.entry_id: p for p in loaded}
        assert set(by_id) == {p.entry_id for p in plans}
        assert by_id["appt-001"] == plans[0]
        assert len(loaded_history) == len(history)

    def test_missing_data_dir(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_data(tmp_path)


class TestClinicDay:
    @pytest.mark.parametrize("mode", MODES)
    def test_day_runs_to_completion(self, mode):
        df, metrics = ClinicDaySimulation(small(mode=mode)).run()

        assert metrics["served"] > 0
        assert metrics["entries"] == len(df)
        assert 0.0 <= metrics["fallback_share"] <= 1.0
        assert metrics["failed_passes"] == 0
        assert metrics["recalculation_passes"] > 0
        leftover = df[df["status"].isin([AppointmentStatus.WAITING.value, AppointmentStatus.IN_PROGRESS.value])]
        assert leftover.empty

    def test_persisted_day_is_replayed(self, tmp_path):
        cfg = small()
        first, _ = ClinicDaySimulation(cfg, data_dir=tmp_path, persist=True).run()
        again, _ = ClinicDaySimulation(cfg, data_dir=tmp_path, persist=True).run()
        assert (tmp_path / "day.csv").exists()
        assert booked_ids(first) == booked_ids(again)


class TestCli:
    def test_simulate_writes_csv(self, tmp_path):
        out = tmp_path / "entries.csv"
        result = CliRunner().invoke(app, ["simulate", "--patients", "6", "--walk-ins", "1", "--csv-out", str(out)])
        assert result.exit_code == 0, result.output
        assert out.exists()

    def test_unknown_mode_rejected(self):
        result = CliRunner().invoke(app, ["simulate", "--mode", "chaotic"])
        assert result.exit_code != 0
