from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import MODES, SimulationConfig
from .predictor import HttpPredictor
from .simulation import ClinicDaySimulation
from .visualize import plot_overview

console = Console()
app = typer.Typer(add_completion=False, no_args_is_help=True)


@app.callback()
def configure(
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, WARNING, ERROR)."),
) -> None:
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _check_mode(mode: str) -> str:
    if mode not in MODES:
        raise typer.BadParameter(f"mode must be one of {', '.join(MODES)}")
    return mode


@app.command("simulate")
def simulate(
    mode: str = typer.Option("fixed", help="Queue mode: fixed, fluid or hybrid.", callback=_check_mode),
    patients: int = typer.Option(24, help="Booked appointments in the day."),
    walk_ins: int = typer.Option(4, help="Walk-in patients arriving during the day."),
    staff: int = typer.Option(1, help="Clinicians seeing patients in parallel."),
    seed: int = typer.Option(42, help="Random seed."),
    plot: bool = typer.Option(False, help="Render the matplotlib overview."),
    csv_out: Optional[Path] = typer.Option(None, help="Path to save the per-entry outcome table."),
    png_out: Optional[Path] = typer.Option(None, help="Path to save the overview plot."),
    data_dir: Optional[Path] = typer.Option(
        None, help="Directory holding day.csv and history.csv; defaults to package data/."
    ),
    persist: bool = typer.Option(False, help="Reuse or save generated data under data_dir."),
    regen_data: bool = typer.Option(False, help="Force regenerate synthetic data into data_dir."),
    predictor_url: Optional[str] = typer.Option(None, help="Remote wait-time predictor endpoint."),
) -> None:
    cfg = SimulationConfig(mode=mode, patients=patients, walk_ins=walk_ins, staff=staff, seed=seed)
    predictor = HttpPredictor(predictor_url) if predictor_url else None
    sim = ClinicDaySimulation(cfg, data_dir=data_dir, regenerate=regen_data, persist=persist, predictor=predictor)
    console.log(f"Running {mode} clinic day...", style="bold")
    df, metrics = asyncio.run(_run(sim, predictor))

    _print_metrics({mode: metrics}, title=f"Clinic day KPIs ({mode})")
    if csv_out:
        df.to_csv(csv_out, index=False)
        console.log(f"Saved entries to {csv_out}")

    if plot or png_out:
        plot_overview(df, outfile=png_out)


@app.command("compare")
def compare(
    patients: int = typer.Option(24, help="Booked appointments in the day."),
    walk_ins: int = typer.Option(4, help="Walk-in patients arriving during the day."),
    staff: int = typer.Option(1, help="Clinicians seeing patients in parallel."),
    seed: int = typer.Option(42, help="Random seed."),
) -> None:
    results: Dict[str, Dict[str, float]] = {}
    for mode in MODES:
        cfg = SimulationConfig(mode=mode, patients=patients, walk_ins=walk_ins, staff=staff, seed=seed)
        console.log(f"Running {mode} clinic day...")
        _df, results[mode] = ClinicDaySimulation(cfg).run()
    _print_metrics(results, title="Queue modes compared")


async def _run(sim: ClinicDaySimulation, predictor: Optional[HttpPredictor]):
    try:
        return await sim.run_async()
    finally:
        if predictor is not None:
            await predictor.aclose()


def _print_metrics(results: Dict[str, Dict[str, float]], title: str) -> None:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Metric")
    for mode in results:
        table.add_column(mode)
    keys = list(next(iter(results.values()), {}).keys())
    for key in keys:
        row = []
        for metrics in results.values():
            val = metrics.get(key)
            row.append(f"{val:0.3f}" if isinstance(val, float) else str(val))
        table.add_row(key, *row)
    console.print(table)
