"""
Lightweight visualizations for quick inspection.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import matplotlib

# Use a non-interactive backend to avoid display issues in headless environments.
matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import pandas as pd


def plot_overview(df: pd.DataFrame, outfile: Optional[Path] = None) -> None:
    fig, axes = plt.subplots(2, 2, figsize=(12, 8))

    # Wait per patient in call order
    served = df.dropna(subset=["called_at"]).sort_values("called_at")
    axes[0, 0].plot(served["called_at"], served["wait_minutes"], marker="o", linestyle="-", color="tab:blue")
    axes[0, 0].set_title("Wait at call time")
    axes[0, 0].set_ylabel("Minutes")
    axes[0, 0].tick_params(axis="x", rotation=30)

    # First estimate vs realised wait
    scored = df.dropna(subset=["first_estimate", "wait_minutes"])
    axes[0, 1].scatter(scored["wait_minutes"], scored["first_estimate"], color="tab:green", alpha=0.7)
    top = max([1.0] + scored["wait_minutes"].tolist() + scored["first_estimate"].tolist())
    axes[0, 1].plot([0, top], [0, top], linestyle="--", color="grey")
    axes[0, 1].set_title("Estimated vs actual wait")
    axes[0, 1].set_xlabel("Actual (min)")
    axes[0, 1].set_ylabel("First estimate (min)")

    # Outcomes
    df["status"].value_counts().plot(kind="bar", ax=axes[1, 0], color="tab:purple")
    axes[1, 0].set_title("Entry outcomes")

    # Which estimator answered
    sources = df["estimate_source"].dropna()
    if not sources.empty:
        sources.value_counts().plot(kind="bar", ax=axes[1, 1], color="tab:red")
    axes[1, 1].set_title("Estimate source at check-in")

    plt.tight_layout()
    if outfile:
        plt.savefig(outfile, dpi=150)
    else:
        plt.show()
    plt.close(fig)
