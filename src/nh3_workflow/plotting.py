from __future__ import annotations

import math
from pathlib import Path
from typing import Dict, Mapping

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib import colors as mcolors
from matplotlib.lines import Line2D
from statsmodels.nonparametric.smoothers_lowess import lowess

from .config import PREDICTION_COL, RESPONSE_COL, TIMESTAMP_COL
from .gamm import FittedGamm
from .segments import Segment

SEGMENT_COLORS = {"precip": "#1b9e77", "post": "#d95f02"}
OBSERVED_COLOR = "#4d4d4d"
FITTED_COLOR = "#7570b3"
MIN_LOWESS_POINTS = 3


def set_plot_style() -> None:
    plt.rcParams.update(
        {
            "font.family": "sans-serif",
            "font.sans-serif": ["Helvetica", "Arial", "DejaVu Sans"],
            "font.size": 10,
            "axes.titlesize": 10,
            "axes.titleweight": "bold",
            "axes.labelsize": 10,
            "xtick.labelsize": 9,
            "ytick.labelsize": 9,
            "legend.fontsize": 8,
            "axes.edgecolor": "black",
            "axes.linewidth": 0.8,
            "axes.spines.top": False,
            "axes.spines.right": False,
            "xtick.direction": "out",
            "ytick.direction": "out",
            "grid.alpha": 0.2,
            "grid.linewidth": 0.5,
            "lines.linewidth": 1.0,
            "lines.markersize": 4,
            "savefig.dpi": 300,
            "savefig.bbox": "tight",
            "savefig.pad_inches": 0.05,
            "figure.dpi": 100,
        }
    )
    sns.set_palette(["#1b9e77", "#d95f02", "#7570b3", "#4d4d4d", "#66a61e"])


def adjust_color_lightness(color_hex: str, amount: float = 0.8) -> str:
    base_rgb = np.array(mcolors.to_rgb(color_hex))
    new_rgb = np.clip(1.0 - (1.0 - base_rgb) * amount, 0.0, 1.0)
    return mcolors.to_hex(new_rgb)


def save_dual(fig: plt.Figure, stem: str, figures_dir: Path) -> None:
    figures_dir = Path(figures_dir)
    figures_dir.mkdir(parents=True, exist_ok=True)
    fig.savefig(figures_dir / f"{stem}.png", dpi=300, bbox_inches="tight")
    fig.savefig(figures_dir / f"{stem}.svg", bbox_inches="tight")
    plt.close(fig)


def segment_color(segment: Segment) -> str:
    family = segment.label.split("_", 1)[0]
    base = SEGMENT_COLORS.get(family, OBSERVED_COLOR)
    # later event ids get lighter shades of the family colour
    rank = max(int(segment.definition.value), 0)
    return adjust_color_lightness(base, amount=max(1.0 - 0.2 * rank, 0.3))


def _hours_since(stamps: pd.Series, origin: pd.Timestamp) -> np.ndarray:
    return ((stamps - origin) / pd.Timedelta(hours=1)).to_numpy(dtype=float)


def _lowess_trend(segment: Segment, origin: pd.Timestamp, frac: float) -> pd.DataFrame:
    frame = segment.frame
    x = _hours_since(frame[TIMESTAMP_COL], origin)
    smoothed = lowess(frame["predicted"].to_numpy(dtype=float), x, frac=frac, return_sorted=True)
    return pd.DataFrame(
        {
            TIMESTAMP_COL: origin + pd.to_timedelta(smoothed[:, 0], unit="h"),
            "trend": smoothed[:, 1],
        }
    )


def plot_event_trends(
    data: pd.DataFrame,
    segments: Mapping[str, Segment],
    stem: str,
    figures_dir: Path,
    lowess_frac: float = 0.3,
) -> Path:
    """Observed emissions, the global fitted curve and per-segment trends over time."""
    ordered = data.sort_values(TIMESTAMP_COL, kind="mergesort")
    origin = ordered[TIMESTAMP_COL].min()
    fig, ax = plt.subplots(figsize=(9.0, 4.0))
    ax.scatter(
        ordered[TIMESTAMP_COL],
        ordered[RESPONSE_COL],
        s=6,
        color=OBSERVED_COLOR,
        alpha=0.35,
        linewidths=0,
        zorder=1,
    )
    ax.plot(ordered[TIMESTAMP_COL], ordered[PREDICTION_COL], color=FITTED_COLOR, lw=0.8, alpha=0.7, zorder=2)

    handles = [
        Line2D([0], [0], marker="o", ls="none", color=OBSERVED_COLOR, alpha=0.5, label="Observed"),
        Line2D([0], [0], color=FITTED_COLOR, lw=1.0, label="GAMM fit"),
    ]
    for label, segment in segments.items():
        if segment.empty:
            continue
        color = segment_color(segment)
        frame = segment.frame
        ax.plot(frame[TIMESTAMP_COL], frame["predicted"], color=color, lw=0.6, alpha=0.5, zorder=3)
        if frame.shape[0] >= MIN_LOWESS_POINTS:
            trend = _lowess_trend(segment, origin, lowess_frac)
            ax.plot(trend[TIMESTAMP_COL], trend["trend"], color=color, lw=1.8, zorder=4)
        handles.append(Line2D([0], [0], color=color, lw=1.8, label=label))

    ax.set_xlabel("Time")
    ax.set_ylabel(r"NH$_3$ emission")
    ax.legend(handles=handles, frameon=False, ncol=min(len(handles), 4), loc="upper left")
    fig.autofmt_xdate()
    save_dual(fig, stem, figures_dir)
    return Path(figures_dir) / f"{stem}.png"


def plot_smooth_terms(model: FittedGamm, stem: str, figures_dir: Path, n_points: int = 100) -> Path:
    """One panel per smooth term on the link scale, with a +/- 2 se band."""
    labels = [s.label for s in model.smoothers]
    if not labels:
        raise ValueError("Model has no smooth terms to plot.")
    ncols = min(len(labels), 2)
    nrows = math.ceil(len(labels) / ncols)
    fig, axes = plt.subplots(nrows, ncols, figsize=(4.2 * ncols, 3.2 * nrows), squeeze=False)
    for ax, smoother in zip(axes.flat, model.smoothers):
        variables = smoother.term.variables
        curve = model.smooth_curve(smoother.label, n_points=n_points)
        if len(variables) == 1:
            x = curve[variables[0]]
            ax.fill_between(x, curve["lower"], curve["upper"], color=FITTED_COLOR, alpha=0.2, linewidth=0)
            ax.plot(x, curve["fit"], color=FITTED_COLOR, lw=1.2)
            ax.axhline(0.0, color="black", lw=0.5, ls="--")
            ax.set_ylabel("Partial effect (log scale)")
            ax.set_xlabel(variables[0])
        else:
            surface = curve.pivot(index=variables[1], columns=variables[0], values="fit")
            mesh = ax.contourf(surface.columns, surface.index, surface.to_numpy(), levels=12, cmap="viridis")
            fig.colorbar(mesh, ax=ax, shrink=0.8)
            ax.set_xlabel(variables[0])
            ax.set_ylabel(variables[1])
        ax.set_title(smoother.label)
    for ax in list(axes.flat)[len(labels):]:
        ax.set_visible(False)
    fig.tight_layout()
    save_dual(fig, stem, figures_dir)
    return Path(figures_dir) / f"{stem}.png"


def figure_paths(stem: str, figures_dir: Path) -> Dict[str, Path]:
    figures_dir = Path(figures_dir)
    return {ext: figures_dir / f"{stem}.{ext}" for ext in ("png", "svg")}
