from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List

import numpy as np
import pandas as pd

from .config import (
    CATEGORICAL_COLUMNS,
    DAY_COL,
    MODEL_COLUMNS,
    NUMERIC_COLUMNS,
    RESPONSE_COL,
    SECONDS_PER_BLOCK,
    TIME_BLOCK_COL,
    TIMESTAMP_COL,
    WorkflowConfig,
)


def ensure_output_dirs(cfg: WorkflowConfig) -> None:
    """Create all required directories."""
    for path in cfg.output_dirs:
        path.mkdir(parents=True, exist_ok=True)


def load_observations(path: Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input dataset not found: {path}")
    if path.suffix.lower() in (".parquet", ".pq"):
        return pd.read_parquet(path)
    if path.suffix.lower() == ".csv":
        return pd.read_csv(path, engine="pyarrow")
    raise ValueError(f"Unsupported input format {path.suffix!r}; expected .csv or .parquet")


@dataclass
class PreparationReport:
    n_raw: int
    n_clean: int = 0
    dropped: Dict[str, int] = field(
        default_factory=lambda: {
            "unparsable_timestamp": 0,
            "missing_or_invalid": 0,
            "non_positive_response": 0,
        }
    )

    @property
    def n_dropped(self) -> int:
        return int(sum(self.dropped.values()))

    def to_dict(self) -> Dict[str, object]:
        out = asdict(self)
        out["n_dropped"] = self.n_dropped
        return out


def _select_raw_columns(raw: pd.DataFrame, cfg: WorkflowConfig) -> pd.DataFrame:
    mapping = {canonical: cfg.raw_columns[canonical] for canonical in MODEL_COLUMNS}
    missing = [src for src in mapping.values() if src not in raw.columns]
    if missing:
        raise KeyError(f"Missing required columns: {missing}")
    return pd.DataFrame({canonical: raw[src] for canonical, src in mapping.items()}, index=raw.index)


def _parse_timestamps(values: pd.Series, fmt: str | None) -> pd.Series:
    stamps = pd.to_datetime(values, format=fmt, errors="coerce")
    if getattr(stamps.dt, "tz", None) is not None:
        stamps = stamps.dt.tz_convert("UTC").dt.tz_localize(None)
    return stamps


def time_blocks(timestamps: pd.Series) -> pd.Series:
    """24 h block index: floor(seconds since epoch / 86400)."""
    elapsed = (timestamps - pd.Timestamp("1970-01-01")) // pd.Timedelta(seconds=SECONDS_PER_BLOCK)
    return elapsed.astype("int64").rename(TIME_BLOCK_COL)


def prepare_observations(raw: pd.DataFrame, cfg: WorkflowConfig) -> tuple[pd.DataFrame, PreparationReport]:
    """Coerce raw rows into observation records, dropping (never imputing) bad rows."""
    report = PreparationReport(n_raw=int(raw.shape[0]))
    df = _select_raw_columns(raw, cfg)

    df[TIMESTAMP_COL] = _parse_timestamps(df[TIMESTAMP_COL], cfg.timestamp_format)
    bad_time = df[TIMESTAMP_COL].isna()
    report.dropped["unparsable_timestamp"] = int(bad_time.sum())
    df = df.loc[~bad_time].copy()

    for col in (DAY_COL,) + NUMERIC_COLUMNS + CATEGORICAL_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.replace([np.inf, -np.inf], np.nan)
    incomplete = df.isna().any(axis=1)
    report.dropped["missing_or_invalid"] = int(incomplete.sum())
    df = df.loc[~incomplete].copy()

    non_positive = df[RESPONSE_COL] <= 0
    report.dropped["non_positive_response"] = int(non_positive.sum())
    df = df.loc[~non_positive].copy()

    df[DAY_COL] = df[DAY_COL].astype("int64")
    for col in NUMERIC_COLUMNS:
        df[col] = df[col].astype(float)
    for col in CATEGORICAL_COLUMNS:
        df[col] = df[col].astype("int64").astype("category")
    df[TIME_BLOCK_COL] = time_blocks(df[TIMESTAMP_COL])

    report.n_clean = int(df.shape[0])
    return df.reset_index(drop=True), report


def make_rng(seed: int) -> np.random.Generator:
    return np.random.default_rng(seed)


def stratified_sample(
    records: pd.DataFrame,
    fraction: float,
    rng: np.random.Generator,
    block_col: str = TIME_BLOCK_COL,
) -> pd.DataFrame:
    """Draw round(fraction * n_block) rows without replacement from every time block.

    The generator is consumed block by block in ascending block order, so a
    fixed seed and input order always give the same subset.
    """
    if not 0.0 < fraction <= 1.0:
        raise ValueError(f"Sampling fraction must lie in (0, 1], got {fraction}.")
    if block_col not in records.columns:
        raise KeyError(f"Missing time block column {block_col!r}; run prepare_observations first.")
    work = records.reset_index(drop=True)
    picks: List[np.ndarray] = []
    for _, block in work.groupby(block_col, sort=True):
        size = int(round(fraction * block.shape[0]))
        if size == 0:
            continue
        positions = rng.choice(block.shape[0], size=size, replace=False)
        picks.append(block.index.to_numpy()[positions])
    if not picks:
        return work.iloc[0:0].copy()
    chosen = np.concatenate(picks)
    return work.iloc[chosen].reset_index(drop=True)


def expected_sample_size(records: pd.DataFrame, fraction: float, block_col: str = TIME_BLOCK_COL) -> int:
    sizes = records.groupby(block_col).size()
    return int(sum(int(round(fraction * n)) for n in sizes))
