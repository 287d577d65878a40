from __future__ import annotations

from dataclasses import replace

import numpy as np
import pandas as pd

from nh3_workflow.config import default_config

N_DAYS = 10
START = pd.Timestamp("2023-06-01 00:00:00")
EVENT1 = (pd.Timestamp("2023-06-04 06:00:00"), pd.Timestamp("2023-06-04 18:00:00"))
EVENT2 = (pd.Timestamp("2023-06-08 03:00:00"), pd.Timestamp("2023-06-08 12:00:00"))
POST_HOURS = 36


def _event_columns(stamps: pd.Series) -> tuple[np.ndarray, np.ndarray]:
    precip = np.zeros(len(stamps), dtype=int)
    post = np.zeros(len(stamps), dtype=int)
    for event_id, (begin, end) in enumerate((EVENT1, EVENT2), start=1):
        during = (stamps >= begin) & (stamps <= end)
        after = (stamps > end) & (stamps <= end + pd.Timedelta(hours=POST_HOURS))
        precip[during.to_numpy()] = event_id
        post[after.to_numpy()] = event_id
    return precip, post


def _daily_ar1(rng: np.random.Generator, n_days: int, phi: float, sigma: float) -> np.ndarray:
    errors = np.empty((n_days, 24))
    errors[:, 0] = rng.normal(0.0, sigma, n_days)
    innovations = rng.normal(0.0, sigma * np.sqrt(1.0 - phi**2), (n_days, 23))
    for h in range(1, 24):
        errors[:, h] = phi * errors[:, h - 1] + innovations[:, h - 1]
    return errors.ravel()


def synthetic_raw(n_days: int = N_DAYS, seed: int = 7, ar_phi: float | None = None) -> pd.DataFrame:
    """Hourly feedlot series with raw column names and a known log-mean structure.

    By default the noise is independent Gamma; with ``ar_phi`` the log-scale
    errors follow a stationary AR(1) restarted at each midnight.
    """
    rng = np.random.default_rng(seed)
    stamps = pd.Series(pd.date_range(START, periods=24 * n_days, freq="h"))
    hour = stamps.dt.hour.to_numpy().astype(float)
    day = ((stamps - START) // pd.Timedelta(days=1)).to_numpy() + 1
    temperature = 22.0 + 6.0 * np.sin(2 * np.pi * (hour - 9.0) / 24.0) + 0.3 * day + rng.normal(0.0, 1.0, hour.size)
    wind = rng.gamma(4.0, 0.8, hour.size)
    precip, post = _event_columns(stamps)
    day_effect = rng.normal(0.0, 0.05, n_days)[day - 1]
    log_mu = (
        3.6
        + 0.35 * np.sin(2 * np.pi * hour / 24.0)
        + 0.03 * (temperature - 22.0)
        - 0.06 * wind
        + 0.25 * (precip > 0)
        - 0.15 * (post > 0)
        + day_effect
    )
    if ar_phi is None:
        nh3 = rng.gamma(25.0, np.exp(log_mu) / 25.0)
    else:
        nh3 = np.exp(log_mu + _daily_ar1(rng, n_days, ar_phi, sigma=0.2))
    return pd.DataFrame(
        {
            "timestamp": stamps.dt.strftime("%Y-%m-%d %H:%M:%S"),
            "day": day,
            "hour": hour,
            "temperature": temperature,
            "wind_speed": wind,
            "precip_event": precip,
            "post_event": post,
            "nh3": nh3,
        }
    )


def small_config(tmp_path=None, **overrides):
    cfg = replace(
        default_config(),
        hour_basis_dim=6,
        smooth_basis_dim=5,
        day_basis_dim=4,
        max_pql_iter=50,
        make_figures=False,
    )
    if tmp_path is not None:
        cfg = replace(cfg, project_root=tmp_path)
    return replace(cfg, **overrides)


