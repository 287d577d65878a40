from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.stats.diagnostic import acorr_breusch_godfrey

from .config import HOUR_COL, POST_EVENT_COL, PRECIP_EVENT_COL, TEMPERATURE_COL, TIMESTAMP_COL, WIND_COL
from .gamm import FittedGamm

AUX_FORMULA = (
    f"residual ~ {HOUR_COL} + {TEMPERATURE_COL} + {WIND_COL}"
    f" + C({PRECIP_EVENT_COL}) + C({POST_EVENT_COL})"
)


class DiagnosticStatus(str, Enum):
    COMPUTED = "computed"
    INAPPLICABLE = "inapplicable"
    FAILED = "failed"


@dataclass(frozen=True)
class DiagnosticResult:
    status: DiagnosticStatus
    statistic: float = float("nan")
    p_value: float = float("nan")
    f_statistic: float = float("nan")
    f_p_value: float = float("nan")
    nlags: int = 1
    n_obs: int = 0
    reason: str = ""

    @property
    def available(self) -> bool:
        return self.status is DiagnosticStatus.COMPUTED

    def report(self) -> str:
        if self.available:
            return (
                f"Breusch-Godfrey LM test (lags={self.nlags}, n={self.n_obs}): "
                f"LM={self.statistic:.4f}, p={self.p_value:.4g}"
            )
        return f"Breusch-Godfrey LM test unavailable ({self.status.value}): {self.reason}"

    def to_dict(self) -> Dict[str, object]:
        out = asdict(self)
        out["status"] = self.status.value
        return out


def _auxiliary_frame(model: FittedGamm, data: pd.DataFrame) -> pd.DataFrame:
    ordered = data.sort_values(TIMESTAMP_COL, kind="mergesort")
    aux = ordered[[HOUR_COL, TEMPERATURE_COL, WIND_COL, PRECIP_EVENT_COL, POST_EVENT_COL]].copy()
    for col in (PRECIP_EVENT_COL, POST_EVENT_COL):
        aux[col] = aux[col].astype("category").cat.remove_unused_categories()
    aux["residual"] = model.residuals(ordered, kind="deviance").to_numpy()
    return aux.reset_index(drop=True)


def check_autocorrelation(model: FittedGamm, data: pd.DataFrame, nlags: int = 1) -> DiagnosticResult:
    """Breusch-Godfrey test on the regression of deviance residuals on the covariates.

    The diagnostic is advisory: a rank-deficient auxiliary design or too few
    degrees of freedom give an ``inapplicable`` result and numerical failures a
    ``failed`` result instead of an exception.
    """
    aux = _auxiliary_frame(model, data)
    n_obs = int(aux.shape[0])
    if not np.all(np.isfinite(aux["residual"])):
        return DiagnosticResult(DiagnosticStatus.INAPPLICABLE, nlags=nlags, n_obs=n_obs, reason="non-finite deviance residuals")
    try:
        ols = smf.ols(AUX_FORMULA, data=aux)
    except Exception as exc:
        return DiagnosticResult(
            DiagnosticStatus.FAILED, nlags=nlags, n_obs=n_obs, reason=f"auxiliary design: {type(exc).__name__}: {exc}"
        )
    n_params = ols.exog.shape[1]
    if np.linalg.matrix_rank(ols.exog) < n_params:
        return DiagnosticResult(
            DiagnosticStatus.INAPPLICABLE,
            nlags=nlags,
            n_obs=n_obs,
            reason=f"rank-deficient auxiliary design ({n_params} columns)",
        )
    if n_obs - n_params - nlags <= 0:
        return DiagnosticResult(
            DiagnosticStatus.INAPPLICABLE,
            nlags=nlags,
            n_obs=n_obs,
            reason=f"insufficient degrees of freedom (n={n_obs}, k={n_params}, lags={nlags})",
        )
    try:
        results = ols.fit()
        lm_stat, lm_p, f_stat, f_p, _ = acorr_breusch_godfrey(results, nlags=nlags, store=True)
    except Exception as exc:
        return DiagnosticResult(DiagnosticStatus.FAILED, nlags=nlags, n_obs=n_obs, reason=f"{type(exc).__name__}: {exc}")
    return DiagnosticResult(
        DiagnosticStatus.COMPUTED,
        statistic=float(lm_stat),
        p_value=float(lm_p),
        f_statistic=float(f_stat),
        f_p_value=float(f_p),
        nlags=nlags,
        n_obs=n_obs,
    )
