"""
Generalized additive mixed model with ARMA residual correlation.

Estimation follows the penalized quasi-likelihood route used for
non-Gaussian GAMMs: each outer iteration forms the working response and
weights of the GLM family and fits a Gaussian linear mixed model in which
smooth-term penalties, the random intercept variance, the residual scale and
the ARMA correlation parameters are estimated jointly by REML. The penalized
generalized least-squares coefficients of the last inner fit define the
fitted model.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import linalg, optimize, stats
from statsmodels.tsa.arima_process import arma_acovf
from statsmodels.tsa.statespace.tools import constrain_stationary_univariate

from .config import PREDICTION_COL, ModelSpec
from .smooth_basis import TermSmoother, build_smoother

LOG_LAMBDA_BOUND = 20.0
ARMA_BOUND = 6.0
_INVALID = 1e12

_FAMILIES = {
    "gamma": sm.families.Gamma,
    "gaussian": sm.families.Gaussian,
}
_LINKS = {
    "log": sm.families.links.Log,
    "identity": sm.families.links.Identity,
}


class GammConvergenceError(RuntimeError):
    """Raised when PQL or REML estimation does not reach a valid optimum."""


def make_family(family: str, link: str) -> sm.families.Family:
    return _FAMILIES[family](link=_LINKS[link]())


def significance_stars(pval: float) -> str:
    if not np.isfinite(pval):
        return ""
    if pval < 0.001:
        return "***"
    if pval < 0.01:
        return "**"
    if pval < 0.05:
        return "*"
    return ""


# ---------------------------------------------------------------------------
# Design assembly
# ---------------------------------------------------------------------------

def _levels(values: pd.Series) -> Tuple[object, ...]:
    return tuple(sorted(pd.Series(values).astype(object).unique()))


def _fixed_design(
    data: pd.DataFrame,
    fixed_effects: Sequence[str],
    levels: Dict[str, Tuple[object, ...]],
) -> Tuple[np.ndarray, List[str]]:
    columns = [np.ones(data.shape[0])]
    names = ["(Intercept)"]
    for col in fixed_effects:
        values = data[col].astype(object).to_numpy()
        unseen = set(values) - set(levels[col])
        if unseen:
            raise ValueError(f"Levels {sorted(unseen)} of {col!r} were not present when the model was fitted.")
        for level in levels[col][1:]:
            columns.append((values == level).astype(float))
            names.append(f"{col}[T.{level}]")
    return np.column_stack(columns), names


def _group_design(values: pd.Series, levels: Tuple[object, ...]) -> np.ndarray:
    codes = pd.Categorical(values.astype(object), categories=list(levels)).codes
    out = np.zeros((len(codes), len(levels)))
    rows = np.flatnonzero(codes >= 0)
    out[rows, codes[rows]] = 1.0
    return out


@dataclass(frozen=True)
class _Penalty:
    label: str
    start: int
    stop: int
    matrix: np.ndarray


@dataclass(frozen=True)
class _PenaltyBlock:
    start: int
    stop: int
    members: Tuple[int, ...]
    rank: int
    # log pseudo-determinant of the unit-weighted penalty when there is one member
    base_logdet: float


def _penalty_blocks(penalties: Sequence[_Penalty]) -> List[_PenaltyBlock]:
    spans: Dict[Tuple[int, int], List[int]] = {}
    for i, pen in enumerate(penalties):
        spans.setdefault((pen.start, pen.stop), []).append(i)
    blocks = []
    for (start, stop), members in spans.items():
        total = sum(penalties[i].matrix for i in members)
        eigvals = linalg.eigvalsh(total)
        tol = eigvals.max() * max(total.shape) * np.finfo(float).eps * 10
        rank = int(np.sum(eigvals > tol))
        base = float(np.sum(np.log(eigvals[-rank:]))) if rank else 0.0
        blocks.append(_PenaltyBlock(start, stop, tuple(members), rank, base))
    return blocks


def _log_pdet(blocks: Sequence[_PenaltyBlock], penalties: Sequence[_Penalty], lam: np.ndarray) -> float:
    total = 0.0
    for block in blocks:
        if block.rank == 0:
            continue
        if len(block.members) == 1:
            total += block.rank * math.log(lam[block.members[0]]) + block.base_logdet
            continue
        mat = sum(lam[i] * penalties[i].matrix for i in block.members)
        eigvals = linalg.eigvalsh(mat)[-block.rank:]
        if np.any(eigvals <= 0):
            return math.nan
        total += float(np.sum(np.log(eigvals)))
    return total


# ---------------------------------------------------------------------------
# ARMA residual correlation
# ---------------------------------------------------------------------------

def arma_params_from_unconstrained(unconstrained: np.ndarray, p: int, q: int) -> Tuple[np.ndarray, np.ndarray]:
    """Map real vectors to stationary AR and invertible MA coefficients (PACF transform)."""
    unconstrained = np.asarray(unconstrained, dtype=float)
    ar = constrain_stationary_univariate(unconstrained[:p]) if p else np.zeros(0)
    ma = -constrain_stationary_univariate(unconstrained[p : p + q]) if q else np.zeros(0)
    return np.asarray(ar, dtype=float), np.asarray(ma, dtype=float)


def arma_correlation(ar: np.ndarray, ma: np.ndarray, nobs: int) -> np.ndarray:
    """Autocorrelation at lags 0..nobs-1 of x_t = sum ar_i x_{t-i} + e_t + sum ma_j e_{t-j}."""
    acov = arma_acovf(np.r_[1.0, -np.asarray(ar)], np.r_[1.0, np.asarray(ma)], nobs=nobs)
    return np.asarray(acov, dtype=float) / acov[0]


class ArmaWhitener:
    """Whitens time-ordered rows with the inverse Cholesky factor of an ARMA correlation, group by group."""

    def __init__(self, blocks: Sequence[np.ndarray], p: int, q: int) -> None:
        self.blocks = [np.asarray(b, dtype=int) for b in blocks if len(b)]
        self.p = p
        self.q = q

    @classmethod
    def from_groups(cls, groups: Optional[np.ndarray], n: int, p: int, q: int) -> "ArmaWhitener":
        if groups is None:
            return cls([np.arange(n)], p, q)
        codes = pd.factorize(pd.Series(groups), sort=True)[0]
        order = np.argsort(codes, kind="mergesort")
        bounds = np.flatnonzero(np.diff(codes[order])) + 1
        return cls(np.split(order, bounds), p, q)

    @property
    def n_params(self) -> int:
        return self.p + self.q

    def whiten(self, matrix: np.ndarray, ar: np.ndarray, ma: np.ndarray) -> Tuple[np.ndarray, float]:
        if self.n_params == 0:
            return matrix, 0.0
        max_len = max(len(b) for b in self.blocks)
        acf = arma_correlation(ar, ma, max_len)
        factors: Dict[int, np.ndarray] = {}
        out = np.empty_like(matrix)
        logdet = 0.0
        for idx in self.blocks:
            size = len(idx)
            chol = factors.get(size)
            if chol is None:
                chol = linalg.cholesky(linalg.toeplitz(acf[:size]), lower=True)
                factors[size] = chol
            out[idx] = linalg.solve_triangular(chol, matrix[idx], lower=True)
            logdet += 2.0 * float(np.sum(np.log(np.diag(chol))))
        return out, logdet


# ---------------------------------------------------------------------------
# Working linear mixed model (REML)
# ---------------------------------------------------------------------------

@dataclass
class _WorkingFit:
    theta: np.ndarray
    beta: np.ndarray
    cov_unscaled: np.ndarray
    edf: np.ndarray
    scale: float
    reml: float
    lam: np.ndarray
    ar: np.ndarray
    ma: np.ndarray
    n_iter: int


class _WorkingModel:
    def __init__(
        self,
        design: np.ndarray,
        penalties: Sequence[_Penalty],
        whitener: ArmaWhitener,
    ) -> None:
        self.design = design
        self.penalties = list(penalties)
        self.blocks = _penalty_blocks(self.penalties)
        self.whitener = whitener
        self.n, self.p = design.shape
        self.null_dim = self.p - sum(b.rank for b in self.blocks)
        if self.n - self.null_dim <= 0:
            raise ValueError(
                f"Too few observations ({self.n}) for {self.null_dim} unpenalized coefficients."
            )

    def _split(self, theta: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        n_pen = len(self.penalties)
        lam = np.exp(theta[:n_pen])
        ar, ma = arma_params_from_unconstrained(theta[n_pen:], self.whitener.p, self.whitener.q)
        return lam, ar, ma

    def _penalty_matrix(self, lam: np.ndarray) -> np.ndarray:
        total = np.zeros((self.p, self.p))
        for weight, pen in zip(lam, self.penalties):
            total[pen.start : pen.stop, pen.start : pen.stop] += weight * pen.matrix
        return total

    def _solve(self, stacked: np.ndarray, theta: np.ndarray):
        lam, ar, ma = self._split(theta)
        try:
            white, logdet_r = self.whitener.whiten(stacked, ar, ma)
        except linalg.LinAlgError:
            return None
        x_w, z_w = white[:, :-1], white[:, -1]
        xtx = x_w.T @ x_w
        xtz = x_w.T @ z_w
        penalized = xtx + self._penalty_matrix(lam)
        try:
            factor = linalg.cho_factor(penalized, lower=True)
        except linalg.LinAlgError:
            return None
        beta = linalg.cho_solve(factor, xtz)
        penalized_rss = float(z_w @ z_w - beta @ xtz)
        resid_df = self.n - self.null_dim
        if not penalized_rss > 0:
            return None
        scale = penalized_rss / resid_df
        logdet_a = 2.0 * float(np.sum(np.log(np.diag(factor[0]))))
        logdet_s = _log_pdet(self.blocks, self.penalties, lam)
        if not np.isfinite(logdet_s):
            return None
        # -2 x restricted log-likelihood up to a constant, scale profiled out
        reml = resid_df * math.log(scale) + logdet_a - logdet_s + logdet_r
        return reml, beta, factor, xtx, scale, lam, ar, ma

    def fit(self, z: np.ndarray, weights: np.ndarray, theta0: np.ndarray, max_iter: int = 500) -> _WorkingFit:
        root_w = np.sqrt(weights)
        stacked = np.column_stack([self.design * root_w[:, None], z * root_w])

        def objective(theta: np.ndarray) -> float:
            state = self._solve(stacked, theta)
            if state is None or not np.isfinite(state[0]):
                return _INVALID
            return state[0]

        n_pen = len(self.penalties)
        bounds = [(-LOG_LAMBDA_BOUND, LOG_LAMBDA_BOUND)] * n_pen + [(-ARMA_BOUND, ARMA_BOUND)] * self.whitener.n_params
        if objective(theta0) >= _INVALID:
            theta0 = np.zeros_like(theta0)
        result = optimize.minimize(
            objective,
            theta0,
            method="L-BFGS-B",
            bounds=bounds,
            options={"maxiter": max_iter},
        )
        state = self._solve(stacked, result.x)
        if state is None or result.fun >= _INVALID:
            raise GammConvergenceError("REML criterion is not finite: singular penalized system or correlation structure.")
        if result.nit >= max_iter:
            raise GammConvergenceError(f"REML optimisation did not converge within {max_iter} iterations.")
        if not result.success:
            raise GammConvergenceError(f"REML optimisation failed: {result.message}")
        reml, beta, factor, xtx, scale, lam, ar, ma = state
        cov_unscaled = linalg.cho_solve(factor, np.eye(self.p))
        edf = np.einsum("ij,ji->i", cov_unscaled, xtx)
        return _WorkingFit(
            theta=np.asarray(result.x, dtype=float),
            beta=beta,
            cov_unscaled=0.5 * (cov_unscaled + cov_unscaled.T),
            edf=edf,
            scale=scale,
            reml=reml,
            lam=lam,
            ar=ar,
            ma=ma,
            n_iter=int(result.nit),
        )


# ---------------------------------------------------------------------------
# Fitted model
# ---------------------------------------------------------------------------

def _read_only(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=float, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class FittedGamm:
    spec: ModelSpec
    levels: Dict[str, Tuple[object, ...]]
    smoothers: Tuple[TermSmoother, ...]
    random_levels: Tuple[object, ...]
    coef_names: Tuple[str, ...]
    fixed_stop: int
    smooth_spans: Tuple[Tuple[int, int], ...]
    random_span: Optional[Tuple[int, int]]
    beta: np.ndarray
    vcov: np.ndarray
    edf: np.ndarray
    scale: float
    penalty_labels: Tuple[str, ...]
    smoothing_params: np.ndarray
    ar_params: np.ndarray
    ma_params: np.ndarray
    reml_criterion: float
    n_obs: int
    pql_iterations: int

    @property
    def family(self) -> sm.families.Family:
        return make_family(self.spec.family, self.spec.link)

    @property
    def edf_total(self) -> float:
        return float(np.sum(self.edf))

    @property
    def df_resid(self) -> float:
        return max(self.n_obs - self.edf_total, 1.0)

    @property
    def population_stop(self) -> int:
        return self.random_span[0] if self.random_span else len(self.coef_names)

    def _population_design(self, data: pd.DataFrame) -> np.ndarray:
        fixed, _ = _fixed_design(data, self.spec.fixed_effects, self.levels)
        parts = [fixed] + [sm_.design(data) for sm_ in self.smoothers]
        return np.hstack(parts)

    def linear_predictor(self, data: pd.DataFrame, include_random: bool = False) -> np.ndarray:
        eta = self._population_design(data) @ self.beta[: self.population_stop]
        if include_random and self.random_span:
            start, stop = self.random_span
            group = _group_design(data[self.spec.random_intercept], self.random_levels)
            eta = eta + group @ self.beta[start:stop]
        return eta

    def predict(self, data: pd.DataFrame) -> pd.Series:
        """Response-scale mean from the fixed and smooth terms only."""
        mu = self.family.link.inverse(self.linear_predictor(data))
        return pd.Series(mu, index=data.index, name=PREDICTION_COL)

    def residuals(self, data: pd.DataFrame, kind: str = "deviance") -> pd.Series:
        y = data[self.spec.response].to_numpy(dtype=float)
        mu = self.predict(data).to_numpy()
        if kind == "raw":
            values = y - mu
        elif kind == "deviance":
            values = self.family.resid_dev(y, mu)
        elif kind == "working":
            values = (y - mu) * self.family.link.deriv(mu)
        else:
            raise ValueError(f"Unknown residual type {kind!r}; expected 'raw', 'deviance' or 'working'.")
        return pd.Series(values, index=data.index, name=f"{kind}_residual")

    def random_effects(self) -> pd.Series:
        if not self.random_span:
            return pd.Series(dtype=float)
        start, stop = self.random_span
        index = pd.Index(self.random_levels, name=self.spec.random_intercept)
        return pd.Series(self.beta[start:stop], index=index, name="(Intercept)")

    def _smoother(self, label: str) -> Tuple[TermSmoother, Tuple[int, int]]:
        for smoother, span in zip(self.smoothers, self.smooth_spans):
            if smoother.label == label:
                return smoother, span
        raise KeyError(f"No smooth term {label!r}; available: {[s.label for s in self.smoothers]}")

    def smooth_curve(self, label: str, n_points: int = 100) -> pd.DataFrame:
        smoother, (start, stop) = self._smoother(label)
        grid = smoother.grid(n_points)
        basis = smoother.design(grid)
        cov = self.vcov[start:stop, start:stop]
        fit = basis @ self.beta[start:stop]
        se = np.sqrt(np.clip(np.einsum("ij,jk,ik->i", basis, cov, basis), 0.0, None))
        out = grid.copy()
        out["fit"] = fit
        out["se"] = se
        out["lower"] = fit - 2.0 * se
        out["upper"] = fit + 2.0 * se
        return out

    def fixed_effects_table(self) -> pd.DataFrame:
        est = self.beta[: self.fixed_stop]
        se = np.sqrt(np.diag(self.vcov)[: self.fixed_stop])
        t_val = est / se
        p_val = 2.0 * stats.t.sf(np.abs(t_val), self.df_resid)
        return pd.DataFrame(
            {
                "Parameter": list(self.coef_names[: self.fixed_stop]),
                "Estimate": est,
                "StdErr": se,
                "t_value": t_val,
                "p_value": p_val,
                "Significance": [significance_stars(p) for p in p_val],
            }
        )

    def smooth_terms_table(self) -> pd.DataFrame:
        rows = []
        for smoother, (start, stop) in zip(self.smoothers, self.smooth_spans):
            coef = self.beta[start:stop]
            cov = self.vcov[start:stop, start:stop]
            edf = float(np.sum(self.edf[start:stop]))
            ref_df = int(min(max(round(edf), 1), stop - start))
            # Wald statistic on the rank-ref_df pseudo-inverse of the posterior covariance
            eigvals, eigvecs = linalg.eigh(cov)
            eigvals, eigvecs = eigvals[-ref_df:], eigvecs[:, -ref_df:]
            keep = eigvals > 0
            proj = eigvecs[:, keep].T @ coef
            wald = float(np.sum(proj**2 / eigvals[keep]))
            f_stat = wald / ref_df
            p_val = float(stats.f.sf(f_stat, ref_df, self.df_resid))
            rows.append(
                {
                    "Term": smoother.label,
                    "edf": edf,
                    "Ref_df": ref_df,
                    "F": f_stat,
                    "p_value": p_val,
                    "Significance": significance_stars(p_val),
                }
            )
        return pd.DataFrame(rows)

    def variance_components_table(self) -> pd.DataFrame:
        rows = []
        for label, lam in zip(self.penalty_labels, self.smoothing_params):
            variance = self.scale / lam
            rows.append(
                {
                    "Group": label,
                    "Term": "(Intercept)" if label == self.spec.random_intercept else "smooth",
                    "Variance": variance,
                    "StdDev": math.sqrt(variance),
                    "SmoothingParameter": lam,
                }
            )
        rows.append(
            {
                "Group": "Residual",
                "Term": "",
                "Variance": self.scale,
                "StdDev": math.sqrt(self.scale),
                "SmoothingParameter": np.nan,
            }
        )
        return pd.DataFrame(rows)

    def correlation_table(self) -> pd.DataFrame:
        names = [f"Phi{i + 1}" for i in range(len(self.ar_params))]
        names += [f"Theta{j + 1}" for j in range(len(self.ma_params))]
        return pd.DataFrame(
            {
                "Parameter": names,
                "Estimate": np.r_[self.ar_params, self.ma_params],
                "Group": self.spec.correlation.group or "",
            }
        )

    def fit_statistics(self) -> Dict[str, float]:
        return {
            "n_obs": self.n_obs,
            "scale": self.scale,
            "reml_criterion": self.reml_criterion,
            "edf_total": self.edf_total,
            "df_resid": self.df_resid,
            "pql_iterations": self.pql_iterations,
        }

    def gam_summary(self) -> Dict[str, object]:
        return {
            "fixed_effects": self.fixed_effects_table(),
            "smooth_terms": self.smooth_terms_table(),
            "fit": self.fit_statistics(),
        }

    def lme_summary(self) -> Dict[str, object]:
        return {
            "variance_components": self.variance_components_table(),
            "correlation": self.correlation_table(),
        }


# ---------------------------------------------------------------------------
# Fitting entry points
# ---------------------------------------------------------------------------

def _check_columns(data: pd.DataFrame, spec: ModelSpec) -> None:
    needed = [spec.response, *spec.covariates, spec.correlation.order_by]
    missing = sorted({c for c in needed if c not in data.columns})
    if missing:
        raise KeyError(f"Missing required columns: {missing}")


def fit_gamm(
    data: pd.DataFrame,
    spec: ModelSpec,
    *,
    max_pql_iter: int = 20,
    pql_tolerance: float = 1e-6,
    max_reml_iter: int = 500,
    verbose: bool = False,
) -> FittedGamm:
    _check_columns(data, spec)
    work = data.sort_values(spec.correlation.order_by, kind="mergesort").reset_index(drop=True)
    y = work[spec.response].to_numpy(dtype=float)
    if y.size == 0:
        raise ValueError("Cannot fit a model to an empty dataset.")
    if spec.family == "gamma" and np.any(y <= 0):
        raise ValueError(f"Gamma response {spec.response!r} must be strictly positive; found {int(np.sum(y <= 0))} values <= 0.")

    levels = {col: _levels(work[col]) for col in spec.fixed_effects}
    fixed, names = _fixed_design(work, spec.fixed_effects, levels)
    smoothers = tuple(build_smoother(term, work) for term in spec.smooths)

    parts = [fixed]
    penalties: List[_Penalty] = []
    smooth_spans = []
    col = fixed.shape[1]
    for smoother in smoothers:
        block = smoother.design(work)
        span = (col, col + block.shape[1])
        smooth_spans.append(span)
        for i, pen in enumerate(smoother.penalties):
            label = smoother.label if len(smoother.penalties) == 1 else f"{smoother.label}:{i + 1}"
            penalties.append(_Penalty(label, span[0], span[1], pen))
        names.extend(f"{smoother.label}.{i + 1}" for i in range(block.shape[1]))
        parts.append(block)
        col = span[1]

    random_levels: Tuple[object, ...] = ()
    random_span = None
    groups = None
    if spec.random_intercept:
        random_levels = _levels(work[spec.random_intercept])
        block = _group_design(work[spec.random_intercept], random_levels)
        random_span = (col, col + block.shape[1])
        penalties.append(_Penalty(spec.random_intercept, random_span[0], random_span[1], np.eye(block.shape[1])))
        names.extend(f"{spec.random_intercept}[{lvl}]" for lvl in random_levels)
        parts.append(block)
    if spec.correlation.group:
        groups = work[spec.correlation.group].to_numpy()

    design = np.hstack(parts)
    whitener = ArmaWhitener.from_groups(groups, y.size, spec.correlation.p, spec.correlation.q)
    model = _WorkingModel(design, penalties, whitener)
    family = make_family(spec.family, spec.link)

    mu = y.copy()
    eta = family.link(mu)
    theta = np.zeros(len(penalties) + whitener.n_params)
    inner = None
    for iteration in range(1, max_pql_iter + 1):
        deriv = family.link.deriv(mu)
        z = eta + (y - mu) * deriv
        weights = 1.0 / (family.variance(mu) * deriv**2)
        inner = model.fit(z, weights, theta, max_iter=max_reml_iter)
        theta = inner.theta
        eta_new = design @ inner.beta
        change = float(np.sum((eta_new - eta) ** 2))
        eta = eta_new
        mu = family.link.inverse(eta)
        if verbose:
            print(f"[fit] PQL iteration {iteration}: REML={inner.reml:.4f}, change={change:.3e}")
        if change < pql_tolerance * max(float(np.sum(eta**2)), float(y.size)):
            break
    else:
        raise GammConvergenceError(f"PQL iterations did not converge within {max_pql_iter} iterations.")

    return FittedGamm(
        spec=spec,
        levels=levels,
        smoothers=smoothers,
        random_levels=random_levels,
        coef_names=tuple(names),
        fixed_stop=fixed.shape[1],
        smooth_spans=tuple(smooth_spans),
        random_span=random_span,
        beta=_read_only(inner.beta),
        vcov=_read_only(inner.scale * inner.cov_unscaled),
        edf=_read_only(inner.edf),
        scale=float(inner.scale),
        penalty_labels=tuple(p.label for p in penalties),
        smoothing_params=_read_only(inner.lam),
        ar_params=_read_only(inner.ar),
        ma_params=_read_only(inner.ma),
        reml_criterion=float(inner.reml),
        n_obs=int(y.size),
        pql_iterations=iteration,
    )


def predict(model: FittedGamm, data: pd.DataFrame) -> pd.Series:
    return model.predict(data)


def attach_predictions(model: FittedGamm, data: pd.DataFrame) -> pd.DataFrame:
    """Copy of ``data`` with the response-scale prediction in ``predicted_emission``."""
    out = data.copy()
    out[PREDICTION_COL] = model.predict(data).to_numpy()
    return out
