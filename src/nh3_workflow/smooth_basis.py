"""
Penalized spline bases for the additive predictor.

Cubic regression splines are parameterised by their values at the knots
(Wood 2017, Generalized Additive Models, sec. 5.3.1), cyclic cubic splines
identify the two ends of a period (sec. 5.3.2), and tensor-product smooths
take row-wise Kronecker products of cubic regression margins with one
penalty per margin (sec. 5.6). Every term is centred with a sum-to-zero
constraint absorbed through a QR decomposition.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import linalg

from .config import SmoothTerm


# Reference: Wood (2017) eq. 5.3; Equation: B delta = D beta, S = D' B^-1 D; Parameters: h_j knot spacings, beta values at knots, delta second derivatives at knots.
class CubicRegressionSpline:
    def __init__(self, knots: Sequence[float]) -> None:
        knots = np.asarray(knots, dtype=float)
        if knots.ndim != 1 or knots.size < 3:
            raise ValueError("A cubic regression spline needs at least 3 knots.")
        if np.any(np.diff(knots) <= 0):
            raise ValueError("Knots must be strictly increasing.")
        k = knots.size
        h = np.diff(knots)
        d_mat = np.zeros((k - 2, k))
        b_mat = np.zeros((k - 2, k - 2))
        for i in range(k - 2):
            d_mat[i, i] = 1.0 / h[i]
            d_mat[i, i + 1] = -1.0 / h[i] - 1.0 / h[i + 1]
            d_mat[i, i + 2] = 1.0 / h[i + 1]
            b_mat[i, i] = (h[i] + h[i + 1]) / 3.0
            if i < k - 3:
                b_mat[i, i + 1] = h[i + 1] / 6.0
                b_mat[i + 1, i] = h[i + 1] / 6.0
        binv_d = linalg.solve(b_mat, d_mat, assume_a="sym")
        self.knots = knots
        self.h = h
        # second derivatives at the knots, zero at both ends (natural spline)
        self.f_mat = np.vstack([np.zeros(k), binv_d, np.zeros(k)])
        self.penalty = d_mat.T @ binv_d
        self.penalty = 0.5 * (self.penalty + self.penalty.T)

    @classmethod
    def from_data(cls, x: np.ndarray, k: int) -> "CubicRegressionSpline":
        unique = np.unique(np.asarray(x, dtype=float))
        if unique.size < k:
            raise ValueError(f"Only {unique.size} unique covariate values for a basis of dimension {k}.")
        return cls(np.quantile(unique, np.linspace(0.0, 1.0, k)))

    @property
    def n_coef(self) -> int:
        return self.knots.size

    @property
    def penalties(self) -> List[np.ndarray]:
        return [self.penalty]

    @property
    def domain(self) -> Tuple[float, float]:
        return float(self.knots[0]), float(self.knots[-1])

    def _end_slopes(self) -> Tuple[np.ndarray, np.ndarray]:
        k = self.n_coef
        h0, hk = self.h[0], self.h[-1]
        eye = np.eye(k)
        lower = (eye[1] - eye[0]) / h0 - h0 / 3.0 * self.f_mat[0] - h0 / 6.0 * self.f_mat[1]
        upper = (eye[k - 1] - eye[k - 2]) / hk + hk / 6.0 * self.f_mat[k - 2] + hk / 3.0 * self.f_mat[k - 1]
        return lower, upper

    def basis(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        k = self.n_coef
        out = np.zeros((x.size, k))
        lo, hi = self.domain
        inside = (x >= lo) & (x <= hi)
        rows = np.flatnonzero(inside)
        if rows.size:
            xi = x[rows]
            j = np.clip(np.searchsorted(self.knots, xi, side="right") - 1, 0, k - 2)
            hj = self.h[j]
            right = self.knots[j + 1] - xi
            left = xi - self.knots[j]
            out[rows, j] += right / hj
            out[rows, j + 1] += left / hj
            c_minus = (right**3 / hj - hj * right) / 6.0
            c_plus = (left**3 / hj - hj * left) / 6.0
            out[rows] += c_minus[:, None] * self.f_mat[j] + c_plus[:, None] * self.f_mat[j + 1]
        # linear extrapolation from the boundary value and slope
        slope_lo, slope_hi = self._end_slopes()
        below = np.flatnonzero(x < lo)
        if below.size:
            out[below, 0] += 1.0
            out[below] += (x[below] - lo)[:, None] * slope_lo
        above = np.flatnonzero(x > hi)
        if above.size:
            out[above, k - 1] += 1.0
            out[above] += (x[above] - hi)[:, None] * slope_hi
        return out


class CyclicCubicSpline:
    """Cubic spline on [lower, upper) whose value and first two derivatives match at both ends."""

    def __init__(self, lower: float, upper: float, k: int) -> None:
        if k < 4:
            raise ValueError("A cyclic cubic spline needs at least 4 knots.")
        if not upper > lower:
            raise ValueError(f"Invalid period ({lower}, {upper}).")
        knots = np.linspace(lower, upper, k)
        m = k - 1
        h = np.diff(knots)
        d_mat = np.zeros((m, m))
        b_mat = np.zeros((m, m))
        for j in range(m):
            h_prev, h_next = h[j - 1], h[j]
            b_mat[j, j] += (h_prev + h_next) / 3.0
            b_mat[j, (j - 1) % m] += h_prev / 6.0
            b_mat[j, (j + 1) % m] += h_next / 6.0
            d_mat[j, (j - 1) % m] += 1.0 / h_prev
            d_mat[j, j] += -1.0 / h_prev - 1.0 / h_next
            d_mat[j, (j + 1) % m] += 1.0 / h_next
        self.knots = knots
        self.h = h
        self.lower = float(lower)
        self.upper = float(upper)
        self.f_mat = linalg.solve(b_mat, d_mat, assume_a="sym")
        self.penalty = d_mat.T @ self.f_mat
        self.penalty = 0.5 * (self.penalty + self.penalty.T)

    @property
    def n_coef(self) -> int:
        return self.knots.size - 1

    @property
    def period(self) -> float:
        return self.upper - self.lower

    @property
    def penalties(self) -> List[np.ndarray]:
        return [self.penalty]

    @property
    def domain(self) -> Tuple[float, float]:
        return self.lower, self.upper

    def basis(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        m = self.n_coef
        u = self.lower + np.mod(x - self.lower, self.period)
        j = np.clip(np.searchsorted(self.knots, u, side="right") - 1, 0, m - 1)
        j_next = (j + 1) % m
        hj = self.h[j]
        right = self.knots[j + 1] - u
        left = u - self.knots[j]
        rows = np.arange(x.size)
        out = np.zeros((x.size, m))
        out[rows, j] += right / hj
        out[rows, j_next] += left / hj
        c_minus = (right**3 / hj - hj * right) / 6.0
        c_plus = (left**3 / hj - hj * left) / 6.0
        out += c_minus[:, None] * self.f_mat[j] + c_plus[:, None] * self.f_mat[j_next]
        return out


class TensorProductSpline:
    def __init__(self, margins: Sequence[CubicRegressionSpline]) -> None:
        if not margins:
            raise ValueError("A tensor product needs at least one margin.")
        self.margins = list(margins)

    @property
    def n_coef(self) -> int:
        return int(np.prod([m.n_coef for m in self.margins]))

    @property
    def penalties(self) -> List[np.ndarray]:
        sizes = [m.n_coef for m in self.margins]
        out = []
        for i, margin in enumerate(self.margins):
            mats = [np.eye(n) for n in sizes]
            mats[i] = margin.penalty
            pen = mats[0]
            for mat in mats[1:]:
                pen = np.kron(pen, mat)
            out.append(pen)
        return out

    def basis(self, columns: Sequence[np.ndarray]) -> np.ndarray:
        if len(columns) != len(self.margins):
            raise ValueError(f"Expected {len(self.margins)} covariates, got {len(columns)}.")
        out = self.margins[0].basis(columns[0])
        for margin, x in zip(self.margins[1:], columns[1:]):
            right = margin.basis(x)
            out = (out[:, :, None] * right[:, None, :]).reshape(out.shape[0], -1)
        return out


def sum_to_zero_constraint(design: np.ndarray) -> np.ndarray:
    """Null-space basis Z of the column-sum constraint, so that 1' X Z = 0."""
    col_sums = design.sum(axis=0)[:, None]
    q_mat, _ = np.linalg.qr(col_sums, mode="complete")
    return q_mat[:, 1:]


@dataclass(frozen=True, eq=False)
class TermSmoother:
    """A smooth term bound to its training knots and centring constraint."""

    term: SmoothTerm
    spline: object
    constraint: np.ndarray
    penalties: Tuple[np.ndarray, ...]

    @property
    def label(self) -> str:
        return self.term.label

    @property
    def n_coef(self) -> int:
        return self.constraint.shape[1]

    def raw_basis(self, data: pd.DataFrame) -> np.ndarray:
        missing = [v for v in self.term.variables if v not in data.columns]
        if missing:
            raise KeyError(f"{self.label}: missing covariates {missing}")
        columns = [data[v].to_numpy(dtype=float) for v in self.term.variables]
        if isinstance(self.spline, TensorProductSpline):
            return self.spline.basis(columns)
        return self.spline.basis(columns[0])

    def design(self, data: pd.DataFrame) -> np.ndarray:
        return self.raw_basis(data) @ self.constraint

    def grid(self, n_points: int = 100) -> pd.DataFrame:
        if isinstance(self.spline, TensorProductSpline):
            axes = [np.linspace(*m.domain, n_points) for m in self.spline.margins]
            index = pd.MultiIndex.from_product(axes, names=list(self.term.variables))
            return index.to_frame(index=False)
        lo, hi = self.spline.domain
        return pd.DataFrame({self.term.variables[0]: np.linspace(lo, hi, n_points)})


def build_smoother(term: SmoothTerm, data: pd.DataFrame) -> TermSmoother:
    missing = [v for v in term.variables if v not in data.columns]
    if missing:
        raise KeyError(f"{term.label}: missing covariates {missing}")
    if term.basis == "cc":
        lower, upper = term.period
        spline = CyclicCubicSpline(lower, upper, term.dimension[0])
    elif term.basis == "cr":
        spline = CubicRegressionSpline.from_data(data[term.variables[0]].to_numpy(dtype=float), term.dimension[0])
    else:
        spline = TensorProductSpline(
            [
                CubicRegressionSpline.from_data(data[v].to_numpy(dtype=float), k)
                for v, k in zip(term.variables, term.dimension)
            ]
        )
    columns = [data[v].to_numpy(dtype=float) for v in term.variables]
    raw = spline.basis(columns) if isinstance(spline, TensorProductSpline) else spline.basis(columns[0])
    constraint = sum_to_zero_constraint(raw)
    penalties = tuple(constraint.T @ pen @ constraint for pen in spline.penalties)
    for arr in (constraint,) + penalties:
        arr.setflags(write=False)
    return TermSmoother(term=term, spline=spline, constraint=constraint, penalties=penalties)
