from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

# Canonical column names used throughout the workflow
TIMESTAMP_COL = "timestamp"
DAY_COL = "day_index"
HOUR_COL = "hour_of_day"
TEMPERATURE_COL = "temperature"
WIND_COL = "wind_speed"
PRECIP_EVENT_COL = "precipitation_event"
POST_EVENT_COL = "post_event_phase"
RESPONSE_COL = "nh3_emission"
PREDICTION_COL = "predicted_emission"
TIME_BLOCK_COL = "time_block"

CATEGORICAL_COLUMNS: Tuple[str, str] = (PRECIP_EVENT_COL, POST_EVENT_COL)
NUMERIC_COLUMNS: Tuple[str, ...] = (HOUR_COL, TEMPERATURE_COL, WIND_COL, RESPONSE_COL)
MODEL_COLUMNS: Tuple[str, ...] = (
    TIMESTAMP_COL,
    DAY_COL,
    HOUR_COL,
    TEMPERATURE_COL,
    WIND_COL,
    PRECIP_EVENT_COL,
    POST_EVENT_COL,
    RESPONSE_COL,
)

SECONDS_PER_BLOCK = 86400

# Accepted family -> link combinations for the fitting engine
FAMILY_LINKS: Dict[str, Tuple[str, ...]] = {
    "gamma": ("log",),
    "gaussian": ("identity",),
}
SMOOTH_BASES: Tuple[str, ...] = ("cr", "cc", "te")


@dataclass(frozen=True)
class SmoothTerm:
    """One smooth term of the additive predictor.

    ``basis`` is ``"cr"`` (cubic regression spline), ``"cc"`` (cyclic cubic
    spline with ``period``) or ``"te"`` (tensor product of cubic regression
    spline margins, one entry of ``dimension`` per variable).
    """

    variables: Tuple[str, ...]
    basis: str = "cr"
    dimension: Tuple[int, ...] = (10,)
    period: Optional[Tuple[float, float]] = None

    def __post_init__(self) -> None:
        if not self.variables:
            raise ValueError("A smooth term needs at least one variable.")
        if self.basis not in SMOOTH_BASES:
            raise ValueError(f"Unsupported smooth basis {self.basis!r}; expected one of {SMOOTH_BASES}.")
        if len(self.dimension) != len(self.variables):
            raise ValueError(
                f"{self.label}: got {len(self.dimension)} basis dimensions for {len(self.variables)} variables."
            )
        if self.basis in ("cr", "cc") and len(self.variables) != 1:
            raise ValueError(f"{self.label}: basis {self.basis!r} takes exactly one variable; use 'te'.")
        min_dim = 4 if self.basis == "cc" else 3
        if any(k < min_dim for k in self.dimension):
            raise ValueError(f"{self.label}: basis dimension must be >= {min_dim}, got {self.dimension}.")
        if self.basis == "cc":
            if self.period is None:
                raise ValueError(f"{self.label}: cyclic smooths need a period (lower, upper).")
            lower, upper = self.period
            if not upper > lower:
                raise ValueError(f"{self.label}: period upper bound must exceed lower bound, got {self.period}.")
        elif self.period is not None:
            raise ValueError(f"{self.label}: only cyclic smooths take a period.")

    @property
    def label(self) -> str:
        prefix = "te" if self.basis == "te" else "s"
        return f"{prefix}({','.join(self.variables)})"


@dataclass(frozen=True)
class CorrelationSpec:
    """ARMA(p, q) residual correlation, ordered by time within ``group``."""

    p: int = 2
    q: int = 1
    group: Optional[str] = DAY_COL
    order_by: str = TIMESTAMP_COL

    def __post_init__(self) -> None:
        if self.p < 0 or self.q < 0:
            raise ValueError(f"ARMA orders must be non-negative, got p={self.p}, q={self.q}.")

    @property
    def n_params(self) -> int:
        return self.p + self.q


@dataclass(frozen=True)
class ModelSpec:
    response: str = RESPONSE_COL
    family: str = "gamma"
    link: str = "log"
    fixed_effects: Tuple[str, ...] = CATEGORICAL_COLUMNS
    smooths: Tuple[SmoothTerm, ...] = ()
    random_intercept: Optional[str] = DAY_COL
    correlation: CorrelationSpec = field(default_factory=CorrelationSpec)

    def __post_init__(self) -> None:
        links = FAMILY_LINKS.get(self.family)
        if links is None:
            raise ValueError(f"Unsupported family {self.family!r}; expected one of {tuple(FAMILY_LINKS)}.")
        if self.link not in links:
            raise ValueError(f"Link {self.link!r} is not available for family {self.family!r}; use one of {links}.")
        labels = [term.label for term in self.smooths]
        duplicated = sorted({lab for lab in labels if labels.count(lab) > 1})
        if duplicated:
            raise ValueError(f"Duplicated smooth terms: {duplicated}")
        covariates = set(self.fixed_effects)
        for term in self.smooths:
            covariates.update(term.variables)
        if self.random_intercept:
            covariates.add(self.random_intercept)
        if self.response in covariates:
            raise ValueError(f"Response {self.response!r} cannot also be a covariate.")
        if len(set(self.fixed_effects)) != len(self.fixed_effects):
            raise ValueError(f"Duplicated fixed effects: {self.fixed_effects}")
        group = self.correlation.group
        if group is not None and group != self.random_intercept:
            raise ValueError(
                f"Correlation group {group!r} must match the random-intercept grouping {self.random_intercept!r}."
            )

    @property
    def covariates(self) -> Tuple[str, ...]:
        cols = list(self.fixed_effects)
        for term in self.smooths:
            cols.extend(v for v in term.variables if v not in cols)
        if self.random_intercept and self.random_intercept not in cols:
            cols.append(self.random_intercept)
        return tuple(cols)


def emission_model_spec(
    hour_basis_dim: int = 10,
    smooth_basis_dim: int = 10,
    day_basis_dim: int = 5,
    arma_p: int = 2,
    arma_q: int = 1,
) -> ModelSpec:
    """NH3 emission GAMM: Gamma(log) with cyclic hour, wind, temperature and day drift."""
    return ModelSpec(
        smooths=(
            SmoothTerm((HOUR_COL,), basis="cc", dimension=(hour_basis_dim,), period=(0.0, 24.0)),
            SmoothTerm((WIND_COL,), basis="cr", dimension=(smooth_basis_dim,)),
            SmoothTerm((TEMPERATURE_COL,), basis="cr", dimension=(smooth_basis_dim,)),
            SmoothTerm((DAY_COL,), basis="te", dimension=(day_basis_dim,)),
        ),
        correlation=CorrelationSpec(p=arma_p, q=arma_q),
    )


@dataclass(frozen=True)
class WorkflowConfig:
    """Central configuration shared across workflow steps."""

    project_root: Path = Path(".").resolve()
    input_path: Path = Path("data/nh3_feedlot.csv")
    timestamp_format: Optional[str] = None
    # canonical column -> raw column in the input table
    raw_columns: Dict[str, str] = field(
        default_factory=lambda: {
            TIMESTAMP_COL: "timestamp",
            DAY_COL: "day",
            HOUR_COL: "hour",
            TEMPERATURE_COL: "temperature",
            WIND_COL: "wind_speed",
            PRECIP_EVENT_COL: "precip_event",
            POST_EVENT_COL: "post_event",
            RESPONSE_COL: "nh3",
        }
    )
    sampling_fraction: float = 0.8
    random_seed: int = 42
    hour_basis_dim: int = 10
    smooth_basis_dim: int = 10
    day_basis_dim: int = 5
    arma_p: int = 2
    arma_q: int = 1
    max_pql_iter: int = 20
    pql_tolerance: float = 1e-6
    diagnostic_lags: int = 1
    lowess_frac: float = 0.3
    make_figures: bool = True

    def __post_init__(self) -> None:
        if not 0.0 < self.sampling_fraction <= 1.0:
            raise ValueError(f"sampling_fraction must lie in (0, 1], got {self.sampling_fraction}.")
        if self.max_pql_iter < 1:
            raise ValueError(f"max_pql_iter must be >= 1, got {self.max_pql_iter}.")
        if self.diagnostic_lags < 1:
            raise ValueError(f"diagnostic_lags must be >= 1, got {self.diagnostic_lags}.")
        missing = [col for col in MODEL_COLUMNS if col not in self.raw_columns]
        if missing:
            raise ValueError(f"raw_columns is missing mappings for: {missing}")

    @property
    def output_dirs(self) -> Tuple[Path, ...]:
        return (
            self.figures_dir,
            self.tables_dir,
            self.intermediate_dir,
            self.logs_dir,
        )

    @property
    def figures_dir(self) -> Path:
        return self.project_root / "figures"

    @property
    def tables_dir(self) -> Path:
        return self.project_root / "tables"

    @property
    def intermediate_dir(self) -> Path:
        return self.project_root / "intermediate"

    @property
    def logs_dir(self) -> Path:
        return self.project_root / "logs"

    def model_spec(self) -> ModelSpec:
        return emission_model_spec(
            hour_basis_dim=self.hour_basis_dim,
            smooth_basis_dim=self.smooth_basis_dim,
            day_basis_dim=self.day_basis_dim,
            arma_p=self.arma_p,
            arma_q=self.arma_q,
        )


def default_config() -> WorkflowConfig:
    return WorkflowConfig()
