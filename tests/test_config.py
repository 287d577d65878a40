from dataclasses import FrozenInstanceError, replace

import pytest

from nh3_workflow.config import (
    DAY_COL,
    HOUR_COL,
    RESPONSE_COL,
    CorrelationSpec,
    ModelSpec,
    SmoothTerm,
    WorkflowConfig,
    default_config,
    emission_model_spec,
)


def test_default_config_values():
    cfg = default_config()
    assert cfg.sampling_fraction == 0.8
    assert cfg.random_seed == 42
    assert cfg.hour_basis_dim == 10
    assert (cfg.arma_p, cfg.arma_q) == (2, 1)
    assert cfg.figures_dir == cfg.project_root / "figures"
    assert len(cfg.output_dirs) == 4


def test_config_is_frozen():
    cfg = default_config()
    with pytest.raises(FrozenInstanceError):
        cfg.random_seed = 1


@pytest.mark.parametrize("fraction", [0.0, -0.1, 1.5])
def test_invalid_sampling_fraction(fraction):
    with pytest.raises(ValueError, match="sampling_fraction"):
        replace(default_config(), sampling_fraction=fraction)


def test_raw_columns_must_cover_model_columns():
    with pytest.raises(ValueError, match="raw_columns"):
        WorkflowConfig(raw_columns={"timestamp": "timestamp"})


def test_emission_model_spec_terms():
    spec = emission_model_spec(hour_basis_dim=8, arma_p=1, arma_q=0)
    labels = [t.label for t in spec.smooths]
    assert labels == ["s(hour_of_day)", "s(wind_speed)", "s(temperature)", "te(day_index)"]
    hour = spec.smooths[0]
    assert hour.basis == "cc" and hour.period == (0.0, 24.0) and hour.dimension == (8,)
    assert spec.family == "gamma" and spec.link == "log"
    assert spec.random_intercept == DAY_COL
    assert spec.correlation.n_params == 1
    assert RESPONSE_COL not in spec.covariates


def test_model_spec_from_config():
    cfg = replace(default_config(), smooth_basis_dim=6, arma_q=2)
    spec = cfg.model_spec()
    assert spec.smooths[1].dimension == (6,)
    assert spec.correlation.q == 2


@pytest.mark.parametrize(
    "kwargs",
    [
        {"variables": (HOUR_COL,), "basis": "tp"},
        {"variables": (HOUR_COL,), "basis": "cc", "dimension": (8,)},
        {"variables": (HOUR_COL,), "basis": "cc", "dimension": (3,), "period": (0.0, 24.0)},
        {"variables": (HOUR_COL,), "basis": "cr", "period": (0.0, 24.0)},
        {"variables": (HOUR_COL, DAY_COL), "basis": "cr", "dimension": (5, 5)},
        {"variables": (HOUR_COL, DAY_COL), "basis": "te", "dimension": (5,)},
        {"variables": ()},
    ],
)
def test_invalid_smooth_terms(kwargs):
    with pytest.raises(ValueError):
        SmoothTerm(**kwargs)


def test_model_spec_validation():
    with pytest.raises(ValueError, match="Link"):
        ModelSpec(family="gamma", link="identity")
    with pytest.raises(ValueError, match="family"):
        ModelSpec(family="poisson")
    term = SmoothTerm((HOUR_COL,), basis="cc", dimension=(6,), period=(0.0, 24.0))
    with pytest.raises(ValueError, match="Duplicated smooth"):
        ModelSpec(smooths=(term, term))
    with pytest.raises(ValueError, match="covariate"):
        ModelSpec(smooths=(SmoothTerm((RESPONSE_COL,)),))
    with pytest.raises(ValueError, match="Correlation group"):
        ModelSpec(correlation=CorrelationSpec(group="other"))
    with pytest.raises(ValueError, match="ARMA orders"):
        CorrelationSpec(p=-1)
