from __future__ import annotations

import pandas as pd
import pytest

from nh3_workflow import core
from nh3_workflow.gamm import attach_predictions, fit_gamm

from synthetic import small_config, synthetic_raw


@pytest.fixture
def raw_frame() -> pd.DataFrame:
    return synthetic_raw()


@pytest.fixture(scope="session")
def session_config():
    return small_config()


@pytest.fixture(scope="session")
def sampled(session_config) -> pd.DataFrame:
    prepared, _ = core.prepare_observations(synthetic_raw(), session_config)
    return core.stratified_sample(prepared, session_config.sampling_fraction, core.make_rng(session_config.random_seed))


@pytest.fixture(scope="session")
def fitted_model(session_config, sampled):
    return fit_gamm(sampled, session_config.model_spec(), max_pql_iter=session_config.max_pql_iter)


@pytest.fixture(scope="session")
def augmented(fitted_model, sampled) -> pd.DataFrame:
    return attach_predictions(fitted_model, sampled)
