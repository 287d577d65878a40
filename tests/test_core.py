import numpy as np
import pandas as pd
import pytest

from nh3_workflow import core
from nh3_workflow.config import (
    CATEGORICAL_COLUMNS,
    MODEL_COLUMNS,
    RESPONSE_COL,
    TIME_BLOCK_COL,
    TIMESTAMP_COL,
    default_config,
)


def _two_block_records():
    stamps = list(pd.date_range("2023-06-01 00:00", periods=5, freq="h")) + list(
        pd.date_range("2023-06-02 00:00", periods=5, freq="h")
    )
    frame = pd.DataFrame({TIMESTAMP_COL: stamps, "value": np.arange(10)})
    frame[TIME_BLOCK_COL] = core.time_blocks(frame[TIMESTAMP_COL])
    return frame


def test_time_blocks_floor_days():
    stamps = pd.Series(pd.to_datetime(["1970-01-01 23:59:59", "1970-01-02 00:00:00", "2023-06-01 12:00"]))
    blocks = core.time_blocks(stamps)
    assert blocks.tolist() == [0, 1, 19509]
    assert blocks.dtype == np.int64


def test_prepare_clean_dataset(raw_frame):
    df, report = core.prepare_observations(raw_frame, default_config())
    assert report.n_raw == report.n_clean == len(raw_frame)
    assert report.n_dropped == 0
    assert list(df.columns) == list(MODEL_COLUMNS) + [TIME_BLOCK_COL]
    assert not df[list(MODEL_COLUMNS)].isna().any().any()
    for col in CATEGORICAL_COLUMNS:
        assert isinstance(df[col].dtype, pd.CategoricalDtype)
    assert pd.api.types.is_datetime64_any_dtype(df[TIMESTAMP_COL])
    assert df[TIME_BLOCK_COL].nunique() == 10


def test_prepare_drops_invalid_records(raw_frame):
    raw = raw_frame.copy()
    raw["temperature"] = raw["temperature"].astype(object)
    raw.loc[10, "timestamp"] = "not a time"
    raw.loc[11, "temperature"] = "n/a"
    raw.loc[12, "wind_speed"] = np.nan
    raw.loc[13, "nh3"] = 0.0
    raw.loc[14, "nh3"] = -2.5
    raw.loc[15, "hour"] = np.inf
    df, report = core.prepare_observations(raw, default_config())
    assert report.dropped == {
        "unparsable_timestamp": 1,
        "missing_or_invalid": 3,
        "non_positive_response": 2,
    }
    assert report.n_clean == len(raw) - 6 == len(df)
    assert (df[RESPONSE_COL] > 0).all()
    assert df.index.equals(pd.RangeIndex(len(df)))
    # the input frame is left untouched
    assert raw.loc[13, "nh3"] == 0.0


def test_prepare_drops_non_numeric_event_labels(raw_frame):
    raw = raw_frame.copy()
    raw["precip_event"] = raw["precip_event"].astype(object)
    raw.loc[[3, 4], "precip_event"] = "storm"
    df, report = core.prepare_observations(raw, default_config())
    assert report.dropped["missing_or_invalid"] == 2
    assert report.n_clean == len(raw) - 2
    assert set(df["precipitation_event"].cat.categories) <= {0, 1, 2}


def test_prepare_missing_columns(raw_frame):
    with pytest.raises(KeyError, match="Missing required columns"):
        core.prepare_observations(raw_frame.drop(columns=["wind_speed"]), default_config())


def test_prepare_timezone_aware_stamps(raw_frame):
    raw = raw_frame.copy()
    raw["timestamp"] = pd.to_datetime(raw["timestamp"]).dt.tz_localize("Etc/GMT-8")
    df, _ = core.prepare_observations(raw, default_config())
    assert df[TIMESTAMP_COL].dt.tz is None
    assert df[TIMESTAMP_COL].iloc[0] == pd.Timestamp("2023-05-31 16:00:00")


def test_load_observations(tmp_path, raw_frame):
    csv_path = tmp_path / "obs.csv"
    raw_frame.to_csv(csv_path, index=False)
    loaded = core.load_observations(csv_path)
    assert loaded.shape == raw_frame.shape
    with pytest.raises(FileNotFoundError):
        core.load_observations(tmp_path / "missing.csv")
    bad = tmp_path / "obs.txt"
    bad.write_text("x")
    with pytest.raises(ValueError, match="Unsupported input format"):
        core.load_observations(bad)


def test_sampler_two_block_scenario():
    records = _two_block_records()
    first = core.stratified_sample(records, 0.8, core.make_rng(42))
    second = core.stratified_sample(records, 0.8, core.make_rng(42))
    assert len(first) == 8
    assert first[TIME_BLOCK_COL].value_counts().tolist() == [4, 4]
    pd.testing.assert_frame_equal(first, second)
    assert not first["value"].duplicated().any()


def test_sampler_does_not_mutate_input():
    records = _two_block_records()
    before = records.copy()
    sample = core.stratified_sample(records, 0.5, core.make_rng(1))
    sample.loc[:, "value"] = -1
    pd.testing.assert_frame_equal(records, before)


@pytest.mark.parametrize("fraction", [0.1, 0.25, 0.5, 0.8, 1.0])
def test_sampler_length_formula(raw_frame, fraction):
    df, _ = core.prepare_observations(raw_frame.iloc[::3], default_config())
    sample = core.stratified_sample(df, fraction, core.make_rng(3))
    expected = sum(int(round(fraction * n)) for n in df.groupby(TIME_BLOCK_COL).size())
    assert len(sample) == expected == core.expected_sample_size(df, fraction)


def test_sampler_full_fraction_keeps_all_records():
    records = _two_block_records()
    sample = core.stratified_sample(records, 1.0, core.make_rng(0))
    assert sorted(sample["value"]) == list(range(10))


def test_sampler_seed_changes_subset(raw_frame):
    df, _ = core.prepare_observations(raw_frame, default_config())
    a = core.stratified_sample(df, 0.5, core.make_rng(1))
    b = core.stratified_sample(df, 0.5, core.make_rng(2))
    assert len(a) == len(b)
    assert not a[TIMESTAMP_COL].equals(b[TIMESTAMP_COL])


@pytest.mark.parametrize("fraction", [0.0, 1.01, -0.5])
def test_sampler_rejects_invalid_fraction(fraction):
    with pytest.raises(ValueError):
        core.stratified_sample(_two_block_records(), fraction, core.make_rng(0))


def test_sampler_empty_input():
    empty = _two_block_records().iloc[0:0]
    sample = core.stratified_sample(empty, 0.8, core.make_rng(0))
    assert sample.empty
    assert list(sample.columns) == list(empty.columns)


def test_sampler_requires_time_blocks():
    with pytest.raises(KeyError, match="time block"):
        core.stratified_sample(_two_block_records().drop(columns=[TIME_BLOCK_COL]), 0.8, core.make_rng(0))
