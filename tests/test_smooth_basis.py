import numpy as np
import pandas as pd
import pytest

from nh3_workflow.config import SmoothTerm
from nh3_workflow.smooth_basis import (
    CubicRegressionSpline,
    CyclicCubicSpline,
    TensorProductSpline,
    build_smoother,
    sum_to_zero_constraint,
)


@pytest.fixture
def cr():
    return CubicRegressionSpline([0.0, 1.0, 2.5, 4.0, 6.0, 10.0])


def test_cr_partition_of_unity(cr):
    x = np.linspace(-3.0, 14.0, 57)
    np.testing.assert_allclose(cr.basis(x).sum(axis=1), 1.0, atol=1e-10)


def test_cr_interpolates_knot_values(cr):
    np.testing.assert_allclose(cr.basis(cr.knots), np.eye(cr.n_coef), atol=1e-10)


def test_cr_linear_functions_and_extrapolation(cr):
    x = np.array([-5.0, -0.5, 0.3, 3.3, 9.9, 12.0, 20.0])
    np.testing.assert_allclose(cr.basis(x) @ cr.knots, x, atol=1e-9)


def test_cr_extrapolation_is_linear(cr):
    beta = np.array([0.5, -1.0, 2.0, 0.0, 1.5, -0.7])
    far = cr.basis(np.array([10.0, 11.0, 12.0, 13.0])) @ beta
    np.testing.assert_allclose(np.diff(far, n=2), 0.0, atol=1e-10)


def test_cr_penalty_null_space(cr):
    np.testing.assert_allclose(cr.penalty @ np.ones(cr.n_coef), 0.0, atol=1e-10)
    np.testing.assert_allclose(cr.penalty @ cr.knots, 0.0, atol=1e-9)
    assert np.linalg.matrix_rank(cr.penalty) == cr.n_coef - 2
    assert np.all(np.linalg.eigvalsh(cr.penalty) > -1e-10)


def test_cr_from_data_quantile_knots():
    x = np.arange(100, dtype=float)
    spline = CubicRegressionSpline.from_data(x, 5)
    np.testing.assert_allclose(spline.knots, [0.0, 24.75, 49.5, 74.25, 99.0])
    with pytest.raises(ValueError, match="unique"):
        CubicRegressionSpline.from_data(np.array([1.0, 1.0, 2.0]), 4)


def test_cr_rejects_bad_knots():
    with pytest.raises(ValueError):
        CubicRegressionSpline([0.0, 1.0])
    with pytest.raises(ValueError):
        CubicRegressionSpline([0.0, 2.0, 1.0])


def test_cc_wraps_period():
    spline = CyclicCubicSpline(0.0, 24.0, 8)
    assert spline.n_coef == 7
    np.testing.assert_allclose(spline.basis([0.0]), spline.basis([24.0]), atol=1e-12)
    np.testing.assert_allclose(spline.basis([-1.0]), spline.basis([23.0]), atol=1e-12)
    np.testing.assert_allclose(spline.basis([23.999999]), spline.basis([0.0]), atol=1e-5)
    np.testing.assert_allclose(spline.basis(np.linspace(0, 24, 49)).sum(axis=1), 1.0, atol=1e-10)


def test_cc_smooth_across_boundary():
    spline = CyclicCubicSpline(0.0, 24.0, 8)
    beta = np.array([1.0, 3.0, -2.0, 0.5, 2.0, -1.0, 0.0])
    eps = 1e-4
    f = lambda x: spline.basis(np.array([x])) @ beta  # noqa: E731
    left_slope = (f(24.0 - eps) - f(24.0 - 2 * eps)) / eps
    right_slope = (f(eps) - f(0.0)) / eps
    np.testing.assert_allclose(left_slope, right_slope, atol=1e-2)


def test_cc_penalty_null_space_is_constant():
    spline = CyclicCubicSpline(0.0, 24.0, 10)
    np.testing.assert_allclose(spline.penalty @ np.ones(spline.n_coef), 0.0, atol=1e-10)
    assert np.linalg.matrix_rank(spline.penalty) == spline.n_coef - 1


def test_tensor_product_structure():
    a = CubicRegressionSpline([0.0, 1.0, 2.0, 3.0])
    b = CubicRegressionSpline([0.0, 5.0, 10.0])
    te = TensorProductSpline([a, b])
    assert te.n_coef == 12
    assert [p.shape for p in te.penalties] == [(12, 12), (12, 12)]
    x = np.array([0.2, 1.7, 2.9])
    z = np.array([1.0, 7.5, 9.0])
    basis = te.basis([x, z])
    np.testing.assert_allclose(basis.sum(axis=1), 1.0, atol=1e-10)
    expected = np.einsum("ni,nj->nij", a.basis(x), b.basis(z)).reshape(3, -1)
    np.testing.assert_allclose(basis, expected)
    with pytest.raises(ValueError):
        te.basis([x])


def test_sum_to_zero_constraint():
    rng = np.random.default_rng(0)
    design = rng.random((40, 6))
    z = sum_to_zero_constraint(design)
    assert z.shape == (6, 5)
    np.testing.assert_allclose((design @ z).sum(axis=0), 0.0, atol=1e-10)
    np.testing.assert_allclose(z.T @ z, np.eye(5), atol=1e-10)


def test_build_smoother_centres_and_freezes():
    rng = np.random.default_rng(3)
    data = pd.DataFrame({"wind_speed": rng.gamma(3.0, 1.0, 200), "hour_of_day": rng.uniform(0, 24, 200)})
    smoother = build_smoother(SmoothTerm(("wind_speed",), dimension=(6,)), data)
    design = smoother.design(data)
    assert design.shape == (200, 5)
    assert smoother.n_coef == 5
    np.testing.assert_allclose(design.sum(axis=0), 0.0, atol=1e-8)
    assert not smoother.constraint.flags.writeable
    assert all(not p.flags.writeable for p in smoother.penalties)

    hour = build_smoother(SmoothTerm(("hour_of_day",), basis="cc", dimension=(6,), period=(0.0, 24.0)), data)
    assert hour.n_coef == 4
    grid = hour.grid(25)
    assert grid["hour_of_day"].iloc[0] == 0.0 and grid["hour_of_day"].iloc[-1] == 24.0

    with pytest.raises(KeyError):
        smoother.design(data.drop(columns=["wind_speed"]))


def test_build_tensor_smoother_grid():
    rng = np.random.default_rng(5)
    data = pd.DataFrame({"day_index": rng.integers(1, 11, 300), "temperature": rng.normal(20, 4, 300)})
    term = SmoothTerm(("day_index", "temperature"), basis="te", dimension=(4, 4))
    smoother = build_smoother(term, data)
    assert smoother.label == "te(day_index,temperature)"
    assert smoother.n_coef == 15
    assert len(smoother.penalties) == 2
    grid = smoother.grid(7)
    assert grid.shape == (49, 2)
    assert smoother.design(grid).shape == (49, 15)
