"""Tests for dual number arithmetic."""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from nlpeval import Dual, dual


@pytest.mark.dual
def test_arithmetic_rules():
    a = Dual(3.0, 1.0)
    b = Dual(2.0, 0.5)

    assert a + b == Dual(5.0, 1.5)
    assert a - b == Dual(1.0, 0.5)
    assert a * b == Dual(6.0, 1.0 * 2.0 + 3.0 * 0.5)
    assert -a == Dual(-3.0, -1.0)

    q = a / b
    assert_allclose(q.value, 1.5)
    assert_allclose(q.epsilon, (1.0 * 2.0 - 3.0 * 0.5) / 4.0)


@pytest.mark.dual
def test_mixed_with_floats():
    a = Dual(2.0, 1.0)

    assert 1.0 + a == Dual(3.0, 1.0)
    assert a + 1.0 == Dual(3.0, 1.0)
    assert 5.0 - a == Dual(3.0, -1.0)
    assert 3.0 * a == Dual(6.0, 3.0)
    r = 1.0 / a
    assert_allclose([r.value, r.epsilon], [0.5, -0.25])


@pytest.mark.dual
def test_numpy_scalars_defer_to_dual():
    """``np.float64 op Dual`` must produce a Dual, not an object array."""
    a = Dual(2.0, 1.0)
    c = np.float64(3.0)

    assert isinstance(c * a, Dual)
    assert isinstance(c + a, Dual)
    assert isinstance(c - a, Dual)
    assert c * a == Dual(6.0, 3.0)


@pytest.mark.dual
@pytest.mark.parametrize(
    ("f", "df", "x"),
    [
        (dual.sqrt, lambda x: 0.5 / np.sqrt(x), 2.0),
        (dual.exp, np.exp, 0.3),
        (dual.log, lambda x: 1.0 / x, 1.7),
        (dual.sin, np.cos, 0.9),
        (dual.cos, lambda x: -np.sin(x), 0.9),
        (dual.tan, lambda x: 1.0 / np.cos(x) ** 2, 0.4),
        (dual.atan, lambda x: 1.0 / (1.0 + x * x), -1.2),
        (dual.tanh, lambda x: 1.0 - np.tanh(x) ** 2, 0.6),
    ],
    ids=["sqrt", "exp", "log", "sin", "cos", "tan", "atan", "tanh"],
)
def test_univariate_chain_rule(f, df, x):
    result = f(Dual(x, 2.0))

    assert_allclose(result.value, f(x))
    assert_allclose(result.epsilon, 2.0 * df(x))


@pytest.mark.dual
def test_functions_accept_floats():
    assert_allclose(dual.exp(1.0), np.e)
    assert not isinstance(dual.sin(0.5), Dual)


@pytest.mark.dual
def test_float_domain_errors_give_nan():
    with np.errstate(invalid="ignore", divide="ignore"):
        assert np.isnan(dual.log(-1.0))
        assert np.isnan(dual.sqrt(-1.0))
        assert np.isinf(dual.log(0.0))


@pytest.mark.dual
def test_power():
    base = Dual(2.0, 1.0)

    p = dual.power(base, 3.0)
    assert_allclose([p.value, p.epsilon], [8.0, 12.0])

    q = dual.power(2.0, Dual(3.0, 1.0))
    assert_allclose([q.value, q.epsilon], [8.0, 8.0 * np.log(2.0)])

    assert_allclose(dual.power(3.0, 2.0), 9.0)


@pytest.mark.dual
def test_power_negative_base_with_constant_exponent():
    """No log term is formed when the exponent carries no direction."""
    p = Dual(-2.0, 1.0) ** 2.0
    assert_allclose([p.value, p.epsilon], [4.0, -4.0])


@pytest.mark.dual
def test_abs_and_sign():
    assert abs(Dual(-3.0, 2.0)) == Dual(3.0, -2.0)
    assert dual.sign(Dual(0.0, 1.0)) == 0.0
    assert dual.sign(-0.5) == -1.0


@pytest.mark.dual
def test_comparisons_use_value():
    assert Dual(1.0, 100.0) < Dual(2.0, -100.0)
    assert Dual(1.0, 5.0) > 0
    assert Dual(1.0, 5.0) <= 1.0
    assert Dual(1.0, 5.0) >= Dual(1.0, 0.0)


@pytest.mark.dual
def test_value_and_epsilon_helpers():
    assert dual.value(Dual(1.5, 2.0)) == 1.5
    assert dual.epsilon(Dual(1.5, 2.0)) == 2.0
    assert dual.value(4.0) == 4.0
    assert dual.epsilon(4.0) == 0.0
