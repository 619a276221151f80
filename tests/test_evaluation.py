"""Tests for forward, reverse and forward-over-reverse passes on single expressions."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from numpy.testing import assert_allclose

from nlpeval import (
    Dual,
    NonlinearExprData,
    adjmat,
    call,
    classify_linearity,
    forward_eval,
    gradient_sparsity,
    hessian_color_preprocess,
    hessian_matmat,
    hessian_sparsity,
    prepare_seed_matrix,
    recover_from_matmat,
    reverse_eval,
    subexpression,
    variable,
)

x0, x1, x2 = (variable(i) for i in range(3))


def _compile(tree):
    data = NonlinearExprData.from_tree(tree)
    return data, adjmat(data.nodes)


def _value_and_gradient(tree, x, subexpression_values=()):
    data, adj = _compile(tree)
    forward = np.zeros(len(data))
    value = forward_eval(forward, data.nodes, adj, data.const_values, x, subexpression_values)
    grad = np.zeros(len(x))
    reverse_eval(
        grad, np.zeros(len(data)), forward, data.nodes, adj, data.const_values, []
    )
    return value, grad


# (tree, jnp reference) pairs over three variables
CASES = {
    "polynomial": (
        call("+", call("^", call("-", x0, 2.0), 2.0), call("*", x0, x1)),
        lambda x: (x[0] - 2.0) ** 2 + x[0] * x[1],
    ),
    "nary_product": (
        call("*", x0, x1, x2, 2.0),
        lambda x: x[0] * x[1] * x[2] * 2.0,
    ),
    "quotient": (
        call("/", call("sin", x0), call("+", x1, 3.0)),
        lambda x: jnp.sin(x[0]) / (x[1] + 3.0),
    ),
    "transcendental": (
        call("+", call("exp", call("*", x0, x2)), call("log", x1), call("sqrt", x2)),
        lambda x: jnp.exp(x[0] * x[2]) + jnp.log(x[1]) + jnp.sqrt(x[2]),
    ),
    "trigonometric": (
        call("-", call("cos", x1), call("tan", call("*", 0.5, x0))),
        lambda x: jnp.cos(x[1]) - jnp.tan(0.5 * x[0]),
    ),
    "atan_tanh_abs": (
        call("*", call("atan", x0), call("tanh", x1), call("abs", call("neg", x2))),
        lambda x: jnp.arctan(x[0]) * jnp.tanh(x[1]) * jnp.abs(-x[2]),
    ),
    "variable_exponent": (
        call("^", x1, call("+", x0, 1.0)),
        lambda x: x[1] ** (x[0] + 1.0),
    ),
    "unary_minus": (
        call("-", call("*", x0, x0, x1)),
        lambda x: -(x[0] * x[0] * x[1]),
    ),
}

POINT = np.array([0.7, 1.3, 0.4])


@pytest.mark.evaluation
@pytest.mark.parametrize("name", list(CASES))
def test_forward_matches_reference(name):
    tree, f = CASES[name]
    value, _ = _value_and_gradient(tree, POINT)
    assert_allclose(value, f(jnp.asarray(POINT)), rtol=1e-12)


@pytest.mark.evaluation
@pytest.mark.parametrize("name", list(CASES))
def test_reverse_matches_jax_grad(name):
    tree, f = CASES[name]
    _, grad = _value_and_gradient(tree, POINT)
    assert_allclose(grad, jax.grad(f)(jnp.asarray(POINT)), rtol=1e-10, atol=1e-12)


@pytest.mark.evaluation
def test_reverse_eval_scales_and_accumulates():
    tree, f = CASES["polynomial"]
    data, adj = _compile(tree)
    forward = np.zeros(len(data))
    forward_eval(forward, data.nodes, adj, data.const_values, POINT, ())
    grad = np.ones(3)

    reverse_eval(grad, np.zeros(len(data)), forward, data.nodes, adj, data.const_values, [], 2.5)

    expected = 1.0 + 2.5 * np.asarray(jax.grad(f)(jnp.asarray(POINT)))
    assert_allclose(grad, expected, rtol=1e-12)


@pytest.mark.evaluation
def test_subexpression_values_and_adjoints():
    """A subexpression node reads its value and receives its adjoint."""
    tree = call("*", subexpression(0), x1)
    data, adj = _compile(tree)
    forward = np.zeros(len(data))
    value = forward_eval(forward, data.nodes, adj, data.const_values, POINT, [4.0])
    grad = np.zeros(3)
    sub_adjoints = np.zeros(1)

    reverse_eval(
        grad, np.zeros(len(data)), forward, data.nodes, adj, data.const_values, sub_adjoints
    )

    assert_allclose(value, 4.0 * POINT[1])
    assert_allclose(grad, [0.0, 4.0, 0.0])
    assert_allclose(sub_adjoints, [POINT[1]])


@pytest.mark.evaluation
def test_out_of_domain_gives_nan():
    with np.errstate(invalid="ignore", divide="ignore"):
        value, _ = _value_and_gradient(call("log", x0), np.array([-1.0, 0.0, 0.0]))
    assert np.isnan(value)


@pytest.mark.evaluation
def test_dual_forward_gives_directional_derivative():
    tree, f = CASES["transcendental"]
    data, adj = _compile(tree)
    direction = np.array([0.3, -1.0, 2.0])
    x = [Dual(xi, di) for xi, di in zip(POINT, direction, strict=True)]

    result = forward_eval([Dual(0.0)] * len(data), data.nodes, adj, data.const_values, x, ())

    _, jvp = jax.jvp(f, (jnp.asarray(POINT),), (jnp.asarray(direction),))
    assert_allclose(result.epsilon, jvp, rtol=1e-10)


@pytest.mark.hessian
@pytest.mark.parametrize("name", list(CASES))
@pytest.mark.parametrize("compress", [True, False], ids=["colored", "uncompressed"])
def test_hessian_matmat_recovers_hessian(name, compress):
    tree, f = CASES[name]
    data, adj = _compile(tree)
    linearity = classify_linearity(data.nodes, adj)
    edges = hessian_sparsity(data.nodes, adj, linearity)
    hess_I, hess_J, colored = hessian_color_preprocess(edges, 3, compress=compress)
    grad_sparsity = np.array(sorted(gradient_sparsity(data.nodes)), dtype=np.int32)

    seed = np.zeros((colored.num_local, colored.num_colors))
    prepare_seed_matrix(seed, colored)
    forward_input = [Dual(xi) for xi in POINT]
    hessian_matmat(
        seed,
        [Dual(0.0)] * len(data),
        [Dual(0.0)] * len(data),
        data.nodes,
        adj,
        data.const_values,
        POINT,
        [Dual(0.0)] * 3,
        forward_input,
        colored.local_indices,
        grad_sparsity,
    )
    values = np.zeros(colored.nnz)
    recover_from_matmat(values, seed, colored)

    H = np.asarray(jax.hessian(f)(jnp.asarray(POINT)))
    assert_allclose(values, H[hess_I, hess_J], rtol=1e-9, atol=1e-12)
    # input vector is restored for the next function
    assert forward_input == [Dual(xi) for xi in POINT]


@pytest.mark.hessian
def test_hessian_sparsity_covers_true_nonzeros():
    for tree, f in CASES.values():
        data, adj = _compile(tree)
        edges = hessian_sparsity(data.nodes, adj, classify_linearity(data.nodes, adj))
        H = np.asarray(jax.hessian(f)(jnp.asarray(POINT)))
        for i in range(3):
            for j in range(i + 1):
                if abs(H[i, j]) > 1e-12:
                    assert (i, j) in edges
