"""Verification utilities for checking evaluator results against JAX references.

The compiled expressions of an initialized `NLPEvaluator` are re-interpreted
with ``jax.numpy``, and the evaluator's sparse derivatives are compared to
``jax.grad``, ``jax.jacobian`` and ``jax.hessian`` of that re-interpretation.
Run JAX in 64-bit mode (``jax.config.update("jax_enable_x64", True)``)
for the default tolerances to be meaningful.
"""

from collections.abc import Callable

import jax
import jax.numpy as jnp
import numpy as np
from numpy.typing import ArrayLike, NDArray

from nlpeval.evaluator import NLPEvaluator
from nlpeval.nodes import NodeType, Operator


class VerificationError(AssertionError):
    """Raised when the evaluator's derivatives do not match JAX's dense reference.

    This indicates either a missing entry in a sparsity pattern
    or a wrong derivative rule.
    """


_JAX_RULES: dict[Operator, Callable] = {
    Operator.DIV: jnp.divide,
    Operator.POW: jnp.power,
    Operator.NEG: jnp.negative,
    Operator.SQRT: jnp.sqrt,
    Operator.EXP: jnp.exp,
    Operator.LOG: jnp.log,
    Operator.SIN: jnp.sin,
    Operator.COS: jnp.cos,
    Operator.TAN: jnp.tan,
    Operator.ATAN: jnp.arctan,
    Operator.TANH: jnp.tanh,
    Operator.ABS: jnp.abs,
}


def to_jax_function(
    evaluator: NLPEvaluator, which: str | int = "objective"
) -> Callable[[jax.Array], jax.Array]:
    """Nonlinear part of the objective or of one nonlinear constraint as a jnp function.

    Args:
        evaluator: An initialized evaluator.
        which: ``"objective"`` or the index of a nonlinear constraint
            (counted among nonlinear constraints only).

    Returns:
        Function mapping a point to a scalar, subexpressions included.
    """
    fn = evaluator.objective if which == "objective" else evaluator.constraints[which]
    if fn is None:
        msg = "The problem has no nonlinear objective"
        raise ValueError(msg)

    def f(x):
        sub_values: dict[int, jax.Array] = {}
        for k in evaluator.subexpression_order:
            sub = evaluator.subexpressions[k]
            sub_values[k] = _interpret(sub.nodes, sub.adj, sub.const_values, x, sub_values)
        return _interpret(fn.nodes, fn.adj, fn.const_values, x, sub_values)

    return f


def objective_function(evaluator: NLPEvaluator) -> Callable[[jax.Array], jax.Array]:
    """Full objective (constant, linear, quadratic and nonlinear parts) as a jnp function."""
    problem = evaluator.problem
    c = jnp.asarray(problem.linear_objective)
    quadratic = problem.quadratic_objective
    nonlinear = to_jax_function(evaluator) if evaluator.objective is not None else None

    def f(x):
        value = problem.objective_constant + jnp.dot(c, x)
        value = value + jnp.sum(quadratic.coeffs * x[quadratic.vars1] * x[quadratic.vars2])
        if nonlinear is not None:
            value = value + nonlinear(x)
        return value

    return f


def constraint_function(evaluator: NLPEvaluator) -> Callable[[jax.Array], jax.Array]:
    """All constraint rows, in evaluator row order, as a vector-valued jnp function."""
    problem = evaluator.problem
    A = jnp.asarray(problem.A.toarray())
    nonlinear = [to_jax_function(evaluator, i) for i in range(len(evaluator.constraints))]

    def g(x):
        rows = [A @ x]
        for constraint in problem.quadratic_constraints:
            affine, quadratic = constraint.affine, constraint.quadratic
            value = affine.constant + jnp.dot(affine.coeffs, x[affine.vars])
            value = value + jnp.sum(
                quadratic.coeffs * x[quadratic.vars1] * x[quadratic.vars2]
            )
            rows.append(jnp.reshape(value, (1,)))
        rows.extend(jnp.reshape(h(x), (1,)) for h in nonlinear)
        return jnp.concatenate(rows)

    return g


def check_gradient_correctness(
    evaluator: NLPEvaluator,
    x: ArrayLike,
    *,
    rtol: float = 1e-7,
    atol: float = 1e-7,
) -> None:
    """Verify `NLPEvaluator.eval_objective_gradient` against ``jax.grad``.

    Raises:
        VerificationError: If the gradients disagree.
    """
    x = np.asarray(x, dtype=np.float64)
    g = np.zeros_like(x)
    evaluator.eval_objective_gradient(x, g)
    reference = jax.grad(objective_function(evaluator))(jnp.asarray(x))
    _check_allclose(g, reference, "gradient", rtol=rtol, atol=atol)


def check_jacobian_correctness(
    evaluator: NLPEvaluator,
    x: ArrayLike,
    *,
    rtol: float = 1e-7,
    atol: float = 1e-7,
) -> None:
    """Verify `NLPEvaluator.eval_constraint_jacobian` against ``jax.jacobian``.

    The sparse entries are summed into a dense matrix
    (duplicate positions add up) before comparing.

    Raises:
        VerificationError: If the Jacobians disagree.
    """
    x = np.asarray(x, dtype=np.float64)
    m = evaluator.problem.num_constraints
    if m == 0:
        return
    rows, cols = evaluator.jacobian_structure()
    values = np.zeros(len(rows), dtype=np.float64)
    evaluator.eval_constraint_jacobian(x, values)
    dense = np.zeros((m, len(x)), dtype=np.float64)
    np.add.at(dense, (rows, cols), values)

    reference = jax.jacobian(constraint_function(evaluator))(jnp.asarray(x))
    _check_allclose(dense, reference, "Jacobian", rtol=rtol, atol=atol)


def check_hessian_correctness(
    evaluator: NLPEvaluator,
    x: ArrayLike,
    obj_factor: float = 1.0,
    multipliers: ArrayLike | None = None,
    *,
    rtol: float = 1e-7,
    atol: float = 1e-7,
) -> None:
    """Verify `NLPEvaluator.eval_lagrangian_hessian` against ``jax.hessian``.

    The lower-triangle entries are summed and mirrored into a dense symmetric
    matrix before comparing with the Hessian of
    ``obj_factor * f(x) + multipliers @ g(x)``.

    Raises:
        VerificationError: If the Hessians disagree.
    """
    x = np.asarray(x, dtype=np.float64)
    m = evaluator.problem.num_constraints
    if multipliers is None:
        multipliers = np.ones(m, dtype=np.float64)
    multipliers = np.asarray(multipliers, dtype=np.float64)

    rows, cols = evaluator.hessian_structure()
    values = np.zeros(len(rows), dtype=np.float64)
    evaluator.eval_lagrangian_hessian(x, obj_factor, multipliers, values)
    lower = np.zeros((len(x), len(x)), dtype=np.float64)
    np.add.at(lower, (rows, cols), values)
    dense = lower + lower.T - np.diag(np.diag(lower))

    f = objective_function(evaluator)
    g = constraint_function(evaluator) if m else None
    y = jnp.asarray(multipliers)

    def lagrangian(z):
        value = obj_factor * f(z)
        if g is not None:
            value = value + jnp.dot(y, g(z))
        return value

    reference = jax.hessian(lagrangian)(jnp.asarray(x))
    _check_allclose(dense, reference, "Hessian", rtol=rtol, atol=atol)


def finite_difference_gradient(
    f: Callable[[NDArray[np.float64]], float],
    x: ArrayLike,
    step: float = 1e-6,
) -> NDArray[np.float64]:
    """Central finite-difference gradient of a scalar function."""
    x = np.asarray(x, dtype=np.float64)
    grad = np.zeros_like(x)
    for i in range(len(x)):
        forward = x.copy()
        backward = x.copy()
        forward[i] += step
        backward[i] -= step
        grad[i] = (f(forward) - f(backward)) / (2 * step)
    return grad


def _interpret(nodes, adj, const_values, x, sub_values):
    """Evaluate a node sequence with ``jax.numpy`` operations."""
    values: list = [None] * len(nodes)
    for k in range(len(nodes) - 1, -1, -1):
        node = nodes[k]
        match node.type:
            case NodeType.VARIABLE:
                values[k] = x[node.index]
            case NodeType.VALUE:
                values[k] = const_values[node.index]
            case NodeType.SUBEXPRESSION:
                values[k] = sub_values[node.index]
            case NodeType.CALL:
                args = [values[c] for c in adj.indices[adj.indptr[k] : adj.indptr[k + 1]]]
                values[k] = _apply(node.index, args)
    return values[0]


def _apply(op: Operator, args: list):
    match op:
        case Operator.ADD:
            total = args[0]
            for a in args[1:]:
                total = total + a
            return total
        case Operator.MUL:
            product = args[0]
            for a in args[1:]:
                product = product * a
            return product
        case Operator.SUB:
            return -args[0] if len(args) == 1 else args[0] - args[1]
        case _:
            return _JAX_RULES[op](*args)


def _check_allclose(
    actual: NDArray,
    reference: jax.Array,
    name: str,
    *,
    rtol: float,
    atol: float,
) -> None:
    """Compare evaluator and reference results, raising VerificationError on mismatch."""
    actual_np = np.asarray(actual)
    reference_np = np.asarray(reference)

    if actual_np.shape != reference_np.shape:
        raise VerificationError(
            f"The evaluator's {name} has shape {actual_np.shape} "
            f"but JAX's dense reference has shape {reference_np.shape}."
        )

    try:
        np.testing.assert_allclose(actual_np, reference_np, rtol=rtol, atol=atol)
    except AssertionError as e:
        raise VerificationError(
            f"The evaluator's {name} does not match JAX's dense reference.\n{e}"
        ) from None
