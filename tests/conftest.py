"""Pytest configuration and fixtures for nlpeval tests."""

import jax
import pytest

from nlpeval import (
    NLPData,
    NonlinearConstraint,
    NonlinearExprData,
    Problem,
    call,
    variable,
)

# The JAX references in nlpeval.verify compare at float64 precision.
jax.config.update("jax_enable_x64", True)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "nodes: node sequences and adjacency")
    config.addinivalue_line(
        "markers", "analysis: gradient sparsity, linearity and Hessian sparsity"
    )
    config.addinivalue_line("markers", "ordering: subexpression scheduling")
    config.addinivalue_line("markers", "dual: dual number arithmetic")
    config.addinivalue_line("markers", "evaluation: forward and reverse passes")
    config.addinivalue_line("markers", "coloring: symmetric coloring algorithm tests")
    config.addinivalue_line(
        "markers", "hessian: Hessian probing, recovery and structure"
    )
    config.addinivalue_line("markers", "evaluator: solver callback protocol")
    config.addinivalue_line("markers", "model: problem containers and duals")


def _expr(tree) -> NonlinearExprData:
    """Shorthand for flattening a term."""
    return NonlinearExprData.from_tree(tree)


@pytest.fixture
def scenario_problem() -> Problem:
    """``min (x0 - 2)^2 + x0*x1  s.t.  x0^2 + x1 <= 10``, all nonlinear."""
    x0, x1 = variable(0), variable(1)
    objective = call("+", call("^", call("-", x0, 2.0), 2.0), call("*", x0, x1))
    constraint = call("+", call("^", x0, 2.0), x1)
    nldata = NLPData(
        objective=_expr(objective),
        constraints=[NonlinearConstraint(_expr(constraint), ub=10.0)],
    )
    return Problem(num_var=2, nldata=nldata)
