"""Problem data handed over by the modeling layer.

These containers only describe what the evaluator consumes:
linear rows as a sparse matrix,
quadratic terms as flat index/coefficient arrays,
nonlinear pieces as node sequences.
Building them from user syntax happens elsewhere.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from nlpeval.exceptions import DualNotAvailableError
from nlpeval.nodes import NonlinearExprData

logger = logging.getLogger(__name__)


def _index_array(values) -> NDArray[np.int32]:
    return np.asarray(values, dtype=np.int32).reshape(-1)


def _float_array(values) -> NDArray[np.float64]:
    return np.asarray(values, dtype=np.float64).reshape(-1)


@dataclass(frozen=True)
class AffineTerms:
    """``constant + sum(coeffs[k] * x[vars[k]])``."""

    vars: NDArray[np.int32] = field(default_factory=lambda: _index_array([]))
    coeffs: NDArray[np.float64] = field(default_factory=lambda: _float_array([]))
    constant: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "vars", _index_array(self.vars))
        object.__setattr__(self, "coeffs", _float_array(self.coeffs))
        if len(self.vars) != len(self.coeffs):
            msg = f"vars and coeffs must have same length, got {len(self.vars)} and {len(self.coeffs)}"
            raise ValueError(msg)

    def __len__(self) -> int:
        return len(self.vars)

    def value(self, x: NDArray[np.float64]) -> float:
        return self.constant + float(np.dot(self.coeffs, x[self.vars]))


@dataclass(frozen=True)
class QuadraticTerms:
    """``sum(coeffs[k] * x[vars1[k]] * x[vars2[k]])``."""

    vars1: NDArray[np.int32] = field(default_factory=lambda: _index_array([]))
    vars2: NDArray[np.int32] = field(default_factory=lambda: _index_array([]))
    coeffs: NDArray[np.float64] = field(default_factory=lambda: _float_array([]))

    def __post_init__(self) -> None:
        object.__setattr__(self, "vars1", _index_array(self.vars1))
        object.__setattr__(self, "vars2", _index_array(self.vars2))
        object.__setattr__(self, "coeffs", _float_array(self.coeffs))
        if not len(self.vars1) == len(self.vars2) == len(self.coeffs):
            msg = (
                "vars1, vars2 and coeffs must have same length, got "
                f"{len(self.vars1)}, {len(self.vars2)} and {len(self.coeffs)}"
            )
            raise ValueError(msg)

    def __len__(self) -> int:
        return len(self.coeffs)

    def value(self, x: NDArray[np.float64]) -> float:
        return float(np.sum(self.coeffs * x[self.vars1] * x[self.vars2]))

    def add_gradient(self, g: NDArray[np.float64], x: NDArray[np.float64]) -> None:
        """Add the gradient of the terms into ``g``."""
        np.add.at(g, self.vars1, self.coeffs * x[self.vars2])
        np.add.at(g, self.vars2, self.coeffs * x[self.vars1])

    def hessian_structure(self) -> tuple[NDArray[np.int32], NDArray[np.int32]]:
        """Lower-triangle position of every term, duplicates kept."""
        return np.maximum(self.vars1, self.vars2), np.minimum(self.vars1, self.vars2)

    def hessian_values(self, scale: float) -> NDArray[np.float64]:
        """Values matching `hessian_structure`: ``2 * coeff`` on the diagonal."""
        diagonal = self.vars1 == self.vars2
        return scale * np.where(diagonal, 2.0 * self.coeffs, self.coeffs)


@dataclass(frozen=True)
class QuadraticConstraint:
    """``lb <= affine(x) + quadratic(x) <= ub``."""

    affine: AffineTerms = field(default_factory=AffineTerms)
    quadratic: QuadraticTerms = field(default_factory=QuadraticTerms)
    lb: float = -np.inf
    ub: float = np.inf

    def value(self, x: NDArray[np.float64]) -> float:
        return self.affine.value(x) + self.quadratic.value(x)


@dataclass(frozen=True)
class NonlinearConstraint:
    """``lb <= expr(x) <= ub``."""

    expr: NonlinearExprData
    lb: float = -np.inf
    ub: float = np.inf


class NLPData:
    """Nonlinear part of a model: objective, constraints, shared subexpressions, duals.

    Instances cannot be copied:
    a compiled evaluator keeps references into them.
    """

    def __init__(
        self,
        objective: NonlinearExprData | None = None,
        constraints: list[NonlinearConstraint] | None = None,
        subexpressions: list[NonlinearExprData] | None = None,
    ):
        self.objective = objective
        self.constraints: list[NonlinearConstraint] = list(constraints or [])
        self.subexpressions: list[NonlinearExprData] = list(subexpressions or [])
        self.constraint_duals: NDArray[np.float64] | None = None
        self.solved = False
        self._warned_no_duals = False

    def add_subexpression(self, expr: NonlinearExprData) -> int:
        """Register a shared subexpression and return its id."""
        self.subexpressions.append(expr)
        return len(self.subexpressions) - 1

    def add_constraint(self, constraint: NonlinearConstraint) -> int:
        """Register a nonlinear constraint and return its index among nonlinear constraints."""
        self.constraints.append(constraint)
        return len(self.constraints) - 1

    def constraint_dual(self, i: int) -> float:
        """Dual value of nonlinear constraint ``i`` from the last solve.

        Raises:
            DualNotAvailableError: If no solve has happened yet,
                or the solver did not report duals.
        """
        if not self.solved:
            msg = "Dual solution not available: the model has not been solved yet."
            raise DualNotAvailableError(msg)
        if self.constraint_duals is None or len(self.constraint_duals) != len(
            self.constraints
        ):
            msg = (
                "Dual solution not available: the solver did not report duals. "
                "Check that the model was properly solved."
            )
            raise DualNotAvailableError(msg)
        return float(self.constraint_duals[i])

    def load_solution(
        self,
        status: str,
        duals: NDArray[np.float64] | None,
        *,
        num_linear: int,
        num_quadratic: int,
        integer: bool = False,
    ) -> None:
        """Store the nonlinear constraint duals reported by a solver.

        Duals are only kept for an optimal, continuous solve.
        A non-optimal status and a solver without duals are reported as warnings;
        the primal solution held by the caller stays in place.
        Duals of quadratic constraints are not reported.

        Args:
            status: Termination status, ``"Optimal"`` on success.
            duals: Duals of all constraint rows
                (linear, quadratic, nonlinear), or ``None``.
            num_linear: Number of linear constraint rows.
            num_quadratic: Number of quadratic constraint rows.
            integer: Whether the problem had discrete variables.
        """
        self.solved = True
        self.constraint_duals = None
        if status != "Optimal":
            logger.warning("Not solved to optimality, status: %s", status)
            return
        if integer:
            return
        if duals is None:
            if not self._warned_no_duals:
                logger.warning("Nonlinear solver does not provide dual solutions")
                self._warned_no_duals = True
            return
        self.constraint_duals = _float_array(duals)[num_linear + num_quadratic :]

    def __copy__(self):
        raise NotImplementedError("Copying nonlinear problems not yet implemented")

    def __deepcopy__(self, memo):
        raise NotImplementedError("Copying nonlinear problems not yet implemented")


@dataclass
class Problem:
    """Everything the evaluator consumes, in constraint row order.

    Rows are numbered linear first (rows of ``A``),
    then quadratic, then nonlinear.
    The objective is the sum of its constant, linear, quadratic and nonlinear parts.
    """

    num_var: int
    A: sp.spmatrix | NDArray | None = None
    linear_objective: NDArray[np.float64] | None = None
    objective_constant: float = 0.0
    quadratic_objective: QuadraticTerms = field(default_factory=QuadraticTerms)
    quadratic_constraints: list[QuadraticConstraint] = field(default_factory=list)
    nldata: NLPData = field(default_factory=NLPData)

    def __post_init__(self) -> None:
        if self.A is None:
            self.A = sp.csc_matrix((0, self.num_var), dtype=np.float64)
        else:
            self.A = sp.csc_matrix(self.A, dtype=np.float64)
        if self.A.shape[1] != self.num_var:
            msg = f"A has {self.A.shape[1]} columns but the problem has {self.num_var} variables"
            raise ValueError(msg)
        if self.linear_objective is None:
            self.linear_objective = np.zeros(self.num_var, dtype=np.float64)
        else:
            self.linear_objective = _float_array(self.linear_objective)

    def load_solution(
        self, status: str, duals: NDArray[np.float64] | None, *, integer: bool = False
    ) -> None:
        """Hand a solver result to `NLPData.load_solution` with this problem's row counts."""
        self.nldata.load_solution(
            status,
            duals,
            num_linear=self.num_linear,
            num_quadratic=self.num_quadratic,
            integer=integer,
        )

    @property
    def num_linear(self) -> int:
        return self.A.shape[0]

    @property
    def num_quadratic(self) -> int:
        return len(self.quadratic_constraints)

    @property
    def num_nonlinear(self) -> int:
        return len(self.nldata.constraints)

    @property
    def num_constraints(self) -> int:
        return self.num_linear + self.num_quadratic + self.num_nonlinear
