"""Solver-facing evaluator of a nonlinear program.

`NLPEvaluator` implements the callback protocol a nonlinear solver drives:
objective, gradient, constraints, Jacobian and Hessian of the Lagrangian,
plus the structural queries needed to size the solver's buffers.

Derivatives are composed additively from three sources:

- the linear part (objective coefficients and the constraint matrix ``A``),
- explicit quadratic terms, differentiated in closed form,
- nonlinear expressions, differentiated by reverse mode
  and, for Hessians, by forward-over-reverse with star-colored probing.

Constraint rows are ordered linear, quadratic, nonlinear.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from contextlib import contextmanager

import numpy as np
from numpy.typing import NDArray

from nlpeval.coloring import prepare_seed_matrix
from nlpeval.config import EvaluatorConfig
from nlpeval.decompression import recover_from_matmat
from nlpeval.dual import Dual
from nlpeval.evaluation import forward_eval, hessian_matmat, reverse_eval
from nlpeval.exceptions import (
    HessianNotRequestedError,
    NotInitializedError,
    UnsupportedFeatureError,
)
from nlpeval.model import Problem
from nlpeval.ordering import order_subexpressions
from nlpeval.storage import EvaluationSession, FunctionStorage, SubexpressionStorage

logger = logging.getLogger(__name__)

KNOWN_FEATURES = frozenset({"Grad", "Jac", "Hess", "HessVec", "ExprGraph"})

_TIMED_OPERATIONS = (
    "eval_objective",
    "eval_objective_gradient",
    "eval_constraints",
    "eval_constraint_jacobian",
    "eval_lagrangian_hessian",
)


class NLPEvaluator:
    """Callback object handed to a nonlinear solver.

    Construct it from a `Problem`, call `initialize` once with the features the
    solver needs, then evaluate at as many points as the solver likes.
    All forward state is recomputed only when the point changes.

    Args:
        problem: The problem to evaluate.
        config: Evaluator settings, `EvaluatorConfig.default` if omitted.

    Example:
        >>> ev = NLPEvaluator(problem)
        >>> ev.initialize({"Grad", "Jac"})
        >>> ev.eval_objective(x)
    """

    def __init__(self, problem: Problem, config: EvaluatorConfig | None = None):
        self.problem = problem
        self.config = config if config is not None else EvaluatorConfig.default()
        self.want_hess = False
        self.objective: FunctionStorage | None = None
        self.constraints: list[FunctionStorage] = []
        self.subexpressions: dict[int, SubexpressionStorage] = {}
        self.subexpression_order: list[int] = []
        self.session: EvaluationSession | None = None
        self.timers = dict.fromkeys(_TIMED_OPERATIONS, 0.0)
        self._initialized = False

    # Setup

    def initialize(self, requested_features: Iterable[str]) -> None:
        """Compile all expressions for the requested features.

        Only the first call does any work; later calls validate the
        requested features and return.

        Args:
            requested_features: Subset of ``"Grad"``, ``"Jac"``, ``"Hess"``,
                ``"HessVec"``, ``"ExprGraph"``.

        Raises:
            UnsupportedFeatureError: For unknown features, ``"ExprGraph"``,
                or ``"Hess"`` on a problem with nonlinear subexpressions.
        """
        features = set(requested_features)
        unknown = features - KNOWN_FEATURES
        if unknown:
            msg = f"Unsupported features requested: {sorted(unknown)}"
            raise UnsupportedFeatureError(msg)
        if "ExprGraph" in features:
            msg = "Expression graph export is not supported"
            raise UnsupportedFeatureError(msg)

        if self._initialized:
            logger.debug("Evaluator already initialized, ignoring new request")
            return

        start = time.perf_counter()
        want_hess = "Hess" in features
        problem = self.problem
        nldata = problem.nldata

        main_expressions = [c.expr for c in nldata.constraints]
        if nldata.objective is not None:
            main_expressions.insert(0, nldata.objective)

        logger.info("Ordering subexpressions")
        order, individual_orders = order_subexpressions(
            [expr.nodes for expr in main_expressions],
            [expr.nodes for expr in nldata.subexpressions],
        )
        if want_hess and order:
            msg = "Hessians are not supported for problems with nonlinear subexpressions"
            raise UnsupportedFeatureError(msg)

        subexpressions: dict[int, SubexpressionStorage] = {}
        for k in order:
            subexpressions[k] = SubexpressionStorage.compile(
                nldata.subexpressions[k],
                {j: sub.linearity for j, sub in subexpressions.items()},
            )

        compiled = [
            FunctionStorage.compile(
                expr,
                problem.num_var,
                subexpressions,
                deps,
                want_hess=want_hess,
                compress=self.config.hessian_coloring,
            )
            for expr, deps in zip(main_expressions, individual_orders, strict=True)
        ]
        objective = compiled.pop(0) if nldata.objective is not None else None

        self.session = EvaluationSession(
            problem.num_var,
            objective,
            compiled,
            subexpressions,
            len(nldata.subexpressions),
            want_hess=want_hess,
        )
        self.objective = objective
        self.constraints = compiled
        self.subexpressions = subexpressions
        self.subexpression_order = order
        self.want_hess = want_hess
        self._initialized = True

        logger.info("Prep time: %.6f seconds", time.perf_counter() - start)
        for name in self.timers:
            self.timers[name] = 0.0

    def available_features(self) -> list[str]:
        """Features this evaluator can serve."""
        features = ["Grad", "Jac"]
        if self.want_hess:
            features.append("Hess")
        return features

    # Objective

    def eval_objective(self, x: NDArray[np.float64]) -> float:
        """Objective value at ``x``."""
        with self._timed("eval_objective"):
            self._require_initialized()
            x = np.asarray(x, dtype=np.float64)
            problem = self.problem
            value = (
                problem.objective_constant
                + float(np.dot(problem.linear_objective, x))
                + problem.quadratic_objective.value(x)
            )
            if self.objective is not None:
                self._forward_eval_all(x)
                value += self.session.objective_value
            return float(value)

    def eval_objective_gradient(
        self, x: NDArray[np.float64], out: NDArray[np.float64]
    ) -> None:
        """Write the objective gradient at ``x`` into ``out``."""
        with self._timed("eval_objective_gradient"):
            self._require_initialized()
            x = np.asarray(x, dtype=np.float64)
            out[:] = self.problem.linear_objective
            self.problem.quadratic_objective.add_gradient(out, x)
            if self.objective is not None:
                self._forward_eval_all(x)
                self._reverse_function(out, self.objective, self.session.objective_forward)

    # Constraints

    def eval_constraints(
        self, x: NDArray[np.float64], out: NDArray[np.float64]
    ) -> None:
        """Write all constraint values at ``x`` into ``out``, in row order."""
        with self._timed("eval_constraints"):
            self._require_initialized()
            x = np.asarray(x, dtype=np.float64)
            problem = self.problem
            num_linear = problem.num_linear
            out[:num_linear] = problem.A @ x
            for q, constraint in enumerate(problem.quadratic_constraints):
                out[num_linear + q] = constraint.value(x)
            if self.constraints:
                self._forward_eval_all(x)
                offset = num_linear + problem.num_quadratic
                out[offset : offset + len(self.constraints)] = (
                    self.session.constraint_values
                )

    def jacobian_structure(self) -> tuple[NDArray[np.int32], NDArray[np.int32]]:
        """Rows and columns of the Jacobian entries written by `eval_constraint_jacobian`.

        Entries are the nonzeros of ``A`` in column-major order,
        then per quadratic row its affine variables followed by two entries per
        quadratic term, then per nonlinear row its gradient sparsity.
        Duplicate positions are kept and must be summed by the caller.
        """
        self._require_initialized()
        problem = self.problem
        A = problem.A
        rows = [A.indices.astype(np.int32)]
        cols = [np.repeat(np.arange(A.shape[1], dtype=np.int32), np.diff(A.indptr))]

        row = problem.num_linear
        for constraint in problem.quadratic_constraints:
            quadratic = constraint.quadratic
            interleaved = np.empty(2 * len(quadratic), dtype=np.int32)
            interleaved[0::2] = quadratic.vars1
            interleaved[1::2] = quadratic.vars2
            row_cols = np.concatenate([constraint.affine.vars, interleaved])
            rows.append(np.full(len(row_cols), row, dtype=np.int32))
            cols.append(row_cols)
            row += 1

        for fn in self.constraints:
            rows.append(np.full(len(fn.grad_sparsity), row, dtype=np.int32))
            cols.append(fn.grad_sparsity)
            row += 1

        return np.concatenate(rows), np.concatenate(cols)

    def eval_constraint_jacobian(
        self, x: NDArray[np.float64], out: NDArray[np.float64]
    ) -> None:
        """Write the Jacobian values at ``x`` into ``out``, in `jacobian_structure` order."""
        with self._timed("eval_constraint_jacobian"):
            self._require_initialized()
            x = np.asarray(x, dtype=np.float64)
            problem = self.problem

            k = problem.A.nnz
            out[:k] = problem.A.data

            for constraint in problem.quadratic_constraints:
                affine, quadratic = constraint.affine, constraint.quadratic
                out[k : k + len(affine)] = affine.coeffs
                k += len(affine)
                # d(c * x1 * x2) = c * x2 dx1 + c * x1 dx2
                out[k : k + 2 * len(quadratic) : 2] = quadratic.coeffs * x[quadratic.vars2]
                out[k + 1 : k + 2 * len(quadratic) : 2] = (
                    quadratic.coeffs * x[quadratic.vars1]
                )
                k += 2 * len(quadratic)

            if not self.constraints:
                return
            self._forward_eval_all(x)
            session = self.session
            grad = session.jacobian_scratch
            for fn, forward in zip(
                self.constraints, session.constraint_forward, strict=True
            ):
                grad[fn.grad_sparsity] = 0.0
                self._reverse_function(grad, fn, forward)
                out[k : k + len(fn.grad_sparsity)] = grad[fn.grad_sparsity]
                k += len(fn.grad_sparsity)

    # Hessian of the Lagrangian

    def hessian_structure(self) -> tuple[NDArray[np.int32], NDArray[np.int32]]:
        """Lower-triangle rows and columns of the entries written by `eval_lagrangian_hessian`.

        Entries come from the quadratic objective, the quadratic constraints,
        the nonlinear objective and the nonlinear constraints, in that order.
        Duplicate positions are kept and must be summed by the caller.

        Raises:
            HessianNotRequestedError: If ``"Hess"`` was not requested.
        """
        self._require_hessian()
        problem = self.problem
        rows, cols = [], []
        quadratics = [problem.quadratic_objective] + [
            c.quadratic for c in problem.quadratic_constraints
        ]
        for quadratic in quadratics:
            i, j = quadratic.hessian_structure()
            rows.append(i)
            cols.append(j)
        for fn in self._nonlinear_functions():
            rows.append(fn.hess_I)
            cols.append(fn.hess_J)
        return (
            np.concatenate(rows).astype(np.int32),
            np.concatenate(cols).astype(np.int32),
        )

    def eval_lagrangian_hessian(
        self,
        x: NDArray[np.float64],
        obj_factor: float,
        multipliers: NDArray[np.float64],
        out: NDArray[np.float64],
    ) -> None:
        """Write the Hessian of ``obj_factor * f + sum(multipliers * g)`` at ``x``.

        Values follow `hessian_structure`.
        ``multipliers`` has one entry per constraint row, linear rows included.

        Raises:
            HessianNotRequestedError: If ``"Hess"`` was not requested.
        """
        with self._timed("eval_lagrangian_hessian"):
            self._require_hessian()
            x = np.asarray(x, dtype=np.float64)
            multipliers = np.asarray(multipliers, dtype=np.float64)
            problem = self.problem
            session = self.session

            k = 0
            num_linear = problem.num_linear
            scaled = [(problem.quadratic_objective, obj_factor)] + [
                (c.quadratic, multipliers[num_linear + q])
                for q, c in enumerate(problem.quadratic_constraints)
            ]
            for quadratic, scale in scaled:
                out[k : k + len(quadratic)] = quadratic.hessian_values(scale)
                k += len(quadratic)

            nonlinear_offset = num_linear + problem.num_quadratic
            work = []
            if self.objective is not None:
                work.append((self.objective, session.objective_seed, obj_factor))
            for i, (fn, seed) in enumerate(
                zip(self.constraints, session.constraint_seeds, strict=True)
            ):
                work.append((fn, seed, multipliers[nonlinear_offset + i]))
            if not work:
                return

            session.forward_input_vector[:] = [Dual(xi) for xi in x]
            for fn, seed, scale in work:
                nnz = len(fn.hess_I)
                if nnz == 0:
                    continue
                prepare_seed_matrix(seed, fn.coloring)
                hessian_matmat(
                    seed,
                    session.dual_reverse_storage,
                    session.dual_forward_storage,
                    fn.nodes,
                    fn.adj,
                    fn.const_values,
                    x,
                    session.reverse_output_vector,
                    session.forward_input_vector,
                    fn.coloring.local_indices,
                    fn.grad_sparsity,
                )
                block = out[k : k + nnz]
                recover_from_matmat(block, seed, fn.coloring)
                block *= scale
                k += nnz

    def eval_hessian_lagrangian_product(self, x, v, obj_factor, multipliers, out):
        """Hessian-of-the-Lagrangian times ``v``; ``"HessVec"`` is accepted but not served."""
        raise NotImplementedError("Hessian-vector products are not implemented")

    # Structural queries

    def is_objective_linear(self) -> bool:
        """Whether the objective has neither quadratic nor nonlinear terms."""
        return self.problem.nldata.objective is None and not len(
            self.problem.quadratic_objective
        )

    def is_objective_quadratic(self) -> bool:
        """Whether the objective has no nonlinear part."""
        return self.problem.nldata.objective is None

    def is_constraint_linear(self, i: int) -> bool:
        """Whether row ``i`` is a row of ``A``.

        Quadratic and nonlinear rows are never reported linear,
        even if their expression happens to be.
        """
        if not 0 <= i < self.problem.num_constraints:
            msg = f"Constraint index {i} out of range for {self.problem.num_constraints} constraints"
            raise IndexError(msg)
        return i < self.problem.num_linear

    # Instrumentation

    def timing_report(self) -> dict[str, float]:
        """Cumulative seconds spent in each public evaluation since `initialize`."""
        if self.config.log_timings:
            for name, seconds in self.timers.items():
                logger.debug("%s: %.6f seconds", name, seconds)
        return dict(self.timers)

    # Internals

    def _forward_eval_all(self, x: NDArray[np.float64]) -> None:
        """Refresh every cached forward value if ``x`` changed since the last pass."""
        session = self.session
        if not session.point_changed(x):
            return

        for k in self.subexpression_order:
            sub = self.subexpressions[k]
            session.subexpression_values[k] = forward_eval(
                session.subexpression_forward[k],
                sub.nodes,
                sub.adj,
                sub.const_values,
                x,
                session.subexpression_values,
            )
            session.subexpression_evaluations[k] += 1

        if self.objective is not None:
            fn = self.objective
            session.objective_value = forward_eval(
                session.objective_forward,
                fn.nodes,
                fn.adj,
                fn.const_values,
                x,
                session.subexpression_values,
            )
        for i, fn in enumerate(self.constraints):
            session.constraint_values[i] = forward_eval(
                session.constraint_forward[i],
                fn.nodes,
                fn.adj,
                fn.const_values,
                x,
                session.subexpression_values,
            )

        session.last_x[:] = x
        session.forward_passes += 1

    def _reverse_function(self, output, fn: FunctionStorage, forward) -> None:
        """Add the gradient of ``fn`` at the cached point into ``output``."""
        session = self.session
        adjoints = session.subexpression_adjoints
        for k in fn.dependent_subexpressions:
            adjoints[k] = 0.0
        reverse_eval(
            output,
            session.reverse_storage,
            forward,
            fn.nodes,
            fn.adj,
            fn.const_values,
            adjoints,
        )
        # A subexpression's adjoint is complete once everything that references it is done.
        for k in reversed(fn.dependent_subexpressions):
            sub = self.subexpressions[k]
            reverse_eval(
                output,
                session.reverse_storage,
                session.subexpression_forward[k],
                sub.nodes,
                sub.adj,
                sub.const_values,
                adjoints,
                adjoints[k],
            )

    def _nonlinear_functions(self) -> list[FunctionStorage]:
        functions = list(self.constraints)
        if self.objective is not None:
            functions.insert(0, self.objective)
        return functions

    def _require_initialized(self) -> None:
        if not self._initialized:
            msg = "Evaluator is not initialized; call initialize() first"
            raise NotInitializedError(msg)

    def _require_hessian(self) -> None:
        self._require_initialized()
        if not self.want_hess:
            msg = "Hessian computations were not requested on the call to initialize."
            raise HessianNotRequestedError(msg)

    @contextmanager
    def _timed(self, name: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timers[name] += time.perf_counter() - start

    def __copy__(self):
        raise NotImplementedError("Copying a compiled nonlinear evaluator is not supported")

    def __deepcopy__(self, memo):
        raise NotImplementedError("Copying a compiled nonlinear evaluator is not supported")
