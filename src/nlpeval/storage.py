"""Compiled expressions and the mutable state of one evaluator.

`FunctionStorage` and `SubexpressionStorage` are built once by
`NLPEvaluator.initialize` and never change afterwards,
so they may be shared between evaluators of the same problem.
Everything that changes from one point to the next lives in an `EvaluationSession`.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from nlpeval.analysis import (
    Linearity,
    classify_linearity,
    gradient_sparsity,
    hessian_sparsity,
)
from nlpeval.coloring import hessian_color_preprocess
from nlpeval.dual import Dual
from nlpeval.nodes import Node, NonlinearExprData, adjmat
from nlpeval.pattern import ColoredPattern


@dataclass(frozen=True)
class SubexpressionStorage:
    """A compiled shared subexpression.

    Attributes:
        nodes: Node sequence in pre-order.
        adj: Adjacency from `adjmat`.
        const_values: Constant pool.
        linearity: Classification of the whole subexpression.
        variables: Variables referenced directly, sorted.
    """

    nodes: tuple[Node, ...]
    adj: sp.csc_matrix
    const_values: NDArray[np.float64]
    linearity: Linearity
    variables: NDArray[np.int32]

    @classmethod
    def compile(
        cls,
        expr: NonlinearExprData,
        subexpression_linearity: Mapping[int, Linearity],
    ) -> SubexpressionStorage:
        adj = adjmat(expr.nodes)
        linearity = classify_linearity(expr.nodes, adj, subexpression_linearity)
        return cls(
            nodes=expr.nodes,
            adj=adj,
            const_values=expr.const_values,
            linearity=linearity[0],
            variables=np.array(sorted(gradient_sparsity(expr.nodes)), dtype=np.int32),
        )

    def __len__(self) -> int:
        return len(self.nodes)


@dataclass(frozen=True)
class FunctionStorage:
    """A compiled objective or constraint expression.

    Attributes:
        nodes: Node sequence in pre-order.
        adj: Adjacency from `adjmat`.
        const_values: Constant pool.
        grad_sparsity: Sorted variables the function may depend on,
            subexpressions included.
        hess_I: Global rows of the lower-triangle Hessian entries.
        hess_J: Global columns of the lower-triangle Hessian entries.
        coloring: Hessian recovery plan, ``None`` when Hessians were not requested.
        linearity: Classification of the whole function.
        dependent_subexpressions: Subexpressions the function depends on,
            in evaluation order.
    """

    nodes: tuple[Node, ...]
    adj: sp.csc_matrix
    const_values: NDArray[np.float64]
    grad_sparsity: NDArray[np.int32]
    hess_I: NDArray[np.int32]
    hess_J: NDArray[np.int32]
    coloring: ColoredPattern | None
    linearity: Linearity
    dependent_subexpressions: tuple[int, ...]

    @classmethod
    def compile(
        cls,
        expr: NonlinearExprData,
        num_var: int,
        subexpressions: Mapping[int, SubexpressionStorage],
        dependent_subexpressions: Sequence[int],
        *,
        want_hess: bool = False,
        compress: bool = True,
    ) -> FunctionStorage:
        """Analyse ``expr`` and, if requested, prepare its Hessian coloring.

        Raises:
            UnsupportedFeatureError: If ``want_hess`` and the Hessian
                would have to look inside a subexpression.
        """
        adj = adjmat(expr.nodes)
        linearity = classify_linearity(
            expr.nodes,
            adj,
            {k: subexpressions[k].linearity for k in dependent_subexpressions},
        )

        variables = gradient_sparsity(expr.nodes)
        for k in dependent_subexpressions:
            variables.update(int(i) for i in subexpressions[k].variables)

        if want_hess:
            edges = hessian_sparsity(expr.nodes, adj, linearity)
            hess_I, hess_J, coloring = hessian_color_preprocess(
                edges, num_var, compress=compress
            )
        else:
            hess_I = np.zeros(0, dtype=np.int32)
            hess_J = np.zeros(0, dtype=np.int32)
            coloring = None

        return cls(
            nodes=expr.nodes,
            adj=adj,
            const_values=expr.const_values,
            grad_sparsity=np.array(sorted(variables), dtype=np.int32),
            hess_I=hess_I,
            hess_J=hess_J,
            coloring=coloring,
            linearity=linearity[0],
            dependent_subexpressions=tuple(dependent_subexpressions),
        )

    def __len__(self) -> int:
        return len(self.nodes)


class EvaluationSession:
    """Point-keyed caches and scratch buffers of one evaluator.

    All buffers are allocated here, once, and reused for every call.
    A session must not be shared between threads.

    Attributes:
        last_x: Point of the last forward pass, ``nan`` until the first one.
        forward_passes: Number of full forward passes so far.
        subexpression_evaluations: Forward evaluations per subexpression id.
    """

    def __init__(
        self,
        num_var: int,
        objective: FunctionStorage | None,
        constraints: Sequence[FunctionStorage],
        subexpressions: Mapping[int, SubexpressionStorage],
        num_subexpressions: int,
        *,
        want_hess: bool = False,
    ):
        self.last_x = np.full(num_var, np.nan, dtype=np.float64)
        self.forward_passes = 0
        self.subexpression_evaluations = np.zeros(num_subexpressions, dtype=np.int64)

        # Forward values have to survive until the matching reverse pass,
        # reverse scratch is shared.
        self.objective_forward = (
            np.zeros(len(objective), dtype=np.float64) if objective is not None else None
        )
        self.constraint_forward = [
            np.zeros(len(fn), dtype=np.float64) for fn in constraints
        ]
        self.subexpression_forward = {
            k: np.zeros(len(sub), dtype=np.float64) for k, sub in subexpressions.items()
        }
        functions = ([objective] if objective is not None else []) + list(constraints)
        longest = max(
            [len(fn) for fn in functions] + [len(sub) for sub in subexpressions.values()],
            default=0,
        )
        self.reverse_storage = np.zeros(longest, dtype=np.float64)

        self.objective_value = 0.0
        self.constraint_values = np.zeros(len(constraints), dtype=np.float64)
        self.subexpression_values = np.zeros(num_subexpressions, dtype=np.float64)
        self.subexpression_adjoints = np.zeros(num_subexpressions, dtype=np.float64)
        self.jacobian_scratch = np.zeros(num_var, dtype=np.float64)

        self.objective_seed = None
        self.constraint_seeds = []
        if want_hess:
            longest_main = max((len(fn) for fn in functions), default=0)
            self.dual_forward_storage = [Dual(0.0)] * longest_main
            self.dual_reverse_storage = [Dual(0.0)] * longest_main
            self.forward_input_vector = [Dual(0.0)] * num_var
            self.reverse_output_vector = [Dual(0.0)] * num_var
            if objective is not None:
                self.objective_seed = _seed_buffer(objective.coloring)
            self.constraint_seeds = [_seed_buffer(fn.coloring) for fn in constraints]

    def point_changed(self, x: NDArray[np.float64]) -> bool:
        """Whether ``x`` differs bitwise from the point of the last forward pass.

        ``0.0`` and ``-0.0`` are different points, and so are NaNs with different payloads.
        """
        if self.forward_passes == 0:
            return True
        return self.last_x.tobytes() != np.asarray(x, dtype=np.float64).tobytes()


def _seed_buffer(coloring: ColoredPattern) -> NDArray[np.float64]:
    return np.zeros((coloring.num_local, coloring.num_colors), dtype=np.float64)
