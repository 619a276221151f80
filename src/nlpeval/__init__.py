"""nlpeval - Derivative evaluation of nonlinear programs over flat expression graphs.

Expressions are compiled once into node sequences with adjacency,
linearity and sparsity information.
Gradients and Jacobians come from reverse mode,
Hessians of the Lagrangian from forward-over-reverse with dual numbers,
compressed by star coloring of each function's Hessian sparsity.
"""

from nlpeval.analysis import (
    Linearity,
    classify_linearity,
    gradient_sparsity,
    hessian_sparsity,
)
from nlpeval.coloring import (
    color_symmetric,
    hessian_color_preprocess,
    prepare_seed_matrix,
)
from nlpeval.config import EvaluatorConfig
from nlpeval.decompression import dense_local_hessian, recover_from_matmat
from nlpeval.dual import Dual
from nlpeval.evaluation import forward_eval, hessian_matmat, reverse_eval
from nlpeval.evaluator import NLPEvaluator
from nlpeval.exceptions import (
    DualNotAvailableError,
    HessianNotRequestedError,
    NLPEvaluatorError,
    NotInitializedError,
    PreconditionError,
    UnsupportedFeatureError,
)
from nlpeval.model import (
    AffineTerms,
    NLPData,
    NonlinearConstraint,
    Problem,
    QuadraticConstraint,
    QuadraticTerms,
)
from nlpeval.nodes import (
    Node,
    NodeType,
    NonlinearExprData,
    Operator,
    adjmat,
    call,
    constant,
    subexpression,
    variable,
)
from nlpeval.ordering import order_subexpressions
from nlpeval.pattern import ColoredPattern, SparsityPattern
from nlpeval.storage import EvaluationSession, FunctionStorage, SubexpressionStorage

__all__ = [
    "AffineTerms",
    "ColoredPattern",
    "Dual",
    "DualNotAvailableError",
    "EvaluationSession",
    "EvaluatorConfig",
    "FunctionStorage",
    "HessianNotRequestedError",
    "Linearity",
    "NLPData",
    "NLPEvaluator",
    "NLPEvaluatorError",
    "Node",
    "NodeType",
    "NonlinearConstraint",
    "NonlinearExprData",
    "NotInitializedError",
    "Operator",
    "PreconditionError",
    "Problem",
    "QuadraticConstraint",
    "QuadraticTerms",
    "SparsityPattern",
    "SubexpressionStorage",
    "UnsupportedFeatureError",
    "adjmat",
    "call",
    "classify_linearity",
    "color_symmetric",
    "constant",
    "dense_local_hessian",
    "forward_eval",
    "gradient_sparsity",
    "hessian_color_preprocess",
    "hessian_matmat",
    "hessian_sparsity",
    "order_subexpressions",
    "prepare_seed_matrix",
    "recover_from_matmat",
    "reverse_eval",
    "subexpression",
    "variable",
]
