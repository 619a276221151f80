"""Exception hierarchy for the nonlinear evaluator.

Unimplemented capabilities (Hessian-vector products, copying a compiled
problem) raise the builtin ``NotImplementedError`` instead.
"""


class NLPEvaluatorError(Exception):
    """Base class for all evaluator errors."""


class UnsupportedFeatureError(NLPEvaluatorError):
    """Raised when a requested capability is unknown or cannot be provided.

    Covers unknown feature names passed to ``initialize``,
    expression-graph export,
    and Hessians of problems that use nonlinear subexpressions.
    """


class PreconditionError(NLPEvaluatorError):
    """Raised when an operation is called in a state that does not allow it."""


class NotInitializedError(PreconditionError):
    """Raised when an evaluation is requested before ``initialize``."""


class HessianNotRequestedError(PreconditionError):
    """Raised when Hessian methods are used without requesting ``"Hess"``."""


class DualNotAvailableError(NLPEvaluatorError):
    """Raised when constraint duals are requested but none are stored."""
