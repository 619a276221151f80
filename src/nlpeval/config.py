"""Evaluator settings."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class EvaluatorConfig:
    """Configuration of an `NLPEvaluator`.

    Attributes:
        hessian_coloring: Compress Hessian probing with star coloring.
            If False, every variable of a function is probed separately,
            which is slower but useful as a reference.
        log_timings: Log the timer summary at ``DEBUG`` level
            whenever `NLPEvaluator.timing_report` is called.
    """

    hessian_coloring: bool = True
    log_timings: bool = False

    @classmethod
    def default(cls) -> EvaluatorConfig:
        """Colored Hessian probing, no timing logs."""
        return cls()

    @classmethod
    def uncompressed(cls) -> EvaluatorConfig:
        """One Hessian-vector product per variable."""
        return cls(hessian_coloring=False)
