"""
hydrorating.exceptions - Error taxonomy for rating analyses.

Every error raised by an analysis step is fatal to that step. Errors carry a
``context`` mapping (site id, analysis window, iteration count, diagnostics)
so a caller can resume or diagnose without re-running the step.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class HydroRatingError(Exception):
    """Base class for hydrorating errors.

    Parameters
    ----------
    message : str
        Human readable description.
    **context
        Diagnostic key/value pairs appended to the message.
    """

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(self._render())

    def _render(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} [{details}]"

    def with_context(self, **context: Any) -> "HydroRatingError":
        """Add context in place and return the same error for re-raising."""
        self.context.update({k: v for k, v in context.items() if v is not None})
        self.args = (self._render(),)
        return self

    def __str__(self) -> str:
        return self._render()


class DataInsufficientError(HydroRatingError, ValueError):
    """Too few usable points for the requested basis dimension."""


class InputContractViolation(HydroRatingError, ValueError):
    """Input violates a data contract (non-positive values, mismatched shapes)."""


class EstimationDivergedError(HydroRatingError, RuntimeError):
    """The iterative state-space estimation failed or did not converge.

    Parameters
    ----------
    message : str
        Description of the failure.
    iterations : int
        Total optimizer iterations spent before the failure.
    llf_history : list of float, optional
        Log-likelihood at the end of each completed pass.
    """

    def __init__(
        self,
        message: str,
        iterations: int = 0,
        llf_history: Optional[List[float]] = None,
        **context: Any,
    ) -> None:
        self.iterations = iterations
        self.llf_history = list(llf_history or [])
        super().__init__(message, iterations=iterations, **context)


class SamplerNonConvergedError(HydroRatingError, RuntimeError):
    """Posterior approximation or sampling failed its convergence checks.

    Parameters
    ----------
    message : str
        Description of the failure.
    diagnostics : dict, optional
        Convergence diagnostics (``r_hat_max``, ``ess_bulk_min``,
        ``divergences``) observed when the check failed.
    """

    def __init__(
        self, message: str, diagnostics: Optional[Dict[str, float]] = None, **context: Any
    ) -> None:
        self.diagnostics = dict(diagnostics or {})
        super().__init__(message, **{**context, **self.diagnostics})
