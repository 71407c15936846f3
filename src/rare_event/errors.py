"""
Error taxonomy for the rare-event engine.

Every error is terminal to the enclosing operation and carries enough
context (parameters, bracket residuals, partial solve log) to diagnose the
failure without re-running. Nothing in the engine retries: all operations
are deterministic given a seed.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional


class RareEventError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, parameters: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.parameters = parameters or {}


class InvalidParametersError(RareEventError, ValueError):
    """Model parameters or configuration outside their domain."""


class InfeasibleTiltError(RareEventError):
    """
    No tilt θ* with Λ'(θ*) ≈ a was found inside the bracket.

    Either the threshold is unreachable within the tried bracket or the
    truncation size is too small. Increase truncation_n or check that the
    threshold is within a reachable range.

    Attributes:
        target: Threshold a
        bracket: Last (low, high) bracket
        residuals: (g(low), g(high)) for the last bracket
        root: Best candidate θ at failure
        residual: |g(root)|
        log: Diagnostic log lines gathered before the failure
    """

    def __init__(
        self,
        target: float,
        bracket: tuple,
        residuals: tuple,
        root: float,
        residual: float,
        log: Optional[List[str]] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ):
        self.target = target
        self.bracket = bracket
        self.residuals = residuals
        self.root = root
        self.residual = residual
        self.log = list(log or [])
        message = (
            f"no feasible tilt for threshold a={target:.4f}: "
            f"g(low={bracket[0]:.4f})={residuals[0]:.4f}, "
            f"g(high={bracket[1]:.4f})={residuals[1]:.4f}, "
            f"best θ={root:.6f} with |g|={residual:.4g}. "
            "Increase the truncation size or check that the threshold is reachable."
        )
        super().__init__(message, parameters)


class DegenerateNormalizationError(RareEventError):
    """The twisted row sum used to normalize q(y) is zero or non-finite."""

    def __init__(
        self,
        step: int,
        state: int,
        intensity: float,
        normalizer: float,
        parameters: Optional[Dict[str, Any]] = None,
    ):
        self.step = step
        self.state = state
        self.intensity = intensity
        self.normalizer = normalizer
        message = (
            f"degenerate twisted normalization at step {step}: state={state}, "
            f"λ={intensity:.4f}, row sum={normalizer!r}"
        )
        super().__init__(message, parameters)


class BoundaryDensityError(RareEventError):
    """The h-function is zero or non-finite at a state the sampler needs."""

    def __init__(self, state: int, value: float, truncation_n: int):
        self.state = state
        self.value = value
        self.truncation_n = truncation_n
        super().__init__(
            f"h({state}) = {value!r} on truncation N={truncation_n}; "
            "the truncation is likely undersized"
        )


class DegenerateSpectrumError(RareEventError):
    """Power iteration produced a zero or non-finite spectral estimate."""

    def __init__(self, theta: float, truncation_n: int, iteration: int, value: float):
        self.theta = theta
        self.truncation_n = truncation_n
        self.iteration = iteration
        self.value = value
        super().__init__(
            f"power iteration for θ={theta:.6f} on N={truncation_n} produced "
            f"ρ = {value!r} at iteration {iteration}"
        )


class StaleSolutionError(RareEventError):
    """An eigen solution is reused with parameters it was not solved for."""


class ComputationCancelled(RareEventError):
    """A long-running computation observed its cancel event."""


def check_cancelled(cancel_event: Optional[threading.Event], where: str = "") -> None:
    """Raise ComputationCancelled if the event is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise ComputationCancelled(f"computation cancelled{' during ' + where if where else ''}")
