"""
===============================================================================
CUMULANT SOLVER & θ* ROOT FINDER
===============================================================================

SCALED CUMULANT GENERATING FUNCTION:
    Λ(θ)  = log ρ(θ)
    Λ'(θ) ≈ (Λ(θ + h) - Λ(θ - h)) / (2h),   h = 0.001

    Λ is convex and Λ'(θ) is the mean growth rate of the twisted chain, so
    the Large-Deviations-optimal tilt for the event {S_n/n > a} solves

        g(θ) = Λ'(θ) - a = 0

ROOT FINDING (bisection):
    1. Bracket [low, high] = [0, 2]
    2. If g(high) < 0, widen high to 5 (logged)
    3. Bisect up to 50 times, stop when |g(mid)| < 1e-5
       g(mid) < 0 → low = mid,  g(mid) ≥ 0 → high = mid
    4. If unconverged and |g(root)| > 0.1 → InfeasibleTiltError

    When g(low) ≥ 0 the natural chain already averages above a: the event
    is not rare and θ* = low is the expected answer.

===============================================================================
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from .config import DEFAULT_BRACKET_POLICY, BracketPolicy
from .eigen import TiltedEigenSolver
from .errors import InfeasibleTiltError, check_cancelled

logger = logging.getLogger(__name__)


# Root status labels
ROOT_CONVERGED = "converged"
ROOT_APPROXIMATE = "approximate"
ROOT_LOWER_BOUND = "lower_bound"


class CumulantSolver:
    """Λ(θ) and its central-difference derivative on top of TiltedEigenSolver."""

    def __init__(self, eigen_solver: TiltedEigenSolver, derivative_step: float = DEFAULT_BRACKET_POLICY.derivative_step):
        self.eigen_solver = eigen_solver
        self.derivative_step = derivative_step
        self.evaluations = 0

    def scgf(self, theta: float, cancel_event: Optional[threading.Event] = None) -> float:
        """Λ(θ) = log ρ(θ)."""
        self.evaluations += 1
        return self.eigen_solver.solve(theta, cancel_event=cancel_event).log_rho

    def derivative(self, theta: float, cancel_event: Optional[threading.Event] = None) -> float:
        """Λ'(θ) by central finite difference (two eigen solves)."""
        h = self.derivative_step
        plus = self.scgf(theta + h, cancel_event)
        minus = self.scgf(theta - h, cancel_event)
        return (plus - minus) / (2.0 * h)


@dataclass
class RootResult:
    """
    Outcome of the θ* search.

    Attributes:
        theta: Selected tilt θ*
        residual: g(θ*) = Λ'(θ*) - a
        status: 'converged', 'approximate' (|g| ≤ max_residual) or
                'lower_bound' (natural mean already above a)
        iterations: Bisection iterations performed
        bracket: Final (low, high)
        expanded: Whether the upper end was widened
        log: Human-readable diagnostic lines
    """
    theta: float
    residual: float
    status: str
    iterations: int
    bracket: tuple
    expanded: bool
    log: List[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status == ROOT_CONVERGED


class ThetaRootFinder:
    """Bisection search for g(θ) = Λ'(θ) - a under a configurable bracket."""

    def __init__(self, cumulant: CumulantSolver, policy: Optional[BracketPolicy] = None):
        self.cumulant = cumulant
        self.policy = policy or DEFAULT_BRACKET_POLICY
        self.policy.validate()

    def residual(self, theta: float, target: float, cancel_event: Optional[threading.Event] = None) -> float:
        return self.cumulant.derivative(theta, cancel_event) - target

    def find(
        self,
        target: float,
        log: Optional[List[str]] = None,
        parameters: Optional[Dict] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RootResult:
        """
        Locate θ* for threshold `target`.

        Args:
            target: Threshold a
            log: Existing log to append diagnostics to (a fresh list otherwise)
            parameters: Model parameters attached to a failure for context
            cancel_event: Checked between bisection steps

        Raises:
            InfeasibleTiltError: residual above max_residual after the budget,
                or a non-finite Λ' anywhere in the search
        """
        log = log if log is not None else []
        policy = self.policy
        low, high = policy.low, policy.high

        def infeasible(root, residual, g_low, g_high):
            return InfeasibleTiltError(
                target=target,
                bracket=(low, high),
                residuals=(g_low, g_high),
                root=root,
                residual=abs(residual),
                log=log,
                parameters=parameters,
            )

        g_low = self.residual(low, target, cancel_event)
        if not np.isfinite(g_low):
            log.append(f"Note: Λ'({low:g}) is not finite")
            raise infeasible(low, g_low, g_low, float("nan"))
        if g_low >= 0:
            log.append(
                f"Note: natural mean growth Λ'({low:g}) = {g_low + target:.4f} already exceeds "
                f"a = {target:.4f}; the event is not rare and θ* = {low:g} (IS reduces to naive MC)"
            )
            logger.info("Threshold %.4f below natural mean growth %.4f; θ* at lower bound", target, g_low + target)
            return RootResult(
                theta=low, residual=g_low, status=ROOT_LOWER_BOUND, iterations=0,
                bracket=(low, high), expanded=False, log=log,
            )

        expanded = False
        g_high = self.residual(high, target, cancel_event)
        if np.isfinite(g_high) and g_high < 0:
            high = policy.expanded_high
            expanded = True
            g_high = self.residual(high, target, cancel_event)
            log.append(f"Note: widened search range to θ = {high:g}")
            logger.info("Bisection bracket widened to [%g, %g]", low, high)
        if not np.isfinite(g_high):
            log.append(f"Note: Λ'({high:g}) is not finite; the bracket cannot be checked")
            raise infeasible(high, g_high, g_low, g_high)

        root, root_residual = None, None
        iterations = 0
        for iterations in range(1, policy.max_iterations + 1):
            check_cancelled(cancel_event, "bisection")
            mid = 0.5 * (low + high)
            val = self.residual(mid, target, cancel_event)
            logger.debug("bisection %d: θ=%.8f g=%.3e", iterations, mid, val)
            if not np.isfinite(val):
                log.append(f"Note: Λ'({mid:.6f}) is not finite")
                raise infeasible(mid, val, g_low, g_high)
            if abs(val) < policy.tolerance:
                root, root_residual = mid, val
                break
            if val < 0:
                low, g_low = mid, val
            else:
                high, g_high = mid, val

        if root is not None:
            return RootResult(
                theta=root, residual=root_residual, status=ROOT_CONVERGED, iterations=iterations,
                bracket=(low, high), expanded=expanded, log=log,
            )

        root = 0.5 * (low + high)
        root_residual = self.residual(root, target, cancel_event)
        if not abs(root_residual) <= policy.max_residual:
            raise infeasible(root, root_residual, g_low, g_high)

        log.append(
            f"Note: bisection stopped after {iterations} iterations with |g| = {abs(root_residual):.2e}"
        )
        logger.warning("θ* accepted with residual %.3e above tolerance %.1e", abs(root_residual), policy.tolerance)
        return RootResult(
            theta=root, residual=root_residual, status=ROOT_APPROXIMATE, iterations=iterations,
            bracket=(low, high), expanded=expanded, log=log,
        )
