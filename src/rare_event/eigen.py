"""
===============================================================================
TILTED EIGEN SOLVER — Dominant Eigenpair of the Truncated Tilted Kernel
===============================================================================

For a tilt θ the state-indexed kernel on {0, ..., N-1} is

    K_ij(θ) = pmf(j, λ_i) · e^{θ j},      λ_i = β0 + β1 · i

Its dominant eigenvalue ρ(θ) gives the scaled cumulant generating function
Λ(θ) = log ρ(θ), and the matching right eigenvector h(θ) is the Doob-h
function used to build the twisted chain

    q(y | x) = K_xy(θ) · h(y) / (ρ(θ) · h(x))

ALGORITHM (power iteration):
    v ← (1, ..., 1)
    repeat up to max_iterations:
        w ← K(θ) v
        ρ ← ‖w‖₂,  v ← w / ρ
        stop when |ρ_new - ρ_old| < tolerance

K(θ) is non-negative, so starting from a positive vector keeps every
iterate non-negative; the returned h has unit Euclidean norm.

LOG SPACE:
    K(θ) is exponentiated from log pmf(j, λ_i) + θ·j. For large θ·N the
    kernel is scaled by e^{-s} before iterating and log ρ = log ρ_s + s,
    so a far-out tilt on a wide truncation never turns into inf · 0. A
    zero or non-finite iterate raises DegenerateSpectrumError.

TRUNCATION:
    States ≥ N are never represented. N must be large enough that
    P(X ≥ N | λ_{N-1}) is negligible for the parameters in use; the
    dropped mass is reported by `truncation_tail_mass`.

===============================================================================
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

from .config import (
    DEFAULT_EIGEN_CONFIG,
    KERNEL_LOG_SCALE_CAP,
    TRUNCATION_TAIL_WARNING,
    EigenConfig,
    validate_truncation,
)
from .count_kernel import CountKernel, get_count_kernel
from .errors import DegenerateSpectrumError, check_cancelled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EigenSolution:
    """
    Dominant eigenpair of K(θ).

    Attributes:
        rho: Dominant eigenvalue ρ(θ) > 0 (inf when it exceeds double range)
        h: Right eigenvector (unit Euclidean norm, element-wise ≥ 0, finite)
        theta: Tilt the kernel was built for
        iterations: Power iterations performed
        converged: Whether the tolerance was met within the budget
        log_rho: log ρ(θ), finite even when ρ itself overflows
    """
    rho: float
    h: np.ndarray
    theta: float
    iterations: int
    converged: bool
    log_rho: float

    @property
    def truncation_n(self) -> int:
        return len(self.h)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rho": self.rho,
            "log_rho": self.log_rho,
            "h": self.h.tolist(),
            "theta": self.theta,
            "iterations": self.iterations,
            "converged": self.converged,
        }


def state_intensities(beta0: float, beta1: float, truncation_n: int) -> np.ndarray:
    """λ_i = β0 + β1·i for i = 0..N-1."""
    return beta0 + beta1 * np.arange(truncation_n, dtype=np.float64)


def build_tilted_kernel(
    beta0: float,
    beta1: float,
    theta: float,
    truncation_n: int,
    kernel: Optional[CountKernel] = None,
) -> np.ndarray:
    """Materialize K(θ) as an N×N array."""
    kernel = kernel or get_count_kernel()
    lams = state_intensities(beta0, beta1, truncation_n)
    log_tilt = theta * np.arange(truncation_n, dtype=np.float64)
    return np.exp(kernel.log_pmf_matrix(lams, truncation_n) + log_tilt[np.newaxis, :])


class TiltedEigenSolver:
    """
    Power-iteration solver for ρ(θ) and h(θ) on a fixed truncation.

    The untilted log transition probabilities log P_ij = log pmf(j, λ_i)
    are computed once per solver; each θ only adds θ·j to column j, so
    K(θ) is exponentiated from log space and never forms inf · 0.
    When the largest log-entry exceeds KERNEL_LOG_SCALE_CAP the kernel is
    iterated as K(θ)·e^{-s}, the tolerance applies to the scaled estimate,
    and s is added back to log ρ.
    """

    def __init__(
        self,
        beta0: float,
        beta1: float,
        truncation_n: int,
        config: Optional[EigenConfig] = None,
        kernel: Optional[CountKernel] = None,
    ):
        self.beta0 = float(beta0)
        self.beta1 = float(beta1)
        self.truncation_n = validate_truncation(truncation_n)
        self.config = config or DEFAULT_EIGEN_CONFIG
        self.config.validate()
        self.kernel = kernel or get_count_kernel()
        self.kernel.ensure(self.truncation_n)

        self._states = np.arange(self.truncation_n, dtype=np.float64)
        self._log_transition = self.kernel.log_pmf_matrix(
            state_intensities(self.beta0, self.beta1, self.truncation_n),
            self.truncation_n,
        )
        self._log_transition.flags.writeable = False
        self._transition = np.exp(self._log_transition)
        self._transition.flags.writeable = False

    @property
    def transition(self) -> np.ndarray:
        """Untilted truncated transition matrix (read-only)."""
        return self._transition

    def log_tilted_kernel(self, theta: float) -> np.ndarray:
        return self._log_transition + theta * self._states[np.newaxis, :]

    def tilted_kernel(self, theta: float) -> np.ndarray:
        return np.exp(self.log_tilted_kernel(theta))

    def truncation_tail_mass(self) -> float:
        """Largest probability mass any row loses to the truncation."""
        return float(max(0.0, 1.0 - self._transition.sum(axis=1).min()))

    def solve(self, theta: float, cancel_event: Optional[threading.Event] = None) -> EigenSolution:
        """
        Dominant eigenpair of K(θ) by power iteration.

        After max_iterations the best available estimate is returned with
        converged=False.

        Raises:
            DegenerateSpectrumError: an iterate is zero or non-finite
        """
        log_k = self.log_tilted_kernel(theta)
        shift = max(0.0, float(np.max(log_k)) - KERNEL_LOG_SCALE_CAP)
        k_theta = np.exp(log_k - shift)

        v = np.ones(self.truncation_n, dtype=np.float64)
        rho = 0.0
        converged = False
        iterations = 0

        for iterations in range(1, self.config.max_iterations + 1):
            check_cancelled(cancel_event, "power iteration")
            w = k_theta @ v
            new_rho = float(np.linalg.norm(w))
            if not (np.isfinite(new_rho) and new_rho > 0):
                raise DegenerateSpectrumError(float(theta), self.truncation_n, iterations, new_rho)
            v = w / new_rho
            if abs(new_rho - rho) < self.config.tolerance:
                rho = new_rho
                converged = True
                break
            rho = new_rho

        log_rho = math.log(rho) + shift
        if not converged:
            logger.warning(
                "Power iteration did not converge for θ=%.6f after %d iterations (log ρ≈%.8g)",
                theta, iterations, log_rho,
            )
        else:
            logger.debug("Power iteration θ=%.6f converged in %d iterations: log ρ=%.10g", theta, iterations, log_rho)

        h = np.maximum(v, 0.0)
        if not np.all(np.isfinite(h)):
            raise DegenerateSpectrumError(float(theta), self.truncation_n, iterations, rho)
        h.flags.writeable = False
        with np.errstate(over="ignore"):
            rho_value = float(np.exp(log_rho))
        return EigenSolution(
            rho=rho_value, h=h, theta=float(theta), iterations=iterations,
            converged=converged, log_rho=log_rho,
        )

    def check_truncation(self) -> float:
        """Log a warning when the truncation drops a noticeable tail mass."""
        tail = self.truncation_tail_mass()
        if tail > TRUNCATION_TAIL_WARNING:
            logger.warning(
                "Truncation N=%d drops tail mass %.3g at λ_max=%.3f; consider a larger N",
                self.truncation_n, tail, self.beta0 + self.beta1 * (self.truncation_n - 1),
            )
        return tail
