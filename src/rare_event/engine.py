"""
===============================================================================
ENGINE — Functional Surface of the Rare-Event Core
===============================================================================

    solve(params, truncation_n)                     -> SolveResult
    simulate_natural(params, seed)                  -> Trajectory
    simulate_twisted(params, theta, rho, h, N, seed) -> Trajectory
    run_batch(params, theta, rho, h, N, seed)       -> BatchComparison

`RareEventEngine` adds the lifecycle on top: the eigen solution is solved
once per (β0, β1, a, N) and reused by every sampling and batch call until
the parameters change, at which point it is dropped and must be solved
again.

Presentation layers receive Trajectory and BatchResult values, which are
immutable.

===============================================================================
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

import numpy as np

from .batch import BatchEstimator, BatchResult, ProgressCallback, as_seed_sequence, variance_reduction_factor
from .config import (
    DEFAULT_ENGINE_CONFIG,
    EngineConfig,
    ModelParameters,
    validate_truncation,
)
from .cumulant import CumulantSolver, RootResult, ThetaRootFinder
from .eigen import EigenSolution, TiltedEigenSolver
from .errors import StaleSolutionError
from .sampler import NaturalSampler, SeedLike, Trajectory, TwistedKernel, TwistedSampler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SolveResult:
    """
    Solved tilt and eigenpair for one parameter set.

    Attributes:
        theta: Optimal tilt θ*
        rho: ρ(θ*)
        h: Doob-h function on {0, ..., N-1} (unit norm)
        log: Ordered human-readable diagnostics
        params: Parameters the solution belongs to
        truncation_n: Truncation size N
        root: Bisection outcome
        eigen: Eigenpair at θ*
        truncation_tail_mass: Largest row mass dropped by the truncation
    """
    theta: float
    rho: float
    h: np.ndarray
    log: List[str]
    params: ModelParameters
    truncation_n: int
    root: RootResult
    eigen: EigenSolution
    truncation_tail_mass: float = 0.0

    def matches(self, params: ModelParameters, truncation_n: int) -> bool:
        """Whether this solution is valid for `params` on truncation N."""
        return (
            self.params.beta0 == params.beta0
            and self.params.beta1 == params.beta1
            and self.params.threshold == params.threshold
            and self.truncation_n == truncation_n
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "theta": self.theta,
            "rho": self.rho,
            "h": self.h.tolist(),
            "log": list(self.log),
            "status": self.root.status,
            "truncation_n": self.truncation_n,
            "truncation_tail_mass": self.truncation_tail_mass,
        }


@dataclass(frozen=True)
class BatchComparison:
    """Naive and importance-sampled results of one batch experiment."""
    naive: BatchResult
    importance_sampled: BatchResult
    theta: float

    @property
    def variance_reduction_factor(self) -> float:
        return variance_reduction_factor(self.naive, self.importance_sampled)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "naive": self.naive.to_dict(),
            "importanceSampled": self.importance_sampled.to_dict(),
            "theta": self.theta,
            "vrf": self.variance_reduction_factor,
        }


# =============================================================================
# FUNCTIONAL SURFACE
# =============================================================================

def solve(
    params: ModelParameters,
    truncation_n: int = DEFAULT_ENGINE_CONFIG.truncation_n,
    config: Optional[EngineConfig] = None,
    cancel_event: Optional[threading.Event] = None,
) -> SolveResult:
    """
    Find θ* with Λ'(θ*) = a and the eigenpair (ρ, h) at θ*.

    Raises:
        InfeasibleTiltError: no adequate root inside the bracket; the error
            carries the bracket residuals and the partial log
    """
    config = config or DEFAULT_ENGINE_CONFIG
    truncation_n = validate_truncation(truncation_n)
    config.eigen.validate()
    config.bracket.validate()

    log: List[str] = [
        ">>> Starting numerical solve",
        f"Parameters: β0={params.beta0:g}, β1={params.beta1:g}, N={truncation_n}",
        f"Target: find θ such that the twisted mean E_Q[X] ≈ a = {params.threshold:.2f}",
    ]

    eigen_solver = TiltedEigenSolver(params.beta0, params.beta1, truncation_n, config.eigen)
    tail_mass = eigen_solver.check_truncation()

    cumulant = CumulantSolver(eigen_solver, config.bracket.derivative_step)
    finder = ThetaRootFinder(cumulant, config.bracket)
    root = finder.find(params.threshold, log=log, parameters=params.to_dict(), cancel_event=cancel_event)

    if root.converged:
        log.append(
            f"Bisection converged in {root.iterations} iterations (|g(θ*)| = {abs(root.residual):.2e})"
        )
    log.append(f"√ Optimal tilt θ* = {root.theta:.6f}")

    log.append("Computing eigenpair (ρ, h) ...")
    eigen = eigen_solver.solve(root.theta, cancel_event=cancel_event)
    if not eigen.converged:
        log.append(f"Note: power iteration stopped after {eigen.iterations} iterations without meeting tolerance")
    log.append(f"√ Spectral radius ρ = {eigen.rho:.6f}")

    logger.info(
        "Solved θ*=%.6f (%s) ρ=%.6f after %d Λ evaluations",
        root.theta, root.status, eigen.rho, cumulant.evaluations,
    )
    return SolveResult(
        theta=root.theta,
        rho=eigen.rho,
        h=eigen.h,
        log=log,
        params=params,
        truncation_n=truncation_n,
        root=root,
        eigen=eigen,
        truncation_tail_mass=tail_mass,
    )


def simulate_natural(params: ModelParameters, seed: SeedLike = None) -> Trajectory:
    """One trajectory under the natural measure."""
    return NaturalSampler(params).sample(seed)


def simulate_twisted(
    params: ModelParameters,
    theta: float,
    rho: float,
    h: np.ndarray,
    truncation_n: int,
    seed: SeedLike = None,
) -> Trajectory:
    """One trajectory under the h-transformed measure (requires a prior solve)."""
    kernel = TwistedKernel(params.beta0, params.beta1, theta, rho, h, truncation_n)
    return TwistedSampler(params, kernel).sample(seed)


def run_batch(
    params: ModelParameters,
    theta: float,
    rho: float,
    h: np.ndarray,
    truncation_n: int,
    seed: Any = None,
    config: Optional[EngineConfig] = None,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[ProgressCallback] = None,
) -> BatchComparison:
    """
    Naive and IS batches of params.trials trajectories each.

    The two batches draw from independent children of one SeedSequence.
    """
    config = config or DEFAULT_ENGINE_CONFIG
    naive_seed, is_seed = as_seed_sequence(seed).spawn(2)
    estimator = BatchEstimator(params, config.batch)

    total = 2 * params.trials
    naive_progress = (lambda done, _: progress(done, total)) if progress else None
    is_progress = (lambda done, _: progress(params.trials + done, total)) if progress else None

    naive = estimator.run_naive(naive_seed, cancel_event, naive_progress)
    importance_sampled = estimator.run_importance_sampled(
        theta, rho, h, truncation_n, is_seed, cancel_event, is_progress,
    )
    comparison = BatchComparison(naive=naive, importance_sampled=importance_sampled, theta=float(theta))
    logger.info("Batch comparison: VRF=%.3f", comparison.variance_reduction_factor)
    return comparison


# =============================================================================
# STATEFUL ENGINE
# =============================================================================

@dataclass
class RareEventEngine:
    """
    Holds one parameter set and its solved tilt.

    Changing the parameters (or the truncation) drops the cached solution;
    twisted sampling and batches then raise StaleSolutionError until
    `solve` is called again.
    """
    params: ModelParameters = field(default_factory=ModelParameters)
    config: EngineConfig = field(default_factory=EngineConfig)
    solution: Optional[SolveResult] = None

    def __post_init__(self):
        self.config.validate()

    @property
    def truncation_n(self) -> int:
        return self.config.truncation_n

    def update(self, **changes: Any) -> ModelParameters:
        """Replace some parameters, invalidating a solution that no longer matches."""
        self.params = self.params.with_updates(**changes)
        if self.solution is not None and not self.solution.matches(self.params, self.truncation_n):
            logger.debug("Parameters changed; dropping solved tilt θ*=%.6f", self.solution.theta)
            self.solution = None
        return self.params

    def set_truncation(self, truncation_n: int) -> None:
        self.config = replace(self.config, truncation_n=validate_truncation(truncation_n))
        if self.solution is not None and not self.solution.matches(self.params, self.truncation_n):
            self.solution = None

    def solve(self, cancel_event: Optional[threading.Event] = None) -> SolveResult:
        self.solution = solve(self.params, self.truncation_n, self.config, cancel_event)
        return self.solution

    def require_solution(self) -> SolveResult:
        if self.solution is None or not self.solution.matches(self.params, self.truncation_n):
            raise StaleSolutionError(
                "no eigen solution for the current parameters; call solve() first",
                parameters=self.params.to_dict(),
            )
        return self.solution

    def simulate_natural(self, seed: SeedLike = None) -> Trajectory:
        return simulate_natural(self.params, seed)

    def simulate_twisted(self, seed: SeedLike = None) -> Trajectory:
        s = self.require_solution()
        return simulate_twisted(self.params, s.theta, s.rho, s.h, s.truncation_n, seed)

    def run_batch(
        self,
        seed: Any = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> BatchComparison:
        s = self.require_solution()
        return run_batch(
            self.params, s.theta, s.rho, s.h, s.truncation_n, seed,
            self.config, cancel_event, progress,
        )
