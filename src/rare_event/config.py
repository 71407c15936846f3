"""
===============================================================================
ENGINE CONFIGURATION — Model Parameters & Numerical Settings
===============================================================================

Defines the inputs of one experiment run and the knobs of the numerical
engine:

    ModelParameters  — Poisson AR(1) coefficients, horizon, threshold, trials
    EigenConfig      — power-iteration budget for the tilted kernel
    BracketPolicy    — bisection bracket and expansion for θ*
    BatchConfig      — trial chunking, worker count, CI z-score
    EngineConfig     — bundle of the above plus the truncation size N

All numeric defaults are named module constants so that callers and tests
can refer to them without repeating magic numbers.

MODEL:
    X_t | X_{t-1} ~ Poisson(λ_t),   λ_t = β0 + β1·X_{t-1}
    Rare event:     A = { S_n / n > a },   S_n = Σ_{t=1..n} X_t

===============================================================================
"""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass, field, replace
from typing import Any, Dict

from .errors import InvalidParametersError


# =============================================================================
# NUMERICAL DEFAULTS
# =============================================================================

# Truncated state space {0, ..., N-1}
DEFAULT_TRUNCATION_N = 50
MIN_TRUNCATION_N = 2

# Power iteration for the dominant eigenpair of K(θ)
POWER_ITERATION_MAX_ITER = 100
POWER_ITERATION_TOLERANCE = 1e-7

# Largest log-entry of K(θ) kept unscaled; larger kernels are shifted to avoid overflow
KERNEL_LOG_SCALE_CAP = 600.0

# Central finite difference step for Λ'(θ)
DERIVATIVE_STEP = 1e-3

# Bisection for g(θ) = Λ'(θ) - a
BISECTION_LOW = 0.0
BISECTION_HIGH = 2.0
BISECTION_EXPANDED_HIGH = 5.0
BISECTION_MAX_ITER = 50
BISECTION_TOLERANCE = 1e-5
BISECTION_MAX_RESIDUAL = 0.1  # Beyond this the tilt is declared infeasible

# Batch estimation
CI_Z_95 = 1.96
DEFAULT_CHUNK_SIZE = 500

# Tail mass P(X >= N | λ_{N-1}) above which the truncation is reported as thin
TRUNCATION_TAIL_WARNING = 1e-6


# =============================================================================
# MODEL PARAMETERS
# =============================================================================

def _is_finite_real(value: Any) -> bool:
    return isinstance(value, numbers.Real) and math.isfinite(value)


def _is_count(value: Any, minimum: int) -> bool:
    """Integral value (int or integral float) no smaller than `minimum`."""
    if not _is_finite_real(value):
        return False
    return float(value).is_integer() and value >= minimum


@dataclass(frozen=True)
class ModelParameters:
    """
    Parameters of one experiment run (read-only for the whole run).

    Attributes:
        beta0: Baseline intensity β0 ≥ 0
        beta1: Feedback coefficient β1 ≥ 0
        steps: Horizon n ≥ 1
        initial_state: Starting count X_0 ≥ 0
        threshold: Level a of the time-averaged event S_n/n > a
        trials: Number of Monte Carlo trials M ≥ 1
    """
    beta0: float = 2.0
    beta1: float = 0.5
    steps: int = 100
    initial_state: int = 1
    threshold: float = 6.0
    trials: int = 2000

    def __post_init__(self):
        self.validate()
        # Normalize numeric types so counts can drive range() and list sizes
        for name in ("steps", "initial_state", "trials"):
            object.__setattr__(self, name, int(getattr(self, name)))
        for name in ("beta0", "beta1", "threshold"):
            object.__setattr__(self, name, float(getattr(self, name)))

    def validate(self) -> bool:
        problems = []
        if not (_is_finite_real(self.beta0) and self.beta0 >= 0):
            problems.append(f"beta0 must be finite and >= 0 (got {self.beta0!r})")
        if not (_is_finite_real(self.beta1) and self.beta1 >= 0):
            problems.append(f"beta1 must be finite and >= 0 (got {self.beta1!r})")
        if not _is_finite_real(self.threshold):
            problems.append(f"threshold must be finite (got {self.threshold!r})")
        if not _is_count(self.steps, 1):
            problems.append(f"steps must be an integer >= 1 (got {self.steps!r})")
        if not _is_count(self.initial_state, 0):
            problems.append(f"initial_state must be an integer >= 0 (got {self.initial_state!r})")
        if not _is_count(self.trials, 1):
            problems.append(f"trials must be an integer >= 1 (got {self.trials!r})")
        if problems:
            raise InvalidParametersError("; ".join(problems), parameters=self.to_dict())
        return True

    def intensity(self, state: int) -> float:
        """State-dependent intensity λ = β0 + β1·state."""
        return self.beta0 + self.beta1 * state

    @property
    def stationary_mean(self) -> float:
        """Long-run mean β0 / (1 - β1); infinite when β1 ≥ 1."""
        if self.beta1 >= 1.0:
            return float("inf")
        return self.beta0 / (1.0 - self.beta1)

    def with_updates(self, **changes: Any) -> "ModelParameters":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "beta0": self.beta0,
            "beta1": self.beta1,
            "steps": self.steps,
            "initial_state": self.initial_state,
            "threshold": self.threshold,
            "trials": self.trials,
        }


# =============================================================================
# SOLVER & BATCH CONFIGURATION
# =============================================================================

@dataclass
class EigenConfig:
    """
    Power-iteration settings.

    Attributes:
        max_iterations: Iteration budget; the best estimate is returned on exhaustion
        tolerance: Stop when the spectral estimate moves less than this
    """
    max_iterations: int = POWER_ITERATION_MAX_ITER
    tolerance: float = POWER_ITERATION_TOLERANCE

    def validate(self) -> bool:
        if self.max_iterations < 1:
            raise InvalidParametersError(f"max_iterations must be >= 1 (got {self.max_iterations})")
        if not self.tolerance > 0:
            raise InvalidParametersError(f"tolerance must be > 0 (got {self.tolerance})")
        return True


@dataclass
class BracketPolicy:
    """
    Bracket and stopping rules for the θ* bisection.

    The initial bracket [low, high] is widened once to [low, expanded_high]
    when g(high) < 0. No invariant guarantees a root inside the widened
    bracket for arbitrary (β0, β1); callers with large thresholds should
    raise expanded_high.

    Attributes:
        low: Lower end of the bracket
        high: Initial upper end
        expanded_high: Upper end after one expansion
        max_iterations: Bisection budget
        tolerance: Stop when |g(mid)| falls below this
        max_residual: Residual above which the search fails
        derivative_step: Finite-difference step for Λ'(θ)
    """
    low: float = BISECTION_LOW
    high: float = BISECTION_HIGH
    expanded_high: float = BISECTION_EXPANDED_HIGH
    max_iterations: int = BISECTION_MAX_ITER
    tolerance: float = BISECTION_TOLERANCE
    max_residual: float = BISECTION_MAX_RESIDUAL
    derivative_step: float = DERIVATIVE_STEP

    def validate(self) -> bool:
        if not self.low < self.high:
            raise InvalidParametersError(f"bracket requires low < high (got [{self.low}, {self.high}])")
        if self.expanded_high < self.high:
            raise InvalidParametersError(
                f"expanded_high must be >= high (got {self.expanded_high} < {self.high})"
            )
        if self.max_iterations < 1:
            raise InvalidParametersError(f"max_iterations must be >= 1 (got {self.max_iterations})")
        if not self.tolerance > 0 or not self.max_residual > 0:
            raise InvalidParametersError("tolerance and max_residual must be > 0")
        if not self.derivative_step > 0:
            raise InvalidParametersError(f"derivative_step must be > 0 (got {self.derivative_step})")
        return True


@dataclass
class BatchConfig:
    """
    Batch estimation settings.

    Trials are split into chunks of `chunk_size`; every chunk draws from its
    own spawned random stream, so a fixed seed yields the same estimate for
    any `n_workers`.

    Attributes:
        chunk_size: Trials per chunk (unit of parallel work)
        n_workers: Worker processes (1 = run in the calling process)
        z_score: Normal quantile of the two-sided confidence interval
    """
    chunk_size: int = DEFAULT_CHUNK_SIZE
    n_workers: int = 1
    z_score: float = CI_Z_95

    def validate(self) -> bool:
        if self.chunk_size < 1:
            raise InvalidParametersError(f"chunk_size must be >= 1 (got {self.chunk_size})")
        if self.n_workers < 1:
            raise InvalidParametersError(f"n_workers must be >= 1 (got {self.n_workers})")
        if not self.z_score > 0:
            raise InvalidParametersError(f"z_score must be > 0 (got {self.z_score})")
        return True


@dataclass
class EngineConfig:
    """Bundle of every numerical setting used by the engine facade."""
    truncation_n: int = DEFAULT_TRUNCATION_N
    eigen: EigenConfig = field(default_factory=EigenConfig)
    bracket: BracketPolicy = field(default_factory=BracketPolicy)
    batch: BatchConfig = field(default_factory=BatchConfig)

    def validate(self) -> bool:
        validate_truncation(self.truncation_n)
        self.eigen.validate()
        self.bracket.validate()
        self.batch.validate()
        return True


def validate_truncation(truncation_n: int) -> int:
    if int(truncation_n) != truncation_n or truncation_n < MIN_TRUNCATION_N:
        raise InvalidParametersError(
            f"truncation_n must be an integer >= {MIN_TRUNCATION_N} (got {truncation_n})"
        )
    return int(truncation_n)


# Default configuration
DEFAULT_EIGEN_CONFIG = EigenConfig()
DEFAULT_BRACKET_POLICY = BracketPolicy()
DEFAULT_BATCH_CONFIG = BatchConfig()
DEFAULT_ENGINE_CONFIG = EngineConfig()
