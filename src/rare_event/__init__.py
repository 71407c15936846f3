"""
===============================================================================
RARE EVENT — LDP-Guided Importance Sampling for Poisson AR(1) Counts
===============================================================================

Estimates P(S_n / n > a) for the self-exciting count chain

    X_t | X_{t-1} ~ Poisson(β0 + β1 · X_{t-1})

with naive Monte Carlo and with importance sampling under the Doob-h
transform of the exponentially tilted kernel.

Pipeline:
    1. CountKernel        — Poisson pmf, memoized factorials
    2. TiltedEigenSolver  — ρ(θ), h(θ) by power iteration on K(θ)
    3. CumulantSolver     — Λ(θ) = log ρ(θ), Λ'(θ)
    4. ThetaRootFinder    — θ* with Λ'(θ*) = a
    5. Samplers           — natural / twisted trajectories
    6. BatchEstimator     — naive and IS estimates, variance, 95% CI

===============================================================================
"""

from .config import (
    ModelParameters,
    EigenConfig,
    BracketPolicy,
    BatchConfig,
    EngineConfig,
    DEFAULT_ENGINE_CONFIG,
    DEFAULT_TRUNCATION_N,
)

from .errors import (
    RareEventError,
    InvalidParametersError,
    InfeasibleTiltError,
    DegenerateNormalizationError,
    BoundaryDensityError,
    DegenerateSpectrumError,
    StaleSolutionError,
    ComputationCancelled,
)

from .count_kernel import CountKernel, get_count_kernel, poisson_pmf
from .eigen import EigenSolution, TiltedEigenSolver, build_tilted_kernel
from .cumulant import CumulantSolver, ThetaRootFinder, RootResult

from .sampler import (
    Trajectory,
    TrajectoryPoint,
    NaturalSampler,
    TwistedSampler,
    TwistedKernel,
)

from .batch import (
    BatchEstimator,
    BatchResult,
    variance_reduction_factor,
)

from .engine import (
    solve,
    simulate_natural,
    simulate_twisted,
    run_batch,
    SolveResult,
    BatchComparison,
    RareEventEngine,
)

from .tasks import EngineTask, start_solve, start_batch
from .analysis import EfficiencyAssessment, assess_efficiency
from .research import LiteratureSearch, ResearchResult, SearchSource

__all__ = [
    # Config
    'ModelParameters',
    'EigenConfig',
    'BracketPolicy',
    'BatchConfig',
    'EngineConfig',
    'DEFAULT_ENGINE_CONFIG',
    'DEFAULT_TRUNCATION_N',
    # Errors
    'RareEventError',
    'InvalidParametersError',
    'InfeasibleTiltError',
    'DegenerateNormalizationError',
    'BoundaryDensityError',
    'DegenerateSpectrumError',
    'StaleSolutionError',
    'ComputationCancelled',
    # Numerics
    'CountKernel',
    'get_count_kernel',
    'poisson_pmf',
    'EigenSolution',
    'TiltedEigenSolver',
    'build_tilted_kernel',
    'CumulantSolver',
    'ThetaRootFinder',
    'RootResult',
    # Sampling
    'Trajectory',
    'TrajectoryPoint',
    'NaturalSampler',
    'TwistedSampler',
    'TwistedKernel',
    'BatchEstimator',
    'BatchResult',
    'variance_reduction_factor',
    # Engine
    'solve',
    'simulate_natural',
    'simulate_twisted',
    'run_batch',
    'SolveResult',
    'BatchComparison',
    'RareEventEngine',
    'EngineTask',
    'start_solve',
    'start_batch',
    'EfficiencyAssessment',
    'assess_efficiency',
    # Literature search
    'LiteratureSearch',
    'ResearchResult',
    'SearchSource',
]
