"""
===============================================================================
BATCH ESTIMATOR — Naive Monte Carlo vs. Importance Sampling
===============================================================================

Runs M independent trajectories of length n without retaining the paths and
aggregates an estimate of P(S_n / n > a), its variance and a 95% CI.

NAIVE (natural measure):
    p̂   = hits / M
    Var = p̂ (1 - p̂) / M
    CI  = p̂ ± 1.96 √Var, lower end clamped at 0

IMPORTANCE SAMPLING (twisted measure at θ*):
    log L accumulated per step in log space,
        log L += log ρ + log h(x_t) - θ* x_{t+1} - log h(x_{t+1})
    p̂   = Σ L·1{hit} / M
    Var = (Σ L²·1{hit} / M - p̂²) / M
    Non-hits contribute 0 to both sums but still count as trials.

PARALLELISM:
    Trials are cut into fixed-size chunks. Every chunk gets its own child
    of one SeedSequence, so a fixed seed yields the same estimate whether
    chunks run in-process or on a ProcessPoolExecutor. Chunk accumulators
    are merged in chunk order.

VRF = naive variance / IS variance is a derived metric for consumers
(`variance_reduction_factor`), not computed by the estimators.

===============================================================================
"""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
from scipy.special import logsumexp

from .config import DEFAULT_BATCH_CONFIG, BatchConfig, ModelParameters, validate_truncation
from .count_kernel import get_count_kernel
from .errors import check_cancelled
from .sampler import TwistedKernel, inverse_cdf, knuth_poisson_array

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class BatchResult:
    """
    Aggregate of one batch under one sampling measure.

    Attributes:
        estimated_probability: Estimate of P(S_n / n > a)
        variance: Variance of the estimator
        confidence_interval: (lo, hi), lo ≥ 0
        total_hits: Trials that realized the event under the sampling measure
        trials: M
        measure: 'naive' or 'importance_sampled'
        effective_sample_size: (Σ L)² / Σ L² over hits (IS only)
        mean_likelihood_ratio: Mean of L over all trials, ≈ 1 when the
            twisted measure is consistent (IS only)
    """
    estimated_probability: float
    variance: float
    confidence_interval: Tuple[float, float]
    total_hits: int
    trials: int
    measure: str
    effective_sample_size: Optional[float] = None
    mean_likelihood_ratio: Optional[float] = None

    @property
    def std_error(self) -> float:
        return math.sqrt(self.variance)

    @property
    def ci_width(self) -> float:
        return self.confidence_interval[1] - self.confidence_interval[0]

    @property
    def relative_error(self) -> float:
        """Standard error over the estimate (inf for a zero estimate)."""
        if self.estimated_probability <= 0:
            return float("inf")
        return self.std_error / self.estimated_probability

    def contains(self, value: float) -> bool:
        lo, hi = self.confidence_interval
        return lo <= value <= hi

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimatedProb": self.estimated_probability,
            "variance": self.variance,
            "confidenceInterval": list(self.confidence_interval),
            "totalHits": self.total_hits,
            "trials": self.trials,
            "measure": self.measure,
            "effectiveSampleSize": self.effective_sample_size,
            "meanLikelihoodRatio": self.mean_likelihood_ratio,
        }


@dataclass
class ChunkAccumulator:
    """Additive sufficient statistics of one chunk of trials."""
    trials: int = 0
    hits: int = 0
    sum_l: float = 0.0
    sum_l2: float = 0.0
    sum_l_all: float = 0.0

    def merge(self, other: "ChunkAccumulator") -> "ChunkAccumulator":
        return ChunkAccumulator(
            trials=self.trials + other.trials,
            hits=self.hits + other.hits,
            sum_l=self.sum_l + other.sum_l,
            sum_l2=self.sum_l2 + other.sum_l2,
            sum_l_all=self.sum_l_all + other.sum_l_all,
        )


def confidence_interval(estimate: float, variance: float, z: float = DEFAULT_BATCH_CONFIG.z_score) -> Tuple[float, float]:
    half = z * math.sqrt(variance)
    return max(0.0, estimate - half), estimate + half


def naive_result(acc: ChunkAccumulator, z: float = DEFAULT_BATCH_CONFIG.z_score) -> BatchResult:
    """Bernoulli-proportion estimate from hit counts."""
    p = acc.hits / acc.trials
    variance = p * (1.0 - p) / acc.trials
    return BatchResult(
        estimated_probability=p,
        variance=variance,
        confidence_interval=confidence_interval(p, variance, z),
        total_hits=acc.hits,
        trials=acc.trials,
        measure="naive",
    )


def importance_result(acc: ChunkAccumulator, z: float = DEFAULT_BATCH_CONFIG.z_score) -> BatchResult:
    """Likelihood-weighted estimate from the IS sums."""
    m = acc.trials
    p = acc.sum_l / m
    if p > 1.0:
        logger.warning("IS estimate %.4f exceeds 1; clamping (weights are unreliable)", p)
        p = 1.0
    # Variance and CI are both taken about the clamped estimate
    sample_variance = acc.sum_l2 / m - p * p
    variance = max(sample_variance, 0.0) / m
    ess = (acc.sum_l ** 2) / acc.sum_l2 if acc.sum_l2 > 0 else 0.0
    return BatchResult(
        estimated_probability=p,
        variance=variance,
        confidence_interval=confidence_interval(p, variance, z),
        total_hits=acc.hits,
        trials=m,
        measure="importance_sampled",
        effective_sample_size=ess,
        mean_likelihood_ratio=acc.sum_l_all / m,
    )


def variance_reduction_factor(naive: BatchResult, importance_sampled: BatchResult) -> float:
    """naive variance / IS variance (0 when the IS variance is 0)."""
    if importance_sampled.variance <= 0:
        return 0.0
    return naive.variance / importance_sampled.variance


# =============================================================================
# CHUNK WORKERS
# =============================================================================
# Defined at module level for ProcessPoolExecutor pickling.

def _naive_chunk(params: ModelParameters, n_trials: int, seed: np.random.SeedSequence) -> ChunkAccumulator:
    rng = np.random.default_rng(seed)
    states = np.full(n_trials, int(params.initial_state), dtype=np.int64)
    sums = np.zeros(n_trials, dtype=np.int64)
    for _ in range(params.steps):
        lams = params.beta0 + params.beta1 * states
        states = knuth_poisson_array(rng, lams)
        sums += states
    hits = int(np.count_nonzero(sums / params.steps > params.threshold))
    return ChunkAccumulator(trials=n_trials, hits=hits)


def _twisted_chunk(
    params: ModelParameters,
    n_trials: int,
    seed: np.random.SeedSequence,
    theta: float,
    rho: float,
    h: np.ndarray,
    truncation_n: int,
) -> ChunkAccumulator:
    rng = np.random.default_rng(seed)
    tk = TwistedKernel(params.beta0, params.beta1, theta, rho, h, truncation_n)

    states = np.full(n_trials, int(params.initial_state), dtype=np.int64)
    sums = np.zeros(n_trials, dtype=np.int64)
    log_lr = np.zeros(n_trials, dtype=np.float64)
    log_h_current = tk.log_h(states)

    for step in range(1, params.steps + 1):
        if step == 1:
            # Every trial shares the initial state
            cdf = np.broadcast_to(tk.cdf_row(int(params.initial_state), step), (n_trials, truncation_n))
        else:
            cdf = tk.cdf_rows(states, step)
        nxt = inverse_cdf(cdf, rng.random(n_trials))
        log_h_next = tk.log_h(nxt)
        log_lr += tk.log_rho + log_h_current - theta * nxt - log_h_next
        sums += nxt
        states = nxt
        log_h_current = log_h_next

    hit_mask = sums / params.steps > params.threshold
    hits = int(np.count_nonzero(hit_mask))
    if hits:
        log_hits = log_lr[hit_mask]
        sum_l = float(np.exp(logsumexp(log_hits)))
        sum_l2 = float(np.exp(logsumexp(2.0 * log_hits)))
    else:
        sum_l = sum_l2 = 0.0
    sum_l_all = float(np.exp(logsumexp(log_lr)))
    return ChunkAccumulator(trials=n_trials, hits=hits, sum_l=sum_l, sum_l2=sum_l2, sum_l_all=sum_l_all)


# =============================================================================
# ESTIMATOR
# =============================================================================

def as_seed_sequence(seed: Any) -> np.random.SeedSequence:
    if isinstance(seed, np.random.SeedSequence):
        return seed
    return np.random.SeedSequence(seed)


class BatchEstimator:
    """
    Naive and importance-sampled batch estimators for one ModelParameters.

    Args:
        params: Model parameters (trials = M, steps = n, threshold = a)
        config: Chunking, worker count and CI settings
    """

    def __init__(self, params: ModelParameters, config: Optional[BatchConfig] = None):
        self.params = params
        self.config = config or DEFAULT_BATCH_CONFIG
        self.config.validate()

    def chunk_sizes(self) -> List[int]:
        m, size = self.params.trials, self.config.chunk_size
        sizes = [size] * (m // size)
        if m % size:
            sizes.append(m % size)
        return sizes

    def run_naive(
        self,
        seed: Any = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        acc = self._run_chunks(_naive_chunk, (), seed, cancel_event, progress)
        result = naive_result(acc, self.config.z_score)
        logger.info(
            "Naive batch: %d/%d hits, p=%.6g, var=%.3g",
            result.total_hits, result.trials, result.estimated_probability, result.variance,
        )
        return result

    def run_importance_sampled(
        self,
        theta: float,
        rho: float,
        h: np.ndarray,
        truncation_n: int,
        seed: Any = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        truncation_n = validate_truncation(truncation_n)
        h = np.asarray(h, dtype=np.float64)
        # Fail fast on a degenerate kernel before dispatching work
        TwistedKernel(self.params.beta0, self.params.beta1, theta, rho, h, truncation_n)
        get_count_kernel().ensure(truncation_n)

        extra = (float(theta), float(rho), h, truncation_n)
        acc = self._run_chunks(_twisted_chunk, extra, seed, cancel_event, progress)
        result = importance_result(acc, self.config.z_score)
        logger.info(
            "IS batch (θ*=%.6f): %d/%d hits under Q, p=%.6g, var=%.3g, mean L=%.4f",
            theta, result.total_hits, result.trials, result.estimated_probability,
            result.variance, result.mean_likelihood_ratio,
        )
        return result

    def _run_chunks(
        self,
        worker: Callable[..., ChunkAccumulator],
        extra: tuple,
        seed: Any,
        cancel_event: Optional[threading.Event],
        progress: Optional[ProgressCallback],
    ) -> ChunkAccumulator:
        sizes = self.chunk_sizes()
        seeds = as_seed_sequence(seed).spawn(len(sizes))
        total = self.params.trials
        results: List[Optional[ChunkAccumulator]] = [None] * len(sizes)
        done_trials = 0

        if self.config.n_workers <= 1 or len(sizes) == 1:
            for i, (size, chunk_seed) in enumerate(zip(sizes, seeds)):
                check_cancelled(cancel_event, "batch")
                results[i] = worker(self.params, size, chunk_seed, *extra)
                done_trials += size
                if progress:
                    progress(done_trials, total)
        else:
            n_workers = min(self.config.n_workers, len(sizes))
            executor = ProcessPoolExecutor(max_workers=n_workers)
            try:
                futures = {
                    executor.submit(worker, self.params, size, chunk_seed, *extra): i
                    for i, (size, chunk_seed) in enumerate(zip(sizes, seeds))
                }
                for future in as_completed(futures):
                    check_cancelled(cancel_event, "batch")
                    i = futures[future]
                    results[i] = future.result()
                    done_trials += sizes[i]
                    if progress:
                        progress(done_trials, total)
            finally:
                executor.shutdown(wait=True, cancel_futures=True)

        acc = ChunkAccumulator()
        for chunk in results:
            acc = acc.merge(chunk)
        return acc
