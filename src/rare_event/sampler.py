"""
===============================================================================
PATH SAMPLER — Natural and Doob-h Twisted Trajectories
===============================================================================

Two interchangeable strategies sharing one accumulation contract: every
step appends (t, X_t, λ_t, S_t / t) for t = 1..n.

NATURAL MEASURE P:
    X_t ~ Poisson(λ_t), λ_t = β0 + β1·X_{t-1}, drawn with Knuth's
    product-of-uniforms method (multiply uniforms until the product falls
    below e^{-λ}). Intensities above KNUTH_CHUNK are split into a sum of
    smaller Poisson draws so e^{-λ} never underflows.

TWISTED MEASURE Q (Doob-h transform at θ*):
    q(y | x) ∝ pmf(y, λ_x) · e^{θ* y} · h(y),   y ∈ {0, ..., N-1}

    normalized by its row sum, sampled by inverting the cumulative
    distribution against a uniform draw. Rows are formed in log space and
    scaled by their largest entry before exponentiating. A zero or
    non-finite row sum raises DegenerateNormalizationError.

LIKELIHOOD RATIO (log space):
    log L += log ρ + log h(x_t) - θ* x_{t+1} - log h(x_{t+1})

BOUNDARY POLICY FOR h:
    Lookups at states ≥ N clamp to h(N-1). A zero or non-finite value at a
    looked-up state raises BoundaryDensityError instead of being replaced,
    so an undersized truncation is never masked.

===============================================================================
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np

from .config import ModelParameters, validate_truncation
from .count_kernel import CountKernel, get_count_kernel
from .errors import BoundaryDensityError, DegenerateNormalizationError

# Largest intensity handed to a single Knuth loop (e^{-500} is still a normal double)
KNUTH_CHUNK = 500.0

SeedLike = Union[None, int, np.random.SeedSequence, np.random.Generator]


def make_rng(seed: SeedLike = None) -> np.random.Generator:
    """Generator from a seed, a SeedSequence, or an existing Generator."""
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


# =============================================================================
# POISSON DRAWS (KNUTH)
# =============================================================================

def knuth_poisson(rng: np.random.Generator, lam: float) -> int:
    """Single Poisson(lam) draw by the product-of-uniforms method."""
    count = 0
    remaining = float(lam)
    while remaining > 0.0:
        part = min(remaining, KNUTH_CHUNK)
        remaining -= part
        limit = math.exp(-part)
        product = rng.random()
        while product > limit:
            count += 1
            product *= rng.random()
    return count


def knuth_poisson_array(rng: np.random.Generator, lams: np.ndarray) -> np.ndarray:
    """Independent Poisson draws for an array of intensities."""
    lams = np.asarray(lams, dtype=np.float64)
    counts = np.zeros(lams.shape, dtype=np.int64)
    remaining = lams.copy()
    while np.any(remaining > 0.0):
        part = np.minimum(remaining, KNUTH_CHUNK)
        remaining -= part
        limit = np.exp(-part)
        product = rng.random(lams.shape)
        active = product > limit
        while active.any():
            counts[active] += 1
            product[active] *= rng.random(int(active.sum()))
            active = product > limit
    return counts


# =============================================================================
# TRAJECTORY
# =============================================================================

@dataclass(frozen=True)
class TrajectoryPoint:
    """One step of a trajectory."""
    t: int
    x: int
    lam: float
    running_mean: float


@dataclass(frozen=True)
class Trajectory:
    """
    Immutable sampled path of length n.

    Attributes:
        t: Step indices 1..n
        x: Sampled counts X_t
        lam: Intensities λ_t used to draw X_t
        running_mean: S_t / t
        threshold: Level a used for the rare-event flags
        measure: 'natural' or 'twisted'
        log_likelihood_ratio: log dP/dQ of the path (twisted paths only)
    """
    t: np.ndarray
    x: np.ndarray
    lam: np.ndarray
    running_mean: np.ndarray
    threshold: float
    measure: str
    log_likelihood_ratio: Optional[float] = None

    def __post_init__(self):
        for arr in (self.t, self.x, self.lam, self.running_mean):
            arr.flags.writeable = False

    def __len__(self) -> int:
        return len(self.t)

    def __getitem__(self, i: int) -> TrajectoryPoint:
        return TrajectoryPoint(
            t=int(self.t[i]), x=int(self.x[i]), lam=float(self.lam[i]),
            running_mean=float(self.running_mean[i]),
        )

    def __iter__(self) -> Iterator[TrajectoryPoint]:
        for i in range(len(self)):
            yield self[i]

    @property
    def points(self) -> List[TrajectoryPoint]:
        return list(self)

    @property
    def final_mean(self) -> float:
        """S_n / n."""
        return float(self.running_mean[-1])

    @property
    def hit(self) -> bool:
        """Whether the path realizes the rare event S_n / n > a."""
        return self.final_mean > self.threshold

    @property
    def is_rare(self) -> np.ndarray:
        """Per-step flag: running mean above the threshold."""
        return self.running_mean > self.threshold

    @property
    def likelihood_ratio(self) -> Optional[float]:
        if self.log_likelihood_ratio is None:
            return None
        return float(np.exp(self.log_likelihood_ratio))

    def to_frame(self):
        """pandas DataFrame view for plotting and export."""
        import pandas as pd

        return pd.DataFrame({
            "t": self.t,
            "Xt": self.x,
            "lambda": self.lam,
            "runningMean": self.running_mean,
            "isRare": self.is_rare,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "measure": self.measure,
            "threshold": self.threshold,
            "log_likelihood_ratio": self.log_likelihood_ratio,
            "points": [
                {"t": p.t, "Xt": p.x, "lambda": p.lam, "runningMean": p.running_mean}
                for p in self
            ],
        }


def _build_trajectory(xs: List[int], lams: List[float], threshold: float, measure: str,
                      log_lr: Optional[float] = None) -> Trajectory:
    x = np.asarray(xs, dtype=np.int64)
    t = np.arange(1, len(x) + 1, dtype=np.int64)
    return Trajectory(
        t=t,
        x=x,
        lam=np.asarray(lams, dtype=np.float64),
        running_mean=np.cumsum(x) / t,
        threshold=float(threshold),
        measure=measure,
        log_likelihood_ratio=log_lr,
    )


# =============================================================================
# NATURAL SAMPLER
# =============================================================================

class NaturalSampler:
    """Direct Poisson AR(1) simulation under the natural measure."""

    measure = "natural"

    def __init__(self, params: ModelParameters):
        self.params = params

    def sample(self, seed: SeedLike = None) -> Trajectory:
        rng = make_rng(seed)
        p = self.params
        state = int(p.initial_state)
        xs, lams = [], []
        for _ in range(p.steps):
            lam = p.beta0 + p.beta1 * state
            state = knuth_poisson(rng, lam)
            xs.append(state)
            lams.append(lam)
        return _build_trajectory(xs, lams, p.threshold, self.measure)


# =============================================================================
# TWISTED SAMPLER
# =============================================================================

def _normalized_cdf(log_rows: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Row-wise CDFs of exp(log_rows), normalized by each row's sum.

    Each row is scaled by its own maximum before exponentiating. Returns the
    CDFs and the log row sums; a row whose log sum is not finite has no
    usable distribution.
    """
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        peak = np.max(log_rows, axis=1, keepdims=True)
        scaled = np.exp(log_rows - peak)
        totals = scaled.sum(axis=1)
        cdf = np.cumsum(scaled, axis=1) / totals[:, np.newaxis]
        log_totals = peak[:, 0] + np.log(totals)
    ok = np.isfinite(log_totals)
    cdf[ok, -1] = 1.0
    return cdf, log_totals


class TwistedKernel:
    """
    Row-normalized h-transformed transition law on {0, ..., N-1}.

    Rows for states 0..N-1 are built once; rows for a state ≥ N (only
    possible for the initial state) are built on demand from its own
    intensity. Validity of each row is checked when it is used, so a
    degenerate row far from the sampled path does not abort a run.
    """

    def __init__(
        self,
        beta0: float,
        beta1: float,
        theta: float,
        rho: float,
        h: np.ndarray,
        truncation_n: int,
        kernel: Optional[CountKernel] = None,
    ):
        self.truncation_n = validate_truncation(truncation_n)
        h = np.asarray(h, dtype=np.float64)
        if h.shape != (self.truncation_n,):
            raise ValueError(f"h has shape {h.shape}, expected ({self.truncation_n},)")
        if not (np.isfinite(rho) and rho > 0):
            raise ValueError(f"rho must be finite and > 0 (got {rho})")
        self.beta0 = float(beta0)
        self.beta1 = float(beta1)
        self.theta = float(theta)
        self.rho = float(rho)
        self.h = h
        self.kernel = kernel or get_count_kernel()
        self.kernel.ensure(self.truncation_n)

        self._states = np.arange(self.truncation_n, dtype=np.float64)
        with np.errstate(divide="ignore", invalid="ignore"):
            self._log_weights = self.theta * self._states + np.log(self.h)
        lams = self.beta0 + self.beta1 * self._states
        log_rows = self.kernel.log_pmf_matrix(lams, self.truncation_n) + self._log_weights[np.newaxis, :]
        self._cdf, self._log_row_sums = _normalized_cdf(log_rows)
        self._row_ok = np.isfinite(self._log_row_sums)

        self._log_rho = math.log(self.rho)

    def intensity(self, state: int) -> float:
        return self.beta0 + self.beta1 * state

    def _row_sum(self, state: int) -> float:
        with np.errstate(over="ignore", invalid="ignore"):
            return float(np.exp(self._log_row_sums[state]))

    def h_at(self, state: int) -> float:
        """h(state) with states ≥ N clamped to h(N-1)."""
        value = float(self.h[min(int(state), self.truncation_n - 1)])
        if not (np.isfinite(value) and value > 0):
            raise BoundaryDensityError(state, value, self.truncation_n)
        return value

    def cdf_row(self, state: int, step: int = 0) -> np.ndarray:
        """Normalized cumulative distribution of the next state given `state`."""
        if state < self.truncation_n:
            if not self._row_ok[state]:
                raise DegenerateNormalizationError(step, state, self.intensity(state), self._row_sum(state))
            return self._cdf[state]
        lam = self.intensity(state)
        log_row = self.kernel.log_pmf_row(lam, self.truncation_n) + self._log_weights
        cdf, log_total = _normalized_cdf(log_row[np.newaxis, :])
        if not np.isfinite(log_total[0]):
            with np.errstate(over="ignore", invalid="ignore"):
                total = float(np.exp(log_total[0]))
            raise DegenerateNormalizationError(step, state, lam, total)
        return cdf[0]

    def cdf_rows(self, states: np.ndarray, step: int = 0) -> np.ndarray:
        """Stacked CDF rows for a vector of current states."""
        states = np.asarray(states, dtype=np.int64)
        if states.max() < self.truncation_n:
            bad = ~self._row_ok[states]
            if bad.any():
                state = int(states[bad][0])
                raise DegenerateNormalizationError(step, state, self.intensity(state), self._row_sum(state))
            return self._cdf[states]
        unique, inverse = np.unique(states, return_inverse=True)
        rows = np.stack([self.cdf_row(int(s), step) for s in unique])
        return rows[inverse.reshape(-1)]

    def step_log_ratio(self, current: int, nxt: int) -> float:
        """log ρ + log h(x_t) - θ x_{t+1} - log h(x_{t+1})."""
        return (
            self._log_rho + math.log(self.h_at(current))
            - self.theta * nxt - math.log(self.h_at(nxt))
        )

    def log_h(self, states: np.ndarray) -> np.ndarray:
        """Vectorized log h with the boundary policy applied."""
        idx = np.minimum(np.asarray(states, dtype=np.int64), self.truncation_n - 1)
        values = self.h[idx]
        bad = ~(np.isfinite(values) & (values > 0))
        if bad.any():
            i = int(np.flatnonzero(bad)[0])
            raise BoundaryDensityError(int(np.asarray(states).reshape(-1)[i]), float(values.reshape(-1)[i]), self.truncation_n)
        return np.log(values)

    @property
    def log_rho(self) -> float:
        return self._log_rho


def inverse_cdf(cdf: np.ndarray, u: Union[float, np.ndarray]) -> Union[int, np.ndarray]:
    """
    Smallest index whose cumulative probability exceeds u.

    Works row-wise for a stacked (M, N) cdf and a vector of M uniforms.
    States of zero mass are never selected.
    """
    if cdf.ndim == 1:
        idx = int(np.searchsorted(cdf, u, side="right"))
        return min(idx, len(cdf) - 1)
    idx = (cdf <= np.asarray(u)[:, np.newaxis]).sum(axis=1)
    return np.minimum(idx, cdf.shape[1] - 1)


class TwistedSampler:
    """Simulation under the h-transformed measure for a solved (θ*, ρ, h)."""

    measure = "twisted"

    def __init__(self, params: ModelParameters, twisted_kernel: TwistedKernel):
        self.params = params
        self.twisted_kernel = twisted_kernel

    def sample(self, seed: SeedLike = None) -> Trajectory:
        rng = make_rng(seed)
        p = self.params
        tk = self.twisted_kernel
        state = int(p.initial_state)
        log_lr = 0.0
        xs, lams = [], []
        for step in range(1, p.steps + 1):
            lam = tk.intensity(state)
            nxt = inverse_cdf(tk.cdf_row(state, step), rng.random())
            log_lr += tk.step_log_ratio(state, nxt)
            xs.append(nxt)
            lams.append(lam)
            state = nxt
        return _build_trajectory(xs, lams, p.threshold, self.measure, log_lr=log_lr)
