"""
===============================================================================
COUNT KERNEL — Poisson Mass Function with a Memoized Factorial Table
===============================================================================

    pmf(k, λ) = λ^k · e^{-λ} / k!      (0 for k < 0)

The factorial table is append-only: entry k is written once and never
changed, so readers can share it freely. Entries are stored as log k! so
that truncation sizes beyond 170 (where k! overflows a double) still give
finite masses. Growth is the only mutation and is serialized by a lock;
`ensure(n)` precomputes the table before a parallel phase.

===============================================================================
"""

from __future__ import annotations

import math
import threading
from typing import Optional

import numpy as np
from scipy.special import xlogy


class CountKernel:
    """Poisson pmf backed by a lazily grown log-factorial table."""

    def __init__(self, initial_size: int = 2):
        self._log_factorials = np.zeros(max(2, initial_size), dtype=np.float64)
        self._size = 2  # log 0! = log 1! = 0
        self._lock = threading.Lock()
        if initial_size > 2:
            self.ensure(initial_size)

    @property
    def size(self) -> int:
        """Number of memoized entries (0! .. (size-1)!)."""
        return self._size

    def ensure(self, n: int) -> None:
        """Grow the table so that entries 0..n-1 exist."""
        if n <= self._size:
            return
        with self._lock:
            if n <= self._size:
                return
            table = self._log_factorials
            if n > len(table):
                grown = np.zeros(max(n, 2 * len(table)), dtype=np.float64)
                grown[: self._size] = table[: self._size]
                table = grown
            for k in range(self._size, n):
                table[k] = table[k - 1] + math.log(k)
            # Publish the larger table before bumping the size readers check
            self._log_factorials = table
            self._size = n

    def log_factorial(self, k: int) -> float:
        self.ensure(k + 1)
        return float(self._log_factorials[k])

    def factorial(self, k: int) -> float:
        """k! as a float (inf beyond double range)."""
        if k < 0:
            return 1.0
        log_f = self.log_factorial(k)
        return math.exp(log_f) if log_f < 709.0 else math.inf

    def log_factorials(self, size: int) -> np.ndarray:
        """Read-only view of log 0! .. log (size-1)!."""
        self.ensure(size)
        view = self._log_factorials[:size]
        view.flags.writeable = False
        return view

    def pmf(self, k: int, lam: float) -> float:
        """Poisson probability P(X = k) for intensity lam ≥ 0."""
        if k < 0:
            return 0.0
        if lam == 0.0:
            return 1.0 if k == 0 else 0.0
        return math.exp(k * math.log(lam) - lam - self.log_factorial(k))

    def log_pmf_row(self, lam: float, size: int) -> np.ndarray:
        """log pmf(j, lam) for j = 0..size-1 (-inf where the mass is exactly 0)."""
        j = np.arange(size, dtype=np.float64)
        return xlogy(j, lam) - lam - self.log_factorials(size)

    def log_pmf_matrix(self, lams: np.ndarray, size: int) -> np.ndarray:
        """log P_ij = log pmf(j, lams[i]) for j = 0..size-1."""
        lams = np.asarray(lams, dtype=np.float64).reshape(-1, 1)
        j = np.arange(size, dtype=np.float64).reshape(1, -1)
        return xlogy(j, lams) - lams - self.log_factorials(size).reshape(1, -1)

    def pmf_row(self, lam: float, size: int) -> np.ndarray:
        """Vector of pmf(j, lam) for j = 0..size-1."""
        return np.exp(self.log_pmf_row(lam, size))

    def pmf_matrix(self, lams: np.ndarray, size: int) -> np.ndarray:
        """Matrix P_ij = pmf(j, lams[i]) for j = 0..size-1."""
        return np.exp(self.log_pmf_matrix(lams, size))

    def tail_mass(self, lam: float, size: int) -> float:
        """P(X ≥ size) under Poisson(lam), i.e. the mass a truncation drops."""
        return float(max(0.0, 1.0 - self.pmf_row(lam, size).sum()))


# Process-wide kernel shared by all solvers and samplers
_DEFAULT_KERNEL: Optional[CountKernel] = None
_DEFAULT_LOCK = threading.Lock()


def get_count_kernel() -> CountKernel:
    global _DEFAULT_KERNEL
    if _DEFAULT_KERNEL is None:
        with _DEFAULT_LOCK:
            if _DEFAULT_KERNEL is None:
                _DEFAULT_KERNEL = CountKernel()
    return _DEFAULT_KERNEL


def poisson_pmf(k: int, lam: float) -> float:
    """Module-level convenience for the shared kernel."""
    return get_count_kernel().pmf(k, lam)
