#!/usr/bin/env python3
"""
test_eigen.py — Dominant eigenpair of the truncated tilted kernel

Cross-checks the power iteration against a dense eigendecomposition
(scipy.linalg.eig) and verifies the structural properties of ρ(θ), h(θ).
"""

import os
import sys
import threading

import numpy as np
import pytest
from scipy import linalg

# Add src to path
_src_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)

from rare_event.config import EigenConfig
from rare_event.eigen import TiltedEigenSolver, build_tilted_kernel, state_intensities
from rare_event.errors import ComputationCancelled, InvalidParametersError


def _dense_dominant(matrix):
    """Largest-real-part eigenvalue and its normalized non-negative eigenvector."""
    values, vectors = linalg.eig(matrix)
    i = int(np.argmax(values.real))
    vec = np.abs(vectors[:, i].real)
    return float(values[i].real), vec / np.linalg.norm(vec)


class TestTiltedKernel:
    """K_ij(θ) = pmf(j, λ_i) · e^{θ j}."""

    def test_intensities(self):
        lams = state_intensities(2.0, 0.5, 4)
        np.testing.assert_allclose(lams, [2.0, 2.5, 3.0, 3.5])

    def test_untilted_rows_are_probabilities(self):
        k0 = build_tilted_kernel(2.0, 0.5, 0.0, 50)
        assert k0.shape == (50, 50)
        assert np.all(k0 >= 0)
        np.testing.assert_allclose(k0.sum(axis=1)[:20], 1.0, atol=1e-10)

    def test_tilt_scales_columns(self):
        k0 = build_tilted_kernel(2.0, 0.5, 0.0, 10)
        k1 = build_tilted_kernel(2.0, 0.5, 0.3, 10)
        np.testing.assert_allclose(k1, k0 * np.exp(0.3 * np.arange(10))[np.newaxis, :], rtol=1e-12)

    def test_solver_matrix_matches_builder(self):
        solver = TiltedEigenSolver(2.0, 0.5, 30)
        np.testing.assert_allclose(solver.tilted_kernel(0.4), build_tilted_kernel(2.0, 0.5, 0.4, 30), rtol=1e-12)
        assert not solver.transition.flags.writeable

    def test_large_truncation_has_no_nan(self):
        k1 = build_tilted_kernel(2.0, 0.5, 1.0, 400)
        assert np.all(np.isfinite(k1))
        assert np.all(k1 >= 0)
        k2 = build_tilted_kernel(2.0, 0.5, 2.0, 400)
        assert not np.any(np.isnan(k2))


class TestPowerIteration:
    """ρ(θ) > 0, h ≥ 0, ‖h‖ = 1, agreement with dense solver."""

    @pytest.mark.parametrize("theta", [0.0, 0.05, 0.1])
    def test_matches_dense_eigendecomposition(self, theta):
        solver = TiltedEigenSolver(2.0, 0.5, 50)
        solution = solver.solve(theta)
        rho_ref, h_ref = _dense_dominant(solver.tilted_kernel(theta))

        assert solution.converged
        assert solution.rho == pytest.approx(rho_ref, rel=1e-5)
        np.testing.assert_allclose(solution.h, h_ref, atol=1e-4)

    def test_positivity_and_norm(self):
        solution = TiltedEigenSolver(2.0, 0.5, 50).solve(0.1)
        assert solution.rho > 0
        assert np.all(solution.h >= 0)
        assert np.linalg.norm(solution.h) == pytest.approx(1.0, abs=1e-12)
        assert solution.truncation_n == 50
        assert solution.log_rho == pytest.approx(np.log(solution.rho))

    def test_untilted_kernel_has_unit_radius(self):
        solution = TiltedEigenSolver(2.0, 0.5, 50).solve(0.0)
        assert solution.rho == pytest.approx(1.0, abs=1e-6)
        np.testing.assert_allclose(solution.h[:20], 1.0 / np.sqrt(50), rtol=1e-3)

    def test_rho_increases_with_theta(self):
        solver = TiltedEigenSolver(2.0, 0.5, 50)
        rhos = [solver.solve(theta).rho for theta in (0.0, 0.1, 0.25, 0.5, 1.0)]
        assert all(b > a for a, b in zip(rhos, rhos[1:]))

    def test_h_is_read_only(self):
        solution = TiltedEigenSolver(2.0, 0.5, 20).solve(0.2)
        with pytest.raises(ValueError):
            solution.h[0] = 1.0

    def test_budget_exhaustion_returns_estimate(self):
        solver = TiltedEigenSolver(2.0, 0.5, 50, EigenConfig(max_iterations=1))
        solution = solver.solve(0.3)
        assert not solution.converged
        assert solution.iterations == 1
        assert solution.rho > 0

    def test_cancel_event_stops_iteration(self):
        event = threading.Event()
        event.set()
        with pytest.raises(ComputationCancelled):
            TiltedEigenSolver(2.0, 0.5, 50).solve(0.3, cancel_event=event)


class TestLargeTruncation:
    """Kernels whose entries leave the float range stay solvable in log space."""

    def test_small_tilt_agrees_across_truncations(self):
        small = TiltedEigenSolver(2.0, 0.5, 50).solve(0.05)
        large = TiltedEigenSolver(2.0, 0.5, 400).solve(0.05)
        assert large.rho == pytest.approx(small.rho, rel=1e-6)
        np.testing.assert_allclose(large.h[:20] / large.h[0], small.h[:20] / small.h[0], rtol=1e-4)

    @pytest.mark.parametrize("theta", [1.5, 2.0])
    def test_heavy_tilt_is_finite_in_log_space(self, theta):
        solution = TiltedEigenSolver(2.0, 0.5, 400).solve(theta)
        assert np.isfinite(solution.log_rho)
        assert solution.log_rho > 100
        assert solution.rho > 0
        assert not np.isnan(solution.rho)
        assert np.all(np.isfinite(solution.h))
        assert np.all(solution.h >= 0)
        assert np.linalg.norm(solution.h) == pytest.approx(1.0, abs=1e-12)

    def test_rank_one_kernel(self):
        # β1 = 0: every row is the same, so ρ = Σ_j pmf(j, β0) e^{θj} = e^{β0(e^θ - 1)} up to the tail
        theta = np.log(10.0)
        for n in (50, 400):
            solution = TiltedEigenSolver(2.0, 0.0, n).solve(theta)
            assert solution.converged
            assert solution.log_rho == pytest.approx(2.0 * (10.0 - 1.0), rel=1e-7)


class TestTruncation:
    """Validation and reported tail mass."""

    def test_invalid_truncation(self):
        with pytest.raises(InvalidParametersError):
            TiltedEigenSolver(2.0, 0.5, 1)
        with pytest.raises(InvalidParametersError):
            TiltedEigenSolver(2.0, 0.5, 12.5)

    def test_tail_mass(self):
        assert TiltedEigenSolver(2.0, 0.5, 50).truncation_tail_mass() < 1e-4
        assert TiltedEigenSolver(2.0, 0.5, 10).truncation_tail_mass() > 0.01

    def test_thin_truncation_is_logged(self, caplog):
        with caplog.at_level("WARNING", logger="rare_event.eigen"):
            tail = TiltedEigenSolver(2.0, 0.5, 10).check_truncation()
        assert tail > 0.01
        assert "consider a larger N" in caplog.text
