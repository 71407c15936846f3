#!/usr/bin/env python3
"""
test_engine.py — End-to-end engine surface, lifecycle and background tasks

The reference scenario is β0=2, β1=0.5, n=100, X0=1, a=6, M=2000, N=50.
"""

import os
import sys
from concurrent.futures import CancelledError

import pytest

# Add src to path
_src_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)

from rare_event.config import DEFAULT_ENGINE_CONFIG, BatchConfig, EngineConfig, ModelParameters
from rare_event.cumulant import CumulantSolver
from rare_event.eigen import TiltedEigenSolver
from rare_event.engine import RareEventEngine, run_batch, simulate_natural, simulate_twisted, solve
from rare_event.errors import InfeasibleTiltError, InvalidParametersError, StaleSolutionError
from rare_event.tasks import EngineTask, start_batch, start_solve


@pytest.fixture(scope="module")
def reference():
    params = ModelParameters(beta0=2.0, beta1=0.5, steps=100, initial_state=1, threshold=6.0, trials=2000)
    return params, solve(params, 50)


class TestReferenceScenario:
    """Solve + batch for the reference parameters."""

    def test_solve(self, reference):
        params, solution = reference
        assert solution.root.converged
        assert solution.rho > 0
        assert solution.truncation_n == 50
        assert len(solution.h) == 50
        derivative = CumulantSolver(TiltedEigenSolver(2.0, 0.5, 50)).derivative(solution.theta)
        assert abs(derivative - params.threshold) < 1e-4

    def test_log_order(self, reference):
        _, solution = reference
        log = solution.log
        assert log[0] == ">>> Starting numerical solve"
        assert log[1].startswith("Parameters:")
        assert log[2].startswith("Target:")
        assert any("converged" in line for line in log)
        optimal = next(i for i, line in enumerate(log) if line.startswith("√ Optimal tilt"))
        eigen = next(i for i, line in enumerate(log) if line.startswith("Computing eigenpair"))
        assert optimal < eigen
        assert log[-1].startswith("√ Spectral radius")

    def test_batch(self, reference):
        params, solution = reference
        comparison = run_batch(params, solution.theta, solution.rho, solution.h, 50, seed=2024)
        naive, importance = comparison.naive, comparison.importance_sampled

        assert 0 <= naive.total_hits <= params.trials
        assert importance.estimated_probability > 0
        assert importance.confidence_interval[0] >= 0
        if naive.total_hits >= 20:
            assert naive.contains(importance.estimated_probability)
        elif naive.total_hits > 0:
            assert importance.ci_width < naive.ci_width
        else:
            assert importance.estimated_probability < 3.0 / params.trials

        data = comparison.to_dict()
        assert data["theta"] == solution.theta
        assert data["vrf"] == comparison.variance_reduction_factor

    def test_single_paths(self, reference):
        params, solution = reference
        natural = simulate_natural(params, seed=1)
        twisted = simulate_twisted(params, solution.theta, solution.rho, solution.h, 50, seed=1)
        assert len(natural) == len(twisted) == params.steps
        assert twisted.log_likelihood_ratio is not None
        assert natural.log_likelihood_ratio is None

    def test_to_dict(self, reference):
        _, solution = reference
        data = solution.to_dict()
        assert data["status"] == "converged"
        assert len(data["h"]) == 50
        assert data["log"] == solution.log


class TestRunBatchProgress:
    """Combined progress over both batches."""

    def test_progress(self, reference):
        _, solution = reference
        params = ModelParameters(steps=10, trials=1000)
        config = EngineConfig(batch=BatchConfig(chunk_size=500))
        calls = []
        run_batch(
            params, solution.theta, solution.rho, solution.h, 50, seed=5, config=config,
            progress=lambda done, total: calls.append((done, total)),
        )
        assert calls == [(500, 2000), (1000, 2000), (1500, 2000), (2000, 2000)]

    def test_seeded_batches_repeat(self, reference):
        _, solution = reference
        params = ModelParameters(steps=20, trials=500)
        a = run_batch(params, solution.theta, solution.rho, solution.h, 50, seed=9)
        b = run_batch(params, solution.theta, solution.rho, solution.h, 50, seed=9)
        assert a == b


class TestRareEventEngine:
    """Solve once, reuse until the parameters change."""

    def test_requires_solve(self):
        engine = RareEventEngine(ModelParameters(steps=20, trials=100))
        with pytest.raises(StaleSolutionError):
            engine.simulate_twisted(seed=0)
        with pytest.raises(StaleSolutionError):
            engine.run_batch(seed=0)
        assert len(engine.simulate_natural(seed=0)) == 20

    def test_solution_survives_sampling_changes(self):
        engine = RareEventEngine(ModelParameters(steps=20, trials=100))
        solution = engine.solve()
        engine.update(steps=30, trials=200, initial_state=4)
        assert engine.solution is solution
        assert len(engine.simulate_twisted(seed=1)) == 30

    def test_threshold_change_invalidates(self):
        engine = RareEventEngine(ModelParameters(steps=20, trials=100))
        engine.solve()
        engine.update(threshold=7.0)
        assert engine.solution is None
        with pytest.raises(StaleSolutionError):
            engine.require_solution()

    def test_truncation_change_invalidates(self):
        engine = RareEventEngine(ModelParameters(steps=20, trials=100))
        engine.solve()
        engine.set_truncation(60)
        assert engine.solution is None
        assert engine.solve().truncation_n == 60

    def test_truncation_change_leaves_shared_config(self):
        engine = RareEventEngine(ModelParameters(steps=20, trials=100), DEFAULT_ENGINE_CONFIG)
        engine.set_truncation(60)
        assert engine.truncation_n == 60
        assert DEFAULT_ENGINE_CONFIG.truncation_n == 50
        assert RareEventEngine(ModelParameters(), DEFAULT_ENGINE_CONFIG).truncation_n == 50

    def test_invalid_update_keeps_parameters(self):
        engine = RareEventEngine(ModelParameters(steps=20, trials=100))
        with pytest.raises(InvalidParametersError):
            engine.update(steps=0)
        assert engine.params.steps == 20

    def test_batch_after_solve(self):
        engine = RareEventEngine(ModelParameters(steps=20, trials=400))
        engine.solve()
        comparison = engine.run_batch(seed=3)
        assert comparison.naive.trials == comparison.importance_sampled.trials == 400


class TestEngineTask:
    """Background execution with cancellation."""

    def test_solve_in_background(self, reference):
        params, solution = reference
        task = start_solve(params, 50)
        result = task.result(timeout=120)
        assert task.done()
        assert result.theta == solution.theta
        assert task.cancel() is False

    def test_errors_propagate(self):
        task = start_solve(ModelParameters(threshold=60.0), 50)
        with pytest.raises(InfeasibleTiltError):
            task.result(timeout=120)
        assert isinstance(task.exception(timeout=120), InfeasibleTiltError)

    def test_cancel_running_batch(self, reference):
        _, solution = reference
        params = ModelParameters(steps=100, trials=500000)
        task = start_batch(
            params, solution.theta, solution.rho, solution.h, 50, seed=0,
            config=EngineConfig(batch=BatchConfig(chunk_size=200)),
        )
        assert task.cancel() is True
        assert task.cancelled()
        with pytest.raises(CancelledError):
            task.result(timeout=120)

    def test_not_started(self):
        task = EngineTask(solve, ModelParameters())
        assert not task.started
        with pytest.raises(RuntimeError):
            task.result()
        task.start()
        with pytest.raises(RuntimeError):
            task.start()
        task.cancel()


class TestModelParameters:
    """Validation and numeric normalization of the experiment parameters."""

    def test_integral_floats_become_ints(self):
        params = ModelParameters(steps=10.0, initial_state=2.0, trials=20.0)
        assert (params.steps, params.initial_state, params.trials) == (10, 2, 20)
        assert all(isinstance(v, int) for v in (params.steps, params.initial_state, params.trials))
        assert isinstance(params.threshold, float)

    def test_integral_floats_drive_sampling(self, reference):
        _, solution = reference
        params = ModelParameters(steps=10.0, trials=20.0)
        assert len(simulate_natural(params, seed=0)) == 10
        comparison = run_batch(params, solution.theta, solution.rho, solution.h, 50, seed=0)
        assert comparison.naive.trials == comparison.importance_sampled.trials == 20

    @pytest.mark.parametrize("changes", [
        {"steps": 10.5},
        {"steps": float("nan")},
        {"steps": float("inf")},
        {"trials": float("inf")},
        {"initial_state": -1},
        {"steps": "10"},
        {"beta0": float("inf")},
        {"beta1": float("nan")},
        {"threshold": float("nan")},
        {"beta0": -0.1},
    ])
    def test_rejected_values(self, changes):
        with pytest.raises(InvalidParametersError):
            ModelParameters(**changes)

    def test_with_updates_normalizes(self):
        params = ModelParameters().with_updates(steps=30.0)
        assert params.steps == 30
        assert isinstance(params.steps, int)


class TestLargeTruncationSolve:
    """Solving on a wide state space."""

    @pytest.mark.parametrize("n", [50, 400])
    def test_memoryless_counts(self, n):
        params = ModelParameters(beta0=2.0, beta1=0.0, threshold=20.0)
        solution = solve(params, n)
        assert solution.root.status == "converged"
        assert solution.theta == pytest.approx(2.302585, abs=1e-4)
        assert solution.rho > 0
        assert len(solution.h) == n
        assert all(v >= 0 for v in solution.h)
