"""
Cancellable background tasks for long-running engine calls.

    task = start_solve(params, truncation_n=50)
    task.done()        # poll
    task.result()      # await (re-raises engine errors)
    task.cancel()      # discard; no partial result is ever published

The engine checks the task's cancel event between power iterations,
bisection steps and trial chunks. A cancelled task raises
concurrent.futures.CancelledError from result(). No timeouts are imposed
here; pass `timeout` to result() for a caller-level policy.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from .config import DEFAULT_TRUNCATION_N
from .engine import run_batch, solve
from .errors import ComputationCancelled

logger = logging.getLogger(__name__)


class EngineTask:
    """
    One engine computation on a background thread.

    `fn` must accept a `cancel_event` keyword argument.
    """

    def __init__(self, fn: Callable[..., Any], *args: Any, name: str = "engine-task", **kwargs: Any):
        self.name = name
        self._fn = fn
        self._args = args
        self._kwargs = kwargs
        self._cancel_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._future: Optional[Future] = None

    def start(self) -> "EngineTask":
        if self._future is not None:
            raise RuntimeError(f"task {self.name} already started")
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=self.name)
        self._future = self._executor.submit(self._run)
        self._executor.shutdown(wait=False)
        return self

    def _run(self) -> Any:
        return self._fn(*self._args, cancel_event=self._cancel_event, **self._kwargs)

    @property
    def started(self) -> bool:
        return self._future is not None

    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> bool:
        """Request cancellation; returns False if the task already finished."""
        if self.done():
            return False
        self._cancel_event.set()
        if self._future is not None:
            self._future.cancel()
        logger.debug("Cancellation requested for %s", self.name)
        return True

    def result(self, timeout: Optional[float] = None) -> Any:
        if self._future is None:
            raise RuntimeError(f"task {self.name} not started")
        try:
            value = self._future.result(timeout=timeout)
        except ComputationCancelled as e:
            raise CancelledError(str(e)) from e
        if self._cancel_event.is_set():
            # Finished just as the cancel arrived; the caller discarded it
            raise CancelledError(f"task {self.name} was cancelled")
        return value

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        try:
            self.result(timeout)
        except CancelledError:
            raise
        except Exception as e:
            return e
        return None


def start_solve(params, truncation_n: int = DEFAULT_TRUNCATION_N, config=None) -> EngineTask:
    """Start `solve` in the background."""
    return EngineTask(solve, params, truncation_n, config, name="solve").start()


def start_batch(params, theta, rho, h, truncation_n, seed=None, config=None, progress=None) -> EngineTask:
    """Start `run_batch` in the background."""
    return EngineTask(
        run_batch, params, theta, rho, h, truncation_n, seed, config,
        progress=progress, name="batch",
    ).start()
