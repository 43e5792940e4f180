# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Background, single-flight execution of the Solver Driver.

`AsyncSolveController` runs a solve function on a daemon worker thread and
guarantees that at most one solve is in flight:

    IDLE --start()--> RUNNING --stop()--> CANCEL_REQUESTED
      ^                  |                       |
      +------------------+-----------------------+
                 worker returns (success or failure)

- `start()` launches a worker only from IDLE; while a solve is running it is
  a no-op and returns ``False``. Requests are never queued.
- `stop()` sets the solve's `CancellationToken` and waits for the worker to
  observe it. The solver checks the token between iterations and returns
  its best-so-far state; values already written are kept, never rolled back.
- Exceptions escaping the solve function are logged with their traceback and
  kept in `last_error`; the controller returns to IDLE either way.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Optional

from posegraph_jit.optimization.solvers import SolverSummary

logger = logging.getLogger("posegraph_jit.async_solver")


class SolveState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    CANCEL_REQUESTED = "CANCEL_REQUESTED"


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and one solve."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


SolveFn = Callable[[CancellationToken], SolverSummary]


class AsyncSolveController:
    """Runs ``solve_fn(token)`` on a background thread, one at a time."""

    def __init__(self, solve_fn: SolveFn, name: str = "posegraph-solver") -> None:
        self._solve_fn = solve_fn
        self._name = name
        self._cond = threading.Condition()
        self._state = SolveState.IDLE
        self._token: Optional[CancellationToken] = None
        self._thread: Optional[threading.Thread] = None
        self.last_summary: Optional[SolverSummary] = None
        self.last_error: Optional[BaseException] = None

    @property
    def state(self) -> SolveState:
        with self._cond:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state != SolveState.IDLE

    def in_worker(self) -> bool:
        """Whether the calling thread is this controller's worker."""
        return threading.current_thread() is self._thread

    def start(self) -> bool:
        """Launch a solve unless one is already in flight. Returns whether it did."""
        with self._cond:
            if self._state != SolveState.IDLE:
                logger.debug("Solve already in flight (%s); start() ignored", self._state.value)
                return False
            self._state = SolveState.RUNNING
            self._token = CancellationToken()
            self._thread = threading.Thread(
                target=self._run, args=(self._token,), name=self._name, daemon=True
            )
            self._thread.start()
            logger.debug("Started background solve on thread %s", self._name)
            return True

    def stop(self, timeout: Optional[float] = None) -> Optional[SolverSummary]:
        """
        Request cancellation of the in-flight solve and wait for it to return.

        Returns the summary of the last finished solve (``None`` if the wait
        timed out before the worker observed the request, or nothing ran yet).
        """
        with self._cond:
            if self._state == SolveState.RUNNING:
                self._state = SolveState.CANCEL_REQUESTED
                self._token.cancel()
                logger.debug("Cancellation requested")
        if not self.wait(timeout):
            return None
        return self.last_summary

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until no solve is in flight. Returns ``False`` on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._state == SolveState.IDLE, timeout)

    def _run(self, token: CancellationToken) -> None:
        summary: Optional[SolverSummary] = None
        error: Optional[BaseException] = None
        try:
            summary = self._solve_fn(token)
        except Exception as exc:
            logger.exception("Background solve failed")
            error = exc
        with self._cond:
            if summary is not None:
                self.last_summary = summary
            self.last_error = error
            self._state = SolveState.IDLE
            self._token = None
            self._cond.notify_all()
