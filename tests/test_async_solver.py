from __future__ import annotations

import threading
import time

import pytest

from posegraph_jit.optimization.async_solver import (
    AsyncSolveController,
    CancellationToken,
    SolveState,
)
from posegraph_jit.optimization.solvers import SolverSummary, TerminationType


class _BlockingSolve:
    """Solve stand-in that runs until cancelled and counts concurrent calls."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.calls = 0
        self.entered = threading.Event()

    def __call__(self, token: CancellationToken) -> SolverSummary:
        with self.lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.entered.set()
        try:
            while not token.cancelled:
                time.sleep(0.001)
            return SolverSummary(termination_type=TerminationType.USER_CANCELLED)
        finally:
            with self.lock:
                self.active -= 1


def test_start_is_single_flight():
    solve = _BlockingSolve()
    ctl = AsyncSolveController(solve)

    assert ctl.start()
    assert solve.entered.wait(5.0)
    for _ in range(10):
        assert not ctl.start()
    assert ctl.state == SolveState.RUNNING
    assert ctl.is_running

    summary = ctl.stop(timeout=5.0)
    assert summary is not None
    assert summary.termination_type == TerminationType.USER_CANCELLED
    assert ctl.state == SolveState.IDLE
    assert solve.calls == 1
    assert solve.max_active == 1


def test_concurrent_start_calls_launch_one_solve():
    solve = _BlockingSolve()
    ctl = AsyncSolveController(solve)
    barrier = threading.Barrier(8)
    results = []

    def hammer():
        barrier.wait()
        results.append(ctl.start())

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    ctl.stop(timeout=5.0)
    assert solve.calls == 1
    assert solve.max_active == 1


def test_restart_after_stop():
    solve = _BlockingSolve()
    ctl = AsyncSolveController(solve)
    for _ in range(3):
        solve.entered.clear()
        assert ctl.start()
        assert solve.entered.wait(5.0)
        ctl.stop(timeout=5.0)
    assert solve.calls == 3
    assert solve.max_active == 1


def test_stop_and_wait_when_idle():
    ctl = AsyncSolveController(lambda token: SolverSummary())
    assert ctl.stop(timeout=1.0) is None
    assert ctl.wait(timeout=1.0)


def test_wait_times_out_while_running():
    solve = _BlockingSolve()
    ctl = AsyncSolveController(solve)
    ctl.start()
    assert solve.entered.wait(5.0)
    assert not ctl.wait(timeout=0.05)
    ctl.stop(timeout=5.0)


def test_worker_exception_is_recorded_and_controller_recovers():
    def boom(token):
        raise RuntimeError("boom")

    ctl = AsyncSolveController(boom)
    assert ctl.start()
    assert ctl.wait(timeout=5.0)
    assert isinstance(ctl.last_error, RuntimeError)
    assert ctl.state == SolveState.IDLE
    assert ctl.start()
    assert ctl.wait(timeout=5.0)


@pytest.mark.parametrize("calls", [1, 3])
def test_cancellation_token(calls):
    token = CancellationToken()
    assert not token.cancelled
    for _ in range(calls):
        token.cancel()
    assert token.cancelled
