# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Exception types raised by PoseGraph-JIT.

Only programmer errors are raised. Solver outcomes such as non-convergence,
numerical degeneracy or cancellation are reported through
``optimization.solvers.TerminationType`` on the returned summary instead.
"""

from __future__ import annotations


class PoseGraphError(Exception):
    """Base class for all pose-graph errors."""


class InvalidIdError(PoseGraphError, IndexError):
    """An id outside the range assigned by the registry or the factor graph."""

    def __init__(self, kind: str, id_, count: int) -> None:
        self.kind = kind
        self.id = id_
        self.count = count
        super().__init__(f"Invalid {kind} id {id_!r}: {count} {kind}(s) registered")
