# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Nonlinear least-squares solver for PoseGraph-JIT.

This module implements the Solver Driver: a manifold-aware, trust-region
Levenberg–Marquardt iteration over residual functions produced by
`core.factor_graph.FactorGraph`.

Key Concepts
------------
LMConfig
    Dataclass holding the solver configuration: iteration cap, the three
    convergence tolerances (cost change, gradient, parameter change) and the
    trust-region parameters.

levenberg_marquardt_manifold(residual_fn, x0, block_slices, manifold_types, cfg)
    Minimizes ``0.5 * |r(x)|^2``. Each iteration solves the damped normal
    equations in the tangent space of the free blocks

        (JᵀJ + D / μ) δ = −Jᵀr,       D = clamp(diag(JᵀJ))

    where μ is the trust-region radius, applies δ through every block's
    manifold `plus`, and accepts the step if the actual cost decrease is a
    sufficient fraction of the decrease predicted by the linear model.
    Accepted steps enlarge the radius, rejected ones shrink it.

SolverSummary
    What happened: iteration count, initial / final cost, the termination
    type and a human-readable message, plus per-iteration records.

Termination
-----------
    CONVERGENCE           cost-change, gradient or parameter tolerance hit
    NO_CONVERGENCE        iteration cap reached
    NUMERICAL_DEGENERACY  the tangent-space Jacobian is rank deficient (an
                          unconstrained gauge freedom, e.g. no fixed anchor);
                          damped steps are still taken but the result is
                          never reported as converged
    USER_CANCELLED        the cancellation token was set between iterations
    FAILURE               residuals are not finite at the initial point

Steps that would write a non-finite value into any parameter block are
rejected like any other unsuccessful step, so the iterate left behind is
always the last well-defined one.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

import jax.numpy as jnp
import numpy as np

from posegraph_jit.core.types import NodeId
from posegraph_jit.optimization.jit_wrappers import JittedLinearization

if TYPE_CHECKING:
    from posegraph_jit.optimization.async_solver import CancellationToken

logger = logging.getLogger("posegraph_jit.solver")

ResidualFn = Callable[[jnp.ndarray], jnp.ndarray]


class TerminationType(str, Enum):
    CONVERGENCE = "CONVERGENCE"
    NO_CONVERGENCE = "NO_CONVERGENCE"
    NUMERICAL_DEGENERACY = "NUMERICAL_DEGENERACY"
    USER_CANCELLED = "USER_CANCELLED"
    FAILURE = "FAILURE"


@dataclass
class LMConfig:
    max_iters: int = 1000
    function_tolerance: float = 1e-6      # |Δcost| / cost
    gradient_tolerance: float = 1e-10     # max |Jᵀr|
    parameter_tolerance: float = 1e-8     # |δ| / (|x| + tol)
    initial_trust_region_radius: float = 1e4
    max_trust_region_radius: float = 1e16
    min_trust_region_radius: float = 1e-32
    min_relative_decrease: float = 1e-3
    min_diagonal: float = 1e-6
    max_diagonal: float = 1e32
    rank_tolerance: Optional[float] = None  # None: numpy's default SVD cutoff
    verbose: bool = False                   # per-iteration progress at INFO


@dataclass
class IterationSummary:
    iteration: int
    cost: float
    cost_change: float
    gradient_max_norm: float
    step_norm: float
    relative_decrease: float
    trust_region_radius: float
    step_is_successful: bool


@dataclass
class SolverSummary:
    termination_type: TerminationType = TerminationType.NO_CONVERGENCE
    message: str = ""
    initial_cost: float = 0.0
    final_cost: float = 0.0
    num_iterations: int = 0
    num_successful_steps: int = 0
    num_unsuccessful_steps: int = 0
    num_parameter_blocks: int = 0
    num_parameters: int = 0           # tangent-space dimension
    num_residuals: int = 0
    jacobian_rank: Optional[int] = None
    total_time_s: float = 0.0
    iterations: List[IterationSummary] = field(default_factory=list)

    @property
    def is_converged(self) -> bool:
        return self.termination_type == TerminationType.CONVERGENCE

    @property
    def is_degenerate(self) -> bool:
        return self.termination_type == TerminationType.NUMERICAL_DEGENERACY

    def brief_report(self) -> str:
        return (
            f"PoseGraph-JIT Report: Iterations: {self.num_iterations}, "
            f"Initial cost: {self.initial_cost:.6e}, Final cost: {self.final_cost:.6e}, "
            f"Termination: {self.termination_type.value}"
        )

    def full_report(self) -> str:
        rank = "n/a" if self.jacobian_rank is None else str(self.jacobian_rank)
        lines = [
            "Solver Summary (Levenberg-Marquardt, dense normal equations)",
            "",
            f"Parameter blocks          {self.num_parameter_blocks:>10d}",
            f"Parameters (tangent)      {self.num_parameters:>10d}",
            f"Residuals                 {self.num_residuals:>10d}",
            f"Jacobian rank             {rank:>10s}",
            "",
            f"Initial cost              {self.initial_cost:>18.6e}",
            f"Final cost                {self.final_cost:>18.6e}",
            f"Change                    {self.initial_cost - self.final_cost:>18.6e}",
            "",
            f"Minimizer iterations      {self.num_iterations:>10d}",
            f"Successful steps          {self.num_successful_steps:>10d}",
            f"Unsuccessful steps        {self.num_unsuccessful_steps:>10d}",
            "",
            f"Total time (s)            {self.total_time_s:>10.4f}",
            "",
            f"Termination:              {self.termination_type.value} ({self.message})",
        ]
        return "\n".join(lines)


def _cost(r: jnp.ndarray) -> float:
    return 0.5 * float(jnp.dot(r, r))


def levenberg_marquardt_manifold(
    residual_fn: ResidualFn,
    x0: jnp.ndarray,
    block_slices: Dict[NodeId, slice],
    manifold_types: Dict[NodeId, str],
    cfg: LMConfig,
    cancel_token: Optional["CancellationToken"] = None,
    on_step: Optional[Callable[[jnp.ndarray], None]] = None,
) -> Tuple[jnp.ndarray, SolverSummary]:
    """
    Manifold-aware Levenberg–Marquardt:

      - residual_fn: x -> r(x), with x the packed state of *all* blocks
      - block_slices: free NodeId -> slice in x (other blocks stay fixed)
      - manifold_types: free NodeId -> "quaternion" / "euclidean"
      - cancel_token: checked before every iteration
      - on_step: called with the new state after every accepted step

    Returns the final state and a :class:`SolverSummary`.
    """
    t_start = time.perf_counter()
    summary = SolverSummary(num_parameter_blocks=len(block_slices))
    log_level = logging.INFO if cfg.verbose else logging.DEBUG

    x = jnp.asarray(x0)
    r = residual_fn(x)
    cost = _cost(r)
    summary.initial_cost = cost
    summary.num_residuals = int(r.shape[0])
    degenerate = False

    def finish(termination: TerminationType, message: str) -> Tuple[jnp.ndarray, SolverSummary]:
        if degenerate and termination in (TerminationType.CONVERGENCE, TerminationType.NO_CONVERGENCE):
            message = (
                f"{message}; normal equations are rank deficient "
                f"(rank {summary.jacobian_rank} of {summary.num_parameters})"
            )
            termination = TerminationType.NUMERICAL_DEGENERACY
        summary.termination_type = termination
        summary.message = message
        summary.final_cost = cost
        summary.total_time_s = time.perf_counter() - t_start
        return x, summary

    if not math.isfinite(cost):
        return finish(TerminationType.FAILURE, "Residuals are not finite at the initial point")

    if not block_slices:
        return finish(TerminationType.CONVERGENCE, "No variable parameter blocks to optimize")

    lin = JittedLinearization.from_residual(residual_fn, block_slices, manifold_types)
    summary.num_parameters = lin.tangent_dim

    r, J = lin.linearize(x)
    if not bool(jnp.all(jnp.isfinite(J))):
        return finish(TerminationType.FAILURE, "Jacobian is not finite at the initial point")

    summary.jacobian_rank = int(np.linalg.matrix_rank(np.asarray(J), tol=cfg.rank_tolerance))
    if summary.jacobian_rank < lin.tangent_dim:
        degenerate = True
        logger.warning(
            "Normal equations are rank deficient (rank %d of %d); "
            "the graph has an unconstrained gauge freedom",
            summary.jacobian_rank, lin.tangent_dim,
        )

    g = J.T @ r
    grad_max = float(jnp.max(jnp.abs(g)))
    if grad_max <= cfg.gradient_tolerance:
        return finish(
            TerminationType.CONVERGENCE,
            f"Gradient tolerance reached. Gradient max norm: {grad_max:.6e} <= {cfg.gradient_tolerance:.6e}",
        )

    radius = cfg.initial_trust_region_radius
    decrease_factor = 2.0

    for it in range(cfg.max_iters):
        if cancel_token is not None and cancel_token.cancelled:
            return finish(TerminationType.USER_CANCELLED, "Cancellation requested")

        summary.num_iterations = it + 1

        JTJ = J.T @ J
        diag = jnp.clip(jnp.diag(JTJ), cfg.min_diagonal, cfg.max_diagonal)
        delta = jnp.linalg.solve(JTJ + jnp.diag(diag / radius), -g)
        step_norm = float(jnp.linalg.norm(delta))

        x_new = None
        new_cost = math.inf
        if math.isfinite(step_norm):
            x_norm = float(jnp.linalg.norm(x))
            if step_norm <= cfg.parameter_tolerance * (x_norm + cfg.parameter_tolerance):
                return finish(
                    TerminationType.CONVERGENCE,
                    f"Parameter tolerance reached. Relative step norm: "
                    f"{step_norm / (x_norm + cfg.parameter_tolerance):.6e} <= {cfg.parameter_tolerance:.6e}",
                )
            x_new = lin.retract(x, delta)
            r_new = lin.residual(x_new)
            new_cost = _cost(r_new)

        if x_new is None or not math.isfinite(new_cost) or not bool(jnp.all(jnp.isfinite(x_new))):
            logger.warning("Rejecting non-finite step at iteration %d", it)
            relative_decrease = -math.inf
        else:
            model_cost_change = -float(jnp.dot(g, delta) + 0.5 * jnp.dot(delta, JTJ @ delta))
            if model_cost_change > 0.0:
                relative_decrease = (cost - new_cost) / model_cost_change
            else:
                relative_decrease = -math.inf

        successful = relative_decrease > cfg.min_relative_decrease
        summary.iterations.append(
            IterationSummary(
                iteration=it,
                cost=new_cost if successful else cost,
                cost_change=(cost - new_cost) if successful else 0.0,
                gradient_max_norm=grad_max,
                step_norm=step_norm,
                relative_decrease=relative_decrease,
                trust_region_radius=radius,
                step_is_successful=successful,
            )
        )
        logger.log(
            log_level,
            "iter %4d  cost % .6e  cost_change % .3e  |gradient| % .3e  |step| % .3e  tr_ratio % .3e  tr_radius % .3e",
            it, new_cost if successful else cost, (cost - new_cost) if successful else 0.0,
            grad_max, step_norm, relative_decrease, radius,
        )

        if not successful:
            summary.num_unsuccessful_steps += 1
            radius = radius / decrease_factor
            decrease_factor *= 2.0
            if radius < cfg.min_trust_region_radius:
                return finish(
                    TerminationType.CONVERGENCE,
                    f"Minimum trust region radius reached. Trust region radius: "
                    f"{radius:.6e} <= {cfg.min_trust_region_radius:.6e}",
                )
            continue

        summary.num_successful_steps += 1
        cost_change = cost - new_cost
        previous_cost = cost
        x, r, cost = x_new, r_new, new_cost
        if on_step is not None:
            on_step(x)

        radius = min(
            radius / max(1.0 / 3.0, 1.0 - (2.0 * relative_decrease - 1.0) ** 3),
            cfg.max_trust_region_radius,
        )
        decrease_factor = 2.0

        if abs(cost_change) <= cfg.function_tolerance * previous_cost:
            return finish(
                TerminationType.CONVERGENCE,
                f"Function tolerance reached. |cost_change|/cost: "
                f"{abs(cost_change) / max(previous_cost, 1e-300):.6e} <= {cfg.function_tolerance:.6e}",
            )

        r, J = lin.linearize(x)
        g = J.T @ r
        grad_max = float(jnp.max(jnp.abs(g)))
        if grad_max <= cfg.gradient_tolerance:
            return finish(
                TerminationType.CONVERGENCE,
                f"Gradient tolerance reached. Gradient max norm: {grad_max:.6e} <= {cfg.gradient_tolerance:.6e}",
            )

    return finish(
        TerminationType.NO_CONVERGENCE,
        f"Maximum number of iterations reached. Number of iterations: {cfg.max_iters}",
    )
