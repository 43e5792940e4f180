from __future__ import annotations

import jax.numpy as jnp
import pytest

from posegraph_jit.core.math3d import rotation_angle_between
from posegraph_jit.core.types import Pose3
from posegraph_jit.optimization.async_solver import CancellationToken
from posegraph_jit.optimization.solvers import (
    LMConfig,
    TerminationType,
    levenberg_marquardt_manifold,
)
from posegraph_jit.slam.manifold import build_manifold_metadata
from posegraph_jit.world.pose_graph import PoseGraph


def _perturbed_chain(num_keyframes: int = 5) -> PoseGraph:
    """
    Keyframe chain, +1 m along x with a small yaw per step, anchored at the
    first keyframe. Initial guesses are perturbed away from the truth.
    """
    pg = PoseGraph()
    step = Pose3.from_rotvec([0.0, 0.0, 0.1], [1.0, 0.0, 0.0])
    ids = [pg.add_keyframe()]
    pg.fix_keyframe(ids[0])
    for i in range(1, num_keyframes):
        guess = Pose3.from_rotvec([0.02 * i, -0.03, 0.1 * i], [i + 0.3, 0.2 * (-1) ** i, 0.1])
        ids.append(pg.add_keyframe(guess))
        pg.add_binary_edge(ids[i - 1], ids[i], step)
    return pg


def test_lm_pose_chain_converges():
    pg = _perturbed_chain()
    summary = pg.solve()

    assert summary.termination_type == TerminationType.CONVERGENCE
    assert summary.is_converged
    assert summary.final_cost < 1e-12
    assert summary.final_cost <= summary.initial_cost
    assert summary.num_successful_steps >= 1

    expected = Pose3.identity()
    step = Pose3.from_rotvec([0.0, 0.0, 0.1], [1.0, 0.0, 0.0])
    for pose in pg.keyframe_poses():
        assert float(rotation_angle_between(pose.rotation, expected.rotation)) < 1e-6
        assert jnp.allclose(pose.translation, expected.translation, atol=1e-6)
        expected = expected * step


def test_quaternions_unit_norm_after_every_step():
    pg = _perturbed_chain()
    x0, index = pg.fg.pack_state()
    block_slices, manifold_types = build_manifold_metadata(pg.fg, index)
    quat_slices = [sl for nid, sl in block_slices.items() if manifold_types[nid] == "quaternion"]
    norms = []

    def check(x):
        norms.extend(float(jnp.linalg.norm(x[sl])) for sl in quat_slices)

    _, summary = levenberg_marquardt_manifold(
        pg.fg.build_residual_function(), x0, block_slices, manifold_types, LMConfig(), on_step=check
    )
    assert summary.num_successful_steps >= 1
    assert norms
    assert max(abs(n - 1.0) for n in norms) <= 1e-9


def test_already_optimal_problem_converges_without_steps():
    pg = PoseGraph()
    a = pg.add_keyframe()
    pg.fix_keyframe(a)
    pg.add_relative_keyframe(a, Pose3.from_rotvec([0.0, 0.2, 0.0], [0.0, 0.0, 1.0]))
    summary = pg.solve()
    assert summary.is_converged
    assert summary.num_successful_steps == 0
    assert summary.final_cost == pytest.approx(0.0, abs=1e-20)


def test_no_free_blocks_is_trivially_converged():
    pg = PoseGraph()
    a = pg.add_keyframe()
    pg.add_unary_absolute_edge(a, Pose3.from_rotvec([0.0, 0.0, 0.0], [1.0, 0.0, 0.0]))
    pg.fix_keyframe(a)
    summary = pg.solve()
    assert summary.is_converged
    assert summary.num_iterations == 0
    assert summary.final_cost == pytest.approx(0.5)


def test_empty_graph():
    summary = PoseGraph().solve()
    assert summary.is_converged
    assert summary.num_residuals == 0


def test_gauge_freedom_reported_as_degenerate():
    """
    Only indirect edges, nothing anchored: the shared rotation of the
    keyframe and the secondary frame is unobservable. The solver must not
    report convergence, and must leave finite poses behind.
    """
    pg = PoseGraph()
    z = pg.add_secondary_coordinate_frame()
    k = pg.add_keyframe(Pose3.from_rotvec([0.0, 0.1, 0.0], [0.5, 0.0, 0.0]))
    pg.add_indirect_unary_edge(k, z, Pose3.from_rotvec([0.0, 0.0, 0.3], [1.0, 0.0, 0.0]))

    summary = pg.solve()
    assert summary.termination_type == TerminationType.NUMERICAL_DEGENERACY
    assert summary.is_degenerate
    assert summary.jacobian_rank < summary.num_parameters
    for pose in pg.keyframe_poses() + pg.secondary_frame_poses():
        assert pose.is_finite()
        assert float(jnp.linalg.norm(pose.rotation)) == pytest.approx(1.0, abs=1e-9)


def test_pre_cancelled_token_stops_before_first_iteration():
    pg = _perturbed_chain()
    before = [p.translation for p in pg.keyframe_poses()]
    token = CancellationToken()
    token.cancel()

    summary = pg.solve(cancel_token=token)
    assert summary.termination_type == TerminationType.USER_CANCELLED
    assert summary.num_iterations == 0
    for p, t in zip(pg.keyframe_poses(), before):
        assert jnp.allclose(p.translation, t)


def test_iteration_cap_reports_no_convergence():
    pg = _perturbed_chain()
    pg.config.solver = LMConfig(max_iters=1)
    summary = pg.solve()
    assert summary.termination_type == TerminationType.NO_CONVERGENCE
    assert summary.num_iterations == 1
    assert len(summary.iterations) == 1


def test_non_finite_initial_residual_is_failure():
    pg = PoseGraph()
    a = pg.add_keyframe()
    pg.add_unary_edge(a, [0.0, 0.0, 0.0], weight=jnp.array([jnp.inf, 1.0, 1.0]))
    pg.set_keyframe_pose(a, Pose3.from_rotvec([0.0, 0.0, 0.0], [1.0, 0.0, 0.0]))
    summary = pg.solve()
    assert summary.termination_type == TerminationType.FAILURE
    assert pg.get_keyframe(a).pose.is_finite()


def test_reports_mention_termination():
    summary = _perturbed_chain(3).solve()
    assert "CONVERGENCE" in summary.brief_report()
    full = summary.full_report()
    assert "Initial cost" in full
    assert "Successful steps" in full


def test_cancel_mid_solve_keeps_last_written_iterate():
    """
    Cancel from the step callback after the first accepted step: the solve
    returns USER_CANCELLED and the live poses are the iterate written back
    at that step, not the initial guesses.
    """
    pg = _perturbed_chain()
    initial = pg.keyframe_poses()
    token = CancellationToken()
    written = []

    def cancel_after_first_step():
        written.append(pg.keyframe_poses())
        token.cancel()

    summary = pg.solve(cancel_token=token, on_step=cancel_after_first_step)

    assert summary.termination_type == TerminationType.USER_CANCELLED
    assert summary.num_successful_steps == 1
    assert len(written) == 1
    assert summary.final_cost < summary.initial_cost

    final = pg.keyframe_poses()
    for pose, snapshot in zip(final, written[0]):
        assert jnp.allclose(pose.rotation, snapshot.rotation)
        assert jnp.allclose(pose.translation, snapshot.translation)
    assert any(
        not jnp.allclose(pose.translation, start.translation)
        for pose, start in zip(final[1:], initial[1:])
    )
