from __future__ import annotations

import jax.numpy as jnp
import pytest

from posegraph_jit.core.math3d import quat_exp, quat_identity
from posegraph_jit.core.types import Pose3
from posegraph_jit.slam.measurements import (
    POSITION_PRIOR_SCALE,
    binary_relative_residual,
    indirect_unary_residual,
    sigma_to_weight,
    unary_absolute_residual,
    unary_position_residual,
)


def _stack(*poses: Pose3) -> jnp.ndarray:
    return jnp.concatenate([jnp.concatenate([p.rotation, p.translation]) for p in poses])


def _params(T: Pose3) -> dict:
    return {"rotation": T.rotation, "translation": T.translation}


def test_unary_absolute_zero_at_truth_and_sign():
    T = Pose3.from_rotvec([0.1, 0.2, 0.3], [1.0, 2.0, 3.0])
    assert jnp.allclose(unary_absolute_residual(_stack(T), _params(T)), 0.0, atol=1e-12)

    # Estimate minus measurement, orientation first.
    est = Pose3(T.rotation, T.translation + jnp.array([0.5, 0.0, 0.0]))
    r = unary_absolute_residual(_stack(est), _params(T))
    assert jnp.allclose(r, jnp.array([0.0, 0.0, 0.0, 0.5, 0.0, 0.0]), atol=1e-12)

    est = Pose3(quat_exp(jnp.array([0.0, 0.0, 0.2])), jnp.zeros(3))
    r = unary_absolute_residual(_stack(est), _params(Pose3.identity()))
    assert jnp.allclose(r[:3], jnp.array([0.0, 0.0, 0.2]), atol=1e-12)


def test_unary_position_scaled():
    """Positional edges are soft: the default weight scales each component by 1e-2."""
    params = {"point": jnp.array([1.0, 0.0, 0.0]), "weight": jnp.full(3, POSITION_PRIOR_SCALE)}
    r = unary_position_residual(jnp.array([3.0, 0.0, -1.0]), params)
    assert jnp.allclose(r, jnp.array([0.02, 0.0, -0.01]), atol=1e-15)


def test_binary_relative_zero_when_consistent():
    T_wa = Pose3.from_rotvec([0.3, -0.1, 0.2], [1.0, 0.0, 0.5])
    T_ba = Pose3.from_rotvec([0.0, 0.0, 0.7], [2.0, -1.0, 0.0])
    T_wb = T_wa * T_ba.inverse()

    r = binary_relative_residual(_stack(T_wb, T_wa), _params(T_ba))
    assert r.shape == (6,)
    assert jnp.allclose(r, 0.0, atol=1e-12)

    r_bad = binary_relative_residual(_stack(T_wa, T_wb), _params(T_ba))
    assert float(jnp.linalg.norm(r_bad)) > 0.1


def test_indirect_unary_compares_against_secondary_frame():
    T_wz = Pose3.from_rotvec([0.0, 0.0, 0.5], [10.0, -2.0, 0.0])
    T_zk = Pose3.from_rotvec([0.1, 0.0, 0.0], [1.0, 1.0, 1.0])
    T_wk = T_wz * T_zk

    r = indirect_unary_residual(_stack(T_wz, T_wk), _params(T_zk))
    assert jnp.allclose(r, 0.0, atol=1e-12)

    # Keyframe 1 m further along world x than predicted.
    shifted = Pose3(T_wk.rotation, T_wk.translation + jnp.array([1.0, 0.0, 0.0]))
    r = indirect_unary_residual(_stack(T_wz, shifted), _params(T_zk))
    assert jnp.allclose(r[3:], jnp.array([1.0, 0.0, 0.0]), atol=1e-12)


def test_scalar_weight_is_information():
    params = _params(Pose3.identity())
    x = _stack(Pose3(quat_identity(), jnp.array([1.0, 0.0, 0.0])))
    r = unary_absolute_residual(x, {**params, "weight": sigma_to_weight(0.5)})
    assert float(r[3]) == pytest.approx(2.0)


def test_vector_sigma_is_sqrt_information():
    w = sigma_to_weight(jnp.array([0.5, 2.0, 1.0]))
    assert jnp.allclose(w, jnp.array([2.0, 0.5, 1.0]))
