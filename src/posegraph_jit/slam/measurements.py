# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Residual models (measurement edges) for PoseGraph-JIT.

Each function here implements a residual

    r(x; params) ∈ ℝᵏ

over the stacked parameter blocks ``x`` of one factor, written in JAX so the
solver can obtain Jacobians by automatic differentiation. Every error follows
the "estimate minus measurement" convention.

Parameter blocks are stacked in the factor's ``var_ids`` order; an entity
contributes ``[q (4), t (3)]`` (quaternion ``[x, y, z, w]`` then translation).

1. Shared pose error
--------------------
    • `pose_error`:
        r = [ log(q_est ⊗ q_meas⁻¹) ;  t_est − t_meas ]        (6,)

      Orientation error first, as the minimal rotation vector, then the
      translation error.

2. Unary edges
--------------
    • `unary_absolute_residual` (6,):
        keyframe pose ≈ measured absolute pose T_wk.

    • `unary_position_residual` (3,):
        keyframe translation ≈ measured point, heavily down-weighted
        (per-component scale 1e-2 by default) so it acts as a soft prior.

3. Binary edge
--------------
    • `binary_relative_residual` (6,):
        T_ba_est = T_wb⁻¹ · T_wa, compared against the measured T_ba.

4. Indirect edge
----------------
    • `indirect_unary_residual` (6,):
        the measurement T_zk is expressed in a secondary coordinate frame z.
        It is moved into the world with the *current estimate* of that frame,
        T_wk_meas = T_wz · T_zk, and compared against the keyframe pose T_wk.
        This lets the graph solve jointly for the unknown frame offset T_wz
        and the keyframe pose.

Weighting
---------
Residuals accept an optional ``"weight"`` param through `_apply_weight`:
a scalar is read as information (``sqrt(w) * r``), a vector as per-component
square-root information (``w * r``).

Adding a new edge type:

    1. Implement ``def my_residual(x, params) -> jnp.ndarray`` here.
    2. Register it: ``fg.register_residual("my_edge", my_residual)``, or add
       it to `RESIDUAL_FNS` so every `PoseGraph` registers it.
"""

from __future__ import annotations

from typing import Dict

import jax.numpy as jnp

from posegraph_jit.core.math3d import (
    pose_compose,
    pose_inverse_compose,
    quat_conjugate,
    quat_log,
    quat_multiply,
)
from posegraph_jit.core.types import EdgeKind

# Default per-component scale of positional priors.
POSITION_PRIOR_SCALE = 1e-2


def _apply_weight(residual: jnp.ndarray, params: dict, key: str = "weight") -> jnp.ndarray:
    """
    Optional weighting of residuals.

    If params[key] is:
      - missing: no change
      - scalar:  r' = sqrt(w) * r          (scalar weight)
      - vector:  r' = w * r                (per-component sqrt-info)
    """
    w = params.get(key, None)
    if w is None:
        return residual

    w = jnp.asarray(w)

    if w.ndim == 0:
        # scalar weight; use sqrt to interpret as information
        return jnp.sqrt(w) * residual
    else:
        # assume w is already per-component sqrt-info vector
        return w * residual


def sigma_to_weight(sigma):
    """
    Convert standard deviation sigma (or vector of sigmas) to a weight usable
    by _apply_weight.

    For scalar sigma:
        w = 1 / sigma^2

    For vector sigma (per-component std devs) the result is already a
    per-component sqrt-information vector:
        w[i] = 1 / sigma[i]
    """
    s = jnp.asarray(sigma)
    if s.ndim == 0:
        return 1.0 / (s * s)
    return 1.0 / s


def pose_error(
    q_est: jnp.ndarray,
    t_est: jnp.ndarray,
    q_meas: jnp.ndarray,
    t_meas: jnp.ndarray,
) -> jnp.ndarray:
    """6D error ``[log(q_est ⊗ q_meas⁻¹), t_est − t_meas]``."""
    r_rot = quat_log(quat_multiply(q_est, quat_conjugate(q_meas)))
    r_trans = t_est - t_meas
    return jnp.concatenate([r_rot, r_trans])


def unary_absolute_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Absolute pose prior on one entity.

    x: [q_wk(4), t_wk(3)]
    params:
        "rotation", "translation": measured T_wk
    """
    r = pose_error(x[:4], x[4:7], params["rotation"], params["translation"])
    return _apply_weight(r, params)


def unary_position_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Translation-only prior.

    x: [t_wk(3)]
    params:
        "point": measured position in world coordinates
        "weight": usually the per-component scale ``POSITION_PRIOR_SCALE``
    """
    r = x[:3] - params["point"]
    return _apply_weight(r, params)


def binary_relative_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Relative pose between two keyframes.

    x: [q_wb(4), t_wb(3), q_wa(4), t_wa(3)]
    params:
        "rotation", "translation": measured T_ba

    residual = pose_error(T_wb⁻¹ · T_wa, T_ba)
    """
    assert x.shape[0] == 14, "binary_relative_residual expects two stacked 7D poses."

    q_ba, t_ba = pose_inverse_compose(x[0:4], x[4:7], x[7:11], x[11:14])
    r = pose_error(q_ba, t_ba, params["rotation"], params["translation"])
    return _apply_weight(r, params)


def indirect_unary_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Keyframe pose measured in a secondary coordinate frame.

    x: [q_wz(4), t_wz(3), q_wk(4), t_wk(3)]
    params:
        "rotation", "translation": measured T_zk

    residual = pose_error(T_wk, T_wz · T_zk)
    """
    assert x.shape[0] == 14, "indirect_unary_residual expects two stacked 7D poses."

    q_wk_meas, t_wk_meas = pose_compose(x[0:4], x[4:7], params["rotation"], params["translation"])
    r = pose_error(x[7:11], x[11:14], q_wk_meas, t_wk_meas)
    return _apply_weight(r, params)


RESIDUAL_FNS = {
    EdgeKind.UNARY_ABSOLUTE.value: unary_absolute_residual,
    EdgeKind.UNARY_POSITION.value: unary_position_residual,
    EdgeKind.BINARY_RELATIVE.value: binary_relative_residual,
    EdgeKind.INDIRECT_UNARY.value: indirect_unary_residual,
}
