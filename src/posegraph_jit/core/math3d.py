# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Unit-quaternion and rigid-transform algebra for PoseGraph-JIT.

This module implements the minimal 3D rotation / rigid-body mathematics
needed by the pose-graph residuals and by the quaternion manifold:

    • Quaternion product, conjugate, normalization and vector rotation
    • Quaternion exponential & logarithm (rotation vector <-> quaternion)
    • Rigid transform composition, inversion and inverse-composition
    • Conversions to / from rotation matrices and 4x4 homogeneous transforms

Conventions
-----------
Quaternions are stored as ``[x, y, z, w]`` (scalar last, Hamilton product).
A rigid transform is carried as a pair ``(q, t)`` where ``q`` is a unit
quaternion of shape (4,) and ``t`` a translation of shape (3,). The pair
``(q_wl, t_wl)`` maps points from a local frame ``l`` to the world frame
``w``:

    p_w = R(q_wl) p_l + t_wl

Key Functions
-------------
quat_exp(w)
    Rotation vector (axis * angle) -> unit quaternion.

quat_log(q)
    Unit quaternion -> rotation vector, always the shortest rotation.

pose_compose(q_a, t_a, q_b, t_b)
    T_a * T_b.

pose_inverse_compose(q_b, t_b, q_a, t_a)
    T_b^-1 * T_a, the relative transform used by binary edges.

Notes
-----
Everything that participates in a residual is written in JAX and is safe to
differentiate at the identity: the small-angle branches are selected with
``jnp.where`` on a "safe" argument so that neither the value nor the
derivative ever evaluates ``0 / 0``.

Importing this module switches JAX to 64-bit mode so that residuals and
Jacobians are evaluated in double precision.
"""

from __future__ import annotations

from typing import Tuple

import jax
import jax.numpy as jnp
import numpy as np

jax.config.update("jax_enable_x64", True)

# Squared angle below which the Taylor expansions are used.
_SMALL_ANGLE_SQ = 1e-10


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    return jnp.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def quat_identity() -> jnp.ndarray:
    """Identity rotation ``[0, 0, 0, 1]``."""
    return jnp.array([0.0, 0.0, 0.0, 1.0])


def quat_normalize(q: jnp.ndarray) -> jnp.ndarray:
    q = jnp.asarray(q)
    return q / jnp.linalg.norm(q)


def quat_conjugate(q: jnp.ndarray) -> jnp.ndarray:
    """Conjugate; equals the inverse for unit quaternions."""
    q = jnp.asarray(q)
    return jnp.concatenate([-q[:3], q[3:]])


def quat_multiply(p: jnp.ndarray, q: jnp.ndarray) -> jnp.ndarray:
    """
    Hamilton product ``p ⊗ q`` for ``[x, y, z, w]`` quaternions.

    The resulting rotation applies ``q`` first, then ``p``.
    """
    pv, pw = p[:3], p[3]
    qv, qw = q[:3], q[3]
    v = pw * qv + qw * pv + jnp.cross(pv, qv)
    w = pw * qw - jnp.dot(pv, qv)
    return jnp.append(v, w)


def quat_rotate(q: jnp.ndarray, v: jnp.ndarray) -> jnp.ndarray:
    """Rotate a 3-vector by a unit quaternion: ``R(q) v``."""
    u, w = q[:3], q[3]
    uv = jnp.cross(u, v)
    return v + 2.0 * (w * uv + jnp.cross(u, uv))


def quat_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from a rotation vector to a unit quaternion.

        exp(w) = [sin(|w|/2) * w/|w|, cos(|w|/2)]

    Uses a second-order expansion for tiny angles.
    """
    w = jnp.asarray(w)
    theta_sq = jnp.dot(w, w)
    small = theta_sq < _SMALL_ANGLE_SQ

    # Keep sqrt / division away from zero on the unused branch.
    theta = jnp.sqrt(jnp.where(small, 1.0, theta_sq))
    half = 0.5 * theta

    k = jnp.where(small, 0.5 - theta_sq / 48.0, jnp.sin(half) / theta)
    c = jnp.where(small, 1.0 - theta_sq / 8.0, jnp.cos(half))
    return jnp.append(k * w, c)


def quat_log(q: jnp.ndarray) -> jnp.ndarray:
    """
    Logarithm map from a unit quaternion to a rotation vector.

    ``q`` and ``-q`` describe the same rotation; the hemisphere with a
    non-negative scalar part is used so the result has angle <= pi.
    """
    q = jnp.asarray(q)
    q = jnp.where(q[3] < 0.0, -q, q)
    u, w = q[:3], q[3]

    n_sq = jnp.dot(u, u)
    small = n_sq < _SMALL_ANGLE_SQ
    n = jnp.sqrt(jnp.where(small, 1.0, n_sq))

    # atan2(n, w) / n  ~  1/w - n^2 / (3 w^3)  for n -> 0
    scale = jnp.where(
        small,
        2.0 / w - 2.0 * n_sq / (3.0 * w ** 3),
        2.0 * jnp.arctan2(n, w) / n,
    )
    return scale * u


def rotation_angle_between(p: jnp.ndarray, q: jnp.ndarray) -> jnp.ndarray:
    """Angle (radians) of the rotation taking ``q`` onto ``p``."""
    return jnp.linalg.norm(quat_log(quat_multiply(p, quat_conjugate(q))))


def quat_to_rotation_matrix(q: jnp.ndarray) -> jnp.ndarray:
    x, y, z, w = q[0], q[1], q[2], q[3]
    return jnp.array(
        [
            [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - z * w), 2.0 * (x * z + y * w)],
            [2.0 * (x * y + z * w), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - x * w)],
            [2.0 * (x * z - y * w), 2.0 * (y * z + x * w), 1.0 - 2.0 * (x * x + y * y)],
        ]
    )


def quat_from_rotation_matrix(R) -> jnp.ndarray:
    """
    Convert a 3x3 rotation matrix into a unit quaternion ``[x, y, z, w]``.

    Host-side helper (Shepperd's method) for collaborators that hand over
    rotation matrices; it is not used inside residuals.
    """
    R = np.asarray(R, dtype=np.float64)
    tr = np.trace(R)
    if tr > 0.0:
        s = 2.0 * np.sqrt(tr + 1.0)
        w = 0.25 * s
        x = (R[2, 1] - R[1, 2]) / s
        y = (R[0, 2] - R[2, 0]) / s
        z = (R[1, 0] - R[0, 1]) / s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        w = (R[2, 1] - R[1, 2]) / s
        x = 0.25 * s
        y = (R[0, 1] + R[1, 0]) / s
        z = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        w = (R[0, 2] - R[2, 0]) / s
        x = (R[0, 1] + R[1, 0]) / s
        y = 0.25 * s
        z = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        w = (R[1, 0] - R[0, 1]) / s
        x = (R[0, 2] + R[2, 0]) / s
        y = (R[1, 2] + R[2, 1]) / s
        z = 0.25 * s

    q = np.array([x, y, z, w])
    q /= np.linalg.norm(q)
    if q[3] < 0.0:
        q = -q
    return jnp.asarray(q)


# ---------------------------------------------------------------------------
# Rigid transforms as (q, t) pairs
# ---------------------------------------------------------------------------

def pose_compose(
    q_a: jnp.ndarray, t_a: jnp.ndarray, q_b: jnp.ndarray, t_b: jnp.ndarray
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Compose two rigid transforms: T_a * T_b.

        R = R_a R_b
        t = R_a t_b + t_a
    """
    return quat_multiply(q_a, q_b), quat_rotate(q_a, t_b) + t_a


def pose_inverse(q: jnp.ndarray, t: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
    q_inv = quat_conjugate(q)
    return q_inv, -quat_rotate(q_inv, t)


def pose_inverse_compose(
    q_b: jnp.ndarray, t_b: jnp.ndarray, q_a: jnp.ndarray, t_a: jnp.ndarray
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Relative transform T_b^-1 * T_a without forming the inverse explicitly.

        R_ba = R_b^T R_a
        t_ba = R_b^T (t_a - t_b)
    """
    q_b_inv = quat_conjugate(q_b)
    return quat_multiply(q_b_inv, q_a), quat_rotate(q_b_inv, t_a - t_b)


def pose_to_matrix(q: jnp.ndarray, t: jnp.ndarray) -> jnp.ndarray:
    """4x4 homogeneous matrix of the transform ``(q, t)``."""
    T = jnp.eye(4)
    T = T.at[:3, :3].set(quat_to_rotation_matrix(q))
    T = T.at[:3, 3].set(t)
    return T
