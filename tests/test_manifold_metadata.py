from __future__ import annotations

import jax.numpy as jnp
import numpy as np

from posegraph_jit.core.math3d import quat_exp, rotation_angle_between
from posegraph_jit.core.types import Pose3
from posegraph_jit.slam.manifold import (
    build_manifold_metadata,
    quaternion_plus,
    quaternion_plus_jacobian,
)
from posegraph_jit.world.pose_graph import PoseGraph


def test_quaternion_plus_zero_is_identity():
    q = quat_exp(jnp.array([0.3, -0.7, 0.2]))
    assert jnp.allclose(quaternion_plus(q, jnp.zeros(3)), q, atol=1e-15)


def test_quaternion_plus_stays_unit_norm():
    q = quat_exp(jnp.array([1.0, 2.0, -0.5]))
    for delta in ([10.0, -3.0, 7.0], [1e-9, 0.0, 0.0], [3.1, 0.0, 0.0]):
        q_new = quaternion_plus(q, jnp.array(delta))
        assert abs(float(jnp.linalg.norm(q_new)) - 1.0) < 1e-12


def test_quaternion_plus_applies_right_perturbation():
    q = quat_exp(jnp.array([0.0, 0.0, 0.4]))
    q_new = quaternion_plus(q, jnp.array([0.0, 0.0, 0.1]))
    assert float(rotation_angle_between(q_new, quat_exp(jnp.array([0.0, 0.0, 0.5])))) < 1e-12


def test_quaternion_plus_jacobian_has_full_rank():
    q = quat_exp(jnp.array([0.2, 0.1, -0.3]))
    J = quaternion_plus_jacobian(q)
    assert J.shape == (4, 3)
    assert np.linalg.matrix_rank(np.asarray(J)) == 3


def test_build_manifold_metadata_lists_free_used_blocks_only():
    """
    Slices align with the packed state index, orientation blocks get the
    quaternion manifold, and constant or unreferenced blocks are left out.
    """
    pg = PoseGraph()
    a = pg.add_keyframe()
    b = pg.add_keyframe(Pose3.from_rotvec([0.0, 0.0, 0.1], [1.0, 0.0, 0.0]))
    c = pg.add_keyframe()  # no edges
    pg.fix_keyframe(a)
    pg.add_binary_edge(a, b, Pose3.from_rotvec([0.0, 0.0, 0.1], [1.0, 0.0, 0.0]))

    x, index = pg.fg.pack_state()
    block_slices, manifold_types = build_manifold_metadata(pg.fg, index)

    kf_b = pg.get_keyframe(b)
    assert set(block_slices) == {kf_b.rotation_block, kf_b.translation_block}
    for nid, sl in block_slices.items():
        start, length = index[nid]
        assert sl == slice(start, start + length)

    assert manifold_types[kf_b.rotation_block] == "quaternion"
    assert manifold_types[kf_b.translation_block] == "euclidean"
    assert pg.get_keyframe(c).rotation_block not in block_slices
