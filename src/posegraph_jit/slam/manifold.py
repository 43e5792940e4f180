# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Manifold parameterizations for the parameter blocks of PoseGraph-JIT.

The optimizer works in a local tangent space while the *state* lives on a
manifold. Orientation blocks are 4-parameter unit quaternions with a
3-dimensional tangent space; translation blocks are plain R^3.

    • Quaternion "plus" (retraction):
          Plus(q, δ) = normalize(q ⊗ exp(δ)),   δ ∈ R^3

      It satisfies Plus(q, 0) = q, keeps |Plus(q, δ)| = 1 for any finite δ,
      and its Jacobian w.r.t. δ at δ = 0 has rank 3.

    • Euclidean "plus":
          Plus(x, δ) = x + δ

    • Manifold metadata helpers:
        - `TYPE_TO_MANIFOLD`           (block type -> manifold name)
        - `build_manifold_metadata`    (NodeId -> slice, manifold name)

Integration with the Optimizer
------------------------------
`optimization.solvers.levenberg_marquardt_manifold` uses this module to:

    1. Split the packed state into the free (non-constant) blocks.
    2. Lay out one tangent coordinate range per free block.
    3. Apply each step through the block's `plus` so orientations never
       drift away from unit norm.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

import jax
import jax.numpy as jnp

from posegraph_jit.core.factor_graph import FactorGraph, StateIndex
from posegraph_jit.core.math3d import quat_exp, quat_multiply
from posegraph_jit.core.types import NodeId

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "quaternion": "quaternion",
    "translation": "euclidean",
}


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def quaternion_plus(q: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Right-multiplicative retraction ``normalize(q ⊗ exp(delta))``."""
    q_new = quat_multiply(q, quat_exp(delta))
    return q_new / jnp.linalg.norm(q_new)


def euclidean_plus(x: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    return x + delta


def quaternion_plus_jacobian(q: jnp.ndarray) -> jnp.ndarray:
    """(4, 3) Jacobian of :func:`quaternion_plus` w.r.t. delta at delta = 0."""
    return jax.jacfwd(lambda d: quaternion_plus(q, d))(jnp.zeros(3))


def tangent_dim(manifold: str, ambient_dim: int) -> int:
    if manifold == "quaternion":
        return 3
    return ambient_dim


def plus(manifold: str, x: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Dispatch the retraction for a block of the given manifold type."""
    if manifold == "quaternion":
        return quaternion_plus(x, delta)
    return euclidean_plus(x, delta)


def build_manifold_metadata(
    fg: FactorGraph,
    index: Optional[StateIndex] = None,
) -> Tuple[Dict[NodeId, slice], Dict[NodeId, str]]:
    """
    Build metadata for manifold-aware solvers:

      - block_slices: NodeId -> slice in the flat state vector
      - manifold_types: NodeId -> 'quaternion' or 'euclidean'

    Only free blocks are listed: constant blocks, and blocks that no residual
    references, keep their current values and get no tangent coordinates.
    """
    if index is None:
        _, index = fg.pack_state()

    block_slices: Dict[NodeId, slice] = {}
    manifold_types: Dict[NodeId, str] = {}

    for nid in fg.free_variable_ids():
        start, length = index[nid]
        block_slices[nid] = slice(start, start + length)
        manifold_types[nid] = get_manifold_for_var_type(fg.variables[nid].type)

    return block_slices, manifold_types
