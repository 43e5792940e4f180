# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
JIT-compiled linearization of a pose-graph problem.

The solvers in `optimization.solvers` never differentiate with respect to
the ambient parameters (a quaternion has 4 of them but only 3 degrees of
freedom). Instead they work with the *local* residual

    r_x(δ) = r( x ⊞ δ )

where ``⊞`` applies each free block's manifold `plus` to its slice of δ.
Its Jacobian at ``δ = 0`` is the tangent-space Jacobian, i.e. the ambient
Jacobian already multiplied by every block's local parameterization
Jacobian, as a local-parameterization-aware solver expects.

This module wraps that construction:

    • `JittedLinearization.from_residual(residual_fn, block_slices, manifold_types)`
        lays out the tangent coordinates of the free blocks and returns jitted
          - residual(x)        -> r
          - linearize(x)       -> (r, J)     J: (m, n_tangent)
          - retract(x, delta)  -> x ⊞ delta

Notes
-----
The wrapper assumes a fixed topology: block slices and manifold types are
closed over and treated as static, so it is rebuilt for every solve.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import jax
import jax.numpy as jnp

from posegraph_jit.core.types import NodeId
from posegraph_jit.slam.manifold import plus, tangent_dim


@dataclass
class JittedLinearization:
    """
    Jitted residual / Jacobian / retraction for a fixed set of free blocks.

    Usage:
        residual_fn = fg.build_residual_function()
        block_slices, manifold_types = build_manifold_metadata(fg)
        lin = JittedLinearization.from_residual(residual_fn, block_slices, manifold_types)
        r, J = lin.linearize(x)
        x_new = lin.retract(x, delta)
    """
    residual: Callable[[jnp.ndarray], jnp.ndarray]
    linearize: Callable[[jnp.ndarray], Tuple[jnp.ndarray, jnp.ndarray]]
    retract: Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]
    tangent_slices: Dict[NodeId, slice]
    tangent_dim: int

    @staticmethod
    def from_residual(
        residual_fn: Callable[[jnp.ndarray], jnp.ndarray],
        block_slices: Dict[NodeId, slice],
        manifold_types: Dict[NodeId, str],
    ) -> "JittedLinearization":
        tangent_slices: Dict[NodeId, slice] = {}
        offset = 0
        for nid, sl in block_slices.items():
            d = tangent_dim(manifold_types[nid], sl.stop - sl.start)
            tangent_slices[nid] = slice(offset, offset + d)
            offset += d
        n_tangent = offset

        blocks = tuple(
            (block_slices[nid], tangent_slices[nid], manifold_types[nid])
            for nid in block_slices
        )

        def retract(x: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
            x_new = x
            for sl, tsl, mtype in blocks:
                x_new = x_new.at[sl].set(plus(mtype, x[sl], delta[tsl]))
            return x_new

        def local_residual(delta: jnp.ndarray, x: jnp.ndarray) -> jnp.ndarray:
            return residual_fn(retract(x, delta))

        def linearize(x: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
            r = residual_fn(x)
            J = jax.jacfwd(local_residual)(jnp.zeros(n_tangent, dtype=x.dtype), x)
            return r, J

        return JittedLinearization(
            residual=jax.jit(residual_fn),
            linearize=jax.jit(linearize),
            retract=jax.jit(retract),
            tangent_slices=tangent_slices,
            tangent_dim=n_tangent,
        )
