# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Optimization problem for PoseGraph-JIT.

This module implements the "Problem" of the pose graph: the set of parameter
blocks (one orientation block and one translation block per keyframe or
secondary coordinate frame) together with the residual terms (one per edge)
that constrain them. From it we build a single fused residual function

    r(x) : R^N -> R^M

over the packed state vector ``x`` which the manifold-aware solvers in
``optimization/solvers.py`` linearize with JAX autodiff.

The FactorGraph stores:
    - Variables (parameter blocks), each independently markable constant
    - Factors (residual terms) referencing blocks by id
    - Registered residual functions (by factor type)

Primary Methods
---------------
pack_state()
    Concatenates all block values into a single flat JAX array and returns
    it together with the ``NodeId -> (start, dim)`` index.

unpack_state(x, index)
    Splits a flat state vector back into per-block arrays.

build_residual_function()
    Returns a JIT-compiled residual function for the current topology.

set_constant(nid) / set_variable(nid)
    Freeze or release a parameter block.

Notes
-----
The residual function captures the topology (factors and index) at build
time. Blocks or factors added afterwards only take part in residual
functions built later.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Set, Tuple

import jax
import jax.numpy as jnp

from posegraph_jit.core.errors import InvalidIdError
from posegraph_jit.core.types import Factor, FactorId, NodeId, Variable

ResidualFn = Callable[[jnp.ndarray, Dict[str, jnp.ndarray]], jnp.ndarray]
StateIndex = Dict[NodeId, Tuple[int, int]]


@dataclass
class FactorGraph:
    """
    Parameter blocks + residual terms.

    - variables: mapping from NodeId -> Variable
    - factors: mapping from FactorId -> Factor
    - residual_fns: mapping factor.type -> callable that computes residuals
    """
    variables: Dict[NodeId, Variable] = field(default_factory=dict)
    factors: Dict[FactorId, Factor] = field(default_factory=dict)
    residual_fns: Dict[str, ResidualFn] = field(default_factory=dict)

    def add_variable(self, var: Variable) -> None:
        assert var.id not in self.variables
        self.variables[var.id] = var

    def add_factor(self, factor: Factor) -> None:
        assert factor.id not in self.factors
        for nid in factor.var_ids:
            self.get_variable(nid)
        if factor.type not in self.residual_fns:
            raise ValueError(f"No residual fn registered for factor type '{factor.type}'")
        self.factors[factor.id] = factor

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self.residual_fns[factor_type] = fn

    def get_variable(self, nid: NodeId) -> Variable:
        try:
            return self.variables[nid]
        except KeyError:
            raise InvalidIdError("parameter block", nid, len(self.variables)) from None

    # --- Freezing ---

    def set_constant(self, nid: NodeId) -> None:
        self.get_variable(nid).constant = True

    def set_variable(self, nid: NodeId) -> None:
        self.get_variable(nid).constant = False

    def is_constant(self, nid: NodeId) -> bool:
        return self.get_variable(nid).constant

    def used_variable_ids(self) -> Set[NodeId]:
        """Ids of blocks referenced by at least one factor."""
        used: Set[NodeId] = set()
        for f in self.factors.values():
            used.update(f.var_ids)
        return used

    def free_variable_ids(self) -> List[NodeId]:
        """
        Non-constant blocks that take part in at least one residual, in id
        order. Blocks without residuals are left out of the solve.
        """
        used = self.used_variable_ids()
        return [
            nid for nid in sorted(self.variables)
            if nid in used and not self.variables[nid].constant
        ]

    # --- State packing/unpacking ---

    def _build_state_index(self) -> StateIndex:
        """Mapping NodeId -> (start_index, dim) over all blocks."""
        index: StateIndex = {}
        offset = 0
        for node_id, var in sorted(self.variables.items(), key=lambda x: x[0]):
            dim = jnp.asarray(var.value).shape[0]
            index[node_id] = (offset, dim)
            offset += dim
        return index

    def pack_state(self) -> Tuple[jnp.ndarray, StateIndex]:
        index = self._build_state_index()
        if not index:
            return jnp.zeros((0,)), index
        chunks = [jnp.asarray(self.variables[nid].value) for nid in sorted(self.variables)]
        return jnp.concatenate(chunks), index

    def unpack_state(self, x: jnp.ndarray, index: StateIndex) -> Dict[NodeId, jnp.ndarray]:
        result: Dict[NodeId, jnp.ndarray] = {}
        for node_id, (start, dim) in index.items():
            result[node_id] = x[start:start + dim]
        return result

    # --- Residuals ---

    def build_residual_function(self):
        """
        Returns a JIT-compiled function r(x) -> stacked residual vector,
        where x is the packed state from :meth:`pack_state`.
        """
        # Freeze index and factor list inside the closure
        _, index = self.pack_state()
        factors = tuple(self.factors.values())
        residual_fns = dict(self.residual_fns)

        def residual(x: jnp.ndarray) -> jnp.ndarray:
            var_values = self.unpack_state(x, index)
            res_list = []

            for factor in factors:
                residual_fn = residual_fns[factor.type]
                stacked = jnp.concatenate([var_values[nid] for nid in factor.var_ids])
                res_list.append(jnp.reshape(residual_fn(stacked, factor.params), (-1,)))

            if not res_list:
                return jnp.zeros((0,), dtype=x.dtype)

            return jnp.concatenate(res_list)

        return jax.jit(residual)
