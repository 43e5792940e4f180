from __future__ import annotations

import jax.numpy as jnp
import pytest

from posegraph_jit.core.errors import InvalidIdError
from posegraph_jit.core.factor_graph import FactorGraph
from posegraph_jit.core.types import Factor, FactorId, NodeId, Variable
from posegraph_jit.slam.measurements import unary_position_residual


def _graph() -> FactorGraph:
    fg = FactorGraph()
    fg.add_variable(Variable(id=NodeId(0), type="translation", value=jnp.array([0.0, 0.0, 0.0])))
    fg.add_variable(Variable(id=NodeId(1), type="translation", value=jnp.array([1.0, 1.0, 1.0])))
    fg.add_variable(Variable(id=NodeId(2), type="translation", value=jnp.array([2.0, 2.0, 2.0])))
    fg.register_residual("position", unary_position_residual)
    return fg


def test_pack_unpack_roundtrip():
    fg = _graph()
    x, index = fg.pack_state()
    assert x.shape == (9,)
    assert index[NodeId(1)] == (3, 3)
    values = fg.unpack_state(x, index)
    assert jnp.allclose(values[NodeId(2)], jnp.array([2.0, 2.0, 2.0]))


def test_empty_graph_packs_to_empty_state():
    x, index = FactorGraph().pack_state()
    assert x.shape == (0,)
    assert index == {}


def test_residual_function_stacks_factors_in_order():
    """
    Two position factors:
        r0 = x0 - (1, 0, 0)
        r1 = x1 - (1, 1, 1)
    """
    fg = _graph()
    fg.add_factor(Factor(FactorId(0), "position", (NodeId(0),), {"point": jnp.array([1.0, 0.0, 0.0])}))
    fg.add_factor(Factor(FactorId(1), "position", (NodeId(1),), {"point": jnp.array([1.0, 1.0, 1.0])}))

    x, _ = fg.pack_state()
    r = fg.build_residual_function()(x)
    assert jnp.allclose(r, jnp.array([-1.0, 0.0, 0.0, 0.0, 0.0, 0.0]))


def test_free_blocks_exclude_constant_and_unused():
    fg = _graph()
    fg.add_factor(Factor(FactorId(0), "position", (NodeId(0),), {"point": jnp.zeros(3)}))
    fg.add_factor(Factor(FactorId(1), "position", (NodeId(1),), {"point": jnp.zeros(3)}))
    assert fg.free_variable_ids() == [NodeId(0), NodeId(1)]

    fg.set_constant(NodeId(0))
    assert fg.is_constant(NodeId(0))
    assert fg.free_variable_ids() == [NodeId(1)]

    fg.set_variable(NodeId(0))
    assert fg.free_variable_ids() == [NodeId(0), NodeId(1)]


def test_unknown_block_ids_rejected():
    fg = _graph()
    with pytest.raises(InvalidIdError):
        fg.set_constant(NodeId(7))
    with pytest.raises(InvalidIdError):
        fg.add_factor(Factor(FactorId(0), "position", (NodeId(5),), {"point": jnp.zeros(3)}))
    assert not fg.factors


def test_unregistered_factor_type_rejected():
    fg = _graph()
    with pytest.raises(ValueError):
        fg.add_factor(Factor(FactorId(0), "nope", (NodeId(0),), {}))
