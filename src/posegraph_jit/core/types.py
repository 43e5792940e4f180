# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Core typed data structures for PoseGraph-JIT.

This module defines the lightweight containers used throughout the pose-graph
optimizer. They store structure and current values only; all numerical work
happens in JAX-compiled functions built by the factor graph and the solvers.

Classes
-------
Pose3
    Immutable rigid transform: unit quaternion ``[x, y, z, w]`` plus a
    translation. Represents ``T_wl`` (local frame -> world frame).

Variable
    A parameter block of the optimization problem. Each keyframe and each
    secondary coordinate frame owns two of them: an orientation block
    (type ``"quaternion"``, 4 values) and a translation block
    (type ``"translation"``, 3 values). A block may be marked constant.

Factor
    A residual term of the problem:
    - id: Unique identifier
    - type: String key selecting a residual function
    - var_ids: Ordered parameter block ids consumed by the residual
    - params: Measurement and weighting values passed to the residual

Edge
    Immutable, user-facing record of a measurement added to the pose graph.
    Edges refer to keyframes / secondary frames by their integer ids (never
    by object reference) and to the factor they produced.

Notes
-----
``Variable`` and ``Factor`` are deliberately simple and mutable; they are
not meant to be used directly inside JAX-compiled functions. During
optimization the FactorGraph packs block values into a flat array ``x``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, NewType, Optional, Tuple

import jax.numpy as jnp

from posegraph_jit.core.math3d import (
    pose_compose,
    pose_inverse,
    pose_to_matrix,
    quat_exp,
    quat_from_rotation_matrix,
    quat_identity,
    quat_log,
)

NodeId = NewType("NodeId", int)
FactorId = NewType("FactorId", int)


@dataclass(frozen=True, eq=False)
class Pose3:
    """Rigid transform ``(rotation, translation)`` with rotation as ``[x, y, z, w]``."""
    rotation: jnp.ndarray
    translation: jnp.ndarray

    def __post_init__(self) -> None:
        rotation = jnp.asarray(self.rotation, dtype=jnp.float64).reshape(-1)
        translation = jnp.asarray(self.translation, dtype=jnp.float64).reshape(-1)
        if rotation.shape != (4,):
            raise ValueError(f"Pose3 rotation must have 4 components, got shape {rotation.shape}")
        if translation.shape != (3,):
            raise ValueError(f"Pose3 translation must have 3 components, got shape {translation.shape}")
        object.__setattr__(self, "rotation", rotation)
        object.__setattr__(self, "translation", translation)

    @staticmethod
    def identity() -> "Pose3":
        return Pose3(quat_identity(), jnp.zeros(3))

    @staticmethod
    def from_rotvec(rotvec, translation=None) -> "Pose3":
        """Build a pose from an axis-angle rotation vector and a translation."""
        t = jnp.zeros(3) if translation is None else translation
        return Pose3(quat_exp(jnp.asarray(rotvec, dtype=jnp.float64)), t)

    @staticmethod
    def from_matrix(T) -> "Pose3":
        """Build a pose from a 4x4 homogeneous transform."""
        T = jnp.asarray(T, dtype=jnp.float64)
        if T.shape != (4, 4):
            raise ValueError(f"Expected a 4x4 transform, got shape {T.shape}")
        return Pose3(quat_from_rotation_matrix(T[:3, :3]), T[:3, 3])

    def rotvec(self) -> jnp.ndarray:
        return quat_log(self.rotation)

    def matrix(self) -> jnp.ndarray:
        return pose_to_matrix(self.rotation, self.translation)

    def inverse(self) -> "Pose3":
        return Pose3(*pose_inverse(self.rotation, self.translation))

    def compose(self, other: "Pose3") -> "Pose3":
        """``self * other``."""
        return Pose3(*pose_compose(self.rotation, self.translation, other.rotation, other.translation))

    def __mul__(self, other: "Pose3") -> "Pose3":
        return self.compose(other)

    def is_finite(self) -> bool:
        return bool(jnp.all(jnp.isfinite(self.rotation)) and jnp.all(jnp.isfinite(self.translation)))

    def __repr__(self) -> str:
        return f"Pose3(rotation={self.rotation.tolist()}, translation={self.translation.tolist()})"


@dataclass
class Variable:
    """Parameter block of the optimization problem."""
    id: NodeId
    type: str          # "quaternion" or "translation"
    value: Any         # 1-D JAX array
    constant: bool = False


@dataclass
class Factor:
    """Residual term connecting one or more parameter blocks."""
    id: FactorId
    type: str
    var_ids: Tuple[NodeId, ...]
    params: Dict[str, Any]  # measurement, weight, ...


class EdgeKind(str, Enum):
    """Measurement kinds; the values double as factor type keys."""
    UNARY_ABSOLUTE = "unary_absolute"
    UNARY_POSITION = "unary_position"
    BINARY_RELATIVE = "binary_relative"
    INDIRECT_UNARY = "indirect_unary"


@dataclass(frozen=True, eq=False)
class Edge:
    """
    Immutable record of a measurement in the pose graph.

    ``keyframe_ids`` lists the keyframes involved, in the order the
    measurement refers to them (``(b, a)`` for a binary edge measuring
    ``T_ba``). ``secondary_frame_id`` is set for indirect edges only.
    """
    factor_id: FactorId
    kind: EdgeKind
    keyframe_ids: Tuple[int, ...]
    measurement: Any   # Pose3 or a (3,) point
    secondary_frame_id: Optional[int] = None
    weight: Any = field(default=None, repr=False)
