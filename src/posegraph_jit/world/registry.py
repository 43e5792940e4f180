# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Pose registry: the keyframe and secondary-coordinate-frame arenas.

Every entity is a rigid pose ``T_wl`` stored as two parameter blocks of the
underlying :class:`FactorGraph`: an orientation block (unit quaternion,
manifold ``"quaternion"``) and a translation block (``"translation"``).
The blocks are registered when the entity is created, so no entity ever
exists without being known to the problem.

Keyframes and secondary frames live in separate arenas with their own dense
id spaces ``0, 1, 2, ...``; ids are handed out in creation order and never
reused. Entities refer to their blocks by `NodeId`, and measurement edges
refer to entities by arena id, never by object reference.
"""

from __future__ import annotations

import logging
import numbers
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, TypeVar

import jax.numpy as jnp

from posegraph_jit.core.errors import InvalidIdError
from posegraph_jit.core.factor_graph import FactorGraph
from posegraph_jit.core.types import NodeId, Pose3, Variable

logger = logging.getLogger("posegraph_jit.registry")


@dataclass(eq=False)
class CoordinateFrame:
    """A pose held in two parameter blocks of ``graph``."""
    id: int
    rotation_block: NodeId
    translation_block: NodeId
    graph: FactorGraph = field(repr=False)
    lock: threading.RLock = field(repr=False)
    name: Optional[str] = None

    @property
    def block_ids(self) -> Tuple[NodeId, NodeId]:
        return self.rotation_block, self.translation_block

    @property
    def pose(self) -> Pose3:
        """Live pose; may be mid-optimization while a solve is running."""
        with self.lock:
            return Pose3(
                self.graph.variables[self.rotation_block].value,
                self.graph.variables[self.translation_block].value,
            )


class Keyframe(CoordinateFrame):
    """Primary trajectory sample to be estimated."""


class SecondaryCoordinateFrame(CoordinateFrame):
    """Offset of an auxiliary reference system (e.g. an external tracker) w.r.t. the world."""


FrameT = TypeVar("FrameT", bound=CoordinateFrame)


def _lookup(arena: Sequence[FrameT], kind: str, idx) -> FrameT:
    if isinstance(idx, bool) or not isinstance(idx, numbers.Integral) or not 0 <= idx < len(arena):
        raise InvalidIdError(kind, idx, len(arena))
    return arena[int(idx)]


def normalize_pose(pose: Pose3) -> Tuple[jnp.ndarray, jnp.ndarray]:
    norm = float(jnp.linalg.norm(pose.rotation))
    if not pose.is_finite() or norm == 0.0:
        raise ValueError(f"Pose must be finite with a non-zero quaternion, got {pose!r}")
    return pose.rotation / norm, pose.translation


class PoseRegistry:
    """Owns the keyframe and secondary-frame arenas on top of a FactorGraph."""

    def __init__(self, fg: FactorGraph, lock: Optional[threading.RLock] = None) -> None:
        self.fg = fg
        self.lock = lock if lock is not None else threading.RLock()
        self.keyframes: List[Keyframe] = []
        self.secondary_frames: List[SecondaryCoordinateFrame] = []

    @property
    def num_keyframes(self) -> int:
        return len(self.keyframes)

    @property
    def num_secondary_frames(self) -> int:
        return len(self.secondary_frames)

    def _add_blocks(self, pose: Optional[Pose3]) -> Tuple[NodeId, NodeId]:
        q, t = normalize_pose(pose if pose is not None else Pose3.identity())
        rot_id = NodeId(len(self.fg.variables))
        self.fg.add_variable(Variable(id=rot_id, type="quaternion", value=q))
        trans_id = NodeId(len(self.fg.variables))
        self.fg.add_variable(Variable(id=trans_id, type="translation", value=t))
        return rot_id, trans_id

    def add_keyframe(self, initial_pose: Optional[Pose3] = None, name: Optional[str] = None) -> int:
        """Create a keyframe (identity pose unless given) and return its id."""
        with self.lock:
            kf_id = len(self.keyframes)
            rot_id, trans_id = self._add_blocks(initial_pose)
            self.keyframes.append(
                Keyframe(kf_id, rot_id, trans_id, graph=self.fg, lock=self.lock, name=name)
            )
        logger.debug("Added keyframe %d (blocks %d, %d)", kf_id, rot_id, trans_id)
        return kf_id

    def add_secondary_frame(self, initial_pose: Optional[Pose3] = None, name: Optional[str] = None) -> int:
        """Create a secondary coordinate frame (identity unless given) and return its id."""
        with self.lock:
            z_id = len(self.secondary_frames)
            rot_id, trans_id = self._add_blocks(initial_pose)
            self.secondary_frames.append(
                SecondaryCoordinateFrame(z_id, rot_id, trans_id, graph=self.fg, lock=self.lock, name=name)
            )
        logger.debug("Added secondary coordinate frame %d (blocks %d, %d)", z_id, rot_id, trans_id)
        return z_id

    def get_keyframe(self, kf_id: int) -> Keyframe:
        with self.lock:
            return _lookup(self.keyframes, "keyframe", kf_id)

    def get_secondary_frame(self, z_id: int) -> SecondaryCoordinateFrame:
        with self.lock:
            return _lookup(self.secondary_frames, "secondary coordinate frame", z_id)

    def set_pose(self, frame: CoordinateFrame, pose: Pose3) -> None:
        """Overwrite a frame's pose (e.g. to set an initial guess)."""
        q, t = normalize_pose(pose)
        with self.lock:
            self.fg.variables[frame.rotation_block].value = q
            self.fg.variables[frame.translation_block].value = t
