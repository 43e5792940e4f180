# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Pose graph: the collaborator-facing wrapper around the optimization problem.

This module defines :class:`PoseGraph`, a thin, typed layer on top of
`core.factor_graph.FactorGraph` and `world.registry.PoseRegistry` that knows
about keyframes, secondary coordinate frames and the four measurement
kinds, and drives the Solver Driver synchronously (`solve`) or on a
background thread (`start` / `stop`).

Key responsibilities
--------------------
- Own the problem (`FactorGraph`), the entity arenas (`PoseRegistry`) and the
  list of immutable `Edge` records; there is no global state.
- Build edges:
    • `add_unary_absolute_edge`   keyframe pose ≈ T_wk
    • `add_unary_edge`            keyframe position ≈ point (soft prior)
    • `add_binary_edge`           T_wb⁻¹ T_wa ≈ T_ba
    • `add_indirect_unary_edge`   T_wk ≈ T_wz T_zk, T_wz being solved for
    • `add_relative_keyframe`     new keyframe at T_wa T_ak + binary edge
- Freeze / release parameter blocks.
- Run the solver and write accepted steps back into the live poses.

Concurrency
-----------
One re-entrant lock guards the graph. Every mutation (entities, edges,
freezing, pose setting), the solver's initial snapshot and each per-step
write-back take it, so readers never see a half-written block. The solver
iterates on its own copy of the state: entities and edges added during a
solve are picked up by the next one, and a pose set on a block that is being
optimized can be overwritten by the in-flight solve's next accepted step.

Solves never overlap: `solve()` refuses to run on the caller's thread while
a background solve is in flight.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set

import jax.numpy as jnp

from posegraph_jit.core.errors import PoseGraphError
from posegraph_jit.core.factor_graph import FactorGraph
from posegraph_jit.core.types import Edge, EdgeKind, Factor, FactorId, NodeId, Pose3
from posegraph_jit.optimization.async_solver import AsyncSolveController, CancellationToken
from posegraph_jit.optimization.solvers import LMConfig, SolverSummary, levenberg_marquardt_manifold
from posegraph_jit.slam.manifold import build_manifold_metadata
from posegraph_jit.slam.measurements import POSITION_PRIOR_SCALE, RESIDUAL_FNS
from posegraph_jit.world.registry import (
    Keyframe,
    PoseRegistry,
    SecondaryCoordinateFrame,
    normalize_pose,
)

logger = logging.getLogger("posegraph_jit.pose_graph")


@dataclass
class PoseGraphConfig:
    solver: LMConfig = field(default_factory=LMConfig)
    # Per-component scale applied to positional (unary) edges.
    position_weight: float = POSITION_PRIOR_SCALE
    # Indirect edges freeze the secondary frame's translation until
    # set_secondary_coordinate_frame_free() is called; freed frames stay free.
    freeze_secondary_translation: bool = True


def _pose_params(pose: Pose3) -> Dict[str, jnp.ndarray]:
    q, t = normalize_pose(pose)
    return {"rotation": q, "translation": t}


class PoseGraph:
    """Keyframes + secondary frames + measurement edges, with a background solver.

    Typical use::

        pg = PoseGraph()
        a = pg.add_keyframe()
        pg.fix_keyframe(a)
        b = pg.add_relative_keyframe(a, T_ab)
        pg.start()            # or: summary = pg.solve()
        ...
        pg.stop()
        T_wb = pg.get_keyframe(b).pose
    """

    def __init__(self, config: Optional[PoseGraphConfig] = None) -> None:
        self.config = config if config is not None else PoseGraphConfig()
        self.fg = FactorGraph()
        for factor_type, fn in RESIDUAL_FNS.items():
            self.fg.register_residual(factor_type, fn)
        self._lock = threading.RLock()
        self.registry = PoseRegistry(self.fg, lock=self._lock)
        self.edges: List[Edge] = []
        # Frames released by set_secondary_coordinate_frame_free(); later
        # indirect edges leave their translation free.
        self._freed_secondary_frames: Set[int] = set()
        self._solve_lock = threading.Lock()
        self.last_summary: Optional[SolverSummary] = None
        self._controller = AsyncSolveController(self.solve)

    # --- Entities ---

    @property
    def num_keyframes(self) -> int:
        return self.registry.num_keyframes

    @property
    def num_secondary_frames(self) -> int:
        return self.registry.num_secondary_frames

    @property
    def num_edges(self) -> int:
        return len(self.edges)

    def add_keyframe(self, initial_pose: Optional[Pose3] = None, name: Optional[str] = None) -> int:
        return self.registry.add_keyframe(initial_pose, name=name)

    def add_secondary_coordinate_frame(
        self, initial_pose: Optional[Pose3] = None, name: Optional[str] = None
    ) -> int:
        return self.registry.add_secondary_frame(initial_pose, name=name)

    def get_keyframe(self, kf_id: int) -> Keyframe:
        return self.registry.get_keyframe(kf_id)

    def get_secondary_coordinate_frame(self, z_id: int) -> SecondaryCoordinateFrame:
        return self.registry.get_secondary_frame(z_id)

    get_secondary_frame = get_secondary_coordinate_frame

    def set_keyframe_pose(self, kf_id: int, pose: Pose3) -> None:
        self.registry.set_pose(self.get_keyframe(kf_id), pose)

    def set_secondary_frame_pose(self, z_id: int, pose: Pose3) -> None:
        self.registry.set_pose(self.get_secondary_coordinate_frame(z_id), pose)

    def keyframe_poses(self) -> List[Pose3]:
        with self._lock:
            return [kf.pose for kf in self.registry.keyframes]

    def secondary_frame_poses(self) -> List[Pose3]:
        with self._lock:
            return [z.pose for z in self.registry.secondary_frames]

    # --- Freezing ---

    def set_parameter_block_constant(self, block_id: NodeId) -> None:
        with self._lock:
            self.fg.set_constant(block_id)

    def set_parameter_block_variable(self, block_id: NodeId) -> None:
        with self._lock:
            self.fg.set_variable(block_id)

    def fix_keyframe(self, kf_id: int) -> None:
        """Hold both blocks of a keyframe constant, e.g. to anchor the gauge."""
        with self._lock:
            kf = self.get_keyframe(kf_id)
            self.fg.set_constant(kf.rotation_block)
            self.fg.set_constant(kf.translation_block)

    def set_secondary_coordinate_frame_free(self, z_id: int) -> None:
        """Let both the rotation and the translation of a secondary frame be estimated."""
        with self._lock:
            z = self.get_secondary_coordinate_frame(z_id)
            self.fg.set_variable(z.rotation_block)
            self.fg.set_variable(z.translation_block)
            self._freed_secondary_frames.add(z.id)
        logger.debug("Secondary coordinate frame %d set free", z_id)

    # --- Edges ---

    def _add_edge(
        self,
        kind: EdgeKind,
        var_ids: Sequence[NodeId],
        params: Dict[str, jnp.ndarray],
        keyframe_ids: Sequence[int],
        measurement,
        secondary_frame_id: Optional[int] = None,
        weight=None,
    ) -> FactorId:
        if weight is not None:
            params["weight"] = jnp.asarray(weight, dtype=jnp.float64)
        with self._lock:
            fid = FactorId(len(self.fg.factors))
            self.fg.add_factor(Factor(id=fid, type=kind.value, var_ids=tuple(var_ids), params=params))
            self.edges.append(
                Edge(
                    factor_id=fid,
                    kind=kind,
                    keyframe_ids=tuple(keyframe_ids),
                    measurement=measurement,
                    secondary_frame_id=secondary_frame_id,
                    weight=params.get("weight"),
                )
            )
        logger.debug("Added %s edge %d on keyframes %s", kind.value, fid, tuple(keyframe_ids))
        return fid

    def add_unary_absolute_edge(self, kf_id: int, T_wk: Pose3, weight=None) -> FactorId:
        """Absolute pose measurement of a keyframe."""
        with self._lock:
            kf = self.get_keyframe(kf_id)
            return self._add_edge(
                EdgeKind.UNARY_ABSOLUTE,
                kf.block_ids,
                _pose_params(T_wk),
                (kf_id,),
                T_wk,
                weight=weight,
            )

    def add_unary_edge(self, kf_id: int, point, weight=None) -> FactorId:
        """
        Soft positional prior on a keyframe's translation.

        Without an explicit ``weight`` the residual is scaled by
        ``config.position_weight`` per component.
        """
        p = jnp.asarray(point, dtype=jnp.float64).reshape(-1)
        if p.shape != (3,):
            raise ValueError(f"Position measurement must have 3 components, got shape {p.shape}")
        if weight is None:
            weight = jnp.full(3, self.config.position_weight)
        with self._lock:
            kf = self.get_keyframe(kf_id)
            return self._add_edge(
                EdgeKind.UNARY_POSITION,
                (kf.translation_block,),
                {"point": p},
                (kf_id,),
                p,
                weight=weight,
            )

    def add_binary_edge(self, kf_b: int, kf_a: int, T_ba: Pose3, weight=None) -> FactorId:
        """Relative measurement ``T_ba`` (pose of ``a`` in the frame of ``b``)."""
        with self._lock:
            b = self.get_keyframe(kf_b)
            a = self.get_keyframe(kf_a)
            return self._add_edge(
                EdgeKind.BINARY_RELATIVE,
                b.block_ids + a.block_ids,
                _pose_params(T_ba),
                (kf_b, kf_a),
                T_ba,
                weight=weight,
            )

    def add_relative_keyframe(self, anchor_id: int, T_ak: Pose3, name: Optional[str] = None) -> int:
        """
        Create keyframe ``k`` initialised at ``T_wa * T_ak`` and constrain it
        to its anchor with a binary edge measuring ``T_ak``.
        """
        with self._lock:
            anchor = self.get_keyframe(anchor_id)
            k = self.add_keyframe(anchor.pose * T_ak, name=name)
            self.add_binary_edge(anchor_id, k, T_ak)
        return k

    def add_indirect_unary_edge(self, kf_id: int, z_id: int, T_zk: Pose3, weight=None) -> FactorId:
        """
        Keyframe pose ``T_zk`` reported in secondary frame ``z``, whose own
        pose ``T_wz`` is estimated jointly.

        Freezes the translation of ``z`` unless the frame has been released
        with :meth:`set_secondary_coordinate_frame_free`.
        """
        with self._lock:
            kf = self.get_keyframe(kf_id)
            z = self.get_secondary_coordinate_frame(z_id)
            fid = self._add_edge(
                EdgeKind.INDIRECT_UNARY,
                z.block_ids + kf.block_ids,
                _pose_params(T_zk),
                (kf_id,),
                T_zk,
                secondary_frame_id=z_id,
                weight=weight,
            )
            if self.config.freeze_secondary_translation and z.id not in self._freed_secondary_frames:
                self.fg.set_constant(z.translation_block)
        return fid

    # --- Solving ---

    def solve(
        self,
        cancel_token: Optional[CancellationToken] = None,
        on_step: Optional[Callable[[], None]] = None,
    ) -> SolverSummary:
        """
        Run the Solver Driver on the calling thread, updating poses in place.

        ``on_step`` is called after each accepted step has been written back.
        Raises :class:`PoseGraphError` when called while a background solve
        started with :meth:`start` is in flight; solves never overlap.
        """
        if self._controller.is_running and not self._controller.in_worker():
            raise PoseGraphError("A background solve is in flight; call stop() or wait() first")
        with self._solve_lock:
            return self._solve(cancel_token, on_step)

    def _solve(
        self,
        cancel_token: Optional[CancellationToken],
        on_step: Optional[Callable[[], None]],
    ) -> SolverSummary:
        with self._lock:
            x0, index = self.fg.pack_state()
            residual_fn = self.fg.build_residual_function()
            block_slices, manifold_types = build_manifold_metadata(self.fg, index)
            logger.info(
                "Solving pose graph: %d keyframes, %d secondary frames, %d edges, %d free blocks",
                self.num_keyframes, self.num_secondary_frames, self.num_edges, len(block_slices),
            )

        def write_back(x: jnp.ndarray) -> None:
            with self._lock:
                for nid, sl in block_slices.items():
                    self.fg.variables[nid].value = x[sl]
            if on_step is not None:
                on_step()

        _, summary = levenberg_marquardt_manifold(
            residual_fn,
            x0,
            block_slices,
            manifold_types,
            self.config.solver,
            cancel_token=cancel_token,
            on_step=write_back,
        )
        self.last_summary = summary
        logger.info(summary.brief_report())
        logger.debug("\n%s", summary.full_report())
        return summary

    def start(self) -> bool:
        """Solve in the background; no-op (returns ``False``) while a solve is in flight."""
        return self._controller.start()

    def stop(self, timeout: Optional[float] = None) -> Optional[SolverSummary]:
        """Cancel the background solve cooperatively and wait for it."""
        return self._controller.stop(timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._controller.wait(timeout)

    @property
    def is_running(self) -> bool:
        return self._controller.is_running

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._controller.last_error
