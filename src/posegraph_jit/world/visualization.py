# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.
"""
Visualization utilities for PoseGraph-JIT.

Lightweight Matplotlib renderings of a :class:`PoseGraph`, meant for
debugging alignments and for the demo scripts.

The pipeline has two steps:

1. **Exporting graph data**
   `export_pose_graph_for_vis()` turns keyframes and secondary coordinate
   frames into `VisNode` records (position = translation of the live pose)
   and every measurement edge into a `VisEdge` joining the entities it
   touches. Positional measurements also carry their target point so that
   the residual can be drawn as a segment.

2. **Rendering**
   `plot_pose_graph_2d()` draws a top-down (x–y) view and
   `plot_pose_graph_3d()` a full 3D view. Both color nodes by kind and
   edges by measurement kind, optionally draw each keyframe's heading, and
   return ``(fig, ax)`` so callers can save or compose the figure.

Example usage is provided in `experiments/exp02_external_tracker_alignment.py`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Tuple

import matplotlib.pyplot as plt
import numpy as np

from posegraph_jit.core.math3d import quat_rotate
from posegraph_jit.core.types import EdgeKind

NodeType = Literal["keyframe", "secondary"]
NodeKey = Tuple[NodeType, int]


@dataclass
class VisNode:
    """Lightweight node representation for visualization."""
    key: NodeKey
    position: np.ndarray  # shape (3,)
    heading: np.ndarray   # body x-axis in world frame, shape (3,)
    label: str


@dataclass
class VisEdge:
    """Lightweight edge representation for visualization."""
    node_keys: Tuple[NodeKey, ...]
    kind: EdgeKind
    target: Optional[np.ndarray] = None  # measured point for positional edges


_NODE_COLORS: Dict[NodeType, str] = {
    "keyframe": "C0",
    "secondary": "C3",
}

# color, linestyle, linewidth, alpha
_EDGE_STYLES: Dict[EdgeKind, Tuple[str, str, float, float]] = {
    EdgeKind.BINARY_RELATIVE: ("gray", "-", 1.0, 0.6),
    EdgeKind.INDIRECT_UNARY: ("magenta", ":", 0.8, 0.5),
    EdgeKind.UNARY_POSITION: ("C2", "--", 0.8, 0.7),
    EdgeKind.UNARY_ABSOLUTE: ("C1", "-", 0.8, 0.7),
}


def export_pose_graph_for_vis(pose_graph) -> Tuple[List[VisNode], List[VisEdge]]:
    """
    Export a PoseGraph into a visualization-friendly node/edge list.

    :param pose_graph: The :class:`PoseGraph` to visualize.
    :return: (nodes, edges) where nodes is a list of VisNode and edges is a list of VisEdge.
    """
    nodes: List[VisNode] = []
    edges: List[VisEdge] = []
    x_axis = np.array([1.0, 0.0, 0.0])

    frames = [("keyframe", kf) for kf in pose_graph.registry.keyframes]
    frames += [("secondary", z) for z in pose_graph.registry.secondary_frames]
    for ntype, frame in frames:
        pose = frame.pose
        label = frame.name or f"{'kf' if ntype == 'keyframe' else 'z'}:{frame.id}"
        nodes.append(
            VisNode(
                key=(ntype, frame.id),
                position=np.asarray(pose.translation),
                heading=np.asarray(quat_rotate(pose.rotation, x_axis)),
                label=label,
            )
        )

    for e in list(pose_graph.edges):
        keys: Tuple[NodeKey, ...] = tuple(("keyframe", k) for k in e.keyframe_ids)
        if e.secondary_frame_id is not None:
            keys = (("secondary", e.secondary_frame_id),) + keys
        target = None
        if e.kind == EdgeKind.UNARY_POSITION:
            target = np.asarray(e.measurement)
        elif e.kind == EdgeKind.UNARY_ABSOLUTE:
            target = np.asarray(e.measurement.translation)
        edges.append(VisEdge(node_keys=keys, kind=e.kind, target=target))

    return nodes, edges


def _equal_bounds(coords: List[List[float]]) -> List[Tuple[float, float]]:
    max_range = max(max(c) - min(c) for c in coords) / 2.0
    if max_range < 1e-3:
        max_range = 1.0
    bounds = []
    for c in coords:
        mid = 0.5 * (max(c) + min(c))
        bounds.append((mid - max_range * 1.1, mid + max_range * 1.1))
    return bounds


def _segments(nodes: List[VisNode], edges: List[VisEdge]):
    """Yield (kind, a, b) line segments, in world coordinates, for every edge."""
    node_pos = {n.key: n.position for n in nodes}
    for e in edges:
        pts = [node_pos[k] for k in e.node_keys if k in node_pos]
        if e.target is not None:
            pts.append(e.target)
        for a, b in zip(pts[:-1], pts[1:]):
            yield e.kind, a, b


def plot_pose_graph_2d(
    pose_graph,
    show_labels: bool = True,
    show_headings: bool = True,
    heading_length: float = 0.3,
    show: bool = False,
):
    """
    Top-down 2D visualization of the pose graph.

    :param pose_graph: The :class:`PoseGraph` to visualize.
    :param show_labels: Whether to draw node labels.
    :param show_headings: Whether to draw each frame's x-axis.
    :param heading_length: Length of the heading arrows, in meters.
    :param show: Call ``plt.show()`` before returning.
    :return: ``(fig, ax)``.
    """
    nodes, edges = export_pose_graph_for_vis(pose_graph)

    fig, ax = plt.subplots()
    ax.set_aspect("equal")

    for kind, a, b in _segments(nodes, edges):
        color, ls, lw, alpha = _EDGE_STYLES[kind]
        ax.plot([a[0], b[0]], [a[1], b[1]], color=color, linestyle=ls, linewidth=lw, alpha=alpha)

    xs, ys = [], []
    for n in nodes:
        x, y = float(n.position[0]), float(n.position[1])
        xs.append(x)
        ys.append(y)
        ax.scatter(x, y, s=25, c=_NODE_COLORS[n.key[0]])
        if show_headings:
            h = n.heading * heading_length
            ax.arrow(x, y, float(h[0]), float(h[1]), width=0.005, color=_NODE_COLORS[n.key[0]])
        if show_labels:
            ax.text(x + 0.05, y + 0.05, n.label, fontsize=6)

    ax.set_xlabel("x [m]")
    ax.set_ylabel("y [m]")
    ax.set_title("PoseGraph-JIT (2D / top-down)")

    if xs:
        (x0, x1), (y0, y1) = _equal_bounds([xs, ys])
        ax.set_xlim(x0, x1)
        ax.set_ylim(y0, y1)

    fig.tight_layout()
    if show:
        plt.show()
    return fig, ax


def plot_pose_graph_3d(pose_graph, show_labels: bool = True, show: bool = False):
    """
    3D visualization of the pose graph.

    :param pose_graph: The :class:`PoseGraph` to visualize.
    :param show_labels: Whether to draw node labels in 3D.
    :param show: Call ``plt.show()`` before returning.
    :return: ``(fig, ax)``.
    """
    nodes, edges = export_pose_graph_for_vis(pose_graph)

    fig = plt.figure()
    ax = fig.add_subplot(111, projection="3d")

    for kind, a, b in _segments(nodes, edges):
        color, ls, lw, alpha = _EDGE_STYLES[kind]
        ax.plot(
            [a[0], b[0]], [a[1], b[1]], [a[2], b[2]],
            color=color, linestyle=ls, linewidth=lw, alpha=alpha,
        )

    xs, ys, zs = [], [], []
    for n in nodes:
        x, y, z = map(float, n.position[:3])
        xs.append(x)
        ys.append(y)
        zs.append(z)
        ax.scatter(x, y, z, s=30, c=_NODE_COLORS[n.key[0]])
        if show_labels:
            ax.text(x, y, z, n.label, fontsize=6)

    ax.set_xlabel("x [m]")
    ax.set_ylabel("y [m]")
    ax.set_zlabel("z [m]")
    ax.set_title("PoseGraph-JIT (3D)")

    if xs:
        (x0, x1), (y0, y1), (z0, z1) = _equal_bounds([xs, ys, zs])
        ax.set_xlim(x0, x1)
        ax.set_ylim(y0, y1)
        ax.set_zlim(z0, z1)

    if show:
        plt.show()
    return fig, ax
