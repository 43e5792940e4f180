import logging

import jax.numpy as jnp

from posegraph_jit.core.types import Pose3
from posegraph_jit.world.pose_graph import PoseGraph
from posegraph_jit.world.visualization import plot_pose_graph_2d


def build_demo_graph(num_keyframes: int = 6) -> PoseGraph:
    pg = PoseGraph()

    # Anchor: the first keyframe fixes the gauge
    kf0 = pg.add_keyframe(name="kf0")
    pg.fix_keyframe(kf0)

    # Relative keyframes: 1 m forward and a 60° turn each
    step = Pose3.from_rotvec([0.0, 0.0, jnp.pi / 3], [1.0, 0.0, 0.0])
    ids = [kf0]
    for _ in range(num_keyframes - 1):
        ids.append(pg.add_relative_keyframe(ids[-1], step))

    # Loop closure, slightly inconsistent with the odometry
    closure = Pose3.from_rotvec([0.0, 0.0, jnp.pi / 3 + 0.05], [1.05, 0.0, 0.0])
    pg.add_binary_edge(ids[-1], ids[0], closure)

    # Weak GPS-like fix on the keyframe half way round
    pg.add_unary_edge(ids[num_keyframes // 2], [1.0, 1.8, 0.0])
    return pg


def main():
    logging.basicConfig(level=logging.INFO)
    pg = build_demo_graph()

    summary = pg.solve()
    print(summary.full_report())

    print("Optimized keyframes:")
    for kf_id, pose in enumerate(pg.keyframe_poses()):
        print(kf_id, pose)

    plot_pose_graph_2d(pg, show=True)


if __name__ == "__main__":
    main()
