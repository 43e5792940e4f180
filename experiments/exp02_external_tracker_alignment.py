import logging
import time

import jax.numpy as jnp

from posegraph_jit.core.types import Pose3
from posegraph_jit.world.pose_graph import PoseGraph
from posegraph_jit.world.visualization import plot_pose_graph_3d


def main():
    """
    Align an external tracker with a visual-odometry trajectory.

    The tracker reports some keyframe poses in its own coordinate frame z,
    whose offset T_wz is unknown. Its rotation is estimated from the start;
    its translation only once enough keyframes have been observed.
    """
    logging.basicConfig(level=logging.INFO)

    T_wz_true = Pose3.from_rotvec([0.0, 0.0, 0.8], [5.0, -3.0, 1.0])
    step = Pose3.from_rotvec([0.0, 0.0, 0.15], [0.8, 0.0, 0.05])

    pg = PoseGraph()
    kf0 = pg.add_keyframe(name="kf0")
    pg.fix_keyframe(kf0)
    tracker = pg.add_secondary_coordinate_frame(name="tracker")

    truth = [Pose3.identity()]
    ids = [kf0]
    for i in range(1, 12):
        ids.append(pg.add_relative_keyframe(ids[-1], step))
        truth.append(truth[-1] * step)

        if i % 3 == 0:
            T_zk = T_wz_true.inverse() * truth[-1]
            pg.add_indirect_unary_edge(ids[-1], tracker, T_zk)

        # Keep the graph optimized while keyframes keep arriving
        pg.start()
        time.sleep(0.01)

    pg.stop()
    pg.set_secondary_coordinate_frame_free(tracker)
    summary = pg.solve()
    print(summary.brief_report())

    T_wz = pg.get_secondary_coordinate_frame(tracker).pose
    print("Estimated T_wz:", T_wz)
    print("True T_wz:     ", T_wz_true)
    print("Translation error [m]:", float(jnp.linalg.norm(T_wz.translation - T_wz_true.translation)))

    plot_pose_graph_3d(pg, show=True)


if __name__ == "__main__":
    main()
