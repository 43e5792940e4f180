# Copyright (c) 2025.
# This file is part of PoseGraph-JIT, released under the MIT License.

import time

import jax.numpy as jnp

from posegraph_jit.core.types import Pose3
from posegraph_jit.optimization.solvers import LMConfig
from posegraph_jit.world.pose_graph import PoseGraph, PoseGraphConfig


def build_pose_chain(num_keyframes: int = 10) -> PoseGraph:
    """
    Keyframe chain anchored at keyframe 0:
        kf0 --rel--> kf1 --rel--> ... --rel--> kf_{N-1}
    Relative edges of +1 m in x with a slight yaw, plus a loop closure
    between the last and the first keyframe. Initial guesses are perturbed.
    """
    pg = PoseGraph(PoseGraphConfig(solver=LMConfig(max_iters=50)))
    step = Pose3.from_rotvec([0.0, 0.0, 2.0 * jnp.pi / num_keyframes], [1.0, 0.0, 0.0])

    ids = [pg.add_keyframe()]
    pg.fix_keyframe(ids[0])
    for i in range(1, num_keyframes):
        guess = Pose3.from_rotvec(
            [0.0, 0.0, 0.05 * jnp.sin(0.3 * i) + 2.0 * jnp.pi * i / num_keyframes],
            [i + 0.1 * jnp.sin(0.3 * i), 0.05 * jnp.cos(0.2 * i), 0.0],
        )
        ids.append(pg.add_keyframe(guess))
        pg.add_binary_edge(ids[i - 1], ids[i], step)

    # Closing the circle
    pg.add_binary_edge(ids[-1], ids[0], step)
    return pg


def run_benchmark(num_keyframes: int = 50):
    print("=== Levenberg-Marquardt Pose Chain Benchmark ===")
    print(f"num_keyframes = {num_keyframes}")

    # Warmup: compiles the residual, Jacobian and retraction
    build_pose_chain(num_keyframes).solve()

    pg = build_pose_chain(num_keyframes)
    t0 = time.time()
    summary = pg.solve()
    t1 = time.time()

    print(f"Elapsed time: {(t1 - t0) * 1000:.3f} ms")
    print(summary.brief_report())

    poses = pg.keyframe_poses()
    print(f"kf0 (opt):   {poses[0]}")
    print(f"kfN-1 (opt): {poses[-1]}")


if __name__ == "__main__":
    run_benchmark(num_keyframes=50)
