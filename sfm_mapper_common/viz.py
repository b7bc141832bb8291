from typing import Dict, Optional

import numpy as np
import gtsam

import matplotlib
matplotlib.use("Agg")  # for headless export
import matplotlib.pyplot as plt


def trajectory_xyz(result) -> np.ndarray:
    coords = [np.asarray(p.pose.translation(), dtype=float) for p in result.trajectory]
    if not coords:
        return np.zeros((0, 3))
    return np.asarray(coords)


def _landmark_xy(landmarks: Dict[int, gtsam.Pose3]):
    ids = sorted(landmarks)
    xy = np.array([np.asarray(landmarks[i].translation())[:2] for i in ids]) if ids else np.zeros((0, 2))
    return ids, xy


def plot_map_2d(result, path_png: str, prior: Optional[Dict[int, gtsam.Pose3]] = None):
    """Top-down view of the estimated trajectory and landmark map."""
    traj = trajectory_xyz(result)
    plt.figure(figsize=(8, 6))
    if len(traj):
        plt.plot(traj[:, 0], traj[:, 1], label="trajectory")
    ids, xy = _landmark_xy(result.landmarks)
    if len(ids):
        plt.scatter(xy[:, 0], xy[:, 1], marker="s", label="landmarks (est)")
        for lid, (x, y) in zip(ids, xy):
            plt.annotate(str(lid), (x, y), textcoords="offset points", xytext=(4, 4), fontsize=8)
    if prior:
        pids, pxy = _landmark_xy(prior)
        if len(pids):
            plt.scatter(pxy[:, 0], pxy[:, 1], marker="x", label="landmarks (prior)")
    plt.axis('equal')
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    plt.legend()
    plt.title("Trajectory and landmarks (XY)")
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()
