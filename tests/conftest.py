"""Shared synthetic scene for the mapper tests.

Pixels are produced with a plain pinhole model written out here (canonical
X forward, Y left, Z up; image u right, v down) so the tests do not reuse the
package's own projection code.
"""
from __future__ import annotations

import numpy as np
import gtsam
import pytest

from sfm_mapper.config import MapperConfig
from sfm_mapper.layout import CameraCalibration, LandmarkLayout, landmark_corners_world
from sfm_mapper.models import CameraModel, LandmarkDetection

TAG_SIZE = 0.1524


def facing_robot(x: float, y: float, z: float, yaw_offset: float = 0.0) -> gtsam.Pose3:
    """Landmark at (x, y, z) whose face looks back along world -X."""
    return gtsam.Pose3(gtsam.Rot3.Yaw(np.pi + yaw_offset), np.array([x, y, z], dtype=float))


def project_point(robot_pose: gtsam.Pose3, camera: CameraModel, world_point) -> np.ndarray:
    cam = robot_pose.compose(camera.robot_to_camera)
    fwd, left, up = np.asarray(cam.transformTo(np.asarray(world_point, dtype=float)), dtype=float)
    assert fwd > 0.0, "synthetic point behind the camera"
    return np.array([camera.fx * (-left) / fwd + camera.cx,
                     camera.fy * (-up) / fwd + camera.cy])


def detect(robot_pose: gtsam.Pose3, camera: CameraModel, landmark_id: int,
           landmark_pose: gtsam.Pose3, tag_size: float = TAG_SIZE) -> LandmarkDetection:
    corners = landmark_corners_world(landmark_pose, tag_size)
    return LandmarkDetection(landmark_id, np.array([project_point(robot_pose, camera, c) for c in corners]))


@pytest.fixture
def camera() -> CameraModel:
    return CameraModel(fx=600.0, fy=600.0, cx=320.0, cy=240.0,
                       robot_to_camera=gtsam.Pose3(gtsam.Rot3(), np.array([0.2, 0.0, 0.3])))


@pytest.fixture
def calibration(camera) -> CameraCalibration:
    return CameraCalibration({0: camera})


@pytest.fixture
def layout() -> LandmarkLayout:
    return LandmarkLayout({
        1: facing_robot(3.0, 0.5, 0.4),
        2: facing_robot(4.0, -0.6, 0.6),
        3: facing_robot(3.5, 0.0, 1.0),
    })


@pytest.fixture
def config() -> MapperConfig:
    return MapperConfig(fixed_landmarks=[1])


@pytest.fixture
def scene():
    """Bundle the synthetic helpers so tests can take them as one fixture."""
    class _Scene:
        pass

    s = _Scene()
    s.detect = detect
    s.project_point = project_point
    s.facing_robot = facing_robot
    s.tag_size = TAG_SIZE
    return s
