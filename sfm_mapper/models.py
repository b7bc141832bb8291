from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Set, Union
import numpy as np

import gtsam

Timestamp = Union[int, float]

X = gtsam.symbol_shorthand.X
L = gtsam.symbol_shorthand.L


def state_key(index: int) -> int:
    """Key of the ``index``-th motion state (``x0``, ``x1``, ...)."""
    return X(index)


def landmark_key(landmark_id: int) -> int:
    """Key of a landmark node. Repeated sightings of an id share one node."""
    if landmark_id < 0:
        raise ValueError(f"Landmark ids must be non-negative, got {landmark_id}")
    return L(landmark_id)


@dataclass
class Quaternion:
    """Quaternion in [w, x, y, z] order."""
    w: float
    x: float
    y: float
    z: float

    def to_rot3(self) -> gtsam.Rot3:
        return gtsam.Rot3.Quaternion(self.w, self.x, self.y, self.z)


@dataclass
class Translation:
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)


def pose_from(rot: Quaternion, trans: Translation) -> gtsam.Pose3:
    return gtsam.Pose3(rot.to_rot3(), trans.to_numpy())


def pose_to_dict(pose: gtsam.Pose3) -> Dict[str, List[float]]:
    q = pose.rotation().quaternion()  # [w, x, y, z]
    t = pose.translation()
    return {
        "translation": [float(t[0]), float(t[1]), float(t[2])],
        "rotation": [float(q[0]), float(q[1]), float(q[2]), float(q[3])],
    }


@dataclass
class LandmarkDetection:
    """One landmark seen in one image: its id and 4 ordered pixel corners."""
    landmark_id: int
    corners: np.ndarray  # 4x2 pixels

    def __post_init__(self):
        corners = np.asarray(self.corners, dtype=float)
        if corners.shape != (4, 2):
            raise ValueError(f"Expected 4x2 corners for landmark {self.landmark_id}, got shape {corners.shape}")
        self.corners = corners
        self.landmark_id = int(self.landmark_id)


@dataclass
class Keyframe:
    time: Timestamp
    camera_index: int
    detections: List[LandmarkDetection] = field(default_factory=list)


@dataclass
class OdometryDelta:
    """Relative motion since the previous motion state.

    ``covariance`` (6x6, rotation block first as in GTSAM's Pose3 tangent
    space) overrides the configured odometry noise when present.
    """
    time: Timestamp
    delta: gtsam.Pose3
    covariance: Optional[np.ndarray] = None


@dataclass
class CameraModel:
    fx: float
    fy: float
    cx: float
    cy: float
    distortion: np.ndarray = field(default_factory=lambda: np.zeros(5))
    robot_to_camera: gtsam.Pose3 = field(default_factory=gtsam.Pose3)

    def __post_init__(self):
        self.distortion = np.asarray(self.distortion, dtype=float).reshape(-1)

    def matrix(self) -> np.ndarray:
        return np.array([[self.fx, 0.0, self.cx],
                         [0.0, self.fy, self.cy],
                         [0.0, 0.0, 1.0]], dtype=float)

    def calibration(self) -> gtsam.Cal3_S2:
        return gtsam.Cal3_S2(self.fx, self.fy, 0.0, self.cx, self.cy)

    def has_distortion(self) -> bool:
        return self.distortion.size > 0 and bool(np.any(self.distortion != 0.0))

    def dist_coeffs(self) -> Optional[np.ndarray]:
        """Distortion vector for OpenCV calls, None when the lens is ideal."""
        return self.distortion if self.has_distortion() else None


@dataclass
class InputBatch:
    """One round of measurements handed to ``SfmMapper.optimize``."""
    odometry: List[OdometryDelta] = field(default_factory=list)
    keyframes: List[Keyframe] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.odometry and not self.keyframes


class EstimatorPhase(str, Enum):
    EMPTY = "empty"
    INITIALIZED = "initialized"
    CONVERGED = "converged"


@dataclass
class TrajectoryPoint:
    time: Timestamp
    key: int
    pose: gtsam.Pose3


@dataclass
class MapperResult:
    """Snapshot of the estimate returned from each ``optimize`` call."""
    phase: EstimatorPhase
    trajectory: List[TrajectoryPoint] = field(default_factory=list)
    landmarks: Dict[int, gtsam.Pose3] = field(default_factory=dict)
    has_vision: bool = False
    pending_keyframes: int = 0
    unsupported_landmarks: Set[int] = field(default_factory=set)
    batch_id: int = 0

    @property
    def latest_pose(self) -> Optional[gtsam.Pose3]:
        if not self.trajectory:
            return None
        return self.trajectory[-1].pose

    def keys(self) -> Set[int]:
        out = {p.key for p in self.trajectory}
        out.update(landmark_key(lid) for lid in self.landmarks)
        return out

    def to_json_dict(self) -> Dict[str, object]:
        return {
            "phase": self.phase.value,
            "batch_id": self.batch_id,
            "has_vision": self.has_vision,
            "pending_keyframes": self.pending_keyframes,
            "unsupported_landmarks": sorted(self.unsupported_landmarks),
            "trajectory": [
                {"time": p.time, **pose_to_dict(p.pose)} for p in self.trajectory
            ],
            "landmarks": {
                str(lid): pose_to_dict(pose) for lid, pose in sorted(self.landmarks.items())
            },
        }


def to_covariance(cov_list) -> np.ndarray:
    """Convert a flat list (36) or nested list (6x6) to a 6x6 ndarray."""
    arr = np.asarray(cov_list, dtype=float)
    if arr.size == 36 and arr.ndim == 1:
        return arr.reshape(6, 6)
    if arr.size == 36 and arr.ndim == 2 and arr.shape == (6, 6):
        return arr
    raise ValueError(f"Expected 36 elements for a 6x6 covariance, got shape {arr.shape} size {arr.size}")
