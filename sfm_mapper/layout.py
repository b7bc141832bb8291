"""Prior landmark layout and camera calibration loading.

The layout file follows the WPILib ``AprilTagFieldLayout`` JSON schema::

    {"tags": [{"ID": 1, "pose": {"translation": {"x": .., "y": .., "z": ..},
               "rotation": {"quaternion": {"W": .., "X": .., "Y": .., "Z": ..}}}}],
     "field": {"length": .., "width": ..}}

Calibration files hold ``{"cameras": [{"index", "fx", "fy", "cx", "cy",
"distortion", "extrinsic": {"translation", "rotation"}}]}`` where the
extrinsic is the robot-to-camera transform in the canonical frame.
"""
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import gtsam

from .models import Quaternion, Translation, CameraModel, pose_from

logger = logging.getLogger("sfm_mapper.layout")


def landmark_corners_local(tag_size: float) -> np.ndarray:
    """Corner positions (4x3) in the landmark frame.

    The landmark's X axis points out of its face; corners lie in the local
    Y-Z plane ordered (-h,-h), (+h,-h), (+h,+h), (-h,+h).
    """
    h = 0.5 * tag_size
    return np.array([
        [0.0, -h, -h],
        [0.0, +h, -h],
        [0.0, +h, +h],
        [0.0, -h, +h],
    ], dtype=float)


def landmark_corners_world(pose: gtsam.Pose3, tag_size: float) -> np.ndarray:
    return np.array([pose.transformFrom(c) for c in landmark_corners_local(tag_size)], dtype=float)


def q_from_list(q: List[float], order: str) -> Quaternion:
    if order == "wxyz":
        if len(q) != 4: raise ValueError("Quaternion must be [w,x,y,z]")
        return Quaternion(q[0], q[1], q[2], q[3])
    elif order == "xyzw":
        if len(q) != 4: raise ValueError("Quaternion must be [x,y,z,w]")
        return Quaternion(q[3], q[0], q[1], q[2])
    else:
        raise ValueError(f"Unsupported quaternion order: {order}")


def t_from_list(t: List[float]) -> Translation:
    if len(t) != 3: raise ValueError("Translation must be [x,y,z]")
    return Translation(t[0], t[1], t[2])


class LandmarkLayout:
    """Known (or approximate) landmark poses keyed by landmark id."""

    def __init__(self, poses: Optional[Dict[int, gtsam.Pose3]] = None,
                 field_length: float = 0.0, field_width: float = 0.0):
        self._poses: Dict[int, gtsam.Pose3] = dict(poses or {})
        self.field_length = field_length
        self.field_width = field_width

    def position(self, landmark_id: int) -> Optional[gtsam.Pose3]:
        return self._poses.get(int(landmark_id))

    def corners(self, landmark_id: int, tag_size: float) -> Optional[np.ndarray]:
        pose = self.position(landmark_id)
        if pose is None:
            return None
        return landmark_corners_world(pose, tag_size)

    def ids(self) -> List[int]:
        return sorted(self._poses)

    def __contains__(self, landmark_id) -> bool:
        return int(landmark_id) in self._poses

    def __len__(self) -> int:
        return len(self._poses)

    @classmethod
    def from_json_dict(cls, data: Dict[str, Any]) -> "LandmarkLayout":
        poses: Dict[int, gtsam.Pose3] = {}
        for idx, tag in enumerate(data.get("tags", []) or []):
            try:
                tid = int(tag["ID"])
                tr = tag["pose"]["translation"]
                q = tag["pose"]["rotation"]["quaternion"]
                pose = pose_from(Quaternion(q["W"], q["X"], q["Y"], q["Z"]),
                                 Translation(tr["x"], tr["y"], tr["z"]))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed layout tag[%d]: %s", idx, e)
                continue
            if tid in poses:
                logger.warning("Duplicate layout entry for landmark %d; keeping the first", tid)
                continue
            poses[tid] = pose
        fld = data.get("field", {}) or {}
        return cls(poses, float(fld.get("length", 0.0)), float(fld.get("width", 0.0)))

    def to_json_dict(self) -> Dict[str, Any]:
        tags = []
        for tid in self.ids():
            pose = self._poses[tid]
            t = pose.translation()
            q = pose.rotation().quaternion()  # [w, x, y, z]
            tags.append({
                "ID": tid,
                "pose": {
                    "translation": {"x": float(t[0]), "y": float(t[1]), "z": float(t[2])},
                    "rotation": {"quaternion": {"W": float(q[0]), "X": float(q[1]),
                                                "Y": float(q[2]), "Z": float(q[3])}},
                },
            })
        return {"tags": tags, "field": {"length": self.field_length, "width": self.field_width}}

    def with_poses(self, poses: Dict[int, gtsam.Pose3]) -> "LandmarkLayout":
        """Copy of this layout with ``poses`` replacing (or adding) entries."""
        merged = dict(self._poses)
        merged.update(poses)
        return LandmarkLayout(merged, self.field_length, self.field_width)


def load_layout(path: str) -> LandmarkLayout:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    layout = LandmarkLayout.from_json_dict(data)
    logger.info("Loaded %d landmark(s) from %s", len(layout), path)
    return layout


def save_layout(layout: LandmarkLayout, path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(layout.to_json_dict(), f, indent=2)


class CameraCalibration:
    """Per-camera intrinsics and extrinsics looked up by camera index."""

    def __init__(self, cameras: Optional[Dict[int, CameraModel]] = None):
        self._cameras: Dict[int, CameraModel] = dict(cameras or {})

    def camera(self, index: int) -> Optional[CameraModel]:
        return self._cameras.get(int(index))

    def indices(self) -> Iterable[int]:
        return sorted(self._cameras)

    def __len__(self) -> int:
        return len(self._cameras)


def _parse_camera(entry: Dict[str, Any], quaternion_order: str) -> CameraModel:
    extr = entry.get("extrinsic", {}) or {}
    if extr:
        rot = q_from_list(extr.get("rotation", [1.0, 0.0, 0.0, 0.0] if quaternion_order == "wxyz"
                                    else [0.0, 0.0, 0.0, 1.0]), quaternion_order)
        trans = t_from_list(extr.get("translation", [0.0, 0.0, 0.0]))
        robot_to_camera = pose_from(rot, trans)
    else:
        robot_to_camera = gtsam.Pose3()
    return CameraModel(
        fx=float(entry["fx"]),
        fy=float(entry["fy"]),
        cx=float(entry["cx"]),
        cy=float(entry["cy"]),
        distortion=np.asarray(entry.get("distortion", []) or [], dtype=float),
        robot_to_camera=robot_to_camera,
    )


def calibration_from_json_dict(data: Dict[str, Any], quaternion_order: str = "wxyz") -> CameraCalibration:
    cameras: Dict[int, CameraModel] = {}
    for idx, entry in enumerate(data.get("cameras", []) or []):
        try:
            cam_idx = int(entry.get("index", idx))
            cameras[cam_idx] = _parse_camera(entry, quaternion_order)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed camera[%d]: %s", idx, e)
    return CameraCalibration(cameras)


def load_cameras(path: str, quaternion_order: str = "wxyz") -> CameraCalibration:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    calib = calibration_from_json_dict(data, quaternion_order)
    logger.info("Loaded %d camera calibration(s) from %s", len(calib), path)
    return calib
