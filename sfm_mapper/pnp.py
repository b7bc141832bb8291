"""Camera pose from landmark corner correspondences.

OpenCV works in its camera convention (x right, y down, z forward) while the
rest of the mapper uses the canonical right-handed frame (X forward, Y left,
Z up). ``CV_FROM_CANONICAL`` maps canonical coordinates to OpenCV ones:
``(x, y, z) -> (-y, -z, x)``. Poses coming back from OpenCV are mapped with the
same permutation on both translation and rotation.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import cv2
import numpy as np
import gtsam

from .errors import InsufficientCorrespondences, PerspectiveSolveFailed
from .layout import LandmarkLayout, landmark_corners_local
from .models import CameraModel, LandmarkDetection

logger = logging.getLogger("sfm_mapper.pnp")

CV_FROM_CANONICAL = np.array([
    [0.0, -1.0, 0.0],
    [0.0, 0.0, -1.0],
    [1.0, 0.0, 0.0],
], dtype=float)

MIN_LANDMARKS = 2
CORNERS_PER_LANDMARK = 4


@dataclass
class PnPResult:
    camera_pose: gtsam.Pose3  # camera body in world, canonical frame
    landmark_ids: List[int]
    reprojection_error: float  # mean, px


def to_cv_point(p: np.ndarray) -> np.ndarray:
    return CV_FROM_CANONICAL @ np.asarray(p, dtype=float)


def pose_from_cv(rvec: np.ndarray, tvec: np.ndarray) -> gtsam.Pose3:
    """World pose of the camera from OpenCV's world->camera (rvec, tvec).

    Both the rotation and the translation are taken back through the same
    axis permutation the object points went through.
    """
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=float).reshape(3, 1))
    t = np.asarray(tvec, dtype=float).reshape(3)
    C = CV_FROM_CANONICAL
    R_inv = R.T
    t_inv = -R_inv @ t
    R_world = C.T @ R_inv @ C
    t_world = C.T @ t_inv
    return gtsam.Pose3(gtsam.Rot3(R_world), t_world)


def camera_to_robot_pose(camera_pose: gtsam.Pose3, camera: CameraModel) -> gtsam.Pose3:
    return camera_pose.compose(camera.robot_to_camera.inverse())


def _correspondences(detections: Iterable[LandmarkDetection],
                     layout: LandmarkLayout,
                     tag_size: float) -> Tuple[List[int], np.ndarray, np.ndarray]:
    ids: List[int] = []
    object_points: List[np.ndarray] = []
    image_points: List[np.ndarray] = []
    for det in detections:
        corners = layout.corners(det.landmark_id, tag_size)
        if corners is None:
            continue
        ids.append(det.landmark_id)
        for idx in range(CORNERS_PER_LANDMARK):
            object_points.append(to_cv_point(corners[idx]))
            image_points.append(det.corners[idx])
    if not object_points:
        return ids, np.zeros((0, 3)), np.zeros((0, 2))
    return ids, np.asarray(object_points, dtype=np.float64), np.asarray(image_points, dtype=np.float64)


def _mean_reprojection_error(object_points, image_points, rvec, tvec, camera: CameraModel) -> float:
    projected, _ = cv2.projectPoints(object_points, rvec, tvec, camera.matrix(), camera.dist_coeffs())
    return float(np.mean(np.linalg.norm(projected.reshape(-1, 2) - image_points, axis=1)))


def solve_multi_landmark_pose(detections: Iterable[LandmarkDetection],
                              layout: LandmarkLayout,
                              camera: Optional[CameraModel],
                              tag_size: float) -> PnPResult:
    """Single camera pose from the corners of every known landmark in view.

    Raises InsufficientCorrespondences for fewer than two known landmarks or a
    missing camera, and PerspectiveSolveFailed if SQPnP does not produce a
    finite solution.
    """
    if camera is None:
        raise InsufficientCorrespondences("No camera model supplied")
    ids, object_points, image_points = _correspondences(detections, layout, tag_size)
    if len(ids) < MIN_LANDMARKS or len(object_points) < MIN_LANDMARKS * CORNERS_PER_LANDMARK:
        raise InsufficientCorrespondences(
            f"Need corners of at least {MIN_LANDMARKS} known landmarks, got {len(ids)}")

    try:
        ok, rvec, tvec = cv2.solvePnP(object_points, image_points, camera.matrix(),
                                      camera.dist_coeffs(), flags=cv2.SOLVEPNP_SQPNP)
    except cv2.error as e:
        raise PerspectiveSolveFailed(f"solvePnP raised: {e}") from e
    if not ok or rvec is None or tvec is None:
        raise PerspectiveSolveFailed("solvePnP did not converge")
    if not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
        raise PerspectiveSolveFailed("solvePnP returned a non-finite pose")

    pose = pose_from_cv(rvec, tvec)
    if not np.all(np.isfinite(pose.matrix())):
        raise PerspectiveSolveFailed("Degenerate pose after axis conversion")
    err = _mean_reprojection_error(object_points, image_points, rvec, tvec, camera)
    logger.debug("Multi-landmark PnP over %s: mean reprojection error %.3f px", ids, err)
    return PnPResult(camera_pose=pose, landmark_ids=ids, reprojection_error=err)


def estimate_landmark_in_camera(detection: LandmarkDetection,
                                camera: CameraModel,
                                tag_size: float) -> gtsam.Pose3:
    """Landmark pose in the (canonical) camera frame from its own 4 corners."""
    object_points = landmark_corners_local(tag_size)
    image_points = np.asarray(detection.corners, dtype=np.float64)
    try:
        ok, rvec, tvec = cv2.solvePnP(object_points, image_points, camera.matrix(),
                                      camera.dist_coeffs(), flags=cv2.SOLVEPNP_IPPE)
    except cv2.error as e:
        raise PerspectiveSolveFailed(f"solvePnP raised for landmark {detection.landmark_id}: {e}") from e
    if not ok or not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
        raise PerspectiveSolveFailed(f"No planar pose for landmark {detection.landmark_id}")

    R, _ = cv2.Rodrigues(rvec)
    C = CV_FROM_CANONICAL
    t = np.asarray(tvec, dtype=float).reshape(3)
    if t[2] <= 0.0:
        raise PerspectiveSolveFailed(f"Landmark {detection.landmark_id} solved behind the camera")
    return gtsam.Pose3(gtsam.Rot3(C.T @ R), C.T @ t)
