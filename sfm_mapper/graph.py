from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Set, Tuple, Union, TYPE_CHECKING
import logging

import cv2
import numpy as np
import gtsam

from .config import MapperConfig
from .errors import (InsufficientCorrespondences, NoAssociableState, PerspectiveSolveFailed)
from .layout import CameraCalibration, LandmarkLayout, landmark_corners_local
from .models import (CameraModel, InputBatch, Keyframe, LandmarkDetection, OdometryDelta,
                     landmark_key, state_key)
from .pnp import (CV_FROM_CANONICAL, camera_to_robot_pose, estimate_landmark_in_camera,
                  solve_multi_landmark_pose)
from .robust import gaussian_from_covariance, pixel_noise, pose_sigmas, robustify
from .sync import TimeKeyMap

if TYPE_CHECKING:
    from .mapper import MapperContext

logger = logging.getLogger("sfm_mapper.graph")

MIN_DEPTH = 1e-6

# Optical frame (x right, y down, z forward) expressed in the canonical camera frame
CAMERA_T_OPTICAL = gtsam.Pose3(gtsam.Rot3(CV_FROM_CANONICAL.T), np.zeros(3))


class FactorKind(str, Enum):
    ORIGIN_PRIOR = "origin_prior"
    ODOMETRY = "odometry"
    PROJECTION = "projection"
    ANCHOR_PRIOR = "anchor_prior"
    LAYOUT_PRIOR = "layout_prior"


@dataclass(frozen=True)
class CornerObservation:
    pixel: np.ndarray  # undistorted pixel (2,)
    corner: np.ndarray  # corner in the landmark frame (3,)
    camera: CameraModel
    extrinsic: gtsam.Pose3 = field(init=False, repr=False, compare=False)  # robot -> optical
    calibration: gtsam.Cal3_S2 = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "extrinsic", self.camera.robot_to_camera.compose(CAMERA_T_OPTICAL))
        object.__setattr__(self, "calibration", self.camera.calibration())


Measurement = Union[gtsam.Pose3, CornerObservation]


@dataclass(frozen=True)
class FactorRecord:
    """Graph factor as plain data: what it measures and which keys it touches."""
    kind: FactorKind
    keys: Tuple[int, ...]
    measurement: Measurement
    noise: object


@dataclass
class StagedBatch:
    """Everything one ``optimize`` call would add, held apart until the solve succeeds."""
    time_map: TimeKeyMap
    latest_key: Optional[int]
    next_state_index: int
    records: List[FactorRecord] = field(default_factory=list)
    values: gtsam.Values = field(default_factory=gtsam.Values)
    new_landmarks: Set[int] = field(default_factory=set)
    unsupported: Set[int] = field(default_factory=set)
    pending: List[Keyframe] = field(default_factory=list)
    accepted_keyframes: int = 0
    new_states: List[int] = field(default_factory=list)
    counts: Counter = field(default_factory=Counter)

    def is_empty(self) -> bool:
        return not self.records and self.values.size() == 0


def project_corner(state: gtsam.Pose3, landmark: gtsam.Pose3, obs: CornerObservation,
                   H_state: Optional[np.ndarray] = None,
                   H_landmark: Optional[np.ndarray] = None) -> Optional[np.ndarray]:
    """Pixel of a landmark corner seen from ``state``; None when behind the camera.

    ``H_state`` / ``H_landmark`` are optional 2x6 Fortran-ordered buffers that
    receive the derivatives with respect to the two poses, chained from the
    GTSAM compose, transformFrom and camera projection Jacobians.
    """
    D_landmark = np.zeros((3, 6), order="F")
    D_corner = np.zeros((3, 3), order="F")
    world_corner = landmark.transformFrom(obs.corner, D_landmark, D_corner)

    D_state = np.zeros((6, 6), order="F")
    D_extrinsic = np.zeros((6, 6), order="F")
    optical = state.compose(obs.extrinsic, D_state, D_extrinsic)
    if optical.transformTo(world_corner)[2] <= MIN_DEPTH:
        return None

    D_pose = np.zeros((2, 6), order="F")
    D_point = np.zeros((2, 3), order="F")
    D_cal = np.zeros((2, 5), order="F")
    pixel = gtsam.PinholeCameraCal3_S2(optical, obs.calibration).project(world_corner, D_pose, D_point, D_cal)
    if H_state is not None:
        H_state[:, :] = D_pose @ D_state
    if H_landmark is not None:
        H_landmark[:, :] = D_point @ D_landmark
    return np.asarray(pixel, dtype=float)


def _projection_error(obs: CornerObservation):
    behind = np.full(2, 2.0 * obs.camera.fx)

    def error(this: gtsam.CustomFactor, values: gtsam.Values, H: Optional[List[np.ndarray]]):
        keys = this.keys()
        state = values.atPose3(keys[0])
        landmark = values.atPose3(keys[1])
        if H is None:
            pixel = project_corner(state, landmark, obs)
        else:
            H_state = np.zeros((2, 6), order="F")
            H_landmark = np.zeros((2, 6), order="F")
            pixel = project_corner(state, landmark, obs, H_state, H_landmark)
        if pixel is None:
            # Same convention as GTSAM's projection factors without cheirality throws
            if H is not None:
                H[0] = np.zeros((2, 6), order="F")
                H[1] = np.zeros((2, 6), order="F")
            return behind
        if H is not None:
            H[0] = H_state
            H[1] = H_landmark
        return pixel - obs.pixel

    return error


def to_gtsam_factor(record: FactorRecord):
    """Build a fresh GTSAM factor for a record.

    A new object is created on every call so the same factor instance is never
    shared between two graphs.
    """
    if record.kind in (FactorKind.ORIGIN_PRIOR, FactorKind.ANCHOR_PRIOR, FactorKind.LAYOUT_PRIOR):
        return gtsam.PriorFactorPose3(record.keys[0], record.measurement, record.noise)
    if record.kind == FactorKind.ODOMETRY:
        return gtsam.BetweenFactorPose3(record.keys[0], record.keys[1], record.measurement, record.noise)
    if record.kind == FactorKind.PROJECTION:
        return gtsam.CustomFactor(record.noise, list(record.keys),
                                  _projection_error(record.measurement))
    raise ValueError(f"Unsupported factor kind: {record.kind}")


def build_graph(records: Iterable[FactorRecord]) -> gtsam.NonlinearFactorGraph:
    graph = gtsam.NonlinearFactorGraph()
    for record in records:
        graph.add(to_gtsam_factor(record))
    return graph


def undistort_corners(corners: np.ndarray, camera: CameraModel) -> np.ndarray:
    corners = np.asarray(corners, dtype=np.float64)
    if not camera.has_distortion():
        return corners.copy()
    pts = cv2.undistortPoints(corners.reshape(-1, 1, 2), camera.matrix(), camera.distortion,
                              P=camera.matrix())
    return pts.reshape(-1, 2)


class FactorGraphBuilder:
    """Turns odometry deltas and keyframes into factor records and initial values.

    Building never touches the mapper context; it returns a ``StagedBatch``
    that the mapper commits once the incremental solve has succeeded.
    """

    def __init__(self, layout: LandmarkLayout, calibration: CameraCalibration, config: MapperConfig):
        missing = [t for t in config.fixed_landmarks if layout.position(t) is None]
        if missing:
            raise ValueError(f"Fixed landmarks without a layout entry: {missing}")
        self.layout = layout
        self.calibration = calibration
        self.config = config
        self.anchors: Set[int] = set(config.fixed_landmarks)
        self._odom_noise = pose_sigmas(config.odom_rotation_sigma, config.odom_translation_sigma)
        self._origin_noise = pose_sigmas(config.origin_rotation_sigma, config.origin_translation_sigma)
        self._anchor_noise = pose_sigmas(config.anchor_sigma, config.anchor_sigma)
        self._layout_noise = pose_sigmas(config.layout_rotation_sigma, config.layout_translation_sigma)
        self._camera_noise = robustify(pixel_noise(config.camera_pixel_sigma),
                                       config.camera_robust, config.camera_robust_k)
        self._corners_local = landmark_corners_local(config.tag_size)

    def stage(self, context: "MapperContext", batch: InputBatch) -> StagedBatch:
        staged = StagedBatch(
            time_map=context.time_map.copy(),
            latest_key=context.latest_key,
            next_state_index=context.next_state_index,
        )
        self.add_odometry_factors(context, staged, batch.odometry)
        self.add_keyframe_factors(context, staged, list(context.pending_keyframes) + list(batch.keyframes))
        return staged

    def best_pose(self, context: "MapperContext", staged: StagedBatch, key: int) -> gtsam.Pose3:
        if staged.values.exists(key):
            return staged.values.atPose3(key)
        return context.estimate.atPose3(key)

    # ---- odometry -------------------------------------------------------
    def add_odometry_factors(self, context: "MapperContext", staged: StagedBatch,
                             odometry: Iterable[OdometryDelta]) -> None:
        for odom in odometry:
            new_key = state_key(staged.next_state_index)
            try:
                staged.time_map.add(odom.time, new_key)
            except ValueError as e:
                logger.warning("Dropping odometry delta: %s", e)
                staged.counts["dropped_odometry"] += 1
                continue
            if staged.latest_key is None:
                guess = gtsam.Pose3().compose(odom.delta)
                staged.records.append(FactorRecord(FactorKind.ORIGIN_PRIOR, (new_key,), guess,
                                                   self._origin_noise))
                staged.counts["origin_prior"] += 1
            else:
                prev = self.best_pose(context, staged, staged.latest_key)
                guess = prev.compose(odom.delta)
                noise = (gaussian_from_covariance(odom.covariance)
                         if odom.covariance is not None else self._odom_noise)
                staged.records.append(FactorRecord(FactorKind.ODOMETRY, (staged.latest_key, new_key),
                                                   odom.delta, noise))
                staged.counts["odometry"] += 1
            staged.values.insert(new_key, guess)
            staged.new_states.append(new_key)
            staged.latest_key = new_key
            staged.next_state_index += 1
            logger.debug("Odometry t=%s -> state %d", odom.time, staged.next_state_index - 1)

    # ---- keyframes ------------------------------------------------------
    def add_keyframe_factors(self, context: "MapperContext", staged: StagedBatch,
                             keyframes: Iterable[Keyframe]) -> None:
        for kf in keyframes:
            try:
                state = staged.time_map.nearest(kf.time)
            except NoAssociableState:
                staged.pending.append(kf)
                staged.counts["pending_keyframes"] += 1
                continue
            camera = self.calibration.camera(kf.camera_index)
            if camera is None:
                logger.warning("Dropping keyframe t=%s: no calibration for camera %d", kf.time, kf.camera_index)
                staged.counts["dropped_keyframes"] += 1
                continue
            state_pose = self.best_pose(context, staged, state)
            if state in staged.new_states and self._faces_away(context, staged, kf, camera, state_pose):
                state_pose = self._reseed_state(staged, state, kf, camera, state_pose)
            for det in kf.detections:
                lkey = self._ensure_landmark(context, staged, det, camera, state_pose)
                if lkey is None:
                    staged.counts["dropped_detections"] += 1
                    continue
                pixels = undistort_corners(det.corners, camera)
                for idx in range(4):
                    obs = CornerObservation(pixel=pixels[idx], corner=self._corners_local[idx], camera=camera)
                    staged.records.append(FactorRecord(FactorKind.PROJECTION, (state, lkey), obs,
                                                       self._camera_noise))
                staged.counts["projection"] += 4
            staged.accepted_keyframes += 1

    def _ensure_landmark(self, context: "MapperContext", staged: StagedBatch,
                         det: LandmarkDetection, camera: CameraModel,
                         state_pose: gtsam.Pose3) -> Optional[int]:
        lid = det.landmark_id
        lkey = landmark_key(lid)
        if lid in context.seeded_landmarks or lid in staged.new_landmarks:
            return lkey

        prior = self.layout.position(lid)
        if lid in self.anchors:
            staged.values.insert(lkey, prior)
            staged.records.append(FactorRecord(FactorKind.ANCHOR_PRIOR, (lkey,), prior, self._anchor_noise))
            staged.counts["anchor_prior"] += 1
            logger.debug("Pinned anchor landmark %d", lid)
        elif prior is not None:
            staged.values.insert(lkey, prior)
            staged.records.append(FactorRecord(FactorKind.LAYOUT_PRIOR, (lkey,), prior, self._layout_noise))
            staged.counts["layout_prior"] += 1
            logger.debug("Seeded landmark %d from layout", lid)
        elif not self.config.allow_unmapped_landmarks:
            if lid not in context.unsupported_landmarks and lid not in staged.unsupported:
                logger.warning("Landmark %d has no layout entry and unmapped landmarks are disabled", lid)
            staged.unsupported.add(lid)
            return None
        else:
            try:
                camera_T_landmark = estimate_landmark_in_camera(det, camera, self.config.tag_size)
            except PerspectiveSolveFailed as e:
                logger.warning("Cannot seed landmark %d: %s", lid, e)
                return None
            seeded = state_pose.compose(camera.robot_to_camera).compose(camera_T_landmark)
            staged.values.insert(lkey, seeded)
            logger.debug("Seeded landmark %d by back-projection", lid)
        staged.new_landmarks.add(lid)
        return lkey

    # ---- state reseeding ------------------------------------------------
    def _landmark_guess(self, context: "MapperContext", staged: StagedBatch,
                        landmark_id: int) -> Optional[gtsam.Pose3]:
        lkey = landmark_key(landmark_id)
        if staged.values.exists(lkey):
            return staged.values.atPose3(lkey)
        if context.estimate.exists(lkey):
            return context.estimate.atPose3(lkey)
        return self.layout.position(landmark_id)

    def _faces_away(self, context: "MapperContext", staged: StagedBatch, kf: Keyframe,
                    camera: CameraModel, state_pose: gtsam.Pose3) -> bool:
        """True when some observed landmark sits behind the camera at ``state_pose``."""
        camera_pose = state_pose.compose(camera.robot_to_camera)
        for det in kf.detections:
            guess = self._landmark_guess(context, staged, det.landmark_id)
            if guess is not None and camera_pose.transformTo(guess.translation())[0] <= MIN_DEPTH:
                return True
        return False

    def pose_from_landmarks(self, kf: Keyframe, camera: CameraModel) -> Optional[gtsam.Pose3]:
        """Robot pose implied by the keyframe's layout landmarks, multi-landmark PnP first."""
        try:
            result = solve_multi_landmark_pose(kf.detections, self.layout, camera, self.config.tag_size)
            return camera_to_robot_pose(result.camera_pose, camera)
        except (InsufficientCorrespondences, PerspectiveSolveFailed) as e:
            logger.debug("Multi-landmark seed unavailable for t=%s: %s", kf.time, e)
        for det in kf.detections:
            prior = self.layout.position(det.landmark_id)
            if prior is None:
                continue
            try:
                camera_T_landmark = estimate_landmark_in_camera(det, camera, self.config.tag_size)
            except PerspectiveSolveFailed:
                continue
            return camera_to_robot_pose(prior.compose(camera_T_landmark.inverse()), camera)
        return None

    def _reseed_state(self, staged: StagedBatch, state: int, kf: Keyframe,
                      camera: CameraModel, state_pose: gtsam.Pose3) -> gtsam.Pose3:
        pose = self.pose_from_landmarks(kf, camera)
        if pose is None:
            logger.warning("State %s faces away from its landmarks and no PnP seed is available",
                           gtsam.Symbol(state).string())
            return state_pose
        staged.values.update(state, pose)
        # Origin prior is re-centred on the new seed
        for idx, record in enumerate(staged.records):
            if record.kind == FactorKind.ORIGIN_PRIOR and record.keys == (state,):
                staged.records[idx] = FactorRecord(FactorKind.ORIGIN_PRIOR, (state,), pose, record.noise)
        staged.counts["reseeded_states"] += 1
        logger.info("Reseeded state %s from keyframe t=%s", gtsam.Symbol(state).string(), kf.time)
        return pose
