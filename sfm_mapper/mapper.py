from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
import logging
import time

import gtsam

from .config import MapperConfig
from .errors import InsufficientCorrespondences, PerspectiveSolveFailed, SolverDivergence
from .graph import FactorGraphBuilder, FactorRecord, StagedBatch, build_graph
from .isam import IncrementalEstimator, update_translation_cache
from .layout import CameraCalibration, LandmarkLayout
from .models import (EstimatorPhase, InputBatch, Keyframe, MapperResult, TrajectoryPoint,
                     landmark_key)
from .pnp import camera_to_robot_pose, solve_multi_landmark_pose
from .sync import TimeKeyMap
from sfm_mapper_common.kpi_logging import KPILogger

logger = logging.getLogger("sfm_mapper.mapper")


@dataclass
class MapperContext:
    """Cross-call mutable state, owned by exactly one ``SfmMapper``.

    ``factors`` is the append-only arena of every committed factor record;
    its indices never change.
    """
    factors: List[FactorRecord] = field(default_factory=list)
    estimate: gtsam.Values = field(default_factory=gtsam.Values)
    time_map: TimeKeyMap = field(default_factory=TimeKeyMap)
    latest_key: Optional[int] = None
    next_state_index: int = 0
    seeded_landmarks: Set[int] = field(default_factory=set)
    unsupported_landmarks: Set[int] = field(default_factory=set)
    pending_keyframes: List[Keyframe] = field(default_factory=list)
    has_vision: bool = False
    batch_id: int = 0
    counts: Counter = field(default_factory=Counter)

    def known_keys(self) -> Set[int]:
        return {int(k) for k in self.estimate.keys()}

    def commit(self, staged: StagedBatch, estimate: Optional[gtsam.Values] = None,
               batch_id: Optional[int] = None) -> None:
        self.factors.extend(staged.records)
        if estimate is not None:
            self.estimate = estimate
        self.time_map = staged.time_map
        self.latest_key = staged.latest_key
        self.next_state_index = staged.next_state_index
        self.seeded_landmarks |= staged.new_landmarks
        self.unsupported_landmarks |= staged.unsupported
        self.pending_keyframes = staged.pending
        if staged.accepted_keyframes:
            self.has_vision = True
        self.counts.update(staged.counts)
        if batch_id is not None:
            self.batch_id = batch_id


class SfmMapper:
    """Fuses odometry deltas and landmark keyframes into a trajectory and landmark map.

    ``optimize`` is the only entry point and must not be called concurrently;
    callers with several input threads serialise them into one queue.
    """

    def __init__(self,
                 layout: LandmarkLayout,
                 calibration: CameraCalibration,
                 config: Optional[MapperConfig] = None,
                 kpi: Optional[KPILogger] = None):
        self.config = config or MapperConfig()
        self.layout = layout
        self.calibration = calibration
        self.builder = FactorGraphBuilder(layout, calibration, self.config)
        self.estimator = IncrementalEstimator(
            relinearize_threshold=self.config.relinearize_threshold,
            relinearize_skip=self.config.relinearize_skip,
            extra_iterations=self.config.extra_iterations,
            factorization=self.config.factorization,
        )
        self.context = MapperContext()
        self.kpi = kpi
        self._translation_cache: Dict[int, tuple] = {}
        self._result = MapperResult(phase=EstimatorPhase.EMPTY)
        self._busy = False

    @property
    def phase(self) -> EstimatorPhase:
        return self.estimator.phase

    @property
    def result(self) -> MapperResult:
        return self._result

    def optimize(self, batch: InputBatch) -> MapperResult:
        if self._busy:
            raise RuntimeError("SfmMapper.optimize is not reentrant")
        self._busy = True
        try:
            return self._optimize(batch)
        finally:
            self._busy = False

    def _optimize(self, batch: InputBatch) -> MapperResult:
        ctx = self.context
        if batch.is_empty():
            return self._result
        batch_id = ctx.batch_id + 1
        if self.kpi:
            self.kpi.batch_received(batch_id, len(batch.odometry), len(batch.keyframes),
                                    len(ctx.pending_keyframes))

        staged = self.builder.stage(ctx, batch)
        if not staged.time_map:
            # Nothing to estimate yet; keyframes wait for odometry
            ctx.pending_keyframes = staged.pending
            logger.info("No motion state yet; holding %d keyframe(s)", len(staged.pending))
            return self._publish(batch_id, staged)

        if staged.is_empty():
            ctx.commit(staged)
            return self._publish(batch_id, staged)

        graph = build_graph(staged.records)
        if self.kpi:
            self.kpi.optimization_start(batch_id, self.estimator.phase, staged.values.size(),
                                        Counter(r.kind.value for r in staged.records))
        start = time.perf_counter()
        try:
            estimate = self.estimator.update(graph, staged.values)
        except SolverDivergence as e:
            duration = time.perf_counter() - start
            logger.error("Batch %d rejected, keeping previous estimate: %s", batch_id, e)
            if self.kpi:
                self.kpi.optimization_failed(batch_id, self.estimator.phase, duration, str(e))
            self.estimator.reset(build_graph(ctx.factors), ctx.estimate)
            raise
        duration = time.perf_counter() - start

        ctx.commit(staged, estimate, batch_id)
        max_delta = update_translation_cache(self._translation_cache, estimate)
        if self.kpi:
            self.kpi.optimization_end(batch_id, self.estimator.phase, duration,
                                      updated_keys=estimate.size(), max_translation_delta=max_delta)
        logger.info("Batch %d: %d new factor(s), %d state(s), %d landmark(s) in %.3f s",
                    batch_id, len(staged.records), len(ctx.time_map), len(ctx.seeded_landmarks), duration)
        return self._publish(batch_id, staged)

    def _publish(self, batch_id: int, staged: StagedBatch) -> MapperResult:
        self._result = self._snapshot()
        if self.kpi:
            self.kpi.batch_outcome(batch_id, staged.counts, staged.unsupported)
            self.kpi.map_broadcast(self._result)
        return self._result

    def _snapshot(self) -> MapperResult:
        ctx = self.context
        est = ctx.estimate
        trajectory = [TrajectoryPoint(t, k, est.atPose3(k)) for t, k in ctx.time_map.items()]
        landmarks = {lid: est.atPose3(landmark_key(lid)) for lid in sorted(ctx.seeded_landmarks)}
        return MapperResult(
            phase=self.estimator.phase,
            trajectory=trajectory,
            landmarks=landmarks,
            has_vision=ctx.has_vision,
            pending_keyframes=len(ctx.pending_keyframes),
            unsupported_landmarks=set(ctx.unsupported_landmarks),
            batch_id=ctx.batch_id,
        )

    def optimized_layout(self) -> LandmarkLayout:
        """Prior layout with every estimated landmark replaced by its current estimate."""
        return self.layout.with_poses(self._result.landmarks)

    def locate(self, keyframe: Keyframe) -> Optional[gtsam.Pose3]:
        """Direct robot pose from one keyframe via multi-landmark PnP, None if not solvable."""
        camera = self.calibration.camera(keyframe.camera_index)
        try:
            result = solve_multi_landmark_pose(keyframe.detections, self.layout, camera,
                                               self.config.tag_size)
        except (InsufficientCorrespondences, PerspectiveSolveFailed) as e:
            logger.debug("No PnP pose for keyframe t=%s: %s", keyframe.time, e)
            return None
        return camera_to_robot_pose(result.camera_pose, camera)
