from __future__ import annotations

import numpy as np
import gtsam
import pytest

from sfm_mapper.config import MapperConfig
from sfm_mapper.graph import (CornerObservation, FactorGraphBuilder, FactorKind, FactorRecord,
                              build_graph, project_corner, to_gtsam_factor, undistort_corners)
from sfm_mapper.layout import LandmarkLayout, landmark_corners_local
from sfm_mapper.mapper import MapperContext
from sfm_mapper.models import InputBatch, Keyframe, OdometryDelta, landmark_key, state_key
from sfm_mapper.robust import pixel_noise, pose_sigmas


def test_project_corner_matches_pinhole(layout, camera, scene):
    robot = gtsam.Pose3(gtsam.Rot3.Yaw(0.05), np.array([0.1, -0.05, 0.0]))
    tag = layout.position(2)
    corners = landmark_corners_local(scene.tag_size)
    world = [tag.transformFrom(c) for c in corners]
    for local, w in zip(corners, world):
        obs = CornerObservation(pixel=np.zeros(2), corner=local, camera=camera)
        assert np.allclose(project_corner(robot, tag, obs), scene.project_point(robot, camera, w))


def test_projection_jacobians_match_finite_differences(layout, camera):
    """
    The chained analytic Jacobians agree with central differences taken on
    the pose manifold for both the state and the landmark.
    """
    state = gtsam.Pose3(gtsam.Rot3.Ypr(0.1, 0.05, -0.02), np.array([0.3, -0.1, 0.05]))
    tag = layout.position(2)
    obs = CornerObservation(pixel=np.zeros(2), corner=landmark_corners_local(0.1524)[2], camera=camera)

    H_state = np.zeros((2, 6), order="F")
    H_landmark = np.zeros((2, 6), order="F")
    project_corner(state, tag, obs, H_state, H_landmark)

    eps = 1e-6
    for i in range(6):
        d = np.zeros(6)
        d[i] = eps
        num_state = (project_corner(state.retract(d), tag, obs)
                     - project_corner(state.retract(-d), tag, obs)) / (2 * eps)
        num_tag = (project_corner(state, tag.retract(d), obs)
                   - project_corner(state, tag.retract(-d), obs)) / (2 * eps)
        np.testing.assert_allclose(H_state[:, i], num_state, rtol=1e-4, atol=1e-3)
        np.testing.assert_allclose(H_landmark[:, i], num_tag, rtol=1e-4, atol=1e-3)


def test_project_corner_behind_camera_is_none(camera, scene):
    behind = scene.facing_robot(-3.0, 0.0, 0.3)
    obs = CornerObservation(pixel=np.zeros(2), corner=np.zeros(3), camera=camera)
    assert project_corner(gtsam.Pose3(), behind, obs) is None


def test_projection_factor_is_zero_at_truth(layout, camera, scene):
    robot = gtsam.Pose3(gtsam.Rot3.Yaw(-0.1), np.array([0.4, 0.2, 0.0]))
    tag = layout.position(1)
    det = scene.detect(robot, camera, 1, tag)
    local = landmark_corners_local(scene.tag_size)

    values = gtsam.Values()
    values.insert(state_key(0), robot)
    values.insert(landmark_key(1), tag)
    for idx in range(4):
        record = FactorRecord(FactorKind.PROJECTION, (state_key(0), landmark_key(1)),
                              CornerObservation(det.corners[idx], local[idx], camera), pixel_noise(1.0))
        assert to_gtsam_factor(record).error(values) == pytest.approx(0.0, abs=1e-9)

    # A shifted robot leaves a residual
    values.update(state_key(0), robot.compose(gtsam.Pose3(gtsam.Rot3(), np.array([0.0, 0.1, 0.0]))))
    assert to_gtsam_factor(record).error(values) > 1.0


def test_records_become_distinct_gtsam_factors():
    noise = pose_sigmas(0.1, 0.1)
    records = [
        FactorRecord(FactorKind.ORIGIN_PRIOR, (state_key(0),), gtsam.Pose3(), noise),
        FactorRecord(FactorKind.ODOMETRY, (state_key(0), state_key(1)), gtsam.Pose3(), noise),
        FactorRecord(FactorKind.ANCHOR_PRIOR, (landmark_key(4),), gtsam.Pose3(), noise),
    ]
    assert isinstance(to_gtsam_factor(records[0]), gtsam.PriorFactorPose3)
    assert isinstance(to_gtsam_factor(records[1]), gtsam.BetweenFactorPose3)
    assert build_graph(records).size() == 3
    assert build_graph(records).size() == 3


def test_keys_are_typed():
    assert state_key(3) != landmark_key(3)
    assert gtsam.Symbol(landmark_key(17)).index() == 17
    with pytest.raises(ValueError):
        landmark_key(-1)


def test_undistort_without_distortion_is_identity(camera):
    corners = np.array([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0], [7.0, 8.0]])
    out = undistort_corners(corners, camera)
    assert np.allclose(out, corners)
    assert out is not corners


def test_fixed_landmark_must_be_in_layout(layout, calibration):
    with pytest.raises(ValueError):
        FactorGraphBuilder(layout, calibration, MapperConfig(fixed_landmarks=[1, 77]))


def test_stage_does_not_touch_context(layout, calibration, config, camera, scene):
    builder = FactorGraphBuilder(layout, calibration, config)
    ctx = MapperContext()
    batch = InputBatch(
        odometry=[OdometryDelta(0.0, gtsam.Pose3())],
        keyframes=[Keyframe(0.0, 0, [scene.detect(gtsam.Pose3(), camera, 1, layout.position(1))])],
    )

    staged = builder.stage(ctx, batch)

    assert len(ctx.time_map) == 0 and not ctx.factors and ctx.estimate.size() == 0
    kinds = [r.kind for r in staged.records]
    assert kinds.count(FactorKind.ORIGIN_PRIOR) == 1
    assert kinds.count(FactorKind.ANCHOR_PRIOR) == 1
    assert kinds.count(FactorKind.PROJECTION) == 4
    assert staged.values.exists(state_key(0)) and staged.values.exists(landmark_key(1))
    assert staged.accepted_keyframes == 1


def test_odometry_chains_guesses_and_drops_stale_deltas(layout, calibration, config):
    builder = FactorGraphBuilder(layout, calibration, config)
    step = gtsam.Pose3(gtsam.Rot3(), np.array([1.0, 0.0, 0.0]))
    staged = builder.stage(MapperContext(), InputBatch(odometry=[
        OdometryDelta(0.0, gtsam.Pose3()),
        OdometryDelta(1.0, step),
        OdometryDelta(1.0, step),
        OdometryDelta(2.0, step),
    ]))
    assert staged.new_states == [state_key(0), state_key(1), state_key(2)]
    assert staged.counts["dropped_odometry"] == 1
    assert np.allclose(staged.values.atPose3(state_key(2)).translation(), [2.0, 0.0, 0.0])


def test_unmapped_landmark_is_reported_not_seeded(layout, calibration, config, camera, scene):
    builder = FactorGraphBuilder(layout, calibration, config)
    det = scene.detect(gtsam.Pose3(), camera, 99, scene.facing_robot(2.5, 0.3, 0.5))
    staged = builder.stage(MapperContext(), InputBatch(
        odometry=[OdometryDelta(0.0, gtsam.Pose3())],
        keyframes=[Keyframe(0.0, 0, [det])],
    ))
    assert staged.unsupported == {99}
    assert not staged.values.exists(landmark_key(99))
    assert all(r.kind != FactorKind.PROJECTION for r in staged.records)


def test_layout_landmark_gets_layout_prior(layout, calibration, camera, scene):
    builder = FactorGraphBuilder(layout, calibration, MapperConfig())
    det = scene.detect(gtsam.Pose3(), camera, 2, layout.position(2))
    staged = builder.stage(MapperContext(), InputBatch(
        odometry=[OdometryDelta(0.0, gtsam.Pose3())],
        keyframes=[Keyframe(0.0, 0, [det])],
    ))
    priors = [r for r in staged.records if r.kind == FactorKind.LAYOUT_PRIOR]
    assert len(priors) == 1
    assert priors[0].keys == (landmark_key(2),)
    assert priors[0].measurement.equals(layout.position(2), 1e-12)
    assert isinstance(to_gtsam_factor(priors[0]), gtsam.PriorFactorPose3)


def test_state_facing_away_is_reseeded_from_landmarks(calibration, camera, scene):
    """
    Odometry seeds the robot facing +X while the landmarks sit at -X; the
    new state's initial value is replaced by the PnP pose and the origin
    prior follows it.
    """
    behind = LandmarkLayout({
        1: scene.facing_robot(-3.0, -0.5, 0.4, yaw_offset=np.pi),
        2: scene.facing_robot(-4.0, 0.6, 0.6, yaw_offset=np.pi),
    })
    truth = gtsam.Pose3(gtsam.Rot3.Yaw(np.pi), np.zeros(3))
    builder = FactorGraphBuilder(behind, calibration, MapperConfig(fixed_landmarks=[1]))
    kf = Keyframe(0.0, 0, [scene.detect(truth, camera, lid, behind.position(lid)) for lid in (1, 2)])

    staged = builder.stage(MapperContext(), InputBatch(
        odometry=[OdometryDelta(0.0, gtsam.Pose3())], keyframes=[kf]))

    assert staged.counts["reseeded_states"] == 1
    assert staged.values.atPose3(state_key(0)).equals(truth, 1e-5)
    origin = [r for r in staged.records if r.kind == FactorKind.ORIGIN_PRIOR][0]
    assert origin.measurement.equals(truth, 1e-5)
