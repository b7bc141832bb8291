from __future__ import annotations

import numpy as np
import gtsam
import pytest

from sfm_mapper.errors import SolverDivergence
from sfm_mapper.isam import IncrementalEstimator, update_translation_cache
from sfm_mapper.models import EstimatorPhase, state_key
from sfm_mapper.robust import diagonal, gaussian_from_covariance, make_spd, pose_sigmas, robustify


def _prior_graph(key, pose):
    graph = gtsam.NonlinearFactorGraph()
    graph.add(gtsam.PriorFactorPose3(key, pose, pose_sigmas(0.1, 0.1)))
    values = gtsam.Values()
    values.insert(key, pose.compose(gtsam.Pose3(gtsam.Rot3.Yaw(0.05), np.array([0.1, 0.0, 0.0]))))
    return graph, values


def test_make_spd_repairs_singular_covariance():
    cov = np.zeros((6, 6))
    cov[0, 0] = 1.0
    fixed = make_spd(cov)
    np.linalg.cholesky(fixed)
    assert np.allclose(fixed, fixed.T)


def test_gaussian_from_covariance_dim():
    assert gaussian_from_covariance(np.eye(6) * 0.01).dim() == 6


def test_robustify_kinds():
    base = pose_sigmas(0.1, 0.2)
    assert robustify(base, None) is base
    assert robustify(base, "none") is base
    assert isinstance(robustify(base, "huber"), gtsam.noiseModel.Robust)
    assert isinstance(robustify(base, "Cauchy", 2.0), gtsam.noiseModel.Robust)
    with pytest.raises(ValueError):
        robustify(base, "tukey-ish")


def test_diagonal_rejects_non_positive_sigmas():
    with pytest.raises(ValueError):
        diagonal([0.1, 0.0, 0.1])


def test_translation_cache_reports_max_delta():
    cache = {}
    est = gtsam.Values()
    est.insert(state_key(0), gtsam.Pose3())
    assert update_translation_cache(cache, est) == 0.0

    moved = gtsam.Values()
    moved.insert(state_key(0), gtsam.Pose3(gtsam.Rot3(), np.array([3.0, 4.0, 0.0])))
    assert update_translation_cache(cache, moved) == pytest.approx(5.0)
    assert cache[state_key(0)] == (3.0, 4.0, 0.0)


def test_estimator_phases_and_solution():
    est = IncrementalEstimator()
    assert est.phase == EstimatorPhase.EMPTY

    target = gtsam.Pose3(gtsam.Rot3.Yaw(0.3), np.array([1.0, 2.0, 0.0]))
    estimate = est.update(*_prior_graph(state_key(0), target))

    assert est.phase == EstimatorPhase.CONVERGED
    assert estimate.atPose3(state_key(0)).equals(target, 1e-6)


def test_estimator_failure_restores_phase_and_reset_resubmits():
    est = IncrementalEstimator()
    first = gtsam.Pose3(gtsam.Rot3(), np.array([1.0, 0.0, 0.0]))
    committed_graph, committed_values = _prior_graph(state_key(0), first)
    estimate = est.update(committed_graph, committed_values)

    class _Broken:
        def update(self, *args):
            raise RuntimeError("boom")

    est.isam = _Broken()
    with pytest.raises(SolverDivergence):
        est.update(*_prior_graph(state_key(1), first))
    assert est.phase == EstimatorPhase.CONVERGED

    est.reset(committed_graph, estimate)
    second = gtsam.Pose3(gtsam.Rot3(), np.array([0.0, 1.0, 0.0]))
    out = est.update(*_prior_graph(state_key(1), second))
    assert out.atPose3(state_key(0)).equals(first, 1e-6)
    assert out.atPose3(state_key(1)).equals(second, 1e-6)


@pytest.mark.parametrize("factorization", ["QR", "CHOLESKY"])
def test_estimator_accepts_factorization(factorization):
    est = IncrementalEstimator(factorization=factorization)
    target = gtsam.Pose3(gtsam.Rot3.Yaw(-0.2), np.array([0.5, 0.0, 0.1]))
    assert est.update(*_prior_graph(state_key(0), target)).atPose3(state_key(0)).equals(target, 1e-6)
