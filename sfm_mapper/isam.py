from typing import Dict, Optional, Tuple
import logging
import math

import numpy as np
import gtsam

from .errors import SolverDivergence
from .models import EstimatorPhase

logger = logging.getLogger("sfm_mapper.isam")


def update_translation_cache(cache: Dict[int, tuple], estimate: gtsam.Values) -> float:
    """Update translation cache and return max Euclidean delta between estimates."""
    max_delta = 0.0
    for key in estimate.keys():
        trans = estimate.atPose3(key).translation()
        tx, ty, tz = float(trans[0]), float(trans[1]), float(trans[2])
        prev = cache.get(int(key))
        if prev is not None:
            dx = tx - prev[0]
            dy = ty - prev[1]
            dz = tz - prev[2]
            delta = math.sqrt(dx * dx + dy * dy + dz * dz)
            if delta > max_delta:
                max_delta = delta
        cache[int(key)] = (tx, ty, tz)
    return max_delta


def _all_finite(estimate: gtsam.Values) -> bool:
    for key in estimate.keys():
        if not np.all(np.isfinite(estimate.atPose3(key).matrix())):
            return False
    return True


class IncrementalEstimator:
    """iSAM2 wrapper with an EMPTY -> INITIALIZED -> CONVERGED lifecycle.

    A failed update raises ``SolverDivergence`` and restores the previous
    phase. The caller is expected to ``reset`` with the committed graph so the
    next update starts from a clean iSAM2 instance.
    """

    def __init__(self,
                 relinearize_threshold: float = 0.001,
                 relinearize_skip: int = 1,
                 extra_iterations: int = 3,
                 factorization: str = "QR"):
        params = gtsam.ISAM2Params()

        # Compat helpers (some wheels use setters, others properties)
        def _set(obj, prop: str, value, setter: Optional[str] = None):
            if hasattr(obj, prop):
                try:
                    setattr(obj, prop, value); return
                except (AttributeError, TypeError):
                    pass
            if setter and hasattr(obj, setter):
                getattr(obj, setter)(value)

        _set(params, "relinearizeThreshold", relinearize_threshold, "setRelinearizeThreshold")
        _set(params, "relinearizeSkip",      relinearize_skip,      "setRelinearizeSkip")
        _set(params, "enableRelinearization", True,                 "setEnableRelinearization")
        # Cholesky rejects the anchor/origin weight spread as indeterminant
        _set(params, "factorization",         factorization,         "setFactorization")
        self._params = params
        self.extra_iterations = extra_iterations
        self.isam = gtsam.ISAM2(params)
        self.phase = EstimatorPhase.EMPTY
        self._carry: Optional[Tuple[gtsam.NonlinearFactorGraph, gtsam.Values]] = None

    def update(self, graph: gtsam.NonlinearFactorGraph, initial: gtsam.Values) -> gtsam.Values:
        previous = self.phase
        if self.phase == EstimatorPhase.EMPTY:
            self.phase = EstimatorPhase.INITIALIZED

        if self._carry is not None:
            carry_graph, carry_values = self._carry
            merged = gtsam.NonlinearFactorGraph()
            merged.push_back(carry_graph)
            merged.push_back(graph)
            values = gtsam.Values(carry_values)
            values.insert(initial)
            graph, initial = merged, values
            logger.info("Resubmitting %d committed factor(s) after reset", carry_graph.size())

        try:
            self.isam.update(graph, initial)
            for _ in range(self.extra_iterations):
                self.isam.update(gtsam.NonlinearFactorGraph(), gtsam.Values())
            estimate = self.isam.calculateEstimate()
        except (RuntimeError, ValueError) as e:
            self.phase = previous
            raise SolverDivergence(f"iSAM2 update failed: {e}") from e

        if not _all_finite(estimate):
            self.phase = previous
            raise SolverDivergence("iSAM2 produced a non-finite estimate")

        self._carry = None
        self.phase = EstimatorPhase.CONVERGED
        return estimate

    def reset(self, graph: gtsam.NonlinearFactorGraph, values: gtsam.Values) -> None:
        """Drop iSAM2 internals; ``graph``/``values`` are resubmitted with the next update."""
        self.isam = gtsam.ISAM2(self._params)
        self._carry = (graph, values) if values.size() > 0 else None
