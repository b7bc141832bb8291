"""Per-batch KPI events for the mapper.

Every ``SfmMapper.optimize`` call that does work produces one event sequence::

    batch_received -> optimization_start -> optimization_end | optimization_failed
                   -> batch_outcome -> map_broadcast

Events are JSON objects (one per line when written to a file) carrying the
batch id and, where it changes, the estimator phase.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger("sfm_mapper.kpi")

# Staged counters reported by ``batch_outcome``
OUTCOME_COUNTERS = (
    "odometry",
    "projection",
    "origin_prior",
    "anchor_prior",
    "layout_prior",
    "pending_keyframes",
    "reseeded_states",
    "dropped_odometry",
    "dropped_keyframes",
    "dropped_detections",
)


def _phase_name(phase: Any) -> str:
    return getattr(phase, "value", str(phase))


class KPILogger:
    """Emit mapper batch events to the ``sfm_mapper.kpi`` logger and/or a JSONL file."""

    def __init__(self, log_path: Optional[str] = None, emit_to_logger: bool = True,
                 run_id: Optional[str] = None):
        self._emit_to_logger = emit_to_logger
        self._run_id = run_id
        self._fh = open(log_path, "w", encoding="utf-8") if log_path else None
        self.event_counts: Dict[str, int] = {}

    def _emit(self, event: str, batch_id: int, **fields: Any) -> None:
        payload: Dict[str, Any] = {"event": event, "ts": time.time(), "batch_id": batch_id}
        if self._run_id:
            payload["run_id"] = self._run_id
        payload.update({k: v for k, v in fields.items() if v is not None})
        self.event_counts[event] = self.event_counts.get(event, 0) + 1
        line = json.dumps(payload, sort_keys=True)
        if self._emit_to_logger:
            logger.info("KPI %s", line)
        if self._fh:
            self._fh.write(line + "\n")
            self._fh.flush()

    def batch_received(self, batch_id: int, odometry: int, keyframes: int, pending: int) -> None:
        """Inputs handed to ``optimize``; ``pending`` counts keyframes carried over."""
        self._emit("batch_received", batch_id, odometry=odometry, keyframes=keyframes, pending=pending)

    def optimization_start(self, batch_id: int, phase: Any, new_values: int,
                           factors: Mapping[str, int]) -> None:
        self._emit("optimization_start", batch_id, phase=_phase_name(phase), new_values=new_values,
                   factors=dict(factors), factor_count=sum(factors.values()))

    def optimization_end(self, batch_id: int, phase: Any, duration_s: float, updated_keys: int,
                         max_translation_delta: Optional[float] = None) -> None:
        self._emit("optimization_end", batch_id, phase=_phase_name(phase), duration_s=duration_s,
                   updated_keys=updated_keys, max_translation_delta=max_translation_delta)

    def optimization_failed(self, batch_id: int, phase: Any, duration_s: float, reason: str) -> None:
        self._emit("optimization_failed", batch_id, phase=_phase_name(phase), duration_s=duration_s,
                   reason=reason)

    def batch_outcome(self, batch_id: int, counts: Mapping[str, int], unsupported=()) -> None:
        """What staging did with the inputs: factors added, keyframes deferred, input dropped."""
        reported = {k: int(counts[k]) for k in OUTCOME_COUNTERS if counts.get(k)}
        self._emit("batch_outcome", batch_id, counts=reported,
                   unsupported_landmarks=sorted(unsupported) or None)

    def map_broadcast(self, result) -> None:
        """Snapshot handed back to the caller (a ``MapperResult``)."""
        self._emit("map_broadcast", result.batch_id, phase=_phase_name(result.phase),
                   pose_count=len(result.trajectory), landmark_count=len(result.landmarks),
                   has_vision=result.has_vision, pending_keyframes=result.pending_keyframes)

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None

    def __enter__(self) -> "KPILogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False
