"""Batch sources feeding ``SfmMapper.optimize``.

A replay log is a JSON document::

    {"odometry":  [{"time": t, "translation": [x, y, z], "rotation": [w, x, y, z],
                    "covariance": [... 36 ...]}],
     "keyframes": [{"time": t, "camera": 0,
                    "detections": [{"id": 7, "corners": [[u, v], ... 4 ...]}]}]}

Malformed entries are skipped with a warning.
"""

from __future__ import annotations

import json
import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from .layout import q_from_list, t_from_list
from .models import (InputBatch, Keyframe, LandmarkDetection, OdometryDelta, pose_from,
                     to_covariance)

logger = logging.getLogger("sfm_mapper.source")


class BatchSourceError(RuntimeError):
    """Raised when a batch source cannot be opened or parsed."""


@dataclass
class ReplayLog:
    odometry: List[OdometryDelta] = field(default_factory=list)
    keyframes: List[Keyframe] = field(default_factory=list)


def _parse_odometry(entry: Dict[str, Any], quaternion_order: str) -> Optional[OdometryDelta]:
    try:
        rot = q_from_list(entry["rotation"], quaternion_order)
        trans = t_from_list(entry["translation"])
        cov = entry.get("covariance")
        return OdometryDelta(
            time=entry["time"],
            delta=pose_from(rot, trans),
            covariance=to_covariance(cov) if cov is not None else None,
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Skipping odometry entry: %s", e)
        return None


def _parse_keyframe(entry: Dict[str, Any]) -> Optional[Keyframe]:
    try:
        detections = []
        for det in entry.get("detections", []) or []:
            try:
                detections.append(LandmarkDetection(int(det["id"]), det["corners"]))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping detection at t=%s: %s", entry.get("time"), e)
        return Keyframe(time=entry["time"], camera_index=int(entry.get("camera", 0)), detections=detections)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Skipping keyframe entry: %s", e)
        return None


def replay_from_json_dict(data: Dict[str, Any], quaternion_order: str = "wxyz") -> ReplayLog:
    log = ReplayLog()
    for entry in data.get("odometry", []) or []:
        odom = _parse_odometry(entry, quaternion_order)
        if odom is not None:
            log.odometry.append(odom)
    for entry in data.get("keyframes", []) or []:
        kf = _parse_keyframe(entry)
        if kf is not None:
            log.keyframes.append(kf)
    log.odometry.sort(key=lambda o: o.time)
    log.keyframes.sort(key=lambda k: k.time)
    return log


def load_replay(path: str, quaternion_order: str = "wxyz") -> ReplayLog:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise BatchSourceError(f"Cannot read replay log {path}: {e}") from e
    if not isinstance(data, dict):
        raise BatchSourceError(f"Replay log {path} must hold a JSON object")
    log = replay_from_json_dict(data, quaternion_order)
    logger.info("Loaded %d odometry delta(s) and %d keyframe(s) from %s",
                len(log.odometry), len(log.keyframes), path)
    return log


def window_batches(log: ReplayLog, window: Union[int, float]) -> Iterator[InputBatch]:
    """Group a replay into consecutive time windows of width ``window``.

    Within a window odometry and keyframes are handed over together, the way
    a live ingestion queue would deliver them between two optimize calls.
    """
    if window <= 0:
        raise ValueError(f"window must be positive, got {window}")
    times = [o.time for o in log.odometry] + [k.time for k in log.keyframes]
    if not times:
        return
    start = min(times)
    buckets: Dict[int, InputBatch] = {}
    for odom in log.odometry:
        buckets.setdefault(int((odom.time - start) // window), InputBatch()).odometry.append(odom)
    for kf in log.keyframes:
        buckets.setdefault(int((kf.time - start) // window), InputBatch()).keyframes.append(kf)
    for idx in sorted(buckets):
        yield buckets[idx]


class BatchSource(AbstractContextManager):
    """Base class for input batch providers."""

    def iter_batches(self) -> Iterable[InputBatch]:  # pragma: no cover - interface method
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - default no-op
        return None

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class ReplayBatchSource(BatchSource):
    """Replay a JSON log as time-windowed batches."""

    def __init__(self, path: str, window: Union[int, float], quaternion_order: str = "wxyz"):
        self._log = load_replay(path, quaternion_order)
        self._window = window

    @property
    def log(self) -> ReplayLog:
        return self._log

    def iter_batches(self) -> Iterable[InputBatch]:
        return window_batches(self._log, self._window)
