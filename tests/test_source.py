from __future__ import annotations

import json

import numpy as np
import pytest

from sfm_mapper.source import (BatchSourceError, ReplayBatchSource, ReplayLog, load_replay,
                               replay_from_json_dict, window_batches)

CORNERS = [[10, 10], [20, 10], [20, 20], [10, 20]]


def _log_dict():
    return {
        "odometry": [
            {"time": 0.25, "translation": [1.0, 0.0, 0.0], "rotation": [1.0, 0.0, 0.0, 0.0]},
            {"time": 0.0, "translation": [0.0, 0.0, 0.0], "rotation": [1.0, 0.0, 0.0, 0.0],
             "covariance": list(np.eye(6).reshape(-1) * 0.01)},
            {"time": 0.3, "translation": [1.0, 0.0]},
        ],
        "keyframes": [
            {"time": 0.05, "camera": 1, "detections": [
                {"id": 3, "corners": CORNERS},
                {"id": 4, "corners": [[1, 2]]},
            ]},
            {"camera": 0, "detections": []},
        ],
    }


def test_replay_parses_and_sorts():
    log = replay_from_json_dict(_log_dict())

    assert [o.time for o in log.odometry] == [0.0, 0.25]
    assert log.odometry[0].covariance.shape == (6, 6)
    assert log.odometry[1].covariance is None
    assert np.allclose(log.odometry[1].delta.translation(), [1.0, 0.0, 0.0])

    assert len(log.keyframes) == 1
    kf = log.keyframes[0]
    assert kf.camera_index == 1
    assert [d.landmark_id for d in kf.detections] == [3]


def test_window_batches_groups_by_time():
    log = replay_from_json_dict(_log_dict())
    batches = list(window_batches(log, 0.1))

    assert len(batches) == 2
    assert [o.time for o in batches[0].odometry] == [0.0]
    assert [k.time for k in batches[0].keyframes] == [0.05]
    assert [o.time for o in batches[1].odometry] == [0.25]
    assert batches[1].keyframes == []


def test_window_batches_edge_cases():
    assert list(window_batches(ReplayLog(), 1.0)) == []
    with pytest.raises(ValueError):
        list(window_batches(ReplayLog(), 0.0))


def test_replay_source_reads_file(tmp_path):
    path = tmp_path / "replay.json"
    path.write_text(json.dumps(_log_dict()))
    with ReplayBatchSource(str(path), window=1.0) as src:
        batches = list(src.iter_batches())
    assert len(batches) == 1
    assert len(batches[0].odometry) == 2 and len(batches[0].keyframes) == 1


def test_unreadable_replay_raises(tmp_path):
    with pytest.raises(BatchSourceError):
        load_replay(str(tmp_path / "missing.json"))
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(BatchSourceError):
        load_replay(str(bad))
