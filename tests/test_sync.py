from __future__ import annotations

import pytest

from sfm_mapper.errors import NoAssociableState
from sfm_mapper.models import state_key
from sfm_mapper.sync import TimeKeyMap


def _map(*times):
    tm = TimeKeyMap()
    for i, t in enumerate(times):
        tm.add(t, state_key(i))
    return tm


def test_nearest_picks_closest_state():
    tm = _map(10, 20, 35)
    assert tm.nearest(22) == state_key(1)
    assert tm.nearest(30) == state_key(2)
    assert tm.nearest(20) == state_key(1)


def test_nearest_tie_goes_to_earlier_state():
    tm = _map(10, 20)
    assert tm.nearest(15) == state_key(0)


def test_nearest_clamps_outside_range():
    tm = _map(10, 20)
    assert tm.nearest(-5) == state_key(0)
    assert tm.nearest(1000) == state_key(1)


def test_empty_map_has_no_associable_state():
    with pytest.raises(NoAssociableState):
        TimeKeyMap().nearest(5)
    assert TimeKeyMap().latest() is None


def test_timestamps_must_strictly_increase():
    tm = _map(10, 20)
    with pytest.raises(ValueError):
        tm.add(20, state_key(2))
    with pytest.raises(ValueError):
        tm.add(15, state_key(2))
    assert len(tm) == 2
    assert tm.latest() == (20, state_key(1))


def test_copy_is_independent():
    tm = _map(1, 2)
    cp = tm.copy()
    cp.add(3, state_key(2))
    assert len(tm) == 2
    assert [t for t, _ in cp.items()] == [1, 2, 3]
