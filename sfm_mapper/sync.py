import bisect
from typing import Iterator, List, Optional, Tuple

from .errors import NoAssociableState
from .models import Timestamp


class TimeKeyMap:
    """Append-only map from odometry timestamps to motion-state keys."""

    def __init__(self):
        self._times: List[Timestamp] = []
        self._keys: List[int] = []

    def add(self, time: Timestamp, key: int) -> None:
        if self._times and time <= self._times[-1]:
            raise ValueError(
                f"Odometry timestamps must strictly increase: {time} after {self._times[-1]}")
        self._times.append(time)
        self._keys.append(key)

    def nearest(self, time: Timestamp) -> int:
        """Key whose timestamp is closest to ``time``; ties go to the earlier one."""
        if not self._times:
            raise NoAssociableState(f"No motion state to associate with t={time}")
        idx = bisect.bisect_left(self._times, time)
        if idx == 0:
            return self._keys[0]
        if idx == len(self._times):
            return self._keys[-1]
        before, after = self._times[idx - 1], self._times[idx]
        if time - before <= after - time:
            return self._keys[idx - 1]
        return self._keys[idx]

    def latest(self) -> Optional[Tuple[Timestamp, int]]:
        if not self._times:
            return None
        return self._times[-1], self._keys[-1]

    def copy(self) -> "TimeKeyMap":
        out = TimeKeyMap()
        out._times = list(self._times)
        out._keys = list(self._keys)
        return out

    def items(self) -> Iterator[Tuple[Timestamp, int]]:
        return iter(zip(self._times, self._keys))

    def __len__(self) -> int:
        return len(self._times)
