"""Accepted-step trajectory record used to answer ``delay(x, d)`` queries."""

from __future__ import annotations

from typing import List, Optional

import numpy as np


class TrajectoryHistory:
    """States at increasing times, linearly interpolated between records.

    Queries before the first record return the first state and queries past the
    last record return the last state.
    """

    def __init__(self) -> None:
        self.times: List[float] = []
        self.states: List[np.ndarray] = []

    def __len__(self) -> int:
        return len(self.times)

    def clear(self) -> None:
        self.times = []
        self.states = []

    def record(self, t: float, y) -> None:
        """Append ``y`` at ``t``, replacing every record at or after ``t``."""
        t = float(t)
        while self.times and self.times[-1] >= t:
            self.times.pop()
            self.states.pop()
        self.times.append(t)
        self.states.append(np.array(y, dtype=float, copy=True))

    def state_at(self, t: float) -> Optional[np.ndarray]:
        if not self.times:
            return None
        if t <= self.times[0]:
            return self.states[0]
        if t >= self.times[-1]:
            return self.states[-1]
        right = int(np.searchsorted(self.times, t, side="right"))
        left = right - 1
        t0, t1 = self.times[left], self.times[right]
        weight = (t - t0) / (t1 - t0)
        return self.states[left] + weight * (self.states[right] - self.states[left])


__all__ = ["TrajectoryHistory"]
