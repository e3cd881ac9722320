"""Reference integration driver on scipy's solve_ivp.

Events are polled at every accepted solver step; when one executes, integration
restarts from that point with the updated state. Segments end at sample times
and at pending delayed firings so those execute at their exact time. Every
accepted step has its assignment-rule targets refreshed and is recorded as the
history that ``delay`` reads.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.integrate import solve_ivp

from .config import SolverConfig
from .errors import NumericsError
from .events import EVENT_LOG_FIELDS
from .system import CompiledSystem

logger = logging.getLogger(__name__)

RhsFn = Callable[[float, np.ndarray], np.ndarray]

# segments shorter than this (relative to the sample time) are not integrated
_TIME_EPS = 1e-12


def _looks_like_step_failure(message: str) -> bool:
    text = (message or "").lower()
    return ("step size" in text) or ("strictly increasing" in text)


def solve_stiff_ivp(
    rhs: RhsFn,
    span: Tuple[float, float],
    y0: np.ndarray,
    solver: SolverConfig,
    *,
    max_attempts: int = 8,
):
    """solve_ivp that halves ``max_step`` and retries after step-size failures."""

    t0, t1 = float(span[0]), float(span[1])
    state0 = np.asarray(y0, dtype=float)
    total_span = abs(t1 - t0)
    attempt_max = solver.max_step if math.isfinite(solver.max_step) else total_span
    min_cap = max(total_span * 1e-6, 1e-12)
    result = None
    for _ in range(max_attempts):
        result = solve_ivp(
            rhs,
            (t0, t1),
            state0,
            method=solver.method,
            rtol=solver.rtol,
            atol=solver.atol,
            max_step=attempt_max,
        )
        if result.success or not _looks_like_step_failure(result.message or ""):
            return result
        attempt_max = max(attempt_max * 0.5, min_cap)
        logger.debug("retrying [%g, %g] with max_step=%g: %s", t0, t1, attempt_max, result.message)
    return result


@dataclass
class SimulationResult:
    times: np.ndarray
    states: np.ndarray
    slot_ids: Tuple[str, ...]
    event_log: List[Dict[str, object]] = field(default_factory=list)

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.states, columns=list(self.slot_ids))
        frame.insert(0, "time", self.times)
        return frame

    def events_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.event_log, columns=list(EVENT_LOG_FIELDS))

    def column(self, identifier: str) -> np.ndarray:
        return self.states[:, self.slot_ids.index(identifier)]


def simulate(
    system: CompiledSystem,
    stop: float,
    points: int = 101,
    solver: Optional[SolverConfig] = None,
    start: float = 0.0,
) -> SimulationResult:
    """Integrate ``system`` from ``start`` to ``stop`` sampling ``points`` equidistant times."""

    if points < 2:
        raise ValueError("points must be at least 2")
    if stop <= start:
        raise ValueError("stop must be greater than start")
    solver = solver or SolverConfig()
    times = np.linspace(start, stop, points)
    state = system.initialize()
    state, _ = system.process_events(start, start, state)
    state = system.apply_assignment_rules(start, state)
    system.record_state(start, state)
    rows = [state.copy()]
    current = float(start)
    previous = float(start)

    for target in times[1:]:
        target = float(target)
        while target - current > _TIME_EPS * max(1.0, abs(target)):
            segment_end = target
            pending = system.next_event_time()
            if pending is not None and current < pending < segment_end:
                segment_end = pending
            result = solve_stiff_ivp(system.compute_derivative, (current, segment_end), state, solver)
            if not result.success:
                raise NumericsError(f"integration failed on [{current}, {segment_end}]: {result.message}")
            interrupted = False
            for index in range(1, len(result.t)):
                t_step = float(result.t[index])
                updated, outcomes = system.process_events(t_step, previous, result.y[:, index])
                previous = t_step
                state = system.apply_assignment_rules(t_step, updated)
                system.record_state(t_step, state)
                if outcomes:
                    current = t_step
                    interrupted = True
                    break
            if not interrupted:
                current = segment_end
        rows.append(state.copy())

    logger.info("simulated %s to t=%g with %d events", system.model.id, stop, len(system.event_log))
    return SimulationResult(
        times=times,
        states=np.vstack(rows),
        slot_ids=system.slot_ids(),
        event_log=system.event_log,
    )


__all__ = ["SimulationResult", "simulate", "solve_stiff_ivp"]
