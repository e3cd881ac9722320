"""Discrete events: edge-triggered firing, delays, priorities and persistence."""

from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Optional, Tuple

import numpy as np

from .entities import Event, Model
from .expression import ExpressionGraph, Scope, Tick
from .rules import RuleEngine, RuleRecord
from .state_vector import StateLayout

logger = logging.getLogger(__name__)

EVENT_LOG_FIELDS = (
    "event_index",
    "event_id",
    "time_fire",
    "time_trigger",
    "delay",
    "type",
    "assignments",
)

EffectKind = Literal["fired", "scheduled", "aborted", "recovered", "rolled_back"]


@dataclass(frozen=True)
class EventRecord:
    index: int
    id: str
    trigger_root: int
    delay_root: Optional[int]
    priority_root: Optional[int]
    targets: Tuple[RuleRecord, ...]
    persistent: bool
    use_values_from_trigger_time: bool
    initial_value: bool


@dataclass(order=True)
class PendingFiring:
    execution_time: float
    trigger_time: float = field(compare=False)
    values: Optional[Tuple[float, ...]] = field(compare=False, default=None)


@dataclass(frozen=True)
class EventEffect:
    kind: EffectKind
    event_index: int
    time: float
    execution_time: Optional[float] = None


@dataclass
class EventOutcome:
    """Result of one poll; ``event_index`` is None when only delayed firings were scheduled."""

    time: float
    event_index: Optional[int] = None
    event_id: Optional[str] = None
    trigger_time: Optional[float] = None
    assignments: List[Tuple[int, float]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return self.event_index is None


class EventMachine:
    """Runtime state of one event.

    ``fired`` is true between a firing and the trigger's next true-to-false
    transition; the event can only fire again after that recovery. Pending
    firings are kept sorted by execution time; executed firings are remembered
    so a step back by the integrator can restore them.
    """

    def __init__(self, record: EventRecord, tolerance: float = 0.0):
        self.record = record
        self.tolerance = tolerance
        self.reset()

    def reset(self) -> None:
        self.fired = self.record.initial_value
        self.last_fired = -1.0
        self.last_recovered = -1.0
        self.last_executed = -1.0
        self.priority = -math.inf
        self.pending: List[PendingFiring] = []
        self.history: List[PendingFiring] = []

    @property
    def delayed(self) -> bool:
        return self.record.delay_root is not None

    def fire_status(self, t: float) -> bool:
        if self.last_fired <= t and self.last_recovered <= t:
            return self.fired
        if self.last_fired <= t < self.last_recovered:
            self.last_recovered = -1.0
            self.fired = True
            return True
        if self.last_recovered <= t < self.last_fired:
            self.last_fired = -1.0
            self.fired = False
            return False
        self.last_fired = -1.0
        self.last_recovered = -1.0
        return self.fired

    def runnable(self, t: float) -> bool:
        return bool(self.pending) and self.pending[0].execution_time <= t + self.tolerance

    def schedule(self, t: float, execution_time: float, values: Optional[Tuple[float, ...]]) -> None:
        bisect.insort(self.pending, PendingFiring(execution_time, t, values))
        self.fired = True
        self.last_fired = t

    def recover(self, t: float) -> None:
        self.fired = False
        self.last_recovered = t

    def abort(self) -> Optional[PendingFiring]:
        return self.pending.pop(0) if self.pending else None

    def consume(self, t: float) -> PendingFiring:
        firing = self.pending.pop(0)
        self.history.append(firing)
        self.last_executed = t
        return firing

    def rollback(self, t: float) -> None:
        if self.last_fired > t:
            if self.pending:
                self.pending.pop()
            self.recover(t)
            self.last_fired = -1.0
            return
        while self.history and self.history[-1].execution_time > t:
            bisect.insort(self.pending, self.history.pop())
        self.last_executed = self.history[-1].execution_time if self.history else -1.0

    def advance(
        self,
        t: float,
        previous_t: float,
        trigger: bool,
        delay: Callable[[], float],
        capture: Callable[[], Tuple[float, ...]],
    ) -> List[EventEffect]:
        """Apply the transitions for one visited time point and report them."""

        effects: List[EventEffect] = []
        if self.delayed:
            if self.last_fired > t:
                self.rollback(t)
                effects.append(EventEffect("rolled_back", self.record.index, t))
            elif self.last_executed > previous_t and self.last_executed != t:
                self.rollback(previous_t)
                effects.append(EventEffect("rolled_back", self.record.index, t))
        if self.pending and not self.record.persistent and not trigger:
            self.abort()
            effects.append(EventEffect("aborted", self.record.index, t))
        if trigger:
            if not self.fire_status(t):
                values = capture() if self.record.use_values_from_trigger_time else None
                execution_time = t + delay() if self.delayed else t
                self.schedule(t, execution_time, values)
                kind = "scheduled" if self.delayed else "fired"
                effects.append(EventEffect(kind, self.record.index, t, execution_time))
        elif self.fire_status(t):
            self.recover(t)
            effects.append(EventEffect("recovered", self.record.index, t))
        return effects


def _format_assignments(targets: Tuple[RuleRecord, ...], values: List[float]) -> str:
    return "; ".join(f"{target.variable}={value:g}" for target, value in zip(targets, values))


class EventEngine:
    """Poll events between integrator steps and execute at most one per call."""

    def __init__(
        self,
        graph: ExpressionGraph,
        model: Model,
        layout: StateLayout,
        rules: RuleEngine,
        seed: Optional[int] = None,
        tolerance: float = 0.0,
    ):
        self.graph = graph
        self.layout = layout
        self.rules = rules
        self.seed = seed
        self.tolerance = tolerance
        self.machines = [
            EventMachine(self._compile(index, event), tolerance) for index, event in enumerate(model.events)
        ]
        self.log: List[Dict[str, object]] = []
        self.rng = np.random.default_rng(seed)

    def __len__(self) -> int:
        return len(self.machines)

    def _compile(self, index: int, event: Event) -> EventRecord:
        scope = Scope(owner=event.id)
        graph = self.graph
        return EventRecord(
            index=index,
            id=event.id,
            trigger_root=graph.compile(event.trigger, scope),
            delay_root=None if event.delay is None else graph.compile(event.delay, scope),
            priority_root=None if event.priority is None else graph.compile(event.priority, scope),
            targets=tuple(
                self.rules.compile_rule(assignment.variable, assignment.math, "event")
                for assignment in event.assignments
            ),
            persistent=event.persistent,
            use_values_from_trigger_time=event.use_values_from_trigger_time,
            initial_value=event.initial_value,
        )

    def reset(self) -> None:
        for machine in self.machines:
            machine.reset()
        self.log = []
        self.rng = np.random.default_rng(self.seed)

    def _capture(self, record: EventRecord, tick: Tick) -> Tuple[float, ...]:
        return tuple(
            self.rules.to_storage(target, self.graph.evaluate(target.root, tick)) for target in record.targets
        )

    def _priority(self, record: EventRecord, tick: Tick) -> float:
        if record.priority_root is None:
            return -math.inf
        value = self.graph.evaluate(record.priority_root, tick)
        return -math.inf if math.isnan(value) else value

    def poll(self, t: float, previous_t: float, tick: Tick) -> Optional[EventOutcome]:
        """Advance every event to ``t`` and execute the highest-priority runnable one."""

        if not self.machines:
            return None
        graph = self.graph
        scheduled = False
        for machine in self.machines:
            record = machine.record
            trigger = graph.evaluate_bool(record.trigger_root, tick)
            effects = machine.advance(
                t,
                previous_t,
                trigger,
                delay=lambda record=record: graph.evaluate(record.delay_root, tick),
                capture=lambda record=record: self._capture(record, tick),
            )
            for effect in effects:
                logger.debug("event %s %s at t=%g", record.id, effect.kind, t)
            scheduled = scheduled or any(effect.kind == "scheduled" for effect in effects)

        runnable = [machine for machine in self.machines if machine.runnable(t)]
        if not runnable:
            return EventOutcome(time=t) if scheduled else None
        for machine in runnable:
            machine.priority = self._priority(machine.record, tick)
        highest = max(machine.priority for machine in runnable)
        candidates = [machine for machine in runnable if machine.priority == highest]
        chosen = candidates[0] if len(candidates) == 1 else candidates[int(self.rng.integers(len(candidates)))]
        return self._execute(chosen, t, tick)

    def _execute(self, machine: EventMachine, t: float, tick: Tick) -> EventOutcome:
        record = machine.record
        firing = machine.pending[0]
        if firing.values is not None:
            values = list(firing.values)
        else:
            values = list(self._capture(record, tick))
        written: Dict[int, float] = {}
        state = self.graph.state
        pairs = list(zip(record.targets, values))
        # compartments first: species assigned by the same event keep their new value
        pairs.sort(key=lambda pair: 0 if pair[0].slot is not None and self.layout.is_compartment(pair[0].slot) else 1)
        for target, value in pairs:
            if target.slot is None:
                self.rules.side_table[target.variable] = value
                continue
            if self.layout.is_compartment(target.slot):
                written.update(self.rules.rescale_hosted(target.slot, float(state[target.slot]), value))
            state[target.slot] = value
            written[target.slot] = value
        machine.consume(t)
        delay = t - firing.trigger_time
        self.log.append(
            {
                "event_index": record.index,
                "event_id": record.id,
                "time_fire": t,
                "time_trigger": firing.trigger_time,
                "delay": delay,
                "type": "delayed" if machine.delayed else "immediate",
                "assignments": _format_assignments(record.targets, values),
            }
        )
        logger.debug("executed event %s at t=%g", record.id, t)
        return EventOutcome(
            time=t,
            event_index=record.index,
            event_id=record.id,
            trigger_time=firing.trigger_time,
            assignments=list(written.items()),
        )


__all__ = [
    "EVENT_LOG_FIELDS",
    "EventEffect",
    "EventEngine",
    "EventMachine",
    "EventOutcome",
    "EventRecord",
    "PendingFiring",
]
