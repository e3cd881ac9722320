"""Integrator-facing facade over a compiled model."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np

from .algebraic import convert_algebraic_rules
from .config import RuntimeSettings
from .constraints import ConstraintListener, ConstraintMonitor, ConstraintViolation, LoggingConstraintListener
from .entities import Model
from .errors import ModelStructureError
from .events import EventEngine, EventOutcome
from .expression import ExpressionGraph, Tick
from .reactions import ReactionEvaluator
from .rules import RuleEngine
from .state_vector import StateLayout, StateVectorBuilder

logger = logging.getLogger(__name__)

_MAX_EVENTS_PER_POINT = 10000


def _check_rule_targets(model: Model) -> None:
    governed = {}
    for rule in model.assignment_rules + model.rate_rules:
        if rule.variable in governed:
            raise ModelStructureError("governed by more than one rule", rule.variable)
        governed[rule.variable] = rule
    for species in model.species:
        if species.id in governed and not species.boundary_condition:
            for reaction in model.reactions:
                if any(reference.species == species.id for reference, _ in reaction.participants()):
                    raise ModelStructureError(
                        f"non-boundary species is both rule-governed and changed by reaction {reaction.id}",
                        species.id,
                    )


class CompiledSystem:
    """A model compiled for evaluation: state layout, node graph, rules, reactions, events.

    One instance owns one internal state vector and one node cache; callers'
    arrays are copied in and never mutated.
    """

    def __init__(
        self,
        model: Model,
        settings: RuntimeSettings,
        layout: StateLayout,
        graph: ExpressionGraph,
        reactions: ReactionEvaluator,
        rules: RuleEngine,
        events: EventEngine,
        constraints: ConstraintMonitor,
    ):
        self.model = model
        self.settings = settings
        self.layout = layout
        self.graph = graph
        self.reactions = reactions
        self.rules = rules
        self.events = events
        self.constraints = constraints
        self._state = layout.y0.copy()
        graph.bind(self._state)
        self._base = layout.y0.copy()
        self._y0 = layout.y0.copy()
        self._no_derivatives = not model.reactions and not model.rate_rules
        self._memo: Optional[Tuple[float, np.ndarray, np.ndarray]] = None

    @classmethod
    def from_model(cls, model: Model, settings: Optional[RuntimeSettings] = None) -> "CompiledSystem":
        settings = settings or RuntimeSettings()
        _check_rule_targets(model)
        layout = StateVectorBuilder(model, settings).build()
        graph = ExpressionGraph(model, layout)
        converted = convert_algebraic_rules(model)
        reactions = ReactionEvaluator(graph, model, layout)
        rules = RuleEngine(graph, model, layout, reactions.side_table, converted)
        events = EventEngine(
            graph,
            model,
            layout,
            rules,
            seed=settings.seed,
            tolerance=settings.event_time_tolerance,
        )
        constraints = ConstraintMonitor(graph, model)
        logger.info("compiled %s nodes=%d merged=%d slots=%d", model.id, len(graph), graph.merged, len(layout))
        return cls(model, settings, layout, graph, reactions, rules, events, constraints)

    # --------------------------------------------------------------- layout
    def dimension(self) -> int:
        return len(self.layout)

    def slot_ids(self) -> Tuple[str, ...]:
        return self.layout.ids()

    def initial_values(self) -> np.ndarray:
        return self._y0.copy()

    @property
    def has_fast_reactions(self) -> bool:
        return self.reactions.has_fast_reactions

    def set_fast_processing(self, flag: bool) -> None:
        self.reactions.processing_fast = bool(flag)
        self._memo = None

    @property
    def event_log(self) -> List[dict]:
        return list(self.events.log)

    def next_event_time(self) -> Optional[float]:
        """Earliest pending execution time of a scheduled firing, if any."""

        times = [machine.pending[0].execution_time for machine in self.events.machines if machine.pending]
        return min(times) if times else None

    # ------------------------------------------------------------ lifecycle
    def initialize(self) -> np.ndarray:
        """Reset all runtime state and return the consistent initial vector."""

        graph = self.graph
        graph.reset()
        self.reactions.reset()
        self.events.reset()
        self.constraints.reset()
        self._memo = None
        np.copyto(self._state, self._base)
        graph.history.clear()

        # initial assignments and rules may read each other's targets
        for _ in range(self.settings.max_initial_iterations):
            changed = self.rules.evaluate_initial_assignments(graph.advance(0.0))
            if self.rules.evaluate_assignments(lambda: graph.advance(0.0), initial=True):
                changed = True
            if not changed:
                break
        else:
            logger.warning(
                "initial assignment rules still changing after %d iterations",
                self.settings.max_initial_iterations,
            )
        self._y0 = self._state.copy()
        graph.history.record(0.0, self._y0)

        if len(self.constraints) and not self.constraints.listeners:
            self.constraints.add_listener(LoggingConstraintListener())
        self.constraints.check(graph.advance(0.0))
        return self._y0.copy()

    def _load(self, y) -> None:
        values = np.asarray(y, dtype=float)
        if values.shape != self._state.shape:
            raise ValueError(f"state vector has shape {values.shape}, expected {self._state.shape}")
        np.copyto(self._state, values)

    def _rule_pass(self, t: float) -> Tick:
        issued: List[Tick] = []

        def issue() -> Tick:
            issued.append(self.graph.advance(t))
            return issued[-1]

        changed = self.rules.evaluate_assignments(issue)
        return self.graph.advance(t) if changed else issued[-1]

    # ----------------------------------------------------------- derivative
    def compute_derivative(self, t: float, y) -> np.ndarray:
        """Change rates at ``(t, y)``; ``y`` is not modified."""

        t = float(t)
        if self._no_derivatives:
            return np.zeros(self.dimension(), dtype=float)
        memo = self._memo
        if memo is not None and memo[0] == t and np.array_equal(memo[1], y):
            return memo[2].copy()
        self._load(y)
        tick = self._rule_pass(t)
        rates = np.zeros(self.dimension(), dtype=float)
        self.rules.evaluate_rates(rates, tick)
        self.reactions.accumulate(rates, tick)
        self.constraints.check(tick)
        self._memo = (t, np.array(y, dtype=float, copy=True), rates.copy())
        return rates

    def reaction_velocities(self) -> np.ndarray:
        """Velocities from the most recent derivative call."""

        return self.reactions.last_velocities.copy()

    def apply_assignment_rules(self, t: float, y) -> np.ndarray:
        """Return a copy of ``y`` with every assignment-rule target recomputed at ``t``."""

        self._load(y)
        self._rule_pass(float(t))
        return self._state.copy()

    def record_state(self, t: float, y) -> None:
        """Add an accepted integrator state to the history read by ``delay``."""

        self.graph.history.record(t, y)
        self._memo = None

    # --------------------------------------------------------------- events
    def poll_events(self, t: float, previous_t: float, y) -> Optional[EventOutcome]:
        if not len(self.events):
            return None
        self._load(y)
        tick = self._rule_pass(float(t))
        outcome = self.events.poll(float(t), float(previous_t), tick)
        if outcome is not None:
            self._memo = None
        return outcome

    def process_events(self, t: float, previous_t: float, y) -> Tuple[np.ndarray, List[EventOutcome]]:
        """Poll until no event is runnable at ``t``; return the new state and all outcomes."""

        current = np.array(y, dtype=float, copy=True)
        outcomes: List[EventOutcome] = []
        for _ in range(_MAX_EVENTS_PER_POINT):
            outcome = self.poll_events(t, previous_t, current)
            if outcome is None:
                break
            outcomes.append(outcome)
            current = self._state.copy()
            if outcome.empty:
                break
        else:
            logger.warning("stopped event processing at t=%g after %d executions", t, _MAX_EVENTS_PER_POINT)
        if outcomes:
            current = self._state.copy()
        return current, outcomes

    # ---------------------------------------------------------- constraints
    def check_constraints(self, t: float, y) -> List[ConstraintViolation]:
        self._load(y)
        return self.constraints.check(self._rule_pass(float(t)))

    def add_constraint_listener(self, listener: ConstraintListener) -> None:
        self.constraints.add_listener(listener)

    def remove_constraint_listener(self, listener: ConstraintListener) -> bool:
        return self.constraints.remove_listener(listener)

    # ----------------------------------------------------------- parameters
    def set_parameter_value(self, identifier: str, value: float, reaction: Optional[str] = None) -> None:
        """Change a global parameter (or a reaction-local one when ``reaction`` is given).

        Global values are written into the internal state and into
        :meth:`initial_values`; integrators pick them up from there.
        """

        self._memo = None
        if reaction is not None:
            self.graph.set_local(reaction, identifier, value)
            return
        position = self.layout.slot_of(identifier)
        if position is None:
            raise ModelStructureError("no such symbol in the state vector", identifier)
        self._base[position] = float(value)
        self._state[position] = float(value)
        self._y0[position] = float(value)


__all__ = ["CompiledSystem"]
