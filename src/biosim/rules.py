"""Assignment, rate and initial-assignment rule evaluation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from .entities import AssignmentRule, Model
from .errors import ModelStructureError
from .expression import ExpressionGraph, Scope, Tick
from .formula import free_names
from .state_vector import SlotInfo, StateLayout

logger = logging.getLogger(__name__)

RuleKind = Literal["assignment", "rate", "initial", "event"]


@dataclass(frozen=True)
class RuleRecord:
    """One compiled rule; ``slot`` is None for side-table stoichiometry targets."""

    variable: str
    kind: RuleKind
    root: int
    slot: Optional[int]
    species: Optional[SlotInfo] = None
    skip_conversion: bool = False


def order_assignment_rules(
    rules: Sequence[AssignmentRule],
    dependencies: Optional[Mapping[str, Set[str]]] = None,
) -> Tuple[List[AssignmentRule], int]:
    """Order assignment rules so every target is written before it is read.

    Returns the ordered rules and the number of passes needed. Rules caught in a
    dependency cycle are kept in declaration order ahead of the acyclic ones and
    the pass count becomes the number of such rules.
    """

    rules = list(rules)
    if len(rules) <= 1:
        return rules, 1
    by_variable: Dict[str, AssignmentRule] = {}
    for rule in rules:
        if rule.variable in by_variable:
            raise ModelStructureError("more than one assignment rule", rule.variable)
        by_variable[rule.variable] = rule
    variables = list(by_variable)
    targets = set(variables)

    readers: Dict[str, Set[str]] = {}
    for variable in variables:
        reads = dependencies[variable] if dependencies is not None else free_names(by_variable[variable].math)
        for name in set(reads) & targets:
            readers.setdefault(name, set()).add(variable)

    placed: List[str] = []
    remaining = variables
    progress = True
    while progress:
        unread = [variable for variable in remaining if variable not in readers]
        emptied = []
        for name, reading in readers.items():
            reading.difference_update(unread)
            if not reading:
                emptied.append(name)
        for name in emptied:
            del readers[name]
        remaining = [variable for variable in remaining if variable not in unread]
        placed.extend(unread)
        progress = bool(unread or emptied)

    ordered = [by_variable[variable] for variable in remaining]
    ordered.extend(by_variable[variable] for variable in reversed(placed))
    if remaining:
        logger.warning(
            "cyclic assignment rules for %s; evaluating %d bounded passes",
            ", ".join(remaining),
            len(remaining),
        )
    return ordered, max(len(remaining), 1)


class RuleEngine:
    """Evaluate compiled rules against the graph's state vector."""

    def __init__(
        self,
        graph: ExpressionGraph,
        model: Model,
        layout: StateLayout,
        side_table: Dict[str, float],
        converted: Iterable[AssignmentRule] = (),
    ):
        self.graph = graph
        self.model = model
        self.layout = layout
        self.side_table = side_table
        converted = list(converted)
        ordered, self.loops = order_assignment_rules(model.assignment_rules)
        if converted:
            ordered_converted, converted_loops = order_assignment_rules(converted)
            ordered.extend(ordered_converted)
            self.loops = max(self.loops, converted_loops)
        self.assignments = [self.compile_rule(rule.variable, rule.math, "assignment") for rule in ordered]
        rates = [self.compile_rule(rule.variable, rule.math, "rate") for rule in model.rate_rules]
        # compartment rates must be known before hosted species are corrected
        self.rates = sorted(rates, key=lambda record: 0 if self._is_compartment(record) else 1)
        self.initial = [
            self.compile_rule(assignment.symbol, assignment.math, "initial")
            for assignment in model.initial_assignments
        ]
        self.rate_targets = {record.slot for record in self.rates if record.slot is not None}
        self.compartment_rates = {record.slot for record in self.rates if self._is_compartment(record)}
        self._hosted = {
            position: [
                hosted
                for hosted in layout.hosted_species(position)
                if not layout.slots[hosted].is_amount and not layout.slots[hosted].constant
            ]
            for position, slot in enumerate(layout.slots)
            if slot.kind == "compartment"
        }
        self._declared_by_concentration = {
            position: [
                hosted
                for hosted in layout.hosted_species(position)
                if layout.slots[hosted].is_amount and layout.slots[hosted].declared_as_concentration
            ]
            for position in self._hosted
        }

    def _is_compartment(self, record: RuleRecord) -> bool:
        return record.slot is not None and self.layout.is_compartment(record.slot)

    def compile_rule(self, variable: str, math, kind: RuleKind) -> RuleRecord:
        slot = self.layout.slot_of(variable)
        if slot is None:
            if self.model.find_species_reference(variable) is None:
                raise ModelStructureError(f"{kind} rule targets an unknown symbol", variable)
            if kind == "rate":
                raise ModelStructureError("rate rule targets a constant species reference", variable)
        root = self.graph.compile(math, Scope(owner=variable))
        info = self.layout.slots[slot] if slot is not None else None
        species = info if info is not None and info.kind == "species" else None
        return RuleRecord(
            variable=variable,
            kind=kind,
            root=root,
            slot=slot,
            species=species,
            skip_conversion=species is not None and species.compartment_slot is None,
        )

    # ---------------------------------------------------------- assignments
    def evaluate_assignments(self, tick_factory: Callable[[], Tick], initial: bool = False) -> bool:
        """Run the assignment rules ``loops`` times; return whether any target changed."""

        changed = False
        for _ in range(self.loops):
            tick = tick_factory()
            for record in self.assignments:
                if self.apply(record, self.graph.evaluate(record.root, tick), initial):
                    changed = True
        return changed

    def evaluate_initial_assignments(self, tick: Tick) -> bool:
        changed = False
        for record in self.initial:
            if self.apply(record, self.graph.evaluate(record.root, tick), initial=True):
                changed = True
        return changed

    def to_storage(self, record: RuleRecord, value: float) -> float:
        """Convert a rule value from the species' declared unit to its storage unit."""

        species = record.species
        if species is None or record.skip_conversion:
            return value
        size = float(self.graph.state[species.compartment_slot])
        if size == 0.0:
            return value
        if species.is_amount and not species.has_only_substance_units:
            return value * size
        if not species.is_amount and species.has_only_substance_units:
            return value / size
        return value

    def apply(self, record: RuleRecord, value: float, initial: bool = False) -> bool:
        """Write a rule or event value to its target; return whether it changed."""

        if record.slot is None:
            previous = self.side_table.get(record.variable)
            self.side_table[record.variable] = value
            return previous != value
        state = self.graph.state
        value = self.to_storage(record, value)
        previous = float(state[record.slot])
        if previous == value:
            return False
        if self.layout.is_compartment(record.slot):
            self.rescale_hosted(record.slot, previous, value, initial)
        state[record.slot] = value
        return True

    def rescale_hosted(self, compartment_slot: int, old: float, new: float, initial: bool = False) -> Dict[int, float]:
        """Keep hosted species consistent with a compartment resize; return written slots."""

        written: Dict[int, float] = {}
        if old == 0.0 or new == 0.0:
            return written
        state = self.graph.state
        if initial:
            for position in self._declared_by_concentration.get(compartment_slot, ()):
                state[position] = state[position] / old * new
                written[position] = float(state[position])
        else:
            for position in self._hosted.get(compartment_slot, ()):
                state[position] = state[position] * old / new
                written[position] = float(state[position])
        return written

    # ----------------------------------------------------------------- rates
    def evaluate_rates(self, rates: np.ndarray, tick: Tick) -> np.ndarray:
        state = self.graph.state
        for record in self.rates:
            value = self.graph.evaluate(record.root, tick)
            species = record.species
            if species is not None and not record.skip_conversion:
                size = float(state[species.compartment_slot])
                if size != 0.0:
                    if species.is_amount and not species.has_only_substance_units:
                        value = value * size
                        if species.compartment_slot in self.compartment_rates:
                            value += state[record.slot] / size * rates[species.compartment_slot]
                    elif not species.is_amount and species.has_only_substance_units:
                        value = value / size
            rates[record.slot] = value
            if record.slot in self.compartment_rates:
                size = float(state[record.slot])
                if size == 0.0:
                    continue
                for position in self._hosted[record.slot]:
                    if position not in self.rate_targets:
                        rates[position] = -rates[record.slot] * state[position] / size
        return rates


__all__ = ["RuleEngine", "RuleKind", "RuleRecord", "order_assignment_rules"]
