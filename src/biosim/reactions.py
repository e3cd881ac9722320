"""Reaction velocities and stoichiometric accumulation into the change-rate vector."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from .entities import Model, Reaction, SpeciesReference
from .expression import ExpressionGraph, LocalBinding, Scope, Tick
from .state_vector import StateLayout

logger = logging.getLogger(__name__)


class StoichiometryValue:
    """Live stoichiometry of one reactant or product.

    Resolution order: the state-vector slot of a rate-rule governed reference,
    the side table written by assignment rules and events, the stoichiometry
    math, 1.0 when nothing is declared, then the declared value.
    """

    def __init__(
        self,
        graph: ExpressionGraph,
        reference: SpeciesReference,
        side_table: Dict[str, float],
        slot: Optional[int] = None,
        math_root: Optional[int] = None,
    ):
        self.graph = graph
        self.identifier = reference.id
        self.declared = reference.stoichiometry
        self.slot = slot
        self.math_root = math_root
        self.side_table = side_table
        self.constant = slot is None and math_root is None and (reference.constant or reference.id is None)
        self._stamp = -1
        self._value = math.nan

    def reset(self) -> None:
        self._stamp = -1

    def value(self, tick: Tick) -> float:
        if self._stamp >= 0 and (self.constant or self._stamp == tick.serial):
            return self._value
        self._value = self._resolve(tick)
        self._stamp = tick.serial
        return self._value

    def _resolve(self, tick: Tick) -> float:
        if self.slot is not None:
            return float(self.graph.state[self.slot])
        if self.identifier is not None and self.identifier in self.side_table:
            return self.side_table[self.identifier]
        if self.math_root is not None:
            return self.graph.evaluate(self.math_root, tick)
        if self.declared is None:
            return 1.0
        return float(self.declared)


@dataclass(frozen=True)
class Participant:
    slot: int
    stoichiometry: StoichiometryValue
    zero_change: bool


@dataclass(frozen=True)
class ReactionRecord:
    index: int
    id: str
    reactants: Tuple[Participant, ...]
    products: Tuple[Participant, ...]
    kinetic_root: Optional[int]
    fast: bool


class ReactionEvaluator:
    """Compile kinetic laws and turn velocities into species change rates."""

    def __init__(self, graph: ExpressionGraph, model: Model, layout: StateLayout):
        self.graph = graph
        self.model = model
        self.layout = layout
        self.side_table: Dict[str, float] = {}
        self.records: List[ReactionRecord] = []
        self.processing_fast = False
        self.last_velocities = np.zeros(len(model.reactions), dtype=float)
        self._stoichiometries: List[StoichiometryValue] = []
        for index, reaction in enumerate(model.reactions):
            self.records.append(self._compile(index, reaction))
        self.has_fast_reactions = any(record.fast for record in self.records)
        self.mixed = self.has_fast_reactions and not all(record.fast for record in self.records)
        self._species_slots = [
            position for position, slot in enumerate(layout.slots) if slot.kind == "species"
        ]

    def _compile(self, index: int, reaction: Reaction) -> ReactionRecord:
        graph = self.graph
        root = None
        if reaction.kinetic_law is None:
            logger.warning("reaction %s has no kinetic law; its velocity is 0", reaction.id)
        else:
            locals_ = {
                parameter.id: LocalBinding(reaction.id, parameter.id)
                for parameter in reaction.kinetic_law.local_parameters
            }
            scope = Scope(owner=reaction.id, local_parameters=locals_)
            root = graph.compile(reaction.kinetic_law.math, scope)
            graph.kinetic_roots[reaction.id] = root

        reactants: List[Participant] = []
        products: List[Participant] = []
        for reference, is_reactant in reaction.participants():
            participant = self._participant(reaction, reference)
            (reactants if is_reactant else products).append(participant)
        return ReactionRecord(
            index=index,
            id=reaction.id,
            reactants=tuple(reactants),
            products=tuple(products),
            kinetic_root=root,
            fast=reaction.fast,
        )

    def _participant(self, reaction: Reaction, reference: SpeciesReference) -> Participant:
        slot = self.layout.slot_of(reference.species)
        info = self.layout.slots[slot]
        math_root = None
        if reference.stoichiometry_math is not None:
            math_root = self.graph.compile(reference.stoichiometry_math, Scope(owner=reaction.id))
        state_slot = None
        if reference.id is not None:
            position = self.layout.slot_of(reference.id)
            if position is not None and self.layout.slots[position].kind == "stoichiometry":
                state_slot = position
        value = StoichiometryValue(self.graph, reference, self.side_table, slot=state_slot, math_root=math_root)
        self._stoichiometries.append(value)
        if reference.id is not None:
            self.graph.references[reference.id] = value.value
        return Participant(
            slot=slot,
            stoichiometry=value,
            zero_change=info.boundary_condition or info.constant,
        )

    def reset(self) -> None:
        self.side_table.clear()
        for value in self._stoichiometries:
            value.reset()
        self.last_velocities = np.zeros(len(self.records), dtype=float)

    def velocities(self, tick: Tick) -> np.ndarray:
        result = np.zeros(len(self.records), dtype=float)
        for record in self.records:
            if record.kinetic_root is None:
                continue
            if self.mixed and record.fast != self.processing_fast:
                continue
            result[record.index] = self.graph.evaluate(record.kinetic_root, tick)
        self.last_velocities = result
        return result

    def accumulate(self, rates: np.ndarray, tick: Tick) -> np.ndarray:
        """Add reaction-driven change rates to ``rates`` in place."""

        if not self.records:
            return rates
        velocities = self.velocities(tick)
        flux = np.zeros_like(rates)
        for record in self.records:
            velocity = velocities[record.index]
            if velocity == 0.0:
                continue
            for participant in record.reactants:
                if not participant.zero_change:
                    flux[participant.slot] -= participant.stoichiometry.value(tick) * velocity
            for participant in record.products:
                if not participant.zero_change:
                    flux[participant.slot] += participant.stoichiometry.value(tick) * velocity
        state = self.graph.state
        slots = self.layout.slots
        for position in self._species_slots:
            if flux[position] == 0.0:
                continue
            info = slots[position]
            if info.in_concentration and info.compartment_slot is not None:
                size = state[info.compartment_slot]
                if size != 0.0:
                    flux[position] /= size
            flux[position] *= info.conversion_factor
        rates += flux
        return rates


__all__ = ["Participant", "ReactionEvaluator", "ReactionRecord", "StoichiometryValue"]
