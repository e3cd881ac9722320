"""Flat state-vector layout and per-slot metadata."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Literal, Optional, Tuple

import numpy as np

from .config import RuntimeSettings
from .entities import Model, Species
from .errors import ModelStructureError

logger = logging.getLogger(__name__)

SlotKind = Literal["compartment", "species", "stoichiometry", "parameter"]


@dataclass
class SlotInfo:
    kind: SlotKind
    identifier: str
    constant: bool = False
    is_amount: bool = True
    compartment_slot: Optional[int] = None
    conversion_factor: float = 1.0
    has_only_substance_units: bool = False
    boundary_condition: bool = False
    in_concentration: bool = False
    declared_as_concentration: bool = False


@dataclass
class StateLayout:
    """Slot order, metadata and initial values for one compiled model."""

    slots: List[SlotInfo]
    index: Dict[str, int]
    y0: np.ndarray

    def __len__(self) -> int:
        return len(self.slots)

    def slot_of(self, identifier: str) -> Optional[int]:
        return self.index.get(identifier)

    def ids(self) -> Tuple[str, ...]:
        return tuple(slot.identifier for slot in self.slots)

    def is_compartment(self, position: int) -> bool:
        return self.slots[position].kind == "compartment"

    def hosted_species(self, compartment_slot: int) -> List[int]:
        return [
            position
            for position, slot in enumerate(self.slots)
            if slot.kind == "species" and slot.compartment_slot == compartment_slot
        ]


def _majority_species(species: Tuple[Species, ...]) -> Tuple[bool, bool]:
    amounts = sum(1 for s in species if s.initial_amount is not None)
    concentrations = sum(1 for s in species if s.initial_amount is None and s.initial_concentration is not None)
    substance_only = sum(1 for s in species if s.has_only_substance_units)
    return amounts >= concentrations, substance_only > len(species) - substance_only


class StateVectorBuilder:
    """Allocate ``Y`` and its slot metadata from a symbolic model."""

    def __init__(self, model: Model, settings: Optional[RuntimeSettings] = None):
        self.model = model
        self.settings = settings or RuntimeSettings()

    def build(self) -> StateLayout:
        model = self.model
        settings = self.settings
        slots: List[SlotInfo] = []
        values: List[float] = []
        index: Dict[str, int] = {}

        def allocate(info: SlotInfo, value: float) -> int:
            if info.identifier in index:
                raise ModelStructureError("duplicate identifier", info.identifier)
            index[info.identifier] = len(slots)
            slots.append(info)
            values.append(float(value))
            return index[info.identifier]

        for compartment in model.compartments:
            size = settings.default_compartment_value if compartment.size is None else compartment.size
            allocate(SlotInfo(kind="compartment", identifier=compartment.id, constant=compartment.constant), size)

        amount_majority, substance_majority = _majority_species(model.species)
        for species in model.species:
            compartment = None if species.compartment is None else model.find_compartment(species.compartment)
            if species.compartment is not None and compartment is None:
                raise ModelStructureError(f"unknown compartment '{species.compartment}'", species.id)
            if not species.has_initial_value:
                logger.debug(
                    "species %s has no initial value; imputing %s with only_substance_units=%s",
                    species.id,
                    "amount" if amount_majority else "concentration",
                    substance_majority,
                )
                species = replace(
                    species,
                    initial_amount=settings.default_species_value if amount_majority else None,
                    initial_concentration=None if amount_majority else settings.default_species_value,
                    has_only_substance_units=substance_majority,
                )
            compartment_slot = None
            if compartment is not None and compartment.spatial_dimensions != 0:
                compartment_slot = index[compartment.id]
            is_amount = settings.amount_overrides.get(species.id, species.initial_amount is not None)
            size = 1.0 if compartment_slot is None else values[compartment_slot]
            if species.initial_amount is not None:
                value = species.initial_amount if is_amount or size == 0 else species.initial_amount / size
            else:
                value = species.initial_concentration if not is_amount else species.initial_concentration * size
            factor = 1.0
            if not species.boundary_condition and not species.constant:
                factor_id = species.conversion_factor or model.conversion_factor
                if factor_id:
                    factor = self._parameter_value(factor_id, species.id)
            allocate(
                SlotInfo(
                    kind="species",
                    identifier=species.id,
                    constant=species.constant,
                    is_amount=is_amount,
                    compartment_slot=compartment_slot,
                    conversion_factor=factor,
                    has_only_substance_units=species.has_only_substance_units,
                    boundary_condition=species.boundary_condition,
                    declared_as_concentration=species.initial_amount is None,
                ),
                value,
            )

        for rule in model.rate_rules:
            reference = model.find_species_reference(rule.variable)
            if reference is None or reference.constant or rule.variable in index:
                continue
            stoichiometry = 1.0 if reference.stoichiometry is None else reference.stoichiometry
            allocate(SlotInfo(kind="stoichiometry", identifier=rule.variable), stoichiometry)

        for parameter in model.parameters:
            value = settings.default_parameter_value if parameter.value is None else parameter.value
            allocate(SlotInfo(kind="parameter", identifier=parameter.id, constant=parameter.constant), value)

        if len(slots) > np.iinfo(np.intp).max:
            raise ModelStructureError(f"{len(slots)} symbols exceed the addressable slot range", model.id)

        for reaction in model.reactions:
            for reference, _ in reaction.participants():
                position = index.get(reference.species)
                if position is None or slots[position].kind != "species":
                    raise ModelStructureError(f"unknown species '{reference.species}'", reaction.id)
                if not slots[position].is_amount:
                    slots[position].in_concentration = True

        logger.debug("state layout slots=%d", len(slots))
        return StateLayout(slots=slots, index=index, y0=np.asarray(values, dtype=float))

    def _parameter_value(self, identifier: str, owner: str) -> float:
        parameter = self.model.find_parameter(identifier)
        if parameter is None:
            raise ModelStructureError(f"unknown conversion factor '{identifier}'", owner)
        if parameter.value is None:
            return self.settings.default_parameter_value
        return float(parameter.value)


__all__ = ["SlotInfo", "SlotKind", "StateLayout", "StateVectorBuilder"]
