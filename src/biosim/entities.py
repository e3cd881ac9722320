"""Symbolic object model consumed by the compiler.

The model loader fills these dataclasses in; the compiler never mutates them.
Math fields hold sympy expressions (see :func:`biosim.formula.parse_math`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional, Tuple, Union

import sympy as sp


@dataclass(frozen=True)
class Compartment:
    id: str
    size: Optional[float] = None
    spatial_dimensions: float = 3.0
    constant: bool = True


@dataclass(frozen=True)
class Species:
    id: str
    compartment: Optional[str] = None
    initial_amount: Optional[float] = None
    initial_concentration: Optional[float] = None
    has_only_substance_units: bool = False
    boundary_condition: bool = False
    constant: bool = False
    conversion_factor: Optional[str] = None

    @property
    def has_initial_value(self) -> bool:
        return self.initial_amount is not None or self.initial_concentration is not None


@dataclass(frozen=True)
class Parameter:
    id: str
    value: Optional[float] = None
    constant: bool = True


@dataclass(frozen=True)
class LocalParameter:
    id: str
    value: float = 0.0


@dataclass(frozen=True)
class SpeciesReference:
    species: str
    stoichiometry: Optional[float] = None
    id: Optional[str] = None
    constant: bool = True
    stoichiometry_math: Optional[sp.Basic] = None


@dataclass(frozen=True)
class KineticLaw:
    math: sp.Basic
    local_parameters: Tuple[LocalParameter, ...] = ()

    def local(self, identifier: str) -> Optional[LocalParameter]:
        for parameter in self.local_parameters:
            if parameter.id == identifier:
                return parameter
        return None


@dataclass(frozen=True)
class Reaction:
    id: str
    reactants: Tuple[SpeciesReference, ...] = ()
    products: Tuple[SpeciesReference, ...] = ()
    modifiers: Tuple[str, ...] = ()
    kinetic_law: Optional[KineticLaw] = None
    reversible: bool = False
    fast: bool = False

    def participants(self) -> Iterator[Tuple[SpeciesReference, bool]]:
        for reference in self.reactants:
            yield reference, True
        for reference in self.products:
            yield reference, False


@dataclass(frozen=True)
class FunctionDefinition:
    id: str
    arguments: Tuple[str, ...]
    body: sp.Basic


@dataclass(frozen=True)
class AssignmentRule:
    variable: str
    math: sp.Basic


@dataclass(frozen=True)
class RateRule:
    variable: str
    math: sp.Basic


@dataclass(frozen=True)
class AlgebraicRule:
    math: sp.Basic


Rule = Union[AssignmentRule, RateRule, AlgebraicRule]


@dataclass(frozen=True)
class InitialAssignment:
    symbol: str
    math: sp.Basic


@dataclass(frozen=True)
class EventAssignment:
    variable: str
    math: sp.Basic


@dataclass(frozen=True)
class Event:
    id: str
    trigger: sp.Basic
    assignments: Tuple[EventAssignment, ...] = ()
    delay: Optional[sp.Basic] = None
    priority: Optional[sp.Basic] = None
    persistent: bool = True
    initial_value: bool = True
    use_values_from_trigger_time: bool = True


@dataclass(frozen=True)
class Constraint:
    math: sp.Basic
    message: str = ""


@dataclass(frozen=True)
class Model:
    id: str
    compartments: Tuple[Compartment, ...] = ()
    species: Tuple[Species, ...] = ()
    parameters: Tuple[Parameter, ...] = ()
    reactions: Tuple[Reaction, ...] = ()
    function_definitions: Tuple[FunctionDefinition, ...] = ()
    rules: Tuple[Rule, ...] = ()
    initial_assignments: Tuple[InitialAssignment, ...] = ()
    events: Tuple[Event, ...] = ()
    constraints: Tuple[Constraint, ...] = ()
    conversion_factor: Optional[str] = None
    time_symbol: str = "time"
    name: str = field(default="", compare=False)

    def find_compartment(self, identifier: str) -> Optional[Compartment]:
        return next((c for c in self.compartments if c.id == identifier), None)

    def find_species(self, identifier: str) -> Optional[Species]:
        return next((s for s in self.species if s.id == identifier), None)

    def find_parameter(self, identifier: str) -> Optional[Parameter]:
        return next((p for p in self.parameters if p.id == identifier), None)

    def find_reaction(self, identifier: str) -> Optional[Reaction]:
        return next((r for r in self.reactions if r.id == identifier), None)

    def find_function(self, identifier: str) -> Optional[FunctionDefinition]:
        return next((f for f in self.function_definitions if f.id == identifier), None)

    def find_species_reference(self, identifier: str) -> Optional[SpeciesReference]:
        for reaction in self.reactions:
            for reference, _ in reaction.participants():
                if reference.id == identifier:
                    return reference
        return None

    def identifiers(self) -> Iterator[str]:
        for group in (self.compartments, self.species, self.parameters, self.reactions):
            for element in group:
                yield element.id
        for reaction in self.reactions:
            for reference, _ in reaction.participants():
                if reference.id:
                    yield reference.id

    @property
    def assignment_rules(self) -> Tuple[AssignmentRule, ...]:
        return tuple(rule for rule in self.rules if isinstance(rule, AssignmentRule))

    @property
    def rate_rules(self) -> Tuple[RateRule, ...]:
        return tuple(rule for rule in self.rules if isinstance(rule, RateRule))

    @property
    def algebraic_rules(self) -> Tuple[AlgebraicRule, ...]:
        return tuple(rule for rule in self.rules if isinstance(rule, AlgebraicRule))


__all__ = [
    "AlgebraicRule",
    "AssignmentRule",
    "Compartment",
    "Constraint",
    "Event",
    "EventAssignment",
    "FunctionDefinition",
    "InitialAssignment",
    "KineticLaw",
    "LocalParameter",
    "Model",
    "Parameter",
    "RateRule",
    "Reaction",
    "Rule",
    "Species",
    "SpeciesReference",
]
