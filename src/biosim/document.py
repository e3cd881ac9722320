"""JSON model documents validated with pydantic and turned into :class:`Model`."""

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Literal, Mapping, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .entities import (
    AlgebraicRule,
    AssignmentRule,
    Compartment,
    Constraint,
    Event,
    EventAssignment,
    FunctionDefinition,
    InitialAssignment,
    KineticLaw,
    LocalParameter,
    Model,
    Parameter,
    RateRule,
    Reaction,
    Species,
    SpeciesReference,
)
from .errors import ConfigError
from .formula import parse_math


class _Row(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CompartmentRow(_Row):
    id: str
    size: Optional[float] = None
    spatial_dimensions: float = 3.0
    constant: bool = True

    @field_validator("spatial_dimensions")
    def dimensions_allowed(cls, value: float) -> float:
        if value < 0.0 or value > 3.0:
            raise ValueError("spatial_dimensions must be between 0 and 3")
        return value


class SpeciesRow(_Row):
    id: str
    compartment: Optional[str] = None
    initial_amount: Optional[float] = None
    initial_concentration: Optional[float] = None
    has_only_substance_units: bool = False
    boundary_condition: bool = False
    constant: bool = False
    conversion_factor: Optional[str] = None


class ParameterRow(_Row):
    id: str
    value: Optional[float] = None
    constant: bool = True


class LocalParameterRow(_Row):
    id: str
    value: float = 0.0


class SpeciesReferenceRow(_Row):
    species: str
    stoichiometry: Optional[float] = None
    id: Optional[str] = None
    constant: bool = True
    stoichiometry_math: Optional[str] = None


class ReactionRow(_Row):
    id: str
    reactants: List[SpeciesReferenceRow] = Field(default_factory=list)
    products: List[SpeciesReferenceRow] = Field(default_factory=list)
    modifiers: List[str] = Field(default_factory=list)
    kinetic_law: Optional[str] = None
    local_parameters: List[LocalParameterRow] = Field(default_factory=list)
    reversible: bool = False
    fast: bool = False


class FunctionRow(_Row):
    id: str
    arguments: List[str] = Field(default_factory=list)
    body: str


class RuleRow(_Row):
    type: Literal["assignment", "rate", "algebraic"]
    variable: Optional[str] = None
    math: str

    @model_validator(mode="after")
    def variable_present(self) -> "RuleRow":
        if self.variable is None and self.type != "algebraic":
            raise ValueError("assignment and rate rules need a variable")
        return self


class InitialAssignmentRow(_Row):
    symbol: str
    math: str


class EventAssignmentRow(_Row):
    variable: str
    math: str


class EventRow(_Row):
    id: str
    trigger: str
    assignments: List[EventAssignmentRow] = Field(default_factory=list)
    delay: Optional[str] = None
    priority: Optional[str] = None
    persistent: bool = True
    initial_value: bool = True
    use_values_from_trigger_time: bool = True


class ConstraintRow(_Row):
    math: str
    message: str = ""


class ModelDocument(_Row):
    id: str
    name: str = ""
    time_symbol: str = "time"
    conversion_factor: Optional[str] = None
    compartments: List[CompartmentRow] = Field(default_factory=list)
    species: List[SpeciesRow] = Field(default_factory=list)
    parameters: List[ParameterRow] = Field(default_factory=list)
    functions: List[FunctionRow] = Field(default_factory=list)
    reactions: List[ReactionRow] = Field(default_factory=list)
    rules: List[RuleRow] = Field(default_factory=list)
    initial_assignments: List[InitialAssignmentRow] = Field(default_factory=list)
    events: List[EventRow] = Field(default_factory=list)
    constraints: List[ConstraintRow] = Field(default_factory=list)

    def to_model(self) -> Model:
        functions: Set[str] = {row.id for row in self.functions}

        def math(text: str, element: str):
            return parse_math(text, functions=functions, element=element)

        reactions = []
        for row in self.reactions:
            law = None
            if row.kinetic_law is not None:
                law = KineticLaw(
                    math=math(row.kinetic_law, row.id),
                    local_parameters=tuple(LocalParameter(p.id, p.value) for p in row.local_parameters),
                )

            def reference(ref: SpeciesReferenceRow, owner: str = row.id) -> SpeciesReference:
                return SpeciesReference(
                    species=ref.species,
                    stoichiometry=ref.stoichiometry,
                    id=ref.id,
                    constant=ref.constant,
                    stoichiometry_math=None if ref.stoichiometry_math is None else math(ref.stoichiometry_math, owner),
                )

            reactions.append(
                Reaction(
                    id=row.id,
                    reactants=tuple(reference(ref) for ref in row.reactants),
                    products=tuple(reference(ref) for ref in row.products),
                    modifiers=tuple(row.modifiers),
                    kinetic_law=law,
                    reversible=row.reversible,
                    fast=row.fast,
                )
            )

        rules = []
        for index, row in enumerate(self.rules):
            element = row.variable or f"rule[{index}]"
            if row.type == "assignment":
                rules.append(AssignmentRule(row.variable, math(row.math, element)))
            elif row.type == "rate":
                rules.append(RateRule(row.variable, math(row.math, element)))
            else:
                rules.append(AlgebraicRule(math(row.math, element)))

        return Model(
            id=self.id,
            name=self.name,
            time_symbol=self.time_symbol,
            conversion_factor=self.conversion_factor,
            compartments=tuple(Compartment(**row.model_dump()) for row in self.compartments),
            species=tuple(Species(**row.model_dump()) for row in self.species),
            parameters=tuple(Parameter(**row.model_dump()) for row in self.parameters),
            function_definitions=tuple(
                FunctionDefinition(row.id, tuple(row.arguments), math(row.body, row.id)) for row in self.functions
            ),
            reactions=tuple(reactions),
            rules=tuple(rules),
            initial_assignments=tuple(
                InitialAssignment(row.symbol, math(row.math, row.symbol)) for row in self.initial_assignments
            ),
            events=tuple(
                Event(
                    id=row.id,
                    trigger=math(row.trigger, row.id),
                    assignments=tuple(
                        EventAssignment(item.variable, math(item.math, row.id)) for item in row.assignments
                    ),
                    delay=None if row.delay is None else math(row.delay, row.id),
                    priority=None if row.priority is None else math(row.priority, row.id),
                    persistent=row.persistent,
                    initial_value=row.initial_value,
                    use_values_from_trigger_time=row.use_values_from_trigger_time,
                )
                for row in self.events
            ),
            constraints=tuple(
                Constraint(math(row.math, f"constraint[{index}]"), row.message)
                for index, row in enumerate(self.constraints)
            ),
        )


def load_document(source: Union[str, Path, Mapping[str, object]]) -> Model:
    """Read a JSON model document (path or mapping) into a :class:`Model`."""

    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.is_file():
            raise ConfigError(f"Model document {path} does not exist")
        with path.open("r", encoding="utf8") as handle:
            try:
                payload = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Model document {path} is not valid JSON: {exc}") from exc
    else:
        payload = dict(source)
    try:
        document = ModelDocument.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid model document: {exc}") from exc
    return document.to_model()


__all__ = ["ModelDocument", "load_document"]
