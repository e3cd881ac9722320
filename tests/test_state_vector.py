from __future__ import annotations

import pytest

from biosim.config import RuntimeSettings
from biosim.entities import (
    Compartment,
    KineticLaw,
    Model,
    Parameter,
    RateRule,
    Reaction,
    Species,
    SpeciesReference,
)
from biosim.errors import ModelStructureError
from biosim.formula import parse_math
from biosim.state_vector import StateVectorBuilder


def _model(**extra) -> Model:
    fields = dict(
        id="layout",
        compartments=(Compartment("c", size=2.0),),
        species=(
            Species("A", "c", initial_amount=4.0),
            Species("B", "c", initial_concentration=3.0),
        ),
        parameters=(Parameter("k", 0.1),),
        reactions=(
            Reaction(
                "R1",
                reactants=(SpeciesReference("A"),),
                products=(SpeciesReference("B", id="sB", constant=False),),
                kinetic_law=KineticLaw(parse_math("k*A")),
            ),
        ),
        rules=(RateRule("sB", parse_math("0.1")),),
    )
    fields.update(extra)
    return Model(**fields)


def test_slots_follow_compartment_species_stoichiometry_parameter_order() -> None:
    layout = StateVectorBuilder(_model()).build()
    assert layout.ids() == ("c", "A", "B", "sB", "k")
    assert [slot.kind for slot in layout.slots] == [
        "compartment",
        "species",
        "species",
        "stoichiometry",
        "parameter",
    ]
    assert list(layout.y0) == pytest.approx([2.0, 4.0, 3.0, 1.0, 0.1])
    assert layout.hosted_species(0) == [1, 2]


def test_concentration_species_in_reactions_are_flagged() -> None:
    layout = StateVectorBuilder(_model()).build()
    a, b = layout.slots[1], layout.slots[2]
    assert a.is_amount and not a.in_concentration
    assert not b.is_amount and b.in_concentration
    assert b.declared_as_concentration


def test_amount_override_converts_initial_concentration() -> None:
    settings = RuntimeSettings(amount_overrides={"B": True})
    layout = StateVectorBuilder(_model(), settings).build()
    assert layout.y0[layout.slot_of("B")] == pytest.approx(6.0)
    assert layout.slots[layout.slot_of("B")].is_amount


def test_missing_initial_values_follow_the_majority() -> None:
    model = _model(
        species=(
            Species("A", "c", initial_amount=4.0),
            Species("B", "c", initial_amount=1.0),
            Species("C", "c"),
        ),
        reactions=(),
        rules=(),
    )
    settings = RuntimeSettings(default_species_value=0.5)
    layout = StateVectorBuilder(model, settings).build()
    position = layout.slot_of("C")
    assert layout.slots[position].is_amount
    assert layout.y0[position] == pytest.approx(0.5)


def test_defaults_fill_missing_sizes_and_values() -> None:
    model = Model(
        id="defaults",
        compartments=(Compartment("c"),),
        parameters=(Parameter("k"),),
    )
    settings = RuntimeSettings(default_compartment_value=3.0, default_parameter_value=7.0)
    layout = StateVectorBuilder(model, settings).build()
    assert list(layout.y0) == [3.0, 7.0]


def test_conversion_factor_resolves_species_then_model() -> None:
    model = _model(
        species=(
            Species("A", "c", initial_amount=4.0, conversion_factor="f"),
            Species("B", "c", initial_amount=1.0),
            Species("D", "c", initial_amount=1.0, boundary_condition=True),
        ),
        parameters=(Parameter("k", 0.1), Parameter("f", 3.0), Parameter("g", 5.0)),
        conversion_factor="g",
        reactions=(),
        rules=(),
    )
    layout = StateVectorBuilder(model).build()
    assert layout.slots[layout.slot_of("A")].conversion_factor == 3.0
    assert layout.slots[layout.slot_of("B")].conversion_factor == 5.0
    assert layout.slots[layout.slot_of("D")].conversion_factor == 1.0


def test_zero_dimensional_compartment_has_no_size_slot() -> None:
    model = Model(
        id="point",
        compartments=(Compartment("p", spatial_dimensions=0.0),),
        species=(Species("A", "p", initial_amount=1.0),),
    )
    layout = StateVectorBuilder(model).build()
    assert layout.slots[layout.slot_of("A")].compartment_slot is None


def test_structural_errors() -> None:
    with pytest.raises(ModelStructureError):
        StateVectorBuilder(Model(id="m", species=(Species("A", "nowhere", initial_amount=1.0),))).build()
    with pytest.raises(ModelStructureError) as excinfo:
        StateVectorBuilder(
            Model(id="m", compartments=(Compartment("x"),), parameters=(Parameter("x", 1.0),))
        ).build()
    assert excinfo.value.element == "x"
    with pytest.raises(ModelStructureError):
        StateVectorBuilder(
            _model(reactions=(Reaction("R1", reactants=(SpeciesReference("ghost"),)),), rules=())
        ).build()
