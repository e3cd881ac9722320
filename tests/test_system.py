from __future__ import annotations

from dataclasses import replace

import numpy as np
import pytest

from biosim import CompiledSystem
from biosim.entities import (
    AssignmentRule,
    Compartment,
    KineticLaw,
    LocalParameter,
    Model,
    Parameter,
    RateRule,
    Reaction,
    Species,
    SpeciesReference,
)
from biosim.errors import ModelStructureError
from biosim.formula import parse_math


def _decay(
    *,
    a: Species = None,
    reactant: SpeciesReference = None,
    parameters=(),
    rules=(),
    local=(),
    **extra,
) -> Model:
    fields = dict(
        id="decay",
        compartments=(Compartment("c", size=1.0),),
        species=(a or Species("A", "c", initial_amount=100.0), Species("B", "c", initial_amount=0.0)),
        parameters=(Parameter("k", 0.1),) + tuple(parameters),
        reactions=(
            Reaction(
                "R1",
                reactants=(reactant or SpeciesReference("A"),),
                products=(SpeciesReference("B"),),
                kinetic_law=KineticLaw(parse_math("k*A"), tuple(local)),
            ),
        ),
        rules=tuple(rules),
    )
    fields.update(extra)
    return Model(**fields)


def _derivative(model: Model) -> np.ndarray:
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    return system.compute_derivative(0.0, y0)


def test_mass_action_derivative_and_velocities() -> None:
    system = CompiledSystem.from_model(_decay())
    assert system.slot_ids() == ("c", "A", "B", "k")
    y0 = system.initialize()
    before = y0.copy()
    dy = system.compute_derivative(0.0, y0)
    assert list(dy) == pytest.approx([0.0, -10.0, 10.0, 0.0])
    assert list(system.reaction_velocities()) == pytest.approx([10.0])
    np.testing.assert_array_equal(y0, before)


def test_concentration_species_rates_are_divided_by_volume() -> None:
    model = _decay(
        compartments=(Compartment("c", size=2.0),),
        a=Species("A", "c", initial_concentration=5.0),
    )
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    dy = system.compute_derivative(0.0, y0)
    # velocity k * [A] = 0.5 amount/time spread over a volume of 2
    assert dy[system.layout.slot_of("A")] == pytest.approx(-0.25)
    assert dy[system.layout.slot_of("B")] == pytest.approx(0.5)


def test_conversion_factor_scales_species_rates() -> None:
    model = _decay(
        a=Species("A", "c", initial_amount=100.0, conversion_factor="f"),
        parameters=(Parameter("f", 2.0),),
    )
    assert _derivative(model)[1] == pytest.approx(-20.0)


def test_stoichiometry_math_and_declared_values() -> None:
    model = _decay(reactant=SpeciesReference("A", stoichiometry_math=parse_math("1 + 1")))
    assert _derivative(model)[1] == pytest.approx(-20.0)
    model = _decay(reactant=SpeciesReference("A", stoichiometry=3.0))
    assert _derivative(model)[1] == pytest.approx(-30.0)


def test_time_dependent_stoichiometry_math_is_reevaluated() -> None:
    model = _decay()
    model = replace(
        model,
        reactions=(
            replace(model.reactions[0], products=(SpeciesReference("B", stoichiometry_math=parse_math("1 + time")),)),
        ),
    )
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    assert system.compute_derivative(0.0, y0)[2] == pytest.approx(10.0)
    assert system.compute_derivative(1.0, y0)[2] == pytest.approx(20.0)
    assert system.compute_derivative(3.0, y0)[2] == pytest.approx(40.0)


def test_boundary_species_do_not_change() -> None:
    model = _decay(a=Species("A", "c", initial_amount=100.0, boundary_condition=True))
    dy = _derivative(model)
    assert dy[1] == 0.0
    assert dy[2] == pytest.approx(10.0)


def test_assignment_rule_on_species_reference_sets_stoichiometry() -> None:
    model = _decay(
        reactant=SpeciesReference("A", id="sA", constant=False),
        rules=(AssignmentRule("sA", parse_math("3")),),
    )
    assert _derivative(model)[1] == pytest.approx(-30.0)


def test_rate_rule_on_species_reference_uses_its_slot() -> None:
    model = _decay(
        reactant=SpeciesReference("A", id="sA", stoichiometry=2.0, constant=False),
        rules=(RateRule("sA", parse_math("0.5")),),
    )
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    assert system.slot_ids() == ("c", "A", "B", "sA", "k")
    dy = system.compute_derivative(0.0, y0)
    assert dy[1] == pytest.approx(-20.0)
    assert dy[3] == pytest.approx(0.5)


def test_fast_reactions_are_partitioned() -> None:
    fast = Reaction(
        "R2",
        reactants=(SpeciesReference("B"),),
        products=(SpeciesReference("A"),),
        kinetic_law=KineticLaw(parse_math("2*B")),
        fast=True,
    )
    model = _decay(
        species=(Species("A", "c", initial_amount=100.0), Species("B", "c", initial_amount=1.0)),
    )
    model = replace(model, reactions=model.reactions + (fast,))
    system = CompiledSystem.from_model(model)
    assert system.has_fast_reactions
    y0 = system.initialize()
    slow = system.compute_derivative(0.0, y0)
    assert slow[1] == pytest.approx(-10.0)
    system.set_fast_processing(True)
    quick = system.compute_derivative(0.0, y0)
    assert quick[1] == pytest.approx(2.0)
    assert quick[2] == pytest.approx(-2.0)


def test_models_without_derivatives_return_zeros() -> None:
    model = Model(id="static", compartments=(Compartment("c", size=1.0),), parameters=(Parameter("k", 1.0),))
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    assert list(system.compute_derivative(0.0, y0)) == [0.0, 0.0]


def test_repeated_queries_hit_the_cache() -> None:
    system = CompiledSystem.from_model(_decay())
    y0 = system.initialize()
    first = system.compute_derivative(1.0, y0)
    count = system.graph.recomputations
    second = system.compute_derivative(1.0, y0)
    assert system.graph.recomputations == count
    np.testing.assert_array_equal(first, second)
    second[1] = 123.0
    assert system.compute_derivative(1.0, y0)[1] == pytest.approx(-10.0)


def test_rejects_wrong_state_length() -> None:
    system = CompiledSystem.from_model(_decay())
    system.initialize()
    with pytest.raises(ValueError):
        system.compute_derivative(0.0, np.zeros(2))


def test_set_parameter_value_global_and_local() -> None:
    model = _decay(local=(LocalParameter("k", 0.2),))
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    assert system.compute_derivative(0.0, y0)[1] == pytest.approx(-20.0)

    system.set_parameter_value("k", 0.3, reaction="R1")
    assert system.compute_derivative(0.0, y0)[1] == pytest.approx(-30.0)

    system.set_parameter_value("k", 5.0)
    y0 = system.initialize()
    assert y0[system.layout.slot_of("k")] == 5.0
    # the local value still shadows the global one and survives initialize()
    assert system.compute_derivative(0.0, y0)[1] == pytest.approx(-30.0)

    with pytest.raises(ModelStructureError):
        system.set_parameter_value("missing", 1.0)


def test_assignment_rules_are_applied_before_derivatives() -> None:
    model = _decay(
        parameters=(Parameter("j", 0.0, constant=False),),
        rules=(AssignmentRule("j", parse_math("2*time")),),
    )
    model = replace(
        model,
        reactions=(Reaction("R1", reactants=(SpeciesReference("A"),), kinetic_law=KineticLaw(parse_math("j"))),),
    )
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    assert system.compute_derivative(3.0, y0)[1] == pytest.approx(-6.0)


def test_apply_assignment_rules_returns_a_refreshed_copy() -> None:
    model = _decay(
        parameters=(Parameter("j", 0.0, constant=False), Parameter("lag", 0.0, constant=False)),
        rules=(AssignmentRule("j", parse_math("2*time")), AssignmentRule("lag", parse_math("delay(j, 1)"))),
    )
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    updated = system.apply_assignment_rules(1.5, y0)
    assert updated[4] == pytest.approx(3.0)
    assert y0[4] == 0.0

    system.record_state(1.0, system.apply_assignment_rules(1.0, y0))
    # j at t=0.5 interpolated between the records at 0 and 1
    assert system.apply_assignment_rules(1.5, y0)[5] == pytest.approx(1.0)


def test_rule_and_reaction_on_same_species_is_rejected() -> None:
    model = _decay(rules=(AssignmentRule("A", parse_math("1")),))
    with pytest.raises(ModelStructureError):
        CompiledSystem.from_model(model)
    model = _decay(rules=(AssignmentRule("k", parse_math("1")), RateRule("k", parse_math("1"))))
    with pytest.raises(ModelStructureError):
        CompiledSystem.from_model(model)


def test_species_without_compartment_end_to_end() -> None:
    model = Model(
        id="bare",
        species=(Species("A", initial_amount=100.0), Species("B", initial_amount=0.0)),
        parameters=(Parameter("k", 0.1),),
        reactions=(
            Reaction(
                "R1",
                reactants=(SpeciesReference("A"),),
                products=(SpeciesReference("B"),),
                kinetic_law=KineticLaw(parse_math("k*A")),
            ),
        ),
    )
    system = CompiledSystem.from_model(model)
    assert system.dimension() == 3
    system.initialize()
    dy = system.compute_derivative(0.0, np.array([100.0, 0.0, 0.1]))
    assert list(dy) == pytest.approx([-10.0, 10.0, 0.0])
