from __future__ import annotations

import logging

import pytest

from biosim import CompiledSystem, RuntimeSettings
from biosim.entities import (
    AssignmentRule,
    Compartment,
    InitialAssignment,
    Model,
    Parameter,
    RateRule,
    Species,
)
from biosim.errors import ModelStructureError
from biosim.formula import parse_math
from biosim.rules import order_assignment_rules


def _rule(variable: str, text: str) -> AssignmentRule:
    return AssignmentRule(variable, parse_math(text))


def _parameters(*names: str, value: float = 0.0):
    return tuple(Parameter(name, value, constant=False) for name in names)


def test_order_places_targets_before_their_readers() -> None:
    ordered, loops = order_assignment_rules([_rule("x", "y + 1"), _rule("y", "2")])
    assert [rule.variable for rule in ordered] == ["y", "x"]
    assert loops == 1


def test_order_handles_chains_with_explicit_dependencies() -> None:
    rules = [_rule("a", "0"), _rule("b", "0"), _rule("c", "0")]
    ordered, loops = order_assignment_rules(rules, {"a": {"b"}, "b": {"c"}, "c": set()})
    assert [rule.variable for rule in ordered] == ["c", "b", "a"]
    assert loops == 1


def test_order_keeps_cycles_first_and_warns(caplog) -> None:
    rules = [_rule("x", "y"), _rule("y", "x"), _rule("z", "x + 1")]
    with caplog.at_level(logging.WARNING, logger="biosim.rules"):
        ordered, loops = order_assignment_rules(rules)
    assert [rule.variable for rule in ordered] == ["x", "y", "z"]
    assert loops == 2
    assert "cyclic assignment rules" in caplog.text


def test_duplicate_assignment_rules_are_rejected() -> None:
    with pytest.raises(ModelStructureError):
        order_assignment_rules([_rule("x", "1"), _rule("x", "2")])


def test_ordered_rules_evaluate_in_one_pass() -> None:
    model = Model(
        id="rules",
        parameters=_parameters("x", "y"),
        rules=(_rule("x", "y + 1"), _rule("y", "2")),
    )
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    assert list(y0) == [3.0, 2.0]


def test_cyclic_rules_run_bounded_passes() -> None:
    model = Model(
        id="cycle",
        parameters=(Parameter("x", 1.0, constant=False), Parameter("y", 5.0, constant=False)),
        rules=(_rule("x", "y"), _rule("y", "x")),
    )
    system = CompiledSystem.from_model(model)
    assert system.rules.loops == 2
    y0 = system.initialize()
    assert list(y0) == [5.0, 5.0]


def test_compartment_rate_rule_corrects_hosted_concentrations() -> None:
    model = Model(
        id="growth",
        compartments=(Compartment("V", size=2.0, constant=False),),
        species=(Species("S", "V", initial_concentration=4.0),),
        rules=(RateRule("V", parse_math("1")),),
    )
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    dy = system.compute_derivative(0.0, y0)
    assert dy[0] == pytest.approx(1.0)
    assert dy[1] == pytest.approx(-2.0)


def test_concentration_rate_rule_on_amount_species() -> None:
    model = Model(
        id="rate",
        compartments=(Compartment("V", size=2.0),),
        species=(Species("S", "V", initial_amount=8.0),),
        rules=(RateRule("S", parse_math("2")),),
    )
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    assert system.compute_derivative(0.0, y0)[1] == pytest.approx(4.0)


def test_species_rule_values_are_stored_in_slot_units() -> None:
    model = Model(
        id="assign",
        compartments=(Compartment("V", size=2.0),),
        species=(Species("S", "V", initial_amount=0.0),),
        rules=(_rule("S", "3"),),
    )
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    # the rule gives a concentration; the slot holds an amount
    assert y0[1] == pytest.approx(6.0)


def test_initial_assignments_run_before_rules() -> None:
    model = Model(
        id="init",
        parameters=(Parameter("j", 3.0), Parameter("k", 0.0), Parameter("m", 0.0, constant=False)),
        initial_assignments=(InitialAssignment("k", parse_math("2*j")),),
        rules=(_rule("m", "k + 1"),),
    )
    system = CompiledSystem.from_model(model)
    y0 = system.initialize()
    assert list(y0) == [3.0, 6.0, 7.0]


def test_initial_assignment_reads_assignment_rule_targets() -> None:
    model = Model(
        id="init",
        parameters=(Parameter("q", 3.0), Parameter("p", 0.0, constant=False), Parameter("x", 1.0)),
        initial_assignments=(InitialAssignment("x", parse_math("p + 1")),),
        rules=(_rule("p", "2*q"),),
    )
    system = CompiledSystem.from_model(model)
    assert list(system.initialize()) == [3.0, 6.0, 7.0]


def test_initial_compartment_assignment_rescales_declared_concentrations() -> None:
    model = Model(
        id="resize",
        compartments=(Compartment("V", size=2.0),),
        species=(Species("S", "V", initial_concentration=3.0),),
        initial_assignments=(InitialAssignment("V", parse_math("4")),),
    )
    settings = RuntimeSettings(amount_overrides={"S": True})
    system = CompiledSystem.from_model(model, settings)
    assert system.initial_values()[1] == pytest.approx(6.0)
    y0 = system.initialize()
    assert y0[0] == 4.0
    assert y0[1] == pytest.approx(12.0)


def test_rule_targeting_unknown_symbol_fails() -> None:
    model = Model(id="bad", parameters=_parameters("x"), rules=(_rule("ghost", "x"),))
    with pytest.raises(ModelStructureError) as excinfo:
        CompiledSystem.from_model(model)
    assert excinfo.value.element == "ghost"


def test_initialization_warns_when_rules_keep_changing(caplog) -> None:
    model = Model(
        id="counter",
        parameters=_parameters("x"),
        rules=(_rule("x", "x + 1"),),
    )
    settings = RuntimeSettings(max_initial_iterations=3)
    system = CompiledSystem.from_model(model, settings)
    with caplog.at_level(logging.WARNING, logger="biosim.system"):
        y0 = system.initialize()
    assert y0[0] == 3.0
    assert "still changing" in caplog.text
