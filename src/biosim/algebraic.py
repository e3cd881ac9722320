"""Rewrite algebraic rules as assignment rules.

Each algebraic rule ``0 = f(...)`` is matched to one free variable with a
maximum bipartite matching (augmenting paths); ``f`` is then solved for that
variable with sympy. A rule left without a variable means the model is
overdetermined.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Set

import sympy as sp

from .entities import AlgebraicRule, AssignmentRule, Model
from .errors import ModelOverdeterminedError, ModelStructureError
from .formula import free_names

logger = logging.getLogger(__name__)


def candidate_variables(model: Model) -> List[str]:
    """Variables an algebraic rule may determine, in declaration order."""

    determined = {rule.variable for rule in model.assignment_rules}
    determined.update(rule.variable for rule in model.rate_rules)
    reacting: Set[str] = set()
    for reaction in model.reactions:
        for reference, _ in reaction.participants():
            reacting.add(reference.species)

    candidates: List[str] = []
    for compartment in model.compartments:
        if not compartment.constant and compartment.id not in determined:
            candidates.append(compartment.id)
    for species in model.species:
        if species.constant or species.id in determined:
            continue
        if species.boundary_condition or species.id not in reacting:
            candidates.append(species.id)
    for parameter in model.parameters:
        if not parameter.constant and parameter.id not in determined:
            candidates.append(parameter.id)
    return candidates


def match_rules(edges: Sequence[Sequence[str]]) -> Dict[int, str]:
    """Maximum matching of rule indices to variable names."""

    owner: Dict[str, int] = {}

    def augment(rule: int, seen: Set[str]) -> bool:
        for variable in edges[rule]:
            if variable in seen:
                continue
            seen.add(variable)
            if variable not in owner or augment(owner[variable], seen):
                owner[variable] = rule
                return True
        return False

    for rule in range(len(edges)):
        augment(rule, set())
    return {rule: variable for variable, rule in owner.items()}


def _solve(rule: AlgebraicRule, variable: str) -> sp.Basic:
    symbol = sp.Symbol(variable)
    try:
        solutions = sp.solve(rule.math, symbol)
    except (NotImplementedError, TypeError, ValueError) as exc:
        raise ModelStructureError(f"cannot solve algebraic rule {rule.math} for {variable}: {exc}", variable) from exc
    if not solutions:
        raise ModelStructureError(f"algebraic rule {rule.math} has no solution for {variable}", variable)
    if len(solutions) > 1:
        logger.debug("algebraic rule %s has %d solutions for %s; using %s", rule.math, len(solutions), variable, solutions[0])
    return solutions[0]


def convert_algebraic_rules(model: Model, candidates: Optional[Sequence[str]] = None) -> List[AssignmentRule]:
    rules = model.algebraic_rules
    if not rules:
        return []
    pool = list(candidate_variables(model) if candidates is None else candidates)
    edges = []
    for rule in rules:
        names = free_names(rule.math)
        edges.append([variable for variable in pool if variable in names])
    matching = match_rules(edges)
    converted: List[AssignmentRule] = []
    for index, rule in enumerate(rules):
        variable = matching.get(index)
        if variable is None:
            raise ModelOverdeterminedError(f"algebraic rule {rule.math} determines no free variable", model.id)
        converted.append(AssignmentRule(variable=variable, math=_solve(rule, variable)))
    logger.info("converted %d algebraic rules", len(converted))
    return converted


__all__ = ["candidate_variables", "convert_algebraic_rules", "match_rules"]
