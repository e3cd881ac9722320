"""Compilation of sympy expression trees into a cached evaluation graph.

Nodes live in an arena (``ExpressionGraph.nodes``) and refer to their children by
index. Structurally identical subexpressions are merged into one node unless they
bind different reaction-local parameters. Every node caches its last value
together with the serial of the :class:`Tick` it was computed for, so a second
evaluation at the same tick is a cache hit and the cost of a derivative call is
proportional to the number of distinct subexpressions, not to tree size.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

import numpy as np
import sympy as sp
from sympy.core.function import AppliedUndef
from sympy.logic.boolalg import BooleanAtom

from .entities import Model
from .errors import ModelStructureError, UnsupportedSymbolError
from .formula import AVOGADRO
from .history import TrajectoryHistory
from .state_vector import StateLayout

logger = logging.getLogger(__name__)

AVOGADRO_VALUE = 6.02214179e23


@dataclass(frozen=True)
class Tick:
    """Cache key for one model query: ``serial`` is monotonic, ``time`` is model time."""

    serial: int
    time: float


@dataclass(frozen=True)
class SpeciesLeaf:
    slot: int
    compartment_slot: Optional[int]
    is_amount: bool
    has_only_substance_units: bool


@dataclass(frozen=True)
class LocalBinding:
    reaction: str
    parameter: str


@dataclass
class Node:
    tag: str
    children: Tuple[int, ...] = ()
    payload: object = None
    constant: bool = False
    stamp: int = -1
    value: float = math.nan
    source: Optional[sp.Basic] = field(default=None, repr=False)


@dataclass
class Scope:
    """Name-resolution context for one compiled expression."""

    owner: Optional[str] = None
    local_parameters: Dict[str, LocalBinding] = field(default_factory=dict)
    arguments: Optional[Dict[str, int]] = None
    pool: Optional[Dict[tuple, int]] = None
    expanding: FrozenSet[str] = frozenset()


def _div(numerator: float, denominator: float) -> float:
    if denominator == 0.0:
        if numerator == 0.0 or math.isnan(numerator):
            return math.nan
        return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)
    return numerator / denominator


def _guarded(function: Callable[[float], float], value: float) -> float:
    try:
        return float(function(value))
    except (ValueError, ZeroDivisionError):
        return math.nan
    except OverflowError:
        return math.inf


def _is_integral(value: float) -> bool:
    return math.isfinite(value) and float(value).is_integer()


_UNARY: Dict[type, Callable[[float], float]] = {
    sp.Abs: abs,
    sp.floor: math.floor,
    sp.ceiling: math.ceil,
    sp.exp: math.exp,
    sp.log: math.log,
    sp.sin: math.sin,
    sp.cos: math.cos,
    sp.tan: math.tan,
    sp.sec: lambda x: _div(1.0, math.cos(x)),
    sp.csc: lambda x: _div(1.0, math.sin(x)),
    sp.cot: lambda x: _div(math.cos(x), math.sin(x)),
    sp.sinh: math.sinh,
    sp.cosh: math.cosh,
    sp.tanh: math.tanh,
    sp.sech: lambda x: _div(1.0, math.cosh(x)),
    sp.csch: lambda x: _div(1.0, math.sinh(x)),
    sp.coth: lambda x: _div(math.cosh(x), math.sinh(x)),
    sp.asin: math.asin,
    sp.acos: math.acos,
    sp.atan: math.atan,
    sp.asec: lambda x: math.acos(_div(1.0, x)),
    sp.acsc: lambda x: math.asin(_div(1.0, x)),
    sp.acot: lambda x: math.atan(_div(1.0, x)),
    sp.asinh: math.asinh,
    sp.acosh: math.acosh,
    sp.atanh: math.atanh,
    sp.asech: lambda x: math.acosh(_div(1.0, x)),
    sp.acsch: lambda x: math.asinh(_div(1.0, x)),
    sp.acoth: lambda x: math.atanh(_div(1.0, x)),
}

_OPERATOR_TAGS: Dict[type, str] = {
    sp.Add: "plus",
    sp.Mul: "times",
    sp.Pow: "power",
    sp.StrictGreaterThan: "gt",
    sp.GreaterThan: "geq",
    sp.StrictLessThan: "lt",
    sp.LessThan: "leq",
    sp.Equality: "eq",
    sp.Unequality: "neq",
    sp.And: "and",
    sp.Or: "or",
    sp.Not: "not",
    sp.Xor: "xor",
    sp.Implies: "implies",
    sp.Max: "max",
    sp.Min: "min",
    sp.factorial: "factorial",
}

_BUILTIN_CALLS = {"quotient": "quotient", "rem": "rem", "root": "root"}


class ExpressionGraph:
    """Arena of compiled nodes bound to one state vector."""

    def __init__(self, model: Model, layout: StateLayout):
        self.model = model
        self.layout = layout
        self.nodes: List[Node] = []
        self.state: np.ndarray = layout.y0.copy()
        self.local_values: Dict[LocalBinding, float] = {}
        self.references: Dict[str, Callable[[Tick], float]] = {}
        self.kinetic_roots: Dict[str, int] = {}
        self.history = TrajectoryHistory()
        self.recomputations = 0
        self.merged = 0
        self._pool: Dict[tuple, int] = {}
        self._local_defaults: Dict[LocalBinding, float] = {}
        self._serial = 0
        self._power_warned: set = set()

    def __len__(self) -> int:
        return len(self.nodes)

    # ------------------------------------------------------------------ ticks
    def advance(self, time: float) -> Tick:
        self._serial += 1
        return Tick(self._serial, float(time))

    def bind(self, state: np.ndarray) -> None:
        self.state = state

    def reset(self, restore_locals: bool = False) -> None:
        """Drop every cached value, including constants."""
        for node in self.nodes:
            node.stamp = -1
            node.value = math.nan
        if restore_locals:
            self.local_values = dict(self._local_defaults)

    # -------------------------------------------------------------- compiling
    def compile(self, expr, scope: Optional[Scope] = None, merging: bool = True) -> int:
        scope = scope or Scope()
        expr = sp.sympify(expr)
        if expr.is_Symbol and scope.arguments is not None and expr.name in scope.arguments:
            return scope.arguments[expr.name]
        pool = self._pool if scope.pool is None else scope.pool
        key = None
        if merging:
            key = (expr, self._signature(expr, scope))
            found = pool.get(key)
            if found is not None:
                self.merged += 1
                return found
        node_id = self._build(expr, scope, merging)
        if key is not None:
            pool[key] = node_id
        return node_id

    def _signature(self, expr: sp.Basic, scope: Scope) -> Tuple[Tuple[str, LocalBinding], ...]:
        if not scope.local_parameters:
            return ()
        bound = [
            (symbol.name, scope.local_parameters[symbol.name])
            for symbol in expr.free_symbols
            if symbol.name in scope.local_parameters
        ]
        return tuple(sorted(bound, key=lambda item: item[0]))

    def _add(self, tag: str, children: Tuple[int, ...] = (), payload=None, constant=None, source=None) -> int:
        if constant is None:
            constant = bool(children) and all(self.nodes[child].constant for child in children)
        self.nodes.append(Node(tag=tag, children=children, payload=payload, constant=constant, source=source))
        return len(self.nodes) - 1

    def _build(self, expr: sp.Basic, scope: Scope, merging: bool) -> int:
        child_merging = True if scope.pool is not None else merging
        if isinstance(expr, BooleanAtom):
            return self._add("number", payload=1.0 if bool(expr) else 0.0, constant=True, source=expr)
        if expr.is_Number or isinstance(expr, sp.NumberSymbol):
            try:
                value = float(expr)
            except TypeError:
                value = math.nan
            return self._add("number", payload=value, constant=True, source=expr)
        if expr.is_Symbol:
            return self._leaf(expr, scope)
        if isinstance(expr, sp.Piecewise):
            children: List[int] = []
            for pair in expr.args:
                children.append(self.compile(pair.expr, scope, child_merging))
                children.append(self.compile(pair.cond, scope, child_merging))
            return self._add("piecewise", tuple(children), source=expr)
        if isinstance(expr, AppliedUndef):
            return self._call(expr, scope, child_merging)
        function = _UNARY.get(type(expr))
        if function is not None:
            child = self.compile(expr.args[0], scope, child_merging)
            return self._add("func", (child,), payload=function, source=expr)
        tag = _OPERATOR_TAGS.get(type(expr))
        if tag is None:
            raise UnsupportedSymbolError(f"unsupported operator '{type(expr).__name__}'", scope.owner)
        children = tuple(self.compile(arg, scope, child_merging) for arg in expr.args)
        return self._add(tag, children, source=expr)

    def _call(self, expr: AppliedUndef, scope: Scope, merging: bool) -> int:
        name = expr.func.__name__
        definition = self.model.find_function(name)
        if definition is None:
            if name in _BUILTIN_CALLS:
                children = tuple(self.compile(arg, scope, merging) for arg in expr.args)
                if len(children) != 2:
                    raise ModelStructureError(f"{name} takes two arguments", scope.owner)
                return self._add(_BUILTIN_CALLS[name], children, source=expr)
            if name == "delay":
                return self._delay(expr, scope, merging)
            raise UnsupportedSymbolError(f"unknown function '{name}'", scope.owner)
        if name in scope.expanding:
            raise ModelStructureError(f"function '{name}' is recursive", scope.owner)
        if len(expr.args) != len(definition.arguments):
            raise ModelStructureError(
                f"function '{name}' expects {len(definition.arguments)} arguments, got {len(expr.args)}",
                scope.owner,
            )
        arguments = {
            formal: self.compile(actual, scope, merging)
            for formal, actual in zip(definition.arguments, expr.args)
        }
        body_scope = Scope(
            owner=scope.owner,
            arguments=arguments,
            pool={},
            expanding=scope.expanding | {name},
        )
        return self.compile(definition.body, body_scope, merging=False)

    def _delay(self, expr: AppliedUndef, scope: Scope, merging: bool) -> int:
        """``delay(x, d)``: the value of state variable ``x`` at ``time - d``, read from :attr:`history`."""
        if len(expr.args) != 2:
            raise ModelStructureError("delay takes two arguments", scope.owner)
        target, lag = expr.args
        value = self.compile(target, scope, merging)
        if self.nodes[value].tag not in ("species", "slot"):
            raise UnsupportedSymbolError(f"delay of '{target}' needs a state variable", scope.owner)
        children = (value, self.compile(lag, scope, merging))
        return self._add("delay", children, constant=False, source=expr)

    def _leaf(self, symbol: sp.Symbol, scope: Scope) -> int:
        name = symbol.name
        binding = scope.local_parameters.get(name)
        if binding is not None:
            reaction = self.model.find_reaction(binding.reaction)
            parameter = reaction.kinetic_law.local(binding.parameter)
            self._local_defaults.setdefault(binding, float(parameter.value))
            self.local_values.setdefault(binding, float(parameter.value))
            return self._add("local", payload=binding, constant=False, source=symbol)
        if name == self.model.time_symbol:
            return self._add("time", constant=False, source=symbol)
        position = self.layout.slot_of(name)
        if position is not None:
            slot = self.layout.slots[position]
            if slot.kind == "species":
                leaf = SpeciesLeaf(
                    slot=position,
                    compartment_slot=slot.compartment_slot,
                    is_amount=slot.is_amount,
                    has_only_substance_units=slot.has_only_substance_units,
                )
                return self._add("species", payload=leaf, constant=False, source=symbol)
            return self._add("slot", payload=position, constant=False, source=symbol)
        if self.model.find_reaction(name) is not None:
            return self._add("reaction", payload=name, constant=False, source=symbol)
        if self.model.find_species_reference(name) is not None:
            return self._add("species_reference", payload=name, constant=False, source=symbol)
        if name == AVOGADRO:
            return self._add("number", payload=AVOGADRO_VALUE, constant=True, source=symbol)
        raise UnsupportedSymbolError(f"unknown symbol '{name}'", scope.owner)

    # ------------------------------------------------------------- evaluation
    def evaluate(self, node_id: int, tick: Tick) -> float:
        node = self.nodes[node_id]
        if node.stamp == tick.serial or (node.constant and node.stamp >= 0):
            return node.value
        value = _EVALUATORS[node.tag](self, node, tick)
        node.value = value
        node.stamp = tick.serial
        self.recomputations += 1
        return value

    def evaluate_bool(self, node_id: int, tick: Tick) -> bool:
        return self.evaluate(node_id, tick) != 0.0

    def set_local(self, reaction: str, parameter: str, value: float) -> None:
        binding = LocalBinding(reaction, parameter)
        if binding not in self.local_values:
            raise ModelStructureError(f"no local parameter '{parameter}'", reaction)
        self.local_values[binding] = float(value)

    def _power(self, node: Node, base: float, exponent: float) -> float:
        if exponent == 2.0:
            return base * base
        if exponent == 3.0:
            return base * base * base
        if base == 0.0 and exponent < 0.0:
            if _is_integral(exponent) and int(exponent) % 2 == 1:
                return math.copysign(math.inf, base)
            return math.inf
        if base < 0.0 and not _is_integral(exponent):
            key = id(node)
            if key not in self._power_warned:
                self._power_warned.add(key)
                logger.warning("Power with negative base and non-integer exponent in %s", node.source)
            return -_guarded(lambda value: math.pow(value, exponent), -base)
        return _guarded(lambda value: math.pow(value, exponent), base)


def _children(graph: ExpressionGraph, node: Node, tick: Tick) -> List[float]:
    return [graph.evaluate(child, tick) for child in node.children]


def _species_value(leaf: SpeciesLeaf, state: np.ndarray) -> float:
    value = float(state[leaf.slot])
    if leaf.compartment_slot is None:
        return value
    size = float(state[leaf.compartment_slot])
    if size == 0.0:
        return value
    if leaf.is_amount and not leaf.has_only_substance_units:
        return value / size
    if not leaf.is_amount and leaf.has_only_substance_units:
        return value * size
    return value


def _eval_species(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    return _species_value(node.payload, graph.state)


def _eval_delay(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    target, lag = node.children
    delay = graph.evaluate(lag, tick)
    past = graph.history.state_at(tick.time - delay) if delay > 0.0 else None
    if past is None:
        return graph.evaluate(target, tick)
    leaf = graph.nodes[target]
    if leaf.tag == "species":
        return _species_value(leaf.payload, past)
    return float(past[leaf.payload])


def _eval_plus(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    total = 0.0
    for child in node.children:
        total += graph.evaluate(child, tick)
    return total


def _eval_times(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    product = 1.0
    for child in node.children:
        product *= graph.evaluate(child, tick)
    return product


def _eval_power(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    base, exponent = _children(graph, node, tick)
    return graph._power(node, base, exponent)


def _eval_func(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    return _guarded(node.payload, graph.evaluate(node.children[0], tick))


def _eval_piecewise(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    children = node.children
    for index in range(0, len(children), 2):
        if graph.evaluate_bool(children[index + 1], tick):
            return graph.evaluate(children[index], tick)
    return math.nan


def _relation(compare: Callable[[float, float], bool]):
    def evaluate(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
        left, right = _children(graph, node, tick)
        return 1.0 if compare(left, right) else 0.0

    return evaluate


def _eval_and(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    return 1.0 if all(graph.evaluate_bool(child, tick) for child in node.children) else 0.0


def _eval_or(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    return 1.0 if any(graph.evaluate_bool(child, tick) for child in node.children) else 0.0


def _eval_not(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    return 0.0 if graph.evaluate_bool(node.children[0], tick) else 1.0


def _eval_xor(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    count = sum(1 for child in node.children if graph.evaluate_bool(child, tick))
    return 1.0 if count % 2 == 1 else 0.0


def _eval_implies(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    premise, conclusion = node.children
    if not graph.evaluate_bool(premise, tick):
        return 1.0
    return 1.0 if graph.evaluate_bool(conclusion, tick) else 0.0


def _eval_quotient(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    numerator, denominator = _children(graph, node, tick)
    result = _div(numerator, denominator)
    return float(math.floor(result)) if math.isfinite(result) else result


def _eval_rem(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    numerator, denominator = _children(graph, node, tick)
    if denominator == 0.0:
        return math.nan
    return math.fmod(numerator, denominator)


def _eval_root(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    degree, radicand = _children(graph, node, tick)
    if radicand < 0.0 and _is_integral(degree) and int(degree) % 2 == 1:
        return -_guarded(lambda value: math.pow(value, 1.0 / degree), -radicand)
    return _guarded(lambda value: math.pow(value, _div(1.0, degree)), radicand)


def _eval_factorial(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    value = graph.evaluate(node.children[0], tick)
    if not math.isfinite(value) or value < 0.0:
        return math.nan
    rounded = int(round(value))
    if rounded > 170:
        return math.inf
    return float(math.factorial(rounded))


def _eval_reaction(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    root = graph.kinetic_roots.get(node.payload)
    if root is None:
        return 0.0
    return graph.evaluate(root, tick)


def _eval_species_reference(graph: ExpressionGraph, node: Node, tick: Tick) -> float:
    resolver = graph.references.get(node.payload)
    if resolver is None:
        return 1.0
    return resolver(tick)


_EVALUATORS: Dict[str, Callable[[ExpressionGraph, Node, Tick], float]] = {
    "number": lambda graph, node, tick: node.payload,
    "time": lambda graph, node, tick: tick.time,
    "slot": lambda graph, node, tick: float(graph.state[node.payload]),
    "local": lambda graph, node, tick: graph.local_values[node.payload],
    "species": _eval_species,
    "delay": _eval_delay,
    "reaction": _eval_reaction,
    "species_reference": _eval_species_reference,
    "plus": _eval_plus,
    "times": _eval_times,
    "power": _eval_power,
    "func": _eval_func,
    "piecewise": _eval_piecewise,
    "gt": _relation(lambda left, right: left > right),
    "geq": _relation(lambda left, right: left >= right),
    "lt": _relation(lambda left, right: left < right),
    "leq": _relation(lambda left, right: left <= right),
    "eq": _relation(lambda left, right: left == right),
    "neq": _relation(lambda left, right: left != right),
    "and": _eval_and,
    "or": _eval_or,
    "not": _eval_not,
    "xor": _eval_xor,
    "implies": _eval_implies,
    "max": lambda graph, node, tick: max(_children(graph, node, tick)),
    "min": lambda graph, node, tick: min(_children(graph, node, tick)),
    "quotient": _eval_quotient,
    "rem": _eval_rem,
    "root": _eval_root,
    "factorial": _eval_factorial,
}


__all__ = [
    "AVOGADRO_VALUE",
    "ExpressionGraph",
    "LocalBinding",
    "Node",
    "Scope",
    "SpeciesLeaf",
    "Tick",
]
