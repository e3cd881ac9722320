"""Infix formula reader producing sympy expressions.

The accepted syntax is the usual infix notation with C-style logic operators
(``&&``, ``||``, ``!``), comparison operators and named calls (``piecewise``,
``root``, ``quotient`` ...). Every identifier that is not called as a function
becomes a plain :class:`sympy.Symbol`, so model ids such as ``E`` or ``beta``
never collide with sympy builtins.
"""

from __future__ import annotations

import ast
import re
from typing import Callable, Dict, Iterable, Optional

import sympy as sp
from sympy.core.function import AppliedUndef
from sympy.core.relational import Relational
from sympy.logic.boolalg import BooleanAtom, BooleanFunction

from .errors import ModelStructureError

AVOGADRO = "avogadro"

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z_0-9]*")
_KEYWORD_CALL = re.compile(r"\b(and|or|not|xor|lambda)\s*\(")

QUOTIENT = sp.Function("quotient")
REM = sp.Function("rem")
ROOT = sp.Function("root")
DELAY = sp.Function("delay")


def _as_bool(value):
    if isinstance(value, (Relational, BooleanFunction, BooleanAtom, sp.Symbol)):
        return value
    return sp.Ne(value, 0)


def _chain(relation: Callable) -> Callable:
    def build(*args):
        if len(args) < 2:
            raise ModelStructureError(f"{relation.__name__} needs at least two arguments")
        pairs = [relation(left, right) for left, right in zip(args, args[1:])]
        return pairs[0] if len(pairs) == 1 else sp.And(*pairs)

    return build


def _piecewise(*args):
    if not args:
        raise ModelStructureError("piecewise needs at least one argument")
    pairs = []
    for index in range(0, len(args) - 1, 2):
        pairs.append((args[index], _as_bool(args[index + 1])))
    if len(args) % 2 == 1:
        pairs.append((args[-1], True))
    return sp.Piecewise(*pairs)


def _log(*args):
    if len(args) == 1:
        return sp.log(args[0], 10)
    if len(args) == 2:
        base, value = args
        return sp.log(value, base)
    raise ModelStructureError("log takes one or two arguments")


def _root(*args):
    if len(args) == 1:
        return sp.sqrt(args[0])
    if len(args) == 2:
        return ROOT(*args)
    raise ModelStructureError("root takes one or two arguments")


_FUNCTIONS: Dict[str, Callable] = {
    "abs": sp.Abs,
    "ceil": sp.ceiling,
    "ceiling": sp.ceiling,
    "floor": sp.floor,
    "exp": sp.exp,
    "ln": sp.log,
    "log": _log,
    "log10": lambda value: sp.log(value, 10),
    "sqrt": sp.sqrt,
    "pow": sp.Pow,
    "power": sp.Pow,
    "root": _root,
    "factorial": sp.factorial,
    "max": sp.Max,
    "min": sp.Min,
    "piecewise": _piecewise,
    "quotient": QUOTIENT,
    "rem": REM,
    "delay": DELAY,
    "sin": sp.sin,
    "cos": sp.cos,
    "tan": sp.tan,
    "sec": sp.sec,
    "csc": sp.csc,
    "cot": sp.cot,
    "sinh": sp.sinh,
    "cosh": sp.cosh,
    "tanh": sp.tanh,
    "sech": sp.sech,
    "csch": sp.csch,
    "coth": sp.coth,
    "asin": sp.asin,
    "arcsin": sp.asin,
    "acos": sp.acos,
    "arccos": sp.acos,
    "atan": sp.atan,
    "arctan": sp.atan,
    "asec": sp.asec,
    "arcsec": sp.asec,
    "acsc": sp.acsc,
    "arccsc": sp.acsc,
    "acot": sp.acot,
    "arccot": sp.acot,
    "asinh": sp.asinh,
    "arcsinh": sp.asinh,
    "acosh": sp.acosh,
    "arccosh": sp.acosh,
    "atanh": sp.atanh,
    "arctanh": sp.atanh,
    "asech": sp.asech,
    "arcsech": sp.asech,
    "acsch": sp.acsch,
    "arccsch": sp.acsch,
    "acoth": sp.acoth,
    "arccoth": sp.acoth,
    "gt": _chain(sp.Gt),
    "geq": _chain(sp.Ge),
    "lt": _chain(sp.Lt),
    "leq": _chain(sp.Le),
    "eq": _chain(sp.Eq),
    "neq": lambda left, right: sp.Ne(left, right),
    "_and": lambda *args: sp.And(*[_as_bool(arg) for arg in args]),
    "_or": lambda *args: sp.Or(*[_as_bool(arg) for arg in args]),
    "_not": lambda arg: sp.Not(_as_bool(arg)),
    "_xor": lambda *args: sp.Xor(*[_as_bool(arg) for arg in args]),
    "implies": lambda left, right: sp.Implies(_as_bool(left), _as_bool(right)),
}

_CONSTANTS = {
    "pi": sp.pi,
    "exponentiale": sp.E,
    "true": sp.true,
    "false": sp.false,
    "INF": sp.oo,
    "inf": sp.oo,
    "infinity": sp.oo,
    "NaN": sp.nan,
    "notanumber": sp.nan,
}


_COMPARISONS = {
    ast.Gt: "gt",
    ast.GtE: "geq",
    ast.Lt: "lt",
    ast.LtE: "leq",
    ast.Eq: "eq",
    ast.NotEq: "neq",
}


def _call(name: str, args: list) -> ast.Call:
    return ast.Call(func=ast.Name(id=name, ctx=ast.Load()), args=args, keywords=[])


class _LogicRewriter(ast.NodeTransformer):
    """Turn ``and``/``or``/``not`` and (chained) comparisons into explicit calls."""

    def visit_BoolOp(self, node: ast.BoolOp) -> ast.AST:
        self.generic_visit(node)
        name = "_and" if isinstance(node.op, ast.And) else "_or"
        return ast.copy_location(_call(name, node.values), node)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> ast.AST:
        self.generic_visit(node)
        if isinstance(node.op, ast.Not):
            return ast.copy_location(_call("_not", [node.operand]), node)
        return node

    def visit_Compare(self, node: ast.Compare) -> ast.AST:
        self.generic_visit(node)
        operands = [node.left] + list(node.comparators)
        calls = []
        for operator, left, right in zip(node.ops, operands, operands[1:]):
            name = _COMPARISONS.get(type(operator))
            if name is None:
                raise SyntaxError(f"unsupported comparison {type(operator).__name__}")
            calls.append(_call(name, [left, right]))
        result = calls[0] if len(calls) == 1 else _call("_and", calls)
        return ast.copy_location(result, node)


def _called(text: str, end: int) -> bool:
    rest = text[end:].lstrip()
    return rest.startswith("(")


def parse_math(
    text: str,
    *,
    functions: Optional[Iterable[str]] = None,
    element: Optional[str] = None,
) -> sp.Basic:
    """Parse an infix formula into a sympy expression.

    ``functions`` names user-defined functions; calls to them become undefined
    sympy functions that the compiler expands. ``element`` is used in error
    messages.
    """

    source = (text or "").strip()
    if not source:
        raise ModelStructureError("empty formula", element)
    if "lambda" in _KEYWORD_CALL.findall(source):
        raise ModelStructureError(f"lambda expressions are not supported in '{source}'", element)
    rewritten = _KEYWORD_CALL.sub(lambda match: f"_{match.group(1)}(", source)
    rewritten = rewritten.replace("^", "**").replace("&&", " and ").replace("||", " or ")
    rewritten = re.sub(r"!(?!=)", " not ", rewritten).strip()
    try:
        tree = _LogicRewriter().visit(ast.parse(rewritten, mode="eval"))
    except SyntaxError as exc:
        raise ModelStructureError(f"cannot parse '{source}': {exc.msg}", element) from exc
    rewritten = ast.unparse(ast.fix_missing_locations(tree))

    user_functions = set(functions or ())
    namespace: Dict[str, object] = {}
    for match in _IDENTIFIER.finditer(rewritten):
        name = match.group(0)
        if name in namespace:
            continue
        if _called(rewritten, match.end()):
            if name in user_functions:
                namespace[name] = sp.Function(name)
            elif name in _FUNCTIONS:
                namespace[name] = _FUNCTIONS[name]
            else:
                raise ModelStructureError(f"unknown function '{name}' in '{source}'", element)
        elif name in _CONSTANTS:
            namespace[name] = _CONSTANTS[name]
        else:
            namespace[name] = sp.Symbol(name)
    try:
        return sp.sympify(rewritten, locals=namespace)
    except (sp.SympifyError, SyntaxError, TypeError, ValueError) as exc:
        raise ModelStructureError(f"cannot parse '{source}': {exc}", element) from exc


def free_names(expr: sp.Basic) -> set:
    """Identifiers an expression reads, including called function names."""

    names = {symbol.name for symbol in expr.free_symbols}
    for applied in expr.atoms(AppliedUndef):
        names.add(applied.func.__name__)
    return names


__all__ = ["AVOGADRO", "DELAY", "QUOTIENT", "REM", "ROOT", "free_names", "parse_math"]
