"""Constraint monitoring with violation and recovery notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Protocol

from .entities import Constraint, Model
from .expression import ExpressionGraph, Scope, Tick

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConstraintViolation:
    index: int
    constraint: Constraint
    time: float

    @property
    def formula(self) -> str:
        return str(self.constraint.math)

    @property
    def message(self) -> str:
        return self.constraint.message


class ConstraintListener(Protocol):
    def process_violation(self, event: ConstraintViolation) -> None:
        ...

    def process_satisfied_again(self, event: ConstraintViolation) -> None:
        ...


class LoggingConstraintListener:
    """Default listener: violations at WARNING, recoveries at DEBUG."""

    def process_violation(self, event: ConstraintViolation) -> None:
        logger.warning("[VIOLATION]\t%s at time %s: %s", event.formula, event.time, event.message)

    def process_satisfied_again(self, event: ConstraintViolation) -> None:
        logger.debug("[RECOVERED]\t%s at time %s", event.formula, event.time)


class ConstraintMonitor:
    """Track which constraints are violated and notify listeners on transitions."""

    def __init__(self, graph: ExpressionGraph, model: Model):
        self.graph = graph
        self.constraints = model.constraints
        self.roots = [
            graph.compile(constraint.math, Scope(owner=f"constraint[{index}]"))
            for index, constraint in enumerate(model.constraints)
        ]
        self.violated = [False] * len(self.roots)
        self.listeners: List[ConstraintListener] = []

    def __len__(self) -> int:
        return len(self.roots)

    def add_listener(self, listener: ConstraintListener) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener: ConstraintListener) -> bool:
        try:
            self.listeners.remove(listener)
        except ValueError:
            return False
        return True

    def reset(self) -> None:
        self.violated = [False] * len(self.roots)

    def check(self, tick: Tick) -> List[ConstraintViolation]:
        """Return the currently violated constraints."""

        current: List[ConstraintViolation] = []
        for index, root in enumerate(self.roots):
            event = ConstraintViolation(index=index, constraint=self.constraints[index], time=tick.time)
            violated = not self.graph.evaluate_bool(root, tick)
            if violated:
                current.append(event)
                if not self.violated[index]:
                    for listener in self.listeners:
                        listener.process_violation(event)
            elif self.violated[index]:
                for listener in self.listeners:
                    listener.process_satisfied_again(event)
            self.violated[index] = violated
        return current


__all__ = [
    "ConstraintListener",
    "ConstraintMonitor",
    "ConstraintViolation",
    "LoggingConstraintListener",
]
