"""Compile biochemical network models into evaluable ODE systems with events."""

from .config import RuntimeSettings, SolverConfig, load_settings
from .constraints import ConstraintListener, ConstraintViolation, LoggingConstraintListener
from .document import ModelDocument, load_document
from .errors import (
    BiosimError,
    ConfigError,
    ModelOverdeterminedError,
    ModelStructureError,
    NumericsError,
    UnsupportedSymbolError,
)
from .events import EVENT_LOG_FIELDS, EventOutcome
from .formula import parse_math
from .simulation import SimulationResult, simulate
from .system import CompiledSystem

__all__ = [
    "EVENT_LOG_FIELDS",
    "BiosimError",
    "CompiledSystem",
    "ConfigError",
    "ConstraintListener",
    "ConstraintViolation",
    "EventOutcome",
    "LoggingConstraintListener",
    "ModelDocument",
    "ModelOverdeterminedError",
    "ModelStructureError",
    "NumericsError",
    "RuntimeSettings",
    "SimulationResult",
    "SolverConfig",
    "UnsupportedSymbolError",
    "load_document",
    "load_settings",
    "parse_math",
    "simulate",
]
