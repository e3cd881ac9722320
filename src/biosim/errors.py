"""Domain-specific exceptions for the network runtime."""

from __future__ import annotations

from typing import Optional


class BiosimError(RuntimeError):
    """Base class for runtime errors."""


class ModelStructureError(BiosimError):
    """Raised at compile time when a model element cannot be compiled."""

    def __init__(self, message: str, element: Optional[str] = None):
        if element:
            message = f"{element}: {message}"
        super().__init__(message)
        self.element = element


class UnsupportedSymbolError(ModelStructureError):
    """Raised when an expression references an unknown symbol or function."""


class ModelOverdeterminedError(ModelStructureError):
    """Raised when algebraic rules cannot be matched to free variables."""


class ConfigError(BiosimError):
    """Raised when settings or model documents are invalid."""


class NumericsError(BiosimError):
    """Raised when the numerical solver fails to converge."""


__all__ = [
    "BiosimError",
    "ModelStructureError",
    "UnsupportedSymbolError",
    "ModelOverdeterminedError",
    "ConfigError",
    "NumericsError",
]
