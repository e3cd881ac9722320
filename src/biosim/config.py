"""Runtime and solver configuration."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError


class RuntimeSettings(BaseModel):
    """Defaults and knobs used while compiling and evaluating a model."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    default_species_value: float = 0.0
    default_parameter_value: float = 1.0
    default_compartment_value: float = 1.0
    amount_overrides: Dict[str, bool] = Field(default_factory=dict)
    seed: Optional[int] = None
    max_initial_iterations: int = 100
    event_time_tolerance: float = 1e-9

    @field_validator("default_compartment_value")
    def compartment_positive(cls, value: float) -> float:
        if value < 0.0:
            raise ValueError("default_compartment_value must be non-negative")
        return value

    @field_validator("max_initial_iterations")
    def iterations_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_initial_iterations must be at least 1")
        return value

    @field_validator("event_time_tolerance")
    def tolerance_non_negative(cls, value: float) -> float:
        if value < 0.0:
            raise ValueError("event_time_tolerance must be non-negative")
        return value


def load_settings(source: Union[None, str, Path, Mapping[str, object]] = None) -> RuntimeSettings:
    """Build settings from a JSON file, a mapping, or defaults."""

    if source is None:
        return RuntimeSettings()
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.is_file():
            raise ConfigError(f"Settings file {path} does not exist")
        with path.open("r", encoding="utf8") as handle:
            try:
                payload = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Settings file {path} is not valid JSON: {exc}") from exc
    else:
        payload = dict(source)
    try:
        return RuntimeSettings.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid runtime settings: {exc}") from exc


@dataclass(frozen=True)
class SolverConfig:
    """Configuration driving scipy's solve_ivp."""

    method: str = "LSODA"
    rtol: float = 1e-6
    atol: float = 1e-9
    max_step: float = float("inf")

    def __post_init__(self) -> None:
        if self.rtol <= 0.0 or self.atol <= 0.0:
            raise ConfigError("rtol and atol must be positive")
        if self.max_step <= 0.0:
            raise ConfigError("max_step must be positive")

    def as_dict(self) -> Dict[str, object]:
        return {
            "method": self.method,
            "rtol": self.rtol,
            "atol": self.atol,
            "max_step": self.max_step,
        }

    def identity(self) -> str:
        payload = json.dumps(self.as_dict(), sort_keys=True)
        return hashlib.sha256(payload.encode("utf8")).hexdigest()


__all__ = ["RuntimeSettings", "SolverConfig", "load_settings"]
