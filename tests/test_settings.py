from __future__ import annotations

import json

import pytest

from biosim.config import RuntimeSettings, SolverConfig, load_settings
from biosim.errors import ConfigError


def test_load_settings_defaults_and_mapping() -> None:
    assert load_settings() == RuntimeSettings()
    settings = load_settings({"seed": 3, "amount_overrides": {"A": True}})
    assert settings.seed == 3
    assert settings.amount_overrides == {"A": True}
    assert settings.max_initial_iterations == 100


def test_load_settings_from_file(tmp_path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"default_parameter_value": 2.5}), encoding="utf8")
    assert load_settings(path).default_parameter_value == 2.5


@pytest.mark.parametrize(
    "payload",
    [
        {"unknown_key": 1},
        {"default_compartment_value": -1.0},
        {"max_initial_iterations": 0},
        {"event_time_tolerance": -1e-3},
    ],
)
def test_invalid_settings_raise_config_error(payload) -> None:
    with pytest.raises(ConfigError):
        load_settings(payload)


def test_missing_or_malformed_settings_file(tmp_path) -> None:
    with pytest.raises(ConfigError):
        load_settings(tmp_path / "missing.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf8")
    with pytest.raises(ConfigError):
        load_settings(broken)


def test_solver_config_identity_is_stable() -> None:
    first = SolverConfig(rtol=1e-8)
    assert first.identity() == SolverConfig(rtol=1e-8).identity()
    assert first.identity() != SolverConfig().identity()
    assert first.as_dict() == {"method": "LSODA", "rtol": 1e-8, "atol": 1e-9, "max_step": float("inf")}


@pytest.mark.parametrize("options", [{"rtol": 0.0}, {"atol": -1.0}, {"max_step": 0.0}])
def test_solver_config_rejects_non_positive_values(options) -> None:
    with pytest.raises(ConfigError):
        SolverConfig(**options)
