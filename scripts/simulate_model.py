"""Simulate a JSON model document and write the trajectory as CSV.

Typical usage::

    python scripts/simulate_model.py model.json --stop 10 --points 101 \
        --output artifacts/trajectory.csv --events-log artifacts/events.csv

Settings (defaults, amount overrides, the event tie-break seed) are read from an
optional JSON file passed with ``--settings``.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable

from biosim import CompiledSystem, SolverConfig, load_document, load_settings, simulate
from biosim.errors import BiosimError

LOGGER = logging.getLogger("simulate_model")


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s:%(name)s:%(message)s",
    )


def _parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulate a biochemical network model document.")
    parser.add_argument("model", type=Path, help="JSON model document")
    parser.add_argument("--stop", type=float, default=10.0, help="End time of the simulation")
    parser.add_argument("--points", type=int, default=101, help="Number of equidistant sample points")
    parser.add_argument("--output", type=Path, default=Path("artifacts") / "trajectory.csv")
    parser.add_argument("--events-log", type=Path, default=None, help="Optional CSV for executed events")
    parser.add_argument("--settings", type=Path, default=None, help="Optional runtime settings JSON")
    parser.add_argument("--method", default="LSODA", help="solve_ivp method")
    parser.add_argument("--rtol", type=float, default=1e-6)
    parser.add_argument("--atol", type=float, default=1e-9)
    parser.add_argument("--max-step", type=float, default=float("inf"))
    parser.add_argument("-v", "--verbose", action="store_true", help="Emit debug logging")
    return parser.parse_args(argv)


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    try:
        settings = load_settings(args.settings)
        model = load_document(args.model)
        system = CompiledSystem.from_model(model, settings)
        solver = SolverConfig(
            method=args.method,
            rtol=args.rtol,
            atol=args.atol,
            max_step=args.max_step,
        )
        LOGGER.info("Simulating %s to t=%g (%d points, solver %s)", model.id, args.stop, args.points, solver.identity()[:12])
        result = simulate(system, args.stop, points=args.points, solver=solver)
    except (BiosimError, ValueError) as exc:
        LOGGER.error("%s", exc)
        LOGGER.debug("Full exception", exc_info=True)
        return 1

    args.output.parent.mkdir(parents=True, exist_ok=True)
    result.to_frame().to_csv(args.output, index=False)
    LOGGER.info("Wrote %d rows to %s", len(result.times), args.output)
    if args.events_log is not None:
        args.events_log.parent.mkdir(parents=True, exist_ok=True)
        result.events_frame().to_csv(args.events_log, index=False)
        LOGGER.info("Wrote %d events to %s", len(result.event_log), args.events_log)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
