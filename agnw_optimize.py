#!/usr/bin/env python
"""
AgNW Synthesis Optimization CLI

This script provides a command-line interface for the silver nanowire synthesis
workflow: simulated autonomous campaigns, next-experiment suggestions from a
recorded history, and single controlled runs on the simulated rig.
"""

import argparse
import json
import logging
import os
from typing import Dict, List, Optional, Tuple

import pandas as pd
from tqdm import tqdm

from agnw_lab.campaign import AutonomousCampaign, SimulatedMeasurement
from agnw_lab.config import DEFAULT_PARAMETERS, OUTCOME_METRICS, load_config
from agnw_lab.data_types import PARAMETER_NAMES, ExperimentRecord, OptimizationSuggestion, Status
from agnw_lab.errors import AgnwLabError
from agnw_lab.history import HistoryStore
from agnw_lab.logging_config import configure_logging
from agnw_lab.workflow import SynthesisLab

logger = logging.getLogger(__name__)

PARAMETER_LABELS = {
    "eg_volume_ml": ("EG volume", "mL"),
    "agno3_volume_ml": ("AgNO3 volume", "mL"),
    "pvp_volume_ml": ("PVP volume", "mL"),
    "nacl_volume_ml": ("NaCl volume", "mL"),
    "temperature_c": ("Temperature", "°C"),
    "stirring_rpm": ("Stirring speed", "RPM"),
    "reaction_time_min": ("Reaction time", "min"),
}


def _print_parameters(params: dict) -> None:
    print("\n🧪 Synthesis Parameters:")
    for name in PARAMETER_NAMES:
        label, unit = PARAMETER_LABELS[name]
        print(f"  {label:<16} {params[name]:8.2f} {unit}")


def _print_suggestion(suggestion: OptimizationSuggestion) -> None:
    print(
        f"\n📋 Suggested next experiment ({suggestion.strategy}, "
        f"{suggestion.n_records} usable record(s)):"
    )
    _print_parameters(suggestion.parameters.to_dict())
    print(f"\n  Confidence: {suggestion.confidence:.0%}")
    if suggestion.predicted_range is not None:
        low, high = suggestion.predicted_range
        print(
            f"  Predicted {suggestion.target_metric}: {suggestion.predicted_mean:.2f} "
            f"(95% range {low:.2f} - {high:.2f})"
        )


def _print_record(record: ExperimentRecord) -> None:
    outcome = record.outcome
    print(f"\n🏆 Experiment #{record.id}:")
    print(f"  Diameter:     {outcome.diameter_nm:.1f} nm")
    print(f"  Length:       {outcome.length_um:.2f} µm")
    print(f"  Aspect ratio: {outcome.aspect_ratio:.1f}")
    if outcome.yield_percent is not None:
        print(f"  Yield:        {outcome.yield_percent:.1f}%")
    _print_parameters(record.parameters.to_dict())


def _print_spectra(spectra: Dict[str, List[Tuple[float, float]]]) -> None:
    print("\n🔬 Spectra:")
    for name, points in spectra.items():
        wavelength, intensity = max(points, key=lambda p: p[1])
        print(f"  {name:<6} {len(points)} points, peak {intensity:.2f} at {wavelength:.0f} nm")


def load_history(path: str) -> HistoryStore:
    """Load records exported as JSON (a list of record dicts) or CSV."""
    if path.endswith(".csv"):
        rows = pd.read_csv(path).to_dict("records")
    else:
        with open(path, "r") as f:
            rows = json.load(f)
    return HistoryStore.from_records(rows)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="AgNW Synthesis Optimization Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a simulated autonomous campaign and export its records
  python agnw_optimize.py simulate --n_experiments 20 --seed 7 --export_csv campaign.csv

  # Suggest the next experiment from recorded outcomes
  python agnw_optimize.py suggest --history campaign.csv --target aspect_ratio

  # Run one experiment on the simulated rig
  python agnw_optimize.py run --temperature_c 165 --reaction_time_min 5
        """,
    )

    # Global arguments
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument(
        "--log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from configuration)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    metrics = sorted(OUTCOME_METRICS)

    # simulate command
    simulate_parser = subparsers.add_parser(
        "simulate", help="Run an autonomous campaign on the simulated rig"
    )
    simulate_parser.add_argument(
        "--n_experiments", type=int, default=10, help="Number of experiments to run"
    )
    simulate_parser.add_argument(
        "--target", default="aspect_ratio", choices=metrics, help="Metric to maximize"
    )
    simulate_parser.add_argument("--seed", type=int, help="Seed for a reproducible campaign")
    simulate_parser.add_argument(
        "--tick_seconds", type=float, help="Simulated seconds per controller tick"
    )
    simulate_parser.add_argument("--export_csv", help="Write the recorded experiments to CSV")

    # suggest command
    suggest_parser = subparsers.add_parser(
        "suggest", help="Suggest parameters for the next experiment"
    )
    suggest_parser.add_argument(
        "--history", required=True, help="Recorded experiments (JSON list or CSV export)"
    )
    suggest_parser.add_argument(
        "--target", default="aspect_ratio", choices=metrics, help="Metric to maximize"
    )
    suggest_parser.add_argument("--seed", type=int, help="Seed for the suggestion")
    suggest_parser.add_argument("--output", help="Write the suggestion to a JSON file")

    # run command
    run_parser = subparsers.add_parser("run", help="Run one experiment on the simulated rig")
    for name in PARAMETER_NAMES:
        label, unit = PARAMETER_LABELS[name]
        run_parser.add_argument(
            f"--{name}",
            type=float,
            default=DEFAULT_PARAMETERS[name],
            help=f"{label} in {unit} (default: {DEFAULT_PARAMETERS[name]:g})",
        )
    run_parser.add_argument("--seed", type=int, help="Seed for rig noise and the measurement")
    run_parser.add_argument(
        "--tick_seconds", type=float, default=1.0, help="Simulated seconds per controller tick"
    )

    # Parse arguments
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(
        log_level=args.log_level or config["logging"]["level"],
        log_dir=config["logging"]["log_dir"],
    )

    try:
        if args.command == "simulate":
            _simulate(args, config)
        elif args.command == "suggest":
            _suggest(args, config)
        elif args.command == "run":
            _run(args, config)
    except AgnwLabError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"\n❌ {type(e).__name__}: {e}")
        return 1
    return 0


def _simulate(args: argparse.Namespace, config: dict) -> None:
    with SynthesisLab(config=config, seed=args.seed) as lab:
        campaign = AutonomousCampaign(
            lab,
            SimulatedMeasurement(seed=args.seed),
            target_metric=args.target,
            tick_seconds=args.tick_seconds,
            seed=args.seed,
        )
        print(f"Starting autonomous campaign with {args.n_experiments} experiments...")
        result = campaign.run(args.n_experiments)

    print(
        f"\n✅ Campaign finished: {len(result.records)} recorded, "
        f"{len(result.failures)} failed"
    )
    for failure in result.failures:
        print(f"  ⚠️  {failure}")
    if result.best is not None:
        _print_record(result.best)

    if args.export_csv:
        directory = os.path.dirname(args.export_csv)
        if directory:
            os.makedirs(directory, exist_ok=True)
        result.to_dataframe().to_csv(args.export_csv, index=False)
        print(f"\nRecords exported to {args.export_csv}")


def _suggest(args: argparse.Namespace, config: dict) -> None:
    history = load_history(args.history)
    print(f"Loaded {len(history)} recorded experiments from {args.history}")

    with SynthesisLab(config=config, seed=args.seed, history=history) as lab:
        suggestion = lab.suggest_next(args.target, seed=args.seed)
    _print_suggestion(suggestion)

    if args.output:
        with open(args.output, "w") as f:
            json.dump(suggestion.to_dict(), f, indent=2)
        print(f"\nSuggestion saved to {args.output}")


def _run(args: argparse.Namespace, config: dict) -> None:
    params = {name: getattr(args, name) for name in PARAMETER_NAMES}
    with SynthesisLab(config=config, seed=args.seed) as lab:
        lab.configure(params)
        state = lab.start()
        _print_parameters(params)

        with tqdm(total=100.0, desc="Reaction progress", unit="%") as bar:
            while state.status == Status.RUNNING:
                state = lab.tick(args.tick_seconds)
                bar.update(state.progress - bar.n)
                bar.set_postfix(temp=f"{state.current_temp_c:.1f}°C")

        if state.status != Status.COMPLETED:
            print(f"\n❌ Run ended in {state.status.value}: {state.last_error}")
            return
        spectra = lab.read_spectra()
        _print_spectra(spectra)
        outcome = SimulatedMeasurement(seed=args.seed).measure(state.run_parameters, spectra)
        record = lab.record_outcome(outcome)
    _print_record(record)


if __name__ == "__main__":
    raise SystemExit(main())
