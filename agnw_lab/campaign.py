"""
Autonomous suggest → run → measure → record campaigns.

The measurement step is pluggable through ``OutcomeSource``; the simulated
source scores parameters against the mock surface in ``scoring``.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from .config import section
from .data_types import (
    ExperimentOutcome,
    ExperimentParameters,
    ExperimentRecord,
    OptimizationSuggestion,
    Status,
    resolve_metric,
)
from .errors import DeviceUnavailable, InvalidParameter, InvalidTransition, SafetyViolation
from .scoring import mock_outcome
from .workflow import SynthesisLab

logger = logging.getLogger(__name__)


Spectra = Dict[str, List[Tuple[float, float]]]


class OutcomeSource(ABC):
    """Characterizes a finished batch (SEM, UV-Vis, manual entry...)."""

    @abstractmethod
    def measure(
        self, parameters: ExperimentParameters, spectra: Optional[Spectra] = None
    ) -> ExperimentOutcome:
        """
        Args:
            parameters: Parameters the batch was synthesized with
            spectra: UV-Vis and NIR spectra acquired when the run completed
        """


class SimulatedMeasurement(OutcomeSource):
    def __init__(self, seed: Optional[int] = None, noise: float = 0.03):
        self.noise = noise
        self._rng = np.random.default_rng(seed)

    def measure(
        self, parameters: ExperimentParameters, spectra: Optional[Spectra] = None
    ) -> ExperimentOutcome:
        return mock_outcome(parameters, rng=self._rng, noise=self.noise)


@dataclass
class CampaignResult:
    target_metric: str
    records: List[ExperimentRecord] = field(default_factory=list)
    suggestions: List[OptimizationSuggestion] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    # Spectra acquired for each recorded experiment, aligned with records
    spectra: List[Spectra] = field(default_factory=list)
    # Best target value seen after each recorded experiment
    best_trace: List[float] = field(default_factory=list)

    @property
    def best(self) -> Optional[ExperimentRecord]:
        scored = [r for r in self.records if r.outcome.metric(self.target_metric) is not None]
        if not scored:
            return None
        return max(scored, key=lambda r: r.outcome.metric(self.target_metric))

    def to_dataframe(self) -> pd.DataFrame:
        """One row per recorded experiment, with the suggestion that produced it."""
        by_params = {}
        for suggestion in self.suggestions:
            by_params.setdefault(suggestion.parameters, suggestion)
        rows = []
        for record in self.records:
            row = record.to_dict()
            suggestion = by_params.get(record.parameters)
            row["strategy"] = suggestion.strategy if suggestion else None
            row["confidence"] = suggestion.confidence if suggestion else None
            rows.append(row)
        return pd.DataFrame(rows)


class AutonomousCampaign:
    def __init__(
        self,
        lab: SynthesisLab,
        source: OutcomeSource,
        target_metric: str = "aspect_ratio",
        tick_seconds: Optional[float] = None,
        seed: Optional[int] = None,
        max_failures: Optional[int] = None,
    ):
        """
        Args:
            lab: The lab whose controller and history the campaign drives
            source: Where outcomes come from once a run completes
            target_metric: Outcome metric the optimizer maximizes
            tick_seconds: Simulated seconds per controller tick
            seed: Base seed; experiment i uses seed + i for its suggestion
            max_failures: Faulted runs tolerated before the campaign gives up
        """
        resolve_metric(target_metric)
        cfg = section("campaign", lab.config.get("campaign"))
        self.lab = lab
        self.source = source
        self.target_metric = target_metric
        self.tick_seconds = float(tick_seconds if tick_seconds is not None else cfg["tick_seconds"])
        if self.tick_seconds <= 0:
            raise InvalidParameter("tick_seconds must be positive")
        self.max_failures = int(max_failures if max_failures is not None else cfg["max_failures"])
        self.seed = seed

    def run(self, n_experiments: int, show_progress: bool = True) -> CampaignResult:
        """
        Run up to ``n_experiments`` closed-loop experiments.

        A run that faults is acknowledged and skipped; after ``max_failures``
        faults the campaign stops early.
        """
        if n_experiments < 0:
            raise InvalidParameter("n_experiments must be non-negative")
        if self.lab.status().status != Status.IDLE:
            raise InvalidTransition("The lab must be idle to start a campaign")

        result = CampaignResult(target_metric=self.target_metric)
        best_value = -math.inf
        for i in tqdm(
            range(n_experiments), desc="Autonomous campaign", unit="exp", disable=not show_progress
        ):
            seed = None if self.seed is None else self.seed + i
            suggestion = self.lab.suggest_next(self.target_metric, seed=seed)
            result.suggestions.append(suggestion)

            try:
                record, spectra = self._run_one(suggestion)
            except (DeviceUnavailable, SafetyViolation) as err:
                result.failures.append(f"experiment {i + 1}: {err}")
                logger.warning(f"Experiment {i + 1} failed: {err}")
                if self.lab.status().status == Status.ERROR:
                    self.lab.acknowledge()
                if len(result.failures) >= self.max_failures:
                    logger.error(f"Stopping campaign after {len(result.failures)} failed runs")
                    break
                continue

            result.records.append(record)
            result.spectra.append(spectra)
            value = record.outcome.metric(self.target_metric)
            if value is not None:
                best_value = max(best_value, value)
            result.best_trace.append(best_value)
            logger.info(
                f"Experiment {i + 1}/{n_experiments} ({suggestion.strategy}): "
                f"{self.target_metric}={value}, best so far {best_value:.2f}"
            )

        return result

    def _run_one(self, suggestion: OptimizationSuggestion) -> Tuple[ExperimentRecord, Spectra]:
        self.lab.apply_suggestion(suggestion)
        self.lab.start()

        duration_s = suggestion.parameters.reaction_time_min * 60.0
        max_ticks = math.ceil(duration_s / self.tick_seconds) + 1
        state = self.lab.status()
        for _ in range(max_ticks):
            if state.status != Status.RUNNING:
                break
            state = self.lab.tick(self.tick_seconds)

        if state.status != Status.COMPLETED:
            raise InvalidTransition(f"Run ended in {state.status.value} instead of completing")
        try:
            spectra = self.lab.read_spectra()
        except DeviceUnavailable:
            self.lab.discard_outcome()
            raise
        outcome = self.source.measure(suggestion.parameters, spectra)
        return self.lab.record_outcome(outcome), spectra
