"""
Unified workflow module for AgNW synthesis.

``SynthesisLab`` ties together the process controller, the outcome history and
the optimization engine behind the operations a UI, CLI or orchestration layer
calls: configure and run an experiment, record its measured outcome, and ask
for the next parameter set.
"""

import logging
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .config import get_config, section
from .controller import ControlLoop, ProcessController
from .data_types import (
    ControllerState,
    ExperimentOutcome,
    ExperimentParameters,
    ExperimentRecord,
    OptimizationSuggestion,
    TelemetryPoint,
)
from .devices import RigDevices, SimulatedRig
from .errors import InvalidParameter, InvalidTransition
from .history import HistoryStore
from .optimizer import OptimizationEngine, SuggestionWorker

logger = logging.getLogger(__name__)


class SynthesisLab:
    """
    Workflow manager for one synthesis rig.

    The controller is the only writer of the live run state and the history
    store the only writer of completed records; everything else reads
    snapshots.
    """

    def __init__(
        self,
        devices: Optional[RigDevices] = None,
        config: Optional[Dict[str, Any]] = None,
        seed: Optional[int] = None,
        history: Optional[HistoryStore] = None,
    ):
        """
        Initialize the lab.

        Args:
            devices: Rig device implementation (defaults to a SimulatedRig)
            config: Configuration dictionary (defaults to get_config())
            seed: Seed for the simulated rig noise and the optimizer sampling
            history: Existing history store to continue from
        """
        self.config = config if config is not None else get_config()

        if devices is None:
            rig_cfg = section("rig", self.config.get("rig"))
            devices = SimulatedRig(
                noise_bound_c=rig_cfg["noise_bound_c"],
                ambient_c=rig_cfg["ambient_c"],
                seed=rig_cfg["seed"] if seed is None else seed,
            )
        self.devices = devices
        self.controller = ProcessController(devices, self.config.get("controller"))
        self.history_store = history if history is not None else HistoryStore()
        self.engine = OptimizationEngine(self.config.get("optimizer"), seed=seed)

        self._worker: Optional[SuggestionWorker] = None
        self._loop: Optional[ControlLoop] = None

    def __enter__(self) -> "SynthesisLab":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # Process control

    def configure(
        self, params: Union[ExperimentParameters, Mapping[str, Any]]
    ) -> ExperimentParameters:
        return self.controller.configure(params)

    def start(self) -> ControllerState:
        return self.controller.start()

    def pause(self) -> ControllerState:
        return self.controller.pause()

    def resume(self) -> ControllerState:
        return self.controller.resume()

    def stop(self) -> ControllerState:
        """
        Halt heating and stirring and abandon the run without recording it.

        Returns to idle from every state except ``error``, which keeps the
        fault visible until ``acknowledge()``.
        """
        return self.controller.stop()

    def acknowledge(self) -> ControllerState:
        return self.controller.acknowledge()

    def tick(self, elapsed_seconds: float) -> ControllerState:
        return self.controller.tick(elapsed_seconds)

    def status(self) -> ControllerState:
        return self.controller.status()

    def telemetry(self) -> List[TelemetryPoint]:
        return self.controller.telemetry()

    def devices_connected(self) -> Dict[str, bool]:
        return self.controller.connectivity()

    def read_spectra(self) -> Dict[str, List[Tuple[float, float]]]:
        return self.controller.read_spectra()

    def start_control_loop(
        self, period_s: float = 1.0, clock: Optional[Callable[[], float]] = None
    ) -> ControlLoop:
        """
        Start the run and drive it from a background timer.

        Args:
            period_s: Seconds between ticks
            clock: Monotonic clock override (for tests)

        Returns:
            The running ControlLoop
        """
        if self._loop is not None and self._loop.running:
            raise InvalidTransition("A control loop is already running")
        self.controller.start()
        kwargs = {} if clock is None else {"clock": clock}
        self._loop = ControlLoop(self.controller, period_s=period_s, **kwargs)
        self._loop.start()
        return self._loop

    # Outcomes

    def record_outcome(
        self, outcome: Union[ExperimentOutcome, Mapping[str, Any]]
    ) -> ExperimentRecord:
        """
        Record the measured outcome of the completed run.

        Args:
            outcome: ExperimentOutcome or a mapping with diameter_nm, length_um
                and optionally yield_percent

        Returns:
            The new ExperimentRecord

        Raises:
            InvalidTransition: If no completed run is waiting for an outcome
            InvalidParameter: If the outcome values are invalid
        """
        if isinstance(outcome, Mapping):
            outcome = ExperimentOutcome.from_dict(outcome)
        elif not isinstance(outcome, ExperimentOutcome):
            raise InvalidParameter(f"Expected ExperimentOutcome, got {type(outcome).__name__}")

        # Pairs the outcome with the parameters the run was started with, and
        # leaves idle only once the record is stored
        return self.controller.complete_run(
            lambda run_parameters: self.history_store.record(run_parameters, outcome)
        )

    def discard_outcome(self) -> ControllerState:
        logger.info("Completed run discarded without an outcome")
        return self.controller.finish()

    def history(self) -> Tuple[ExperimentRecord, ...]:
        return self.history_store.all()

    def best(self, metric: str = "aspect_ratio") -> Optional[ExperimentRecord]:
        return self.history_store.best(metric)

    # Optimization

    def suggest_next(
        self, target_metric: str = "aspect_ratio", seed: Optional[int] = None
    ) -> OptimizationSuggestion:
        return self.engine.suggest_next(self.history_store, target_metric, seed=seed)

    def suggest_next_async(
        self, target_metric: str = "aspect_ratio", seed: Optional[int] = None
    ) -> Future:
        """Fit in the background; a newer request supersedes one still running."""
        if self._worker is None:
            self._worker = SuggestionWorker(self.engine, self.history_store)
        return self._worker.submit(target_metric, seed=seed)

    def apply_suggestion(self, suggestion: OptimizationSuggestion) -> ExperimentParameters:
        logger.info(
            f"Applying {suggestion.strategy} suggestion "
            f"(confidence {suggestion.confidence:.2f}) for {suggestion.target_metric}"
        )
        return self.controller.configure(suggestion.parameters)

    def close(self) -> None:
        if self._loop is not None:
            self._loop.stop(timeout=5.0)
            self._loop = None
        if self._worker is not None:
            self._worker.shutdown(wait=False)
            self._worker = None
