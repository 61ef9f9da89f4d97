"""
Process controller for one synthesis rig.

The controller owns the live ``ControllerState``: it ramps the heater toward
the configured setpoint with a first-order law, keeps the stirrer and pumps in
step with the configured parameters, and advances reaction progress from
elapsed time. ``tick`` is a plain function of elapsed seconds; ``ControlLoop``
drives it from a clock on a background thread.
"""

import logging
import math
import numbers
import threading
import time
from collections import deque
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from .config import DEVICE_NAMES, REAGENT_CHANNELS, section
from .data_types import (
    PARAMETER_NAMES,
    ControllerState,
    ExperimentParameters,
    Status,
    TelemetryPoint,
)
from .devices import DeviceError, RigDevices
from .errors import (
    AgnwLabError,
    DeviceUnavailable,
    InvalidParameter,
    InvalidTransition,
    SafetyViolation,
)
from .state_machine import ExperimentStateMachine

logger = logging.getLogger(__name__)

# Devices that must answer for a run to start; spectrometers belong to the measurement step
ACTUATION_DEVICES = ("heater", "stirrer", "pumps")

# Elapsed-time slack when deciding a run has reached its duration
_DURATION_EPSILON_S = 1e-9

CompletionListener = Callable[[ControllerState], None]
T = TypeVar("T")

SPECTROMETERS = ("uvvis", "nir")


class ProcessController:
    def __init__(self, devices: RigDevices, config: Optional[Dict[str, Any]] = None):
        cfg = section("controller", config)
        self.gain = float(cfg["gain"])
        if not 0.0 < self.gain < 1.0:
            raise InvalidParameter(f"Controller gain must be in (0, 1), got {self.gain}")
        self.nominal_period_s = float(cfg["nominal_period_s"])
        if self.nominal_period_s <= 0:
            raise InvalidParameter("nominal_period_s must be positive")
        self.safety_margin_c = float(cfg["safety_margin_c"])
        self.ambient_c = float(cfg["ambient_c"])

        self.devices = devices
        self._machine = ExperimentStateMachine()
        self._lock = threading.RLock()
        self._stop_requested = threading.Event()
        self._listeners: List[CompletionListener] = []

        self._parameters = ExperimentParameters()
        self._run_parameters: Optional[ExperimentParameters] = None
        self._current_temp = self.ambient_c
        self._start_temp: Optional[float] = None
        self._stirring_rpm = 0.0
        self._progress = 0.0
        self._elapsed_s = 0.0
        self._last_error: Optional[str] = None
        self._telemetry: Deque[TelemetryPoint] = deque(maxlen=int(cfg["telemetry_size"]))

    # ------------------------------------------------------------------ queries

    @property
    def state(self) -> Status:
        return self._machine.state

    @property
    def parameters(self) -> ExperimentParameters:
        return self._parameters

    def status(self) -> ControllerState:
        with self._lock:
            return self._snapshot()

    def telemetry(self) -> List[TelemetryPoint]:
        with self._lock:
            return list(self._telemetry)

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Register a callback invoked once per run when progress reaches 100%."""
        self._listeners.append(listener)

    # ---------------------------------------------------------------- lifecycle

    def configure(
        self, params: Union[ExperimentParameters, Mapping[str, Any]]
    ) -> ExperimentParameters:
        """
        Set the parameters for the next run.

        A mapping may hold a subset of fields; missing fields keep their current
        values. Validation happens before anything is applied.

        Raises:
            InvalidParameter: If any value is unknown or out of bounds
            InvalidTransition: While a run is in progress
        """
        if isinstance(params, Mapping):
            unknown = set(params) - set(PARAMETER_NAMES)
            if unknown:
                raise InvalidParameter(f"Unknown parameter(s): {sorted(unknown)}")
            params = self._parameters.replace(**dict(params))
        elif not isinstance(params, ExperimentParameters):
            raise InvalidParameter(f"Expected ExperimentParameters, got {type(params).__name__}")

        with self._lock:
            if self._machine.state in (Status.RUNNING, Status.PAUSED):
                raise InvalidTransition(
                    f"Cannot change parameters while {self._machine.state.value}"
                )
            self._parameters = params
        logger.info(f"Configured parameters: {params.to_dict()}")
        return params

    def start(self) -> ControllerState:
        with self._lock:
            self._machine.fire("start")
            self._stop_requested.clear()
            params = self._parameters
            self._run_parameters = params
            self._progress = 0.0
            self._elapsed_s = 0.0
            self._last_error = None
            self._telemetry.clear()
            try:
                self._require_connected(ACTUATION_DEVICES)
                start_temp = self._read_temperature()
                self._start_temp = self._current_temp = start_temp
                self._check_safety(start_temp, params.temperature_c)
                self._telemetry.append(
                    TelemetryPoint(0.0, start_temp, params.temperature_c, start_temp)
                )
                for name, channel in REAGENT_CHANNELS.items():
                    volume = getattr(params, name)
                    if volume > 0:
                        self._device_call("pumps", self.devices.dispense, channel, volume)
                self._device_call("stirrer", self.devices.set_stirring_speed, params.stirring_rpm)
                self._stirring_rpm = params.stirring_rpm
            except (DeviceUnavailable, SafetyViolation) as err:
                self._fault(err)
                raise
            logger.info(
                f"Run started at {start_temp:.1f}°C → setpoint {params.temperature_c:.1f}°C, "
                f"{params.stirring_rpm:.0f} RPM, {params.reaction_time_min:g} min"
            )
            return self._snapshot()

    def pause(self) -> ControllerState:
        with self._lock:
            self._machine.fire("pause")
            return self._snapshot()

    def resume(self) -> ControllerState:
        with self._lock:
            self._machine.fire("resume")
            return self._snapshot()

    def stop(self) -> ControllerState:
        """
        Halt actuation and abandon the current run.

        Valid from every state. The stop request is flagged before the lock is
        taken so an in-flight tick skips its remaining actuation.

        From ``error`` actuation is halted but the state stays ``error``: call
        ``acknowledge()`` to clear the fault and return to ``idle``.
        """
        self._stop_requested.set()
        with self._lock:
            try:
                self._halt_actuation()
                if self._machine.state == Status.ERROR:
                    logger.warning("Stop while in error: actuation halted, acknowledge() required")
                else:
                    self._machine.fire("stop")
                    self._reset_run()
            finally:
                self._stop_requested.clear()
            return self._snapshot()

    def acknowledge(self) -> ControllerState:
        with self._lock:
            self._machine.fire("acknowledge")
            logger.info(f"Fault acknowledged: {self._last_error}")
            self._last_error = None
            self._reset_run()
            return self._snapshot()

    def finish(self) -> ControllerState:
        """Return a completed run to idle, discarding it."""
        with self._lock:
            self._machine.fire("finish")
            self._reset_run()
            return self._snapshot()

    def complete_run(self, consume: Callable[[ExperimentParameters], T]) -> T:
        """
        Hand the completed run's parameters to ``consume`` and return to idle.

        The completed check, ``consume`` and the transition happen under the
        controller lock, so a concurrent ``stop()`` either lands before (and
        ``consume`` is never called) or after (on an already idle controller).
        If ``consume`` raises, the run stays completed.

        Args:
            consume: Called with the parameters the run was started with

        Returns:
            Whatever ``consume`` returned

        Raises:
            InvalidTransition: If no completed run is waiting
        """
        with self._lock:
            if not self._machine.can_fire("finish"):
                raise InvalidTransition(
                    f"No completed run awaiting an outcome (status: {self._machine.state.value})"
                )
            result = consume(self._run_parameters)
            self._machine.fire("finish")
            self._reset_run()
            return result

    def read_spectra(self) -> Dict[str, List[Tuple[float, float]]]:
        """
        Acquire one spectrum from each spectrometer.

        A spectrometer failure does not fault the run; heating and stirring
        are not involved in measurement.

        Returns:
            Mapping of "uvvis" and "nir" to (wavelength nm, intensity) pairs

        Raises:
            DeviceUnavailable: If a spectrometer is disconnected or fails
        """
        with self._lock:
            self._require_connected(SPECTROMETERS)
            spectra = {}
            for name in SPECTROMETERS:
                spectra[name] = list(self._device_call(name, self.devices.read_spectrum, name))
        logger.info(
            f"Acquired spectra: {', '.join(f'{k} ({len(v)} points)' for k, v in spectra.items())}"
        )
        return spectra

    # ------------------------------------------------------------------ control

    def tick(self, elapsed_seconds: float) -> ControllerState:
        """
        Advance the run by one control period.

        Args:
            elapsed_seconds: Time since the previous tick. Delayed or skipped
                ticks are absorbed by scaling the approach gain with it.

        Returns:
            The state after the tick

        Raises:
            InvalidParameter: If elapsed_seconds is not a positive finite number
            DeviceUnavailable: If the heater fails; the run is now in error
            SafetyViolation: If the temperature left its envelope; the run is now in error
        """
        if isinstance(elapsed_seconds, bool) or not isinstance(elapsed_seconds, numbers.Real):
            raise InvalidParameter(f"elapsed_seconds must be a number, got {elapsed_seconds!r}")
        if not math.isfinite(elapsed_seconds) or elapsed_seconds <= 0:
            raise InvalidParameter(f"elapsed_seconds must be positive, got {elapsed_seconds}")

        completed = False
        with self._lock:
            state = self._machine.state
            if state in (Status.RUNNING, Status.PAUSED) and not self._stop_requested.is_set():
                try:
                    if state == Status.RUNNING:
                        completed = self._advance(float(elapsed_seconds))
                    else:
                        self._monitor()
                except (DeviceUnavailable, SafetyViolation) as err:
                    self._fault(err)
                    raise
            snapshot = self._snapshot()

        if completed:
            for listener in list(self._listeners):
                listener(snapshot)
        return snapshot

    def _advance(self, dt: float) -> bool:
        params = self._run_parameters
        setpoint = params.temperature_c
        temp = self._current_temp

        k_eff = 1.0 - (1.0 - self.gain) ** (dt / self.nominal_period_s)
        command = temp + k_eff * (setpoint - temp)
        if temp <= setpoint:
            command = min(command, setpoint)

        self._require_connected(("heater",))
        if self._stop_requested.is_set():
            return False
        self._device_call("heater", self.devices.set_heater_setpoint, command)
        measured = self._read_temperature()
        self._current_temp = measured
        self._check_safety(measured, setpoint)

        self._elapsed_s += dt
        duration_s = params.reaction_time_min * 60.0
        if self._elapsed_s + _DURATION_EPSILON_S >= duration_s:
            progress = 100.0
        else:
            progress = self._elapsed_s / duration_s * 100.0
        self._progress = max(self._progress, min(progress, 100.0))
        self._telemetry.append(TelemetryPoint(self._elapsed_s, measured, setpoint, command))
        logger.debug(
            f"tick dt={dt:.3f}s temp={measured:.2f}°C command={command:.2f}°C "
            f"progress={self._progress:.1f}%"
        )

        if self._progress < 100.0:
            return False
        self._machine.fire("complete")
        self._halt_actuation()
        logger.info(f"Run completed after {self._elapsed_s:.1f}s; ready for measurement")
        return True

    def _monitor(self) -> None:
        self._require_connected(("heater",))
        measured = self._read_temperature()
        self._current_temp = measured
        self._check_safety(measured, self._run_parameters.temperature_c)

    def _check_safety(self, measured: float, setpoint: float) -> None:
        limit = setpoint + self.safety_margin_c
        if measured > limit:
            raise SafetyViolation(
                f"Temperature {measured:.1f}°C exceeds setpoint {setpoint:.1f}°C "
                f"+ safety margin {self.safety_margin_c:.1f}°C"
            )

    # ------------------------------------------------------------------ devices

    def _device_call(self, device_name: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except (DeviceError, OSError) as err:
            raise DeviceUnavailable(f"{device_name}: {err}") from err

    def _require_connected(self, names: Iterable[str]) -> None:
        for name in names:
            if not self._device_call(name, self.devices.is_connected, name):
                raise DeviceUnavailable(f"{name} is disconnected")

    def _read_temperature(self) -> float:
        value = self._device_call("heater", self.devices.read_temperature)
        try:
            value = float(value)
        except (TypeError, ValueError) as err:
            raise DeviceUnavailable(f"heater returned an unreadable temperature {value!r}") from err
        if not math.isfinite(value):
            raise DeviceUnavailable(f"heater returned a non-finite temperature {value}")
        return value

    def _halt_actuation(self) -> None:
        """Best-effort shutdown of heating and stirring; failures are logged, not raised."""
        for name, fn, value in (
            ("heater", self.devices.set_heater_setpoint, self.ambient_c),
            ("stirrer", self.devices.set_stirring_speed, 0.0),
        ):
            try:
                fn(value)
            except (DeviceError, OSError) as err:
                logger.error(f"Failed to halt {name}: {err}")
        self._stirring_rpm = 0.0

    def _fault(self, err: AgnwLabError) -> None:
        self._halt_actuation()
        self._machine.fire("fault")
        self._last_error = str(err)
        logger.error(f"Run halted: {type(err).__name__}: {err}")

    def _reset_run(self) -> None:
        self._run_parameters = None
        self._progress = 0.0
        self._elapsed_s = 0.0

    def _snapshot(self) -> ControllerState:
        active = self._run_parameters or self._parameters
        return ControllerState(
            status=self._machine.state,
            current_temp_c=self._current_temp,
            target_temp_c=active.temperature_c,
            stirring_rpm=self._stirring_rpm,
            progress=self._progress,
            elapsed_s=self._elapsed_s,
            start_temp_c=self._start_temp,
            parameters=self._parameters,
            last_error=self._last_error,
            run_parameters=self._run_parameters,
        )

    def connectivity(self) -> Dict[str, bool]:
        """Connection status of every rig device; a failing check counts as disconnected."""
        result = {}
        for name in DEVICE_NAMES:
            try:
                result[name] = bool(self.devices.is_connected(name))
            except (DeviceError, OSError) as err:
                logger.warning(f"Connectivity check for {name} failed: {err}")
                result[name] = False
        return result


class ControlLoop:
    """
    Timer-driven tick loop.

    Waits ``period_s`` between ticks on an Event (no busy polling) and passes
    the clock-measured elapsed time to ``tick``, so a late or skipped period
    still advances the run by the right amount.
    """

    def __init__(
        self,
        controller: ProcessController,
        period_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if period_s <= 0:
            raise InvalidParameter("period_s must be positive")
        self.controller = controller
        self.period_s = period_s
        self._clock = clock
        self._halt = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0
        self.last_error: Optional[Exception] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            raise InvalidTransition("Control loop is already running")
        self._halt.clear()
        self.last_error = None
        self._thread = threading.Thread(target=self._run, name="agnw-control-loop", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._halt.set()
        self.join(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        last = self._clock()
        while not self._halt.wait(self.period_s):
            now = self._clock()
            elapsed = now - last
            last = now
            if elapsed <= 0:
                continue
            try:
                state = self.controller.tick(elapsed)
            except AgnwLabError as err:
                self.last_error = err
                logger.error(f"Control loop stopped: {err}")
                return
            except Exception as err:
                # Raised by a completion listener after the run already completed
                self.last_error = err
                logger.exception(f"Control loop stopped on unexpected error: {err}")
                return
            self.ticks += 1
            if state.status not in (Status.RUNNING, Status.PAUSED):
                logger.info(f"Control loop finished with controller {state.status.value}")
                return
