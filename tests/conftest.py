from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from agnw_lab.controller import ProcessController
from agnw_lab.data_types import ExperimentOutcome, ExperimentParameters
from agnw_lab.devices import SimulatedRig
from agnw_lab.history import HistoryStore


class ForcedTemperatureRig(SimulatedRig):
    """Simulated rig whose thermocouple can be forced to a fixed reading."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.forced_temp_c: Optional[float] = None

    def read_temperature(self) -> float:
        if self.forced_temp_c is not None:
            self._require("heater")
            return self.forced_temp_c
        return super().read_temperature()


class StepClock:
    """Deterministic timestamps one minute apart."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(minutes=1)
        return current


@pytest.fixture
def rig():
    return SimulatedRig(noise_bound_c=1.0, seed=0)


@pytest.fixture
def forced_rig():
    return ForcedTemperatureRig(noise_bound_c=0.0, seed=0)


@pytest.fixture
def controller(rig):
    return ProcessController(rig)


@pytest.fixture
def history():
    return HistoryStore(clock=StepClock())


@pytest.fixture
def two_record_history(history):
    """Two runs that differ only in temperature, aspect ratios 125 and 211."""
    history.record(
        ExperimentParameters(temperature_c=150.0),
        ExperimentOutcome(diameter_nm=100.0, length_um=12.5),
    )
    history.record(
        ExperimentParameters(temperature_c=165.0),
        ExperimentOutcome(diameter_nm=100.0, length_um=21.1),
    )
    return history


@pytest.fixture
def fast_optimizer_config():
    return {"n_candidates": 128, "n_local": 96, "chunk_size": 64}
