"""
Device abstraction for the synthesis rig.

Real drivers for the heater, stirrer, pumps and spectrometers live outside this
package and implement ``RigDevices``. ``SimulatedRig`` stands in for them in
tests, demos and autonomous simulations.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import numpy as np

from .config import DEVICE_NAMES, REAGENT_CHANNELS

logger = logging.getLogger(__name__)

# Static reference spectra: 8-channel visible and 3-point near-infrared
UVVIS_SPECTRUM: List[Tuple[float, float]] = [
    (415.0, 0.12),
    (445.0, 0.25),
    (480.0, 0.45),
    (515.0, 0.38),
    (555.0, 0.22),
    (590.0, 0.15),
    (630.0, 0.10),
    (680.0, 0.08),
]
NIR_SPECTRUM: List[Tuple[float, float]] = [(940.0, 0.85), (1450.0, 0.72), (1550.0, 0.78)]


class DeviceError(Exception):
    """Raised by device implementations when a call fails or times out."""


class RigDevices(ABC):
    """Read/write primitives the process controller consumes."""

    @abstractmethod
    def set_heater_setpoint(self, celsius: float) -> None:
        """Command the heater/temperature controller."""

    @abstractmethod
    def read_temperature(self) -> float:
        """Return the measured reaction temperature in °C."""

    @abstractmethod
    def set_stirring_speed(self, rpm: float) -> None:
        """Set the stirrer speed."""

    @abstractmethod
    def dispense(self, channel: int, volume_ml: float) -> None:
        """Dispense a volume on one liquid-handling pump channel."""

    @abstractmethod
    def read_spectrum(self, channel: str) -> List[Tuple[float, float]]:
        """Return (wavelength, intensity) pairs from the 'uvvis' or 'nir' spectrometer."""

    @abstractmethod
    def is_connected(self, device_name: str) -> bool:
        """Report whether a device answers."""


class SimulatedRig(RigDevices):
    """
    In-memory rig.

    The measured temperature is the last heater command plus bounded,
    zero-mean uniform noise, so a controller that ramps its command by a
    first-order law sees ``temp + k * (setpoint - temp) + noise``.
    """

    def __init__(
        self,
        noise_bound_c: float = 1.0,
        ambient_c: float = 25.0,
        seed: Optional[int] = None,
    ):
        if noise_bound_c < 0:
            raise ValueError("noise_bound_c must be non-negative")
        self.noise_bound_c = noise_bound_c
        self.ambient_c = ambient_c
        self._rng = np.random.default_rng(seed)
        self._command: Optional[float] = None
        self._connected: Dict[str, bool] = {name: True for name in DEVICE_NAMES}
        self.stirring_rpm = 0.0
        self.dispensed: Dict[int, float] = {channel: 0.0 for channel in REAGENT_CHANNELS.values()}
        self.heater_commands: List[float] = []

    def disconnect(self, device_name: str) -> None:
        self._check_name(device_name)
        logger.warning(f"Simulated disconnect of {device_name}")
        self._connected[device_name] = False

    def reconnect(self, device_name: str) -> None:
        self._check_name(device_name)
        self._connected[device_name] = True

    def _check_name(self, device_name: str) -> None:
        if device_name not in self._connected:
            raise DeviceError(f"Unknown device '{device_name}'")

    def _require(self, device_name: str) -> None:
        if not self._connected[device_name]:
            raise DeviceError(f"{device_name} is not responding")

    def set_heater_setpoint(self, celsius: float) -> None:
        self._require("heater")
        self._command = float(celsius)
        self.heater_commands.append(self._command)

    def read_temperature(self) -> float:
        self._require("heater")
        base = self.ambient_c if self._command is None else self._command
        noise = self._rng.uniform(-self.noise_bound_c, self.noise_bound_c)
        return float(base + noise)

    def set_stirring_speed(self, rpm: float) -> None:
        self._require("stirrer")
        self.stirring_rpm = float(rpm)

    def dispense(self, channel: int, volume_ml: float) -> None:
        self._require("pumps")
        if channel not in self.dispensed:
            raise DeviceError(f"Pump channel {channel} does not exist")
        if volume_ml < 0:
            raise DeviceError(f"Cannot dispense a negative volume ({volume_ml} mL)")
        self.dispensed[channel] += float(volume_ml)

    def read_spectrum(self, channel: str) -> List[Tuple[float, float]]:
        if channel == "uvvis":
            self._require("uvvis")
            return list(UVVIS_SPECTRUM)
        if channel == "nir":
            self._require("nir")
            return list(NIR_SPECTRUM)
        raise DeviceError(f"Unknown spectrometer '{channel}'")

    def is_connected(self, device_name: str) -> bool:
        self._check_name(device_name)
        return self._connected[device_name]
