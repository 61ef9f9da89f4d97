"""
Mock outcome surface for simulated campaigns.

This is not a model of nanowire growth. It is a smooth, bounded stand-in for
the external measurement step so the closed loop can be exercised without a
spectrometer.
"""

import math
from typing import Optional

import numpy as np

from .data_types import ExperimentOutcome, ExperimentParameters


def mock_outcome(
    params: ExperimentParameters,
    rng: Optional[np.random.Generator] = None,
    noise: float = 0.03,
) -> ExperimentOutcome:
    """
    Simulate a characterized batch for the given parameters:
    - thinner wires at higher PVP:AgNO3 ratio and higher temperature
    - longest wires near 170°C with moderate stirring
    - yield peaks around 160°C and drops with aggressive stirring

    Multiplicative Gaussian noise of relative size ``noise`` is applied when
    an rng is given.
    """
    ratio = params.pvp_volume_ml / (params.agno3_volume_ml + 0.1)
    nacl_offset = abs(params.nacl_volume_ml - 2.5) / 2.5

    diameter = (
        140.0 - 15.0 * min(ratio, 6.0) - 0.5 * (params.temperature_c - 140.0) + 20.0 * nacl_offset
    )
    length = (
        8.0
        + 14.0 * math.exp(-(((params.temperature_c - 170.0) / 12.0) ** 2))
        + 5.0 * math.exp(-(((params.stirring_rpm - 650.0) / 200.0) ** 2))
        + 0.03 * min(params.reaction_time_min, 120.0)
    )
    yield_percent = (
        95.0
        - 40.0 * ((params.temperature_c - 160.0) / 25.0) ** 2
        - 10.0 * abs(params.stirring_rpm - 500.0) / 500.0
    )

    if rng is not None and noise > 0:
        diameter *= 1.0 + noise * rng.standard_normal()
        length *= 1.0 + noise * rng.standard_normal()
        yield_percent *= 1.0 + noise * rng.standard_normal()

    return ExperimentOutcome(
        diameter_nm=float(np.clip(diameter, 30.0, 300.0)),
        length_um=float(np.clip(length, 1.0, 80.0)),
        yield_percent=float(np.clip(yield_percent, 5.0, 99.0)),
    )
