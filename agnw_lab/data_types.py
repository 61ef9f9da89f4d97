"""
Common data types for AgNW synthesis control and optimization.

Value objects are immutable and validate on construction: a parameter outside
its declared bound is rejected, never clamped.
"""

import math
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from .config import DEFAULT_PARAMETERS, OUTCOME_METRICS, PARAMETER_SPACE
from .errors import InvalidParameter

PARAMETER_NAMES: Tuple[str, ...] = tuple(PARAMETER_SPACE)


class Status(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


def _as_number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise InvalidParameter(f"{name} must be a number, got {value!r}")
    value = float(value)
    if not math.isfinite(value):
        raise InvalidParameter(f"{name} must be finite, got {value}")
    return value


def resolve_metric(metric: str) -> str:
    """Map a target metric name or alias to the ExperimentOutcome attribute."""
    try:
        return OUTCOME_METRICS[metric]
    except (KeyError, TypeError):
        raise InvalidParameter(
            f"Unknown target metric {metric!r}. Expected one of {sorted(OUTCOME_METRICS)}"
        ) from None


@dataclass(frozen=True)
class ExperimentParameters:
    eg_volume_ml: float = DEFAULT_PARAMETERS["eg_volume_ml"]  # mL
    agno3_volume_ml: float = DEFAULT_PARAMETERS["agno3_volume_ml"]  # mL
    pvp_volume_ml: float = DEFAULT_PARAMETERS["pvp_volume_ml"]  # mL
    nacl_volume_ml: float = DEFAULT_PARAMETERS["nacl_volume_ml"]  # mL
    temperature_c: float = DEFAULT_PARAMETERS["temperature_c"]  # °C
    stirring_rpm: float = DEFAULT_PARAMETERS["stirring_rpm"]  # RPM
    reaction_time_min: float = DEFAULT_PARAMETERS["reaction_time_min"]  # minutes

    def __post_init__(self):
        for name in PARAMETER_NAMES:
            value = _as_number(name, getattr(self, name))
            lo, hi = PARAMETER_SPACE[name]
            if not lo <= value <= hi:
                raise InvalidParameter(f"{name}={value} is outside its bounds [{lo}, {hi}]")
            object.__setattr__(self, name, value)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExperimentParameters":
        unknown = set(data) - set(PARAMETER_NAMES)
        if unknown:
            raise InvalidParameter(f"Unknown parameter(s): {sorted(unknown)}")
        return cls(**dict(data))

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in PARAMETER_NAMES}

    def replace(self, **changes: Any) -> "ExperimentParameters":
        return replace(self, **changes)

    def to_unit_vector(self) -> np.ndarray:
        """Normalize every field to [0, 1] using its declared bounds."""
        values = []
        for name in PARAMETER_NAMES:
            lo, hi = PARAMETER_SPACE[name]
            values.append((getattr(self, name) - lo) / (hi - lo))
        return np.asarray(values, dtype=float)

    @classmethod
    def from_unit_vector(cls, vector: Sequence[float]) -> "ExperimentParameters":
        vector = np.clip(np.asarray(vector, dtype=float), 0.0, 1.0)
        if vector.shape != (len(PARAMETER_NAMES),):
            raise InvalidParameter(
                f"Expected a vector of length {len(PARAMETER_NAMES)}, got shape {vector.shape}"
            )
        values = {}
        for name, u in zip(PARAMETER_NAMES, vector):
            lo, hi = PARAMETER_SPACE[name]
            values[name] = min(max(lo + float(u) * (hi - lo), lo), hi)
        return cls(**values)


@dataclass(frozen=True)
class ExperimentOutcome:
    diameter_nm: float
    length_um: float
    yield_percent: Optional[float] = None

    def __post_init__(self):
        for name in ("diameter_nm", "length_um"):
            value = _as_number(name, getattr(self, name))
            if value <= 0:
                raise InvalidParameter(f"{name} must be positive, got {value}")
            object.__setattr__(self, name, value)
        if self.yield_percent is not None:
            value = _as_number("yield_percent", self.yield_percent)
            if not 0.0 <= value <= 100.0:
                raise InvalidParameter(f"yield_percent={value} is outside [0, 100]")
            object.__setattr__(self, "yield_percent", value)

    @property
    def aspect_ratio(self) -> float:
        # length is measured in µm, diameter in nm
        return self.length_um * 1000.0 / self.diameter_nm

    def metric(self, name: str) -> Optional[float]:
        return getattr(self, resolve_metric(name))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExperimentOutcome":
        try:
            return cls(
                diameter_nm=data["diameter_nm"],
                length_um=data["length_um"],
                yield_percent=_optional(data.get("yield_percent")),
            )
        except KeyError as e:
            raise InvalidParameter(f"Outcome is missing field {e}") from e

    def to_dict(self) -> Dict[str, Optional[float]]:
        data = asdict(self)
        data["aspect_ratio"] = self.aspect_ratio
        return data


def _optional(value: Any) -> Any:
    # CSV/DataFrame round trips turn missing values into NaN
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return value


@dataclass(frozen=True)
class ExperimentRecord:
    id: int
    parameters: ExperimentParameters
    outcome: ExperimentOutcome
    completed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {"id": self.id, "completed_at": self.completed_at.isoformat()}
        row.update(self.parameters.to_dict())
        row.update(self.outcome.to_dict())
        return row

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> "ExperimentRecord":
        try:
            completed_at = row["completed_at"]
            if isinstance(completed_at, str):
                completed_at = datetime.fromisoformat(completed_at)
            if completed_at.tzinfo is None:
                completed_at = completed_at.replace(tzinfo=timezone.utc)
            return cls(
                id=int(row["id"]),
                parameters=ExperimentParameters(**{name: row[name] for name in PARAMETER_NAMES}),
                outcome=ExperimentOutcome.from_dict(row),
                completed_at=completed_at,
            )
        except KeyError as e:
            raise InvalidParameter(f"Record is missing field {e}") from e


class TelemetryPoint(NamedTuple):
    elapsed_s: float
    temp_c: float
    setpoint_c: float
    command_c: float


@dataclass(frozen=True)
class ControllerState:
    status: Status
    current_temp_c: float
    target_temp_c: float
    stirring_rpm: float
    progress: float
    elapsed_s: float
    start_temp_c: Optional[float]
    parameters: ExperimentParameters
    last_error: Optional[str] = None
    # Parameters the current (or completed, not yet recorded) run was started with
    run_parameters: Optional[ExperimentParameters] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["status"] = self.status.value
        data["parameters"] = self.parameters.to_dict()
        if self.run_parameters is not None:
            data["run_parameters"] = self.run_parameters.to_dict()
        return data


@dataclass(frozen=True)
class OptimizationSuggestion:
    parameters: ExperimentParameters
    target_metric: str
    confidence: float
    strategy: str
    n_records: int
    predicted_mean: Optional[float] = None
    predicted_range: Optional[Tuple[float, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameters": self.parameters.to_dict(),
            "target_metric": self.target_metric,
            "confidence": self.confidence,
            "strategy": self.strategy,
            "n_records": self.n_records,
            "predicted_mean": self.predicted_mean,
            "predicted_range": list(self.predicted_range) if self.predicted_range else None,
        }
