"""
AgNW synthesis control and optimization package.

This package drives a silver nanowire synthesis rig through its experiment
lifecycle and proposes the next parameter set with Bayesian optimization.
"""

from .campaign import AutonomousCampaign, CampaignResult, OutcomeSource, SimulatedMeasurement
from .config import DEFAULT_PARAMETERS, PARAMETER_SPACE, get_config, load_config
from .controller import ControlLoop, ProcessController
from .data_types import (
    ControllerState,
    ExperimentOutcome,
    ExperimentParameters,
    ExperimentRecord,
    OptimizationSuggestion,
    Status,
    TelemetryPoint,
)
from .devices import RigDevices, SimulatedRig
from .errors import (
    AgnwLabError,
    DeviceUnavailable,
    InsufficientData,
    InvalidParameter,
    InvalidTransition,
    OptimizationCancelled,
    SafetyViolation,
)
from .history import HistoryStore
from .optimizer import OptimizationEngine, SuggestionWorker
from .state_machine import ExperimentStateMachine
from .workflow import SynthesisLab

__all__ = [
    "SynthesisLab",
    "ProcessController",
    "ControlLoop",
    "ExperimentStateMachine",
    "HistoryStore",
    "OptimizationEngine",
    "SuggestionWorker",
    "AutonomousCampaign",
    "CampaignResult",
    "OutcomeSource",
    "SimulatedMeasurement",
    "RigDevices",
    "SimulatedRig",
    "ExperimentParameters",
    "ExperimentOutcome",
    "ExperimentRecord",
    "ControllerState",
    "OptimizationSuggestion",
    "Status",
    "TelemetryPoint",
    "AgnwLabError",
    "InvalidParameter",
    "InvalidTransition",
    "DeviceUnavailable",
    "SafetyViolation",
    "InsufficientData",
    "OptimizationCancelled",
    "PARAMETER_SPACE",
    "DEFAULT_PARAMETERS",
    "load_config",
    "get_config",
]
