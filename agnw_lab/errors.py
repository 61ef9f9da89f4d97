"""
Exception taxonomy for the AgNW synthesis controller.

Parameter and transition errors are recoverable by the caller. Device and
safety errors are raised only after actuation has been halted.
"""


class AgnwLabError(Exception):
    pass


class InvalidParameter(AgnwLabError, ValueError):
    """A configuration value is missing, malformed or outside its declared bounds."""


class InvalidTransition(AgnwLabError):
    """The requested lifecycle operation is not allowed from the current state."""


class DeviceUnavailable(AgnwLabError):
    """A device call failed or the device reports itself disconnected."""


class SafetyViolation(AgnwLabError):
    """A measured value left its safe envelope during a run."""


class InsufficientData(AgnwLabError):
    """The optimizer cannot produce even a fallback suggestion."""


class OptimizationCancelled(AgnwLabError):
    """A model fit was abandoned before it produced a suggestion."""
