"""
Ventflow Custom Exceptions

Simple exception hierarchy for error handling.
"""


class VentflowError(Exception):
    """Base exception for Ventflow."""

    pass


class ConfigurationError(VentflowError):
    """Configuration is invalid."""

    pass


class HAConnectionError(VentflowError):
    """Cannot connect to Home Assistant."""

    pass


class SensorError(VentflowError):
    """Sensor data is unavailable or invalid."""

    pass


class MissingInputError(VentflowError):
    """A required input (setpoint, vents, rates) is not available this poll."""

    pass


class ReconstructionError(VentflowError):
    """Cycle parameters could not be recovered for finalization."""

    pass


class ImportValidationError(VentflowError):
    """Efficiency data payload is malformed."""

    pass
