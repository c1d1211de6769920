"""Exceptions raised by strobecam."""


class StrobeCamError(Exception):
    """Base class for strobecam errors."""


class ConfigurationError(StrobeCamError, ValueError):
    """Raised when a configuration value cannot be used."""


class MeasurementInProgressError(StrobeCamError, RuntimeError):
    """Raised when a latency measurement is requested while one is running."""
