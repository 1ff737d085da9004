"""Errors and warning categories raised by the SPEI engine."""


class SpeiError(Exception):
    """Base class for errors that abort a workload unit."""


class SourceReadError(SpeiError):
    """An input file or variable is missing, unreadable or inconsistent."""


class ConfigurationError(SpeiError):
    """A configuration value (method, scales, calibration, path) is invalid."""


class CellComputationFailure(SpeiError):
    """PET or index computation failed for a single grid cell.

    Never escalated: the grid loops catch it and leave the cell missing.
    """


class TimeOriginParseWarning(UserWarning):
    """Time units carry no usable origin; a fallback origin is used."""


class LowYieldWarning(UserWarning):
    """Fewer than 10% of the values of a computed field are finite."""
