"""
Exception hierarchy for marktrack.

Per-cycle misses (target not found) are never raised: they are encoded as
invalid marks and posits. These exceptions cover conditions the operator
has to see.
"""


class MarktrackError(Exception):
    """Base class for all marktrack errors."""


class ConfigurationError(MarktrackError):
    """Parameters or calibration do not fit the running pipeline."""


class ArityMismatchError(ConfigurationError):
    """Calibration data was made for a different number of cameras."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Calibration covers {actual} camera(s), pipeline has {expected}"
        )
        self.expected = expected
        self.actual = actual


class InsufficientDataError(ConfigurationError):
    """Not enough distinct, well-conditioned calibration observations."""


class SourceError(MarktrackError):
    """A video source failed to deliver frames."""
