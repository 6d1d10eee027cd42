"""Exception hierarchy shared by the betting core."""

from __future__ import annotations


class PitchlineError(Exception):
    """Base class for errors raised by :mod:`pitchline.betting`."""


class TransientAPIError(PitchlineError):
    """A retryable failure from an external data source (429, 5xx, timeout)."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PermanentAPIError(PitchlineError):
    """A non-retryable failure from an external data source."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UnsupportedMarket(PitchlineError, ValueError):
    """Raised when a market kind or side cannot be mapped to a typed market."""


class ConfigurationError(PitchlineError, ValueError):
    """Invalid configuration or job options; fails the whole invocation."""


class InsufficientCandidates(PitchlineError):
    """Raised when the candidate pool cannot fill the requested ticket."""

    def __init__(self, available: int, required: int) -> None:
        super().__init__(
            f"only {available} unique-fixture candidates available, {required} required"
        )
        self.available = available
        self.required = required


class InvariantViolation(PitchlineError):
    """An operation would break a state-machine invariant and was rejected."""


class MarketNotFound(InvariantViolation):
    pass


class MarketAlreadyResolved(InvariantViolation):
    pass


class MarketClosed(InvariantViolation):
    pass


class InsufficientBalance(InvariantViolation):
    pass


class InvalidStake(InvariantViolation):
    pass


class PositionAlreadySettled(InvariantViolation):
    pass


class ResultUnavailable(InvariantViolation):
    """Raised when a settlement is requested for a fixture without a final result."""


__all__ = [
    "ConfigurationError",
    "InsufficientBalance",
    "InsufficientCandidates",
    "InvalidStake",
    "InvariantViolation",
    "MarketAlreadyResolved",
    "MarketClosed",
    "MarketNotFound",
    "PermanentAPIError",
    "PitchlineError",
    "PositionAlreadySettled",
    "ResultUnavailable",
    "TransientAPIError",
    "UnsupportedMarket",
]
