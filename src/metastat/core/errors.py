"""Exception hierarchy for the statistical engine.

Only fatal conditions are raised.  Everything that still allows a
computation to finish (low power, omitted prediction interval,
questionable pooled-SD assumption) is attached to the result as a
warning instead.
"""


class MetaAnalysisError(Exception):
    """Base class for all engine errors."""


class InputError(MetaAnalysisError, ValueError):
    """Malformed or out-of-range study data, rejected before computing."""


class InsufficientDataError(MetaAnalysisError):
    """Too few studies for the requested operation."""

    def __init__(self, message: str, required: int, available: int) -> None:
        super().__init__(message)
        self.required = required
        self.available = available


# Name used for the pooling precondition (k >= 2)
InsufficientStudies = InsufficientDataError


class NumericDegeneracyError(MetaAnalysisError, ArithmeticError):
    """A variance or standard error is zero and cannot be corrected safely."""
