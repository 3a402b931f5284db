"""
Error taxonomy shared by the analytics engine and its HTTP surface.

Only exceptions that are raised in one layer and handled in another live here.
"""

from __future__ import annotations


class InsightsError(Exception):
    """Base class for every error raised by the analytics engine."""


class ValidationError(InsightsError):
    """Malformed date, filter or admin parameter. Surfaces to the caller as-is."""


class UpstreamQueryError(InsightsError):
    """The data store is unavailable or a query against it failed."""


class ComputationError(InsightsError):
    """A guarded computation could not produce a value."""


class StaleDataWarning(UserWarning):
    """A cached payload was served because recomputation failed."""


def safe_ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator
