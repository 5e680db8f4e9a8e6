# src/compound_events/errors.py
"""
Module: errors.py
Responsibilities:
- Typed failures raised by the joint simulation and design-event routines

All typed failures also derive from ValueError, so callers that already
guard numeric routines with ``except ValueError`` keep catching them.
"""


class DesignEventError(Exception):
    """Base class for all compound_events failures."""


class InsufficientDataError(DesignEventError, ValueError):
    """Too few non-missing observations to estimate a quantile or fit a model."""


class SamplingError(DesignEventError, ValueError):
    """Invalid simulation count, non-simulatable copula or unusable sampling weights."""


class NoIsolineError(DesignEventError, ValueError):
    """Requested return period lies outside the range of the return-level grid."""


class UnsupportedFamilyError(DesignEventError, ValueError):
    """Bulk-marginal family name is not in the recognised enumeration."""


class DegenerateShapeError(DesignEventError, ValueError):
    """GPD parameters produce a non-finite inverse."""
