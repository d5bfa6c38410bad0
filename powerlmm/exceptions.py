"""
Exception hierarchy for powerlmm.

Design-time errors (``InvalidDesign``, ``FormulaError``) are raised
immediately to the caller. Per-replication errors (``DegenerateLayout``,
``EmptyGroup``, ``FitFailed``, ``DFNotFinite``) are raised inside a single
replication and recorded by the simulation runner instead of aborting the
batch.
"""


class PowerLMMError(Exception):
    """Base exception for all powerlmm errors."""

    pass


class InvalidDesign(PowerLMMError, ValueError):
    """Study parameters are inconsistent or imply an invalid covariance."""

    pass


class FormulaError(PowerLMMError, ValueError):
    """A model formula could not be parsed or does not match the data."""

    pass


class DegenerateLayout(PowerLMMError):
    """A realized dataset cannot support the requested random-effects structure."""

    pass


class EmptyGroup(DegenerateLayout):
    """A required grouping factor has no observed rows.

    Attributes:
        grouping: Name of the grouping factor that is empty.
    """

    def __init__(self, message: str, grouping: str = None):
        super().__init__(message)
        self.grouping = grouping


class DFNotFinite(PowerLMMError):
    """Satterthwaite degrees of freedom could not be computed.

    Attributes:
        reason: Short description of the failing step.
    """

    def __init__(self, message: str, reason: str = None):
        super().__init__(message)
        self.reason = reason


class FitFailed(PowerLMMError):
    """The external model fit raised or returned an unusable result."""

    pass
