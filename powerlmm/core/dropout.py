"""
Dropout specifications for longitudinal designs.

A dropout specification maps each measurement time to the cumulative
proportion of subjects that have dropped out by then. Dropout is
monotone: a subject missing at time ``t`` is missing at every later time.
The first time point is always observed.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ..exceptions import InvalidDesign
from ..utils.validators import _raise_design, _validate_numeric_parameter, _validate_proportion

__all__ = ["Dropout", "WeibullDropout", "ManualDropout", "dropout_weibull", "dropout_manual", "observed_mask"]


class Dropout:
    """Base class for dropout specifications."""

    def cumulative(self, time: np.ndarray, T_end: float) -> np.ndarray:
        """Cumulative dropout proportion at each value of *time*."""
        raise NotImplementedError

    def retention(self, time: np.ndarray, T_end: float) -> np.ndarray:
        """Probability of still being observed at each value of *time*."""
        return 1.0 - self.cumulative(time, T_end)


@dataclass(frozen=True)
class WeibullDropout(Dropout):
    """Weibull-survival shaped dropout.

    ``F(t) = 1 - exp(-(lambda * t) ** rate)`` with ``lambda`` chosen so that
    ``F(T_end) == proportion``. ``rate < 1`` front-loads dropout, ``rate > 1``
    back-loads it.

    Attributes:
        proportion: Total dropout proportion at the last time point.
        rate: Weibull shape parameter.
    """

    proportion: float
    rate: float = 1.0

    def __post_init__(self):
        _raise_design(_validate_proportion(self.proportion, "dropout proportion", upper_open=True))
        result = _validate_numeric_parameter(self.rate, "dropout rate", min_val=0)
        _raise_design(result)
        if self.rate == 0:
            raise InvalidDesign("dropout rate must be > 0")

    def cumulative(self, time: np.ndarray, T_end: float) -> np.ndarray:
        time = np.asarray(time, dtype=float)
        if self.proportion == 0:
            return np.zeros_like(time)
        scale = (-np.log1p(-self.proportion)) ** (1.0 / self.rate) / T_end
        return 1.0 - np.exp(-((scale * time) ** self.rate))


@dataclass(frozen=True)
class ManualDropout(Dropout):
    """Cumulative dropout given explicitly for every time point.

    Attributes:
        values: Nondecreasing cumulative proportions, the first one 0.
    """

    values: Tuple[float, ...]

    def __post_init__(self):
        values = np.asarray(self.values, dtype=float)
        if values.ndim != 1 or len(values) < 2:
            raise InvalidDesign("dropout_manual needs one value per time point")
        if values[0] != 0:
            raise InvalidDesign("dropout_manual: dropout at the first time point must be 0")
        if np.any(np.diff(values) < 0):
            raise InvalidDesign("dropout_manual: cumulative dropout must be nondecreasing")
        if np.any(values < 0) or np.any(values >= 1):
            raise InvalidDesign("dropout_manual: values must be in [0, 1)")

    def cumulative(self, time: np.ndarray, T_end: float) -> np.ndarray:
        time = np.asarray(time, dtype=float)
        if len(time) != len(self.values):
            raise InvalidDesign(f"dropout_manual has {len(self.values)} values but the design has {len(time)} time points")
        return np.asarray(self.values, dtype=float)


def dropout_weibull(proportion: float, rate: float = 1.0) -> WeibullDropout:
    """Weibull dropout reaching *proportion* at the last time point."""
    return WeibullDropout(float(proportion), float(rate))


def dropout_manual(*values: float) -> ManualDropout:
    """Manual cumulative dropout, one value per time point."""
    if len(values) == 1 and np.ndim(values[0]) == 1:
        values = tuple(values[0])
    return ManualDropout(tuple(float(v) for v in values))


def observed_mask(dropout: Optional[Dropout], time: np.ndarray, T_end: float, u: np.ndarray) -> np.ndarray:
    """Observation pattern for subjects with uniform draws *u*.

    Args:
        dropout: Dropout specification, or ``None`` for complete data.
        time: Measurement times, shape ``(n1,)``.
        T_end: Last measurement time.
        u: One uniform value per subject, shape ``(n_subjects,)``.

    Returns:
        Boolean array ``(n_subjects, n1)``; ``True`` where observed.
    """
    u = np.asarray(u, dtype=float)
    if dropout is None:
        return np.ones((len(u), len(time)), dtype=bool)
    F = dropout.cumulative(time, T_end)
    mask = u[:, None] > F[None, :]
    mask[:, 0] = True
    return mask
