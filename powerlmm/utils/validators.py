"""
Validation utilities for powerlmm.

This module provides validation functions for study parameters,
simulation settings, and mathematical constraints on variance components.
"""

import multiprocessing as mp
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Type, Union

import numpy as np

from ..exceptions import InvalidDesign

__all__ = []


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def raise_if_invalid(self, error_cls: Type[Exception] = ValueError):
        """Raise *error_cls* (``ValueError`` by default) if the validation failed."""
        if not self.is_valid:
            error_msg = "Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise error_cls(error_msg)

    def merge(self, other: "_ValidationResult") -> "_ValidationResult":
        """Combine two results into one."""
        return _ValidationResult(
            self.is_valid and other.is_valid,
            self.errors + other.errors,
            self.warnings + other.warnings,
        )


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type."""
        if isinstance(value, bool) or not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
    ) -> Optional[str]:
        """Check if value is within range."""
        if min_val is not None and value < min_val:
            return f"{name} must be >= {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()

_NUMBER = (int, float, np.integer, np.floating)


def _validate_numeric_parameter(
    value: Any,
    name: str,
    expected_types: tuple = _NUMBER,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> _ValidationResult:
    """Generic validation for numeric parameters."""
    errors: List[str] = []

    type_error = _validator._check_type(value, expected_types, name)
    if type_error:
        errors.append(type_error)
        return _ValidationResult(False, errors, [])

    if not np.isfinite(value):
        errors.append(f"{name} must be finite, got {value}")
        return _ValidationResult(False, errors, [])

    range_error = _validator._check_range(value, min_val, max_val, name)
    if range_error:
        errors.append(range_error)

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_alpha(alpha: Any, name: str = "alpha") -> _ValidationResult:
    """Validate a significance level (0-1, exclusive of 0)."""
    result = _validate_numeric_parameter(alpha, name, min_val=0, max_val=1)
    if result.is_valid and alpha == 0:
        return _ValidationResult(False, [f"{name} must be > 0, got 0"], [])
    return result


def _validate_lrt_alpha(alpha: Any) -> _ValidationResult:
    """Validate the forward-selection alpha; both 0 and 1 are allowed."""
    return _validate_numeric_parameter(alpha, "LRT_alpha", min_val=0, max_val=1)


def _validate_simulations(nsim: Any) -> Tuple[int, _ValidationResult]:
    """Validate the number of replications."""
    result = _validate_numeric_parameter(nsim, "nsim", expected_types=(int, np.integer), min_val=1)

    if result.is_valid:
        if nsim < 100:
            result.warnings.append(f"Low simulation count ({nsim}). Consider using at least 1000 for reliable power estimates.")
        return int(nsim), result

    return 0, result


def _validate_cores(cores: Any) -> Tuple[int, _ValidationResult]:
    """Validate the number of worker processes (capped at the host's CPU count)."""
    result = _validate_numeric_parameter(cores, "cores", expected_types=(int, np.integer), min_val=1)
    if not result.is_valid:
        return 1, result

    max_cores = mp.cpu_count() or 1
    if cores > max_cores:
        result.warnings.append(f"cores ({cores}) exceeds available CPUs ({max_cores}); using {max_cores}")
    return int(min(cores, max_cores)), result


# =============================================================================
# Study parameter validation
# =============================================================================


def _validate_count(value: Any, name: str, min_val: int) -> _ValidationResult:
    """Validate a positive integer count such as ``n1`` or a cluster size."""
    return _validate_numeric_parameter(value, name, expected_types=(int, np.integer), min_val=min_val)


def _validate_sd(value: Any, name: str) -> _ValidationResult:
    """Validate a standard deviation (nonnegative, finite)."""
    return _validate_numeric_parameter(value, name, min_val=0)


def _validate_correlation(value: Any, name: str) -> _ValidationResult:
    """Validate a correlation coefficient in [-1, 1]."""
    return _validate_numeric_parameter(value, name, min_val=-1, max_val=1)


def _validate_proportion(value: Any, name: str, upper_open: bool = False) -> _ValidationResult:
    """Validate a proportion in [0, 1] (or [0, 1) when *upper_open*)."""
    result = _validate_numeric_parameter(value, name, min_val=0, max_val=1)
    if result.is_valid and upper_open and value >= 1:
        return _ValidationResult(False, [f"{name} must be < 1, got {value}"], [])
    return result


def _validate_covariance_block(sd0: float, cor: float, sd1: float, level: str) -> _ValidationResult:
    """Check that a 2x2 intercept/slope covariance block is positive semi-definite."""
    errors: List[str] = []
    cov = np.array([[sd0**2, cor * sd0 * sd1], [cor * sd0 * sd1, sd1**2]])
    eigenvals = np.linalg.eigvalsh(cov)
    if np.any(eigenvals < -1e-10):
        errors.append(f"{level}-level covariance matrix is not positive semi-definite (eigenvalues {eigenvals})")
    return _ValidationResult(len(errors) == 0, errors, [])


def _raise_design(result: _ValidationResult) -> None:
    result.raise_if_invalid(InvalidDesign)
