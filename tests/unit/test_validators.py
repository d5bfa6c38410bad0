"""
Tests for validation utilities.
"""

import numpy as np
import pytest

from powerlmm.exceptions import InvalidDesign
from powerlmm.utils.validators import (
    _ValidationResult,
    _validate_alpha,
    _validate_cores,
    _validate_correlation,
    _validate_covariance_block,
    _validate_lrt_alpha,
    _validate_numeric_parameter,
    _validate_proportion,
    _validate_simulations,
    _raise_design,
)


class TestValidationResult:
    def test_raise_if_invalid_default(self):
        result = _ValidationResult(False, ["bad value"], [])
        with pytest.raises(ValueError, match="bad value"):
            result.raise_if_invalid()

    def test_raise_design(self):
        result = _ValidationResult(False, ["n1 must be >= 2"], [])
        with pytest.raises(InvalidDesign, match="n1"):
            _raise_design(result)

    def test_valid_does_not_raise(self):
        _ValidationResult(True, [], ["just a warning"]).raise_if_invalid()

    def test_merge(self):
        merged = _ValidationResult(True, [], ["w"]).merge(_ValidationResult(False, ["e"], []))
        assert not merged.is_valid
        assert merged.errors == ["e"]
        assert merged.warnings == ["w"]


class TestNumeric:
    def test_rejects_bool(self):
        assert not _validate_numeric_parameter(True, "x").is_valid

    def test_rejects_nan(self):
        assert not _validate_numeric_parameter(float("nan"), "x").is_valid

    def test_range(self):
        assert not _validate_numeric_parameter(-1, "x", min_val=0).is_valid
        assert _validate_numeric_parameter(np.float64(0.5), "x", min_val=0, max_val=1).is_valid

    def test_alpha(self):
        assert _validate_alpha(0.05).is_valid
        assert not _validate_alpha(0).is_valid
        assert not _validate_alpha(1.5).is_valid

    def test_lrt_alpha_allows_bounds(self):
        assert _validate_lrt_alpha(0).is_valid
        assert _validate_lrt_alpha(1).is_valid
        assert not _validate_lrt_alpha(-0.1).is_valid

    def test_proportion_upper_open(self):
        assert _validate_proportion(1, "p").is_valid
        assert not _validate_proportion(1, "p", upper_open=True).is_valid

    def test_correlation(self):
        assert _validate_correlation(-1, "cor").is_valid
        assert not _validate_correlation(1.1, "cor").is_valid


class TestSimulationSettings:
    def test_simulations_low_count_warns(self):
        nsim, result = _validate_simulations(50)
        assert nsim == 50
        assert result.is_valid
        assert result.warnings

    def test_simulations_rejects_float(self):
        _, result = _validate_simulations(10.5)
        assert not result.is_valid

    def test_cores_capped(self):
        cores, result = _validate_cores(10_000)
        assert result.is_valid
        assert cores <= 10_000
        assert result.warnings

    def test_cores_invalid(self):
        _, result = _validate_cores(0)
        assert not result.is_valid


class TestCovarianceBlock:
    def test_psd(self):
        assert _validate_covariance_block(1.0, 0.5, 2.0, "Subject").is_valid

    def test_zero_sd_is_psd(self):
        assert _validate_covariance_block(0.0, 0.9, 2.0, "Cluster").is_valid
