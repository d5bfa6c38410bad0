"""
Tests for dropout specifications.
"""

import numpy as np
import pytest

import powerlmm
from powerlmm.core.dropout import ManualDropout, WeibullDropout, observed_mask
from powerlmm.exceptions import InvalidDesign


class TestWeibull:
    def test_reaches_proportion_at_end(self):
        d = powerlmm.dropout_weibull(0.4, 0.8)
        time = np.linspace(0, 10, 5)
        F = d.cumulative(time, 10)
        assert F[0] == 0
        assert F[-1] == pytest.approx(0.4)
        assert np.all(np.diff(F) >= 0)

    def test_rate_shapes_curve(self):
        time = np.linspace(0, 10, 11)
        early = powerlmm.dropout_weibull(0.3, 0.5).cumulative(time, 10)
        late = powerlmm.dropout_weibull(0.3, 2.0).cumulative(time, 10)
        assert early[1] > late[1]
        assert early[-1] == pytest.approx(late[-1])

    def test_zero_proportion(self):
        d = powerlmm.dropout_weibull(0, 1)
        assert np.all(d.cumulative(np.arange(4), 3) == 0)

    @pytest.mark.parametrize("proportion,rate", [(1.0, 1.0), (-0.1, 1.0), (0.3, 0.0), (0.3, -1.0)])
    def test_invalid(self, proportion, rate):
        with pytest.raises(InvalidDesign):
            WeibullDropout(proportion, rate)

    def test_retention(self):
        d = powerlmm.dropout_weibull(0.25, 1)
        assert d.retention(np.array([0.0, 5.0]), 5.0)[-1] == pytest.approx(0.75)


class TestManual:
    def test_values(self):
        d = powerlmm.dropout_manual(0, 0.1, 0.2, 0.3)
        assert list(d.cumulative(np.arange(4), 3)) == [0, 0.1, 0.2, 0.3]

    def test_accepts_sequence(self):
        assert powerlmm.dropout_manual([0, 0.5]) == ManualDropout((0.0, 0.5))

    @pytest.mark.parametrize("values", [(0.1, 0.2), (0, 0.3, 0.2), (0, 1.0), (0,)])
    def test_invalid(self, values):
        with pytest.raises(InvalidDesign):
            powerlmm.dropout_manual(*values)

    def test_length_must_match_design(self):
        with pytest.raises(InvalidDesign, match="time points"):
            powerlmm.study_parameters(n1=5, n2=2, dropout=powerlmm.dropout_manual(0, 0.1, 0.2))


class TestObservedMask:
    def test_monotone_and_first_observed(self):
        time = np.linspace(0, 4, 5)
        d = powerlmm.dropout_manual(0, 0.2, 0.4, 0.6, 0.8)
        mask = observed_mask(d, time, 4, np.array([0.0, 0.3, 0.5, 0.9]))
        assert mask[:, 0].all()
        assert list(mask[1]) == [True, True, False, False, False]
        assert mask[3].all()
        # once missing, missing afterwards
        assert np.all(np.diff(mask.astype(int), axis=1) <= 0)

    def test_no_dropout(self):
        mask = observed_mask(None, np.arange(3), 2, np.zeros(4))
        assert mask.shape == (4, 3)
        assert mask.all()


class TestDesignDropout:
    def test_number_becomes_weibull(self):
        p = powerlmm.study_parameters(n1=3, n2=2, dropout=0.3)
        assert p.dropout == powerlmm.dropout_weibull(0.3, 1)
        assert p.has_dropout

    def test_zero_means_none(self):
        p = powerlmm.study_parameters(n1=3, n2=2, dropout=0)
        assert p.dropout is None
        assert not p.has_dropout

    def test_per_treatment(self):
        p = powerlmm.study_parameters(n1=3, n2=2, dropout=powerlmm.per_treatment(0, 0.2))
        assert p.dropout_for(0) is None
        assert p.dropout_for(1) == powerlmm.dropout_weibull(0.2, 1)
