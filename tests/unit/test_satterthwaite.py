"""
Tests for Satterthwaite degrees of freedom.

Balanced complete designs have an exact answer: total subjects - 2 for
two-level models and total clusters - 2 for fully nested three-level
models. The numerical path must reproduce it.
"""

import numpy as np
import pytest

import powerlmm
from powerlmm.exceptions import DFNotFinite
from powerlmm.stats.data_generation import expected_layout, simulate_data
from powerlmm.stats.satterthwaite import (
    closed_form_df,
    contrast_vector,
    degrees_of_freedom,
    expected_information,
    satterthwaite_df,
    varb_func,
)
from powerlmm.stats.variance_structure import structure_from_design
from tests.config import DF_REL_TOL


def _structure(design, seed=1):
    return structure_from_design(design, simulate_data(design, seed=seed))


class TestExactDesigns:
    def test_three_level(self, three_level_design):
        df = satterthwaite_df(_structure(three_level_design), "time:treatment")
        assert df == pytest.approx(powerlmm.get_n3(three_level_design)["total"] - 2, rel=DF_REL_TOL)

    def test_two_level(self, two_level_design):
        df = satterthwaite_df(_structure(two_level_design), "time:treatment")
        assert df == pytest.approx(powerlmm.get_tot_n(two_level_design)["total"] - 2, rel=DF_REL_TOL)

    def test_alias_name(self, two_level_design):
        s = _structure(two_level_design)
        assert satterthwaite_df(s, "treatment:time") == pytest.approx(satterthwaite_df(s, "time:treatment"))

    def test_closed_form_values(self, two_level_design, three_level_design):
        f2 = powerlmm.create_lmer_formula(two_level_design)
        f3 = powerlmm.create_lmer_formula(three_level_design)
        assert closed_form_df(two_level_design, f2, "time:treatment") == 38
        assert closed_form_df(three_level_design, f3, "time:treatment") == 6

    def test_closed_form_matches_numeric(self, three_level_design):
        s = _structure(three_level_design)
        exact = degrees_of_freedom(s, "time:treatment", design=three_level_design)
        numeric = degrees_of_freedom(s, "time:treatment")
        assert numeric == pytest.approx(exact, rel=DF_REL_TOL)


class TestClosedFormApplicability:
    def test_not_for_dropout(self):
        p = powerlmm.study_parameters(n1=4, n2=5, icc_pre_subject=0.5, var_ratio=0.02, dropout=0.2)
        assert closed_form_df(p, powerlmm.create_lmer_formula(p), "time:treatment") is None

    def test_not_for_partially_nested(self, partially_nested_design):
        f = powerlmm.create_lmer_formula(partially_nested_design)
        assert closed_form_df(partially_nested_design, f, "time:treatment") is None

    def test_not_for_other_coefficients(self, two_level_design):
        f = powerlmm.create_lmer_formula(two_level_design)
        assert closed_form_df(two_level_design, f, "treatment") is None

    def test_not_for_intercept_only(self):
        p = powerlmm.study_parameters(n1=4, n2=5, icc_pre_subject=0.5)
        assert closed_form_df(p, powerlmm.create_lmer_formula(p), "time:treatment") is None


class TestNumericalPath:
    def test_dropout_df_between_bounds(self):
        p = powerlmm.study_parameters(
            n1=5,
            n2=4,
            n3=3,
            icc_pre_subject=0.5,
            icc_pre_cluster=0.1,
            var_ratio=0.03,
            icc_slope=0.1,
            dropout=powerlmm.dropout_weibull(0.3, 1),
            cohend=0.5,
        )
        df = degrees_of_freedom(structure_from_design(p, expected_layout(p)), "time:treatment", design=p)
        assert 1 <= df <= powerlmm.get_tot_n(p)["total"]

    def test_partially_nested(self, partially_nested_design):
        s = structure_from_design(partially_nested_design, expected_layout(partially_nested_design))
        df = satterthwaite_df(s, "time:treatment")
        assert np.isfinite(df)
        assert df >= 1

    def test_information_symmetric_positive(self, three_level_design):
        info = expected_information(_structure(three_level_design))
        np.testing.assert_allclose(info, info.T)
        assert np.all(np.linalg.eigvalsh(info) > 0)

    def test_contrast_vector_passthrough(self, two_level_design):
        s = _structure(two_level_design)
        L = contrast_vector(s.formula, "time:treatment")
        assert satterthwaite_df(s, L) == pytest.approx(satterthwaite_df(s, "time:treatment"))

    def test_unknown_coefficient(self, two_level_design):
        with pytest.raises(ValueError, match="not in model"):
            satterthwaite_df(_structure(two_level_design), "age")

    def test_singular_information_raises(self, two_level_design):
        s = _structure(two_level_design)
        varb = varb_func(s)

        def broken(L, phi=None):
            raise np.linalg.LinAlgError("singular")

        with pytest.raises(DFNotFinite) as exc:
            satterthwaite_df(s, "time:treatment", varb=broken)
        assert exc.value.reason == "singular_xvx"
        assert varb(contrast_vector(s.formula, "time:treatment")) > 0
