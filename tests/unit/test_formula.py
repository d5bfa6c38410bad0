"""
Tests for lme4-style formula parsing.
"""

import pandas as pd
import pytest

from powerlmm.exceptions import FormulaError
from powerlmm.utils.formula import INTERCEPT, LmerFormula, RandomTerm, parse_formula, term_values


class TestParse:
    """Test LmerFormula.parse on supported syntax."""

    def test_star_expands_to_interaction(self):
        f = LmerFormula.parse("y ~ time * treatment + (1 + time | subject)")
        assert f.response == "y"
        assert f.fixed == (INTERCEPT, "time", "treatment", "time:treatment")
        assert f.random == (RandomTerm("subject", (INTERCEPT, "time")),)

    def test_implicit_random_intercept(self):
        f = LmerFormula.parse("y ~ time + (time | subject)")
        assert f.random[0].terms == (INTERCEPT, "time")

    def test_no_random_intercept(self):
        f = LmerFormula.parse("y ~ time * treatment + (0 + treatment + treatment:time | cluster)")
        term = f.random[0]
        assert term.terms == ("treatment", "treatment:time")
        assert not term.has_intercept
        assert str(term) == "(0 + treatment + treatment:time | cluster)"

    def test_no_fixed_intercept(self):
        f = LmerFormula.parse("y ~ 0 + treatment")
        assert f.fixed == ("treatment",)
        assert f.fixed_formula() == "y ~ 0 + treatment"

    def test_two_groupings(self):
        f = LmerFormula.parse("y ~ time * treatment + (1 + time | subject) + (1 + time | cluster)")
        assert f.groupings == ["subject", "cluster"]
        assert f.n_cov_params == 3 + 3 + 1

    def test_fixed_names(self):
        f = LmerFormula.parse("y ~ time * treatment")
        assert f.fixed_names == ["Intercept", "time", "treatment", "time:treatment"]
        assert f.has_fixed("time:treatment")
        assert not f.has_fixed("treatment:time")

    def test_str_round_trip(self):
        text = "y ~ time + treatment + time:treatment + (1 + time | subject)"
        assert str(LmerFormula.parse(text)) == text
        assert LmerFormula.parse(str(LmerFormula.parse(text))) == LmerFormula.parse(text)

    def test_parse_formula_passthrough(self):
        f = LmerFormula.parse("y ~ treatment")
        assert parse_formula(f) is f

    def test_variables(self):
        f = LmerFormula.parse("y ~ time * treatment + (1 | subject)")
        assert f.variables == ["y", "time", "treatment", "subject"]


class TestParseErrors:
    """Test malformed formulas raise FormulaError."""

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "y time",
            "y ~ ",
            "~ time",
            "y ~ time + (1 + time | subject",
            "y ~ time + (1 + time subject)",
            "y ~ time + (1 | subject) + (time | subject)",
            "y ~ time + + treatment",
            "y ~ 3x",
        ],
    )
    def test_invalid(self, text):
        with pytest.raises(FormulaError):
            LmerFormula.parse(text)

    def test_formula_error_is_value_error(self):
        with pytest.raises(ValueError):
            LmerFormula.parse("y ~ ")

    def test_missing_columns(self):
        f = LmerFormula.parse("y ~ time + (1 | subject)")
        with pytest.raises(FormulaError, match="subject"):
            f.check_data(["y", "time"])


class TestModelMatrix:
    """Test evaluation of terms on data."""

    def test_interaction_values(self):
        data = pd.DataFrame({"time": [0.0, 1.0, 2.0], "treatment": [1, 0, 1]})
        assert list(term_values(data, "time:treatment")) == [0.0, 0.0, 2.0]
        assert list(term_values(data, INTERCEPT)) == [1.0, 1.0, 1.0]

    def test_model_matrix_columns(self):
        data = pd.DataFrame({"y": [1.0, 2.0], "time": [0.0, 1.0], "treatment": [1, 1]})
        X = LmerFormula.parse("y ~ time * treatment").model_matrix(data)
        assert X.shape == (2, 4)
        assert list(X[1]) == [1.0, 1.0, 1.0, 1.0]
