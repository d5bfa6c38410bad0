"""
Tests for simulated datasets and the expected layout.
"""

import numpy as np
import pytest

import powerlmm
from powerlmm.stats.data_generation import expected_layout, simulate_data, subject_layout, transform_to_posttest


class TestSubjectLayout:
    def test_cluster_ids_unique_across_arms(self, three_level_design):
        layout = subject_layout(three_level_design)
        assert layout.n_clusters == 8
        control = set(layout.cluster[layout.treatment == 0])
        treatment = set(layout.cluster[layout.treatment == 1])
        assert not control & treatment

    def test_partially_nested_singletons(self, partially_nested_design):
        layout = subject_layout(partially_nested_design)
        control = layout.cluster[layout.treatment == 0]
        assert len(set(control)) == len(control) == 12
        assert not layout.clustered[layout.treatment == 0].any()
        assert layout.clustered[layout.treatment == 1].all()
        assert layout.n_clusters == 12 + 3


class TestSimulateData:
    def test_columns_and_shape(self, three_level_design):
        d = simulate_data(three_level_design, seed=1)
        assert list(d.columns) == ["subject", "cluster", "treatment", "time", "y", "miss"]
        assert len(d) == 40 * 4
        assert d["y"].notna().all()
        assert (d["miss"] == 0).all()

    def test_reproducible(self, small_design):
        a = simulate_data(small_design, seed=3)
        b = simulate_data(small_design, rng=np.random.default_rng(3))
        assert a.equals(b)
        c = simulate_data(small_design, seed=4)
        assert not a["y"].equals(c["y"])

    def test_missing_rows_are_nan(self):
        p = powerlmm.study_parameters(n1=5, n2=50, icc_pre_subject=0.5, dropout=powerlmm.dropout_weibull(0.5, 1))
        d = simulate_data(p, seed=11)
        assert (d["y"].isna() == (d["miss"] == 1)).all()
        assert d.loc[d["time"] == 0, "miss"].sum() == 0
        last = d[d["time"] == d["time"].max()]
        assert 0.3 < last["miss"].mean() < 0.7

    def test_dropout_is_monotone(self):
        p = powerlmm.study_parameters(n1=6, n2=30, dropout=powerlmm.dropout_weibull(0.6, 0.7))
        d = simulate_data(p, seed=5)
        miss = d.pivot(index="subject", columns="time", values="miss").to_numpy()
        assert np.all(np.diff(miss, axis=1) >= 0)

    def test_treatment_effect_in_means(self):
        p = powerlmm.study_parameters(n1=3, n2=4000, sigma_error=1, effect_size=2.0, T_end=2)
        d = simulate_data(p, seed=7)
        last = d[d["time"] == 2].groupby("treatment")["y"].mean()
        assert last[1] - last[0] == pytest.approx(2.0, abs=0.15)

    def test_subject_variance(self):
        p = powerlmm.study_parameters(n1=2, n2=5000, sigma_subject_intercept=3, sigma_error=1)
        d = simulate_data(p, seed=8)
        baseline = d[d["time"] == 0]["y"]
        assert baseline.var() == pytest.approx(10.0, rel=0.08)


class TestExpectedLayout:
    def test_complete_data_has_all_rows(self, three_level_design):
        d = expected_layout(three_level_design)
        assert len(d) == 40 * 4
        assert (d["y"] == 0).all()

    def test_deterministic_dropout_quantiles(self):
        p = powerlmm.study_parameters(n1=3, n2=10, dropout=powerlmm.dropout_manual(0, 0.2, 0.5))
        d = expected_layout(p)
        per_time = d.groupby(["treatment", "time"]).size()
        assert list(per_time.loc[0]) == [10, 8, 5]
        assert list(per_time.loc[1]) == [10, 8, 5]

    def test_is_reproducible(self, partially_nested_design):
        assert expected_layout(partially_nested_design).equals(expected_layout(partially_nested_design))


class TestPosttest:
    def test_keeps_last_observed(self, small_design):
        d = simulate_data(small_design, seed=2)
        post = transform_to_posttest(d)
        assert (post["time"] == small_design.T_end).all()
        assert post["y"].notna().all()
        assert len(post) == d[(d["time"] == small_design.T_end)]["y"].notna().sum()

    def test_does_not_modify_input(self, small_design):
        d = simulate_data(small_design, seed=2)
        before = d.copy()
        transform_to_posttest(d)
        assert d.equals(before)

    def test_true_values(self):
        p = powerlmm.study_parameters(n1=5, n2=2, fixed_intercept=1, fixed_slope=0.5, effect_size=3)
        truth = transform_to_posttest.true_values(p)
        assert truth == {"Intercept": pytest.approx(3.0), "treatment": pytest.approx(3.0)}
