"""
Tests for the simulation runner with deterministic least-squares fitters.
"""

import os
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

import powerlmm
from powerlmm.core.simulation import SimFormula, SimulationRunner, _as_compare
from powerlmm.exceptions import FormulaError
from powerlmm.progress import SimulationCancelled
from tests.config import N_SIMS_CHECK, N_SIMS_SMALL, SEED
from tests.helpers.fitters import FailingFitter, LeastSquaresFitter, RecordingFitter

pytestmark = pytest.mark.filterwarnings("ignore:Low simulation count", "ignore:cores")

FULL = "y ~ time * treatment"
FULL_TEXT = "y ~ time + treatment + time:treatment"


class TestSimFormula:
    def test_default_test_coefficient(self):
        spec = powerlmm.sim_formula(FULL)
        assert spec.test_for(spec.formula) == "time:treatment"
        assert powerlmm.sim_formula("y ~ treatment").test_for(powerlmm.sim_formula("y ~ treatment").formula) == "treatment"

    def test_missing_test_coefficient(self):
        with pytest.raises(FormulaError, match="age"):
            powerlmm.sim_formula(FULL, test="age")

    def test_transform_must_be_callable(self):
        with pytest.raises(TypeError):
            powerlmm.sim_formula("y ~ treatment", data_transform="posttest")

    def test_compare_keeps_order(self):
        cmp = powerlmm.sim_formula_compare(m2=FULL, m0="y ~ treatment", m1=powerlmm.sim_formula("y ~ time"))
        assert cmp.names == ["m2", "m0", "m1"]
        assert isinstance(cmp["m0"], SimFormula)

    def test_compare_from_dict(self):
        cmp = powerlmm.sim_formula_compare({"a": FULL, "b": "y ~ treatment"})
        assert len(cmp) == 2

    def test_compare_mixed_arguments(self):
        with pytest.raises(TypeError):
            powerlmm.sim_formula_compare({"a": FULL}, b=FULL)

    def test_as_compare(self):
        assert _as_compare(None).names == ["default"]
        assert _as_compare(FULL)["default"].formula == powerlmm.sim_formula(FULL).formula
        with pytest.raises(TypeError):
            _as_compare(42)

    def test_design_model_is_resolved_per_design(self, small_design):
        spec = SimFormula()
        assert spec.resolve(small_design) == powerlmm.create_lmer_formula(small_design)
        assert spec.true_values_for(small_design)["time:treatment"] == pytest.approx(small_design.slope_difference)


class TestSimulate:
    def test_basic_run(self, small_design):
        res = powerlmm.simulate(small_design, nsim=N_SIMS_CHECK, fitter=LeastSquaresFitter())
        assert res.models == ["default"]
        assert res.tests == {"default": "time:treatment"}
        assert len(res.fits) == N_SIMS_CHECK
        assert not res.fits["failed"].any()
        assert set(res.fixed["parameter"]) == {"Intercept", "time", "treatment", "time:treatment"}
        assert res.seed == SEED

        table = powerlmm.summary(res, para="time:treatment").fixed
        assert table.iloc[0]["theta"] == pytest.approx(small_design.slope_difference)
        assert 0 <= table.iloc[0]["power"] <= 1

    def test_reproducible(self, small_design):
        a = powerlmm.simulate(small_design, nsim=N_SIMS_SMALL, fitter=LeastSquaresFitter(), seed=11)
        b = powerlmm.simulate(small_design, nsim=N_SIMS_SMALL, fitter=LeastSquaresFitter(), seed=11)
        c = powerlmm.simulate(small_design, nsim=N_SIMS_SMALL, fitter=LeastSquaresFitter(), seed=12)
        pd.testing.assert_frame_equal(a.fixed, b.fixed)
        assert not np.allclose(a.fixed["estimate"], c.fixed["estimate"])

    def test_replication_seeded_by_index(self, small_design):
        formulas = _as_compare(FULL)
        runner = SimulationRunner(nsim=5, seed=SEED, fitter=LeastSquaresFitter())
        full = runner.run_design(small_design, 0, formulas)
        single = runner.replicate(small_design, 0, 3, formulas)
        assert [row[:3] for row in single[0].fixed] == [row[:3] for row in full[3].fixed]

    def test_parallel_matches_sequential(self, small_design):
        seq = powerlmm.simulate(small_design, nsim=N_SIMS_SMALL, fitter=LeastSquaresFitter(), cores=1)
        par = powerlmm.simulate(small_design, nsim=N_SIMS_SMALL, fitter=LeastSquaresFitter(), cores=2)
        pd.testing.assert_frame_equal(seq.fixed, par.fixed)
        pd.testing.assert_frame_equal(seq.fits, par.fits)

    def test_models_see_the_same_dataset(self, small_design):
        fitter = RecordingFitter()
        formulas = powerlmm.sim_formula_compare(a=FULL, b=FULL)
        powerlmm.simulate(small_design, formula=formulas, nsim=3, fitter=fitter)
        assert len(fitter.calls) == 6
        for i in range(0, 6, 2):
            pd.testing.assert_frame_equal(fitter.calls[i][1], fitter.calls[i + 1][1])
        assert not fitter.calls[0][1].equals(fitter.calls[2][1])

    def test_transform_applies_to_its_model_only(self, small_design):
        fitter = RecordingFitter()
        formulas = powerlmm.sim_formula_compare(
            post=powerlmm.sim_formula("y ~ treatment", data_transform=powerlmm.transform_to_posttest),
            full=FULL,
        )
        res = powerlmm.simulate(small_design, formula=formulas, nsim=2, fitter=fitter)
        post_data = [d for f, d in fitter.calls if f == "y ~ treatment"]
        full_data = [d for f, d in fitter.calls if f == FULL_TEXT]
        assert all(d["time"].nunique() == 1 for d in post_data)
        assert all(d["time"].nunique() == small_design.n1 for d in full_data)
        assert res.tests == {"post": "treatment", "full": "time:treatment"}

        truth = res.fixed[(res.fixed["model"] == "post") & (res.fixed["parameter"] == "treatment")]["theta"]
        assert np.allclose(truth, small_design.effect)

    def test_failures_are_recorded(self, small_design):
        formulas = powerlmm.sim_formula_compare(m0="y ~ treatment", m1=FULL)
        with pytest.warns(UserWarning, match="failed in"):
            res = powerlmm.simulate(small_design, formula=formulas, nsim=4, fitter=FailingFitter([FULL_TEXT]))
        m1 = res.fits[res.fits["model"] == "m1"]
        assert m1["failed"].all()
        assert m1["error"].str.contains("boom").all()
        assert not res.fits[res.fits["model"] == "m0"]["failed"].any()
        assert set(res.fixed["model"]) == {"m0"}

    def test_unexpected_fitter_errors_are_recorded(self, small_design):
        fitter = FailingFitter([FULL_TEXT], error=ValueError)
        with pytest.warns(UserWarning, match="failed in"):
            res = powerlmm.simulate(small_design, formula=FULL, nsim=3, fitter=fitter)
        assert len(res.fits) == 3
        assert res.fits["failed"].all()
        assert res.fits["error"].str.startswith("ValueError: boom").all()
        assert res.fixed.empty

    def test_unexpected_fitter_errors_in_parallel(self, small_design):
        formulas = powerlmm.sim_formula_compare(m0="y ~ treatment", m1=FULL)
        fitter = FailingFitter([FULL_TEXT], error=ValueError)
        with pytest.warns(UserWarning, match="failed in"):
            seq = powerlmm.simulate(small_design, formula=formulas, nsim=4, fitter=fitter)
        with pytest.warns(UserWarning, match="failed in"):
            par = powerlmm.simulate(small_design, formula=formulas, nsim=4, fitter=fitter, cores=2)
        pd.testing.assert_frame_equal(seq.fits, par.fits)
        assert par.fits[par.fits["model"] == "m1"]["failed"].all()

    def test_satterthwaite_columns(self, small_design):
        res = powerlmm.simulate(small_design, nsim=3, fitter=LeastSquaresFitter(), satterthwaite=True)
        test_rows = res.fixed[res.fixed["parameter"] == "time:treatment"].reset_index(drop=True)
        has_df = test_rows["df"].notna().to_numpy()
        has_error = res.fits["df_error"].notna().to_numpy()
        assert np.all(has_df | has_error)
        assert np.all(test_rows.loc[has_df, "df"] >= 1)
        assert test_rows.loc[has_df, "pval_satt"].between(0, 1).all()
        other = res.fixed[res.fixed["parameter"] != "time:treatment"]
        assert other["df"].isna().all()
        assert other["pval_satt"].isna().all()

    def test_design_grid(self):
        grid = powerlmm.study_parameters(n1=3, n2=[2, 4], icc_pre_subject=0.5, cohend=0.5)
        res = powerlmm.simulate(grid, nsim=3, fitter=LeastSquaresFitter())
        assert res.n_designs == 2
        assert sorted(res.fits["design"].unique()) == [0, 1]
        assert list(res.grid["n2"]) == [2, 4]
        assert "Designs" in str(powerlmm.summary(res))

    def test_progress_callback(self, small_design):
        cb = MagicMock()
        powerlmm.simulate(small_design, nsim=4, fitter=LeastSquaresFitter(), progress=cb)
        assert cb.call_args_list[0].args == (0, 4)
        assert cb.call_args_list[-1].args == (4, 4)

    def test_cancel(self, small_design):
        with pytest.raises(SimulationCancelled):
            powerlmm.simulate(small_design, nsim=4, fitter=LeastSquaresFitter(), cancel_check=lambda: True)

    def test_unknown_column(self, small_design):
        with pytest.raises(FormulaError, match="age"):
            powerlmm.simulate(small_design, formula="y ~ age", nsim=2, fitter=LeastSquaresFitter())

    def test_invalid_nsim(self, small_design):
        with pytest.raises(ValueError):
            powerlmm.simulate(small_design, nsim=0, fitter=LeastSquaresFitter())

    def test_save(self, small_design, tmp_path):
        path = tmp_path / "sim.pkl"
        res = powerlmm.simulate(small_design, nsim=2, fitter=LeastSquaresFitter(), save=str(path))
        assert os.path.exists(path)
        pd.testing.assert_frame_equal(powerlmm.load_simulation(str(path)).fixed, res.fixed)
