"""
Deterministic fitters for simulation tests.

They fit the fixed part by least squares so runner tests do not depend
on statsmodels convergence. Defined at module level so loky workers can
unpickle them.
"""

import numpy as np
import pandas as pd

from powerlmm.exceptions import FitFailed
from powerlmm.stats.mixed_models import ModelFit, ModelFitter, _ols_reml_llf


class LeastSquaresFitter(ModelFitter):
    """OLS on the fixed part; random covariances are a fixed share of the residual variance."""

    name = "lstsq"

    def __init__(self, random_share: float = 0.5):
        self.random_share = random_share

    def __repr__(self):
        return "LeastSquaresFitter()"

    def fit(self, data, formula):
        X = formula.model_matrix(data)
        y = data[formula.response].to_numpy(dtype=float)
        beta, _, rank, _ = np.linalg.lstsq(X, y, rcond=None)
        n, p = X.shape
        if rank < p or n <= p:
            raise FitFailed("Rank-deficient design")
        resid = y - X @ beta
        s2 = float(resid @ resid) / (n - p)
        cov = s2 * np.linalg.inv(X.T @ X)
        names = formula.fixed_names
        return ModelFit(
            params=pd.Series(beta, index=names),
            cov_params=pd.DataFrame(cov, index=names, columns=names),
            llf=_ols_reml_llf(resid, X),
            random_cov={t.grouping: np.eye(t.q) * s2 * self.random_share for t in formula.random},
            sigma=float(np.sqrt(s2)),
            n_cov_params=formula.n_cov_params,
            n_obs=n,
        )


class FailingFitter(LeastSquaresFitter):
    """Raises *error* (``FitFailed`` by default) for every formula whose text is in *fail_on*."""

    def __init__(self, fail_on, error=FitFailed):
        super().__init__()
        self.fail_on = set(fail_on)
        self.error = error

    def fit(self, data, formula):
        if str(formula) in self.fail_on:
            raise self.error("boom")
        return super().fit(data, formula)


class RecordingFitter(LeastSquaresFitter):
    """Keeps a copy of every dataset it is asked to fit (sequential runs only)."""

    def __init__(self):
        super().__init__()
        self.calls = []

    def fit(self, data, formula):
        self.calls.append((str(formula), data.copy()))
        return super().fit(data, formula)
