"""Model fitting for simulated datasets.

The simulation engine treats model fitting as an external collaborator:
anything implementing ``ModelFitter`` can be plugged in. The default
``StatsmodelsFitter`` wraps statsmodels ``MixedLM`` (REML):

- the outermost random term becomes ``groups`` + ``re_formula``
  (unstructured covariance),
- nested terms become independent ``vc_formula`` variance components,
- formulas without random terms are fitted by OLS.

Fits use a progressive retry strategy: a cold start, then retries with
more iterations that continue from the previous attempt, then a
derivative-free optimizer. Fixed-effect standard errors are the GLS
covariance at the estimated variance components, as lme4 reports them.
Convergence warnings are recorded on the result rather than printed.
"""

import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..exceptions import DegenerateLayout, FitFailed, InvalidDesign
from ..utils.formula import INTERCEPT, LmerFormula, RandomTerm
from .variance_structure import build_variance_structure

__all__ = ["ModelFit", "ModelFitter", "StatsmodelsFitter"]


@dataclass
class ModelFit:
    """Outputs of one model fit consumed by the simulation engine.

    Attributes:
        params: Fixed-effect estimates indexed by coefficient name.
        cov_params: Sampling covariance of the fixed effects.
        llf: Restricted log-likelihood.
        random_cov: Random-effect covariance matrix per grouping factor,
            rows/columns in the term's effect order.
        sigma: Residual SD.
        n_cov_params: Number of estimated covariance parameters (residual included).
        converged: Whether the optimizer reported convergence.
        warnings: Warning messages raised during fitting.
        n_obs: Number of rows used.
    """

    params: pd.Series
    cov_params: pd.DataFrame
    llf: float
    random_cov: Dict[str, np.ndarray]
    sigma: float
    n_cov_params: int
    converged: bool = True
    warnings: Tuple[str, ...] = ()
    n_obs: int = 0
    df_resid: Optional[float] = None

    @property
    def bse(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.cov_params.values)), index=self.params.index)

    def random_estimates(self, formula: LmerFormula) -> Dict[str, float]:
        """Variance, correlation and residual estimates keyed by readable names."""
        out: Dict[str, float] = {}
        for term in formula.random:
            cov = self.random_cov.get(term.grouping)
            if cov is None:
                continue
            names = term.names()
            for i, name in enumerate(names):
                out[name] = float(cov[i, i])
            for i in range(term.q):
                for j in range(i):
                    denom = np.sqrt(cov[i, i] * cov[j, j])
                    suffix = term.grouping if term.q == 2 else f"{term.grouping}_{j}{i}"
                    out[f"cor_{suffix}"] = float(cov[i, j] / denom) if denom > 0 else float("nan")
        out["error"] = float(self.sigma**2)
        return out


class ModelFitter:
    """Interface of the model-fitting collaborator."""

    name = "base"

    def check(self, formula: LmerFormula) -> None:
        """Raise ``FormulaError`` if *formula* cannot be fitted; called once before a run."""

    def fit(self, data: pd.DataFrame, formula: LmerFormula) -> ModelFit:
        """Fit *formula* to *data* (observed rows only)."""
        raise NotImplementedError


def _re_formula(term: RandomTerm) -> str:
    if term.has_intercept:
        return " + ".join(term.terms)
    return " + ".join(("0",) + term.terms)


def _vc_formulas(term: RandomTerm) -> Dict[str, str]:
    out = {}
    for t in term.terms:
        if t == INTERCEPT:
            out[term.grouping] = f"0 + C({term.grouping})"
        else:
            out[f"{term.grouping}_{t.replace(':', '_')}"] = f"0 + C({term.grouping}):{t}"
    return out


def _warm_start(model, result):
    """Start values for a retry: the estimates where *result* stopped."""
    from statsmodels.regression.mixed_linear_model import MixedLMParams

    return MixedLMParams.from_packed(np.asarray(result.params), model.k_fe, model.k_re, use_sqrt=False, has_fe=True)


def _ols_reml_llf(resid: np.ndarray, X: np.ndarray) -> float:
    """REML log-likelihood of a linear model on statsmodels' MixedLM scale."""
    n, p = X.shape
    rss = float(resid @ resid)
    _, logdet = np.linalg.slogdet(X.T @ X)
    return -0.5 * ((n - p) * np.log(2 * np.pi * rss / (n - p)) + logdet + (n - p))


class StatsmodelsFitter(ModelFitter):
    """statsmodels ``MixedLM`` adapter.

    Args:
        reml: Use REML estimation (required for Satterthwaite df and LRTs
            of covariance structures).
        method: Optimizer passed to ``MixedLM.fit``.
        max_iters: Iteration limits of the successive attempts.
        fallback_method: Optimizer of one last attempt after *max_iters* are
            used up, or ``None``.
        cov_type: ``"gls"`` for ``(X' V^-1 X)^-1`` at the estimated variance
            components, ``"joint"`` for the fixed-effect block of the
            inverse joint Hessian.
    """

    name = "statsmodels"

    def __init__(
        self,
        reml: bool = True,
        method: str = "lbfgs",
        max_iters: Tuple[int, ...] = (100, 200, 500),
        fallback_method: Optional[str] = "powell",
        cov_type: str = "gls",
    ):
        if cov_type not in ("gls", "joint"):
            raise ValueError(f"cov_type must be 'gls' or 'joint', got '{cov_type}'")
        self.reml = reml
        self.method = method
        self.max_iters = tuple(max_iters)
        self.fallback_method = fallback_method
        self.cov_type = cov_type

    def __repr__(self):
        return f"StatsmodelsFitter(reml={self.reml}, method='{self.method}')"

    def _attempts(self) -> List[Tuple[str, int]]:
        attempts = [(self.method, max_iter) for max_iter in self.max_iters]
        if self.fallback_method is not None and attempts:
            attempts.append((self.fallback_method, self.max_iters[-1]))
        return attempts

    @staticmethod
    def _outer_term(formula: LmerFormula, data: pd.DataFrame) -> RandomTerm:
        sizes = {g: data[g].nunique() for g in formula.groupings}
        return min(formula.random, key=lambda t: (sizes[t.grouping], formula.groupings.index(t.grouping)))

    def check(self, formula: LmerFormula) -> None:
        nested = formula.random[:-1] if len(formula.random) > 1 else ()
        if any(term.q > 1 for term in nested):
            warnings.warn(
                f"statsmodels fits nested random effects of '{formula}' as independent variance "
                "components; their correlations are not estimated.",
                UserWarning,
            )

    def fit(self, data: pd.DataFrame, formula: LmerFormula) -> ModelFit:
        data = data[data[formula.response].notna()].reset_index(drop=True)
        if not formula.random:
            return self._fit_ols(data, formula)

        from statsmodels.regression.mixed_linear_model import MixedLM

        outer = self._outer_term(formula, data)
        inner = [term for term in formula.random if term is not outer]
        vc_formula: Dict[str, str] = {}
        vc_terms: Dict[str, Tuple[RandomTerm, int]] = {}
        for term in inner:
            for k, (name, text) in enumerate(_vc_formulas(term).items()):
                vc_formula[name] = text
                vc_terms[name] = (term, k)

        try:
            model = MixedLM.from_formula(
                formula.fixed_formula(),
                data,
                groups=outer.grouping,
                re_formula=_re_formula(outer),
                vc_formula=vc_formula or None,
            )
        except Exception as e:
            raise FitFailed(f"Could not set up MixedLM: {type(e).__name__}: {e}") from e

        result = None
        start = None
        caught: List[str] = []
        failure_reason = None
        for method, max_iter in self._attempts():
            try:
                with warnings.catch_warnings(record=True) as w:
                    warnings.simplefilter("always")
                    attempt = model.fit(reml=self.reml, method=method, maxiter=max_iter, start_params=start)
            except Exception as e:
                failure_reason = f"{type(e).__name__}: {e}"
                start = None
                continue
            result = attempt
            caught = [str(x.message) for x in w]
            if getattr(result, "converged", True):
                break
            failure_reason = "Model did not converge"
            start = _warm_start(model, result)

        if result is None:
            raise FitFailed(failure_reason or "Unknown convergence failure")

        k_fe = model.k_fe
        params = pd.Series(np.asarray(result.fe_params), index=model.exog_names[:k_fe])

        random_cov = {outer.grouping: np.asarray(result.cov_re, dtype=float).reshape(outer.q, outer.q)}
        vcomp = dict(zip(model.exog_vc.names, np.atleast_1d(result.vcomp))) if vc_formula else {}
        for term in inner:
            cov_t = np.zeros((term.q, term.q))
            for name, (t, k) in vc_terms.items():
                if t is term:
                    cov_t[k, k] = vcomp.get(name, 0.0)
            random_cov[term.grouping] = cov_t
        sigma = float(np.sqrt(result.scale))

        cov = None
        if self.cov_type == "gls":
            try:
                cov = build_variance_structure(formula, data, random_cov, sigma).fixed_covariance()
            except (InvalidDesign, DegenerateLayout, np.linalg.LinAlgError) as e:
                caught.append(f"GLS covariance unavailable ({type(e).__name__}: {e}); using the joint Hessian")
        if cov is None:
            cov = np.asarray(result.cov_params())[:k_fe, :k_fe]
        cov_params = pd.DataFrame(cov, index=params.index, columns=params.index)

        converged = bool(getattr(result, "converged", True))
        if not converged and failure_reason:
            caught.append(failure_reason)

        return ModelFit(
            params=params,
            cov_params=cov_params,
            llf=float(result.llf),
            random_cov=random_cov,
            sigma=sigma,
            n_cov_params=int(model.k_re2 + model.k_vc + 1),
            converged=converged,
            warnings=tuple(caught),
            n_obs=len(data),
        )

    def _fit_ols(self, data: pd.DataFrame, formula: LmerFormula) -> ModelFit:
        import statsmodels.formula.api as smf

        try:
            result = smf.ols(formula.fixed_formula(), data).fit()
        except Exception as e:
            raise FitFailed(f"OLS fit failed: {type(e).__name__}: {e}") from e

        X = np.asarray(result.model.exog)
        return ModelFit(
            params=result.params,
            cov_params=result.cov_params(),
            llf=_ols_reml_llf(np.asarray(result.resid), X),
            random_cov={},
            sigma=float(np.sqrt(result.scale)),
            n_cov_params=1,
            converged=True,
            n_obs=len(data),
            df_resid=float(result.df_resid),
        )
