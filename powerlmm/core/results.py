"""
Results of Monte Carlo simulations and their aggregation.

Per-replication fits are stored in long pandas frames (one row per
design x replication x model, and per parameter for estimates).
``ResultsProcessor`` reduces them to power, bias and precision summaries,
optionally after forward model selection by likelihood-ratio tests.
"""

import os
import pickle
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats

from ..utils.validators import _validate_alpha, _validate_lrt_alpha

__all__ = ["FitResult", "SimulationResult", "SimulationSummary", "ResultsProcessor", "summary", "load_simulation"]

FIXED_COLUMNS = ["design", "sim", "model", "parameter", "estimate", "se", "pval", "df", "pval_satt", "theta"]
FIT_COLUMNS = ["design", "sim", "model", "converged", "failed", "error", "df_error", "llf", "n_cov_params", "n_warnings"]
RANDOM_COLUMNS = ["design", "sim", "model", "parameter", "estimate"]


@dataclass(frozen=True)
class FitResult:
    """Outcome of fitting one model to one replication's dataset.

    Attributes:
        sim: Replication index.
        model: Model name within the comparison.
        converged: Optimizer convergence flag (``False`` when failed).
        failed: The fit raised; no estimates are available.
        error: Failure message for failed fits or degenerate layouts.
        df_error: Why Satterthwaite df is missing, if it is.
        llf: Restricted log-likelihood.
        n_cov_params: Number of covariance parameters of the fitted model.
        fixed: Fixed-effect rows ``(parameter, estimate, se, pval, df, pval_satt, theta)``.
        random: Random-effect estimates by name.
        warnings: Warnings raised by the fitter.
    """

    sim: int
    model: str
    converged: bool
    failed: bool = False
    error: Optional[str] = None
    df_error: Optional[str] = None
    llf: float = float("nan")
    n_cov_params: int = 0
    fixed: Tuple[Tuple[Any, ...], ...] = ()
    random: Tuple[Tuple[str, float], ...] = ()
    warnings: Tuple[str, ...] = ()

    @classmethod
    def failure(cls, sim: int, model: str, error: str) -> "FitResult":
        return cls(sim=sim, model=model, converged=False, failed=True, error=error)


@dataclass
class SimulationResult:
    """All replications of a simulation run.

    Attributes:
        designs: Simulated designs, indexed by the ``design`` column.
        grid: Varying design parameters per design (empty for a single design).
        models: Model names in comparison order.
        formulas: Model name to formula text, per design.
        tests: Model name to tested coefficient.
        fits: One row per design x replication x model.
        fixed: Fixed-effect estimates, one row per parameter.
        random: Random-effect estimates, one row per parameter.
        nsim: Replications per design.
        alpha: Significance level used for power.
        satterthwaite: Whether Satterthwaite p-values were computed.
        seed: Base seed.
        fitter: Description of the fitting backend.
    """

    designs: List[Any]
    grid: pd.DataFrame
    models: List[str]
    formulas: List[Dict[str, str]]
    tests: Dict[str, Optional[str]]
    fits: pd.DataFrame
    fixed: pd.DataFrame
    random: pd.DataFrame
    nsim: int
    alpha: float = 0.05
    satterthwaite: bool = False
    seed: Optional[int] = None
    fitter: str = ""
    elapsed: float = 0.0

    @classmethod
    def from_fit_results(cls, results: Dict[int, List[FitResult]], **kwargs) -> "SimulationResult":
        """Build the long frames from per-design lists of ``FitResult``."""
        fit_rows, fixed_rows, random_rows = [], [], []
        for design_idx, fit_results in results.items():
            for r in fit_results:
                fit_rows.append(
                    (design_idx, r.sim, r.model, r.converged, r.failed, r.error, r.df_error, r.llf, r.n_cov_params, len(r.warnings))
                )
                for row in r.fixed:
                    fixed_rows.append((design_idx, r.sim, r.model) + tuple(row))
                for name, value in r.random:
                    random_rows.append((design_idx, r.sim, r.model, name, value))
        return cls(
            fits=pd.DataFrame(fit_rows, columns=FIT_COLUMNS),
            fixed=pd.DataFrame(fixed_rows, columns=FIXED_COLUMNS),
            random=pd.DataFrame(random_rows, columns=RANDOM_COLUMNS),
            **kwargs,
        )

    @property
    def n_designs(self) -> int:
        return len(self.designs)

    def summary(self, **kwargs) -> "SimulationSummary":
        return summary(self, **kwargs)

    def save(self, path: str) -> str:
        """Pickle the result; a directory *path* gets ``powerlmm_simulation.pkl``."""
        if os.path.isdir(path) or not os.path.splitext(path)[1]:
            os.makedirs(path, exist_ok=True)
            path = os.path.join(path, "powerlmm_simulation.pkl")
        with open(path, "wb") as f:
            pickle.dump(self, f, protocol=pickle.HIGHEST_PROTOCOL)
        return path

    def __str__(self):
        return str(self.summary())

    def __repr__(self):
        return f"SimulationResult({self.n_designs} design(s), {self.nsim} replications, models={self.models})"


def load_simulation(path: str) -> SimulationResult:
    """Load a result written by ``SimulationResult.save``."""
    if os.path.isdir(path):
        path = os.path.join(path, "powerlmm_simulation.pkl")
    with open(path, "rb") as f:
        result = pickle.load(f)
    if not isinstance(result, SimulationResult):
        raise TypeError(f"{path} does not contain a SimulationResult")
    return result


@dataclass
class SimulationSummary:
    """Aggregated simulation output.

    Attributes:
        fixed: Per design, model and parameter: ``theta, M_est, bias, M_se,
            SD_est, power, power_satt, prop_converged, n``.
        random: Per design, model and parameter: ``M_est, SD_est``.
        selection: Share of replications each model won (forward selection only).
        grid: Varying design parameters per design.
    """

    fixed: pd.DataFrame
    random: pd.DataFrame
    selection: Optional[pd.DataFrame] = None
    grid: pd.DataFrame = field(default_factory=pd.DataFrame)
    nsim: int = 0
    alpha: float = 0.05

    def __str__(self):
        parts = [f"Model summary ({self.nsim} replications, alpha = {self.alpha})", ""]
        if not self.grid.empty:
            parts += ["Designs:", self.grid.to_string(), ""]
        parts += ["Fixed effects:", self.fixed.to_string(index=False, float_format=lambda x: f"{x:.4g}"), ""]
        if not self.random.empty:
            parts += ["Random effects:", self.random.to_string(index=False, float_format=lambda x: f"{x:.4g}"), ""]
        if self.selection is not None:
            parts += ["Forward selection:", self.selection.to_string(index=False, float_format=lambda x: f"{x:.3f}")]
        return "\n".join(parts)


class ResultsProcessor:
    """Reduces per-replication records to summary statistics.

    Args:
        alpha: Significance level for empirical power.
    """

    def __init__(self, alpha: float = 0.05):
        self.alpha = alpha

    def aggregate_fixed(self, fixed: pd.DataFrame, fits: pd.DataFrame) -> pd.DataFrame:
        """Mean estimate, bias, mean SE, empirical SD and power per design/model/parameter."""
        conv = fits.groupby(["design", "model"], sort=False)["converged"].mean().rename("prop_converged")
        if fixed.empty:
            return pd.DataFrame(
                columns=["design", "model", "parameter", "theta", "M_est", "bias", "M_se", "SD_est", "power", "power_satt", "prop_converged", "n"]
            )

        def _power(p: pd.Series) -> float:
            p = p.dropna()
            return float(np.mean(p < self.alpha)) if len(p) else float("nan")

        grouped = fixed.groupby(["design", "model", "parameter"], sort=False)
        out = grouped.agg(
            theta=("theta", "first"),
            M_est=("estimate", "mean"),
            M_se=("se", "mean"),
            SD_est=("estimate", "std"),
            power=("pval", _power),
            power_satt=("pval_satt", _power),
            n=("estimate", "count"),
        ).reset_index()
        out["bias"] = out["M_est"] - out["theta"]
        out = out.join(conv, on=["design", "model"])
        return out[["design", "model", "parameter", "theta", "M_est", "bias", "M_se", "SD_est", "power", "power_satt", "prop_converged", "n"]]

    def aggregate_random(self, random: pd.DataFrame) -> pd.DataFrame:
        if random.empty:
            return pd.DataFrame(columns=["design", "model", "parameter", "M_est", "SD_est"])
        out = (
            random.groupby(["design", "model", "parameter"], sort=False)["estimate"]
            .agg(M_est="mean", SD_est="std")
            .reset_index()
        )
        return out

    def forward_selection(self, fits: pd.DataFrame, models: List[str], LRT_alpha: float) -> pd.DataFrame:
        """Winning model per design and replication.

        Starting from the first convergent model in *models* order, each
        next convergent model replaces the current one when the
        likelihood-ratio test of the two REML log-likelihoods gives
        ``p < LRT_alpha`` (always when ``LRT_alpha >= 1``); otherwise
        selection stops.

        Returns:
            Frame with columns ``design, sim, model`` (replications without
            any convergent model are omitted).

        Raises:
            ValueError: If a later model does not have more covariance
                parameters than the current one.
        """
        order = {m: i for i, m in enumerate(models)}
        ok = fits[(~fits["failed"]) & (fits["converged"]) & fits["model"].isin(order)]
        ok = ok.assign(_order=ok["model"].map(order)).sort_values(["design", "sim", "_order"])

        winners = []
        for (design, sim), rows in ok.groupby(["design", "sim"], sort=True):
            candidates = list(rows.itertuples(index=False))
            current = candidates[0]
            for cand in candidates[1:]:
                df = int(cand.n_cov_params - current.n_cov_params)
                if df <= 0:
                    raise ValueError(
                        f"Model '{cand.model}' does not have more covariance parameters than '{current.model}'; "
                        "order the models from simplest to most complex"
                    )
                lr = max(2.0 * (cand.llf - current.llf), 0.0)
                p = stats.chi2.sf(lr, df)
                if LRT_alpha >= 1 or p < LRT_alpha:
                    current = cand
                else:
                    break
            winners.append((design, sim, current.model))
        return pd.DataFrame(winners, columns=["design", "sim", "model"])


def _select_parameters(fixed: pd.DataFrame, para: Union[None, str, Dict[str, str]], models: List[str]) -> pd.DataFrame:
    if para is None:
        return fixed
    if isinstance(para, str):
        out = fixed[fixed["parameter"] == para]
        if out.empty:
            raise ValueError(f"Parameter '{para}' not found. Available: {sorted(fixed['parameter'].unique())}")
        return out
    if isinstance(para, dict):
        unknown = [m for m in para if m not in models]
        if unknown:
            raise ValueError(f"Unknown model(s) in para: {unknown}. Available: {models}")
        parts = []
        for model, name in para.items():
            part = fixed[(fixed["model"] == model) & (fixed["parameter"] == name)]
            if part.empty:
                raise ValueError(f"Parameter '{name}' not found for model '{model}'")
            parts.append(part)
        return pd.concat(parts, ignore_index=True)
    raise TypeError("para must be None, a parameter name or a dict of model -> parameter")


def summary(
    result: SimulationResult,
    para: Union[None, str, Dict[str, str]] = None,
    model: Union[None, str, List[str]] = None,
    model_selection: Optional[str] = None,
    LRT_alpha: float = 0.1,
    alpha: Optional[float] = None,
) -> SimulationSummary:
    """Summarize a simulation.

    Args:
        result: Output of ``simulate``.
        para: Restrict to one coefficient name, or map model name to the
            coefficient to report for it.
        model: Restrict to one or more models.
        model_selection: ``None`` or ``"FW"`` (forward selection by LRT).
        LRT_alpha: Significance level of the forward-selection LRTs.
        alpha: Significance level for power (default: the simulation's).

    Returns:
        ``SimulationSummary``.
    """
    alpha = result.alpha if alpha is None else alpha
    _validate_alpha(alpha).raise_if_invalid()
    _validate_lrt_alpha(LRT_alpha).raise_if_invalid()
    if model_selection not in (None, "FW"):
        raise ValueError(f"model_selection must be None or 'FW', got '{model_selection}'")

    models = list(result.models)
    if model is not None:
        wanted = [model] if isinstance(model, str) else list(model)
        unknown = [m for m in wanted if m not in models]
        if unknown:
            raise ValueError(f"Unknown model(s): {unknown}. Available: {models}")
        models = [m for m in models if m in wanted]

    processor = ResultsProcessor(alpha=alpha)
    fits = result.fits[result.fits["model"].isin(models)]
    fixed = result.fixed[result.fixed["model"].isin(models)]
    random = result.random[result.random["model"].isin(models)]
    fixed = _select_parameters(fixed, para, models)

    selection = None
    if model_selection == "FW":
        winners = processor.forward_selection(fits, models, LRT_alpha)
        key = ["design", "sim", "model"]
        fixed = fixed.merge(winners, on=key)
        random = random.merge(winners, on=key)
        if isinstance(para, dict) and not fixed.empty:
            fixed = fixed.assign(parameter=next(iter(para.values())))

        selection = (
            winners.groupby(["design", "model"], sort=False).size().rename("n").reset_index()
        )
        per_design = fits.groupby("design")["sim"].nunique()
        selection["prop_selected"] = selection["n"] / selection["design"].map(per_design)

        # Every replication counts as converged if any model converged
        any_ok = fits.assign(ok=(~fits["failed"]) & fits["converged"]).groupby(["design", "sim"])["ok"].any()
        fits = any_ok.rename("converged").reset_index().assign(model="FW")
        fixed = fixed.assign(model="FW")
        random = random.assign(model="FW")

    return SimulationSummary(
        fixed=processor.aggregate_fixed(fixed, fits),
        random=processor.aggregate_random(random),
        selection=selection,
        grid=result.grid,
        nsim=result.nsim,
        alpha=alpha,
    )
