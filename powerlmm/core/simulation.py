"""
Monte Carlo simulation of longitudinal multilevel designs.

Each replication draws one dataset (with dropout) from the design, then
fits every model of the comparison to that same dataset. A model's data
transform is applied to a copy, so the other models always see the
untransformed draw. Fit failures, degenerate layouts and undefined
Satterthwaite df are recorded per replication and never abort the run.
"""

import time as _time
import warnings
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats

from ..exceptions import DegenerateLayout, DFNotFinite, FormulaError, InvalidDesign
from ..progress import PrintReporter, ProgressReporter, SimulationCancelled
from ..stats.data_generation import simulate_data
from ..stats.mixed_models import ModelFit, ModelFitter, StatsmodelsFitter
from ..stats.satterthwaite import degrees_of_freedom
from ..stats.variance_structure import build_variance_structure
from ..utils.formula import LmerFormula, parse_formula
from ..utils.validators import _validate_alpha, _validate_cores, _validate_simulations
from .results import FitResult, SimulationResult
from .study import DesignGrid, StudyDefinition, as_designs, create_lmer_formula

__all__ = ["SimFormula", "SimFormulaCompare", "sim_formula", "sim_formula_compare", "SimulationRunner", "simulate"]

DATA_COLUMNS = ("subject", "cluster", "treatment", "time", "y", "miss")
DEFAULT_TESTS = ("time:treatment", "treatment:time", "treatment")


# =============================================================================
# Model specifications
# =============================================================================


@dataclass(frozen=True)
class SimFormula:
    """One model to fit in each replication.

    Attributes:
        formula: Parsed formula, or ``None`` for the design's own model
            (``create_lmer_formula``).
        test: Coefficient whose p-value defines power.
        data_transform: Callable applied to a copy of the dataset before fitting.
        true_values: Data-generating coefficient values used for bias.
    """

    formula: Optional[LmerFormula] = None
    test: Optional[str] = None
    data_transform: Optional[Callable[[pd.DataFrame], pd.DataFrame]] = None
    true_values: Optional[Dict[str, float]] = None

    def resolve(self, design: StudyDefinition) -> LmerFormula:
        return create_lmer_formula(design) if self.formula is None else self.formula

    def test_for(self, formula: LmerFormula) -> Optional[str]:
        if self.test is not None:
            return self.test
        return next((t for t in DEFAULT_TESTS if formula.has_fixed(t)), None)

    def true_values_for(self, design: StudyDefinition) -> Dict[str, float]:
        if self.true_values is not None:
            return dict(self.true_values)
        if self.data_transform is not None and hasattr(self.data_transform, "true_values"):
            return self.data_transform.true_values(design)
        return design.true_fixed_effects()

    def __str__(self):
        return "<design model>" if self.formula is None else str(self.formula)


class SimFormulaCompare:
    """Ordered mapping of model name to ``SimFormula``.

    Order matters: forward selection walks the models from first (simplest)
    to last (most complex).
    """

    def __init__(self, formulas: Dict[str, SimFormula]):
        if not formulas:
            raise ValueError("sim_formula_compare needs at least one model")
        self._formulas = dict(formulas)

    def __iter__(self) -> Iterator[str]:
        return iter(self._formulas)

    def __len__(self) -> int:
        return len(self._formulas)

    def __getitem__(self, name: str) -> SimFormula:
        return self._formulas[name]

    def items(self):
        return self._formulas.items()

    @property
    def names(self) -> List[str]:
        return list(self._formulas)

    def __repr__(self):
        inner = ", ".join(f"{k}={v}" for k, v in self._formulas.items())
        return f"SimFormulaCompare({inner})"


def sim_formula(
    formula: Optional[Union[str, LmerFormula]] = None,
    test: Optional[str] = None,
    data_transform: Optional[Callable] = None,
    true_values: Optional[Dict[str, float]] = None,
) -> SimFormula:
    """Model specification for ``simulate``.

    Raises:
        FormulaError: If *formula* is malformed or *test* is not one of
            its fixed effects.
    """
    parsed = None if formula is None else parse_formula(formula)
    if parsed is not None and test is not None and not parsed.has_fixed(test):
        raise FormulaError(f"Test coefficient '{test}' not in formula '{parsed}'. Available: {', '.join(parsed.fixed_names)}")
    if data_transform is not None and not callable(data_transform):
        raise TypeError("data_transform must be callable")
    return SimFormula(parsed, test, data_transform, true_values)


def sim_formula_compare(*args, **formulas) -> SimFormulaCompare:
    """Named models to compare on the same datasets, simplest first.

    Accepts keyword arguments (``m0="...", m1=sim_formula(...)``) or one
    mapping; strings are parsed with ``sim_formula``.
    """
    if args:
        if len(args) != 1 or not isinstance(args[0], dict) or formulas:
            raise TypeError("Pass either keyword arguments or a single dict")
        formulas = args[0]
    out = {}
    for name, value in formulas.items():
        out[str(name)] = value if isinstance(value, SimFormula) else sim_formula(value)
    return SimFormulaCompare(out)


def _as_compare(formula) -> SimFormulaCompare:
    if formula is None:
        return SimFormulaCompare({"default": SimFormula()})
    if isinstance(formula, SimFormulaCompare):
        return formula
    if isinstance(formula, SimFormula):
        return SimFormulaCompare({"default": formula})
    if isinstance(formula, (str, LmerFormula)):
        return SimFormulaCompare({"default": sim_formula(formula)})
    if isinstance(formula, dict):
        return sim_formula_compare(formula)
    raise TypeError(f"Unsupported formula specification: {type(formula).__name__}")


# =============================================================================
# Runner
# =============================================================================


def _wald_pvalue(estimate: float, se: float, df: Optional[float] = None) -> float:
    if not np.isfinite(se) or se <= 0:
        return float("nan")
    z = abs(estimate / se)
    if df is not None:
        return float(2 * stats.t.sf(z, df))
    return float(2 * stats.norm.sf(z))


class SimulationRunner:
    """Executes the replications of one or more designs.

    Every setting of a run lives on the instance; nothing is read from
    module state. Replication ``sim`` of design ``d`` draws from
    ``np.random.default_rng([seed, d, sim])``, so results do not depend
    on execution order or on the number of workers.
    """

    def __init__(
        self,
        nsim: int,
        seed: int = 2137,
        alpha: float = 0.05,
        satterthwaite: bool = False,
        cores: int = 1,
        fitter: Optional[ModelFitter] = None,
        max_failed_fits: float = 0.1,
    ):
        """Initialise the runner.

        Args:
            nsim: Replications per design.
            seed: Base seed.
            alpha: Significance level stored on the result.
            satterthwaite: Compute Satterthwaite df and p-values for each
                model's test coefficient.
            cores: Worker processes (1 = sequential).
            fitter: Model-fitting backend (default ``StatsmodelsFitter``).
            max_failed_fits: Warn when a model fails in more than this
                share of replications.
        """
        self.nsim = nsim
        self.seed = seed
        self.alpha = alpha
        self.satterthwaite = satterthwaite
        self.cores = cores
        self.fitter = fitter if fitter is not None else StatsmodelsFitter()
        self.max_failed_fits = max_failed_fits

    # -------------------------------------------------------------------------
    # Single replication
    # -------------------------------------------------------------------------

    def _fixed_rows(self, fit: ModelFit, sim: SimFormula, design, formula, data, test) -> Tuple[tuple, Optional[str]]:
        truth = sim.true_values_for(design)
        df, df_error = None, None
        if self.satterthwaite and test is not None:
            df, df_error = self._satterthwaite(fit, formula, data, test, design if sim.data_transform is None else None)

        rows = []
        bse = fit.bse
        for name, estimate in fit.params.items():
            se = float(bse[name])
            pval = _wald_pvalue(estimate, se, fit.df_resid)
            is_test = name == test
            pval_satt = _wald_pvalue(estimate, se, df) if is_test and df is not None else float("nan")
            rows.append(
                (
                    name,
                    float(estimate),
                    se,
                    pval,
                    df if is_test and df is not None else float("nan"),
                    pval_satt,
                    float(truth.get(name, np.nan)),
                )
            )
        return tuple(rows), df_error

    def _satterthwaite(self, fit: ModelFit, formula: LmerFormula, data, test, design) -> Tuple[Optional[float], Optional[str]]:
        if not formula.random:
            return fit.df_resid, None
        try:
            structure = build_variance_structure(formula, data, fit.random_cov, fit.sigma)
            return degrees_of_freedom(structure, test, design=design), None
        except (DFNotFinite, DegenerateLayout, InvalidDesign, np.linalg.LinAlgError) as e:
            return None, f"{type(e).__name__}: {e}"

    def replicate(self, design: StudyDefinition, design_index: int, sim: int, formulas: SimFormulaCompare) -> List[FitResult]:
        """Run one replication: generate, then fit every model to the same draw."""
        rng = np.random.default_rng([self.seed, design_index, sim])
        data = simulate_data(design, rng=rng)

        results = []
        for name, spec in formulas.items():
            formula = spec.resolve(design)
            test = spec.test_for(formula)
            model_data = spec.data_transform(data.copy()) if spec.data_transform is not None else data.copy()
            model_data = model_data[model_data[formula.response].notna()].reset_index(drop=True)

            try:
                if model_data.empty:
                    raise DegenerateLayout("No observed rows left after the data transform")
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore")
                    fit = self.fitter.fit(model_data, formula)
                fixed, df_error = self._fixed_rows(fit, spec, design, formula, model_data, test)
                random = tuple(fit.random_estimates(formula).items())
            except SimulationCancelled:
                raise
            except Exception as e:
                # Any fitter error fails this model in this replication only
                results.append(FitResult.failure(sim, name, f"{type(e).__name__}: {e}"))
                continue

            results.append(
                FitResult(
                    sim=sim,
                    model=name,
                    converged=fit.converged,
                    df_error=df_error,
                    llf=fit.llf,
                    n_cov_params=fit.n_cov_params,
                    fixed=fixed,
                    random=random,
                    warnings=fit.warnings,
                )
            )
        return results

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def _run_chunk(self, design, design_index, formulas, sims) -> List[FitResult]:
        out = []
        for sim in sims:
            out.extend(self.replicate(design, design_index, sim, formulas))
        return out

    def run_design(
        self,
        design: StudyDefinition,
        design_index: int,
        formulas: SimFormulaCompare,
        progress: Optional[ProgressReporter] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> List[FitResult]:
        """All replications of one design, in replication order."""
        if self.cores > 1:
            results = self._run_parallel(design, design_index, formulas, progress, cancel_check)
        else:
            results = self._run_sequential(design, design_index, formulas, range(self.nsim), progress, cancel_check)

        self._warn_failures(results, design_index, formulas)
        return results

    def _run_sequential(self, design, design_index, formulas, sims, progress, cancel_check) -> List[FitResult]:
        results = []
        for sim in sims:
            if cancel_check is not None and cancel_check():
                raise SimulationCancelled("Simulation cancelled by user")
            results.extend(self.replicate(design, design_index, sim, formulas))
            if progress is not None:
                progress.advance(1)
        return results

    def _run_parallel(self, design, design_index, formulas, progress, cancel_check) -> List[FitResult]:
        n_chunks = min(self.nsim, self.cores * 4)
        chunks = [list(c) for c in np.array_split(np.arange(self.nsim), n_chunks) if len(c)]

        try:
            from joblib import Parallel, delayed

            chunk_results = Parallel(n_jobs=self.cores, backend="loky", verbose=0, return_as="generator")(
                delayed(self._run_chunk)(design, design_index, formulas, [int(s) for s in chunk]) for chunk in chunks
            )
            results = []
            for chunk, chunk_result in zip(chunks, chunk_results):
                if cancel_check is not None and cancel_check():
                    raise SimulationCancelled("Simulation cancelled by user")
                results.extend(chunk_result)
                if progress is not None:
                    progress.advance(len(chunk))
        except Exception as e:
            if isinstance(e, SimulationCancelled):
                raise
            print(f"Warning: Parallel execution failed ({e}). Falling back to sequential.")
            results = self._run_sequential(design, design_index, formulas, range(self.nsim), None, cancel_check)

        return sorted(results, key=lambda r: (r.sim, formulas.names.index(r.model)))

    def _warn_failures(self, results: List[FitResult], design_index: int, formulas: SimFormulaCompare):
        for name in formulas:
            model_results = [r for r in results if r.model == name]
            n_failed = sum(r.failed for r in model_results)
            if model_results and n_failed / len(model_results) > self.max_failed_fits:
                warnings.warn(
                    f"Model '{name}' failed in {n_failed}/{len(model_results)} replications "
                    f"of design {design_index} ({n_failed / len(model_results):.1%})"
                )


# =============================================================================
# Entry point
# =============================================================================


def _check_formulas(designs: List[StudyDefinition], formulas: SimFormulaCompare, fitter: ModelFitter):
    """Raise batch-wide misconfiguration before any replication runs."""
    for name, spec in formulas.items():
        for design in designs if spec.formula is None else designs[:1]:
            formula = spec.resolve(design)
            if spec.data_transform is None:
                formula.check_data(DATA_COLUMNS)
            test = spec.test_for(formula)
            if spec.test is not None and not formula.has_fixed(test):
                raise FormulaError(f"Test coefficient '{test}' not in model '{name}' ({formula})")
            fitter.check(formula)


def _save_path(save) -> Optional[str]:
    if save is False or save is None:
        return None
    if save is True:
        return "powerlmm_simulation.pkl"
    return str(save)


def simulate(
    design: Union[StudyDefinition, DesignGrid, List[StudyDefinition]],
    formula=None,
    nsim: int = 1000,
    cores: int = 1,
    satterthwaite: bool = False,
    save=False,
    batch_progress: bool = False,
    seed: Optional[int] = 2137,
    fitter: Optional[ModelFitter] = None,
    progress=None,
    alpha: float = 0.05,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> SimulationResult:
    """Monte Carlo evaluation of one design or a design grid.

    Args:
        design: Study definition, design grid or list of definitions.
        formula: Formula string, ``sim_formula``, ``sim_formula_compare``
            or ``None`` for each design's own model.
        nsim: Replications per design.
        cores: Worker processes; ``1`` runs sequentially.
        satterthwaite: Add Satterthwaite df and p-values for test coefficients.
        save: ``True`` or a path to pickle the result when done.
        batch_progress: Print a line after each design.
        seed: Base seed; ``None`` draws one (stored on the result).
        fitter: Model-fitting backend (default ``StatsmodelsFitter``).
        progress: ``True`` for console progress, or a ``(current, total)`` callback.
        alpha: Significance level for power.
        cancel_check: Callable returning ``True`` to abort the run.

    Returns:
        ``SimulationResult``.

    Raises:
        FormulaError: Malformed formula or missing test coefficient.
        SimulationCancelled: If *cancel_check* requested an abort.
    """
    nsim, result = _validate_simulations(nsim)
    result.raise_if_invalid()
    for message in result.warnings:
        warnings.warn(message)
    cores, cores_result = _validate_cores(cores)
    cores_result.raise_if_invalid()
    for message in cores_result.warnings:
        warnings.warn(message)
    _validate_alpha(alpha).raise_if_invalid()

    designs = as_designs(design)
    grid = design.to_frame() if isinstance(design, DesignGrid) else pd.DataFrame()
    formulas = _as_compare(formula)
    fitter = fitter if fitter is not None else StatsmodelsFitter()
    _check_formulas(designs, formulas, fitter)

    if seed is None:
        seed = int(np.random.SeedSequence().entropy % (2**32))

    runner = SimulationRunner(nsim=nsim, seed=seed, alpha=alpha, satterthwaite=satterthwaite, cores=cores, fitter=fitter)

    reporter = None
    if progress is not None and progress is not False:
        callback = PrintReporter() if progress is True else progress
        reporter = ProgressReporter.for_run(nsim, len(designs), callback)
        reporter.start()

    start = _time.time()
    all_results: Dict[int, List[FitResult]] = {}
    for i, d in enumerate(designs):
        t0 = _time.time()
        all_results[i] = runner.run_design(d, i, formulas, progress=reporter, cancel_check=cancel_check)
        if batch_progress:
            print(f"Design {i + 1}/{len(designs)} done ({_time.time() - t0:.1f}s)")
    if reporter is not None:
        reporter.finish()

    sim_result = SimulationResult.from_fit_results(
        all_results,
        designs=designs,
        grid=grid,
        models=formulas.names,
        formulas=[{name: str(spec.resolve(d)) for name, spec in formulas.items()} for d in designs],
        tests={name: spec.test_for(spec.resolve(designs[0])) for name, spec in formulas.items()},
        nsim=nsim,
        alpha=alpha,
        satterthwaite=satterthwaite,
        seed=seed,
        fitter=repr(fitter),
        elapsed=_time.time() - start,
    )

    path = _save_path(save)
    if path is not None:
        saved = sim_result.save(path)
        print(f"Simulation saved to {saved}")
    return sim_result
