"""Core components for powerlmm.

Re-exports the building blocks:

- ``StudyDefinition``, ``study_parameters``, ``DesignGrid`` and the
  sample-size helpers: design definition.
- ``dropout_weibull``, ``dropout_manual``: dropout specifications.
- ``SimulationRunner``, ``simulate``, ``sim_formula``,
  ``sim_formula_compare``: Monte Carlo execution.
- ``SimulationResult``, ``ResultsProcessor``, ``summary``: aggregation.
"""

from .dropout import Dropout, ManualDropout, WeibullDropout, dropout_manual, dropout_weibull
from .results import FitResult, ResultsProcessor, SimulationResult, SimulationSummary, load_simulation, summary
from .simulation import SimFormula, SimFormulaCompare, SimulationRunner, sim_formula, sim_formula_compare, simulate
from .study import (
    DesignGrid,
    PerTreatment,
    StudyDefinition,
    UnequalClusters,
    create_lmer_formula,
    get_ICC_pre_clusters,
    get_ICC_pre_subjects,
    get_ICC_slope,
    get_n3,
    get_tot_n,
    get_var_ratio,
    per_treatment,
    study_parameters,
    unequal_clusters,
)

__all__ = [
    # Study
    "StudyDefinition",
    "DesignGrid",
    "UnequalClusters",
    "PerTreatment",
    "study_parameters",
    "unequal_clusters",
    "per_treatment",
    "create_lmer_formula",
    "get_n3",
    "get_tot_n",
    "get_ICC_pre_subjects",
    "get_ICC_pre_clusters",
    "get_ICC_slope",
    "get_var_ratio",
    # Dropout
    "Dropout",
    "WeibullDropout",
    "ManualDropout",
    "dropout_weibull",
    "dropout_manual",
    # Simulation
    "SimFormula",
    "SimFormulaCompare",
    "SimulationRunner",
    "sim_formula",
    "sim_formula_compare",
    "simulate",
    # Results
    "FitResult",
    "SimulationResult",
    "SimulationSummary",
    "ResultsProcessor",
    "summary",
    "load_simulation",
]
