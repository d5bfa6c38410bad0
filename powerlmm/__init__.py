"""powerlmm - power analysis for longitudinal multilevel designs.

Analytical power (with Satterthwaite degrees of freedom) and Monte Carlo
evaluation of two- and three-level, optionally partially nested, linear
mixed-effects designs for clustered randomized trials.

Example:
    >>> from powerlmm import study_parameters, get_power, simulate, summary
    >>>
    >>> p = study_parameters(n1=11, n2=10, n3=6, icc_pre_subject=0.5,
    ...                      icc_pre_cluster=0, var_ratio=0.03, icc_slope=0.05,
    ...                      partially_nested=True, dropout=0.3, cohend=-0.8)
    >>> get_power(p)
    >>>
    >>> res = simulate(p, nsim=1000, satterthwaite=True, cores=4)
    >>> summary(res)
"""

from importlib.metadata import version as _get_version

from .core import (
    DesignGrid,
    SimulationResult,
    StudyDefinition,
    create_lmer_formula,
    dropout_manual,
    dropout_weibull,
    get_ICC_pre_clusters,
    get_ICC_pre_subjects,
    get_ICC_slope,
    get_n3,
    get_tot_n,
    get_var_ratio,
    load_simulation,
    per_treatment,
    sim_formula,
    sim_formula_compare,
    simulate,
    study_parameters,
    summary,
    unequal_clusters,
)
from .exceptions import DegenerateLayout, DFNotFinite, EmptyGroup, FitFailed, FormulaError, InvalidDesign, PowerLMMError
from .progress import PrintReporter, ProgressReporter, SimulationCancelled, TqdmReporter
from .stats.data_generation import simulate_data, transform_to_posttest
from .stats.mixed_models import ModelFit, ModelFitter, StatsmodelsFitter
from .stats.power import get_monte_carlo_se, get_power, monte_carlo_se
from .stats.variance_structure import make_theta, make_theta_vec

__version__ = _get_version("powerlmm")

__all__ = [
    "study_parameters",
    "unequal_clusters",
    "per_treatment",
    "dropout_weibull",
    "dropout_manual",
    "StudyDefinition",
    "DesignGrid",
    "get_n3",
    "get_tot_n",
    "get_ICC_pre_subjects",
    "get_ICC_pre_clusters",
    "get_ICC_slope",
    "get_var_ratio",
    "create_lmer_formula",
    "simulate_data",
    "transform_to_posttest",
    "make_theta",
    "make_theta_vec",
    "get_power",
    "get_monte_carlo_se",
    "monte_carlo_se",
    "sim_formula",
    "sim_formula_compare",
    "simulate",
    "summary",
    "SimulationResult",
    "load_simulation",
    "ModelFitter",
    "ModelFit",
    "StatsmodelsFitter",
    "PowerLMMError",
    "InvalidDesign",
    "FormulaError",
    "DegenerateLayout",
    "EmptyGroup",
    "DFNotFinite",
    "FitFailed",
    "SimulationCancelled",
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
]
