"""
Analytical power for the treatment-by-time interaction.

The sampling variance of the interaction is the GLS variance on the
design's expected layout (deterministic dropout quantiles), or a closed
form for balanced designs without dropout. Power is reported both for a
Wald z-test and for a t-test with Satterthwaite (or between-cluster)
degrees of freedom using the noncentral t distribution.
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy import stats

from ..core.study import CONTROL, TREATMENT, DesignGrid, StudyDefinition, create_lmer_formula, get_n3, get_tot_n
from ..exceptions import DFNotFinite
from ..utils.validators import _validate_alpha
from .data_generation import expected_layout
from .satterthwaite import contrast_vector, degrees_of_freedom, varb_func
from .variance_structure import structure_from_design

__all__ = ["PowerResult", "get_power", "closed_form_se", "power_from_se", "monte_carlo_se", "get_monte_carlo_se"]

TEST = "time:treatment"
_DF_METHODS = ("satterthwaite", "between")


@dataclass(frozen=True)
class PowerResult:
    """Analytical power of one design.

    Attributes:
        power: Power of the t-test (the headline number).
        power_z: Power of the Wald z-test.
        power_t: Same as *power*.
        df: Denominator degrees of freedom used for the t-test.
        se: Standard error of the treatment-by-time coefficient.
        slope_difference: True treatment-by-time coefficient.
        alpha: Significance level.
        df_method: ``"satterthwaite"`` or ``"between"``.
    """

    power: float
    power_z: float
    power_t: float
    df: float
    se: float
    slope_difference: float
    alpha: float
    df_method: str
    design: StudyDefinition

    def as_dict(self):
        return {
            "power": self.power,
            "power_z": self.power_z,
            "power_t": self.power_t,
            "df": self.df,
            "se": self.se,
            "slope_difference": self.slope_difference,
        }

    def __str__(self):
        return (
            f"Power (t, df = {self.df:.2f}): {self.power:.3f}\n"
            f"Power (z): {self.power_z:.3f}\n"
            f"SE(time:treatment) = {self.se:.4g}, effect = {self.slope_difference:.4g}"
        )


def power_from_se(delta: float, se: float, df: Optional[float], alpha: float = 0.05):
    """Two-sided power ``(power_z, power_t)`` for effect *delta* with standard error *se*."""
    ncp = abs(delta) / se
    z_crit = stats.norm.ppf(1 - alpha / 2)
    power_z = stats.norm.sf(z_crit - ncp) + stats.norm.cdf(-z_crit - ncp)
    if df is None or not np.isfinite(df):
        return float(power_z), float("nan")
    t_crit = stats.t.ppf(1 - alpha / 2, df)
    power_t = stats.nct.sf(t_crit, df, ncp) + stats.nct.cdf(-t_crit, df, ncp)
    return float(power_z), float(power_t)


def closed_form_se(design: StudyDefinition) -> Optional[float]:
    """SE of the treatment-by-time coefficient for balanced designs without dropout.

    Per clustered arm the slope variance is ``(v1^2 + s / n2) / n3`` with
    ``s = u1^2 + sigma^2 / Stt``; the unclustered control arm of a
    partially nested design contributes ``s / n_subjects``. Returns
    ``None`` when cluster sizes differ or dropout is present.
    """
    if design.has_dropout:
        return None
    time = design.time
    stt = np.sum((time - time.mean()) ** 2)
    s = design.sigma_subject_slope**2 + design.sigma_error**2 / stt
    v1 = design.sigma_cluster_slope**2

    var = 0.0
    for arm in (CONTROL, TREATMENT):
        sizes = design.cluster_sizes(arm)
        if design.is_clustered(arm):
            if len(set(sizes)) != 1:
                return None
            var += (v1 + s / sizes[0]) / len(sizes)
        else:
            var += s / sum(sizes)
    return float(np.sqrt(var))


def _between_df(design: StudyDefinition) -> float:
    n3 = get_n3(design)
    if not design.has_cluster_level:
        return float(get_tot_n(design)["total"] - 2)
    if design.partially_nested:
        return float(n3["treatment"] - 1)
    return float(n3["total"] - 2)


def _power_single(design: StudyDefinition, df: str, alpha: float) -> PowerResult:
    formula = create_lmer_formula(design)
    data = expected_layout(design)
    structure = structure_from_design(design, data, formula)

    se = closed_form_se(design)
    if se is None:
        L = contrast_vector(formula, TEST)
        se = float(np.sqrt(varb_func(structure)(L)))

    if df == "between":
        ddf = _between_df(design)
    else:
        try:
            ddf = degrees_of_freedom(structure, TEST, design=design)
        except DFNotFinite as e:
            warnings.warn(f"Satterthwaite df could not be computed ({e}); reporting z-test power only")
            ddf = float("nan")

    power_z, power_t = power_from_se(design.slope_difference, se, ddf, alpha)
    return PowerResult(
        power=power_t,
        power_z=power_z,
        power_t=power_t,
        df=ddf,
        se=se,
        slope_difference=design.slope_difference,
        alpha=alpha,
        df_method=df,
        design=design,
    )


def get_power(
    design: Union[StudyDefinition, DesignGrid],
    df: str = "satterthwaite",
    alpha: float = 0.05,
) -> Union[PowerResult, pd.DataFrame]:
    """Analytical power of the treatment-by-time test.

    Args:
        design: A study definition or a design grid.
        df: ``"satterthwaite"`` or ``"between"`` (cluster-level df).
        alpha: Two-sided significance level.

    Returns:
        ``PowerResult`` for a single design, a data frame (one row per grid
        point, grid parameters first) for a grid.
    """
    _validate_alpha(alpha).raise_if_invalid()
    if df not in _DF_METHODS:
        raise ValueError(f"df must be one of {_DF_METHODS}, got '{df}'")

    if isinstance(design, StudyDefinition):
        return _power_single(design, df, alpha)

    if not isinstance(design, DesignGrid):
        raise TypeError("design must be a StudyDefinition or a DesignGrid")
    grid = design.to_frame()
    rows = [_power_single(d, df, alpha).as_dict() for d in design]
    return pd.concat([grid, pd.DataFrame(rows, index=grid.index)], axis=1)


# =============================================================================
# Monte Carlo precision
# =============================================================================


def monte_carlo_se(p, nsim, level: float = 0.95):
    """Half-width of the normal-approximation interval for an MC power estimate.

    ``z * sqrt(p (1 - p) / nsim)`` with ``z = 1.96`` at the default level.
    """
    p = np.asarray(p, dtype=float)
    nsim = np.asarray(nsim, dtype=float)
    if np.any((p < 0) | (p > 1)):
        raise ValueError("power must be in [0, 1]")
    if np.any(nsim < 1):
        raise ValueError("nsim must be >= 1")
    z = stats.norm.ppf(1 - (1 - level) / 2)
    half = z * np.sqrt(p * (1 - p) / nsim)
    return float(half) if half.ndim == 0 else half


def get_monte_carlo_se(power, nsim, level: float = 0.95) -> pd.DataFrame:
    """Expected Monte Carlo precision for each combination of *power* and *nsim*.

    Args:
        power: A ``PowerResult``, a ``get_power`` data frame, or power
            value(s) in [0, 1].
        nsim: Number(s) of replications.
        level: Confidence level of the interval.

    Returns:
        Data frame with ``power, nsim, se, half_width, lwr, upr``.
    """
    if isinstance(power, PowerResult):
        powers = [power.power]
    elif isinstance(power, pd.DataFrame):
        powers = list(power["power"])
    else:
        powers = list(np.atleast_1d(power))
    rows = []
    for p in powers:
        for n in np.atleast_1d(nsim):
            half = monte_carlo_se(p, n, level)
            rows.append(
                {
                    "power": p,
                    "nsim": int(n),
                    "se": float(np.sqrt(p * (1 - p) / n)),
                    "half_width": half,
                    "lwr": max(0.0, p - half),
                    "upr": min(1.0, p + half),
                }
            )
    return pd.DataFrame(rows)
