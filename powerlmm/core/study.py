"""
Study definitions for longitudinal multilevel designs.

A ``StudyDefinition`` is an immutable description of a two- or
three-level (optionally partially nested) randomized design: number of
time points, subjects per cluster, clusters per arm, variance components,
dropout and the treatment effect. ``study_parameters`` builds one from
either raw standard deviations or an ICC-based parameterization, and
returns a lazy ``DesignGrid`` when any argument is vector-valued.
"""

import dataclasses
from dataclasses import dataclass
from itertools import product
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..exceptions import InvalidDesign
from ..utils.formula import INTERCEPT, LmerFormula, RandomTerm
from ..utils.validators import (
    _raise_design,
    _validate_correlation,
    _validate_count,
    _validate_covariance_block,
    _validate_numeric_parameter,
    _validate_proportion,
    _validate_sd,
)
from .dropout import Dropout, dropout_weibull

__all__ = [
    "UnequalClusters",
    "PerTreatment",
    "StudyDefinition",
    "DesignGrid",
    "study_parameters",
    "unequal_clusters",
    "per_treatment",
    "create_lmer_formula",
    "get_n3",
    "get_tot_n",
]

CONTROL, TREATMENT = 0, 1


@dataclass(frozen=True)
class UnequalClusters:
    """Explicit cluster sizes for one arm, e.g. ``unequal_clusters(2, 5, 10, 50)``."""

    sizes: Tuple[int, ...]

    def __post_init__(self):
        if not self.sizes:
            raise InvalidDesign("unequal_clusters needs at least one cluster size")
        for size in self.sizes:
            _raise_design(_validate_count(size, "cluster size", min_val=1))

    def __len__(self) -> int:
        return len(self.sizes)


@dataclass(frozen=True)
class PerTreatment:
    """Arm-specific value for ``n2``, ``n3`` or ``dropout``."""

    control: Any
    treatment: Any

    def get(self, arm: int) -> Any:
        return self.treatment if arm == TREATMENT else self.control


def unequal_clusters(*sizes: int) -> UnequalClusters:
    """Cluster sizes for designs with unequal clusters."""
    if len(sizes) == 1 and np.ndim(sizes[0]) == 1:
        sizes = tuple(sizes[0])
    return UnequalClusters(tuple(int(s) for s in sizes))


def per_treatment(control: Any, treatment: Any) -> PerTreatment:
    """Use different values in the control and treatment arms."""
    return PerTreatment(control, treatment)


def _arm_value(value: Any, arm: int) -> Any:
    return value.get(arm) if isinstance(value, PerTreatment) else value


def _arms(*values: Any) -> Tuple[int, ...]:
    """Arms to validate separately: both only when some value differs per arm."""
    return (CONTROL, TREATMENT) if any(isinstance(v, PerTreatment) for v in values) else (CONTROL,)


@dataclass(frozen=True)
class StudyDefinition:
    """Immutable description of a longitudinal multilevel design.

    Standard deviations are stored on the raw scale; the ICC-based inputs
    of ``study_parameters`` are converted on construction.

    Attributes:
        n1: Number of measurement occasions per subject.
        n2: Subjects per cluster: an int, ``UnequalClusters`` or ``PerTreatment``.
        n3: Clusters per arm: an int or ``PerTreatment``.
        T_end: Time of the last measurement (times are ``linspace(0, T_end, n1)``).
        fixed_intercept: Control-arm mean at time 0.
        fixed_slope: Control-arm change per unit time.
        sigma_subject_intercept: SD of subject random intercepts (u0).
        sigma_subject_slope: SD of subject random slopes (u1).
        cor_subject: Correlation of u0 and u1.
        sigma_cluster_intercept: SD of cluster random intercepts (v0).
        sigma_cluster_slope: SD of cluster random slopes (v1).
        cor_cluster: Correlation of v0 and v1.
        sigma_error: Residual (level-1) SD.
        cohend: Standardized treatment difference at ``T_end`` (pretest SD).
        effect_size: Raw treatment difference at ``T_end``; overrides *cohend*.
        dropout: ``None``, a ``Dropout`` or ``PerTreatment`` of dropouts.
        deterministic_dropout: Use evenly spaced dropout quantiles in
            analytical power calculations.
        partially_nested: Only treatment-arm subjects are clustered.
    """

    n1: int
    n2: Union[int, UnequalClusters, PerTreatment]
    n3: Union[int, PerTreatment] = 1
    T_end: float = None
    fixed_intercept: float = 0.0
    fixed_slope: float = 0.0
    sigma_subject_intercept: float = 0.0
    sigma_subject_slope: float = 0.0
    cor_subject: float = 0.0
    sigma_cluster_intercept: float = 0.0
    sigma_cluster_slope: float = 0.0
    cor_cluster: float = 0.0
    sigma_error: float = 10.0
    cohend: Optional[float] = 0.0
    effect_size: Optional[float] = None
    dropout: Optional[Union[Dropout, PerTreatment]] = None
    deterministic_dropout: bool = True
    partially_nested: bool = False

    def __post_init__(self):
        if self.T_end is None:
            object.__setattr__(self, "T_end", float(self.n1 - 1) if isinstance(self.n1, (int, np.integer)) else None)
        self._validate()

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate(self):
        result = _validate_count(self.n1, "n1", min_val=2)
        result = result.merge(_validate_numeric_parameter(self.T_end, "T_end", min_val=0))
        if result.is_valid and self.T_end <= 0:
            result.is_valid = False
            result.errors.append("T_end must be > 0")

        for arm in _arms(self.n2, self.n3):
            n2 = _arm_value(self.n2, arm)
            n3 = _arm_value(self.n3, arm)
            if isinstance(n2, UnequalClusters):
                if n3 is not None and not isinstance(self.n3, PerTreatment) and n3 != len(n2) and n3 != 1:
                    result.is_valid = False
                    result.errors.append(f"n3 ({n3}) does not match the number of unequal clusters ({len(n2)})")
            else:
                result = result.merge(_validate_count(n2, "n2", min_val=1))
                result = result.merge(_validate_count(n3, "n3", min_val=1))

        for name in (
            "sigma_subject_intercept",
            "sigma_subject_slope",
            "sigma_cluster_intercept",
            "sigma_cluster_slope",
        ):
            result = result.merge(_validate_sd(getattr(self, name), name))
        result = result.merge(_validate_sd(self.sigma_error, "sigma_error"))
        if result.is_valid and self.sigma_error == 0:
            result.is_valid = False
            result.errors.append("sigma_error must be > 0")
        result = result.merge(_validate_correlation(self.cor_subject, "cor_subject"))
        result = result.merge(_validate_correlation(self.cor_cluster, "cor_cluster"))

        if (self.cohend is None) == (self.effect_size is None):
            result.is_valid = False
            result.errors.append("Specify exactly one of cohend or effect_size")

        for arm in _arms(self.dropout):
            dropout = _arm_value(self.dropout, arm)
            if dropout is not None and not isinstance(dropout, Dropout):
                result.is_valid = False
                result.errors.append(f"dropout must be a Dropout specification, got {type(dropout).__name__}")

        _raise_design(result)

        psd = _validate_covariance_block(
            self.sigma_subject_intercept, self.cor_subject, self.sigma_subject_slope, "Subject"
        ).merge(_validate_covariance_block(self.sigma_cluster_intercept, self.cor_cluster, self.sigma_cluster_slope, "Cluster"))
        _raise_design(psd)

        # Manual dropout must match n1; evaluating it checks the length
        for arm in (CONTROL, TREATMENT):
            dropout = self.dropout_for(arm)
            if dropout is not None:
                dropout.cumulative(self.time, self.T_end)

    # =========================================================================
    # Derived quantities
    # =========================================================================

    @property
    def time(self) -> np.ndarray:
        """Measurement times ``linspace(0, T_end, n1)``."""
        return np.linspace(0.0, self.T_end, self.n1)

    @property
    def has_cluster_level(self) -> bool:
        """True when any cluster-level variance component is nonzero."""
        return self.sigma_cluster_intercept > 0 or self.sigma_cluster_slope > 0

    @property
    def pretest_sd(self) -> float:
        """Total outcome SD at baseline, the standardizer for ``cohend``."""
        return float(np.sqrt(self.sigma_subject_intercept**2 + self.sigma_cluster_intercept**2 + self.sigma_error**2))

    @property
    def effect(self) -> float:
        """Raw treatment difference at ``T_end``."""
        if self.effect_size is not None:
            return float(self.effect_size)
        return float(self.cohend) * self.pretest_sd

    @property
    def slope_difference(self) -> float:
        """Treatment-by-time interaction coefficient."""
        return self.effect / self.T_end

    def cluster_sizes(self, arm: int) -> Tuple[int, ...]:
        """Subjects per cluster in *arm* (0 = control, 1 = treatment)."""
        n2 = _arm_value(self.n2, arm)
        if isinstance(n2, UnequalClusters):
            return tuple(int(s) for s in n2.sizes)
        return (int(n2),) * int(_arm_value(self.n3, arm))

    def is_clustered(self, arm: int) -> bool:
        return not (self.partially_nested and arm == CONTROL)

    def dropout_for(self, arm: int) -> Optional[Dropout]:
        return _arm_value(self.dropout, arm)

    @property
    def has_dropout(self) -> bool:
        return any(
            d is not None and np.any(d.cumulative(self.time, self.T_end) > 0)
            for d in (self.dropout_for(CONTROL), self.dropout_for(TREATMENT))
        )

    @property
    def is_balanced(self) -> bool:
        """True when every cluster in the design has the same size."""
        sizes = set(self.cluster_sizes(CONTROL)) | set(self.cluster_sizes(TREATMENT))
        return len(sizes) == 1

    def covariance(self, level: str) -> np.ndarray:
        """2x2 intercept/slope covariance matrix for ``"subject"`` or ``"cluster"``."""
        if level == "subject":
            sd0, cor, sd1 = self.sigma_subject_intercept, self.cor_subject, self.sigma_subject_slope
        elif level == "cluster":
            sd0, cor, sd1 = self.sigma_cluster_intercept, self.cor_cluster, self.sigma_cluster_slope
        else:
            raise ValueError(f"Unknown level '{level}'")
        return np.array([[sd0**2, cor * sd0 * sd1], [cor * sd0 * sd1, sd1**2]])

    def variance_parameters(self) -> Dict[str, float]:
        """Raw SDs and correlations keyed ``u0, u01, u1, v0, v01, v1, sigma``."""
        return {
            "u0": self.sigma_subject_intercept,
            "u01": self.cor_subject,
            "u1": self.sigma_subject_slope,
            "v0": self.sigma_cluster_intercept,
            "v01": self.cor_cluster,
            "v1": self.sigma_cluster_slope,
            "sigma": self.sigma_error,
        }

    def true_fixed_effects(self) -> Dict[str, float]:
        """Data-generating values of the longitudinal model coefficients."""
        return {
            "Intercept": self.fixed_intercept,
            "time": self.fixed_slope,
            "treatment": 0.0,
            "time:treatment": self.slope_difference,
            "treatment:time": self.slope_difference,
        }

    def update(self, **changes) -> "StudyDefinition":
        """Return a validated copy with *changes* applied.

        Changes go through ``study_parameters``, so they are normalized the
        same way (dropout proportions, unequal cluster counts). ICC-scale
        arguments (``icc_pre_subject``, ``icc_pre_cluster``, ``icc_slope``,
        ``var_ratio``) are converted using the current values of the other
        ICC-scale parameters.
        """
        base = {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}
        if {"icc_pre_subject", "icc_pre_cluster", "icc_slope", "var_ratio"} & set(changes):
            for key in (
                "sigma_subject_intercept",
                "sigma_subject_slope",
                "sigma_cluster_intercept",
                "sigma_cluster_slope",
            ):
                base.pop(key)
            base.update(
                icc_pre_subject=get_ICC_pre_subjects(self),
                icc_pre_cluster=get_ICC_pre_clusters(self),
                icc_slope=get_ICC_slope(self),
                var_ratio=get_var_ratio(self),
            )
        if "effect_size" in changes and "cohend" not in changes:
            base["cohend"] = None
        elif "cohend" in changes and "effect_size" not in changes:
            base["effect_size"] = None
        # New unequal clusters define the cluster count unless n3 is given
        if isinstance(changes.get("n2"), UnequalClusters) and "n3" not in changes:
            base["n3"] = len(changes["n2"])
        base.update(changes)
        return study_parameters(**base)


# =============================================================================
# ICC conversions
# =============================================================================


def get_ICC_pre_subjects(design: StudyDefinition) -> float:
    """Proportion of baseline variance at the subject and cluster levels."""
    u0, v0, s = design.sigma_subject_intercept**2, design.sigma_cluster_intercept**2, design.sigma_error**2
    return (u0 + v0) / (u0 + v0 + s)


def get_ICC_pre_clusters(design: StudyDefinition) -> float:
    """Proportion of baseline variance at the cluster level."""
    u0, v0, s = design.sigma_subject_intercept**2, design.sigma_cluster_intercept**2, design.sigma_error**2
    return v0 / (u0 + v0 + s)


def get_ICC_slope(design: StudyDefinition) -> float:
    """Proportion of random-slope variance at the cluster level."""
    u1, v1 = design.sigma_subject_slope**2, design.sigma_cluster_slope**2
    if u1 + v1 == 0:
        return 0.0
    return v1 / (u1 + v1)


def get_var_ratio(design: StudyDefinition) -> float:
    """Ratio of total random-slope variance to residual variance."""
    return (design.sigma_subject_slope**2 + design.sigma_cluster_slope**2) / design.sigma_error**2


# =============================================================================
# Sample-size helpers
# =============================================================================


def get_n3(design: StudyDefinition) -> Dict[str, int]:
    """Number of clusters per arm; the unclustered arm of a partially nested design counts 0."""
    control = len(design.cluster_sizes(CONTROL)) if design.is_clustered(CONTROL) else 0
    treatment = len(design.cluster_sizes(TREATMENT))
    return {"control": control, "treatment": treatment, "total": control + treatment}


def get_tot_n(design: StudyDefinition) -> Dict[str, int]:
    """Number of subjects per arm."""
    control = sum(design.cluster_sizes(CONTROL))
    treatment = sum(design.cluster_sizes(TREATMENT))
    return {"control": control, "treatment": treatment, "total": control + treatment}


# =============================================================================
# Construction
# =============================================================================


def _is_vector(value: Any) -> bool:
    return isinstance(value, (list, np.ndarray)) or (isinstance(value, tuple) and not hasattr(value, "_fields"))


def study_parameters(
    n1,
    n2,
    n3=1,
    T_end=None,
    fixed_intercept=0.0,
    fixed_slope=0.0,
    sigma_subject_intercept=None,
    sigma_subject_slope=None,
    sigma_cluster_intercept=None,
    sigma_cluster_slope=None,
    sigma_error=10.0,
    cor_subject=0.0,
    cor_cluster=0.0,
    icc_pre_subject=None,
    icc_pre_cluster=None,
    icc_slope=None,
    var_ratio=None,
    cohend=None,
    effect_size=None,
    dropout=0,
    deterministic_dropout=True,
    partially_nested=False,
) -> Union[StudyDefinition, "DesignGrid"]:
    """Build a study definition from raw or ICC-scale parameters.

    Any argument given as a list, tuple or array makes the result a
    ``DesignGrid``: the cartesian product of all vector-valued arguments,
    generated lazily.

    Args:
        n1: Measurement occasions per subject.
        n2: Subjects per cluster (int, ``unequal_clusters(...)`` or
            ``per_treatment(...)``).
        n3: Clusters per arm (int or ``per_treatment(...)``). Ignored in
            favour of the cluster count when *n2* is ``unequal_clusters``.
        T_end: Time of the last measurement (default ``n1 - 1``).
        icc_pre_subject: Share of baseline variance at levels 2 and 3.
        icc_pre_cluster: Share of baseline variance at level 3.
        icc_slope: Share of slope variance at level 3.
        var_ratio: Total slope variance divided by residual variance.
        cohend: Standardized difference at ``T_end`` (default 0).
        effect_size: Raw difference at ``T_end``.
        dropout: 0, a ``Dropout``, a proportion (Weibull with rate 1) or
            ``per_treatment(...)`` of those.

    Returns:
        A ``StudyDefinition`` or a ``DesignGrid``.

    Raises:
        InvalidDesign: If the parameters are inconsistent.
    """
    args = dict(locals())
    vector_keys = [k for k, v in args.items() if _is_vector(v)]
    if vector_keys:
        return DesignGrid(args, vector_keys)

    if icc_pre_subject is not None or icc_pre_cluster is not None:
        if sigma_subject_intercept is not None or sigma_cluster_intercept is not None:
            raise InvalidDesign("Use either icc_pre_subject/icc_pre_cluster or raw intercept SDs, not both")
        if icc_pre_subject is None:
            raise InvalidDesign("icc_pre_cluster requires icc_pre_subject")
        icc_pre_cluster = 0.0 if icc_pre_cluster is None else icc_pre_cluster
        _raise_design(
            _validate_proportion(icc_pre_subject, "icc_pre_subject", upper_open=True).merge(
                _validate_proportion(icc_pre_cluster, "icc_pre_cluster")
            )
        )
        if icc_pre_cluster > icc_pre_subject:
            raise InvalidDesign(f"icc_pre_cluster ({icc_pre_cluster}) cannot exceed icc_pre_subject ({icc_pre_subject})")
        total = sigma_error**2 / (1.0 - icc_pre_subject)
        sigma_cluster_intercept = float(np.sqrt(icc_pre_cluster * total))
        sigma_subject_intercept = float(np.sqrt((icc_pre_subject - icc_pre_cluster) * total))

    if var_ratio is not None or icc_slope is not None:
        if sigma_subject_slope is not None or sigma_cluster_slope is not None:
            raise InvalidDesign("Use either var_ratio/icc_slope or raw slope SDs, not both")
        if var_ratio is None:
            raise InvalidDesign("icc_slope requires var_ratio")
        icc_slope = 0.0 if icc_slope is None else icc_slope
        _raise_design(
            _validate_numeric_parameter(var_ratio, "var_ratio", min_val=0).merge(_validate_proportion(icc_slope, "icc_slope"))
        )
        slope_var = var_ratio * sigma_error**2
        sigma_cluster_slope = float(np.sqrt(icc_slope * slope_var))
        sigma_subject_slope = float(np.sqrt((1.0 - icc_slope) * slope_var))

    if isinstance(n2, UnequalClusters):
        n3 = len(n2) if not isinstance(n3, PerTreatment) and n3 in (1, len(n2)) else n3
    if isinstance(n2, PerTreatment) and isinstance(n3, (int, np.integer)):
        n3 = PerTreatment(
            len(n2.control) if isinstance(n2.control, UnequalClusters) else n3,
            len(n2.treatment) if isinstance(n2.treatment, UnequalClusters) else n3,
        )

    if cohend is None and effect_size is None:
        cohend = 0.0

    return StudyDefinition(
        n1=n1,
        n2=n2,
        n3=n3,
        T_end=None if T_end is None else float(T_end),
        fixed_intercept=float(fixed_intercept),
        fixed_slope=float(fixed_slope),
        sigma_subject_intercept=float(sigma_subject_intercept or 0.0),
        sigma_subject_slope=float(sigma_subject_slope or 0.0),
        cor_subject=float(cor_subject),
        sigma_cluster_intercept=float(sigma_cluster_intercept or 0.0),
        sigma_cluster_slope=float(sigma_cluster_slope or 0.0),
        cor_cluster=float(cor_cluster),
        sigma_error=float(sigma_error),
        cohend=None if cohend is None else float(cohend),
        effect_size=None if effect_size is None else float(effect_size),
        dropout=_normalize_dropout(dropout),
        deterministic_dropout=bool(deterministic_dropout),
        partially_nested=bool(partially_nested),
    )


def _normalize_dropout(dropout: Any) -> Optional[Union[Dropout, PerTreatment]]:
    if isinstance(dropout, PerTreatment):
        control = _normalize_dropout(dropout.control)
        treatment = _normalize_dropout(dropout.treatment)
        if control is None and treatment is None:
            return None
        return PerTreatment(control, treatment)
    if dropout is None or isinstance(dropout, Dropout):
        return dropout
    if isinstance(dropout, (int, float, np.integer, np.floating)) and not isinstance(dropout, bool):
        return None if dropout == 0 else dropout_weibull(float(dropout), 1.0)
    raise InvalidDesign(f"Invalid dropout specification: {dropout!r}")


class DesignGrid:
    """Lazy cartesian product of study definitions.

    Created by ``study_parameters`` when one or more arguments are
    vector-valued. Iteration builds (and validates) one
    ``StudyDefinition`` at a time.
    """

    def __init__(self, params: Dict[str, Any], vector_keys: List[str]):
        self._params = params
        self.vector_keys = list(vector_keys)
        for key in self.vector_keys:
            if len(params[key]) == 0:
                raise InvalidDesign(f"'{key}' is an empty vector")

    def __len__(self) -> int:
        return int(np.prod([len(self._params[k]) for k in self.vector_keys]))

    def _combinations(self) -> Iterator[Dict[str, Any]]:
        for combo in product(*(list(self._params[k]) for k in self.vector_keys)):
            yield dict(zip(self.vector_keys, combo))

    def __iter__(self) -> Iterator[StudyDefinition]:
        for combo in self._combinations():
            kwargs = dict(self._params)
            kwargs.update(combo)
            yield study_parameters(**kwargs)

    def __getitem__(self, index: int) -> StudyDefinition:
        if index < 0:
            index += len(self)
        for i, design in enumerate(self):
            if i == index:
                return design
        raise IndexError(f"DesignGrid index {index} out of range")

    def to_frame(self) -> pd.DataFrame:
        """One row per grid point with the values of the varying parameters."""
        rows = [{k: _label(v) for k, v in combo.items()} for combo in self._combinations()]
        return pd.DataFrame(rows, index=pd.RangeIndex(len(rows), name="design"))

    def __repr__(self):
        return f"DesignGrid({len(self)} designs varying {', '.join(self.vector_keys)})"


def _label(value: Any) -> Any:
    if isinstance(value, (int, float, np.integer, np.floating, str)):
        return value
    return repr(value)


def as_designs(design: Union[StudyDefinition, DesignGrid, List[StudyDefinition]]) -> List[StudyDefinition]:
    """Normalize a design, grid or list of designs to a list."""
    if isinstance(design, StudyDefinition):
        return [design]
    if isinstance(design, DesignGrid):
        return list(design)
    designs = list(design)
    if not designs or not all(isinstance(d, StudyDefinition) for d in designs):
        raise TypeError("design must be a StudyDefinition, a DesignGrid or a list of StudyDefinitions")
    return designs


# =============================================================================
# Model formula implied by a design
# =============================================================================


def create_lmer_formula(design: StudyDefinition) -> LmerFormula:
    """Return the correctly specified model for *design*.

    Two-level when the design has no cluster variance, three-level
    otherwise. Partially nested designs get treatment-coded cluster effects
    so control-arm rows contribute nothing at the cluster level.
    Zero-variance random effects are left out of the formula.
    """
    fixed = (INTERCEPT, "time", "treatment", "time:treatment")
    random: List[RandomTerm] = []

    subject_terms = []
    if design.sigma_subject_intercept > 0:
        subject_terms.append(INTERCEPT)
    if design.sigma_subject_slope > 0:
        subject_terms.append("time")
    if subject_terms:
        random.append(RandomTerm("subject", tuple(subject_terms)))

    if design.has_cluster_level:
        cluster_terms = []
        if design.partially_nested:
            if design.sigma_cluster_intercept > 0:
                cluster_terms.append("treatment")
            if design.sigma_cluster_slope > 0:
                cluster_terms.append("treatment:time")
        else:
            if design.sigma_cluster_intercept > 0:
                cluster_terms.append(INTERCEPT)
            if design.sigma_cluster_slope > 0:
                cluster_terms.append("time")
        random.append(RandomTerm("cluster", tuple(cluster_terms)))

    return LmerFormula(response="y", fixed=fixed, random=tuple(random))
