"""
Satterthwaite degrees of freedom for fixed-effect contrasts in LMMs.

For a contrast ``L`` the approximate denominator df is

    df = 2 * Phi(phi)^2 / (g' A g)

where ``Phi(phi) = sigma^2 L' (X' V*^-1 X)^-1 L`` is the sampling variance
of ``L' beta_hat`` as a function of the variance parameters
``phi = (theta, sigma)``, ``g`` its gradient (Richardson-extrapolated
central differences) and ``A`` the asymptotic covariance of ``phi``: the
inverse of the expected REML information

    I_ab = 1/2 tr(P dV_a P dV_b),  P = V^-1 - V^-1 X C X' V^-1.

All traces are accumulated block by block over the outermost grouping
factor, so no ``n x n`` matrix is ever formed.

Balanced two-level and fully nested three-level designs without dropout
have an exact closed form: total subjects - 2 and total clusters - 2 for
the treatment-by-time coefficient.

References:
    Kuznetsova, A., Brockhoff, P. B., & Christensen, R. H. B. (2017).
    lmerTest Package: Tests in Linear Mixed Effects Models.
    Journal of Statistical Software, 82(13), 1-26.
"""

from typing import Callable, Optional, Union

import numpy as np

from ..exceptions import DFNotFinite
from ..utils.formula import LmerFormula
from .variance_structure import VarianceStructure

__all__ = [
    "contrast_vector",
    "varb_func",
    "expected_information",
    "satterthwaite_df",
    "closed_form_df",
    "degrees_of_freedom",
]

TREATMENT_SLOPE = ("time:treatment", "treatment:time")


def contrast_vector(formula: LmerFormula, name: Union[str, np.ndarray]) -> np.ndarray:
    """Unit contrast for coefficient *name* (arrays are passed through)."""
    if not isinstance(name, str):
        L = np.asarray(name, dtype=float)
        if L.shape[0] != len(formula.fixed):
            raise ValueError(f"Contrast has length {L.shape[0]}, model has {len(formula.fixed)} fixed effects")
        return L
    names = formula.fixed_names
    if name not in names:
        alias = {"time:treatment": "treatment:time", "treatment:time": "time:treatment"}.get(name)
        if alias in names:
            name = alias
        else:
            raise ValueError(f"Coefficient '{name}' not in model. Available: {', '.join(names)}")
    L = np.zeros(len(names))
    L[names.index(name)] = 1.0
    return L


def varb_func(structure: VarianceStructure) -> Callable:
    """Return ``varb(L, phi=None)``: the sampling covariance of ``L' beta_hat`` at *phi*."""

    def varb(L: np.ndarray, phi: Optional[np.ndarray] = None) -> np.ndarray:
        C = structure.fixed_covariance(phi)
        return L.T @ C @ L

    return varb


def _richardson_gradient(f: Callable[[np.ndarray], float], x: np.ndarray, d: float = 1e-4, r: int = 4, v: float = 2.0) -> np.ndarray:
    """Gradient of scalar *f* by central differences with Richardson extrapolation."""
    x = np.asarray(x, dtype=float)
    grad = np.zeros(len(x))
    for i in range(len(x)):
        h = d * abs(x[i]) if abs(x[i]) > 1e-8 else d
        a = np.zeros(r)
        for k in range(r):
            up, down = x.copy(), x.copy()
            up[i] += h
            down[i] -= h
            a[k] = (f(up) - f(down)) / (2.0 * h)
            h /= v
        for m in range(1, r):
            factor = v ** (2 * m)
            a = (a[1:] * factor - a[:-1]) / (factor - 1.0)
        grad[i] = a[0]
    return grad


def expected_information(structure: VarianceStructure, phi: Optional[np.ndarray] = None) -> np.ndarray:
    """Expected REML information matrix of ``phi = (theta, sigma)``."""
    phi = structure.phi if phi is None else np.asarray(phi, dtype=float)
    k = len(phi)
    p = structure.X.shape[1]

    V_blocks = structure.marginal_covariances(phi)
    dV_blocks = structure.covariance_derivatives(phi)

    T = np.zeros((k, k))
    M = np.zeros((k, k, p, p))
    K = np.zeros((k, p, p))
    XWX = np.zeros((p, p))

    for b, V, dV in zip(structure.outer_blocks(), V_blocks, dV_blocks):
        W = np.linalg.inv(V)
        WX = W @ b.X
        XWX += b.X.T @ WX
        WA = [W @ dV[a] for a in range(k)]
        for a in range(k):
            K[a] += WX.T @ dV[a] @ WX
            for c in range(a, k):
                T[a, c] += np.sum(WA[a] * WA[c].T)
            for c in range(k):
                M[a, c] += WX.T @ dV[a] @ WA[c] @ WX

    C = np.linalg.inv(XWX)
    info = np.zeros((k, k))
    for a in range(k):
        for c in range(a, k):
            value = (
                T[a, c]
                - np.trace(C @ M[a, c])
                - np.trace(C @ M[c, a])
                + np.trace(C @ K[a] @ C @ K[c])
            )
            info[a, c] = info[c, a] = 0.5 * value
    return info


def satterthwaite_df(
    structure: VarianceStructure,
    contrast: Union[str, np.ndarray],
    varb: Optional[Callable] = None,
) -> float:
    """Numerical Satterthwaite df for a single contrast.

    Args:
        structure: Variance structure at the (true or fitted) parameters.
        contrast: Coefficient name or contrast vector.
        varb: Sampling-variance function from ``varb_func``; built from
            *structure* when omitted.

    Raises:
        DFNotFinite: If the variance estimate is not positive or the
            information matrix is singular.
    """
    L = contrast_vector(structure.formula, contrast)
    varb = varb_func(structure) if varb is None else varb
    phi = structure.phi

    try:
        Phi = float(varb(L, phi))
    except np.linalg.LinAlgError as e:
        raise DFNotFinite(f"Fixed-effects information is singular: {e}", reason="singular_xvx") from e
    if not np.isfinite(Phi) or Phi <= 0:
        raise DFNotFinite(f"Sampling variance of the contrast is not positive ({Phi})", reason="nonpositive_variance")

    try:
        grad = _richardson_gradient(lambda x: float(varb(L, x)), phi)
        info = expected_information(structure, phi)
        A = np.linalg.inv(info)
    except np.linalg.LinAlgError as e:
        raise DFNotFinite(f"Information matrix of the variance parameters is singular: {e}", reason="singular_information") from e

    denom = float(grad @ A @ grad)
    if not np.isfinite(denom) or denom <= 0:
        raise DFNotFinite(f"Variance of the contrast variance is not positive ({denom})", reason="nonpositive_denominator")

    df = 2.0 * Phi**2 / denom
    if not np.isfinite(df):
        raise DFNotFinite("Satterthwaite df is not finite", reason="not_finite")
    return max(df, 1.0)


def closed_form_df(design, formula: LmerFormula, contrast: Union[str, np.ndarray]) -> Optional[float]:
    """Exact df for the treatment-by-time coefficient, or ``None`` if not applicable.

    Applies to complete (no dropout) data when every random term is an
    unstructured intercept + slope pair: two-level designs give total
    subjects - 2, fully nested three-level designs with equal cluster sizes
    give total clusters - 2.
    """
    from ..core.study import get_n3, get_tot_n

    if not isinstance(contrast, str) or contrast not in TREATMENT_SLOPE:
        return None
    if design.has_dropout or design.partially_nested:
        return None
    if not formula.random or any(term.terms != ("1", "time") for term in formula.random):
        return None

    groupings = formula.groupings
    if groupings == ["subject"]:
        return float(get_tot_n(design)["total"] - 2)
    if sorted(groupings) == ["cluster", "subject"] and design.is_balanced:
        return float(get_n3(design)["total"] - 2)
    return None


def degrees_of_freedom(
    structure: VarianceStructure,
    contrast: Union[str, np.ndarray],
    design=None,
    varb: Optional[Callable] = None,
) -> float:
    """Satterthwaite df, using the closed form when *design* admits one."""
    if design is not None:
        df = closed_form_df(design, structure.formula, contrast)
        if df is not None:
            return df
    return satterthwaite_df(structure, contrast, varb=varb)
