"""
Random-effects variance structure for a realized dataset.

Builds, for the observed rows of one dataset and one model formula:

- an incidence matrix per grouping factor (rows = observed rows),
- the random-effects design matrix ``Z`` (``Zt`` is its transpose),
- the relative covariance factor ``Lambda`` as a sparse template whose
  nonzero entries are ``theta[lind]``,
- the compact ``theta`` vector (lower-triangular Cholesky factor of each
  random-effect covariance relative to the residual variance, packed
  row-wise per term),
- per-block dense pieces used by the Satterthwaite engine. Observations
  from different outermost groups are independent, so ``V`` is
  block-diagonal over the outermost grouping factor.

The parameterization follows Bates et al. (2015).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp

from ..exceptions import EmptyGroup, FormulaError, InvalidDesign
from ..utils.formula import INTERCEPT, LmerFormula, RandomTerm, parse_formula, term_values

__all__ = [
    "ThetaVariant",
    "ThetaBlock",
    "VarianceStructure",
    "make_theta_vec",
    "make_theta",
    "build_variance_structure",
    "structure_from_design",
]


class ThetaVariant(Enum):
    """Shape of one grouping level's relative covariance factor."""

    INTERCEPT = "intercept"
    SLOPE = "slope"
    DIAGONAL = "diagonal"
    FULL = "full"


@dataclass(frozen=True)
class ThetaBlock:
    """Theta entries of one grouping level, tagged with their structure.

    ``values`` holds the free entries of the lower-triangular factor
    ``T`` (``cov / sigma**2 = T @ T.T``), packed row-wise. ``DIAGONAL``
    has no off-diagonal entry; ``INTERCEPT`` and ``SLOPE`` are 1x1.

    Attributes:
        variant: Structure tag.
        values: Free entries of ``T``.
    """

    variant: ThetaVariant
    values: Tuple[float, ...]

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self):
        return iter(self.values)

    @property
    def q(self) -> int:
        if self.variant in (ThetaVariant.INTERCEPT, ThetaVariant.SLOPE):
            return 1
        if self.variant is ThetaVariant.DIAGONAL:
            return 2
        # FULL: len = q(q+1)/2
        return int(round((np.sqrt(8 * len(self.values) + 1) - 1) / 2))

    def positions(self) -> List[Tuple[int, int]]:
        """``(row, col)`` position in ``T`` of each free entry."""
        if self.variant is ThetaVariant.DIAGONAL:
            return [(0, 0), (1, 1)]
        q = self.q
        return [(r, c) for r in range(q) for c in range(r + 1)]

    def factor(self) -> np.ndarray:
        """Lower-triangular factor ``T``."""
        T = np.zeros((self.q, self.q))
        for (r, c), value in zip(self.positions(), self.values):
            T[r, c] = value
        return T


def _cholesky_psd(cov: np.ndarray) -> np.ndarray:
    """Lower-triangular ``T`` with ``T @ T.T == cov`` for a PSD *cov*.

    Zero pivots (zero-variance components) give a zero column instead of
    failing like ``np.linalg.cholesky``.
    """
    q = cov.shape[0]
    T = np.zeros((q, q))
    for j in range(q):
        d = cov[j, j] - T[j, :j] @ T[j, :j]
        T[j, j] = np.sqrt(d) if d > 1e-14 * max(1.0, abs(cov[j, j])) else 0.0
        for i in range(j + 1, q):
            if T[j, j] > 0:
                T[i, j] = (cov[i, j] - T[i, :j] @ T[j, :j]) / T[j, j]
    return T


def make_theta_vec(sd0: float, cor: float, sd1: float, sigma: float = 1.0) -> Optional[ThetaBlock]:
    """Compact theta for an intercept/slope pair.

    Zero-variance components are dropped from the structure and a zero
    correlation drops the off-diagonal entry, so the result has 1, 2 or
    3 entries. Returns ``None`` when both SDs are zero.

    Example:
        >>> len(make_theta_vec(1.2, 0, 0)), len(make_theta_vec(1.2, 0, 1.4)), len(make_theta_vec(1.2, 0.2, 1.4))
        (1, 2, 3)
    """
    if sd0 < 0 or sd1 < 0:
        raise InvalidDesign("Standard deviations must be nonnegative")
    if not -1 <= cor <= 1:
        raise InvalidDesign(f"Correlation must be in [-1, 1], got {cor}")
    if sd0 == 0 and sd1 == 0:
        return None
    if sd1 == 0:
        return ThetaBlock(ThetaVariant.INTERCEPT, (sd0 / sigma,))
    if sd0 == 0:
        return ThetaBlock(ThetaVariant.SLOPE, (sd1 / sigma,))
    if cor == 0:
        return ThetaBlock(ThetaVariant.DIAGONAL, (sd0 / sigma, sd1 / sigma))
    cov = np.array([[sd0**2, cor * sd0 * sd1], [cor * sd0 * sd1, sd1**2]]) / sigma**2
    T = _cholesky_psd(cov)
    return ThetaBlock(ThetaVariant.FULL, (T[0, 0], T[1, 0], T[1, 1]))


def make_theta(params: Dict[str, float]) -> np.ndarray:
    """Concatenated subject and cluster theta from ``u0, u01, u1, v0, v01, v1, sigma``."""
    sigma = params["sigma"]
    blocks = [
        make_theta_vec(params["u0"], params["u01"], params["u1"], sigma),
        make_theta_vec(params.get("v0", 0.0), params.get("v01", 0.0), params.get("v1", 0.0), sigma),
    ]
    return np.array([v for block in blocks if block is not None for v in block], dtype=float)


def _term_block(term: RandomTerm, cov: np.ndarray, sigma: float) -> ThetaBlock:
    """Theta block of one formula term; multi-effect terms are unstructured."""
    cov = np.asarray(cov, dtype=float).reshape(term.q, term.q)
    if np.any(np.linalg.eigvalsh(cov) < -1e-10):
        raise InvalidDesign(f"Covariance of {term} is not positive semi-definite")
    T = _cholesky_psd(cov / sigma**2)
    if term.q == 1:
        variant = ThetaVariant.INTERCEPT if term.has_intercept else ThetaVariant.SLOPE
        return ThetaBlock(variant, (T[0, 0],))
    return ThetaBlock(ThetaVariant.FULL, tuple(T[r, c] for r in range(term.q) for c in range(r + 1)))


@dataclass
class _OuterBlock:
    """Rows of one outermost group with its local ``X``, ``Z`` and ``Lambda`` pattern."""

    rows: np.ndarray
    X: np.ndarray
    Z: np.ndarray
    lam_rows: np.ndarray
    lam_cols: np.ndarray
    lam_ind: np.ndarray

    def lam(self, theta: np.ndarray) -> np.ndarray:
        L = np.zeros((self.Z.shape[1], self.Z.shape[1]))
        L[self.lam_rows, self.lam_cols] = theta[self.lam_ind]
        return L

    def dlam(self, j: int) -> np.ndarray:
        L = np.zeros((self.Z.shape[1], self.Z.shape[1]))
        mask = self.lam_ind == j
        L[self.lam_rows[mask], self.lam_cols[mask]] = 1.0
        return L


@dataclass
class VarianceStructure:
    """Random-effects structure of one realized dataset under one formula.

    Attributes:
        formula: Model formula.
        data: Observed rows only, index reset.
        X: Fixed-effects design matrix ``(n_obs, p)``.
        Zt: Transposed random-effects design matrix (sparse).
        incidence: Grouping factor name to sparse ``(n_obs, n_groups)`` indicator.
        blocks: One ``ThetaBlock`` per random term, in formula order.
        Lambda: Sparse relative covariance factor at ``theta`` (COO, one stored
            entry per element of ``lind``).
        lind: Index into ``theta`` for each stored entry of ``Lambda``.
        sigma: Residual SD.
    """

    formula: LmerFormula
    data: pd.DataFrame
    X: np.ndarray
    Zt: sp.csr_matrix
    incidence: Dict[str, sp.csr_matrix]
    blocks: Tuple[ThetaBlock, ...]
    Lambda: sp.coo_matrix
    lind: np.ndarray
    sigma: float
    outer_grouping: Optional[str]
    _outer: List[_OuterBlock]

    @property
    def n_obs(self) -> int:
        return self.X.shape[0]

    @property
    def theta(self) -> np.ndarray:
        return np.array([v for block in self.blocks for v in block], dtype=float)

    @property
    def phi(self) -> np.ndarray:
        """All variance parameters ``(theta, sigma)``."""
        return np.append(self.theta, self.sigma)

    @property
    def n_blocks(self) -> int:
        return len(self._outer)

    def block_sizes(self) -> List[int]:
        return [len(b.rows) for b in self._outer]

    def relative_covariance_factor(self, theta: Optional[np.ndarray] = None) -> sp.csr_matrix:
        """``Lambda`` with entries ``theta[lind]``."""
        theta = self.theta if theta is None else np.asarray(theta, dtype=float)
        L = self.Lambda
        return sp.csr_matrix((theta[self.lind], (L.row, L.col)), shape=L.shape)

    def random_covariances(self) -> Dict[str, np.ndarray]:
        """Implied random-effect covariance matrix per grouping factor."""
        out = {}
        for term, block in zip(self.formula.random, self.blocks):
            T = block.factor()
            out[term.grouping] = self.sigma**2 * T @ T.T
        return out

    # =========================================================================
    # Block-wise algebra
    # =========================================================================

    def marginal_covariances(self, phi: Optional[np.ndarray] = None) -> List[np.ndarray]:
        """``V_b = sigma^2 (Z_b Lambda_b Lambda_b' Z_b' + I)`` for each outer block."""
        phi = self.phi if phi is None else np.asarray(phi, dtype=float)
        theta, sigma = phi[:-1], phi[-1]
        out = []
        for b in self._outer:
            ZL = b.Z @ b.lam(theta)
            out.append(sigma**2 * (ZL @ ZL.T + np.eye(len(b.rows))))
        return out

    def covariance_derivatives(self, phi: Optional[np.ndarray] = None) -> List[List[np.ndarray]]:
        """``dV_b / dphi_j`` for every block and every variance parameter."""
        phi = self.phi if phi is None else np.asarray(phi, dtype=float)
        theta, sigma = phi[:-1], phi[-1]
        out = []
        for b in self._outer:
            ZL = b.Z @ b.lam(theta)
            derivs = []
            for j in range(len(theta)):
                ZdL = b.Z @ b.dlam(j)
                M = ZdL @ ZL.T
                derivs.append(sigma**2 * (M + M.T))
            derivs.append(2.0 * sigma * (ZL @ ZL.T + np.eye(len(b.rows))))
            out.append(derivs)
        return out

    def fixed_covariance(self, phi: Optional[np.ndarray] = None) -> np.ndarray:
        """Sampling covariance of the GLS fixed effects, ``(X' V^-1 X)^-1``."""
        info = np.zeros((self.X.shape[1], self.X.shape[1]))
        for b, V in zip(self._outer, self.marginal_covariances(phi)):
            info += b.X.T @ np.linalg.solve(V, b.X)
        return np.linalg.inv(info)

    def outer_blocks(self) -> List[_OuterBlock]:
        return self._outer


# =============================================================================
# Construction
# =============================================================================


def _group_codes(values: pd.Series, grouping: str) -> Tuple[np.ndarray, int]:
    if values.isna().any():
        raise EmptyGroup(f"Grouping factor '{grouping}' has missing ids in observed rows", grouping=grouping)
    codes, uniques = pd.factorize(values, sort=True)
    return codes.astype(np.int64), len(uniques)


def _outer_grouping(formula: LmerFormula, codes: Dict[str, np.ndarray], n_groups: Dict[str, int]) -> str:
    """Coarsest grouping factor; every other factor must be nested in it."""
    outer = min(formula.groupings, key=lambda g: (n_groups[g], formula.groupings.index(g)))
    for grouping in formula.groupings:
        if grouping == outer:
            continue
        pairs = pd.DataFrame({"inner": codes[grouping], "outer": codes[outer]}).drop_duplicates()
        if pairs["inner"].duplicated().any():
            raise FormulaError(f"Grouping factor '{grouping}' is not nested in '{outer}'; crossed random effects are not supported")
    return outer


def build_variance_structure(
    formula,
    data: pd.DataFrame,
    covariances: Dict[str, np.ndarray],
    sigma: float,
) -> VarianceStructure:
    """Build the variance structure of *formula* on the observed rows of *data*.

    Args:
        formula: ``LmerFormula`` or formula string.
        data: Dataset; rows with a missing response are dropped.
        covariances: Random-effect covariance matrix per grouping factor, in
            the order of the term's effects.
        sigma: Residual SD.

    Raises:
        InvalidDesign: If a covariance matrix is not positive semi-definite.
        EmptyGroup: If no observed row contributes to a grouping factor.
        FormulaError: If a referenced column is missing or groupings are crossed.
    """
    formula = parse_formula(formula)
    formula.check_data(data.columns)

    if formula.response in data.columns:
        data = data[data[formula.response].notna()]
    data = data.reset_index(drop=True)
    n = len(data)
    if n == 0:
        raise EmptyGroup("Dataset has no observed rows", grouping=None)
    if not sigma > 0:
        raise InvalidDesign(f"Residual SD must be > 0, got {sigma}")

    X = formula.model_matrix(data)

    codes: Dict[str, np.ndarray] = {}
    n_groups: Dict[str, int] = {}
    incidence: Dict[str, sp.csr_matrix] = {}
    for grouping in formula.groupings:
        codes[grouping], n_groups[grouping] = _group_codes(data[grouping], grouping)
        incidence[grouping] = sp.csr_matrix(
            (np.ones(n), (np.arange(n), codes[grouping])), shape=(n, n_groups[grouping])
        )

    blocks: List[ThetaBlock] = []
    z_parts = []
    lam_rows: List[np.ndarray] = []
    lam_cols: List[np.ndarray] = []
    lind: List[np.ndarray] = []
    col_group: List[np.ndarray] = []
    col_offset = 0
    theta_offset = 0

    for term in formula.random:
        if term.grouping not in covariances:
            raise ValueError(f"No covariance given for grouping factor '{term.grouping}'")
        block = _term_block(term, covariances[term.grouping], sigma)
        blocks.append(block)

        G, q = n_groups[term.grouping], term.q
        g = codes[term.grouping]
        values = np.column_stack([term_values(data, t) for t in term.terms])
        if not np.any(values != 0):
            raise EmptyGroup(f"No observed row contributes to random term {term}", grouping=term.grouping)

        # group-major columns: [g0_eff0, g0_eff1, g1_eff0, ...]
        rows = np.repeat(np.arange(n), q)
        cols = (g[:, None] * q + np.arange(q)[None, :]).ravel()
        z_parts.append(sp.csr_matrix((values.ravel(), (rows, cols)), shape=(n, G * q)))

        positions = block.positions()
        base = col_offset + np.arange(G) * q
        for k, (r, c) in enumerate(positions):
            lam_rows.append(base + r)
            lam_cols.append(base + c)
            lind.append(np.full(G, theta_offset + k))
        col_group.append(np.repeat(np.arange(G), q))

        col_offset += G * q
        theta_offset += len(block)

    if z_parts:
        Z = sp.hstack(z_parts).tocsr()
        lam_r = np.concatenate(lam_rows)
        lam_c = np.concatenate(lam_cols)
        lind_arr = np.concatenate(lind).astype(np.int64)
    else:
        Z = sp.csr_matrix((n, 0))
        lam_r = lam_c = lind_arr = np.zeros(0, dtype=np.int64)

    theta = np.array([v for block in blocks for v in block], dtype=float)
    Lambda = sp.coo_matrix((theta[lind_arr], (lam_r, lam_c)), shape=(col_offset, col_offset))

    outer_grouping = _outer_grouping(formula, codes, n_groups) if formula.random else None
    outer = _split_blocks(formula, codes, n_groups, outer_grouping, X, Z, lam_r, lam_c, lind_arr, n)

    return VarianceStructure(
        formula=formula,
        data=data,
        X=X,
        Zt=Z.T.tocsr(),
        incidence=incidence,
        blocks=tuple(blocks),
        Lambda=Lambda,
        lind=lind_arr,
        sigma=float(sigma),
        outer_grouping=outer_grouping,
        _outer=outer,
    )


def _split_blocks(formula, codes, n_groups, outer_grouping, X, Z, lam_r, lam_c, lind, n) -> List[_OuterBlock]:
    if outer_grouping is None:
        return [_OuterBlock(np.arange(n), X, np.zeros((n, 0)), lam_r, lam_c, lind)]

    # Outer group owning each column of Z
    col_owner = []
    for term in formula.random:
        q = term.q
        inner = codes[term.grouping]
        owner = np.zeros(n_groups[term.grouping], dtype=np.int64)
        owner[inner] = codes[outer_grouping]
        col_owner.append(np.repeat(owner, q))
    col_owner = np.concatenate(col_owner)

    Zc = Z.tocsc()
    out = []
    order = np.argsort(codes[outer_grouping], kind="stable")
    bounds = np.searchsorted(codes[outer_grouping][order], np.arange(n_groups[outer_grouping] + 1))
    for k in range(n_groups[outer_grouping]):
        rows = order[bounds[k] : bounds[k + 1]]
        cols = np.flatnonzero(col_owner == k)
        local = np.full(Z.shape[1], -1, dtype=np.int64)
        local[cols] = np.arange(len(cols))
        keep = (local[lam_r] >= 0) & (local[lam_c] >= 0)
        Zb = Zc[:, cols].tocsr()[rows].toarray()
        out.append(_OuterBlock(rows, X[rows], Zb, local[lam_r[keep]], local[lam_c[keep]], lind[keep]))
    return out


# =============================================================================
# Design-implied structure
# =============================================================================

_INTERCEPT_LIKE = (INTERCEPT, "treatment")
_SLOPE_LIKE = ("time", "time:treatment", "treatment:time")


def design_covariances(design, formula: LmerFormula) -> Dict[str, np.ndarray]:
    """Map a design's subject and cluster covariance onto *formula*'s terms."""
    out = {}
    for term in formula.random:
        level = "cluster" if term.grouping == "cluster" else "subject"
        idx = []
        for t in term.terms:
            if t in _INTERCEPT_LIKE:
                idx.append(0)
            elif t in _SLOPE_LIKE:
                idx.append(1)
            else:
                raise FormulaError(f"Random effect '{t}' has no counterpart in the study design")
        out[term.grouping] = design.covariance(level)[np.ix_(idx, idx)]
    return out


def structure_from_design(design, data: pd.DataFrame, formula=None) -> VarianceStructure:
    """Variance structure of *data* at the design's true parameter values."""
    from ..core.study import create_lmer_formula

    formula = create_lmer_formula(design) if formula is None else parse_formula(formula)
    return build_variance_structure(formula, data, design_covariances(design, formula), design.sigma_error)
