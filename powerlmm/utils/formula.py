"""
Structured model formulas for powerlmm.

Model formulas are parsed once into an immutable ``LmerFormula`` (a small
AST of fixed-effect terms and random-effect groupings), validated, and
then serialized to whatever text the fitting backend needs. Simulation
code never builds formula strings by concatenation.

Supported syntax (lme4 style):
- ``y ~ time * treatment``: main effects plus all interactions
- ``y ~ time + treatment + time:treatment``: explicit terms
- ``y ~ 0 + ...`` or ``y ~ -1 + ...``: no fixed intercept
- ``(1 + time | subject)``: correlated random intercept and slope
- ``(time | subject)``: same as above (implicit intercept)
- ``(0 + treatment + treatment:time | cluster)``: no random intercept
"""

import re
from dataclasses import dataclass
from itertools import combinations
from typing import Dict, List, Tuple

import numpy as np

from ..exceptions import FormulaError

__all__ = ["RandomTerm", "LmerFormula", "parse_formula"]

# Unicode-aware identifier pattern: letter or underscore, then word characters
_IDENT = r"[^\W\d]\w*"
_TERM = rf"{_IDENT}(?::{_IDENT})*"

INTERCEPT = "1"
INTERCEPT_NAME = "Intercept"


@dataclass(frozen=True)
class RandomTerm:
    """One random-effects grouping, e.g. ``(1 + time | subject)``.

    Attributes:
        grouping: Name of the grouping factor column.
        terms: Ordered effect terms; ``"1"`` is the random intercept.
    """

    grouping: str
    terms: Tuple[str, ...]

    @property
    def q(self) -> int:
        """Number of random effects per group."""
        return len(self.terms)

    @property
    def has_intercept(self) -> bool:
        return INTERCEPT in self.terms

    @property
    def n_cov_params(self) -> int:
        """Free covariance parameters of an unstructured ``q x q`` block."""
        return self.q * (self.q + 1) // 2

    def names(self) -> List[str]:
        """Readable names of the random effects, e.g. ``['subject_Intercept', 'subject_time']``."""
        return [f"{self.grouping}_{INTERCEPT_NAME if t == INTERCEPT else t}" for t in self.terms]

    def __str__(self) -> str:
        if self.has_intercept:
            lhs = " + ".join(self.terms)
        else:
            lhs = " + ".join(("0",) + self.terms)
        return f"({lhs} | {self.grouping})"


@dataclass(frozen=True)
class LmerFormula:
    """Parsed mixed-model formula.

    Attributes:
        response: Outcome column name.
        fixed: Fixed-effect terms ordered by interaction degree, ``"1"``
            first when the model has an intercept.
        random: Random-effect groupings, innermost (e.g. subject) first.
    """

    response: str
    fixed: Tuple[str, ...]
    random: Tuple[RandomTerm, ...] = ()

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def parse(cls, text: str) -> "LmerFormula":
        """Parse an lme4-style formula string.

        Raises:
            FormulaError: If the formula is malformed.
        """
        if not isinstance(text, str) or not text.strip():
            raise FormulaError("Formula must be a non-empty string")
        if text.count("~") != 1:
            raise FormulaError(f"Formula must contain exactly one '~': '{text}'")

        left, right = text.split("~", 1)
        response = left.strip()
        if not re.fullmatch(_IDENT, response):
            raise FormulaError(f"Invalid response variable '{response}' in formula '{text}'")
        if not right.strip():
            raise FormulaError(f"Formula has no right-hand side: '{text}'")

        fixed_parts: List[str] = []
        random_terms: List[RandomTerm] = []
        intercept = True

        for part in _split_top_level(right, "+"):
            if not part:
                raise FormulaError(f"Empty term in formula '{text}'")
            if part.startswith("("):
                random_terms.append(_parse_random_term(part, text))
            elif part in ("0", "-1"):
                intercept = False
            elif part == "1":
                continue
            else:
                fixed_parts.append(part)

        seen = set()
        for term in random_terms:
            if term.grouping in seen:
                raise FormulaError(f"Duplicate random effect grouping variable: '{term.grouping}'")
            seen.add(term.grouping)

        fixed = _expand_fixed(fixed_parts, text)
        if intercept:
            fixed = (INTERCEPT,) + fixed
        if not fixed:
            raise FormulaError(f"Formula has no fixed effects: '{text}'")

        return cls(response=response, fixed=fixed, random=tuple(random_terms))

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def fixed_names(self) -> List[str]:
        """Coefficient names as reported by patsy-based fitters."""
        return [INTERCEPT_NAME if t == INTERCEPT else t for t in self.fixed]

    @property
    def groupings(self) -> List[str]:
        return [term.grouping for term in self.random]

    @property
    def n_cov_params(self) -> int:
        """Covariance parameters including the residual variance."""
        return sum(term.n_cov_params for term in self.random) + 1

    @property
    def variables(self) -> List[str]:
        """All data columns referenced by the formula."""
        names = [self.response]
        for term in list(self.fixed) + [t for r in self.random for t in r.terms]:
            if term == INTERCEPT:
                continue
            for var in term.split(":"):
                if var not in names:
                    names.append(var)
        names.extend(g for g in self.groupings if g not in names)
        return names

    def has_fixed(self, name: str) -> bool:
        return name in self.fixed_names

    # =========================================================================
    # Serialization
    # =========================================================================

    def fixed_formula(self) -> str:
        """Fixed part only, in patsy syntax (``y ~ 1 + time + ...``)."""
        terms = list(self.fixed) if INTERCEPT in self.fixed else ["0"] + list(self.fixed)
        return f"{self.response} ~ " + " + ".join(terms)

    def __str__(self) -> str:
        fixed = [t for t in self.fixed if t != INTERCEPT]
        if INTERCEPT not in self.fixed:
            fixed = ["0"] + fixed
        rhs = fixed + [str(r) for r in self.random]
        if not rhs:
            rhs = ["1"]
        return f"{self.response} ~ " + " + ".join(rhs)

    # =========================================================================
    # Model matrices
    # =========================================================================

    def check_data(self, columns) -> None:
        """Raise ``FormulaError`` if a referenced column is missing."""
        missing = [v for v in self.variables if v not in columns]
        if missing:
            raise FormulaError(f"Variables {missing} not found in data. Available: {', '.join(map(str, columns))}")

    def model_matrix(self, data) -> np.ndarray:
        """Fixed-effects design matrix ``X`` with columns in ``fixed`` order."""
        return np.column_stack([term_values(data, t) for t in self.fixed])


def term_values(data, term: str) -> np.ndarray:
    """Evaluate one term (``"1"``, ``"time"``, ``"time:treatment"``) on a data frame."""
    n = len(data)
    if term == INTERCEPT:
        return np.ones(n)
    values = np.ones(n)
    for var in term.split(":"):
        values = values * np.asarray(data[var], dtype=float)
    return values


def parse_formula(formula) -> LmerFormula:
    """Return *formula* as an ``LmerFormula`` (parsing strings)."""
    if isinstance(formula, LmerFormula):
        return formula
    return LmerFormula.parse(formula)


# =============================================================================
# Internal helpers
# =============================================================================


def _split_top_level(text: str, sep: str) -> List[str]:
    """Split on *sep* outside parentheses; a leading ``-1`` is kept as a term."""
    parts: List[str] = []
    current: List[str] = []
    depth = 0

    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise FormulaError(f"Unbalanced parentheses in '{text}'")
        if char == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(char)

    if depth != 0:
        raise FormulaError(f"Unbalanced parentheses in '{text}'")
    parts.append("".join(current).strip())
    return parts


def _parse_random_term(part: str, text: str) -> RandomTerm:
    if not part.endswith(")"):
        raise FormulaError(f"Invalid random effect term '{part}' in '{text}'")
    inner = part[1:-1]
    if inner.count("|") != 1:
        raise FormulaError(f"Random effect term '{part}' must contain exactly one '|'")

    lhs, grouping = (s.strip() for s in inner.split("|"))
    if not re.fullmatch(_IDENT, grouping):
        raise FormulaError(f"Invalid grouping variable '{grouping}' in '{part}'")

    intercept = True
    terms: List[str] = []
    for piece in _split_top_level(lhs, "+"):
        if piece in ("0", "-1"):
            intercept = False
        elif piece == "1":
            continue
        elif re.fullmatch(_TERM, piece):
            if piece not in terms:
                terms.append(piece)
        else:
            raise FormulaError(f"Invalid random effect '{piece}' in '{part}'")

    if intercept:
        terms.insert(0, INTERCEPT)
    if not terms:
        raise FormulaError(f"Random effect term '{part}' has no effects")
    return RandomTerm(grouping=grouping, terms=tuple(terms))


def _expand_fixed(parts: List[str], text: str) -> Tuple[str, ...]:
    """Expand ``a*b`` into ``a, b, a:b`` and order terms by interaction degree."""
    expanded: List[str] = []

    for part in parts:
        if "*" in part:
            variables = [v.strip() for v in part.split("*")]
            if not all(re.fullmatch(_IDENT, v) for v in variables):
                raise FormulaError(f"Invalid fixed effect term '{part}' in '{text}'")
            for r in range(1, len(variables) + 1):
                for combo in combinations(variables, r):
                    expanded.append(":".join(combo))
        elif re.fullmatch(_TERM, part):
            expanded.append(part)
        else:
            raise FormulaError(f"Invalid fixed effect term '{part}' in '{text}'")

    unique: Dict[str, int] = {}
    for term in expanded:
        unique.setdefault(term, term.count(":"))
    return tuple(sorted(unique, key=lambda t: unique[t]))
