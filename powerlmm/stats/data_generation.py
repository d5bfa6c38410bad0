"""
Data generation for longitudinal multilevel designs.

Draws one realized dataset from a ``StudyDefinition``:

    y_ij = b0 + b1 t_j + tx_i (b2 + delta t_j)
           + u0_i + u1_i t_j + v0_c + v1_c t_j + e_ij

with correlated subject (u) and cluster (v) intercept/slope effects,
normal residuals and monotone dropout applied on top. Missing outcomes
are kept as ``NaN`` rows so the full layout stays visible.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from ..core.dropout import observed_mask
from ..core.study import CONTROL, TREATMENT, StudyDefinition

__all__ = ["subject_layout", "simulate_data", "expected_layout", "PosttestTransform", "transform_to_posttest"]


@dataclass
class SubjectLayout:
    """Subject-level layout of a design, one entry per subject."""

    subject: np.ndarray
    cluster: np.ndarray
    treatment: np.ndarray
    n_clusters: int
    clustered: np.ndarray
    """True where the subject's cluster carries cluster-level random effects."""


def subject_layout(design: StudyDefinition) -> SubjectLayout:
    """Assign subjects to clusters and arms.

    Cluster ids are unique across arms (control first). Subjects in the
    unclustered arm of a partially nested design get a singleton cluster
    each.
    """
    subject: List[int] = []
    cluster: List[int] = []
    treatment: List[int] = []
    clustered: List[bool] = []
    next_cluster = 0

    for arm in (CONTROL, TREATMENT):
        for size in design.cluster_sizes(arm):
            for _ in range(size):
                subject.append(len(subject))
                treatment.append(arm)
                if design.is_clustered(arm):
                    cluster.append(next_cluster)
                    clustered.append(True)
                else:
                    cluster.append(next_cluster)
                    clustered.append(False)
                    next_cluster += 1
            if design.is_clustered(arm):
                next_cluster += 1

    return SubjectLayout(
        subject=np.asarray(subject, dtype=np.int64),
        cluster=np.asarray(cluster, dtype=np.int64),
        treatment=np.asarray(treatment, dtype=np.int64),
        n_clusters=next_cluster,
        clustered=np.asarray(clustered, dtype=bool),
    )


def _long_frame(design: StudyDefinition, layout: SubjectLayout) -> pd.DataFrame:
    n1 = design.n1
    return pd.DataFrame(
        {
            "subject": np.repeat(layout.subject, n1),
            "cluster": np.repeat(layout.cluster, n1),
            "treatment": np.repeat(layout.treatment, n1),
            "time": np.tile(design.time, len(layout.subject)),
        }
    )


def _draw_pair(rng: np.random.Generator, n: int, sd0: float, cor: float, sd1: float) -> np.ndarray:
    """Correlated (intercept, slope) draws, shape ``(n, 2)``."""
    z = rng.standard_normal((n, 2))
    b0 = sd0 * z[:, 0]
    b1 = sd1 * (cor * z[:, 0] + np.sqrt(1.0 - cor**2) * z[:, 1])
    return np.column_stack([b0, b1])


def _dropout_mask(design: StudyDefinition, layout: SubjectLayout, u: np.ndarray) -> np.ndarray:
    mask = np.ones((len(layout.subject), design.n1), dtype=bool)
    for arm in (CONTROL, TREATMENT):
        idx = layout.treatment == arm
        mask[idx] = observed_mask(design.dropout_for(arm), design.time, design.T_end, u[idx])
    return mask


def simulate_data(
    design: StudyDefinition,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    """Draw one dataset from *design*.

    Args:
        design: Study definition.
        seed: Seed for a fresh generator (ignored when *rng* is given).
        rng: Generator to draw from.

    Returns:
        Long data frame with columns ``subject, cluster, treatment, time,
        y, miss``; ``y`` is ``NaN`` where ``miss == 1``.
    """
    if rng is None:
        rng = np.random.default_rng(seed)

    layout = subject_layout(design)
    n_subjects = len(layout.subject)
    n1 = design.n1
    time = design.time

    v = _draw_pair(rng, layout.n_clusters, design.sigma_cluster_intercept, design.cor_cluster, design.sigma_cluster_slope)
    u = _draw_pair(rng, n_subjects, design.sigma_subject_intercept, design.cor_subject, design.sigma_subject_slope)
    e = rng.normal(0.0, design.sigma_error, size=(n_subjects, n1))
    dropout_u = rng.uniform(size=n_subjects)

    v_subject = v[layout.cluster] * layout.clustered[:, None]
    tx = layout.treatment[:, None]
    y = (
        design.fixed_intercept
        + design.fixed_slope * time[None, :]
        + tx * design.slope_difference * time[None, :]
        + (u[:, [0]] + v_subject[:, [0]])
        + (u[:, [1]] + v_subject[:, [1]]) * time[None, :]
        + e
    )

    observed = _dropout_mask(design, layout, dropout_u)
    y = np.where(observed, y, np.nan)

    data = _long_frame(design, layout)
    data["y"] = y.ravel()
    data["miss"] = (~observed).ravel().astype(np.int64)
    return data


def expected_layout(design: StudyDefinition, seed: Optional[int] = None) -> pd.DataFrame:
    """Observed rows of the design without outcome values.

    With ``design.deterministic_dropout`` the dropout draws are evenly
    spaced quantiles ``(i + 0.5) / n`` within each cluster (within the arm
    for unclustered subjects); otherwise they are random with *seed*.
    """
    layout = subject_layout(design)
    if design.deterministic_dropout:
        u = np.empty(len(layout.subject))
        groups = np.where(layout.clustered, layout.cluster, -1 - layout.treatment)
        for g in np.unique(groups):
            idx = np.flatnonzero(groups == g)
            u[idx] = (np.arange(len(idx)) + 0.5) / len(idx)
    else:
        u = np.random.default_rng(seed).uniform(size=len(layout.subject))

    observed = _dropout_mask(design, layout, u)
    data = _long_frame(design, layout)
    data["y"] = np.where(observed.ravel(), 0.0, np.nan)
    data["miss"] = (~observed).ravel().astype(np.int64)
    return data[data["miss"] == 0].reset_index(drop=True)


class PosttestTransform:
    """Collapse longitudinal data to the last measurement occasion.

    Used as a ``data_transform`` in ``sim_formula``, typically with
    ``"y ~ treatment + (1 | cluster)"``. Subjects who dropped out before
    the last occasion are removed.
    """

    def __call__(self, data: pd.DataFrame) -> pd.DataFrame:
        last = data["time"].max()
        out = data[(data["time"] == last) & data["y"].notna()]
        return out.reset_index(drop=True)

    def true_values(self, design: StudyDefinition) -> Dict[str, float]:
        return {
            "Intercept": design.fixed_intercept + design.fixed_slope * design.T_end,
            "treatment": design.effect,
        }

    def __repr__(self):
        return "transform_to_posttest"


transform_to_posttest = PosttestTransform()
