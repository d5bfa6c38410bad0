"""
Shared pytest fixtures for powerlmm tests.
"""

import numpy as np
import pytest

from tests.config import EFFECT_LARGE, ICC_PRE_CLUSTER, ICC_PRE_SUBJECT, ICC_SLOPE, VAR_RATIO

# Set random seed for reproducible tests
np.random.seed(42)


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: long-running Monte Carlo tests")
    config.addinivalue_line("markers", "lme: tests that fit mixed models with statsmodels")


@pytest.fixture
def two_level_design():
    """Subjects only: random intercept and slope, no cluster variance."""
    import powerlmm

    return powerlmm.study_parameters(
        n1=4,
        n2=5,
        n3=4,
        T_end=10,
        icc_pre_subject=ICC_PRE_SUBJECT,
        cor_subject=-0.5,
        var_ratio=0.02,
        cohend=EFFECT_LARGE,
    )


@pytest.fixture
def three_level_design():
    """Fully nested three-level design with correlated cluster effects."""
    import powerlmm

    return powerlmm.study_parameters(
        n1=4,
        n2=5,
        n3=4,
        T_end=10,
        icc_pre_subject=ICC_PRE_SUBJECT,
        icc_pre_cluster=ICC_PRE_CLUSTER,
        cor_subject=-0.5,
        cor_cluster=-0.4,
        var_ratio=0.02,
        icc_slope=ICC_SLOPE,
        cohend=EFFECT_LARGE,
    )


@pytest.fixture
def partially_nested_design():
    """Treatment arm clustered, control arm not, with dropout."""
    import powerlmm

    return powerlmm.study_parameters(
        n1=3,
        n2=4,
        n3=3,
        T_end=10,
        icc_pre_subject=ICC_PRE_SUBJECT,
        icc_pre_cluster=0,
        var_ratio=VAR_RATIO,
        icc_slope=ICC_SLOPE,
        dropout=powerlmm.dropout_weibull(0.3, 1),
        partially_nested=True,
        cohend=-EFFECT_LARGE,
    )


@pytest.fixture
def small_design():
    """Small three-level design for fast simulation tests."""
    import powerlmm

    return powerlmm.study_parameters(
        n1=3,
        n2=3,
        n3=2,
        icc_pre_subject=ICC_PRE_SUBJECT,
        icc_pre_cluster=ICC_PRE_CLUSTER,
        var_ratio=VAR_RATIO,
        icc_slope=ICC_SLOPE,
        dropout=0.2,
        cohend=0.5,
    )
