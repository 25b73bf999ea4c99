"""
Pytest Configuration and Shared Fixtures
=========================================

Provides common test fixtures for SIMEX testing.
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from simex_utils import DataParams, SimexEstimateTable, SimexRow, gen_dataset


# =============================================================================
# Small regression data
# =============================================================================

@pytest.fixture
def small_xy():
    """Five-point regression with known OLS slope."""
    x = np.array([1.0, 2.0, 3.0, 4.0, 5.0])
    se = np.full(5, 0.1)
    y = np.array([2.1, 3.9, 6.2, 7.8, 10.1])
    return x, se, y


@pytest.fixture
def noisy_xy():
    """Larger regression with measurement error in x."""
    r = np.random.default_rng(11)
    n = 400
    u = r.normal(0.0, 1.0, size=n)
    se = np.full(n, 0.5)
    x = u + r.normal(0.0, se)
    y = 1.0 + 2.0 * u + r.normal(0.0, 0.5, size=n)
    return x, se, y


# =============================================================================
# SIMEX tables
# =============================================================================

TRUE_SLOPE = 2.0
TRUE_RATIO = 0.2


def exact_table(slope=TRUE_SLOPE, ratio=TRUE_RATIO, variance=1e-4, lambdas=None):
    """Table whose slopes lie exactly on the attenuation curve."""
    if lambdas is None:
        lambdas = [0.0, 0.25, 0.5, 0.75, 1.0, 1.25, 1.5, 1.75, 2.0]
    return SimexEstimateTable(tuple(
        SimexRow(lam, slope / (1.0 + (lam + 1.0) * ratio), variance) for lam in lambdas
    ))


@pytest.fixture
def synthetic_table():
    return exact_table()


@pytest.fixture
def variance_ratio():
    # small enough that the pvar lower bound is the floor near the true slope
    return 0.1


# =============================================================================
# Summary statistics
# =============================================================================

@pytest.fixture(scope="session")
def index_event_data():
    return gen_dataset(DataParams(), seed=2018)


@pytest.fixture(scope="session")
def small_index_event_data():
    p = DataParams(n=1500, n_incidence=500, n_prognosis=500, n_both=500)
    return gen_dataset(p, seed=7)


@pytest.fixture
def make_table():
    """Factory for exact attenuation-curve tables."""
    return exact_table
