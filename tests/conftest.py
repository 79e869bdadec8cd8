"""Shared pytest fixtures for scruv tests.

Fixtures are organized by pipeline stage: simulated data, standardised
matrices, fitted factor models and containers.
"""

import numpy as np
import pytest

from scruv.datasets import ruv_simulate
from scruv.ruv import fit_factor_model, standardize


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random generator."""
    return np.random.default_rng(42)


@pytest.fixture(scope="session")
def small_sim():
    """Small simulation: 60 cells, 200 genes, 50 controls, 3 cell types, 2 batches."""
    return ruv_simulate(m=60, n=200, nc=50, n_celltypes=3, n_batch=2, random_state=0)


@pytest.fixture(scope="session")
def scenario_sim():
    """End-to-end scenario: 200 cells x 1000 genes, 100 controls."""
    return ruv_simulate(m=200, n=1000, nc=100, n_celltypes=3, n_batch=2, lambda_=0.1, random_state=1)


@pytest.fixture(scope="session")
def small_std(small_sim):
    """Standardisation of the small simulation's log counts."""
    return standardize(small_sim.log_counts, small_sim.batch)


@pytest.fixture(scope="session")
def small_model(small_sim, small_std):
    """Factor model with every available factor for the small simulation."""
    return fit_factor_model(small_std.stand_y, small_sim.ctl, small_sim.M)


@pytest.fixture
def small_container(small_sim):
    """Container wrapping the small simulation (fresh copy per test)."""
    return small_sim.to_container()
