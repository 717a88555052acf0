"""Shared fixtures for vbgrowth tests.

Provides small seeded simulated datasets for each model variant, the model
configurations that fit them, and the generating parameters expressed as
GrowthParams.
"""

import numpy as np
import pytest

from vbgrowth.model_spec import ModelConfig, ModelVariant
from vbgrowth.simulate import SimulatedDataset, SimulationConfig, TrueParameters, simulate_dataset

# ── Simulation fixtures ──────────────────────────────────────────────────────


def _make_sim(
    variant: ModelVariant | str = ModelVariant.INTEGRATED,
    seed: int = 42,
    n_sites: int = 4,
    n_mixture: int = 60,
    n_cmr: int = 30,
    n_covariates: int = 0,
) -> SimulatedDataset:
    """Small simulated dataset. Three age classes with uneven proportions."""
    truth = TrueParameters(
        theta=np.array([0.5, 0.3, 0.2]),
        beta=np.array([[0.05, -0.05]] * n_covariates) if n_covariates else None,
    )
    sim_config = SimulationConfig(
        n_sites=n_sites,
        n_mixture=n_mixture,
        n_cmr=n_cmr,
        n_covariates=n_covariates,
    )
    return simulate_dataset(truth, sim_config, variant, np.random.default_rng(seed))


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


@pytest.fixture
def integrated_sim() -> SimulatedDataset:
    return _make_sim(ModelVariant.INTEGRATED)


@pytest.fixture
def mixture_sim() -> SimulatedDataset:
    return _make_sim(ModelVariant.MIXTURE)


@pytest.fixture
def cmr_sim() -> SimulatedDataset:
    return _make_sim(ModelVariant.CMR)


@pytest.fixture
def integrated_config() -> ModelConfig:
    return ModelConfig(variant=ModelVariant.INTEGRATED, n_age_classes=3)


@pytest.fixture
def mixture_config() -> ModelConfig:
    return ModelConfig(variant=ModelVariant.MIXTURE, n_age_classes=3)


@pytest.fixture
def cmr_config() -> ModelConfig:
    return ModelConfig(variant=ModelVariant.CMR)


@pytest.fixture
def sim_factory():
    """Callable building a seeded simulated dataset (variant, seed, sizes, covariates)."""
    return _make_sim
