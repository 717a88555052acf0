"""
Tests for synthetic data generation in vbgrowth/simulate.py.

Every simulation takes an explicit Generator: same seed, same dataset.

Run: uv run pytest tests/test_simulate.py -v
"""

import numpy as np
import pytest

from vbgrowth.errors import ConfigurationError
from vbgrowth.model_spec import ModelConfig, ModelVariant
from vbgrowth.simulate import (
    SimulationConfig,
    TrueParameters,
    simulate_cmr,
    simulate_dataset,
    simulate_mixture,
    lognormal_capture_lengths,
    simulate_site_effects,
)

# ── Configuration validation ─────────────────────────────────────────────────


class TestSimulationConfig:
    """Fail fast on designs no model can be fit to."""

    def test_zero_sites(self) -> None:
        with pytest.raises(ConfigurationError, match="at least one site"):
            SimulationConfig(n_sites=0)

    def test_zero_observations(self) -> None:
        with pytest.raises(ConfigurationError, match="zero observations"):
            SimulationConfig(n_mixture=0, n_cmr=0)

    def test_per_site_counts(self) -> None:
        config = SimulationConfig(n_sites=3, n_mixture=[10, 0, 5])
        assert config.total_mixture == 15

    def test_per_site_count_length(self) -> None:
        with pytest.raises(ConfigurationError, match="Per-site"):
            SimulationConfig(n_sites=3, n_mixture=[10, 5])

    def test_numpy_integer_total(self) -> None:
        config = SimulationConfig(n_sites=5, n_mixture=np.int64(500), n_cmr=0)
        assert config.total_mixture == 500
        assert type(config.n_mixture) is int

    def test_numpy_integer_total_simulates(self) -> None:
        config = SimulationConfig(n_sites=3, n_mixture=np.int64(40), n_cmr=np.int64(10))
        sim = simulate_dataset(TrueParameters(), config, "integrated", np.random.default_rng(0))
        assert sim.data.n_mixture == 40
        assert sim.data.n_cmr == 10

    def test_fractional_total(self) -> None:
        with pytest.raises(ConfigurationError, match="integer"):
            SimulationConfig(n_mixture=10.5)

    def test_bad_capture_range(self) -> None:
        with pytest.raises(ConfigurationError, match="capture_range"):
            SimulationConfig(capture_range=(100.0, 50.0))

    def test_bad_site_weights(self) -> None:
        with pytest.raises(ConfigurationError, match="site_weights"):
            SimulationConfig(n_sites=2, site_weights=[0.0, 0.0])

    def test_variant_needs_its_sample(self) -> None:
        with pytest.raises(ConfigurationError, match="n_cmr > 0"):
            simulate_dataset(
                TrueParameters(), SimulationConfig(n_cmr=0), "integrated", np.random.default_rng(0)
            )


class TestTrueParameters:
    def test_non_positive_growth(self) -> None:
        with pytest.raises(ConfigurationError, match="Linf"):
            TrueParameters(Linf=0.0)

    def test_omega_not_pd(self) -> None:
        omega = np.array([[1.0, 0.99, -0.99], [0.99, 1.0, 0.99], [-0.99, 0.99, 1.0]])
        with pytest.raises(ConfigurationError, match="positive definite"):
            TrueParameters(omega=omega)

    def test_theta_not_simplex(self) -> None:
        with pytest.raises(ConfigurationError, match="simplex"):
            TrueParameters(theta=np.array([0.5, 0.6]))

    def test_theta_bad_rank(self) -> None:
        with pytest.raises(ConfigurationError, match="shaped"):
            TrueParameters(theta=np.full((2, 2, 2), 0.5))

    def test_theta_wrong_class_count(self) -> None:
        truth = TrueParameters(theta=np.array([0.5, 0.5]))
        config = SimulationConfig(n_sites=3, n_mixture=30, n_cmr=0, n_age_classes=3)
        with pytest.raises(ConfigurationError, match="2 classes, expected 3"):
            simulate_dataset(truth, config, "mixture", np.random.default_rng(0))

    def test_per_site_theta_wrong_site_count(self) -> None:
        truth = TrueParameters(theta=np.full((2, 3), 1.0 / 3.0))
        config = SimulationConfig(n_sites=4, n_mixture=30, n_cmr=0, n_age_classes=3)
        with pytest.raises(ConfigurationError, match="2 rows, expected 4"):
            simulate_dataset(truth, config, "mixture", np.random.default_rng(0))

    def test_per_site_theta_used(self) -> None:
        theta = np.array([[0.8, 0.1, 0.1], [0.1, 0.1, 0.8]])
        config = SimulationConfig(n_sites=2, n_mixture=20, n_cmr=0, n_age_classes=3)
        sim = simulate_dataset(
            TrueParameters(theta=theta), config, "mixture", np.random.default_rng(0)
        )
        np.testing.assert_array_equal(sim.theta, theta)

    def test_cmr_sub_cholesky(self) -> None:
        omega = np.array([[1.0, 0.2, 0.0], [0.2, 1.0, -0.4], [0.0, -0.4, 1.0]])
        truth = TrueParameters(omega=omega)
        L = truth.cholesky(ModelVariant.CMR)
        np.testing.assert_allclose(L @ L.T, omega[1:, 1:])


# ── Reproducibility ─────────────────────────────────────────────────────────


class TestReproducibility:
    """The generator, not global state, determines the dataset."""

    def test_same_seed_same_data(self) -> None:
        config = SimulationConfig(n_sites=5, n_mixture=100, n_cmr=20)
        a = simulate_dataset(TrueParameters(), config, "integrated", np.random.default_rng(7))
        b = simulate_dataset(TrueParameters(), config, "integrated", np.random.default_rng(7))
        np.testing.assert_array_equal(a.data.mixture.length, b.data.mixture.length)
        np.testing.assert_array_equal(a.data.cmr.length_recapture, b.data.cmr.length_recapture)
        np.testing.assert_array_equal(a.z, b.z)

    def test_different_seed_differs(self) -> None:
        config = SimulationConfig(n_sites=5, n_mixture=100, n_cmr=20)
        a = simulate_dataset(TrueParameters(), config, "mixture", np.random.default_rng(1))
        b = simulate_dataset(TrueParameters(), config, "mixture", np.random.default_rng(2))
        assert not np.array_equal(a.data.mixture.length, b.data.mixture.length)

    def test_global_state_untouched(self) -> None:
        np.random.seed(123)
        before = np.random.random()
        np.random.seed(123)
        simulate_dataset(
            TrueParameters(), SimulationConfig(n_sites=3, n_mixture=30, n_cmr=10),
            "integrated", np.random.default_rng(0),
        )
        assert np.random.random() == before

    def test_cmr_does_not_change_mixture_sample(self) -> None:
        config = SimulationConfig(n_sites=5, n_mixture=100, n_cmr=20)
        mix = simulate_dataset(TrueParameters(), config, "mixture", np.random.default_rng(3))
        both = simulate_dataset(TrueParameters(), config, "integrated", np.random.default_rng(3))
        np.testing.assert_array_equal(mix.data.mixture.length, both.data.mixture.length)


# ── Components ──────────────────────────────────────────────────────────────


class TestSiteEffects:
    def test_shapes(self) -> None:
        z, eps = simulate_site_effects(TrueParameters(), 7, np.random.default_rng(0))
        assert z.shape == eps.shape == (7, 3)

    def test_cmr_has_two_components(self) -> None:
        z, _ = simulate_site_effects(TrueParameters(), 4, np.random.default_rng(0), ModelVariant.CMR)
        assert z.shape == (4, 2)

    def test_scale(self) -> None:
        truth = TrueParameters(sigma_vb=(0.05, 0.2, 0.4))
        _, eps = simulate_site_effects(truth, 20_000, np.random.default_rng(0))
        np.testing.assert_allclose(eps.std(axis=0), [0.05, 0.2, 0.4], rtol=0.03)

    def test_zero_sites(self) -> None:
        with pytest.raises(ConfigurationError):
            simulate_site_effects(TrueParameters(), 0, np.random.default_rng(0))


class TestMixtureSample:
    def test_class_frequencies_follow_theta(self) -> None:
        truth = TrueParameters(theta=np.array([0.6, 0.3, 0.1]))
        config = SimulationConfig(n_sites=2, n_mixture=20_000, n_cmr=0)
        sim = simulate_dataset(truth, config, "mixture", np.random.default_rng(5))
        freq = np.bincount(sim.comp, minlength=3) / sim.comp.size
        np.testing.assert_allclose(freq, [0.6, 0.3, 0.1], atol=0.015)

    def test_lengths_centered_on_class_means(self) -> None:
        truth = TrueParameters(sigma_vb=(1e-6, 1e-6, 1e-6), sigma_mix=0.01)
        config = SimulationConfig(n_sites=1, n_mixture=2_000, n_cmr=0, n_age_classes=2)
        sim = simulate_dataset(truth, config, "mixture", np.random.default_rng(0))
        young = sim.data.mixture.length[sim.comp == 0]
        np.testing.assert_allclose(np.median(young), 25.0, rtol=0.01)

    def test_per_site_counts(self) -> None:
        config = SimulationConfig(n_sites=3, n_mixture=[5, 0, 7], n_cmr=0)
        sim = simulate_dataset(TrueParameters(), config, "mixture", np.random.default_rng(0))
        np.testing.assert_array_equal(np.bincount(sim.data.mixture.site, minlength=3), [5, 0, 7])

    def test_site_weights(self) -> None:
        config = SimulationConfig(n_sites=2, n_mixture=500, n_cmr=0, site_weights=[0.0, 1.0])
        sim = simulate_dataset(TrueParameters(), config, "mixture", np.random.default_rng(0))
        assert np.all(sim.data.mixture.site == 1)

    def test_dirichlet_theta(self) -> None:
        truth = TrueParameters(alpha=(2.0, 2.0, 2.0))
        config = SimulationConfig(n_sites=6, n_mixture=60, n_cmr=0)
        sim = simulate_dataset(truth, config, "mixture", np.random.default_rng(0))
        assert sim.theta.shape == (6, 3)
        np.testing.assert_allclose(sim.theta.sum(axis=1), 1.0)
        assert not np.allclose(sim.theta[0], sim.theta[1])

    def test_direct_call(self) -> None:
        from vbgrowth.params import SiteGrowth

        growth = SiteGrowth(L0=np.array([25.0]), Linf=np.array([250.0]), k=np.array([0.4]))
        config = SimulationConfig(n_sites=1, n_mixture=50, n_cmr=0)
        mix, comp = simulate_mixture(
            growth, np.array([[1 / 3, 1 / 3, 1 / 3]]), 0.1, config, np.random.default_rng(0)
        )
        assert mix.n_obs == comp.size == 50


class TestCmrSample:
    def test_fixed_days(self) -> None:
        from vbgrowth.params import SiteGrowth

        growth = SiteGrowth(L0=None, Linf=np.array([250.0]), k=np.array([0.4]))
        config = SimulationConfig(n_sites=1, n_mixture=0, n_cmr=40, days_range=(365, 365))
        cmr = simulate_cmr(growth, 0.05, config, np.random.default_rng(0))
        np.testing.assert_array_equal(cmr.days, 365.0)

    def test_capture_range(self) -> None:
        config = SimulationConfig(n_sites=3, n_mixture=0, n_cmr=300, capture_range=(50.0, 60.0))
        sim = simulate_dataset(TrueParameters(), config, "cmr", np.random.default_rng(0))
        assert sim.data.cmr.length_capture.min() >= 50.0
        assert sim.data.cmr.length_capture.max() <= 60.0
        assert sim.data.mixture is None

    def test_lognormal_capture_lengths(self) -> None:
        config = SimulationConfig(
            n_sites=3,
            n_mixture=0,
            n_cmr=4000,
            capture_range=(50.0, 60.0),
            capture_sampler=lognormal_capture_lengths(120.0, 0.3),
        )
        cmr = simulate_dataset(TrueParameters(), config, "cmr", np.random.default_rng(0)).data.cmr
        # sampler overrides the uniform range
        assert cmr.length_capture.max() > 60.0
        assert np.median(cmr.length_capture) == pytest.approx(120.0, rel=0.05)
        assert np.std(np.log(cmr.length_capture)) == pytest.approx(0.3, rel=0.05)

    def test_custom_sampler_seeded(self) -> None:
        config = SimulationConfig(
            n_sites=2, n_mixture=0, n_cmr=50, capture_sampler=lognormal_capture_lengths(90.0, 0.2)
        )
        a = simulate_dataset(TrueParameters(), config, "cmr", np.random.default_rng(5))
        b = simulate_dataset(TrueParameters(), config, "cmr", np.random.default_rng(5))
        np.testing.assert_array_equal(a.data.cmr.length_capture, b.data.cmr.length_capture)

    def test_bad_sampler_output(self) -> None:
        config = SimulationConfig(
            n_sites=2, n_mixture=0, n_cmr=10, capture_sampler=lambda rng, n: -np.ones(n)
        )
        with pytest.raises(ConfigurationError, match="capture_sampler"):
            simulate_dataset(TrueParameters(), config, "cmr", np.random.default_rng(0))

    def test_bad_lognormal_parameters(self) -> None:
        with pytest.raises(ConfigurationError, match="median > 0"):
            lognormal_capture_lengths(0.0, 0.3)


# ── True parameters as GrowthParams ──────────────────────────────────────────


class TestTrueParams:
    def test_recovers_site_growth(self, integrated_sim, integrated_config) -> None:
        from vbgrowth.params import site_growth_parameters

        params = integrated_sim.true_params(integrated_config)
        growth = site_growth_parameters(params, integrated_config)
        np.testing.assert_allclose(growth.Linf, integrated_sim.site_growth.Linf, rtol=1e-12)
        np.testing.assert_allclose(growth.k, integrated_sim.site_growth.k, rtol=1e-12)
        np.testing.assert_allclose(growth.L0, integrated_sim.site_growth.L0, rtol=1e-12)

    def test_cmr_variant(self, cmr_sim, cmr_config) -> None:
        params = cmr_sim.true_params(cmr_config)
        assert params.theta is None
        assert params.sigma_mix is None
        assert params.z.shape == (4, 2)

    def test_prior_config_independent_truth(self, integrated_sim) -> None:
        """Different prior loc/scale change b0_raw, not the implied growth."""
        from vbgrowth.model_spec import GrowthPriors
        from vbgrowth.params import site_growth_parameters

        config = ModelConfig(priors=GrowthPriors(b0_loc=(3.0, 5.0, 0.0), b0_scale=(1.0, 2.0, 0.5)))
        growth = site_growth_parameters(integrated_sim.true_params(config), config)
        np.testing.assert_allclose(growth.Linf, integrated_sim.site_growth.Linf, rtol=1e-12)
