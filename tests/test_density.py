"""
Tests for the joint log-density in vbgrowth/density.py.

Covers the elementary densities against scipy, the class-marginal mixture
likelihood (stable log-sum-exp vs an arbitrary-precision reference), the
prior_only switch, -inf on structurally invalid proposals and the
unconstrained entry point used by an inference engine.

Run: uv run pytest tests/test_density.py -v
"""

from dataclasses import replace
from decimal import Decimal, localcontext

import numpy as np
import pytest
from scipy import stats

from vbgrowth.data import CmrData, GrowthData, MixtureData
from vbgrowth.density import (
    GrowthModel,
    cmr_log_likelihood,
    dirichlet_logpdf,
    log_density,
    lognormal_logpdf,
    mixture_log_likelihood,
)
from vbgrowth.errors import ConfigurationError, InvalidInputError
from vbgrowth.model_spec import ModelConfig, ModelVariant
from vbgrowth.params import GrowthParams


# ── Helpers ──────────────────────────────────────────────────────────────────


def decimal_logsumexp(terms: np.ndarray, prec: int = 60) -> float:
    """log(sum(exp(terms))) evaluated with 60-digit decimals."""
    with localcontext() as ctx:
        ctx.prec = prec
        total = sum(Decimal(float(t)).exp() for t in terms)
        return float(total.ln())


def single_site_params(
    L0: float, Linf: float, k: float, config: ModelConfig, **kwargs
) -> GrowthParams:
    """J=1 parameters whose site growth equals (L0, Linf, k) exactly up to rounding."""
    variant = config.variant
    target = np.log([L0, Linf, k])[-variant.n_components :]
    loc = config.priors.intercept_loc(variant)
    scale = config.priors.intercept_scale(variant)
    K = variant.n_components
    return GrowthParams(
        b0_raw=(target - loc) / scale,
        z=np.zeros((1, K)),
        sigma_vb=np.full(K, 0.1),
        L_omega=np.eye(K),
        **kwargs,
    )


# ── Elementary densities ────────────────────────────────────────────────────


class TestElementaryDensities:
    def test_lognormal_matches_scipy(self) -> None:
        y = np.array([5.0, 25.0, 300.0])
        got = lognormal_logpdf(y, np.log(40.0), 0.3)
        np.testing.assert_allclose(got, stats.lognorm.logpdf(y, s=0.3, scale=40.0))

    def test_dirichlet_matches_scipy(self) -> None:
        theta = np.array([[0.2, 0.3, 0.5], [0.6, 0.3, 0.1]])
        alpha = np.array([1.5, 2.0, 4.0])
        expected = [stats.dirichlet.logpdf(row, alpha) for row in theta]
        np.testing.assert_allclose(dirichlet_logpdf(theta, alpha), expected)

    def test_cmr_matches_lognormal(self) -> None:
        y = np.array([60.0, 80.0])
        log_mu = np.log([55.0, 90.0])
        np.testing.assert_allclose(cmr_log_likelihood(y, log_mu, 0.05), lognormal_logpdf(y, log_mu, 0.05))


# ── Mixture likelihood ──────────────────────────────────────────────────────


class TestMixtureLogLikelihood:
    """Latent age class summed out with a max-shifted log-sum-exp."""

    def test_single_fish_scenario(self) -> None:
        """J=1, A=2, theta=[0.5, 0.5], L0=25, Linf=250, k=0.4, sigma=0.15, y=25."""
        config = ModelConfig(variant=ModelVariant.MIXTURE, n_age_classes=2)
        data = GrowthData(n_sites=1, mixture=MixtureData(length=[25.0], site=[0]))
        params = single_site_params(
            25.0, 250.0, 0.4, config, sigma_mix=0.15, theta=np.array([[0.5, 0.5]])
        )
        ll = GrowthModel(data, config).pointwise_log_likelihood(params)

        first_class = np.log(0.5) + stats.lognorm.logpdf(25.0, s=0.15, scale=25.0)
        mu_second = 25.0 + 225.0 * (1.0 - np.exp(-0.4))
        second_class = np.log(0.5) + stats.lognorm.logpdf(25.0, s=0.15, scale=mu_second)

        assert ll.shape == (1,)
        assert first_class - second_class > 30.0
        assert ll[0] == pytest.approx(first_class, rel=1e-10)

    def test_matches_high_precision_reference(self) -> None:
        """One component's density 1e8x or far more than another's."""
        y = np.array([25.0, 99.0, 160.0, 10.0, 400.0, 1.0])
        site = np.zeros(6, dtype=np.int64)
        log_theta = np.log([[1e-6, 0.5, 0.5 - 1e-6]])
        log_mu = np.log([[25.0, 99.0, 160.0]])
        sigma = 0.02
        got = mixture_log_likelihood(y, site, log_theta, log_mu, sigma)

        terms = log_theta[site] + lognormal_logpdf(y[:, None], log_mu[site], sigma)
        # extreme: the spread inside each row is far beyond float exp() range
        assert np.max(np.ptp(terms, axis=1)) > np.log(1e8)
        assert np.all(np.exp(terms[3:]).sum(axis=1) == 0.0)

        expected = [decimal_logsumexp(row) for row in terms]
        np.testing.assert_allclose(got, expected, rtol=1e-12)

    def test_equal_components(self) -> None:
        """Two identical classes: log-sum-exp adds log 2 to log(theta) + lognormal."""
        got = mixture_log_likelihood(
            np.array([50.0]), np.array([0]), np.log([[0.5, 0.5]]), np.log([[50.0, 50.0]]), 0.1
        )
        assert got[0] == pytest.approx(stats.lognorm.logpdf(50.0, s=0.1, scale=50.0))

    def test_no_overflow_with_huge_densities(self) -> None:
        got = mixture_log_likelihood(
            np.array([100.0]), np.array([0]), np.log([[0.5, 0.5]]), np.log([[100.0, 100.0]]), 1e-200
        )
        assert np.isfinite(got[0])


# ── Joint density ───────────────────────────────────────────────────────────


class TestLogDensity:
    def test_finite_at_truth(self, integrated_sim, integrated_config) -> None:
        params = integrated_sim.true_params(integrated_config)
        lp = log_density(params, integrated_sim.data, integrated_config)
        assert np.isfinite(lp)

    @pytest.mark.parametrize(
        "variant, config_fixture",
        [("mixture", "mixture_config"), ("cmr", "cmr_config"), ("integrated", "integrated_config")],
    )
    def test_every_variant(self, variant: str, config_fixture: str, request, sim_factory) -> None:
        config = request.getfixturevalue(config_fixture)
        sim = sim_factory(variant)
        assert np.isfinite(GrowthModel(sim.data, config).log_density(sim.true_params(config)))

    def test_truth_beats_perturbed(self, integrated_sim, integrated_config) -> None:
        model = GrowthModel(integrated_sim.data, integrated_config)
        truth = integrated_sim.true_params(integrated_config)
        perturbed = replace(truth, b0_raw=truth.b0_raw + np.array([0.0, 0.6, 0.6]))
        assert model.log_likelihood(truth) > model.log_likelihood(perturbed)

    def test_equals_prior_plus_likelihood(self, integrated_sim, integrated_config) -> None:
        model = GrowthModel(integrated_sim.data, integrated_config)
        params = integrated_sim.true_params(integrated_config)
        assert model.log_density(params) == pytest.approx(
            model.log_prior(params) + model.log_likelihood(params)
        )

    def test_pointwise_order_and_length(self, integrated_sim, integrated_config) -> None:
        model = GrowthModel(integrated_sim.data, integrated_config)
        params = integrated_sim.true_params(integrated_config)
        ll = model.pointwise_log_likelihood(params)
        n_mix = integrated_sim.data.n_mixture
        assert ll.shape == (model.n_obs,)
        assert model.n_obs == n_mix + integrated_sim.data.n_cmr

        # CMR block is the plain lognormal around the VBGF projection
        cmr_only = GrowthModel(
            GrowthData(n_sites=integrated_sim.data.n_sites, cmr=integrated_sim.data.cmr),
            ModelConfig(variant=ModelVariant.CMR),
        )
        cmr_params = GrowthParams(
            b0_raw=(np.log([250.0, 0.4]) - np.array([5.5, -1.0])) / np.array([0.5, 1.0]),
            z=params.z[:, 1:],
            sigma_vb=params.sigma_vb[1:],
            L_omega=np.eye(2),
            sigma_cmr=params.sigma_cmr,
        )
        np.testing.assert_allclose(
            ll[n_mix:], cmr_only.pointwise_log_likelihood(cmr_params), rtol=1e-10
        )

    def test_functional_form_matches_method(self, cmr_sim, cmr_config) -> None:
        params = cmr_sim.true_params(cmr_config)
        assert log_density(params, cmr_sim.data, cmr_config) == GrowthModel(
            cmr_sim.data, cmr_config
        ).log_density(params)


# ── prior_only ───────────────────────────────────────────────────────────────


class TestPriorOnly:
    """The likelihood contributes exactly zero; priors stay in."""

    def test_independent_of_observations(self, integrated_sim) -> None:
        config = ModelConfig(prior_only=True)
        params = integrated_sim.true_params(config)
        data = integrated_sim.data
        shuffled = GrowthData(
            n_sites=data.n_sites,
            mixture=MixtureData(length=data.mixture.length * 3.7, site=data.mixture.site),
            cmr=CmrData(
                site=data.cmr.site,
                length_capture=data.cmr.length_capture,
                length_recapture=data.cmr.length_recapture + 500.0,
                days=data.cmr.days,
            ),
        )
        assert log_density(params, data, config) == log_density(params, shuffled, config)

    def test_equals_log_prior(self, integrated_sim) -> None:
        config = ModelConfig(prior_only=True)
        model = GrowthModel(integrated_sim.data, config)
        params = integrated_sim.true_params(config)
        assert model.log_density(params) == pytest.approx(model.log_prior(params))

    @pytest.mark.parametrize(
        "field, value",
        [
            ("b0_raw", np.array([0.3, -0.2, 0.1])),
            ("sigma_vb", np.array([0.3, 0.2, 0.25])),
            ("sigma_mix", 0.4),
            ("sigma_cmr", 0.3),
        ],
    )
    def test_varies_with_prior_parameters(self, integrated_sim, field: str, value) -> None:
        config = ModelConfig(prior_only=True)
        params = integrated_sim.true_params(config)
        changed = replace(params, **{field: value})
        assert log_density(params, integrated_sim.data, config) != log_density(
            changed, integrated_sim.data, config
        )

    def test_varies_with_theta_and_z(self, integrated_sim) -> None:
        config = ModelConfig(prior_only=True, alpha=(2.0, 2.0, 2.0))
        params = integrated_sim.true_params(config)
        data = integrated_sim.data
        theta = np.tile([0.2, 0.2, 0.6], (data.n_sites, 1))
        assert log_density(params, data, config) != log_density(replace(params, theta=theta), data, config)
        assert log_density(params, data, config) != log_density(
            replace(params, z=params.z + 0.5), data, config
        )


# ── Degenerate proposals ─────────────────────────────────────────────────────


class TestInvalidProposals:
    """Structurally invalid parameters give -inf, never NaN, never an exception."""

    @pytest.mark.parametrize(
        "field, value",
        [
            ("sigma_mix", 0.0),
            ("sigma_mix", -0.1),
            ("sigma_cmr", np.nan),
            ("sigma_vb", np.array([0.1, 0.0, 0.1])),
            ("L_omega", np.diag([1.0, 1.0, 0.5])),
            ("b0_raw", np.array([np.inf, 0.0, 0.0])),
        ],
    )
    def test_minus_inf(self, integrated_sim, integrated_config, field: str, value) -> None:
        model = GrowthModel(integrated_sim.data, integrated_config)
        params = replace(integrated_sim.true_params(integrated_config), **{field: value})
        assert model.log_density(params) == -np.inf

    def test_non_simplex_theta(self, integrated_sim, integrated_config) -> None:
        model = GrowthModel(integrated_sim.data, integrated_config)
        params = integrated_sim.true_params(integrated_config)
        bad = params.theta.copy()
        bad[0] = [0.5, 0.5, 0.5]
        assert model.log_density(replace(params, theta=bad)) == -np.inf

    def test_overflowing_growth(self, integrated_sim, integrated_config) -> None:
        model = GrowthModel(integrated_sim.data, integrated_config)
        params = integrated_sim.true_params(integrated_config)
        huge = replace(params, b0_raw=np.array([0.0, 2000.0, 0.0]))
        assert model.log_density(huge) == -np.inf

    def test_wrong_shape_raises(self, integrated_sim, integrated_config) -> None:
        model = GrowthModel(integrated_sim.data, integrated_config)
        params = replace(integrated_sim.true_params(integrated_config), z=np.zeros((2, 3)))
        with pytest.raises(InvalidInputError, match="'z'"):
            model.log_density(params)


# ── Configuration errors ─────────────────────────────────────────────────────


class TestConfiguration:
    def test_variant_needs_its_sample(self, mixture_sim) -> None:
        with pytest.raises(ConfigurationError, match="CMR sample"):
            GrowthModel(mixture_sim.data, ModelConfig(variant=ModelVariant.INTEGRATED))

    def test_covariates_required(self, cmr_sim) -> None:
        with pytest.raises(ConfigurationError, match="covariates"):
            GrowthModel(cmr_sim.data, ModelConfig(variant=ModelVariant.CMR, use_covariates=True))

    def test_zero_observation_sample(self) -> None:
        data = GrowthData(
            n_sites=1,
            mixture=MixtureData(length=np.empty(0), site=np.empty(0, dtype=np.int64)),
            cmr=CmrData(site=[0], length_capture=[50.0], length_recapture=[60.0], days=[100.0]),
        )
        with pytest.raises(ConfigurationError, match="zero observations"):
            GrowthModel(data, ModelConfig(variant=ModelVariant.MIXTURE))


# ── Unconstrained entry point ───────────────────────────────────────────────


class TestUnconstrained:
    def test_includes_log_jacobian(self, integrated_sim, integrated_config) -> None:
        model = GrowthModel(integrated_sim.data, integrated_config)
        vector = model.layout.pack(integrated_sim.true_params(integrated_config))
        params, log_jac = model.layout.unpack(vector)
        assert model(vector) == pytest.approx(model.log_density(params) + log_jac)

    def test_random_vectors_never_nan(self, integrated_sim, integrated_config) -> None:
        model = GrowthModel(integrated_sim.data, integrated_config)
        rng = np.random.default_rng(11)
        for _ in range(25):
            value = model.log_density_unconstrained(rng.normal(0.0, 3.0, model.layout.size))
            assert not np.isnan(value)

    def test_covariate_model(self, sim_factory) -> None:
        sim = sim_factory("integrated", n_sites=6, n_covariates=2)
        config = ModelConfig(use_covariates=True)
        model = GrowthModel(sim.data, config)
        params = sim.true_params(config)
        assert params.beta.shape == (2, 2)
        assert np.isfinite(model.log_density(params))
        assert np.isfinite(model(model.layout.pack(params)))
