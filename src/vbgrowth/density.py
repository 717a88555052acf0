"""Joint log-density (priors + likelihoods) for the growth model family.

Pure and stateless: a GrowthModel holds only immutable data and configuration,
so independent proposals can be evaluated on any number of threads or
processes. Likelihoods are vectorized per observation and then reduced
(sum, or max-shifted log-sum-exp across age classes).

Failure semantics:
  - structurally invalid parameters (non-positive scales, non-simplex theta,
    invalid Cholesky factor, non-finite values, overflowing growth
    parameters) give -inf, so an inference engine can reject the proposal;
  - a NaN total raises DensityEvaluationError, since that is always a bug.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy import stats
from scipy.special import gammaln, logsumexp

from vbgrowth.config import SIMPLEX_TOL
from vbgrowth.data import GrowthData
from vbgrowth.errors import ConfigurationError, DensityEvaluationError, InvalidInputError
from vbgrowth.growth import age_class_means, recapture_mean_length
from vbgrowth.model_spec import ModelConfig
from vbgrowth.params import GrowthParams, ParameterLayout, site_growth_parameters
from vbgrowth.random_effects import is_cholesky_corr, lkj_cholesky_logpdf

LOG_2PI = float(np.log(2.0 * np.pi))


# ── Elementary densities ────────────────────────────────────────────────────


def lognormal_logpdf(y: ArrayLike, log_mu: ArrayLike, sigma: float | ArrayLike) -> NDArray:
    """log LogNormal(y | log_mu, sigma), elementwise with broadcasting."""
    log_y = np.log(np.asarray(y, dtype=np.float64))
    sigma = np.asarray(sigma, dtype=np.float64)
    resid = (log_y - np.asarray(log_mu, dtype=np.float64)) / sigma
    return -log_y - np.log(sigma) - 0.5 * LOG_2PI - 0.5 * resid * resid


def dirichlet_logpdf(theta: ArrayLike, alpha: ArrayLike) -> NDArray:
    """Row-wise Dirichlet log density of simplexes theta (J, A)."""
    theta = np.atleast_2d(np.asarray(theta, dtype=np.float64))
    alpha = np.asarray(alpha, dtype=np.float64)
    log_norm = gammaln(alpha.sum()) - gammaln(alpha).sum()
    return log_norm + np.sum((alpha - 1.0) * np.log(theta), axis=1)


# ── Likelihood terms ────────────────────────────────────────────────────────


def mixture_log_likelihood(
    y: ArrayLike,
    site: ArrayLike,
    log_theta: ArrayLike,
    log_mu: ArrayLike,
    sigma: float,
) -> NDArray[np.float64]:
    """Per-observation log-likelihood with the latent age class summed out.

    log p(y_i) = logsumexp_a [ log theta[site_i, a] + lognormal(y_i | log_mu[site_i, a], sigma) ]

    log_theta and log_mu are (J, A). The reduction subtracts the per-row
    maximum before exponentiating, so a dominant class never overflows and
    the minor classes never underflow the total to -inf.
    """
    y = np.asarray(y, dtype=np.float64)
    site = np.asarray(site, dtype=np.int64)
    log_theta = np.asarray(log_theta, dtype=np.float64)
    log_mu = np.asarray(log_mu, dtype=np.float64)
    terms = log_theta[site] + lognormal_logpdf(y[:, None], log_mu[site], sigma)
    return logsumexp(terms, axis=1)


def cmr_log_likelihood(
    y: ArrayLike,
    log_mu: ArrayLike,
    sigma: float,
) -> NDArray[np.float64]:
    """Per-observation recapture log-likelihood, independent across fish."""
    return lognormal_logpdf(y, log_mu, sigma)


# ── Model ───────────────────────────────────────────────────────────────────


class GrowthModel:
    """Density engine for one (data, configuration) pair.

    Exposes log_density on natural-scale GrowthParams and
    log_density_unconstrained on the flat vector described by ``layout``;
    the latter is the callable an external inference engine queries.
    """

    def __init__(self, data: GrowthData, config: ModelConfig) -> None:
        variant = config.variant
        if variant.uses_mixture and data.mixture is None:
            msg = f"The {variant.value} model needs a mixture sample"
            raise ConfigurationError(msg)
        if variant.uses_cmr and data.cmr is None:
            msg = f"The {variant.value} model needs a CMR sample"
            raise ConfigurationError(msg)
        if variant.uses_mixture and data.n_mixture == 0:
            msg = "Mixture sample has zero observations"
            raise ConfigurationError(msg)
        if variant.uses_cmr and data.n_cmr == 0:
            msg = "CMR sample has zero observations"
            raise ConfigurationError(msg)
        if config.use_covariates and data.covariates is None:
            msg = "use_covariates=True but the dataset has no site covariates"
            raise ConfigurationError(msg)

        self.data = data
        self.config = config
        n_cov = data.covariates.n_covariates if config.use_covariates else 0
        self.layout = ParameterLayout(config, data.n_sites, n_cov)

    # -- structure ----------------------------------------------------------

    @property
    def n_obs(self) -> int:
        """Length of the pointwise log-likelihood vector (mixture first, then CMR)."""
        n = 0
        if self.config.variant.uses_mixture:
            n += self.data.n_mixture
        if self.config.variant.uses_cmr:
            n += self.data.n_cmr
        return n

    def _check_shapes(self, params: GrowthParams) -> None:
        K = self.config.n_components
        J = self.data.n_sites
        expected = {
            "b0_raw": (K,),
            "z": (J, K),
            "sigma_vb": (K,),
            "L_omega": (K, K),
        }
        if self.config.variant.uses_mixture:
            expected["theta"] = (J, self.config.n_age_classes)
        if self.config.use_covariates:
            expected["beta"] = (self.layout.n_covariates, 2)
        for name, shape in expected.items():
            value = getattr(params, name)
            if value is None or np.shape(value) != shape:
                got = None if value is None else np.shape(value)
                msg = f"Parameter {name!r} must have shape {shape}; got {got}"
                raise InvalidInputError(msg)

    def is_valid(self, params: GrowthParams) -> bool:
        """Structural validity of a proposal (shape errors raise instead)."""
        self._check_shapes(params)
        variant = self.config.variant

        arrays = [params.b0_raw, params.z, params.sigma_vb, params.L_omega]
        if self.config.use_covariates:
            arrays.append(params.beta)
        if not all(np.all(np.isfinite(a)) for a in arrays):
            return False
        if np.any(params.sigma_vb <= 0):
            return False
        for sigma, used in ((params.sigma_mix, variant.uses_mixture), (params.sigma_cmr, variant.uses_cmr)):
            if used and (sigma is None or not np.isfinite(sigma) or sigma <= 0):
                return False
        if not is_cholesky_corr(params.L_omega):
            return False
        if variant.uses_mixture:
            theta = params.theta
            if not np.all(np.isfinite(theta)) or np.any(theta <= 0):
                return False
            if np.any(np.abs(theta.sum(axis=1) - 1.0) > SIMPLEX_TOL):
                return False
        return True

    # -- priors -------------------------------------------------------------

    def log_prior(self, params: GrowthParams) -> float:
        """Sum of all prior terms. Assumes is_valid(params)."""
        config = self.config
        priors = config.priors
        lp = float(np.sum(stats.norm.logpdf(params.b0_raw)))
        if config.use_covariates:
            lp += float(np.sum(priors.beta.logpdf(params.beta)))
        lp += float(np.sum(stats.norm.logpdf(params.z)))
        lp += float(np.sum(priors.sigma_vb.logpdf(params.sigma_vb)))
        lp += lkj_cholesky_logpdf(params.L_omega, config.eta)
        if config.variant.uses_mixture:
            lp += float(priors.sigma_mix.logpdf(params.sigma_mix))
            lp += float(np.sum(dirichlet_logpdf(params.theta, config.alpha_array)))
        if config.variant.uses_cmr:
            lp += float(priors.sigma_cmr.logpdf(params.sigma_cmr))
        return lp

    # -- likelihood ---------------------------------------------------------

    def _log_means(self, params: GrowthParams) -> tuple[NDArray | None, NDArray | None]:
        """(J, A) mixture log-means and per-fish CMR log-means, or None if unused."""
        growth = site_growth_parameters(params, self.config, self.data.covariates)
        log_mu_mix = log_mu_cmr = None
        if self.config.variant.uses_mixture:
            mu = age_class_means(growth.L0, growth.Linf, growth.k, self.config.age_array)
            log_mu_mix = np.log(mu)
        if self.config.variant.uses_cmr:
            cmr = self.data.cmr
            mu = recapture_mean_length(
                cmr.length_capture, growth.Linf[cmr.site], growth.k[cmr.site], cmr.days
            )
            log_mu_cmr = np.log(mu)
        return log_mu_mix, log_mu_cmr

    def pointwise_log_likelihood(self, params: GrowthParams) -> NDArray[np.float64]:
        """Per-observation log-likelihood, ordered [mixture..., CMR...]."""
        parts: list[NDArray[np.float64]] = []
        with np.errstate(over="ignore", under="ignore", divide="ignore", invalid="ignore"):
            log_mu_mix, log_mu_cmr = self._log_means(params)
            if log_mu_mix is not None:
                mix = self.data.mixture
                parts.append(
                    mixture_log_likelihood(
                        mix.length, mix.site, np.log(params.theta), log_mu_mix, params.sigma_mix
                    )
                )
            if log_mu_cmr is not None:
                parts.append(
                    cmr_log_likelihood(self.data.cmr.length_recapture, log_mu_cmr, params.sigma_cmr)
                )
        return np.concatenate(parts)

    def log_likelihood(self, params: GrowthParams) -> float:
        return float(np.sum(self.pointwise_log_likelihood(params)))

    # -- joint density ------------------------------------------------------

    def log_density(self, params: GrowthParams) -> float:
        """log p(params) + log p(data | params) on the natural scale.

        With config.prior_only the likelihood contributes exactly zero.
        """
        if not self.is_valid(params):
            return -np.inf

        # exp() of the site log-parameters may overflow for wild proposals
        growth = site_growth_parameters(params, self.config, self.data.covariates)
        for values in (growth.L0, growth.Linf, growth.k):
            if values is not None and not np.all(np.isfinite(values) & (values > 0)):
                return -np.inf

        lp = self.log_prior(params)
        lik = 0.0 if self.config.prior_only else self.log_likelihood(params)
        total = lp + lik
        if np.isnan(total):
            msg = f"log_density produced NaN (prior={lp}, likelihood={lik})"
            raise DensityEvaluationError(msg)
        return float(total)

    def log_density_unconstrained(self, vector: ArrayLike) -> float:
        """Density of the flat unconstrained vector, including the log-Jacobian."""
        params, log_jac = self.layout.unpack(vector)
        lp = self.log_density(params)
        if lp == -np.inf:
            return lp
        if not np.isfinite(log_jac):
            return -np.inf
        return lp + log_jac

    __call__ = log_density_unconstrained

    def generated_quantities(self, params: GrowthParams, rng: np.random.Generator):
        """Replicated observations and pointwise log-likelihood for one draw."""
        from vbgrowth.predictive import generated_quantities

        return generated_quantities(params, self.data, self.config, rng)


def log_density(params: GrowthParams, data: GrowthData, config: ModelConfig) -> float:
    """Functional form of GrowthModel(data, config).log_density(params)."""
    return GrowthModel(data, config).log_density(params)
