"""Synthetic growth datasets from known parameters.

Every function takes an explicit numpy Generator; nothing touches global
random state, so the same seed gives the same dataset and concurrent
simulations are independent.

Draw order inside simulate_dataset is fixed (site effects, covariates,
theta, mixture sample, CMR sample), so adding a CMR sample never changes
the mixture sample drawn from the same seed.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np
from numpy.typing import NDArray

from vbgrowth.data import CmrData, GrowthData, MixtureData, SiteCovariates
from vbgrowth.errors import ConfigurationError
from vbgrowth.growth import age_class_means, recapture_mean_length
from vbgrowth.model_spec import ModelConfig, ModelVariant
from vbgrowth.params import GrowthParams, SiteGrowth
from vbgrowth.random_effects import correlated_effects


@dataclass(frozen=True)
class TrueParameters:
    """Data-generating values for a simulation study.

    Growth parameters and sigma_vb are given for all three components
    (L0, Linf, k); the CMR-only variant uses the trailing two. omega is the
    3 x 3 correlation matrix of the site effects. Mixture proportions come
    from ``theta`` (shared (A,) or per-site (J, A)), else are drawn per site
    from Dirichlet(``alpha``), else are uniform.
    """

    L0: float = 25.0
    Linf: float = 250.0
    k: float = 0.4
    sigma_vb: tuple[float, float, float] = (0.1, 0.1, 0.1)
    omega: NDArray[np.float64] = field(default_factory=lambda: np.eye(3))
    sigma_mix: float = 0.1
    sigma_cmr: float = 0.05
    theta: NDArray[np.float64] | None = None
    alpha: tuple[float, ...] | None = None
    beta: NDArray[np.float64] | None = None

    def __post_init__(self) -> None:
        for name in ("L0", "Linf", "k", "sigma_mix", "sigma_cmr"):
            value = getattr(self, name)
            if not np.isfinite(value) or value <= 0:
                msg = f"TrueParameters.{name} must be finite and positive; got {value}"
                raise ConfigurationError(msg)
        sigma_vb = np.asarray(self.sigma_vb, dtype=np.float64)
        if sigma_vb.shape != (3,) or np.any(sigma_vb <= 0):
            msg = f"sigma_vb must be 3 positive values; got {self.sigma_vb}"
            raise ConfigurationError(msg)
        omega = np.asarray(self.omega, dtype=np.float64)
        if omega.shape != (3, 3) or not np.allclose(np.diag(omega), 1.0):
            msg = "omega must be a 3 x 3 correlation matrix"
            raise ConfigurationError(msg)
        try:
            np.linalg.cholesky(omega)
        except np.linalg.LinAlgError as exc:
            msg = "omega is not positive definite"
            raise ConfigurationError(msg) from exc
        object.__setattr__(self, "omega", omega)
        if self.theta is not None:
            theta = np.asarray(self.theta, dtype=np.float64)
            if theta.ndim not in (1, 2):
                msg = f"theta must be shaped (A,) or (J, A); got {theta.shape}"
                raise ConfigurationError(msg)
            if np.any(theta <= 0) or not np.allclose(theta.sum(axis=-1), 1.0):
                msg = "theta rows must be strictly positive simplexes"
                raise ConfigurationError(msg)
            object.__setattr__(self, "theta", theta)
        if self.alpha is not None and any(a <= 0 for a in self.alpha):
            msg = f"Dirichlet alpha must be positive; got {self.alpha}"
            raise ConfigurationError(msg)
        if self.beta is not None:
            object.__setattr__(self, "beta", np.asarray(self.beta, dtype=np.float64))

    def component_slice(self, variant: ModelVariant) -> slice:
        return slice(3 - variant.n_components, 3)

    def log_means(self, variant: ModelVariant) -> NDArray[np.float64]:
        """Global log growth parameters for the variant's components."""
        full = np.log([self.L0, self.Linf, self.k])
        return full[self.component_slice(variant)]

    def scales(self, variant: ModelVariant) -> NDArray[np.float64]:
        return np.asarray(self.sigma_vb, dtype=np.float64)[self.component_slice(variant)]

    def cholesky(self, variant: ModelVariant) -> NDArray[np.float64]:
        """Cholesky factor of the variant's (sub-)correlation matrix."""
        sl = self.component_slice(variant)
        return np.linalg.cholesky(self.omega[sl, sl])


@dataclass(frozen=True)
class SimulationConfig:
    """Design of a synthetic dataset.

    n_mixture is either a total (sites drawn uniformly, or by site_weights)
    or one exact count per site. Capture lengths are uniform on capture_range
    unless capture_sampler is given: a callable (rng, n) -> n positive
    lengths, e.g. lognormal_capture_lengths(). Elapsed days are uniform
    integers on days_range and fixed when both bounds are equal.
    """

    n_sites: int = 30
    n_mixture: int | Sequence[int] = 1000
    site_weights: Sequence[float] | None = None
    n_cmr: int = 200
    capture_range: tuple[float, float] = (40.0, 200.0)
    capture_sampler: Callable[[np.random.Generator, int], NDArray[np.float64]] | None = None
    days_range: tuple[int, int] = (180, 730)
    n_age_classes: int = 3
    ages: Sequence[float] | None = None
    n_covariates: int = 0

    def __post_init__(self) -> None:
        if self.n_sites < 1:
            msg = f"Simulation needs at least one site; got n_sites={self.n_sites}"
            raise ConfigurationError(msg)
        if np.ndim(self.n_mixture) == 0:
            if not np.issubdtype(np.asarray(self.n_mixture).dtype, np.integer):
                msg = f"n_mixture must be an integer; got {self.n_mixture!r}"
                raise ConfigurationError(msg)
            object.__setattr__(self, "n_mixture", int(self.n_mixture))
            if self.n_mixture < 0:
                msg = f"n_mixture must be >= 0; got {self.n_mixture}"
                raise ConfigurationError(msg)
        else:
            counts = tuple(int(c) for c in self.n_mixture)
            if len(counts) != self.n_sites or any(c < 0 for c in counts):
                msg = f"Per-site n_mixture needs {self.n_sites} non-negative counts; got {counts}"
                raise ConfigurationError(msg)
            if self.site_weights is not None:
                msg = "site_weights cannot be combined with per-site n_mixture counts"
                raise ConfigurationError(msg)
            object.__setattr__(self, "n_mixture", counts)
        if self.n_cmr < 0:
            msg = f"n_cmr must be >= 0; got {self.n_cmr}"
            raise ConfigurationError(msg)
        if self.total_mixture == 0 and self.n_cmr == 0:
            msg = "Simulation with zero observations"
            raise ConfigurationError(msg)
        if self.site_weights is not None:
            weights = np.asarray(self.site_weights, dtype=np.float64)
            if weights.shape != (self.n_sites,) or np.any(weights < 0) or weights.sum() <= 0:
                msg = f"site_weights must be {self.n_sites} non-negative values with a positive sum"
                raise ConfigurationError(msg)
        lo, hi = self.capture_range
        if not 0 < lo <= hi:
            msg = f"capture_range must satisfy 0 < low <= high; got {self.capture_range}"
            raise ConfigurationError(msg)
        d_lo, d_hi = self.days_range
        if not 0 <= d_lo <= d_hi:
            msg = f"days_range must satisfy 0 <= low <= high; got {self.days_range}"
            raise ConfigurationError(msg)
        if self.n_age_classes < 1:
            msg = f"n_age_classes must be >= 1; got {self.n_age_classes}"
            raise ConfigurationError(msg)
        if self.ages is not None and len(self.ages) != self.n_age_classes:
            msg = f"ages has length {len(self.ages)}, expected {self.n_age_classes}"
            raise ConfigurationError(msg)
        if self.n_covariates < 0:
            msg = f"n_covariates must be >= 0; got {self.n_covariates}"
            raise ConfigurationError(msg)
        if self.n_covariates and self.n_sites < 2:
            msg = "Covariates cannot be standardized with fewer than 2 sites"
            raise ConfigurationError(msg)

    @property
    def total_mixture(self) -> int:
        if np.ndim(self.n_mixture) == 0:
            return int(self.n_mixture)
        return int(sum(self.n_mixture))

    @property
    def age_array(self) -> NDArray[np.float64]:
        if self.ages is None:
            return np.arange(self.n_age_classes, dtype=np.float64)
        return np.asarray(self.ages, dtype=np.float64)


@dataclass(frozen=True)
class SimulatedDataset:
    """A simulated GrowthData together with the latent truth that produced it."""

    data: GrowthData
    variant: ModelVariant
    truth: TrueParameters
    z: NDArray[np.float64]
    site_growth: SiteGrowth
    theta: NDArray[np.float64] | None = None
    comp: NDArray[np.int64] | None = None

    def true_params(self, config: ModelConfig) -> GrowthParams:
        """The generating values expressed in the model's non-centered parameters."""
        variant = self.variant
        loc = config.priors.intercept_loc(variant)
        scale = config.priors.intercept_scale(variant)
        return GrowthParams(
            b0_raw=(self.truth.log_means(variant) - loc) / scale,
            z=self.z,
            sigma_vb=self.truth.scales(variant),
            L_omega=self.truth.cholesky(variant),
            sigma_mix=self.truth.sigma_mix if variant.uses_mixture else None,
            sigma_cmr=self.truth.sigma_cmr if variant.uses_cmr else None,
            theta=self.theta,
            beta=self.truth.beta if config.use_covariates else None,
        )


# ── Components ──────────────────────────────────────────────────────────────


def simulate_site_effects(
    truth: TrueParameters,
    n_sites: int,
    rng: np.random.Generator,
    variant: ModelVariant = ModelVariant.INTEGRATED,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Draw raw z (J, K) and the correlated, scaled site deviations eps (J, K)."""
    if n_sites < 1:
        msg = f"n_sites must be >= 1; got {n_sites}"
        raise ConfigurationError(msg)
    z = rng.standard_normal((n_sites, variant.n_components))
    eps = correlated_effects(z, truth.cholesky(variant), truth.scales(variant))
    return z, eps


def _site_theta(
    truth: TrueParameters, n_sites: int, n_age_classes: int, rng: np.random.Generator
) -> NDArray[np.float64]:
    if truth.theta is not None:
        if truth.theta.shape[-1] != n_age_classes:
            msg = f"theta has {truth.theta.shape[-1]} classes, expected {n_age_classes}"
            raise ConfigurationError(msg)
        if truth.theta.ndim == 2 and truth.theta.shape[0] != n_sites:
            msg = f"Per-site theta has {truth.theta.shape[0]} rows, expected {n_sites} sites"
            raise ConfigurationError(msg)
        theta = np.broadcast_to(truth.theta, (n_sites, n_age_classes)).copy()
    elif truth.alpha is not None:
        if len(truth.alpha) != n_age_classes:
            msg = f"alpha has length {len(truth.alpha)}, expected {n_age_classes}"
            raise ConfigurationError(msg)
        theta = rng.dirichlet(np.asarray(truth.alpha, dtype=np.float64), size=n_sites)
    else:
        theta = np.full((n_sites, n_age_classes), 1.0 / n_age_classes)
    return theta


def _assign_sites(sim_config: SimulationConfig, n: int, rng: np.random.Generator) -> NDArray[np.int64]:
    J = sim_config.n_sites
    p = None
    if sim_config.site_weights is not None:
        weights = np.asarray(sim_config.site_weights, dtype=np.float64)
        p = weights / weights.sum()
    return rng.choice(J, size=n, p=p).astype(np.int64)


def simulate_mixture(
    site_growth: SiteGrowth,
    theta: NDArray[np.float64],
    sigma_mix: float,
    sim_config: SimulationConfig,
    rng: np.random.Generator,
) -> tuple[MixtureData, NDArray[np.int64]]:
    """Length-frequency sample and the latent age class of every fish."""
    if np.ndim(sim_config.n_mixture) == 0:
        site = _assign_sites(sim_config, sim_config.n_mixture, rng)
    else:
        site = np.repeat(np.arange(sim_config.n_sites), sim_config.n_mixture).astype(np.int64)
    n = site.size
    if n == 0:
        msg = "Mixture simulation with zero observations"
        raise ConfigurationError(msg)

    # Categorical(theta_j) by inverse CDF
    cdf = np.cumsum(theta[site], axis=1)
    u = rng.random(n)
    comp = np.minimum((u[:, None] > cdf).sum(axis=1), theta.shape[1] - 1).astype(np.int64)

    mu = age_class_means(site_growth.L0, site_growth.Linf, site_growth.k, sim_config.age_array)
    length = rng.lognormal(np.log(mu[site, comp]), sigma_mix)
    return MixtureData(length=length, site=site), comp


def lognormal_capture_lengths(
    median: float, sigma: float
) -> Callable[[np.random.Generator, int], NDArray[np.float64]]:
    """Capture-length sampler: LogNormal(log(median), sigma)."""
    if not median > 0 or not sigma > 0:
        msg = f"Lognormal capture lengths need median > 0 and sigma > 0; got {median}, {sigma}"
        raise ConfigurationError(msg)

    def sample(rng: np.random.Generator, n: int) -> NDArray[np.float64]:
        return rng.lognormal(np.log(median), sigma, size=n)

    return sample


def _capture_lengths(
    sim_config: SimulationConfig, n: int, rng: np.random.Generator
) -> NDArray[np.float64]:
    if sim_config.capture_sampler is None:
        lo, hi = sim_config.capture_range
        return rng.uniform(lo, hi, size=n)
    lengths = np.asarray(sim_config.capture_sampler(rng, n), dtype=np.float64)
    if lengths.shape != (n,) or not np.all(np.isfinite(lengths)) or np.any(lengths <= 0):
        msg = f"capture_sampler must return {n} finite positive lengths"
        raise ConfigurationError(msg)
    return lengths


def simulate_cmr(
    site_growth: SiteGrowth,
    sigma_cmr: float,
    sim_config: SimulationConfig,
    rng: np.random.Generator,
) -> CmrData:
    """Capture-recapture pairs with uniform elapsed days.

    Capture lengths follow capture_sampler when set, else Uniform(capture_range).
    """
    n = sim_config.n_cmr
    if n == 0:
        msg = "CMR simulation with zero observations"
        raise ConfigurationError(msg)
    site = _assign_sites(sim_config, n, rng)
    length_capture = _capture_lengths(sim_config, n, rng)
    d_lo, d_hi = sim_config.days_range
    if d_lo == d_hi:
        days = np.full(n, float(d_lo))
    else:
        days = rng.integers(d_lo, d_hi, size=n, endpoint=True).astype(np.float64)
    mu = recapture_mean_length(length_capture, site_growth.Linf[site], site_growth.k[site], days)
    length_recapture = rng.lognormal(np.log(mu), sigma_cmr)
    return CmrData(
        site=site,
        length_capture=length_capture,
        length_recapture=length_recapture,
        days=days,
    )


# ── Full dataset ────────────────────────────────────────────────────────────


def simulate_dataset(
    truth: TrueParameters,
    sim_config: SimulationConfig,
    variant: ModelVariant | str,
    rng: np.random.Generator,
) -> SimulatedDataset:
    """Simulate the samples a model variant consumes.

    In the integrated variant the mixture and CMR samples share the same
    sites and site effects.
    """
    variant = ModelVariant(variant)
    J = sim_config.n_sites
    if variant.uses_mixture and sim_config.total_mixture == 0:
        msg = f"The {variant.value} variant needs n_mixture > 0"
        raise ConfigurationError(msg)
    if variant.uses_cmr and sim_config.n_cmr == 0:
        msg = f"The {variant.value} variant needs n_cmr > 0"
        raise ConfigurationError(msg)

    z, eps = simulate_site_effects(truth, J, rng, variant)
    log_site = truth.log_means(variant)[None, :] + eps

    covariates = None
    if sim_config.n_covariates:
        P = sim_config.n_covariates
        if truth.beta is None or truth.beta.shape != (P, 2):
            msg = f"Covariate simulation needs beta of shape ({P}, 2)"
            raise ConfigurationError(msg)
        raw = rng.standard_normal((J, P))
        covariates = SiteCovariates.standardize(raw, [f"x{p + 1}" for p in range(P)])
        log_site[:, -2:] += covariates.values @ truth.beta

    natural = np.exp(log_site)
    if variant.uses_mixture:
        site_growth = SiteGrowth(L0=natural[:, 0], Linf=natural[:, 1], k=natural[:, 2])
    else:
        site_growth = SiteGrowth(L0=None, Linf=natural[:, 0], k=natural[:, 1])

    mixture = cmr = theta = comp = None
    if variant.uses_mixture:
        theta = _site_theta(truth, J, sim_config.n_age_classes, rng)
        mixture, comp = simulate_mixture(site_growth, theta, truth.sigma_mix, sim_config, rng)
    if variant.uses_cmr:
        cmr = simulate_cmr(site_growth, truth.sigma_cmr, sim_config, rng)

    data = GrowthData(n_sites=J, mixture=mixture, cmr=cmr, covariates=covariates)
    return SimulatedDataset(
        data=data,
        variant=variant,
        truth=truth,
        z=z,
        site_growth=site_growth,
        theta=theta,
        comp=comp,
    )
