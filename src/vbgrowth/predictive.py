"""Posterior predictive replicates and pointwise log-likelihood. Pure functions, no I/O.

All arrays follow one observation ordering, [mixture..., CMR...], the same
ordering the density engine uses, so log_lik from every chain lines up
exactly for PSIS-LOO and LOO-PIT.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import arviz as az
import numpy as np
import xarray as xr
from numpy.typing import ArrayLike, NDArray

from vbgrowth.data import GrowthData
from vbgrowth.density import GrowthModel
from vbgrowth.errors import InvalidInputError
from vbgrowth.growth import age_class_means, recapture_mean_length
from vbgrowth.model_spec import ModelConfig, ModelVariant
from vbgrowth.params import GrowthParams, ParameterLayout, site_growth_parameters


@dataclass(frozen=True)
class GeneratedQuantities:
    """Replicates and log-likelihood for one parameter draw."""

    log_lik: NDArray[np.float64]
    comp: NDArray[np.int64] | None = None
    y_rep_mixture: NDArray[np.float64] | None = None
    y_rep_cmr: NDArray[np.float64] | None = None

    @property
    def y_rep(self) -> NDArray[np.float64]:
        parts = [p for p in (self.y_rep_mixture, self.y_rep_cmr) if p is not None]
        return np.concatenate(parts)


@dataclass(frozen=True)
class PosteriorPredictiveDraws:
    """Replicates and log-likelihood over a chain x draw grid, shaped (chain, draw, obs)."""

    y_rep: NDArray[np.float64]
    log_lik: NDArray[np.float64]
    n_mixture: int
    comp: NDArray[np.int64] | None = None

    @property
    def n_chains(self) -> int:
        return int(self.y_rep.shape[0])

    @property
    def n_draws(self) -> int:
        return int(self.y_rep.shape[1])

    @property
    def n_obs(self) -> int:
        return int(self.y_rep.shape[2])

    def to_inference_data(self, observed: ArrayLike) -> az.InferenceData:
        """ArviZ container with posterior_predictive, log_likelihood, observed_data.

        Every group uses dims (chain, draw, obs) with the variable name ``y``.
        """
        observed = np.asarray(observed, dtype=np.float64)
        if observed.shape != (self.n_obs,):
            msg = f"observed has shape {observed.shape}; expected ({self.n_obs},)"
            raise ValueError(msg)
        coords = {
            "chain": np.arange(self.n_chains),
            "draw": np.arange(self.n_draws),
            "obs": np.arange(self.n_obs),
        }
        dims = ["chain", "draw", "obs"]
        return az.InferenceData(
            posterior_predictive=xr.Dataset({"y": (dims, self.y_rep)}, coords=coords),
            log_likelihood=xr.Dataset({"y": (dims, self.log_lik)}, coords=coords),
            observed_data=xr.Dataset({"y": (["obs"], observed)}, coords={"obs": coords["obs"]}),
        )


def observed_vector(data: GrowthData, variant: ModelVariant | str | None = None) -> NDArray[np.float64]:
    """Observed lengths in log-likelihood order: mixture lengths, then recapture lengths.

    With a variant, only the samples that variant consumes are included.
    """
    variant = ModelVariant(variant) if variant is not None else None
    parts: list[NDArray[np.float64]] = []
    if data.mixture is not None and (variant is None or variant.uses_mixture):
        parts.append(np.asarray(data.mixture.length, dtype=np.float64))
    if data.cmr is not None and (variant is None or variant.uses_cmr):
        parts.append(np.asarray(data.cmr.length_recapture, dtype=np.float64))
    return np.concatenate(parts)


def _draw_classes(theta_rows: NDArray[np.float64], rng: np.random.Generator) -> NDArray[np.int64]:
    cdf = np.cumsum(theta_rows, axis=1)
    u = rng.random(theta_rows.shape[0])
    comp = (u[:, None] > cdf).sum(axis=1)
    return np.minimum(comp, theta_rows.shape[1] - 1).astype(np.int64)


def _generate(model: GrowthModel, params: GrowthParams, rng: np.random.Generator) -> GeneratedQuantities:
    if not model.is_valid(params):
        msg = "Cannot generate quantities from a structurally invalid parameter draw"
        raise InvalidInputError(msg)
    data, config = model.data, model.config

    # Class-marginal log-likelihood; never conditioned on the sampled comp
    log_lik = model.pointwise_log_likelihood(params)
    growth = site_growth_parameters(params, config, data.covariates)

    comp = y_rep_mix = y_rep_cmr = None
    if config.variant.uses_mixture:
        site = data.mixture.site
        comp = _draw_classes(params.theta[site], rng)
        mu = age_class_means(growth.L0, growth.Linf, growth.k, config.age_array)
        y_rep_mix = rng.lognormal(np.log(mu[site, comp]), params.sigma_mix)
    if config.variant.uses_cmr:
        cmr = data.cmr
        mu = recapture_mean_length(
            cmr.length_capture, growth.Linf[cmr.site], growth.k[cmr.site], cmr.days
        )
        y_rep_cmr = rng.lognormal(np.log(mu), params.sigma_cmr)

    return GeneratedQuantities(
        log_lik=log_lik,
        comp=comp,
        y_rep_mixture=y_rep_mix,
        y_rep_cmr=y_rep_cmr,
    )


def generated_quantities(
    params: GrowthParams,
    data: GrowthData,
    config: ModelConfig,
    rng: np.random.Generator,
) -> GeneratedQuantities:
    """Sample age classes and replicated lengths for one draw, plus its log-likelihood."""
    return _generate(GrowthModel(data, config), params, rng)


def posterior_generated_quantities(
    draws: Sequence[Sequence[GrowthParams]],
    data: GrowthData,
    config: ModelConfig,
    rng: np.random.Generator,
) -> PosteriorPredictiveDraws:
    """Generated quantities for every draw of every chain.

    ``draws[c][d]`` is the parameter snapshot of draw d in chain c. All chains
    must have the same number of draws.
    """
    n_chains = len(draws)
    if n_chains == 0:
        msg = "No posterior draws supplied"
        raise ValueError(msg)
    n_draws = len(draws[0])
    if n_draws == 0 or any(len(chain) != n_draws for chain in draws):
        msg = "Every chain must hold the same, non-zero number of draws"
        raise ValueError(msg)

    model = GrowthModel(data, config)
    n_obs = model.n_obs
    n_mix = data.n_mixture if config.variant.uses_mixture else 0
    y_rep = np.empty((n_chains, n_draws, n_obs))
    log_lik = np.empty((n_chains, n_draws, n_obs))
    comp = np.empty((n_chains, n_draws, n_mix), dtype=np.int64) if n_mix else None

    for c, chain in enumerate(draws):
        for d, params in enumerate(chain):
            gq = _generate(model, params, rng)
            y_rep[c, d] = gq.y_rep
            log_lik[c, d] = gq.log_lik
            if comp is not None:
                comp[c, d] = gq.comp

    return PosteriorPredictiveDraws(y_rep=y_rep, log_lik=log_lik, n_mixture=n_mix, comp=comp)


def unpack_draws(layout: ParameterLayout, array: ArrayLike) -> list[list[GrowthParams]]:
    """Engine output (chain, draw, layout.size) -> nested list of GrowthParams."""
    array = np.asarray(array, dtype=np.float64)
    if array.ndim != 3 or array.shape[2] != layout.size:
        msg = f"Expected draws shaped (chain, draw, {layout.size}); got {array.shape}"
        raise ValueError(msg)
    return [[layout.unpack(vector)[0] for vector in chain] for chain in array]
