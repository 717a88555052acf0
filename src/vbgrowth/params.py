"""Parameter containers and the flat unconstrained layout an inference engine sees.

A draw is a flat float vector. ParameterLayout documents its blocks and maps
it to natural-scale GrowthParams plus the log-Jacobian of the transforms:

    block        natural shape   transform
    b0_raw       (K,)            identity
    beta         (P, 2)          identity            (covariate models only)
    z            (J, K)          identity
    sigma_vb     (K,)            exp
    L_omega      (K, K)          tanh-CPC Cholesky correlation, K(K-1)/2 free
    sigma_mix    ()              exp                 (mixture / integrated)
    sigma_cmr    ()              exp                 (cmr / integrated)
    theta        (J, A)          stick-breaking simplex, A-1 free per site

Transform conventions follow Stan, so unconstrained draws from Stan-like
engines unpack unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import polars as pl
from numpy.typing import ArrayLike, NDArray
from scipy.special import expit, logit

from vbgrowth.data import SiteCovariates
from vbgrowth.model_spec import ModelConfig
from vbgrowth.random_effects import (
    cholesky_corr_constrain,
    cholesky_corr_unconstrain,
    correlated_effects,
    n_cholesky_free,
)


@dataclass(frozen=True)
class GrowthParams:
    """One natural-scale parameter snapshot (one posterior draw)."""

    b0_raw: NDArray[np.float64]
    z: NDArray[np.float64]
    sigma_vb: NDArray[np.float64]
    L_omega: NDArray[np.float64]
    sigma_mix: float | None = None
    sigma_cmr: float | None = None
    theta: NDArray[np.float64] | None = None
    beta: NDArray[np.float64] | None = None

    def __post_init__(self) -> None:
        for name in ("b0_raw", "z", "sigma_vb", "L_omega", "theta", "beta"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, np.asarray(value, dtype=np.float64))
        object.__setattr__(self, "z", np.atleast_2d(self.z))


@dataclass(frozen=True)
class SiteGrowth:
    """Per-site natural-scale VBGF parameters. L0 is None for the CMR-only model."""

    L0: NDArray[np.float64] | None
    Linf: NDArray[np.float64]
    k: NDArray[np.float64]


def intercepts(params: GrowthParams, config: ModelConfig) -> NDArray[np.float64]:
    """Non-centered intercepts: b0 = loc + scale * b0_raw (log scale)."""
    loc = config.priors.intercept_loc(config.variant)
    scale = config.priors.intercept_scale(config.variant)
    return loc + scale * params.b0_raw


def site_log_parameters(
    params: GrowthParams,
    config: ModelConfig,
    covariates: SiteCovariates | None = None,
) -> NDArray[np.float64]:
    """Per-site log growth parameters (J, K): b0 + eps_j (+ X_j beta on Linf, k)."""
    eps = correlated_effects(params.z, params.L_omega, params.sigma_vb)
    log_site = intercepts(params, config)[None, :] + eps
    if config.use_covariates:
        if covariates is None or params.beta is None:
            msg = "Covariate model needs both site covariates and beta"
            raise ValueError(msg)
        # Linf and k are always the last two components
        log_site = log_site.copy()
        log_site[:, -2:] += covariates.values @ params.beta
    return log_site


def site_growth_parameters(
    params: GrowthParams,
    config: ModelConfig,
    covariates: SiteCovariates | None = None,
) -> SiteGrowth:
    with np.errstate(over="ignore"):
        natural = np.exp(site_log_parameters(params, config, covariates))
    if config.variant.uses_mixture:
        return SiteGrowth(L0=natural[:, 0], Linf=natural[:, 1], k=natural[:, 2])
    return SiteGrowth(L0=None, Linf=natural[:, 0], k=natural[:, 1])


# ── Simplex transform ────────────────────────────────────────────────────────


def simplex_constrain(y: ArrayLike) -> tuple[NDArray[np.float64], float]:
    """Row-wise stick-breaking: (J, A-1) reals -> (J, A) simplexes, log-Jacobian."""
    y = np.atleast_2d(np.asarray(y, dtype=np.float64))
    n_rows, km1 = y.shape
    x = np.empty((n_rows, km1 + 1))
    stick = np.ones(n_rows)
    log_jac = 0.0
    with np.errstate(divide="ignore"):
        for k in range(km1):
            adj = y[:, k] - np.log(km1 - k)
            z_k = expit(adj)
            x[:, k] = stick * z_k
            log_jac += float(
                np.sum(np.log(stick) - np.logaddexp(0.0, -adj) - np.logaddexp(0.0, adj))
            )
            stick = stick - x[:, k]
    x[:, km1] = stick
    return x, log_jac


def simplex_unconstrain(x: ArrayLike) -> NDArray[np.float64]:
    x = np.atleast_2d(np.asarray(x, dtype=np.float64))
    n_rows, n_cols = x.shape
    km1 = n_cols - 1
    y = np.empty((n_rows, km1))
    stick = np.ones(n_rows)
    for k in range(km1):
        y[:, k] = logit(x[:, k] / stick) + np.log(km1 - k)
        stick = stick - x[:, k]
    return y


# ── Layout ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Block:
    name: str
    shape: tuple[int, ...]  # natural shape
    n_free: int
    transform: str


class ParameterLayout:
    """Documented flat layout of the unconstrained parameter vector for one model."""

    def __init__(self, config: ModelConfig, n_sites: int, n_covariates: int = 0) -> None:
        self.config = config
        self.n_sites = n_sites
        self.n_covariates = n_covariates
        K = config.n_components
        A = config.n_age_classes
        variant = config.variant

        blocks = [_Block("b0_raw", (K,), K, "identity")]
        if config.use_covariates:
            blocks.append(_Block("beta", (n_covariates, 2), n_covariates * 2, "identity"))
        blocks.append(_Block("z", (n_sites, K), n_sites * K, "identity"))
        blocks.append(_Block("sigma_vb", (K,), K, "exp"))
        blocks.append(_Block("L_omega", (K, K), n_cholesky_free(K), "cholesky_corr"))
        if variant.uses_mixture:
            blocks.append(_Block("sigma_mix", (), 1, "exp"))
        if variant.uses_cmr:
            blocks.append(_Block("sigma_cmr", (), 1, "exp"))
        if variant.uses_mixture:
            blocks.append(_Block("theta", (n_sites, A), n_sites * (A - 1), "simplex"))

        self._blocks = blocks
        self._slices: dict[str, slice] = {}
        start = 0
        for block in blocks:
            self._slices[block.name] = slice(start, start + block.n_free)
            start += block.n_free
        self.size = start

    @property
    def names(self) -> list[str]:
        return [b.name for b in self._blocks]

    def slice_of(self, name: str) -> slice:
        return self._slices[name]

    def describe(self) -> pl.DataFrame:
        """One row per block: name, natural shape, offset, free size, transform."""
        return pl.DataFrame(
            {
                "name": [b.name for b in self._blocks],
                "shape": [str(b.shape) for b in self._blocks],
                "offset": [self._slices[b.name].start for b in self._blocks],
                "n_free": [b.n_free for b in self._blocks],
                "transform": [b.transform for b in self._blocks],
            }
        )

    def unpack(self, vector: ArrayLike) -> tuple[GrowthParams, float]:
        """Unconstrained vector -> (GrowthParams, log|det Jacobian|)."""
        v = np.asarray(vector, dtype=np.float64)
        if v.shape != (self.size,):
            msg = f"Expected an unconstrained vector of length {self.size}; got {v.shape}"
            raise ValueError(msg)
        K = self.config.n_components
        log_jac = 0.0
        fields: dict[str, object] = {}

        for block in self._blocks:
            raw = v[self._slices[block.name]]
            match block.transform:
                case "identity":
                    fields[block.name] = raw.reshape(block.shape)
                case "exp":
                    with np.errstate(over="ignore"):
                        value = np.exp(raw)
                    log_jac += float(np.sum(raw))
                    fields[block.name] = float(value[0]) if block.shape == () else value
                case "cholesky_corr":
                    L, jac = cholesky_corr_constrain(raw, K)
                    fields[block.name] = L
                    log_jac += jac
                case "simplex":
                    A = self.config.n_age_classes
                    theta, jac = simplex_constrain(raw.reshape(self.n_sites, A - 1))
                    fields[block.name] = theta
                    log_jac += jac

        return GrowthParams(**fields), log_jac

    def pack(self, params: GrowthParams) -> NDArray[np.float64]:
        """GrowthParams -> unconstrained vector (inverse of unpack)."""
        parts: list[NDArray[np.float64]] = []
        for block in self._blocks:
            value = getattr(params, block.name)
            if value is None:
                msg = f"Parameter block {block.name!r} is required by this layout"
                raise ValueError(msg)
            match block.transform:
                case "identity":
                    parts.append(np.asarray(value, dtype=np.float64).ravel())
                case "exp":
                    parts.append(np.log(np.atleast_1d(np.asarray(value, dtype=np.float64))))
                case "cholesky_corr":
                    parts.append(cholesky_corr_unconstrain(value))
                case "simplex":
                    parts.append(simplex_unconstrain(value).ravel())
        vector = np.concatenate(parts) if parts else np.empty(0)
        if vector.size != self.size:
            msg = f"Packed {vector.size} values but layout size is {self.size}"
            raise ValueError(msg)
        return vector
