"""LOO-PIT calibration diagnostics.

The leave-one-out probability integral transform of observation i is the
LOO-weighted share of replicated draws at or below y_i. For a calibrated
model these values are close to Uniform(0, 1). Departures are summarized
two ways for the plotting layer:

  - the ECDF difference ECDF(u) - u on a fixed grid, compared against a
    simulated pointwise envelope for the same number of iid uniforms;
  - a Kolmogorov-Smirnov test against the uniform distribution.

Being outside the envelope is a flag on the result, never an exception.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import polars as pl
from numpy.typing import ArrayLike, NDArray
from scipy import stats
from scipy.special import logsumexp

from vbgrowth.config import PIT_ENVELOPE_PROB, PIT_ENVELOPE_SIMS, PIT_GRID_SIZE


def _default_grid(grid: ArrayLike | None) -> NDArray[np.float64]:
    if grid is None:
        return np.linspace(0.0, 1.0, PIT_GRID_SIZE)
    return np.asarray(grid, dtype=np.float64)


def loo_pit(
    y_obs: ArrayLike,
    y_rep: ArrayLike,
    log_weights: ArrayLike,
) -> NDArray[np.float64]:
    """Weighted proportion of replicates <= the observed value, per observation.

    Args:
        y_obs: Observed values (obs,).
        y_rep: Replicates, (obs, sample) or (chain, draw, obs). Samples must
            be in the same order as the columns of log_weights (chains
            concatenated, as in psis_loo).
        log_weights: Smoothed LOO log weights (obs, sample); need not be
            normalized.
    """
    y_obs = np.asarray(y_obs, dtype=np.float64)
    y_rep = np.asarray(y_rep, dtype=np.float64)
    log_weights = np.asarray(log_weights, dtype=np.float64)
    if y_rep.ndim == 3:
        n_chains, n_draws, n_obs = y_rep.shape
        y_rep = y_rep.reshape(n_chains * n_draws, n_obs).T
    if y_rep.shape != log_weights.shape or y_rep.shape[0] != y_obs.shape[0]:
        msg = (
            f"Shape mismatch: y_obs {y_obs.shape}, y_rep {y_rep.shape}, "
            f"log_weights {log_weights.shape}"
        )
        raise ValueError(msg)

    w = np.exp(log_weights - logsumexp(log_weights, axis=1, keepdims=True))
    pit = np.sum(w * (y_rep <= y_obs[:, None]), axis=1)
    return np.clip(pit, 0.0, 1.0)


def pit_ecdf_difference(pit: ArrayLike, grid: ArrayLike | None = None) -> NDArray[np.float64]:
    """ECDF(u) - u of the PIT values on ``grid`` (default: 101 points on [0, 1])."""
    grid = _default_grid(grid)
    pit = np.sort(np.asarray(pit, dtype=np.float64))
    ecdf = np.searchsorted(pit, grid, side="right") / pit.size
    return ecdf - grid


def uniform_ecdf_envelope(
    n_obs: int,
    rng: np.random.Generator,
    grid: ArrayLike | None = None,
    n_sims: int = PIT_ENVELOPE_SIMS,
    prob: float = PIT_ENVELOPE_PROB,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Pointwise (lower, upper) band of ECDF(u) - u for n_obs iid uniforms."""
    if n_obs < 1:
        msg = f"n_obs must be >= 1; got {n_obs}"
        raise ValueError(msg)
    if not 0 < prob < 1:
        msg = f"prob must be in (0, 1); got {prob}"
        raise ValueError(msg)
    grid = _default_grid(grid)
    sims = np.sort(rng.random((n_sims, n_obs)), axis=1)
    diffs = np.empty((n_sims, grid.size))
    for s in range(n_sims):
        diffs[s] = np.searchsorted(sims[s], grid, side="right") / n_obs - grid
    tail = (1.0 - prob) / 2.0
    lower, upper = np.quantile(diffs, [tail, 1.0 - tail], axis=0)
    return lower, upper


def ks_uniformity(pit: ArrayLike) -> tuple[float, float]:
    """Kolmogorov-Smirnov (statistic, p-value) of the PIT values against Uniform(0, 1)."""
    result = stats.kstest(np.asarray(pit, dtype=np.float64), "uniform")
    return float(result.statistic), float(result.pvalue)


@dataclass(frozen=True)
class LooPitResult:
    pit: NDArray[np.float64]
    grid: NDArray[np.float64]
    ecdf_difference: NDArray[np.float64]
    envelope_lower: NDArray[np.float64]
    envelope_upper: NDArray[np.float64]
    ks_statistic: float
    ks_pvalue: float

    @property
    def n_outside(self) -> int:
        """Grid points where the ECDF difference leaves the envelope."""
        outside = (self.ecdf_difference < self.envelope_lower) | (
            self.ecdf_difference > self.envelope_upper
        )
        return int(outside.sum())

    @property
    def outside_envelope(self) -> bool:
        return self.n_outside > 0

    def to_frame(self) -> pl.DataFrame:
        """Grid-level table for plotting."""
        return pl.DataFrame(
            {
                "u": self.grid,
                "ecdf_difference": self.ecdf_difference,
                "lower": self.envelope_lower,
                "upper": self.envelope_upper,
            }
        )

    def to_dict(self) -> dict:
        return {
            "n_obs": int(self.pit.size),
            "ks_statistic": self.ks_statistic,
            "ks_pvalue": self.ks_pvalue,
            "outside_envelope": self.outside_envelope,
            "n_grid_outside": self.n_outside,
            "max_abs_ecdf_difference": float(np.max(np.abs(self.ecdf_difference))),
        }


def calibration_summary(
    y_obs: ArrayLike,
    y_rep: ArrayLike,
    log_weights: ArrayLike,
    rng: np.random.Generator,
    *,
    grid: ArrayLike | None = None,
    n_sims: int = PIT_ENVELOPE_SIMS,
    prob: float = PIT_ENVELOPE_PROB,
) -> LooPitResult:
    """LOO-PIT values with their ECDF difference, uniform envelope and KS test."""
    grid = _default_grid(grid)
    pit = loo_pit(y_obs, y_rep, log_weights)
    lower, upper = uniform_ecdf_envelope(pit.size, rng, grid, n_sims, prob)
    ks_stat, ks_p = ks_uniformity(pit)
    return LooPitResult(
        pit=pit,
        grid=grid,
        ecdf_difference=pit_ecdf_difference(pit, grid),
        envelope_lower=lower,
        envelope_upper=upper,
        ks_statistic=ks_stat,
        ks_pvalue=ks_p,
    )
