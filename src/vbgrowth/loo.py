"""Pareto-smoothed importance sampling leave-one-out cross-validation (PSIS-LOO).

Works from a pointwise log-likelihood array shaped (chain, draw, obs). Chains
are kept separate long enough to estimate each observation's relative
efficiency; after that the draws are pooled.

For observation i and draw s the raw leave-one-out importance ratio is
r_si = 1 / p(y_i | theta_s). The upper tail of each r_.i is replaced by
order statistics of a fitted generalized Pareto distribution (ArviZ psislw),
whose shape estimate k-hat measures how trustworthy the approximation is:

    k < 0.5         good
    0.5 <= k < 0.7  ok
    0.7 <= k < 1.0  bad (flagged)
    k >= 1.0        very bad (flagged)

High k-hat never raises. Flagged observations are counted and surfaced on
the result so the caller decides what to do with them.

References:
    Vehtari, Gelman & Gabry (2017), Practical Bayesian model evaluation
    using leave-one-out cross-validation and WAIC.
"""

from __future__ import annotations

from dataclasses import dataclass

import arviz as az
import numpy as np
import polars as pl
from numpy.typing import ArrayLike, NDArray
from scipy.special import logsumexp

from vbgrowth.config import KHAT_GOOD, KHAT_THRESHOLD, KHAT_VERY_BAD


def _as_chain_draw_obs(log_lik: ArrayLike) -> NDArray[np.float64]:
    """Coerce to (chain, draw, obs); a 2-D array is one chain of (draw, obs)."""
    arr = np.asarray(log_lik, dtype=np.float64)
    if arr.ndim == 2:
        arr = arr[None, :, :]
    if arr.ndim != 3:
        msg = f"log_lik must be shaped (chain, draw, obs) or (draw, obs); got {arr.shape}"
        raise ValueError(msg)
    if arr.shape[0] * arr.shape[1] < 2:
        msg = f"PSIS-LOO needs at least 2 posterior draws; got {arr.shape[0] * arr.shape[1]}"
        raise ValueError(msg)
    if arr.shape[2] == 0:
        msg = "log_lik has no observations"
        raise ValueError(msg)
    if np.isnan(arr).any():
        msg = "log_lik contains NaN"
        raise ValueError(msg)
    return arr


def _by_observation(log_lik: NDArray[np.float64]) -> NDArray[np.float64]:
    """(chain, draw, obs) -> (obs, sample), chains concatenated."""
    n_chains, n_draws, n_obs = log_lik.shape
    return log_lik.reshape(n_chains * n_draws, n_obs).T


# ── Importance ratios ───────────────────────────────────────────────────────


def log_importance_ratios(log_lik: ArrayLike) -> NDArray[np.float64]:
    """log r_si = -log p(y_i | theta_s), shaped (obs, sample)."""
    return -_by_observation(_as_chain_draw_obs(log_lik))


def importance_ratios(log_lik: ArrayLike) -> NDArray[np.float64]:
    """Raw leave-one-out ratios r_si = 1 / p(y_i | theta_s), shaped (obs, sample).

    Overflows to inf when the likelihood underflows; use
    scaled_importance_ratios for anything numerical.
    """
    with np.errstate(over="ignore"):
        return np.exp(log_importance_ratios(log_lik))


def scaled_importance_ratios(log_lik: ArrayLike) -> NDArray[np.float64]:
    """Leave-one-out ratios scaled per observation so the largest is 1.

    The scaling cancels on self-normalization and keeps exp() from
    overflowing when the likelihood is tiny.
    """
    log_r = log_importance_ratios(log_lik)
    return np.exp(log_r - log_r.max(axis=1, keepdims=True))


# ── Relative efficiency ─────────────────────────────────────────────────────


def relative_efficiency(log_lik: ArrayLike) -> NDArray[np.float64]:
    """Per-observation relative ESS of exp(log_lik), chains kept separate.

    Undefined cases (constant likelihood across draws) fall back to 1.
    """
    arr = _as_chain_draw_obs(log_lik)
    n_obs = arr.shape[2]
    r_eff = np.ones(n_obs)
    for i in range(n_obs):
        ll = arr[:, :, i]
        lik = np.exp(ll - ll.max())
        if np.ptp(lik) == 0:
            continue
        value = float(az.ess(lik, method="mean", relative=True))
        if np.isfinite(value) and value > 0:
            r_eff[i] = value
    return r_eff


# ── Pareto smoothing ────────────────────────────────────────────────────────


def pareto_smooth(
    log_ratios: ArrayLike,
    r_eff: ArrayLike | float = 1.0,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Pareto-smooth log importance ratios row by row.

    Args:
        log_ratios: (obs, sample) log importance ratios.
        r_eff: Relative efficiency, scalar or one per observation.

    Returns:
        (log_weights, khat): self-normalized smoothed log weights (obs, sample)
        and the Pareto shape estimate per observation. khat is +inf when the
        tail is too short to fit, never NaN.
    """
    log_ratios = np.atleast_2d(np.asarray(log_ratios, dtype=np.float64))
    n_obs = log_ratios.shape[0]
    r_eff = np.broadcast_to(np.asarray(r_eff, dtype=np.float64), (n_obs,))

    log_weights = np.empty_like(log_ratios)
    khat = np.empty(n_obs)
    for i in range(n_obs):
        lw_i, k_i = az.psislw(log_ratios[i].copy(), reff=float(r_eff[i]))
        log_weights[i] = np.asarray(lw_i)
        k_i = float(np.asarray(k_i))
        khat[i] = np.inf if np.isnan(k_i) else k_i
    return log_weights, khat


# ── Result ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LooResult:
    """PSIS-LOO estimate with per-observation detail.

    ``pointwise`` is keyed by obs_idx and holds elpd_loo, se (Monte Carlo
    standard error of that observation's estimate), pareto_k and flagged.
    ``se`` on the result is the standard error of the total elpd_loo.
    """

    pointwise: pl.DataFrame
    elpd_loo: float
    se: float
    p_loo: float
    lppd: float
    n_flagged: int
    khat_threshold: float
    log_weights: NDArray[np.float64]
    r_eff: NDArray[np.float64]

    @property
    def n_obs(self) -> int:
        return self.pointwise.height

    @property
    def reliable(self) -> bool:
        return self.n_flagged == 0

    @property
    def pareto_k(self) -> NDArray[np.float64]:
        return self.pointwise["pareto_k"].to_numpy()

    @property
    def looic(self) -> float:
        return -2.0 * self.elpd_loo

    def to_dict(self) -> dict:
        """JSON-friendly summary (no per-observation arrays)."""
        return {
            "elpd_loo": self.elpd_loo,
            "se": self.se,
            "p_loo": self.p_loo,
            "lppd": self.lppd,
            "looic": self.looic,
            "n_obs": self.n_obs,
            "n_flagged": self.n_flagged,
            "khat_threshold": self.khat_threshold,
            "reliable": self.reliable,
            "pareto_k": summarize_pareto_k(self.pareto_k),
        }


def psis_loo(log_lik: ArrayLike, *, khat_threshold: float = KHAT_THRESHOLD) -> LooResult:
    """PSIS-LOO from a (chain, draw, obs) pointwise log-likelihood.

    elpd_loo_i = log sum_s w_si p(y_i | theta_s) with self-normalized
    smoothed weights w. The total's standard error is sqrt(N * var(elpd_i));
    p_loo is the in-sample lppd minus elpd_loo.
    """
    arr = _as_chain_draw_obs(log_lik)
    ll = _by_observation(arr)  # (obs, sample)
    n_obs, n_samples = ll.shape

    r_eff = relative_efficiency(arr)
    log_weights, khat = pareto_smooth(-ll, r_eff)

    elpd_i = logsumexp(log_weights + ll, axis=1)
    lppd_i = logsumexp(ll, axis=1) - np.log(n_samples)

    # Delta-method MC error of log E_w[p(y_i | theta)]
    w = np.exp(log_weights)
    rel = np.exp(ll - elpd_i[:, None]) - 1.0
    mcse_i = np.sqrt(np.sum(w * w * rel * rel, axis=1) / r_eff)

    flagged = khat > khat_threshold
    pointwise = pl.DataFrame(
        {
            "obs_idx": np.arange(n_obs, dtype=np.int64),
            "elpd_loo": elpd_i,
            "se": mcse_i,
            "pareto_k": khat,
            "flagged": flagged,
        }
    )

    elpd = float(np.sum(elpd_i))
    se = float(np.sqrt(n_obs * np.var(elpd_i))) if n_obs > 1 else 0.0
    lppd = float(np.sum(lppd_i))
    return LooResult(
        pointwise=pointwise,
        elpd_loo=elpd,
        se=se,
        p_loo=lppd - elpd,
        lppd=lppd,
        n_flagged=int(flagged.sum()),
        khat_threshold=khat_threshold,
        log_weights=log_weights,
        r_eff=r_eff,
    )


def summarize_pareto_k(khat: ArrayLike) -> dict[str, int | float]:
    """Count observations in each Pareto k diagnostic category.

    Categories (Vehtari et al. 2017):
      good:       k < 0.5
      ok:         0.5 <= k < 0.7
      bad:        0.7 <= k < 1.0
      very_bad:   k >= 1.0  (including +inf)
    """
    k_values = np.asarray(khat, dtype=np.float64)
    return {
        "good": int(np.sum(k_values < KHAT_GOOD)),
        "ok": int(np.sum((k_values >= KHAT_GOOD) & (k_values < KHAT_THRESHOLD))),
        "bad": int(np.sum((k_values >= KHAT_THRESHOLD) & (k_values < KHAT_VERY_BAD))),
        "very_bad": int(np.sum(k_values >= KHAT_VERY_BAD)),
        "total": int(k_values.size),
        "max_k": float(np.max(k_values)) if k_values.size else float("nan"),
        "mean_k": float(np.mean(k_values)) if k_values.size else float("nan"),
    }
