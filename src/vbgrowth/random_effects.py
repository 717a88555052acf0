"""Correlated site random effects via a Cholesky-factored correlation matrix.

Non-centered: site deviations are never sampled directly. Independent
standard-normal deviates z (site x K) are mapped through

    eps = (diag(sigma) @ L_omega @ z.T).T

so that cov(eps_j) = diag(sigma) @ Omega @ diag(sigma) with Omega = L L'.
K is 3 (L0, Linf, k) for the mixture and integrated models and 2 (Linf, k)
for CMR-only; nothing here assumes either.

Correlation-matrix validity is structural: L_omega is always built from
K(K-1)/2 unconstrained reals through tanh canonical partial correlations
(the Stan cholesky_factor_corr transform), never by rejecting symmetric
matrices.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike, NDArray

from vbgrowth.config import CHOLESKY_TOL


def n_cholesky_free(K: int) -> int:
    """Number of unconstrained reals behind a K x K Cholesky correlation factor."""
    return K * (K - 1) // 2


def correlated_effects(
    z: ArrayLike,
    L_omega: ArrayLike,
    sigma: ArrayLike,
) -> NDArray[np.floating]:
    """Map standard-normal deviates (J, K) to scaled, correlated deviations (J, K)."""
    z = np.atleast_2d(np.asarray(z, dtype=np.float64))
    L_omega = np.asarray(L_omega, dtype=np.float64)
    sigma = np.asarray(sigma, dtype=np.float64)
    K = z.shape[1]
    if L_omega.shape != (K, K) or sigma.shape != (K,):
        msg = (
            f"Shape mismatch: z has {K} columns, L_omega is {L_omega.shape}, "
            f"sigma is {sigma.shape}"
        )
        raise ValueError(msg)
    return (z @ L_omega.T) * sigma[None, :]


def correlation_from_cholesky(L_omega: ArrayLike) -> NDArray[np.floating]:
    L_omega = np.asarray(L_omega, dtype=np.float64)
    return L_omega @ L_omega.T


def covariance_from_cholesky(L_omega: ArrayLike, sigma: ArrayLike) -> NDArray[np.floating]:
    sigma = np.asarray(sigma, dtype=np.float64)
    omega = correlation_from_cholesky(L_omega)
    return omega * np.outer(sigma, sigma)


def is_cholesky_corr(L_omega: ArrayLike, tol: float = CHOLESKY_TOL) -> bool:
    """True if L is lower-triangular, has a positive diagonal and unit-norm rows."""
    L = np.asarray(L_omega, dtype=np.float64)
    if L.ndim != 2 or L.shape[0] != L.shape[1]:
        return False
    if not np.all(np.isfinite(L)):
        return False
    if np.any(np.abs(np.triu(L, k=1)) > tol):
        return False
    if np.any(np.diag(L) <= 0):
        return False
    return bool(np.all(np.abs(np.sum(L * L, axis=1) - 1.0) <= tol))


def cholesky_corr_constrain(y: ArrayLike, K: int) -> tuple[NDArray[np.floating], float]:
    """Build a Cholesky correlation factor from unconstrained reals.

    y holds K(K-1)/2 values in row-major lower-triangle order. Returns
    (L_omega, log_abs_det_jacobian).
    """
    y = np.asarray(y, dtype=np.float64).ravel()
    if y.size != n_cholesky_free(K):
        msg = f"Expected {n_cholesky_free(K)} unconstrained values for K={K}; got {y.size}"
        raise ValueError(msg)

    z = np.tanh(y)
    L = np.zeros((K, K))
    L[0, 0] = 1.0
    # saturated tanh: log1p(-1) = -inf
    with np.errstate(divide="ignore", invalid="ignore"):
        log_jac = float(np.sum(np.log1p(-z * z)))
        pos = 0
        for i in range(1, K):
            L[i, 0] = z[pos]
            pos += 1
            sum_sqs = L[i, 0] ** 2
            for j in range(1, i):
                log_jac += 0.5 * np.log1p(-sum_sqs)
                L[i, j] = z[pos] * np.sqrt(max(1.0 - sum_sqs, 0.0))
                pos += 1
                sum_sqs += L[i, j] ** 2
            L[i, i] = np.sqrt(max(1.0 - sum_sqs, 0.0))
    return L, log_jac


def cholesky_corr_unconstrain(L_omega: ArrayLike) -> NDArray[np.floating]:
    """Inverse of cholesky_corr_constrain."""
    L = np.asarray(L_omega, dtype=np.float64)
    K = L.shape[0]
    y = np.empty(n_cholesky_free(K))
    pos = 0
    for i in range(1, K):
        sum_sqs = 0.0
        for j in range(i):
            z = L[i, j] / np.sqrt(1.0 - sum_sqs)
            y[pos] = np.arctanh(np.clip(z, -1.0 + 1e-15, 1.0 - 1e-15))
            pos += 1
            sum_sqs += L[i, j] ** 2
    return y


def lkj_cholesky_logpdf(L_omega: ArrayLike, eta: float) -> float:
    """LKJ log density on the Cholesky factor, up to a constant in (eta, K).

    sum_{i=1}^{K-1} (K - i - 1 + 2 * eta - 2) * log(L_ii)

    eta = 1 is uniform over correlation matrices; eta > 1 concentrates
    mass at the identity.
    """
    L = np.asarray(L_omega, dtype=np.float64)
    K = L.shape[0]
    if K < 2:
        return 0.0
    i = np.arange(1, K)
    coef = K - i - 1 + 2.0 * eta - 2.0
    return float(np.sum(coef * np.log(np.diag(L)[1:])))
