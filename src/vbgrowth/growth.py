"""Von Bertalanffy growth curve. Pure functions, no I/O.

    mu(t) = L0 + (Linf - L0) * (1 - exp(-k * t))

Written with expm1 so mu(0) == L0 exactly and small k*t stays accurate.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike, NDArray

from vbgrowth.config import DAYS_PER_YEAR


def mean_length(
    L0: ArrayLike,
    Linf: ArrayLike,
    k: ArrayLike,
    t: ArrayLike,
) -> NDArray[np.floating]:
    """Expected length at time t (years) for broadcastable VBGF parameters."""
    L0 = np.asarray(L0, dtype=np.float64)
    Linf = np.asarray(Linf, dtype=np.float64)
    k = np.asarray(k, dtype=np.float64)
    t = np.asarray(t, dtype=np.float64)
    # 1 - exp(-k t) == -expm1(-k t)
    return L0 + (Linf - L0) * -np.expm1(-k * t)


def age_class_means(
    L0: ArrayLike,
    Linf: ArrayLike,
    k: ArrayLike,
    ages: ArrayLike,
) -> NDArray[np.floating]:
    """Mean length for every (site, age class) pair.

    L0, Linf, k are per-site vectors of length J; ages has length A.
    Returns a (J, A) matrix.
    """
    L0 = np.atleast_1d(np.asarray(L0, dtype=np.float64))
    Linf = np.atleast_1d(np.asarray(Linf, dtype=np.float64))
    k = np.atleast_1d(np.asarray(k, dtype=np.float64))
    ages = np.atleast_1d(np.asarray(ages, dtype=np.float64))
    return mean_length(L0[:, None], Linf[:, None], k[:, None], ages[None, :])


def recapture_mean_length(
    length_capture: ArrayLike,
    Linf: ArrayLike,
    k: ArrayLike,
    days: ArrayLike,
) -> NDArray[np.floating]:
    """Expected recapture length given the fish's own capture length.

    The capture length replaces L0 as a per-individual initial condition and
    elapsed time is days / 365.
    """
    t = np.asarray(days, dtype=np.float64) / DAYS_PER_YEAR
    return mean_length(length_capture, Linf, k, t)
