"""Validated, immutable dataset containers and polars ingestion.

Invalid rows (non-positive or missing lengths, negative elapsed days, site
indices out of range) are rejected here with InvalidInputError, so nothing
malformed ever reaches the density.

Site labels in input tables are arbitrary; they are mapped to indices
0..J-1 in sorted label order across all supplied tables.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import polars as pl
from numpy.typing import ArrayLike, NDArray

from vbgrowth.errors import InvalidInputError

MIXTURE_COLUMNS = ("site", "length")
CMR_COLUMNS = ("site", "length_capture", "length_recapture", "days")


def _readonly(values: ArrayLike, dtype: type) -> NDArray:
    arr = np.array(values, dtype=dtype)
    arr.setflags(write=False)
    return arr


def _check_sites(site: NDArray[np.int64], n_sites: int, what: str) -> None:
    if site.size and (site.min() < 0 or site.max() >= n_sites):
        msg = f"{what}: site index out of range [0, {n_sites}); got [{site.min()}, {site.max()}]"
        raise InvalidInputError(msg)


def _check_positive(values: NDArray[np.floating], what: str) -> None:
    bad = ~np.isfinite(values) | (values <= 0)
    if bad.any():
        idx = np.flatnonzero(bad)[:5].tolist()
        msg = f"{what} must be finite and positive; {int(bad.sum())} bad row(s), first at {idx}"
        raise InvalidInputError(msg)


@dataclass(frozen=True)
class MixtureData:
    """Length-frequency sample: one length per fish, age unobserved."""

    length: NDArray[np.float64]
    site: NDArray[np.int64]

    def __post_init__(self) -> None:
        object.__setattr__(self, "length", _readonly(self.length, np.float64))
        object.__setattr__(self, "site", _readonly(self.site, np.int64))
        if self.length.ndim != 1 or self.length.shape != self.site.shape:
            msg = f"length {self.length.shape} and site {self.site.shape} must be equal 1-D"
            raise InvalidInputError(msg)
        _check_positive(self.length, "Mixture length")

    @property
    def n_obs(self) -> int:
        return int(self.length.size)


@dataclass(frozen=True)
class CmrData:
    """Capture-mark-recapture pairs: capture length, recapture length, elapsed days."""

    site: NDArray[np.int64]
    length_capture: NDArray[np.float64]
    length_recapture: NDArray[np.float64]
    days: NDArray[np.float64]

    def __post_init__(self) -> None:
        object.__setattr__(self, "site", _readonly(self.site, np.int64))
        object.__setattr__(self, "length_capture", _readonly(self.length_capture, np.float64))
        object.__setattr__(self, "length_recapture", _readonly(self.length_recapture, np.float64))
        object.__setattr__(self, "days", _readonly(self.days, np.float64))
        shapes = {
            a.shape for a in (self.site, self.length_capture, self.length_recapture, self.days)
        }
        if len(shapes) != 1 or self.site.ndim != 1:
            msg = f"CMR columns must be equal-length 1-D arrays; got shapes {sorted(shapes)}"
            raise InvalidInputError(msg)
        _check_positive(self.length_capture, "CMR capture length")
        _check_positive(self.length_recapture, "CMR recapture length")
        bad = ~np.isfinite(self.days) | (self.days < 0)
        if bad.any():
            msg = f"CMR elapsed days must be finite and >= 0; {int(bad.sum())} bad row(s)"
            raise InvalidInputError(msg)

    @property
    def n_obs(self) -> int:
        return int(self.site.size)


@dataclass(frozen=True)
class SiteCovariates:
    """Standardized site covariates (J x P) with the moments used to standardize."""

    values: NDArray[np.float64]
    names: tuple[str, ...]
    means: NDArray[np.float64]
    sds: NDArray[np.float64]

    @classmethod
    def standardize(cls, raw: ArrayLike, names: Sequence[str]) -> SiteCovariates:
        """Center and scale each column; constant or non-finite columns are rejected."""
        raw = np.atleast_2d(np.asarray(raw, dtype=np.float64))
        if raw.shape[1] != len(names):
            msg = f"{raw.shape[1]} covariate columns but {len(names)} names"
            raise InvalidInputError(msg)
        if not np.all(np.isfinite(raw)):
            msg = "Site covariates must be finite"
            raise InvalidInputError(msg)
        means = raw.mean(axis=0)
        sds = raw.std(axis=0, ddof=1) if raw.shape[0] > 1 else np.zeros(raw.shape[1])
        if np.any(sds <= 0):
            constant = [n for n, s in zip(names, sds) if s <= 0]
            msg = f"Cannot standardize constant covariate(s): {constant}"
            raise InvalidInputError(msg)
        return cls(
            values=_readonly((raw - means) / sds, np.float64),
            names=tuple(names),
            means=_readonly(means, np.float64),
            sds=_readonly(sds, np.float64),
        )

    @property
    def n_covariates(self) -> int:
        return int(self.values.shape[1])


@dataclass(frozen=True)
class GrowthData:
    """Everything a fit consumes: site count, either/both samples, optional covariates."""

    n_sites: int
    mixture: MixtureData | None = None
    cmr: CmrData | None = None
    covariates: SiteCovariates | None = None
    site_ids: tuple[object, ...] | None = None

    def __post_init__(self) -> None:
        if self.n_sites < 1:
            msg = f"n_sites must be >= 1; got {self.n_sites}"
            raise InvalidInputError(msg)
        if self.mixture is None and self.cmr is None:
            msg = "GrowthData needs a mixture sample, a CMR sample, or both"
            raise InvalidInputError(msg)
        if self.mixture is not None:
            _check_sites(self.mixture.site, self.n_sites, "Mixture")
        if self.cmr is not None:
            _check_sites(self.cmr.site, self.n_sites, "CMR")
        if self.covariates is not None and self.covariates.values.shape[0] != self.n_sites:
            msg = (
                f"Covariates have {self.covariates.values.shape[0]} rows "
                f"but there are {self.n_sites} sites"
            )
            raise InvalidInputError(msg)
        if self.site_ids is None:
            object.__setattr__(self, "site_ids", tuple(range(self.n_sites)))
        elif len(self.site_ids) != self.n_sites:
            msg = f"{len(self.site_ids)} site ids for {self.n_sites} sites"
            raise InvalidInputError(msg)

    @property
    def n_mixture(self) -> int:
        return self.mixture.n_obs if self.mixture is not None else 0

    @property
    def n_cmr(self) -> int:
        return self.cmr.n_obs if self.cmr is not None else 0

    @property
    def n_obs(self) -> int:
        return self.n_mixture + self.n_cmr

    @classmethod
    def from_frames(
        cls,
        mixture: pl.DataFrame | None = None,
        cmr: pl.DataFrame | None = None,
        covariates: pl.DataFrame | None = None,
    ) -> GrowthData:
        """Build a dataset from loader tables.

        Expected columns:
          - mixture: site, length
          - cmr: site, length_capture, length_recapture, days
          - covariates: site, then one column per covariate (standardized here)

        Rows with nulls are rejected, not dropped.
        """
        frames = {"mixture": mixture, "cmr": cmr}
        required = {"mixture": MIXTURE_COLUMNS, "cmr": CMR_COLUMNS}
        labels: set = set()
        for name, df in frames.items():
            if df is None:
                continue
            missing = [c for c in required[name] if c not in df.columns]
            if missing:
                msg = f"{name} table is missing column(s): {missing}"
                raise InvalidInputError(msg)
            n_null = df.select(required[name]).null_count().sum_horizontal().item()
            if n_null:
                msg = f"{name} table has {n_null} null value(s)"
                raise InvalidInputError(msg)
            labels.update(df["site"].to_list())

        if covariates is not None:
            if "site" not in covariates.columns:
                msg = "covariates table is missing column 'site'"
                raise InvalidInputError(msg)
            cov_sites = covariates["site"].to_list()
            if len(set(cov_sites)) != len(cov_sites):
                msg = "covariates table has duplicate site rows"
                raise InvalidInputError(msg)
            unknown = labels - set(cov_sites)
            if unknown:
                msg = f"No covariates for observed site(s): {sorted(unknown, key=str)}"
                raise InvalidInputError(msg)
            labels.update(cov_sites)

        site_ids = tuple(sorted(labels, key=str))
        index = {label: i for i, label in enumerate(site_ids)}

        mix_data = None
        if mixture is not None:
            mix_data = MixtureData(
                length=mixture["length"].to_numpy(),
                site=np.array([index[s] for s in mixture["site"].to_list()], dtype=np.int64),
            )

        cmr_data = None
        if cmr is not None:
            cmr_data = CmrData(
                site=np.array([index[s] for s in cmr["site"].to_list()], dtype=np.int64),
                length_capture=cmr["length_capture"].to_numpy(),
                length_recapture=cmr["length_recapture"].to_numpy(),
                days=cmr["days"].to_numpy(),
            )

        cov_data = None
        if covariates is not None:
            names = [c for c in covariates.columns if c != "site"]
            order = np.argsort([index[s] for s in covariates["site"].to_list()])
            raw = covariates.select(names).to_numpy().astype(np.float64)[order]
            cov_data = SiteCovariates.standardize(raw, names)

        return cls(
            n_sites=len(site_ids),
            mixture=mix_data,
            cmr=cmr_data,
            covariates=cov_data,
            site_ids=site_ids,
        )

    def to_frames(self) -> dict[str, pl.DataFrame]:
        """Inverse of from_frames (covariates are written standardized)."""
        out: dict[str, pl.DataFrame] = {}
        ids = list(self.site_ids)
        if self.mixture is not None:
            out["mixture"] = pl.DataFrame(
                {
                    "site": [ids[s] for s in self.mixture.site],
                    "length": self.mixture.length,
                }
            )
        if self.cmr is not None:
            out["cmr"] = pl.DataFrame(
                {
                    "site": [ids[s] for s in self.cmr.site],
                    "length_capture": self.cmr.length_capture,
                    "length_recapture": self.cmr.length_recapture,
                    "days": self.cmr.days,
                }
            )
        if self.covariates is not None:
            cols = {"site": ids}
            for p, name in enumerate(self.covariates.names):
                cols[name] = self.covariates.values[:, p]
            out["covariates"] = pl.DataFrame(cols)
        return out
