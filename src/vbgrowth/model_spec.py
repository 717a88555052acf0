"""Model specification dataclasses for the growth model family.

Prior scales and non-centered transformation constants are configuration, not
structure: the density engine and the PyMC graph builder both consume the same
frozen specs, so prior and posterior fits share one definition of the priors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from scipy import stats

from vbgrowth.config import (
    DEFAULT_B0_LOC,
    DEFAULT_B0_SCALE,
    DEFAULT_BETA_SCALE,
    DEFAULT_LKJ_ETA,
    DEFAULT_SIGMA_OBS_SCALE,
    DEFAULT_SIGMA_VB_SCALE,
    VB_COMPONENTS_CMR,
    VB_COMPONENTS_FULL,
)
from vbgrowth.errors import ConfigurationError


class ModelVariant(str, Enum):
    """The three members of the model family."""

    MIXTURE = "mixture"
    CMR = "cmr"
    INTEGRATED = "integrated"

    @property
    def components(self) -> tuple[str, ...]:
        """Growth parameters carrying site random effects, in column order."""
        if self is ModelVariant.CMR:
            return VB_COMPONENTS_CMR
        return VB_COMPONENTS_FULL

    @property
    def n_components(self) -> int:
        return len(self.components)

    @property
    def uses_mixture(self) -> bool:
        return self is not ModelVariant.CMR

    @property
    def uses_cmr(self) -> bool:
        return self is not ModelVariant.MIXTURE


@dataclass(frozen=True)
class PriorSpec:
    """Specification for a scalar-family prior.

    The params dict is unpacked as keyword arguments to the PyMC distribution
    constructor, and mapped onto the matching scipy.stats density.

    Examples:
        PriorSpec("normal", {"mu": 0, "sigma": 1})
        PriorSpec("halfnormal", {"sigma": 0.5})
    """

    distribution: str
    params: dict[str, float]

    def logpdf(self, x: np.ndarray | float) -> np.ndarray:
        """Elementwise log density (normalized).

        Raises:
            ValueError: If distribution is not one of the supported types.
        """
        match self.distribution:
            case "normal":
                return stats.norm.logpdf(x, loc=self.params["mu"], scale=self.params["sigma"])
            case "halfnormal":
                return stats.halfnorm.logpdf(x, scale=self.params["sigma"])
            case _:
                msg = (
                    f"Unknown prior distribution: {self.distribution!r}. "
                    "Supported: normal, halfnormal"
                )
                raise ValueError(msg)

    def build(self, name: str, **kwargs):
        """Instantiate the PyMC distribution inside an active model context.

        Must be called inside a ``with pm.Model():`` block. Extra keyword
        arguments (shape, dims) are forwarded to the constructor.
        """
        import pymc as pm

        match self.distribution:
            case "normal":
                return pm.Normal(name, **self.params, **kwargs)
            case "halfnormal":
                return pm.HalfNormal(name, **self.params, **kwargs)
            case _:
                msg = (
                    f"Unknown prior distribution: {self.distribution!r}. "
                    "Supported: normal, halfnormal"
                )
                raise ValueError(msg)

    def build_dist(self, **kwargs):
        """Unnamed PyMC distribution (``.dist``), e.g. as an LKJ ``sd_dist``."""
        import pymc as pm

        match self.distribution:
            case "normal":
                return pm.Normal.dist(**self.params, **kwargs)
            case "halfnormal":
                return pm.HalfNormal.dist(**self.params, **kwargs)
            case _:
                msg = (
                    f"Unknown prior distribution: {self.distribution!r}. "
                    "Supported: normal, halfnormal"
                )
                raise ValueError(msg)

    def describe(self) -> str:
        """Human-readable description, e.g. "HalfNormal(sigma=0.5)"."""
        name = "HalfNormal" if self.distribution == "halfnormal" else self.distribution.capitalize()
        param_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{name}({param_str})"

    def to_dict(self) -> dict:
        return {"distribution": self.distribution, "params": dict(self.params)}

    @classmethod
    def from_dict(cls, d: dict) -> PriorSpec:
        return cls(d["distribution"], {k: float(v) for k, v in d["params"].items()})


@dataclass(frozen=True)
class GrowthPriors:
    """All prior hyperparameters of the growth model.

    Intercepts are non-centered: ``b0 = b0_loc + b0_scale * b0_raw`` with
    ``b0_raw ~ Normal(0, 1)``. Loc/scale tuples are in full component order
    (L0, Linf, k); the CMR-only variant uses the last two entries.
    """

    b0_loc: tuple[float, float, float] = DEFAULT_B0_LOC
    b0_scale: tuple[float, float, float] = DEFAULT_B0_SCALE
    sigma_vb: PriorSpec = PriorSpec("halfnormal", {"sigma": DEFAULT_SIGMA_VB_SCALE})
    sigma_mix: PriorSpec = PriorSpec("halfnormal", {"sigma": DEFAULT_SIGMA_OBS_SCALE})
    sigma_cmr: PriorSpec = PriorSpec("halfnormal", {"sigma": DEFAULT_SIGMA_OBS_SCALE})
    beta: PriorSpec = PriorSpec("normal", {"mu": 0.0, "sigma": DEFAULT_BETA_SCALE})

    def __post_init__(self) -> None:
        if len(self.b0_loc) != 3 or len(self.b0_scale) != 3:
            msg = "b0_loc and b0_scale must have one entry per (L0, Linf, k)"
            raise ConfigurationError(msg)
        if any(s <= 0 for s in self.b0_scale):
            msg = f"b0_scale entries must be positive; got {self.b0_scale}"
            raise ConfigurationError(msg)

    def intercept_loc(self, variant: ModelVariant) -> np.ndarray:
        loc = np.asarray(self.b0_loc, dtype=np.float64)
        return loc[-variant.n_components :]

    def intercept_scale(self, variant: ModelVariant) -> np.ndarray:
        scale = np.asarray(self.b0_scale, dtype=np.float64)
        return scale[-variant.n_components :]

    def to_dict(self) -> dict:
        return {
            "b0_loc": list(self.b0_loc),
            "b0_scale": list(self.b0_scale),
            "sigma_vb": self.sigma_vb.to_dict(),
            "sigma_mix": self.sigma_mix.to_dict(),
            "sigma_cmr": self.sigma_cmr.to_dict(),
            "beta": self.beta.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> GrowthPriors:
        return cls(
            b0_loc=tuple(d["b0_loc"]),
            b0_scale=tuple(d["b0_scale"]),
            sigma_vb=PriorSpec.from_dict(d["sigma_vb"]),
            sigma_mix=PriorSpec.from_dict(d["sigma_mix"]),
            sigma_cmr=PriorSpec.from_dict(d["sigma_cmr"]),
            beta=PriorSpec.from_dict(d["beta"]),
        )


@dataclass(frozen=True)
class ModelConfig:
    """Configuration of one model fit.

    Attributes:
        variant: mixture, cmr or integrated.
        n_age_classes: Number of age classes A (ignored by the CMR-only variant).
        alpha: Dirichlet concentration for each site's class proportions
            (defaults to all ones).
        eta: LKJ concentration (1 = uniform over correlation matrices).
        prior_only: Drop both likelihood terms (prior predictive mode).
        priors: Prior hyperparameters.
        use_covariates: Add site-covariate linear predictors on log Linf, log k.
        ages: Age (years) of each class; defaults to 0, 1, ..., A-1.
    """

    variant: ModelVariant = ModelVariant.INTEGRATED
    n_age_classes: int = 3
    alpha: tuple[float, ...] | None = None
    eta: float = DEFAULT_LKJ_ETA
    prior_only: bool = False
    priors: GrowthPriors = field(default_factory=GrowthPriors)
    use_covariates: bool = False
    ages: tuple[float, ...] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "variant", ModelVariant(self.variant))
        if self.variant.uses_mixture and self.n_age_classes < 1:
            msg = f"n_age_classes must be >= 1; got {self.n_age_classes}"
            raise ConfigurationError(msg)
        if self.eta < 0 or not np.isfinite(self.eta):
            msg = f"LKJ eta must be a finite value >= 0; got {self.eta}"
            raise ConfigurationError(msg)

        alpha = self.alpha if self.alpha is not None else (1.0,) * self.n_age_classes
        alpha = tuple(float(a) for a in alpha)
        if len(alpha) != self.n_age_classes:
            msg = f"alpha has {len(alpha)} entries but n_age_classes={self.n_age_classes}"
            raise ConfigurationError(msg)
        if any(a <= 0 or not np.isfinite(a) for a in alpha):
            msg = f"alpha entries must be positive and finite; got {alpha}"
            raise ConfigurationError(msg)
        object.__setattr__(self, "alpha", alpha)

        ages = self.ages if self.ages is not None else tuple(range(self.n_age_classes))
        ages = tuple(float(t) for t in ages)
        if len(ages) != self.n_age_classes:
            msg = f"ages has {len(ages)} entries but n_age_classes={self.n_age_classes}"
            raise ConfigurationError(msg)
        if any(t < 0 for t in ages) or any(b < a for a, b in zip(ages, ages[1:])):
            msg = f"ages must be non-negative and non-decreasing; got {ages}"
            raise ConfigurationError(msg)
        object.__setattr__(self, "ages", ages)

    @property
    def n_components(self) -> int:
        return self.variant.n_components

    @property
    def alpha_array(self) -> np.ndarray:
        return np.asarray(self.alpha, dtype=np.float64)

    @property
    def age_array(self) -> np.ndarray:
        return np.asarray(self.ages, dtype=np.float64)

    def describe(self) -> str:
        """One-line summary for run logs."""
        parts = [f"variant={self.variant.value}", f"eta={self.eta}"]
        if self.variant.uses_mixture:
            parts.append(f"A={self.n_age_classes}")
            parts.append(f"alpha={list(self.alpha)}")
        if self.use_covariates:
            parts.append("covariates=on")
        if self.prior_only:
            parts.append("prior_only")
        return "ModelConfig(" + ", ".join(parts) + ")"

    def to_dict(self) -> dict:
        """JSON-friendly form; inverse of from_dict."""
        return {
            "variant": self.variant.value,
            "n_age_classes": self.n_age_classes,
            "alpha": list(self.alpha),
            "eta": self.eta,
            "prior_only": self.prior_only,
            "priors": self.priors.to_dict(),
            "use_covariates": self.use_covariates,
            "ages": list(self.ages),
        }

    @classmethod
    def from_dict(cls, d: dict) -> ModelConfig:
        return cls(
            variant=ModelVariant(d["variant"]),
            n_age_classes=int(d["n_age_classes"]),
            alpha=tuple(d["alpha"]),
            eta=float(d["eta"]),
            prior_only=bool(d["prior_only"]),
            priors=GrowthPriors.from_dict(d["priors"]),
            use_covariates=bool(d["use_covariates"]),
            ages=tuple(d["ages"]),
        )
