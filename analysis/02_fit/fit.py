"""
vbgrowth — Hierarchical VBGF Posterior (Phase 2)

Fits the hierarchical von Bertalanffy growth model to a length-frequency
("mixture") sample, a capture-mark-recapture ("CMR") sample, or both
(integrated). The PyMC graph mirrors vbgrowth.density term for term:
non-centered intercepts and site effects, LKJ prior on the Cholesky factor
of the site-effect correlation matrix, Dirichlet class proportions, the
class-marginal lognormal mixture and the lognormal recapture likelihood.
Sampling uses nutpie's Rust NUTS.

When the input came from 01_simulate, the known generating values are
compared against the posterior (parameter recovery).

Usage:
  uv run python analysis/02_fit/fit.py [--study sim] [--variant integrated]
      [--n-samples 1000] [--n-tune 1000] [--n-chains 4] [--prior-only]

Outputs (in results/<study>/02_fit/<date>/):
  - data/:   posterior.nc (ArviZ NetCDF), model_config.json, input tables,
             posterior_summary.parquet, recovery.parquet, convergence.json
  - plots/:  PNG visualizations (site growth parameters, global recovery)
  - run_info.json, run_log.txt
"""

import argparse
import json
import sys
import time
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import arviz as az
import matplotlib.pyplot as plt
import numpy as np
import nutpie
import polars as pl
import pymc as pm
import pytensor.tensor as pt

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext, generate_run_id, resolve_upstream_dir
except ModuleNotFoundError:
    from run_context import (  # type: ignore[no-redef]
        RunContext,
        generate_run_id,
        resolve_upstream_dir,
    )

from vbgrowth.config import DAYS_PER_YEAR, DEFAULT_LKJ_ETA, RANDOM_SEED
from vbgrowth.data import GrowthData
from vbgrowth.density import GrowthModel
from vbgrowth.errors import ConfigurationError
from vbgrowth.model_spec import ModelConfig, ModelVariant
from vbgrowth.params import GrowthParams

# ── Primer ───────────────────────────────────────────────────────────────────

FIT_PRIMER = """\
# Hierarchical VBGF Posterior

## Purpose

Estimates von Bertalanffy growth (L0, Linf, k) with partial pooling across
sites. Length-frequency samples carry information about L0 and the early
growth curve; recaptures carry direct information about Linf and k. The
integrated model lets both inform the shared Linf and k.

## Method

- log(L0, Linf, k) per site = global intercept + correlated site deviation.
- Site deviations are non-centered: z ~ N(0, 1), eps = z @ (diag(sigma) L)'.
- L ~ LKJCholesky(eta); sigma ~ HalfNormal.
- Mixture: each fish's age class is summed out (log-sum-exp over classes),
  class proportions theta_j ~ Dirichlet(alpha).
- CMR: recapture length ~ LogNormal around the VBGF projection of the fish's
  own capture length over the elapsed time.

## Outputs

| File | Description |
|------|-------------|
| `posterior.nc` | Full posterior (ArviZ InferenceData) |
| `model_config.json` | Model configuration, read back by 03_loo |
| `posterior_summary.parquet` | ArviZ summary of global parameters |
| `recovery.parquet` | Truth vs 95% interval (simulated inputs only) |
| `convergence.json` | R-hat, ESS, divergences, E-BFMI |

## Interpretation Guide

- R-hat above 1.01 or bulk ESS below 400 means the chains have not mixed;
  do not interpret the posterior until this is resolved.
- Divergences usually point at the hierarchical scales. The model is already
  non-centered; persistent divergences suggest priors that are too wide.
"""

# ── Constants ────────────────────────────────────────────────────────────────

FIT_N_SAMPLES = 1000
FIT_N_TUNE = 1000
FIT_N_CHAINS = 4
FIT_N_AGE_CLASSES = 3

RHAT_THRESHOLD = 1.01
ESS_THRESHOLD = 400
MAX_DIVERGENCES = 10
EBFMI_THRESHOLD = 0.3

RECOVERY_PROB = 0.95
CORE_CHECK_DRAWS = 50  # posterior draws re-evaluated with the numpy density

CONVERGENCE_VARS = ["b0", "sigma_vb", "chol_cov_corr", "sigma_mix", "sigma_cmr", "theta", "beta"]
SUMMARY_VARS = ["growth_global", "sigma_vb", "chol_cov_corr", "sigma_mix", "sigma_cmr", "beta"]

INPUT_TABLES = ("mixture", "cmr", "covariates")


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="vbgrowth hierarchical VBGF fit")
    parser.add_argument("--study", default="sim", help="Study name (results/<study>/...)")
    parser.add_argument(
        "--variant",
        default=ModelVariant.INTEGRATED.value,
        choices=[v.value for v in ModelVariant],
    )
    parser.add_argument("--sim-dir", default=None, help="Override input (01_simulate) directory")
    parser.add_argument("--run-id", default=None, help="Run ID for grouped pipeline output")
    parser.add_argument("--new-run", action="store_true", help="Start a new grouped run ID")
    parser.add_argument("--results-root", default=None, help="Override results root")
    parser.add_argument("--n-age-classes", type=int, default=FIT_N_AGE_CLASSES)
    parser.add_argument("--eta", type=float, default=DEFAULT_LKJ_ETA, help="LKJ concentration")
    parser.add_argument("--prior-only", action="store_true", help="Sample the prior predictive")
    parser.add_argument("--use-covariates", action="store_true")
    parser.add_argument(
        "--n-samples", type=int, default=FIT_N_SAMPLES, help="MCMC samples per chain"
    )
    parser.add_argument(
        "--n-tune", type=int, default=FIT_N_TUNE, help="MCMC tuning samples (discarded)"
    )
    parser.add_argument("--n-chains", type=int, default=FIT_N_CHAINS, help="Number of MCMC chains")
    parser.add_argument("--seed", type=int, default=RANDOM_SEED)
    return parser.parse_args()


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def save_fig(fig: plt.Figure, path: Path, dpi: int = 150) -> None:
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    print(f"  Saved: {path.name}")


# ── Phase 1: Load Data ──────────────────────────────────────────────────────


def load_input_frames(input_dir: Path) -> dict[str, pl.DataFrame]:
    """Read whichever of mixture/cmr/covariates parquet files exist in input_dir/data."""
    frames: dict[str, pl.DataFrame] = {}
    for name in INPUT_TABLES:
        path = input_dir / "data" / f"{name}.parquet"
        if path.exists():
            frames[name] = pl.read_parquet(path)
            print(f"  {name}: {frames[name].height} rows")
    return frames


def load_growth_data(input_dir: Path, variant: ModelVariant) -> GrowthData:
    """Build GrowthData with only the samples the variant consumes."""
    frames = load_input_frames(input_dir)
    return GrowthData.from_frames(
        mixture=frames.get("mixture") if variant.uses_mixture else None,
        cmr=frames.get("cmr") if variant.uses_cmr else None,
        covariates=frames.get("covariates"),
    )


# ── Phase 2: Build and Sample Model ─────────────────────────────────────────


def build_growth_graph(data: GrowthData, config: ModelConfig) -> pm.Model:
    """Build the hierarchical VBGF model graph (no sampling).

    Model structure:
        b0_raw → b0 (non-centered intercepts, log scale)
        z, LKJCholeskyCov(eta, sigma_vb) → correlated site deviations
        site_growth = exp(b0 + deviations [+ X beta on Linf, k])
        theta_j ~ Dirichlet(alpha) → class-marginal mixture likelihood
        capture length + elapsed days → recapture likelihood

    With config.prior_only the likelihood nodes are left out and every
    prior is kept.

    Returns the PyMC model for use with nutpie or pm.sample().
    """
    # Same data/config validation as the numpy density
    GrowthModel(data, config)
    if config.eta <= 0:
        msg = f"PyMC's LKJCholeskyCov needs eta > 0; got {config.eta}"
        raise ConfigurationError(msg)

    variant = config.variant
    priors = config.priors
    K = config.n_components
    J = data.n_sites
    A = config.n_age_classes

    coords: dict = {
        "site": [str(s) for s in data.site_ids],
        "component": list(variant.components),
    }
    if variant.uses_mixture:
        coords["age_class"] = list(range(A))
        coords["mix_obs"] = np.arange(data.n_mixture)
    if variant.uses_cmr:
        coords["cmr_obs"] = np.arange(data.n_cmr)
    if config.use_covariates:
        coords["covariate"] = list(data.covariates.names)
        coords["slope"] = ["Linf", "k"]

    loc = priors.intercept_loc(variant)
    scale = priors.intercept_scale(variant)

    with pm.Model(coords=coords) as model:
        # --- Global intercepts (non-centered) ---
        b0_raw = pm.Normal("b0_raw", mu=0.0, sigma=1.0, dims="component")
        b0 = pm.Deterministic("b0", loc + scale * b0_raw, dims="component")
        pm.Deterministic("growth_global", pt.exp(b0), dims="component")

        # --- Correlated site effects (non-centered) ---
        chol, _, stds = pm.LKJCholeskyCov(
            "chol_cov",
            n=K,
            eta=config.eta,
            sd_dist=priors.sigma_vb.build_dist(shape=K),
            compute_corr=True,
        )
        pm.Deterministic("sigma_vb", stds, dims="component")
        pm.Deterministic("L_omega", chol / stds[:, None])
        print(f"  sigma_vb prior: {priors.sigma_vb.describe()}, LKJ eta={config.eta}")

        z = pm.Normal("z", mu=0.0, sigma=1.0, dims=("site", "component"))
        log_site = b0[None, :] + pt.dot(z, chol.T)

        if config.use_covariates:
            X = np.array(data.covariates.values)
            beta = priors.beta.build("beta", dims=("covariate", "slope"))
            print(f"  beta prior: {priors.beta.describe()}")
            # Linf and k are always the last two components
            log_site = pt.concatenate(
                [log_site[:, : K - 2], log_site[:, K - 2 :] + pt.dot(X, beta)], axis=1
            )

        site_growth = pm.Deterministic(
            "site_growth", pt.exp(log_site), dims=("site", "component")
        )
        Linf = site_growth[:, K - 2]
        k = site_growth[:, K - 1]

        # --- Mixture: latent age class summed out ---
        if variant.uses_mixture:
            L0 = site_growth[:, 0]
            ages = config.age_array
            mu = L0[:, None] + (Linf - L0)[:, None] * -pt.expm1(-k[:, None] * ages[None, :])
            sigma_mix = priors.sigma_mix.build("sigma_mix")
            print(f"  sigma_mix prior: {priors.sigma_mix.describe()}")

            mix_site = np.array(data.mixture.site)
            if A > 1:
                theta = pm.Dirichlet(
                    "theta",
                    a=np.tile(config.alpha_array, (J, 1)),
                    dims=("site", "age_class"),
                )
                if not config.prior_only:
                    pm.Mixture(
                        "y_mix",
                        w=theta[mix_site],
                        comp_dists=pm.LogNormal.dist(mu=pt.log(mu[mix_site]), sigma=sigma_mix),
                        observed=np.array(data.mixture.length),
                        dims="mix_obs",
                    )
            elif not config.prior_only:
                pm.LogNormal(
                    "y_mix",
                    mu=pt.log(mu[mix_site, 0]),
                    sigma=sigma_mix,
                    observed=np.array(data.mixture.length),
                    dims="mix_obs",
                )

        # --- CMR: capture length is the initial condition ---
        if variant.uses_cmr:
            sigma_cmr = priors.sigma_cmr.build("sigma_cmr")
            print(f"  sigma_cmr prior: {priors.sigma_cmr.describe()}")
            if not config.prior_only:
                cmr = data.cmr
                cmr_site = np.array(cmr.site)
                l_cap = np.array(cmr.length_capture)
                t = np.array(cmr.days) / DAYS_PER_YEAR
                mu_rec = l_cap + (Linf[cmr_site] - l_cap) * -pt.expm1(-k[cmr_site] * t)
                pm.LogNormal(
                    "y_cmr",
                    mu=pt.log(mu_rec),
                    sigma=sigma_cmr,
                    observed=np.array(cmr.length_recapture),
                    dims="cmr_obs",
                )

        if config.prior_only:
            print("  prior_only: likelihood nodes omitted")

    return model


def sample_growth_model(
    model: pm.Model,
    n_samples: int,
    n_tune: int,
    n_chains: int,
    seed: int = RANDOM_SEED,
) -> tuple[az.InferenceData, float]:
    """Compile with nutpie and sample. Returns (InferenceData, sampling_time_seconds)."""
    print("  Compiling model with nutpie...")
    compiled = nutpie.compile_pymc_model(model)

    print(f"  Sampling: {n_samples} draws, {n_tune} tune, {n_chains} chains")
    print(f"  seed={seed}, sampler=nutpie (Rust NUTS)")

    t0 = time.time()
    idata = nutpie.sample(
        compiled,
        draws=n_samples,
        tune=n_tune,
        chains=n_chains,
        seed=seed,
        progress_bar=True,
        store_divergences=True,
    )
    sampling_time = time.time() - t0

    print(f"  Sampling complete in {sampling_time:.1f}s")
    return idata, sampling_time


# ── Phase 3: Convergence Diagnostics ────────────────────────────────────────


def check_convergence(idata: az.InferenceData) -> dict:
    """R-hat, bulk ESS, divergences and E-BFMI for the global parameters.

    Returns dict with all diagnostic metrics and an overall ``all_ok``.
    """
    print_header("CONVERGENCE")

    diag: dict = {}
    available_vars = [v for v in CONVERGENCE_VARS if v in idata.posterior]

    # Constant entries (unit diagonal of the correlation matrix) give NaN R-hat;
    # xarray's max skips them
    rhat = az.rhat(idata, var_names=available_vars)
    for var in available_vars:
        max_rhat = float(rhat[var].max())
        diag[f"{var}_rhat_max"] = max_rhat
        status = "OK" if max_rhat < RHAT_THRESHOLD else "WARNING"
        print(f"  R-hat ({var}): max = {max_rhat:.4f}  {status}")

    n_chains = len(idata.posterior.chain)
    ess = az.ess(idata, var_names=available_vars)
    for var in available_vars:
        min_ess = float(ess[var].min())
        diag[f"{var}_ess_min"] = min_ess
        diag[f"{var}_ess_per_chain"] = min_ess / n_chains
        status = "OK" if min_ess > ESS_THRESHOLD else "WARNING"
        print(f"  ESS ({var}): min = {min_ess:.0f}  {status}")

    divergences = int(idata.sample_stats["diverging"].sum().values)
    diag["divergences"] = divergences
    div_ok = divergences < MAX_DIVERGENCES
    print(f"  Divergences: {divergences}  {'OK' if div_ok else 'WARNING'}")

    bfmi_values = az.bfmi(idata)
    diag["ebfmi"] = [float(v) for v in bfmi_values]
    bfmi_ok = all(v > EBFMI_THRESHOLD for v in bfmi_values)
    for i, v in enumerate(bfmi_values):
        print(f"  E-BFMI chain {i}: {v:.3f}  {'OK' if v > EBFMI_THRESHOLD else 'WARNING'}")

    rhat_ok = all(diag[f"{v}_rhat_max"] < RHAT_THRESHOLD for v in available_vars)
    ess_ok = all(diag[f"{v}_ess_min"] > ESS_THRESHOLD for v in available_vars)
    diag["all_ok"] = rhat_ok and ess_ok and div_ok and bfmi_ok
    if diag["all_ok"]:
        print("  CONVERGENCE: ALL CHECKS PASSED")
    else:
        print("  CONVERGENCE: SOME CHECKS FAILED — inspect diagnostics")

    return diag


# ── Phase 4: Extract Results ────────────────────────────────────────────────


def extract_parameter_draws(
    idata: az.InferenceData,
    config: ModelConfig,
    n_sites: int,
) -> list[list[GrowthParams]]:
    """Posterior → draws[chain][draw] of natural-scale GrowthParams.

    The result feeds vbgrowth.predictive directly, so generated quantities
    and PSIS-LOO run on the numpy engine rather than the PyMC graph.
    """
    post = idata.posterior
    variant = config.variant

    b0_raw = post["b0_raw"].values
    z = post["z"].values
    sigma_vb = post["sigma_vb"].values
    L_omega = post["L_omega"].values
    if z.shape[2] != n_sites:
        msg = f"Posterior has {z.shape[2]} sites, expected {n_sites}"
        raise ValueError(msg)

    sigma_mix = post["sigma_mix"].values if variant.uses_mixture else None
    sigma_cmr = post["sigma_cmr"].values if variant.uses_cmr else None
    theta = None
    if variant.uses_mixture:
        if "theta" in post:
            theta = post["theta"].values
        else:
            # single age class: theta is fixed at 1
            theta = np.ones(z.shape[:3] + (1,))
    beta = post["beta"].values if config.use_covariates else None

    n_chains, n_draws = b0_raw.shape[:2]
    draws: list[list[GrowthParams]] = []
    for c in range(n_chains):
        chain: list[GrowthParams] = []
        for d in range(n_draws):
            chain.append(
                GrowthParams(
                    b0_raw=b0_raw[c, d],
                    z=z[c, d],
                    sigma_vb=sigma_vb[c, d],
                    L_omega=L_omega[c, d],
                    sigma_mix=float(sigma_mix[c, d]) if sigma_mix is not None else None,
                    sigma_cmr=float(sigma_cmr[c, d]) if sigma_cmr is not None else None,
                    theta=theta[c, d] if theta is not None else None,
                    beta=beta[c, d] if beta is not None else None,
                )
            )
        draws.append(chain)
    return draws


def check_core_density(
    draws: list[list[GrowthParams]],
    data: GrowthData,
    config: ModelConfig,
    max_draws: int = CORE_CHECK_DRAWS,
) -> dict:
    """Re-evaluate a spread of posterior draws with the numpy density.

    Every draw the sampler accepted must have a finite log density under the
    numpy engine; anything else means the two implementations disagree.
    """
    model = GrowthModel(data, config)
    flat = [p for chain in draws for p in chain]
    idx = np.unique(np.linspace(0, len(flat) - 1, min(max_draws, len(flat))).astype(int))
    values = np.array([model.log_density(flat[i]) for i in idx])
    n_finite = int(np.isfinite(values).sum())
    result = {
        "n_checked": int(idx.size),
        "n_finite": n_finite,
        "min": float(np.min(values)),
        "max": float(np.max(values)),
    }
    status = "OK" if n_finite == idx.size else "WARNING"
    print(
        f"  Core density on {idx.size} draws: {n_finite} finite, "
        f"range [{result['min']:.1f}, {result['max']:.1f}]  {status}"
    )
    return result


def summarize_posterior(idata: az.InferenceData) -> pl.DataFrame:
    """ArviZ summary of the global parameters as a polars table."""
    var_names = [v for v in SUMMARY_VARS if v in idata.posterior]
    summary = az.summary(idata, var_names=var_names, hdi_prob=RECOVERY_PROB)
    columns = {"parameter": [str(name) for name in summary.index]}
    for col in summary.columns:
        columns[col] = summary[col].to_numpy(dtype=np.float64)
    return pl.DataFrame(columns)


def compute_recovery(
    idata: az.InferenceData,
    truth: dict,
    config: ModelConfig,
    prob: float = RECOVERY_PROB,
) -> pl.DataFrame:
    """Compare generating values to equal-tailed posterior intervals.

    One row per global quantity: growth parameters, site-effect scales and
    observation scales present in the variant.
    """
    variant = config.variant
    post = idata.posterior
    tail = (1.0 - prob) / 2.0
    n_full = 3
    offset = n_full - variant.n_components

    rows: list[dict] = []

    def _add(name: str, samples: np.ndarray, true_value: float) -> None:
        lo, hi = np.quantile(samples, [tail, 1.0 - tail])
        rows.append(
            {
                "parameter": name,
                "true": float(true_value),
                "mean": float(np.mean(samples)),
                "lower": float(lo),
                "upper": float(hi),
                "covered": bool(lo <= true_value <= hi),
            }
        )

    growth = post["growth_global"].values
    sigma_vb = post["sigma_vb"].values
    for i, comp in enumerate(variant.components):
        _add(comp, growth[..., i].ravel(), truth[comp])
        _add(f"sigma_vb[{comp}]", sigma_vb[..., i].ravel(), truth["sigma_vb"][offset + i])
    if variant.uses_mixture:
        _add("sigma_mix", post["sigma_mix"].values.ravel(), truth["sigma_mix"])
    if variant.uses_cmr:
        _add("sigma_cmr", post["sigma_cmr"].values.ravel(), truth["sigma_cmr"])

    return pl.DataFrame(rows)


# ── Plots ────────────────────────────────────────────────────────────────────


def plot_site_growth(
    idata: az.InferenceData,
    config: ModelConfig,
    out_dir: Path,
    site_truth: pl.DataFrame | None = None,
) -> None:
    """Posterior mean Linf vs k per site with 95% intervals (truth overlaid if known)."""
    K = config.n_components
    growth = idata.posterior["site_growth"]
    Linf = growth.isel(component=K - 2).values.reshape(-1, growth.sizes["site"])
    k = growth.isel(component=K - 1).values.reshape(-1, growth.sizes["site"])
    tail = (1.0 - RECOVERY_PROB) / 2.0

    Linf_mean, k_mean = Linf.mean(axis=0), k.mean(axis=0)
    Linf_lo, Linf_hi = np.quantile(Linf, [tail, 1.0 - tail], axis=0)
    k_lo, k_hi = np.quantile(k, [tail, 1.0 - tail], axis=0)

    fig, ax = plt.subplots(figsize=(10, 7))
    ax.errorbar(
        Linf_mean,
        k_mean,
        xerr=[Linf_mean - Linf_lo, Linf_hi - Linf_mean],
        yerr=[k_mean - k_lo, k_hi - k_mean],
        fmt="o",
        color="#0072B2",
        ecolor="#0072B2",
        alpha=0.6,
        markersize=5,
        label="posterior mean (95% interval)",
    )

    if site_truth is not None:
        order = {str(s): i for i, s in enumerate(growth.coords["site"].values)}
        truth = site_truth.with_columns(pl.col("site").cast(pl.Utf8)).filter(
            pl.col("site").is_in(list(order))
        )
        ax.scatter(
            truth["Linf"].to_numpy(),
            truth["k"].to_numpy(),
            marker="x",
            color="#D55E00",
            s=40,
            zorder=4,
            label="true site value",
        )

    ax.set_xlabel("Linf (mm)")
    ax.set_ylabel("k (per year)")
    ax.set_title(
        "Site Growth Parameters\nEach point is one site; Linf and k trade off along the curve.",
        fontsize=12,
        fontweight="bold",
    )
    ax.legend(fontsize=10)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "site_growth.png")


def plot_recovery(recovery: pl.DataFrame, out_dir: Path) -> None:
    """Forest plot of global quantities, interval scaled by the true value."""
    if recovery.height == 0:
        return

    fig, ax = plt.subplots(figsize=(9, 0.6 * recovery.height + 1.5))
    y = np.arange(recovery.height)[::-1]
    true = recovery["true"].to_numpy()
    lower = recovery["lower"].to_numpy() / true
    upper = recovery["upper"].to_numpy() / true
    mean = recovery["mean"].to_numpy() / true
    colors = ["#009E73" if c else "#D55E00" for c in recovery["covered"].to_list()]

    ax.hlines(y, lower, upper, colors=colors, linewidth=2.5)
    ax.scatter(mean, y, color=colors, zorder=3)
    ax.axvline(1.0, color="#333333", linestyle=":", linewidth=1)
    ax.set_yticks(y)
    ax.set_yticklabels(recovery["parameter"].to_list())
    ax.set_xlabel("Posterior / true value")
    ax.set_title(
        "Parameter Recovery\nGreen intervals contain the generating value.",
        fontsize=12,
        fontweight="bold",
    )
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "recovery.png")


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    results_root = Path(args.results_root) if args.results_root else None

    run_id = args.run_id
    if run_id is None and args.new_run:
        run_id = generate_run_id(args.study, results_root)

    with RunContext(
        study=args.study,
        analysis_name="02_fit",
        params=vars(args),
        results_root=results_root,
        primer=FIT_PRIMER,
        run_id=run_id,
    ) as ctx:
        input_dir = resolve_upstream_dir(
            "01_simulate", ctx.study_root, run_id,
            Path(args.sim_dir) if args.sim_dir else None,
        )
        print(f"vbgrowth Hierarchical VBGF Fit — Study {ctx.study}")
        print(f"Input:    {input_dir}")
        print(f"Output:   {ctx.run_dir}")

        # ── Load data ──
        print_header("LOADING DATA")
        variant = ModelVariant(args.variant)
        data = load_growth_data(input_dir, variant)
        print(f"  Sites: {data.n_sites}, mixture: {data.n_mixture}, CMR: {data.n_cmr}")

        config = ModelConfig(
            variant=variant,
            n_age_classes=args.n_age_classes,
            eta=args.eta,
            prior_only=args.prior_only,
            use_covariates=args.use_covariates,
        )
        print(f"  {config.describe()}")

        # ── Build and sample ──
        print_header("MODEL")
        model = build_growth_graph(data, config)
        free = [rv.name for rv in model.free_RVs]
        print(f"  Free RVs: {free}")

        print_header("SAMPLING")
        idata, sampling_time = sample_growth_model(
            model,
            n_samples=args.n_samples,
            n_tune=args.n_tune,
            n_chains=args.n_chains,
            seed=args.seed,
        )

        convergence = check_convergence(idata)
        convergence["sampling_time_s"] = round(sampling_time, 1)

        # ── Extract results ──
        print_header("EXTRACTING RESULTS")
        draws = extract_parameter_draws(idata, config, data.n_sites)
        convergence["core_density"] = check_core_density(draws, data, config)

        summary = summarize_posterior(idata)
        summary.write_parquet(ctx.data_dir / "posterior_summary.parquet")
        print(f"  Saved: posterior_summary.parquet ({summary.height} rows)")

        idata.to_netcdf(str(ctx.data_dir / "posterior.nc"))
        print("  Saved: posterior.nc")

        with open(ctx.data_dir / "model_config.json", "w") as f:
            json.dump(config.to_dict(), f, indent=2)
        print("  Saved: model_config.json")

        for name, frame in data.to_frames().items():
            frame.write_parquet(ctx.data_dir / f"{name}.parquet")
            print(f"  Saved: {name}.parquet")

        # ── Recovery (simulated inputs only) ──
        truth_path = input_dir / "data" / "truth.json"
        site_truth_path = input_dir / "data" / "site_truth.parquet"
        recovery = None
        if truth_path.exists() and not config.prior_only:
            print_header("PARAMETER RECOVERY")
            with open(truth_path) as f:
                truth_doc = json.load(f)
            recovery = compute_recovery(idata, truth_doc["truth"], config)
            for row in recovery.iter_rows(named=True):
                mark = "OK" if row["covered"] else "MISSED"
                print(
                    f"  {row['parameter']:<16} true={row['true']:.4g}  "
                    f"[{row['lower']:.4g}, {row['upper']:.4g}]  {mark}"
                )
            n_cov = int(recovery["covered"].sum())
            print(f"  Covered: {n_cov}/{recovery.height}")
            recovery.write_parquet(ctx.data_dir / "recovery.parquet")
            convergence["recovery_covered"] = n_cov
            convergence["recovery_total"] = recovery.height

        with open(ctx.data_dir / "convergence.json", "w") as f:
            json.dump(convergence, f, indent=2, default=str)
        print("  Saved: convergence.json")

        # ── Plots ──
        print_header("PLOTS")
        site_truth = pl.read_parquet(site_truth_path) if site_truth_path.exists() else None
        plot_site_growth(idata, config, ctx.plots_dir, site_truth)
        if recovery is not None:
            plot_recovery(recovery, ctx.plots_dir)

        print_header("DONE")
        print(f"  All outputs in {ctx.run_dir}")


if __name__ == "__main__":
    main()
