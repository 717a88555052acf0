"""
vbgrowth — PSIS-LOO and LOO-PIT Calibration (Phase 3)

Re-evaluates every posterior draw from 02_fit with the numpy density engine:
class-marginal pointwise log-likelihood and posterior predictive replicates.
From these it computes Pareto-smoothed importance sampling leave-one-out
cross-validation (elpd_loo, p_loo, Pareto k-hat per observation) and the
LOO probability integral transform, with an ECDF-difference envelope and a
KS test against uniformity.

Observations are ordered mixture first, then CMR, throughout.

Usage:
  uv run python analysis/03_loo/loo.py [--study sim] [--fit-dir PATH]
      [--thin 1] [--khat-threshold 0.7]

Outputs (in results/<study>/03_loo/<date>/):
  - data/:   loo_pointwise.parquet, loo_summary.json, loo_pit.parquet,
             pit_ecdf.parquet, posterior_predictive.nc
  - plots/:  pareto_k.png, loo_pit_ecdf.png, loo_pit_hist.png
  - run_info.json, run_log.txt
"""

import argparse
import json
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import arviz as az
import matplotlib.pyplot as plt
import numpy as np
import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext, generate_run_id, resolve_upstream_dir
except ModuleNotFoundError:
    from run_context import (  # type: ignore[no-redef]
        RunContext,
        generate_run_id,
        resolve_upstream_dir,
    )

try:
    from analysis.fit import extract_parameter_draws, load_input_frames
except ModuleNotFoundError:
    from fit import extract_parameter_draws, load_input_frames  # type: ignore[no-redef]

from vbgrowth.calibration import LooPitResult, calibration_summary
from vbgrowth.config import KHAT_GOOD, KHAT_THRESHOLD, KHAT_VERY_BAD, RANDOM_SEED
from vbgrowth.data import GrowthData
from vbgrowth.loo import LooResult, psis_loo, summarize_pareto_k
from vbgrowth.model_spec import ModelConfig
from vbgrowth.predictive import observed_vector, posterior_generated_quantities

# ── Primer ───────────────────────────────────────────────────────────────────

LOO_PRIMER = """\
# PSIS-LOO and LOO-PIT Calibration

## Purpose

Estimates out-of-sample predictive accuracy without refitting, and checks
whether the predictive distributions are calibrated.

## Method

- Pointwise log-likelihood is class-marginal: a length-frequency fish's age
  class is summed out, never conditioned on a sampled class.
- PSIS-LOO: importance ratios 1/p(y_i | theta_s) are Pareto-smoothed per
  observation. elpd_loo sums the log leave-one-out predictive densities.
- Pareto k-hat per observation: < 0.5 good, 0.5-0.7 ok, > 0.7 unreliable.
- LOO-PIT: the LOO-weighted share of replicates at or below each observation.
  Under calibration these are Uniform(0, 1).

## Outputs

| File | Description |
|------|-------------|
| `loo_pointwise.parquet` | elpd_loo, MC standard error, k-hat, flag per observation |
| `loo_summary.json` | elpd_loo, SE, p_loo, k-hat counts, PIT summary |
| `loo_pit.parquet` | PIT value per observation |
| `pit_ecdf.parquet` | ECDF difference and envelope on the grid |
| `posterior_predictive.nc` | Replicates + log-likelihood (ArviZ InferenceData) |

## Interpretation Guide

- Flagged observations (k-hat > threshold) make elpd_loo optimistic; moment
  matching or exact refits for those points are the usual remedies.
- An ECDF difference that leaves the envelope is a calibration failure.
  A U-shaped PIT histogram means the predictive is too narrow; a hump means
  too wide.
"""

# ── Constants ────────────────────────────────────────────────────────────────

LOO_THIN = 1
SOURCE_COLORS = {"mixture": "#0072B2", "cmr": "#D55E00"}


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="vbgrowth PSIS-LOO and LOO-PIT")
    parser.add_argument("--study", default="sim", help="Study name (results/<study>/...)")
    parser.add_argument("--fit-dir", default=None, help="Override input (02_fit) directory")
    parser.add_argument("--run-id", default=None, help="Run ID for grouped pipeline output")
    parser.add_argument("--new-run", action="store_true", help="Start a new grouped run ID")
    parser.add_argument("--results-root", default=None, help="Override results root")
    parser.add_argument("--thin", type=int, default=LOO_THIN, help="Keep every n-th draw")
    parser.add_argument(
        "--khat-threshold",
        type=float,
        default=KHAT_THRESHOLD,
        help="Pareto k-hat above which an observation is flagged",
    )
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


# ── Phase 1: Load Fit ───────────────────────────────────────────────────────


def load_fit(fit_dir: Path) -> tuple[az.InferenceData, ModelConfig, GrowthData]:
    """Read posterior.nc, model_config.json and the input tables saved by 02_fit."""
    data_dir = fit_dir / "data"
    posterior_path = data_dir / "posterior.nc"
    if not posterior_path.exists():
        msg = f"No posterior at {posterior_path}; run 02_fit first"
        raise FileNotFoundError(msg)

    idata = az.from_netcdf(str(posterior_path))
    with open(data_dir / "model_config.json") as f:
        config = ModelConfig.from_dict(json.load(f))

    frames = load_input_frames(fit_dir)
    data = GrowthData.from_frames(
        mixture=frames.get("mixture"),
        cmr=frames.get("cmr"),
        covariates=frames.get("covariates"),
    )
    return idata, config, data


def observation_sources(data: GrowthData, config: ModelConfig) -> list[str]:
    """'mixture' / 'cmr' label per observation in log-likelihood order."""
    sources: list[str] = []
    if config.variant.uses_mixture:
        sources.extend(["mixture"] * data.n_mixture)
    if config.variant.uses_cmr:
        sources.extend(["cmr"] * data.n_cmr)
    return sources


def elpd_by_source(pointwise: pl.DataFrame) -> pl.DataFrame:
    """elpd_loo and flagged counts split by data source."""
    return (
        pointwise.group_by("source", maintain_order=True)
        .agg(
            pl.len().alias("n_obs"),
            pl.col("elpd_loo").sum().alias("elpd_loo"),
            pl.col("flagged").sum().alias("n_flagged"),
            pl.col("pareto_k").max().alias("max_k"),
        )
    )


# ── Plots ────────────────────────────────────────────────────────────────────


def plot_pareto_k(pointwise: pl.DataFrame, threshold: float, out_dir: Path) -> None:
    """Pareto k-hat per observation with the diagnostic thresholds."""
    fig, ax = plt.subplots(figsize=(12, 5))
    # +inf k-hat is drawn at the top of the axis
    k = pointwise["pareto_k"].to_numpy().copy()
    finite_max = float(np.max(k[np.isfinite(k)])) if np.isfinite(k).any() else 1.0
    ceiling = max(finite_max, KHAT_VERY_BAD) * 1.1
    k[~np.isfinite(k)] = ceiling

    for source, color in SOURCE_COLORS.items():
        mask = (pointwise["source"] == source).to_numpy()
        if mask.any():
            ax.scatter(
                pointwise["obs_idx"].to_numpy()[mask],
                k[mask],
                s=8,
                alpha=0.6,
                color=color,
                label=source,
            )

    ax.axhline(KHAT_GOOD, color="#999999", linestyle=":", linewidth=1)
    ax.axhline(threshold, color="#D55E00", linestyle="--", linewidth=1.2, label=f"k = {threshold}")
    ax.axhline(KHAT_VERY_BAD, color="#CC0000", linestyle="-", linewidth=1)

    n_flagged = int(pointwise["flagged"].sum())
    ax.set_xlabel("Observation")
    ax.set_ylabel("Pareto k-hat")
    ax.set_title(
        f"PSIS Diagnostics: {n_flagged} of {pointwise.height} observations flagged\n"
        "Points above the dashed line have unreliable leave-one-out estimates.",
        fontsize=12,
        fontweight="bold",
    )
    ax.legend(fontsize=10, loc="upper right")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "pareto_k.png")


def plot_pit_ecdf(result: LooPitResult, out_dir: Path) -> None:
    """ECDF(u) - u of the LOO-PIT values with the simulated uniform envelope."""
    fig, ax = plt.subplots(figsize=(9, 6))
    ax.fill_between(
        result.grid,
        result.envelope_lower,
        result.envelope_upper,
        color="#BBBBBB",
        alpha=0.5,
        label="uniform envelope",
    )
    color = "#D55E00" if result.outside_envelope else "#0072B2"
    ax.plot(result.grid, result.ecdf_difference, color=color, linewidth=2, label="LOO-PIT")
    ax.axhline(0.0, color="#333333", linewidth=0.8)
    ax.set_xlabel("u")
    ax.set_ylabel("ECDF(u) - u")
    verdict = "leaves" if result.outside_envelope else "stays inside"
    ax.set_title(
        f"LOO-PIT Calibration (KS p = {result.ks_pvalue:.3f})\n"
        f"The ECDF difference {verdict} the envelope.",
        fontsize=12,
        fontweight="bold",
    )
    ax.legend(fontsize=10)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "loo_pit_ecdf.png")


def plot_pit_hist(pit: np.ndarray, sources: list[str], out_dir: Path) -> None:
    fig, ax = plt.subplots(figsize=(9, 5))
    src = np.array(sources)
    bins = np.linspace(0.0, 1.0, 21)
    for source, color in SOURCE_COLORS.items():
        mask = src == source
        if mask.any():
            ax.hist(pit[mask], bins=bins, alpha=0.6, color=color, label=source, density=True)
    ax.axhline(1.0, color="#333333", linestyle=":", linewidth=1)
    ax.set_xlabel("LOO-PIT")
    ax.set_ylabel("Density")
    ax.set_title(
        "LOO-PIT Histogram\nFlat means calibrated; U-shape means overconfident.",
        fontsize=12,
        fontweight="bold",
    )
    ax.legend(fontsize=10)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "loo_pit_hist.png")


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    results_root = Path(args.results_root) if args.results_root else None

    run_id = args.run_id
    if run_id is None and args.new_run:
        run_id = generate_run_id(args.study, results_root)

    with RunContext(
        study=args.study,
        analysis_name="03_loo",
        params=vars(args),
        results_root=results_root,
        primer=LOO_PRIMER,
        run_id=run_id,
    ) as ctx:
        fit_dir = resolve_upstream_dir(
            "02_fit", ctx.study_root, run_id,
            Path(args.fit_dir) if args.fit_dir else None,
        )
        print(f"vbgrowth PSIS-LOO — Study {ctx.study}")
        print(f"Input:    {fit_dir}")
        print(f"Output:   {ctx.run_dir}")

        # ── Load ──
        print_header("LOADING FIT")
        idata, config, data = load_fit(fit_dir)
        print(f"  {config.describe()}")
        if config.prior_only:
            print("  WARNING: prior-only fit; LOO measures prior predictive fit")

        draws = extract_parameter_draws(idata, config, data.n_sites)
        if args.thin > 1:
            draws = [chain[:: args.thin] for chain in draws]
        n_total = sum(len(chain) for chain in draws)
        print(f"  Draws: {len(draws)} chains x {len(draws[0])} = {n_total}")

        # ── Generated quantities ──
        print_header("GENERATED QUANTITIES")
        rng = np.random.default_rng(args.seed)
        ppd = posterior_generated_quantities(draws, data, config, rng)
        y_obs = observed_vector(data, config.variant)
        sources = observation_sources(data, config)
        print(f"  Observations: {ppd.n_obs} ({data.n_mixture} mixture, {data.n_cmr} CMR)")

        ppc_idata = ppd.to_inference_data(y_obs)
        ppc_idata.to_netcdf(str(ctx.data_dir / "posterior_predictive.nc"))
        print("  Saved: posterior_predictive.nc")

        # ── PSIS-LOO ──
        print_header("PSIS-LOO")
        loo: LooResult = psis_loo(ppd.log_lik, khat_threshold=args.khat_threshold)
        print(f"  elpd_loo = {loo.elpd_loo:.1f} (SE {loo.se:.1f})")
        print(f"  p_loo    = {loo.p_loo:.1f}")
        print(f"  LOOIC    = {loo.looic:.1f}")

        k_summary = summarize_pareto_k(loo.pareto_k)
        print(
            f"  Pareto k: {k_summary['good']} good, {k_summary['ok']} ok, "
            f"{k_summary['bad']} bad, {k_summary['very_bad']} very bad "
            f"(max {k_summary['max_k']:.2f})"
        )
        if not loo.reliable:
            print(
                f"  WARNING: {loo.n_flagged} observation(s) above k = {loo.khat_threshold}; "
                "elpd_loo may be optimistic"
            )

        # ArviZ reference on the same log-likelihood; it takes one pooled r_eff
        az_loo = az.loo(ppc_idata, reff=float(np.mean(loo.r_eff)))
        diff = loo.elpd_loo - float(az_loo.elpd_loo)
        print(f"  ArviZ elpd_loo = {float(az_loo.elpd_loo):.1f} (difference {diff:+.2f})")

        pointwise = loo.pointwise.with_columns(pl.Series("source", sources))
        pointwise.write_parquet(ctx.data_dir / "loo_pointwise.parquet")
        print("  Saved: loo_pointwise.parquet")

        by_source = elpd_by_source(pointwise)
        for row in by_source.iter_rows(named=True):
            print(
                f"  {row['source']:<8} n={row['n_obs']:<6} elpd={row['elpd_loo']:.1f}  "
                f"flagged={row['n_flagged']}"
            )

        # ── LOO-PIT ──
        print_header("LOO-PIT CALIBRATION")
        pit_result = calibration_summary(y_obs, ppd.y_rep, loo.log_weights, rng)
        print(f"  KS statistic = {pit_result.ks_statistic:.4f}, p = {pit_result.ks_pvalue:.4f}")
        if pit_result.outside_envelope:
            print(f"  WARNING: ECDF difference outside envelope at {pit_result.n_outside} grid points")
        else:
            print("  ECDF difference within envelope")

        pl.DataFrame(
            {
                "obs_idx": np.arange(pit_result.pit.size),
                "source": sources,
                "y": y_obs,
                "pit": pit_result.pit,
            }
        ).write_parquet(ctx.data_dir / "loo_pit.parquet")
        pit_result.to_frame().write_parquet(ctx.data_dir / "pit_ecdf.parquet")
        print("  Saved: loo_pit.parquet, pit_ecdf.parquet")

        summary = {
            "model_config": config.to_dict(),
            "n_draws": n_total,
            "loo": loo.to_dict(),
            "arviz_elpd_loo": float(az_loo.elpd_loo),
            "by_source": by_source.to_dicts(),
            "loo_pit": pit_result.to_dict(),
        }
        with open(ctx.data_dir / "loo_summary.json", "w") as f:
            json.dump(summary, f, indent=2, default=str)
        print("  Saved: loo_summary.json")

        # ── Plots ──
        print_header("PLOTS")
        plot_pareto_k(pointwise, loo.khat_threshold, ctx.plots_dir)
        plot_pit_ecdf(pit_result, ctx.plots_dir)
        plot_pit_hist(pit_result.pit, sources, ctx.plots_dir)

        print_header("DONE")
        print(f"  All outputs in {ctx.run_dir}")


if __name__ == "__main__":
    main()
