"""
vbgrowth — Synthetic Growth Data (Phase 1)

Simulates length-frequency ("mixture") and capture-mark-recapture ("CMR")
samples from known von Bertalanffy parameters with correlated site random
effects. The output has exactly the table layout a field loader produces, so
the fit phase cannot tell simulated data from real data, and the known truth
makes parameter recovery checkable.

Usage:
  uv run python analysis/01_simulate/simulate.py [--study sim] [--variant integrated]
      [--n-sites 30] [--n-mixture 1000] [--n-cmr 200] [--seed 42]

Outputs (in results/<study>/01_simulate/<date>/):
  - data/:   mixture.parquet, cmr.parquet, covariates.parquet (inputs for 02_fit),
             mixture_truth.parquet, site_truth.parquet, truth.json
  - plots/:  PNG visualizations (length-frequency, recapture growth)
  - run_info.json, run_log.txt
"""

import argparse
import json
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext, generate_run_id
except ModuleNotFoundError:
    from run_context import RunContext, generate_run_id  # type: ignore[no-redef]

from vbgrowth.config import RANDOM_SEED
from vbgrowth.growth import age_class_means
from vbgrowth.model_spec import ModelVariant
from vbgrowth.simulate import SimulatedDataset, SimulationConfig, TrueParameters, simulate_dataset

# ── Primer ───────────────────────────────────────────────────────────────────

SIMULATE_PRIMER = """\
# Synthetic Growth Data

## Purpose

Produces datasets with a known answer. Fitting the growth model to data
simulated from known parameters is the only direct check that the model,
the priors and the sampler can recover those parameters.

## Method

1. **Site effects.** Each site's log (L0, Linf, k) deviates from the global
   value by a correlated normal draw (non-centered: z ~ N(0, 1), then scaled
   through the Cholesky factor of the correlation matrix).
2. **Mixture sample.** Each fish is assigned a site, a latent age class from
   the site's class proportions, and a lognormal length around the class mean.
3. **CMR sample.** Each fish gets a uniform capture length and elapsed days;
   its recapture length is lognormal around the VBGF projection of its own
   capture length.

## Outputs

| File | Description |
|------|-------------|
| `mixture.parquet` | site, length |
| `cmr.parquet` | site, length_capture, length_recapture, days |
| `covariates.parquet` | site + standardized covariates (only with --n-covariates) |
| `mixture_truth.parquet` | mixture rows plus the latent age class |
| `site_truth.parquet` | per-site natural-scale growth parameters |
| `truth.json` | global generating values |
"""

# ── Constants ────────────────────────────────────────────────────────────────

SIM_N_SITES = 30
SIM_N_MIXTURE = 1000
SIM_N_CMR = 200
SIM_N_AGE_CLASSES = 3
SIM_ALPHA = 4.0  # Dirichlet concentration for per-site class proportions

CLASS_COLORS = ["#0072B2", "#E69F00", "#009E73", "#CC79A7", "#56B4E9"]


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="vbgrowth synthetic data simulation")
    parser.add_argument("--study", default="sim", help="Study name (results/<study>/...)")
    parser.add_argument(
        "--variant",
        default=ModelVariant.INTEGRATED.value,
        choices=[v.value for v in ModelVariant],
        help="Which samples to simulate",
    )
    parser.add_argument("--n-sites", type=int, default=SIM_N_SITES)
    parser.add_argument("--n-mixture", type=int, default=SIM_N_MIXTURE, help="Total mixture fish")
    parser.add_argument("--n-cmr", type=int, default=SIM_N_CMR, help="Total CMR pairs")
    parser.add_argument("--n-age-classes", type=int, default=SIM_N_AGE_CLASSES)
    parser.add_argument("--n-covariates", type=int, default=0)
    parser.add_argument("--seed", type=int, default=RANDOM_SEED)
    parser.add_argument("--run-id", default=None, help="Run ID for grouped pipeline output")
    parser.add_argument("--new-run", action="store_true", help="Start a new grouped run ID")
    parser.add_argument("--results-root", default=None, help="Override results root")
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


def default_truth(n_age_classes: int, n_covariates: int = 0) -> TrueParameters:
    """Generating values used when no truth file is supplied.

    Mildly correlated site effects (Linf and k negatively correlated, the
    usual VBGF trade-off) and positive-but-uneven class proportions.
    """
    omega = np.array(
        [
            [1.0, 0.2, 0.0],
            [0.2, 1.0, -0.4],
            [0.0, -0.4, 1.0],
        ]
    )
    beta = None
    if n_covariates:
        beta = np.tile([[0.05, -0.05]], (n_covariates, 1))
    return TrueParameters(
        L0=25.0,
        Linf=250.0,
        k=0.4,
        sigma_vb=(0.1, 0.1, 0.15),
        omega=omega,
        sigma_mix=0.1,
        sigma_cmr=0.05,
        alpha=(SIM_ALPHA,) * n_age_classes,
        beta=beta,
    )


def truth_to_dict(truth: TrueParameters) -> dict:
    return {
        "L0": truth.L0,
        "Linf": truth.Linf,
        "k": truth.k,
        "sigma_vb": list(truth.sigma_vb),
        "omega": truth.omega.tolist(),
        "sigma_mix": truth.sigma_mix,
        "sigma_cmr": truth.sigma_cmr,
        "alpha": list(truth.alpha) if truth.alpha is not None else None,
        "beta": truth.beta.tolist() if truth.beta is not None else None,
    }


def site_truth_frame(sim: SimulatedDataset) -> pl.DataFrame:
    """Per-site natural-scale parameters (and class proportions when simulated)."""
    cols: dict = {"site": list(sim.data.site_ids)}
    if sim.site_growth.L0 is not None:
        cols["L0"] = sim.site_growth.L0
    cols["Linf"] = sim.site_growth.Linf
    cols["k"] = sim.site_growth.k
    if sim.theta is not None:
        for a in range(sim.theta.shape[1]):
            cols[f"theta_{a}"] = sim.theta[:, a]
    return pl.DataFrame(cols)


# ── Plots ────────────────────────────────────────────────────────────────────


def plot_length_frequency(sim: SimulatedDataset, ages: np.ndarray, out_dir: Path) -> None:
    """Pooled length-frequency histogram, coloured by latent age class."""
    mix = sim.data.mixture
    if mix is None or sim.comp is None:
        return

    fig, ax = plt.subplots(figsize=(11, 6))
    bins = np.linspace(0.0, float(mix.length.max()) * 1.05, 60)
    for a in range(len(ages)):
        sel = sim.comp == a
        ax.hist(
            mix.length[sel],
            bins=bins,
            alpha=0.6,
            color=CLASS_COLORS[a % len(CLASS_COLORS)],
            label=f"age class {a} (t={ages[a]:g})",
        )

    truth = sim.truth
    means = age_class_means(truth.L0, truth.Linf, truth.k, ages)[0]
    for mu in means:
        ax.axvline(mu, color="#333333", linestyle=":", linewidth=1)

    ax.set_xlabel("Length (mm)")
    ax.set_ylabel("Fish")
    ax.set_title(
        "Simulated Length-Frequency Sample\n"
        "Colours show the latent age class; dotted lines are global class means.",
        fontsize=12,
        fontweight="bold",
    )
    ax.legend(fontsize=10)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "length_frequency.png")


def plot_recapture_growth(sim: SimulatedDataset, out_dir: Path) -> None:
    """Growth increment vs capture length, coloured by elapsed days."""
    cmr = sim.data.cmr
    if cmr is None:
        return

    fig, ax = plt.subplots(figsize=(10, 6))
    sc = ax.scatter(
        cmr.length_capture,
        cmr.length_recapture - cmr.length_capture,
        c=cmr.days,
        cmap="viridis",
        s=18,
        alpha=0.8,
    )
    fig.colorbar(sc, ax=ax, label="Days at liberty")
    ax.axhline(0.0, color="#888888", linewidth=0.8)
    ax.axvline(sim.truth.Linf, color="#D55E00", linestyle=":", linewidth=1, label="global Linf")
    ax.set_xlabel("Length at capture (mm)")
    ax.set_ylabel("Recapture - capture length (mm)")
    ax.set_title(
        "Simulated Capture-Recapture Growth\nIncrements shrink as fish approach Linf.",
        fontsize=12,
        fontweight="bold",
    )
    ax.legend(fontsize=10, loc="upper right")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "recapture_growth.png")


# ── Main ─────────────────────────────────────────────────────────────────────


def main() -> None:
    args = parse_args()
    results_root = Path(args.results_root) if args.results_root else None

    run_id = args.run_id
    if run_id is None and args.new_run:
        run_id = generate_run_id(args.study, results_root)

    with RunContext(
        study=args.study,
        analysis_name="01_simulate",
        params=vars(args),
        results_root=results_root,
        primer=SIMULATE_PRIMER,
        run_id=run_id,
    ) as ctx:
        print(f"vbgrowth Synthetic Data — Study {ctx.study}")
        print(f"Variant:  {args.variant}")
        print(f"Output:   {ctx.run_dir}")

        print_header("CONFIGURATION")
        variant = ModelVariant(args.variant)
        sim_config = SimulationConfig(
            n_sites=args.n_sites,
            n_mixture=args.n_mixture if variant.uses_mixture else 0,
            n_cmr=args.n_cmr if variant.uses_cmr else 0,
            n_age_classes=args.n_age_classes,
            n_covariates=args.n_covariates,
        )
        truth = default_truth(args.n_age_classes, args.n_covariates)
        print(f"  Sites: {sim_config.n_sites}")
        print(f"  Mixture fish: {sim_config.total_mixture}, CMR pairs: {sim_config.n_cmr}")
        print(f"  Truth: L0={truth.L0}, Linf={truth.Linf}, k={truth.k}")
        print(f"  sigma_vb={truth.sigma_vb}, sigma_mix={truth.sigma_mix}, sigma_cmr={truth.sigma_cmr}")

        print_header("SIMULATING")
        rng = np.random.default_rng(args.seed)
        sim = simulate_dataset(truth, sim_config, variant, rng)
        print(f"  Observations: {sim.data.n_mixture} mixture, {sim.data.n_cmr} CMR")
        if sim.comp is not None:
            counts = np.bincount(sim.comp, minlength=args.n_age_classes)
            print(f"  Latent class counts: {counts.tolist()}")

        print_header("SAVING")
        for name, frame in sim.data.to_frames().items():
            path = ctx.data_dir / f"{name}.parquet"
            frame.write_parquet(path)
            print(f"  Saved: {path.name} ({frame.height} rows)")

        if sim.comp is not None:
            mixture_truth = sim.data.to_frames()["mixture"].with_columns(
                pl.Series("age_class", sim.comp)
            )
            mixture_truth.write_parquet(ctx.data_dir / "mixture_truth.parquet")
            print("  Saved: mixture_truth.parquet")

        site_truth_frame(sim).write_parquet(ctx.data_dir / "site_truth.parquet")
        print("  Saved: site_truth.parquet")

        truth_doc = {
            "variant": variant.value,
            "seed": args.seed,
            "ages": sim_config.age_array.tolist(),
            "truth": truth_to_dict(truth),
        }
        with open(ctx.data_dir / "truth.json", "w") as f:
            json.dump(truth_doc, f, indent=2)
        print("  Saved: truth.json")

        print_header("PLOTS")
        plot_length_frequency(sim, sim_config.age_array, ctx.plots_dir)
        plot_recapture_growth(sim, ctx.plots_dir)

        print_header("DONE")
        print(f"  All outputs in {ctx.run_dir}")


if __name__ == "__main__":
    main()
