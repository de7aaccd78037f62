#!/usr/bin/env python3
"""
pipeline.py

Strain-sampling planning, end to end:
  counts table -> Poisson / PLN / GLMM fits -> observed vs simulated ECDFs
  -> colony picks needed -> specimens needed to estimate the miss proportion.

Examples
  python -m analysis.strainpick.pipeline --dataset pooled --zero-truncated
  python -m analysis.strainpick.pipeline --counts data/strain_counts.tsv --zero-truncated
  python -m analysis.strainpick.pipeline --colonies data/colony_sts.tsv --zero-truncated
  python -m analysis.strainpick.pipeline --config strainpick.toml

Outputs (in --out-dir):
  counts_used.tsv, model_fit.tsv, random_effect_lrt.tsv, proportions.tsv,
  ecdf_<model>.tsv, picks_table.tsv, sample_size.tsv, colony_alpha.tsv
  (with --colonies), PNG plots unless --no-plots, summary.txt
"""
from __future__ import annotations

import argparse
import os
from typing import List, Optional

import numpy as np
import pandas as pd

from . import datasets
from .count_models import CountModel, compare_models, fit_all, random_effect_lrt
from .io_utils import (COUNT_COL, GROUP_COL, ensure_dir, load_toml, parse_csv_list, read_counts_table,
                       setup_logging, toml_to_cli, validate_counts, write_tsv)
from .picks import miss_probability, picks_needed, picks_needed_from_table, picks_table
from .sample_size import METHODS, required_samples, sample_size_table
from .simulate import ABUNDANCE_MODELS, monte_carlo_miss_probability
from .summaries import compare_fit, proportions_table

# TOML keys that are store_true flags / lists joined as CSV
FLAG_KEYS = {"zero_truncated", "no_plots"}
LISTY = {"picks_grid"}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="ESBL E. coli strain-sampling planning: colony picks and specimen numbers")
    # input
    ap.add_argument("--counts", default=None, help="TSV/CSV with participant,n_strains[,study,visit]")
    ap.add_argument("--dataset", default=None, choices=datasets.available(), help="Built-in literal dataset")
    ap.add_argument("--colonies", default=None, help="Colony table participant,colony,st[,visit]; counts derived from it")
    ap.add_argument("--count-col", default=COUNT_COL)
    ap.add_argument("--group-col", default=GROUP_COL)

    # models
    ap.add_argument("--zero-truncated", action="store_true", help="Participants were selected as carriers (K >= 1)")
    ap.add_argument("--gh-nodes", type=int, default=30, help="Gauss-Hermite nodes for PLN/GLMM likelihoods")
    ap.add_argument("--model", default="auto", choices=["auto", "poisson", "pln", "glmm"],
                    help="Model used for planning; auto = lowest AIC")

    # simulation
    ap.add_argument("--n-sim", type=int, default=100000)
    ap.add_argument("--abundance", default="equal", choices=list(ABUNDANCE_MODELS))
    ap.add_argument("--dirichlet-alpha", type=float, default=1.0)
    ap.add_argument("--mc-draws", type=int, default=20000, help="Draws per pick count for --abundance dirichlet")

    # picks
    ap.add_argument("--target-capture", type=float, default=0.95)
    ap.add_argument("--max-picks", type=int, default=20)
    ap.add_argument("--picks-grid", default=None, help="CSV pick counts like '1,2,3,5,10' (default 1..max-picks)")

    # sample size
    ap.add_argument("--ci-width", type=float, default=0.10, help="Total CI width for the miss proportion")
    ap.add_argument("--alpha", type=float, default=0.05)
    ap.add_argument("--ci-method", default="wilson", choices=list(METHODS))

    # output
    ap.add_argument("--out-dir", default="results/strain_sampling")
    ap.add_argument("--no-plots", action="store_true")
    ap.add_argument("--log-level", default="INFO")

    # RNG
    ap.add_argument("--seed", type=int, default=1337)

    # Config
    ap.add_argument("--config", help="TOML config file mapping long-option names to values")
    return ap


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = build_parser()
    # first parse just to see if --config was given
    args_pre, _unknown = ap.parse_known_args(argv)
    if args_pre.config:
        cfg = load_toml(args_pre.config)
        return ap.parse_args(toml_to_cli(cfg, FLAG_KEYS, LISTY))
    return ap.parse_args(argv)


def load_counts(args, logger) -> pd.DataFrame:
    if args.colonies:
        from .diversity import colony_alpha, read_colony_table, strain_counts_from_colonies
        colonies = read_colony_table(args.colonies)
        write_tsv(colony_alpha(colonies), os.path.join(args.out_dir, "colony_alpha.tsv"))
        df = strain_counts_from_colonies(colonies)
        logger.info("Derived counts from %d colonies in %s", len(colonies), args.colonies)
        return df
    if args.dataset and not args.counts:
        return validate_counts(datasets.load(args.dataset), args.count_col, args.group_col)
    return read_counts_table(args.counts, args.count_col, args.group_col)


def parse_picks_grid(s: Optional[str], max_picks: int) -> List[int]:
    vals = parse_csv_list(s)
    if not vals:
        return list(range(1, int(max_picks) + 1))
    bad = [v for v in vals if v < 1 or v != int(v)]
    if bad:
        raise ValueError(f"Pick counts must be positive integers, got {bad}")
    return sorted({int(v) for v in vals})


def choose_model(models: List[CountModel], which: str) -> CountModel:
    if which == "auto":
        return min(models, key=lambda m: m.aic)
    for m in models:
        if m.label.replace("zt-", "") == which:
            return m
    raise ValueError(f"Model {which} was not fitted (have {[m.label for m in models]})")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logger = setup_logging(args.log_level)
    ensure_dir(args.out_dir)
    rng = np.random.default_rng(int(args.seed))

    summary = []
    def add_sum(line: str): summary.append(line)

    df = load_counts(args, logger)
    counts = df[args.count_col].to_numpy()
    write_tsv(df, os.path.join(args.out_dir, "counts_used.tsv"))
    add_sum(f"participants={df[args.group_col].nunique()} observations={len(df)} "
            f"mean_strains={counts.mean():.3f} max_strains={counts.max()} zero_truncated={args.zero_truncated}")

    # fits
    models = fit_all(df, args.zero_truncated, args.gh_nodes, args.count_col, args.group_col)
    fit_tab = compare_models(models)
    write_tsv(fit_tab, os.path.join(args.out_dir, "model_fit.tsv"))
    for _, r in fit_tab.iterrows():
        add_sum(f"fit {r['model']}: mu_log={r['mu_log']:.3f} sigma_log={r['sigma_log']:.3f} "
                f"loglik={r['loglik']:.3f} AIC={r['aic']:.2f} dAIC={r['delta_aic']:.2f}"
                + (" [singular]" if r["singular"] else "") + ("" if r["converged"] else " [not converged]"))

    lrt = [random_effect_lrt(models[0], m) for m in models[1:]]
    write_tsv(pd.DataFrame(lrt), os.path.join(args.out_dir, "random_effect_lrt.tsv"))
    for t in lrt:
        add_sum(f"LRT sigma_log=0 ({t['null']} vs {t['alt']}): stat={t['lr_stat']:.3f} p={t['p_value']:.4f}")

    # observed vs simulated
    write_tsv(proportions_table(counts, alpha=args.alpha), os.path.join(args.out_dir, "proportions.tsv"))
    for m in models:
        png = None if args.no_plots else os.path.join(args.out_dir, f"ecdf_{m.label}.png")
        tab, _sims = compare_fit(counts, m, n_sim=args.n_sim, rng=rng, alpha=args.alpha, out_png=png)
        write_tsv(tab, os.path.join(args.out_dir, f"ecdf_{m.label}.tsv"))
        add_sum(f"ECDF {m.label}: max|diff|={tab['cdf_diff'].max():.3f}")
        if not args.no_plots:
            from .plotting import plot_proportions
            plot_proportions(tab, os.path.join(args.out_dir, f"proportions_{m.label}.png"),
                             title=f"Distinct STs per participant ({m.label})")

    model = choose_model(models, args.model)
    add_sum(f"planning model: {model.label} (mean STs per participant {model.mean():.3f})")

    # picks
    grid = parse_picks_grid(args.picks_grid, args.max_picks)
    picks = picks_table(model, grid)
    p_col = "p_miss_equal"
    if args.abundance == "dirichlet":
        mc = [monte_carlo_miss_probability(model, n, args.mc_draws, rng, "dirichlet", args.dirichlet_alpha, args.alpha)
              for n in picks["n_picks"]]
        picks["p_miss_mc"] = [r["p_miss"] for r in mc]
        picks["mc_ci_low"] = [r["ci_low"] for r in mc]
        picks["mc_ci_high"] = [r["ci_high"] for r in mc]
        p_col = "p_miss_mc"
    write_tsv(picks, os.path.join(args.out_dir, "picks_table.tsv"))

    n_exceed = picks_needed(model, args.target_capture, "exceed", max_picks=max(grid))
    n_equal = picks_needed(model, args.target_capture, "equal", max_picks=max(grid))
    add_sum(f"picks for P(K<=n)>={args.target_capture}: {n_exceed if n_exceed is not None else f'>{max(grid)}'}")
    add_sum(f"picks for P(all STs picked | equal abundance)>={args.target_capture}: "
            f"{n_equal if n_equal is not None else f'>{max(grid)}'}")
    n_plan = n_equal if n_equal is not None else max(grid)
    if args.abundance == "dirichlet":
        n_mc = picks_needed_from_table(picks, args.target_capture, "p_miss_mc")
        add_sum(f"picks for P(all STs picked | dirichlet alpha={args.dirichlet_alpha:g}, simulated)>={args.target_capture}: "
                f"{n_mc if n_mc is not None else f'>{max(grid)}'}")
        n_plan = n_mc if n_mc is not None else max(grid)

    # specimens
    ss = sample_size_table(picks, p_col=p_col, width=args.ci_width, alpha=args.alpha, method=args.ci_method)
    write_tsv(ss, os.path.join(args.out_dir, "sample_size.tsv"))
    row = ss.loc[ss["n_picks"] == n_plan]
    if not row.empty:
        p_plan = float(row[p_col].iloc[0])
    elif args.abundance == "dirichlet":
        p_plan = monte_carlo_miss_probability(model, n_plan, args.mc_draws, rng, "dirichlet",
                                              args.dirichlet_alpha, args.alpha)["p_miss"]
    else:
        p_plan = miss_probability(model, n_plan)
    req = required_samples(p_plan, args.ci_width, args.alpha, args.ci_method)
    add_sum(f"at {n_plan} picks: miss proportion={p_plan:.4f}; specimens for a {args.ci_width:.0%}-wide "
            f"{1 - args.alpha:.0%} {args.ci_method} CI={req['n_samples']} (achieved width {req['achieved_width']:.4f})")
    worst = required_samples(0.5, args.ci_width, args.alpha, args.ci_method)
    add_sum(f"worst case (p=0.5): specimens={worst['n_samples']}")

    if not args.no_plots:
        from .plotting import plot_capture_curve, plot_sample_size
        plot_capture_curve(picks, os.path.join(args.out_dir, "capture_curve.png"), target=args.target_capture,
                           title=f"Capture probability ({model.label})")
        plot_sample_size(ss, os.path.join(args.out_dir, "sample_size.png"))

    # write summary
    with open(os.path.join(args.out_dir, "summary.txt"), "w") as f:
        for line in summary:
            f.write(line + "\n")
    logger.info("Wrote results to %s", args.out_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
