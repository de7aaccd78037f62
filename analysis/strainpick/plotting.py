#!/usr/bin/env python3
"""PNG figures for the strain-sampling tables. Each function returns the path written."""
from __future__ import annotations

import os
from typing import Optional

import matplotlib
matplotlib.use("Agg")  # Non-interactive backend
import matplotlib.pyplot as plt
import pandas as pd


def _save(out_png: str) -> str:
    d = os.path.dirname(out_png)
    if d:
        os.makedirs(d, exist_ok=True)
    plt.tight_layout()
    plt.savefig(out_png, dpi=300, bbox_inches="tight")
    plt.close()
    return out_png


def plot_ecdf_comparison(tab: pd.DataFrame, out_png: str, title: Optional[str] = None) -> str:
    """Step ECDFs of observed and simulated counts from empirical_vs_simulated()."""
    plt.figure(figsize=(7, 5))
    plt.step(tab["k"], tab["empirical_cdf"], where="post", label="Observed", linewidth=2)
    plt.step(tab["k"], tab["simulated_cdf"], where="post", label="Simulated", linestyle="--", linewidth=2)
    plt.xlabel("Distinct STs per participant")
    plt.ylabel("Cumulative proportion")
    plt.ylim(0, 1.02)
    plt.title(title or "Observed vs simulated ECDF")
    plt.legend()
    plt.grid(True, alpha=0.3)
    return _save(out_png)


def plot_proportions(tab: pd.DataFrame, out_png: str, title: Optional[str] = None) -> str:
    """Observed proportions with CI bars; simulated and model pmf overlaid when present."""
    plt.figure(figsize=(7, 5))
    prop = "empirical_prop" if "empirical_prop" in tab.columns else "proportion"
    lo = "emp_ci_low" if "emp_ci_low" in tab.columns else "ci_low"
    hi = "emp_ci_high" if "emp_ci_high" in tab.columns else "ci_high"
    yerr = [(tab[prop] - tab[lo]).clip(lower=0), (tab[hi] - tab[prop]).clip(lower=0)]
    plt.errorbar(tab["k"], tab[prop], yerr=yerr, fmt="o", capsize=4, label="Observed (95% CI)")
    if "simulated_prop" in tab.columns:
        plt.plot(tab["k"], tab["simulated_prop"], "s--", alpha=0.8, label="Simulated")
    if "model_pmf" in tab.columns:
        plt.plot(tab["k"], tab["model_pmf"], "x:", alpha=0.8, label="Model pmf")
    plt.xlabel("Distinct STs per participant")
    plt.ylabel("Proportion of participants")
    plt.title(title or "Distinct STs per participant")
    plt.legend()
    plt.grid(True, alpha=0.3)
    return _save(out_png)


def plot_capture_curve(picks: pd.DataFrame, out_png: str, target: Optional[float] = None,
                       title: Optional[str] = None) -> str:
    plt.figure(figsize=(7, 5))
    plt.plot(picks["n_picks"], 1.0 - picks["p_exceed"], "o-", label="K <= picks")
    plt.plot(picks["n_picks"], picks["p_capture_equal"], "s-", label="All STs picked (equal abundance)")
    if target is not None:
        plt.axhline(target, color="grey", linestyle="--", linewidth=1, label=f"target {target:g}")
    plt.xlabel("Colonies picked per specimen")
    plt.ylabel("Capture probability")
    plt.ylim(0, 1.02)
    plt.title(title or "Capture probability vs colonies picked")
    plt.legend()
    plt.grid(True, alpha=0.3)
    return _save(out_png)


def plot_sample_size(tab: pd.DataFrame, out_png: str, title: Optional[str] = None) -> str:
    plt.figure(figsize=(7, 5))
    plt.plot(tab["n_picks"], tab["n_samples"], "o-")
    plt.xlabel("Colonies picked per specimen")
    plt.ylabel("Specimens needed")
    plt.title(title or "Specimens needed to estimate the miss proportion")
    plt.grid(True, alpha=0.3)
    return _save(out_png)
