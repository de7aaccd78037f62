#!/usr/bin/env python3
"""
Tabulate observed strain counts, draw from a fitted model, compare the two.

compare_fit() is the one-call version used for every dataset/model pair:
proportions with CIs, simulated counts, ECDF table and (optionally) a plot.
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from statsmodels.stats.proportion import proportion_confint

from .count_models import CountModel
from .io_utils import LOGGER_NAME
from .simulate import simulate_counts

logger = logging.getLogger(LOGGER_NAME)


def _counts(values) -> np.ndarray:
    v = np.asarray(values, dtype=float).ravel()
    v = v[np.isfinite(v)]
    if v.size == 0:
        raise ValueError("No counts to summarise")
    return v.astype(int)


def _k_range(v: np.ndarray, max_k: Optional[int], min_k: Optional[int] = None) -> np.ndarray:
    if min_k is None:
        lo = 0 if v.min() == 0 else 1
    else:
        lo = max(int(min_k), 0)
    hi = int(v.max()) if max_k is None else int(max_k)
    return np.arange(lo, max(hi, lo) + 1)


def proportions_table(counts, alpha: float = 0.05, method: str = "wilson",
                      max_k: Optional[int] = None, min_k: Optional[int] = None) -> pd.DataFrame:
    """Share of participants with each count k, with proportion_confint intervals."""
    v = _counts(counts)
    ks = _k_range(v, max_k, min_k)
    n = np.array([np.sum(v == k) for k in ks])
    lo, hi = proportion_confint(count=n, nobs=v.size, alpha=alpha, method=method)
    return pd.DataFrame({
        "k": ks,
        "n_participants": n,
        "n_total": v.size,
        "proportion": n / v.size,
        "ci_low": np.asarray(lo, float),
        "ci_high": np.asarray(hi, float),
    })


def ecdf(values, max_k: int) -> np.ndarray:
    """P(X <= k) for k = 0..max_k."""
    v = _counts(values)
    ks = np.arange(0, int(max_k) + 1)
    return np.searchsorted(np.sort(v), ks, side="right") / v.size


def empirical_vs_simulated(counts, simulated, alpha: float = 0.05, method: str = "wilson",
                           model: Optional[CountModel] = None) -> pd.DataFrame:
    emp = _counts(counts)
    sim = _counts(simulated)
    # k range covers zeros from either sample
    lo = min(int(emp.min()), int(sim.min()), 1)
    hi = max(int(emp.max()), int(np.quantile(sim, 0.999)))
    tab = proportions_table(emp, alpha, method, max_k=hi, min_k=lo)
    tab = tab.rename(columns={"n_participants": "empirical_n", "proportion": "empirical_prop",
                              "ci_low": "emp_ci_low", "ci_high": "emp_ci_high"}).drop(columns="n_total")
    ks = tab["k"].to_numpy()
    tab["simulated_prop"] = [np.mean(sim == k) for k in ks]
    if model is not None:
        tab["model_pmf"] = model.pmf(ks)
    tab["empirical_cdf"] = ecdf(emp, hi)[ks]
    tab["simulated_cdf"] = ecdf(sim, hi)[ks]
    tab["cdf_diff"] = (tab["empirical_cdf"] - tab["simulated_cdf"]).abs()
    return tab


def compare_fit(counts, model: CountModel, n_sim: int = 100000, rng: Optional[np.random.Generator] = None,
                alpha: float = 0.05, out_png: Optional[str] = None,
                title: Optional[str] = None) -> Tuple[pd.DataFrame, np.ndarray]:
    rng = np.random.default_rng() if rng is None else rng
    sims = simulate_counts(model, n_sim, rng)
    tab = empirical_vs_simulated(counts, sims, alpha=alpha, model=model)
    logger.info("%s: max |ECDF diff| = %.3f over %d simulated draws",
                model.label or model.family, float(tab["cdf_diff"].max()), int(n_sim))
    if out_png:
        from .plotting import plot_ecdf_comparison
        plot_ecdf_comparison(tab, out_png, title=title or f"Distinct STs: observed vs {model.label or model.family}")
    return tab, sims
