#!/usr/bin/env python3
"""
Specimens needed to estimate a miss proportion to a given CI width.

Wilson score interval, closed form (total width w, q = 1 - p):
    n = ceil( 2 z^2 [ (pq - w^2/2) + sqrt((pq - w^2/2)^2 + w^2 (1 - w^2)/4) ] / w^2 )
"wald" uses the normal-approximation count from statsmodels.
"""
from __future__ import annotations

import math
from typing import Dict

import pandas as pd
from scipy import stats
from statsmodels.stats.proportion import proportion_confint, samplesize_confint_proportion

METHODS = ("wilson", "wald")


def _z(alpha: float) -> float:
    return float(stats.norm.ppf(1.0 - alpha / 2.0))


def _check(p: float, width: float, alpha: float) -> None:
    if not (0.0 <= p <= 1.0) or math.isnan(p):
        raise ValueError(f"proportion must be in [0, 1], got {p}")
    if not (0.0 < width < 1.0):
        raise ValueError(f"CI width must be in (0, 1), got {width}")
    if not (0.0 < alpha < 1.0):
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")


def wilson_sample_size(p: float, width: float = 0.10, alpha: float = 0.05) -> int:
    _check(p, width, alpha)
    z2 = _z(alpha) ** 2
    w2 = width ** 2
    a = p * (1.0 - p) - w2 / 2.0
    n = 2.0 * z2 * (a + math.sqrt(a * a + w2 * (1.0 - w2) / 4.0)) / w2
    # guard against 380.0000000001 style round-up
    return int(math.ceil(round(n, 9)))


def wald_sample_size(p: float, width: float = 0.10, alpha: float = 0.05) -> int:
    _check(p, width, alpha)
    n = samplesize_confint_proportion(p, width / 2.0, alpha=alpha)
    return max(int(math.ceil(round(float(n), 9))), 1)


def achieved_width(p: float, n: int, alpha: float = 0.05, method: str = "wilson") -> float:
    """Width of the CI at count round(p*n) out of n."""
    sm_method = "normal" if method == "wald" else method
    lo, hi = proportion_confint(count=int(round(p * n)), nobs=int(n), alpha=alpha, method=sm_method)
    return float(hi - lo)


def required_samples(p: float, width: float = 0.10, alpha: float = 0.05, method: str = "wilson") -> Dict[str, float]:
    if method not in METHODS:
        raise ValueError(f"Unknown method: {method} (have {METHODS})")
    n = wilson_sample_size(p, width, alpha) if method == "wilson" else wald_sample_size(p, width, alpha)
    return {"p": p, "width": width, "alpha": alpha, "method": method,
            "n_samples": n, "achieved_width": achieved_width(p, n, alpha, method)}


def sample_size_table(miss: pd.DataFrame, p_col: str = "p_miss_equal", width: float = 0.10,
                      alpha: float = 0.05, method: str = "wilson") -> pd.DataFrame:
    """Add n_samples and achieved_width for the proportion in p_col of each row."""
    if p_col not in miss.columns:
        raise ValueError(f"Missing column: {p_col} (have {list(miss.columns)})")
    out = miss.copy()
    res = [required_samples(float(p), width, alpha, method) for p in out[p_col]]
    out["n_samples"] = [r["n_samples"] for r in res]
    out["achieved_width"] = [r["achieved_width"] for r in res]
    return out
