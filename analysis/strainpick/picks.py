#!/usr/bin/env python3
"""
Colony picks per specimen needed to capture every ST.

Two criteria:
- "exceed": a specimen is missed when it carries more STs than colonies
  picked, P(K > n). This is a lower bound on the miss probability.
- "equal":  STs are equally abundant, so n picks from K strains is a
  coupon-collector draw; a specimen is missed when some ST is never picked.

Abundance that is not equal needs simulation (simulate.monte_carlo_miss_probability).
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from .count_models import CountModel
from .io_utils import LOGGER_NAME

CRITERIA = ("exceed", "equal")

logger = logging.getLogger(LOGGER_NAME)


def prob_all_detected(k: int, n_picks: int) -> float:
    """P(all k equally abundant STs appear among n_picks colonies).

    Tracks the distribution of distinct STs seen pick by pick, which equals
    the inclusion-exclusion sum  sum_j (-1)^j C(k,j) (1 - j/k)^n  without
    its cancellation for large k.
    """
    k = int(k)
    n = int(n_picks)
    if k <= 0:
        return 1.0
    if n < k:
        return 0.0
    if k == 1:
        return 1.0
    j = np.arange(k + 1, dtype=float)
    seen = np.zeros(k + 1)
    seen[0] = 1.0
    for _ in range(n):
        new = seen * (j / k)
        new[1:] += seen[:-1] * ((k - j[:-1]) / k)
        seen = new
    return float(min(max(seen[k], 0.0), 1.0))


def exceed_probability(model: CountModel, n_picks: int) -> float:
    return model.sf(n_picks)


def miss_probability(model: CountModel, n_picks: int, abundance: str = "equal", max_k: int = 200) -> float:
    """P(at least one ST missed) mixing the coupon-collector miss over K.

    Mass past max_k is counted as missed.
    """
    if abundance != "equal":
        raise ValueError(f"Closed form only for equal abundance; got {abundance!r}, use monte_carlo_miss_probability")
    lo = 1 if model.truncated else 0
    ks = np.arange(lo, int(max_k) + 1)
    pk = model.pmf(ks)
    miss = np.array([1.0 - prob_all_detected(k, n_picks) for k in ks])
    tail = max(1.0 - float(pk.sum()), 0.0)
    return float(min(np.sum(pk * miss) + tail, 1.0))


def picks_table(model: CountModel, picks: Iterable[int], max_k: int = 200) -> pd.DataFrame:
    rows = []
    for n in picks:
        n = int(n)
        p_miss = miss_probability(model, n, max_k=max_k)
        rows.append({
            "n_picks": n,
            "p_exceed": exceed_probability(model, n),
            "p_miss_equal": p_miss,
            "p_capture_equal": 1.0 - p_miss,
        })
    return pd.DataFrame(rows, columns=["n_picks", "p_exceed", "p_miss_equal", "p_capture_equal"])


def picks_needed(model: CountModel, target: float = 0.95, criterion: str = "equal",
                 max_picks: int = 100) -> Optional[int]:
    """Smallest n with capture probability >= target, or None past max_picks."""
    if criterion not in CRITERIA:
        raise ValueError(f"Unknown criterion: {criterion} (have {CRITERIA})")
    if not 0.0 < target < 1.0:
        raise ValueError("target must be in (0, 1)")
    for n in range(1, int(max_picks) + 1):
        miss = exceed_probability(model, n) if criterion == "exceed" else miss_probability(model, n)
        if 1.0 - miss >= target:
            return n
    logger.warning("%s: %d picks do not reach capture %.3f (%s)", model.label or model.family,
                   max_picks, target, criterion)
    return None


def picks_needed_from_table(picks: pd.DataFrame, target: float = 0.95, p_col: str = "p_miss_mc") -> Optional[int]:
    """Smallest n_picks in a picks table whose 1 - p_col reaches target.

    Used with simulated miss proportions (uneven abundance), where there is no
    closed form to search over.
    """
    if p_col not in picks.columns:
        raise ValueError(f"Missing column: {p_col} (have {list(picks.columns)})")
    if not 0.0 < target < 1.0:
        raise ValueError("target must be in (0, 1)")
    ok = picks.loc[1.0 - picks[p_col] >= target, "n_picks"]
    if ok.empty:
        logger.warning("No pick count in %s reaches capture %.3f (%s)",
                       sorted(int(n) for n in picks["n_picks"]), target, p_col)
        return None
    return int(ok.min())
