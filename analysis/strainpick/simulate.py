#!/usr/bin/env python3
"""Draw synthetic strain counts and colony picks from a fitted CountModel."""
from __future__ import annotations

from typing import Dict, Optional

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.proportion import proportion_confint

from .count_models import CountModel, _ETA_MAX, _LOG_MAX

ABUNDANCE_MODELS = ("equal", "dirichlet")


def _draw_rates(model: CountModel, size: int, rng: np.random.Generator) -> np.ndarray:
    if model.family == "poisson" or model.sigma_log <= 0:
        return np.full(size, float(np.exp(min(model.mu_log, _ETA_MAX))))
    u = rng.normal(model.mu_log, model.sigma_log, size)
    return np.exp(np.clip(u, -_LOG_MAX, _ETA_MAX))


def _zt_poisson(lam: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Exact zero-truncated Poisson draws by inverse CDF on (P(0), 1)."""
    u = rng.uniform(np.exp(-lam), 1.0)
    k = stats.poisson.ppf(u, lam)
    # u == 1 when exp(-lam) rounds to 1; all the mass is then at K = 1
    k = np.nan_to_num(k, nan=1.0, posinf=1.0)
    return np.maximum(k, 1).astype(np.int64)


def simulate_counts(model: CountModel, size: int, rng: Optional[np.random.Generator] = None,
                    max_rounds: int = 1000) -> np.ndarray:
    """One strain count per synthetic subject."""
    rng = np.random.default_rng() if rng is None else rng
    size = int(size)
    lam = _draw_rates(model, size, rng)
    if not model.truncated:
        return rng.poisson(lam)
    if model.family == "poisson" or model.truncation == "conditional":
        return _zt_poisson(lam, rng)
    # marginal truncation: a zero discards the subject, rate included
    k = rng.poisson(lam)
    for _ in range(max_rounds):
        zero = k == 0
        if not zero.any():
            return k
        lam_new = _draw_rates(model, int(zero.sum()), rng)
        k[zero] = rng.poisson(lam_new)
    raise RuntimeError(f"Could not draw non-zero counts in {max_rounds} rounds; P(K=0) is ~1 under {model.label or model.family}")


def simulate_participants(model: CountModel, n_participants: int, n_visits: int = 1,
                          rng: Optional[np.random.Generator] = None) -> pd.DataFrame:
    """Longitudinal draws: visits of one participant share its log-rate.

    Truncated models draw each visit from the zero-truncated Poisson given
    the participant's rate.
    """
    rng = np.random.default_rng() if rng is None else rng
    lam = _draw_rates(model, int(n_participants), rng)
    lam_v = np.repeat(lam, int(n_visits))
    k = _zt_poisson(lam_v, rng) if model.truncated else rng.poisson(lam_v)
    return pd.DataFrame({
        "participant": np.repeat([f"S{i + 1:05d}" for i in range(int(n_participants))], int(n_visits)),
        "visit": np.tile(np.arange(1, int(n_visits) + 1), int(n_participants)),
        "n_strains": k,
    })


def simulate_colony_picks(strain_counts, n_picks: int, rng: Optional[np.random.Generator] = None,
                          abundance: str = "equal", dirichlet_alpha: float = 1.0) -> np.ndarray:
    """Distinct STs seen when picking n_picks colonies from each specimen."""
    if abundance not in ABUNDANCE_MODELS:
        raise ValueError(f"Unknown abundance model: {abundance} (have {ABUNDANCE_MODELS})")
    rng = np.random.default_rng() if rng is None else rng
    K = np.asarray(strain_counts, dtype=np.int64)
    seen = np.zeros(K.size, dtype=np.int64)
    n = int(n_picks)
    if n <= 0:
        return seen
    for k in np.unique(K):
        if k <= 0:
            continue
        idx = np.flatnonzero(K == k)
        if abundance == "equal":
            draws = rng.multinomial(n, np.full(k, 1.0 / k), size=idx.size)
        else:
            p = rng.dirichlet(np.full(k, float(dirichlet_alpha)), size=idx.size)
            draws = rng.multinomial(n, p)
        seen[idx] = (draws > 0).sum(axis=1)
    return seen


def monte_carlo_miss_probability(model: CountModel, n_picks: int, draws: int = 10000,
                                 rng: Optional[np.random.Generator] = None, abundance: str = "equal",
                                 dirichlet_alpha: float = 1.0, alpha: float = 0.05) -> Dict[str, float]:
    """Share of simulated specimens where the picks miss at least one ST, with a Wilson CI."""
    rng = np.random.default_rng() if rng is None else rng
    K = simulate_counts(model, draws, rng)
    seen = simulate_colony_picks(K, n_picks, rng, abundance, dirichlet_alpha)
    missed = int(np.sum(seen < K))
    lo, hi = proportion_confint(count=missed, nobs=int(draws), alpha=alpha, method="wilson")
    return {"n_picks": int(n_picks), "draws": int(draws), "missed": missed,
            "p_miss": missed / float(draws), "ci_low": float(lo), "ci_high": float(hi)}
