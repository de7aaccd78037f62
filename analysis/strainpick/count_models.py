#!/usr/bin/env python3
"""
Count-distribution models for distinct STs per participant.

Families:
- Poisson: K ~ Poisson(λ), log λ = mu_log. The untruncated fit is an
  intercept-only statsmodels GLM; the zero-truncated fit is direct ML.
- Poisson-lognormal (PLN): per-subject log-rate u ~ N(mu_log, sigma_log²),
  K | u ~ Poisson(exp(u)). Marginal pmf by Gauss-Hermite quadrature.
- Poisson GLMM: random intercept per participant shared across visits;
  marginal likelihood per participant by Gauss-Hermite quadrature.

Truncation:
- "none"        untruncated
- "marginal"    P(K=k | K>=1) = PLN(k) / (1 - PLN(0))         (independent carriers)
- "conditional" P(K=k | u, K>=1) = Pois(k; e^u) / (1 - e^{-e^u})  (repeated visits)
For Poisson the two truncations coincide.

Dependencies: numpy, pandas, scipy, statsmodels
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import optimize, special, stats

from .io_utils import COUNT_COL, GROUP_COL, LOGGER_NAME, validate_counts

# exp() of log-rates below -745 underflows to 0.0
_LOG_MAX = 745.0
_ETA_MAX = 50.0
_EPS_LOG = 1e-300
SINGULAR_SIGMA = 1e-2
TRUNCATIONS = ("none", "marginal", "conditional")

logger = logging.getLogger(LOGGER_NAME)


def _log1mexp(lam):
    """log(1 - exp(-lam)) for lam > 0; stable for tiny and large lam."""
    lam = np.maximum(np.asarray(lam, float), _EPS_LOG)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(lam > math.log(2.0), np.log1p(-np.exp(-lam)), np.log(-np.expm1(-lam)))


def _gh(gh_nodes: int) -> Tuple[np.ndarray, np.ndarray]:
    return np.polynomial.hermite.hermgauss(int(gh_nodes))


def pln_logpmf(k, mu_log: float, sigma_log: float, gh_nodes: int = 30, truncation: str = "none") -> np.ndarray:
    """Poisson-lognormal log pmf at counts k (array), Gauss-Hermite over the log-rate."""
    if truncation not in TRUNCATIONS:
        raise ValueError(f"Unknown truncation: {truncation}")
    k = np.atleast_1d(np.asarray(k, dtype=float))
    xi, wi = _gh(gh_nodes)
    eta = np.clip(mu_log + math.sqrt(2.0) * max(float(sigma_log), 0.0) * xi, -_LOG_MAX, _ETA_MAX)
    lam = np.exp(eta)
    node = k[:, None] * eta[None, :] - lam[None, :] - special.gammaln(k + 1)[:, None]
    if truncation == "conditional":
        node = node - _log1mexp(lam)[None, :]
    lp = special.logsumexp(node + np.log(wi)[None, :], axis=1) - 0.5 * math.log(math.pi)
    if truncation == "marginal":
        lp0 = float(pln_logpmf(0, mu_log, sigma_log, gh_nodes)[0])
        lp = lp - math.log(max(-math.expm1(lp0), _EPS_LOG))
    if truncation != "none":
        lp = np.where(k < 1, -np.inf, lp)
    return lp


def ztpln_sf(n: int, mu_log: float, sigma_log: float, gh_nodes: int = 30) -> float:
    """P(K > n) under the zero-truncated PLN: 1 - sum_{k=1..n} ztPLN(k)."""
    n = int(n)
    if n <= 0:
        return 1.0
    ks = np.arange(1, n + 1)
    p = np.exp(pln_logpmf(ks, mu_log, sigma_log, gh_nodes, truncation="marginal"))
    return float(np.clip(1.0 - p.sum(), 0.0, 1.0))


@dataclass
class CountModel:
    """A fitted count model; produced by the fit_* functions, consumed by simulation and summaries."""
    family: str
    mu_log: float
    sigma_log: float = 0.0
    truncation: str = "none"
    loglik: float = math.nan
    n_params: int = 1
    n_obs: int = 0
    n_groups: int = 0
    converged: bool = True
    singular: bool = False
    gh_nodes: int = 30
    label: str = ""

    @property
    def truncated(self) -> bool:
        return self.truncation != "none"

    @property
    def aic(self) -> float:
        return 2 * self.n_params - 2 * self.loglik

    @property
    def bic(self) -> float:
        return self.n_params * math.log(max(self.n_obs, 1)) - 2 * self.loglik

    def logpmf(self, k) -> np.ndarray:
        if self.family == "poisson":
            k = np.atleast_1d(np.asarray(k, dtype=float))
            lam = math.exp(min(self.mu_log, _ETA_MAX))
            lp = stats.poisson.logpmf(k, lam)
            if self.truncated:
                lp = np.where(k < 1, -np.inf, lp - float(_log1mexp(lam)))
            return lp
        return pln_logpmf(k, self.mu_log, self.sigma_log, self.gh_nodes, self.truncation)

    def pmf(self, k) -> np.ndarray:
        return np.exp(self.logpmf(k))

    def sf(self, n: int) -> float:
        """P(K > n)."""
        lo = 1 if self.truncated else 0
        n = int(n)
        if n < lo:
            return 1.0
        if self.family == "pln" and self.truncation == "marginal":
            return ztpln_sf(n, self.mu_log, self.sigma_log, self.gh_nodes)
        p = self.pmf(np.arange(lo, n + 1))
        return float(np.clip(1.0 - p.sum(), 0.0, 1.0))

    def mean(self) -> float:
        if self.family == "poisson":
            lam = math.exp(self.mu_log)
            return lam / -math.expm1(-lam) if self.truncated else lam
        m = math.exp(self.mu_log + 0.5 * self.sigma_log ** 2)
        if self.truncation == "marginal":
            p0 = float(np.exp(pln_logpmf(0, self.mu_log, self.sigma_log, self.gh_nodes))[0])
            return m / max(1.0 - p0, _EPS_LOG)
        if self.truncation == "conditional":
            xi, wi = _gh(self.gh_nodes)
            lam = np.exp(np.clip(self.mu_log + math.sqrt(2.0) * self.sigma_log * xi, -_LOG_MAX, _ETA_MAX))
            return float(np.sum(wi * lam / np.exp(_log1mexp(lam))) / math.sqrt(math.pi))
        return m

    def describe(self) -> Dict[str, object]:
        return {
            "model": self.label or self.family,
            "family": self.family,
            "truncation": self.truncation,
            "mu_log": self.mu_log,
            "sigma_log": self.sigma_log,
            "rate": math.exp(self.mu_log),
            "mean": self.mean() if math.isfinite(self.mu_log) else math.nan,
            "loglik": self.loglik,
            "n_params": self.n_params,
            "aic": self.aic,
            "bic": self.bic,
            "n_obs": self.n_obs,
            "n_groups": self.n_groups,
            "converged": self.converged,
            "singular": self.singular,
        }


def _as_counts(counts, truncated: bool) -> np.ndarray:
    ns = np.asarray(counts, dtype=float).ravel()
    ns = ns[np.isfinite(ns)]
    if ns.size == 0:
        raise ValueError("No counts to fit")
    if np.any(ns < 0) or np.any(np.floor(ns) != ns):
        raise ValueError("Counts must be non-negative integers")
    if truncated and np.any(ns < 1):
        raise ValueError("Zero-truncated fit given zero counts; drop them or fit untruncated")
    if ns.sum() == 0:
        raise ValueError("All counts are zero; the rate is not identifiable")
    return ns.astype(int)


def _finish(model: CountModel, success: bool, message: str = "") -> CountModel:
    if not success:
        model.converged = False
        logger.warning("%s fit did not converge: %s", model.label or model.family, message)
    if model.family == "pln" and model.sigma_log < SINGULAR_SIGMA:
        model.singular = True
        logger.warning("%s: boundary (singular) fit, sigma_log=%.3g; random-effect variance is ~0",
                       model.label or model.family, model.sigma_log)
    return model


def fit_poisson(counts, truncated: bool = False) -> CountModel:
    ns = _as_counts(counts, truncated)
    label = "zt-poisson" if truncated else "poisson"
    if not truncated:
        res = sm.GLM(ns, np.ones((ns.size, 1)), family=sm.families.Poisson()).fit()
        model = CountModel("poisson", float(res.params[0]), 0.0, "none", float(res.llf), 1, ns.size, ns.size, label=label)
        return _finish(model, bool(res.converged), "IRLS")

    def nll(loglam: float) -> float:
        lam = math.exp(loglam)
        ll = ns * loglam - lam - special.gammaln(ns + 1) - _log1mexp(lam)
        return -float(np.sum(ll))

    res = optimize.minimize_scalar(nll, bounds=(-20.0, 10.0), method="bounded")
    model = CountModel("poisson", float(res.x), 0.0, "marginal", -float(res.fun), 1, ns.size, ns.size, label=label)
    return _finish(model, bool(res.success), str(getattr(res, "message", "")))


def pln_loglik(ns, mu_log: float, sigma_log: float, gh_nodes: int = 30, truncation: str = "none") -> float:
    vals, w = np.unique(np.asarray(ns, int), return_counts=True)
    return float(np.sum(w * pln_logpmf(vals, mu_log, sigma_log, gh_nodes, truncation)))


def _start(ns: np.ndarray) -> Tuple[float, float]:
    lg = np.log(ns + 0.5)
    return float(np.mean(lg)), max(float(np.std(lg)), 0.1)


def _minimize(nll, m0: float, s0: float):
    return optimize.minimize(nll, x0=np.array([m0, math.log(s0)]), method="L-BFGS-B",
                             bounds=[(-30.0, 10.0), (-6.0, 4.0)])


def fit_pln(counts, truncated: bool = False, gh_nodes: int = 30) -> CountModel:
    """Poisson-lognormal ML for independent observations (one per subject)."""
    ns = _as_counts(counts, truncated)
    truncation = "marginal" if truncated else "none"

    def nll(theta):
        mu_log, log_sigma = theta
        v = -pln_loglik(ns, mu_log, math.exp(log_sigma), gh_nodes, truncation)
        return v if np.isfinite(v) else 1e300

    m0, s0 = _start(ns)
    res = _minimize(nll, m0, s0)
    model = CountModel("pln", float(res.x[0]), float(math.exp(res.x[1])), truncation, -float(res.fun), 2,
                       ns.size, ns.size, gh_nodes=gh_nodes, label="zt-pln" if truncated else "pln")
    return _finish(model, bool(res.success), str(res.message))


def _group_stats(df: pd.DataFrame, count_col: str, group_col: str) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    g = df.groupby(group_col, sort=False)[count_col]
    S = g.sum().to_numpy(dtype=float)
    N = g.size().to_numpy(dtype=float)
    G = df.assign(_lg=special.gammaln(df[count_col].to_numpy(dtype=float) + 1)).groupby(group_col, sort=False)["_lg"].sum().to_numpy()
    return S, N, G


def poisson_glmm_loglik(df: pd.DataFrame, mu_log: float, sigma_log: float, count_col: str = COUNT_COL,
                        group_col: str = GROUP_COL, gh_nodes: int = 30, truncated: bool = False) -> float:
    S, N, G = _group_stats(df, count_col, group_col)
    return _glmm_loglik(S, N, G, mu_log, sigma_log, gh_nodes, truncated)


def _glmm_loglik(S, N, G, mu_log, sigma_log, gh_nodes, truncated) -> float:
    xi, wi = _gh(gh_nodes)
    eta = np.clip(mu_log + math.sqrt(2.0) * max(float(sigma_log), 0.0) * xi, -_LOG_MAX, _ETA_MAX)
    lam = np.exp(eta)
    # sum_j log Pois(y_gj; lam) = S_g*eta - N_g*lam - sum_j log(y_gj!)
    node = S[:, None] * eta[None, :] - N[:, None] * lam[None, :] - G[:, None]
    if truncated:
        node = node - N[:, None] * _log1mexp(lam)[None, :]
    ll = special.logsumexp(node + np.log(wi)[None, :], axis=1) - 0.5 * math.log(math.pi)
    return float(np.sum(ll))


def fit_poisson_glmm(df: pd.DataFrame, count_col: str = COUNT_COL, group_col: str = GROUP_COL,
                     truncated: bool = False, gh_nodes: int = 30) -> CountModel:
    """Poisson GLMM, count ~ 1 + (1 | participant), ML by Gauss-Hermite quadrature."""
    d = validate_counts(df, count_col, group_col)
    ns = _as_counts(d[count_col].to_numpy(), truncated)
    S, N, G = _group_stats(d, count_col, group_col)

    def nll(theta):
        mu_log, log_sigma = theta
        v = -_glmm_loglik(S, N, G, mu_log, math.exp(log_sigma), gh_nodes, truncated)
        return v if np.isfinite(v) else 1e300

    m0, s0 = _start(ns)
    res = _minimize(nll, m0, s0)
    model = CountModel("pln", float(res.x[0]), float(math.exp(res.x[1])), "conditional" if truncated else "none",
                       -float(res.fun), 2, int(ns.size), int(S.size), gh_nodes=gh_nodes,
                       label="zt-glmm" if truncated else "glmm")
    return _finish(model, bool(res.success), str(res.message))


def fit_all(df: pd.DataFrame, truncated: bool = False, gh_nodes: int = 30,
            count_col: str = COUNT_COL, group_col: str = GROUP_COL) -> List[CountModel]:
    """Poisson and PLN always; the GLMM only when some participant has repeated visits."""
    ns = df[count_col].to_numpy()
    models = [fit_poisson(ns, truncated), fit_pln(ns, truncated, gh_nodes)]
    if df.groupby(group_col)[count_col].size().max() > 1:
        models.append(fit_poisson_glmm(df, count_col, group_col, truncated, gh_nodes))
    return models


def compare_models(models: Sequence[CountModel]) -> pd.DataFrame:
    tab = pd.DataFrame([m.describe() for m in models])
    if tab.empty:
        return tab
    tab["delta_aic"] = tab["aic"] - tab["aic"].min()
    return tab.sort_values("aic", kind="mergesort").reset_index(drop=True)


def random_effect_lrt(null: CountModel, alt: CountModel) -> Dict[str, float]:
    """LRT of sigma_log = 0; boundary null so p uses the 50:50 chi2(0)/chi2(1) mixture."""
    stat = max(2.0 * (alt.loglik - null.loglik), 0.0)
    p = 0.5 * float(stats.chi2.sf(stat, 1)) if stat > 0 else 1.0
    return {"null": null.label or null.family, "alt": alt.label or alt.family, "lr_stat": stat, "p_value": p}
