import math
import unittest

import numpy as np
from scipy import stats

from analysis.strainpick import datasets
from analysis.strainpick.count_models import (
    CountModel,
    compare_models,
    fit_all,
    fit_pln,
    fit_poisson,
    fit_poisson_glmm,
    pln_loglik,
    pln_logpmf,
    poisson_glmm_loglik,
    random_effect_lrt,
    ztpln_sf,
)


class TestPLNDistribution(unittest.TestCase):
    def test_pmf_sums_to_one(self):
        ks = np.arange(0, 200)
        self.assertAlmostEqual(np.exp(pln_logpmf(ks, 0.3, 0.8)).sum(), 1.0, places=6)
        self.assertAlmostEqual(np.exp(pln_logpmf(ks, 0.3, 0.8, truncation="marginal")).sum(), 1.0, places=6)
        self.assertAlmostEqual(np.exp(pln_logpmf(ks, 0.3, 0.8, truncation="conditional")).sum(), 1.0, places=6)

    def test_zero_sigma_matches_poisson(self):
        ks = np.arange(0, 10)
        np.testing.assert_allclose(np.exp(pln_logpmf(ks, math.log(1.7), 0.0)), stats.poisson.pmf(ks, 1.7), rtol=1e-8)

    def test_truncated_pmf_is_zero_at_zero(self):
        self.assertEqual(np.exp(pln_logpmf(0, 0.0, 1.0, truncation="marginal"))[0], 0.0)

    def test_unknown_truncation(self):
        with self.assertRaises(ValueError):
            pln_logpmf(1, 0.0, 1.0, truncation="left")

    def test_ztpln_sf(self):
        self.assertEqual(ztpln_sf(0, 0.0, 1.0), 1.0)
        tail = [ztpln_sf(n, 0.2, 0.9) for n in range(1, 8)]
        self.assertTrue(all(a >= b for a, b in zip(tail, tail[1:])))
        self.assertTrue(all(0.0 <= t <= 1.0 for t in tail))
        # sigma = 0 is the zero-truncated Poisson tail
        lam = 1.3
        zt = (stats.poisson.sf(3, lam)) / (1 - math.exp(-lam))
        self.assertAlmostEqual(ztpln_sf(3, math.log(lam), 0.0), zt, places=8)

    def test_model_sf_and_mean(self):
        m = CountModel("pln", 0.1, 0.7, "marginal")
        self.assertAlmostEqual(m.sf(2), ztpln_sf(2, 0.1, 0.7), places=12)
        self.assertEqual(m.sf(0), 1.0)
        ks = np.arange(1, 300)
        self.assertAlmostEqual(m.mean(), float(np.sum(ks * m.pmf(ks))), places=4)
        p = CountModel("poisson", math.log(2.0))
        self.assertAlmostEqual(p.mean(), 2.0)
        self.assertAlmostEqual(p.sf(1), stats.poisson.sf(1, 2.0), places=10)
        zp = CountModel("poisson", math.log(2.0), truncation="marginal")
        self.assertAlmostEqual(zp.mean(), 2.0 / (1 - math.exp(-2.0)))
        self.assertEqual(zp.pmf(0)[0], 0.0)


class TestFits(unittest.TestCase):
    def setUp(self):
        self.counts = datasets.load("pooled")["n_strains"].to_numpy()

    def test_poisson_glm_is_log_mean(self):
        m = fit_poisson(self.counts)
        self.assertAlmostEqual(m.mu_log, math.log(self.counts.mean()), places=6)
        self.assertTrue(m.converged)
        self.assertAlmostEqual(m.loglik, float(stats.poisson.logpmf(self.counts, self.counts.mean()).sum()), places=6)

    def test_zt_poisson_score_equation(self):
        m = fit_poisson(self.counts, truncated=True)
        lam = math.exp(m.mu_log)
        self.assertAlmostEqual(lam / (1 - math.exp(-lam)), self.counts.mean(), places=3)
        self.assertEqual(m.label, "zt-poisson")

    def test_truncated_fit_rejects_zeros(self):
        with self.assertRaises(ValueError):
            fit_poisson([0, 1, 2], truncated=True)
        with self.assertRaises(ValueError):
            fit_pln([0, 1, 2], truncated=True)

    def test_bad_input(self):
        with self.assertRaises(ValueError):
            fit_poisson([])
        with self.assertRaises(ValueError):
            fit_pln([0, 0, 0])
        with self.assertRaises(ValueError):
            fit_poisson([1, -2])

    def test_pln_at_least_as_good_as_poisson(self):
        p = fit_poisson(self.counts, truncated=True)
        q = fit_pln(self.counts, truncated=True)
        self.assertGreaterEqual(q.loglik, p.loglik - 1e-3)
        self.assertEqual(q.n_params, 2)
        lrt = random_effect_lrt(p, q)
        self.assertGreaterEqual(lrt["lr_stat"], 0.0)
        self.assertTrue(0.0 <= lrt["p_value"] <= 1.0)

    def test_overdispersed_counts_give_positive_sigma(self):
        counts = [0] * 20 + [1] * 5 + [2] * 3 + [5, 8, 12, 20]
        m = fit_pln(counts)
        self.assertGreater(m.sigma_log, 0.5)
        self.assertFalse(m.singular)

    def test_underdispersed_counts_flag_singular(self):
        with self.assertLogs("strainpick", level="WARNING") as logs:
            m = fit_pln([2, 2, 2, 2, 2, 2, 2, 2, 3, 1])
        self.assertTrue(m.singular)
        self.assertTrue(any("singular" in line for line in logs.output))

    def test_glmm_single_visit_equals_pln(self):
        df = datasets.load("carriage_b")
        g = fit_poisson_glmm(df)
        q = fit_pln(df["n_strains"])
        self.assertAlmostEqual(g.loglik, q.loglik, places=4)
        self.assertEqual(g.n_groups, len(df))

    def test_glmm_loglik_single_visit_is_pln_loglik(self):
        df = datasets.load("travellers")
        for trunc, mode in ((False, "none"), (True, "conditional")):
            self.assertAlmostEqual(poisson_glmm_loglik(df, 0.2, 0.7, truncated=trunc),
                                   pln_loglik(df["n_strains"], 0.2, 0.7, truncation=mode), places=8)

    def test_glmm_longitudinal(self):
        df = datasets.load("longitudinal")
        g = fit_poisson_glmm(df, truncated=True)
        self.assertEqual(g.truncation, "conditional")
        self.assertEqual(g.n_groups, 6)
        self.assertEqual(g.n_obs, 18)
        self.assertTrue(np.isfinite(g.loglik))

    def test_fit_all_and_compare(self):
        models = fit_all(datasets.load("longitudinal"), truncated=True)
        self.assertEqual([m.label for m in models], ["zt-poisson", "zt-pln", "zt-glmm"])
        tab = compare_models(models)
        self.assertEqual(tab["delta_aic"].min(), 0.0)
        self.assertTrue(tab["aic"].is_monotonic_increasing)
        single = fit_all(datasets.load("travellers"))
        self.assertEqual(len(single), 2)

    def test_compare_models_empty(self):
        self.assertTrue(compare_models([]).empty)


if __name__ == "__main__":
    unittest.main()
