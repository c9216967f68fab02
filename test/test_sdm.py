import math
import unittest
from threading import Event

import numpy as np

from bnpspecies.estimation.sdm import (
    DiscoveryVariant, fit_sdm, fit_discoveries, survival_ll3, survival_weibull, discoveries_from_rarefaction)
from bnpspecies.exceptions import InvalidInput, UnsupportedModel, UnreachableTarget, ComputationCancelled


class TestSurvival(unittest.TestCase):
    def test_ll3(self):
        """The LL3 survival function starts at 1 and decreases"""
        s = survival_ll3(np.arange(0, 100), 10.0, 0.2, 0.99)
        self.assertEqual(s[0], 1)
        self.assertTrue(np.all(np.diff(s) < 0))
        self.assertAlmostEqual(s[1], 10 * 0.99 / (10 * 0.99 + 1))

    def test_weibull(self):
        """The Weibull survival function starts at 1 and decreases"""
        s = survival_weibull(np.arange(0, 100), 0.9, 0.5)
        self.assertEqual(s[0], 1)
        self.assertTrue(np.all(np.diff(s) < 0))
        self.assertAlmostEqual(s[4], 0.9 ** 2)

    def test_discoveries_from_rarefaction(self):
        """Increments of the rarefaction curve, starting with a sure discovery"""
        np.testing.assert_allclose(discoveries_from_rarefaction([1, 1.5, 1.75, 1.75]), [1, 0.5, 0.25, 0])
        self.assertEqual(len(discoveries_from_rarefaction([])), 0)


class TestFitDiscoveries(unittest.TestCase):
    def setUp(self):
        self.data_sequence = [1, 1, 0, 1] + [0] * 46  # three discoveries among 50 individuals
        self.ll3 = (10.0, 0.2, 0.998)
        self.weibull = (0.9, 0.5)

    def test_ll3_recovers_parameters(self):
        """Fitting LL3 on its own survival function recovers the generating parameters"""
        d = survival_ll3(np.arange(0, 2000), *self.ll3)
        fit = fit_discoveries(d, "LL3")
        alpha, sigma, phi = fit.params
        self.assertAlmostEqual(sigma, 0.2, delta=0.05)
        self.assertAlmostEqual(math.log(alpha), math.log(10.0), delta=0.3)
        self.assertAlmostEqual(math.log(phi) / math.log(0.998), 1, delta=0.2)
        self.assertLess(np.max(np.abs(fit.survival(np.arange(0, 2000)) - d)), 0.01)

    def test_weibull_recovers_parameters(self):
        """Fitting Weibull on its own survival function recovers the generating parameters"""
        d = survival_weibull(np.arange(0, 500), *self.weibull)
        fit = fit_discoveries(d, DiscoveryVariant.WEIBULL)
        self.assertAlmostEqual(fit.par["phi"], 0.9, delta=0.01)
        self.assertAlmostEqual(fit.par["lambda"], 0.5, delta=0.02)

    def test_weibull_simulated_sequence(self):
        """Fitting Weibull on a simulated discovery sequence approximately recovers the generating parameters"""
        phi, lambda_ = 0.95, 0.5
        s = survival_weibull(np.arange(0, 40000), phi, lambda_)
        d = (np.random.default_rng(3).random(40000) < s).astype(float)
        d[0] = 1
        fit = fit_discoveries(d, "Weibull")
        self.assertAlmostEqual(fit.par["lambda"], lambda_, delta=0.1)
        self.assertAlmostEqual(fit.par["phi"], phi, delta=0.03)

    def test_short_sequence(self):
        """A handful of discoveries yields a finite asymptote above the observed richness"""
        fit = fit_discoveries(self.data_sequence, "LL3")
        self.assertEqual(fit.richness, 3)
        self.assertEqual(fit.abundance, 50)
        self.assertGreaterEqual(fit.asymptotic_richness(), 3)
        self.assertTrue(math.isfinite(fit.asymptotic_richness()))
        self.assertGreater(fit.saturation(), 0)
        self.assertLessEqual(fit.saturation(), 1)
        self.assertLess(fit.par["sigma"], 1)
        self.assertLess(fit.par["phi"], 1)

    def test_invalid_sequence(self):
        """Sequences that are too short, out of range or not starting with a discovery are rejected"""
        with self.assertRaises(InvalidInput):
            fit_discoveries([1], "LL3")
        with self.assertRaises(InvalidInput):
            fit_discoveries([1, 2, 0], "LL3")
        with self.assertRaises(InvalidInput):
            fit_discoveries([0, 1, 0], "LL3")

    def test_separated_sequence(self):
        """A discovery sequence that is perfectly separated is fitted with a warning"""
        with self.assertLogs("bnpspecies.estimation.sdm", level="WARNING") as logs:
            fit_discoveries([1, 1, 1] + [0] * 47, "LL3")
        self.assertTrue(any("separated" in line for line in logs.output))

    def test_unsupported_model(self):
        """Unknown variants are rejected"""
        with self.assertRaises(UnsupportedModel):
            fit_discoveries(self.data_sequence, "PY")


class TestFitSDM(unittest.TestCase):
    def setUp(self):
        self.data_normal = [50, 30, 20, 10, 8, 5, 5, 3, 2, 2, 1, 1, 1, 1, 1, 1]

    def test_ll3_reproduces_richness(self):
        """The fitted rarefaction curve ends close to the observed richness"""
        fit = fit_sdm(self.data_normal, "LL3")
        self.assertAlmostEqual(fit.rarefaction([141])[0], 16, delta=0.2)
        self.assertEqual(fit.richness, 16)
        self.assertGreaterEqual(fit.asymptotic_richness(), 16)

    def test_weibull(self):
        """The Weibull fit has parameters in their domain and a finite asymptote"""
        fit = fit_sdm(self.data_normal, "Weibull")
        self.assertGreater(fit.par["phi"], 0)
        self.assertLess(fit.par["phi"], 1)
        self.assertGreater(fit.par["lambda"], 0)
        self.assertTrue(math.isfinite(fit.asymptotic_richness()))
        self.assertGreaterEqual(fit.asymptotic_richness(), 16)

    def test_too_few_individuals(self):
        """A single observed individual cannot be fitted"""
        with self.assertRaises(InvalidInput):
            fit_sdm([1], "LL3")
        with self.assertRaises(InvalidInput):
            fit_sdm([0, 0], "LL3")

    def test_all_singletons(self):
        """Only singletons give a valid fit without failing on the discovery increments"""
        fit = fit_sdm([1] * 20, "Weibull")
        self.assertGreaterEqual(fit.asymptotic_richness(), 20)

    def test_cancelled(self):
        """A set cancellation event aborts the construction of the rarefaction curve"""
        event = Event()
        event.set()
        with self.assertRaises(ComputationCancelled):
            fit_sdm(self.data_normal, "LL3", cancel_event=event)

    def test_progress(self):
        """Progress reports do not change the fit"""
        reports = []
        fit = fit_sdm(self.data_normal, "Weibull", progress=lambda done, total: reports.append(done))
        self.assertEqual(fit.params, fit_sdm(self.data_normal, "Weibull").params)
        self.assertEqual(reports[-1], 141)


class TestFittedSDM(unittest.TestCase):
    def setUp(self):
        self.fit = fit_discoveries(survival_weibull(np.arange(0, 500), 0.9, 0.5), "Weibull")

    def test_rarefaction(self):
        """The fitted rarefaction curve is the cumulative survival function"""
        curve = self.fit.rarefaction()
        self.assertEqual(len(curve), 500)
        self.assertAlmostEqual(curve[0], 1)
        np.testing.assert_allclose(self.fit.rarefaction([1, 10, 100]), curve[[0, 9, 99]])

    def test_extrapolation(self):
        """Extrapolation starts at the observed richness and approaches the asymptote from below"""
        values = self.fit.extrapolation([0, 1, 100, 100000])
        self.assertAlmostEqual(values[0], self.fit.richness)
        self.assertAlmostEqual(values[1], self.fit.richness + self.fit.survival(500)[0])
        self.assertTrue(np.all(np.diff(values) > 0))
        self.assertLessEqual(values[-1], self.fit.asymptotic_richness() + 1e-4)
        with self.assertRaises(InvalidInput):
            self.fit.extrapolation(-1)

    def test_coverage(self):
        """Coverage is one minus the probability of a discovery at n"""
        self.assertAlmostEqual(self.fit.coverage(), 1 - self.fit.survival(500)[0])

    def test_asymptotic_moments(self):
        """The asymptotic standard deviation is finite and non-negative"""
        self.assertGreater(self.fit.asymptotic_richness(), self.fit.richness)
        self.assertGreaterEqual(self.fit.asymptotic_sd, 0)
        self.assertAlmostEqual(self.fit.saturation(), self.fit.richness / self.fit.asymptotic_richness())

    def test_monte_carlo(self):
        """Simulated asymptotic richness exceeds the observed richness and averages to the asymptote"""
        draws = self.fit.sample_asymptotic_richness(size=200, seed=11)
        self.assertEqual(draws.shape, (200,))
        self.assertTrue(np.all(draws >= self.fit.richness))
        self.assertAlmostEqual(draws.mean(), self.fit.asymptotic_richness(),
                               delta=4 * self.fit.asymptotic_sd / math.sqrt(200) + 1e-6)
        np.testing.assert_array_equal(draws, self.fit.sample_asymptotic_richness(size=200, seed=11))

    def test_saturation_mc(self):
        """Simulated saturation lies in (0, 1]"""
        draws = self.fit.saturation("mc", size=100, seed=5)
        self.assertEqual(draws.shape, (100,))
        self.assertTrue(np.all((draws > 0) & (draws <= 1)))

    def test_saturation_target(self):
        """The number of additional individuals is the smallest one reaching the target"""
        ratio = self.fit.saturation()
        target = (ratio + 1) / 2
        m = self.fit.saturation("target", target=target)
        self.assertGreater(m, 0)
        mean = self.fit.asymptotic_richness()
        self.assertGreaterEqual(self.fit.extrapolation(m)[0] / mean, target - 1e-9)
        self.assertLess(self.fit.extrapolation(m - 1)[0] / mean, target)

    def test_saturation_target_reached(self):
        """Targets already reached need no additional individuals"""
        self.assertEqual(self.fit.samples_to_saturation(self.fit.saturation() / 2), 0)

    def test_saturation_target_invalid(self):
        """Targets outside of (0, 1] are rejected"""
        with self.assertRaises(UnreachableTarget):
            self.fit.samples_to_saturation(1.5)
        with self.assertRaises(InvalidInput):
            self.fit.samples_to_saturation(0)
        with self.assertRaises(InvalidInput):
            self.fit.saturation("target")
        with self.assertRaises(InvalidInput):
            self.fit.saturation("exact")

    def test_cancelled_sampler(self):
        """A set cancellation event aborts the simulation"""
        event = Event()
        event.set()
        with self.assertRaises(ComputationCancelled):
            self.fit.sample_asymptotic_richness(size=10, cancel_event=event)

    def test_summary(self):
        """The summary reports the parameters and the asymptote"""
        summary = self.fit.summary()
        self.assertEqual(summary["model"], "Weibull")
        self.assertIn("phi", summary)
        self.assertIn("lambda", summary)
        self.assertIsNone(summary["sample_coverage"])
        self.assertAlmostEqual(summary["asymptotic_richness"], self.fit.asymptotic_richness())
        self.fit.summarize()

    def test_to_dataFrame(self):
        """Observed and fitted accumulation curves, followed by the extrapolation"""
        df = self.fit.to_dataFrame(m=10)
        self.assertEqual(list(df.columns), ["n", "observed", "fitted", "type"])
        self.assertEqual(len(df), 510)
        self.assertEqual(df["n"].iloc[-1], 510)

    def test_empty_sample_sizes(self):
        """An empty sequence of sample sizes yields an empty curve"""
        self.assertEqual(len(self.fit.rarefaction([])), 0)
        self.assertEqual(len(self.fit.extrapolation([])), 0)

    def test_immutable(self):
        """The discovery sequence of a fitted model cannot be modified"""
        with self.assertRaises(ValueError):
            self.fit.discoveries[0] = 0


if __name__ == '__main__':
    unittest.main()
