"""
Species-sampling models: the Dirichlet process (DP) and the Pitman-Yor process (PY) fitted by maximizing the
exchangeable partition probability function (EPPF) of the observed abundances (empirical Bayes).

A Pitman-Yor process with discount sigma and concentration alpha discovers a new species at step n+1 with
probability (alpha + sigma * K_n) / (alpha + n) and otherwise repeats species j with probability proportional to
n_j - sigma. The Dirichlet process is the special case sigma = 0.
"""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from threading import Event
from typing import Callable, Iterable, Optional, Union

import numpy as np
import pandas as pd
from scipy.optimize import minimize
from scipy.special import digamma, expit, gammaln, logit

from bnpspecies.estimation.metrics import filter_abundances, as_sample_sizes, log_pochhammer, \
    get_total_species_count, get_number_observed_species, coverage_turing_good, gini_simpson
from bnpspecies.estimation.progress import ProgressMonitor
from bnpspecies.estimation.rarefaction import rarefaction_curve
from bnpspecies.estimation.settings import OptimizerSettings, DEFAULT_SETTINGS, SIGMA_TOLERANCE, \
    ALPHA_LOWER_BOUND, ALPHA_UPPER_BOUND, SIGMA_UPPER_BOUND
from bnpspecies.exceptions import InvalidInput, UnsupportedModel, OptimizationFailure

logger = logging.getLogger(__name__)

# discount parameters are searched in logit space within [expit(-30), SIGMA_UPPER_BOUND]
SIGMA_LOGIT_LOWER_BOUND = -30.0

# the stick-breaking construction stops once the unassigned mass of every draw falls below this value
STICK_TOLERANCE = 1e-6
MAX_STICKS = 10000


class SpeciesSamplingVariant(Enum):
    DIRICHLET = "DP"
    PITMAN_YOR = "PY"

    @classmethod
    def parse(cls, model: Union[str, "SpeciesSamplingVariant"]) -> "SpeciesSamplingVariant":
        if isinstance(model, cls):
            return model
        try:
            return cls(model)
        except ValueError:
            raise UnsupportedModel("No method exists for specified model: " + str(model)) from None


def check_parameters(alpha: float, sigma: float) -> None:
    """
    raises InvalidInput if (alpha, sigma) lies outside of the Pitman-Yor parameter domain
    sigma in [0,1), alpha > -sigma
    """
    if not 0 <= sigma < 1:
        raise InvalidInput("Discount parameter sigma must lie in [0, 1), got " + str(sigma))
    if not alpha > -sigma:
        raise InvalidInput("Concentration parameter alpha must exceed -sigma, got " + str(alpha))


def eppf_loglik(abundances: np.ndarray, alpha: float, sigma: float = 0.0) -> float:
    """
    computes the logarithm of the exchangeable partition probability function of a Pitman-Yor process,

        sum_{j=1}^{K-1} log(alpha + j*sigma) - log (alpha+1)_{n-1} + sum_{j=1}^K log (1-sigma)_{n_j-1}.

    Setting sigma = 0 yields the EPPF of the Dirichlet process.
    :param abundances: the observed species counts
    :param alpha: the concentration parameter
    :param sigma: the discount parameter
    :return: the log-likelihood of the observed partition
    """
    counts = np.asarray(abundances, dtype=float)
    n = counts.sum()
    j = np.arange(1, len(counts))
    return float(np.sum(np.log(alpha + j * sigma)) - log_pochhammer(alpha + 1, n - 1)
                 + np.sum(log_pochhammer(1 - sigma, counts - 1)))


def _dirichlet_objective(x: np.ndarray, counts: np.ndarray):
    # x = [log(alpha)]
    alpha = math.exp(x[0])
    n = counts.sum()
    k = len(counts)
    value = eppf_loglik(counts, alpha)
    d_alpha = (k - 1) / alpha - digamma(alpha + n) + digamma(alpha + 1)
    return -value, np.array([-d_alpha * alpha])


def _pitman_yor_objective(x: np.ndarray, counts: np.ndarray):
    # x = [log(alpha + sigma), logit(sigma)]
    sigma = expit(x[1])
    alpha = math.exp(x[0]) - sigma
    n = counts.sum()
    k = len(counts)
    j = np.arange(1, k)
    value = eppf_loglik(counts, alpha, sigma)

    d_alpha = np.sum(1 / (alpha + j * sigma)) - digamma(alpha + n) + digamma(alpha + 1)
    d_sigma = np.sum(j / (alpha + j * sigma)) - np.sum(digamma(counts - sigma)) + k * digamma(1 - sigma)
    grad = np.array([d_alpha * math.exp(x[0]), (d_sigma - d_alpha) * sigma * (1 - sigma)])
    return -value, -grad


def _optimize(objective: Callable, x0: list, bounds: list, counts: np.ndarray, variant: "SpeciesSamplingVariant",
              settings: OptimizerSettings):
    with np.errstate(divide="ignore", invalid="ignore"):
        res = minimize(objective, np.array(x0), args=(counts,), jac=True, method="L-BFGS-B", bounds=bounds,
                       options=settings.scipy_options(), callback=settings.deadline_callback())
    if not res.success or not np.isfinite(res.fun):
        raise OptimizationFailure(variant.value, str(res.message))
    lower = np.array([b[0] for b in bounds])
    upper = np.array([b[1] for b in bounds])
    return np.clip(res.x, lower, upper), -float(res.fun)


def fit_ssm(abundances: Iterable, model: Union[str, SpeciesSamplingVariant] = "DP",
            settings: OptimizerSettings = DEFAULT_SETTINGS) -> "FittedSSM":
    """
    fits a species-sampling model to a vector of abundances by maximizing its EPPF over the valid parameter domain
    :param abundances: the observed species counts, zeros are ignored
    :param model: the model variant, "DP" (Dirichlet process) or "PY" (Pitman-Yor process)
    :param settings: iteration, tolerance and time budget of the optimizer
    :return: the fitted model
    """
    variant = SpeciesSamplingVariant.parse(model)
    counts = filter_abundances(abundances)
    k = len(counts)
    log_alpha_bounds = (math.log(ALPHA_LOWER_BOUND), math.log(ALPHA_UPPER_BOUND))
    log_alpha_start = min(max(math.log(k), log_alpha_bounds[0]), log_alpha_bounds[1])

    if variant is SpeciesSamplingVariant.DIRICHLET:
        x, loglik = _optimize(_dirichlet_objective, [log_alpha_start], [log_alpha_bounds], counts, variant,
                              settings)
        alpha, sigma = math.exp(x[0]), 0.0
    else:
        sigma_bounds = (SIGMA_LOGIT_LOWER_BOUND, float(logit(SIGMA_UPPER_BOUND)))
        x, loglik = _optimize(_pitman_yor_objective, [log_alpha_start, 0.0], [log_alpha_bounds, sigma_bounds],
                              counts, variant, settings)
        sigma = float(expit(x[1]))
        alpha = math.exp(x[0]) - sigma

    logger.debug("Fitted %s on %d species: alpha=%s, sigma=%s, loglik=%s", variant.value, k, alpha, sigma, loglik)
    return FittedSSM(variant, alpha, sigma, loglik, counts)


@dataclass(frozen=True, eq=False)
class FittedSSM:
    """
    Immutable result of fitting a species-sampling model. All queries are pure functions of the fitted parameters
    and the abundances the model has been fitted on.
    """
    variant: SpeciesSamplingVariant
    alpha: float
    sigma: float
    loglik: float
    abundances: np.ndarray = field(repr=False)

    def __post_init__(self):
        check_parameters(self.alpha, self.sigma)
        counts = np.array(self.abundances, dtype=np.int64)
        counts.setflags(write=False)
        object.__setattr__(self, "abundances", counts)

    @property
    def abundance(self) -> int:
        return get_total_species_count(self.abundances)

    @property
    def richness(self) -> int:
        return get_number_observed_species(self.abundances)

    @property
    def par(self) -> dict:
        return {"alpha": self.alpha, "sigma": self.sigma}

    @property
    def is_dirichlet(self) -> bool:
        return self.sigma < SIGMA_TOLERANCE

    def _posterior_beta(self):
        n, k = self.abundance, self.richness
        sigma = 0.0 if self.is_dirichlet else self.sigma
        return n - sigma * k, self.alpha + sigma * k

    def coverage(self) -> float:
        """
        computes the posterior mean of the sample coverage, (n - sigma*K) / (alpha + n)
        """
        a, b = self._posterior_beta()
        return a / (a + b)

    def sample_coverage(self, size: int = 1000, seed=None) -> np.ndarray:
        """
        draws from the posterior law of the sample coverage, Beta(n - sigma*K, alpha + sigma*K)
        :param size: the number of draws
        :param seed: seed or numpy Generator of the random draws
        :return: the posterior draws
        """
        a, b = self._posterior_beta()
        return np.random.default_rng(seed).beta(a, b, size=size)

    def gini(self) -> float:
        """
        computes the posterior mean of the Gini-Simpson diversity,
        1 - [(1-sigma)(alpha+K*sigma) + sum_j (n_j-sigma)_2] / (alpha+n)_2
        """
        n, k = self.abundance, self.richness
        sigma = 0.0 if self.is_dirichlet else self.sigma
        counts = self.abundances - sigma
        num = (1 - sigma) * (self.alpha + k * sigma) + np.sum(counts * (counts + 1))
        return float(1 - num / ((self.alpha + n) * (self.alpha + n + 1)))

    def sample_gini(self, size: int = 1000, seed=None, verbose: bool = False,
                    progress: Optional[Callable[[int, Optional[int]], None]] = None,
                    cancel_event: Optional[Event] = None) -> np.ndarray:
        """
        draws from the posterior law of the Gini-Simpson diversity. Given the data, the species proportions are
        (W_1, ..., W_K, W_0) ~ Dirichlet(n_1 - sigma, ..., n_K - sigma, alpha + sigma*K) for the observed species
        and W_0 times the weights of an independent Pitman-Yor process with parameters (sigma, alpha + sigma*K) for
        the unobserved ones. The latter are generated by stick-breaking until the unassigned mass is negligible.
        :param size: the number of draws
        :param seed: seed or numpy Generator of the random draws
        :param verbose: flag indicating if a progress bar over the broken sticks should be shown
        :param progress: callback receiving the number of broken sticks
        :param cancel_event: event that aborts the sampling once set
        :return: the posterior draws
        """
        rng = np.random.default_rng(seed)
        sigma = 0.0 if self.is_dirichlet else self.sigma
        theta = self.alpha + sigma * self.richness

        weights = rng.dirichlet(np.append(self.abundances - sigma, theta), size=size)
        observed = np.sum(weights[:, :-1] ** 2, axis=1)
        w_0 = weights[:, -1]

        unobserved = np.zeros(size)
        remaining = np.ones(size)
        with ProgressMonitor(None, "Stick-breaking", verbose, progress, cancel_event) as monitor:
            for stick in range(1, MAX_STICKS + 1):
                v = rng.beta(1 - sigma, theta + stick * sigma, size=size)
                unobserved += (remaining * v) ** 2
                remaining *= 1 - v
                monitor.step()
                if remaining.max() < STICK_TOLERANCE:
                    break
            else:
                logger.warning("Stick-breaking stopped after %d sticks with up to %s of the mass unassigned",
                               MAX_STICKS, float(remaining.max()))
        return 1 - (observed + w_0 ** 2 * unobserved)

    def rarefaction(self, indices: Optional[Iterable] = None) -> np.ndarray:
        """
        computes the expected number of distinct species E(K_i) among the first i draws of the process,
        (alpha/sigma) [(alpha+sigma)_i / (alpha)_i - 1], or alpha [psi(alpha+i) - psi(alpha)] for the Dirichlet
        process
        :param indices: the sample sizes to evaluate, defaults to 1..n
        :return: the expected richness at every sample size
        """
        i = np.arange(1, self.abundance + 1) if indices is None else as_sample_sizes(indices, "Sample sizes", 1)
        alpha = self.alpha
        if self.is_dirichlet:
            return alpha * (digamma(alpha + i) - digamma(alpha))
        sigma = self.sigma
        return np.exp(gammaln(alpha + sigma + i) - gammaln(alpha + sigma) - gammaln(alpha + i)
                      + gammaln(alpha + 1)) / sigma - alpha / sigma

    def extrapolation(self, m) -> np.ndarray:
        """
        computes the expected richness after m additional draws given the K species observed among n,
        K + (K + alpha/sigma) [(alpha+n+sigma)_m / (alpha+n)_m - 1], or K + alpha [psi(alpha+n+m) - psi(alpha+n)]
        for the Dirichlet process
        :param m: a number or an ordered sequence of numbers of additional draws
        :return: the expected richness for each m
        """
        m = as_sample_sizes(m, "Additional sample sizes", 0)
        n, k, alpha = self.abundance, self.richness, self.alpha
        if self.is_dirichlet:
            return k + alpha * (digamma(alpha + n + m) - digamma(alpha + n))
        sigma = self.sigma
        ratio = np.exp(gammaln(alpha + n + sigma + m) - gammaln(alpha + n + sigma) - gammaln(alpha + n + m)
                       + gammaln(alpha + n))
        return k + (k + alpha / sigma) * (ratio - 1)

    def asymptotic_richness(self) -> float:
        """
        species-sampling models assume infinitely many species, the expected richness grows without bound
        """
        return math.inf

    def expected_frequency_counts(self, r: Optional[Iterable] = None) -> np.ndarray:
        """
        computes the prior expected number of species observed exactly r times among n draws,
        E(M_r) = C(n,r) (1-sigma)_{r-1} alpha (alpha+sigma)_{n-r} / (alpha)_n
        :param r: the frequencies to evaluate, defaults to 1..max abundance
        :return: the expected frequency counts
        """
        n, alpha = self.abundance, self.alpha
        sigma = 0.0 if self.is_dirichlet else self.sigma
        r = np.arange(1, self.abundances.max() + 1) if r is None else as_sample_sizes(r, "Frequencies", 1)
        if np.any(r > n):
            raise InvalidInput("Frequencies cannot exceed the abundance " + str(n))
        log_choose = gammaln(n + 1) - gammaln(r + 1) - gammaln(n - r + 1)
        out = log_choose + log_pochhammer(1 - sigma, r - 1) + gammaln(alpha + 1) - gammaln(alpha + n) \
            + gammaln(alpha + sigma + n - r) - gammaln(alpha + sigma)
        return np.exp(out)

    def summary(self) -> dict:
        n, k = self.abundance, self.richness
        expected = float(self.extrapolation(n)[0])
        return {
            "model": self.variant.value,
            "abundance": n,
            "richness": k,
            "sample_coverage": coverage_turing_good(self.abundances),
            "sample_gini": gini_simpson(self.abundances),
            "posterior_coverage": self.coverage(),
            "posterior_gini": self.gini(),
            "extrapolation_m": n,
            "expected_species": expected,
            "expected_new_species": expected - k,
            "asymptotic_richness": self.asymptotic_richness(),
            "alpha": self.alpha,
            "sigma": self.sigma,
            "loglik": self.loglik,
        }

    def summarize(self) -> None:
        """
        prints a summary of the fitted species-sampling model
        """
        s = self.summary()
        name = "Dirichlet process (DP)" if self.variant is SpeciesSamplingVariant.DIRICHLET \
            else "Pitman-Yor process (PY)"
        print("### " + name + " ###")
        print("%-45s %s" % ("Abundance", str(s["abundance"])))
        print("%-45s %s" % ("Richness", str(s["richness"])))
        print("%-45s %.4f" % ("Turing-Good sample coverage", s["sample_coverage"]))
        print("%-45s %.4f" % ("Posterior mean of coverage", s["posterior_coverage"]))
        print("%-45s %.4f" % ("Posterior mean of Gini diversity", s["posterior_gini"]))
        print("%-45s %.2f" % ("Expected species after " + str(s["extrapolation_m"]) + " additional samples",
                              s["expected_species"]))
        print("%-45s %.2f" % ("Expected new species after " + str(s["extrapolation_m"]) + " additional samples",
                              s["expected_new_species"]))
        print()
        print("%-20s %-20s %s" % ("alpha", "sigma", "logLik"))
        print("%-20s %-20s %s" % ("-----", "-----", "------"))
        print("%-20.4f %-20.4f %.4f" % (self.alpha, self.sigma, self.loglik))
        print()

    def to_dataFrame(self, m: Optional[int] = None) -> pd.DataFrame:
        """
        returns the model-free rarefaction curve next to the fitted one, and the extrapolated richness for
        1..m additional samples if m is given
        """
        n = self.abundance
        df = pd.DataFrame({"n": np.arange(1, n + 1), "observed": rarefaction_curve(self.abundances),
                           "fitted": self.rarefaction(), "type": "rarefaction"})
        if m is None or m < 1:
            return df
        ext = pd.DataFrame({"n": n + np.arange(1, m + 1), "observed": np.nan,
                            "fitted": self.extrapolation(np.arange(1, m + 1)), "type": "extrapolation"})
        return pd.concat([df, ext], ignore_index=True)
