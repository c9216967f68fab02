"""
Sequential discovery models: the indicator D_i of the i-th individual being a new species is modelled as an
independent Bernoulli trial with success probability S(i-1; theta), a survival function decreasing from S(0) = 1
to 0. The decay guarantees a finite asymptotic richness.

Raw abundances carry no observation order, so the models are fitted on the increments of the model-free
rarefaction curve, D_1 = 1, D_i = K_i - K_{i-1}.
"""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from threading import Event
from typing import Callable, Iterable, Iterator, Optional, Union

import numpy as np
import pandas as pd
from scipy.optimize import minimize
from scipy.special import expit, logit

from bnpspecies.estimation.metrics import filter_abundances, as_sample_sizes, coverage_turing_good
from bnpspecies.estimation.progress import ProgressMonitor
from bnpspecies.estimation.rarefaction import rarefaction_curve
from bnpspecies.estimation.settings import OptimizerSettings, DEFAULT_SETTINGS, COEFFICIENT_FLOOR, \
    TAIL_TOLERANCE, MAX_TAIL_TERMS, TAIL_CHUNK_SIZE
from bnpspecies.exceptions import InvalidInput, UnsupportedModel, OptimizationFailure, UnreachableTarget

logger = logging.getLogger(__name__)

# upper bound of the number of uniform draws held in memory at once by the Monte Carlo sampler
MAX_DRAWS_PER_CHUNK = 10 ** 6

# a fitted S(1) with logit above this value is 1 in double precision
SEPARATION_LOGIT = 36.0
# exp(log(alpha)) overflows a double above this value
MAX_LOG_SCALE = 709.0


class DiscoveryVariant(Enum):
    LOG_LOGISTIC_3 = "LL3"
    WEIBULL = "Weibull"

    @classmethod
    def parse(cls, model: Union[str, "DiscoveryVariant"]) -> "DiscoveryVariant":
        if isinstance(model, cls):
            return model
        try:
            return cls(model)
        except ValueError:
            raise UnsupportedModel("No method exists for specified model: " + str(model)) from None


def survival_ll3(i, alpha: float, sigma: float, phi: float) -> np.ndarray:
    """
    three-parameter log-logistic survival function, S(i) = alpha phi^i / (alpha phi^i + i^(1-sigma))
    :param i: the positions in the sequence
    :param alpha: scale, alpha > 0
    :param sigma: shape, sigma < 1
    :param phi: exponential decay, phi in (0,1)
    :return: the probability of discovering a new species after i individuals
    """
    i = np.atleast_1d(np.asarray(i, dtype=float))
    out = np.ones_like(i)
    pos = i > 0
    out[pos] = expit(math.log(alpha) + i[pos] * math.log(phi) - (1 - sigma) * np.log(i[pos]))
    return out


def survival_weibull(i, phi: float, lambda_: float) -> np.ndarray:
    """
    Weibull survival function, S(i) = phi^(i^lambda)
    :param i: the positions in the sequence
    :param phi: phi in (0,1)
    :param lambda_: lambda > 0
    :return: the probability of discovering a new species after i individuals
    """
    i = np.atleast_1d(np.asarray(i, dtype=float))
    return np.exp(i ** lambda_ * math.log(phi))


def discoveries_from_rarefaction(curve: np.ndarray) -> np.ndarray:
    """
    derives the surrogate discovery sequence D_1 = 1, D_i = K_i - K_{i-1} from a rarefaction curve
    """
    curve = np.asarray(curve, dtype=float)
    if len(curve) == 0:
        return np.empty(0)
    # increments are probabilities, rounding can push them marginally outside of [0, 1]
    return np.concatenate([[1.0], np.clip(np.diff(curve), 0, 1)])


def _ll3_objective(x: np.ndarray, design: np.ndarray, y: np.ndarray):
    eta = design @ x
    value = np.sum(np.logaddexp(0, eta) - y * eta)
    grad = design.T @ (expit(eta) - y)
    return value, grad


def _fit_ll3(d: np.ndarray, settings: OptimizerSettings):
    """
    fits the LL3 kernel as a logistic regression of D_2..D_n on the linear predictor
    logit S(i) = log(alpha) + (sigma - 1) log(i) + log(phi) i, i = 1..n-1,
    where both slopes are constrained to be non-positive. The objective is convex.
    """
    y = d[1:]
    i = np.arange(1, len(d), dtype=float)
    scale = float(len(y))
    design = np.column_stack([np.ones_like(i), np.log(i), i / scale])

    start = np.array([float(logit(np.clip(y.mean(), 1e-6, 1 - 1e-6))), -0.1, -0.1])
    with np.errstate(over="ignore"):
        res = minimize(_ll3_objective, start, args=(design, y), jac=True, method="L-BFGS-B",
                       bounds=[(None, None), (None, 0), (None, 0)], options=settings.scipy_options(),
                       callback=settings.deadline_callback())
    if not res.success or not np.isfinite(res.fun):
        raise OptimizationFailure(DiscoveryVariant.LOG_LOGISTIC_3.value, str(res.message))

    # a slope at its upper limit 0 would leave S without decay in that direction
    b_0 = float(res.x[0])
    b_1 = min(float(res.x[1]), -COEFFICIENT_FLOOR)
    b_2 = min(float(res.x[2]) / scale, -COEFFICIENT_FLOOR)
    if b_0 > MAX_LOG_SCALE:
        raise OptimizationFailure(DiscoveryVariant.LOG_LOGISTIC_3.value,
                                  "scale parameter diverged, log(alpha) = " + str(b_0))
    if b_0 + b_2 > SEPARATION_LOGIT:
        logger.warning("LL3 fit is degenerate, the discovery sequence is perfectly separated "
                       "(log(alpha)=%s, sigma=%s)", b_0, 1 + b_1)

    eta = b_0 + b_1 * np.log(i) + b_2 * i
    loglik = -float(np.sum(np.logaddexp(0, eta) - y * eta))
    return (math.exp(b_0), 1 + b_1, math.exp(b_2)), loglik


def _weibull_objective(x: np.ndarray, log_i: np.ndarray, y: np.ndarray):
    # x = [log(-log(phi)), log(lambda)], log S = -h with h = -log(phi) i^lambda
    lambda_ = math.exp(x[1])
    h = np.exp(x[0] + lambda_ * log_i)
    log_one_minus_s = np.log(-np.expm1(-h))
    value = np.sum(y * h - (1 - y) * log_one_minus_s)
    d_h = y - (1 - y) / np.expm1(h)
    grad = np.array([np.sum(d_h * h), np.sum(d_h * h * lambda_ * log_i)])
    return value, grad


def _fit_weibull(d: np.ndarray, settings: OptimizerSettings):
    """
    fits the Weibull kernel by direct maximum likelihood over (phi, lambda)
    """
    y = d[1:]
    log_i = np.log(np.arange(1, len(d), dtype=float))
    bounds = [(math.log(1e-12), math.log(50.0)), (math.log(1e-3), math.log(10.0))]
    start = np.array([math.log(0.1), math.log(0.5)])
    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        res = minimize(_weibull_objective, start, args=(log_i, y), jac=True, method="L-BFGS-B", bounds=bounds,
                       options=settings.scipy_options(), callback=settings.deadline_callback())
    if not res.success or not np.isfinite(res.fun):
        raise OptimizationFailure(DiscoveryVariant.WEIBULL.value, str(res.message))
    return (math.exp(-math.exp(res.x[0])), math.exp(res.x[1])), -float(res.fun)


_KERNELS = {
    DiscoveryVariant.LOG_LOGISTIC_3: (("alpha", "sigma", "phi"), survival_ll3, _fit_ll3),
    DiscoveryVariant.WEIBULL: (("phi", "lambda"), survival_weibull, _fit_weibull),
}


def _check_discoveries(discoveries: Iterable) -> np.ndarray:
    d = np.asarray(list(discoveries), dtype=float)
    if d.ndim != 1 or len(d) < 2:
        raise InvalidInput("A discovery model needs at least two observed individuals")
    if np.any(~np.isfinite(d)) or np.any(d < 0) or np.any(d > 1):
        raise InvalidInput("Discovery indicators must lie in [0, 1]")
    if d[0] != 1:
        raise InvalidInput("The first observed individual is always a new species")
    return d


def fit_discoveries(discoveries: Iterable, model: Union[str, DiscoveryVariant] = "LL3",
                    settings: OptimizerSettings = DEFAULT_SETTINGS,
                    abundances: Optional[np.ndarray] = None) -> "FittedSDM":
    """
    fits a sequential discovery model on a discovery indicator sequence
    :param discoveries: D_1..D_n, 0/1 indicators or their expectations, D_1 = 1
    :param model: the model variant, "LL3" (three-parameter log-logistic) or "Weibull"
    :param settings: iteration, tolerance and time budget of the optimizer
    :param abundances: the abundances the sequence has been derived from, if any
    :return: the fitted model
    """
    variant = DiscoveryVariant.parse(model)
    d = _check_discoveries(discoveries)
    names, survival, fit = _KERNELS[variant]
    params, loglik = fit(d, settings)
    logger.debug("Fitted %s on %d individuals: %s, loglik=%s", variant.value, len(d), dict(zip(names, params)),
                 loglik)

    richness = len(abundances) if abundances is not None else float(np.sum(d))
    mean, sd = _asymptotic_moments(survival, params, len(d), richness)
    return FittedSDM(variant, params, loglik, d, mean, sd, richness / mean, abundances)


def fit_sdm(abundances: Iterable, model: Union[str, DiscoveryVariant] = "LL3",
            settings: OptimizerSettings = DEFAULT_SETTINGS, verbose: bool = False,
            progress: Optional[Callable[[int, Optional[int]], None]] = None,
            cancel_event: Optional[Event] = None) -> "FittedSDM":
    """
    fits a sequential discovery model on the average rarefaction curve of a vector of abundances
    :param abundances: the observed species counts, zeros are ignored
    :param model: the model variant, "LL3" (three-parameter log-logistic) or "Weibull"
    :param settings: iteration, tolerance and time budget of the optimizer
    :param verbose: flag indicating if the construction of the rarefaction curve should be monitored
    :param progress: callback receiving the progress of the rarefaction curve
    :param cancel_event: event that aborts the construction of the rarefaction curve once set
    :return: the fitted model
    """
    variant = DiscoveryVariant.parse(model)
    counts = filter_abundances(abundances)
    if counts.sum() < 2:
        raise InvalidInput("A discovery model needs at least two observed individuals")
    curve = rarefaction_curve(counts, verbose=verbose, progress=progress, cancel_event=cancel_event)
    return fit_discoveries(discoveries_from_rarefaction(curve), variant, settings, abundances=counts)


def _tail(survival: Callable, params: tuple, start: int, chunk_size: int = TAIL_CHUNK_SIZE) -> Iterator[np.ndarray]:
    """
    yields S(start), S(start+1), ... in chunks until the survival probability becomes negligible
    """
    offset = start
    while offset - start < MAX_TAIL_TERMS:
        size = min(chunk_size, start + MAX_TAIL_TERMS - offset)
        s = survival(np.arange(offset, offset + size), *params)
        negligible = np.flatnonzero(s < TAIL_TOLERANCE)
        if len(negligible) > 0:
            yield s[:negligible[0]]
            return
        yield s
        offset += size
    logger.warning("Survival function still above %s after %d terms, truncating the infinite sum", TAIL_TOLERANCE,
                   MAX_TAIL_TERMS)


def _asymptotic_moments(survival: Callable, params: tuple, n: int, richness: float):
    mean, var = float(richness), 0.0
    for s in _tail(survival, params, n):
        mean += float(np.sum(s))
        var += float(np.sum(s * (1 - s)))
    return mean, math.sqrt(var)


@dataclass(frozen=True, eq=False)
class FittedSDM:
    """
    Immutable result of fitting a sequential discovery model. The asymptotic richness moments and the saturation
    are precomputed at fitting time.
    """
    variant: DiscoveryVariant
    params: tuple
    loglik: float
    discoveries: np.ndarray = field(repr=False)
    asymptotic_mean: float
    asymptotic_sd: float
    saturation_ratio: float
    abundances: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self):
        d = np.array(self.discoveries, dtype=float)
        d.setflags(write=False)
        object.__setattr__(self, "discoveries", d)
        if self.abundances is not None:
            counts = np.array(self.abundances, dtype=np.int64)
            counts.setflags(write=False)
            object.__setattr__(self, "abundances", counts)

    @property
    def par(self) -> dict:
        return dict(zip(_KERNELS[self.variant][0], self.params))

    @property
    def abundance(self) -> int:
        return len(self.discoveries)

    @property
    def richness(self) -> float:
        if self.abundances is not None:
            return len(self.abundances)
        return float(np.sum(self.discoveries))

    def survival(self, i) -> np.ndarray:
        """
        evaluates the fitted survival function S(i; theta)
        """
        return _KERNELS[self.variant][1](i, *self.params)

    def coverage(self) -> float:
        """
        computes the model-based sample coverage 1 - S(n), the probability that the next individual belongs to an
        already observed species
        """
        return float(1 - self.survival(self.abundance)[0])

    def rarefaction(self, indices: Optional[Iterable] = None) -> np.ndarray:
        """
        computes the expected richness E(K_i) = S(0) + ... + S(i-1)
        :param indices: the sample sizes to evaluate, defaults to 1..n
        :return: the expected richness at every sample size
        """
        if indices is None:
            i = np.arange(1, self.abundance + 1)
        else:
            i = as_sample_sizes(indices, "Sample sizes", 1)
        if len(i) == 0:
            return np.empty(0)
        curve = np.cumsum(self.survival(np.arange(0, i.max())))
        return curve[i - 1]

    def extrapolation(self, m) -> np.ndarray:
        """
        computes the expected richness after m additional individuals, K + S(n) + ... + S(n+m-1)
        :param m: a number or an ordered sequence of numbers of additional individuals
        :return: the expected richness for each m
        """
        m = as_sample_sizes(m, "Additional sample sizes", 0)
        if len(m) == 0:
            return np.empty(0)
        n, k = self.abundance, self.richness
        gain = np.concatenate([[0.0], np.cumsum(self.survival(np.arange(n, n + m.max())))])
        return k + gain[m]

    def asymptotic_richness(self) -> float:
        """
        returns E(K_inf | K_n = k) = k + sum_{j>=n} S(j)
        """
        return self.asymptotic_mean

    def sample_asymptotic_richness(self, size: int = 1000, seed=None, verbose: bool = False,
                                   progress: Optional[Callable[[int, Optional[int]], None]] = None,
                                   cancel_event: Optional[Event] = None) -> np.ndarray:
        """
        draws from the posterior law of the asymptotic richness by simulating the Bernoulli discovery sequence
        forward from n until the survival probability is negligible
        :param size: the number of simulated sequences
        :param seed: seed or numpy Generator of the random draws
        :param verbose: flag indicating if a progress bar should be shown
        :param progress: callback receiving the number of simulated positions
        :param cancel_event: event that aborts the simulation once set
        :return: the simulated asymptotic richness of every sequence
        """
        if size < 1:
            raise InvalidInput("Number of Monte Carlo draws must be positive")
        rng = np.random.default_rng(seed)
        survival = _KERNELS[self.variant][1]
        totals = np.full(size, float(self.richness))
        chunk_size = max(1, MAX_DRAWS_PER_CHUNK // size)
        with ProgressMonitor(None, "Simulating discoveries", verbose, progress, cancel_event) as monitor:
            for s in _tail(survival, self.params, self.abundance, chunk_size):
                totals += np.sum(rng.random((size, len(s))) < s, axis=1)
                monitor.step(len(s))
        return totals

    def saturation(self, mode: str = "approximate", target: Optional[float] = None, size: int = 1000, seed=None,
                   verbose: bool = False, progress: Optional[Callable[[int, Optional[int]], None]] = None,
                   cancel_event: Optional[Event] = None):
        """
        computes the sample saturation, i.e. the ratio of observed to asymptotic richness
        :param mode: "approximate" returns k / E(K_inf), "mc" returns k / K_inf for simulated draws of K_inf,
        "target" returns the minimal number of additional individuals needed to reach saturation target
        :param target: the desired saturation level for mode "target"
        :param size: the number of simulated sequences for mode "mc"
        :param seed: seed or numpy Generator for mode "mc"
        :return: a float, an array of draws or an int, depending on the mode
        """
        if mode == "approximate":
            return self.saturation_ratio
        if mode == "mc":
            return self.richness / self.sample_asymptotic_richness(size, seed, verbose, progress, cancel_event)
        if mode == "target":
            if target is None:
                raise InvalidInput("Saturation mode 'target' requires a target level")
            return self.samples_to_saturation(target)
        raise InvalidInput("Unknown saturation mode: " + str(mode))

    def samples_to_saturation(self, target: float) -> int:
        """
        inverts the extrapolation formula, returning the smallest m with E(K_{n+m}) / E(K_inf) >= target
        :param target: the desired saturation level in (0, 1]
        :return: the number of additional individuals
        """
        if not target > 0:
            raise InvalidInput("Saturation target must be positive")
        if target > 1:
            raise UnreachableTarget("Saturation cannot exceed 1, requested " + str(target))
        if target <= self.saturation_ratio:
            return 0

        required = target * self.asymptotic_mean - self.richness
        # rounding slack between the chunked sums here and in the precomputed asymptotic mean
        slack = 1e-12 * self.asymptotic_mean
        reached, m = 0.0, 0
        for s in _tail(_KERNELS[self.variant][1], self.params, self.abundance):
            if len(s) == 0:
                break
            cum = reached + np.cumsum(s)
            hit = np.flatnonzero(cum >= required - slack)
            if len(hit) > 0:
                return m + int(hit[0]) + 1
            reached = float(cum[-1])
            m += len(s)
        raise UnreachableTarget("Saturation " + str(target) + " is not reachable, the fitted model saturates at " +
                                str((self.richness + reached) / self.asymptotic_mean))

    def summary(self) -> dict:
        n, k = self.abundance, self.richness
        expected = float(self.extrapolation(n)[0])
        out = {
            "model": self.variant.value,
            "abundance": n,
            "richness": k,
            "sample_coverage": coverage_turing_good(self.abundances) if self.abundances is not None else None,
            "coverage": self.coverage(),
            "extrapolation_m": n,
            "expected_species": expected,
            "expected_new_species": expected - k,
            "asymptotic_richness": self.asymptotic_mean,
            "asymptotic_sd": self.asymptotic_sd,
            "asymptotic_new_species": self.asymptotic_mean - k,
            "saturation": self.saturation_ratio,
            "loglik": self.loglik,
        }
        out.update(self.par)
        return out

    def summarize(self) -> None:
        """
        prints a summary of the fitted sequential discovery model
        """
        s = self.summary()
        name = "Three-parameter log-logistic (LL3)" if self.variant is DiscoveryVariant.LOG_LOGISTIC_3 \
            else "Weibull"
        print("### " + name + " ###")
        print("%-45s %s" % ("Abundance", str(s["abundance"])))
        print("%-45s %s" % ("Richness", str(s["richness"])))
        print("%-45s %.4f" % ("Estimated sample coverage", s["coverage"]))
        print("%-45s %.2f" % ("Expected species after " + str(s["extrapolation_m"]) + " additional samples",
                              s["expected_species"]))
        print("%-45s %.2f" % ("Expected new species after " + str(s["extrapolation_m"]) + " additional samples",
                              s["expected_new_species"]))
        print("%-45s %.2f" % ("Expected species at infinity", s["asymptotic_richness"]))
        print("%-45s %.2f" % ("Standard deviation at infinity", s["asymptotic_sd"]))
        print("%-45s %.2f" % ("Expected new species to discover", s["asymptotic_new_species"]))
        print("%-45s %.4f" % ("Estimated saturation", s["saturation"]))
        print()
        names = list(self.par.keys()) + ["logLik"]
        print(" ".join("%-20s" % x for x in names))
        print(" ".join("%-20s" % ("-" * len(x)) for x in names))
        print(" ".join("%-20.6g" % x for x in list(self.params) + [self.loglik]))
        print()

    def to_dataFrame(self, m: Optional[int] = None) -> pd.DataFrame:
        """
        returns the observed accumulation of discoveries next to the fitted rarefaction curve, and the
        extrapolated richness for 1..m additional individuals if m is given
        """
        n = self.abundance
        df = pd.DataFrame({"n": np.arange(1, n + 1), "observed": np.cumsum(self.discoveries),
                           "fitted": self.rarefaction(), "type": "rarefaction"})
        if m is None or m < 1:
            return df
        ext = pd.DataFrame({"n": n + np.arange(1, m + 1), "observed": np.nan,
                            "fitted": self.extrapolation(np.arange(1, m + 1)), "type": "extrapolation"})
        return pd.concat([df, ext], ignore_index=True)
