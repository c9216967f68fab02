from collections import Counter
from typing import Iterable, Union

import numpy as np
from scipy.special import gammaln

from bnpspecies.exceptions import InvalidInput


def filter_abundances(abundances: Iterable, allow_empty: bool = False) -> np.ndarray:
    """
    validates a vector of species abundances and silently removes the species with a count of 0
    :param abundances: the observed counts, one per species
    :param allow_empty: flag indicating if a vector without any positive count is accepted
    :return: the positive counts as an integer array
    """
    values = np.asarray(list(abundances), dtype=float)
    if values.ndim != 1:
        raise InvalidInput("Abundances must be a one-dimensional sequence of counts")
    if np.any(~np.isfinite(values)) or np.any(values != np.floor(values)):
        raise InvalidInput("Abundances must be non-negative integers")
    if np.any(values < 0):
        raise InvalidInput("Abundances must be non-negative integers")
    values = values[values > 0].astype(np.int64)
    if len(values) == 0 and not allow_empty:
        raise InvalidInput("No species with positive abundance observed")
    return values


def get_singletons(abundances: np.ndarray) -> int:
    """
    returns the number of singleton species, i.e. those species that have an abundance of 1
    :param abundances: the observed species counts
    :return: the number of species with count 1
    """
    return int(np.count_nonzero(np.asarray(abundances) == 1))


def get_doubletons(abundances: np.ndarray) -> int:
    """
    returns the number of doubleton species, i.e. those species that have an abundance of 2
    :param abundances: the observed species counts
    :return: the number of species with count 2
    """
    return int(np.count_nonzero(np.asarray(abundances) == 2))


def get_number_observed_species(abundances: np.ndarray) -> int:
    """
    returns the observed richness K
    """
    return len(abundances)


def get_total_species_count(abundances: np.ndarray) -> int:
    """
    returns the abundance n, i.e. the total number of observed individuals
    """
    return int(np.sum(abundances))


def frequency_of_frequencies(abundances: np.ndarray) -> dict:
    """
    tabulates how many species have been observed exactly r times, for r = 1..max count
    :param abundances: the observed species counts
    :return: mapping from count r to the number of species with count r
    """
    counts = Counter(int(x) for x in abundances)
    if not counts:
        return {}
    return {r: counts.get(r, 0) for r in range(1, max(counts) + 1)}


def coverage_turing_good(abundances: np.ndarray) -> float:
    """
    computes the Turing-Good estimate of sample coverage, 1 - f_1/n. A value of '1' indicates full coverage,
    i.e. no singletons have been observed
    :param abundances: the observed species counts
    :return: the estimated coverage
    """
    n = get_total_species_count(abundances)
    if n == 0:
        return 0
    return 1 - get_singletons(abundances) / n


def gini_simpson(abundances: np.ndarray) -> float:
    """
    computes the unbiased sample estimate of the Gini-Simpson index, i.e. the probability that two individuals
    drawn without replacement belong to different species
    :param abundances: the observed species counts
    :return: the Gini-Simpson index
    """
    counts = np.asarray(abundances, dtype=float)
    n = counts.sum()
    if n <= 1:
        return 0
    return 1 - float(np.sum(counts * (counts - 1)) / (n * (n - 1)))


def simpson_diversity(abundances: np.ndarray) -> float:
    """
    computes the Simpson diversity index, i.e. the Hill number of order 2 of the sample
    """
    counts = np.asarray(abundances, dtype=float)
    a = float(np.sum((counts / counts.sum()) ** 2))
    return 1 / a if a > 0 else 1


def log_pochhammer(a: Union[float, np.ndarray], m: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
    """
    computes the logarithm of the rising factorial (a)_m = a(a+1)...(a+m-1) = Gamma(a+m)/Gamma(a), for a > 0
    """
    return gammaln(np.add(a, m)) - gammaln(a)


def as_sample_sizes(m, name: str, minimum: int) -> np.ndarray:
    """
    validates a number or an ordered sequence of sample sizes
    :param m: the sample sizes
    :param name: name of the sample sizes used in the error message
    :param minimum: the smallest admissible sample size
    :return: the sample sizes as a one-dimensional integer array
    """
    values = np.atleast_1d(np.asarray(m, dtype=float))
    if values.ndim != 1 or np.any(~np.isfinite(values)) or np.any(values != np.floor(values)) \
            or np.any(values < minimum):
        raise InvalidInput(name + " must be integers >= " + str(minimum))
    return values.astype(np.int64)
