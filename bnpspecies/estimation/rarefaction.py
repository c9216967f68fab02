import logging
from threading import Event
from typing import Callable, Iterable, Optional

import numpy as np

from bnpspecies.estimation.metrics import filter_abundances, frequency_of_frequencies
from bnpspecies.estimation.progress import ProgressMonitor

logger = logging.getLogger(__name__)


def rarefaction_curve(abundances: Iterable, verbose: bool = False,
                      progress: Optional[Callable[[int, Optional[int]], None]] = None,
                      cancel_event: Optional[Event] = None) -> np.ndarray:
    """
    computes the model-free (average) rarefaction curve of an abundance vector, i.e. for every sample size
    i = 1..n the expected number of distinct species in a subsample of i individuals drawn without replacement,

        K_i = K - sum_j C(n - n_j, i) / C(n, i).

    The ratio of binomial coefficients of every species is carried along i in log-space,

        log r_j(i) = log r_j(i-1) + log(n - n_j - i + 1) - log(n - i + 1),

    and species sharing the same count share the same ratio, so one pass costs O(n * R) for R distinct counts.
    The cost still grows with n; callers are responsible for limiting the size of the input.

    :param abundances: the observed species counts, zeros are ignored
    :param verbose: flag indicating if a progress bar should be shown
    :param progress: callback receiving the number of finished sample sizes and n
    :param cancel_event: event that aborts the computation once set
    :return: array of length n, the i-th entry holding the expected richness at sample size i+1
    """
    counts = filter_abundances(abundances, allow_empty=True)
    n = int(counts.sum())
    if n == 0:
        return np.empty(0)
    richness = len(counts)

    freq = frequency_of_frequencies(counts)
    r = np.array([c for c in freq if freq[c] > 0], dtype=float)
    f_r = np.array([freq[c] for c in freq if freq[c] > 0], dtype=float)

    # state of the recurrence, owned by this call only
    log_ratio = np.zeros(len(r))
    curve = np.empty(n)

    with ProgressMonitor(n, "Rarefaction", verbose, progress, cancel_event) as monitor:
        for i in range(1, n + 1):
            with np.errstate(divide="ignore"):
                log_ratio += np.log(np.maximum(n - r - i + 1, 0)) - np.log(n - i + 1)
            curve[i - 1] = richness - np.dot(f_r, np.exp(log_ratio))
            monitor.step()

    logger.debug("Rarefaction curve of %d individuals and %d species computed", n, richness)
    return curve
