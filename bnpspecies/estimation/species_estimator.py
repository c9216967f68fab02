import logging
from typing import Iterable, Optional

import numpy as np
import pandas as pd
from pandas import DataFrame
from tqdm import tqdm

from bnpspecies.estimation.metrics import filter_abundances, get_singletons, get_doubletons, \
    coverage_turing_good, gini_simpson, simpson_diversity
from bnpspecies.estimation.rarefaction import rarefaction_curve
from bnpspecies.estimation.sdm import DiscoveryVariant, fit_discoveries, discoveries_from_rarefaction
from bnpspecies.estimation.settings import OptimizerSettings, DEFAULT_SETTINGS
from bnpspecies.estimation.ssm import SpeciesSamplingVariant, fit_ssm
from bnpspecies.exceptions import InvalidInput, UnsupportedModel

logger = logging.getLogger(__name__)


class SpeciesEstimator:
    """
    A class for fitting and comparing species-sampling and sequential discovery models on the same abundance vector
    """

    def __init__(self, ssm_models: Iterable = ("DP", "PY"), sdm_models: Iterable = ("LL3", "Weibull"),
                 settings: OptimizerSettings = DEFAULT_SETTINGS, verbose: bool = False) -> None:
        """
        :param ssm_models: the species-sampling model variants to fit, any of "DP" and "PY"
        :param sdm_models: the sequential discovery model variants to fit, any of "LL3" and "Weibull"
        :param settings: iteration, tolerance and time budget handed to every fit
        :param verbose: flag indicating if progress bars should be shown
        """
        self.ssm_variants = [SpeciesSamplingVariant.parse(m) for m in ssm_models]
        self.sdm_variants = [DiscoveryVariant.parse(m) for m in sdm_models]
        self.settings = settings
        self.verbose = verbose

        self.abundances = None
        self.models = {}

    def apply(self, abundances: Iterable) -> None:
        """
        fits all registered models on a vector of abundances. If any fit fails, the models of a previous call
        remain in place
        :param abundances: the observed species counts, zeros are ignored
        """
        counts = filter_abundances(abundances)
        if self.sdm_variants and counts.sum() < 2:
            raise InvalidInput("A discovery model needs at least two observed individuals")

        models = {}
        for variant in tqdm(self.ssm_variants, "Fitting species-sampling models", disable=not self.verbose):
            models[variant.value] = fit_ssm(counts, variant, self.settings)

        if self.sdm_variants:
            # all discovery models share the same surrogate discovery sequence
            d = discoveries_from_rarefaction(rarefaction_curve(counts, verbose=self.verbose))
            for variant in tqdm(self.sdm_variants, "Fitting discovery models", disable=not self.verbose):
                models[variant.value] = fit_discoveries(d, variant, self.settings, abundances=counts)

        self.abundances = counts
        self.models = models
        logger.debug("Fitted %s on %d individuals", list(models), int(counts.sum()))

    def summarize(self, model: Optional[str] = None) -> None:
        """
        prints the sample statistics followed by a summary of every fitted model, or of the given model only
        """
        if self.abundances is None:
            raise InvalidInput("No abundances have been applied yet")
        names = self.models.keys() if model is None else [model]
        if model is not None and model not in self.models:
            raise UnsupportedModel("No fitted model named " + str(model) + ", fitted are " + str(list(self.models)))

        print("%-25s %s" % ("Sample Stats", ""))
        print("%-25s %s" % ("", "---------"))
        print("%-25s %s" % ("Abundance", str(int(self.abundances.sum()))))
        print("%-25s %s" % ("Richness", str(len(self.abundances))))
        print("%-25s %s" % ("Singletons", str(get_singletons(self.abundances))))
        print("%-25s %s" % ("Doubletons", str(get_doubletons(self.abundances))))
        print("%-25s %.4f" % ("Turing-Good coverage", coverage_turing_good(self.abundances)))
        print("%-25s %.4f" % ("Gini-Simpson", gini_simpson(self.abundances)))
        print("%-25s %.4f" % ("Simpson diversity", simpson_diversity(self.abundances)))
        print()
        for name in names:
            self.models[name].summarize()

    def to_dataFrame(self, include_all: bool = True, m: Optional[int] = None) -> DataFrame:
        """
        returns the fitted models as a data frame, either the observed and fitted accumulation curves of every
        model (extrapolated by m additional individuals if given) or one row per model and summary value
        :returns: a data frame view of the fitted models
        """
        if include_all:
            frames = [self.models[name].to_dataFrame(m).assign(model=name) for name in self.models]
            if not frames:
                return pd.DataFrame(columns=["model", "n", "observed", "fitted", "type"])
            return pd.concat(frames, ignore_index=True)[["model", "n", "observed", "fitted", "type"]]
        return pd.DataFrame([[name, key, value]
                             for name in self.models
                             for key, value in self.models[name].summary().items()
                             if key != "model" and value is not None and np.isscalar(value)
                             ], columns=["model", "metric", "value"])
