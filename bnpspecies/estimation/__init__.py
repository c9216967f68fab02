from bnpspecies.estimation.rarefaction import rarefaction_curve
from bnpspecies.estimation.sdm import DiscoveryVariant, FittedSDM, fit_sdm, fit_discoveries
from bnpspecies.estimation.settings import OptimizerSettings
from bnpspecies.estimation.species_estimator import SpeciesEstimator
from bnpspecies.estimation.ssm import SpeciesSamplingVariant, FittedSSM, fit_ssm
