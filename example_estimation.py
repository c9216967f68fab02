from bnpspecies.estimation import SpeciesEstimator, fit_sdm, fit_ssm

'''
Example script explaining how to fit species-sampling and sequential discovery models on observed species counts
'''
# Abundances of the observed species, one count per species
observed_species = {"A": 120, "B": 64, "C": 33, "D": 20, "E": 12, "F": 9, "G": 7, "H": 5, "I": 4, "J": 3, "K": 3,
                    "L": 2, "M": 2, "N": 2, "O": 1, "P": 1, "Q": 1, "R": 1, "S": 1, "T": 1}
abundances = list(observed_species.values())

py = fit_ssm(abundances, model="PY")
print("Posterior mean of coverage:                    " + str(py.coverage()))
print("Expected species after 100 additional samples: " + str(py.extrapolation(100)[0]))
print()

ll3 = fit_sdm(abundances, model="LL3", verbose=True)
print("Expected species at infinity:                  " + str(ll3.asymptotic_richness()))
print("Estimated saturation:                          " + str(ll3.saturation()))
print("Additional samples for 90% saturation:         " + str(ll3.saturation("target", target=.9)))
print()

estimator = SpeciesEstimator(verbose=True)
estimator.apply(abundances)
estimator.summarize()
estimator.to_dataFrame(m=500).to_csv("curves.csv", index=False)
