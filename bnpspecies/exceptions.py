class SpeciesEstimationError(Exception):
    """
    Base class of all errors raised by the estimation engines
    """


class InvalidInput(SpeciesEstimationError, ValueError):
    """
    raised for abundance vectors that are empty after filtering, negative or non-integer counts and malformed
    sample sizes
    """


class UnsupportedModel(SpeciesEstimationError, ValueError):
    """
    raised for model variant names outside of {"DP", "PY"} or {"LL3", "Weibull"}
    """


class OptimizationFailure(SpeciesEstimationError, RuntimeError):
    """
    raised if the likelihood maximizer does not converge within its budget. No fitted model is produced.
    """

    def __init__(self, model: str, message: str) -> None:
        super().__init__("Fitting " + model + " did not converge: " + message)
        self.model = model
        self.optimizer_message = message


class UnreachableTarget(SpeciesEstimationError, ValueError):
    """
    raised if a requested saturation level lies beyond what the fitted asymptote permits
    """


class ComputationCancelled(SpeciesEstimationError, RuntimeError):
    """
    raised when a long-running computation observes its cancellation event
    """
