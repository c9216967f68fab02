import time
from dataclasses import dataclass
from typing import Optional

# sigma below this value is treated as the Dirichlet process limit in all closed-form expressions
SIGMA_TOLERANCE = 1e-6

# search box of the species-sampling concentration parameter
ALPHA_LOWER_BOUND = 1e-8
ALPHA_UPPER_BOUND = 1e6
SIGMA_UPPER_BOUND = 1 - 1e-8

# a vanishing LL3 coefficient would put sigma at 1 or phi at 1, where the survival function no longer decays.
# It is replaced by this magnitude with the required sign instead.
COEFFICIENT_FLOOR = 1e-7

# survival probabilities below this value are negligible when truncating infinite sums
TAIL_TOLERANCE = 1e-10
MAX_TAIL_TERMS = 10 ** 8
TAIL_CHUNK_SIZE = 10 ** 5


@dataclass(frozen=True)
class OptimizerSettings:
    """
    iteration, tolerance and wall-clock budget handed to every likelihood maximization
    :param max_iter: maximum number of optimizer iterations
    :param tolerance: gradient and relative function tolerance of the optimizer
    :param time_budget: maximum number of seconds per fit, None for no limit
    """
    max_iter: int = 1000
    tolerance: float = 1e-8
    time_budget: Optional[float] = None

    def scipy_options(self) -> dict:
        return {"maxiter": self.max_iter, "gtol": self.tolerance, "ftol": self.tolerance}

    def deadline_callback(self):
        """
        returns a scipy.optimize callback aborting the optimization once the time budget is used up, or None
        """
        if self.time_budget is None:
            return None
        deadline = time.monotonic() + self.time_budget

        def callback(xk):
            if time.monotonic() > deadline:
                raise StopIteration

        return callback


DEFAULT_SETTINGS = OptimizerSettings()
