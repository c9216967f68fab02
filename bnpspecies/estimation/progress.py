from threading import Event
from typing import Callable, Optional

from tqdm import tqdm

from bnpspecies.exceptions import ComputationCancelled


class ProgressMonitor:
    """
    Reports the progress of a long-running loop and checks for cooperative cancellation once per outer iteration.
    Reporting is purely observational and never changes the result of the monitored computation.
    """

    def __init__(self, total: Optional[int], description: str, verbose: bool = False,
                 progress: Optional[Callable[[int, Optional[int]], None]] = None,
                 cancel_event: Optional[Event] = None) -> None:
        """
        :param total: the number of outer iterations, None if unknown in advance
        :param description: label shown next to the progress bar
        :param verbose: flag indicating if a tqdm progress bar should be shown
        :param progress: callback receiving the number of finished iterations and the total
        :param cancel_event: event that aborts the computation once set
        """
        self.total = total
        self.description = description
        self.done = 0
        self.progress = progress
        self.cancel_event = cancel_event
        self.bar = tqdm(total=total, desc=description, disable=not verbose)

    def __enter__(self) -> "ProgressMonitor":
        try:
            self.check()
        except ComputationCancelled:
            self.bar.close()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.bar.close()

    def check(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ComputationCancelled(self.description + " cancelled after " + str(self.done) + " iterations")

    def step(self, n: int = 1) -> None:
        self.done += n
        self.bar.update(n)
        if self.progress is not None:
            self.progress(self.done, self.total)
        self.check()
