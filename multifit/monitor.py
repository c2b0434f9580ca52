# This program is in the public domain
"""
Progress monitors.

Process monitors accept a :class:`Progress` record each minimizer
iteration and perform some sort of work.
"""

__all__ = ["Monitor", "Progress", "TimedUpdate"]

from dataclasses import dataclass

import numpy as np
from numpy import inf


@dataclass
class Progress:
    """
    State of the fit after one minimizer iteration.

    *step* counts iterations from 1, *time* is the number of seconds since
    the fit started, *point* is the parameter vector and *value* the
    objective at that point.
    """

    step: int
    time: float
    point: np.ndarray
    value: float


class Monitor(object):
    """
    Base class for monitors.
    """

    def __call__(self, progress):
        """
        Give the monitor the latest progress record to work with.
        """
        pass

    def final(self, progress):
        """
        Called once with the best point when the fit is complete.
        """
        pass


class TimedUpdate(Monitor):
    """
    Indicate progress every n seconds.

    *progress* is the number of seconds to go before showing progress, such
    as time or step number.

    *improvement* is the number of seconds to go before showing
    improvements to value.

    By default, the updater does nothing.  Subclass TimedUpdate with
    replaced :meth:`show_progress` and :meth:`show_improvement` to log
    progress or show parameter values.
    """

    def __init__(self, progress=60, improvement=5):
        self.progress_delta = progress
        self.improvement_delta = improvement
        self.progress_time = -inf
        self.improvement_time = -inf
        self.value = inf
        self.improved = False

    def show_improvement(self, progress):
        pass

    def show_progress(self, progress):
        pass

    def __call__(self, progress):
        t = progress.time
        v = progress.value
        if v < self.value:
            self.improved = True
            self.value = v
        if t > self.progress_time + self.progress_delta:
            self.progress_time = t
            self.show_progress(progress)
        if self.improved and t > self.improvement_time + self.improvement_delta:
            self.improved = False
            self.improvement_time = t
            self.show_improvement(progress)


def test_timed_update():
    shown = []

    class Recorder(TimedUpdate):
        def show_progress(self, progress):
            shown.append(("progress", progress.step))

        def show_improvement(self, progress):
            shown.append(("improvement", progress.step))

    monitor = Recorder(progress=10, improvement=0)
    point = np.zeros(2)
    monitor(Progress(step=1, time=0.0, point=point, value=5.0))
    monitor(Progress(step=2, time=1.0, point=point, value=6.0))
    monitor(Progress(step=3, time=2.0, point=point, value=4.0))
    assert shown == [("progress", 1), ("improvement", 1), ("improvement", 3)]
