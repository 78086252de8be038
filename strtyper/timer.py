import time
import logging
from collections import defaultdict
from contextlib import contextmanager
from typing import DefaultDict, Dict

logger = logging.getLogger(__name__)


class StageTimer:
    """
    Measure CPU time of multiple non-overlapping stages of a program.

    Times are taken with time.process_time(), so they reflect the work done by
    this process and not the wall clock.
    """

    def __init__(self) -> None:
        self._start: Dict[str, float] = dict()
        self._elapsed: DefaultDict[str, float] = defaultdict(float)
        self._overall_start_time = time.process_time()

    def start(self, stage):
        """Start measuring elapsed time for a stage"""
        self._start[stage] = time.process_time()

    def stop(self, stage: str) -> float:
        """Stop measuring elapsed time for a stage. Return the time of this invocation."""
        t = time.process_time() - self._start[stage]
        if t < 0:
            logger.warning("Unreliable runtime measurements: Measured a negative runtime")
            t = 0
        self._elapsed[stage] += t
        del self._start[stage]
        return t

    def elapsed(self, stage: str) -> float:
        """
        Return total time spent in a stage, which is the sum of the time spans
        between calls to start() and stop(). If the timer is currently running,
        its current invocation is not counted.
        """
        return self._elapsed[stage]

    def sum(self) -> float:
        """Return sum of all times"""
        return sum(self._elapsed.values())

    def total(self) -> float:
        return time.process_time() - self._overall_start_time

    @contextmanager
    def __call__(self, stage: str):
        self.start(stage)
        try:
            yield
        finally:
            self.stop(stage)
