"""
Convert phred-scaled base qualities into log-probabilities.
"""
from typing import Sequence, Union

import numpy as np

MAX_PHRED = 93

# A base call cannot be worse than a random guess among four bases
MAX_ERROR_PROB = 0.75


class BaseQuality:
    """
    Lookup tables for the log-probability that a base call is correct (or
    wrong) given its phred score.
    """

    def __init__(self, offset: int = 33):
        self.offset = offset
        phred = np.arange(MAX_PHRED + 1, dtype=float)
        error = np.minimum(10 ** (-phred / 10), MAX_ERROR_PROB)
        self._log_correct = np.log1p(-error)
        self._log_error = np.log(error)

    def _as_phred(self, qualities: Union[str, Sequence[int]]) -> np.ndarray:
        if isinstance(qualities, str):
            phred = np.frombuffer(qualities.encode("ascii"), dtype=np.uint8).astype(int)
            phred -= self.offset
        else:
            phred = np.asarray(qualities, dtype=int)
        if len(phred) and (phred.min() < 0 or phred.max() > MAX_PHRED):
            raise ValueError("Base quality out of range")
        return phred

    def log_prob_correct(self, qualities: Union[str, Sequence[int]]) -> np.ndarray:
        return self._log_correct[self._as_phred(qualities)]

    def log_prob_error(self, qualities: Union[str, Sequence[int]]) -> np.ndarray:
        return self._log_error[self._as_phred(qualities)]

    def sum_log_prob_correct(self, qualities: Union[str, Sequence[int], None]) -> float:
        """
        Sum of the log-probabilities that each base in the read was called
        correctly. Reads without base qualities score 0.
        """
        if qualities is None:
            return 0.0
        return float(self.log_prob_correct(qualities).sum())
