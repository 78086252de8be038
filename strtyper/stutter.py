"""
Stutter models describe how PCR and sequencing errors change the observed
length of a repeat.

A read differs from its underlying allele either by a multiple of the repeat
period (in-frame stutter) or by any other number of base pairs (out-of-frame
stutter). The number of steps of a change follows a geometric distribution.
"""
import copy
import math
import logging
from typing import Dict, TextIO

import numpy as np
from xopen import xopen

from .utils import Region, InvalidRegion

logger = logging.getLogger(__name__)


class StutterModelError(Exception):
    pass


def _log_geometric(p: float, steps: int) -> float:
    """log P(steps) for a geometric distribution on 1, 2, 3, ..."""
    if steps == 1:
        return math.log(p)
    if p == 1:
        return -math.inf
    return math.log(p) + (steps - 1) * math.log1p(-p)


class StutterModel:
    def __init__(
        self,
        in_geom: float,
        in_down: float,
        in_up: float,
        out_geom: float,
        out_down: float,
        out_up: float,
        motif_len: int,
    ):
        if motif_len < 1:
            raise StutterModelError(f"Motif length must be positive, got {motif_len}")
        for name, geom in (("in_geom", in_geom), ("out_geom", out_geom)):
            if not 0 < geom <= 1:
                raise StutterModelError(f"{name} must be in (0, 1], got {geom}")
        for name, prob in (
            ("in_down", in_down),
            ("in_up", in_up),
            ("out_down", out_down),
            ("out_up", out_up),
        ):
            if not 0 <= prob < 1:
                raise StutterModelError(f"{name} must be in [0, 1), got {prob}")
        if in_down + in_up + out_down + out_up >= 1:
            raise StutterModelError("Stutter probabilities must sum to less than 1")
        self.in_geom = in_geom
        self.in_down = in_down
        self.in_up = in_up
        self.out_geom = out_geom
        self.out_down = out_down
        self.out_up = out_up
        self.motif_len = motif_len
        self._log_equal = math.log1p(-(in_down + in_up + out_down + out_up))

    @property
    def parameters(self):
        return (
            self.in_geom,
            self.in_down,
            self.in_up,
            self.out_geom,
            self.out_down,
            self.out_up,
        )

    def __eq__(self, other):
        if not isinstance(other, StutterModel):
            return NotImplemented
        return self.parameters == other.parameters and self.motif_len == other.motif_len

    def __repr__(self):
        return (
            "StutterModel(in_geom={}, in_down={}, in_up={}, out_geom={}, out_down={}, "
            "out_up={}, motif_len={})".format(*self.parameters, self.motif_len)
        )

    def __str__(self):
        return (
            "IN_FRAME[P={:.3g}, U={:.3g}, D={:.3g}], "
            "OUT_FRAME[P={:.3g}, U={:.3g}, D={:.3g}]".format(
                self.in_geom, self.in_up, self.in_down, self.out_geom, self.out_up, self.out_down
            )
        )

    def copy(self) -> "StutterModel":
        return copy.deepcopy(self)

    def log_stutter_pmf(self, bp_diff: int) -> float:
        """
        Log-probability that a read differs by bp_diff base pairs from the
        allele it was sequenced from.
        """
        if bp_diff == 0:
            return self._log_equal
        if bp_diff % self.motif_len == 0:
            steps = abs(bp_diff) // self.motif_len
            prob = self.in_up if bp_diff > 0 else self.in_down
            geom = self.in_geom
        else:
            steps = abs(bp_diff - math.trunc(bp_diff / self.motif_len))
            prob = self.out_up if bp_diff > 0 else self.out_down
            geom = self.out_geom
        if prob == 0:
            return -math.inf
        return math.log(prob) + _log_geometric(geom, steps)

    def log_stutter_pmfs(self, bp_diffs) -> np.ndarray:
        """Vectorized log_stutter_pmf"""
        bp_diffs = np.asarray(bp_diffs, dtype=int)
        unique, inverse = np.unique(bp_diffs, return_inverse=True)
        values = np.array([self.log_stutter_pmf(int(d)) for d in unique], dtype=float)
        return values[inverse].reshape(bp_diffs.shape)

    def write_model(self, region: Region, out: TextIO) -> None:
        fields = [region.chromosome, region.start, region.stop, self.motif_len]
        fields.extend(repr(float(value)) for value in self.parameters)
        print(*fields, sep="\t", file=out)


def read_stutter_models(path) -> Dict[Region, StutterModel]:
    """
    Read stutter models written by StutterModel.write_model and return a
    dictionary that maps each region to its model.
    """
    models: Dict[Region, StutterModel] = dict()
    with xopen(path) as f:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            fields = line.split("\t")
            if len(fields) != 10:
                raise StutterModelError(
                    f"{path}, line {line_number}: expected 10 columns, found {len(fields)}"
                )
            try:
                region = Region.from_bed_fields(fields[:4])
                values = [float(v) for v in fields[4:]]
                model = StutterModel(*values, motif_len=region.period)
            except (InvalidRegion, ValueError, StutterModelError) as e:
                raise StutterModelError(f"{path}, line {line_number}: {e}") from None
            if region in models:
                logger.warning("Duplicate stutter model for %s, using the last one", region)
            models[region] = model
    logger.info("Read %d stutter models from %s", len(models), path)
    return models
