from collections import defaultdict
import logging
from typing import Optional, DefaultDict, Iterator

import pyfaidx
from dataclasses import dataclass, field
from xopen import xopen


class FastaNotIndexedError(Exception):
    pass


class InvalidRegion(Exception):
    pass


def IndexedFasta(path):
    try:
        f = pyfaidx.Fasta(path, as_raw=True, sequence_always_upper=True, build_index=False)
    except pyfaidx.IndexNotFoundError:
        raise FastaNotIndexedError(path)
    return f


def plural_s(n: int) -> str:
    return "" if n == 1 else "s"


@dataclass(frozen=True, order=True)
class Region:
    """
    A repeat locus. Coordinates are 0-based and half-open. Only the coordinates
    take part in equality and ordering, so a Region can be used to look up
    data that was stored under the same coordinates.
    """

    chromosome: str
    start: int
    stop: int
    period: int = field(default=1, compare=False)
    name: Optional[str] = field(default=None, compare=False)

    def __repr__(self):
        return f'Region("{self.chromosome}", {self.start}, {self.stop}, period={self.period})'

    def __str__(self):
        return f"{self.chromosome}:{self.start + 1}-{self.stop}"

    def __len__(self):
        return self.stop - self.start

    @staticmethod
    def parse(spec: str, period: int = 1):
        """
        >>> Region.parse("chr1:101-200")
        Region("chr1", 100, 200, period=1)
        >>> Region.parse("chr1:101:200", period=4)  # for backwards compatibility
        Region("chr1", 100, 200, period=4)
        """
        parts = spec.split(":", maxsplit=1)
        chromosome = parts[0]
        if len(parts) == 1 or not parts[1]:
            raise InvalidRegion("A repeat region needs a start and a stop coordinate")
        try:
            sep = ":" if ":" in parts[1] else "-"
            start_end = parts[1].split(sep, maxsplit=1)
            start = int(start_end[0]) - 1
            stop = int(start_end[1])
        except (ValueError, IndexError):
            raise InvalidRegion("Region must be specified as chrom:start-stop") from None
        if stop <= start:
            raise InvalidRegion("end is before start in specified region")
        return Region(chromosome, start, stop, period)

    @staticmethod
    def from_bed_fields(fields):
        """
        Create a Region from the columns of a region file:
        chromosome, start (0-based), stop, period and an optional name.
        """
        if len(fields) < 4:
            raise InvalidRegion(
                "Region lines need at least four columns (chrom, start, stop, period)"
            )
        try:
            start, stop, period = int(fields[1]), int(fields[2]), int(fields[3])
        except ValueError:
            raise InvalidRegion("Start, stop and period must be integers") from None
        if stop <= start:
            raise InvalidRegion(f"end is before start in region {fields[0]}:{start}-{stop}")
        if period < 1:
            raise InvalidRegion(f"Repeat period must be positive, found {period}")
        name = fields[4] if len(fields) > 4 else None
        return Region(fields[0], start, stop, period, name)


def read_regions(path) -> Iterator[Region]:
    """Yield the repeat regions listed in a (possibly compressed) region file"""
    with xopen(path) as f:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                yield Region.from_bed_fields(line.split())
            except InvalidRegion as e:
                raise InvalidRegion(f"{path}, line {line_number}: {e}") from None


_warning_count: DefaultDict[str, int] = defaultdict(int)


def warn_once(logger, msg: str, *args) -> None:
    if _warning_count[msg] == 0 and not logger.isEnabledFor(logging.DEBUG):
        logger.warning(msg + " Hiding further warnings of this type, use --debug to show", *args)
    else:
        logger.debug(msg, *args)
    _warning_count[msg] += 1
