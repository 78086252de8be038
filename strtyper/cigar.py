"""
Interpret CIGAR operations relative to a window on the reference.

CIGARs are given as lists of (operation, length) pairs, as returned by
pysam.AlignedSegment.cigartuples.
"""
from typing import List, Optional, Tuple

from pysam import (
    CMATCH,
    CINS,
    CDEL,
    CREF_SKIP,
    CSOFT_CLIP,
    CHARD_CLIP,
    CPAD,
    CEQUAL,
    CDIFF,
)

ALIGNED_OPS = (CMATCH, CEQUAL, CDIFF)
CLIP_OPS = (CSOFT_CLIP, CHARD_CLIP, CPAD)


def extract_offset(
    cigartuples: Optional[List[Tuple[int, int]]],
    position: int,
    window_start: int,
    window_stop: int,
) -> Tuple[bool, int]:
    """
    Determine by how many base pairs the read differs from the reference within
    the window [window_start, window_stop).

    Return a pair (success, bp_diff). success is False if the alignment does not
    span the entire window or contains a reference skip, in which case bp_diff
    is 0. Insertions between two window positions add their length; deletions
    subtract the number of deleted bases that lie within the window.
    """
    if not cigartuples or position > window_start:
        return False, 0
    ref_pos = position
    bp_diff = 0
    for op, length in cigartuples:
        if op in ALIGNED_OPS:
            ref_pos += length
        elif op == CDEL:
            overlap = min(ref_pos + length, window_stop) - max(ref_pos, window_start)
            if overlap > 0:
                bp_diff -= overlap
            ref_pos += length
        elif op == CINS:
            if window_start <= ref_pos <= window_stop:
                bp_diff += length
        elif op == CREF_SKIP:
            return False, 0
        elif op in CLIP_OPS:
            pass
        else:
            raise ValueError(f"Unknown CIGAR operation {op}")
    if ref_pos < window_stop:
        return False, 0
    return True, bp_diff


def cigar_prefix_length(cigar, position: int, reference_pos: int) -> Optional[int]:
    """
    Return the number of query bases (including soft-clipped ones) that lie
    before the reference position reference_pos, or None if the alignment does
    not reach that position.

    Bases inserted directly before reference_pos are counted as part of the
    prefix. Reference skips end the alignment.
    """
    ref_pos = position
    query_pos = 0
    for op, length in cigar:
        if op in ALIGNED_OPS:
            if ref_pos + length > reference_pos:
                return query_pos + max(0, reference_pos - ref_pos)
            ref_pos += length
            query_pos += length
        elif op == CDEL:
            if ref_pos + length > reference_pos:
                return query_pos
            ref_pos += length
        elif op == CINS:
            query_pos += length
        elif op == CSOFT_CLIP:
            if query_pos > 0 and ref_pos == reference_pos:
                # trailing clip
                return query_pos
            query_pos += length
        elif op == CREF_SKIP:
            return None
        elif op in (CHARD_CLIP, CPAD):
            pass
        else:
            raise ValueError(f"Unknown CIGAR operation {op}")
    if ref_pos == reference_pos:
        return query_pos
    return None


def query_interval(
    cigartuples, position: int, window_start: int, window_stop: int
) -> Optional[Tuple[int, int]]:
    """
    Return the half-open interval of query positions aligned to the reference
    window [window_start, window_stop), or None if the read does not span it.
    """
    if not cigartuples or position > window_start:
        return None
    start = cigar_prefix_length(cigartuples, position, window_start)
    stop = cigar_prefix_length(cigartuples, position, window_stop)
    if start is None or stop is None:
        return None
    # Insertions directly at the left window boundary belong to the window
    while start > 0 and _is_inserted(cigartuples, start - 1):
        start -= 1
    return start, stop


def _is_inserted(cigartuples, query_index: int) -> bool:
    query_pos = 0
    for op, length in cigartuples:
        if op in ALIGNED_OPS or op in (CINS, CSOFT_CLIP):
            if query_index < query_pos + length:
                return op == CINS
            query_pos += length
    return False
