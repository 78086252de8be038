"""
Collapse PCR duplicates.

Read pairs (or single reads) from the same library whose fragments start at
the same positions are assumed to stem from one original molecule. Only the
pair whose repeat-spanning read has the best base qualities is kept.
"""
import logging
from typing import Dict, List, Optional, Tuple

from .bam import AlignmentWithSource, MissingReadGroupError
from .quality import BaseQuality

logger = logging.getLogger(__name__)


class LibraryNotFoundError(Exception):
    pass


class ReadPair:
    """
    One or two alignments of a sequenced fragment. Single-ended fragments use
    -1 as their minimum start so that they never collide with a real pair.
    """

    def __init__(
        self,
        aln_one: AlignmentWithSource,
        library: str,
        aln_two: Optional[AlignmentWithSource] = None,
    ):
        self.aln_one = aln_one
        self.aln_two = aln_two
        self.library = library
        start_one = aln_one.bam_alignment.reference_start
        if aln_two is None:
            self.min_read_start = -1
            self.max_read_start = start_one
        else:
            start_two = aln_two.bam_alignment.reference_start
            self.min_read_start = min(start_one, start_two)
            self.max_read_start = max(start_one, start_two)

    @property
    def single_ended(self) -> bool:
        return self.aln_two is None

    @property
    def signature(self) -> Tuple[str, int, int]:
        return (self.library, self.min_read_start, self.max_read_start)

    def is_duplicate(self, other: "ReadPair") -> bool:
        return self.signature == other.signature

    def __lt__(self, other: "ReadPair") -> bool:
        return self.signature < other.signature

    def __repr__(self):
        return "ReadPair(library={!r}, starts=({}, {}), name={!r})".format(
            self.library,
            self.min_read_start,
            self.max_read_start,
            self.aln_one.bam_alignment.query_name,
        )


def get_library(alignment: AlignmentWithSource, rg_to_library: Dict[str, str]) -> str:
    """Return the library of an alignment as given by its RG tag"""
    bam_alignment = alignment.bam_alignment
    if not bam_alignment.has_tag("RG"):
        raise MissingReadGroupError(
            f"Failed to retrieve the RG tag of read {bam_alignment.query_name!r}"
        )
    rg = bam_alignment.get_tag("RG")
    try:
        return rg_to_library[rg]
    except KeyError:
        raise LibraryNotFoundError(
            f"No library found for read group {rg!r} in BAM file headers"
        ) from None


def _library_of_file(alignment: AlignmentWithSource, rg_to_library: Dict[str, str]) -> str:
    try:
        return rg_to_library[alignment.source]
    except KeyError:
        raise LibraryNotFoundError(f"No library given for file {alignment.source!r}") from None


def remove_pcr_duplicates(
    base_quality: BaseQuality,
    use_bam_rgs: bool,
    rg_to_library: Dict[str, str],
    paired_strs_by_rg: List[List[AlignmentWithSource]],
    mate_pairs_by_rg: List[List[AlignmentWithSource]],
    unpaired_strs_by_rg: List[List[AlignmentWithSource]],
) -> int:
    """
    Remove PCR duplicates from each batch. The three lists of batches are
    modified in place.

    rg_to_library maps read group IDs (if use_bam_rgs is set) or alignment file
    names (otherwise) to library names.

    Return the number of discarded duplicates.
    """
    if not (len(paired_strs_by_rg) == len(mate_pairs_by_rg) == len(unpaired_strs_by_rg)):
        raise ValueError("Need the same number of paired, mate and unpaired read batches")
    library_of = get_library if use_bam_rgs else _library_of_file

    dup_count = 0
    for paired_strs, mate_pairs, unpaired_strs in zip(
        paired_strs_by_rg, mate_pairs_by_rg, unpaired_strs_by_rg
    ):
        if len(paired_strs) != len(mate_pairs):
            raise ValueError("Each paired read needs exactly one mate")
        read_pairs = [
            ReadPair(aln, library_of(aln, rg_to_library), mate)
            for aln, mate in zip(paired_strs, mate_pairs)
        ]
        read_pairs.extend(ReadPair(aln, library_of(aln, rg_to_library)) for aln in unpaired_strs)
        # sort is stable: pairs with equal signatures keep their input order
        read_pairs.sort(key=lambda pair: pair.signature)

        kept = []
        best, best_quality = None, None
        for pair in read_pairs:
            quality = base_quality.sum_log_prob_correct(pair.aln_one.bam_alignment.query_qualities)
            if best is not None and pair.is_duplicate(best):
                dup_count += 1
                if quality > best_quality:
                    best, best_quality = pair, quality
            else:
                if best is not None:
                    kept.append(best)
                best, best_quality = pair, quality
        if best is not None:
            kept.append(best)

        paired_strs[:] = [pair.aln_one for pair in kept if not pair.single_ended]
        mate_pairs[:] = [pair.aln_two for pair in kept if not pair.single_ended]
        unpaired_strs[:] = [pair.aln_one for pair in kept if pair.single_ended]

    logger.info("Removed %d sets of PCR duplicate reads", dup_count)
    return dup_count
