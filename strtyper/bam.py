import os
import math
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import pysam

from .utils import Region

logger = logging.getLogger(__name__)


@dataclass
class AlignmentWithSource:
    source: str
    bam_alignment: pysam.AlignedSegment


class AlignmentFileNotIndexedError(Exception):
    pass


class ReferenceNotFoundError(Exception):
    pass


class EmptyAlignmentFileError(Exception):
    pass


class MissingReadGroupError(Exception):
    pass


@dataclass
class LocusReads:
    """
    Alignments around one repeat, grouped into one batch per sample.

    paired_strs[i][j] spans the repeat and mate_pairs[i][j] is its mate;
    unpaired_strs[i] holds repeat-spanning reads without a mate nearby.
    """

    sample_names: List[str]
    paired_strs: List[List[AlignmentWithSource]] = field(default_factory=list)
    mate_pairs: List[List[AlignmentWithSource]] = field(default_factory=list)
    unpaired_strs: List[List[AlignmentWithSource]] = field(default_factory=list)

    def alignments(self) -> List[List[AlignmentWithSource]]:
        """Repeat-spanning reads of each sample"""
        return [
            paired + unpaired for paired, unpaired in zip(self.paired_strs, self.unpaired_strs)
        ]

    def __len__(self):
        return sum(len(p) + len(u) for p, u in zip(self.paired_strs, self.unpaired_strs))


def is_alignment_usable(alignment: pysam.AlignedSegment, min_mapq: int) -> bool:
    return not (
        alignment.is_unmapped
        or alignment.is_secondary
        or alignment.is_supplementary
        or alignment.mapping_quality < min_mapq
    )


class StrBamReader:
    """
    Fetch the reads around repeat loci from one or more indexed BAM/CRAM files
    and assign them to samples.

    With use_bam_rgs, samples and libraries come from the SM and LB fields of
    the @RG header lines. Otherwise each file is one sample (file_samples) with
    one library (file_libraries, defaulting to the sample name).
    """

    def __init__(
        self,
        paths: Sequence[str],
        *,
        reference: Optional[str] = None,
        use_bam_rgs: bool = True,
        file_samples: Optional[Sequence[str]] = None,
        file_libraries: Optional[Sequence[str]] = None,
        min_mapq: int = 20,
        flank: int = 1000,
    ):
        if reference:
            reference = os.path.abspath(reference)
        self._paths = list(paths)
        self._use_bam_rgs = use_bam_rgs
        self._min_mapq = min_mapq
        self._flank = flank
        self._files = []
        for path in self._paths:
            samfile = pysam.AlignmentFile(path, reference_filename=reference)
            try:
                fetcher = samfile.fetch(multiple_iterators=True)
            except ValueError:
                raise AlignmentFileNotIndexedError(path)
            try:
                next(fetcher)
            except StopIteration:
                raise EmptyAlignmentFileError(path) from None
            self._files.append(samfile)

        # read group -> sample, read group (or path) -> library
        self.rg_to_sample: Dict[str, str] = dict()
        self.rg_to_library: Dict[str, str] = dict()
        self._file_samples: List[str] = []
        if use_bam_rgs:
            for path, samfile in zip(self._paths, self._files):
                self._read_header(path, samfile)
        else:
            if file_samples is None or len(file_samples) != len(self._paths):
                raise ValueError("Need exactly one sample name per alignment file")
            if file_libraries is None:
                file_libraries = file_samples
            if len(file_libraries) != len(self._paths):
                raise ValueError("Need exactly one library name per alignment file")
            self._file_samples = list(file_samples)
            for path, library in zip(self._paths, file_libraries):
                self.rg_to_library[path] = library

        samples = self._file_samples if not use_bam_rgs else self.rg_to_sample.values()
        self.samples: List[str] = list(dict.fromkeys(samples))

    def _read_header(self, path: str, samfile: pysam.AlignmentFile) -> None:
        read_groups = samfile.header.to_dict().get("RG", [])
        logger.debug("Read groups in %s: %s", path, read_groups)
        for read_group in read_groups:
            rg_id = read_group["ID"]
            if "SM" not in read_group:
                logger.warning(
                    'Read group "%s" does not contain an SM field to assign it to a sample.'
                    " Its reads are ignored.",
                    rg_id,
                )
                continue
            self.rg_to_sample[rg_id] = read_group["SM"]
            if "LB" in read_group:
                self.rg_to_library[rg_id] = read_group["LB"]

    def has_reference(self, name: str) -> bool:
        return all(name in samfile.references for samfile in self._files)

    def _sample_of(self, file_index: int, alignment: pysam.AlignedSegment) -> Optional[str]:
        if not self._use_bam_rgs:
            return self._file_samples[file_index]
        if not alignment.has_tag("RG"):
            raise MissingReadGroupError(
                f"Failed to retrieve the RG tag of read {alignment.query_name!r}"
            )
        return self.rg_to_sample.get(alignment.get_tag("RG"))

    def fetch_locus(self, region: Region) -> LocusReads:
        """
        Collect the reads that span the repeat in region together with their
        mates, if a mate aligns within the flanking window.
        """
        if not self.has_reference(region.chromosome):
            raise ReferenceNotFoundError(region.chromosome)
        sample_index = {sample: i for i, sample in enumerate(self.samples)}
        locus = LocusReads(
            sample_names=list(self.samples),
            paired_strs=[[] for _ in self.samples],
            mate_pairs=[[] for _ in self.samples],
            unpaired_strs=[[] for _ in self.samples],
        )
        window_start = max(0, region.start - self._flank)
        window_stop = region.stop + self._flank
        for file_index, (path, samfile) in enumerate(zip(self._paths, self._files)):
            spanning: Dict[str, List[AlignmentWithSource]] = defaultdict(list)
            others: Dict[str, List[AlignmentWithSource]] = defaultdict(list)
            for bam_alignment in samfile.fetch(
                region.chromosome, window_start, window_stop, multiple_iterators=True
            ):
                if not is_alignment_usable(bam_alignment, self._min_mapq):
                    continue
                alignment = AlignmentWithSource(path, bam_alignment)
                if (
                    bam_alignment.reference_start <= region.start
                    and bam_alignment.reference_end >= region.stop
                ):
                    spanning[bam_alignment.query_name].append(alignment)
                else:
                    others[bam_alignment.query_name].append(alignment)

            for name, reads in spanning.items():
                str_read = reads[0]
                sample = self._sample_of(file_index, str_read.bam_alignment)
                if sample is None:
                    continue
                i = sample_index[sample]
                mates = reads[1:] + others.get(name, [])
                if str_read.bam_alignment.is_paired and mates:
                    locus.paired_strs[i].append(str_read)
                    locus.mate_pairs[i].append(mates[0])
                else:
                    locus.unpaired_strs[i].append(str_read)
        logger.debug("Found %d reads spanning %s", len(locus), region)
        return locus

    def close(self) -> None:
        for samfile in self._files:
            samfile.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def haplotag_phasing(
    alignments: Sequence[AlignmentWithSource], error_rate: float = 0.01
) -> Tuple[List[float], List[float]]:
    """
    Derive phasing log-likelihoods from HP tags (HP=1 or HP=2) as written by
    read-based phasing tools.

    Untagged reads get equal log-likelihoods for both haplotypes. If no read is
    tagged, two empty lists are returned, meaning that no phasing information
    is available.
    """
    if not any(a.bam_alignment.has_tag("HP") for a in alignments):
        return [], []
    log_same = math.log(1 - error_rate)
    log_other = math.log(error_rate)
    log_p1s, log_p2s = [], []
    for alignment in alignments:
        haplotype = (
            alignment.bam_alignment.get_tag("HP") if alignment.bam_alignment.has_tag("HP") else 0
        )
        if haplotype == 1:
            log_p1s.append(log_same)
            log_p2s.append(log_other)
        elif haplotype == 2:
            log_p1s.append(log_other)
            log_p2s.append(log_same)
        else:
            log_p1s.append(0.0)
            log_p2s.append(0.0)
    return log_p1s, log_p2s
