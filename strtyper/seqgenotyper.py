"""
Sequence-based genotyping of repeats.

Instead of summarizing reads by their length, the bases each read aligns to
the repeat window are compared to candidate haplotypes. The comparison allows
a single stutter block, that is, one contiguous run of inserted or deleted
bases whose length is scored by the stutter model.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Sequence, TextIO, Tuple

import numpy as np

from .bam import AlignmentWithSource
from .cigar import query_interval
from .genotyper import Genotyper
from .quality import BaseQuality
from .stutter import StutterModel
from .utils import Region
from .vcf import ReferencePanel

logger = logging.getLogger(__name__)

DEFAULT_BASE_QUALITY = 30


@dataclass
class WindowRead:
    """The bases of one read that align to the repeat window"""

    name: str
    sample: int
    sequence: str
    log_correct: np.ndarray
    log_mismatch: np.ndarray
    log_p1: float
    log_p2: float

    @property
    def codes(self) -> np.ndarray:
        return np.frombuffer(self.sequence.encode("ascii"), dtype=np.uint8)


@dataclass
class ReadTrace:
    """Alignment of a read to the haplotype it most likely stems from"""

    name: str
    sample: int
    allele: int
    bp_diff: int
    block_start: int


def stutter_block_alignment(read: WindowRead, haplotype: str) -> Tuple[float, int]:
    """
    Align a read to a haplotype, allowing for one block of inserted (read longer
    than haplotype) or deleted (read shorter) bases.

    Return the log-likelihood of the aligned bases and the position of the
    stutter block within the shorter sequence.
    """
    read_codes = read.codes
    hap_codes = np.frombuffer(haplotype.encode("ascii"), dtype=np.uint8)
    n, m = len(read_codes), len(hap_codes)
    overlap = min(n, m)
    left = np.where(
        read_codes[:overlap] == hap_codes[:overlap],
        read.log_correct[:overlap],
        read.log_mismatch[:overlap],
    )
    right = np.where(
        read_codes[n - overlap :] == hap_codes[m - overlap :],
        read.log_correct[n - overlap :],
        read.log_mismatch[n - overlap :],
    )
    prefix = np.concatenate([[0.0], np.cumsum(left)])
    suffix = np.concatenate([np.cumsum(right[::-1])[::-1], [0.0]])
    scores = prefix + suffix
    best = int(np.argmax(scores))
    return float(scores[best]), best


class SeqStutterGenotyper(Genotyper):
    def __init__(
        self,
        region: Region,
        haploid: bool,
        alignments: Sequence[Sequence[AlignmentWithSource]],
        log_p1s: Sequence[Sequence[float]],
        log_p2s: Sequence[Sequence[float]],
        sample_names: Sequence[str],
        chrom_seq,
        stutter_model: StutterModel,
        reference_panel: Optional[ReferencePanel] = None,
        *,
        min_allele_reads: int = 2,
        base_quality: Optional[BaseQuality] = None,
    ):
        super().__init__(region, haploid, sample_names, stutter_model)
        if not (len(alignments) == len(log_p1s) == len(log_p2s) == len(sample_names)):
            raise ValueError("Need one batch of alignments and phasing values per sample")
        self._alignments = alignments
        self._log_p1s = log_p1s
        self._log_p2s = log_p2s
        self._chrom_seq = chrom_seq
        self._reference_panel = reference_panel
        self._min_allele_reads = min_allele_reads
        self._base_quality = base_quality if base_quality is not None else BaseQuality()

        self._window_start = max(0, region.start - region.period)
        self._window_stop = region.stop + region.period
        self._left_flank = chrom_seq[self._window_start : region.start]
        self._right_flank = chrom_seq[region.stop : self._window_stop]
        self.ref_allele = chrom_seq[region.start : region.stop]

        self.reads: List[WindowRead] = []
        self.allele_seqs: List[str] = []
        self.traces: List[ReadTrace] = []
        self.num_skipped_reads = 0

    @property
    def num_alleles(self) -> int:
        return len(self.allele_seqs)

    @property
    def locus_left_aln_time(self) -> float:
        return self.timer.elapsed("left_aln")

    @property
    def locus_hap_build_time(self) -> float:
        return self.timer.elapsed("hap_build")

    @property
    def locus_hap_aln_time(self) -> float:
        return self.timer.elapsed("hap_aln")

    @property
    def locus_aln_trace_time(self) -> float:
        return self.timer.elapsed("aln_trace")

    def haplotype(self, allele: int) -> str:
        return self._left_flank + self.allele_seqs[allele] + self._right_flank

    def _anchor_reads(self) -> None:
        """
        Extract the bases of each read that align to the repeat window. The
        result does not depend on where the aligner placed indels within the
        window, so this is equivalent to left-aligning them.
        """
        self.reads = []
        self.num_skipped_reads = 0
        for s, batch in enumerate(self._alignments):
            p1s, p2s = self._log_p1s[s], self._log_p2s[s]
            for j, alignment in enumerate(batch):
                bam_alignment = alignment.bam_alignment
                interval = query_interval(
                    bam_alignment.cigartuples,
                    bam_alignment.reference_start,
                    self._window_start,
                    self._window_stop,
                )
                if interval is None or bam_alignment.query_sequence is None:
                    self.num_skipped_reads += 1
                    continue
                start, stop = interval
                qualities = bam_alignment.query_qualities
                if qualities is None:
                    qualities = [DEFAULT_BASE_QUALITY] * len(bam_alignment.query_sequence)
                qualities = list(qualities[start:stop])
                self.reads.append(
                    WindowRead(
                        name=bam_alignment.query_name,
                        sample=s,
                        sequence=bam_alignment.query_sequence[start:stop].upper(),
                        log_correct=self._base_quality.log_prob_correct(qualities),
                        log_mismatch=self._base_quality.log_prob_error(qualities) - np.log(3),
                        log_p1=p1s[j] if p1s else 0.0,
                        log_p2=p2s[j] if p2s else 0.0,
                    )
                )
        if self.num_skipped_reads:
            logger.debug(
                "%d reads do not span the repeat window of %s", self.num_skipped_reads, self.region
            )

    def _read_allele(self, read: WindowRead) -> Optional[str]:
        sequence = read.sequence
        if len(sequence) < len(self._left_flank) + len(self._right_flank):
            return None
        if not (
            sequence.startswith(self._left_flank) and sequence.endswith(self._right_flank)
        ):
            return None
        return sequence[len(self._left_flank) : len(sequence) - len(self._right_flank)]

    def _build_haplotypes(self) -> None:
        """
        Candidate alleles are the reference allele, every allele seen in at
        least min_allele_reads reads with intact flanks and the alleles of the
        reference panel.
        """
        counts = Counter(self._read_allele(read) for read in self.reads)
        candidates = {self.ref_allele: None}
        for allele, count in counts.most_common():
            if allele and count >= self._min_allele_reads:
                candidates[allele] = None
        if self._reference_panel is not None:
            for allele in self._reference_panel.alleles_at(self.region, self.ref_allele):
                candidates[allele] = None
        self.allele_seqs = list(candidates)
        logger.debug("Built %d candidate haplotypes for %s", self.num_alleles, self.region)

    def _align_reads(self) -> Tuple[np.ndarray, np.ndarray]:
        read_lls = np.empty((len(self.reads), self.num_alleles))
        block_starts = np.empty((len(self.reads), self.num_alleles), dtype=int)
        for h in range(self.num_alleles):
            haplotype = self.haplotype(h)
            for r, read in enumerate(self.reads):
                score, block_start = stutter_block_alignment(read, haplotype)
                read_lls[r, h] = score + self._stutter_model.log_stutter_pmf(
                    len(read.sequence) - len(haplotype)
                )
                block_starts[r, h] = block_start
        return read_lls, block_starts

    def _trace_alignments(self, read_lls: np.ndarray, block_starts: np.ndarray) -> None:
        """For each read, find the allele of its sample's genotype it fits best"""
        self.traces = []
        for r, read in enumerate(self.reads):
            call = self.calls[self.sample_names[read.sample]]
            if not call.is_called:
                continue
            allele = max(call.alleles, key=lambda a: read_lls[r, a])
            self.traces.append(
                ReadTrace(
                    name=read.name,
                    sample=read.sample,
                    allele=allele,
                    bp_diff=len(read.sequence) - len(self.haplotype(0)),
                    block_start=int(block_starts[r, allele]),
                )
            )

    def _prepare_haplotypes(self) -> None:
        """Anchor the reads and build the candidate haplotypes once"""
        if self.allele_seqs:
            return
        with self.timer("left_aln"):
            self._anchor_reads()
        with self.timer("hap_build"):
            self._build_haplotypes()

    def genotype(self) -> bool:
        if self._stutter_model is None:
            logger.warning("Cannot genotype %s without a stutter model", self.region)
            return False
        self._prepare_haplotypes()
        if not self.reads:
            logger.info("No reads span the repeat window of %s", self.region)
            return False
        with self.timer("hap_aln"):
            read_lls, block_starts = self._align_reads()
            explained = self.explained_reads(read_lls, [read.name for read in self.reads])
            if not explained.all():
                self.reads = [read for read, keep in zip(self.reads, explained) if keep]
                read_lls = read_lls[explained]
                block_starts = block_starts[explained]
                if not self.reads:
                    logger.info("No read at %s is explained by a candidate allele", self.region)
                    return False
            log_p1s = np.array([read.log_p1 for read in self.reads])
            log_p2s = np.array([read.log_p2 for read in self.reads])
            read_samples = np.array([read.sample for read in self.reads], dtype=int)
            read_gt_lls = self.read_genotype_lls(read_lls, log_p1s, log_p2s)
            sample_lls = self.sample_lls(read_gt_lls, read_samples)
            log_posteriors, _ = self.posteriors(sample_lls, self.log_genotype_priors(None))
        ref_length = len(self._left_flank) + len(self.ref_allele) + len(self._right_flank)
        self.calls = self.make_calls(
            log_posteriors,
            sample_lls,
            read_samples,
            [len(read.sequence) - ref_length for read in self.reads],
        )
        with self.timer("aln_trace"):
            self._trace_alignments(read_lls, block_starts)
        return True

    def write_vcf_record(
        self,
        samples_to_genotype,
        vcf_writer,
        *,
        output_gls: bool = False,
        output_pls: bool = False,
        output_all_reads: bool = False,
        output_viz: bool = False,
        viz_out: Optional[TextIO] = None,
    ) -> None:
        """
        Write the calls of the given samples. With an empty list of samples, only
        the candidate alleles are written (haplotypes are built if necessary).
        """
        self._prepare_haplotypes()
        alleles = list(self.allele_seqs)
        start = self.region.start
        if any(len(allele) == 0 for allele in alleles):
            if start == 0:
                logger.warning("Skipping %s: an allele deletes the entire repeat", self.region)
                return
            start -= 1
            alleles = [self._chrom_seq[start] + allele for allele in alleles]
        allele_bps = [len(allele) - len(self.ref_allele) for allele in self.allele_seqs]
        info = {
            "PERIOD": self.region.period,
            "START": self.region.start + 1,
            "END": self.region.stop,
            "BPDIFFS": allele_bps[1:] if len(allele_bps) > 1 else None,
        }
        info.update(self.stutter_info())
        vcf_writer.write_locus(
            chromosome=self.region.chromosome,
            start=start,
            alleles=alleles,
            allele_bps=allele_bps,
            info=info,
            calls={sample: self.calls.get(sample) for sample in samples_to_genotype},
            haploid=self.haploid,
            output_gls=output_gls,
            output_pls=output_pls,
            output_all_reads=output_all_reads,
        )
        if output_viz and viz_out is not None and samples_to_genotype:
            self.write_visualization(viz_out)

    def write_visualization(self, out: TextIO) -> None:
        """One tab-separated line per read with the haplotype it was assigned to"""
        for trace in self.traces:
            print(
                self.region.chromosome,
                self.region.start,
                self.region.stop,
                self.sample_names[trace.sample],
                trace.name,
                trace.allele,
                trace.bp_diff,
                trace.block_start,
                self.haplotype(trace.allele),
                sep="\t",
                file=out,
            )
