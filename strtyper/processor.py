"""
Per-locus analysis: acquire a stutter model and genotype all samples.
"""
import logging
from dataclasses import dataclass, field, fields
from typing import Dict, FrozenSet, List, Optional, Sequence, TextIO, Tuple

from .bam import AlignmentWithSource
from .cigar import extract_offset
from .em import EMStutterGenotyper
from .genotyper import GenotypeCall, Genotyper
from .seqgenotyper import SeqStutterGenotyper
from .stutter import StutterModel
from .timer import StageTimer
from .utils import Region
from .vcf import ReferencePanel, StrVcfWriter

logger = logging.getLogger(__name__)

MIN_TOTAL_READS = 100
MAX_EM_ITER = 100
ABS_LL_CONVERGE = 0.01
FRAC_LL_CONVERGE = 0.001


@dataclass
class RunStatistics:
    """Counters and timings accumulated over all processed loci"""

    num_em_converge: int = 0
    num_em_fail: int = 0
    num_genotype_success: int = 0
    num_genotype_fail: int = 0
    num_too_few_reads: int = 0
    total_stutter_time: float = 0.0
    total_genotype_time: float = 0.0

    def merge(self, other: "RunStatistics") -> "RunStatistics":
        """Add the values of other to this object (for combining parallel runs)"""
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))
        return self


@dataclass
class LengthEvidence:
    """Base pair differences and phasing log-likelihoods of informative reads"""

    bp_diffs: List[List[int]]
    log_p1s: List[List[float]]
    log_p2s: List[List[float]]
    informative_reads: int = 0
    skipped_reads: int = 0


@dataclass
class LocusResult:
    region: Region
    skip_reason: Optional[str] = None
    stutter_model: Optional[StutterModel] = None
    trained: bool = False
    genotyper: Optional[Genotyper] = None
    genotyped: bool = False
    stutter_time: float = 0.0
    genotype_time: float = 0.0

    @property
    def calls(self) -> Dict[str, GenotypeCall]:
        if self.genotyper is None or not self.genotyped:
            return dict()
        return self.genotyper.calls


def extract_length_differences(
    alignments: Sequence[Sequence[AlignmentWithSource]],
    log_p1s: Sequence[Sequence[float]],
    log_p2s: Sequence[Sequence[float]],
    region: Region,
) -> LengthEvidence:
    """
    Determine the base pair difference of each read relative to the reference
    allele within the repeat padded by one period on each side.

    Reads that do not span the padded repeat are counted as skipped. Reads
    whose difference would delete more than the entire reference allele are
    excluded with a warning.
    """
    evidence = LengthEvidence(
        bp_diffs=[[] for _ in alignments],
        log_p1s=[[] for _ in alignments],
        log_p2s=[[] for _ in alignments],
    )
    window_start = region.start - region.period
    window_stop = region.stop + region.period
    ref_length = region.stop - region.start
    for i, batch in enumerate(alignments):
        for j, alignment in enumerate(batch):
            bam_alignment = alignment.bam_alignment
            got_size, bp_diff = extract_offset(
                bam_alignment.cigartuples, bam_alignment.reference_start, window_start, window_stop
            )
            if not got_size:
                evidence.skipped_reads += 1
                continue
            if bp_diff < -ref_length:
                logger.warning(
                    "Excluding read with bp difference greater than reference allele: %s",
                    bam_alignment.query_name,
                )
                continue
            evidence.informative_reads += 1
            evidence.bp_diffs[i].append(bp_diff)
            if len(log_p1s[i]) == 0:
                # No phasing information: both haplotypes are equally likely
                evidence.log_p1s[i].append(0.0)
                evidence.log_p2s[i].append(0.0)
            else:
                evidence.log_p1s[i].append(log_p1s[i][j])
                evidence.log_p2s[i].append(log_p2s[i][j])
    return evidence


class GenotyperBamProcessor:
    """
    Genotype repeat loci one at a time.

    The stutter model of a locus is either taken from stutter_models (if given)
    or learned from the reads with the length-based EM genotyper. Genotypes are
    then computed by the sequence-based genotyper (use_seq_aligner) or the
    length-based one.
    """

    def __init__(
        self,
        *,
        haploid_chroms: Sequence[str] = (),
        stutter_models: Optional[Dict[Region, StutterModel]] = None,
        use_seq_aligner: bool = False,
        output_str_gts: bool = True,
        str_vcf: Optional[StrVcfWriter] = None,
        samples_to_genotype: Sequence[str] = (),
        allele_vcf: Optional[StrVcfWriter] = None,
        stutter_model_out: Optional[TextIO] = None,
        viz_out: Optional[TextIO] = None,
        output_gls: bool = False,
        output_pls: bool = False,
        output_all_reads: bool = False,
        output_viz: bool = False,
        reference_panel: Optional[ReferencePanel] = None,
        recalc_stutter_model: bool = False,
        min_total_reads: int = MIN_TOTAL_READS,
        max_em_iter: int = MAX_EM_ITER,
        abs_ll_converge: float = ABS_LL_CONVERGE,
        frac_ll_converge: float = FRAC_LL_CONVERGE,
    ):
        self.haploid_chroms: FrozenSet[str] = frozenset(haploid_chroms)
        self.stutter_models = stutter_models
        self.use_seq_aligner = use_seq_aligner
        self.output_str_gts = output_str_gts
        self.str_vcf = str_vcf
        self.samples_to_genotype = list(samples_to_genotype)
        self.allele_vcf = allele_vcf
        self.stutter_model_out = stutter_model_out
        self.viz_out = viz_out
        self.output_gls = output_gls
        self.output_pls = output_pls
        self.output_all_reads = output_all_reads
        self.output_viz = output_viz
        self.reference_panel = reference_panel
        self.recalc_stutter_model = recalc_stutter_model
        self.min_total_reads = min_total_reads
        self.max_em_iter = max_em_iter
        self.abs_ll_converge = abs_ll_converge
        self.frac_ll_converge = frac_ll_converge

    @property
    def read_stutter_models(self) -> bool:
        return self.stutter_models is not None

    def _too_few_reads(self, total_reads: int, stats: RunStatistics) -> bool:
        if total_reads < self.min_total_reads:
            logger.info(
                "Skipping locus with too few reads: TOTAL=%d, MIN=%d",
                total_reads,
                self.min_total_reads,
            )
            stats.num_too_few_reads += 1
            return True
        return False

    def _acquire_stutter_model(
        self,
        region: Region,
        haploid: bool,
        evidence: LengthEvidence,
        rg_names: Sequence[str],
        stats: RunStatistics,
    ) -> Tuple[Optional[StutterModel], Optional[EMStutterGenotyper]]:
        if self.read_stutter_models:
            model = self.stutter_models.get(region)
            if model is None:
                logger.warning(
                    "No stutter model found for %s:%d-%d",
                    region.chromosome,
                    region.start,
                    region.stop,
                )
                return None, None
            return model.copy(), None

        logger.debug("Building EM stutter genotyper")
        length_genotyper = EMStutterGenotyper(
            region, haploid, evidence.bp_diffs, evidence.log_p1s, evidence.log_p2s, rg_names
        )
        logger.debug("Training EM stutter genotyper")
        trained = length_genotyper.train(
            self.max_em_iter, self.abs_ll_converge, self.frac_ll_converge
        )
        if not trained:
            stats.num_em_fail += 1
            logger.info(
                "Stutter model training failed for locus %s:%d-%d with %d informative reads",
                region.chromosome,
                region.start,
                region.stop,
                evidence.informative_reads,
            )
            return None, length_genotyper
        stats.num_em_converge += 1
        if self.stutter_model_out is not None:
            length_genotyper.get_stutter_model().write_model(region, self.stutter_model_out)
        model = length_genotyper.get_stutter_model().copy()
        logger.info("Learned stutter model: %s", model)
        return model, length_genotyper

    def _genotype_with_sequences(
        self,
        region: Region,
        haploid: bool,
        alignments,
        log_p1s,
        log_p2s,
        rg_names,
        chrom_seq,
        stutter_model: StutterModel,
        stats: RunStatistics,
    ) -> Tuple[SeqStutterGenotyper, bool]:
        seq_genotyper = SeqStutterGenotyper(
            region,
            haploid,
            alignments,
            log_p1s,
            log_p2s,
            rg_names,
            chrom_seq,
            stutter_model,
            self.reference_panel,
        )
        if self.allele_vcf is not None:
            seq_genotyper.write_vcf_record([], self.allele_vcf)

        genotyped = False
        if self.output_str_gts:
            if seq_genotyper.genotype():
                stats.num_genotype_success += 1
                genotyped = True
                if self.str_vcf is not None:
                    seq_genotyper.write_vcf_record(
                        self.samples_to_genotype,
                        self.str_vcf,
                        output_gls=self.output_gls,
                        output_pls=self.output_pls,
                        output_all_reads=self.output_all_reads,
                        output_viz=self.output_viz,
                        viz_out=self.viz_out,
                    )
                if self.recalc_stutter_model:
                    raise NotImplementedError(
                        "Recalculating stutter models from haplotype alignments is not implemented"
                    )
            else:
                stats.num_genotype_fail += 1
        return seq_genotyper, genotyped

    def _genotype_with_lengths(
        self,
        region: Region,
        haploid: bool,
        evidence: LengthEvidence,
        rg_names,
        ref_allele: str,
        chrom_seq,
        stutter_model: StutterModel,
        length_genotyper: Optional[EMStutterGenotyper],
        stats: RunStatistics,
    ) -> Tuple[EMStutterGenotyper, bool]:
        if length_genotyper is None:
            length_genotyper = EMStutterGenotyper(
                region, haploid, evidence.bp_diffs, evidence.log_p1s, evidence.log_p2s, rg_names
            )
            length_genotyper.set_stutter_model(stutter_model)

        genotyped = False
        if self.output_str_gts:
            # No population allele frequency prior
            use_pop_freqs = False
            if length_genotyper.genotype(use_pop_freqs):
                stats.num_genotype_success += 1
                genotyped = True
                if self.str_vcf is not None:
                    length_genotyper.write_vcf_record(
                        self.samples_to_genotype,
                        self.str_vcf,
                        ref_allele=ref_allele,
                        output_gls=self.output_gls,
                        output_pls=self.output_pls,
                        output_all_reads=self.output_all_reads,
                        padding_base=chrom_seq[region.start - 1] if region.start > 0 else None,
                    )
            else:
                stats.num_genotype_fail += 1
        return length_genotyper, genotyped

    def analyze_reads_and_phasing(
        self,
        alignments: Sequence[Sequence[AlignmentWithSource]],
        log_p1s: Sequence[Sequence[float]],
        log_p2s: Sequence[Sequence[float]],
        rg_names: Sequence[str],
        region: Region,
        ref_allele: str,
        chrom_seq,
        stats: RunStatistics,
        *,
        read_filter_time: float = 0.0,
        snp_phase_time: float = 0.0,
    ) -> LocusResult:
        """
        Genotype one locus. alignments, log_p1s and log_p2s hold one batch per
        sample (named in rg_names); an empty phasing batch means that no phasing
        information is available for that sample.

        Counters and timings are added to stats.
        """
        if not (len(alignments) == len(log_p1s) == len(log_p2s) == len(rg_names)):
            raise ValueError("Need one batch of alignments and phasing values per sample")
        for batch, p1s, p2s in zip(alignments, log_p1s, log_p2s):
            if len(p1s) != len(p2s) or (p1s and len(p1s) != len(batch)):
                raise ValueError("Phasing values do not match the alignments")

        result = LocusResult(region)
        total_reads = sum(len(batch) for batch in alignments)
        if self._too_few_reads(total_reads, stats):
            result.skip_reason = "too few reads"
            return result

        # Length differences are needed to train stutter models and for length-based genotyping
        if not self.read_stutter_models or not self.use_seq_aligner:
            evidence = extract_length_differences(alignments, log_p1s, log_p2s, region)
        else:
            evidence = LengthEvidence([], [], [])
        if self._too_few_reads(total_reads - evidence.skipped_reads, stats):
            result.skip_reason = "too few reads"
            return result

        haploid = region.chromosome in self.haploid_chroms
        timer = StageTimer()
        with timer("stutter"):
            stutter_model, length_genotyper = self._acquire_stutter_model(
                region, haploid, evidence, rg_names, stats
            )
        result.stutter_time = timer.elapsed("stutter")
        result.stutter_model = stutter_model
        result.trained = not self.read_stutter_models and stutter_model is not None
        stats.total_stutter_time += result.stutter_time

        try:
            if stutter_model is None:
                result.skip_reason = "no stutter model"
                return result
            with timer("genotype"):
                if self.use_seq_aligner:
                    result.genotyper, result.genotyped = self._genotype_with_sequences(
                        region,
                        haploid,
                        alignments,
                        log_p1s,
                        log_p2s,
                        rg_names,
                        chrom_seq,
                        stutter_model,
                        stats,
                    )
                else:
                    result.genotyper, result.genotyped = self._genotype_with_lengths(
                        region,
                        haploid,
                        evidence,
                        rg_names,
                        ref_allele,
                        chrom_seq,
                        stutter_model,
                        length_genotyper,
                        stats,
                    )
            result.genotype_time = timer.elapsed("genotype")
            stats.total_genotype_time += result.genotype_time
            return result
        finally:
            self._log_timing(result, read_filter_time, snp_phase_time)

    def _log_timing(
        self, result: LocusResult, read_filter_time: float, snp_phase_time: float
    ) -> None:
        lines = [
            "Locus timing:",
            f" Read filtering      = {read_filter_time:.3f} seconds",
            f" SNP info extraction = {snp_phase_time:.3f} seconds",
            f" Stutter estimation  = {result.stutter_time:.3f} seconds",
        ]
        if result.stutter_model is not None:
            lines.append(f" Genotyping          = {result.genotype_time:.3f} seconds")
            if isinstance(result.genotyper, SeqStutterGenotyper):
                genotyper = result.genotyper
                lines.extend(
                    [
                        f"\t Left alignment       = {genotyper.locus_left_aln_time:.3f} seconds",
                        f"\t Haplotype generation = {genotyper.locus_hap_build_time:.3f} seconds",
                        f"\t Haplotype alignment  = {genotyper.locus_hap_aln_time:.3f} seconds",
                        f"\t Alignment traceback  = {genotyper.locus_aln_trace_time:.3f} seconds",
                    ]
                )
        logger.info("\n".join(lines))
