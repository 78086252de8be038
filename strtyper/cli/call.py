"""
Genotype short tandem repeats

For each repeat listed in the region file, PCR duplicates are removed, a
stutter model is learned from the reads (or read from a file) and the repeat
genotype of every sample is written to a VCF.
"""
import logging
import platform
import sys
from contextlib import ExitStack
from typing import Optional, Sequence

from xopen import xopen

from strtyper import __version__
from strtyper.args import comma_separated
from strtyper.bam import MissingReadGroupError, ReferenceNotFoundError, haplotag_phasing
from strtyper.cli import CommandLineError, log_memory_usage, open_bam_reader, open_reference
from strtyper.duplicates import LibraryNotFoundError, remove_pcr_duplicates
from strtyper.processor import (
    ABS_LL_CONVERGE,
    FRAC_LL_CONVERGE,
    MAX_EM_ITER,
    MIN_TOTAL_READS,
    GenotyperBamProcessor,
    RunStatistics,
)
from strtyper.quality import BaseQuality
from strtyper.stutter import StutterModelError, read_stutter_models
from strtyper.timer import StageTimer
from strtyper.utils import InvalidRegion, plural_s, read_regions, warn_once
from strtyper.vcf import ReferencePanel, StrVcfWriter

logger = logging.getLogger(__name__)


def run_call(
    bams: Sequence[str],
    fasta: str,
    regions: str,
    str_vcf: Optional[str] = None,
    stutter_in: Optional[str] = None,
    stutter_out: Optional[str] = None,
    haploid_chrs: Sequence[str] = (),
    seq_genotyper: bool = False,
    ref_vcf: Optional[str] = None,
    allele_vcf: Optional[str] = None,
    viz_out: Optional[str] = None,
    output_gls: bool = False,
    output_pls: bool = False,
    output_all_reads: bool = False,
    min_reads: int = MIN_TOTAL_READS,
    max_em_iter: int = MAX_EM_ITER,
    abs_ll_converge: float = ABS_LL_CONVERGE,
    frac_ll_converge: float = FRAC_LL_CONVERGE,
    bam_samples: Optional[Sequence[str]] = None,
    bam_libs: Optional[Sequence[str]] = None,
    no_rmdup: bool = False,
    use_haplotags: bool = False,
    min_mapq: int = 20,
    flank: int = 1000,
    recalc_stutter_model: bool = False,
    write_command_line_header: bool = True,
) -> RunStatistics:
    """
    Genotype all repeats in the region file and return the run statistics.
    No genotypes are computed if str_vcf is None (useful to only learn
    stutter models).
    """
    timers = StageTimer()
    logger.info(
        "This is strtyper %s running under Python %s", __version__, platform.python_version()
    )
    if write_command_line_header:
        command_line = "(strtyper {}) {}".format(__version__, " ".join(sys.argv[1:]))
    else:
        command_line = None
    stats = RunStatistics()
    base_quality = BaseQuality()
    num_regions = 0
    with ExitStack() as stack:
        reference = stack.enter_context(open_reference(fasta))
        bam_reader = stack.enter_context(
            open_bam_reader(
                bams,
                reference=fasta,
                use_bam_rgs=bam_samples is None,
                file_samples=bam_samples,
                file_libraries=bam_libs,
                min_mapq=min_mapq,
                flank=flank,
            )
        )
        samples = bam_reader.samples
        logger.info("Genotyping %d sample%s", len(samples), plural_s(len(samples)))
        contigs = [(name, len(reference[name])) for name in reference.keys()]

        stutter_models = None
        if stutter_in is not None:
            try:
                stutter_models = read_stutter_models(stutter_in)
            except (OSError, StutterModelError) as e:
                raise CommandLineError(e)

        str_writer = None
        if str_vcf is not None:
            str_writer = stack.enter_context(
                StrVcfWriter(str_vcf, samples, contigs, command_line=command_line)
            )
        allele_writer = None
        if allele_vcf is not None:
            allele_writer = stack.enter_context(
                StrVcfWriter(allele_vcf, [], contigs, command_line=command_line)
            )
        stutter_model_out = (
            stack.enter_context(xopen(stutter_out, "w")) if stutter_out is not None else None
        )
        viz_file = stack.enter_context(xopen(viz_out, "w")) if viz_out is not None else None
        reference_panel = (
            stack.enter_context(ReferencePanel(ref_vcf)) if ref_vcf is not None else None
        )

        processor = GenotyperBamProcessor(
            haploid_chroms=haploid_chrs,
            stutter_models=stutter_models,
            use_seq_aligner=seq_genotyper,
            output_str_gts=str_writer is not None,
            str_vcf=str_writer,
            samples_to_genotype=samples,
            allele_vcf=allele_writer,
            stutter_model_out=stutter_model_out,
            viz_out=viz_file,
            output_gls=output_gls,
            output_pls=output_pls,
            output_all_reads=output_all_reads,
            output_viz=viz_file is not None,
            reference_panel=reference_panel,
            recalc_stutter_model=recalc_stutter_model,
            min_total_reads=min_reads,
            max_em_iter=max_em_iter,
            abs_ll_converge=abs_ll_converge,
            frac_ll_converge=frac_ll_converge,
        )

        try:
            for region in read_regions(regions):
                if region.chromosome not in reference:
                    warn_once(
                        logger,
                        "Skipping region on chromosome %r that is not in the reference.",
                        region.chromosome,
                    )
                    continue
                num_regions += 1
                logger.info("======== Processing STR region %s (period %d)", region, region.period)

                timers.start("read_bam")
                try:
                    locus = bam_reader.fetch_locus(region)
                except ReferenceNotFoundError:
                    raise CommandLineError(
                        f"The chromosome {region.chromosome!r} was not found in the BAM/CRAM file."
                    )
                except MissingReadGroupError as e:
                    raise CommandLineError(e)
                if not no_rmdup:
                    try:
                        remove_pcr_duplicates(
                            base_quality,
                            bam_samples is None,
                            bam_reader.rg_to_library,
                            locus.paired_strs,
                            locus.mate_pairs,
                            locus.unpaired_strs,
                        )
                    except (MissingReadGroupError, LibraryNotFoundError) as e:
                        raise CommandLineError(e)
                alignments = locus.alignments()
                read_filter_time = timers.stop("read_bam")

                timers.start("phasing")
                if use_haplotags:
                    phasing = [haplotag_phasing(batch) for batch in alignments]
                    log_p1s = [p1s for p1s, _ in phasing]
                    log_p2s = [p2s for _, p2s in phasing]
                else:
                    log_p1s = [[] for _ in alignments]
                    log_p2s = [[] for _ in alignments]
                snp_phase_time = timers.stop("phasing")

                chrom_seq = reference[region.chromosome]
                ref_allele = chrom_seq[region.start : region.stop]
                try:
                    processor.analyze_reads_and_phasing(
                        alignments,
                        log_p1s,
                        log_p2s,
                        locus.sample_names,
                        region,
                        ref_allele,
                        chrom_seq,
                        stats,
                        read_filter_time=read_filter_time,
                        snp_phase_time=snp_phase_time,
                    )
                except NotImplementedError as e:
                    raise CommandLineError(e)
        except InvalidRegion as e:
            raise CommandLineError(e)

    logger.info("\n== SUMMARY ==")
    log_memory_usage()
    logger.info("Regions processed:                           %6d", num_regions)
    logger.info("Regions skipped with too few reads:          %6d", stats.num_too_few_reads)
    if stutter_models is None:
        logger.info("Stutter models converged:                    %6d", stats.num_em_converge)
        logger.info("Stutter models failed to converge:           %6d", stats.num_em_fail)
    logger.info("Loci genotyped successfully:                 %6d", stats.num_genotype_success)
    logger.info("Loci that failed genotyping:                 %6d", stats.num_genotype_fail)
    logger.info("Time spent reading BAM:                      %6.1f s", timers.elapsed("read_bam"))
    logger.info("Time spent extracting phasing:               %6.1f s", timers.elapsed("phasing"))
    logger.info("Time spent on stutter estimation:            %6.1f s", stats.total_stutter_time)
    logger.info("Time spent genotyping:                       %6.1f s", stats.total_genotype_time)
    logger.info("Total CPU time:                              %6.1f s", timers.total())
    return stats


# fmt: off
def add_arguments(parser):
    arg = parser.add_argument
    # Positional arguments
    arg('bams', nargs='+', metavar='BAM',
        help='Indexed BAM or CRAM file(s) with read alignments')
    arg('--fasta', '-f', metavar='FASTA', required=True,
        help='Indexed reference genome FASTA')
    arg('--regions', '-r', metavar='BED', required=True,
        help='Region file with columns chrom, start (0-based), stop, period and optional name')
    arg('--str-vcf', '-o', metavar='VCF', default=None,
        help='Output VCF with repeat genotypes. If omitted, no genotypes are computed.')

    arg = parser.add_argument_group('Stutter models').add_argument
    arg('--stutter-in', metavar='FILE', default=None,
        help='Read stutter models from FILE instead of learning them')
    arg('--stutter-out', metavar='FILE', default=None,
        help='Write learned stutter models to FILE')
    arg('--max-em-iter', metavar='N', type=int, default=MAX_EM_ITER,
        help='Maximum number of EM iterations when learning a stutter model (default: %(default)s)')
    arg('--abs-ll-converge', metavar='LL', type=float, default=ABS_LL_CONVERGE,
        help='EM convergence threshold on the log-likelihood gain (default: %(default)s)')
    arg('--frac-ll-converge', metavar='FRAC', type=float, default=FRAC_LL_CONVERGE,
        help='EM convergence threshold on the relative log-likelihood gain (default: %(default)s)')

    arg = parser.add_argument_group('Input selection and filtering').add_argument
    arg('--bam-samples', metavar='SAMPLES', type=comma_separated, default=None,
        help='Comma-separated sample name for each BAM. If given, read groups are ignored.')
    arg('--bam-libs', metavar='LIBS', type=comma_separated, default=None,
        help='Comma-separated library name for each BAM (used with --bam-samples; '
        'default: the sample names)')
    arg('--haploid-chrs', metavar='CHROMS', type=comma_separated, default=[],
        help='Comma-separated chromosomes to genotype as haploid')
    arg('--min-reads', metavar='N', type=int, default=MIN_TOTAL_READS,
        help='Skip repeats with fewer reads across all samples (default: %(default)s)')
    arg('--min-mapq', '--mapq', metavar='QUAL', type=int, default=20,
        help='Minimum mapping quality (default: %(default)s)')
    arg('--flank', metavar='BP', type=int, default=1000,
        help='Look for mates of repeat-spanning reads within this many bases of the repeat '
        '(default: %(default)s)')
    arg('--no-rmdup', action='store_true', default=False,
        help='Do not remove PCR duplicates')
    arg('--use-haplotags', action='store_true', default=False,
        help='Use HP tags of phased reads to weight haplotype assignments')

    arg = parser.add_argument_group('Genotyping and output').add_argument
    arg('--seq-genotyper', action='store_true', default=False,
        help='Genotype by aligning reads to candidate haplotypes instead of by read length')
    arg('--ref-vcf', metavar='VCF', default=None,
        help='Indexed VCF with reference panel alleles (used with --seq-genotyper)')
    arg('--allele-vcf', metavar='VCF', default=None,
        help='Write candidate alleles of each repeat to this sites-only VCF '
        '(used with --seq-genotyper)')
    arg('--viz-out', metavar='FILE', default=None,
        help='Write the haplotype assignment of each read to FILE (used with --seq-genotyper)')
    arg('--output-gls', action='store_true', default=False,
        help='Write genotype likelihoods (GL)')
    arg('--output-pls', action='store_true', default=False,
        help='Write phred-scaled genotype likelihoods (PL)')
    arg('--output-all-reads', action='store_true', default=False,
        help='Write the base pair difference of all reads (ALLREADS)')
    arg('--recalc-stutter-model', action='store_true', default=False,
        help='Re-estimate stutter models from haplotype alignments (not implemented)')
# fmt: on


def validate(args, parser):
    if args.stutter_in and args.stutter_out:
        parser.error("Options --stutter-in and --stutter-out cannot be used together")
    if args.bam_libs is not None and args.bam_samples is None:
        parser.error("Option --bam-libs can only be used together with --bam-samples")
    if args.bam_samples is not None and len(args.bam_samples) != len(args.bams):
        parser.error("Option --bam-samples needs exactly one sample name per BAM file")
    if args.bam_libs is not None and len(args.bam_libs) != len(args.bams):
        parser.error("Option --bam-libs needs exactly one library name per BAM file")
    for option in ("ref_vcf", "allele_vcf", "viz_out", "recalc_stutter_model"):
        if getattr(args, option) and not args.seq_genotyper:
            parser.error(
                "Option --{} can only be used together with --seq-genotyper".format(
                    option.replace("_", "-")
                )
            )
    if args.min_reads < 1:
        parser.error("Option --min-reads must be at least 1")
    if args.max_em_iter < 1:
        parser.error("Option --max-em-iter must be at least 1")
    if args.str_vcf is None and args.stutter_out is None and args.allele_vcf is None:
        parser.error(
            "Nothing to do: provide at least one of --str-vcf, --stutter-out and --allele-vcf"
        )


def main(args):
    run_call(**vars(args))
