import random

import pysam
import pytest

from strtyper.__main__ import main
from strtyper.cli import CommandLineError
from strtyper.cli.call import run_call
from strtyper.stutter import read_stutter_models
from strtyper.utils import Region

from strtyper.testhelpers import bam_header, make_alignment, write_bam, write_fasta

REPEAT_START = 1000
REPEAT = "AC" * 10
READ_LENGTH = 100


def make_chromosome():
    rng = random.Random(42)
    left = "".join(rng.choice("ACGT") for _ in range(REPEAT_START))
    right = "".join(rng.choice("ACGT") for _ in range(1000))
    # avoid extending the repeat into its flanks
    return left[:-1] + "T" + REPEAT + "G" + right[1:]


CHROM = make_chromosome()


def repeat_read(header, name, start, bp_diff, rg):
    """A read with a bp_diff base pair indel at the beginning of the repeat"""
    left = REPEAT_START - start
    if bp_diff > 0:
        insert = "AC" * (bp_diff // 2)
        sequence = CHROM[start:REPEAT_START] + insert + CHROM[REPEAT_START : start + READ_LENGTH]
        cigar = f"{left}M{bp_diff}I{READ_LENGTH - left}M"
    elif bp_diff < 0:
        deleted = -bp_diff
        sequence = CHROM[start:REPEAT_START] + CHROM[REPEAT_START + deleted : start + READ_LENGTH]
        cigar = f"{left}M{deleted}D{READ_LENGTH - left - deleted}M"
    else:
        sequence = CHROM[start : start + READ_LENGTH]
        cigar = f"{READ_LENGTH}M"
    alignment = make_alignment(name, start, cigar, sequence=sequence, rg=rg, header=header)
    alignment.bam_alignment.query_qualities = pysam.qualitystring_to_array("I" * len(sequence))
    return alignment.bam_alignment


def sample_reads(header, prefix, bp_diffs, rg):
    # distinct start positions so that no read is a PCR duplicate
    return [
        repeat_read(header, f"{prefix}{i}", 930 + i, bp_diff, rg)
        for i, bp_diff in enumerate(bp_diffs)
    ]


@pytest.fixture
def dataset(tmp_path):
    fasta = write_fasta(tmp_path / "ref.fasta", {"chr1": CHROM})
    header = bam_header(
        [("chr1", len(CHROM))],
        [{"ID": "rg1", "SM": "s1", "LB": "lib1"}, {"ID": "rg2", "SM": "s2", "LB": "lib2"}],
    )
    alignments = sample_reads(header, "a", [0] * 15 + [2] * 15, "rg1")
    alignments += sample_reads(header, "b", [-2] * 30, "rg2")
    # PCR duplicates of a0 with lower base qualities
    for i in range(3):
        duplicate = repeat_read(header, f"dup{i}", 930, 0, "rg1")
        duplicate.query_qualities = pysam.qualitystring_to_array("#" * READ_LENGTH)
        alignments.append(duplicate)
    bam = write_bam(tmp_path / "reads.bam", header, alignments)
    regions = tmp_path / "regions.bed"
    regions.write_text(
        f"chr1\t{REPEAT_START}\t{REPEAT_START + len(REPEAT)}\t2\tSTR1\n"
        "chr1\t1500\t1510\t2\tEMPTY\n"
        "chrUn\t100\t110\t2\tUNKNOWN\n"
    )
    return fasta, bam, str(regions)


def read_records(path):
    with pysam.VariantFile(str(path)) as vcf:
        return list(vcf)


def genotype_bps(record, sample):
    return sorted(int(bp) for bp in record.samples[sample]["GB"].split("|"))


def test_train_and_genotype(tmp_path, dataset):
    fasta, bam, regions = dataset
    out = tmp_path / "out.vcf"
    stutter_out = tmp_path / "stutter.txt"
    stats = run_call(
        [bam],
        fasta,
        regions,
        str_vcf=str(out),
        stutter_out=str(stutter_out),
        min_reads=20,
        output_gls=True,
        output_all_reads=True,
    )
    assert stats.num_em_converge == 1
    assert stats.num_em_fail == 0
    assert stats.num_genotype_success == 1
    assert stats.num_too_few_reads == 1

    records = read_records(out)
    assert len(records) == 1
    record = records[0]
    assert record.pos == REPEAT_START + 1
    assert record.ref == REPEAT
    assert record.info["PERIOD"] == 2
    assert genotype_bps(record, "s1") == [0, 2]
    assert genotype_bps(record, "s2") == [-2, -2]
    # duplicates were removed
    assert record.samples["s1"]["DP"] == 30
    assert record.samples["s2"]["ALLREADS"] == "-2|30"

    models = read_stutter_models(stutter_out)
    assert list(models) == [Region("chr1", REPEAT_START, REPEAT_START + len(REPEAT))]


def test_genotype_with_loaded_models(tmp_path, dataset):
    fasta, bam, regions = dataset
    stutter = tmp_path / "stutter.txt"
    trained = tmp_path / "trained.vcf"
    run_call([bam], fasta, regions, str_vcf=str(trained), stutter_out=str(stutter), min_reads=20)

    loaded = tmp_path / "loaded.vcf"
    stats = run_call(
        [bam], fasta, regions, str_vcf=str(loaded), stutter_in=str(stutter), min_reads=20
    )
    assert stats.num_em_converge == stats.num_em_fail == 0
    assert stats.num_genotype_success == 1
    for a, b in zip(read_records(trained), read_records(loaded)):
        assert a.samples["s1"]["GT"] == b.samples["s1"]["GT"]
        assert a.samples["s2"]["GT"] == b.samples["s2"]["GT"]


def write_stutter_model(path):
    path.write_text(
        f"chr1\t{REPEAT_START}\t{REPEAT_START + len(REPEAT)}\t2"
        "\t0.9\t0.01\t0.01\t0.9\t0.001\t0.001\n"
    )
    return str(path)


def test_sequence_genotyper(tmp_path, dataset):
    fasta, bam, regions = dataset
    stutter = write_stutter_model(tmp_path / "stutter.txt")
    out = tmp_path / "out.vcf"
    alleles = tmp_path / "alleles.vcf"
    viz = tmp_path / "viz.txt"
    stats = run_call(
        [bam],
        fasta,
        regions,
        str_vcf=str(out),
        stutter_in=stutter,
        seq_genotyper=True,
        allele_vcf=str(alleles),
        viz_out=str(viz),
        min_reads=20,
    )
    assert stats.num_genotype_success == 1
    record = read_records(out)[0]
    assert genotype_bps(record, "s1") == [0, 2]
    assert genotype_bps(record, "s2") == [-2, -2]
    allele_records = read_records(alleles)
    assert len(allele_records) == 1
    assert set(allele_records[0].alts) == {"AC" * 9, "AC" * 11}
    assert len(viz.read_text().splitlines()) == 60


def test_haploid_chromosome(tmp_path, dataset):
    fasta, bam, regions = dataset
    out = tmp_path / "out.vcf"
    stutter = write_stutter_model(tmp_path / "stutter.txt")
    run_call(
        [bam],
        fasta,
        regions,
        str_vcf=str(out),
        stutter_in=stutter,
        min_reads=20,
        haploid_chrs=["chr1"],
    )
    record = read_records(out)[0]
    assert len(record.samples["s2"]["GT"]) == 1


def test_too_few_reads(tmp_path, dataset):
    fasta, bam, regions = dataset
    out = tmp_path / "out.vcf"
    stats = run_call([bam], fasta, regions, str_vcf=str(out), min_reads=1000)
    assert stats.num_too_few_reads == 2
    assert stats.num_em_converge == 0
    assert read_records(out) == []


def test_bam_samples(tmp_path, dataset):
    fasta, bam, regions = dataset
    out = tmp_path / "out.vcf"
    stats = run_call(
        [bam], fasta, regions, str_vcf=str(out), bam_samples=["pooled"], no_rmdup=True, min_reads=20
    )
    assert stats.num_em_converge + stats.num_em_fail == 1
    with pysam.VariantFile(str(out)) as vcf:
        assert list(vcf.header.samples) == ["pooled"]


def test_missing_library(tmp_path):
    fasta = write_fasta(tmp_path / "ref.fasta", {"chr1": CHROM})
    header = bam_header([("chr1", len(CHROM))], [{"ID": "rg1", "SM": "s1"}])
    bam = write_bam(tmp_path / "reads.bam", header, sample_reads(header, "a", [0] * 5, "rg1"))
    regions = tmp_path / "regions.bed"
    regions.write_text(f"chr1\t{REPEAT_START}\t{REPEAT_START + len(REPEAT)}\t2\n")
    with pytest.raises(CommandLineError):
        run_call([bam], fasta, str(regions), str_vcf=str(tmp_path / "out.vcf"), min_reads=1)


def test_fasta_not_indexed(tmp_path, dataset):
    _, bam, regions = dataset
    fasta = tmp_path / "plain.fasta"
    fasta.write_text(">chr1\nACGT\n")
    with pytest.raises(CommandLineError):
        run_call([bam], str(fasta), regions, str_vcf=str(tmp_path / "out.vcf"))


def test_invalid_region_file(tmp_path, dataset):
    fasta, bam, _ = dataset
    regions = tmp_path / "regions.bed"
    regions.write_text("chr1\t100\n")
    with pytest.raises(CommandLineError):
        run_call([bam], fasta, str(regions), str_vcf=str(tmp_path / "out.vcf"))


def test_command_line(tmp_path, dataset):
    fasta, bam, regions = dataset
    out = tmp_path / "out.vcf"
    main(["call", "--fasta", fasta, "--regions", regions, "--min-reads", "20", "-o", str(out), bam])
    assert len(read_records(out)) == 1


def test_command_line_error_exits(tmp_path, dataset):
    fasta, bam, regions = dataset
    with pytest.raises(SystemExit) as exc:
        main(
            [
                "call",
                "--fasta",
                fasta,
                "--regions",
                regions,
                "--stutter-in",
                str(tmp_path / "missing.txt"),
                "-o",
                str(tmp_path / "out.vcf"),
                bam,
            ]
        )
    assert exc.value.code == 1


def write_single_sample_dataset(tmp_path, alignments_for):
    fasta = write_fasta(tmp_path / "ref.fasta", {"chr1": CHROM})
    header = bam_header([("chr1", len(CHROM))], [{"ID": "rg1", "SM": "s1", "LB": "lib1"}])
    bam = write_bam(tmp_path / "reads.bam", header, alignments_for(header))
    regions = tmp_path / "regions.bed"
    regions.write_text(f"chr1\t{REPEAT_START}\t{REPEAT_START + len(REPEAT)}\t2\n")
    return fasta, bam, str(regions)


@pytest.mark.parametrize("seq_genotyper", [False, True])
def test_monomorphic_locus(tmp_path, seq_genotyper):
    fasta, bam, regions = write_single_sample_dataset(
        tmp_path, lambda header: sample_reads(header, "m", [0] * 20, "rg1")
    )
    out = tmp_path / "out.vcf"
    alleles = tmp_path / "alleles.vcf"
    if seq_genotyper:
        options = dict(
            stutter_in=write_stutter_model(tmp_path / "stutter.txt"),
            seq_genotyper=True,
            allele_vcf=str(alleles),
        )
    else:
        options = dict(stutter_out=str(tmp_path / "stutter.txt"))
    stats = run_call([bam], fasta, regions, str_vcf=str(out), min_reads=5, **options)
    assert stats.num_genotype_success == 1

    record = read_records(out)[0]
    assert record.ref == REPEAT
    assert record.alts is None
    assert "BPDIFFS" not in record.info
    assert record.samples["s1"]["GT"] == (0, 0)
    assert record.samples["s1"]["GB"] == "0|0"
    if seq_genotyper:
        allele_records = read_records(alleles)
        assert len(allele_records) == 1
        assert allele_records[0].alts is None


def test_read_without_read_group(tmp_path):
    def alignments_for(header):
        alignments = sample_reads(header, "a", [0] * 10 + [2] * 10, "rg1")
        alignments.append(repeat_read(header, "untagged", 960, 0, None))
        return alignments

    fasta, bam, regions = write_single_sample_dataset(tmp_path, alignments_for)
    with pytest.raises(CommandLineError):
        run_call([bam], fasta, regions, str_vcf=str(tmp_path / "out.vcf"), min_reads=5)
