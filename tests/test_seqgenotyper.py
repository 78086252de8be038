import io

import numpy as np
import pysam
import pytest
from pytest import approx

from strtyper.seqgenotyper import (
    SeqStutterGenotyper,
    WindowRead,
    stutter_block_alignment,
)
from strtyper.stutter import StutterModel
from strtyper.utils import Region
from strtyper.vcf import StrVcfWriter

from strtyper.testhelpers import make_alignment

LEFT = "TTGCAGGTCATCGATGCTAGCCTAGGATCCAGTTGACGTA"
RIGHT = "GTTCAGCTAGGCTTAACGGATCCTAGCATGCATGAACTGT"
REF_ALLELE = "AC" * 5
CHROM = LEFT + REF_ALLELE + RIGHT
REGION = Region("chr1", 40, 50, period=2)
MODEL = StutterModel(0.9, 0.01, 0.01, 0.9, 0.001, 0.001, 2)


def allele_read(name, allele):
    """A read starting 20 bp before the repeat that carries the given allele"""
    sequence = CHROM[20:40] + allele + CHROM[50:70]
    diff = len(allele) - len(REF_ALLELE)
    if diff > 0:
        cigar = f"20M{diff}I30M"
    elif diff < 0:
        cigar = f"20M{-diff}D{30 + diff}M"
    else:
        cigar = "50M"
    return make_alignment(name, 20, cigar, sequence=sequence)


def window_read(sequence, quality=30):
    log_correct = np.full(len(sequence), np.log(1 - 10 ** (-quality / 10)))
    log_mismatch = np.full(len(sequence), np.log(10 ** (-quality / 10) / 3))
    return WindowRead("r", 0, sequence, log_correct, log_mismatch, 0.0, 0.0)


def test_block_alignment_exact_match():
    read = window_read("GAACACGT")
    score, _ = stutter_block_alignment(read, "GAACACGT")
    assert score == approx(read.log_correct.sum())


def test_block_alignment_with_insertion():
    read = window_read("GAACACACGT")
    score, block_start = stutter_block_alignment(read, "GAACACGT")
    # all eight haplotype bases match
    assert score == approx(read.log_correct[:8].sum())
    assert 2 <= block_start <= 6


def test_block_alignment_mismatch_lowers_score():
    read = window_read("GAACACGT")
    exact, _ = stutter_block_alignment(read, "GAACACGT")
    mismatch, _ = stutter_block_alignment(read, "GAACTCGT")
    assert mismatch < exact


def make_genotyper(haploid=False, reference_panel=None):
    sample0 = [allele_read(f"ref{i}", REF_ALLELE) for i in range(5)]
    sample0 += [allele_read(f"ins{i}", "AC" * 6) for i in range(5)]
    sample1 = [allele_read(f"del{i}", "AC" * 4) for i in range(6)]
    alignments = [sample0, sample1]
    return SeqStutterGenotyper(
        REGION,
        haploid,
        alignments,
        [[], []],
        [[], []],
        ["s0", "s1"],
        CHROM,
        MODEL,
        reference_panel,
    )


def test_candidate_haplotypes():
    genotyper = make_genotyper()
    assert genotyper.genotype()
    assert genotyper.allele_seqs[0] == REF_ALLELE
    assert set(genotyper.allele_seqs) == {REF_ALLELE, "AC" * 4, "AC" * 6}
    assert genotyper.haplotype(0) == CHROM[38:52]


def test_genotype_calls():
    genotyper = make_genotyper()
    assert genotyper.genotype()
    calls = genotyper.calls
    het = sorted(genotyper.allele_seqs[a] for a in calls["s0"].alleles)
    assert het == sorted([REF_ALLELE, "AC" * 6])
    assert [genotyper.allele_seqs[a] for a in calls["s1"].alleles] == ["AC" * 4] * 2
    assert calls["s0"].num_reads == 10
    assert calls["s0"].read_support == {0: 5, 2: 5}
    assert calls["s1"].posterior > 0.8
    assert len(genotyper.traces) == 16
    for stage in ("left_aln", "hap_build", "hap_aln", "aln_trace"):
        assert stage in genotyper.timings


def test_haploid_genotype_calls():
    genotyper = make_genotyper(haploid=True)
    assert genotyper.genotype()
    for call in genotyper.calls.values():
        assert len(call.alleles) == 1
    assert genotyper.allele_seqs[genotyper.calls["s1"].alleles[0]] == "AC" * 4


def test_reads_not_spanning_window_are_skipped():
    short = make_alignment("short", 39, "20M", sequence=CHROM[39:59])
    genotyper = SeqStutterGenotyper(
        REGION, False, [[short]], [[]], [[]], ["s0"], CHROM, MODEL
    )
    assert not genotyper.genotype()
    assert genotyper.num_skipped_reads == 1


class StubPanel:
    def alleles_at(self, region, ref_allele):
        assert ref_allele == REF_ALLELE
        return ["AC" * 8]


def test_reference_panel_alleles_are_candidates():
    genotyper = make_genotyper(reference_panel=StubPanel())
    assert genotyper.genotype()
    assert "AC" * 8 in genotyper.allele_seqs


def test_write_vcf_record(tmp_path):
    genotyper = make_genotyper()
    assert genotyper.genotype()
    path = tmp_path / "out.vcf"
    viz = io.StringIO()
    with StrVcfWriter(str(path), ["s0", "s1"], [("chr1", len(CHROM))]) as writer:
        genotyper.write_vcf_record(
            ["s0", "s1"], writer, output_gls=True, output_all_reads=True, output_viz=True,
            viz_out=viz,
        )
    with pysam.VariantFile(str(path)) as vcf:
        records = list(vcf)
    assert len(records) == 1
    record = records[0]
    assert record.pos == 41
    assert record.ref == REF_ALLELE
    assert record.info["PERIOD"] == 2
    assert record.info["START"] == 41
    assert record.stop == 50
    s1 = record.samples["s1"]
    del_index = genotyper.allele_seqs.index("AC" * 4)
    assert s1["GT"] == (del_index, del_index)
    assert s1["GB"] == "-2|-2"
    assert s1["DP"] == 6
    assert len(s1["GL"]) == 6
    assert s1["ALLREADS"] == "-2|6"
    assert record.info["DP"] == 16
    assert len(viz.getvalue().splitlines()) == 16


def test_allele_record_without_genotyping(tmp_path):
    genotyper = make_genotyper()
    path = tmp_path / "alleles.vcf"
    with StrVcfWriter(str(path), [], ["chr1"]) as writer:
        genotyper.write_vcf_record([], writer)
    with pysam.VariantFile(str(path)) as vcf:
        records = list(vcf)
    assert len(records) == 1
    assert len(records[0].alts) == 2
    assert not list(records[0].samples)


def test_missing_stutter_model():
    genotyper = SeqStutterGenotyper(
        REGION, False, [[]], [[]], [[]], ["s0"], CHROM, MODEL
    )
    genotyper._stutter_model = None
    assert not genotyper.genotype()


@pytest.mark.parametrize("allele", ["AC" * 3, "AC" * 7])
def test_read_allele_extraction(allele):
    genotyper = SeqStutterGenotyper(
        REGION, False, [[allele_read("r", allele)]], [[]], [[]], ["s0"], CHROM, MODEL
    )
    genotyper._anchor_reads()
    assert len(genotyper.reads) == 1
    assert genotyper._read_allele(genotyper.reads[0]) == allele


def test_read_no_allele_explains_is_excluded(caplog):
    model = StutterModel(0.9, 0.02, 0.02, 0.9, 0.0, 0.0, 2)
    reads = [allele_read(f"ref{i}", REF_ALLELE) for i in range(10)]
    reads.append(allele_read("odd", REF_ALLELE + "A"))
    genotyper = SeqStutterGenotyper(REGION, False, [reads], [[]], [[]], ["s0"], CHROM, model)
    assert genotyper.genotype()
    call = genotyper.calls["s0"]
    assert call.alleles == (0, 0)
    assert call.num_reads == 10
    assert 0 < call.posterior <= 1
    assert np.isfinite(call.log10_likelihoods).all()
    assert "odd" in caplog.text
    assert len(genotyper.traces) == 10


def test_sample_without_possible_genotype_is_not_called(caplog):
    # without stutter, three alleles cannot all stem from a diploid genotype
    model = StutterModel(0.9, 0.0, 0.0, 0.9, 0.0, 0.0, 2)
    reads = [
        allele_read(f"{allele}{i}", allele)
        for allele in ("AC" * 4, REF_ALLELE, "AC" * 6)
        for i in range(2)
    ]
    genotyper = SeqStutterGenotyper(REGION, False, [reads], [[]], [[]], ["s0"], CHROM, model)
    assert genotyper.genotype()
    call = genotyper.calls["s0"]
    assert not call.is_called
    assert call.num_reads == 6
    assert genotyper.traces == []
    assert "No genotype of sample s0" in caplog.text


def test_haplotypes_are_built_once(tmp_path, monkeypatch):
    genotyper = make_genotyper()
    anchored = []
    anchor_reads = genotyper._anchor_reads

    def counting_anchor_reads():
        anchored.append(True)
        anchor_reads()

    monkeypatch.setattr(genotyper, "_anchor_reads", counting_anchor_reads)
    with StrVcfWriter(str(tmp_path / "alleles.vcf"), [], ["chr1"]) as writer:
        genotyper.write_vcf_record([], writer)
    assert genotyper.genotype()
    assert len(anchored) == 1
    assert set(genotyper.allele_seqs) == {REF_ALLELE, "AC" * 4, "AC" * 6}
