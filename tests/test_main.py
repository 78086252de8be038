from strtyper.__main__ import main

import pytest


def test_version():
    with pytest.raises(SystemExit) as exc:
        main(["--version"])
    assert exc.value.code == 0


def test_help():
    with pytest.raises(SystemExit) as exc:
        main(["--help"])
    assert exc.value.code == 0


def test_call_help():
    with pytest.raises(SystemExit) as exc:
        main(["call", "--help"])
    assert exc.value.code == 0


def test_missing_subcommand():
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 2


@pytest.mark.parametrize(
    "options",
    [
        ["--stutter-in", "a.txt", "--stutter-out", "b.txt", "-o", "out.vcf"],
        ["--bam-libs", "lib1", "-o", "out.vcf"],
        ["--bam-samples", "s1,s2", "-o", "out.vcf"],
        ["--viz-out", "viz.txt", "-o", "out.vcf"],
        ["--recalc-stutter-model", "-o", "out.vcf"],
        ["--min-reads", "0", "-o", "out.vcf"],
        [],
    ],
)
def test_invalid_option_combinations(options):
    with pytest.raises(SystemExit) as exc:
        main(["call", "--fasta", "ref.fasta", "--regions", "regions.bed", "in.bam"] + options)
    assert exc.value.code == 2
