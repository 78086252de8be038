"""
Utility functions only used by unit tests
"""
import pysam

from strtyper.bam import AlignmentWithSource


def make_alignment(
    name,
    start,
    cigar,
    sequence=None,
    qualities=None,
    rg=None,
    hp=None,
    source="test.bam",
    paired=False,
    mapq=60,
    header=None,
):
    """
    Create an alignment on reference 0. If no sequence is given, a poly-A
    sequence of the length implied by the CIGAR is used. qualities is a
    phred+33 string.
    """
    alignment = pysam.AlignedSegment(header) if header is not None else pysam.AlignedSegment()
    alignment.query_name = name
    alignment.reference_id = 0
    alignment.reference_start = start
    alignment.cigarstring = cigar
    if sequence is None:
        sequence = "A" * alignment.infer_query_length()
    alignment.query_sequence = sequence
    if qualities is not None:
        alignment.query_qualities = pysam.qualitystring_to_array(qualities)
    alignment.mapping_quality = mapq
    alignment.is_paired = paired
    if rg is not None:
        alignment.set_tag("RG", rg)
    if hp is not None:
        alignment.set_tag("HP", hp)
    return AlignmentWithSource(source, alignment)


def repeat_reads(start, ref_length, bp_diffs, period=1, name="read", flank=20, **kwargs):
    """
    One alignment per entry of bp_diffs that spans the repeat at
    [start, start + ref_length) with the given length difference, placed in
    the middle of the repeat.
    """
    reads = []
    for i, bp_diff in enumerate(bp_diffs):
        left = flank + ref_length // 2
        right = flank + ref_length - ref_length // 2
        if bp_diff > 0:
            cigar = f"{left}M{bp_diff}I{right}M"
        elif bp_diff < 0:
            cigar = f"{left}M{-bp_diff}D{right + bp_diff}M"
        else:
            cigar = f"{left + right}M"
        reads.append(make_alignment(f"{name}{i}", start - flank, cigar, **kwargs))
    return reads


def bam_header(contigs, read_groups=()):
    """contigs is a list of (name, length) pairs, read_groups a list of dicts"""
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": name, "LN": length} for name, length in contigs],
    }
    if read_groups:
        header["RG"] = list(read_groups)
    return pysam.AlignmentHeader.from_dict(header)


def write_bam(path, header, alignments, index=True):
    """Write alignments (AlignedSegment objects) sorted by position"""
    path = str(path)
    with pysam.AlignmentFile(path, "wb", header=header) as f:
        for alignment in sorted(alignments, key=lambda a: a.reference_start):
            f.write(alignment)
    if index:
        pysam.index(path)
    return path


def write_fasta(path, sequences):
    """Write and index a FASTA file with the given {name: sequence} records"""
    path = str(path)
    with open(path, "w") as f:
        for name, sequence in sequences.items():
            print(f">{name}", file=f)
            for i in range(0, len(sequence), 60):
                print(sequence[i : i + 60], file=f)
    pysam.faidx(path)
    return path
