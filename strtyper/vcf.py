"""
Write repeat genotypes to VCF and read candidate alleles from a reference panel.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pysam import VariantFile, VariantHeader

from .genotyper import GenotypeCall
from .utils import Region, warn_once

logger = logging.getLogger(__name__)

MISSING_ALT = "."
# Genotypes that are impossible under the stutter model have a GL of -inf
MAX_PL = 2**31 - 1


class VcfError(Exception):
    pass


@dataclass
class VcfHeader:
    format_or_info: str
    id: str
    number: Union[str, int]
    typ: str
    description: str

    def line(self):
        return (
            "##{format_or_info}=<ID={id},Number={number},Type={typ},"
            'Description="{description}">'.format(
                format_or_info=self.format_or_info,
                id=self.id,
                number=self.number,
                typ=self.typ,
                description=self.description,
            )
        )


PREDEFINED_FORMATS = {
    "GT": VcfHeader("FORMAT", "GT", 1, "String", "Genotype"),
    "GB": VcfHeader(
        "FORMAT", "GB", 1, "String", "Base pair differences of genotype from reference"
    ),
    "Q": VcfHeader("FORMAT", "Q", 1, "Float", "Posterior probability of unphased genotype"),
    "DP": VcfHeader("FORMAT", "DP", 1, "Integer", "Number of reads used for genotyping"),
    "GL": VcfHeader(
        "FORMAT",
        "GL",
        ".",
        "Float",
        "Genotype Likelihood, log10-scaled likelihoods of the data given the"
        " genotype for each possible genotype generated from the"
        " reference and alternate alleles given the sample ploidy",
    ),
    "PL": VcfHeader(
        "FORMAT", "PL", ".", "Integer", "Phred-scaled genotype likelihoods, normalized"
    ),
    "ALLREADS": VcfHeader(
        "FORMAT",
        "ALLREADS",
        1,
        "String",
        "Base pair difference observed in each read, given as DIFF|COUNT pairs",
    ),
}

PREDEFINED_INFOS = {
    "PERIOD": VcfHeader("INFO", "PERIOD", 1, "Integer", "Length of repeat motif"),
    "START": VcfHeader("INFO", "START", 1, "Integer", "Inclusive start coordinate of repeat"),
    "END": VcfHeader("INFO", "END", 1, "Integer", "Inclusive end coordinate of repeat"),
    "BPDIFFS": VcfHeader(
        "INFO", "BPDIFFS", "A", "Integer", "Base pair difference of each alternate allele"
    ),
    "DP": VcfHeader("INFO", "DP", 1, "Integer", "Total number of reads used for genotyping"),
    "INFRAME_PGEOM": VcfHeader(
        "INFO", "INFRAME_PGEOM", 1, "Float", "Parameter for in-frame geometric step distribution"
    ),
    "INFRAME_UP": VcfHeader(
        "INFO", "INFRAME_UP", 1, "Float", "Probability that stutter causes an in-frame increase"
    ),
    "INFRAME_DOWN": VcfHeader(
        "INFO", "INFRAME_DOWN", 1, "Float", "Probability that stutter causes an in-frame decrease"
    ),
    "OUTFRAME_PGEOM": VcfHeader(
        "INFO",
        "OUTFRAME_PGEOM",
        1,
        "Float",
        "Parameter for out-of-frame geometric step distribution",
    ),
    "OUTFRAME_UP": VcfHeader(
        "INFO",
        "OUTFRAME_UP",
        1,
        "Float",
        "Probability that stutter causes an out-of-frame increase",
    ),
    "OUTFRAME_DOWN": VcfHeader(
        "INFO",
        "OUTFRAME_DOWN",
        1,
        "Float",
        "Probability that stutter causes an out-of-frame decrease",
    ),
}


class StrVcfWriter:
    """
    Write one VCF record per genotyped repeat.

    If samples is empty, a sites-only VCF is written that lists the candidate
    alleles of each locus.
    """

    def __init__(
        self,
        out_file,
        samples: Sequence[str],
        contigs: Iterable[Union[str, Tuple[str, int]]],
        command_line: Optional[str] = None,
    ):
        header = VariantHeader()
        for contig in contigs:
            if isinstance(contig, tuple):
                header.contigs.add(contig[0], length=contig[1])
            else:
                header.contigs.add(contig)
        if command_line is not None:
            command_line = '"' + command_line.replace('"', "") + '"'
            header.add_meta("commandline", command_line)
        for info in PREDEFINED_INFOS.values():
            header.add_line(info.line())
        if samples:
            for fmt in PREDEFINED_FORMATS.values():
                header.add_line(fmt.line())
        for sample in samples:
            header.add_sample(sample)
        self.samples: List[str] = list(samples)
        self._contigs = set(header.contigs)
        self._writer = VariantFile(out_file, mode="w", header=header)

    def close(self):
        self._writer.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def write_locus(
        self,
        chromosome: str,
        start: int,
        alleles: Sequence[str],
        allele_bps: Sequence[int],
        info: Dict[str, object],
        calls: Dict[str, GenotypeCall],
        haploid: bool,
        output_gls: bool = False,
        output_pls: bool = False,
        output_all_reads: bool = False,
    ) -> None:
        """
        Write a record. alleles[0] is the reference allele; allele_bps gives the
        length difference of each allele relative to it. calls maps sample names
        to their genotype calls; samples without a call are written as missing.
        """
        if chromosome not in self._contigs:
            raise VcfError(f"Contig {chromosome!r} is missing from the VCF header")
        # pysam reserves INFO/END; it is set through the record's stop
        stop = info.get("END", start + len(alleles[0]))
        if len(alleles) == 1:
            # Monomorphic locus: pysam needs an ALT, "." is read back as no ALT
            alleles = [alleles[0], MISSING_ALT]
        record = self._writer.new_record(contig=chromosome, start=start, stop=stop, alleles=alleles)
        for key, value in info.items():
            if value is not None and key != "END":
                record.info[key] = value
        record.info["DP"] = sum(call.num_reads for call in calls.values() if call is not None)

        for sample in self.samples:
            call = calls.get(sample)
            sample_record = record.samples[sample]
            if call is None or not call.is_called:
                sample_record["GT"] = (None,) if haploid else (None, None)
                continue
            sample_record["GT"] = call.alleles
            if not haploid:
                sample_record.phased = True
            sample_record["GB"] = "|".join(str(allele_bps[a]) for a in call.alleles)
            sample_record["Q"] = round(call.posterior, 4)
            sample_record["DP"] = call.num_reads
            if output_gls:
                sample_record["GL"] = [round(gl, 2) for gl in call.log10_likelihoods]
            if output_pls:
                best = max(call.log10_likelihoods)
                sample_record["PL"] = [
                    int(round(min(MAX_PL, -10 * (gl - best)))) for gl in call.log10_likelihoods
                ]
            if output_all_reads:
                sample_record["ALLREADS"] = ";".join(
                    f"{label}|{count}" for label, count in call.read_support.items()
                )
        self._writer.write(record)


class ReferencePanel:
    """
    A VCF with known repeat alleles, used to add candidate alleles that may not
    be observed in the reads of the current samples.
    """

    def __init__(self, path: str):
        self.path = path
        self._reader = VariantFile(path)

    def alleles_at(self, region: Region, ref_allele: str) -> List[str]:
        """
        Return the alternate alleles of panel records that start at the repeat
        and agree with its reference allele.
        """
        try:
            records = self._reader.fetch(region.chromosome, region.start, region.stop)
        except ValueError:
            warn_once(
                logger,
                "Reference panel %s has no records for contig %r or is not indexed.",
                self.path,
                region.chromosome,
            )
            return []
        alleles: Dict[str, None] = dict()
        for record in records:
            if record.start != region.start or record.ref != ref_allele or not record.alts:
                continue
            for alt in record.alts:
                if not alt.startswith("<"):
                    alleles[alt] = None
        return list(alleles)

    def close(self):
        self._reader.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
