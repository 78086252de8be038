import sys
import resource
import logging

from strtyper.bam import (
    AlignmentFileNotIndexedError,
    EmptyAlignmentFileError,
    StrBamReader,
)
from strtyper.utils import IndexedFasta, FastaNotIndexedError

logger = logging.getLogger(__name__)


class CommandLineError(Exception):
    """An anticipated command-line error occurred. This ends up as a user-visible error message"""


def open_bam_reader(*args, **kwargs) -> StrBamReader:
    try:
        bam_reader = StrBamReader(*args, **kwargs)
    except OSError as e:
        raise CommandLineError(e)
    except ValueError as e:
        raise CommandLineError(e)
    except AlignmentFileNotIndexedError as e:
        raise CommandLineError(
            "The file '{}' is not indexed. Please create the appropriate BAM/CRAM "
            'index with "samtools index"'.format(e.args[0])
        )
    except EmptyAlignmentFileError as e:
        raise CommandLineError(
            "No reads could be retrieved from '{}'. If this is a CRAM file, possibly the "
            "reference could not be found. Try to use --fasta=... or check your "
            "$REF_PATH/$REF_CACHE settings".format(e.args[0])
        )
    return bam_reader


def open_reference(path):
    try:
        indexed_fasta = IndexedFasta(path)
    except OSError as e:
        raise CommandLineError(f"Error while opening FASTA reference file: {e}")
    except FastaNotIndexedError as e:
        raise CommandLineError(
            f"An index file (.fai) for the reference FASTA '{e.args[0]}' "
            "could not be found. Please create one with "
            "'samtools faidx'."
        )
    return indexed_fasta


def log_memory_usage(include_children=False):
    if sys.platform == "linux":
        if include_children:
            memory_kb = (
                resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
                + resource.getrusage(resource.RUSAGE_CHILDREN).ru_maxrss
            )
        else:
            memory_kb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        logger.info("Maximum memory usage: %.3f GB", memory_kb / 1e6)
