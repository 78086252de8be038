"""
Common interface and posterior computation shared by the repeat genotypers.
"""
import math
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.special import logsumexp

from .stutter import StutterModel
from .timer import StageTimer
from .utils import Region

logger = logging.getLogger(__name__)

LOG_ONE_HALF = math.log(0.5)


@dataclass
class GenotypeCall:
    """
    Genotype of one sample. alleles holds one allele index for haploid loci and
    two (in haplotype order) for diploid loci. It is empty if the sample has no
    reads at the locus.
    """

    sample: str
    alleles: Tuple[int, ...]
    posterior: float
    num_reads: int
    log10_likelihoods: List[float] = field(default_factory=list)
    read_support: Dict[int, int] = field(default_factory=dict)

    @property
    def is_called(self) -> bool:
        return len(self.alleles) > 0


class Genotyper(ABC):
    """
    A genotyper computes the most likely genotype of each sample at one repeat
    locus, given a stutter model and the reads of all samples.
    """

    def __init__(
        self,
        region: Region,
        haploid: bool,
        sample_names: Sequence[str],
        stutter_model: Optional[StutterModel] = None,
    ):
        self.region = region
        self.haploid = haploid
        self.sample_names = list(sample_names)
        self._stutter_model = stutter_model.copy() if stutter_model is not None else None
        self.timer = StageTimer()
        self.calls: Dict[str, GenotypeCall] = dict()

    @property
    @abstractmethod
    def num_alleles(self) -> int:
        pass

    @abstractmethod
    def genotype(self, *args, **kwargs) -> bool:
        """Compute the calls of all samples. Return whether this succeeded."""

    @abstractmethod
    def write_vcf_record(self, samples_to_genotype, vcf_writer, **kwargs) -> None:
        pass

    def get_stutter_model(self) -> Optional[StutterModel]:
        return self._stutter_model

    def set_stutter_model(self, model: StutterModel) -> None:
        self._stutter_model = model.copy()

    @property
    def timings(self) -> Dict[str, float]:
        """CPU seconds spent in each stage of the last genotyping run"""
        return dict(self.timer._elapsed)

    def genotype_indices(self) -> np.ndarray:
        """Array with one row (allele_1, allele_2) per genotype"""
        n = self.num_alleles
        if self.haploid:
            return np.column_stack([np.arange(n), np.arange(n)])
        first, second = np.meshgrid(np.arange(n), np.arange(n), indexing="ij")
        return np.column_stack([first.ravel(), second.ravel()])

    def read_genotype_lls(
        self, read_lls: np.ndarray, log_p1s: np.ndarray, log_p2s: np.ndarray
    ) -> np.ndarray:
        """
        Given the log-likelihood of each read under each allele (reads x
        alleles), return the log-likelihood of each read under each genotype.
        """
        genotypes = self.genotype_indices()
        lls_1 = read_lls[:, genotypes[:, 0]]
        if self.haploid:
            return lls_1
        lls_2 = read_lls[:, genotypes[:, 1]]
        return np.logaddexp(
            LOG_ONE_HALF + log_p1s[:, None] + lls_1, LOG_ONE_HALF + log_p2s[:, None] + lls_2
        )

    def explained_reads(self, read_lls: np.ndarray, read_names: Sequence[str]) -> np.ndarray:
        """
        Return a mask of the reads that have a nonzero likelihood under at
        least one allele. The other reads are logged as excluded.
        """
        explained = np.isfinite(read_lls).any(axis=1)
        for r in np.flatnonzero(~explained):
            logger.warning(
                "Excluding read %s that no candidate allele of %s explains",
                read_names[r],
                self.region,
            )
        return explained

    def log_genotype_priors(self, log_allele_freqs: Optional[np.ndarray]) -> np.ndarray:
        genotypes = self.genotype_indices()
        if log_allele_freqs is None:
            return np.full(len(genotypes), -math.log(len(genotypes)))
        if self.haploid:
            return log_allele_freqs[genotypes[:, 0]]
        return log_allele_freqs[genotypes[:, 0]] + log_allele_freqs[genotypes[:, 1]]

    def sample_lls(self, read_gt_lls: np.ndarray, read_samples: np.ndarray) -> np.ndarray:
        """Sum read log-likelihoods per sample (samples x genotypes)"""
        lls = np.zeros((len(self.sample_names), read_gt_lls.shape[1]))
        np.add.at(lls, read_samples, read_gt_lls)
        return lls

    @staticmethod
    def posteriors(
        sample_lls: np.ndarray, log_priors: np.ndarray
    ) -> Tuple[np.ndarray, float]:
        """
        Return the log-posterior of each genotype for each sample together with
        the total log-likelihood of the data. Samples for which every genotype
        is impossible get a log-posterior of -inf everywhere and do not count
        towards the total.
        """
        joint = sample_lls + log_priors[None, :]
        sample_totals = logsumexp(joint, axis=1, keepdims=True)
        impossible = np.isneginf(sample_totals)
        log_posteriors = joint - np.where(impossible, 0.0, sample_totals)
        return log_posteriors, float(sample_totals[~impossible].sum())

    def _unordered_genotypes(self) -> List[Tuple[int, ...]]:
        """Genotypes in the order used for VCF likelihood fields"""
        if self.haploid:
            return [(i,) for i in range(self.num_alleles)]
        return [(j, k) for k in range(self.num_alleles) for j in range(k + 1)]

    def make_calls(
        self,
        log_posteriors: np.ndarray,
        sample_lls: np.ndarray,
        read_samples: np.ndarray,
        read_labels: Sequence[int],
    ) -> Dict[str, GenotypeCall]:
        """
        Pick the maximum a posteriori genotype of each sample. read_labels holds
        one value per read that is tallied in the read_support of its sample.
        """
        genotypes = self.genotype_indices()
        n = self.num_alleles
        calls = dict()
        for s, sample in enumerate(self.sample_names):
            in_sample = read_samples == s
            num_reads = int(in_sample.sum())
            if num_reads == 0:
                calls[sample] = GenotypeCall(sample, (), 0.0, 0)
                continue
            if not np.isfinite(log_posteriors[s]).any():
                logger.warning(
                    "No genotype of sample %s explains all of its reads at %s", sample, self.region
                )
                calls[sample] = GenotypeCall(sample, (), 0.0, num_reads)
                continue
            best = int(np.argmax(log_posteriors[s]))
            alleles = (int(genotypes[best, 0]),)
            posterior = math.exp(log_posteriors[s, best])
            if not self.haploid:
                j, k = int(genotypes[best, 0]), int(genotypes[best, 1])
                alleles += (k,)
                if j != k:
                    # Q refers to the unphased genotype
                    posterior += math.exp(log_posteriors[s, k * n + j])
            log10_gls = []
            for gt in self._unordered_genotypes():
                if self.haploid:
                    ll = sample_lls[s, gt[0]]
                else:
                    j, k = gt
                    ll = max(sample_lls[s, j * n + k], sample_lls[s, k * n + j])
                log10_gls.append(float(ll / math.log(10)))
            support = Counter(read_labels[r] for r in np.flatnonzero(in_sample))
            calls[sample] = GenotypeCall(
                sample=sample,
                alleles=alleles,
                posterior=min(1.0, float(posterior)),
                num_reads=num_reads,
                log10_likelihoods=log10_gls,
                read_support=dict(sorted(support.items())),
            )
        return calls

    def stutter_info(self) -> Dict[str, float]:
        model = self._stutter_model
        return {
            "INFRAME_PGEOM": model.in_geom,
            "INFRAME_UP": model.in_up,
            "INFRAME_DOWN": model.in_down,
            "OUTFRAME_PGEOM": model.out_geom,
            "OUTFRAME_UP": model.out_up,
            "OUTFRAME_DOWN": model.out_down,
        }
