"""
Length-based genotyping of repeats.

Each read is summarized by the number of base pairs by which it differs from
the reference allele. An expectation-maximization algorithm jointly estimates
the stutter model, the allele frequencies and the genotype posteriors of all
samples.
"""
import math
import logging
from typing import List, Optional, Sequence

import numpy as np

from .genotyper import Genotyper, LOG_ONE_HALF
from .stutter import StutterModel
from .utils import Region

logger = logging.getLogger(__name__)

MIN_STUTTER_FREQ = 1e-5
MIN_GEOM = 0.01
MAX_GEOM = 0.999
ALLELE_PSEUDOCOUNT = 1e-3


def initial_stutter_model(motif_len: int) -> StutterModel:
    return StutterModel(0.9, 0.05, 0.05, 0.9, 0.01, 0.01, motif_len)


class EMStutterGenotyper(Genotyper):
    def __init__(
        self,
        region: Region,
        haploid: bool,
        bp_diffs: Sequence[Sequence[int]],
        log_p1s: Sequence[Sequence[float]],
        log_p2s: Sequence[Sequence[float]],
        sample_names: Sequence[str],
    ):
        """
        bp_diffs -- one list per sample with the base pair difference of each
            read relative to the reference allele
        log_p1s, log_p2s -- phasing log-likelihoods of each read, same shape
            as bp_diffs
        """
        super().__init__(region, haploid, sample_names)
        if not (len(bp_diffs) == len(log_p1s) == len(log_p2s) == len(sample_names)):
            raise ValueError("Need one list of reads and phasing values per sample")
        read_bps: List[int] = []
        read_samples: List[int] = []
        for s, (bps, p1s, p2s) in enumerate(zip(bp_diffs, log_p1s, log_p2s)):
            if not (len(bps) == len(p1s) == len(p2s)):
                raise ValueError(f"Phasing values do not match reads of sample {sample_names[s]!r}")
            read_bps.extend(bps)
            read_samples.extend([s] * len(bps))
        self._read_bps = np.array(read_bps, dtype=int)
        self._read_samples = np.array(read_samples, dtype=int)
        self._log_p1s = np.array([p for p1s in log_p1s for p in p1s], dtype=float)
        self._log_p2s = np.array([p for p2s in log_p2s for p in p2s], dtype=float)
        # The reference allele comes first, followed by all other observed sizes
        self.allele_bps = np.array([0] + sorted(set(read_bps) - {0}), dtype=int)
        allele_index = {int(bp): i for i, bp in enumerate(self.allele_bps)}

        # Initialize allele frequencies with the fraction of reads of each size
        counts = np.full(len(self.allele_bps), ALLELE_PSEUDOCOUNT)
        np.add.at(counts, [allele_index[bp] for bp in read_bps], 1)
        self._log_allele_freqs = np.log(counts / counts.sum())

    @property
    def num_alleles(self) -> int:
        return len(self.allele_bps)

    @property
    def num_reads(self) -> int:
        return len(self._read_bps)

    def _read_lls(self) -> np.ndarray:
        diffs = self._read_bps[:, None] - self.allele_bps[None, :]
        return self._stutter_model.log_stutter_pmfs(diffs)

    def _expectation(self, read_lls: np.ndarray, log_allele_freqs: Optional[np.ndarray]):
        read_gt_lls = self.read_genotype_lls(read_lls, self._log_p1s, self._log_p2s)
        sample_lls = self.sample_lls(read_gt_lls, self._read_samples)
        log_posteriors, total_ll = self.posteriors(
            sample_lls, self.log_genotype_priors(log_allele_freqs)
        )
        return log_posteriors, read_gt_lls, sample_lls, total_ll

    def _read_allele_weights(
        self, log_posteriors: np.ndarray, read_lls: np.ndarray, read_gt_lls: np.ndarray
    ) -> np.ndarray:
        """
        Expected number of times each read stems from each allele (reads x alleles)
        """
        genotypes = self.genotype_indices()
        read_posteriors = np.exp(log_posteriors[self._read_samples])
        first = np.eye(self.num_alleles)[genotypes[:, 0]]
        if self.haploid:
            return read_posteriors @ first
        second = np.eye(self.num_alleles)[genotypes[:, 1]]
        phase_one = np.exp(
            LOG_ONE_HALF + self._log_p1s[:, None] + read_lls[:, genotypes[:, 0]] - read_gt_lls
        )
        phase_one = np.clip(np.nan_to_num(phase_one), 0, 1)
        return (read_posteriors * phase_one) @ first + (read_posteriors * (1 - phase_one)) @ second

    def _maximization(self, log_posteriors, read_lls, read_gt_lls) -> None:
        genotypes = self.genotype_indices()
        sample_posteriors = np.exp(log_posteriors)

        # Allele frequencies
        counts = np.full(self.num_alleles, ALLELE_PSEUDOCOUNT)
        np.add.at(counts, genotypes[:, 0], sample_posteriors.sum(axis=0))
        if not self.haploid:
            np.add.at(counts, genotypes[:, 1], sample_posteriors.sum(axis=0))
        self._log_allele_freqs = np.log(counts / counts.sum())

        # Stutter model
        weights = self._read_allele_weights(log_posteriors, read_lls, read_gt_lls)
        model = self._stutter_model
        motif_len = model.motif_len
        diffs = self._read_bps[:, None] - self.allele_bps[None, :]
        in_frame = (diffs % motif_len == 0) & (diffs != 0)
        out_frame = diffs % motif_len != 0
        in_steps = np.abs(diffs) // motif_len
        out_steps = np.abs(diffs - np.trunc(diffs / motif_len).astype(int))
        total = weights.sum()

        in_up = weights[in_frame & (diffs > 0)].sum()
        in_down = weights[in_frame & (diffs < 0)].sum()
        out_up = weights[out_frame & (diffs > 0)].sum()
        out_down = weights[out_frame & (diffs < 0)].sum()
        in_step_sum = (weights * in_steps)[in_frame].sum()
        out_step_sum = (weights * out_steps)[out_frame].sum()

        in_geom = (in_up + in_down) / in_step_sum if in_step_sum > 0 else model.in_geom
        out_geom = (out_up + out_down) / out_step_sum if out_step_sum > 0 else model.out_geom

        def frequency(count):
            return max(MIN_STUTTER_FREQ, count / total)

        self._stutter_model = StutterModel(
            in_geom=min(MAX_GEOM, max(MIN_GEOM, in_geom)),
            in_down=frequency(in_down),
            in_up=frequency(in_up),
            out_geom=min(MAX_GEOM, max(MIN_GEOM, out_geom)),
            out_down=frequency(out_down),
            out_up=frequency(out_up),
            motif_len=motif_len,
        )

    def train(self, max_iter: int, abs_ll_converge: float, frac_ll_converge: float) -> bool:
        """
        Estimate the stutter model. Return whether the EM algorithm converged
        within max_iter iterations; if not, no stutter model is available
        afterwards.
        """
        if self.num_reads == 0:
            logger.debug("No reads to train a stutter model on")
            self._stutter_model = None
            return False
        self._stutter_model = initial_stutter_model(self.region.period)
        previous_ll = -math.inf
        for iteration in range(1, max_iter + 1):
            read_lls = self._read_lls()
            log_posteriors, read_gt_lls, _, total_ll = self._expectation(
                read_lls, self._log_allele_freqs
            )
            abs_change = total_ll - previous_ll
            frac_change = -abs_change / total_ll if total_ll != 0 else 0.0
            logger.debug("EM iteration %d: log-likelihood %.4f", iteration, total_ll)
            if abs_change < abs_ll_converge and frac_change < frac_ll_converge:
                logger.debug("EM converged after %d iterations", iteration)
                return True
            self._maximization(log_posteriors, read_lls, read_gt_lls)
            previous_ll = total_ll
        self._stutter_model = None
        return False

    def genotype(self, use_pop_freqs: bool) -> bool:
        """
        Call genotypes with the current stutter model. With use_pop_freqs, the
        allele frequencies estimated during training serve as genotype priors,
        otherwise all genotypes are equally likely a priori.
        """
        if self._stutter_model is None:
            logger.warning("Cannot genotype %s without a stutter model", self.region)
            return False
        if self.num_reads == 0:
            return False
        read_lls = self._read_lls()
        log_posteriors, _, sample_lls, _ = self._expectation(
            read_lls, self._log_allele_freqs if use_pop_freqs else None
        )
        self.calls = self.make_calls(
            log_posteriors, sample_lls, self._read_samples, self._read_bps.tolist()
        )
        return True

    def allele_sequences(self, ref_allele: str) -> List[str]:
        """
        Sequences of the alleles, derived from the reference allele: deletions
        remove bases from its end, insertions append copies of its first motif.
        """
        period = self.region.period
        motif = ref_allele[:period] if len(ref_allele) >= period else "N" * period
        sequences = []
        for bp in self.allele_bps:
            if bp < 0:
                sequences.append(ref_allele[: len(ref_allele) + bp])
            else:
                extra = motif * (bp // period + 1)
                sequences.append(ref_allele + extra[:bp])
        return sequences

    def write_vcf_record(
        self,
        samples_to_genotype,
        vcf_writer,
        *,
        ref_allele: str,
        output_gls: bool = False,
        output_pls: bool = False,
        output_all_reads: bool = False,
        padding_base: Optional[str] = None,
    ) -> None:
        """
        Write the calls of the given samples. padding_base is the reference
        base preceding the repeat; it is prepended to all alleles if an allele
        would otherwise be empty.
        """
        alleles = self.allele_sequences(ref_allele)
        start = self.region.start
        if any(len(a) == 0 for a in alleles):
            if padding_base is None:
                logger.warning("Skipping %s: an allele deletes the entire repeat", self.region)
                return
            alleles = [padding_base + a for a in alleles]
            start -= 1
        info = {
            "PERIOD": self.region.period,
            "START": self.region.start + 1,
            "END": self.region.stop,
            "BPDIFFS": [int(bp) for bp in self.allele_bps[1:]] if self.num_alleles > 1 else None,
        }
        info.update(self.stutter_info())
        vcf_writer.write_locus(
            chromosome=self.region.chromosome,
            start=start,
            alleles=alleles,
            allele_bps=[int(bp) for bp in self.allele_bps],
            info=info,
            calls={sample: self.calls.get(sample) for sample in samples_to_genotype},
            haploid=self.haploid,
            output_gls=output_gls,
            output_pls=output_pls,
            output_all_reads=output_all_reads,
        )
