from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .errors import (
    DataError,
    ParameterError,
    check_cancel,
    check_int,
    check_range,
)
from .io import DatasetKind, GenotypeData, select_loci
from .qc import filter_monomorphs

logger = logging.getLogger(__name__)

# Populations smaller than this can show fixed differences through sampling error.
MIN_POP_SIZE = 10


@dataclass
class AlleleFreqTable:
    """Alternate-allele frequency and sample size per population and locus."""

    popnames: List[str]
    freq: np.ndarray  # (npops, n_loc), NaN where nobs == 0
    nobs: np.ndarray  # (npops, n_loc), individuals with a call
    loc_names: List[str]

    def to_frame(self) -> pd.DataFrame:
        """Long table, one row per (locus, population)."""
        npops, n_loc = self.freq.shape
        return pd.DataFrame(
            {
                "locus": np.tile(np.asarray(self.loc_names, dtype=object), npops),
                "popn": np.repeat(np.asarray(self.popnames, dtype=object), n_loc),
                "nobs": self.nobs.ravel(),
                "frequency": self.freq.ravel(),
            }
        )


@dataclass
class FixedDiffResult:
    """Square population x population matrices from one fixed_diff run.

    - fd: fixed differences (diagonal 0)
    - pcfd: percent of compared loci fixed (diagonal 0)
    - nobs: mean individuals compared (diagonal NaN)
    - nloc: loci compared (diagonal NaN)
    - expfpos, sdfpos, pval: simulated false positives, only when tested
    """

    fd: pd.DataFrame
    pcfd: pd.DataFrame
    nobs: pd.DataFrame
    nloc: pd.DataFrame
    expfpos: Optional[pd.DataFrame] = None
    sdfpos: Optional[pd.DataFrame] = None
    pval: Optional[pd.DataFrame] = None
    data: Optional[GenotypeData] = None
    params: Dict[str, object] = field(default_factory=dict)

    @property
    def popnames(self) -> List[str]:
        return [str(p) for p in self.fd.index]

    @property
    def tested(self) -> bool:
        return self.pval is not None

    def matrices(self) -> Dict[str, pd.DataFrame]:
        out = {"fd": self.fd, "pcfd": self.pcfd, "nobs": self.nobs, "nloc": self.nloc}
        if self.tested:
            out.update({"expfpos": self.expfpos, "sdfpos": self.sdfpos, "pval": self.pval})
        return out


def _group_indices(labels: Sequence[str]) -> Tuple[np.ndarray, List[str]]:
    """Map population labels to integer indices 0..(k-1)."""
    labels = np.asarray(labels)
    uniq = np.unique(labels)
    mapping: Dict[str, int] = {lab: i for i, lab in enumerate(uniq)}
    idx = np.array([mapping[lab] for lab in labels], dtype=np.int32)
    return idx, [str(u) for u in uniq]


def allele_freq_table(data: GenotypeData, min_pops: int = 2) -> AlleleFreqTable:
    """Per-population allele frequencies (gl.percent.freq).

    SNP: sum(g) / (2 n); presence/absence: present / n, where n counts the
    non-missing calls of the population at the locus.
    """
    if not isinstance(data, GenotypeData):
        raise TypeError(f"GenotypeData required, got {type(data).__name__}")
    min_pops = check_int("min_pops", min_pops, 1)
    if data.n_pops < min_pops:
        raise DataError(
            f"At least {min_pops} populations required, {data.n_pops} present"
        )

    pop_idx, popnames = _group_indices(data.populations)
    genon = np.asarray(data.genotypes, dtype=np.float64)
    mask = ~np.isnan(genon)

    # Xpops: N x P indicator matrix.
    X = np.zeros((data.n_ind, len(popnames)), dtype=np.float64)
    X[np.arange(data.n_ind), pop_idx] = 1.0

    sums = X.T @ np.where(mask, genon, 0.0)
    nobs = X.T @ mask.astype(np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        freq = sums / (data.kind.ploidy * nobs)
    freq[nobs == 0] = np.nan

    return AlleleFreqTable(
        popnames=popnames,
        freq=freq,
        nobs=nobs.astype(np.int64),
        loc_names=list(data.loc_names),
    )


def is_fixed(f1, f2, tloc: float = 0.0) -> np.ndarray:
    """Frequencies on opposite sides of the tolerance band around 0 and 1.

    Vectorised; a NaN in either argument is never fixed. At tloc = 0.5 the
    band collapses onto 0.5 and any pair straddling (or touching) 0.5 counts.
    """
    f1 = np.asarray(f1, dtype=np.float64)
    f2 = np.asarray(f2, dtype=np.float64)
    hi = 1.0 - tloc
    with np.errstate(invalid="ignore"):
        fixed = ((f1 <= tloc) & (f2 >= hi)) | ((f1 >= hi) & (f2 <= tloc))
    return fixed & ~np.isnan(f1) & ~np.isnan(f2)


def _square(popnames: List[str], values: np.ndarray) -> pd.DataFrame:
    return pd.DataFrame(values, index=list(popnames), columns=list(popnames))


def _check_flag(name: str, value: object) -> bool:
    if not isinstance(value, (bool, np.bool_)):
        raise ParameterError(name, value, "True or False")
    return bool(value)


def fixed_diff(
    data: Union[GenotypeData, FixedDiffResult],
    tloc: float = 0.0,
    test: bool = False,
    delta: float = 0.02,
    alpha: float = 0.05,
    reps: int = 1000,
    mono_rm: bool = True,
    seed: Union[int, np.random.Generator, None] = None,
    estimator="bayes",
    cancel=None,
) -> FixedDiffResult:
    """Pairwise fixed differences between populations (gl.fixed.diff).

    Args:
        data: genotypes with population labels, or a previous result whose
            snapshot is reused.
        tloc: tolerance in [0, 0.5]; frequencies within tloc of 0 or 1 count
            as fixed.
        test: simulate the false-positive count and p-value for each pair.
        delta: MAF threshold of the simulation, in [0, 1].
        alpha: significance level used to report non-significant pairs.
        reps: simulation replicates per pair.
        mono_rm: remove monomorphic loci first when not already done.
        seed: int seed or numpy Generator for the simulation.
        estimator: true-frequency estimator for the simulation.
        cancel: optional threading.Event checked between pairs.
    """
    if isinstance(data, FixedDiffResult):
        logger.debug("Fixed difference result supplied, reusing its genotypes")
        data = data.data
    if not isinstance(data, GenotypeData):
        raise TypeError(f"GenotypeData or FixedDiffResult required, got {type(data).__name__}")

    tloc = check_range("tloc", tloc, 0.0, 0.5)
    test = _check_flag("test", test)
    delta = check_range("delta", delta, 0.0, 1.0)
    alpha = check_range("alpha", alpha, 0.0, 1.0)
    reps = check_int("reps", reps, 1)
    mono_rm = _check_flag("mono_rm", mono_rm)

    if data.n_pops < 2:
        raise DataError(
            "Fixed differences require at least two populations, "
            f"{data.n_pops} present"
        )

    logger.info("Processing a %s dataset", "SNP" if data.kind is DatasetKind.SNP else "presence/absence")
    if tloc > 0:
        logger.info("Comparing populations for fixed differences with tolerance %s", tloc)
    else:
        logger.info("Comparing populations for absolute fixed differences")
    if tloc == 0.5:
        logger.warning(
            "tloc = 0.5: every locus whose frequencies fall on opposite sides of 0.5 is fixed"
        )

    if data.flags.monomorphs:
        logger.debug("Monomorphic loci already removed")
    elif mono_rm:
        logger.info("Monomorphic loci flag not current, removing monomorphic loci")
        data = filter_monomorphs(data)
    else:
        logger.warning("Monomorphic loci retained, used in calculations")

    sizes = data.pop_sizes()
    logger.debug("Populations and sample sizes: %s", sizes.to_dict())
    if sizes.min() < MIN_POP_SIZE:
        logger.warning(
            "Fixed differences can arise through sampling error if sample sizes are small "
            "(N < %d, minimum in dataset = %d)",
            MIN_POP_SIZE,
            int(sizes.min()),
        )
        if not test:
            logger.warning(
                "Consider amalgamating populations or setting test=True to evaluate significance"
            )

    aft = allele_freq_table(data)
    popnames = aft.popnames
    npops = len(popnames)

    fd = np.zeros((npops, npops), dtype=np.float64)
    pcfd = np.zeros((npops, npops), dtype=np.float64)
    nobs = np.full((npops, npops), np.nan, dtype=np.float64)
    nloc = np.full((npops, npops), np.nan, dtype=np.float64)
    if test:
        from .sim import simulate_false_positives

        rng = np.random.default_rng(seed)
        expfpos = np.zeros((npops, npops), dtype=np.float64)
        sdfpos = np.zeros((npops, npops), dtype=np.float64)
        pval = np.full((npops, npops), np.nan, dtype=np.float64)

    logger.info("Comparing %d populations pairwise", npops)
    for i in range(npops - 1):
        for j in range(i + 1, npops):
            check_cancel(cancel)
            f1, f2 = aft.freq[i], aft.freq[j]
            comparable = ~np.isnan(f1) & ~np.isnan(f2)
            n_loc = int(comparable.sum())
            n_fd = int(is_fixed(f1, f2, tloc).sum())

            fd[i, j] = fd[j, i] = n_fd
            nloc[i, j] = nloc[j, i] = n_loc
            if n_loc > 0:
                pc = np.round(100.0 * n_fd / n_loc)
                mean_n = 0.5 * (aft.nobs[i, comparable].mean() + aft.nobs[j, comparable].mean())
                nobs[i, j] = nobs[j, i] = np.round(mean_n, 1)
            else:
                pc = np.nan
            pcfd[i, j] = pcfd[j, i] = pc

            if test:
                res = simulate_false_positives(
                    f1,
                    f2,
                    aft.nobs[i],
                    aft.nobs[j],
                    observed=n_fd,
                    tloc=tloc,
                    delta=delta,
                    reps=reps,
                    ploidy=data.kind.ploidy,
                    estimator=estimator,
                    rng=rng,
                    cancel=cancel,
                )
                expfpos[i, j] = expfpos[j, i] = np.round(res.expected, 1)
                sdfpos[i, j] = sdfpos[j, i] = np.round(res.sd, 4)
                pval[i, j] = pval[j, i] = np.round(res.pval, 4)
                if np.isfinite(res.pval) and res.pval > alpha:
                    logger.info(
                        "%s vs %s [p = %s, ns]", popnames[i], popnames[j], pval[i, j]
                    )
        logger.debug("Finished comparisons for %s", popnames[i])

    result = FixedDiffResult(
        fd=_square(popnames, fd.astype(np.int64)),
        pcfd=_square(popnames, pcfd),
        nobs=_square(popnames, nobs),
        nloc=_square(popnames, nloc),
        data=data,
        params={
            "tloc": tloc,
            "test": test,
            "delta": delta,
            "alpha": alpha,
            "reps": reps,
            "mono_rm": mono_rm,
            "estimator": estimator,
        },
    )
    if test:
        result.expfpos = _square(popnames, expfpos)
        result.sdfpos = _square(popnames, sdfpos)
        result.pval = _square(popnames, pval)
    return result


def private_allele_mask(f1, f2) -> np.ndarray:
    """Loci where one population lacks an allele the other carries.

    An allele is private to the first population when the second is fixed
    (frequency 0 or 1) and the first is not fixed the same way, and vice
    versa. Fixed differences are a special case. NaN is never private.
    """
    f1 = np.asarray(f1, dtype=np.float64)
    f2 = np.asarray(f2, dtype=np.float64)
    with np.errstate(invalid="ignore"):
        priv1 = ((f2 == 0.0) & (f1 != 0.0)) | ((f2 == 1.0) & (f1 != 1.0))
        priv2 = ((f1 == 0.0) & (f2 != 0.0)) | ((f1 == 1.0) & (f2 != 1.0))
    return (priv1 | priv2) & ~np.isnan(f1) & ~np.isnan(f2)


def private_alleles(
    data: GenotypeData,
    pop1: str,
    pop2: str,
    invers: bool = False,
) -> GenotypeData:
    """Keep the loci with private (or fixed) alleles between two populations (gl.filter.pa).

    With invers=True the loci without private alleles are kept instead.
    """
    if not isinstance(data, GenotypeData):
        raise TypeError(f"GenotypeData required, got {type(data).__name__}")
    if data.kind is not DatasetKind.SNP:
        raise DataError("Private alleles can only be calculated for SNP data")
    invers = _check_flag("invers", invers)
    pop1, pop2 = str(pop1), str(pop2)
    for name, pop in (("pop1", pop1), ("pop2", pop2)):
        if pop not in data.popnames:
            raise ParameterError(name, pop, f"one of {data.popnames}")
    if pop1 == pop2:
        raise ParameterError("pop2", pop2, "a population other than pop1")

    aft = allele_freq_table(data)
    f1 = aft.freq[aft.popnames.index(pop1)]
    f2 = aft.freq[aft.popnames.index(pop2)]
    index = private_allele_mask(f1, f2)
    logger.info("%d loci with private alleles between %s and %s", int(index.sum()), pop1, pop2)
    if invers:
        index = ~index
    return select_loci(data, np.where(index)[0])


def hwe_exact(het: int, hom1: int, hom2: int) -> float:
    """Exact test of Hardy-Weinberg equilibrium (Wigginton et al. 2005).

    Returns the probability of a heterozygote count at least as unlikely as
    the observed one given the allele counts; NaN when no genotypes.
    """
    het = check_int("het", het, 0)
    hom1 = check_int("hom1", hom1, 0)
    hom2 = check_int("hom2", hom2, 0)

    n = het + hom1 + hom2
    if n == 0:
        return float("nan")
    homr = min(hom1, hom2)
    homc = max(hom1, hom2)
    rare = 2 * homr + het

    probs = np.zeros(rare + 1, dtype=np.float64)
    mid = rare * (2 * n - rare) // (2 * n)
    if (rare % 2) != (mid % 2):
        mid += 1
    probs[mid] = 1.0

    curr_hets = mid
    curr_homr = (rare - mid) // 2
    curr_homc = n - curr_hets - curr_homr
    while curr_hets >= 2:
        probs[curr_hets - 2] = (
            probs[curr_hets]
            * curr_hets
            * (curr_hets - 1.0)
            / (4.0 * (curr_homr + 1.0) * (curr_homc + 1.0))
        )
        curr_hets -= 2
        curr_homr += 1
        curr_homc += 1

    curr_hets = mid
    curr_homr = (rare - mid) // 2
    curr_homc = n - curr_hets - curr_homr
    while curr_hets <= rare - 2:
        probs[curr_hets + 2] = (
            probs[curr_hets]
            * 4.0
            * curr_homr
            * curr_homc
            / ((curr_hets + 2.0) * (curr_hets + 1.0))
        )
        curr_hets += 2
        curr_homr -= 1
        curr_homc -= 1

    probs /= probs.sum()
    # Relative slack so that ties are not lost to rounding.
    p = probs[probs <= probs[het] * (1.0 + 1e-7)].sum()
    return float(min(1.0, p))


def _sig_code(p: float) -> Optional[str]:
    if not np.isfinite(p):
        return None
    if p > 0.05:
        return "ns"
    if p > 0.01:
        return "*"
    if p > 0.001:
        return "**"
    return "***"


def hwe_pops(data: GenotypeData, alpha: float = 0.05) -> pd.DataFrame:
    """Hardy-Weinberg exact test per locus within each population.

    Columns: Locus, Population, Hom_1, Het, Hom_2, N, Prob, Sig, BonSig.
    BonSig compares Prob against alpha divided by the number of loci tested
    in the population.
    """
    if not isinstance(data, GenotypeData):
        raise TypeError(f"GenotypeData required, got {type(data).__name__}")
    if data.kind is not DatasetKind.SNP:
        raise DataError("Hardy-Weinberg tests apply only to SNP data")
    alpha = check_range("alpha", alpha, 0.0, 1.0)
    if not data.flags.monomorphs:
        logger.warning("Dataset contains monomorphic loci which will be included in the HWE tests")

    genon = np.asarray(data.genotypes)
    populations = np.asarray(data.populations)
    frames = []
    for pop in data.popnames:
        g_sub = genon[populations == pop, :]
        hom1 = np.sum(g_sub == 0.0, axis=0)
        het = np.sum(g_sub == 1.0, axis=0)
        hom2 = np.sum(g_sub == 2.0, axis=0)
        total = hom1 + het + hom2
        prob = np.array(
            [hwe_exact(int(h), int(a), int(b)) for h, a, b in zip(het, hom1, hom2)],
            dtype=np.float64,
        )
        n_tested = int(np.sum(total > 0))
        boncrit = alpha / n_tested if n_tested else np.nan
        with np.errstate(invalid="ignore"):
            bonsig = np.where(np.isfinite(prob) & (prob < boncrit), "*", "ns")
        bonsig = np.where(np.isfinite(prob), bonsig, None)
        frames.append(
            pd.DataFrame(
                {
                    "Locus": data.loc_names,
                    "Population": pop,
                    "Hom_1": hom1,
                    "Het": het,
                    "Hom_2": hom2,
                    "N": total,
                    "Prob": prob,
                    "Sig": [_sig_code(p) for p in prob],
                    "BonSig": bonsig,
                }
            )
        )
        n_sig = int(np.sum(bonsig == "*"))
        logger.info(
            "%s: %d of %d loci depart from HWE after Bonferroni correction",
            pop,
            n_sig,
            n_tested,
        )
    return pd.concat(frames, ignore_index=True)
