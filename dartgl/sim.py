from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .errors import ParameterError, check_cancel, check_int, check_range
from .io import DatasetKind, GenotypeData
from .popgen import is_fixed

logger = logging.getLogger(__name__)

# (observed frequency, individuals with a call, ploidy) -> assumed true frequency
TrueFreqEstimator = Callable[[np.ndarray, np.ndarray, int], np.ndarray]


def observed_frequency(freq: np.ndarray, nobs: np.ndarray, ploidy: int) -> np.ndarray:
    """Take the sample frequency as the true population frequency.

    Loci observed at 0 or 1 are never simulated under this estimator, so
    observed fixed differences are always counted as real.
    """
    return np.asarray(freq, dtype=np.float64)


def bayes_frequency(freq: np.ndarray, nobs: np.ndarray, ploidy: int) -> np.ndarray:
    """Posterior mean under a uniform prior, (k + 1) / (m + 2).

    k alternate alleles out of m = ploidy * nobs sampled alleles. A sample
    fixed at 0 or 1 is pulled inwards by an amount that shrinks with m, so a
    locus seen fixed in a handful of individuals is still simulated. This is
    the default estimator.
    """
    m = ploidy * np.asarray(nobs, dtype=np.float64)
    k = np.asarray(freq, dtype=np.float64) * m
    return (k + 1.0) / (m + 2.0)


ESTIMATORS: Dict[str, TrueFreqEstimator] = {
    "observed": observed_frequency,
    "bayes": bayes_frequency,
}


def get_estimator(estimator: Union[str, TrueFreqEstimator]) -> TrueFreqEstimator:
    if callable(estimator):
        return estimator
    if estimator not in ESTIMATORS:
        raise ParameterError("estimator", estimator, f"one of {sorted(ESTIMATORS)} or a callable")
    return ESTIMATORS[estimator]


@dataclass
class FalsePositiveSim:
    """Null distribution of fixed differences from sampling noise (gl.utils.fdsim)."""

    expected: float  # mean spurious fixed differences per replicate
    sd: float
    pval: float  # P(n_true + spurious >= observed)
    n_candidates: int  # loci simulated
    n_true: int  # loci fixed on their true frequencies
    spurious: np.ndarray  # (reps,) spurious count per replicate


def simulate_false_positives(
    freq1: np.ndarray,
    freq2: np.ndarray,
    nobs1: np.ndarray,
    nobs2: np.ndarray,
    observed: int,
    tloc: float = 0.0,
    delta: float = 0.02,
    reps: int = 1000,
    ploidy: int = 2,
    estimator: Union[str, TrueFreqEstimator] = "bayes",
    rng: Union[int, np.random.Generator, None] = None,
    cancel=None,
    chunk: int = 100,
) -> FalsePositiveSim:
    """Monte Carlo count of fixed differences expected from sampling alone.

    Loci with data in both populations are compared. Those whose estimated
    true frequency lies strictly inside (delta, 1 - delta) in at least one
    population are candidates: each replicate draws Binomial(ploidy * n, p)
    alleles at the observed per-locus sample size n of each population and
    tests the sample frequencies with is_fixed. Other loci are taken as
    settled; those fixed on their true frequencies add to every replicate.

    The default "bayes" estimator shrinks observed 0/1 frequencies towards
    0.5 by an amount set by the sample size, so small samples that look fixed
    become candidates; "observed" takes sample frequencies at face value.

    Returns NaN statistics when there is nothing to simulate and nothing
    fixed.
    """
    freq1 = np.asarray(freq1, dtype=np.float64)
    freq2 = np.asarray(freq2, dtype=np.float64)
    nobs1 = np.asarray(nobs1, dtype=np.int64)
    nobs2 = np.asarray(nobs2, dtype=np.int64)
    if not (freq1.shape == freq2.shape == nobs1.shape == nobs2.shape):
        raise ValueError("freq1, freq2, nobs1 and nobs2 must have the same shape")
    observed = check_int("observed", observed, 0)
    tloc = check_range("tloc", tloc, 0.0, 0.5)
    delta = check_range("delta", delta, 0.0, 1.0)
    reps = check_int("reps", reps, 1)
    chunk = check_int("chunk", chunk, 1)
    if ploidy not in (1, 2):
        raise ParameterError("ploidy", ploidy, "1 (presence/absence) or 2 (SNP)")
    estimate = get_estimator(estimator)
    rng = np.random.default_rng(rng)

    comparable = ~np.isnan(freq1) & ~np.isnan(freq2) & (nobs1 > 0) & (nobs2 > 0)
    n1 = nobs1[comparable]
    n2 = nobs2[comparable]
    p1 = np.clip(estimate(freq1[comparable], n1, ploidy), 0.0, 1.0)
    p2 = np.clip(estimate(freq2[comparable], n2, ploidy), 0.0, 1.0)

    inner1 = (p1 > delta) & (p1 < 1.0 - delta)
    inner2 = (p2 > delta) & (p2 < 1.0 - delta)
    candidate = inner1 | inner2
    n_candidates = int(candidate.sum())
    n_true = int(is_fixed(p1[~candidate], p2[~candidate], tloc).sum())
    logger.debug(
        "%d comparable loci: %d candidates for spurious fixation, %d fixed on true frequencies",
        int(comparable.sum()),
        n_candidates,
        n_true,
    )

    if n_candidates == 0 and n_true == 0:
        logger.debug("No loci to simulate and none fixed, false positive rate undefined")
        return FalsePositiveSim(
            expected=float("nan"),
            sd=float("nan"),
            pval=float("nan"),
            n_candidates=0,
            n_true=0,
            spurious=np.zeros(0, dtype=np.int64),
        )

    spurious = np.zeros(reps, dtype=np.int64)
    if n_candidates:
        m1 = ploidy * n1[candidate]
        m2 = ploidy * n2[candidate]
        pc1 = p1[candidate]
        pc2 = p2[candidate]
        for start in range(0, reps, chunk):
            check_cancel(cancel)
            size = min(chunk, reps - start)
            s1 = rng.binomial(m1, pc1, size=(size, n_candidates)) / m1
            s2 = rng.binomial(m2, pc2, size=(size, n_candidates)) / m2
            spurious[start : start + size] = is_fixed(s1, s2, tloc).sum(axis=1)

    sd = float(spurious.std(ddof=1)) if reps > 1 else 0.0
    return FalsePositiveSim(
        expected=float(spurious.mean()),
        sd=sd,
        pval=float(np.mean(n_true + spurious >= observed)),
        n_candidates=n_candidates,
        n_true=n_true,
        spurious=spurious,
    )


def simulate_populations(
    pop_sizes: Mapping[str, int],
    n_loc: int,
    freqs: Optional[Mapping[str, Sequence[float]]] = None,
    kind: DatasetKind = DatasetKind.SNP,
    missing: float = 0.0,
    seed: Optional[int] = None,
    maf_min: float = 0.05,
    maf_max: float = 0.5,
) -> GenotypeData:
    """Simulate genotypes for named populations.

    Populations listed in `freqs` draw from their own per-locus frequencies;
    the others share frequencies drawn from U(maf_min, maf_max). Calls are
    Binomial(ploidy, p); a proportion `missing` of calls is set to NaN.
    """
    n_loc = check_int("n_loc", n_loc, 1)
    missing = check_range("missing", missing, 0.0, 1.0)
    kind = DatasetKind(kind)
    freqs = dict(freqs or {})
    rng = np.random.default_rng(seed)

    shared = rng.uniform(maf_min, maf_max, size=n_loc)
    blocks = []
    sample_ids = []
    populations = []
    for pop, size in pop_sizes.items():
        size = check_int(f"pop_sizes[{pop}]", size, 1)
        p = np.asarray(freqs.get(pop, shared), dtype=np.float64)
        if p.shape != (n_loc,):
            raise ParameterError(f"freqs[{pop}]", p.shape, f"of length {n_loc}")
        blocks.append(rng.binomial(kind.ploidy, p[None, :], size=(size, n_loc)))
        sample_ids.extend(f"{pop}_{i+1}" for i in range(size))
        populations.extend([str(pop)] * size)

    genotypes = np.vstack(blocks).astype(np.float32)
    if missing > 0.0:
        genotypes[rng.random(genotypes.shape) < missing] = np.nan

    loc_names = [f"L{s+1}" for s in range(n_loc)]
    if kind is DatasetKind.SNP:
        loc_metrics = pd.DataFrame(
            {
                "AlleleID": loc_names,
                "SNP": [f"{s+1}:A>G" for s in range(n_loc)],
                "SnpPosition": np.full(n_loc, 1, dtype=int),
            }
        )
    else:
        loc_metrics = pd.DataFrame({"CloneID": loc_names})

    return GenotypeData(
        sample_ids=sample_ids,
        loc_names=loc_names,
        genotypes=genotypes,
        kind=kind,
        populations=np.asarray(populations, dtype=object),
        loc_metrics=loc_metrics,
        ind_metrics=pd.DataFrame({"id": sample_ids, "pop": populations}),
    )


def write_dart_csv(data: GenotypeData, path: Path, ind_metafile: Optional[Path] = None) -> None:
    """Write a one-row DArT file (SNP) or SilicoDArT file readable by read_dart.

    Locus metadata columns: AlleleID, SNP, SnpPosition for SNP data (read
    back with nmetavar=3), CloneID for presence/absence (nmetavar=1).
    Missing calls are written as '-'.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if data.kind is DatasetKind.SNP:
        lm = data.loc_metrics
        meta = {
            "AlleleID": list(data.loc_names),
            "SNP": lm["SNP"].astype(str).tolist() if "SNP" in lm else [""] * data.n_loc,
            "SnpPosition": lm["SnpPosition"].tolist() if "SnpPosition" in lm else [0] * data.n_loc,
        }
    else:
        meta = {"CloneID": list(data.loc_names)}

    with path.open("w") as fh:
        header = list(meta) + list(data.sample_ids)
        fh.write(",".join(header) + "\n")
        for s in range(data.n_loc):
            row = [str(meta[col][s]) for col in meta]
            for g in data.genotypes[:, s]:
                row.append("-" if np.isnan(g) else str(int(g)))
            fh.write(",".join(row) + "\n")

    if ind_metafile is not None:
        ind_metafile = Path(ind_metafile)
        ind_metafile.parent.mkdir(parents=True, exist_ok=True)
        frame = data.ind_metrics.copy()
        frame["id"] = data.sample_ids
        frame["pop"] = data.populations
        frame.to_csv(ind_metafile, index=False)
    logger.info("Wrote %d individuals x %d loci to %s", data.n_ind, data.n_loc, path)
