from __future__ import annotations

import logging
from dataclasses import dataclass, replace

import numpy as np
import pandas as pd

from .errors import DataError
from .io import DatasetKind, GenotypeData, select_loci

logger = logging.getLogger(__name__)


@dataclass
class MonomorphReport:
    """Breakdown of loci by variability (gl.report.monomorphs)."""

    n_loc: int
    polymorphic: int
    monomorphic: int
    all_na: int


def calcp_genotypes(genon: np.ndarray, ploidy: int = 2) -> np.ndarray:
    """Alternate-allele frequency per locus from hard calls, NaN where no calls.

    For SNPs this is sum(g) / (2 * n); for presence/absence (ploidy=1) the
    proportion of individuals scored present.
    """
    mask = ~np.isnan(genon)
    num = np.nansum(genon, axis=0, dtype=np.float64)
    den = float(ploidy) * mask.sum(axis=0, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        p = num / den
    p[~np.isfinite(p)] = np.nan
    return p


def allele_freqs(data: GenotypeData) -> pd.DataFrame:
    """Reference (alf1) and alternate (alf2) allele frequency per locus."""
    if data.kind is not DatasetKind.SNP:
        logger.warning("Allele frequencies of presence/absence data are tag frequencies")
    alf = calcp_genotypes(np.asarray(data.genotypes), ploidy=data.kind.ploidy)
    return pd.DataFrame({"alf1": 1.0 - alf, "alf2": alf}, index=data.loc_names)


def callrate_loc(data: GenotypeData) -> np.ndarray:
    """Proportion of individuals with a non-missing call at each locus."""
    if data.n_ind == 0:
        return np.full(data.n_loc, np.nan)
    return 1.0 - np.isnan(data.genotypes).sum(axis=0) / float(data.n_ind)


def callrate_ind(data: GenotypeData) -> pd.Series:
    """Proportion of loci with a non-missing call for each individual."""
    if data.n_loc == 0:
        rate = np.full(data.n_ind, np.nan)
    else:
        rate = 1.0 - np.isnan(data.genotypes).sum(axis=1) / float(data.n_loc)
    return pd.Series(rate, index=data.sample_ids, name="CallRate")


def recalc_callrate(data: GenotypeData) -> GenotypeData:
    """Return a snapshot with loc_metrics['CallRate'] recomputed and flagged fresh."""
    if "CallRate" not in data.loc_metrics.columns:
        logger.info("Locus metric CallRate does not exist, creating it")
    loc_metrics = data.loc_metrics.copy()
    loc_metrics["CallRate"] = callrate_loc(data)
    logger.debug("Recalculated CallRate for %d loci", data.n_loc)
    return replace(
        data,
        loc_metrics=loc_metrics,
        flags=replace(data.flags, callrate=True),
    )


def monomorphic_mask(data: GenotypeData) -> tuple[np.ndarray, np.ndarray]:
    """Flag monomorphic loci and loci with no calls.

    A locus is monomorphic when all of its non-missing calls are identical
    (all 0, all 1 or all 2). Returns (monomorphic, all_na) boolean arrays.
    """
    g = np.asarray(data.genotypes)
    all_na = np.all(np.isnan(g), axis=0)
    if g.shape[0] == 0:
        return np.zeros(g.shape[1], dtype=bool), all_na
    with np.errstate(invalid="ignore"):
        gmin = np.where(all_na, np.nan, np.nanmin(np.where(all_na[None, :], 0.0, g), axis=0))
        gmax = np.where(all_na, np.nan, np.nanmax(np.where(all_na[None, :], 0.0, g), axis=0))
    mono = (~all_na) & (gmin == gmax)
    return mono, all_na


def report_monomorphs(data: GenotypeData) -> MonomorphReport:
    mono, all_na = monomorphic_mask(data)
    report = MonomorphReport(
        n_loc=data.n_loc,
        polymorphic=int(data.n_loc - mono.sum() - all_na.sum()),
        monomorphic=int(mono.sum()),
        all_na=int(all_na.sum()),
    )
    logger.debug(
        "Breakdown of %d loci: %d polymorphic, %d monomorphic, %d all NA",
        report.n_loc,
        report.polymorphic,
        report.monomorphic,
        report.all_na,
    )
    return report


def filter_monomorphs(data: GenotypeData) -> GenotypeData:
    """Delete monomorphic loci, including those with all calls missing."""
    mono, all_na = monomorphic_mask(data)
    keep = ~(mono | all_na)
    if not keep.all():
        logger.info(
            "Deleting %d monomorphic loci and %d loci with no scores",
            int(mono.sum()),
            int(all_na.sum()),
        )
    out = select_loci(data, np.where(keep)[0])
    return replace(out, flags=replace(out.flags, monomorphs=True))


def duplicate_mask(data: GenotypeData) -> np.ndarray:
    """Flag SNPs that repeat a clone already represented (gl.report.dups).

    The clone is the part of AlleleID before the first '|'. Within a clone
    the SNP with the highest RepAvg, then AvgPIC, is kept.
    """
    lm = data.loc_metrics
    if "AlleleID" not in lm.columns:
        raise DataError("Locus metric AlleleID is required to identify duplicate clones")
    order = pd.DataFrame(
        {
            "clone": lm["AlleleID"].astype(str).str.split("|").str[0],
            "RepAvg": -lm["RepAvg"] if "RepAvg" in lm.columns else 0.0,
            "AvgPIC": -lm["AvgPIC"] if "AvgPIC" in lm.columns else 0.0,
        }
    ).sort_values(["clone", "RepAvg", "AvgPIC"], kind="mergesort")
    dup = np.zeros(data.n_loc, dtype=bool)
    dup[order.index[order["clone"].duplicated().to_numpy()]] = True
    return dup


def filter_dups(data: GenotypeData) -> GenotypeData:
    """Keep one SNP per clone (gl.filter.dups), preserving locus order."""
    dup = duplicate_mask(data)
    logger.info("%d duplicate SNPs removed, %d loci remain", int(dup.sum()), int((~dup).sum()))
    return select_loci(data, np.where(~dup)[0])
