from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import jax.numpy as jnp
import numpy as np
import pandas as pd

from .errors import DataError
from .io import DatasetKind, GenotypeData

logger = logging.getLogger(__name__)


def calc_grm(genon: jnp.ndarray, p: Optional[jnp.ndarray] = None) -> jnp.ndarray:
    """VanRaden genomic relationship matrix with missing genotypes.

    Genotypes are centred as g - 2p with missing calls set to 0, and each
    pair (i, j) is scaled by 2 sum_s p_s (1 - p_s) over the loci called in
    both individuals. Pairs with no informative co-called loci are NaN.

    Args:
        genon: genotype matrix (n_ind, n_loc), float with NaN for missing.
        p: allele frequencies per locus; estimated from genon when None.
    """
    genon = jnp.asarray(genon, dtype=jnp.float32)
    if p is None:
        p = jnp.nanmean(genon, axis=0) / 2.0
    p = jnp.asarray(p, dtype=jnp.float32)

    usegeno = ~jnp.isnan(genon) & ~jnp.isnan(p)[None, :]
    u = usegeno.astype(jnp.float32)
    p0 = jnp.where(jnp.isnan(p), 0.0, p)

    # Centered genotypes, missing set to 0 for tcrossprod.
    g0 = jnp.where(usegeno, genon - 2.0 * p0[None, :], 0.0)
    N = g0 @ g0.T

    Q = 2.0 * p0 * (1.0 - p0)
    D = (u * Q[None, :]) @ u.T
    return jnp.where(D > 0, N / jnp.where(D > 0, D, 1.0), jnp.nan)


def grm(data: GenotypeData) -> pd.DataFrame:
    """Individual x individual relationship matrix labelled by sample id."""
    if not isinstance(data, GenotypeData):
        raise TypeError(f"GenotypeData required, got {type(data).__name__}")
    if data.kind is not DatasetKind.SNP:
        raise DataError("The genomic relationship matrix applies only to SNP data")
    logger.info("Calculating relationships for %d individuals over %d loci", data.n_ind, data.n_loc)
    G = np.asarray(calc_grm(jnp.asarray(data.genotypes)), dtype=np.float64)
    return pd.DataFrame(G, index=data.sample_ids, columns=data.sample_ids)


@dataclass
class PopRelatedness:
    """Population-averaged relatedness (popG)."""

    G: pd.DataFrame  # (npops, npops)
    inbreeding: pd.Series  # mean self-relatedness - 1 per population


def pop_grm(
    G: np.ndarray,
    populations: Sequence[str],
    diag: bool = False,
) -> PopRelatedness:
    """Average a relationship matrix within and between populations.

    With diag=False the within-population mean leaves out self-relatedness
    for populations of more than one individual.
    """
    G = np.asarray(G, dtype=np.float64)
    populations = np.asarray(populations).astype(str)
    if G.shape != (populations.size, populations.size):
        raise ValueError("G must be square with one row per population label")

    popnames = np.unique(populations)
    # Xpops: N x P indicator matrix.
    X = (populations[:, None] == popnames[None, :]).astype(np.float64)
    npops = X.sum(axis=0)
    W = X / npops[None, :]

    popG_mat = W.T @ G @ W
    popSelf = W.T @ np.diag(G)
    if not diag:
        for i, n_pop in enumerate(npops):
            if n_pop > 1:
                popG_mat[i, i] = (popG_mat[i, i] * n_pop - popSelf[i]) / (n_pop - 1.0)

    names = [str(p) for p in popnames]
    return PopRelatedness(
        G=pd.DataFrame(popG_mat, index=names, columns=names),
        inbreeding=pd.Series(popSelf - 1.0, index=names, name="Inb"),
    )
