from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import zarr

from .errors import DataError, ParameterError, check_int

logger = logging.getLogger(__name__)


class DatasetKind(str, Enum):
    """SNP genotypes (0/1/2) or SilicoDArT tag presence/absence (0/1)."""

    SNP = "SNP"
    PRESENCE_ABSENCE = "SilicoDArT"

    @property
    def ploidy(self) -> int:
        return 2 if self is DatasetKind.SNP else 1

    @property
    def max_call(self) -> int:
        return 2 if self is DatasetKind.SNP else 1


@dataclass(frozen=True)
class LocusMetricFlags:
    """Freshness of derived locus metrics for one GenotypeData snapshot."""

    monomorphs: bool = False  # monomorphic loci removed from this snapshot
    callrate: bool = False  # loc_metrics['CallRate'] matches the genotypes


@dataclass(frozen=True, eq=False)
class GenotypeData:
    """Immutable genotype matrix with locus and individual metadata.

    - genotypes[i, l]: float32 call for individual i at locus l, NaN if missing.
      SNP calls are 0 (hom. reference), 1 (het), 2 (hom. alternate);
      presence/absence calls are 0 (absent) and 1 (present).
    - populations[i]: population label of individual i, never null.

    New snapshots are derived with select_samples / select_loci /
    with_populations; arrays are read-only.
    """

    sample_ids: List[str]
    loc_names: List[str]
    genotypes: np.ndarray  # (n_ind, n_loc), float32
    kind: DatasetKind
    populations: np.ndarray  # (n_ind,), str
    loc_metrics: pd.DataFrame = field(default=None)  # type: ignore[assignment]
    ind_metrics: pd.DataFrame = field(default=None)  # type: ignore[assignment]
    flags: LocusMetricFlags = field(default_factory=LocusMetricFlags)

    def __post_init__(self) -> None:
        kind = DatasetKind(self.kind)
        sample_ids = [str(s) for s in self.sample_ids]
        loc_names = [str(s) for s in self.loc_names]

        genotypes = np.array(self.genotypes, dtype=np.float32)
        if genotypes.ndim != 2:
            raise DataError("genotypes must be a 2D (individuals x loci) matrix")
        n_ind, n_loc = genotypes.shape
        if len(sample_ids) != n_ind:
            raise DataError(
                f"{len(sample_ids)} sample ids for a matrix with {n_ind} individuals"
            )
        if len(loc_names) != n_loc:
            raise DataError(f"{len(loc_names)} locus names for a matrix with {n_loc} loci")
        if len(set(sample_ids)) != n_ind:
            raise DataError("sample ids must be unique")
        if len(set(loc_names)) != n_loc:
            raise DataError("locus names must be unique")

        # Uniform ploidy: every call must belong to the alphabet of the kind.
        calls = genotypes[~np.isnan(genotypes)]
        allowed = np.arange(kind.max_call + 1, dtype=np.float32)
        if calls.size and not np.all(np.isin(calls, allowed)):
            bad = np.unique(calls[~np.isin(calls, allowed)])[:5]
            raise DataError(
                f"{kind.value} data may only hold calls {allowed.astype(int).tolist()}, "
                f"found {bad.tolist()}"
            )

        if self.populations is None:
            raise DataError("population labels are required for every individual")
        pops_raw = np.asarray(self.populations, dtype=object)
        if pops_raw.shape != (n_ind,):
            raise DataError(f"expected {n_ind} population labels, got {pops_raw.shape[0]}")
        if pd.isna(pops_raw).any() or np.any(pops_raw.astype(str) == ""):
            raise DataError("population labels must not be null or empty")
        populations = pops_raw.astype(str)

        loc_metrics = self.loc_metrics
        if loc_metrics is None:
            loc_metrics = pd.DataFrame(index=pd.RangeIndex(n_loc))
        loc_metrics = loc_metrics.reset_index(drop=True)
        if loc_metrics.shape[0] != n_loc:
            raise DataError(f"loc_metrics has {loc_metrics.shape[0]} rows for {n_loc} loci")

        ind_metrics = self.ind_metrics
        if ind_metrics is None:
            ind_metrics = pd.DataFrame({"id": sample_ids})
        ind_metrics = ind_metrics.reset_index(drop=True)
        if ind_metrics.shape[0] != n_ind:
            raise DataError(
                f"ind_metrics has {ind_metrics.shape[0]} rows for {n_ind} individuals"
            )

        genotypes.setflags(write=False)
        populations.setflags(write=False)
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "sample_ids", sample_ids)
        object.__setattr__(self, "loc_names", loc_names)
        object.__setattr__(self, "genotypes", genotypes)
        object.__setattr__(self, "populations", populations)
        object.__setattr__(self, "loc_metrics", loc_metrics)
        object.__setattr__(self, "ind_metrics", ind_metrics)

    @property
    def n_ind(self) -> int:
        return int(self.genotypes.shape[0])

    @property
    def n_loc(self) -> int:
        return int(self.genotypes.shape[1])

    @property
    def popnames(self) -> List[str]:
        """Population labels in canonical (lexicographic) order."""
        return [str(p) for p in np.unique(self.populations)]

    @property
    def n_pops(self) -> int:
        return len(self.popnames)

    def pop_sizes(self) -> pd.Series:
        return pd.Series(self.populations).value_counts().sort_index()


def select_samples(data: GenotypeData, sample_indices: Sequence[int]) -> GenotypeData:
    """Return a snapshot restricted to a subset of individuals.

    Locus metrics depend on the individual set, so both freshness flags reset.
    """
    idx = np.asarray(sample_indices, dtype=int)
    return replace(
        data,
        sample_ids=[data.sample_ids[i] for i in idx],
        genotypes=data.genotypes[idx, :],
        populations=data.populations[idx],
        ind_metrics=data.ind_metrics.iloc[idx],
        flags=LocusMetricFlags(),
    )


def select_loci(data: GenotypeData, loc_indices: Sequence[int]) -> GenotypeData:
    """Return a snapshot restricted to a subset of loci (flags stay valid)."""
    idx = np.asarray(loc_indices, dtype=int)
    return replace(
        data,
        loc_names=[data.loc_names[i] for i in idx],
        genotypes=data.genotypes[:, idx],
        loc_metrics=data.loc_metrics.iloc[idx],
    )


def with_populations(data: GenotypeData, populations: Sequence[str]) -> GenotypeData:
    """Return a snapshot with new population labels."""
    return replace(data, populations=np.asarray(populations, dtype=object))


def make_unique(names: Sequence[str], what: str = "names") -> List[str]:
    """Render names unique with _1, _2 ... suffixes on repeats."""
    seen: dict = {}
    taken = set(names)
    out: List[str] = []
    duplicated = sorted(n for n, c in Counter(names).items() if c > 1)
    if duplicated:
        logger.warning(
            "%s are not unique, adding sequential suffixes to: %s",
            what.capitalize(),
            ", ".join(duplicated[:10]),
        )
    for name in names:
        if name not in seen:
            seen[name] = 0
            out.append(name)
            continue
        k = seen[name]
        while True:
            k += 1
            candidate = f"{name}_{k}"
            if candidate not in taken:
                break
        seen[name] = k
        taken.add(candidate)
        out.append(candidate)
    return out


_FORMATS = {"2row", "1row", "silicodart"}
_NUMERIC_LOC_COLS = ("SnpPosition", "CallRate", "RepAvg", "AvgPIC", "OneRatio", "PIC")
_OPTIONAL_LOC_COLS = ("AvgPIC", "TrimmedSequence", "RepAvg")


def read_dart(
    path: str | Path,
    topskip: int = 0,
    nmetavar: int = 1,
    fmt: str = "2row",
    nas: str = "-",
    ind_metafile: Optional[str | Path] = None,
) -> GenotypeData:
    """Read a DArT report (csv) into GenotypeData.

    Layout after `topskip` lines: a header row with the specimen ids, then one
    row per locus (`1row`, `silicodart`) or two allele rows per locus
    (`2row`). The first `nmetavar` columns hold locus metadata.

    Two-row calls are allele presence scores; the pair (ref row, alt row)
    maps 1/0 -> 0, 1/1 -> 1, 0/1 -> 2 and anything else to missing.
    """
    path = Path(path)
    fmt = fmt.lower()
    if fmt not in _FORMATS:
        raise ParameterError("fmt", fmt, f"one of {sorted(_FORMATS)}")
    topskip = check_int("topskip", topskip, 0)
    nmetavar = check_int("nmetavar", nmetavar, 1)

    logger.info("Reading DArT %s data from %s", fmt, path)
    raw = pd.read_csv(path, skiprows=topskip, header=None, dtype=str, keep_default_na=False)
    if raw.shape[0] < 2 or raw.shape[1] <= nmetavar:
        raise DataError(
            f"{path} must have a header row, at least one locus row and "
            f"more than nmetavar={nmetavar} columns"
        )

    header = [str(h).strip() for h in raw.iloc[0]]
    body = raw.iloc[1:].reset_index(drop=True)
    meta_cols = header[:nmetavar]
    sample_ids = make_unique(header[nmetavar:], what="specimen names")

    locus_meta = body.iloc[:, :nmetavar].copy()
    locus_meta.columns = meta_cols
    for col in _NUMERIC_LOC_COLS:
        if col in locus_meta.columns:
            locus_meta[col] = pd.to_numeric(locus_meta[col], errors="coerce")

    kind = DatasetKind.PRESENCE_ABSENCE if fmt == "silicodart" else DatasetKind.SNP
    required = ["AlleleID", "SNP", "SnpPosition"] if kind is DatasetKind.SNP else []
    for col in required:
        if col not in locus_meta.columns:
            raise DataError(f"{path} does not include key locus variable {col}")
    if kind is DatasetKind.PRESENCE_ABSENCE and not (
        "CloneID" in locus_meta.columns or "AlleleID" in locus_meta.columns
    ):
        raise DataError(f"{path} does not include key locus variable CloneID or AlleleID")
    absent = [c for c in _OPTIONAL_LOC_COLS if c not in locus_meta.columns]
    if absent:
        logger.warning("%s lacks locus variables %s", path.name, ", ".join(absent))

    calls_txt = body.iloc[:, nmetavar:].apply(lambda s: s.str.strip())
    calls_txt = calls_txt.mask(calls_txt.isin([nas, ""]))
    try:
        calls = calls_txt.apply(pd.to_numeric).to_numpy(dtype=np.float64)
    except ValueError as exc:
        raise DataError(f"Non-numeric genotype scores in {path}: {exc}") from exc

    if fmt == "2row":
        if calls.shape[0] % 2 != 0:
            raise DataError(f"{path} has an odd number of rows for 2-row format")
        observed = calls[~np.isnan(calls)]
        if observed.size and not np.all(np.isin(observed, (0.0, 1.0))):
            raise DataError(f"2-row SNP scores in {path} must be 0 or 1")
        top = calls[0::2, :]
        bottom = calls[1::2, :]
        g = np.full(top.shape, np.nan, dtype=np.float32)
        g[(top == 1) & (bottom == 0)] = 0.0
        g[(top == 1) & (bottom == 1)] = 1.0
        g[(top == 0) & (bottom == 1)] = 2.0
        locus_meta = locus_meta.iloc[1::2].reset_index(drop=True)
        clone = locus_meta["AlleleID"].astype(str).str.split("|", n=1).str[0]
        state = (
            locus_meta["SNP"]
            .fillna("")
            .astype(str)
            .str.replace(":", "-", regex=False)
            .str.replace(">", "/", regex=False)
        )
        loc_names = [c if not s else f"{c}-{s}" for c, s in zip(clone, state)]
    else:
        g = calls.astype(np.float32)
        id_col = "AlleleID" if "AlleleID" in locus_meta.columns else "CloneID"
        loc_names = locus_meta[id_col].astype(str).tolist()

    loc_names = make_unique(loc_names, what="locus names")
    genotypes = g.T  # (n_ind, n_loc)
    logger.info("Data identified for %d individuals, %d loci", genotypes.shape[0], genotypes.shape[1])

    if ind_metafile is not None:
        populations, ind_metrics = read_ind_metadata(ind_metafile, sample_ids, datafile=path)
    else:
        logger.warning("No individual metadata supplied, assigning all individuals to 'pop1'")
        populations = np.array(["pop1"] * len(sample_ids), dtype=object)
        ind_metrics = pd.DataFrame({"id": sample_ids})

    return GenotypeData(
        sample_ids=sample_ids,
        loc_names=loc_names,
        genotypes=genotypes,
        kind=kind,
        populations=populations,
        loc_metrics=locus_meta,
        ind_metrics=ind_metrics,
    )


def read_ind_metadata(
    ind_metafile: str | Path,
    sample_ids: Sequence[str],
    datafile: Optional[str | Path] = None,
) -> tuple[np.ndarray, pd.DataFrame]:
    """Read individual metadata (id, pop, lat, lon, ...) aligned to sample_ids.

    The id column must list the specimens exactly as, and in the same order
    as, the genotype file; all columns are retained verbatim.
    """
    df = pd.read_csv(ind_metafile, dtype={"id": str, "pop": str})
    if "id" not in df.columns:
        raise DataError(f"No id column present in {ind_metafile}")
    df["id"] = df["id"].astype(str).str.strip()
    if df["id"].tolist() != list(sample_ids):
        raise DataError(
            f"Ids in files {datafile} and {ind_metafile} do not match or are not "
            "in the same order"
        )
    if "pop" in df.columns:
        if df["pop"].isna().any():
            raise DataError(f"Missing population labels in {ind_metafile}")
        populations = df["pop"].astype(str).to_numpy(dtype=object)
        logger.info("Populations assigned to individuals")
    else:
        logger.warning("No pop column in %s, assigning all individuals to 'pop1'", ind_metafile)
        populations = np.array(["pop1"] * len(sample_ids), dtype=object)
    for col in ("lat", "lon"):
        if col not in df.columns:
            logger.info("No %s column present in %s", col, ind_metafile)
    return populations, df


def write_store(data: GenotypeData, store_path: str | Path) -> None:
    """Write a GenotypeData snapshot to a Zarr store.

    Layout:
      - sample_ids, loc_names, populations: 1D string arrays
      - genotypes: (n_ind, n_loc) float32, chunked along loci
      - loc_metrics/, ind_metrics/: one array per column (c0, c1, ...),
        column names in the group attrs
        (m0, m1, ... mark missing values of string columns)
      - attrs: kind, flags
    """
    store_path = Path(store_path)
    store_path.parent.mkdir(parents=True, exist_ok=True)

    g = zarr.open_group(store_path.as_posix(), mode="w")
    g.attrs["kind"] = data.kind.value
    g.attrs["flags"] = {"monomorphs": data.flags.monomorphs, "callrate": data.flags.callrate}

    for name, values in (
        ("sample_ids", data.sample_ids),
        ("loc_names", data.loc_names),
        ("populations", data.populations),
    ):
        g.create_dataset(
            name,
            data=np.asarray(values, dtype="U"),
            compressor=None,
            overwrite=True,
        )

    loc_chunk = max(1, min(data.n_loc, 1024))
    g.create_dataset(
        "genotypes",
        data=np.asarray(data.genotypes),
        chunks=(max(1, data.n_ind), loc_chunk),
        overwrite=True,
    )

    for group_name, frame in (("loc_metrics", data.loc_metrics), ("ind_metrics", data.ind_metrics)):
        sub = g.create_group(group_name, overwrite=True)
        sub.attrs["columns"] = [str(c) for c in frame.columns]
        for k, col in enumerate(frame.columns):
            values = frame[col]
            if values.dtype == object or pd.api.types.is_string_dtype(values):
                missing = values.isna().to_numpy()
                arr = values.fillna("").astype(str).to_numpy(dtype="U")
                if missing.any():
                    sub.create_dataset(f"m{k}", data=missing, overwrite=True)
            else:
                arr = values.to_numpy()
            sub.create_dataset(f"c{k}", data=arr, overwrite=True)


def _read_frame(group, n_rows: int) -> pd.DataFrame:
    columns = list(group.attrs.get("columns", []))
    data = {}
    for k, name in enumerate(columns):
        values = np.asarray(group[f"c{k}"][:])
        # String columns carry a mask of the values that were missing.
        if f"m{k}" in group:
            values = values.astype(object)
            values[np.asarray(group[f"m{k}"][:], dtype=bool)] = np.nan
        data[name] = values
    return pd.DataFrame(data, index=pd.RangeIndex(n_rows), columns=columns)


def read_store(store_path: str | Path) -> GenotypeData:
    """Read a Zarr store written by write_store into GenotypeData."""
    store_path = Path(store_path)
    g = zarr.open_group(store_path.as_posix(), mode="r")

    sample_ids = [str(s) for s in np.asarray(g["sample_ids"][:])]
    loc_names = [str(s) for s in np.asarray(g["loc_names"][:])]
    populations = np.asarray(g["populations"][:]).astype(str)
    genotypes = np.asarray(g["genotypes"][:], dtype=np.float32)
    flags = dict(g.attrs.get("flags", {}))

    return GenotypeData(
        sample_ids=sample_ids,
        loc_names=loc_names,
        genotypes=genotypes,
        kind=DatasetKind(g.attrs["kind"]),
        populations=populations,
        loc_metrics=_read_frame(g["loc_metrics"], len(loc_names)),
        ind_metrics=_read_frame(g["ind_metrics"], len(sample_ids)),
        flags=LocusMetricFlags(**flags),
    )
