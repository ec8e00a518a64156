from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import DataError, ParameterError
from .io import GenotypeData, select_samples, with_populations

logger = logging.getLogger(__name__)


@dataclass
class RecodeTable:
    """Mapping from existing population labels to new labels."""

    old: np.ndarray  # existing labels
    new: np.ndarray  # same length, replacement labels

    def as_dict(self) -> Dict[str, str]:
        return {str(o): str(n) for o, n in zip(self.old, self.new)}

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"old": self.old, "new": self.new})


def load_recode_table(csv_path: str) -> RecodeTable:
    """Load a population recode table from CSV with columns old, new."""
    df = pd.read_csv(csv_path, dtype=str)
    cols = {c.lower(): c for c in df.columns}
    if "old" in cols:
        old_col = cols["old"]
    elif "pop" in cols:
        old_col = cols["pop"]
    else:
        raise DataError("Recode table must have an 'old' or 'pop' column.")

    if "new" in cols:
        new_col = cols["new"]
    elif "group" in cols:
        new_col = cols["group"]
    else:
        raise DataError("Recode table must have a 'new' or 'group' column.")

    if df[new_col].isna().any():
        raise DataError("Recode table has empty replacement labels.")
    old = df[old_col].astype(str).str.strip().to_numpy()
    new = df[new_col].astype(str).str.strip().to_numpy()
    return RecodeTable(old=old, new=new)


def recode_populations(data: GenotypeData, table: RecodeTable) -> GenotypeData:
    """Relabel populations according to a recode table.

    - Labels absent from the table keep their current value.
    - Table entries for labels not present in the data are ignored with a warning.
    """
    mapping = table.as_dict()
    present = set(data.popnames)
    unknown = sorted(set(mapping) - present)
    if unknown:
        logger.warning("Recode table lists populations not in the data: %s", ", ".join(unknown))

    new_pops = np.array([mapping.get(p, p) for p in data.populations], dtype=object)
    return with_populations(data, new_pops)


def merge_populations(data: GenotypeData, old: Sequence[str], new: str) -> GenotypeData:
    """Assign every individual of the listed populations to population `new`.

    With a single old label this is a rename.
    """
    old = [str(o) for o in old]
    if not old:
        raise ParameterError("old", old, "at least one population label")
    if new is None or str(new) == "":
        raise ParameterError("new", new, "a non-empty population label")
    if len(old) == 1:
        logger.debug("Renaming %s as %s", old[0], new)
    else:
        logger.debug("Merging %s into %s", ", ".join(old), new)
    table = RecodeTable(old=np.asarray(old), new=np.asarray([str(new)] * len(old)))
    return recode_populations(data, table)


def keep_populations(data: GenotypeData, pop_list: Iterable[str]) -> GenotypeData:
    """Retain only individuals of the listed populations (gl.keep.pop)."""
    pop_list = [str(p) for p in pop_list]
    present = set(data.popnames)
    keep: List[str] = []
    for pop in pop_list:
        if pop not in present:
            logger.warning("Listed population %s not present in the dataset -- ignored", pop)
            continue
        keep.append(str(pop))
    if not keep:
        raise ParameterError("pop_list", pop_list, "at least one population present in the data")

    idx = np.where(np.isin(data.populations, keep))[0]
    logger.info("Retaining only populations %s", ", ".join(keep))
    return select_samples(data, idx)


def union_groups(labels: Sequence[str], pairs: Iterable[Tuple[str, str]]) -> List[List[str]]:
    """Connected components of labels joined by pairs (union-find).

    Each group is sorted lexicographically and groups are ordered by their
    first member, so the result does not depend on the order of `pairs`.
    """
    labels = sorted(str(lab) for lab in labels)
    parent: Dict[str, str] = {lab: lab for lab in labels}

    def find(x: str) -> str:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for a, b in pairs:
        ra, rb = find(str(a)), find(str(b))
        if ra == rb:
            continue
        # The lexicographically smallest label becomes the root.
        if rb < ra:
            ra, rb = rb, ra
        parent[rb] = ra

    groups: Dict[str, List[str]] = {}
    for lab in labels:
        groups.setdefault(find(lab), []).append(lab)
    return sorted((sorted(g) for g in groups.values()), key=lambda g: g[0])


def group_label(group: Sequence[str]) -> str:
    """Label for an amalgamated group: first member, '+' marking an aggregate."""
    return group[0] if len(group) == 1 else f"{group[0]}+"


def groups_to_recode(groups: Sequence[Sequence[str]]) -> RecodeTable:
    """Recode table sending every member of each group to the group label.

    A group label that would clash with an existing population outside the
    group gets further "+" suffixes.
    """
    taken = {member for group in groups for member in group}
    old: List[str] = []
    new: List[str] = []
    for group in groups:
        label = group_label(group)
        while len(group) > 1 and label in taken and label not in group:
            label += "+"
        taken.add(label)
        for member in group:
            old.append(member)
            new.append(label)
    return RecodeTable(old=np.asarray(old, dtype=object), new=np.asarray(new, dtype=object))
