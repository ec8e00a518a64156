from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np

from .errors import check_int, check_range
from .io import GenotypeData
from .merge import RecodeTable, groups_to_recode, recode_populations, union_groups
from .popgen import FixedDiffResult, fixed_diff

logger = logging.getLogger(__name__)


class CollapseState(str, Enum):
    INITIAL = "initial"
    COMPARING = "comparing"
    MERGING = "merging"
    CONVERGED = "converged"


class CollapseOutcome(str, Enum):
    """How a collapse run ended."""

    CONVERGED = "converged"  # a pass produced no merge
    SINGLE_POPULATION = "single_population"  # everything amalgamated into one group
    ITERATION_CAP = "iteration_cap"  # max_iter merging rounds used up


@dataclass
class CollapseStep:
    """One fixed difference matrix in a collapse run and the merge it implied."""

    iteration: int
    populations: List[str]
    result: FixedDiffResult
    groups: List[List[str]]
    nonsignificant: List[Tuple[str, str]] = field(default_factory=list)
    recode: Optional[RecodeTable] = None  # set when the merge was applied

    @property
    def merged(self) -> bool:
        return any(len(g) > 1 for g in self.groups)


@dataclass
class CollapseResult:
    data: GenotypeData
    history: List[CollapseStep]
    outcome: CollapseOutcome
    rounds: int  # merging rounds performed

    @property
    def final(self) -> Optional[FixedDiffResult]:
        """Fixed difference matrix of the final partition.

        None when everything amalgamated into one population; the last
        entry of `history` then holds the matrix before that merge.
        """
        if self.outcome is CollapseOutcome.SINGLE_POPULATION:
            return None
        return self.history[-1].result


def mergeable_pairs(result: FixedDiffResult, tpop: int = 0) -> List[Tuple[str, str]]:
    """Population pairs with at most `tpop` fixed differences."""
    tpop = check_int("tpop", tpop, 0)
    names = result.popnames
    fd = result.fd.to_numpy()
    return [
        (names[i], names[j])
        for i in range(len(names) - 1)
        for j in range(i + 1, len(names))
        if fd[i, j] <= tpop
    ]


def nonsignificant_pairs(
    result: FixedDiffResult,
    tpop: int = 0,
    alpha: float = 0.05,
) -> List[Tuple[str, str]]:
    """Pairs kept apart by more than `tpop` fixed differences that are not significant.

    Only a tested result has p-values; pairs are reported, never merged.
    """
    tpop = check_int("tpop", tpop, 0)
    alpha = check_range("alpha", alpha, 0.0, 1.0)
    if not result.tested:
        return []
    names = result.popnames
    fd = result.fd.to_numpy()
    pval = result.pval.to_numpy()
    pairs: List[Tuple[str, str]] = []
    for i in range(len(names) - 1):
        for j in range(i + 1, len(names)):
            if fd[i, j] > tpop and np.isfinite(pval[i, j]) and pval[i, j] > alpha:
                pairs.append((names[i], names[j]))
    return pairs


def mergeable_groups(result: FixedDiffResult, tpop: int = 0) -> List[List[str]]:
    """Transitive closure of mergeable pairs, one sorted list per group."""
    return union_groups(result.popnames, mergeable_pairs(result, tpop=tpop))


def collapse_once(
    result: FixedDiffResult,
    tpop: int = 0,
    seed: Union[int, np.random.Generator, None] = None,
    cancel=None,
) -> Tuple[GenotypeData, RecodeTable, Optional[FixedDiffResult]]:
    """Single amalgamation pass (gl.collapse).

    Merges the mergeable groups of `result` and recomputes the fixed
    differences with the parameters of `result`. The new result is None when
    a single population remains.
    """
    groups = mergeable_groups(result, tpop=tpop)
    recode = groups_to_recode(groups)
    data = recode_populations(result.data, recode)
    for old, new in zip(recode.old, recode.new):
        if old != new:
            logger.debug("%s -> %s", old, new)
    if data.n_pops < 2:
        logger.info("All populations amalgamated into %s", data.popnames[0])
        return data, recode, None
    params = dict(result.params)
    new_result = fixed_diff(data, seed=seed, cancel=cancel, **params)
    return new_result.data, recode, new_result


def collapse(
    data: GenotypeData,
    tloc: float = 0.0,
    tpop: int = 0,
    test: bool = False,
    delta: float = 0.02,
    alpha: float = 0.05,
    reps: int = 1000,
    mono_rm: bool = True,
    max_iter: int = 10,
    seed: Union[int, np.random.Generator, None] = None,
    estimator="bayes",
    cancel=None,
) -> CollapseResult:
    """Amalgamate populations until no pair is mergeable (gl.collapse.recursive).

    Each round merges every group of populations connected by pairs with at
    most `tpop` fixed differences and recomputes the matrix on the new
    partition. Groups are labelled by their lexicographically first member
    plus '+'. With test=True the p-values only annotate each step: pairs
    separated by more than `tpop` fixed differences that are not significant
    at `alpha` are recorded in `nonsignificant` and logged, never merged.
    """
    if not isinstance(data, GenotypeData):
        raise TypeError(f"GenotypeData required, got {type(data).__name__}")
    tpop = check_int("tpop", tpop, 0)
    max_iter = check_int("max_iter", max_iter, 1)
    rng = np.random.default_rng(seed)

    state = CollapseState.INITIAL
    logger.info("Calculating an initial fixed difference matrix")
    result = fixed_diff(
        data,
        tloc=tloc,
        test=test,
        delta=delta,
        alpha=alpha,
        reps=reps,
        mono_rm=mono_rm,
        seed=rng,
        estimator=estimator,
        cancel=cancel,
    )
    data = result.data
    if tpop == 0:
        logger.info("Amalgamating populations with zero fixed differences")
    else:
        logger.info("Amalgamating populations with fixed differences <= %d", tpop)

    history: List[CollapseStep] = []
    rounds = 0
    while True:
        state = CollapseState.COMPARING
        groups = mergeable_groups(result, tpop=tpop)
        step = CollapseStep(
            iteration=len(history) + 1,
            populations=result.popnames,
            result=result,
            groups=groups,
            nonsignificant=nonsignificant_pairs(result, tpop=tpop, alpha=alpha),
        )
        for a, b in step.nonsignificant:
            logger.info("%s and %s differ by more than %d loci but not significantly", a, b, tpop)
        history.append(step)
        logger.debug("Iteration %d [%s]: %d populations", step.iteration, state.value, len(step.populations))

        if not step.merged:
            state = CollapseState.CONVERGED
            outcome = CollapseOutcome.CONVERGED
            logger.info("No further amalgamation of populations at fd <= %d", tpop)
            break
        if rounds >= max_iter:
            outcome = CollapseOutcome.ITERATION_CAP
            logger.warning(
                "Populations still amalgamating after %d rounds, stopping at %d populations",
                max_iter,
                len(step.populations),
            )
            break

        state = CollapseState.MERGING
        rounds += 1
        step.recode = groups_to_recode(groups)
        for group in groups:
            if len(group) > 1:
                logger.info("Group %s: %s", step.recode.as_dict()[group[0]], ", ".join(group))
        data = recode_populations(data, step.recode)
        if data.n_pops < 2:
            outcome = CollapseOutcome.SINGLE_POPULATION
            logger.info("All populations amalgamated into %s after %d rounds", data.popnames[0], rounds)
            break

        result = fixed_diff(
            data,
            tloc=tloc,
            test=test,
            delta=delta,
            alpha=alpha,
            reps=reps,
            mono_rm=mono_rm,
            seed=rng,
            estimator=estimator,
            cancel=cancel,
        )
        data = result.data

    logger.debug("Collapse finished in state %s after %d rounds", state.value, rounds)
    return CollapseResult(data=data, history=history, outcome=outcome, rounds=rounds)


def write_history(
    history: List[CollapseStep],
    prefix: str = "collapse",
    outdir: Union[str, Path] = ".",
) -> List[Path]:
    """Write every matrix of every iteration as <prefix>_<matrix>_<iteration>.csv.

    Iterations that merged populations also get <prefix>_recode_<iteration>.csv
    with the old -> new population labels.
    """
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for step in history:
        for name, frame in step.result.matrices().items():
            path = outdir / f"{prefix}_{name}_{step.iteration}.csv"
            frame.to_csv(path)
            written.append(path)
        if step.recode is not None:
            path = outdir / f"{prefix}_recode_{step.iteration}.csv"
            step.recode.to_frame().to_csv(path, index=False)
            written.append(path)
    logger.info("Wrote %d files to %s", len(written), outdir)
    return written
