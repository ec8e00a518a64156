from __future__ import annotations

import argparse
from pathlib import Path
from typing import Dict, Sequence

import numpy as np
import pandas as pd

from . import collapse, grm, io, merge, popgen, qc, sim
from .errors import DataError, ParameterError
from .log import set_verbosity


def _add_input_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "input",
        type=Path,
        help="DArT report (.csv) or a dataset store written by 'store' (.zarr).",
    )
    p.add_argument(
        "--format",
        dest="fmt",
        choices=["2row", "1row", "silicodart"],
        default="2row",
        help="DArT report layout (default: 2row).",
    )
    p.add_argument(
        "--topskip",
        type=int,
        default=0,
        help="Lines to skip before the header row (default 0).",
    )
    p.add_argument(
        "--nmetavar",
        type=int,
        default=1,
        help="Number of locus metadata columns before the genotypes (default 1).",
    )
    p.add_argument(
        "--nas",
        type=str,
        default="-",
        help="Missing value code in the report (default '-').",
    )
    p.add_argument(
        "--ind-metafile",
        type=Path,
        default=None,
        help="Individual metadata CSV with id and pop columns.",
    )
    p.add_argument(
        "--recode",
        type=Path,
        default=None,
        help="Population recode table CSV with columns old,new.",
    )
    p.add_argument(
        "--keep-pops",
        nargs="+",
        default=None,
        help="Retain only these populations.",
    )


def _add_fixed_diff_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--tloc",
        type=float,
        default=0.0,
        help="Tolerance around 0 and 1 for a difference to count as fixed, in [0, 0.5] (default 0).",
    )
    p.add_argument(
        "--test",
        action="store_true",
        help="Simulate expected false positives and p-values for each pair.",
    )
    p.add_argument(
        "--delta",
        type=float,
        default=0.02,
        help="MAF threshold for the simulation (default 0.02).",
    )
    p.add_argument(
        "--alpha",
        type=float,
        default=0.05,
        help="Significance level (default 0.05).",
    )
    p.add_argument(
        "--reps",
        type=int,
        default=1000,
        help="Simulation replicates per pair (default 1000).",
    )
    p.add_argument(
        "--keep-monomorphs",
        action="store_true",
        help="Do not remove monomorphic loci before comparing.",
    )
    p.add_argument(
        "--estimator",
        choices=sorted(sim.ESTIMATORS),
        default="bayes",
        help="True allele frequency estimator for the simulation (default: bayes).",
    )
    p.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for the simulation.",
    )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="dartgl",
        description="Fixed differences, population collapse and QC for DArT SNP and SilicoDArT data.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        type=int,
        default=2,
        help="0 silent, 1 warnings, 2 progress, 3-5 detail (default 2).",
    )

    sub = p.add_subparsers(dest="command", required=True)

    fd = sub.add_parser(
        "fixed-diff",
        help="Pairwise fixed difference matrices between populations.",
    )
    _add_input_args(fd)
    _add_fixed_diff_args(fd)
    fd.add_argument(
        "--prefix",
        type=str,
        default="fd",
        help="Output prefix; writes <prefix>_<matrix>.csv (default 'fd').",
    )
    fd.add_argument(
        "--outdir",
        type=Path,
        default=Path("."),
        help="Output directory (default: current directory).",
    )

    col = sub.add_parser(
        "collapse",
        help="Amalgamate populations without fixed differences until no further change.",
    )
    _add_input_args(col)
    _add_fixed_diff_args(col)
    col.add_argument(
        "--tpop",
        type=int,
        default=0,
        help="Merge pairs with at most this many fixed differences (default 0).",
    )
    col.add_argument(
        "--max-iter",
        type=int,
        default=10,
        help="Maximum merging rounds (default 10).",
    )
    col.add_argument(
        "--prefix",
        type=str,
        default="collapse",
        help="Output prefix for per-iteration matrices (default 'collapse').",
    )
    col.add_argument(
        "--outdir",
        type=Path,
        default=Path("."),
        help="Output directory (default: current directory).",
    )
    col.add_argument(
        "--store-out",
        type=Path,
        default=None,
        help="Optional dataset store for the collapsed dataset.",
    )

    hw = sub.add_parser(
        "hwe",
        help="Hardy-Weinberg exact tests per locus and population (SNP data).",
    )
    _add_input_args(hw)
    hw.add_argument("--alpha", type=float, default=0.05, help="Significance level (default 0.05).")
    hw.add_argument("--out", type=Path, required=True, help="Output CSV.")

    cr = sub.add_parser(
        "callrate",
        help="Locus and individual call rates.",
    )
    _add_input_args(cr)
    cr.add_argument("--out", type=Path, required=True, help="Locus call rate CSV.")
    cr.add_argument("--ind-out", type=Path, default=None, help="Optional individual call rate CSV.")

    mono = sub.add_parser(
        "monomorphs",
        help="Report monomorphic loci and optionally store the filtered dataset.",
    )
    _add_input_args(mono)
    mono.add_argument(
        "--store-out",
        type=Path,
        default=None,
        help="Write the dataset without monomorphic loci to this store.",
    )

    g = sub.add_parser(
        "grm",
        help="Genomic relationship matrix (SNP data).",
    )
    _add_input_args(g)
    g.add_argument("--out", type=Path, required=True, help="Output CSV (individual x individual).")
    g.add_argument(
        "--pop-out",
        type=Path,
        default=None,
        help="Optional CSV of population-averaged relatedness.",
    )

    simcmd = sub.add_parser(
        "simulate",
        help="Simulate populations and write a DArT report, metadata and store.",
    )
    simcmd.add_argument(
        "--pop",
        action="append",
        default=None,
        metavar="NAME=SIZE",
        help="Population and its size, repeatable (default: A=20 B=20).",
    )
    simcmd.add_argument(
        "--n-loc",
        type=int,
        default=1000,
        help="Number of loci to simulate (default 1000).",
    )
    simcmd.add_argument(
        "--kind",
        choices=[k.value for k in io.DatasetKind],
        default=io.DatasetKind.SNP.value,
        help="SNP or SilicoDArT (default SNP).",
    )
    simcmd.add_argument(
        "--missing",
        type=float,
        default=0.0,
        help="Proportion of missing calls (default 0).",
    )
    simcmd.add_argument(
        "--prefix",
        type=str,
        default="sim",
        help="Prefix for output files (default 'sim').",
    )
    simcmd.add_argument(
        "--seed",
        type=int,
        default=123,
        help="Random seed for simulation (default 123).",
    )

    pa = sub.add_parser(
        "private",
        help="Keep loci with private or fixed alleles between two populations (SNP data).",
    )
    _add_input_args(pa)
    pa.add_argument("--pop1", required=True, help="First population.")
    pa.add_argument("--pop2", required=True, help="Second population.")
    pa.add_argument(
        "--invers",
        action="store_true",
        help="Keep the loci without private alleles instead.",
    )
    pa.add_argument("--out", type=Path, required=True, help="Output .zarr store.")

    dups = sub.add_parser(
        "dups",
        help="Keep one SNP per clone (highest RepAvg, then AvgPIC).",
    )
    _add_input_args(dups)
    dups.add_argument("--out", type=Path, required=True, help="Output .zarr store.")

    st = sub.add_parser(
        "store",
        help="Convert a DArT report into a dataset store.",
    )
    _add_input_args(st)
    st.add_argument("--out", type=Path, required=True, help="Output .zarr store.")

    return p


def _load(args: argparse.Namespace) -> io.GenotypeData:
    path: Path = args.input
    if not path.exists():
        raise SystemExit(f"Input not found: {path}")
    if path.is_dir():
        data = io.read_store(path)
    else:
        data = io.read_dart(
            path,
            topskip=args.topskip,
            nmetavar=args.nmetavar,
            fmt=args.fmt,
            nas=args.nas,
            ind_metafile=args.ind_metafile,
        )
    if args.recode is not None:
        data = merge.recode_populations(data, merge.load_recode_table(args.recode))
    if args.keep_pops:
        data = merge.keep_populations(data, args.keep_pops)
    return data


def _print_matrix(title: str, frame: pd.DataFrame) -> None:
    print(title)
    print(frame.to_string())


def cmd_fixed_diff(args: argparse.Namespace) -> None:
    data = _load(args)
    result = popgen.fixed_diff(
        data,
        tloc=args.tloc,
        test=args.test,
        delta=args.delta,
        alpha=args.alpha,
        reps=args.reps,
        mono_rm=not args.keep_monomorphs,
        seed=args.seed,
        estimator=args.estimator,
    )
    args.outdir.mkdir(parents=True, exist_ok=True)
    for name, frame in result.matrices().items():
        frame.to_csv(args.outdir / f"{args.prefix}_{name}.csv")
    _print_matrix("Fixed differences", result.fd)
    if result.tested:
        _print_matrix("p-values", result.pval)
    print(f"Wrote {len(result.matrices())} matrices to {args.outdir}")


def cmd_collapse(args: argparse.Namespace) -> None:
    data = _load(args)
    res = collapse.collapse(
        data,
        tloc=args.tloc,
        tpop=args.tpop,
        test=args.test,
        delta=args.delta,
        alpha=args.alpha,
        reps=args.reps,
        mono_rm=not args.keep_monomorphs,
        max_iter=args.max_iter,
        seed=args.seed,
        estimator=args.estimator,
    )
    written = collapse.write_history(res.history, prefix=args.prefix, outdir=args.outdir)
    print(f"Outcome: {res.outcome.value} after {res.rounds} rounds")
    print(f"Populations: {', '.join(res.data.popnames)}")
    if res.final is None:
        print(f"All populations amalgamated into {res.data.popnames[0]}")
    else:
        _print_matrix("Final fixed differences", res.final.fd)
    for a, b in res.history[-1].nonsignificant:
        print(f"Not significant: {a} vs {b}")
    print(f"Wrote {len(written)} files to {args.outdir}")
    if args.store_out is not None:
        io.write_store(res.data, args.store_out)
        print(f"Wrote collapsed dataset store: {args.store_out}")


def cmd_hwe(args: argparse.Namespace) -> None:
    data = _load(args)
    table = popgen.hwe_pops(data, alpha=args.alpha)
    args.out.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(args.out, index=False)
    n_sig = int((table["BonSig"] == "*").sum())
    print(f"{n_sig} of {len(table)} locus x population tests significant after Bonferroni correction")


def cmd_callrate(args: argparse.Namespace) -> None:
    data = qc.recalc_callrate(_load(args))
    loc = pd.DataFrame({"locus": data.loc_names, "CallRate": data.loc_metrics["CallRate"]})
    args.out.parent.mkdir(parents=True, exist_ok=True)
    loc.to_csv(args.out, index=False)
    print(f"Mean locus call rate: {loc['CallRate'].mean():.4f} over {data.n_loc} loci")
    if args.ind_out is not None:
        ind = qc.callrate_ind(data)
        args.ind_out.parent.mkdir(parents=True, exist_ok=True)
        ind.rename_axis("id").reset_index().to_csv(args.ind_out, index=False)
        print(f"Mean individual call rate: {ind.mean():.4f} over {data.n_ind} individuals")


def cmd_monomorphs(args: argparse.Namespace) -> None:
    data = _load(args)
    report = qc.report_monomorphs(data)
    print(f"Loci: {report.n_loc}")
    print(f"  polymorphic: {report.polymorphic}")
    print(f"  monomorphic: {report.monomorphic}")
    print(f"  all missing: {report.all_na}")
    if args.store_out is not None:
        io.write_store(qc.filter_monomorphs(data), args.store_out)
        print(f"Wrote filtered dataset store: {args.store_out}")


def cmd_grm(args: argparse.Namespace) -> None:
    data = _load(args)
    G = grm.grm(data)
    args.out.parent.mkdir(parents=True, exist_ok=True)
    G.to_csv(args.out)
    print(f"Mean self-relatedness: {np.nanmean(np.diag(G.to_numpy())):.4f}")
    if args.pop_out is not None:
        pr = grm.pop_grm(G.to_numpy(), data.populations)
        out = pr.G.copy()
        out["Inb"] = pr.inbreeding
        args.pop_out.parent.mkdir(parents=True, exist_ok=True)
        out.to_csv(args.pop_out)


def _parse_pop_sizes(items: Sequence[str] | None) -> Dict[str, int]:
    if not items:
        return {"A": 20, "B": 20}
    sizes: Dict[str, int] = {}
    for item in items:
        name, sep, size = item.partition("=")
        if not sep or not name:
            raise SystemExit(f"Population must be given as NAME=SIZE, got '{item}'")
        try:
            sizes[name] = int(size)
        except ValueError as exc:
            raise SystemExit(f"Population size for '{name}' must be an integer") from exc
    return sizes


def cmd_simulate(args: argparse.Namespace) -> None:
    """Simulate populations and write DArT csv + metadata + store."""
    data = sim.simulate_populations(
        _parse_pop_sizes(args.pop),
        n_loc=args.n_loc,
        kind=io.DatasetKind(args.kind),
        missing=args.missing,
        seed=args.seed,
    )
    csv_path = Path(f"{args.prefix}.csv")
    meta_path = Path(f"{args.prefix}.ind.csv")
    store_path = Path(f"{args.prefix}.zarr")

    sim.write_dart_csv(data, csv_path, ind_metafile=meta_path)
    io.write_store(data, store_path)
    nmetavar = 3 if data.kind is io.DatasetKind.SNP else 1
    fmt = "1row" if data.kind is io.DatasetKind.SNP else "silicodart"
    print(f"Wrote DArT report (--format {fmt} --nmetavar {nmetavar}): {csv_path}")
    print(f"Wrote individual metadata: {meta_path}")
    print(f"Wrote dataset store: {store_path}")


def cmd_private(args: argparse.Namespace) -> None:
    data = _load(args)
    out = popgen.private_alleles(data, args.pop1, args.pop2, invers=args.invers)
    io.write_store(out, args.out)
    print(f"Kept {out.n_loc} of {data.n_loc} loci: {args.out}")


def cmd_dups(args: argparse.Namespace) -> None:
    data = _load(args)
    out = qc.filter_dups(data)
    io.write_store(out, args.out)
    print(f"Removed {data.n_loc - out.n_loc} duplicate SNPs, kept {out.n_loc}: {args.out}")


def cmd_store(args: argparse.Namespace) -> None:
    data = _load(args)
    io.write_store(data, args.out)
    print(f"Wrote {data.n_ind} individuals x {data.n_loc} loci to {args.out}")


_COMMANDS = {
    "fixed-diff": cmd_fixed_diff,
    "collapse": cmd_collapse,
    "hwe": cmd_hwe,
    "callrate": cmd_callrate,
    "monomorphs": cmd_monomorphs,
    "grm": cmd_grm,
    "simulate": cmd_simulate,
    "private": cmd_private,
    "dups": cmd_dups,
    "store": cmd_store,
}


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        set_verbosity(args.verbose)
        _COMMANDS[args.command](args)
    except (DataError, ParameterError) as exc:
        raise SystemExit(f"Error: {exc}") from exc


if __name__ == "__main__":
    main()
