from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from . import __version__
from .filtering import filter_positions, present_cells
from .pileup_io import read_assignment, read_pileups, write_pileups
from .plotting import plot_chromosome_counts, plot_coverage_hist, plot_genotype_counts
from .report import render_report
from .significance import SIGNIFICANCE_LEVEL
from .toy_data import make_toy_data
from .utils import ensure_outdir, write_json
from .validation import check_hetero_prior, check_theta, chromosome_name, resolve_num_threads
from .variant_calling import GenomeFormatError, MapFileError, check_is_diploid, variant_calling


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    if isinstance(err, (MapFileError, GenomeFormatError)):
        msg = str(err)
    else:
        msg = f"{err.__class__.__name__}: {err}"

    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _int_list(s: str) -> List[int]:
    try:
        return [int(x) for x in s.split(",") if x.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected comma-separated integers, got: {s}") from None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="scclonecall",
        description=(
            "SCCloneCall: significance filtering of single-cell DNA pileups and per-cluster "
            "diploid genotype calling."
        ),
    )
    p.add_argument("--version", action="version", version=f"scclonecall {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser(
        "quickstart",
        help="Print ready-to-run recipes for common scenarios.",
    )

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny reference, pileup and cluster assignment for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--seed", type=int, default=7, help="Random seed.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # filter
    # -----------------
    f = sub.add_parser(
        "filter",
        help="Keep the pileup positions that are inconsistent with sequencing noise.",
    )
    f.add_argument("--pileup", required=True, type=_path_exists, help="Pileup TSV(.gz).")
    f.add_argument("--outdir", required=True, help="Output directory.")
    f.add_argument(
        "--groups",
        default=None,
        type=_path_exists,
        help="Cell -> group TSV; cells of one group are pooled (default: one group per cell).",
    )
    f.add_argument(
        "--keep-groups",
        type=_int_list,
        default=None,
        help="Comma-separated groups forming the current subcluster (default: all groups).",
    )
    f.add_argument("--marker", default="", help="Subcluster label, used in logs and the report.")
    f.add_argument("--theta", type=float, default=0.001, help="Sequencing error rate (0-1).")
    f.add_argument("--threads", type=int, default=0, help="Worker threads (0 = all cores).")
    f.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    f.add_argument("--resume", action="store_true", help="Skip if outputs already exist.")
    f.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # call
    # -----------------
    c = sub.add_parser(
        "call",
        help="Call the most likely genotype of every cluster and write one VCF per cluster.",
    )
    c.add_argument("--pileup", required=True, type=_path_exists, help="Pileup TSV(.gz).")
    c.add_argument("--clusters", required=True, type=_path_exists, help="Cell -> cluster TSV.")
    c.add_argument("--ref", required=True, type=_path_exists, help="Reference FASTA.")
    c.add_argument(
        "--map",
        default=None,
        type=_path_exists,
        help="Varsim map file (required when the reference is a Varsim diploid genome).",
    )
    c.add_argument("--outdir", required=True, help="Output directory.")
    c.add_argument("--hetero-prior", type=float, default=0.001, help="Prior probability of a heterozygous locus.")
    c.add_argument("--theta", type=float, default=0.001, help="Sequencing error rate (0-1).")
    c.add_argument("--threads", type=int, default=1, help="Worker threads (0 = all cores).")
    c.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    c.add_argument("--resume", action="store_true", help="Skip if outputs already exist.")
    c.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "SCCloneCall quickstart (copy/paste):",
        "",
        "1) Demo data:",
        "   scclonecall make-toy-data --outdir toy/",
        "",
        "2) Keep informative positions:",
        "   scclonecall filter \\",
        "     --pileup toy/pileup.tsv.gz \\",
        "     --groups toy/groups.tsv \\",
        "     --outdir filtered/",
        "   Outputs: filtered/filtered.tsv.gz, filtered/report.html, filtered/summary.json",
        "",
        "3) Call genotypes per cluster:",
        "   scclonecall call \\",
        "     --pileup filtered/filtered.tsv.gz \\",
        "     --clusters toy/clusters.tsv \\",
        "     --ref toy/toy_ref.fa \\",
        "     --outdir calls/",
        "   Outputs: calls/cluster_<k>.vcf, calls/report.html, calls/summary.json",
        "",
        "Tip: use --dry-run to validate inputs and list planned outputs.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir, seed=int(args.seed))
    print(json.dumps(summary, indent=2))
    return 0


def _cluster_position_map(n_groups: int, keep: Optional[List[int]]) -> List[Optional[int]]:
    """Dense matrix positions for the kept groups, None for the others."""
    if keep is None:
        return list(range(n_groups))
    unknown = [g for g in keep if not 0 <= g < n_groups]
    if unknown:
        raise ValueError(f"--keep-groups lists unknown groups: {unknown}")
    keep_set = set(keep)
    id_to_pos: List[Optional[int]] = []
    dense = 0
    for g in range(n_groups):
        if g in keep_set:
            id_to_pos.append(dense)
            dense += 1
        else:
            id_to_pos.append(None)
    return id_to_pos


def cmd_filter(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "filter.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("scclonecall")
    logger.info("scclonecall %s", __version__)

    try:
        theta = check_theta(args.theta)
        resolve_num_threads(args.threads)

        if args.dry_run:
            print("Dry-run: parameters look OK.")
            print("Planned outputs:")
            print(f"  filtered.tsv.gz -> {outdir / 'filtered.tsv.gz'}")
            print(f"  report.html -> {outdir / 'report.html'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        outdir = ensure_outdir(outdir)
        if args.resume and (outdir / "summary.json").exists():
            logger.info("Resume enabled: summary.json already exists in %s", outdir)
            print(str(outdir / "report.html"))
            return 0

        pos_data = read_pileups(args.pileup)
        n_cells = 1 + max(
            (int(p.cell_ids.max()) for chrom in pos_data for p in chrom if p.cell_ids.size),
            default=-1,
        )
        if args.groups is not None:
            id_to_group = read_assignment(args.groups)
        else:
            id_to_group = np.arange(n_cells, dtype=np.int64)
        n_groups = int(id_to_group.max()) + 1 if id_to_group.size else 0
        id_to_pos = _cluster_position_map(n_groups, args.keep_groups)

        filtered, avg_coverage = filter_positions(
            pos_data,
            id_to_group,
            id_to_pos,
            args.marker,
            theta,
            int(args.threads),
            progress=True,
        )

        filtered_path = outdir / "filtered.tsv.gz"
        write_pileups(filtered_path, filtered)

        cell_mask = present_cells(id_to_group, id_to_pos)
        coverages = [
            int(p.total_counts(cell_mask[p.cell_ids]).sum()) for chrom in filtered for p in chrom
        ]
        examined: Dict[str, int] = {}
        kept: Dict[str, int] = {}
        for chrom, positions in enumerate(pos_data):
            if positions:
                examined[chromosome_name(chrom)] = len(positions)
                kept[chromosome_name(chrom)] = len(filtered[chrom])

        summary = {
            "pileup": str(args.pileup),
            "groups": str(args.groups) if args.groups else None,
            "marker": args.marker,
            "theta": theta,
            "significance_level": SIGNIFICANCE_LEVEL,
            "threads": int(args.threads),
            "groups_total": n_groups,
            "groups_present": sum(1 for x in id_to_pos if x is not None),
            "positions_in": sum(examined.values()),
            "positions_out": sum(kept.values()),
            "positions_per_chromosome": {"examined": examined, "kept": kept},
            "avg_coverage": float(avg_coverage),
            "filtered_pileup": str(filtered_path),
        }
        write_json(outdir / "summary.json", summary)

        plots_dir = outdir / "plots"
        coverage_png = plots_dir / "coverage_hist.png"
        chrom_png = plots_dir / "chromosome_counts.png"
        plot_coverage_hist(coverages=coverages, out_png=coverage_png)
        plot_chromosome_counts(examined=examined, kept=kept, out_png=chrom_png)

        report_path = render_report(
            outdir=outdir,
            version=__version__,
            title="filter report",
            pileup=str(args.pileup),
            inputs={"Groups": summary["groups"] or "(one per cell)"},
            plots={
                "coverage_hist": str(Path("plots") / coverage_png.name),
                "chromosome_counts": str(Path("plots") / chrom_png.name),
            },
            filtering=summary,
        )
        logger.info("Report written: %s", report_path)
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_call(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "call.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("scclonecall")
    logger.info("scclonecall %s", __version__)

    try:
        theta = check_theta(args.theta)
        hetero_prior = check_hetero_prior(args.hetero_prior)
        resolve_num_threads(args.threads)
        is_diploid = check_is_diploid(args.ref)
        if is_diploid and args.map is None:
            raise ValueError("The reference is a diploid genome; pass its Varsim map with --map")

        if args.dry_run:
            print("Dry-run: inputs look OK.")
            print(f"Reference: {'diploid (remapped through --map)' if is_diploid else 'haploid'}")
            print("Planned outputs:")
            print(f"  cluster_<k>.vcf -> {outdir}")
            print(f"  report.html -> {outdir / 'report.html'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        outdir = ensure_outdir(outdir)
        if args.resume and (outdir / "summary.json").exists():
            logger.info("Resume enabled: summary.json already exists in %s", outdir)
            print(str(outdir / "report.html"))
            return 0

        pos_data = read_pileups(args.pileup)
        clusters = read_assignment(args.clusters)

        summary = variant_calling(
            pos_data,
            clusters,
            args.ref,
            args.map,
            hetero_prior,
            theta,
            outdir,
            num_threads=int(args.threads),
            progress=True,
        )
        summary["pileup"] = str(args.pileup)
        summary["clusters_file"] = str(args.clusters)
        write_json(outdir / "summary.json", summary)

        genotype_png = outdir / "plots" / "genotype_counts.png"
        plot_genotype_counts(clusters=summary["clusters"], out_png=genotype_png)  # type: ignore[arg-type]

        inputs = {"Clusters": str(args.clusters), "Reference": str(args.ref)}
        if args.map is not None:
            inputs["Map file"] = str(args.map)
        report_path = render_report(
            outdir=outdir,
            version=__version__,
            title="calling report",
            pileup=str(args.pileup),
            inputs=inputs,
            plots={"genotype_counts": str(Path("plots") / genotype_png.name)},
            calling=summary,
        )
        logger.info("Report written: %s", report_path)
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "filter":
        return cmd_filter(args)
    if args.cmd == "call":
        return cmd_call(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
