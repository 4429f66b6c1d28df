from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List

import pysam

from .models import BASES, N_CHROMOSOMES, PosData
from .pileup_io import write_assignment, write_pileups
from .utils import ensure_outdir, write_json

_N_CELLS = 20
_CONTIG = "1"
_CONTIG_LEN = 300


def _write_fasta(path: Path, contig: str, seq: str) -> None:
    lines = [f">{contig}"]
    for i in range(0, len(seq), 60):
        lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _mutate_base(base: str) -> str:
    for alt in BASES:
        if alt != base:
            return alt
    return "A"


def _cell_reads(rng: random.Random, alleles: List[int], depth: int, error: float) -> List[int]:
    """Sample ``depth`` reads from the given alleles with a uniform substitution error."""
    counts = [0, 0, 0, 0]
    for _ in range(depth):
        base = rng.choice(alleles)
        if rng.random() < error:
            base = rng.choice([b for b in range(4) if b != base])
        counts[base] += 1
    return counts


def make_toy_data(*, outdir: str | Path, seed: int = 7) -> Dict[str, str]:
    """Create a tiny reference, pileup and assignments suitable for quick demos/tests.

    Cells 0-9 form cluster 0, cells 10-19 cluster 1. Every third position carries a
    heterozygous variant in cluster 1 only, every fifth a germline heterozygous variant
    shared by all cells; the rest are homozygous reference with sequencing noise.

    The outputs include:
    - toy_ref.fa (+ .fai)
    - pileup.tsv.gz
    - clusters.tsv, groups.tsv (cells pooled in pairs)

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    rng = random.Random(seed)

    ref_seq = "".join(rng.choice(BASES) for _ in range(_CONTIG_LEN))
    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, _CONTIG, ref_seq)
    pysam.faidx(str(ref_fa))

    clusters = [0 if c < _N_CELLS // 2 else 1 for c in range(_N_CELLS)]
    groups = [c // 2 for c in range(_N_CELLS)]

    positions: List[PosData] = []
    for i, pos0 in enumerate(range(10, _CONTIG_LEN - 10, 5)):
        ref = BASES.index(ref_seq[pos0])
        alt = BASES.index(_mutate_base(ref_seq[pos0]))
        cell_counts = {}
        for cell in range(_N_CELLS):
            if i % 5 == 0:
                alleles = [ref, alt]
            elif i % 3 == 0 and clusters[cell] == 1:
                alleles = [ref, alt]
            else:
                alleles = [ref]
            cell_counts[cell] = _cell_reads(rng, alleles, rng.randint(2, 8), error=0.001)
        positions.append(PosData.from_cell_counts(pos0, cell_counts))

    pos_data: List[List[PosData]] = [[] for _ in range(N_CHROMOSOMES)]
    pos_data[0] = positions

    pileup = outdir_p / "pileup.tsv.gz"
    write_pileups(pileup, pos_data)
    clusters_tsv = outdir_p / "clusters.tsv"
    write_assignment(clusters_tsv, clusters, label="cluster")
    groups_tsv = outdir_p / "groups.tsv"
    write_assignment(groups_tsv, groups, label="group")

    summary = {
        "ref_fa": str(ref_fa),
        "pileup": str(pileup),
        "clusters": str(clusters_tsv),
        "groups": str(groups_tsv),
        "n_cells": str(_N_CELLS),
        "n_positions": str(len(positions)),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
