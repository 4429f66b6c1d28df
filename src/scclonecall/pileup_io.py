"""Tab-separated pileup and cell-assignment files.

Pileup files (optionally gzipped) hold one row per (position, cell)::

    chrom   pos     cell    A   C   G   T
    1       1041    0       3   0   0   1

``pos`` is 0-based. Assignment files hold one row per cell::

    cell    cluster
    0       1
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import numpy as np

from .models import N_CHROMOSOMES, PosData
from .utils import open_textmaybe_gzip
from .validation import chromosome_id, chromosome_name

logger = logging.getLogger(__name__)

PILEUP_COLUMNS = ["chrom", "pos", "cell", "A", "C", "G", "T"]


def read_pileups(path: str | Path) -> List[List[PosData]]:
    """Load a pileup TSV into per-chromosome lists of positions, sorted by coordinate."""
    rows: Dict[Tuple[int, int], Tuple[List[int], List[List[int]]]] = {}
    with open_textmaybe_gzip(path, "rt") as fh:
        header = fh.readline().rstrip("\n").split("\t")
        if header != PILEUP_COLUMNS:
            raise ValueError(f"{path}: expected header {' '.join(PILEUP_COLUMNS)!r}, got {' '.join(header)!r}")
        for lineno, line in enumerate(fh, start=2):
            line = line.rstrip("\n")
            if not line:
                continue
            fields = line.split("\t")
            if len(fields) != len(PILEUP_COLUMNS):
                raise ValueError(f"{path}:{lineno}: expected {len(PILEUP_COLUMNS)} columns, found {len(fields)}")
            chrom = chromosome_id(fields[0])
            if chrom is None:
                raise ValueError(f"{path}:{lineno}: unknown chromosome {fields[0]!r}")
            try:
                pos, cell = int(fields[1]), int(fields[2])
                counts = [int(x) for x in fields[3:]]
            except ValueError:
                raise ValueError(f"{path}:{lineno}: non-integer field") from None
            if pos < 0 or cell < 0 or min(counts) < 0:
                raise ValueError(f"{path}:{lineno}: negative value")
            cells, cell_counts = rows.setdefault((chrom, pos), ([], []))
            cells.append(cell)
            cell_counts.append(counts)

    pos_data: List[List[PosData]] = [[] for _ in range(N_CHROMOSOMES)]
    for (chrom, pos), (cells, cell_counts) in sorted(rows.items()):
        if len(set(cells)) != len(cells):
            raise ValueError(f"{path}: cell listed twice at chromosome {chromosome_name(chrom)} position {pos}")
        pos_data[chrom].append(PosData(position=pos, cell_ids=np.array(cells), counts=np.array(cell_counts)))

    logger.info("Loaded %d positions from %s", sum(map(len, pos_data)), path)
    return pos_data


def write_pileups(path: str | Path, pos_data: Sequence[Sequence[PosData]], *, style: str = "ensembl") -> int:
    """Write pileups in the format read by :func:`read_pileups`; returns the number of positions."""
    n = 0
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(PILEUP_COLUMNS) + "\n")
        for chrom, positions in enumerate(pos_data):
            name = chromosome_name(chrom, style)
            for pos in positions:
                for cell, counts in zip(pos.cell_ids.tolist(), pos.counts.tolist()):
                    fh.write(f"{name}\t{pos.position}\t{cell}\t" + "\t".join(map(str, counts)) + "\n")
                n += 1
    return n


def read_assignment(path: str | Path) -> np.ndarray:
    """Load a cell -> label assignment; every cell id 0..n-1 must appear exactly once."""
    labels: Dict[int, int] = {}
    with open_textmaybe_gzip(path, "rt") as fh:
        header = fh.readline().rstrip("\n").split("\t")
        if len(header) != 2 or header[0] != "cell":
            raise ValueError(f"{path}: expected a two-column header starting with 'cell'")
        for lineno, line in enumerate(fh, start=2):
            line = line.strip()
            if not line:
                continue
            fields = line.split("\t")
            if len(fields) != 2:
                raise ValueError(f"{path}:{lineno}: expected 2 columns, found {len(fields)}")
            try:
                cell, label = int(fields[0]), int(fields[1])
            except ValueError:
                raise ValueError(f"{path}:{lineno}: non-integer field") from None
            if cell in labels:
                raise ValueError(f"{path}:{lineno}: cell {cell} assigned twice")
            if label < 0:
                raise ValueError(f"{path}:{lineno}: negative label")
            labels[cell] = label

    n_cells = len(labels)
    if sorted(labels) != list(range(n_cells)):
        raise ValueError(f"{path}: cell ids must be exactly 0..{n_cells - 1}")
    return np.array([labels[c] for c in range(n_cells)], dtype=np.int64)


def write_assignment(path: str | Path, labels: Sequence[int], *, label: str = "cluster") -> None:
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write(f"cell\t{label}\n")
        for cell, value in enumerate(labels):
            fh.write(f"{cell}\t{int(value)}\n")
