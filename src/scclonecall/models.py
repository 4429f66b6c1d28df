from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Tuple

import numpy as np

BASES = "ACGT"
BASE_INDEX = {b: i for i, b in enumerate(BASES)}

# Group is not part of the current subcluster (numeric form of "absent").
NO_POS = int(np.iinfo(np.uint16).max) >> 2

N_CHROMOSOMES = 24  # 0..21 autosomes, 22 = X, 23 = Y


class Genotype(enum.IntEnum):
    """Unordered diploid base pair. ``None`` stands for "no genotype" wherever one is returned."""

    AA = 0
    AC = 1
    AG = 2
    AT = 3
    CC = 4
    CG = 5
    CT = 6
    GG = 7
    GT = 8
    TT = 9

    @classmethod
    def from_bases(cls, b1: int, b2: int) -> "Genotype":
        """Build a genotype from two base indices (0=A .. 3=T), in any order."""
        lo, hi = (b1, b2) if b1 <= b2 else (b2, b1)
        if lo < 0 or hi > 3:
            raise ValueError(f"Base index out of range: {b1}, {b2}")
        return cls[BASES[lo] + BASES[hi]]

    @property
    def alleles(self) -> Tuple[int, int]:
        return BASE_INDEX[self.name[0]], BASE_INDEX[self.name[1]]

    @property
    def is_homozygous(self) -> bool:
        return self.name[0] == self.name[1]

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, eq=False)
class PosData:
    """Pileup at one genomic position.

    Attributes
    ----------
    position:
        0-based coordinate on the chromosome.
    cell_ids:
        Ids of the cells with at least one read at this position.
    counts:
        Array of shape ``(len(cell_ids), 4)``; row ``i`` holds the A, C, G, T counts of
        ``cell_ids[i]``.
    """

    position: int
    cell_ids: np.ndarray
    counts: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        raw_ids = np.asarray(self.cell_ids).reshape(-1)
        if raw_ids.size and (raw_ids.min() < 0 or raw_ids.max() > np.iinfo(np.uint16).max):
            raise ValueError(f"Position {self.position}: cell ids must fit in 16 bits")
        raw_counts = np.asarray(self.counts).reshape(-1, 4)
        if raw_counts.size and raw_counts.min() < 0:
            raise ValueError(f"Position {self.position}: base counts must be non-negative")
        cell_ids = raw_ids.astype(np.uint16)
        counts = raw_counts.astype(np.uint32)
        if counts.shape[0] != cell_ids.shape[0]:
            raise ValueError(
                f"Position {self.position}: {cell_ids.shape[0]} cell ids but {counts.shape[0]} count rows"
            )
        cell_ids.flags.writeable = False
        counts.flags.writeable = False
        object.__setattr__(self, "cell_ids", cell_ids)
        object.__setattr__(self, "counts", counts)

    @classmethod
    def from_cell_counts(cls, position: int, cell_counts: Mapping[int, Sequence[int]]) -> "PosData":
        ids = sorted(cell_counts)
        counts = [list(cell_counts[c]) for c in ids]
        return cls(position=position, cell_ids=np.array(ids), counts=np.array(counts).reshape(-1, 4))

    def total_counts(self, cells: Optional[np.ndarray] = None) -> np.ndarray:
        """Pooled BaseCount, optionally restricted to a boolean mask over ``cell_ids``."""
        counts = self.counts if cells is None else self.counts[cells]
        return counts.sum(axis=0, dtype=np.int64)

    @property
    def coverage(self) -> int:
        return int(self.counts.sum())


@dataclass(frozen=True)
class ChrMap:
    """One insert/delete block of a Varsim map file.

    ``start_pos`` is 0-based on the new (diploid) genome; ``tr`` is ``"I"`` for bases
    present only in the new genome and ``"D"`` for reference bases missing from it.
    """

    chromosome_id: int
    start_pos: int
    length: int
    tr: str


@dataclass(frozen=True)
class GenotypeCall:
    """Called genotype for one cluster at one position."""

    chromosome_id: int
    position: int
    genotype: Genotype
    coverage: int
    ref_base: str
    ref_genotype: Optional[Genotype]

    @property
    def is_variant(self) -> bool:
        return self.genotype != self.ref_genotype
