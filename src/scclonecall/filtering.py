from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from .models import NO_POS, PosData
from .significance import _is_significant
from .utils import split_ranges
from .validation import check_chromosome_count, check_theta, resolve_num_threads

logger = logging.getLogger(__name__)

# Ranges handed to the pool per worker; a few per worker evens out uneven chromosomes.
_RANGES_PER_WORKER = 4


def present_groups(id_to_pos: Sequence[Optional[int]]) -> np.ndarray:
    """Boolean mask over groups: True where the group belongs to the current subcluster.

    A group is absent when its entry is ``None`` or :data:`NO_POS`. Dense positions of
    the present groups must be distinct.
    """
    dense = [p for p in id_to_pos if p is not None and p != NO_POS]
    if len(set(dense)) != len(dense):
        raise ValueError("id_to_pos maps two groups to the same matrix position")
    return np.array([p is not None and p != NO_POS for p in id_to_pos], dtype=bool)


def _check_groups(groups: np.ndarray, n_groups: int) -> None:
    if groups.size and (groups.min() < 0 or groups.max() >= n_groups):
        raise ValueError(
            f"id_to_group references group {int(groups.max())} but id_to_pos covers {n_groups} groups"
        )


def present_cells(id_to_group: Sequence[int], id_to_pos: Sequence[Optional[int]]) -> np.ndarray:
    """Boolean mask over cells: True where the cell's group is in the current subcluster."""
    groups = np.asarray(id_to_group, dtype=np.int64).reshape(-1)
    mask = present_groups(id_to_pos)
    _check_groups(groups, mask.size)
    return mask[groups]


def group_base_counts(pos: PosData, id_to_group: np.ndarray, n_groups: int) -> np.ndarray:
    """Pool the per-cell counts of ``pos`` into an ``(n_groups, 4)`` array, one row per group."""
    if pos.cell_ids.size and int(pos.cell_ids.max()) >= id_to_group.size:
        raise ValueError(
            f"Position {pos.position}: cell id {int(pos.cell_ids.max())} has no group "
            f"(id_to_group covers {id_to_group.size} cells)"
        )
    out = np.zeros((n_groups, 4), dtype=np.int64)
    np.add.at(out, id_to_group[pos.cell_ids], pos.counts)
    return out


def pool_present_counts(
    positions: Sequence[PosData],
    id_to_group: np.ndarray,
    group_mask: np.ndarray,
) -> np.ndarray:
    """Pooled A, C, G, T counts of each position over the cells of present groups.

    Returns an ``(len(positions), 4)`` array, built with a single scatter-add over the
    concatenated cell rows of all positions.
    """
    out = np.zeros((len(positions), 4), dtype=np.int64)
    if not positions:
        return out
    sizes = np.fromiter((p.cell_ids.size for p in positions), dtype=np.int64, count=len(positions))
    cell_ids = np.concatenate([p.cell_ids for p in positions]).astype(np.int64)
    if cell_ids.size == 0:
        return out
    if int(cell_ids.max()) >= id_to_group.size:
        bad = int(np.argmax(cell_ids >= id_to_group.size))
        row = int(np.searchsorted(np.cumsum(sizes), bad, side="right"))
        raise ValueError(
            f"Position {positions[row].position}: cell id {int(cell_ids[bad])} has no group "
            f"(id_to_group covers {id_to_group.size} cells)"
        )
    counts = np.concatenate([p.counts for p in positions]).astype(np.int64)
    rows = np.repeat(np.arange(len(positions)), sizes)
    keep = group_mask[id_to_group[cell_ids]]
    np.add.at(out, rows[keep], counts[keep])
    return out


def _filter_range(
    positions: List[PosData],
    start: int,
    end: int,
    id_to_group: np.ndarray,
    group_mask: np.ndarray,
    theta: float,
) -> Tuple[List[int], int]:
    pooled = pool_present_counts(positions[start:end], id_to_group, group_mask)
    n = pooled.sum(axis=1)
    k = n - pooled.max(axis=1, initial=0)
    kept: List[int] = []
    coverage = 0
    # only positions above the expected error count can reach significance
    for j in np.flatnonzero(k > n * theta).tolist():
        if _is_significant(pooled[j], theta):
            kept.append(start + j)
            coverage += int(n[j])
    return kept, coverage


def filter_positions(
    pos_data: Sequence[Sequence[PosData]],
    id_to_group: Sequence[int],
    id_to_pos: Sequence[Optional[int]],
    marker: str,
    seq_error_rate: float,
    num_threads: int = 0,
    *,
    progress: bool = False,
) -> Tuple[List[List[PosData]], float]:
    """Keep the positions that help tell the cells of the current subcluster apart.

    Parameters
    ----------
    pos_data:
        Pileups per chromosome (ids 0..23), each an ordered list of positions where not
        all nucleotides are identical across cells.
    id_to_group:
        One entry per cell: the group the cell is pooled into. Cells in one group are
        treated as a single cell, which artificially raises coverage.
    id_to_pos:
        One entry per group: the group's position in the similarity matrix of the
        current subcluster, or ``None``/:data:`NO_POS` if the group is not part of it.
    marker:
        Label of the current subcluster (e.g. ``"AB"``: second child of the first
        cluster); only logged.
    seq_error_rate:
        Sequencer error rate, e.g. 1e-3 for Illumina reads with base quality >= 30.
    num_threads:
        Worker threads; 0 uses all available cores.

    Returns
    -------
    filtered:
        The significant positions, same chromosome layout and order as the input.
    avg_coverage:
        Mean pooled coverage (over present groups) of the retained positions; 0.0 when
        nothing is retained.
    """
    theta = check_theta(seq_error_rate)
    n_threads = resolve_num_threads(num_threads)
    check_chromosome_count(len(pos_data))

    groups = np.asarray(id_to_group, dtype=np.int64).reshape(-1)
    group_mask = present_groups(id_to_pos)
    _check_groups(groups, group_mask.size)

    chromosomes = [list(c) for c in pos_data]
    lengths = [len(c) for c in chromosomes]
    total = sum(lengths)
    n_workers = max(1, min(n_threads, total))
    ranges = split_ranges(lengths, n_workers * _RANGES_PER_WORKER)

    logger.info(
        "Filtering subcluster '%s': %d positions, %d/%d groups present, %d worker(s)",
        marker,
        total,
        int(group_mask.sum()),
        group_mask.size,
        n_workers,
    )
    t0 = time.time()

    results: List[Tuple[List[int], int]] = []
    with tqdm(total=total, unit="pos", desc=f"Filtering {marker or 'root'}", disable=not progress) as pbar:
        if n_workers == 1:
            for chrom, start, end in ranges:
                results.append(_filter_range(chromosomes[chrom], start, end, groups, group_mask, theta))
                pbar.update(end - start)
        else:
            with ThreadPoolExecutor(max_workers=n_workers) as ex:
                futures = [
                    ex.submit(_filter_range, chromosomes[chrom], start, end, groups, group_mask, theta)
                    for chrom, start, end in ranges
                ]
                sizes = {fut: end - start for fut, (_, start, end) in zip(futures, ranges)}
                for fut in as_completed(futures):
                    pbar.update(sizes[fut])
                results = [fut.result() for fut in futures]

    filtered: List[List[PosData]] = [[] for _ in chromosomes]
    n_kept = 0
    coverage_sum = 0
    for (chrom, _, _), (kept, coverage) in zip(ranges, results):
        filtered[chrom].extend(chromosomes[chrom][idx] for idx in kept)
        n_kept += len(kept)
        coverage_sum += coverage

    avg_coverage = coverage_sum / n_kept if n_kept else 0.0
    logger.info(
        "Subcluster '%s': kept %d of %d positions, average coverage %.2f (%.1fs)",
        marker,
        n_kept,
        total,
        avg_coverage,
        time.time() - t0,
    )
    return filtered, avg_coverage
