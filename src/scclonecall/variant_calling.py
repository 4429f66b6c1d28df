from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pysam
from tqdm import tqdm

from .genotype import likely_homozygous, most_likely_genotype, sort_order
from .models import BASE_INDEX, ChrMap, Genotype, GenotypeCall, PosData
from .utils import ensure_outdir, open_textmaybe_gzip
from .validation import (
    check_chromosome_count,
    check_hetero_prior,
    check_theta,
    chromosome_id,
    resolve_num_threads,
)
from .vcf import write_cluster_vcf

logger = logging.getLogger(__name__)

# Varsim names the first contig of a diploid genome ">1_maternal".
DIPLOID_MARKER = "maternal"
_MATERNAL_SUFFIX = "_maternal"
_PATERNAL_SUFFIX = "_paternal"

_N = ord("N")


class MapFileError(ValueError):
    """Raised when a Varsim map file cannot be parsed."""


class GenomeFormatError(ValueError):
    """Raised when a reference genome lacks the structure needed for calling."""


def read_map(map_file: str | Path) -> Dict[str, List[ChrMap]]:
    """Read a Varsim map file, which maps a generated diploid genome to the original haploid reference.

    Each line is ``<size_of_block> <host_chr> <host_loc> <ref_chr> <ref_loc>
    <direction_of_block> <feature_name> <variant_id>``. Only insertions (``INS``) and
    deletions (``DEL``) matter for coordinates; other blocks are skipped.

    Returns
    -------
    Mapping of host chromosome name (e.g. ``1_maternal``) to its blocks, sorted by start.
    """
    out: Dict[str, List[ChrMap]] = {}
    with open_textmaybe_gzip(map_file, "rt") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            fields = line.split()
            if len(fields) != 8:
                raise MapFileError(f"{map_file}:{lineno}: expected 8 fields, found {len(fields)}")
            size_s, host_chr, host_loc_s, ref_chr, ref_loc_s, _direction, feature, _variant_id = fields
            try:
                size, host_loc, _ref_loc = int(size_s), int(host_loc_s), int(ref_loc_s)
            except ValueError:
                raise MapFileError(f"{map_file}:{lineno}: non-integer size or location") from None
            if size < 0 or host_loc < 1:
                raise MapFileError(f"{map_file}:{lineno}: negative size or location below 1")

            feature = feature.upper()
            if feature.startswith("INS"):
                tr = "I"
            elif feature.startswith("DEL"):
                tr = "D"
            else:
                continue

            chrom_id = chromosome_id(ref_chr)
            if chrom_id is None:
                logger.debug("Skipping map block on non-primary chromosome %s", ref_chr)
                continue
            out.setdefault(host_chr, []).append(
                ChrMap(chromosome_id=chrom_id, start_pos=host_loc - 1, length=size, tr=tr)
            )

    for blocks in out.values():
        blocks.sort(key=lambda m: m.start_pos)
    logger.info("Read %d map blocks for %d contigs from %s", sum(map(len, out.values())), len(out), map_file)
    return out


def apply_map(chr_map: Sequence[ChrMap], chr_data: np.ndarray) -> np.ndarray:
    """Translate a diploid contig back to haploid-ancestor coordinates.

    Inserted blocks are dropped; deleted blocks are filled with ``N``.
    """
    pieces: List[np.ndarray] = []
    cur = 0
    for block in chr_map:
        if block.start_pos > cur:
            pieces.append(chr_data[cur : block.start_pos])
            cur = block.start_pos
        if block.tr == "I":
            cur += block.length
        elif block.tr == "D":
            pieces.append(np.full(block.length, _N, dtype=np.uint8))
    if cur < len(chr_data):
        pieces.append(chr_data[cur:])
    if not pieces:
        return np.zeros(0, dtype=np.uint8)
    return np.concatenate(pieces).astype(np.uint8, copy=False)


def check_is_diploid(reference_genome: str | Path) -> bool:
    """True if the first FASTA record name contains ``maternal`` (Varsim diploid genome)."""
    with open_textmaybe_gzip(reference_genome, "rt") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            if not line.startswith(">"):
                raise GenomeFormatError(f"{reference_genome}: first record is not a FASTA header")
            return DIPLOID_MARKER in line
    raise GenomeFormatError(f"{reference_genome}: no FASTA records found")


def _encode(seq: str) -> np.ndarray:
    return np.frombuffer(seq.upper().encode("ascii"), dtype=np.uint8)


def iter_reference_chromosomes(
    reference_genome: str | Path,
    chr_map: Dict[str, List[ChrMap]],
    is_diploid: bool,
) -> Iterator[Tuple[int, str, np.ndarray, Optional[np.ndarray]]]:
    """Yield ``(chromosome_id, name, sequence, paternal_sequence)`` for each main chromosome.

    For a diploid genome ``sequence`` is the maternal contig and ``paternal_sequence`` the
    paternal one, both remapped to ancestor coordinates; otherwise the latter is None.
    """
    with pysam.FastaFile(str(reference_genome)) as fasta:
        references = set(fasta.references)
        for name in fasta.references:
            if is_diploid:
                if not name.endswith(_MATERNAL_SUFFIX):
                    continue
                base_name = name[: -len(_MATERNAL_SUFFIX)]
                paternal = base_name + _PATERNAL_SUFFIX
                if paternal not in references:
                    raise GenomeFormatError(f"{reference_genome}: {name} has no {paternal} contig")
            else:
                base_name = name

            chrom_id = chromosome_id(base_name)
            if chrom_id is None:
                logger.debug("Skipping contig %s", name)
                continue

            seq = _encode(fasta.fetch(name))
            if not is_diploid:
                yield chrom_id, base_name, seq, None
                continue
            mat = apply_map(chr_map.get(name, []), seq)
            pat = apply_map(chr_map.get(paternal, []), _encode(fasta.fetch(paternal)))
            yield chrom_id, base_name, mat, pat


def _bases_at(seq: np.ndarray, positions: np.ndarray) -> np.ndarray:
    out = np.full(positions.shape[0], _N, dtype=np.uint8)
    valid = positions < seq.shape[0]
    out[valid] = seq[positions[valid]]
    return out


def _reference_genotype(ref_base: str, paternal_base: Optional[str]) -> Optional[Genotype]:
    if ref_base not in BASE_INDEX:
        return None
    if paternal_base is None:
        return Genotype.from_bases(BASE_INDEX[ref_base], BASE_INDEX[ref_base])
    if paternal_base not in BASE_INDEX:
        return None
    return Genotype.from_bases(BASE_INDEX[ref_base], BASE_INDEX[paternal_base])


def call_chromosome(
    chrom_id: int,
    positions: Sequence[PosData],
    clusters: np.ndarray,
    n_clusters: int,
    ref_bases: np.ndarray,
    paternal_bases: Optional[np.ndarray],
    hetero_prior: float,
    theta: float,
) -> List[List[GenotypeCall]]:
    """Call every cluster at every position of one chromosome.

    ``ref_bases``/``paternal_bases`` hold the ASCII reference base at each position.
    Returns one list of calls per cluster, in position order.
    """
    calls: List[List[GenotypeCall]] = [[] for _ in range(n_clusters)]
    for i, pos in enumerate(positions):
        if pos.cell_ids.size and int(pos.cell_ids.max()) >= clusters.size:
            raise ValueError(
                f"Position {pos.position}: cell id {int(pos.cell_ids.max())} has no cluster "
                f"(assignment covers {clusters.size} cells)"
            )
        cluster_counts = np.zeros((n_clusters, 4), dtype=np.int64)
        np.add.at(cluster_counts, clusters[pos.cell_ids], pos.counts)
        total = cluster_counts.sum(axis=0)
        order = sort_order(total)
        hom_total = likely_homozygous(total, theta) is not None

        ref_base = chr(ref_bases[i])
        paternal_base = chr(paternal_bases[i]) if paternal_bases is not None else None
        ref_genotype = _reference_genotype(ref_base, paternal_base)

        for k in range(n_clusters):
            genotype, coverage = most_likely_genotype(
                cluster_counts[k], total, order, hom_total, hetero_prior, theta, with_coverage=True
            )
            if genotype is None:
                continue
            calls[k].append(
                GenotypeCall(
                    chromosome_id=chrom_id,
                    position=pos.position,
                    genotype=genotype,
                    coverage=coverage,
                    ref_base=ref_base,
                    ref_genotype=ref_genotype,
                )
            )
    return calls


def variant_calling(
    pos_data: Sequence[Sequence[PosData]],
    clusters: Sequence[int],
    reference_genome: str | Path,
    map_file: Optional[str | Path],
    hetero_prior: float,
    theta: float,
    out_dir: str | Path,
    *,
    num_threads: int = 1,
    progress: bool = False,
) -> Dict[str, object]:
    """Call the most likely genotype at each position for each cluster and write one VCF per cluster.

    Parameters
    ----------
    pos_data:
        Pileups per chromosome; chromosomes are indexed 0 to 23, with 22 = X and 23 = Y.
    clusters:
        The cluster of each cell.
    reference_genome:
        FASTA to call against. A Varsim diploid genome (first record ``*_maternal``) is
        remapped to the haploid ancestor through ``map_file``.
    map_file:
        Varsim map file; required for a diploid reference, ignored otherwise.
    hetero_prior:
        Probability that a locus is heterozygous.
    theta:
        Sequencing error rate.
    out_dir:
        Where the ``cluster_<k>.vcf`` files go.

    Returns
    -------
    Summary dict with per-cluster call counts and VCF paths.
    """
    t0 = time.time()
    theta = check_theta(theta)
    hetero_prior = check_hetero_prior(hetero_prior)
    n_threads = resolve_num_threads(num_threads)
    check_chromosome_count(len(pos_data))

    cluster_arr = np.asarray(clusters, dtype=np.int64).reshape(-1)
    if cluster_arr.size == 0:
        raise ValueError("Cluster assignment is empty")
    if cluster_arr.min() < 0:
        raise ValueError("Cluster ids must be non-negative")
    n_clusters = int(cluster_arr.max()) + 1

    is_diploid = check_is_diploid(reference_genome)
    chr_map: Dict[str, List[ChrMap]] = {}
    if is_diploid:
        if map_file is None:
            raise ValueError(f"{reference_genome} is a diploid genome; a map file is required")
        chr_map = read_map(map_file)
    logger.info(
        "Calling %d clusters against %s reference %s",
        n_clusters,
        "diploid" if is_diploid else "haploid",
        reference_genome,
    )

    # Reference access is sequential; only the bases at pileup positions are kept.
    tasks = []
    contigs: List[Tuple[str, int]] = []
    chrom_names: Dict[int, str] = {}
    for chrom_id, name, seq, paternal in iter_reference_chromosomes(reference_genome, chr_map, is_diploid):
        if chrom_id >= len(pos_data) or not pos_data[chrom_id]:
            continue
        positions = list(pos_data[chrom_id])
        coords = np.array([p.position for p in positions], dtype=np.int64)
        contigs.append((name, int(seq.shape[0])))
        chrom_names[chrom_id] = name
        tasks.append(
            (
                chrom_id,
                positions,
                _bases_at(seq, coords),
                _bases_at(paternal, coords) if paternal is not None else None,
            )
        )

    missing = [c for c in range(len(pos_data)) if pos_data[c] and c not in chrom_names]
    if missing:
        logger.warning("No reference sequence for chromosome ids %s; their positions are skipped", missing)

    def _run(task) -> List[List[GenotypeCall]]:
        chrom_id, positions, ref_bases, paternal_bases = task
        return call_chromosome(
            chrom_id, positions, cluster_arr, n_clusters, ref_bases, paternal_bases, hetero_prior, theta
        )

    n_workers = max(1, min(n_threads, len(tasks)))
    per_chrom: List[List[List[GenotypeCall]]] = []
    with tqdm(total=len(tasks), unit="chr", desc="Calling genotypes", disable=not progress) as pbar:
        with ThreadPoolExecutor(max_workers=n_workers) as ex:
            for result in ex.map(_run, tasks):
                per_chrom.append(result)
                pbar.update(1)

    out_path = ensure_outdir(out_dir)
    clusters_summary: Dict[str, Dict[str, object]] = {}
    for k in range(n_clusters):
        calls = [call for chrom_calls in per_chrom for call in chrom_calls[k]]
        vcf_path = out_path / f"cluster_{k}.vcf"
        n_written = write_cluster_vcf(
            vcf_path, calls, sample=f"cluster_{k}", contigs=contigs, chrom_names=chrom_names
        )
        variants = [c for c in calls if c.is_variant]
        clusters_summary[str(k)] = {
            "cells": int((cluster_arr == k).sum()),
            "called": len(calls),
            "variants": n_written,
            "het": sum(1 for c in variants if not c.genotype.is_homozygous),
            "hom_alt": sum(1 for c in variants if c.genotype.is_homozygous),
            "mean_coverage": float(np.mean([c.coverage for c in calls])) if calls else 0.0,
            "vcf": str(vcf_path),
        }
        logger.info("Cluster %d: %d calls, %d variants -> %s", k, len(calls), n_written, vcf_path)

    return {
        "reference_genome": str(reference_genome),
        "map_file": str(map_file) if map_file is not None else None,
        "is_diploid": is_diploid,
        "hetero_prior": hetero_prior,
        "theta": theta,
        "n_clusters": n_clusters,
        "chromosomes": [chrom_names[c] for c in sorted(chrom_names)],
        "clusters": clusters_summary,
        "runtime_seconds": float(time.time() - t0),
    }
