from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from .logfact import log_fact
from .models import Genotype
from .significance import as_base_count
from .validation import check_hetero_prior, check_theta

logger = logging.getLogger(__name__)


def sort_order(base_count: Sequence[int]) -> np.ndarray:
    """Base indices sorting ``base_count`` in decreasing order; ties keep A, C, G, T order."""
    counts = np.asarray(base_count, dtype=np.int64)
    return np.argsort(-counts, kind="stable")


def likely_homozygous(base_count: Sequence[int], theta: float) -> Optional[Genotype]:
    """Return the homozygous genotype of the dominant base if the locus is likely homozygous.

    The locus is declared homozygous when the number of non-dominant bases is no more
    than one standard deviation above the number expected from sequencing errors alone
    (``n * theta``, binomial standard deviation). The dominant base is the first maximum
    in A, C, G, T order. Returns None for zero coverage or a likely non-homozygous locus.
    """
    theta = check_theta(theta)
    counts = as_base_count(base_count)
    n = int(counts.sum())
    if n == 0:
        return None
    dominant = int(np.argmax(counts))
    non_dominant = n - int(counts[dominant])
    expected = n * theta
    sd = math.sqrt(n * theta * (1.0 - theta))
    if non_dominant <= expected + sd:
        return Genotype.from_bases(dominant, dominant)
    return None


def genotype_log_likelihood(base_count: Sequence[int], genotype: Genotype, theta: float) -> float:
    """Log-likelihood of the observed counts under ``genotype`` and a uniform substitution error.

    A read shows allele ``x`` with probability ``1 - theta`` and each of the other three
    bases with ``theta / 3``; both alleles of the genotype are sampled with equal chance.
    """
    counts = np.asarray(base_count, dtype=np.int64)
    x, y = genotype.alleles
    match = 1.0 - theta
    mismatch = theta / 3.0
    ll = log_fact(int(counts.sum()))
    for b in range(4):
        c = int(counts[b])
        if c == 0:
            continue
        p = 0.5 * (match if b == x else mismatch) + 0.5 * (match if b == y else mismatch)
        ll += c * math.log(p) - log_fact(c)
    return ll


def _log_or_ninf(p: float) -> float:
    return math.log(p) if p > 0.0 else -math.inf


def candidate_genotypes(
    total_sort_order: Sequence[int],
    likely_homozygous_total: bool,
) -> List[Genotype]:
    """Candidates in tie-break order: hom(top), het(top, second), hom(second)."""
    a1, a2 = int(total_sort_order[0]), int(total_sort_order[1])
    if likely_homozygous_total:
        return [Genotype.from_bases(a1, a1), Genotype.from_bases(a2, a2)]
    return [Genotype.from_bases(a1, a1), Genotype.from_bases(a1, a2), Genotype.from_bases(a2, a2)]


def genotype_log_posteriors(
    cluster_counts: Sequence[int],
    candidates: Sequence[Genotype],
    hetero_prior: float,
    theta: float,
) -> List[float]:
    """Unnormalised log posterior of each candidate."""
    n_hom = sum(1 for g in candidates if g.is_homozygous)
    log_het = _log_or_ninf(hetero_prior)
    log_hom = _log_or_ninf((1.0 - hetero_prior) / n_hom) if n_hom else -math.inf
    return [
        genotype_log_likelihood(cluster_counts, g, theta) + (log_hom if g.is_homozygous else log_het)
        for g in candidates
    ]


def most_likely_genotype(
    cluster_counts: Sequence[int],
    total_counts: Sequence[int],
    total_sort_order: Sequence[int],
    likely_homozygous_total: bool,
    hetero_prior: float,
    theta: float,
    *,
    with_coverage: bool = False,
) -> Union[Optional[Genotype], Tuple[Optional[Genotype], int]]:
    """Find the most likely genotype of a cluster at one locus.

    Parameters
    ----------
    cluster_counts:
        A, C, G, T counts of the cluster.
    total_counts:
        A, C, G, T counts at the locus over all clusters.
    total_sort_order:
        Indices sorting ``total_counts`` in decreasing order (see :func:`sort_order`).
        Only the two most frequent pooled alleles are considered.
    likely_homozygous_total:
        True if the pooled locus is likely homozygous; heterozygous candidates are then
        skipped.
    hetero_prior:
        Prior probability of a heterozygous genotype.
    theta:
        Sequencing error rate.
    with_coverage:
        Also return the cluster coverage.

    Returns
    -------
    The maximum-posterior genotype, or None when the cluster has no coverage.
    """
    theta = check_theta(theta)
    hetero_prior = check_hetero_prior(hetero_prior)
    counts = as_base_count(cluster_counts)
    if len(total_counts) != 4:
        raise ValueError("total_counts needs exactly 4 entries")
    coverage = int(counts.sum())

    genotype: Optional[Genotype] = None
    if coverage > 0:
        candidates = candidate_genotypes(total_sort_order, likely_homozygous_total)
        scores = genotype_log_posteriors(counts, candidates, hetero_prior, theta)
        best = 0
        for i in range(1, len(candidates)):
            if scores[i] > scores[best]:
                best = i
        genotype = candidates[best]

    if with_coverage:
        return genotype, coverage
    return genotype
