from __future__ import annotations

import logging
import math
from typing import Optional, Sequence, Tuple

import numpy as np

from .logfact import log_binom
from .models import PosData
from .validation import check_theta

logger = logging.getLogger(__name__)

# A position is kept when the chance of seeing that many non-dominant reads from
# sequencing errors alone falls below this level.
SIGNIFICANCE_LEVEL = 1e-3

# Stop summing the binomial tail once terms are this much smaller (log scale) than the largest one.
_TAIL_CUTOFF = math.log(1e-16)


def error_tail_probability(k: int, n: int, theta: float) -> float:
    """P(X >= k) for X ~ Binomial(n, theta), summed exactly in log space."""
    if k <= 0:
        return 1.0
    if k > n:
        return 0.0

    log_theta = math.log(theta)
    log_not_theta = math.log1p(-theta)
    mode = int((n + 1) * theta)

    best = -math.inf
    acc = 0.0  # sum of exp(term - best)
    for i in range(k, n + 1):
        term = log_binom(n, i) + i * log_theta + (n - i) * log_not_theta
        if term > best:
            acc = acc * math.exp(best - term) + 1.0 if acc > 0.0 else 1.0
            best = term
        else:
            acc += math.exp(term - best)
        # terms decrease monotonically past the mode
        if i > mode and term - best < _TAIL_CUTOFF:
            break
    return min(1.0, math.exp(best) * acc)


def _is_significant(counts: np.ndarray, theta: float) -> bool:
    n = int(counts.sum())
    if n == 0:
        return False
    k = n - int(counts.max())
    # at or below the expected error count the tail probability is at least one half
    if k <= n * theta:
        return False
    return error_tail_probability(k, n, theta) < SIGNIFICANCE_LEVEL


def as_base_count(base_count: Sequence[int]) -> np.ndarray:
    counts = np.asarray(base_count, dtype=np.int64).reshape(-1)
    if counts.shape != (4,):
        raise ValueError(f"A base count needs exactly 4 entries (A, C, G, T), got {counts.shape[0]}")
    if (counts < 0).any():
        raise ValueError(f"Base counts must be non-negative: {counts.tolist()}")
    return counts


def is_significant(base_count: Sequence[int], theta: float) -> bool:
    """Decide whether a position is worth keeping.

    Null hypothesis: all reads come from a single homozygous genotype (the dominant base)
    and every other read is a sequencing error, each read erring independently with
    probability ``theta``. The position is significant when the probability of at least
    the observed number of non-dominant reads under the null is below
    :data:`SIGNIFICANCE_LEVEL`.

    Parameters
    ----------
    base_count:
        Counts of A, C, G and T in the pooled data at a fixed position.
    theta:
        Sequencing error rate (e.g. ~0.01 on Illumina machines).
    """
    return _is_significant(as_base_count(base_count), check_theta(theta))


def is_significant_pos(
    pos: PosData,
    theta: float,
    cells: Optional[np.ndarray] = None,
) -> Tuple[bool, int]:
    """Pool the per-cell counts of ``pos`` and test them.

    ``cells`` optionally restricts pooling to a boolean mask over ``pos.cell_ids``.
    Returns the decision and the pooled coverage.
    """
    counts = pos.total_counts(cells)
    return _is_significant(counts, check_theta(theta)), int(counts.sum())
