from __future__ import annotations

import logging
import os
from typing import Optional

from .models import N_CHROMOSOMES

logger = logging.getLogger(__name__)


_UCSC_PREFIX = "chr"
_SEX_CHROMOSOMES = {"X": 22, "Y": 23}


def check_theta(theta: float) -> float:
    """Sequencing error rate must lie strictly inside (0, 1)."""
    theta = float(theta)
    if not 0.0 < theta < 1.0:
        raise ValueError(f"Sequencing error rate must be in (0, 1), got {theta}")
    return theta


def check_hetero_prior(hetero_prior: float) -> float:
    hetero_prior = float(hetero_prior)
    if not 0.0 <= hetero_prior <= 1.0:
        raise ValueError(f"Heterozygosity prior must be in [0, 1], got {hetero_prior}")
    return hetero_prior


def resolve_num_threads(num_threads: int) -> int:
    """Map a requested thread count to a concrete one; 0 means all available cores."""
    if isinstance(num_threads, bool) or int(num_threads) != num_threads:
        raise ValueError(f"Thread count must be an integer, got {num_threads!r}")
    num_threads = int(num_threads)
    if num_threads < 0:
        raise ValueError(f"Thread count must be >= 0, got {num_threads}")
    if num_threads == 0:
        return os.cpu_count() or 1
    return num_threads


def chromosome_id(name: str) -> Optional[int]:
    """Map a chromosome name (``1``, ``chr7``, ``X``, ``chrY``) to 0..23, or None if not a main chromosome."""
    core = name[len(_UCSC_PREFIX) :] if name.startswith(_UCSC_PREFIX) else name
    core = core.upper()
    if core in _SEX_CHROMOSOMES:
        return _SEX_CHROMOSOMES[core]
    if core.isdigit() and 1 <= int(core) <= 22:
        return int(core) - 1
    return None


def chromosome_name(chromosome_id: int, style: str = "ensembl") -> str:
    """Inverse of :func:`chromosome_id`."""
    if not 0 <= chromosome_id < N_CHROMOSOMES:
        raise ValueError(f"Chromosome id out of range: {chromosome_id}")
    if chromosome_id == 22:
        core = "X"
    elif chromosome_id == 23:
        core = "Y"
    else:
        core = str(chromosome_id + 1)
    if style == "ucsc":
        return f"{_UCSC_PREFIX}{core}"
    return core


def check_chromosome_count(n_chromosomes: int) -> None:
    if n_chromosomes > N_CHROMOSOMES:
        raise ValueError(
            f"Pileups hold {n_chromosomes} chromosomes; ids must be in 0..{N_CHROMOSOMES - 1}"
        )
