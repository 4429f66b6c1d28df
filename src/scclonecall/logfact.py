"""Log-factorial used by the significance test and the genotype likelihoods.

Small arguments are served from a table built once at import; larger ones use
Stirling's series, whose relative error beyond the table is below 1e-12.
"""

from __future__ import annotations

import math

import numpy as np

LOG_FACT_TABLE_SIZE = 1024

_LOG_2PI = math.log(2.0 * math.pi)


def _build_table(size: int) -> np.ndarray:
    table = np.zeros(size, dtype=np.float64)
    table[1:] = np.cumsum(np.log(np.arange(1, size, dtype=np.float64)))
    table.flags.writeable = False
    return table


_LOG_FACT_TABLE = _build_table(LOG_FACT_TABLE_SIZE)


def stirling_log_fact(n: int) -> float:
    n = float(n)
    return n * math.log(n) - n + 0.5 * (_LOG_2PI + math.log(n)) + 1.0 / (12.0 * n) - 1.0 / (360.0 * n**3)


def log_fact(n: int) -> float:
    """Return ln(n!) for a non-negative integer n."""
    if n < 0:
        raise ValueError(f"log_fact is undefined for negative n: {n}")
    if n < LOG_FACT_TABLE_SIZE:
        return float(_LOG_FACT_TABLE[n])
    return stirling_log_fact(n)


def log_binom(n: int, k: int) -> float:
    """ln C(n, k)."""
    return log_fact(n) - log_fact(k) - log_fact(n - k)
