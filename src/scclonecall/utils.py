from __future__ import annotations

import gzip
import json
import logging
from pathlib import Path
from typing import Any, List, TextIO, Tuple

logger = logging.getLogger(__name__)


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)


def split_ranges(lengths: List[int], n_parts: int) -> List[Tuple[int, int, int]]:
    """Split per-chromosome position counts into contiguous ``(chrom, start, end)`` ranges.

    Produces about ``n_parts`` ranges of near-equal size; a range never crosses a
    chromosome boundary and is never empty.
    """
    total = sum(lengths)
    if total == 0:
        return []
    size = max(1, -(-total // max(1, n_parts)))
    ranges: List[Tuple[int, int, int]] = []
    for chrom, length in enumerate(lengths):
        for start in range(0, length, size):
            ranges.append((chrom, start, min(start + size, length)))
    return ranges
