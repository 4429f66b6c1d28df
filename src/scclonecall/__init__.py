"""SCCloneCall: significance filtering and per-cluster genotype calling for single-cell DNA pileups.

Public API is intentionally small; most users should use the CLI:

    scclonecall filter --pileup ... --outdir ...
    scclonecall call --pileup ... --clusters ... --ref ... --outdir ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
