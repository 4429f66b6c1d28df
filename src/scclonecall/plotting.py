from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Mapping

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)


def plot_coverage_hist(
    *,
    coverages: List[int],
    out_png: str | Path,
    title: str = "Pooled coverage of retained positions",
    nbins: int = 40,
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    plt.figure()
    if coverages:
        plt.hist(coverages, bins=min(nbins, max(1, len(set(coverages)))))
    plt.xlabel("Pooled coverage")
    plt.ylabel("Position count")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_chromosome_counts(
    *,
    examined: Dict[str, int],
    kept: Dict[str, int],
    out_png: str | Path,
    title: str = "Positions per chromosome",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = list(examined)
    xs = range(len(labels))
    plt.figure()
    plt.bar([x - 0.2 for x in xs], [examined[c] for c in labels], width=0.4, label="examined")
    plt.bar([x + 0.2 for x in xs], [kept.get(c, 0) for c in labels], width=0.4, label="kept")
    plt.xticks(list(xs), labels, rotation=0)
    plt.xlabel("Chromosome")
    plt.ylabel("Position count")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_genotype_counts(
    *,
    clusters: Mapping[str, Mapping[str, object]],
    out_png: str | Path,
    title: str = "Variant calls per cluster",
) -> None:
    """Stacked bars of heterozygous and homozygous-alternative calls per cluster."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = [f"cluster {k}" for k in clusters]
    het = [int(v.get("het", 0)) for v in clusters.values()]  # type: ignore[arg-type]
    hom = [int(v.get("hom_alt", 0)) for v in clusters.values()]  # type: ignore[arg-type]

    plt.figure()
    plt.bar(labels, het, label="heterozygous")
    plt.bar(labels, hom, bottom=het, label="homozygous alt")
    plt.ylabel("Variant count")
    plt.title(title)
    plt.xticks(rotation=15, ha="right")
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
