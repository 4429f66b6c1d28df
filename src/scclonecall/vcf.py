from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Sequence, Tuple

import pysam

from . import __version__
from .models import BASES, Genotype, GenotypeCall

logger = logging.getLogger(__name__)


def vcf_alleles(ref_base: str, genotype: Genotype) -> Tuple[Tuple[str, ...], Tuple[int, int]]:
    """Alleles (REF first, then ALTs) and GT indices describing ``genotype`` against ``ref_base``."""
    called = [BASES[a] for a in genotype.alleles]
    alleles = [ref_base]
    for base in called:
        if base not in alleles:
            alleles.append(base)
    return tuple(alleles), (alleles.index(called[0]), alleles.index(called[1]))


def write_cluster_vcf(
    path: str | Path,
    calls: Iterable[GenotypeCall],
    *,
    sample: str,
    contigs: Sequence[Tuple[str, int]],
    chrom_names: Dict[int, str],
) -> int:
    """Write the variant calls of one cluster; calls equal to the reference genotype are skipped.

    Returns the number of records written.
    """
    header = pysam.VariantHeader()
    header.add_meta("source", f"scclonecall-{__version__}")
    for name, length in contigs:
        header.contigs.add(name, length=length)
    header.info.add("DP", number=1, type="Integer", description="Read depth of the cluster")
    header.formats.add("GT", number=1, type="String", description="Genotype")
    header.add_sample(sample)

    n_written = 0
    with pysam.VariantFile(str(path), "w", header=header) as vcf:
        for call in calls:
            if not call.is_variant:
                continue
            alleles, gt = vcf_alleles(call.ref_base, call.genotype)
            rec = vcf.new_record(
                contig=chrom_names[call.chromosome_id],
                start=call.position,
                stop=call.position + 1,
                alleles=alleles,
                filter="PASS",
            )
            rec.info["DP"] = int(call.coverage)
            rec.samples[sample]["GT"] = gt
            vcf.write(rec)
            n_written += 1

    logger.debug("Wrote %d records for %s to %s", n_written, sample, path)
    return n_written
