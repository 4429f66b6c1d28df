from pathlib import Path
from typing import List

import numpy as np
import pysam
import pytest

from scclonecall.models import N_CHROMOSOMES, ChrMap, Genotype, PosData
from scclonecall.variant_calling import (
    GenomeFormatError,
    MapFileError,
    apply_map,
    call_chromosome,
    check_is_diploid,
    read_map,
    variant_calling,
)
from scclonecall.vcf import vcf_alleles


def _seq(s: str) -> np.ndarray:
    return np.frombuffer(s.encode("ascii"), dtype=np.uint8)


def _write_fasta(path: Path, records: dict) -> Path:
    path.write_text("".join(f">{name}\n{seq}\n" for name, seq in records.items()), encoding="utf-8")
    pysam.faidx(str(path))
    return path


def _pileups(chrom0: List[PosData]) -> List[List[PosData]]:
    pos_data: List[List[PosData]] = [[] for _ in range(N_CHROMOSOMES)]
    pos_data[0] = chrom0
    return pos_data


def _subclonal_position(pos0: int) -> PosData:
    # cells 0,1 (cluster 0) homozygous A; cells 2,3 (cluster 1) heterozygous A/T
    return PosData.from_cell_counts(
        pos0,
        {0: (10, 0, 0, 0), 1: (10, 0, 0, 0), 2: (5, 0, 0, 5), 3: (5, 0, 0, 5)},
    )


def test_read_map(tmp_path: Path) -> None:
    map_file = tmp_path / "genome.map"
    map_file.write_text(
        "# varsim map\n"
        "100 1_maternal 1 1 1 + SEQ 0\n"
        "5 1_maternal 201 1 191 + DEL 2\n"
        "10 1_maternal 101 1 101 + INS 1\n"
        "\n"
        "3 X_paternal 11 X 11 + INS 4\n",
        encoding="utf-8",
    )
    blocks = read_map(map_file)
    assert blocks == {
        "1_maternal": [ChrMap(0, 100, 10, "I"), ChrMap(0, 200, 5, "D")],
        "X_paternal": [ChrMap(22, 10, 3, "I")],
    }


@pytest.mark.parametrize(
    "line",
    [
        "10 1_maternal 101 1 101 + INS\n",
        "ten 1_maternal 101 1 101 + INS 1\n",
        "10 1_maternal 0 1 101 + INS 1\n",
    ],
)
def test_read_map_rejects_malformed_lines(tmp_path: Path, line: str) -> None:
    map_file = tmp_path / "bad.map"
    map_file.write_text(line, encoding="utf-8")
    with pytest.raises(MapFileError, match="bad.map:1"):
        read_map(map_file)
    assert issubclass(MapFileError, ValueError)


def test_apply_map() -> None:
    data = _seq("AAAACCCCGGGG")
    assert apply_map([], data).tobytes() == b"AAAACCCCGGGG"
    assert apply_map([ChrMap(0, 4, 4, "I")], data).tobytes() == b"AAAAGGGG"
    assert apply_map([ChrMap(0, 4, 2, "D")], data).tobytes() == b"AAAANNCCCCGGGG"
    mixed = [ChrMap(0, 0, 2, "I"), ChrMap(0, 6, 1, "D")]
    assert apply_map(mixed, data).tobytes() == b"AACCNCCGGGG"


def test_check_is_diploid(tmp_path: Path) -> None:
    diploid = tmp_path / "diploid.fa"
    diploid.write_text(">1_maternal\nACGT\n>1_paternal\nACGT\n", encoding="utf-8")
    haploid = tmp_path / "haploid.fa"
    haploid.write_text("\n>1\nACGT\n", encoding="utf-8")
    assert check_is_diploid(diploid) is True
    assert check_is_diploid(haploid) is False

    broken = tmp_path / "broken.fa"
    broken.write_text("ACGT\n", encoding="utf-8")
    with pytest.raises(GenomeFormatError):
        check_is_diploid(broken)
    empty = tmp_path / "empty.fa"
    empty.write_text("", encoding="utf-8")
    with pytest.raises(GenomeFormatError):
        check_is_diploid(empty)


def test_call_chromosome() -> None:
    clusters = np.array([0, 0, 1, 1])
    calls = call_chromosome(0, [_subclonal_position(7)], clusters, 2, _seq("A"), None, 1e-3, 0.01)
    assert [c.genotype for c in calls[0]] == [Genotype.AA]
    assert [c.genotype for c in calls[1]] == [Genotype.AT]
    assert calls[0][0].is_variant is False
    assert calls[1][0].is_variant is True
    assert calls[1][0].coverage == 20


def test_call_chromosome_skips_empty_clusters() -> None:
    pos = PosData.from_cell_counts(3, {0: (8, 0, 0, 0)})
    calls = call_chromosome(0, [pos], np.array([0, 1]), 2, _seq("A"), None, 1e-3, 0.01)
    assert len(calls[0]) == 1
    assert calls[1] == []


def test_call_chromosome_rejects_unassigned_cells() -> None:
    with pytest.raises(ValueError):
        call_chromosome(0, [_subclonal_position(7)], np.array([0, 0, 1]), 2, _seq("A"), None, 1e-3, 0.01)


def test_vcf_alleles() -> None:
    assert vcf_alleles("A", Genotype.AT) == (("A", "T"), (0, 1))
    assert vcf_alleles("A", Genotype.TT) == (("A", "T"), (1, 1))
    assert vcf_alleles("G", Genotype.AC) == (("G", "A", "C"), (1, 2))


@pytest.mark.parametrize("threads", [1, 3])
def test_variant_calling_haploid(tmp_path: Path, threads: int) -> None:
    ref = _write_fasta(tmp_path / "ref.fa", {"1": "ACGT" * 10, "2": "ACGT" * 10})
    hom = PosData.from_cell_counts(5, {c: (0, 6, 0, 0) for c in range(4)})
    pos_data = _pileups([_subclonal_position(0), hom])

    summary = variant_calling(pos_data, [0, 0, 1, 1], ref, None, 1e-3, 0.01, tmp_path / "out", num_threads=threads)

    assert summary["is_diploid"] is False
    assert summary["n_clusters"] == 2
    assert summary["chromosomes"] == ["1"]
    assert summary["clusters"]["0"]["variants"] == 0
    assert summary["clusters"]["1"]["het"] == 1

    with pysam.VariantFile(str(tmp_path / "out" / "cluster_0.vcf")) as vcf:
        assert list(vcf) == []
    with pysam.VariantFile(str(tmp_path / "out" / "cluster_1.vcf")) as vcf:
        records = list(vcf)
    assert len(records) == 1
    rec = records[0]
    assert (rec.chrom, rec.pos, rec.ref, rec.alts) == ("1", 1, "A", ("T",))
    assert rec.info["DP"] == 20
    assert rec.samples["cluster_1"]["GT"] == (0, 1)


def test_variant_calling_diploid(tmp_path: Path) -> None:
    # paternal copy carries T at position 5 and an extra inserted base at 8
    ref = _write_fasta(
        tmp_path / "diploid.fa",
        {"1_maternal": "AAAAAAAAAA", "1_paternal": "AAAAATAAGAA"},
    )
    map_file = tmp_path / "diploid.map"
    map_file.write_text(
        "10 1_maternal 1 1 1 + SEQ 0\n"
        "1 1_paternal 9 1 9 + INS 1\n",
        encoding="utf-8",
    )
    germline = PosData.from_cell_counts(5, {c: (4, 0, 0, 4) for c in range(4)})
    pos_data = _pileups([_subclonal_position(2), germline])

    summary = variant_calling(pos_data, [0, 0, 1, 1], ref, map_file, 1e-3, 0.01, tmp_path / "out")
    assert summary["is_diploid"] is True

    with pysam.VariantFile(str(tmp_path / "out" / "cluster_1.vcf")) as vcf:
        records = list(vcf)
    # the germline A/T site matches the diploid reference and is not reported
    assert [(r.pos, r.ref, r.alts) for r in records] == [(3, "A", ("T",))]
    with pysam.VariantFile(str(tmp_path / "out" / "cluster_0.vcf")) as vcf:
        assert list(vcf) == []


def test_variant_calling_diploid_requires_map(tmp_path: Path) -> None:
    ref = _write_fasta(tmp_path / "diploid.fa", {"1_maternal": "AAAA", "1_paternal": "AAAA"})
    with pytest.raises(ValueError, match="map file"):
        variant_calling(_pileups([]), [0], ref, None, 1e-3, 0.01, tmp_path / "out")


def test_variant_calling_rejects_bad_parameters(tmp_path: Path) -> None:
    ref = _write_fasta(tmp_path / "ref.fa", {"1": "ACGT"})
    with pytest.raises(ValueError):
        variant_calling(_pileups([]), [0], ref, None, 1.5, 0.01, tmp_path / "out")
    with pytest.raises(ValueError):
        variant_calling(_pileups([]), [0], ref, None, 1e-3, 0.0, tmp_path / "out")
    with pytest.raises(ValueError):
        variant_calling(_pileups([]), [], ref, None, 1e-3, 0.01, tmp_path / "out")
