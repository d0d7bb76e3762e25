from pathlib import Path

import pysam
import pytest

from bayesvar.alleles import (
    BamAlleleSource,
    PloidyMap,
    genotype_alleles,
    group_alleles,
    read_ploidy_map,
    site_from_alleles,
    sufficient_alternate_observations,
)
from bayesvar.config import CallerParameters
from bayesvar.models import Allele, AlleleType
from bayesvar.toy_data import TOY_CONTIG, TOY_HET_POS0, TOY_NOISE_POS0, TOY_SAMPLES, make_toy_data
from bayesvar.validation import TargetRegions


def make_read(name: str, seq: str, start: int, cigar, rg: str = "rg0") -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start
    a.mapping_quality = 60
    a.cigartuples = cigar
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    a.set_tag("RG", rg)
    return a


def write_bam(path: Path, reads) -> Path:
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": TOY_CONTIG, "LN": 200}],
        "RG": [{"ID": "rg0", "SM": "S1"}],
    }
    with pysam.AlignmentFile(str(path), "wb", header=header) as bam:
        for r in sorted(reads, key=lambda r: r.reference_start):
            bam.write(r)
    pysam.index(str(path))
    return path


def test_toy_bam_yields_heterozygous_site(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    params = CallerParameters()
    with BamAlleleSource([toy["bam"]], toy["ref_fa"], allowed_types=params.allowed_allele_types) as source:
        assert source.sample_names == list(TOY_SAMPLES)
        sites = list(source.iter_sites([(TOY_CONTIG, TOY_HET_POS0, TOY_HET_POS0 + 1)]))
    assert len(sites) == 1
    site = sites[0]
    assert site.position == TOY_HET_POS0
    assert site.reference_base == "G"
    na1, na2 = TOY_SAMPLES
    assert list(site.samples) == [na1, na2]
    assert site.samples[na1].count("G") == 6
    assert site.samples[na1].count("A") == 6
    assert site.samples[na2].count("G") == 12
    snp = site.samples[na1].groups["A"][0]
    assert snp.type == AlleleType.SNP
    assert snp.base_quality == 40
    assert snp.map_quality == 60


def test_sites_are_streamed_in_order_and_respect_targets(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    targets = TargetRegions.from_intervals([(TOY_CONTIG, 100, 150)])
    params = CallerParameters()
    with BamAlleleSource(
        [toy["bam"]],
        toy["ref_fa"],
        allowed_types=params.allowed_allele_types,
        targets=targets,
        window_size=64,
    ) as source:
        sites = list(source.iter_sites())
    positions = [s.position for s in sites]
    assert positions == sorted(positions)
    assert len(positions) == len(set(positions))
    noise = [s for s in sites if s.position == TOY_NOISE_POS0][0]
    assert noise.in_target
    assert not [s for s in sites if s.position == TOY_HET_POS0][0].in_target


def test_base_quality_filter_drops_observations(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    params = CallerParameters()
    with BamAlleleSource(
        [toy["bam"]],
        toy["ref_fa"],
        allowed_types=params.allowed_allele_types,
        min_base_quality=41,
    ) as source:
        assert list(source.iter_sites([(TOY_CONTIG, TOY_HET_POS0, TOY_HET_POS0 + 1)])) == []


def test_indels_are_anchored_at_preceding_base(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    ref = pysam.FastaFile(toy["ref_fa"]).fetch(TOY_CONTIG)
    start = 20
    # insertion of "TT" after reference position 29, deletion of positions 40-41
    ins_seq = ref[start:30] + "TT" + ref[30:60]
    del_seq = ref[start:40] + ref[42:60]
    reads = [
        make_read("ins", ins_seq, start, [(0, 10), (1, 2), (0, 30)]),
        make_read("del", del_seq, start, [(0, 20), (2, 2), (0, 18)]),
    ]
    bam = write_bam(tmp_path / "indel.bam", reads)
    params = CallerParameters()
    with BamAlleleSource([str(bam)], toy["ref_fa"], allowed_types=params.allowed_allele_types) as source:
        sites = {s.position: s for s in source.iter_sites([(TOY_CONTIG, 25, 45)])}
    ins = sites[29].samples["S1"].groups["I:TT"][0]
    assert ins.type == AlleleType.INSERTION
    assert ins.length == 2
    dele = sites[39].samples["S1"].groups["D:2"][0]
    assert dele.type == AlleleType.DELETION
    assert dele.bases == ref[40:42]


def test_mnp_runs_when_allowed(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    ref = pysam.FastaFile(toy["ref_fa"]).fetch(TOY_CONTIG)
    seq = list(ref[20:60])
    for p in (30, 31):
        seq[p - 20] = "C" if ref[p] != "C" else "T"
    reads = [make_read("mnp", "".join(seq), 20, [(0, 40)])]
    bam = write_bam(tmp_path / "mnp.bam", reads)

    allowed = CallerParameters(allow_mnps=True).allowed_allele_types
    with BamAlleleSource([str(bam)], toy["ref_fa"], allowed_types=allowed) as source:
        site = [s for s in source.iter_sites([(TOY_CONTIG, 30, 31)])][0]
    (key, group), = list(site.samples["S1"])
    assert key == "M:" + "".join(seq[10:12])
    assert group[0].length == 2


def test_genotype_alleles_ordering_and_cap() -> None:
    alleles = (
        [Allele(AlleleType.REFERENCE, "A", sample="s1") for _ in range(5)]
        + [Allele(AlleleType.SNP, "T", sample="s1") for _ in range(2)]
        + [Allele(AlleleType.SNP, "C", sample="s2") for _ in range(4)]
        + [Allele(AlleleType.SNP, "G", sample="s2") for _ in range(2)]
        + [Allele(AlleleType.INSERTION, "AC", 2, sample="s2") for _ in range(1)]
    )
    site = site_from_alleles("chr1", 0, "A", alleles)
    groups = group_alleles(site.samples)
    out = genotype_alleles(
        groups, "A", allowed_types=CallerParameters().allowed_allele_types, min_alt_count=2, max_alleles=4
    )
    assert [a.key for a in out] == ["A", "C", "G", "T"]
    assert out[0].type == AlleleType.REFERENCE
    assert out[1].read_id == ""
    capped = genotype_alleles(
        groups, "A", allowed_types=CallerParameters().allowed_allele_types, min_alt_count=2, max_alleles=2
    )
    assert [a.key for a in capped] == ["A", "C"]


def test_sufficient_alternate_observations() -> None:
    alleles = [Allele(AlleleType.REFERENCE, "A", sample="s1") for _ in range(8)] + [
        Allele(AlleleType.SNP, "T", sample="s1") for _ in range(2)
    ]
    site = site_from_alleles("chr1", 0, "A", alleles)
    assert sufficient_alternate_observations(site.samples, 2, 0.0)
    assert sufficient_alternate_observations(site.samples, 2, 0.2)
    assert not sufficient_alternate_observations(site.samples, 3, 0.0)
    assert not sufficient_alternate_observations(site.samples, 2, 0.25)


def test_ploidy_map_file(tmp_path: Path) -> None:
    p = tmp_path / "ploidy.tsv"
    p.write_text("# sample\tploidy\nPOOL1\t20\nhap\t1\n", encoding="utf-8")
    ploidy = read_ploidy_map(p, default=2)
    assert ploidy("POOL1") == 20
    assert ploidy("hap") == 1
    assert ploidy("other") == 2

    bad = tmp_path / "bad.tsv"
    bad.write_text("POOL1\tzero\n", encoding="utf-8")
    with pytest.raises(ValueError):
        read_ploidy_map(bad)
    with pytest.raises(ValueError):
        PloidyMap(default=0)("x")
