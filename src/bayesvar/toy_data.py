from __future__ import annotations

from pathlib import Path
from typing import Dict, List

import pysam

from .utils import ensure_outdir, write_json

TOY_CONTIG = "chr1"
TOY_SAMPLES = ("NA0001", "NA0002")
TOY_HET_POS0 = 50
TOY_NOISE_POS0 = 120


def _write_fasta(path: Path, contig: str, seq: str) -> None:
    lines = [f">{contig}"]
    for i in range(0, len(seq), 60):
        lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def _make_read(
    name: str,
    start0: int,
    seq: str,
    read_group: str,
    mapq: int = 60,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = [(0, len(seq))]
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    a.set_tag("RG", read_group)
    return a


def make_toy_data(*, outdir: str | Path, reads_per_sample: int = 12) -> Dict[str, str]:
    """Create a tiny reference and a two-sample BAM suitable for quick demos/tests.

    - position 51 (1-based): NA0001 is heterozygous, NA0002 homozygous reference
    - position 121: a single sequencing error in NA0002, which should not be called

    The outputs include:
    - toy_ref.fa (+ .fai)
    - toy.bam (+ .bai), one read group per sample

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)

    ref_seq = ("ACGT" * 50)[:200]
    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, TOY_CONTIG, ref_seq)
    pysam.faidx(str(ref_fa))

    het_alt = _mutate_base(ref_seq[TOY_HET_POS0])
    noise_alt = _mutate_base(ref_seq[TOY_NOISE_POS0])

    bam_path = outdir_p / "toy.bam"
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": TOY_CONTIG, "LN": len(ref_seq)}],
        "RG": [{"ID": f"rg{i}", "SM": s} for i, s in enumerate(TOY_SAMPLES)],
    }

    reads: List[pysam.AlignedSegment] = []
    for si, sample in enumerate(TOY_SAMPLES):
        rg = f"rg{si}"
        for i in range(reads_per_sample):
            start0 = 30 + i
            seq = list(ref_seq[start0 : start0 + 50])
            if si == 0 and i % 2 == 0:
                seq[TOY_HET_POS0 - start0] = het_alt
            reads.append(_make_read(f"{sample}_a{i}", start0, "".join(seq), rg))

        for i in range(reads_per_sample):
            start0 = 100 + i
            seq = list(ref_seq[start0 : start0 + 50])
            if si == 1 and i == 0:
                seq[TOY_NOISE_POS0 - start0] = noise_alt
            reads.append(_make_read(f"{sample}_b{i}", start0, "".join(seq), rg))

    reads.sort(key=lambda r: r.reference_start)

    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)

    pysam.index(str(bam_path))

    summary = {
        "ref_fa": str(ref_fa),
        "bam": str(bam_path),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
