"""Allele source: per-position allele observations from BAM files.

Reads are piled up window by window against the FASTA reference. Each read
contributes at most one allele per position:

- an insertion or deletion anchored at the base preceding the event,
- a multi-nucleotide substitution (a run of mismatches inside one aligned
  block) starting at its first base, when MNPs are allowed,
- otherwise the reference or SNP base.

Observations are grouped per sample (read-group ``SM`` tag, falling back to
the BAM file stem) and by allele key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import pysam

from .models import Allele, AlleleType, Sample, Site, genotype_allele
from .validation import TargetRegions

logger = logging.getLogger(__name__)

_PILEUP_MAX_DEPTH = 100_000
_REFERENCE_PAD = 1_000
ACGT = frozenset("ACGT")


@dataclass(frozen=True)
class PloidyMap:
    """Sample name -> ploidy, with a default for unlisted samples.

    Pooled samples are listed with ploidy = 2 x pool size.
    """

    default: int = 2
    overrides: Mapping[str, int] = field(default_factory=dict)

    def __call__(self, sample: str) -> int:
        ploidy = int(self.overrides.get(sample, self.default))
        if ploidy < 1:
            raise ValueError(f"Invalid ploidy {ploidy} for sample {sample}")
        return ploidy


def read_ploidy_map(path: str | Path, *, default: int = 2) -> PloidyMap:
    """Read a two-column (sample, ploidy) tab-separated file."""
    overrides: Dict[str, int] = {}
    with open(path, "rt", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) != 2:
                raise ValueError(f"{path}:{lineno}: expected 'sample<TAB>ploidy', got {line!r}")
            try:
                overrides[parts[0]] = int(parts[1])
            except ValueError:
                raise ValueError(f"{path}:{lineno}: ploidy must be an integer, got {parts[1]!r}") from None
            if overrides[parts[0]] < 1:
                raise ValueError(f"{path}:{lineno}: ploidy must be >= 1")
    return PloidyMap(default=default, overrides=overrides)


# -----------------
# Site-level helpers
# -----------------


def count_alleles(samples: Mapping[str, Sample]) -> int:
    return sum(s.observation_count() for s in samples.values())


def sufficient_alternate_observations(
    samples: Mapping[str, Sample],
    min_alt_count: int,
    min_alt_fraction: float,
) -> bool:
    """True if any sample has enough non-reference observations to be worth calling."""
    for sample in samples.values():
        total = sample.observation_count()
        if total == 0:
            continue
        alt = sum(len(v) for k, v in sample if v and not v[0].type & AlleleType.REFERENCE)
        if alt >= min_alt_count and alt / float(total) >= min_alt_fraction:
            return True
    return False


def group_alleles(samples: Mapping[str, Sample]) -> Dict[str, List[Allele]]:
    """Pool observations of all samples by allele key."""
    groups: Dict[str, List[Allele]] = {}
    for sample in samples.values():
        for key, alleles in sample:
            groups.setdefault(key, []).extend(alleles)
    return groups


def genotype_alleles(
    groups: Mapping[str, Sequence[Allele]],
    reference_base: str,
    *,
    allowed_types: AlleleType,
    min_alt_count: int,
    max_alleles: int,
) -> List[Allele]:
    """Candidate alleles for genotyping: the reference plus supported alternates.

    Alternates are ordered by observation count (descending), then by key, and
    capped so that at most ``max_alleles`` alleles are returned.
    """
    alleles = [genotype_allele(AlleleType.REFERENCE, reference_base)]
    candidates: List[Tuple[int, str, Allele]] = []
    for key, obs in groups.items():
        if not obs:
            continue
        first = obs[0]
        if first.type & AlleleType.REFERENCE or not first.type & allowed_types:
            continue
        if len(obs) < max(1, min_alt_count):
            continue
        candidates.append((len(obs), key, first.genotype_allele()))
    candidates.sort(key=lambda c: (-c[0], c[1]))
    for _, _, allele in candidates[: max(0, max_alleles - 1)]:
        alleles.append(allele)
    return alleles


def site_from_alleles(
    contig: str,
    position: int,
    reference_base: str,
    alleles: Iterable[Allele],
    *,
    sample_names: Optional[Sequence[str]] = None,
    in_target: bool = True,
) -> Site:
    """Build a Site from observations in memory (each allele names its sample)."""
    samples: Dict[str, Sample] = {}
    for name in sample_names or ():
        samples[name] = Sample(name)
    for a in alleles:
        samples.setdefault(a.sample, Sample(a.sample)).add(a)
    samples = {k: v for k, v in samples.items() if v.observation_count() > 0}
    return Site(
        contig=contig,
        position=position,
        reference_base=reference_base.upper(),
        samples=samples,
        in_target=in_target,
    )


def reference_sample(site: Site, *, base_quality: int, map_quality: int) -> Sample:
    """Pseudo-sample named after the contig, with one reference observation."""
    sample = Sample(site.contig)
    base = site.reference_base.upper()
    sample.add(Allele(AlleleType.REFERENCE, base, 1, "reference", base_quality, map_quality, site.contig))
    return sample


# -----------------
# BAM pileup source
# -----------------


def _read_group_samples(bam: pysam.AlignmentFile, fallback: str) -> Tuple[Dict[str, str], str]:
    header = bam.header.to_dict()
    rg_to_sample: Dict[str, str] = {}
    for rg in header.get("RG", []):
        if "ID" in rg:
            rg_to_sample[str(rg["ID"])] = str(rg.get("SM", fallback))
    default = fallback
    names = sorted(set(rg_to_sample.values()))
    if len(names) == 1:
        default = names[0]
    return rg_to_sample, default


def _block_end(read: pysam.AlignedSegment, ref_pos: int) -> int:
    for start, end in read.get_blocks():
        if start <= ref_pos < end:
            return end
    return ref_pos + 1


class BamAlleleSource:
    """Stream ``Site`` objects from one or more BAMs and a FASTA reference."""

    def __init__(
        self,
        bam_paths: Sequence[str],
        reference_path: str,
        *,
        allowed_types: AlleleType,
        min_base_quality: int = 0,
        min_mapping_quality: int = 0,
        targets: Optional[TargetRegions] = None,
        window_size: int = 10_000,
    ) -> None:
        if not bam_paths:
            raise ValueError("At least one BAM is required")
        self.bam_paths = list(bam_paths)
        self.reference = pysam.FastaFile(reference_path)
        self.bams = [pysam.AlignmentFile(p, "rb") for p in self.bam_paths]
        self.allowed_types = allowed_types
        self.min_base_quality = int(min_base_quality)
        self.min_mapping_quality = int(min_mapping_quality)
        self.targets = targets
        self.window_size = int(window_size)

        self._rg_maps: List[Dict[str, str]] = []
        self._default_samples: List[str] = []
        names: List[str] = []
        for path, bam in zip(self.bam_paths, self.bams):
            rg_map, default = _read_group_samples(bam, Path(path).name.split(".")[0])
            self._rg_maps.append(rg_map)
            self._default_samples.append(default)
            for n in sorted(set(rg_map.values())) or [default]:
                if n not in names:
                    names.append(n)
        self.sample_names: List[str] = names

    def close(self) -> None:
        for bam in self.bams:
            bam.close()
        self.reference.close()

    def __enter__(self) -> "BamAlleleSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def contigs(self) -> List[Tuple[str, int]]:
        """Contigs present in both the first BAM and the reference."""
        ref = set(self.reference.references)
        bam = self.bams[0]
        return [(c, n) for c, n in zip(bam.references, bam.lengths) if c in ref]

    def iter_sites(self, regions: Optional[Sequence[Tuple[str, int, int]]] = None) -> Iterator[Site]:
        """Yield covered positions in coordinate order within ``regions`` (0-based, half-open)."""
        if regions is None:
            regions = [(c, 0, n) for c, n in self.contigs()]
        for contig, start, end in regions:
            for ws in range(start, end, self.window_size):
                we = min(end, ws + self.window_size)
                yield from self._iter_window(contig, ws, we)

    def _sample_for(self, bam_idx: int, read: pysam.AlignedSegment) -> str:
        if read.has_tag("RG"):
            rg = str(read.get_tag("RG"))
            name = self._rg_maps[bam_idx].get(rg)
            if name is not None:
                return name
        return self._default_samples[bam_idx]

    def _iter_window(self, contig: str, ws: int, we: int) -> Iterator[Site]:
        ref_end = min(self.reference.get_reference_length(contig), we + _REFERENCE_PAD)
        ref_seq = self.reference.fetch(contig, ws, ref_end).upper()

        by_pos: Dict[int, Dict[str, Sample]] = {}
        for idx, bam in enumerate(self.bams):
            for column in bam.pileup(
                contig,
                ws,
                we,
                truncate=True,
                min_base_quality=0,
                max_depth=_PILEUP_MAX_DEPTH,
            ):
                pos = column.reference_pos
                for pr in column.pileups:
                    sample = self._sample_for(idx, pr.alignment)
                    allele = self._extract_allele(pr, pos, ws, ref_seq, sample)
                    if allele is None:
                        continue
                    samples = by_pos.setdefault(pos, {})
                    samples.setdefault(allele.sample, Sample(allele.sample)).add(allele)

        for pos in sorted(by_pos):
            found = by_pos[pos]
            order = self.sample_names + sorted(n for n in found if n not in self.sample_names)
            ordered = {n: found[n] for n in order if n in found}
            in_target = True if self.targets is None else self.targets.contains(contig, pos)
            yield Site(
                contig=contig,
                position=pos,
                reference_base=ref_seq[pos - ws],
                samples=ordered,
                in_target=in_target,
            )

    def _extract_allele(
        self,
        pr: pysam.PileupRead,
        pos: int,
        ws: int,
        ref_seq: str,
        sample: str,
    ) -> Optional[Allele]:
        if pr.is_del or pr.is_refskip or pr.query_position is None:
            return None
        read = pr.alignment
        mapq = int(read.mapping_quality)
        if mapq < self.min_mapping_quality:
            return None
        seq = read.query_sequence
        if seq is None:
            return None
        quals = read.query_qualities
        qpos = pr.query_position
        base = seq[qpos].upper()
        bq = int(quals[qpos]) if quals is not None else 0
        if bq < self.min_base_quality:
            return None

        rel = pos - ws
        ref_base = ref_seq[rel]
        name = str(read.query_name)

        if pr.indel > 0 and self.allowed_types & AlleleType.INSERTION:
            ins = seq[qpos + 1 : qpos + 1 + pr.indel].upper()
            ins_q = min(quals[qpos + 1 : qpos + 1 + pr.indel]) if quals is not None and ins else bq
            return Allele(AlleleType.INSERTION, ins, len(ins), name, int(ins_q), mapq, sample)
        if pr.indel < 0 and self.allowed_types & AlleleType.DELETION:
            length = -pr.indel
            deleted = ref_seq[rel + 1 : rel + 1 + length]
            return Allele(AlleleType.DELETION, deleted, length, name, bq, mapq, sample)

        if base not in ACGT:
            return None
        if base == ref_base:
            return Allele(AlleleType.REFERENCE, base, 1, name, bq, mapq, sample)

        if self.allowed_types & AlleleType.MNP:
            end = min(_block_end(read, pos), ws + len(ref_seq))
            run = 1
            while pos + run < end and qpos + run < len(seq):
                q = seq[qpos + run].upper()
                if q == ref_seq[rel + run] or q not in ACGT:
                    break
                run += 1
            if run > 1:
                bases = seq[qpos : qpos + run].upper()
                mnp_q = min(quals[qpos : qpos + run]) if quals is not None else bq
                return Allele(AlleleType.MNP, bases, run, name, int(mnp_q), mapq, sample)

        if not self.allowed_types & AlleleType.SNP:
            return None
        return Allele(AlleleType.SNP, base, 1, name, bq, mapq, sample)
