from __future__ import annotations

import bisect
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

logger = logging.getLogger(__name__)

_REGION_RE = re.compile(r"^(?P<contig>[^:]+)(?::(?P<start>[\d,]+)(?:-(?P<end>[\d,]+))?)?$")


def check_bam_index(bam_path: str | Path) -> None:
    """Ensure a BAM has an index; raise ValueError with fix instructions."""
    bam = Path(bam_path)
    bai1 = bam.with_suffix(bam.suffix + ".bai")
    bai2 = bam.with_suffix(".bai")
    if bai1.exists() or bai2.exists():
        return
    raise ValueError("BAM is not indexed. Run: samtools index " + str(bam))


def check_fasta_index(fasta_path: str | Path) -> None:
    """Ensure a FASTA has a .fai index; raise ValueError with fix instructions."""
    fa = Path(fasta_path)
    fai = fa.with_suffix(fa.suffix + ".fai")
    if not fai.exists():
        raise ValueError("Reference FASTA is not indexed. Run: samtools faidx " + str(fa))


def parse_region(region: str, contig_lengths: Dict[str, int]) -> Tuple[str, int, int]:
    """Parse ``chr``, ``chr:start`` or ``chr:start-end`` (1-based, inclusive) to 0-based half-open."""
    m = _REGION_RE.match(region.strip())
    if m is None:
        raise ValueError(f"Malformed region: {region!r} (expected chr:start-end)")
    contig = m.group("contig")
    if contig not in contig_lengths:
        raise ValueError(f"Region contig {contig!r} not found in reference/BAM headers")
    length = contig_lengths[contig]
    start = int(m.group("start").replace(",", "")) - 1 if m.group("start") else 0
    end = int(m.group("end").replace(",", "")) if m.group("end") else length
    start = max(0, start)
    end = min(length, end)
    if end <= start:
        raise ValueError(f"Empty region: {region!r}")
    return contig, start, end


@dataclass
class TargetRegions:
    """Per-contig sorted, merged intervals (0-based, half-open) with bisect lookup."""

    starts: Dict[str, List[int]] = field(default_factory=dict)
    ends: Dict[str, List[int]] = field(default_factory=dict)

    @classmethod
    def from_intervals(cls, intervals: Iterable[Tuple[str, int, int]]) -> "TargetRegions":
        by_contig: Dict[str, List[Tuple[int, int]]] = {}
        for contig, start, end in intervals:
            if end > start:
                by_contig.setdefault(contig, []).append((start, end))
        out = cls()
        for contig, lst in by_contig.items():
            lst.sort()
            merged: List[List[int]] = []
            for s, e in lst:
                if merged and s <= merged[-1][1]:
                    merged[-1][1] = max(merged[-1][1], e)
                else:
                    merged.append([s, e])
            out.starts[contig] = [s for s, _ in merged]
            out.ends[contig] = [e for _, e in merged]
        return out

    def contains(self, contig: str, pos: int) -> bool:
        starts = self.starts.get(contig)
        if not starts:
            return False
        i = bisect.bisect_right(starts, pos) - 1
        return i >= 0 and pos < self.ends[contig][i]

    def intervals(self) -> List[Tuple[str, int, int]]:
        out: List[Tuple[str, int, int]] = []
        for contig in self.starts:
            out.extend((contig, s, e) for s, e in zip(self.starts[contig], self.ends[contig]))
        return out

    def __len__(self) -> int:
        return sum(len(v) for v in self.starts.values())


def load_targets(bed_path: str | Path) -> TargetRegions:
    """Read target intervals from a BED file (header/track lines are ignored)."""
    intervals: List[Tuple[str, int, int]] = []
    with open(bed_path, "rt", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip() or line.startswith(("#", "track", "browser")):
                continue
            parts = line.rstrip("\n").split("\t")
            if len(parts) < 3:
                raise ValueError(f"{bed_path}:{lineno}: BED lines need at least 3 columns")
            try:
                intervals.append((parts[0], int(parts[1]), int(parts[2])))
            except ValueError:
                raise ValueError(f"{bed_path}:{lineno}: non-integer BED coordinates") from None
    targets = TargetRegions.from_intervals(intervals)
    if len(targets) == 0:
        logger.warning("Target BED %s contains no intervals; every site will be skipped.", bed_path)
    return targets
