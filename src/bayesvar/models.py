from __future__ import annotations

import enum
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple


class AlleleType(enum.IntFlag):
    REFERENCE = 1
    SNP = 2
    INSERTION = 4
    DELETION = 8
    MNP = 16
    GENOTYPE = 32


@dataclass(frozen=True)
class Allele:
    """A sequence variant observed in (or proposed for) one position.

    Attributes
    ----------
    type:
        One of the ``AlleleType`` flags.
    bases:
        Allele sequence. For deletions this is the deleted reference sequence
        when known, otherwise empty.
    length:
        Number of reference bases the allele spans (1 for SNPs, the deleted length
        for deletions, the inserted length for insertions).
    read_id:
        Supporting read name; empty for candidate (genotype) alleles.
    base_quality, map_quality:
        Phred-scaled qualities of the supporting observation.
    sample:
        Sample the observation belongs to.
    """

    type: AlleleType
    bases: str
    length: int = 1
    read_id: str = ""
    base_quality: int = 0
    map_quality: int = 0
    sample: str = ""

    @property
    def key(self) -> str:
        """Equivalence representation used to group and match alleles."""
        if self.type & AlleleType.INSERTION:
            return f"I:{self.bases}"
        if self.type & AlleleType.DELETION:
            return f"D:{self.length}"
        if self.type & AlleleType.MNP:
            return f"M:{self.bases}"
        return self.bases

    def genotype_allele(self) -> "Allele":
        """Return the candidate allele for this observation, stripped of read data."""
        return Allele(type=self.type, bases=self.bases, length=self.length)

    def __str__(self) -> str:
        return self.key


def genotype_allele(type: AlleleType, bases: str, length: int = 1) -> Allele:
    return Allele(type=type, bases=bases, length=length)


@dataclass
class Sample:
    """Observations for one biological sample at one position, grouped by allele key."""

    name: str
    groups: Dict[str, List[Allele]] = field(default_factory=dict)

    def add(self, allele: Allele) -> None:
        self.groups.setdefault(allele.key, []).append(allele)

    def observation_count(self) -> int:
        return sum(len(v) for v in self.groups.values())

    def count(self, key: str) -> int:
        return len(self.groups.get(key, ()))

    def __iter__(self) -> Iterator[Tuple[str, List[Allele]]]:
        return iter(self.groups.items())

    def __len__(self) -> int:
        return len(self.groups)


@dataclass
class Site:
    """One position as produced by the allele source."""

    contig: str
    position: int  # 0-based
    reference_base: str
    samples: Dict[str, Sample]
    in_target: bool = True

    @property
    def label(self) -> str:
        return f"{self.contig}:{self.position + 1}"


@dataclass(frozen=True)
class Genotype:
    """An ordered multiset of genotype alleles; its size is the ploidy."""

    alleles: Tuple[Allele, ...]

    @property
    def ploidy(self) -> int:
        return len(self.alleles)

    @property
    def is_homozygous(self) -> bool:
        first = self.alleles[0].key
        return all(a.key == first for a in self.alleles)

    def allele_counts(self) -> Dict[str, int]:
        return dict(Counter(a.key for a in self.alleles))

    def fraction(self, key: str) -> float:
        return sum(1 for a in self.alleles if a.key == key) / float(self.ploidy)

    def __str__(self) -> str:
        return "/".join(a.key for a in self.alleles)


@dataclass(frozen=True)
class GenotypeCombo:
    """One genotype per sample under joint consideration at a site."""

    samples: Tuple[str, ...]
    genotypes: Tuple[Genotype, ...]

    def __post_init__(self) -> None:
        if len(self.samples) != len(self.genotypes):
            raise ValueError("GenotypeCombo needs exactly one genotype per sample")

    def items(self) -> Iterator[Tuple[str, Genotype]]:
        return zip(self.samples, self.genotypes)

    def genotype_for(self, sample: str) -> Genotype:
        return self.genotypes[self.samples.index(sample)]

    def is_homozygous(self) -> bool:
        """True when every sample is homozygous for one and the same allele."""
        if not self.genotypes:
            return True
        first = self.genotypes[0].alleles[0].key
        for g in self.genotypes:
            if not g.is_homozygous or g.alleles[0].key != first:
                return False
        return True

    def homozygous_allele(self) -> Optional[str]:
        if self.genotypes and self.is_homozygous():
            return self.genotypes[0].alleles[0].key
        return None

    def allele_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for g in self.genotypes:
            for a in g.alleles:
                counts[a.key] = counts.get(a.key, 0) + 1
        return counts

    def frequency_counts(self) -> Dict[int, int]:
        """Map allele frequency -> number of distinct alleles observed at that frequency."""
        out: Dict[int, int] = {}
        for freq in self.allele_counts().values():
            out[freq] = out.get(freq, 0) + 1
        return out

    def total_alleles(self) -> int:
        return sum(g.ploidy for g in self.genotypes)

    def __str__(self) -> str:
        return " ".join(f"{s}:{g}" for s, g in self.items())


@dataclass(frozen=True)
class GenotypeComboResult:
    """A scored genotype combo.

    ``score`` is the data log-likelihood plus the prior log-probability, i.e. the
    unnormalized posterior log-score used for ranking and normalization.
    """

    combo: GenotypeCombo
    data_likelihood_ln: float
    prior_af_ln: float
    prior_g_af_ln: float

    @property
    def prior_ln(self) -> float:
        return self.prior_af_ln + self.prior_g_af_ln

    @property
    def score(self) -> float:
        return self.data_likelihood_ln + self.prior_ln


@dataclass
class ResultData:
    """Per-sample likelihoods (sorted, descending) and posterior marginals."""

    name: str
    likelihoods: List[Tuple[Genotype, float]]
    sample: Optional[Sample] = None
    marginals: Dict[Genotype, float] = field(default_factory=dict)

    def sort_likelihoods(self) -> None:
        # stable: ties keep enumeration order
        self.likelihoods.sort(key=lambda p: p[1], reverse=True)


@dataclass
class SiteCall:
    """Everything reported for one processed position."""

    contig: str
    position: int
    reference_base: str
    coverage: int
    genotype_alleles: List[Allele]
    best_combo: GenotypeCombo
    best_combo_score: float
    best_combo_ewens_prob: float
    combos_tested: int
    posterior_normalizer_ln: float
    posterior_normalizer: float
    p_var: float
    results: Dict[str, ResultData]
    combo_results: List[GenotypeComboResult]
    samples: Dict[str, Sample]

    def alternate_alleles(self) -> List[Tuple[Allele, int]]:
        """Alternate alleles in the best combo, most frequent first."""
        counts: Dict[str, int] = {}
        by_key: Dict[str, Allele] = {}
        for g in self.best_combo.genotypes:
            for a in g.alleles:
                if a.type & AlleleType.REFERENCE:
                    continue
                counts[a.key] = counts.get(a.key, 0) + 1
                by_key[a.key] = a
        order = sorted(counts, key=lambda k: (-counts[k], k))
        return [(by_key[k], counts[k]) for k in order]
