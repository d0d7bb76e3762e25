from __future__ import annotations

import logging
from itertools import combinations_with_replacement
from typing import Callable, Dict, Iterable, List, Sequence

from .models import Allele, Genotype

logger = logging.getLogger(__name__)


def all_possible_genotypes(ploidy: int, alleles: Sequence[Allele]) -> List[Genotype]:
    """Enumerate every multiset of ``ploidy`` alleles drawn from ``alleles``.

    Order follows the input allele order (AA, AT, TT for [A, T] and ploidy 2), and
    it is the tie-break order used everywhere downstream.
    """
    if ploidy < 1:
        raise ValueError(f"ploidy must be >= 1, got {ploidy}")
    if len(alleles) == 0:
        raise ValueError("cannot enumerate genotypes from an empty allele set")
    return [Genotype(alleles=tuple(c)) for c in combinations_with_replacement(alleles, ploidy)]


def genotypes_by_ploidy(
    sample_names: Iterable[str],
    ploidy_of: Callable[[str], int],
    alleles: Sequence[Allele],
) -> Dict[int, List[Genotype]]:
    """Enumerate genotypes once per distinct ploidy among the given samples."""
    out: Dict[int, List[Genotype]] = {}
    for name in sample_names:
        ploidy = int(ploidy_of(name))
        if ploidy not in out:
            out[ploidy] = all_possible_genotypes(ploidy, alleles)
            logger.debug("enumerated %d genotypes for ploidy %d", len(out[ploidy]), ploidy)
    return out


def homozygous_genotype(genotypes: Sequence[Genotype], allele: Allele) -> Genotype:
    """Return the genotype in ``genotypes`` that is homozygous for ``allele``."""
    for g in genotypes:
        if g.is_homozygous and g.alleles[0].key == allele.key:
            return g
    raise KeyError(f"no homozygous genotype for allele {allele.key}")
