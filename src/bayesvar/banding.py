"""Banded search over multi-sample genotype combinations.

The full cross product of per-sample genotypes grows exponentially with the
number of samples. Instead we start from the combination of each sample's
best-supported genotype and walk outwards, one sample substitution at a time,
staying within a band around the per-sample optimum:

- ``band_width`` (WB): how far down its sorted likelihood list any single
  sample may move;
- ``band_depth`` (TB): the total rank offset summed over all samples;
- ``step_max``: the number of combinations the walk may produce (<= 0: no cap).

The walk is best-first on the summed data likelihood, so the most plausible
neighbours are produced before the step cap is hit. Ties are broken on the rank
vector itself, which makes the output independent of hash or dict ordering.

The all-homozygous combinations (one per genotype allele) are appended last
whatever the band settings. They carry the null-hypothesis mass that the
probability of variation is computed against.
"""

from __future__ import annotations

import heapq
import logging
from typing import List, Mapping, Sequence, Set, Tuple

from .genotypes import homozygous_genotype
from .models import Allele, Genotype, GenotypeCombo

logger = logging.getLogger(__name__)

SampleGenotypes = Sequence[Tuple[str, Sequence[Tuple[Genotype, float]]]]


def _combo_from_ranks(sample_genotypes: SampleGenotypes, ranks: Tuple[int, ...]) -> GenotypeCombo:
    names = tuple(name for name, _ in sample_genotypes)
    genotypes = tuple(gl[r][0] for (_, gl), r in zip(sample_genotypes, ranks))
    return GenotypeCombo(samples=names, genotypes=genotypes)


def _ranks_likelihood(sample_genotypes: SampleGenotypes, ranks: Tuple[int, ...]) -> float:
    return sum(gl[r][1] for (_, gl), r in zip(sample_genotypes, ranks))


def banded_genotype_combinations(
    sample_genotypes: SampleGenotypes,
    genotypes_by_ploidy: Mapping[int, Sequence[Genotype]],
    genotype_alleles: Sequence[Allele],
    band_width: int,
    band_depth: int,
    step_max: int = 0,
) -> List[GenotypeCombo]:
    """Generate the banded set of genotype combos, always including homozygous combos.

    Parameters
    ----------
    sample_genotypes:
        ``[(sample, [(genotype, loglik), ...]), ...]`` with each list sorted by
        descending log-likelihood.
    genotypes_by_ploidy:
        Genotype pools keyed by ploidy; used to look up homozygous genotypes.
    genotype_alleles:
        Candidate alleles at the site; one all-homozygous combo is added per allele.

    Returns
    -------
    list of GenotypeCombo
        Distinct combos, best combo first, then in walk order, then the
        homozygous baselines that the walk did not reach.
    """
    if not sample_genotypes:
        return []
    for name, gl in sample_genotypes:
        if not gl:
            raise ValueError(f"sample {name} has no genotype likelihoods")

    n = len(sample_genotypes)
    limits = [min(max(0, band_width), len(gl) - 1) for _, gl in sample_genotypes]

    combos: List[GenotypeCombo] = []
    seen: Set[GenotypeCombo] = set()
    visited: Set[Tuple[int, ...]] = set()

    start = tuple([0] * n)
    frontier: List[Tuple[float, Tuple[int, ...]]] = [(-_ranks_likelihood(sample_genotypes, start), start)]
    visited.add(start)

    while frontier:
        if step_max > 0 and len(combos) >= step_max:
            break
        _, ranks = heapq.heappop(frontier)
        combo = _combo_from_ranks(sample_genotypes, ranks)
        if combo not in seen:
            seen.add(combo)
            combos.append(combo)

        depth = sum(ranks)
        if depth >= band_depth:
            continue
        for i in range(n):
            if ranks[i] >= limits[i]:
                continue
            nxt = ranks[:i] + (ranks[i] + 1,) + ranks[i + 1 :]
            if nxt in visited:
                continue
            visited.add(nxt)
            heapq.heappush(frontier, (-_ranks_likelihood(sample_genotypes, nxt), nxt))

    walked = len(combos)

    names = tuple(name for name, _ in sample_genotypes)
    ploidies = [gl[0][0].ploidy for _, gl in sample_genotypes]
    for allele in genotype_alleles:
        genotypes = tuple(homozygous_genotype(genotypes_by_ploidy[p], allele) for p in ploidies)
        combo = GenotypeCombo(samples=names, genotypes=genotypes)
        if combo not in seen:
            seen.add(combo)
            combos.append(combo)

    logger.debug(
        "banded search: %d combos walked, %d homozygous baselines added (WB=%d TB=%d step_max=%d)",
        walked,
        len(combos) - walked,
        band_width,
        band_depth,
        step_max,
    )
    return combos
