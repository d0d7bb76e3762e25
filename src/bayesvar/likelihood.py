from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Protocol, Sequence, Tuple

import numpy as np

from .models import Allele, Genotype, Sample
from .utils import clamp, phred_to_error_prob

logger = logging.getLogger(__name__)

# Bounds on the per-observation error probability. The lower bound keeps very
# high qualities from producing -inf on a mismatch; the upper bound matches a
# random base call.
_MIN_ERROR = 1e-6
_MAX_ERROR = 0.75


class QualityWeighting(Protocol):
    """Per-observation weight in [0, 1], non-decreasing in quality."""

    def weight(self, allele: Allele) -> float:
        ...


@dataclass(frozen=True)
class MappingQualityDiscount:
    """Discount observations by their mapping reliability.

    weight = (1 - P(mapping error)) ** rdf

    ``rdf`` (read dependence factor) controls the strength of the discount:
    0 disables it, larger values shrink the contribution of poorly mapped reads
    further.
    """

    rdf: float = 1.0

    def weight(self, allele: Allele) -> float:
        if self.rdf <= 0.0:
            return 1.0
        p_ok = 1.0 - phred_to_error_prob(allele.map_quality)
        return clamp(p_ok ** self.rdf, 0.0, 1.0)


@dataclass(frozen=True)
class NoDiscount:
    def weight(self, allele: Allele) -> float:
        return 1.0


def observation_error(base_quality: int) -> float:
    return clamp(phred_to_error_prob(base_quality), _MIN_ERROR, _MAX_ERROR)


def _group_arrays(alleles: Sequence[Allele], weighting: QualityWeighting) -> Tuple[np.ndarray, np.ndarray]:
    errors = np.fromiter((observation_error(a.base_quality) for a in alleles), dtype=float, count=len(alleles))
    weights = np.fromiter((weighting.weight(a) for a in alleles), dtype=float, count=len(alleles))
    return errors, weights


def probability_observations_given_genotype(
    groups: Sequence[Tuple[str, np.ndarray, np.ndarray]],
    genotype: Genotype,
) -> float:
    """Log-likelihood of pre-extracted observation groups under one genotype.

    Each read contributes ``w * log(sum_a f_a * P(obs | a))`` where ``f_a`` is the
    fraction of genotype copies carrying allele ``a`` and ``P(obs | a)`` is
    ``1 - e`` on a match and ``e / 3`` otherwise.
    """
    total = 0.0
    for key, errors, weights in groups:
        f = genotype.fraction(key)
        p = f * (1.0 - errors) + (1.0 - f) * (errors / 3.0)
        total += float(np.dot(weights, np.log(p)))
    return total


def probability_observations_given_genotypes(
    sample: Sample,
    genotypes: Sequence[Genotype],
    weighting: QualityWeighting,
) -> List[Tuple[Genotype, float]]:
    """Compute the data log-likelihood of ``sample`` for every genotype.

    The result covers each genotype exactly once, in enumeration order (unsorted).
    A sample without observations has log-likelihood 0 for every genotype.
    """
    groups = []
    for key, alleles in sample:
        if not alleles:
            continue
        errors, weights = _group_arrays(alleles, weighting)
        groups.append((key, errors, weights))

    return [(g, probability_observations_given_genotype(groups, g)) for g in genotypes]
