from __future__ import annotations

import logging
import math
from typing import Dict, List, Mapping, Sequence

from .models import GenotypeCombo, GenotypeComboResult, Genotype

logger = logging.getLogger(__name__)


def allele_frequency_probability_ln(frequency_counts: Mapping[int, int], theta: float) -> float:
    """Ewens sampling formula probability of an allele frequency spectrum (natural log).

    ``frequency_counts`` maps a frequency j to a_j, the number of distinct alleles
    seen exactly j times among the M sampled copies (M = sum j * a_j)::

        P = M! / (theta (theta + 1) ... (theta + M - 1)) * prod_j theta^a_j / (j^a_j a_j!)
    """
    if theta <= 0:
        raise ValueError(f"theta must be > 0, got {theta}")
    m = 0
    p = 0.0
    log_theta = math.log(theta)
    for freq, count in frequency_counts.items():
        if freq <= 0 or count <= 0:
            continue
        m += freq * count
        p += count * log_theta - (count * math.log(freq) + math.lgamma(count + 1))
    rising = sum(math.log(theta + h) for h in range(m))
    return math.lgamma(m + 1) + p - rising


def _orderings_ln(genotype: Genotype) -> float:
    # number of distinct orderings of the genotype's alleles
    out = math.lgamma(genotype.ploidy + 1)
    for c in genotype.allele_counts().values():
        out -= math.lgamma(c + 1)
    return out


def genotype_combo_given_frequency_ln(combo: GenotypeCombo) -> float:
    """Probability of the per-sample genotype assignment given its allele frequencies.

    Distributing the M allele copies of the combo at random across samples, this
    is the share of arrangements that yield exactly this assignment::

        prod_i (p_i! / prod_a c_ia!) / (M! / prod_a f_a!)
    """
    num = sum(_orderings_ln(g) for g in combo.genotypes)
    total = combo.total_alleles()
    den = math.lgamma(total + 1) - sum(math.lgamma(f + 1) for f in combo.allele_counts().values())
    return num - den


def combo_data_likelihood_ln(combo: GenotypeCombo, sample_likelihoods: Mapping[str, Mapping[Genotype, float]]) -> float:
    return sum(sample_likelihoods[s][g] for s, g in combo.items())


def genotype_combinations_prior_probability(
    combos: Sequence[GenotypeCombo],
    sample_likelihoods: Mapping[str, Mapping[Genotype, float]],
    theta: float,
    pooled: bool = False,
    diffusion_prior_scalar: float = 1.0,
) -> List[GenotypeComboResult]:
    """Score every combo with its data likelihood and population prior.

    In pooled mode every sample is an allele pool, so the genotype-given-frequency
    term carries no information and is 0; the frequency spectrum term is tempered
    by ``diffusion_prior_scalar`` (1.0 keeps it as is, smaller values flatten it).

    Returns one result per input combo, in input order.
    """
    results: List[GenotypeComboResult] = []
    cache: Dict[tuple, float] = {}
    for combo in combos:
        spectrum = combo.frequency_counts()
        key = tuple(sorted(spectrum.items()))
        if key not in cache:
            cache[key] = allele_frequency_probability_ln(spectrum, theta)
        af_ln = cache[key]
        if pooled:
            af_ln *= diffusion_prior_scalar
            g_af_ln = 0.0
        else:
            g_af_ln = genotype_combo_given_frequency_ln(combo)
        results.append(
            GenotypeComboResult(
                combo=combo,
                data_likelihood_ln=combo_data_likelihood_ln(combo, sample_likelihoods),
                prior_af_ln=af_ln,
                prior_g_af_ln=g_af_ln,
            )
        )
    return results
