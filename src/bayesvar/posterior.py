from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from .models import GenotypeCombo, GenotypeComboResult, ResultData
from .utils import InferenceError, clamp, logsumexp, safe_exp

logger = logging.getLogger(__name__)

VARIATION_MODELS = ("population", "reference")


def sort_results(results: Sequence[GenotypeComboResult]) -> List[GenotypeComboResult]:
    """Sort by descending score; exact ties keep their input order."""
    return sorted(results, key=lambda r: r.score, reverse=True)


def truncate_results(results: Sequence[GenotypeComboResult], depth: int) -> List[GenotypeComboResult]:
    """Keep the top ``depth`` results without ever dropping a homozygous combo.

    Results are popped from the bottom of the sorted list until the survivors
    plus the set-aside homozygous combos number ``depth``; the homozygous combos
    are then re-admitted. The kept set exceeds ``depth`` only when there are
    more homozygous combos than that, in which case only they remain.
    """
    ordered = sort_results(results)
    if depth <= 0 or len(ordered) <= depth:
        return ordered
    homozygous: List[GenotypeComboResult] = []
    while ordered and len(ordered) + len(homozygous) > depth:
        r = ordered.pop()
        if r.combo.is_homozygous():
            homozygous.append(r)
    ordered.extend(homozygous)
    return sort_results(ordered)


def posterior_normalizer(results: Sequence[GenotypeComboResult]) -> float:
    if not results:
        raise InferenceError("no genotype combinations to normalize over")
    return logsumexp(r.score for r in results)


def marginal_genotype_likelihoods(
    normalizer: float,
    results: Sequence[GenotypeComboResult],
    sample_results: Mapping[str, ResultData],
) -> None:
    """Fill ``ResultData.marginals`` with each genotype's posterior mass."""
    for rd in sample_results.values():
        rd.marginals = {g: 0.0 for g, _ in rd.likelihoods}
    for r in results:
        p = safe_exp(r.score - normalizer)
        for sample, genotype in r.combo.items():
            rd = sample_results.get(sample)
            if rd is None:
                continue
            rd.marginals[genotype] = rd.marginals.get(genotype, 0.0) + p


def is_null_combo(combo: GenotypeCombo, variation_model: str, reference_key: Optional[str]) -> bool:
    if variation_model == "reference":
        return combo.homozygous_allele() == reference_key
    return combo.is_homozygous()


def probability_of_variation(
    normalizer: float,
    results: Sequence[GenotypeComboResult],
    *,
    variation_model: str = "population",
    reference_key: Optional[str] = None,
) -> float:
    """1 minus the posterior mass of the null (homozygous) combos."""
    if variation_model not in VARIATION_MODELS:
        raise ValueError(f"unknown variation model: {variation_model}")
    p_var = 1.0
    for r in results:
        if is_null_combo(r.combo, variation_model, reference_key):
            p_var -= safe_exp(r.score - normalizer)
    return clamp(p_var, 0.0, 1.0)


def select_best_combo(results: Sequence[GenotypeComboResult]) -> GenotypeComboResult:
    """First heterozygous combo in sorted order, else the top-scoring combo."""
    if not results:
        raise InferenceError("no genotype combinations to select from")
    for r in results:
        if not r.combo.is_homozygous():
            return r
    return results[0]


@dataclass
class Posterior:
    """Outcome of aggregating the scored combos of one site."""

    results: List[GenotypeComboResult]
    normalizer: float
    p_var: float
    best: GenotypeComboResult


def aggregate_posterior(
    results: Sequence[GenotypeComboResult],
    sample_results: Dict[str, ResultData],
    *,
    integration_depth: int = 0,
    variation_model: str = "population",
    reference_key: Optional[str] = None,
) -> Posterior:
    """Sort, truncate, normalize, and derive marginals, pVar and the best combo."""
    kept = truncate_results(results, integration_depth)
    if not kept:
        raise InferenceError("empty genotype combination set after truncation")
    normalizer = posterior_normalizer(kept)
    marginal_genotype_likelihoods(normalizer, kept, sample_results)
    p_var = probability_of_variation(
        normalizer, kept, variation_model=variation_model, reference_key=reference_key
    )
    best = select_best_combo(kept)
    return Posterior(results=kept, normalizer=normalizer, p_var=p_var, best=best)
