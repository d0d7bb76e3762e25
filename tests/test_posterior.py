import math

import pytest

from bayesvar.genotypes import all_possible_genotypes
from bayesvar.models import AlleleType, GenotypeCombo, GenotypeComboResult, ResultData, genotype_allele
from bayesvar.posterior import (
    aggregate_posterior,
    probability_of_variation,
    select_best_combo,
    sort_results,
    truncate_results,
)
from bayesvar.utils import InferenceError, logsumexp

A = genotype_allele(AlleleType.REFERENCE, "A")
T = genotype_allele(AlleleType.SNP, "T")
GTS = all_possible_genotypes(2, [A, T])
AA, AT, TT = GTS


def result(genotypes, score: float, samples=("s1",)) -> GenotypeComboResult:
    combo = GenotypeCombo(samples=tuple(samples), genotypes=tuple(genotypes))
    return GenotypeComboResult(combo=combo, data_likelihood_ln=score, prior_af_ln=0.0, prior_g_af_ln=0.0)


def test_logsumexp_properties() -> None:
    assert logsumexp([0.0, 0.0]) == pytest.approx(math.log(2.0))
    assert logsumexp([-2.0, -2.0, -2.0]) == pytest.approx(-2.0 + math.log(3.0))
    assert logsumexp([-1000.0, -1000.0]) == pytest.approx(-1000.0 + math.log(2.0))
    assert logsumexp([float("-inf"), 0.0]) == pytest.approx(0.0)
    vals = [-3.0, -1.0, -7.5]
    assert logsumexp(vals) >= max(vals)


@pytest.mark.parametrize("values", [[], [float("nan"), 0.0], [float("-inf"), float("-inf")]])
def test_logsumexp_rejects_degenerate_input(values) -> None:
    with pytest.raises(InferenceError):
        logsumexp(values)


def test_sort_is_stable_for_ties() -> None:
    rs = [result([AA], -1.0), result([AT], -1.0), result([TT], 0.0)]
    out = sort_results(rs)
    assert [str(r.combo) for r in out] == ["s1:T/T", "s1:A/A", "s1:A/T"]


def test_truncation_never_drops_homozygous_combos() -> None:
    rs = [result([AT], -1.0), result([AA], -5.0), result([TT], -9.0)]
    # as many or more homozygous combos than K: only they survive
    for depth in (1, 2):
        kept = truncate_results(rs, depth)
        assert [r.combo.genotypes for r in kept] == [(AA,), (TT,)]


def test_truncation_counts_homozygous_combos_toward_depth() -> None:
    s = ("s1", "s2")
    rs = [
        result([AT, AA], -1.0, s),
        result([AT, AT], -2.0, s),
        result([AA, AT], -3.0, s),
        result([AA, AA], -4.0, s),
        result([TT, TT], -20.0, s),
    ]
    kept = truncate_results(rs[:4], 2)
    assert [r.combo.genotypes for r in kept] == [(AT, AA), (AA, AA)]
    kept = truncate_results(rs, 3)
    assert [r.combo.genotypes for r in kept] == [(AT, AA), (AA, AA), (TT, TT)]
    assert all(len(truncate_results(rs, k)) == k for k in (2, 3, 4))
    assert truncate_results(rs, 0) == sort_results(rs)


def _balanced():
    rs = [result([AA], 0.0), result([AT], 0.0), result([TT], 0.0)]
    rd = {"s1": ResultData(name="s1", likelihoods=[(AA, 0.0), (AT, 0.0), (TT, 0.0)])}
    return rs, rd


def test_balanced_support_gives_uniform_marginals() -> None:
    rs, rd = _balanced()
    post = aggregate_posterior(rs, rd)
    assert post.normalizer == pytest.approx(math.log(3.0))
    for g in GTS:
        assert rd["s1"].marginals[g] == pytest.approx(1.0 / 3.0)
    assert post.best.combo.genotypes == (AT,)


def test_variation_models() -> None:
    rs, rd = _balanced()
    population = aggregate_posterior(rs, rd, variation_model="population", reference_key="A")
    reference = aggregate_posterior(rs, rd, variation_model="reference", reference_key="A")
    assert population.p_var == pytest.approx(1.0 / 3.0)
    assert reference.p_var == pytest.approx(2.0 / 3.0, abs=1e-3)
    with pytest.raises(ValueError):
        probability_of_variation(0.0, rs, variation_model="other")


def test_pvar_bounds() -> None:
    rs = [result([AA], 0.0)]
    assert probability_of_variation(0.0, rs) == pytest.approx(0.0)
    rs = [result([AT], 0.0), result([AA], -800.0)]
    assert probability_of_variation(0.0, rs) == pytest.approx(1.0)


def test_best_combo_prefers_heterozygous() -> None:
    s = ("s1", "s2")
    rs = sort_results([result([AA, AA], -1.0, s), result([AT, AA], -1.5, s), result([TT, TT], -30.0, s)])
    assert select_best_combo(rs).combo.genotypes == (AT, AA)


def test_best_combo_falls_back_to_top() -> None:
    rs = sort_results([result([TT], -4.0), result([AA], -1.0)])
    assert select_best_combo(rs).combo.genotypes == (AA,)
    with pytest.raises(InferenceError):
        select_best_combo([])


def test_empty_results_raise() -> None:
    with pytest.raises(InferenceError):
        aggregate_posterior([], {})
