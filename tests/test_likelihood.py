import math

import pytest

from bayesvar.genotypes import all_possible_genotypes
from bayesvar.likelihood import (
    MappingQualityDiscount,
    NoDiscount,
    observation_error,
    probability_observations_given_genotypes,
)
from bayesvar.models import Allele, AlleleType, Sample, genotype_allele

A = genotype_allele(AlleleType.REFERENCE, "A")
T = genotype_allele(AlleleType.SNP, "T")


def make_sample(n_ref: int, n_alt: int, bq: int = 30, mq: int = 60) -> Sample:
    s = Sample("s1")
    for i in range(n_ref):
        s.add(Allele(AlleleType.REFERENCE, "A", 1, f"r{i}", bq, mq, "s1"))
    for i in range(n_alt):
        s.add(Allele(AlleleType.SNP, "T", 1, f"a{i}", bq, mq, "s1"))
    return s


def test_reference_reads_favour_homozygous_reference() -> None:
    gts = all_possible_genotypes(2, [A, T])
    out = probability_observations_given_genotypes(make_sample(10, 0), gts, NoDiscount())
    assert [g for g, _ in out] == gts  # enumeration order, unsorted
    ll = dict(out)
    aa, at, tt = ll[gts[0]], ll[gts[1]], ll[gts[2]]
    assert aa > at > tt
    e = 0.001
    assert aa == pytest.approx(10 * math.log(1 - e))
    assert at == pytest.approx(10 * math.log(0.5 * (1 - e) + 0.5 * e / 3))
    assert tt == pytest.approx(10 * math.log(e / 3))


def test_balanced_reads_favour_heterozygote() -> None:
    gts = all_possible_genotypes(2, [A, T])
    ll = dict(probability_observations_given_genotypes(make_sample(8, 8), gts, NoDiscount()))
    assert ll[gts[1]] > ll[gts[0]]
    assert ll[gts[1]] > ll[gts[2]]
    assert ll[gts[0]] == pytest.approx(ll[gts[2]])


def test_empty_sample_has_zero_loglik() -> None:
    gts = all_possible_genotypes(2, [A, T])
    out = probability_observations_given_genotypes(Sample("empty"), gts, NoDiscount())
    assert [ll for _, ll in out] == [0.0, 0.0, 0.0]


def test_mapping_quality_discount_bounds_and_monotonicity() -> None:
    w = MappingQualityDiscount(rdf=1.0)
    weights = [w.weight(Allele(AlleleType.SNP, "T", map_quality=q)) for q in (0, 3, 10, 20, 60)]
    assert weights[0] == 0.0
    assert all(0.0 <= x <= 1.0 for x in weights)
    assert weights == sorted(weights)
    assert MappingQualityDiscount(rdf=0.0).weight(Allele(AlleleType.SNP, "T", map_quality=0)) == 1.0


def test_stronger_rdf_discounts_more() -> None:
    a = Allele(AlleleType.SNP, "T", map_quality=10)
    assert MappingQualityDiscount(rdf=2.0).weight(a) < MappingQualityDiscount(rdf=1.0).weight(a)


def test_poorly_mapped_reads_contribute_less() -> None:
    gts = all_possible_genotypes(2, [A, T])
    good = dict(probability_observations_given_genotypes(make_sample(0, 5, mq=60), gts, MappingQualityDiscount()))
    poor = dict(probability_observations_given_genotypes(make_sample(0, 5, mq=5), gts, MappingQualityDiscount()))
    assert poor[gts[0]] > good[gts[0]]


@pytest.mark.parametrize("weighting", [MappingQualityDiscount(), NoDiscount()], ids=["rdf", "none"])
def test_deep_coverage_loglik_is_finite_and_nonpositive(weighting) -> None:
    G = genotype_allele(AlleleType.SNP, "G")
    gts = all_possible_genotypes(2, [A, T, G])
    out = probability_observations_given_genotypes(make_sample(500, 500, bq=40), gts, weighting)
    assert len(out) == len(gts)
    for _, ll in out:
        assert math.isfinite(ll)
        assert ll <= 0.0
    ll = dict(out)
    assert max(ll, key=ll.get) == gts[1]  # A/T


def test_observation_error_is_clamped() -> None:
    assert observation_error(0) == 0.75
    assert observation_error(100) == pytest.approx(1e-6)
    assert observation_error(20) == pytest.approx(0.01)
