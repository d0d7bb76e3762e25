from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from .likelihood import MappingQualityDiscount, QualityWeighting
from .models import AlleleType
from .posterior import VARIATION_MODELS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallerParameters:
    """Tunables of the per-site inference.

    Attributes
    ----------
    min_alt_count, min_alt_fraction:
        A site is evaluated only if some sample has at least this many
        alternate observations making up at least this fraction of its reads.
    min_base_quality, min_mapping_quality:
        Observations below either threshold are dropped by the allele source.
    allow_snps, allow_indels, allow_mnps:
        Allele types considered; reference observations are always kept.
    band_width:
        WB, how far down its sorted likelihood list one sample may move.
    band_depth:
        TB, total rank offset across samples during the banded search.
    step_max:
        Cap on combos produced by the banded walk (<= 0: no cap).
    theta:
        TH, population diversity parameter of the Ewens prior.
    pooled:
        Treat samples as allele pools rather than individuals.
    diffusion_prior_scalar:
        Tempering of the frequency spectrum prior in pooled mode.
    posterior_integration_depth:
        K, number of top combos kept for normalization (<= 0: keep all).
    pvl:
        Minimum probability of variation for a site to be reported.
    rdf:
        Read dependence factor of the mapping-quality discount.
    default_ploidy:
        Ploidy of samples without an explicit entry in the ploidy map.
    max_alleles:
        Maximum number of genotype alleles (reference included) per site.
    variation_model:
        ``population``: pVar is 1 - P(every sample homozygous for one allele);
        ``reference``: pVar is 1 - P(every sample homozygous reference).
    report_all_alternates:
        Write one VCF record per alternate allele in the best combo instead of
        only the most frequent one.
    use_ref_allele:
        Genotype the reference sequence as an extra sample named after the
        contig, holding one reference observation per site.
    reference_base_quality, reference_mapping_quality:
        Qualities given to that reference observation.
    """

    min_alt_count: int = 2
    min_alt_fraction: float = 0.0
    min_base_quality: int = 0
    min_mapping_quality: int = 0
    allow_snps: bool = True
    allow_indels: bool = True
    allow_mnps: bool = False
    band_width: int = 2
    band_depth: int = 4
    step_max: int = 0
    theta: float = 0.001
    pooled: bool = False
    diffusion_prior_scalar: float = 1.0
    posterior_integration_depth: int = 0
    pvl: float = 0.0001
    rdf: float = 1.0
    default_ploidy: int = 2
    max_alleles: int = 4
    variation_model: str = "population"
    report_all_alternates: bool = False
    use_ref_allele: bool = False
    reference_base_quality: int = 60
    reference_mapping_quality: int = 100

    @property
    def allowed_allele_types(self) -> AlleleType:
        allowed = AlleleType.REFERENCE
        if self.allow_snps:
            allowed |= AlleleType.SNP
        if self.allow_indels:
            allowed |= AlleleType.INSERTION | AlleleType.DELETION
        if self.allow_mnps:
            allowed |= AlleleType.MNP
        return allowed

    def quality_weighting(self) -> QualityWeighting:
        return MappingQualityDiscount(rdf=self.rdf)

    def validate(self) -> "CallerParameters":
        if self.min_alt_count < 0:
            raise ValueError("min_alt_count must be >= 0")
        if not 0.0 <= self.min_alt_fraction <= 1.0:
            raise ValueError("min_alt_fraction must be in [0, 1]")
        if self.band_width < 0 or self.band_depth < 0:
            raise ValueError("band_width and band_depth must be >= 0")
        if self.theta <= 0.0:
            raise ValueError("theta must be > 0")
        if self.diffusion_prior_scalar < 0.0:
            raise ValueError("diffusion_prior_scalar must be >= 0")
        if not 0.0 <= self.pvl <= 1.0:
            raise ValueError("pvl must be in [0, 1]")
        if self.rdf < 0.0:
            raise ValueError("rdf must be >= 0")
        if self.reference_base_quality < 0 or self.reference_mapping_quality < 0:
            raise ValueError("reference qualities must be >= 0")
        if self.default_ploidy < 1:
            raise ValueError("default_ploidy must be >= 1")
        if self.max_alleles < 2:
            raise ValueError("max_alleles must be >= 2 (reference plus one alternate)")
        if self.variation_model not in VARIATION_MODELS:
            raise ValueError(
                f"variation_model must be one of {', '.join(VARIATION_MODELS)}; got {self.variation_model}"
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parameters_from_mapping(data: Mapping[str, Any], base: CallerParameters | None = None) -> CallerParameters:
    """Overlay ``data`` onto ``base`` (defaults if None), rejecting unknown keys."""
    base = base or CallerParameters()
    known = {f.name: f for f in fields(CallerParameters)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"Unknown parameter(s): {', '.join(unknown)}")
    coerced: Dict[str, Any] = {}
    for name, value in data.items():
        current = getattr(base, name)
        if isinstance(current, bool):
            if not isinstance(value, bool):
                raise ValueError(f"Parameter {name} must be true/false, got {value!r}")
            coerced[name] = value
        elif isinstance(current, int):
            coerced[name] = int(value)
        elif isinstance(current, float):
            coerced[name] = float(value)
        else:
            coerced[name] = str(value)
    return replace(base, **coerced).validate()


def load_parameters(path: str | Path, base: CallerParameters | None = None) -> CallerParameters:
    """Read a JSON object of parameter overrides."""
    with open(path, "rt", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Parameter file must contain a JSON object: {path}")
    logger.info("Loaded %d parameter override(s) from %s", len(data), path)
    return parameters_from_mapping(data, base)
