from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, TextIO

import numpy as np
from tqdm import tqdm

from .alleles import (
    count_alleles,
    genotype_alleles,
    group_alleles,
    reference_sample,
    sufficient_alternate_observations,
)
from .banding import banded_genotype_combinations
from .config import CallerParameters
from .genotypes import genotypes_by_ploidy
from .likelihood import probability_observations_given_genotypes
from .models import Genotype, ResultData, Site, SiteCall
from .output import TraceWriter, VcfWriter, write_failed_site, write_json_record
from .posterior import aggregate_posterior
from .priors import allele_frequency_probability_ln, genotype_combinations_prior_probability
from .utils import InferenceError, ensure_outdir, safe_exp, write_json

logger = logging.getLogger(__name__)

ACGT = frozenset("ACGT")

SKIP_REASONS = (
    "skipped_non_acgt",
    "skipped_outside_target",
    "skipped_no_coverage",
    "skipped_insufficient_alternates",
    "skipped_too_few_alleles",
    "skipped_inference_error",
)


def new_site_stats() -> Dict[str, int]:
    stats = {"sites_total": 0, "sites_processed": 0}
    stats.update({k: 0 for k in SKIP_REASONS})
    return stats


def _bump(stats: Dict[str, int], key: str) -> None:
    stats[key] = stats.get(key, 0) + 1


def call_site(
    site: Site,
    *,
    ploidy_of: Callable[[str], int],
    params: CallerParameters,
    stats: Dict[str, int],
    trace: Optional[TraceWriter] = None,
) -> Optional[SiteCall]:
    """Run the full inference for one position.

    Cheap guards run first, in order; each skip increments a counter in ``stats``
    and returns None. Raises InferenceError if the site cannot be scored
    (no samples, or a normalizer over nothing).

    With ``use_ref_allele`` the reference sequence is genotyped too, as a sample
    named after the contig; it does not count toward coverage or the guards.
    """
    _bump(stats, "sites_total")

    if site.reference_base.upper() not in ACGT:
        logger.debug("%s: reference base is %s, skipping", site.label, site.reference_base)
        _bump(stats, "skipped_non_acgt")
        return None

    if trace is not None:
        trace.alleles(site)

    if not site.in_target:
        logger.debug("%s: not inside any targets, skipping", site.label)
        _bump(stats, "skipped_outside_target")
        return None

    coverage = count_alleles(site.samples)
    if coverage == 0:
        logger.debug("%s: no alleles left after filtering", site.label)
        _bump(stats, "skipped_no_coverage")
        return None

    if not sufficient_alternate_observations(site.samples, params.min_alt_count, params.min_alt_fraction):
        logger.debug("%s: insufficient alternate observations", site.label)
        _bump(stats, "skipped_insufficient_alternates")
        return None

    groups = group_alleles(site.samples)
    alleles = genotype_alleles(
        groups,
        site.reference_base.upper(),
        allowed_types=params.allowed_allele_types,
        min_alt_count=params.min_alt_count,
        max_alleles=params.max_alleles,
    )
    if len(alleles) <= 1:
        logger.debug("%s: no alternate genotype alleles passed filters", site.label)
        _bump(stats, "skipped_too_few_alleles")
        return None

    samples = dict(site.samples)
    if params.use_ref_allele:
        samples[site.contig] = reference_sample(
            site,
            base_quality=params.reference_base_quality,
            map_quality=params.reference_mapping_quality,
        )

    sample_names = [name for name, s in samples.items() if s.observation_count() > 0]
    if not sample_names:
        raise InferenceError(f"{site.label}: no samples to genotype")

    _bump(stats, "sites_processed")

    pools = genotypes_by_ploidy(sample_names, ploidy_of, alleles)

    weighting = params.quality_weighting()
    results: Dict[str, ResultData] = {}
    likelihood_lookup: Dict[str, Dict[Genotype, float]] = {}
    for name in sample_names:
        sample = samples[name]
        probs = probability_observations_given_genotypes(sample, pools[ploidy_of(name)], weighting)
        if trace is not None:
            trace.likelihoods(site, name, probs)
        rd = ResultData(name=name, likelihoods=list(probs), sample=sample)
        rd.sort_likelihoods()
        results[name] = rd
        likelihood_lookup[name] = dict(probs)

    if trace is not None:
        trace.samples(site, sample_names)

    sample_genotypes = [(name, results[name].likelihoods) for name in sample_names]
    combos = banded_genotype_combinations(
        sample_genotypes,
        pools,
        alleles,
        params.band_width,
        params.band_depth,
        params.step_max,
    )

    scored = genotype_combinations_prior_probability(
        combos,
        likelihood_lookup,
        params.theta,
        pooled=params.pooled,
        diffusion_prior_scalar=params.diffusion_prior_scalar,
    )

    posterior = aggregate_posterior(
        scored,
        results,
        integration_depth=params.posterior_integration_depth,
        variation_model=params.variation_model,
        reference_key=alleles[0].key,
    )

    if trace is not None:
        trace.posterior_normalizer(site, posterior.normalizer)
        trace.combos(site, sample_names, posterior.results, posterior.normalizer)

    best = posterior.best
    ewens = safe_exp(allele_frequency_probability_ln(best.combo.frequency_counts(), params.theta))

    logger.debug(
        "%s: %d combos, pVar=%.6g, best=%s",
        site.label,
        len(combos),
        posterior.p_var,
        best.combo,
    )

    return SiteCall(
        contig=site.contig,
        position=site.position,
        reference_base=site.reference_base.upper(),
        coverage=coverage,
        genotype_alleles=alleles,
        best_combo=best.combo,
        best_combo_score=best.score,
        best_combo_ewens_prob=ewens,
        combos_tested=len(combos),
        posterior_normalizer_ln=posterior.normalizer,
        posterior_normalizer=safe_exp(posterior.normalizer),
        p_var=posterior.p_var,
        results=results,
        combo_results=posterior.results,
        samples=site.samples,
    )


def call_variants(
    sites: Iterable[Site],
    *,
    ploidy_of: Callable[[str], int],
    params: CallerParameters,
    outdir: str | Path,
    vcf_writer: Optional[VcfWriter] = None,
    json_path: Optional[str | Path] = None,
    trace_path: Optional[str | Path] = None,
    failed_path: Optional[str | Path] = None,
    progress: bool = True,
) -> Dict[str, object]:
    """Main workhorse: stream sites, call them, write outputs, and return a summary dict."""
    t0 = time.time()
    outdir_path = ensure_outdir(outdir)
    params.validate()

    stats = new_site_stats()
    reported = 0

    pvar_bins = np.linspace(0.0, 1.0, 51)
    pvar_counts = np.zeros(len(pvar_bins) - 1, dtype=np.int64)
    combos_tested: List[int] = []

    trace = TraceWriter(trace_path) if trace_path is not None else None
    json_fh: Optional[TextIO] = open(json_path, "wt", encoding="utf-8") if json_path is not None else None
    failed_fh: Optional[TextIO] = open(failed_path, "wt", encoding="utf-8") if failed_path is not None else None

    it: Iterable[Site] = sites
    if progress:
        it = tqdm(it, unit="site", desc="Calling sites")

    try:
        for site in it:
            try:
                call = call_site(site, ploidy_of=ploidy_of, params=params, stats=stats, trace=trace)
            except InferenceError as e:
                logger.warning("%s: skipping position: %s", site.label, e)
                _bump(stats, "skipped_inference_error")
                continue
            if call is None:
                continue

            pvar_counts += np.histogram([call.p_var], bins=pvar_bins)[0]
            combos_tested.append(call.combos_tested)

            if json_fh is not None:
                write_json_record(json_fh, call)

            if call.p_var >= params.pvl:
                reported += 1
                if vcf_writer is not None:
                    vcf_writer.write(call)
            elif failed_fh is not None:
                write_failed_site(failed_fh, site, call.genotype_alleles)
    finally:
        if trace is not None:
            trace.close()
        if json_fh is not None:
            json_fh.close()
        if failed_fh is not None:
            failed_fh.close()

    dt = time.time() - t0

    if stats["sites_total"] > 0:
        logger.info(
            "total sites: %d, processed sites: %d, ratio: %.4f",
            stats["sites_total"],
            stats["sites_processed"],
            stats["sites_processed"] / float(stats["sites_total"]),
        )
    else:
        logger.warning("No covered positions were found in the requested regions.")

    summary = {
        "parameters": params.to_dict(),
        "counts": dict(stats),
        "sites_reported": reported,
        "vcf_records_written": vcf_writer.records_written if vcf_writer is not None else 0,
        "vcf_path": str(vcf_writer.path) if vcf_writer is not None else None,
        "json_path": str(json_path) if json_path is not None else None,
        "trace_path": str(trace_path) if trace_path is not None else None,
        "failed_path": str(failed_path) if failed_path is not None else None,
        "pvar_hist": {
            "bin_edges": pvar_bins.tolist(),
            "counts": pvar_counts.tolist(),
        },
        "mean_combos_tested": float(np.mean(combos_tested)) if combos_tested else 0.0,
        "runtime_seconds": float(dt),
    }

    write_json(outdir_path / "summary.json", summary)
    return summary
