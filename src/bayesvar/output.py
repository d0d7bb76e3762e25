from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TextIO, Tuple

import pysam

from . import __version__
from .models import Allele, AlleleType, GenotypeComboResult, Genotype, Site, SiteCall
from .utils import open_textmaybe_gzip, prob_to_phred, safe_exp

logger = logging.getLogger(__name__)

ReferenceFetch = Callable[[str, int, int], str]

_MAX_GQ = 99


def vcf_alleles(call: SiteCall, alt: Allele, fetch: ReferenceFetch) -> Tuple[str, str]:
    """REF/ALT strings for ``alt`` anchored at the call position."""
    ref_base = call.reference_base
    if alt.type & AlleleType.INSERTION:
        return ref_base, ref_base + alt.bases
    if alt.type & AlleleType.DELETION:
        deleted = alt.bases or fetch(call.contig, call.position + 1, call.position + 1 + alt.length)
        return ref_base + deleted.upper(), ref_base
    if alt.type & AlleleType.MNP:
        return fetch(call.contig, call.position, call.position + alt.length).upper(), alt.bases
    return ref_base, alt.bases


def _gt_for(genotype: Genotype, alt_key: str) -> Tuple[Optional[int], ...]:
    out: List[Optional[int]] = []
    for a in genotype.alleles:
        if a.type & AlleleType.REFERENCE:
            out.append(0)
        elif a.key == alt_key:
            out.append(1)
        else:
            out.append(None)
    return tuple(out)


class VcfWriter:
    """Write called sites as VCF records through pysam."""

    def __init__(
        self,
        path: str | Path,
        *,
        sample_names: Sequence[str],
        contigs: Sequence[Tuple[str, int]],
        reference_path: Optional[str] = None,
        fetch: Optional[ReferenceFetch] = None,
        report_all_alternates: bool = False,
    ) -> None:
        header = pysam.VariantHeader()
        header.add_meta("fileformat", "VCFv4.2")
        header.add_meta("source", f"bayesvar-{__version__}")
        if reference_path is not None:
            header.add_meta("reference", str(reference_path))
        for contig, length in contigs:
            header.contigs.add(contig, length=length)
        header.info.add("DP", 1, "Integer", "Total read depth at the locus")
        header.info.add("NS", 1, "Integer", "Number of samples with data")
        header.info.add("AC", "A", "Integer", "Alternate allele copies in the best genotype combination")
        header.info.add("AN", 1, "Integer", "Total allele copies in the best genotype combination")
        header.info.add("COMBOS", 1, "Integer", "Genotype combinations evaluated")
        header.formats.add("GT", 1, "String", "Genotype")
        header.formats.add("GQ", 1, "Integer", "Phred-scaled probability that the genotype is wrong")
        header.formats.add("DP", 1, "Integer", "Read depth")
        header.formats.add("RO", 1, "Integer", "Reference allele observations")
        header.formats.add("AO", 1, "Integer", "Alternate allele observations")
        for s in sample_names:
            header.add_sample(s)

        self.path = Path(path)
        self.fetch = fetch
        self.report_all_alternates = report_all_alternates
        mode = "wz" if self.path.suffix == ".gz" else "w"
        self._vcf = pysam.VariantFile(str(self.path), mode, header=header)
        self.records_written = 0

    def close(self) -> None:
        self._vcf.close()

    def __enter__(self) -> "VcfWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _fetch(self, contig: str, start: int, end: int) -> str:
        if self.fetch is None:
            raise ValueError("A reference accessor is required to write MNP or deletion records")
        return self.fetch(contig, start, end)

    def write(self, call: SiteCall) -> int:
        alternates = call.alternate_alleles()
        if not alternates:
            # best combo is homozygous reference; report the best-supported alternate instead
            alternates = [(a, 0) for a in call.genotype_alleles if not a.type & AlleleType.REFERENCE][:1]
        if not self.report_all_alternates:
            alternates = alternates[:1]
        n = 0
        for alt, copies in alternates:
            self._write_one(call, alt, copies)
            n += 1
        self.records_written += n
        return n

    def _write_one(self, call: SiteCall, alt: Allele, copies: int) -> None:
        ref_s, alt_s = vcf_alleles(call, alt, self._fetch)
        rec = self._vcf.new_record(
            contig=call.contig,
            start=call.position,
            stop=call.position + len(ref_s),
            alleles=(ref_s, alt_s),
            qual=round(prob_to_phred(1.0 - call.p_var), 4),
        )
        rec.info["DP"] = int(call.coverage)
        rec.info["NS"] = sum(1 for name in call.results if name in call.samples)
        rec.info["AC"] = (int(copies),)
        rec.info["AN"] = int(call.best_combo.total_alleles())
        rec.info["COMBOS"] = int(call.combos_tested)

        ref_key = call.reference_base
        for sample, genotype in call.best_combo.items():
            if sample not in rec.samples:
                continue
            fmt = rec.samples[sample]
            fmt["GT"] = _gt_for(genotype, alt.key)
            marginal = call.results[sample].marginals.get(genotype, 0.0)
            fmt["GQ"] = int(min(_MAX_GQ, round(prob_to_phred(1.0 - marginal))))
            observed = call.samples.get(sample)
            if observed is not None:
                fmt["DP"] = observed.observation_count()
                fmt["RO"] = observed.count(ref_key)
                fmt["AO"] = observed.count(alt.key)
        self._vcf.write(rec)


def json_record(call: SiteCall) -> Dict[str, Any]:
    """Machine-readable summary of one site, one JSON object per line."""
    samples: Dict[str, Any] = {}
    for name, rd in call.results.items():
        samples[name] = {
            "coverage": rd.sample.observation_count() if rd.sample is not None else 0,
            "genotypes": [
                {
                    "genotype": str(g),
                    "data_likelihood": ll,
                    "marginal": rd.marginals.get(g, 0.0),
                }
                for g, ll in rd.likelihoods
            ],
        }
    return {
        "position": call.position + 1,
        "sequence": call.contig,
        "reference": call.reference_base,
        "best_genotype_combo": {s: str(g) for s, g in call.best_combo.items()},
        "best_genotype_combo_prob": call.best_combo_score,
        "best_genotype_combo_ewens_sampling_probability": call.best_combo_ewens_prob,
        "top_genotype_combo_prob": call.combo_results[0].score if call.combo_results else None,
        "combos_tested": call.combos_tested,
        "coverage": call.coverage,
        "posterior_normalizer": call.posterior_normalizer,
        "p_var": call.p_var,
        "samples": samples,
    }


def write_json_record(fh: TextIO, call: SiteCall) -> None:
    fh.write(json.dumps(json_record(call), sort_keys=True) + "\n")


class TraceWriter:
    """Comma-separated trace of every intermediate quantity, for offline validation."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fh = open_textmaybe_gzip(self.path, "wt")

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "TraceWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _prefix(self, site: Site) -> str:
        return f"{site.contig},{site.position + 1}"

    def alleles(self, site: Site) -> None:
        p = self._prefix(site)
        for name, sample in site.samples.items():
            for _, group in sample:
                for a in group:
                    self._fh.write(
                        f"{p},allele,{name},{a.read_id},{a.key},{a.base_quality},{a.map_quality}\n"
                    )

    def likelihoods(self, site: Site, sample: str, probs: Sequence[Tuple[Genotype, float]]) -> None:
        p = self._prefix(site)
        for g, ll in probs:
            self._fh.write(f"{p},{sample},likelihood,{g},{ll}\n")

    def samples(self, site: Site, sample_names: Sequence[str]) -> None:
        self._fh.write(f"{self._prefix(site)},samples," + "".join(f"{s}:" for s in sample_names) + "\n")

    def posterior_normalizer(self, site: Site, normalizer: float) -> None:
        self._fh.write(f"{self._prefix(site)},posterior_normalizer,{normalizer}\n")

    def combos(
        self,
        site: Site,
        sample_names: Sequence[str],
        results: Sequence[GenotypeComboResult],
        normalizer: float,
    ) -> None:
        p = self._prefix(site)
        for r in results:
            by_sample = dict(r.combo.items())
            label = ";".join(str(by_sample[s]) if s in by_sample else "?" for s in sample_names)
            self._fh.write(
                f"{p},genotypecombo,{label},{r.data_likelihood_ln},{r.prior_ln},"
                f"{r.prior_g_af_ln},{r.prior_af_ln},{r.score},{safe_exp(r.score - normalizer)}\n"
            )


def write_failed_site(fh: TextIO, site: Site, genotype_alleles: Sequence[Allele]) -> None:
    """BED lines for alternates at a site whose pVar fell below the reporting threshold."""
    for a in genotype_alleles:
        if a.type & AlleleType.REFERENCE:
            continue
        fh.write(f"{site.contig}\t{site.position}\t{site.position + a.length}\t{a.key}\n")
