from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import __version__
from .alleles import BamAlleleSource, PloidyMap, read_ploidy_map
from .caller import call_variants
from .config import CallerParameters, load_parameters, parameters_from_mapping
from .output import VcfWriter
from .plotting import plot_pvar_hist, plot_site_counts
from .report import render_report
from .toy_data import make_toy_data
from .utils import ensure_outdir, write_json
from .validation import check_bam_index, check_fasta_index, load_targets, parse_region


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    msg = f"{err.__class__.__name__}: {err}"
    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


# Maps CLI dest -> CallerParameters field. Flags default to None so that only
# explicitly given values override the parameter file.
_PARAM_FLAGS = {
    "min_alt_count": "min_alt_count",
    "min_alt_fraction": "min_alt_fraction",
    "min_baseq": "min_base_quality",
    "min_mapq": "min_mapping_quality",
    "band_width": "band_width",
    "band_depth": "band_depth",
    "step_max": "step_max",
    "theta": "theta",
    "diffusion_prior_scalar": "diffusion_prior_scalar",
    "posterior_integration_depth": "posterior_integration_depth",
    "pvl": "pvl",
    "rdf": "rdf",
    "ploidy": "default_ploidy",
    "max_alleles": "max_alleles",
    "variation_model": "variation_model",
}


def _quality_pair(text: str) -> Tuple[int, int]:
    mq, sep, bq = text.partition(",")
    try:
        if not sep:
            raise ValueError(text)
        return int(mq), int(bq)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected MQ,BQ (two integers), got {text!r}") from None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bayesvar",
        description=(
            "BayesVar: Bayesian multi-sample variant detection (SNPs, indels, MNPs) "
            "from aligned reads and a reference sequence."
        ),
    )
    p.add_argument("--version", action="version", version=f"bayesvar {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser("quickstart", help="Print ready-to-run recipes for common scenarios.")

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny reference and two-sample BAM for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # call
    # -----------------
    c = sub.add_parser("call", help="Call variants jointly across all samples in the given BAM(s).")
    c.add_argument(
        "--bam",
        required=True,
        nargs="+",
        type=_path_exists,
        help="Input BAM(s) (sorted, indexed). Samples are taken from read-group SM tags.",
    )
    c.add_argument("--ref", required=True, type=_path_exists, help="Reference FASTA (faidx indexed).")
    c.add_argument("--outdir", required=True, help="Output directory.")
    c.add_argument(
        "--region",
        action="append",
        default=None,
        help="Region to call, chr or chr:start-end (1-based). May be repeated.",
    )
    c.add_argument(
        "--targets",
        type=_path_exists,
        default=None,
        help="BED file of targets; positions outside are skipped.",
    )
    c.add_argument(
        "--params",
        type=_path_exists,
        default=None,
        help="JSON file with parameter overrides (flags given on the command line win).",
    )
    c.add_argument(
        "--ploidy-map",
        type=_path_exists,
        default=None,
        help="Tab-separated sample/ploidy file (pooled samples: 2 x pool size).",
    )

    # Model
    c.add_argument("--ploidy", type=int, default=None, help="Default sample ploidy (default: 2).")
    c.add_argument("--theta", type=float, default=None, help="Population diversity TH (default: 0.001).")
    c.add_argument("--band-width", type=int, default=None, help="Per-sample band WB (default: 2).")
    c.add_argument("--band-depth", type=int, default=None, help="Total band TB (default: 4).")
    c.add_argument(
        "--step-max",
        type=int,
        default=None,
        help="Cap on banded combinations per site; 0 = no cap (default: 0).",
    )
    c.add_argument(
        "--posterior-integration-depth",
        type=int,
        default=None,
        help="Keep the top K combos for normalization; 0 = keep all (default: 0).",
    )
    c.add_argument("--pooled", action="store_true", help="Samples are pools of individuals.")
    c.add_argument(
        "--diffusion-prior-scalar",
        type=float,
        default=None,
        help="Tempering of the frequency prior in pooled mode (default: 1.0).",
    )
    c.add_argument("--rdf", type=float, default=None, help="Read dependence factor (default: 1.0).")
    c.add_argument(
        "--pvl",
        type=float,
        default=None,
        help="Report sites with pVar >= PVL (default: 0.0001).",
    )
    c.add_argument(
        "--variation-model",
        choices=["population", "reference"],
        default=None,
        help="Null hypothesis for pVar: all samples homozygous for one allele, or homozygous reference.",
    )
    c.add_argument("--max-alleles", type=int, default=None, help="Max genotype alleles per site (default: 4).")
    c.add_argument(
        "--use-ref-allele",
        action="store_true",
        help="Genotype the reference sequence as an extra sample named after the contig.",
    )
    c.add_argument(
        "--reference-quality",
        type=_quality_pair,
        default=None,
        metavar="MQ,BQ",
        help="Mapping and base quality of the reference observation (default: 100,60).",
    )

    # Observation filters
    c.add_argument("--min-alt-count", type=int, default=None, help="Min alternate observations (default: 2).")
    c.add_argument(
        "--min-alt-fraction",
        type=float,
        default=None,
        help="Min alternate fraction within a sample (default: 0).",
    )
    c.add_argument("--min-baseq", type=int, default=None, help="Min base quality (default: 0).")
    c.add_argument("--min-mapq", type=int, default=None, help="Min mapping quality (default: 0).")
    c.add_argument("--no-snps", action="store_true", help="Ignore SNP alleles.")
    c.add_argument("--no-indels", action="store_true", help="Ignore insertion and deletion alleles.")
    c.add_argument("--mnps", action="store_true", help="Consider multi-nucleotide substitutions.")

    # Outputs
    c.add_argument(
        "--report-all-alternates",
        action="store_true",
        help="Write one VCF record per alternate allele in the best genotype combination.",
    )
    c.add_argument("--json", action="store_true", help="Also write per-site JSON lines (sites.jsonl).")
    c.add_argument("--trace", action="store_true", help="Write a trace of all intermediate values (trace.csv.gz).")
    c.add_argument(
        "--failed-sites",
        action="store_true",
        help="Write processed sites below PVL as BED (failed_sites.bed).",
    )
    c.add_argument("--no-report", action="store_true", help="Do not render report.html and plots.")
    c.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    c.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")

    c.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


# -----------------
# Command handlers
# -----------------


def cmd_quickstart() -> int:
    lines = [
        "BayesVar quickstart (copy/paste):",
        "",
        "1) Try it on toy data:",
        "   bayesvar make-toy-data --outdir toy/",
        "   bayesvar call --bam toy/toy.bam --ref toy/toy_ref.fa --outdir toy_calls/",
        "",
        "2) Joint calling of several BAMs in one region:",
        "   bayesvar call \\",
        "     --bam s1.bam s2.bam s3.bam \\",
        "     --ref ref.fa \\",
        "     --region chr20:1,000,000-2,000,000 \\",
        "     --outdir results/",
        "   Outputs: results/calls.vcf.gz, results/report.html, results/summary.json",
        "",
        "3) Pooled samples (e.g. 10 diploid individuals per pool):",
        "   printf 'POOL1\\t20\\nPOOL2\\t20\\n' > ploidy.tsv",
        "   bayesvar call --bam pools.bam --ref ref.fa --pooled --ploidy-map ploidy.tsv --outdir pools/",
        "",
        "Tip: use --dry-run to validate inputs, --json/--trace for per-site detail.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print("Dry-run: would write toy data to:")
        print(f"  {outdir / 'toy_ref.fa'}")
        print(f"  {outdir / 'toy.bam'}")
        return 0
    try:
        summary = make_toy_data(outdir=outdir)
    except Exception as e:
        return _handle_error(e)
    print(json.dumps(summary, indent=2))
    return 0


def _parameters_from_args(args: argparse.Namespace) -> CallerParameters:
    params = CallerParameters()
    if args.params is not None:
        params = load_parameters(args.params, params)
    overrides: Dict[str, Any] = {}
    for dest, name in _PARAM_FLAGS.items():
        value = getattr(args, dest)
        if value is not None:
            overrides[name] = value
    if args.pooled:
        overrides["pooled"] = True
    if args.no_snps:
        overrides["allow_snps"] = False
    if args.no_indels:
        overrides["allow_indels"] = False
    if args.mnps:
        overrides["allow_mnps"] = True
    if args.report_all_alternates:
        overrides["report_all_alternates"] = True
    if args.use_ref_allele:
        overrides["use_ref_allele"] = True
    if args.reference_quality is not None:
        overrides["reference_mapping_quality"], overrides["reference_base_quality"] = args.reference_quality
    return parameters_from_mapping(overrides, params)


def _resolve_regions(args: argparse.Namespace, source: BamAlleleSource) -> Optional[List[Tuple[str, int, int]]]:
    lengths = dict(source.contigs())
    if not lengths:
        raise ValueError(
            "No contigs are shared between the BAM header and the reference FASTA. "
            "Check that the BAM was aligned to this reference."
        )
    if not args.region:
        return None
    return [parse_region(r, lengths) for r in args.region]


def cmd_call(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "call.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)
    logger = logging.getLogger("bayesvar")

    try:
        for bam in args.bam:
            check_bam_index(bam)
        check_fasta_index(args.ref)

        params = _parameters_from_args(args)
        ploidy = (
            read_ploidy_map(args.ploidy_map, default=params.default_ploidy)
            if args.ploidy_map is not None
            else PloidyMap(default=params.default_ploidy)
        )
        targets = load_targets(args.targets) if args.targets is not None else None

        vcf_path = outdir / "calls.vcf.gz"
        json_path = outdir / "sites.jsonl" if args.json else None
        trace_path = outdir / "trace.csv.gz" if args.trace else None
        failed_path = outdir / "failed_sites.bed" if args.failed_sites else None

        with BamAlleleSource(
            args.bam,
            args.ref,
            allowed_types=params.allowed_allele_types,
            min_base_quality=params.min_base_quality,
            min_mapping_quality=params.min_mapping_quality,
            targets=targets,
        ) as source:
            regions = _resolve_regions(args, source)

            if args.dry_run:
                print("Dry-run: inputs validated.")
                print(f"Samples: {', '.join(source.sample_names)}")
                print("Regions: " + (", ".join(f"{c}:{s + 1}-{e}" for c, s, e in regions) if regions else "all contigs"))
                if targets is not None:
                    spans = targets.intervals()
                    print(f"Targets: {len(spans)} intervals, {sum(e - s for _, s, e in spans)} bp")
                print("Parameters:")
                print(json.dumps(params.to_dict(), indent=2, sort_keys=True))
                print("Planned outputs:")
                for pth in [vcf_path, json_path, trace_path, failed_path, outdir / "summary.json"]:
                    if pth is not None:
                        print(f"  {pth}")
                if not args.no_report:
                    print(f"  {outdir / 'report.html'}")
                return 0

            ensure_outdir(outdir)
            logger.info("Samples: %s", ", ".join(source.sample_names))

            with VcfWriter(
                vcf_path,
                sample_names=source.sample_names,
                contigs=source.contigs(),
                reference_path=args.ref,
                fetch=source.reference.fetch,
                report_all_alternates=params.report_all_alternates,
            ) as vcf_writer:
                run = call_variants(
                    source.iter_sites(regions),
                    ploidy_of=ploidy,
                    params=params,
                    outdir=outdir,
                    vcf_writer=vcf_writer,
                    json_path=json_path,
                    trace_path=trace_path,
                    failed_path=failed_path,
                    progress=not args.no_progress,
                )
            sample_names = list(source.sample_names)

        run["samples"] = sample_names
        run["bam_paths"] = list(args.bam)
        run["reference"] = str(args.ref)
        write_json(outdir / "summary.json", run)

        if not args.no_report:
            plots_dir = ensure_outdir(outdir / "plots")
            plot_pvar_hist(
                bin_edges=run["pvar_hist"]["bin_edges"],  # type: ignore[index]
                counts=run["pvar_hist"]["counts"],  # type: ignore[index]
                out_png=plots_dir / "pvar_hist.png",
            )
            plot_site_counts(counts=run["counts"], out_png=plots_dir / "site_counts.png")  # type: ignore[arg-type]
            report = render_report(
                outdir=outdir,
                version=__version__,
                run=run,
                bam_paths=args.bam,
                reference=str(args.ref),
                samples=sample_names,
                plots={
                    "pvar_hist": "plots/pvar_hist.png",
                    "site_counts": "plots/site_counts.png",
                },
            )
            logger.info("Wrote report: %s", report)

        print(str(vcf_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=None if args.dry_run else log_path)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "call":
        return cmd_call(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
