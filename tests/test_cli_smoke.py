import json
import subprocess
import sys
from pathlib import Path

import pysam

from bayesvar.toy_data import TOY_HET_POS0, make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "bayesvar"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "bayesvar", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "BayesVar" in cp.stdout or "bayesvar" in cp.stdout.lower()


def test_quickstart_output() -> None:
    cp = _run_cli(["quickstart"])
    assert cp.returncode == 0
    assert "bayesvar make-toy-data" in cp.stdout
    assert "bayesvar call" in cp.stdout


def test_call_on_toy_data(tmp_path: Path) -> None:
    cp = _run_cli(["make-toy-data", "--outdir", str(tmp_path / "toy")])
    assert cp.returncode == 0, cp.stderr
    toy = json.loads(cp.stdout)

    outdir = tmp_path / "calls"
    cp = _run_cli(
        [
            "call",
            "--bam",
            toy["bam"],
            "--ref",
            toy["ref_fa"],
            "--outdir",
            str(outdir),
            "--json",
            "--failed-sites",
            "--no-progress",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    assert (outdir / "report.html").exists()
    assert (outdir / "plots" / "pvar_hist.png").exists()
    assert (outdir / "sites.jsonl").exists()

    summary = json.loads((outdir / "summary.json").read_text())
    assert summary["vcf_records_written"] == 1
    assert summary["samples"] == ["NA0001", "NA0002"]

    with pysam.VariantFile(str(outdir / "calls.vcf.gz")) as vcf:
        recs = list(vcf)
    assert len(recs) == 1
    rec = recs[0]
    assert rec.pos == TOY_HET_POS0 + 1
    assert (rec.ref, rec.alts) == ("G", ("A",))
    assert rec.samples["NA0001"]["GT"] == (0, 1)
    assert rec.samples["NA0002"]["GT"] == (0, 0)


def test_call_dry_run_does_not_write_outputs(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    bed = tmp_path / "targets.bed"
    bed.write_text("chr1\t10\t30\nchr1\t20\t40\nchr1\t50\t60\n", encoding="utf-8")
    outdir = tmp_path / "calls"
    cp = _run_cli(
        [
            "call",
            "--bam",
            toy["bam"],
            "--ref",
            toy["ref_fa"],
            "--outdir",
            str(outdir),
            "--region",
            "chr1:40-60",
            "--targets",
            str(bed),
            "--dry-run",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    assert "Dry-run" in cp.stdout
    assert "chr1:40-60" in cp.stdout
    assert "Targets: 2 intervals, 40 bp" in cp.stdout
    assert not (outdir / "calls.vcf.gz").exists()


def test_call_reports_bad_params(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    params = tmp_path / "params.json"
    params.write_text(json.dumps({"no_such_setting": 1}), encoding="utf-8")
    cp = _run_cli(
        [
            "call",
            "--bam",
            toy["bam"],
            "--ref",
            toy["ref_fa"],
            "--outdir",
            str(tmp_path / "calls"),
            "--params",
            str(params),
        ]
    )
    assert cp.returncode == 2
    assert "Unknown parameter" in cp.stderr


def test_call_with_reference_sample(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "calls"
    cp = _run_cli(
        [
            "call",
            "--bam",
            toy["bam"],
            "--ref",
            toy["ref_fa"],
            "--outdir",
            str(outdir),
            "--use-ref-allele",
            "--reference-quality",
            "100,60",
            "--json",
            "--no-progress",
            "--no-report",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    summary = json.loads((outdir / "summary.json").read_text())
    assert summary["parameters"]["use_ref_allele"] is True

    with pysam.VariantFile(str(outdir / "calls.vcf.gz")) as vcf:
        assert list(vcf.header.samples) == ["NA0001", "NA0002"]
        recs = list(vcf)
    assert len(recs) == 1
    assert recs[0].info["NS"] == 2
    assert recs[0].samples["NA0001"]["GT"] == (0, 1)

    sites = [json.loads(line) for line in (outdir / "sites.jsonl").read_text().splitlines()]
    assert sites
    assert all(s["sequence"] in s["samples"] for s in sites)
