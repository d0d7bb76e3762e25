from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, Sequence

from jinja2 import Template

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>BayesVar Report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>BayesVar Report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      {% for bam in bam_paths %}
      <tr><th>BAM</th><td><code>{{ bam }}</code></td></tr>
      {% endfor %}
      <tr><th>Reference</th><td><code>{{ reference }}</code></td></tr>
      <tr><th>Samples</th><td>{{ samples | join(", ") }}</td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Model</h3>
    <table>
      <tr><th>Theta (TH)</th><td>{{ params.theta }}</td></tr>
      <tr><th>Band width / depth (WB / TB)</th><td>{{ params.band_width }} / {{ params.band_depth }}</td></tr>
      <tr><th>Posterior integration depth (K)</th><td>{{ params.posterior_integration_depth }}</td></tr>
      <tr><th>Reporting threshold (PVL)</th><td>{{ params.pvl }}</td></tr>
      <tr><th>Pooled</th><td>{{ params.pooled }}</td></tr>
      <tr><th>Variation model</th><td>{{ params.variation_model }}</td></tr>
    </table>
  </div>
</div>

<h2>Sites</h2>
<table>
  <tr><th>Covered positions</th><td>{{ counts.sites_total }}</td></tr>
  <tr><th>Processed</th><td>{{ counts.sites_processed }}</td></tr>
  <tr><th>Reported (pVar &ge; PVL)</th><td>{{ sites_reported }}</td></tr>
  <tr><th>VCF records</th><td>{{ vcf_records_written }}</td></tr>
  <tr><th>Skipped: non-ACGT reference</th><td>{{ counts.skipped_non_acgt }}</td></tr>
  <tr><th>Skipped: outside targets</th><td>{{ counts.skipped_outside_target }}</td></tr>
  <tr><th>Skipped: no coverage</th><td>{{ counts.skipped_no_coverage }}</td></tr>
  <tr><th>Skipped: insufficient alternates</th><td>{{ counts.skipped_insufficient_alternates }}</td></tr>
  <tr><th>Skipped: fewer than two alleles</th><td>{{ counts.skipped_too_few_alleles }}</td></tr>
  <tr><th>Skipped: inference error</th><td>{{ counts.skipped_inference_error }}</td></tr>
  <tr><th>Mean combos tested</th><td>{{ "%.1f" | format(mean_combos_tested) }}</td></tr>
</table>

<h2>Plots</h2>
<div class="grid">
  <div class="card">
    <h3>Probability of variation</h3>
    <img src="{{ plots.pvar_hist }}" alt="pVar histogram">
  </div>
  <div class="card">
    <h3>Site outcomes</h3>
    <img src="{{ plots.site_counts }}" alt="site outcomes">
  </div>
</div>

<h2>Outputs</h2>
<ul>
  {% if vcf_path %}<li><code>{{ vcf_path }}</code> (variant calls)</li>{% endif %}
  {% if json_path %}<li><code>{{ json_path }}</code> (per-site JSON lines)</li>{% endif %}
  {% if trace_path %}<li><code>{{ trace_path }}</code> (trace)</li>{% endif %}
  {% if failed_path %}<li><code>{{ failed_path }}</code> (sites below PVL, BED)</li>{% endif %}
  <li><code>summary.json</code> (machine-readable summary)</li>
</ul>

<hr>
<p class="small">BayesVar {{ version }} &middot; runtime {{ "%.1f" | format(runtime_seconds) }} s</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    run: Dict[str, Any],
    bam_paths: Sequence[str],
    reference: str,
    samples: Sequence[str],
    plots: Dict[str, str],
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        bam_paths=list(bam_paths),
        reference=reference,
        samples=list(samples),
        params=run.get("parameters", {}),
        counts=run.get("counts", {}),
        sites_reported=run.get("sites_reported", 0),
        vcf_records_written=run.get("vcf_records_written", 0),
        mean_combos_tested=float(run.get("mean_combos_tested", 0.0)),
        runtime_seconds=float(run.get("runtime_seconds", 0.0)),
        vcf_path=run.get("vcf_path"),
        json_path=run.get("json_path"),
        trace_path=run.get("trace_path"),
        failed_path=run.get("failed_path"),
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
