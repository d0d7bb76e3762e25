from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)

_SITE_LABELS = [
    ("sites_processed", "Processed"),
    ("skipped_non_acgt", "Non-ACGT ref"),
    ("skipped_outside_target", "Off target"),
    ("skipped_no_coverage", "No coverage"),
    ("skipped_insufficient_alternates", "Few alternates"),
    ("skipped_too_few_alleles", "< 2 alleles"),
]


def plot_pvar_hist(
    *,
    bin_edges: List[float],
    counts: List[int],
    out_png: str | Path,
    title: str = "Probability of variation across processed sites",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    widths = [bin_edges[i + 1] - bin_edges[i] for i in range(len(counts))]
    centers = [bin_edges[i] + widths[i] / 2.0 for i in range(len(counts))]

    plt.figure()
    plt.bar(centers, counts, width=widths, align="center")
    plt.xlabel("pVar")
    plt.ylabel("Site count")
    plt.yscale("symlog")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_site_counts(
    *,
    counts: Dict[str, int],
    out_png: str | Path,
    title: str = "Site outcomes",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = [label for _, label in _SITE_LABELS]
    values = [int(counts.get(key, 0)) for key, _ in _SITE_LABELS]

    plt.figure()
    plt.bar(labels, values)
    plt.ylabel("Site count")
    plt.title(title)
    plt.xticks(rotation=25, ha="right")
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
