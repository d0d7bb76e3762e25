"""BayesVar: Bayesian multi-sample genetic variant detection.

Public API is intentionally small; most users should use the CLI:

    bayesvar call --bam ... --ref ... --outdir ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
