from __future__ import annotations

import gzip
import json
import logging
import math
from pathlib import Path
from typing import Any, Iterable, TextIO

import numpy as np

logger = logging.getLogger(__name__)

_MAX_PHRED = 999.0


class InferenceError(RuntimeError):
    """Raised when the per-site computation reaches a state it cannot score.

    Examples are an empty set of genotype combos, a normalizer over no finite
    values, or a site with no samples. These are logic or configuration errors,
    never regular skip conditions.
    """


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def phred_to_error_prob(q: int) -> float:
    # Guard against negative values (can occur if qualities are missing).
    if q <= 0:
        return 1.0
    return 10 ** (-q / 10)


def prob_to_phred(p: float) -> float:
    """Phred-scale an error probability, capped for p == 0."""
    if p <= 0.0:
        return _MAX_PHRED
    return min(_MAX_PHRED, -10.0 * math.log10(p))


def logsumexp(values: Iterable[float]) -> float:
    """Numerically stable ``log(sum(exp(values)))``.

    Raises InferenceError on empty input or when no value is finite; both mean
    the caller has nothing to normalize over.
    """
    arr = np.fromiter(values, dtype=float)
    if arr.size == 0:
        raise InferenceError("logsumexp over an empty set of log-probabilities")
    if np.isnan(arr).any():
        raise InferenceError("logsumexp input contains NaN")
    m = float(arr.max())
    if not math.isfinite(m):
        raise InferenceError("logsumexp input has no finite log-probability")
    return m + float(np.log(np.sum(np.exp(arr - m))))


def safe_exp(x: float) -> float:
    # exp of very negative log-probabilities underflows to 0.0 rather than raising
    if x < -745.0:
        return 0.0
    return math.exp(x)


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)
