"""Shared numerical helpers.

Distribution tails come from :mod:`scipy.stats`, whose chi-square,
Student-t and normal implementations are accurate far beyond the 1e-6
needed around the 0.05/0.10 decision thresholds.  Survival functions
(``sf``) are used instead of ``1 - cdf`` so small p-values keep their
precision.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy import stats


def normal_two_sided_p(z: float) -> float:
    """Two-sided p-value of a standard normal statistic."""
    return float(2.0 * stats.norm.sf(abs(z)))


def chi2_upper_tail(q: float, df: int) -> float:
    """Upper-tail probability ``P(X >= q)`` for ``X ~ chi2(df)``."""
    if df <= 0:
        return 1.0
    return float(stats.chi2.sf(q, df))


def t_two_sided_p(t: float, df: int) -> float:
    return float(2.0 * stats.t.sf(abs(t), df))


def t_critical(df: int, level: float = 0.95) -> float:
    """Two-sided critical value of Student's t."""
    return float(stats.t.ppf(0.5 + level / 2.0, df))


@dataclass(frozen=True)
class InverseVariancePool:
    """Weighted mean with weights ``1 / (v_i + tau2)``."""

    estimate: float
    standard_error: float
    weights: np.ndarray
    sum_weights: float


def inverse_variance_pool(
    effects: Sequence[float],
    variances: Sequence[float],
    tau_squared: float = 0.0,
) -> InverseVariancePool:
    """Pool effects by inverse-variance weighting.

    With ``tau_squared == 0`` this is the fixed-effect estimate; with the
    DerSimonian-Laird tau² it is the random-effects estimate.  Identical
    effects pool to exactly that effect.
    """
    y = np.asarray(effects, dtype=float)
    v = np.asarray(variances, dtype=float) + tau_squared
    weights = 1.0 / v
    sum_w = float(np.sum(weights))
    if y.size and np.ptp(y) == 0:
        estimate = float(y[0])
    else:
        estimate = float(np.sum(weights * y) / sum_w)
    return InverseVariancePool(
        estimate=estimate,
        standard_error=float(np.sqrt(1.0 / sum_w)),
        weights=weights,
        sum_weights=sum_w,
    )


def clamp_confidence(score: float, low: float = 0.1, high: float = 0.9) -> float:
    """Keep advisory confidence scores inside ``[low, high]``."""
    return round(max(low, min(high, score)), 4)
