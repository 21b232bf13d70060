"""Between-study heterogeneity: Cochran's Q, I², τ², H² and prediction intervals.

``cochran_q`` and ``dersimonian_laird_tau2`` are the only implementations
of those statistics in the package; the pooling engine reuses them.

I² is interpreted with the Cochrane Handbook's overlapping bands::

    0–40%    low (might not be important)
    30–60%   moderate
    50–90%   substantial
    75–100%  considerable

A value inside an overlap belongs to both bands.  ``interpretation``
reports the most severe band that contains the value and
``interpretation_bands`` lists every band that does.
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from ..config.settings import Settings, settings as default_settings
from ..core.errors import InsufficientDataError
from ..core.models import StudyEffect
from ..utils.logging import get_logger
from .effect_sizes import to_study_effects
from .models import EffectSizeResult, HeterogeneityResult, PoolingModel, PredictionInterval
from .stats import chi2_upper_tail, clamp_confidence, inverse_variance_pool, t_critical

logger = get_logger(__name__)

I_SQUARED_BANDS: Tuple[Tuple[str, float, float], ...] = (
    ("low", 0.0, 40.0),
    ("moderate", 30.0, 60.0),
    ("substantial", 50.0, 90.0),
    ("considerable", 75.0, 100.0),
)


def cochran_q(effects: Sequence[float], variances: Sequence[float]) -> Tuple[float, float]:
    """Return Cochran's Q and the fixed-effect estimate it is centred on."""
    fixed = inverse_variance_pool(effects, variances)
    y = np.asarray(effects, dtype=float)
    q = float(np.sum(fixed.weights * (y - fixed.estimate) ** 2))
    return q, fixed.estimate


def dersimonian_laird_tau2(q: float, weights: Sequence[float]) -> float:
    """DerSimonian–Laird between-study variance from Q and fixed weights."""
    w = np.asarray(weights, dtype=float)
    df = len(w) - 1
    if df <= 0:
        return 0.0
    c = float(np.sum(w) - np.sum(w ** 2) / np.sum(w))
    if c <= 0:
        return 0.0
    return max(0.0, (q - df) / c)


def i_squared(q: float, df: int) -> float:
    """Percentage of total variation due to heterogeneity, in [0, 100]."""
    if df <= 0 or q <= 0:
        return 0.0
    return min(100.0, max(0.0, (q - df) / q * 100.0))


def interpret_i_squared(value: float) -> Tuple[str, Tuple[str, ...]]:
    """Map I² onto the Cochrane bands.

    Returns the most severe matching band and all matching bands.
    """
    matches = tuple(name for name, low, high in I_SQUARED_BANDS if low <= value <= high)
    return matches[-1], matches


class HeterogeneityAssessor:
    """Quantify heterogeneity across studies."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings

    def assess(
        self,
        studies: Sequence[Union[StudyEffect, EffectSizeResult, Mapping[str, Any]]],
    ) -> HeterogeneityResult:
        """Compute Q, I², τ², H² and, for k ≥ 3, the prediction interval.

        Raises:
            InsufficientDataError: fewer than two studies.
        """
        effects = to_study_effects(studies)
        k = len(effects)
        if k < 2:
            raise InsufficientDataError(
                f"Heterogeneity requires at least 2 studies, got {k}", required=2, available=k
            )
        y = [s.effect_size for s in effects]
        v = [s.variance for s in effects]
        warnings: List[str] = []

        q, pooled_fixed = cochran_q(y, v)
        df = k - 1
        weights = 1.0 / np.asarray(v)
        tau2 = dersimonian_laird_tau2(q, weights)
        random = inverse_variance_pool(y, v, tau2)
        i2 = i_squared(q, df)
        h2 = q / df
        label, bands = interpret_i_squared(i2)

        min_k = self.settings.prediction_min_studies
        p_value: Optional[float] = None
        interval: Optional[PredictionInterval] = None
        if k >= min_k:
            p_value = chi2_upper_tail(q, df)
            t_crit = t_critical(k - 2)
            half_width = t_crit * float(np.sqrt(tau2 + random.standard_error ** 2))
            interval = PredictionInterval(
                lower=random.estimate - half_width,
                upper=random.estimate + half_width,
                t_critical=t_crit,
                df=k - 2,
            )
        else:
            warnings.append(
                f"Fewer than {min_k} studies: Q significance test and prediction interval omitted"
            )

        recommended = (
            PoolingModel.RANDOM if i2 > self.settings.auto_random_i_squared else PoolingModel.FIXED
        )

        score = 0.7
        if k < 3:
            score -= 0.2
            warnings.append("Very few studies (<3) - heterogeneity estimates may be unreliable")
        elif k < 5:
            score -= 0.1
            warnings.append("Few studies (<5) - heterogeneity estimates have wide uncertainty")
        if p_value is not None:
            if 0.05 <= p_value < 0.10:
                warnings.append("Q test p-value is borderline (0.05-0.10) - interpret with caution")
            if i2 > 50 and p_value >= 0.05:
                warnings.append(
                    "I² suggests heterogeneity but Q test is not significant - "
                    "may be due to low power with few studies"
                )

        result = HeterogeneityResult(
            n_studies=k,
            q=q,
            df=df,
            p_value=p_value,
            i_squared=i2,
            tau_squared=tau2,
            tau=float(np.sqrt(tau2)),
            h_squared=h2,
            pooled_fixed=pooled_fixed,
            pooled_random=random.estimate,
            se_random=random.standard_error,
            prediction_interval=interval,
            interpretation=label,
            interpretation_bands=bands,
            recommended_model=recommended,
            summary=_summarise(i2, label, p_value),
            confidence=clamp_confidence(score),
            warnings=tuple(warnings),
        )
        logger.info(
            f"Heterogeneity assessed: I²={i2:.1f}% ({label})",
            extra={"analysis": {"k": k, "q": round(q, 4), "tau_squared": round(tau2, 6)}},
        )
        return result


def _summarise(i2: float, label: str, p_value: Optional[float]) -> str:
    text = f"Heterogeneity is {label} (I² = {i2:.1f}%). "
    if p_value is None:
        text += "The Q test was not performed. "
    elif p_value < 0.05:
        text += f"The Q test is statistically significant (p = {p_value:.4f}). "
    else:
        text += f"The Q test is not statistically significant (p = {p_value:.4f}). "
    if i2 > 75:
        text += (
            "A random-effects model is strongly recommended; consider subgroup "
            "analysis or meta-regression to explore sources of heterogeneity."
        )
    elif i2 > 50:
        text += "A random-effects model is recommended."
    elif i2 > 25:
        text += "Either a fixed-effect or a random-effects model may be appropriate."
    else:
        text += "Studies appear to estimate a similar effect; a fixed-effect model is appropriate."
    return text
