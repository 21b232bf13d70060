"""Fixed-effect and random-effects pooling.

The fixed-effect model weights each study by ``1/se²``.  The
random-effects model (DerSimonian–Laird) adds the between-study variance
τ² from :mod:`metastat.meta.heterogeneity` to every study's variance
before weighting.  ``model="auto"`` picks random-effects when I² exceeds
50% or Cochran's Q has p < 0.10, and fixed-effect otherwise.

References: Cochrane Handbook ch. 10; DerSimonian & Laird (1986).
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from ..config.settings import Settings, settings as default_settings
from ..core.errors import InputError, InsufficientStudies
from ..core.models import EffectMeasure, StudyEffect
from ..utils.logging import get_logger
from .effect_sizes import parse_measure, to_study_effects
from .heterogeneity import HeterogeneityAssessor
from .models import EffectSizeResult, HeterogeneityResult, PooledResult, PoolingModel, StudyWeight
from .stats import clamp_confidence, inverse_variance_pool, normal_two_sided_p

logger = get_logger(__name__)

PoolingInput = Union[StudyEffect, EffectSizeResult, Mapping[str, Any]]


class PoolingEngine:
    """Combine per-study effect sizes into one summary estimate."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        heterogeneity: Optional[HeterogeneityAssessor] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.heterogeneity = heterogeneity or HeterogeneityAssessor(self.settings)

    def pool(
        self,
        studies: Sequence[PoolingInput],
        model: Union[PoolingModel, str] = PoolingModel.AUTO,
        measure: Optional[Union[EffectMeasure, str]] = None,
    ) -> PooledResult:
        """Pool ``studies`` under the requested model.

        Args:
            studies: At least two effect sizes with standard errors, on
                the analysis scale.
            model: ``"fixed"``, ``"random"`` or ``"auto"``.
            measure: Effect measure, used for the display-scale fields.
                Inferred from the studies when they all carry the same one.

        Raises:
            InsufficientStudies: fewer than two studies.
            InputError: malformed study records or unknown model.
        """
        effects = to_study_effects(studies)
        k = len(effects)
        if k < 2:
            raise InsufficientStudies(
                f"Pooling requires at least 2 studies, got {k}", required=2, available=k
            )
        requested = _parse_model(model)
        het = self.heterogeneity.assess(effects)

        if requested is PoolingModel.AUTO:
            chosen, rationale = self.select_model(het)
        elif requested is PoolingModel.FIXED:
            chosen = PoolingModel.FIXED
            rationale = "Fixed-effect model assumes all studies estimate the same true effect"
        else:
            chosen = PoolingModel.RANDOM
            rationale = "Random-effects model accounts for between-study heterogeneity"

        result = self._pool(effects, chosen, _resolve_measure(effects, measure), het, rationale)
        logger.info(
            f"Pooled {k} studies with {chosen.value}-effect model",
            extra={
                "analysis": {
                    "k": k,
                    "model": chosen.value,
                    "effect": round(result.effect, 6),
                    "p_value": result.p_value,
                }
            },
        )
        return result

    def fixed(self, studies: Sequence[PoolingInput], measure=None) -> PooledResult:
        return self.pool(studies, PoolingModel.FIXED, measure)

    def random(self, studies: Sequence[PoolingInput], measure=None) -> PooledResult:
        return self.pool(studies, PoolingModel.RANDOM, measure)

    def select_model(self, het: HeterogeneityResult) -> Tuple[PoolingModel, str]:
        """Deterministic model choice for ``model="auto"``."""
        i2_limit = self.settings.auto_random_i_squared
        p_limit = self.settings.auto_random_q_pvalue
        if het.i_squared > i2_limit:
            return PoolingModel.RANDOM, (
                f"Random-effects model selected: I² = {het.i_squared:.1f}% exceeds {i2_limit:.0f}%"
            )
        if het.p_value is not None and het.p_value < p_limit:
            return PoolingModel.RANDOM, (
                f"Random-effects model selected: Q test p = {het.p_value:.4f} below {p_limit:.2f}"
            )
        logger.debug(f"Auto model selection kept fixed effect (I²={het.i_squared:.1f}%)")
        return PoolingModel.FIXED, (
            f"Fixed-effect model selected due to low heterogeneity (I² = {het.i_squared:.1f}%)"
        )

    def _pool(
        self,
        effects: List[StudyEffect],
        model: PoolingModel,
        measure: Optional[EffectMeasure],
        het: HeterogeneityResult,
        rationale: str,
    ) -> PooledResult:
        tau2 = het.tau_squared if model is PoolingModel.RANDOM else 0.0
        pooled = inverse_variance_pool(
            [s.effect_size for s in effects], [s.variance for s in effects], tau2
        )
        z_crit = self.settings.z_critical
        ci_lower = pooled.estimate - z_crit * pooled.standard_error
        ci_upper = pooled.estimate + z_crit * pooled.standard_error
        z = pooled.estimate / pooled.standard_error

        weights = tuple(
            StudyWeight(
                study_id=s.study_id,
                weight=float(w),
                weight_percent=float(w / pooled.sum_weights * 100.0),
            )
            for s, w in zip(effects, pooled.weights)
        )
        sizes = [s.sample_size for s in effects if s.sample_size is not None]
        display = measure.to_display if measure is not None else float

        warnings: List[str] = []
        score = 0.7
        k = len(effects)
        if k < 3:
            score -= 0.2
            warnings.append("Very few studies (<3) for pooling")
        elif k < 5:
            score -= 0.1
            warnings.append("Few studies (<5) for pooling")
        if model is PoolingModel.FIXED:
            if het.i_squared > 75:
                score -= 0.2
                warnings.append("High heterogeneity (I² > 75%) - consider random-effects model")
            elif het.i_squared > 50:
                score -= 0.1
                warnings.append("Moderate heterogeneity (I² > 50%) - consider random-effects model")
        else:
            if het.i_squared > 75:
                warnings.append("High heterogeneity (I² > 75%) detected")
            elif het.i_squared > 50:
                warnings.append("Moderate heterogeneity (I² > 50%) detected")
            if tau2 > 1:
                score -= 0.1
                warnings.append("Large between-study variance (tau² > 1)")
        if ci_upper - ci_lower > 2 * abs(pooled.estimate):
            score -= 0.1
            warnings.append("Wide confidence interval")

        return PooledResult(
            model=model,
            measure=measure,
            effect=pooled.estimate,
            standard_error=pooled.standard_error,
            ci_lower=ci_lower,
            ci_upper=ci_upper,
            z=z,
            p_value=normal_two_sided_p(z),
            tau_squared=tau2,
            per_study_weights=weights,
            n_studies=k,
            total_sample_size=sum(sizes) if sizes else None,
            display_effect=display(pooled.estimate),
            display_ci_lower=display(ci_lower),
            display_ci_upper=display(ci_upper),
            model_rationale=rationale,
            heterogeneity=het,
            confidence=clamp_confidence(score),
            warnings=tuple(warnings),
        )


def _parse_model(model: Union[PoolingModel, str]) -> PoolingModel:
    try:
        return PoolingModel(model)
    except ValueError:
        raise InputError(f"Unknown pooling model: {model!r}") from None


def _resolve_measure(
    effects: Sequence[StudyEffect], measure: Optional[Union[EffectMeasure, str]]
) -> Optional[EffectMeasure]:
    if measure is not None:
        return parse_measure(measure)
    found = {s.measure for s in effects if s.measure is not None}
    return found.pop() if len(found) == 1 else None
