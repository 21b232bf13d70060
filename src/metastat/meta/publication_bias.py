"""Small-study effects and publication bias.

Two complementary tests are run on the analysis-scale effects:

* Egger's regression: OLS of ``y_i/se_i`` on ``1/se_i``.  A non-zero
  intercept indicates funnel asymmetry.  ``t = b0/SE(b0)`` with ``k - 2``
  degrees of freedom.
* Begg and Mazumdar's rank correlation: Kendall's tau-b between the
  standardized deviates ``(y_i - θ_FE)/sqrt(v_i - 1/Σw)`` and the
  variances ``v_i``, with ``var(tau) = 2(2k + 5) / (9k(k - 1))``.

Bias is only flagged when both tests agree at ``bias_alpha`` or when one
is significant at ``bias_strong_alpha`` and the other points the same
way.  Both tests have little power below ten studies; results are still
produced but marked ``low_power``.  With only two studies Egger's
regression has no residual degrees of freedom, so only Begg's test is
reported and bias is never flagged.

Trim-and-fill follows Duval and Tweedie's L0 estimator with a
fixed-effect model.

References: Egger et al. (1997); Begg & Mazumdar (1994);
Duval & Tweedie (2000).
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence, Union

import numpy as np
from scipy import stats

from ..config.settings import Settings, settings as default_settings
from ..core.errors import InsufficientDataError
from ..core.models import StudyEffect
from ..utils.logging import get_logger
from .effect_sizes import to_study_effects
from .models import (
    BeggTest,
    BiasAssessment,
    EffectSizeResult,
    EggerTest,
    FunnelContour,
    FunnelPlotData,
    FunnelPoint,
    PooledResult,
    PublicationBiasResult,
    TrimAndFillResult,
)
from .stats import clamp_confidence, inverse_variance_pool, normal_two_sided_p, t_two_sided_p

logger = get_logger(__name__)

BiasInput = Union[StudyEffect, EffectSizeResult, Mapping[str, Any]]

MAX_TRIM_ITERATIONS = 100


class PublicationBiasAssessor:
    """Run Egger, Begg and trim-and-fill diagnostics."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings

    def assess(
        self,
        studies: Sequence[BiasInput],
        pooled: Optional[Union[PooledResult, float]] = None,
        trim_and_fill: bool = True,
    ) -> PublicationBiasResult:
        """Assess funnel asymmetry.

        Args:
            studies: Two or more effect sizes on the analysis scale.
                Egger's test and trim-and-fill need at least three; with
                two, only Begg's test is reported.
            pooled: Reference estimate for the funnel plot.  Defaults to
                the fixed-effect estimate.
            trim_and_fill: Also run the trim-and-fill adjustment.

        Raises:
            InsufficientDataError: fewer than two studies.
        """
        effects = self._require(studies, minimum=2)
        k = len(effects)
        warnings: List[str] = []
        sufficient = k >= 3

        low_power = k < self.settings.bias_min_studies
        if not sufficient:
            warnings.append(
                f"Insufficient studies ({k} < 3): Egger's test and trim-and-fill not computed"
            )
        if low_power:
            warnings.append(
                f"Fewer than {self.settings.bias_min_studies} studies ({k}): "
                "publication bias tests have low power"
            )

        egger = self.egger(effects) if sufficient else None
        if sufficient and egger is None:
            warnings.append("Egger's test not computed: all studies have the same standard error")
        begg = self.begg(effects)

        tf_result = self.trim_and_fill(effects, egger, begg) if trim_and_fill and sufficient else None
        imputed = tf_result.imputed_studies if tf_result is not None else ()
        if tf_result is not None and tf_result.n_imputed:
            warnings.append(
                f"Trim-and-fill imputed {tf_result.n_imputed} studies on the {tf_result.side}"
            )

        reference = _reference_effect(effects, pooled)
        funnel = self.funnel(effects, reference, imputed)
        if sufficient:
            overall = self._overall(egger, begg, low_power)
        else:
            overall = BiasAssessment(
                bias_detected=False,
                confidence=clamp_confidence(0.3),
                level="low",
                interpretation=(
                    f"Insufficient studies ({k} < 3) to assess publication bias; "
                    "no asymmetry can be concluded."
                ),
            )

        result = PublicationBiasResult(
            n_studies=k,
            egger=egger,
            begg=begg,
            funnel=funnel,
            trim_and_fill=tf_result,
            overall=overall,
            low_power=low_power,
            warnings=tuple(warnings),
        )
        logger.info(
            f"Publication bias assessed for {k} studies: "
            f"{'detected' if overall.bias_detected else 'not detected'}",
            extra={
                "analysis": {
                    "k": k,
                    "egger_p": egger.p if egger is not None else None,
                    "begg_p": begg.p,
                    "level": overall.level,
                }
            },
        )
        return result

    def egger(self, studies: Sequence[BiasInput]) -> Optional[EggerTest]:
        """Egger's regression test, or ``None`` when every SE is equal."""
        effects = self._require(studies)
        se = np.array([s.standard_error for s in effects])
        y = np.array([s.effect_size for s in effects])
        precision = 1.0 / se
        if np.ptp(precision) == 0:
            return None

        fit = stats.linregress(precision, y / se)
        df = len(effects) - 2
        intercept = float(fit.intercept)
        se_int = float(fit.intercept_stderr)
        if se_int > 0 and np.isfinite(se_int):
            t = intercept / se_int
            p = t_two_sided_p(t, df)
        elif abs(intercept) < 1e-9:
            # perfect fit through the origin
            t, p = 0.0, 1.0
        else:
            t, p = float(np.sign(intercept)) * np.inf, 0.0
        return EggerTest(intercept=intercept, se=se_int, t=float(t), p=p, slope=float(fit.slope), df=df)

    def begg(self, studies: Sequence[BiasInput]) -> BeggTest:
        """Begg and Mazumdar's rank correlation test."""
        effects = self._require(studies, minimum=2)
        k = len(effects)
        y = np.array([s.effect_size for s in effects])
        v = np.array([s.variance for s in effects])
        fixed = inverse_variance_pool(y, v)
        deviates = (y - fixed.estimate) / np.sqrt(v - 1.0 / fixed.sum_weights)

        tau, _ = stats.kendalltau(deviates, v)
        if not np.isfinite(tau):
            logger.debug("Kendall's tau undefined (constant ranks); treating as no correlation")
            tau = 0.0
        var_tau = 2.0 * (2 * k + 5) / (9.0 * k * (k - 1))
        z = float(tau) / np.sqrt(var_tau)
        return BeggTest(tau=float(tau), z=float(z), p=normal_two_sided_p(z))

    def funnel(
        self,
        studies: Sequence[BiasInput],
        pooled_effect: float,
        imputed: Sequence[StudyEffect] = (),
    ) -> FunnelPlotData:
        """Funnel plot coordinates with a pseudo 95% confidence contour."""
        effects = to_study_effects(studies)
        points = [
            FunnelPoint(
                study_id=s.study_id,
                effect=s.effect_size,
                standard_error=s.standard_error,
                precision=1.0 / s.standard_error,
                imputed=flag,
            )
            for flag, group in ((False, effects), (True, imputed))
            for s in group
        ]
        z = self.settings.z_critical
        max_se = max(p.standard_error for p in points)
        n = max(2, self.settings.funnel_contour_points)
        contour = tuple(
            FunnelContour(standard_error=se, lower=pooled_effect - z * se, upper=pooled_effect + z * se)
            for se in np.linspace(0.0, max_se, n).tolist()
        )
        return FunnelPlotData(points=tuple(points), pooled_effect=pooled_effect, contour=contour)

    def trim_and_fill(
        self,
        studies: Sequence[BiasInput],
        egger: Optional[EggerTest] = None,
        begg: Optional[BeggTest] = None,
    ) -> TrimAndFillResult:
        """Duval and Tweedie trim-and-fill with the L0 estimator.

        Missing studies are assumed to lie on the side opposite the
        small-study excess: the left when Egger's intercept is positive,
        the right otherwise.  Without Egger's test, the sign of Begg's
        tau decides.
        """
        effects = self._require(studies)
        k = len(effects)
        if egger is not None:
            direction = egger.intercept
        elif begg is not None:
            direction = begg.tau
        else:
            direction = self.begg(effects).tau
        side = "left" if direction > 0 else "right"
        sign = 1.0 if side == "left" else -1.0

        # Work on a flipped copy so the excess is always on the right
        y = sign * np.array([s.effect_size for s in effects])
        v = np.array([s.variance for s in effects])
        order = np.argsort(y, kind="stable")

        k0 = 0
        iterations = 0
        centre = inverse_variance_pool(y, v).estimate
        while iterations < MAX_TRIM_ITERATIONS:
            iterations += 1
            keep = order[: k - k0]
            centre = inverse_variance_pool(y[keep], v[keep]).estimate
            deviations = y - centre
            ranks = stats.rankdata(np.abs(deviations))
            t_plus = float(np.sum(ranks[deviations > 0]))
            l0 = (4.0 * t_plus - k * (k + 1)) / (2.0 * k - 1)
            new_k0 = int(min(k - 1, max(0, round(l0))))
            if new_k0 == k0:
                break
            k0 = new_k0

        original = inverse_variance_pool(sign * y, v).estimate
        filled: List[StudyEffect] = []
        for idx in order[k - k0:][::-1]:
            source = effects[int(idx)]
            filled.append(
                source.model_copy(
                    update={
                        "study_id": f"{source.study_id}_filled",
                        "label": f"{source.display_label} (imputed)",
                        "effect_size": float(sign * (2.0 * centre - y[idx])),
                    }
                )
            )
        all_y = [s.effect_size for s in effects] + [s.effect_size for s in filled]
        all_v = [s.variance for s in effects] + [s.variance for s in filled]
        adjusted = inverse_variance_pool(all_y, all_v)
        z = self.settings.z_critical

        if k0 == 0:
            text = "No studies imputed; the funnel plot shows no asymmetry to adjust for."
        else:
            text = (
                f"{k0} studies imputed on the {side}; pooled estimate moves from "
                f"{original:.4f} to {adjusted.estimate:.4f}."
            )
        logger.debug(f"Trim-and-fill converged after {iterations} iterations with k0={k0}")
        return TrimAndFillResult(
            n_imputed=k0,
            side=side,
            imputed_studies=tuple(filled),
            original_effect=original,
            adjusted_effect=adjusted.estimate,
            adjusted_se=adjusted.standard_error,
            adjusted_ci_lower=adjusted.estimate - z * adjusted.standard_error,
            adjusted_ci_upper=adjusted.estimate + z * adjusted.standard_error,
            iterations=iterations,
            interpretation=text,
        )

    def _overall(self, egger: Optional[EggerTest], begg: BeggTest, low_power: bool) -> BiasAssessment:
        alpha = self.settings.bias_alpha
        strong = self.settings.bias_strong_alpha
        egger_sig = egger is not None and egger.p < alpha
        begg_sig = begg.p < alpha
        supportive = (
            egger is not None
            and egger.intercept != 0
            and begg.tau != 0
            and np.sign(egger.intercept) == np.sign(begg.tau)
        )

        if egger_sig and begg_sig:
            detected = True
            text = "Both Egger's and Begg's tests indicate funnel plot asymmetry."
        elif supportive and ((egger.p < strong) or (begg.p < strong)):
            detected = True
            strong_test = "Egger's" if egger.p < strong else "Begg's"
            text = (
                f"{strong_test} test is strongly significant (p < {strong}) and the other "
                "test points in the same direction."
            )
        elif egger_sig or begg_sig:
            detected = False
            text = (
                "Only one test suggests asymmetry; evidence of publication bias is "
                "inconclusive."
            )
        else:
            detected = False
            text = "No evidence of funnel plot asymmetry."

        score = 0.7
        if low_power:
            score -= 0.2
            text += " Tests have low power with fewer than 10 studies."
        if egger is None:
            score -= 0.1
        elif egger_sig != begg_sig:
            score -= 0.1
        confidence = clamp_confidence(score)
        level = "high" if confidence >= 0.65 else "moderate" if confidence >= 0.45 else "low"
        return BiasAssessment(bias_detected=detected, confidence=confidence, level=level, interpretation=text)

    @staticmethod
    def _require(studies: Sequence[BiasInput], minimum: int = 3) -> List[StudyEffect]:
        effects = to_study_effects(studies)
        if len(effects) < minimum:
            raise InsufficientDataError(
                f"Publication bias tests require at least {minimum} studies, got {len(effects)}",
                required=minimum,
                available=len(effects),
            )
        return effects


def _reference_effect(effects: Sequence[StudyEffect], pooled: Optional[Union[PooledResult, float]]) -> float:
    if isinstance(pooled, PooledResult):
        return pooled.effect
    if pooled is not None:
        return float(pooled)
    return inverse_variance_pool(
        [s.effect_size for s in effects], [s.variance for s in effects]
    ).estimate
