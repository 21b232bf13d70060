"""Per-study effect sizes for binary and continuous outcomes.

Binary outcomes (2×2 tables, cells ``a, b, c, d``):

* odds ratio ``(a·d)/(b·c)`` with ``SE(ln OR) = √(1/a + 1/b + 1/c + 1/d)``
* risk ratio with ``SE(ln RR) = √(1/a − 1/(a+b) + 1/c − 1/(c+d))``
* risk difference with ``SE = √(ab/(a+b)³ + cd/(c+d)³)``

When any cell is zero, 0.5 is added to all four cells before any of the
above is computed.

Continuous outcomes:

* mean difference with ``SE = √(sd_t²/n_t + sd_c²/n_c)``
* standardized mean difference (Cohen's d) over the pooled SD, with the
  Hedges–Olkin variance ``(n_t+n_c)/(n_t·n_c) + d²/(2(n_t+n_c))``
* Hedges' g, ``g = J·d`` with ``J = 1 − 3/(4(n_t+n_c−2) − 1)`` and
  ``SE(g) = J·SE(d)``

References: Cochrane Handbook ch. 6; Borenstein et al. (2009);
Hedges & Olkin (1985).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from ..config.settings import Settings, settings as default_settings
from ..core.errors import InputError, NumericDegeneracyError
from ..core.models import BinaryStudy, ContinuousStudy, EffectMeasure, Study, StudyEffect
from ..utils.logging import get_logger
from .models import EffectSizeResult
from .stats import clamp_confidence

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

Cells = Tuple[float, float, float, float]


@dataclass
class _Estimate:
    """Raw output of one formula, on the analysis scale."""

    value: float
    se: float
    details: Dict[str, float] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Binary formulas
# ---------------------------------------------------------------------------


def _require_nonzero(cells: Cells, measure: EffectMeasure, *indices: int) -> None:
    if any(cells[i] == 0 for i in indices):
        raise NumericDegeneracyError(
            f"{measure.value} is undefined for zero cells without continuity correction"
        )


def _log_odds_ratio(cells: Cells) -> _Estimate:
    a, b, c, d = cells
    _require_nonzero(cells, EffectMeasure.OR, 0, 1, 2, 3)
    return _Estimate(
        value=math.log((a * d) / (b * c)),
        se=math.sqrt(1 / a + 1 / b + 1 / c + 1 / d),
    )


def _log_risk_ratio(cells: Cells) -> _Estimate:
    a, b, c, d = cells
    _require_nonzero(cells, EffectMeasure.RR, 0, 2)
    risk_t = a / (a + b)
    risk_c = c / (c + d)
    return _Estimate(
        value=math.log(risk_t / risk_c),
        se=math.sqrt(1 / a - 1 / (a + b) + 1 / c - 1 / (c + d)),
    )


def _risk_difference(cells: Cells) -> _Estimate:
    a, b, c, d = cells
    n_t = a + b
    n_c = c + d
    se = math.sqrt(a * b / n_t ** 3 + c * d / n_c ** 3)
    if se == 0:
        raise NumericDegeneracyError(
            "RD standard error is zero (all-or-none outcomes in both arms)"
        )
    return _Estimate(value=a / n_t - c / n_c, se=se)


_BINARY_FORMULAS: Dict[EffectMeasure, Callable[[Cells], _Estimate]] = {
    EffectMeasure.OR: _log_odds_ratio,
    EffectMeasure.RR: _log_risk_ratio,
    EffectMeasure.RD: _risk_difference,
}


# ---------------------------------------------------------------------------
# Continuous formulas
# ---------------------------------------------------------------------------


def pooled_sd(study: ContinuousStudy) -> float:
    """Pooled within-group standard deviation."""
    df = study.n_t + study.n_c - 2
    if df <= 0:
        raise NumericDegeneracyError(
            f"pooled SD is undefined with n=1 in both arms (study {study.study_id})"
        )
    variance = ((study.n_t - 1) * study.sd_t ** 2 + (study.n_c - 1) * study.sd_c ** 2) / df
    return math.sqrt(variance)


def hedges_j(n_t: int, n_c: int) -> float:
    """Small-sample correction factor for the SMD."""
    return 1 - 3 / (4 * (n_t + n_c - 2) - 1)


def _mean_difference(study: ContinuousStudy) -> _Estimate:
    se = math.sqrt(study.sd_t ** 2 / study.n_t + study.sd_c ** 2 / study.n_c)
    if se == 0:
        raise NumericDegeneracyError(
            f"zero variance in both arms (study {study.study_id})"
        )
    return _Estimate(value=study.mean_t - study.mean_c, se=se)


def _cohens_d(study: ContinuousStudy) -> _Estimate:
    sp = pooled_sd(study)
    if sp == 0:
        raise NumericDegeneracyError(
            f"pooled SD is zero (study {study.study_id})"
        )
    n_t, n_c = study.n_t, study.n_c
    d = (study.mean_t - study.mean_c) / sp
    variance = (n_t + n_c) / (n_t * n_c) + d ** 2 / (2 * (n_t + n_c))
    return _Estimate(value=d, se=math.sqrt(variance), details={"pooled_sd": sp})


def _hedges_g(study: ContinuousStudy) -> _Estimate:
    cohen = _cohens_d(study)
    j = hedges_j(study.n_t, study.n_c)
    if j <= 0:
        raise NumericDegeneracyError(
            f"Hedges correction undefined for {study.n_t + study.n_c} participants"
        )
    details = dict(cohen.details, correction_factor=j, cohens_d=cohen.value)
    return _Estimate(value=cohen.value * j, se=cohen.se * j, details=details)


_CONTINUOUS_FORMULAS: Dict[EffectMeasure, Callable[[ContinuousStudy], _Estimate]] = {
    EffectMeasure.MD: _mean_difference,
    EffectMeasure.SMD: _cohens_d,
    EffectMeasure.HEDGES_G: _hedges_g,
}


def _coerce(model: Type[M], data: Any) -> M:
    if isinstance(data, model):
        return data
    if isinstance(data, Mapping):
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise InputError(f"Invalid {model.__name__}: {exc}") from exc
    raise InputError(f"Expected {model.__name__} or mapping, got {type(data).__name__}")


def coerce_study(data: Union[Study, Mapping[str, Any]]) -> Study:
    """Validate a study record, inferring its shape from the mapping keys."""
    if isinstance(data, (BinaryStudy, ContinuousStudy, StudyEffect)):
        return data
    if isinstance(data, Mapping):
        if "events_t" in data or "events_c" in data:
            return _coerce(BinaryStudy, data)
        if "mean_t" in data or "mean_c" in data:
            return _coerce(ContinuousStudy, data)
        if "effect_size" in data:
            return _coerce(StudyEffect, data)
    raise InputError(f"Cannot recognise study record: {data!r}")


class EffectSizeCalculator:
    """Compute per-study effect sizes with standard errors.

    The calculator is stateless apart from its settings; the same
    instance can be shared between threads.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings

    # -- public API --------------------------------------------------------

    def calculate(
        self,
        study: Union[Study, Mapping[str, Any]],
        measure: Union[EffectMeasure, str, None] = None,
    ) -> EffectSizeResult:
        """Compute ``measure`` for any supported study record."""
        study = coerce_study(study)
        if isinstance(study, StudyEffect):
            return self.precomputed(study, measure)
        if measure is None:
            measure = EffectMeasure.OR if isinstance(study, BinaryStudy) else EffectMeasure.HEDGES_G
        measure = parse_measure(measure)
        if isinstance(study, BinaryStudy):
            return self.binary(study, measure)
        return self.continuous(study, measure)

    def calculate_many(
        self,
        studies: Sequence[Union[Study, Mapping[str, Any]]],
        measure: Union[EffectMeasure, str, None] = None,
    ) -> List[EffectSizeResult]:
        results = [self.calculate(s, measure) for s in studies]
        logger.info(
            f"Computed {len(results)} effect sizes",
            extra={"analysis": {"measure": str(measure), "k": len(results)}},
        )
        return results

    def binary(
        self,
        study: Union[BinaryStudy, Mapping[str, Any]],
        measure: Union[EffectMeasure, str] = EffectMeasure.OR,
        correct_zero_cells: bool = True,
    ) -> EffectSizeResult:
        """Compute OR, RR or RD from a 2×2 table.

        With ``correct_zero_cells`` disabled the raw cells are used; a
        formula that would divide by a zero cell then raises
        :class:`NumericDegeneracyError`.
        """
        study = _coerce(BinaryStudy, study)
        measure = parse_measure(measure)
        if measure not in _BINARY_FORMULAS:
            raise InputError(f"{measure.value} cannot be computed from binary counts")

        warnings: List[str] = []
        raw_cells = study.cells
        has_zero = any(cell == 0 for cell in raw_cells)
        corrected = has_zero and correct_zero_cells
        if corrected:
            cc = self.settings.continuity_correction
            cells: Cells = tuple(float(x) + cc for x in raw_cells)  # type: ignore[assignment]
            warnings.append(f"Continuity correction ({cc}) applied due to zero cells")
            logger.debug(f"Zero cell in study {study.study_id}; adding {cc} to all cells")
        else:
            cells = tuple(float(x) for x in raw_cells)  # type: ignore[assignment]
            if has_zero:
                warnings.append("Zero cells present; no continuity correction applied")
        if study.events_t == 0 and study.events_c == 0:
            warnings.append("No events in either arm; study carries little information")

        estimate = _BINARY_FORMULAS[measure](cells)
        risk_t = study.events_t / study.n_t
        risk_c = study.events_c / study.n_c
        estimate.details.update(risk_t=risk_t, risk_c=risk_c)
        return self._finish(study, measure, estimate, warnings, corrected)

    def continuous(
        self,
        study: Union[ContinuousStudy, Mapping[str, Any]],
        measure: Union[EffectMeasure, str] = EffectMeasure.HEDGES_G,
    ) -> EffectSizeResult:
        """Compute MD, SMD (Cohen's d) or Hedges' g."""
        study = _coerce(ContinuousStudy, study)
        measure = parse_measure(measure)
        if measure not in _CONTINUOUS_FORMULAS:
            raise InputError(f"{measure.value} cannot be computed from continuous data")

        warnings: List[str] = []
        estimate = _CONTINUOUS_FORMULAS[measure](study)
        estimate.details["mean_difference"] = study.mean_t - study.mean_c

        unequal = False
        if study.sd_t > 0 and study.sd_c > 0:
            ratio = study.sd_t / study.sd_c
            estimate.details["variance_ratio"] = ratio
            limit = self.settings.variance_ratio_limit
            if ratio > limit or ratio < 1 / limit:
                unequal = True
                warnings.append(
                    f"Unequal SDs (ratio {ratio:.2f}); pooled-SD assumption questionable"
                )
        elif study.sd_t != study.sd_c:
            unequal = True
            warnings.append("SD is zero in one arm; pooled-SD assumption questionable")

        if measure is EffectMeasure.HEDGES_G:
            shift = abs(estimate.details["cohens_d"] - estimate.value)
            if shift > 0.05:
                warnings.append(
                    f"Small sample correction applied (Cohen's d: "
                    f"{estimate.details['cohens_d']:.3f}, Hedges' g: {estimate.value:.3f})"
                )
        return self._finish(study, measure, estimate, warnings, False, unequal)

    def precomputed(
        self,
        study: Union[StudyEffect, Mapping[str, Any]],
        measure: Union[EffectMeasure, str, None] = None,
    ) -> EffectSizeResult:
        """Wrap an already computed effect size in an :class:`EffectSizeResult`."""
        study = _coerce(StudyEffect, study)
        if measure is not None:
            measure = parse_measure(measure)
        else:
            measure = study.measure or EffectMeasure.GENERIC
        estimate = _Estimate(value=study.effect_size, se=study.standard_error)
        return self._finish(study, measure, estimate, [], False)

    # -- convenience wrappers ---------------------------------------------

    def odds_ratio(self, study: Union[BinaryStudy, Mapping[str, Any]]) -> EffectSizeResult:
        return self.binary(study, EffectMeasure.OR)

    def risk_ratio(self, study: Union[BinaryStudy, Mapping[str, Any]]) -> EffectSizeResult:
        return self.binary(study, EffectMeasure.RR)

    def risk_difference(self, study: Union[BinaryStudy, Mapping[str, Any]]) -> EffectSizeResult:
        return self.binary(study, EffectMeasure.RD)

    def mean_difference(self, study: Union[ContinuousStudy, Mapping[str, Any]]) -> EffectSizeResult:
        return self.continuous(study, EffectMeasure.MD)

    def standardized_mean_difference(
        self, study: Union[ContinuousStudy, Mapping[str, Any]]
    ) -> EffectSizeResult:
        return self.continuous(study, EffectMeasure.SMD)

    def hedges_g(self, study: Union[ContinuousStudy, Mapping[str, Any]]) -> EffectSizeResult:
        return self.continuous(study, EffectMeasure.HEDGES_G)

    # -- internals ---------------------------------------------------------

    def _finish(
        self,
        study: Study,
        measure: EffectMeasure,
        estimate: _Estimate,
        warnings: List[str],
        corrected: bool,
        unequal_sd: bool = False,
    ) -> EffectSizeResult:
        z = self.settings.z_critical
        low = estimate.value - z * estimate.se
        high = estimate.value + z * estimate.se
        ci_lower = measure.to_display(low)
        ci_upper = measure.to_display(high)
        sample_size = getattr(study, "sample_size", None)
        estimate.details.setdefault("z_critical", z)

        confidence = self._confidence(
            study, measure, ci_lower, ci_upper, sample_size, warnings, corrected, unequal_sd
        )
        result = EffectSizeResult(
            measure=measure,
            study_id=study.study_id,
            value=measure.to_display(estimate.value),
            standard_error=estimate.se,
            ci_lower=ci_lower,
            ci_upper=ci_upper,
            weight=1.0 / estimate.se ** 2,
            log_value=estimate.value if measure.is_ratio else None,
            sample_size=sample_size,
            continuity_correction_applied=corrected,
            confidence=confidence,
            warnings=tuple(warnings),
            detail_items=tuple(estimate.details.items()),
        )
        logger.debug(
            f"{measure.value} for {study.study_id}: {result.value:.4f} "
            f"[{result.ci_lower:.4f}, {result.ci_upper:.4f}]"
        )
        return result

    @staticmethod
    def _confidence(
        study: Study,
        measure: EffectMeasure,
        ci_lower: float,
        ci_upper: float,
        sample_size: Optional[int],
        warnings: List[str],
        corrected: bool,
        unequal_sd: bool,
    ) -> float:
        """Advisory score from sample size, CI width and assumption flags."""
        score = 0.7
        if sample_size is not None:
            if sample_size < 30:
                score -= 0.2
                warnings.append("Small sample size (<30 total participants)")
            elif sample_size < 100:
                score -= 0.1
                warnings.append("Moderate sample size (<100 total participants)")

        width = ci_upper - ci_lower
        wide = False
        if measure.is_ratio:
            wide = ci_lower > 0 and ci_upper / ci_lower > 10
        elif measure is EffectMeasure.RD:
            wide = width > 0.5
        elif measure is EffectMeasure.MD and isinstance(study, ContinuousStudy):
            scale = abs(study.mean_t) + abs(study.mean_c)
            wide = scale > 0 and width / scale > 1
        elif measure in (EffectMeasure.SMD, EffectMeasure.HEDGES_G):
            wide = width > 2
        if wide:
            score -= 0.1
            warnings.append("Very wide confidence interval")
        if corrected:
            score -= 0.1
        if unequal_sd:
            score -= 0.1
        return clamp_confidence(score)


def parse_measure(measure: Union[EffectMeasure, str]) -> EffectMeasure:
    if isinstance(measure, EffectMeasure):
        return measure
    try:
        return EffectMeasure(measure)
    except ValueError:
        try:
            return EffectMeasure[str(measure).upper()]
        except KeyError:
            raise InputError(f"Unknown effect measure: {measure!r}") from None


def to_study_effects(
    items: Sequence[Union[StudyEffect, EffectSizeResult, Mapping[str, Any]]],
) -> List[StudyEffect]:
    """Normalise pooling inputs to :class:`StudyEffect` records.

    Study ids must be unique because weights and forest rows are keyed
    by them.
    """
    effects: List[StudyEffect] = []
    for item in items:
        if isinstance(item, EffectSizeResult):
            try:
                effects.append(item.to_study_effect())
            except ValueError as exc:
                raise InputError(str(exc)) from exc
        else:
            effects.append(_coerce(StudyEffect, item))
    seen = set()
    for effect in effects:
        if effect.study_id in seen:
            raise InputError(f"Duplicate study_id: {effect.study_id}")
        seen.add(effect.study_id)
    return effects
