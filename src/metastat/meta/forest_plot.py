"""Forest plot layout derivation.

This module turns per-study effects, a pooled result and (optionally)
heterogeneity statistics into a :class:`ForestPlotData` description that
any renderer can draw.  It produces coordinates, axis ranges and tick
values only; there are no drawing primitives here.

Layout (y grows upwards)::

    y = k + 2   header
    y = k + 1   last study in the chosen order
    ...
    y = 2       first study in the chosen order
    y = 1       separator line
    y = 0       pooled diamond

Ratio measures (OR, RR, HR) use a log x-axis with the null line at 1;
difference measures use a linear axis with the null line at 0.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from ..config.settings import Settings, settings as default_settings
from ..core.errors import InputError, InsufficientDataError
from ..core.models import EffectMeasure, StudyEffect
from ..utils.logging import get_logger
from .effect_sizes import parse_measure, to_study_effects
from .models import (
    AxisLabel,
    EffectSizeResult,
    ForestOrdering,
    ForestPlotData,
    ForestPlotRow,
    HeterogeneityResult,
    PooledResult,
    XAxis,
    YAxis,
)
from .stats import clamp_confidence

logger = get_logger(__name__)

_LOG_MANTISSAS = (1, 2, 5)


def _sort_key(ordering: ForestOrdering) -> Optional[Callable[[ForestPlotRow], Any]]:
    if ordering is ForestOrdering.BY_YEAR:
        return lambda row: (row.year is None, row.year or 0)
    if ordering is ForestOrdering.BY_WEIGHT:
        return lambda row: -(row.weight_pct or 0.0)
    if ordering is ForestOrdering.BY_EFFECT:
        return lambda row: row.effect
    if ordering is ForestOrdering.ALPHABETICAL:
        return lambda row: row.label.casefold()
    return None


def _nice_number(value: float) -> float:
    return float(f"{value:.3g}")


def linear_ticks(lower: float, upper: float, target: int = 5) -> List[float]:
    """Evenly spaced ticks on a 1-2-5 step covering ``[lower, upper]``."""
    span = upper - lower
    if span <= 0:
        return [_nice_number(lower)]
    rough = span / target
    magnitude = 10 ** math.floor(math.log10(rough))
    normalized = rough / magnitude
    if normalized < 1.5:
        step = magnitude
    elif normalized < 3:
        step = 2 * magnitude
    elif normalized < 7:
        step = 5 * magnitude
    else:
        step = 10 * magnitude
    decimals = max(0, -int(math.floor(math.log10(step))))
    first = math.ceil(lower / step - 1e-9)
    last = math.floor(upper / step + 1e-9)
    ticks = []
    for i in range(first, last + 1):
        tick = round(i * step, decimals) + 0.0
        ticks.append(tick)
    return ticks


def log_ticks(lower: float, upper: float) -> List[float]:
    """Ticks at 1-2-5 multiples of powers of ten inside ``[lower, upper]``."""
    candidates = []
    for exponent in range(math.floor(math.log10(lower)), math.ceil(math.log10(upper)) + 1):
        for mantissa in _LOG_MANTISSAS:
            value = _nice_number(mantissa * 10.0 ** exponent)
            if lower <= value <= upper:
                candidates.append((mantissa, value))
    ticks = [value for _, value in candidates]
    if len(ticks) > 9:
        ticks = [value for mantissa, value in candidates if mantissa == 1]
    if len(ticks) < 3:
        ticks = sorted({_nice_number(lower), *ticks, _nice_number(upper)})
    return ticks


class ForestPlotDataBuilder:
    """Derive a renderer-agnostic forest plot layout."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings

    def build(
        self,
        studies: Sequence[Union[StudyEffect, EffectSizeResult, Mapping[str, Any]]],
        pooled: PooledResult,
        heterogeneity: Optional[HeterogeneityResult] = None,
        measure: Optional[Union[EffectMeasure, str]] = None,
        ordering: Union[ForestOrdering, str] = ForestOrdering.ORIGINAL,
        title: str = "Forest Plot",
        favours_left: str = "Favours treatment",
        favours_right: str = "Favours control",
    ) -> ForestPlotData:
        """Lay out one row per study plus the pooled diamond.

        The pooled row copies the display-scale effect and CI from
        ``pooled`` unchanged.
        """
        effects = to_study_effects(studies)
        k = len(effects)
        if k == 0:
            raise InsufficientDataError("No studies provided for forest plot", required=1, available=0)
        try:
            ordering = ForestOrdering(ordering)
        except ValueError:
            raise InputError(f"Unknown forest plot ordering: {ordering!r}") from None
        measure = self._resolve_measure(measure, pooled)
        if heterogeneity is None:
            heterogeneity = pooled.heterogeneity

        z = self.settings.z_critical
        rows = [
            ForestPlotRow(
                study_id=s.study_id,
                label=s.display_label,
                effect=measure.to_display(s.effect_size),
                ci_lower=measure.to_display(s.effect_size - z * s.standard_error),
                ci_upper=measure.to_display(s.effect_size + z * s.standard_error),
                weight_pct=pooled.weight_percent(s.study_id),
                year=s.year,
                y_position=0,
            )
            for s in effects
        ]
        key = _sort_key(ordering)
        if key is not None:
            rows = sorted(rows, key=key)

        # Studies bottom-to-top from y=2; the pooled row and separator sit below
        rows = [row.model_copy(update={"y_position": float(i + 2)}) for i, row in enumerate(rows)]
        pooled_row = ForestPlotRow(
            kind="pooled",
            label=f"Overall ({pooled.model.value} effect)",
            effect=pooled.display_effect,
            ci_lower=pooled.display_ci_lower,
            ci_upper=pooled.display_ci_upper,
            weight_pct=100.0,
            y_position=0.0,
        )
        header_y = float(k + 2)
        labels = [AxisLabel(y_position=0.0, text=pooled_row.label, kind="pooled")]
        labels.append(AxisLabel(y_position=1.0, text="", kind="separator"))
        labels.extend(AxisLabel(y_position=r.y_position, text=r.label, kind="study") for r in rows)
        labels.append(AxisLabel(y_position=header_y, text="Study", kind="header"))

        warnings: List[str] = []
        x_axis = self._x_axis(rows + [pooled_row], measure, warnings)
        y_axis = YAxis(
            height=k + 3,
            order=tuple(r.study_id for r in rows),
            separator_y=1.0,
            labels=tuple(labels),
        )

        data = ForestPlotData(
            title=title,
            measure=measure,
            ordering=ordering,
            rows=tuple(rows),
            pooled_row=pooled_row,
            x_axis=x_axis,
            y_axis=y_axis,
            favours_left=favours_left,
            favours_right=favours_right,
            model=pooled.model,
            heterogeneity=heterogeneity,
            confidence=self._confidence(rows, warnings),
            warnings=tuple(warnings),
        )
        logger.info(
            f"Forest plot layout built for {k} studies",
            extra={"analysis": {"measure": measure.value, "ordering": ordering.value, "scale": x_axis.scale}},
        )
        return data

    @staticmethod
    def _resolve_measure(
        measure: Optional[Union[EffectMeasure, str]], pooled: PooledResult
    ) -> EffectMeasure:
        # The pooled row reuses pooled.display_*, so both must share a scale
        if measure is None:
            return pooled.measure or EffectMeasure.GENERIC
        measure = parse_measure(measure)
        if pooled.measure is None and not measure.is_ratio:
            return measure
        if measure is not pooled.measure:
            pooled_name = pooled.measure.value if pooled.measure is not None else "none"
            raise InputError(
                f"Forest plot measure {measure.value} does not match the pooled result "
                f"({pooled_name}); pool with measure={measure.value!r} first"
            )
        return measure

    def _x_axis(self, rows: List[ForestPlotRow], measure: EffectMeasure, warnings: List[str]) -> XAxis:
        null = measure.null_value
        values = [null]
        for row in rows:
            values.extend(v for v in (row.ci_lower, row.effect, row.ci_upper) if math.isfinite(v))
        if measure.is_ratio:
            positive = [v for v in values if v > 0]
            if len(positive) < len(values):
                warnings.append("Non-positive values dropped from log axis")
            log_min = math.log(min(positive))
            log_max = math.log(max(positive))
            padding = (log_max - log_min) * 0.1 or 0.1
            lower = math.exp(log_min - padding)
            upper = math.exp(log_max + padding)
            return XAxis(scale="log", null_value=null, min=lower, max=upper, ticks=tuple(log_ticks(lower, upper)))
        lower, upper = min(values), max(values)
        padding = (upper - lower) * 0.1 or 0.5
        lower -= padding
        upper += padding
        return XAxis(scale="linear", null_value=null, min=lower, max=upper, ticks=tuple(linear_ticks(lower, upper)))

    @staticmethod
    def _confidence(rows: Sequence[ForestPlotRow], warnings: List[str]) -> float:
        score = 0.7
        k = len(rows)
        if k < 3:
            score -= 0.2
            warnings.append("Very few studies (<3) - forest plot may not be informative")
        elif k < 5:
            score -= 0.1
            warnings.append("Few studies (<5) - interpret with caution")
        if any(r.effect != 0 and (r.ci_upper - r.ci_lower) / abs(r.effect) > 5 for r in rows):
            score -= 0.1
            warnings.append("Some studies have very wide confidence intervals")
        if any(not math.isfinite(v) for r in rows for v in (r.effect, r.ci_lower, r.ci_upper)):
            score -= 0.2
            warnings.append("Some studies have extreme or invalid values")
        return clamp_confidence(score)


def row_lookup(data: ForestPlotData) -> Dict[str, ForestPlotRow]:
    """Index study rows by study id."""
    return {row.study_id: row for row in data.rows if row.study_id is not None}
