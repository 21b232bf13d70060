"""Core input models: effect measures and per-study records.

Three study shapes are accepted by the engine:

* :class:`BinaryStudy`: a 2×2 table (events and totals per arm).
* :class:`ContinuousStudy`: means, SDs and sizes per arm.
* :class:`StudyEffect`: an effect size with its standard error that was
  computed elsewhere.  The effect is on the *analysis scale*: natural log
  for ratio measures, raw for difference measures.

All models are frozen; validation errors are raised by pydantic when a
model is constructed directly and converted to
:class:`~metastat.core.errors.InputError` by the engine entry points.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import InputError


class EffectMeasure(str, Enum):
    """Effect measures supported by the engine."""

    OR = "OR"  # odds ratio
    RR = "RR"  # risk ratio
    RD = "RD"  # risk difference
    HR = "HR"  # hazard ratio (precomputed only)
    MD = "MD"  # mean difference
    SMD = "SMD"  # standardized mean difference (Cohen's d)
    HEDGES_G = "HEDGES_G"  # small-sample corrected SMD
    GENERIC = "generic"

    @property
    def is_ratio(self) -> bool:
        return self in (EffectMeasure.OR, EffectMeasure.RR, EffectMeasure.HR)

    @property
    def is_binary(self) -> bool:
        return self in (EffectMeasure.OR, EffectMeasure.RR, EffectMeasure.RD)

    @property
    def is_continuous(self) -> bool:
        return self in (EffectMeasure.MD, EffectMeasure.SMD, EffectMeasure.HEDGES_G)

    @property
    def null_value(self) -> float:
        """Value of no effect on the display scale."""
        return 1.0 if self.is_ratio else 0.0

    def to_display(self, value: float) -> float:
        """Map an analysis-scale value to the display scale."""
        return math.exp(value) if self.is_ratio else value

    def to_analysis(self, value: float) -> float:
        """Map a display-scale value to the analysis scale."""
        if not self.is_ratio:
            return value
        if value <= 0:
            raise ValueError(f"{self.value} values must be positive, got {value}")
        return math.log(value)


class StudyInfo(BaseModel):
    """Descriptive fields shared by every study record."""

    model_config = ConfigDict(frozen=True)

    study_id: str = Field(..., min_length=1)
    label: Optional[str] = None
    year: Optional[int] = Field(None, ge=1800, le=2200)

    @property
    def display_label(self) -> str:
        return self.label or self.study_id


class BinaryStudy(StudyInfo):
    """Two-arm study with a dichotomous outcome."""

    events_t: int = Field(..., ge=0, description="Events in the treatment arm")
    n_t: int = Field(..., gt=0, description="Participants in the treatment arm")
    events_c: int = Field(..., ge=0, description="Events in the control arm")
    n_c: int = Field(..., gt=0, description="Participants in the control arm")

    @model_validator(mode="after")
    def _events_within_totals(self) -> "BinaryStudy":
        if self.events_t > self.n_t:
            raise ValueError(f"events_t ({self.events_t}) exceeds n_t ({self.n_t})")
        if self.events_c > self.n_c:
            raise ValueError(f"events_c ({self.events_c}) exceeds n_c ({self.n_c})")
        return self

    @property
    def cells(self) -> tuple[int, int, int, int]:
        """Return the 2×2 cells ``(a, b, c, d)``."""
        return (
            self.events_t,
            self.n_t - self.events_t,
            self.events_c,
            self.n_c - self.events_c,
        )

    @property
    def sample_size(self) -> int:
        return self.n_t + self.n_c


class ContinuousStudy(StudyInfo):
    """Two-arm study with a continuous outcome."""

    mean_t: float
    sd_t: float = Field(..., ge=0)
    n_t: int = Field(..., gt=0)
    mean_c: float
    sd_c: float = Field(..., ge=0)
    n_c: int = Field(..., gt=0)

    @field_validator("mean_t", "mean_c", "sd_t", "sd_c")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("must be finite")
        return v

    @property
    def sample_size(self) -> int:
        return self.n_t + self.n_c


class StudyEffect(StudyInfo):
    """Precomputed effect size on the analysis scale."""

    effect_size: float
    standard_error: float = Field(..., gt=0)
    measure: Optional[EffectMeasure] = None
    sample_size: Optional[int] = Field(None, gt=0)

    @field_validator("effect_size", "standard_error")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("must be finite")
        return v

    @property
    def variance(self) -> float:
        return self.standard_error ** 2

    @property
    def weight(self) -> float:
        return 1.0 / self.variance

    @classmethod
    def from_ci(
        cls,
        study_id: str,
        estimate: float,
        ci_lower: float,
        ci_upper: float,
        measure: EffectMeasure = EffectMeasure.GENERIC,
        z_critical: float = 1.96,
        **info,
    ) -> "StudyEffect":
        """Build a study from a reported estimate and 95% CI.

        Ratio measures are given on the display scale and logged before
        the SE is derived as ``(upper - lower) / (2 * z)``.

        Raises:
            InputError: inverted or zero-width interval, non-positive
                ratio values, or invalid descriptive fields.
        """
        if ci_lower >= ci_upper:
            raise InputError(
                f"Study {study_id}: confidence interval [{ci_lower}, {ci_upper}] must have lower < upper"
            )
        try:
            low = measure.to_analysis(ci_lower)
            high = measure.to_analysis(ci_upper)
            effect_size = measure.to_analysis(estimate)
        except ValueError as e:
            raise InputError(f"Study {study_id}: {e}") from e
        try:
            return cls(
                study_id=study_id,
                effect_size=effect_size,
                standard_error=(high - low) / (2 * z_critical),
                measure=measure,
                **info,
            )
        except ValidationError as e:
            raise InputError(f"Study {study_id}: {e}") from e


Study = Union[BinaryStudy, ContinuousStudy, StudyEffect]
