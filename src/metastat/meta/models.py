"""Result models produced by the meta-analysis engine.

Every record is a frozen Pydantic model created for one analysis call.
Sequences are tuples so a result cannot be altered after construction,
and ``model_dump(mode="json")`` yields a plain JSON document for the
downstream renderers, GRADE tooling and report generators.

Scales: ``standard_error`` and pooled ``effect``/CI values are on the
analysis scale (natural log for ratio measures).  Values meant for
display (``EffectSizeResult.value``, forest-plot rows, the
``display_*`` fields of :class:`PooledResult`) are on the natural scale.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Literal, Mapping, Optional, Tuple

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field

from ..core.models import EffectMeasure, StudyEffect, StudyInfo


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())


class PoolingModel(str, Enum):
    """Pooling model requested from or reported by the pooling engine."""

    FIXED = "fixed"
    RANDOM = "random"
    AUTO = "auto"


class ForestOrdering(str, Enum):
    """Row ordering policies for forest plots."""

    ORIGINAL = "original"
    BY_YEAR = "by_year"
    BY_WEIGHT = "by_weight"
    BY_EFFECT = "by_effect"
    ALPHABETICAL = "alphabetical"


# ---------------------------------------------------------------------------
# Effect sizes
# ---------------------------------------------------------------------------


class EffectSizeResult(_Frozen):
    """Effect size of a single study.

    ``value`` and the CI bounds are on the display scale (OR, RR rather
    than their logs).  ``standard_error`` and ``weight`` refer to the
    analysis scale, which is what pooling uses.
    """

    measure: EffectMeasure
    study_id: Optional[str] = None
    value: float
    standard_error: float = Field(..., gt=0)
    ci_lower: float
    ci_upper: float
    weight: float = Field(..., gt=0)
    log_value: Optional[float] = None
    sample_size: Optional[int] = Field(None, gt=0)
    continuity_correction_applied: bool = False
    confidence: float = Field(..., ge=0.0, le=1.0)
    warnings: Tuple[str, ...] = ()
    detail_items: Tuple[Tuple[str, float], ...] = ()

    @property
    def details(self) -> Mapping[str, float]:
        """Intermediate quantities (arm risks, pooled SD, Hedges J, ...), read-only."""
        return MappingProxyType(dict(self.detail_items))

    @property
    def analysis_value(self) -> float:
        return self.log_value if self.log_value is not None else self.value

    def to_study_effect(self, info: Optional[StudyInfo] = None) -> StudyEffect:
        """Convert to the pooling input, keeping label and year from ``info``."""
        study_id = info.study_id if info is not None else self.study_id
        if not study_id:
            raise ValueError("a study_id is required to pool an effect size")
        return StudyEffect(
            study_id=study_id,
            label=info.label if info is not None else None,
            year=info.year if info is not None else None,
            effect_size=self.analysis_value,
            standard_error=self.standard_error,
            measure=self.measure,
            sample_size=self.sample_size,
        )


# ---------------------------------------------------------------------------
# Heterogeneity and pooling
# ---------------------------------------------------------------------------


class PredictionInterval(_Frozen):
    """95% prediction interval for the effect in a new study."""

    lower: float
    upper: float
    t_critical: float
    df: int


class HeterogeneityResult(_Frozen):
    """Between-study heterogeneity statistics."""

    n_studies: int
    q: float = Field(..., ge=0)
    df: int
    p_value: Optional[float] = None
    i_squared: float = Field(..., ge=0, le=100)
    tau_squared: float = Field(..., ge=0)
    tau: float = Field(..., ge=0)
    h_squared: float = Field(..., ge=0)
    pooled_fixed: float
    pooled_random: float
    se_random: float
    prediction_interval: Optional[PredictionInterval] = None
    interpretation: str
    interpretation_bands: Tuple[str, ...] = ()
    recommended_model: PoolingModel
    summary: str = ""
    confidence: float = Field(..., ge=0.0, le=1.0)
    warnings: Tuple[str, ...] = ()


class StudyWeight(_Frozen):
    """Raw inverse-variance weight and its share of the total."""

    study_id: str
    weight: float
    weight_percent: float


class PooledResult(_Frozen):
    """Summary estimate across studies."""

    model: PoolingModel
    measure: Optional[EffectMeasure] = None
    effect: float
    standard_error: float
    ci_lower: float
    ci_upper: float
    z: float
    p_value: float
    tau_squared: float = Field(..., ge=0)
    per_study_weights: Tuple[StudyWeight, ...]
    n_studies: int
    total_sample_size: Optional[int] = None
    display_effect: float
    display_ci_lower: float
    display_ci_upper: float
    model_rationale: str = ""
    heterogeneity: Optional[HeterogeneityResult] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    warnings: Tuple[str, ...] = ()

    def weight_percent(self, study_id: str) -> Optional[float]:
        for w in self.per_study_weights:
            if w.study_id == study_id:
                return w.weight_percent
        return None


# ---------------------------------------------------------------------------
# Forest plot layout
# ---------------------------------------------------------------------------


class ForestPlotRow(_Frozen):
    """One drawable row: a study's square or the pooled diamond."""

    kind: Literal["study", "pooled"] = "study"
    study_id: Optional[str] = None
    label: str
    effect: float
    ci_lower: float
    ci_upper: float
    weight_pct: Optional[float] = None
    year: Optional[int] = None
    y_position: float


class XAxis(_Frozen):
    scale: Literal["linear", "log"]
    null_value: float
    min: float
    max: float
    ticks: Tuple[float, ...]


class AxisLabel(_Frozen):
    y_position: float
    text: str
    kind: Literal["header", "study", "separator", "pooled"]


class YAxis(_Frozen):
    height: int
    order: Tuple[str, ...]
    separator_y: float
    labels: Tuple[AxisLabel, ...]


class ForestPlotData(_Frozen):
    """Renderer-agnostic forest plot layout."""

    title: str
    measure: EffectMeasure
    ordering: ForestOrdering
    rows: Tuple[ForestPlotRow, ...]
    pooled_row: ForestPlotRow
    x_axis: XAxis
    y_axis: YAxis
    favours_left: str
    favours_right: str
    model: PoolingModel
    heterogeneity: Optional[HeterogeneityResult] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    warnings: Tuple[str, ...] = ()

    @property
    def all_rows(self) -> Tuple[ForestPlotRow, ...]:
        return self.rows + (self.pooled_row,)

    def to_dataframe(self) -> pd.DataFrame:
        """Create a DataFrame with one line per study plus the pooled row."""
        return pd.DataFrame([row.model_dump() for row in self.all_rows])


# ---------------------------------------------------------------------------
# Publication bias
# ---------------------------------------------------------------------------


class EggerTest(_Frozen):
    """Egger's regression of ``y/se`` on ``1/se``."""

    intercept: float
    se: float
    t: float
    p: float
    slope: float
    df: int


class BeggTest(_Frozen):
    """Begg and Mazumdar rank correlation (Kendall's tau-b)."""

    tau: float
    z: float
    p: float


class FunnelPoint(_Frozen):
    study_id: str
    effect: float
    standard_error: float
    precision: float
    imputed: bool = False


class FunnelContour(_Frozen):
    """Pseudo 95% confidence limits at one standard error."""

    standard_error: float
    lower: float
    upper: float


class FunnelPlotData(_Frozen):
    points: Tuple[FunnelPoint, ...]
    pooled_effect: float
    contour: Tuple[FunnelContour, ...] = ()

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([p.model_dump() for p in self.points])


class TrimAndFillResult(_Frozen):
    """Duval and Tweedie trim-and-fill adjustment."""

    n_imputed: int = Field(..., ge=0)
    side: Literal["left", "right"]
    imputed_studies: Tuple[StudyEffect, ...] = ()
    original_effect: float
    adjusted_effect: float
    adjusted_se: float
    adjusted_ci_lower: float
    adjusted_ci_upper: float
    iterations: int
    interpretation: str = ""


class BiasAssessment(_Frozen):
    bias_detected: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    level: Literal["low", "moderate", "high"]
    interpretation: str


class PublicationBiasResult(_Frozen):
    """Small-study effect diagnostics."""

    n_studies: int
    egger: Optional[EggerTest] = None
    begg: BeggTest
    funnel: FunnelPlotData
    trim_and_fill: Optional[TrimAndFillResult] = None
    overall: BiasAssessment
    low_power: bool
    warnings: Tuple[str, ...] = ()

    @property
    def funnel_points(self) -> Tuple[FunnelPoint, ...]:
        return self.funnel.points


# ---------------------------------------------------------------------------
# Whole analysis
# ---------------------------------------------------------------------------


class MetaAnalysisResult(_Frozen):
    """Output of :class:`~metastat.meta.analyzer.MetaAnalyzer`."""

    measure: EffectMeasure
    studies: Tuple[StudyEffect, ...]
    effect_sizes: Tuple[EffectSizeResult, ...] = ()
    pooled: PooledResult
    heterogeneity: HeterogeneityResult
    forest_plot: ForestPlotData
    publication_bias: PublicationBiasResult
    warnings: Tuple[str, ...] = ()
