"""Statistical meta-analysis and synthesis.

This module defines the :class:`MetaAnalyzer` facade, which runs the
whole pipeline on a collection of studies:

1. effect size per study (:mod:`~metastat.meta.effect_sizes`)
2. pooling under a fixed, random or automatically chosen model
3. heterogeneity (computed once during pooling and reused)
4. forest plot layout
5. publication bias diagnostics (Begg only when there are two studies)

Each step is also available on its own, through the engines or the
narrower methods on the analyzer.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence, Union

from ..config.settings import Settings, settings as default_settings
from ..core.errors import InputError
from ..core.models import EffectMeasure, Study
from ..utils.logging import get_logger
from .effect_sizes import EffectSizeCalculator, coerce_study, parse_measure
from .forest_plot import ForestPlotDataBuilder
from .heterogeneity import HeterogeneityAssessor
from .models import (
    EffectSizeResult,
    ForestOrdering,
    ForestPlotData,
    HeterogeneityResult,
    MetaAnalysisResult,
    PooledResult,
    PoolingModel,
    PublicationBiasResult,
)
from .pooling import PoolingEngine, PoolingInput
from .publication_bias import PublicationBiasAssessor

logger = get_logger(__name__)

StudyInput = Union[Study, Mapping[str, Any]]


class MetaAnalyzer:
    """Perform meta-analysis on a set of studies.

    The analyzer wires the individual engines together with one shared
    :class:`~metastat.config.settings.Settings` instance.  It holds no
    per-call state, so one instance can serve many analyses.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings
        self.calculator = EffectSizeCalculator(self.settings)
        self.heterogeneity = HeterogeneityAssessor(self.settings)
        self.pooling = PoolingEngine(self.settings, self.heterogeneity)
        self.forest = ForestPlotDataBuilder(self.settings)
        self.bias = PublicationBiasAssessor(self.settings)

    def analyze(
        self,
        studies: Sequence[StudyInput],
        measure: Optional[Union[EffectMeasure, str]] = None,
        model: Union[PoolingModel, str] = PoolingModel.AUTO,
        ordering: Union[ForestOrdering, str] = ForestOrdering.ORIGINAL,
        title: Optional[str] = None,
        trim_and_fill: bool = True,
    ) -> MetaAnalysisResult:
        """Run the full analysis.

        Args:
            studies: Binary, continuous or precomputed study records (or
                mappings with their fields).  All must yield the same
                effect measure.
            measure: Effect measure.  Defaults to OR for binary data,
                Hedges' g for continuous data and the records' own
                measure for precomputed effects.
            model: ``"fixed"``, ``"random"`` or ``"auto"``.
            ordering: Forest plot row order.
            title: Forest plot title.

        Returns:
            A :class:`MetaAnalysisResult`.  With two studies the
            publication bias result carries Begg's test only.

        Raises:
            InputError: malformed records or mixed effect measures.
            InsufficientDataError: fewer than two studies.
        """
        records = [coerce_study(s) for s in studies]
        if measure is not None:
            measure = parse_measure(measure)
        effect_sizes = [self.calculator.calculate(s, measure) for s in records]

        measures = {es.measure for es in effect_sizes}
        if len(measures) > 1:
            names = ", ".join(sorted(m.value for m in measures))
            raise InputError(f"Studies yield different effect measures ({names}); analyse them separately")
        resolved = measures.pop() if measures else (measure or EffectMeasure.GENERIC)

        study_effects = [es.to_study_effect(info=s) for es, s in zip(effect_sizes, records)]
        pooled = self.pooling.pool(study_effects, model, resolved)
        heterogeneity = pooled.heterogeneity

        forest = self.forest.build(
            study_effects,
            pooled,
            heterogeneity,
            measure=resolved,
            ordering=ordering,
            title=title or f"Forest Plot ({resolved.value})",
        )

        bias = self.bias.assess(study_effects, pooled, trim_and_fill=trim_and_fill)

        logger.info(
            f"Meta-analysis complete: {len(study_effects)} studies, {pooled.model.value} effect",
            extra={
                "analysis": {
                    "measure": resolved.value,
                    "k": len(study_effects),
                    "effect": round(pooled.display_effect, 6),
                    "i_squared": round(heterogeneity.i_squared, 2) if heterogeneity else None,
                }
            },
        )
        return MetaAnalysisResult(
            measure=resolved,
            studies=tuple(study_effects),
            effect_sizes=tuple(effect_sizes),
            pooled=pooled,
            heterogeneity=heterogeneity,
            forest_plot=forest,
            publication_bias=bias,
            warnings=tuple(dict.fromkeys(pooled.warnings + forest.warnings + bias.warnings)),
        )

    def compute_pooled_effect(
        self,
        effect_sizes: Sequence[PoolingInput],
        method: Union[PoolingModel, str] = PoolingModel.RANDOM,
    ) -> PooledResult:
        """Compute the pooled effect size across a set of studies."""
        return self.pooling.pool(effect_sizes, method)

    def assess_heterogeneity(self, effect_sizes: Sequence[PoolingInput]) -> HeterogeneityResult:
        """Compute heterogeneity statistics (Q, I², τ², H²)."""
        return self.heterogeneity.assess(effect_sizes)

    def publication_bias_test(self, effect_sizes: Sequence[PoolingInput]) -> PublicationBiasResult:
        """Assess publication bias with Egger's and Begg's tests."""
        return self.bias.assess(effect_sizes)

    def generate_forest_plot_data(
        self,
        effect_sizes: Sequence[Union[PoolingInput, EffectSizeResult]],
        pooled: PooledResult,
        **options: Any,
    ) -> ForestPlotData:
        """Create renderer-agnostic forest plot layout data."""
        return self.forest.build(effect_sizes, pooled, **options)
