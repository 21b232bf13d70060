"""End-to-end tests for the meta-analysis pipeline."""

import json
import math

import pytest

from metastat.core.errors import InputError, InsufficientDataError
from metastat.core.models import BinaryStudy, EffectMeasure
from metastat.meta.analyzer import MetaAnalyzer
from metastat.meta.models import ForestPlotData, PoolingModel


BINARY_TABLES = [
    (20, 80, 10, 90),
    (15, 85, 8, 92),
    (25, 75, 12, 88),
    (18, 82, 9, 91),
    (22, 78, 11, 89),
]


@pytest.fixture
def binary_studies():
    return [
        BinaryStudy(study_id=f"trial{i}", year=2000 + i, events_t=a, n_t=a + b, events_c=c, n_c=c + d)
        for i, (a, b, c, d) in enumerate(BINARY_TABLES, start=1)
    ]


@pytest.fixture
def analyzer() -> MetaAnalyzer:
    return MetaAnalyzer()


@pytest.mark.integration
class TestBinaryPipeline:
    """Full analysis of five two-arm trials."""

    def test_pooled_odds_ratio(self, analyzer: MetaAnalyzer, binary_studies) -> None:
        """Test the fixed-effect OR, heterogeneity and model choice."""
        result = analyzer.analyze(binary_studies)
        assert result.measure is EffectMeasure.OR
        assert result.pooled.model is PoolingModel.FIXED
        assert 2.0 <= result.pooled.display_effect <= 2.3
        assert result.heterogeneity.i_squared < 40.0
        assert result.pooled.total_sample_size == 1000
        assert len(result.effect_sizes) == 5

    def test_forest_plot(self, analyzer: MetaAnalyzer, binary_studies) -> None:
        """Test the forest plot uses a log axis and reuses the pooled values."""
        result = analyzer.analyze(binary_studies, ordering="by_year")
        forest = result.forest_plot
        assert len(forest.all_rows) == 6
        assert forest.x_axis.scale == "log"
        assert forest.pooled_row.effect == result.pooled.display_effect
        assert forest.pooled_row.ci_lower == result.pooled.display_ci_lower
        assert forest.pooled_row.ci_upper == result.pooled.display_ci_upper
        assert list(forest.y_axis.order) == [f"trial{i}" for i in range(1, 6)]
        assert [row.year for row in forest.rows] == [2001, 2002, 2003, 2004, 2005]

    def test_forest_plot_survives_serialisation(self, analyzer: MetaAnalyzer, binary_studies) -> None:
        """Test the pooled row reads back exactly after a JSON round trip."""
        result = analyzer.analyze(binary_studies)
        payload = json.dumps(result.forest_plot.model_dump(mode="json"))
        restored = ForestPlotData.model_validate(json.loads(payload))
        assert restored.pooled_row.effect == result.pooled.display_effect
        assert restored.pooled_row.ci_lower == result.pooled.display_ci_lower
        assert restored.pooled_row.ci_upper == result.pooled.display_ci_upper

    def test_publication_bias_low_power(self, analyzer: MetaAnalyzer, binary_studies) -> None:
        """Test five studies are assessed for bias but marked low power."""
        result = analyzer.analyze(binary_studies)
        bias = result.publication_bias
        assert bias is not None
        assert bias.low_power
        assert bias.n_studies == 5
        assert len(bias.funnel.points) >= 5

    def test_whole_result_is_json_serialisable(self, analyzer: MetaAnalyzer, binary_studies) -> None:
        """Test the result dumps to plain JSON."""
        payload = json.loads(json.dumps(analyzer.analyze(binary_studies).model_dump(mode="json")))
        assert payload["measure"] == "OR"
        assert payload["pooled"]["model"] == "fixed"

    def test_risk_ratio_on_request(self, analyzer: MetaAnalyzer, binary_studies) -> None:
        """Test an explicit measure is used for every study."""
        result = analyzer.analyze(binary_studies, measure="RR", model="random")
        assert result.measure is EffectMeasure.RR
        assert result.pooled.model is PoolingModel.RANDOM
        assert all(es.measure is EffectMeasure.RR for es in result.effect_sizes)


@pytest.mark.integration
class TestOtherInputs:
    """Continuous and precomputed inputs, and failure modes."""

    def test_continuous_studies(self, analyzer: MetaAnalyzer) -> None:
        """Test Hedges' g is the default for continuous outcomes."""
        studies = [
            {"study_id": "c1", "mean_t": 12.0, "sd_t": 4.0, "n_t": 40, "mean_c": 10.0, "sd_c": 4.2, "n_c": 38},
            {"study_id": "c2", "mean_t": 11.5, "sd_t": 3.8, "n_t": 55, "mean_c": 10.1, "sd_c": 4.0, "n_c": 60},
            {"study_id": "c3", "mean_t": 13.0, "sd_t": 5.0, "n_t": 25, "mean_c": 10.5, "sd_c": 4.5, "n_c": 27},
        ]
        result = analyzer.analyze(studies)
        assert result.measure is EffectMeasure.HEDGES_G
        assert result.forest_plot.x_axis.scale == "linear"
        assert result.pooled.effect > 0

    def test_precomputed_hazard_ratios(self, analyzer: MetaAnalyzer) -> None:
        """Test precomputed log hazard ratios keep their measure."""
        studies = [
            {"study_id": f"h{i}", "effect_size": math.log(hr), "standard_error": se, "measure": "HR"}
            for i, (hr, se) in enumerate([(0.8, 0.1), (0.7, 0.15), (0.9, 0.12)])
        ]
        result = analyzer.analyze(studies)
        assert result.measure is EffectMeasure.HR
        assert result.pooled.display_effect < 1.0
        assert result.forest_plot.x_axis.scale == "log"

    def test_two_studies_report_begg_only(self, analyzer: MetaAnalyzer, binary_studies) -> None:
        """Test two studies get a non-fatal bias result with a warning."""
        result = analyzer.analyze(binary_studies[:2])
        bias = result.publication_bias
        assert bias.egger is None
        assert bias.trim_and_fill is None
        assert not bias.overall.bias_detected
        assert any("Insufficient studies" in w for w in result.warnings)
        assert result.heterogeneity.prediction_interval is None

    def test_single_study_raises(self, analyzer: MetaAnalyzer, binary_studies) -> None:
        """Test one study cannot be pooled."""
        with pytest.raises(InsufficientDataError):
            analyzer.analyze(binary_studies[:1])

    def test_mixed_measures_rejected(self, analyzer: MetaAnalyzer, binary_studies) -> None:
        """Test binary and continuous studies cannot be combined."""
        continuous = {"study_id": "c1", "mean_t": 1.0, "sd_t": 1.0, "n_t": 20, "mean_c": 0.5, "sd_c": 1.0, "n_c": 20}
        with pytest.raises(InputError):
            analyzer.analyze(binary_studies + [continuous])

    def test_invalid_record_rejected(self, analyzer: MetaAnalyzer) -> None:
        """Test malformed input fails before any computation."""
        with pytest.raises(InputError):
            analyzer.analyze([{"study_id": "x", "events_t": 5, "n_t": 0, "events_c": 1, "n_c": 10}])

    def test_step_by_step_helpers(self, analyzer: MetaAnalyzer, binary_studies) -> None:
        """Test the step-by-step helpers agree with analyze()."""
        full = analyzer.analyze(binary_studies, model="random")
        effect_sizes = [analyzer.calculator.calculate(s) for s in binary_studies]
        pooled = analyzer.compute_pooled_effect(effect_sizes, method="random")
        assert pooled.effect == pytest.approx(full.pooled.effect)
        het = analyzer.assess_heterogeneity(effect_sizes)
        assert het.q == pytest.approx(full.heterogeneity.q)
        forest = analyzer.generate_forest_plot_data(effect_sizes, pooled)
        assert forest.pooled_row.effect == pooled.display_effect
        bias = analyzer.publication_bias_test(effect_sizes)
        assert bias.begg.tau == pytest.approx(full.publication_bias.begg.tau)
