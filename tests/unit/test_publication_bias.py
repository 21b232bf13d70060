"""Unit tests for publication bias diagnostics."""

import math

import pytest

from metastat.config.settings import Settings
from metastat.core.errors import InsufficientDataError
from metastat.core.models import StudyEffect
from metastat.meta.models import BeggTest, EggerTest
from metastat.meta.publication_bias import PublicationBiasAssessor


@pytest.fixture
def assessor() -> PublicationBiasAssessor:
    return PublicationBiasAssessor()


@pytest.fixture
def symmetric_studies():
    """Pairs mirrored around 0.5 at the same SE, so SE is unrelated to direction."""
    studies = []
    for i, (se, ratio) in enumerate(zip([0.1, 0.15, 0.2, 0.25, 0.3, 0.35], [0.5, 1.0, 1.5, 2.0, 2.5, 3.0])):
        offset = ratio * se
        studies.append(StudyEffect(study_id=f"p{i}a", effect_size=0.5 + offset, standard_error=se))
        studies.append(StudyEffect(study_id=f"p{i}b", effect_size=0.5 - offset, standard_error=se))
    return studies


@pytest.fixture
def asymmetric_studies():
    """Small studies report systematically larger effects."""
    studies = []
    for i in range(15):
        se = 0.05 + i * 0.45 / 14
        noise = 0.02 if i % 2 == 0 else -0.02
        studies.append(StudyEffect(study_id=f"s{i}", effect_size=0.1 + 2 * se + noise, standard_error=se))
    return studies


class TestNoBias:
    """Tests on a funnel with no small-study effect."""

    def test_egger_intercept_near_zero(self, assessor: PublicationBiasAssessor, symmetric_studies) -> None:
        """Test Egger's intercept vanishes on a symmetric funnel."""
        egger = assessor.egger(symmetric_studies)
        assert egger is not None
        assert egger.intercept == pytest.approx(0.0, abs=1e-8)
        assert egger.slope == pytest.approx(0.5)
        assert egger.df == 10
        assert egger.p > 0.10

    def test_begg_tau_zero(self, assessor: PublicationBiasAssessor, symmetric_studies) -> None:
        """Test Begg's tau vanishes on a symmetric funnel."""
        begg = assessor.begg(symmetric_studies)
        assert begg.tau == pytest.approx(0.0, abs=1e-12)
        assert begg.p > 0.10

    def test_begg_tau_b_with_tied_variances(self, assessor: PublicationBiasAssessor) -> None:
        """Test tied variances use the tau-b denominator.

        Deviates rise strictly with study order and the two smallest
        variances are tied, so 5 of 6 pairs are concordant and one is
        tied in variance: tau-b = 5 / sqrt(6 * 5).
        """
        studies = [
            StudyEffect(study_id="a", effect_size=0.0, standard_error=0.1),
            StudyEffect(study_id="b", effect_size=0.1, standard_error=0.1),
            StudyEffect(study_id="c", effect_size=0.5, standard_error=0.2),
            StudyEffect(study_id="d", effect_size=1.0, standard_error=0.3),
        ]
        begg = assessor.begg(studies)
        expected = 5 / math.sqrt(30)
        assert begg.tau == pytest.approx(expected)
        assert begg.z == pytest.approx(expected / math.sqrt(26 / 108))

    def test_no_bias_detected(self, assessor: PublicationBiasAssessor, symmetric_studies) -> None:
        """Test the overall assessment stays negative."""
        result = assessor.assess(symmetric_studies)
        assert not result.overall.bias_detected
        assert result.n_studies == 12
        assert not result.low_power


class TestAsymmetry:
    """Tests on a funnel with a strong small-study effect."""

    def test_bias_detected(self, assessor: PublicationBiasAssessor, asymmetric_studies) -> None:
        """Test both tests flag the asymmetry."""
        result = assessor.assess(asymmetric_studies)
        assert result.egger.intercept > 0
        assert result.egger.p < 0.10
        assert result.begg.tau > 0
        assert result.begg.p < 0.10
        assert result.overall.bias_detected

    def test_trim_and_fill_imputes_on_the_left(
        self, assessor: PublicationBiasAssessor, asymmetric_studies
    ) -> None:
        """Test missing studies are imputed below the pooled estimate."""
        result = assessor.assess(asymmetric_studies)
        tf = result.trim_and_fill
        assert tf is not None
        assert tf.side == "left"
        assert tf.n_imputed >= 1
        assert len(tf.imputed_studies) == tf.n_imputed
        assert tf.adjusted_effect < tf.original_effect
        assert all(s.study_id.endswith("_filled") for s in tf.imputed_studies)
        imputed_points = [p for p in result.funnel_points if p.imputed]
        assert len(imputed_points) == tf.n_imputed

    def test_trim_and_fill_can_be_skipped(self, assessor: PublicationBiasAssessor, asymmetric_studies) -> None:
        """Test trim-and-fill is optional."""
        result = assessor.assess(asymmetric_studies, trim_and_fill=False)
        assert result.trim_and_fill is None
        assert not any(p.imputed for p in result.funnel_points)


class TestFunnel:
    """Tests for funnel plot data."""

    def test_points_and_reference(self, assessor: PublicationBiasAssessor, symmetric_studies) -> None:
        """Test one point per study with precision 1/se and a contour grid."""
        result = assessor.assess(symmetric_studies, pooled=0.5, trim_and_fill=False)
        funnel = result.funnel
        assert len(funnel.points) == 12
        assert funnel.pooled_effect == 0.5
        for point in funnel.points:
            assert point.precision == pytest.approx(1 / point.standard_error)
        assert len(funnel.contour) == 10
        assert funnel.contour[0].lower == funnel.contour[0].upper == 0.5
        assert funnel.contour[-1].standard_error == pytest.approx(0.35)
        assert len(funnel.to_dataframe()) == 12


class TestPowerAndDegenerateInputs:
    """Tests for few studies and degenerate regressions."""

    def test_low_power_warning(self, assessor: PublicationBiasAssessor) -> None:
        """Test fewer than ten studies are assessed but marked low power."""
        studies = [
            StudyEffect(study_id=f"s{i}", effect_size=0.1 * i, standard_error=0.1 + 0.05 * i)
            for i in range(5)
        ]
        result = assessor.assess(studies)
        assert result.low_power
        assert any("low power" in w for w in result.warnings)

    def test_threshold_from_settings(self) -> None:
        """Test the low-power threshold is configurable."""
        studies = [
            StudyEffect(study_id=f"s{i}", effect_size=0.1 * i, standard_error=0.1 + 0.05 * i)
            for i in range(5)
        ]
        result = PublicationBiasAssessor(Settings(bias_min_studies=5)).assess(studies)
        assert not result.low_power

    def test_two_studies_do_not_block(self, assessor: PublicationBiasAssessor) -> None:
        """Test two studies give a Begg-only result instead of an error."""
        studies = [
            StudyEffect(study_id="a", effect_size=0.1, standard_error=0.1),
            StudyEffect(study_id="b", effect_size=0.2, standard_error=0.3),
        ]
        result = assessor.assess(studies)
        assert result.n_studies == 2
        assert result.egger is None
        assert result.trim_and_fill is None
        assert not result.overall.bias_detected
        assert result.overall.level == "low"
        assert result.low_power
        assert len(result.funnel.points) == 2
        assert any("Insufficient studies" in w for w in result.warnings)

    def test_egger_alone_needs_three_studies(self, assessor: PublicationBiasAssessor) -> None:
        """Test the standalone regression still rejects two studies."""
        studies = [
            StudyEffect(study_id="a", effect_size=0.1, standard_error=0.1),
            StudyEffect(study_id="b", effect_size=0.2, standard_error=0.3),
        ]
        with pytest.raises(InsufficientDataError):
            assessor.egger(studies)

    def test_single_study_raises(self, assessor: PublicationBiasAssessor) -> None:
        """Test one study cannot be assessed."""
        with pytest.raises(InsufficientDataError):
            assessor.assess([StudyEffect(study_id="a", effect_size=0.1, standard_error=0.1)])

    def test_equal_standard_errors(self, assessor: PublicationBiasAssessor) -> None:
        """Test Egger's test is reported as missing when every SE is the same."""
        studies = [
            StudyEffect(study_id=f"s{i}", effect_size=0.1 * i, standard_error=0.1) for i in range(5)
        ]
        result = assessor.assess(studies)
        assert result.egger is None
        assert result.begg.tau == 0.0
        assert any("Egger's test not computed" in w for w in result.warnings)
        assert not result.overall.bias_detected


class TestOverallPolicy:
    """Tests for the combined decision rule."""

    def _overall(self, egger, begg):
        return PublicationBiasAssessor()._overall(egger, begg, low_power=False)

    @staticmethod
    def _egger(p: float, intercept: float = 1.0) -> EggerTest:
        return EggerTest(intercept=intercept, se=0.3, t=3.0, p=p, slope=0.1, df=10)

    def test_both_significant(self) -> None:
        """Test agreement at p < 0.10 flags bias."""
        assert self._overall(self._egger(0.05), BeggTest(tau=0.3, z=1.8, p=0.07)).bias_detected

    def test_one_strong_and_supportive(self) -> None:
        """Test one strongly significant test plus a same-direction tau flags bias."""
        result = self._overall(self._egger(0.005), BeggTest(tau=0.1, z=0.5, p=0.6))
        assert result.bias_detected
        assert result.confidence < 0.7

    def test_one_strong_but_opposite(self) -> None:
        """Test an opposite-direction second test blocks the flag."""
        assert not self._overall(self._egger(0.005), BeggTest(tau=-0.1, z=-0.5, p=0.6)).bias_detected

    def test_one_weak(self) -> None:
        """Test a single test at p < 0.10 is not enough."""
        result = self._overall(self._egger(0.05), BeggTest(tau=0.1, z=0.5, p=0.6))
        assert not result.bias_detected
        assert "inconclusive" in result.interpretation

    def test_agreement_gives_high_level(self) -> None:
        """Test agreeing tests with adequate power give a high confidence level."""
        result = self._overall(self._egger(0.5), BeggTest(tau=0.0, z=0.0, p=1.0))
        assert result.level == "high"
