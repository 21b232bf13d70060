"""Unit tests for the rich console summary."""

from rich.console import Console

from metastat.core.models import StudyEffect
from metastat.meta.analyzer import MetaAnalyzer
from metastat.meta.report import build_study_table, print_summary


def _result(k: int = 4):
    studies = [
        StudyEffect(
            study_id=f"s{i}",
            label=f"Study {i}",
            year=2010 + i,
            effect_size=0.2 + 0.05 * i * (-1) ** i,
            standard_error=0.1 + 0.02 * i,
            measure="MD",
        )
        for i in range(k)
    ]
    return MetaAnalyzer().analyze(studies)


class TestReport:
    """Tests for the study table and summary panel."""

    def test_table_has_row_per_study_and_pooled(self) -> None:
        """Test the table lists every study and the pooled row."""
        table = build_study_table(_result())
        assert table.row_count == 5
        assert table.title.startswith("Forest Plot")

    def test_print_summary(self) -> None:
        """Test the summary renders the key numbers."""
        console = Console(record=True, width=160)
        print_summary(_result(), console=console)
        text = console.export_text()
        assert "Meta-analysis summary" in text
        assert "Study 0" in text
        assert "Heterogeneity" in text
        assert "Publication bias" in text

    def test_summary_with_two_studies(self) -> None:
        """Test two studies report that bias tests lacked data."""
        console = Console(record=True, width=160)
        print_summary(_result(k=2), console=console)
        assert "Insufficient studies" in console.export_text()
