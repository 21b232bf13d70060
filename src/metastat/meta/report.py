"""Console summaries of meta-analysis results.

``build_study_table`` and ``build_summary_panel`` return rich renderables
so callers can embed them; ``print_summary`` writes both to a console.
"""

from __future__ import annotations

from typing import List, Optional

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table

from .models import MetaAnalysisResult


def _fmt(value: Optional[float], digits: int = 2) -> str:
    return "-" if value is None else f"{value:.{digits}f}"


def _fmt_p(p: Optional[float]) -> str:
    if p is None:
        return "-"
    return "<0.001" if p < 0.001 else f"{p:.3f}"


def build_study_table(result: MetaAnalysisResult) -> Table:
    """Per-study effects and weights, followed by the pooled row."""
    forest = result.forest_plot
    table = Table(title=forest.title)
    table.add_column("Study", style="cyan")
    table.add_column("Year", justify="right")
    table.add_column(result.measure.value, justify="right")
    table.add_column("95% CI", justify="right")
    table.add_column("Weight %", style="green", justify="right")

    # Top-down, the reverse of the plot's bottom-up y positions
    for row in reversed(forest.rows):
        table.add_row(
            row.label,
            str(row.year) if row.year is not None else "",
            _fmt(row.effect),
            f"[{_fmt(row.ci_lower)}, {_fmt(row.ci_upper)}]",
            _fmt(row.weight_pct, 1),
        )
    pooled = forest.pooled_row
    table.add_section()
    table.add_row(
        f"[bold]{pooled.label}[/bold]",
        "",
        f"[bold]{_fmt(pooled.effect)}[/bold]",
        f"[{_fmt(pooled.ci_lower)}, {_fmt(pooled.ci_upper)}]",
        "100.0",
    )
    return table


def build_summary_panel(result: MetaAnalysisResult) -> Panel:
    """Pooling, heterogeneity and publication bias in one panel."""
    pooled = result.pooled
    het = result.heterogeneity
    lines: List[str] = [
        f"Model: {pooled.model.value} effect ({pooled.model_rationale})",
        f"Pooled {result.measure.value}: {_fmt(pooled.display_effect, 3)} "
        f"[{_fmt(pooled.display_ci_lower, 3)}, {_fmt(pooled.display_ci_upper, 3)}], "
        f"p = {_fmt_p(pooled.p_value)}",
        f"Heterogeneity: Q = {_fmt(het.q)} (df = {het.df}, p = {_fmt_p(het.p_value)}), "
        f"I² = {_fmt(het.i_squared, 1)}% ({het.interpretation}), τ² = {_fmt(het.tau_squared, 4)}",
    ]
    if het.prediction_interval is not None:
        pi = het.prediction_interval
        lines.append(
            f"Prediction interval: [{_fmt(result.measure.to_display(pi.lower), 3)}, "
            f"{_fmt(result.measure.to_display(pi.upper), 3)}]"
        )

    bias = result.publication_bias
    egger_p = _fmt_p(bias.egger.p) if bias.egger is not None else "-"
    colour = "red" if bias.overall.bias_detected else "green"
    lines.append(
        f"Publication bias: [{colour}]{bias.overall.interpretation}[/{colour}] "
        f"(Egger p = {egger_p}, Begg p = {_fmt_p(bias.begg.p)})"
    )
    if bias.trim_and_fill is not None and bias.trim_and_fill.n_imputed:
        tf = bias.trim_and_fill
        lines.append(
            f"Trim-and-fill: {tf.n_imputed} imputed, adjusted {result.measure.value} = "
            f"{_fmt(result.measure.to_display(tf.adjusted_effect), 3)}"
        )

    for warning in result.warnings:
        lines.append(f"[yellow]⚠ {warning}[/yellow]")
    return Panel("\n".join(lines), title="Meta-analysis summary")


def print_summary(result: MetaAnalysisResult, console: Optional[Console] = None) -> None:
    """Print the study table and summary panel."""
    console = console or Console()
    console.print(Group(build_study_table(result), build_summary_panel(result)))
