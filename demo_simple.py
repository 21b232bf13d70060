"""
Meta-Analysis Demo - Five Two-Arm Trials
========================================

Runs the full pipeline on a small binary-outcome dataset: effect sizes,
pooling, heterogeneity, forest plot layout and publication bias, and
writes the forest plot and funnel data to CSV.
"""

from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from metastat.core.models import BinaryStudy
from metastat.meta.analyzer import MetaAnalyzer
from metastat.meta.report import print_summary

console = Console()


def demo_simple():
    """Analyse five trials and export the plot data."""

    # ==================== CONFIGURATION ====================
    TABLES = [
        ("Andersen", 2004, 20, 100, 10, 100),
        ("Baker", 2007, 15, 100, 8, 100),
        ("Chen", 2011, 25, 100, 12, 100),
        ("Dubois", 2015, 18, 100, 9, 100),
        ("Evans", 2019, 22, 100, 11, 100),
    ]
    OUTPUT_DIR = Path("demo_output")
    OUTPUT_DIR.mkdir(exist_ok=True)

    console.print("\n")
    console.print(Panel.fit(
        "[bold cyan]Meta-Analysis Engine - Demo[/bold cyan]\n"
        "[yellow]Effect sizes → Pooling → Heterogeneity → Forest plot → Publication bias[/yellow]",
        border_style="cyan",
        padding=(1, 2)
    ))

    studies = [
        BinaryStudy(study_id=name.lower(), label=name, year=year,
                    events_t=et, n_t=nt, events_c=ec, n_c=nc)
        for name, year, et, nt, ec, nc in TABLES
    ]

    # ==================== STEP 1: INPUT ====================
    console.print(Panel("[bold green]STEP 1: Study Data[/bold green]", border_style="green"))
    input_table = Table(show_header=True, border_style="cyan")
    input_table.add_column("Study", style="cyan")
    input_table.add_column("Year", justify="right")
    input_table.add_column("Events / N (treatment)", justify="right")
    input_table.add_column("Events / N (control)", justify="right")
    for s in studies:
        input_table.add_row(s.display_label, str(s.year), f"{s.events_t} / {s.n_t}", f"{s.events_c} / {s.n_c}")
    console.print(input_table)

    # ==================== STEP 2: ANALYSIS ====================
    console.print(Panel("[bold green]STEP 2: Analysis[/bold green]", border_style="green"))
    result = MetaAnalyzer().analyze(studies, ordering="by_year", title="Odds of response")
    print_summary(result, console=console)

    # ==================== STEP 3: EXPORT ====================
    console.print(Panel("[bold green]STEP 3: Export[/bold green]", border_style="green"))
    forest_file = OUTPUT_DIR / "forest_plot.csv"
    result.forest_plot.to_dataframe().to_csv(forest_file, index=False)
    console.print(f"  ✓ Forest plot data: [cyan]{forest_file}[/cyan]")
    funnel_file = OUTPUT_DIR / "funnel_plot.csv"
    result.publication_bias.funnel.to_dataframe().to_csv(funnel_file, index=False)
    console.print(f"  ✓ Funnel plot data: [cyan]{funnel_file}[/cyan]")
    json_file = OUTPUT_DIR / "analysis.json"
    json_file.write_text(result.model_dump_json(indent=2))
    console.print(f"  ✓ Full result: [cyan]{json_file}[/cyan]")

    return result


if __name__ == "__main__":
    print("\n" + "="*60)
    print("  META-ANALYSIS ENGINE - DEMO")
    print("="*60 + "\n")

    try:
        result = demo_simple()
        print("\n" + "="*60)
        print("  ✓ Demo completed successfully!")
        print(f"  📊 Pooled {result.measure.value}: {result.pooled.display_effect:.2f}")
        print(f"  📁 Check 'demo_output' folder for results")
        print("="*60 + "\n")
    except KeyboardInterrupt:
        print("\n\n⚠️  Demo interrupted by user\n")
    except Exception as e:
        print(f"\n\n❌ Error: {e}\n")
        raise
