from __future__ import annotations

import difflib
import logging
import os
from types import MappingProxyType
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from layerwise.models import HistoryAnalysis, Report, Severity, SizeEstimate, Suggestion

console = Console()
error_console = Console(stderr=True, style="bold red")

DEFAULT_SEVERITY = os.environ.get("LAYERWISE_SEVERITY", "low")
DEFAULT_FORMAT = os.environ.get("LAYERWISE_FORMAT", "text")
DEFAULT_LOG_LEVEL = os.environ.get("LAYERWISE_LOG_LEVEL", "WARNING")

OUTPUT_FORMATS = ("text", "json")

SEVERITY_COLORS = MappingProxyType(
    {
        "high": "bold red",
        "medium": "yellow",
        "low": "blue",
    }
)


def configure_logging(level: str = DEFAULT_LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _severity_label(severity: Severity) -> str:
    color = SEVERITY_COLORS.get(severity.value, "white")
    return f"[{color}]{severity.value.upper()}[/{color}]"


def display_report_summary(report: Report, source: str) -> None:
    summary = report.summary

    table = Table(title=f"Layer Report: {source}", show_lines=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="center")

    table.add_row("Instructions", str(summary.instructions))
    table.add_row("Stages", str(summary.stages))
    table.add_row(
        "Multi-stage",
        "[green]yes[/green]" if summary.multi_stage else "[red]no[/red]",
    )
    for severity in Severity:
        count = summary.severity_counts()[severity.value]
        table.add_row(_severity_label(severity), str(count))
    table.add_row("[bold]TOTAL[/bold]", f"[bold]{summary.total}[/bold]")
    console.print(table)

    if summary.directive_counts:
        breakdown = ", ".join(f"{k}: {v}" for k, v in summary.directive_counts)
        console.print(f"[dim]Instructions by type: {breakdown}[/dim]")


def display_suggestion_table(suggestions: tuple[Suggestion, ...], title: Optional[str] = None) -> None:
    table = Table(title=title or f"Suggestions ({len(suggestions)} found)", show_lines=True)
    table.add_column("Rule", style="cyan", no_wrap=True)
    table.add_column("Severity", justify="center")
    table.add_column("Lines", style="dim")
    table.add_column("Issue", max_width=50)
    table.add_column("Recommendation", style="green", max_width=50)

    for suggestion in suggestions:
        table.add_row(
            suggestion.rule_id,
            _severity_label(suggestion.severity),
            ", ".join(str(n) for n in suggestion.lines) or "—",
            f"[bold]{suggestion.title}[/bold]\n{suggestion.message}",
            suggestion.recommendation,
        )

    console.print(table)


def render_diff(before: str, after: str) -> str:
    diff = difflib.unified_diff(
        before.splitlines(),
        after.splitlines(),
        fromfile="current",
        tofile="suggested",
        lineterm="",
    )
    return "\n".join(diff)


def display_suggestion_diffs(suggestions: tuple[Suggestion, ...]) -> None:
    for suggestion in suggestions:
        if not (suggestion.before and suggestion.after):
            continue
        lines = []
        for line in render_diff(suggestion.before, suggestion.after).splitlines():
            if line.startswith("+") and not line.startswith("+++"):
                lines.append(f"[green]{line}[/green]")
            elif line.startswith("-") and not line.startswith("---"):
                lines.append(f"[red]{line}[/red]")
            else:
                lines.append(f"[dim]{line}[/dim]")
        console.print(
            Panel(
                "\n".join(lines),
                title=f"[bold cyan]{suggestion.rule_id} {suggestion.title}[/bold cyan]",
                border_style="cyan",
            )
        )


def display_size_estimate(estimate: SizeEstimate) -> None:
    table = Table(title=f"Estimated Size: {estimate.estimated_size}", show_lines=True)
    table.add_column("Category", style="bold")
    table.add_column("Estimated", justify="right")
    table.add_column("Layers", justify="center")

    for item in estimate.breakdown:
        table.add_row(item.category, item.estimated_size, str(item.layers))
    console.print(table)

    if estimate.recommendations:
        body = "\n".join(f"• {rec}" for rec in estimate.recommendations)
        console.print(Panel(body, title="[bold yellow]Size Recommendations[/bold yellow]", border_style="yellow"))


def display_potential_issues(issues: tuple[str, ...]) -> None:
    body = "\n".join(f"[red]•[/red] {issue}" for issue in issues)
    console.print(Panel(body, title="[bold red]Potential Issues[/bold red]", border_style="red"))


def display_history(analysis: HistoryAnalysis) -> None:
    table = Table(
        title=(
            f"Image History: {analysis.total_layers} layers, "
            f"{analysis.formatted_total_size}"
        ),
        show_lines=True,
    )
    table.add_column("Layer", style="cyan", no_wrap=True)
    table.add_column("Size", justify="right")
    table.add_column("Share", justify="right")
    table.add_column("Created By", max_width=60)

    for layer in analysis.largest_layers:
        table.add_row(layer.id, layer.formatted_size, f"{layer.percent:.2f}%", layer.created_by)

    console.print(table)


def print_error(message: str) -> None:
    error_console.print(f"✗ {message}")


def print_success(message: str) -> None:
    console.print(f"[bold green]✓[/bold green] {message}")


def print_info(message: str) -> None:
    console.print(f"[bold blue]ℹ[/bold blue] {message}")
