from __future__ import annotations

import json
from typing import Optional

import typer
from rich.table import Table

from layerwise import __version__
from layerwise.analyzer import analyze as analyze_content
from layerwise.analyzer import filter_by_severity, group_by_stage
from layerwise.history import analyze_history, parse_history
from layerwise.loader import LoadError, load_dockerfile, load_history
from layerwise.models import Severity
from layerwise.rules import RULES
from layerwise.utils import (
    DEFAULT_FORMAT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_SEVERITY,
    OUTPUT_FORMATS,
    configure_logging,
    console,
    display_history,
    display_potential_issues,
    display_report_summary,
    display_size_estimate,
    display_suggestion_diffs,
    display_suggestion_table,
    print_error,
    print_info,
    print_success,
)

EXIT_FAILURE = 1
EXIT_HIGH_SEVERITY = 2

app = typer.Typer(
    name="layerwise",
    help="🐳 layerwise — Dockerfile layer caching and image size advisor",
    add_completion=False,
    no_args_is_help=True,
)


def version_callback(value: bool):
    if value:
        console.print(f"layerwise v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
):
    pass


def _check_format(output_format: str) -> str:
    output_format = output_format.lower()
    if output_format not in OUTPUT_FORMATS:
        print_error(f"Invalid format: {output_format}. Use one of: {', '.join(OUTPUT_FORMATS)}")
        raise typer.Exit(EXIT_FAILURE)
    return output_format


@app.command()
def analyze(
    dockerfile: str = typer.Argument(..., help="Path to the Dockerfile to analyze"),
    severity: str = typer.Option(
        DEFAULT_SEVERITY, "--severity", "-s", help="Minimum severity to show (high, medium, low)"
    ),
    output_format: str = typer.Option(
        DEFAULT_FORMAT, "--format", "-f", help="Output format: text or json"
    ),
    estimate: bool = typer.Option(
        False, "--estimate", "-e", help="Include a heuristic image size estimate"
    ),
    diff: bool = typer.Option(
        False, "--diff", "-d", help="Show before/after snippets for suggestions"
    ),
    by_stage: bool = typer.Option(False, "--by-stage", help="Group suggestions by build stage"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    configure_logging("DEBUG" if verbose else DEFAULT_LOG_LEVEL)
    output_format = _check_format(output_format)

    try:
        min_sev = Severity.from_string(severity)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(EXIT_FAILURE)

    try:
        content = load_dockerfile(dockerfile)
    except LoadError as e:
        print_error(str(e))
        raise typer.Exit(EXIT_FAILURE)

    report = analyze_content(content, estimate=estimate)
    shown = filter_by_severity(report.suggestions, min_sev)

    if output_format == "json":
        data = report.model_dump(mode="json")
        data["suggestions"] = [s.model_dump(mode="json") for s in shown]
        typer.echo(json.dumps(data, indent=2))
    else:
        display_report_summary(report, dockerfile)
        if report.size_estimate is not None:
            display_size_estimate(report.size_estimate)
        if report.potential_issues:
            display_potential_issues(report.potential_issues)

        if not shown:
            print_success("No issues found at this severity. Layers look cache-friendly.")
        elif by_stage:
            for stage, items in group_by_stage(shown).items():
                display_suggestion_table(items, title=f"Stage: {stage or 'whole file'}")
        else:
            display_suggestion_table(shown)

        if diff:
            display_suggestion_diffs(shown)

    if report.has_high_severity:
        raise typer.Exit(EXIT_HIGH_SEVERITY)


@app.command()
def history(
    history_file: str = typer.Argument(
        ..., help="File with `docker history --format '{{.ID}}|{{.Size}}|{{.CreatedBy}}'` output, or - for stdin"
    ),
    top: int = typer.Option(5, "--top", "-n", min=1, help="Number of largest layers to show"),
    output_format: str = typer.Option(
        DEFAULT_FORMAT, "--format", "-f", help="Output format: text or json"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    configure_logging("DEBUG" if verbose else DEFAULT_LOG_LEVEL)
    output_format = _check_format(output_format)

    try:
        raw = load_history(history_file)
    except LoadError as e:
        print_error(str(e))
        raise typer.Exit(EXIT_FAILURE)

    analysis = analyze_history(parse_history(raw), top=top)

    if output_format == "json":
        typer.echo(analysis.model_dump_json(indent=2))
    elif not analysis.total_layers:
        print_info("No layers found in history output.")
    else:
        display_history(analysis)


@app.command()
def rules():
    table = Table(title=f"Rules ({len(RULES)})", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Severity", justify="center")
    table.add_column("Title")

    for rule in RULES:
        table.add_row(rule.rule_id, rule.name, rule.severity.value, rule.title)

    console.print(table)


if __name__ == "__main__":
    app()
