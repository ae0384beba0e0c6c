"""Combines parser and rule output into a single report."""

from __future__ import annotations

from typing import Optional

from layerwise.dockerfile import parse_dockerfile
from layerwise.estimator import estimate_size
from layerwise.models import ParseResult, Report, Severity, SizeEstimate, Suggestion, Summary
from layerwise.rules import COPY_DIRECTIVES, check_dockerfile, rank_suggestions

MAX_RUN_LAYERS = 5


def summarize(result: ParseResult, suggestions: tuple[Suggestion, ...]) -> Summary:
    counts = {severity: 0 for severity in Severity}
    for suggestion in suggestions:
        counts[suggestion.severity] += 1
    return Summary(
        instructions=len(result.instructions),
        stages=len(result.stages),
        multi_stage=result.multi_stage,
        high=counts[Severity.HIGH],
        medium=counts[Severity.MEDIUM],
        low=counts[Severity.LOW],
        directive_counts=tuple(result.directive_counts().items()),
    )


def potential_issues(result: ParseResult) -> tuple[str, ...]:
    """Layer-level observations that are not tied to a rule.

    Flags a file with more than ``MAX_RUN_LAYERS`` RUN instructions, and each
    COPY/ADD that directly follows a non-RUN instruction of the same stage.
    """
    issues: list[str] = []

    runs = len(result.by_directive("RUN"))
    if runs > MAX_RUN_LAYERS:
        issues.append(
            f"High number of RUN instructions ({runs}). Consider combining related commands."
        )

    for stage in result.stages:
        for prev, instruction in zip(stage.instructions, stage.instructions[1:]):
            if instruction.directive in COPY_DIRECTIVES and prev.directive != "RUN":
                issues.append(
                    f"{instruction.directive} at line {instruction.line} follows "
                    f"{prev.directive} at line {prev.line}; a cache-preparing RUN before "
                    "it may keep earlier layers reusable."
                )

    return tuple(issues)


def build_report(
    result: ParseResult,
    suggestions: list[Suggestion],
    size_estimate: Optional[SizeEstimate] = None,
) -> Report:
    ranked = tuple(rank_suggestions(list(suggestions)))
    return Report(
        parse_result=result,
        suggestions=ranked,
        summary=summarize(result, ranked),
        size_estimate=size_estimate,
        potential_issues=potential_issues(result),
    )


def analyze(content: str, estimate: bool = False) -> Report:
    """Parse Dockerfile text, run every rule and assemble the report.

    Args:
        content: Raw Dockerfile text.
        estimate: Also attach the heuristic size estimate.

    Returns:
        Report with severity-ranked suggestions, summary counts and
        layer-level potential issues.
    """
    result = parse_dockerfile(content)
    suggestions = check_dockerfile(result)
    size_estimate = estimate_size(result) if estimate else None
    return build_report(result, suggestions, size_estimate)


def filter_by_severity(
    suggestions: tuple[Suggestion, ...],
    min_severity: Severity = Severity.LOW,
) -> tuple[Suggestion, ...]:
    return tuple(s for s in suggestions if s.severity.meets(min_severity))


def group_by_stage(
    suggestions: tuple[Suggestion, ...],
) -> dict[Optional[str], tuple[Suggestion, ...]]:
    """Bucket suggestions by stage name, keeping canonical order inside each bucket."""
    buckets: dict[Optional[str], list[Suggestion]] = {}
    for suggestion in suggestions:
        buckets.setdefault(suggestion.stage, []).append(suggestion)
    return {stage: tuple(items) for stage, items in buckets.items()}
