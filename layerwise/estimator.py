"""Heuristic final-image size estimate from a parsed Dockerfile.

Figures are coarse guesses (megabytes) derived from base image names and
per-instruction patterns, never measurements.
"""

from __future__ import annotations

import re
from types import MappingProxyType

from layerwise.dockerfile import image_name
from layerwise.models import Instruction, ParseResult, SizeBreakdown, SizeEstimate

DEFAULT_BASE_SIZE = 100.0
DEFAULT_SLIM_SIZE = 80.0
DEFAULT_LAYER_SIZE = 10.0

BASE_IMAGE_SIZES = MappingProxyType(
    {
        "scratch": 0.0,
        "alpine": 5.0,
        "debian": 80.0,
        "ubuntu": 72.0,
        "node": 180.0,
        "node:slim": 150.0,
        "node:alpine": 120.0,
        "python": 50.0,
        "python:slim": 120.0,
        "python:alpine": 45.0,
        "golang": 80.0,
        "golang:alpine": 70.0,
        "openjdk": 80.0,
        "openjdk:alpine": 70.0,
    }
)

LAYER_SIZE_IMPACT = MappingProxyType(
    {
        "FROM": 0.0,
        "RUN": 50.0,
        "COPY": 30.0,
        "ADD": 35.0,
        "ENV": 0.1,
        "ARG": 0.1,
        "WORKDIR": 0.1,
        "USER": 0.1,
        "EXPOSE": 0.0,
        "CMD": 0.0,
        "ENTRYPOINT": 0.0,
        "VOLUME": 0.0,
        "LABEL": 0.1,
        "MAINTAINER": 0.1,
        "ONBUILD": 0.0,
        "STOPSIGNAL": 0.0,
        "HEALTHCHECK": 1.0,
        "SHELL": 0.1,
    }
)

SIGNIFICANT_DIRECTIVES = ("RUN", "COPY", "ADD")

_PACKAGE_TOKEN = re.compile(r"\b[a-z][a-z0-9-]+\b")


def _split_reference(reference: str) -> tuple[str, str]:
    name = image_name(reference).lower()
    tag = reference[len(name):].split("@", 1)[0].lstrip(":").lower()
    return name.rsplit("/", 1)[-1], tag


def base_image_size(references: list[str]) -> float:
    """Smallest known size among the given base image references."""
    size = DEFAULT_BASE_SIZE
    for reference in references:
        name, tag = _split_reference(reference)
        if "alpine" in tag:
            size = min(size, BASE_IMAGE_SIZES.get(f"{name}:alpine", BASE_IMAGE_SIZES["alpine"]))
        elif "slim" in tag:
            size = min(size, BASE_IMAGE_SIZES.get(f"{name}:slim", DEFAULT_SLIM_SIZE))
        else:
            size = min(size, BASE_IMAGE_SIZES.get(name, DEFAULT_BASE_SIZE))
    return size


def layer_size(instruction: Instruction) -> float:
    base = LAYER_SIZE_IMPACT.get(instruction.directive, DEFAULT_LAYER_SIZE)
    args = instruction.argument_text

    if instruction.directive in ("COPY", "ADD"):
        if "node_modules" in args:
            return base * 10
        if "*.tar" in args or "*.zip" in args or "*.tgz" in args:
            return base * 5
        if "." in args or "*" in args:
            return base * 2

    if instruction.directive == "RUN":
        if "npm install" in args or "npm ci" in args:
            return base * 3
        if "apt-get install" in args or "apk add" in args:
            packages = len(_PACKAGE_TOKEN.findall(args))
            return base * min(5.0, max(1.0, packages / 5))
        if "pip install" in args:
            return base * 2

    return base


def base_references(result: ParseResult) -> list[str]:
    """Registry image references of each stage, skipping stages built on earlier stages."""
    aliases: set[str] = set()
    references: list[str] = []
    for stage in result.stages:
        reference = stage.base_image
        if reference and reference.lower() not in aliases:
            references.append(reference)
        if stage.alias:
            aliases.add(stage.alias.lower())
    return references


def _recommendations(result: ParseResult, references: list[str]) -> list[str]:
    recommendations: list[str] = []

    for reference in references:
        name, tag = _split_reference(reference)
        if name in ("alpine", "scratch") or "alpine" in tag or "slim" in tag:
            continue
        advice = f"Consider using an alpine or slim variant of {name} to reduce base image size"
        if advice not in recommendations:
            recommendations.append(advice)

    for instruction in result.by_directive("COPY"):
        args = instruction.argument_text
        if "node_modules" in args:
            recommendations.append(
                "Avoid copying node_modules - install them in the container to ensure "
                "platform compatibility"
            )
            break
        if "." in args or "*" in args:
            recommendations.append(
                "Use .dockerignore to exclude unnecessary files (node_modules, .git, etc.) "
                "from COPY . ."
            )
            break

    runs = result.by_directive("RUN")
    if not result.multi_stage and any("npm install" in run.argument_text for run in runs):
        recommendations.append(
            "Consider using multi-stage builds to exclude build tools and dev "
            "dependencies from the final image"
        )

    has_cleanup = any(
        "rm -rf" in run.argument_text
        or "apt-get clean" in run.argument_text
        or "apk del" in run.argument_text
        for run in runs
    )
    if not has_cleanup and any("apt-get install" in run.argument_text for run in runs):
        recommendations.append(
            "Add cleanup commands after package installation "
            "(e.g. `&& rm -rf /var/lib/apt/lists/*`)"
        )

    return recommendations


def _megabytes(value: float, digits: int = 1) -> str:
    return f"{value:.{digits}f} MB"


def estimate_size(result: ParseResult) -> SizeEstimate:
    """Estimate the final image size of a parsed Dockerfile.

    Base image size is the smallest known size among the stage base
    references (tags kept, so alpine/slim variants are recognized); every
    instruction then adds a per-directive guess adjusted by its arguments.

    Args:
        result: Output of ``parse_dockerfile``.

    Returns:
        SizeEstimate with a total, a per-category breakdown and recommendations.
    """
    references = base_references(result)
    base = base_image_size(references)
    total = base

    breakdown = [
        SizeBreakdown(
            category="Base Image",
            estimated_mb=base,
            estimated_size=_megabytes(base, 0),
            layers=1,
        )
    ]

    per_directive: dict[str, list[float]] = {}
    for instruction in result.instructions:
        size = layer_size(instruction)
        per_directive.setdefault(instruction.directive, []).append(size)
        total += size

    significant_size = 0.0
    significant_count = 0
    for directive in SIGNIFICANT_DIRECTIVES:
        sizes = per_directive.get(directive)
        if not sizes:
            continue
        significant_size += sum(sizes)
        significant_count += len(sizes)
        breakdown.append(
            SizeBreakdown(
                category=f"{directive} Layers",
                estimated_mb=round(sum(sizes), 1),
                estimated_size=_megabytes(sum(sizes)),
                layers=len(sizes),
            )
        )

    other = total - base - significant_size
    if other > 0:
        breakdown.append(
            SizeBreakdown(
                category="Other Instructions",
                estimated_mb=round(other, 1),
                estimated_size=_megabytes(other),
                layers=len(result.instructions) - significant_count,
            )
        )

    return SizeEstimate(
        estimated_mb=round(total, 1),
        estimated_size=_megabytes(total, 0),
        breakdown=tuple(breakdown),
        recommendations=tuple(_recommendations(result, references)),
    )
