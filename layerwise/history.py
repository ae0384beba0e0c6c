"""Measured layer sizes from ``docker history`` output.

Expects the pipe-delimited format produced by::

    docker history --no-trunc --format "{{.ID}}|{{.Size}}|{{.CreatedBy}}" <image>
"""

from __future__ import annotations

import logging
import re
from types import MappingProxyType

from layerwise.models import HistoryAnalysis, HistoryLayer, LayerShare

logger = logging.getLogger(__name__)

SIZE_UNITS = MappingProxyType(
    {
        "B": 1,
        "KB": 1024,
        "MB": 1024**2,
        "GB": 1024**3,
        "TB": 1024**4,
    }
)
UNIT_ORDER = ("B", "KB", "MB", "GB", "TB")

_SIZE_PATTERN = re.compile(r"^([\d.]+)\s*([KMGT]?B)$", re.IGNORECASE)


def parse_size(size: str) -> int:
    """Convert a docker size string ("1.2GB", "500MB", "0B") to bytes."""
    if not size:
        return 0
    match = _SIZE_PATTERN.match(size.strip())
    if not match:
        return 0
    try:
        value = float(match.group(1))
    except ValueError:
        return 0
    return int(round(value * SIZE_UNITS[match.group(2).upper()]))


def format_bytes(num_bytes: float) -> str:
    if num_bytes <= 0:
        return "0B"
    value = float(num_bytes)
    exponent = 0
    while value >= 1024 and exponent < len(UNIT_ORDER) - 1:
        value /= 1024
        exponent += 1
    return f"{value:.2f}{UNIT_ORDER[exponent]}"


def parse_history(output: str) -> tuple[HistoryLayer, ...]:
    layers: list[HistoryLayer] = []
    for number, line in enumerate(output.strip().splitlines(), start=1):
        parts = line.split("|", 2)
        if len(parts) < 3:
            logger.debug("Skipping history line %d: expected id|size|createdBy", number)
            continue
        layers.append(
            HistoryLayer(
                id=parts[0].strip(),
                size=parse_size(parts[1]),
                created_by=parts[2].strip(),
            )
        )
    return tuple(layers)


def analyze_history(layers: tuple[HistoryLayer, ...], top: int = 5) -> HistoryAnalysis:
    """Summarize layer sizes and rank the largest layers.

    Args:
        layers: Layers from ``parse_history``.
        top: How many of the largest layers to report.

    Returns:
        HistoryAnalysis; an empty history yields zero totals.
    """
    if not layers:
        return HistoryAnalysis()

    total = sum(layer.size for layer in layers)
    largest = sorted(layers, key=lambda layer: layer.size, reverse=True)[:top]

    return HistoryAnalysis(
        total_layers=len(layers),
        total_size=total,
        formatted_total_size=format_bytes(total),
        largest_layers=tuple(
            LayerShare(
                id=layer.id[:12],
                size=layer.size,
                formatted_size=format_bytes(layer.size),
                percent=round(layer.size / total * 100, 2) if total else 0.0,
                created_by=layer.created_by,
            )
            for layer in largest
        ),
        average_layer_size=total / len(layers),
    )
