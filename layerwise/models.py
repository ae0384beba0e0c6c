from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Optional

from pydantic import BaseModel


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_string(cls, value: str) -> "Severity":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown severity label: {value!r}") from None

    @property
    def rank(self) -> int:
        return SEVERITY_RANKS[self]

    def meets(self, threshold: "Severity") -> bool:
        return self.rank <= threshold.rank

    # Comparisons order by importance: HIGH > MEDIUM > LOW.
    def __ge__(self, other: "Severity") -> bool:
        return self.rank <= other.rank

    def __gt__(self, other: "Severity") -> bool:
        return self.rank < other.rank

    def __le__(self, other: "Severity") -> bool:
        return self.rank >= other.rank

    def __lt__(self, other: "Severity") -> bool:
        return self.rank > other.rank


SEVERITY_RANKS = MappingProxyType(
    {
        Severity.HIGH: 0,
        Severity.MEDIUM: 1,
        Severity.LOW: 2,
    }
)


class Instruction(BaseModel):
    directive: str
    keyword: str
    raw: str
    line: int
    arguments: tuple[str, ...] = ()
    argument_text: str = ""
    continuation: bool = False

    model_config = {"frozen": True}

    def has_flag(self, name: str) -> bool:
        """True if a ``--name`` or ``--name=value`` flag is present."""
        prefix = f"--{name}"
        return any(arg == prefix or arg.startswith(prefix + "=") for arg in self.arguments)


class Stage(BaseModel):
    index: int
    name: str
    base_image: str = ""
    alias: Optional[str] = None
    instructions: tuple[Instruction, ...] = ()
    start_line: int = 1

    model_config = {"frozen": True}


class ParseResult(BaseModel):
    instructions: tuple[Instruction, ...] = ()
    stages: tuple[Stage, ...] = ()
    multi_stage: bool = False
    base_images: tuple[str, ...] = ()

    model_config = {"frozen": True}

    def by_directive(self, directive: str) -> tuple[Instruction, ...]:
        wanted = directive.upper()
        return tuple(i for i in self.instructions if i.directive == wanted)

    def directive_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for instruction in self.instructions:
            counts[instruction.directive] = counts.get(instruction.directive, 0) + 1
        return counts


class Suggestion(BaseModel):
    rule_id: str
    rule_name: str
    severity: Severity
    title: str
    message: str
    recommendation: str
    lines: tuple[int, ...] = ()
    before: Optional[str] = None
    after: Optional[str] = None
    stage: Optional[str] = None

    model_config = {"frozen": True}

    def to_summary(self) -> str:
        where = ", ".join(str(n) for n in self.lines) or "-"
        return f"[{self.severity.value.upper()}] {self.rule_id} {self.title} (lines: {where})"


class SizeBreakdown(BaseModel):
    category: str
    estimated_mb: float
    estimated_size: str
    layers: int

    model_config = {"frozen": True}


class SizeEstimate(BaseModel):
    estimated_mb: float
    estimated_size: str
    breakdown: tuple[SizeBreakdown, ...] = ()
    recommendations: tuple[str, ...] = ()

    model_config = {"frozen": True}


class Summary(BaseModel):
    instructions: int = 0
    stages: int = 0
    multi_stage: bool = False
    high: int = 0
    medium: int = 0
    low: int = 0
    directive_counts: tuple[tuple[str, int], ...] = ()

    model_config = {"frozen": True}

    @property
    def total(self) -> int:
        return self.high + self.medium + self.low

    def severity_counts(self) -> dict[str, int]:
        return {
            Severity.HIGH.value: self.high,
            Severity.MEDIUM.value: self.medium,
            Severity.LOW.value: self.low,
        }


class Report(BaseModel):
    parse_result: ParseResult
    suggestions: tuple[Suggestion, ...] = ()
    summary: Summary
    size_estimate: Optional[SizeEstimate] = None
    potential_issues: tuple[str, ...] = ()

    model_config = {"frozen": True}

    @property
    def has_high_severity(self) -> bool:
        return self.summary.high > 0


class HistoryLayer(BaseModel):
    id: str
    size: int
    created_by: str

    model_config = {"frozen": True}


class LayerShare(BaseModel):
    id: str
    size: int
    formatted_size: str
    percent: float
    created_by: str

    model_config = {"frozen": True}


class HistoryAnalysis(BaseModel):
    total_layers: int = 0
    total_size: int = 0
    formatted_total_size: str = "0B"
    largest_layers: tuple[LayerShare, ...] = ()
    average_layer_size: float = 0.0

    model_config = {"frozen": True}
