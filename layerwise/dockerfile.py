"""Dockerfile parser producing instructions grouped into build stages."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

from layerwise.models import Instruction, ParseResult, Stage

logger = logging.getLogger(__name__)

KNOWN_DIRECTIVES = frozenset(
    {
        "FROM",
        "RUN",
        "CMD",
        "LABEL",
        "MAINTAINER",
        "EXPOSE",
        "ENV",
        "ADD",
        "COPY",
        "ENTRYPOINT",
        "VOLUME",
        "USER",
        "WORKDIR",
        "ARG",
        "ONBUILD",
        "STOPSIGNAL",
        "HEALTHCHECK",
        "SHELL",
    }
)

DEFAULT_ESCAPE = "\\"
ALLOWED_ESCAPES = frozenset({"\\", "`"})

_PARSER_DIRECTIVE = re.compile(r"^#\s*([A-Za-z][A-Za-z0-9_-]*)\s*=\s*(.*?)\s*$")


class ScanState(Enum):
    NORMAL = "normal"
    IN_CONTINUATION = "in_continuation"


@dataclass(frozen=True)
class LogicalLine:
    """One instruction's worth of text after continuation merging."""
    text: str
    line: int
    continuation: bool = False


def detect_escape(lines: list[str]) -> str:
    """Return the continuation marker declared by a leading ``# escape=`` directive."""
    escape = DEFAULT_ESCAPE
    for raw_line in lines:
        match = _PARSER_DIRECTIVE.match(raw_line.strip())
        if not match:
            break
        if match.group(1).lower() == "escape" and match.group(2) in ALLOWED_ESCAPES:
            escape = match.group(2)
    return escape


def iter_logical_lines(lines: list[str], escape: str = DEFAULT_ESCAPE) -> Iterator[LogicalLine]:
    state = ScanState.NORMAL
    fragments: list[str] = []
    start = 0

    for number, raw_line in enumerate(lines, start=1):
        line = raw_line.strip()

        if not line or line.startswith("#"):
            continue

        if line.endswith(escape):
            if state is ScanState.NORMAL:
                state = ScanState.IN_CONTINUATION
                start = number
                fragments = []
            fragment = line[: -len(escape)].rstrip()
            if fragment:
                fragments.append(fragment)
            continue

        if state is ScanState.IN_CONTINUATION:
            fragments.append(line)
            yield LogicalLine(" ".join(fragments), start, continuation=True)
            state = ScanState.NORMAL
            continue

        yield LogicalLine(line, number)

    # dangling marker at end of input
    if state is ScanState.IN_CONTINUATION and fragments:
        yield LogicalLine(" ".join(fragments), start, continuation=True)


def parse_instruction(logical: LogicalLine) -> Optional[Instruction]:
    parts = logical.text.split(None, 1)
    keyword = parts[0]
    directive = keyword.upper()

    if directive not in KNOWN_DIRECTIVES:
        logger.debug("Dropping unrecognized directive %r at line %d", keyword, logical.line)
        return None

    argument_text = parts[1].strip() if len(parts) > 1 else ""
    return Instruction(
        directive=directive,
        keyword=keyword,
        raw=logical.text,
        line=logical.line,
        arguments=tuple(argument_text.split()),
        argument_text=argument_text,
        continuation=logical.continuation,
    )


def parse_from(instruction: Instruction) -> tuple[str, Optional[str]]:
    """Split a FROM instruction into (base image reference, alias)."""
    image = ""
    alias = None
    args = instruction.arguments
    for idx, arg in enumerate(args):
        if arg.upper() == "AS":
            if idx + 1 < len(args):
                alias = args[idx + 1]
            break
        if not image and not arg.startswith("--"):
            image = arg
    return image, alias


def image_name(reference: str) -> str:
    """Strip the tag and digest from an image reference, keeping any registry port."""
    name = reference.split("@", 1)[0]
    colon = name.rfind(":")
    if colon > name.rfind("/"):
        name = name[:colon]
    return name


def parse_dockerfile(content: str) -> ParseResult:
    """Parse Dockerfile text into instructions and build stages.

    Never raises on malformed input: unknown directives are dropped, a FROM
    without an argument gets an empty base image and a file without any FROM
    still produces a single stage holding every instruction.

    Args:
        content: Raw Dockerfile text.

    Returns:
        ParseResult with the global instruction sequence and its stages.
    """
    lines = content.splitlines()
    escape = detect_escape(lines)

    instructions: list[Instruction] = []
    preamble: list[Instruction] = []
    opened: list[tuple[Instruction, list[Instruction]]] = []

    for logical in iter_logical_lines(lines, escape):
        instruction = parse_instruction(logical)
        if instruction is None:
            continue
        instructions.append(instruction)

        if instruction.directive == "FROM":
            # instructions ahead of the first FROM (global ARGs) join the first stage
            members = preamble + [instruction] if not opened else [instruction]
            preamble = []
            opened.append((instruction, members))
        elif opened:
            opened[-1][1].append(instruction)
        else:
            preamble.append(instruction)

    stages: list[Stage] = []
    for index, (from_instruction, members) in enumerate(opened):
        base, alias = parse_from(from_instruction)
        stage = Stage(
            index=index,
            name=alias or f"stage_{index}",
            base_image=base,
            alias=alias,
            instructions=tuple(members),
            start_line=from_instruction.line,
        )
        logger.debug("Stage %s (%s) opens at line %d", stage.name, base or "?", stage.start_line)
        stages.append(stage)

    if not stages:
        stages.append(
            Stage(
                index=0,
                name="stage_0",
                instructions=tuple(preamble),
                start_line=preamble[0].line if preamble else 1,
            )
        )

    base_images: list[str] = []
    for stage in stages:
        if not stage.base_image:
            continue
        name = image_name(stage.base_image)
        if name and name not in base_images:
            base_images.append(name)

    return ParseResult(
        instructions=tuple(instructions),
        stages=tuple(stages),
        multi_stage=len(stages) > 1,
        base_images=tuple(base_images),
    )
