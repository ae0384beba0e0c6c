"""Tests for the Dockerfile parser."""

import pytest

from layerwise.dockerfile import (
    ScanState,
    detect_escape,
    image_name,
    iter_logical_lines,
    parse_dockerfile,
)


class TestParseDockerfile:
    """Behavioral tests for Dockerfile parsing."""

    def test_parse_simple_dockerfile(self):
        """Should extract instructions, stage and base image."""
        content = """FROM nginx:1.25
RUN apt-get update && apt-get install -y curl
EXPOSE 80 443
CMD ["nginx", "-g", "daemon off;"]"""

        result = parse_dockerfile(content)
        assert [i.directive for i in result.instructions] == ["FROM", "RUN", "EXPOSE", "CMD"]
        assert [i.line for i in result.instructions] == [1, 2, 3, 4]
        assert result.base_images == ("nginx",)
        assert len(result.stages) == 1
        assert result.stages[0].base_image == "nginx:1.25"
        assert result.multi_stage is False

    def test_arguments_are_tokenized(self):
        result = parse_dockerfile("FROM alpine\nEXPOSE 80 443")
        expose = result.by_directive("EXPOSE")[0]
        assert expose.arguments == ("80", "443")
        assert expose.argument_text == "80 443"

    def test_directive_case_insensitive(self):
        """Lowercase keywords are recognized and normalized."""
        result = parse_dockerfile("from alpine:3.19\nrun echo hi")
        assert [i.directive for i in result.instructions] == ["FROM", "RUN"]
        assert result.instructions[1].keyword == "run"

    def test_parse_multistage_dockerfile(self):
        """Should detect multiple stages, aliases and base images."""
        content = """FROM golang:1.21 AS builder
RUN go build -o app .

FROM alpine:3.19
COPY --from=builder /app /app
USER nobody
ENTRYPOINT ["/app"]"""

        result = parse_dockerfile(content)
        assert result.multi_stage is True
        assert [s.name for s in result.stages] == ["builder", "stage_1"]
        assert result.stages[0].alias == "builder"
        assert result.stages[1].alias is None
        assert result.stages[1].start_line == 4
        assert result.base_images == ("golang", "alpine")
        assert [i.directive for i in result.stages[1].instructions] == [
            "FROM",
            "COPY",
            "USER",
            "ENTRYPOINT",
        ]

    @pytest.mark.parametrize("count", [1, 2, 3, 5])
    def test_stage_count_matches_from_count(self, count):
        content = "\n".join(f"FROM alpine:3.{n}\nRUN echo {n}" for n in range(count))
        result = parse_dockerfile(content)
        assert len(result.stages) == count
        assert result.multi_stage is (count > 1)

    def test_alias_case_insensitive(self):
        result = parse_dockerfile("FROM node:20 as build\nFROM nginx")
        assert result.stages[0].name == "build"

    def test_platform_flag_skipped(self):
        result = parse_dockerfile("FROM --platform=linux/amd64 python:3.12-slim AS app")
        assert result.stages[0].base_image == "python:3.12-slim"
        assert result.stages[0].name == "app"
        assert result.base_images == ("python",)

    def test_base_images_deduplicated(self):
        content = "FROM node:18 AS deps\nFROM node:20 AS build\nFROM nginx:alpine"
        result = parse_dockerfile(content)
        assert result.base_images == ("node", "nginx")

    def test_from_without_argument(self):
        """A bare FROM yields an empty base image instead of failing."""
        result = parse_dockerfile("FROM\nRUN echo hi")
        assert len(result.stages) == 1
        assert result.stages[0].base_image == ""
        assert result.base_images == ()

    def test_no_from_yields_single_stage(self):
        result = parse_dockerfile("RUN echo hello\nCOPY . /app")
        assert len(result.stages) == 1
        stage = result.stages[0]
        assert stage.name == "stage_0"
        assert stage.base_image == ""
        assert len(stage.instructions) == 2
        assert result.multi_stage is False

    def test_only_comments_and_blanks(self):
        result = parse_dockerfile("# just a comment\n\n   \n# another\n")
        assert result.instructions == ()
        assert len(result.stages) == 1
        assert result.stages[0].instructions == ()
        assert result.multi_stage is False

    def test_empty_dockerfile(self):
        """Empty Dockerfile should not crash."""
        result = parse_dockerfile("")
        assert result.instructions == ()
        assert len(result.stages) == 1

    def test_unknown_directives_dropped(self):
        result = parse_dockerfile("FROM alpine\nFOO bar\nRUN echo hi\nnonsense")
        assert [i.directive for i in result.instructions] == ["FROM", "RUN"]

    def test_preamble_args_join_first_stage(self):
        content = "ARG VERSION=3.19\nFROM alpine:${VERSION}\nRUN echo hi"
        result = parse_dockerfile(content)
        assert len(result.stages) == 1
        assert [i.directive for i in result.stages[0].instructions] == ["ARG", "FROM", "RUN"]
        assert result.stages[0].start_line == 2

    def test_every_instruction_in_exactly_one_stage(self):
        content = """ARG BASE=alpine
FROM node:20 AS build
RUN npm ci
COPY . .
FROM nginx
COPY --from=build /app/dist /usr/share/nginx/html"""
        result = parse_dockerfile(content)
        staged = [i for stage in result.stages for i in stage.instructions]
        assert staged == list(result.instructions)

    def test_comments_ignored(self):
        """Comments should not be parsed as directives."""
        content = """# This is a comment
FROM alpine:3.19
# Another comment
RUN echo hello"""
        result = parse_dockerfile(content)
        assert len(result.instructions) == 2
        assert result.instructions[1].line == 4


class TestLineContinuation:
    def test_simple_continuation(self):
        result = parse_dockerfile("RUN a \\\nb")
        assert len(result.instructions) == 1
        run = result.instructions[0]
        assert run.directive == "RUN"
        assert run.arguments == ("a", "b")
        assert run.line == 1
        assert run.continuation is True

    def test_continuation_keeps_first_line_number(self):
        content = """FROM alpine:3.19
RUN apk add --no-cache \\
    curl \\
    wget
CMD ["sh"]"""
        result = parse_dockerfile(content)
        run = result.by_directive("RUN")[0]
        assert run.line == 2
        assert "curl" in run.argument_text
        assert "wget" in run.argument_text
        assert result.by_directive("CMD")[0].line == 5

    def test_comments_inside_continuation_skipped(self):
        content = """RUN apt-get update && \\
    # pin versions later
    apt-get install -y curl

RUN echo done"""
        result = parse_dockerfile(content)
        assert len(result.instructions) == 2
        assert result.instructions[0].argument_text == "apt-get update && apt-get install -y curl"
        assert result.instructions[1].line == 5

    def test_dangling_continuation_at_eof(self):
        result = parse_dockerfile("FROM alpine\nRUN echo hi \\")
        assert len(result.instructions) == 2
        assert result.instructions[1].argument_text == "echo hi"

    def test_escape_directive(self):
        content = "# escape=`\nFROM mcr.microsoft.com/windows/servercore\nRUN dir `\n  C:\\\\"
        result = parse_dockerfile(content)
        runs = result.by_directive("RUN")
        assert len(runs) == 1
        assert runs[0].line == 3
        assert runs[0].arguments == ("dir", "C:\\\\")

    def test_line_numbers_non_decreasing(self):
        content = "FROM a\nRUN x \\\n y\n\n# c\nCOPY . .\nRUN z"
        lines = [i.line for i in parse_dockerfile(content).instructions]
        assert lines == sorted(lines)


class TestScanner:
    def test_states(self):
        assert ScanState.NORMAL is not ScanState.IN_CONTINUATION

    def test_logical_lines(self):
        logical = list(iter_logical_lines(["RUN a \\", "", "  b", "CMD c"]))
        assert [(l.text, l.line, l.continuation) for l in logical] == [
            ("RUN a b", 1, True),
            ("CMD c", 4, False),
        ]

    def test_detect_escape_default(self):
        assert detect_escape(["FROM alpine"]) == "\\"

    def test_detect_escape_backtick(self):
        assert detect_escape(["# syntax=docker/dockerfile:1", "# escape=`"]) == "`"

    def test_detect_escape_ignored_after_instruction(self):
        assert detect_escape(["FROM alpine", "# escape=`"]) == "\\"


class TestImageName:
    @pytest.mark.parametrize(
        "reference,expected",
        [
            ("nginx:1.25", "nginx"),
            ("nginx", "nginx"),
            ("library/python:3.12-slim", "library/python"),
            ("localhost:5000/app:dev", "localhost:5000/app"),
            ("localhost:5000/app", "localhost:5000/app"),
            ("alpine@sha256:abc123", "alpine"),
        ],
    )
    def test_strips_tag_and_digest(self, reference, expected):
        assert image_name(reference) == expected


class TestStatelessParsing:
    def test_repeated_parses_do_not_leak(self):
        first = parse_dockerfile("FROM a AS one\nFROM b AS two")
        second = parse_dockerfile("FROM c")
        assert len(first.stages) == 2
        assert len(second.stages) == 1
        assert second.base_images == ("c",)

    def test_result_is_immutable(self):
        result = parse_dockerfile("FROM alpine")
        with pytest.raises(Exception):
            result.multi_stage = True
