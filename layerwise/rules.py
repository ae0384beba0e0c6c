"""Cache and image-size rules evaluated over a parsed Dockerfile."""

from __future__ import annotations

import fnmatch
import json
import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Iterator, Optional

from layerwise.models import Instruction, ParseResult, Severity, Stage, Suggestion

logger = logging.getLogger(__name__)

COPY_DIRECTIVES = frozenset({"COPY", "ADD"})
CONTEXT_ROOTS = frozenset({".", "./"})

INSTALL_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("apt-get", re.compile(r"\bapt(?:-get)?\s+(?:-\S+\s+)*install\b", re.IGNORECASE)),
    ("yum", re.compile(r"\byum\s+(?:-\S+\s+)*install\b", re.IGNORECASE)),
    ("apk", re.compile(r"\bapk\s+(?:-\S+\s+)*add\b", re.IGNORECASE)),
    ("npm", re.compile(r"\bnpm\s+(?:install|ci|i)\b", re.IGNORECASE)),
    ("pip", re.compile(r"\bpip3?\s+(?:-\S+\s+)*install\b", re.IGNORECASE)),
)

# (manager, update sub-command, matching install sub-command)
UPDATE_PAIRS: tuple[tuple[str, re.Pattern[str], re.Pattern[str]], ...] = (
    (
        "apt-get",
        re.compile(r"\bapt(?:-get)?\s+(?:-\S+\s+)*update\b", re.IGNORECASE),
        INSTALL_PATTERNS[0][1],
    ),
    (
        "yum",
        re.compile(r"\byum\s+(?:-\S+\s+)*(?:makecache|check-update)\b", re.IGNORECASE),
        INSTALL_PATTERNS[1][1],
    ),
    (
        "apk",
        re.compile(r"\bapk\s+(?:-\S+\s+)*update\b", re.IGNORECASE),
        INSTALL_PATTERNS[2][1],
    ),
)

CLEANUP_PATTERN = re.compile(
    r"rm\s+-(?:rf|fr)\b|apt-get\s+clean|yum\s+clean\s+all|\bcache\s+clean\b|--no-cache-dir",
    re.IGNORECASE,
)

CLEANUP_HINTS = MappingProxyType(
    {
        "apt-get": "rm -rf /var/lib/apt/lists/*",
        "yum": "yum clean all",
        "apk": "rm -rf /var/cache/apk/*",
        "npm": "npm cache clean --force",
        "pip": "rm -rf /root/.cache/pip",
    }
)

BUILD_TOOLS_PATTERN = re.compile(
    r"(?<![\w.-])(build-essential|gcc|g\+\+|cmake|make)(?!\w)", re.IGNORECASE
)

NODE_INSTALL_PATTERN = re.compile(r"\b(npm)\s+(?:install|ci|i)\b|\b(yarn)\s+install\b", re.IGNORECASE)
CACHE_MOUNT_PATTERN = re.compile(r"--mount=\S*type=cache", re.IGNORECASE)
CACHE_TARGETS = MappingProxyType(
    {
        "npm": "/root/.npm",
        "yarn": "/usr/local/share/.cache/yarn",
    }
)

URL_PATTERN = re.compile(r"\b(?:https?|ftp)://|\bgit@", re.IGNORECASE)
ARCHIVE_EXTENSIONS = (
    ".tar",
    ".tar.gz",
    ".tgz",
    ".tar.bz2",
    ".tbz2",
    ".tar.xz",
    ".txz",
    ".tar.zst",
)

MANIFEST_FILES = frozenset(
    {
        "package.json",
        "package-lock.json",
        "npm-shrinkwrap.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "requirements.txt",
        "Pipfile",
        "Pipfile.lock",
        "pyproject.toml",
        "poetry.lock",
        "setup.py",
        "go.mod",
        "go.sum",
        "Gemfile",
        "Gemfile.lock",
        "composer.json",
        "composer.lock",
        "pom.xml",
        "build.gradle",
        "Cargo.toml",
        "Cargo.lock",
    }
)

_LEADING_FLAGS = re.compile(r"^(?:--\S+\s*)+")
_VARIABLE_REFERENCE = re.compile(r"\$(?:\{\w+|\w)")

LONG_RUN_STEPS = 3
CHAIN_OPERATORS = ("&&",)
COMMAND_SEPARATORS = ("&&", "||", ";")


@dataclass(frozen=True)
class Finding:
    """What a detector reports; the owning Rule supplies severity and wording."""
    lines: tuple[int, ...]
    message: str
    stage: Optional[str] = None
    before: Optional[str] = None
    after: Optional[str] = None


Detector = Callable[[ParseResult], list[Finding]]


@dataclass(frozen=True)
class Rule:
    rule_id: str
    name: str
    severity: Severity
    title: str
    recommendation: str
    detect: Detector

    def evaluate(self, result: ParseResult) -> list[Suggestion]:
        return [
            Suggestion(
                rule_id=self.rule_id,
                rule_name=self.name,
                severity=self.severity,
                title=self.title,
                message=finding.message,
                recommendation=self.recommendation,
                lines=finding.lines,
                before=finding.before,
                after=finding.after,
                stage=finding.stage,
            )
            for finding in self.detect(result)
        ]


def _walk(result: ParseResult) -> Iterator[tuple[Stage, Instruction]]:
    for stage in result.stages:
        for instruction in stage.instructions:
            yield stage, instruction


def _install_managers(command: str) -> list[str]:
    return [name for name, pattern in INSTALL_PATTERNS if pattern.search(command)]


def _lines_label(lines: tuple[int, ...]) -> str:
    return ", ".join(str(n) for n in lines)


def split_chain(command: str, operators: tuple[str, ...] = CHAIN_OPERATORS) -> list[str]:
    """Split a shell command on the given operators, ignoring quoted text.

    Only single and double quotes are tracked (with backslash escapes inside
    double quotes). Operators inside ``$(...)`` subshells or heredocs still
    split the command.
    """
    steps: list[str] = []
    quote: Optional[str] = None
    start = 0
    i = 0
    while i < len(command):
        ch = command[i]
        if quote:
            if ch == "\\" and quote == '"':
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        else:
            operator = next((op for op in operators if command.startswith(op, i)), None)
            if operator:
                steps.append(command[start:i])
                i += len(operator)
                start = i
                continue
        i += 1
    steps.append(command[start:])
    return [step.strip() for step in steps if step.strip()]


def installed_build_tools(command: str) -> list[str]:
    """Build tools named as packages of an install command in ``command``."""
    tools: list[str] = []
    for segment in split_chain(command, COMMAND_SEPARATORS):
        for _, pattern in INSTALL_PATTERNS:
            match = pattern.search(segment)
            if not match:
                continue
            for tool in BUILD_TOOLS_PATTERN.finditer(segment[match.end():]):
                name = tool.group(1).lower()
                if name not in tools:
                    tools.append(name)
    return tools


def copy_paths(instruction: Instruction) -> tuple[tuple[str, ...], str]:
    """Return the (sources, destination) of a COPY/ADD with flags removed."""
    text = _LEADING_FLAGS.sub("", instruction.argument_text).strip()
    paths: list[str] = text.split()
    if text.startswith("["):
        try:
            decoded = json.loads(text)
        except ValueError:
            decoded = None
        if isinstance(decoded, list) and all(isinstance(p, str) for p in decoded):
            paths = decoded
    if len(paths) < 2:
        return tuple(paths), ""
    return tuple(paths[:-1]), paths[-1]


def copies_context(instruction: Instruction) -> bool:
    if instruction.directive not in COPY_DIRECTIVES or instruction.has_flag("from"):
        return False
    sources, _ = copy_paths(instruction)
    return any(source in CONTEXT_ROOTS for source in sources)


def copies_manifest(instruction: Instruction) -> bool:
    if instruction.directive not in COPY_DIRECTIVES or instruction.has_flag("from"):
        return False
    sources, _ = copy_paths(instruction)
    for source in sources:
        base = source.rstrip("/").rsplit("/", 1)[-1]
        if base in MANIFEST_FILES:
            return True
        # a bare "*" would match every manifest name
        if not base.strip("*?"):
            continue
        if any(fnmatch.fnmatchcase(manifest, base) for manifest in MANIFEST_FILES):
            return True
    return False


def _combine_installs(result: ParseResult) -> list[Finding]:
    findings = []
    for stage in result.stages:
        groups: dict[str, list[Instruction]] = {}
        for instruction in stage.instructions:
            if instruction.directive != "RUN":
                continue
            for manager in _install_managers(instruction.argument_text):
                groups.setdefault(manager, []).append(instruction)

        for manager, runs in groups.items():
            if len(runs) < 2:
                continue
            lines = tuple(run.line for run in runs)
            findings.append(
                Finding(
                    lines=lines,
                    message=(
                        f"{len(runs)} RUN instructions in stage {stage.name} install "
                        f"{manager} packages separately (lines {_lines_label(lines)})"
                    ),
                    stage=stage.name,
                    before="\n".join(run.raw for run in runs),
                    after="RUN " + " \\\n    && ".join(run.argument_text for run in runs),
                )
            )
    return findings


def _update_install_split(result: ParseResult) -> list[Finding]:
    findings = []
    for stage in result.stages:
        members = stage.instructions
        for idx, instruction in enumerate(members):
            if instruction.directive != "RUN":
                continue
            command = instruction.argument_text
            following = members[idx + 1] if idx + 1 < len(members) else None

            for manager, update, install in UPDATE_PAIRS:
                if not update.search(command) or install.search(command):
                    continue

                if (
                    following is not None
                    and following.directive == "RUN"
                    and install.search(following.argument_text)
                ):
                    findings.append(
                        Finding(
                            lines=(instruction.line, following.line),
                            message=(
                                f"{manager} update (line {instruction.line}) and install "
                                f"(line {following.line}) run in separate layers; the cached "
                                "package index goes stale when only the install line changes"
                            ),
                            stage=stage.name,
                            before=f"{instruction.raw}\n{following.raw}",
                            after=f"RUN {command} && {following.argument_text}",
                        )
                    )
                else:
                    findings.append(
                        Finding(
                            lines=(instruction.line,),
                            message=(
                                f"{manager} update at line {instruction.line} has no matching "
                                "install in the same layer"
                            ),
                            stage=stage.name,
                            before=instruction.raw,
                        )
                    )
    return findings


def _copy_order(result: ParseResult) -> list[Finding]:
    findings = []
    for stage in result.stages:
        tree: Optional[Instruction] = None
        for instruction in stage.instructions:
            if instruction.directive not in COPY_DIRECTIVES:
                continue
            if tree is None:
                if copies_context(instruction):
                    tree = instruction
                continue
            if copies_manifest(instruction):
                findings.append(
                    Finding(
                        lines=(tree.line, instruction.line),
                        message=(
                            f"Source tree copied at line {tree.line} before dependency "
                            f"manifest at line {instruction.line}; every source change "
                            "re-runs dependency installation"
                        ),
                        stage=stage.name,
                        before=f"{tree.raw}\n{instruction.raw}",
                        after=f"{instruction.raw}\nRUN <install dependencies>\n{tree.raw}",
                    )
                )
                break
    return findings


def _missing_cleanup(result: ParseResult) -> list[Finding]:
    findings = []
    for stage, instruction in _walk(result):
        if instruction.directive != "RUN":
            continue
        command = instruction.argument_text
        managers = _install_managers(command)
        if not managers or CLEANUP_PATTERN.search(command):
            continue
        findings.append(
            Finding(
                lines=(instruction.line,),
                message=(
                    f"{', '.join(managers)} install at line {instruction.line} leaves "
                    "package caches in the layer"
                ),
                stage=stage.name,
                before=instruction.raw,
                after=f"RUN {command} \\\n    && {CLEANUP_HINTS[managers[0]]}",
            )
        )
    return findings


def _prefer_copy(result: ParseResult) -> list[Finding]:
    findings = []
    for stage, instruction in _walk(result):
        if instruction.directive != "ADD":
            continue
        if URL_PATTERN.search(instruction.argument_text):
            continue
        tokens = [arg.strip('"[],').lower() for arg in instruction.arguments]
        if any(token.endswith(ARCHIVE_EXTENSIONS) for token in tokens):
            continue
        findings.append(
            Finding(
                lines=(instruction.line,),
                message=f"ADD at line {instruction.line} only copies local files",
                stage=stage.name,
                before=instruction.raw,
                after=f"COPY {instruction.argument_text}",
            )
        )
    return findings


def _consider_multi_stage(result: ParseResult) -> list[Finding]:
    if result.multi_stage:
        return []

    tools: list[str] = []
    hits: list[Instruction] = []
    for _, instruction in _walk(result):
        if instruction.directive != "RUN":
            continue
        found = installed_build_tools(instruction.argument_text)
        if not found:
            continue
        hits.append(instruction)
        tools.extend(tool for tool in found if tool not in tools)

    if not hits:
        return []

    lines = tuple(hit.line for hit in hits)
    return [
        Finding(
            lines=lines,
            message=(
                f"Build tooling ({', '.join(tools)}) ships in the final image of a "
                "single-stage build"
            ),
            stage=result.stages[0].name,
        )
    ]


def _dockerignore(result: ParseResult) -> list[Finding]:
    hits = [instruction for _, instruction in _walk(result) if copies_context(instruction)]
    if not hits:
        return []
    lines = tuple(hit.line for hit in hits)
    return [
        Finding(
            lines=lines,
            message=(
                f"The whole build context is copied (lines {_lines_label(lines)}); "
                "without a .dockerignore every file change invalidates the cache"
            ),
            before=hits[0].raw,
            after="# .dockerignore\n.git\nnode_modules\n*.log\n.env",
        )
    ]


def _workdir_position(result: ParseResult) -> list[Finding]:
    findings = []
    for stage in result.stages:
        seen: Optional[Instruction] = None
        for instruction in stage.instructions:
            if instruction.directive in ("COPY", "RUN"):
                if seen is None:
                    seen = instruction
            elif instruction.directive == "WORKDIR" and seen is not None:
                findings.append(
                    Finding(
                        lines=(instruction.line,),
                        message=(
                            f"WORKDIR at line {instruction.line} follows {seen.directive} "
                            f"at line {seen.line} in stage {stage.name}"
                        ),
                        stage=stage.name,
                        before=instruction.raw,
                    )
                )
    return findings


def _split_long_run(result: ParseResult) -> list[Finding]:
    findings = []
    for stage, instruction in _walk(result):
        if instruction.directive != "RUN":
            continue
        steps = split_chain(instruction.argument_text)
        if len(steps) <= LONG_RUN_STEPS:
            continue
        findings.append(
            Finding(
                lines=(instruction.line,),
                message=f"RUN at line {instruction.line} chains {len(steps)} steps with &&",
                stage=stage.name,
                before=instruction.raw,
                after="\n".join(f"RUN {step}" for step in steps),
            )
        )
    return findings


def _merged_copy(run: list[Instruction]) -> Optional[str]:
    sources: list[str] = []
    destinations = set()
    for instruction in run:
        if any(arg.startswith("--") for arg in instruction.arguments):
            return None
        srcs, dest = copy_paths(instruction)
        if not dest:
            return None
        sources.extend(srcs)
        destinations.add(dest)
    if len(destinations) != 1:
        return None
    return f"COPY {' '.join(sources)} {destinations.pop()}"


def _combine_copies(result: ParseResult) -> list[Finding]:
    findings = []

    def flush(run: list[Instruction], stage: Stage) -> None:
        if len(run) < 2:
            return
        lines = tuple(instruction.line for instruction in run)
        findings.append(
            Finding(
                lines=lines,
                message=f"{len(run)} consecutive COPY instructions (lines {_lines_label(lines)})",
                stage=stage.name,
                before="\n".join(instruction.raw for instruction in run),
                after=_merged_copy(run),
            )
        )

    for stage in result.stages:
        run: list[Instruction] = []
        for instruction in stage.instructions:
            if instruction.directive == "COPY":
                run.append(instruction)
                continue
            flush(run, stage)
            run = []
        flush(run, stage)
    return findings


def _cache_mount(result: ParseResult) -> list[Finding]:
    findings = []
    for stage, instruction in _walk(result):
        if instruction.directive != "RUN":
            continue
        command = instruction.argument_text
        match = NODE_INSTALL_PATTERN.search(command)
        if not match or CACHE_MOUNT_PATTERN.search(command):
            continue
        tool = (match.group(1) or match.group(2)).lower()
        findings.append(
            Finding(
                lines=(instruction.line,),
                message=f"{tool} install at line {instruction.line} runs without a cache mount",
                stage=stage.name,
                before=instruction.raw,
                after=f"RUN --mount=type=cache,target={CACHE_TARGETS[tool]} {command}",
            )
        )
    return findings


def _wildcard_copies(result: ParseResult) -> list[Finding]:
    findings = []
    for stage, instruction in _walk(result):
        if instruction.directive != "COPY" or instruction.has_flag("from"):
            continue
        # manifest globs such as package*.json are the recommended copy-order fix
        if copies_manifest(instruction):
            continue
        sources, _ = copy_paths(instruction)
        patterns = [source for source in sources if "*" in source or "?" in source]
        if not patterns:
            continue
        findings.append(
            Finding(
                lines=(instruction.line,),
                message=(
                    f"COPY at line {instruction.line} uses wildcard source "
                    f"{', '.join(patterns)}; matching files are hard to predict"
                ),
                stage=stage.name,
                before=instruction.raw,
            )
        )
    return findings


def _env_order(result: ParseResult) -> list[Finding]:
    findings = []
    for stage in result.stages:
        members = stage.instructions
        for idx, instruction in enumerate(members):
            if instruction.directive != "ENV":
                continue
            later = next(
                (
                    other
                    for other in members[idx + 1:]
                    if other.directive == "RUN"
                    and _VARIABLE_REFERENCE.search(other.argument_text)
                ),
                None,
            )
            if later is None:
                continue
            findings.append(
                Finding(
                    lines=(instruction.line, later.line),
                    message=(
                        f"ENV at line {instruction.line} precedes RUN at line {later.line}, "
                        "which expands environment variables; changing this value "
                        "rebuilds every layer after it"
                    ),
                    stage=stage.name,
                    before=f"{instruction.raw}\n{later.raw}",
                    after=f"{later.raw}\n{instruction.raw}",
                )
            )
    return findings


RULES: tuple[Rule, ...] = (
    Rule(
        rule_id="LW001",
        name="combine-installs",
        severity=Severity.HIGH,
        title="Combine package installations",
        recommendation=(
            "Install all packages of one package manager in a single RUN instruction "
            "to cut layer count and keep the cache coherent."
        ),
        detect=_combine_installs,
    ),
    Rule(
        rule_id="LW002",
        name="update-install-split",
        severity=Severity.HIGH,
        title="Update separate from install",
        recommendation=(
            "Run the package index update and the install in the same RUN, "
            "e.g. RUN apt-get update && apt-get install -y <pkg>."
        ),
        detect=_update_install_split,
    ),
    Rule(
        rule_id="LW003",
        name="copy-order",
        severity=Severity.HIGH,
        title="Order COPY by change frequency",
        recommendation=(
            "Copy dependency manifests and install dependencies before copying the "
            "source tree so dependency layers stay cached."
        ),
        detect=_copy_order,
    ),
    Rule(
        rule_id="LW004",
        name="missing-cleanup",
        severity=Severity.MEDIUM,
        title="Clean up package caches",
        recommendation=(
            "Remove package manager caches in the same RUN that installs packages "
            "(rm -rf /var/lib/apt/lists/*, yum clean all, --no-cache-dir)."
        ),
        detect=_missing_cleanup,
    ),
    Rule(
        rule_id="LW005",
        name="prefer-copy",
        severity=Severity.LOW,
        title="Prefer COPY over ADD",
        recommendation=(
            "Use COPY for local files; keep ADD for remote URLs and archives that "
            "should be extracted."
        ),
        detect=_prefer_copy,
    ),
    Rule(
        rule_id="LW006",
        name="consider-multi-stage",
        severity=Severity.MEDIUM,
        title="Consider a multi-stage build",
        recommendation=(
            "Build in a separate stage and copy only the artifacts into a slim "
            "runtime stage."
        ),
        detect=_consider_multi_stage,
    ),
    Rule(
        rule_id="LW007",
        name="dockerignore",
        severity=Severity.MEDIUM,
        title="Use a .dockerignore file",
        recommendation=(
            "Add a .dockerignore excluding .git, node_modules, logs and local "
            "configuration so they neither bloat the image nor bust the cache."
        ),
        detect=_dockerignore,
    ),
    Rule(
        rule_id="LW008",
        name="workdir-position",
        severity=Severity.LOW,
        title="Set WORKDIR early",
        recommendation="Declare WORKDIR before the first COPY or RUN of the stage.",
        detect=_workdir_position,
    ),
    Rule(
        rule_id="LW009",
        name="split-long-run",
        severity=Severity.LOW,
        title="Split long RUN chains",
        recommendation=(
            "Split independent steps of long && chains into separate RUN "
            "instructions for finer cache granularity."
        ),
        detect=_split_long_run,
    ),
    Rule(
        rule_id="LW010",
        name="combine-copies",
        severity=Severity.LOW,
        title="Combine consecutive COPY instructions",
        recommendation="Merge consecutive COPY instructions sharing a destination into one.",
        detect=_combine_copies,
    ),
    Rule(
        rule_id="LW011",
        name="cache-mount",
        severity=Severity.MEDIUM,
        title="Use a BuildKit cache mount",
        recommendation=(
            "Add --mount=type=cache,target=/root/.npm (or the yarn cache directory) "
            "to persist the package cache between builds."
        ),
        detect=_cache_mount,
    ),
    Rule(
        rule_id="LW012",
        name="wildcard-copies",
        severity=Severity.LOW,
        title="Avoid wildcard COPY patterns",
        recommendation=(
            "Name the files to copy; wildcards can pull in unintended files and "
            "invalidate the cache unexpectedly."
        ),
        detect=_wildcard_copies,
    ),
    Rule(
        rule_id="LW013",
        name="env-order",
        severity=Severity.MEDIUM,
        title="Order ENV by stability",
        recommendation=(
            "Declare ENV values after the RUN steps that do not depend on them, "
            "or use ARG for build-time values."
        ),
        detect=_env_order,
    ),
)


def get_rule(key: str) -> Rule:
    """Look up a rule by id (``LW003``) or name (``copy-order``)."""
    for rule in RULES:
        if key in (rule.rule_id, rule.name):
            return rule
    raise KeyError(key)


def rank_suggestions(suggestions: list[Suggestion]) -> list[Suggestion]:
    """Stable sort by severity rank; equal severities keep discovery order."""
    return sorted(suggestions, key=lambda s: s.severity.rank)


def check_dockerfile(result: ParseResult, rules: tuple[Rule, ...] = RULES) -> list[Suggestion]:
    suggestions: list[Suggestion] = []
    for rule in rules:
        found = rule.evaluate(result)
        logger.debug("%s %s: %d finding(s)", rule.rule_id, rule.name, len(found))
        for suggestion in found:
            logger.debug("  %s", suggestion.to_summary())
        suggestions.extend(found)
    return rank_suggestions(suggestions)
