"""Tests for the layerwise command line."""

import json

import pytest
from typer.testing import CliRunner

from layerwise import __version__
from layerwise.cli import app

CLEAN = """FROM python:3.12-slim
WORKDIR /app
COPY requirements.txt .
RUN pip install --no-cache-dir -r requirements.txt
CMD ["python", "app.py"]
"""

CACHE_BUSTING = """FROM node:20
RUN apt-get update
RUN apt-get install -y git
COPY . .
COPY package.json .
RUN npm install
"""

HISTORY = """sha256:1111111111111111|50MB|/bin/sh -c npm install
sha256:2222222222222222|5MB|/bin/sh -c #(nop) COPY dir:abc in /app
sha256:3333333333333333|0B|/bin/sh -c #(nop)  CMD ["node"]
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def write_dockerfile(tmp_path):
    def _write(content):
        path = tmp_path / "Dockerfile"
        path.write_text(content)
        return str(path)

    return _write


class TestAnalyzeCommand:
    def test_clean_dockerfile_exits_zero(self, runner, write_dockerfile):
        result = runner.invoke(app, ["analyze", write_dockerfile(CLEAN)])
        assert result.exit_code == 0
        assert "No issues found" in result.stdout

    def test_high_severity_exits_two(self, runner, write_dockerfile):
        result = runner.invoke(app, ["analyze", write_dockerfile(CACHE_BUSTING)])
        assert result.exit_code == 2

    def test_missing_file_exits_one(self, runner, tmp_path):
        result = runner.invoke(app, ["analyze", str(tmp_path / "missing")])
        assert result.exit_code == 1

    def test_invalid_severity_exits_one(self, runner, write_dockerfile):
        result = runner.invoke(app, ["analyze", write_dockerfile(CLEAN), "--severity", "urgent"])
        assert result.exit_code == 1

    def test_invalid_format_exits_one(self, runner, write_dockerfile):
        result = runner.invoke(app, ["analyze", write_dockerfile(CLEAN), "--format", "xml"])
        assert result.exit_code == 1

    def test_json_output(self, runner, write_dockerfile):
        result = runner.invoke(app, ["analyze", write_dockerfile(CACHE_BUSTING), "-f", "json"])
        assert result.exit_code == 2
        data = json.loads(result.stdout)
        assert data["summary"]["multi_stage"] is False
        assert data["summary"]["high"] >= 1
        rule_ids = {s["rule_id"] for s in data["suggestions"]}
        assert {"LW002", "LW003"} <= rule_ids

    def test_json_severity_filter_keeps_summary(self, runner, write_dockerfile):
        path = write_dockerfile(CACHE_BUSTING)
        full = json.loads(runner.invoke(app, ["analyze", path, "-f", "json"]).stdout)
        high = json.loads(runner.invoke(app, ["analyze", path, "-f", "json", "-s", "high"]).stdout)
        assert all(s["severity"] == "high" for s in high["suggestions"])
        assert len(high["suggestions"]) == high["summary"]["high"]
        assert high["summary"] == full["summary"]

    def test_json_with_estimate(self, runner, write_dockerfile):
        result = runner.invoke(app, ["analyze", write_dockerfile(CLEAN), "-f", "json", "--estimate"])
        data = json.loads(result.stdout)
        assert data["size_estimate"]["estimated_size"].endswith("MB")

    def test_json_is_deterministic(self, runner, write_dockerfile):
        path = write_dockerfile(CACHE_BUSTING)
        first = runner.invoke(app, ["analyze", path, "-f", "json", "-e"]).stdout
        second = runner.invoke(app, ["analyze", path, "-f", "json", "-e"]).stdout
        assert first == second

    def test_text_options_render(self, runner, write_dockerfile):
        path = write_dockerfile(CACHE_BUSTING)
        result = runner.invoke(app, ["analyze", path, "--diff", "--by-stage", "--estimate"])
        assert result.exit_code == 2
        assert "LW002" in result.stdout
        assert "Potential Issues" in result.stdout

    def test_json_includes_potential_issues(self, runner, write_dockerfile):
        result = runner.invoke(app, ["analyze", write_dockerfile(CACHE_BUSTING), "-f", "json"])
        data = json.loads(result.stdout)
        assert data["potential_issues"] == [
            "COPY at line 5 follows COPY at line 4; a cache-preparing RUN before it "
            "may keep earlier layers reusable."
        ]
        assert ["RUN", 3] in data["summary"]["directive_counts"]


class TestHistoryCommand:
    def test_json_output(self, runner, tmp_path):
        path = tmp_path / "history.txt"
        path.write_text(HISTORY)
        result = runner.invoke(app, ["history", str(path), "-f", "json", "--top", "2"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["total_layers"] == 3
        assert len(data["largest_layers"]) == 2
        assert data["largest_layers"][0]["id"] == "sha256:11111"

    def test_reads_stdin(self, runner):
        result = runner.invoke(app, ["history", "-", "-f", "json"], input=HISTORY)
        assert result.exit_code == 0
        assert json.loads(result.stdout)["total_layers"] == 3

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(app, ["history", str(tmp_path / "missing")])
        assert result.exit_code == 1


class TestMisc:
    def test_rules_command(self, runner):
        result = runner.invoke(app, ["rules"])
        assert result.exit_code == 0
        assert "LW001" in result.stdout
        assert "LW011" in result.stdout

    def test_version(self, runner):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout
