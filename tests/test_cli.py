"""Tests for phaseforge/cli.py using click's CliRunner."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from phaseforge.cli import cli
from phaseforge.context.aggregate import accumulate_metric, accumulate_usage, create_collection
from phaseforge.context.session import Session
from phaseforge.core.models import Phase, PhaseCompleteEvent, TokenUsageComponent

from tests.conftest import ANALYSIS_ARTIFACT, SCHEMA_ARTIFACT, complete, start


@pytest.fixture
def history_file(tmp_path: Path) -> Path:
    """Analyze re-run at step 2 after Schema completed at step 1."""
    aggregates = create_collection()
    accumulate_metric(aggregates, "schema_write", "attempt", 3)
    accumulate_metric(aggregates, "schema_write", "success", 1)
    accumulate_usage(aggregates, "schema_write", TokenUsageComponent.from_vendor_usage(
        {"prompt_tokens": 1200, "completion_tokens": 300, "prompt_tokens_details": {"cached_tokens": 800}},
    ))
    session = Session(history=[
        start(Phase.ANALYZE, 1, "Build a todo API"),
        complete(Phase.ANALYZE, 1, ANALYSIS_ARTIFACT),
        start(Phase.SCHEMA, 1),
        PhaseCompleteEvent(phase=Phase.SCHEMA, step=1, artifact=SCHEMA_ARTIFACT, aggregates=aggregates),
        start(Phase.ANALYZE, 2, "Add due dates"),
        complete(Phase.ANALYZE, 2, ANALYSIS_ARTIFACT),
    ])
    path = tmp_path / "history.json"
    session.save(path)
    return path


class TestStatus:
    def test_table(self, history_file: Path):
        result = CliRunner().invoke(cli, ["status", "--history", str(history_file)])
        assert result.exit_code == 0, result.output
        assert "Events: 6   Current phase: analyze" in result.output
        assert "schema" in result.output
        assert "Next: schema" in result.output

    def test_json(self, history_file: Path):
        result = CliRunner().invoke(cli, ["status", "--history", str(history_file), "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["current_phase"] == "analyze"
        assert data["phases"]["analyze"]["step"] == 2
        assert data["phases"]["schema"]["stale"] is True
        assert data["phases"]["interface"]["completed"] is False

    def test_missing_file(self, tmp_path: Path):
        result = CliRunner().invoke(cli, ["status", "--history", str(tmp_path / "nope.json")])
        assert result.exit_code != 0

    def test_not_a_list(self, tmp_path: Path):
        path = tmp_path / "history.json"
        path.write_text("{}")
        result = CliRunner().invoke(cli, ["status", "--history", str(path)])
        assert result.exit_code == 1
        assert "Cannot read history" in result.output

    def test_invalid_json(self, tmp_path: Path):
        path = tmp_path / "history.json"
        path.write_text("[{")
        result = CliRunner().invoke(cli, ["status", "--history", str(path)])
        assert result.exit_code == 1
        assert "Cannot read history" in result.output


class TestUsage:
    def test_table(self, history_file: Path):
        result = CliRunner().invoke(cli, ["usage", "--history", str(history_file)])
        assert result.exit_code == 0, result.output
        lines = result.output.strip().split("\n")
        assert lines[0].startswith("Stage")
        assert lines[1].startswith("schema_write")
        assert "1,500" in lines[1]
        assert lines[-1].startswith("total")

    def test_json(self, history_file: Path):
        result = CliRunner().invoke(cli, ["--verbose", "usage", "--history", str(history_file), "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["total"]["token_usage"]["total"] == 1500
        assert data["total"]["token_usage"]["input"]["cached"] == 800
        assert data["stages"]["schema_write"]["metric"]["attempt"] == 3
