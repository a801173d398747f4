"""Tests for phaseforge/context/token_usage.py."""

import json
import logging
from pathlib import Path

import pytest

from phaseforge.context.token_usage import BUCKETS, TokenUsage, bucket_of
from phaseforge.core.models import TokenUsageComponent


def _usage(prompt: int, completion: int) -> TokenUsageComponent:
    return TokenUsageComponent.from_vendor_usage({"prompt_tokens": prompt, "completion_tokens": completion})


class TestBucketOf:
    def test_phase_sources(self):
        assert bucket_of("realize_correct") == "realize"
        assert bucket_of("interface_schema") == "interface"

    def test_facade(self):
        assert bucket_of("facade") == "facade"

    def test_unknown_goes_to_analyze(self):
        assert bucket_of("mystery") == "analyze"


class TestTokenUsage:
    def test_buckets(self):
        assert BUCKETS == ("facade", "analyze", "schema", "interface", "test", "realize")

    def test_record_updates_bucket_and_aggregate(self):
        usage = TokenUsage()
        usage.record(_usage(10, 5), ["schema"])
        usage.record(_usage(3, 2), ["realize"])
        assert usage.bucket("schema").total == 15
        assert usage.bucket("realize").total == 5
        assert usage.aggregate.total == 20

    def test_aggregate_counted_once_for_many_buckets(self):
        usage = TokenUsage()
        usage.record(_usage(10, 5), ["facade", "analyze"])
        assert usage.bucket("facade").total == 15
        assert usage.bucket("analyze").total == 15
        assert usage.aggregate.total == 15

    def test_unknown_bucket(self):
        with pytest.raises(KeyError):
            TokenUsage().bucket("database")

    def test_increment(self):
        a = TokenUsage()
        a.record(_usage(1, 1), ["test"])
        b = TokenUsage()
        b.record(_usage(4, 4), ["test"])
        a.increment(b)
        assert a.bucket("test").total == 10
        assert a.aggregate.total == 10

    def test_dict_restores_aggregate(self):
        usage = TokenUsage()
        usage.record(_usage(10, 5), ["interface"])
        data = usage.to_dict()
        assert data["aggregate"]["total"] == 15
        data["aggregate"]["total"] = 999
        restored = TokenUsage.from_dict(data)
        assert restored.bucket("interface").total == 15
        assert restored.aggregate.total == 15


class TestJsonlPersistence:
    def test_writes_entries(self, tmp_path: Path):
        path = tmp_path / "usage" / "tokens.jsonl"
        usage = TokenUsage(jsonl_path=str(path))
        usage.record(_usage(10, 5), ["realize"])
        usage.record(_usage(1, 1), ["facade"])
        lines = path.read_text().strip().split("\n")
        assert len(lines) == 2
        entry = json.loads(lines[0])
        assert entry["stages"] == ["realize"]
        assert entry["usage"]["total"] == 15

    def test_write_failure_is_logged(self, tmp_path: Path, caplog):
        # A directory cannot be opened for appending.
        usage = TokenUsage(jsonl_path=str(tmp_path))
        with caplog.at_level(logging.WARNING, logger="phaseforge.context.token_usage"):
            usage.record(_usage(1, 1), ["analyze"])
        assert usage.aggregate.total == 2
        assert "Failed to write token usage" in caplog.text
