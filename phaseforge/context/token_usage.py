"""Session-level token usage accounting.

Keeps one bucket per phase plus a ``facade`` bucket for the conversation
front-end, and an ``aggregate`` that always equals the sum of the buckets.
Optionally shadow-logs every recorded delta to a JSONL file.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from phaseforge.core.models import PHASE_ORDER, TokenUsageComponent, phase_of

logger = logging.getLogger("phaseforge.context.token_usage")

FACADE = "facade"
BUCKETS: tuple[str, ...] = (FACADE,) + tuple(p.value for p in PHASE_ORDER)


def bucket_of(source: str) -> str:
    """Token bucket a stage id is charged to; unknown stages go to analyze."""
    if source.startswith(FACADE):
        return FACADE
    phase = phase_of(source)
    return phase.value if phase is not None else PHASE_ORDER[0].value


class TokenUsage:
    """Per-phase token usage with a running aggregate.

    Usage:
        usage = TokenUsage(jsonl_path="artifacts/phaseforge/tokens.jsonl")
        usage.record(component, ["realize"])
        usage.aggregate.total
    """

    def __init__(self, jsonl_path: Optional[str] = None):
        self.jsonl_path = jsonl_path
        self.aggregate = TokenUsageComponent()
        self._buckets: dict[str, TokenUsageComponent] = {
            name: TokenUsageComponent() for name in BUCKETS
        }

    def bucket(self, name: str) -> TokenUsageComponent:
        if name not in self._buckets:
            raise KeyError(f"Unknown token usage bucket: {name}")
        return self._buckets[name]

    def record(self, usage: TokenUsageComponent, stages: Iterable[str]) -> None:
        """Credit ``usage`` to each named bucket and to the aggregate once."""
        names = list(stages)
        for name in names:
            self.bucket(name).increment(usage)
        self.aggregate.increment(usage)
        self._persist_to_jsonl(usage, names)
        logger.debug(
            "Token usage recorded: stages=%s total=%d in=%d out=%d",
            ",".join(names), usage.total, usage.input.total, usage.output.total,
        )

    def increment(self, other: TokenUsage) -> None:
        for name in BUCKETS:
            self._buckets[name].increment(other._buckets[name])
        self.aggregate.increment(other.aggregate)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            name: self._buckets[name].model_dump() for name in BUCKETS
        }
        data["aggregate"] = self.aggregate.model_dump()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], jsonl_path: Optional[str] = None) -> TokenUsage:
        usage = cls(jsonl_path=jsonl_path)
        for name in BUCKETS:
            if name in data:
                usage._buckets[name] = TokenUsageComponent.model_validate(data[name])
        usage.aggregate = TokenUsageComponent()
        for name in BUCKETS:
            usage.aggregate.increment(usage._buckets[name])
        return usage

    def _persist_to_jsonl(self, usage: TokenUsageComponent, stages: list[str]) -> None:
        """Append the recorded delta to the JSONL shadow log."""
        if not self.jsonl_path:
            return
        try:
            path = Path(self.jsonl_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            entry = {
                "stages": stages,
                "usage": usage.model_dump(),
                "created_at": datetime.now(UTC).isoformat(),
            }
            with open(path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.warning("Failed to write token usage to JSONL: %s", e)
