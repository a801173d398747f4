"""JSONL telemetry sink for session events."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

from phaseforge.context.session import ALL_EVENTS, Session


@dataclass
class JsonlTelemetrySink:
    """Writes every session event to a JSONL file and keeps per-type counters."""

    jsonl_path: Path
    metrics_path: Optional[Path] = None
    counters: dict[str, int] = field(default_factory=dict)

    def attach(self, session: Session) -> None:
        session.on(ALL_EVENTS, self)

    def __call__(self, event: Any) -> None:
        event_type = event.type
        if event_type == "telemetry":
            event_type = f"telemetry.{event.kind.value}"
        self.counters[event_type] = self.counters.get(event_type, 0) + 1
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event_type": event_type,
            "payload": event.model_dump(mode="json"),
        }
        self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
        with self.jsonl_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=True) + "\n")

    def flush_metrics(self) -> None:
        if self.metrics_path is None:
            return
        self.metrics_path.parent.mkdir(parents=True, exist_ok=True)
        snapshot = {
            "timestamp": datetime.now(UTC).isoformat(),
            "counters": dict(sorted(self.counters.items())),
        }
        self.metrics_path.write_text(
            json.dumps(snapshot, indent=2, ensure_ascii=True),
            encoding="utf-8",
        )
