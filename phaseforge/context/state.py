"""Pipeline state derived from the session event log.

The state is never stored: it is recomputed by a reverse scan over the
ordered history, picking the latest and second-latest completion record of
every phase. A downstream record is only valid while its ``step`` equals the
step of the latest Analyze record.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from phaseforge.core.models import (
    PHASE_ORDER,
    Phase,
    PhaseCompleteEvent,
    PhaseRecord,
    PhaseStartEvent,
)


@dataclass(frozen=True)
class PhaseSlot:
    latest: Optional[PhaseRecord] = None
    previous: Optional[PhaseRecord] = None


def _to_record(event: PhaseCompleteEvent, start: Optional[PhaseStartEvent]) -> PhaseRecord:
    return PhaseRecord(
        id=event.id,
        phase=event.phase,
        step=event.step,
        artifact=event.artifact,
        instruction=event.reason or (start.reason if start is not None else ""),
        aggregates=event.aggregates,
        created_at=event.started_at or (start.created_at if start is not None else event.created_at),
        completed_at=event.created_at,
    )


class PipelineState:
    """Read-only view of the latest/previous completion record per phase."""

    def __init__(self, slots: dict[Phase, PhaseSlot]):
        self._slots = {phase: slots.get(phase, PhaseSlot()) for phase in PHASE_ORDER}

    def slot(self, phase: Phase) -> PhaseSlot:
        return self._slots[phase]

    def latest(self, phase: Phase) -> Optional[PhaseRecord]:
        return self._slots[phase].latest

    def previous(self, phase: Phase) -> Optional[PhaseRecord]:
        return self._slots[phase].previous

    @property
    def analyze_step(self) -> Optional[int]:
        record = self.latest(Phase.ANALYZE)
        return record.step if record is not None else None

    def is_stale(self, phase: Phase) -> bool:
        """True when the phase has a record whose step lags Analyze's step."""
        record = self.latest(phase)
        if record is None:
            return False
        analyze_step = self.analyze_step
        return analyze_step is None or record.step != analyze_step

    def current(self, phase: Phase) -> Optional[PhaseRecord]:
        """Latest record of ``phase`` if it is not stale."""
        if self.is_stale(phase):
            return None
        return self.latest(phase)

    def is_eligible(self, phase: Phase) -> bool:
        if phase is Phase.ANALYZE:
            return True
        predecessor = PHASE_ORDER[PHASE_ORDER.index(phase) - 1]
        record = self.latest(predecessor)
        return record is not None and record.step == self.analyze_step

    @property
    def current_phase(self) -> Optional[Phase]:
        """Furthest phase of the contiguous non-stale chain from Analyze."""
        current: Optional[Phase] = None
        for phase in PHASE_ORDER:
            if self.latest(phase) is None or self.is_stale(phase):
                break
            current = phase
        return current

    def next_step(self, phase: Phase) -> int:
        """Step number the next completion of ``phase`` has to carry."""
        if phase is Phase.ANALYZE:
            record = self.latest(Phase.ANALYZE)
            return record.step + 1 if record is not None else 1
        return self.analyze_step or 0

    def __repr__(self) -> str:
        parts = []
        for phase in PHASE_ORDER:
            record = self.latest(phase)
            parts.append(f"{phase.value}={record.step if record else None}")
        return f"PipelineState({', '.join(parts)})"


def derive_state(history: Sequence[Any]) -> PipelineState:
    """Fold an ordered event log into the per-phase latest/previous records.

    Single reverse pass; stops early once every phase has two records.
    """
    found: dict[Phase, list[PhaseCompleteEvent]] = {phase: [] for phase in PHASE_ORDER}
    completes: list[PhaseCompleteEvent] = []
    remaining = len(PHASE_ORDER) * 2
    for event in reversed(history):
        if not isinstance(event, PhaseCompleteEvent):
            continue
        bucket = found[event.phase]
        if len(bucket) >= 2:
            continue
        bucket.append(event)
        completes.append(event)
        remaining -= 1
        if remaining == 0:
            break

    # Pair each completion with the closest start event of the same phase
    # preceding it, for the instruction and start timestamp.
    starts: dict[str, PhaseStartEvent] = {}
    if completes:
        wanted = {event.id for event in completes}
        pending: dict[Phase, Optional[PhaseStartEvent]] = {}
        for event in history:
            if isinstance(event, PhaseStartEvent):
                pending[event.phase] = event
            elif isinstance(event, PhaseCompleteEvent):
                start = pending.pop(event.phase, None)
                if event.id in wanted and start is not None:
                    starts[event.id] = start

    slots: dict[Phase, PhaseSlot] = {}
    for phase, events in found.items():
        records = [_to_record(event, starts.get(event.id)) for event in events]
        slots[phase] = PhaseSlot(
            latest=records[0] if records else None,
            previous=records[1] if len(records) > 1 else None,
        )
    return PipelineState(slots)


# ---------------------------------------------------------------------------
# Readiness messages
# ---------------------------------------------------------------------------

_DESCRIPTIONS: dict[Phase, str] = {
    Phase.ANALYZE: "Requirements analysis",
    Phase.SCHEMA: "Database design",
    Phase.INTERFACE: "API interface design",
    Phase.TEST: "E2E test creation",
    Phase.REALIZE: "Implementation",
}

_NAMES: dict[Phase, str] = {
    Phase.ANALYZE: "Requirements analysis",
    Phase.SCHEMA: "Database schema",
    Phase.INTERFACE: "API interface",
    Phase.TEST: "Test functions",
    Phase.REALIZE: "Implementation",
}

_ACTIONS: dict[Phase, str] = {
    Phase.ANALYZE: "analyze requirements",
    Phase.SCHEMA: "design database",
    Phase.INTERFACE: "design API interface",
    Phase.TEST: "create tests",
    Phase.REALIZE: "implement the program",
}


def _missing_steps_message(target: Phase, missing: Phase) -> str:
    start = PHASE_ORDER.index(missing)
    end = PHASE_ORDER.index(target)
    steps = "\n".join(
        f"{index}. {_DESCRIPTIONS[phase]}"
        for index, phase in enumerate(PHASE_ORDER[start:end + 1], start=1)
    )
    return (
        f"{_DESCRIPTIONS[missing]} not completed yet.\n\n"
        f"To {_ACTIONS[target]}, complete these steps:\n\n"
        f"{steps}\n\n"
        "Start with step 1."
    )


def _outdated_message(outdated: Phase, state: PipelineState) -> str:
    record = state.latest(outdated)
    return (
        f"{_NAMES[outdated]} is outdated (step {record.step if record else None}).\n\n"
        f"Requirements are now at step {state.analyze_step}.\n\n"
        f"Please update {outdated.value} to match current requirements."
    )


def predicate_state_message(state: PipelineState, phase: Phase) -> Optional[str]:
    """Reason why ``phase`` cannot run yet, or None when it may run."""
    if phase is Phase.ANALYZE:
        return None
    if phase is Phase.SCHEMA:
        if state.latest(Phase.ANALYZE) is not None:
            return None
        return (
            "Requirements analysis not started.\n\n"
            "Discuss your project with AI to generate requirements analysis.\n"
            "Database design will follow after requirements are ready."
        )

    index = PHASE_ORDER.index(phase)
    for predecessor in PHASE_ORDER[:index]:
        if state.latest(predecessor) is None:
            return _missing_steps_message(phase, predecessor)

    predecessor = PHASE_ORDER[index - 1]
    if state.latest(predecessor).step != state.analyze_step:
        return _outdated_message(predecessor, state)
    return None


def readiness_summary(state: PipelineState) -> dict[str, dict[str, Any]]:
    summary: dict[str, dict[str, Any]] = {}
    for phase in PHASE_ORDER:
        record = state.latest(phase)
        summary[phase.value] = {
            "completed": record is not None,
            "step": record.step if record is not None else None,
            "stale": state.is_stale(phase),
            "eligible": state.is_eligible(phase),
        }
    return summary
