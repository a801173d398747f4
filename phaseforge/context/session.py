"""Session: sole owner of the append-only event log.

Every history event goes through ``dispatch``, which appends it and then
notifies the subscribed listeners. Pipeline state, the running aggregates
and the generated files are all read from here.
"""

from __future__ import annotations

import inspect
import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from phaseforge.compiler import ArtifactWriter
from phaseforge.context.aggregate import (
    create_collection,
    filter_phase,
    reduce_collections,
    subtract_collections,
)
from phaseforge.context.state import PipelineState, derive_state
from phaseforge.context.token_usage import TokenUsage
from phaseforge.core.exceptions import StateError
from phaseforge.core.models import (
    EVENT_TYPES,
    PHASE_ORDER,
    AggregateCollection,
    AssistantMessageEvent,
    Phase,
    PhaseCompleteEvent,
    UserMessageEvent,
    history_adapter,
)

logger = logging.getLogger("phaseforge.context.session")

Listener = Callable[[Any], Any]

ALL_EVENTS = "*"


class Session:
    """Event log, listeners, token usage and aggregates of one pipeline run."""

    def __init__(
        self,
        history: Optional[Iterable[Any]] = None,
        token_usage: Optional[TokenUsage] = None,
        writers: Optional[dict[Phase, ArtifactWriter]] = None,
    ):
        self._history: list[Any] = list(history or [])
        self._listeners: dict[str, list[Listener]] = {}
        self._state_cache: Optional[tuple[int, PipelineState]] = None
        self.token_usage = token_usage or TokenUsage()
        self.writers: dict[Phase, ArtifactWriter] = dict(writers or {})
        # Imported history has already been charged; start from its totals so
        # the current-phase aggregates begin at zero.
        self.aggregates: AggregateCollection = self._completed_aggregates()

    # -- history ------------------------------------------------------------

    @property
    def history(self) -> tuple[Any, ...]:
        return tuple(self._history)

    def state(self) -> PipelineState:
        """Pipeline state, recomputed only when the log has grown."""
        cached = self._state_cache
        if cached is not None and cached[0] == len(self._history):
            return cached[1]
        state = derive_state(self._history)
        self._state_cache = (len(self._history), state)
        return state

    # -- listeners ----------------------------------------------------------

    def on(self, event_type: str, listener: Listener) -> None:
        """Subscribe to one event type, or ``"*"`` for every event."""
        if event_type != ALL_EVENTS and event_type not in EVENT_TYPES:
            raise StateError(f"Unknown event type: {event_type}")
        self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    async def dispatch(self, event: Any) -> Any:
        """Append ``event`` to the log, then notify listeners."""
        self._history.append(event)
        listeners = self._listeners.get(event.type, []) + self._listeners.get(ALL_EVENTS, [])
        for listener in listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Listener for %s failed: %s", event.type, e)
        return event

    async def user_message(self, text: str) -> UserMessageEvent:
        return await self.dispatch(UserMessageEvent(text=text))

    async def assistant_message(self, text: str) -> AssistantMessageEvent:
        return await self.dispatch(AssistantMessageEvent(text=text))

    # -- aggregates ---------------------------------------------------------

    def _completed_aggregates(self) -> AggregateCollection:
        completes = [e.aggregates for e in self._history if isinstance(e, PhaseCompleteEvent)]
        if not completes:
            return create_collection()
        return reduce_collections(completes)

    def get_current_aggregates(self, phase: Optional[Phase] = None) -> AggregateCollection:
        """Aggregates spent since the last completion record, filtered by phase."""
        spent = subtract_collections(self.aggregates, self._completed_aggregates())
        return filter_phase(spent, phase)

    # -- files --------------------------------------------------------------

    async def get_files(self, excluded_paths: Sequence[str] = ()) -> dict[str, str]:
        """Merge the files of every completed, non-stale phase."""
        state = self.state()
        files: dict[str, str] = {}
        for phase in PHASE_ORDER:
            record = state.current(phase)
            writer = self.writers.get(phase)
            if record is None or writer is None:
                continue
            files.update(await writer.write(record.artifact, excluded_paths))
        return files

    # -- export / import ----------------------------------------------------

    def export_history(self) -> list[dict[str, Any]]:
        return history_adapter.dump_python(self._history, mode="json")

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.export_history(), indent=2), encoding="utf-8")

    @classmethod
    def from_export(
        cls,
        data: list[dict[str, Any]],
        token_usage: Optional[TokenUsage] = None,
        writers: Optional[dict[Phase, ArtifactWriter]] = None,
    ) -> Session:
        history = history_adapter.validate_python(data)
        return cls(history=history, token_usage=token_usage, writers=writers)

    @classmethod
    def load(cls, path: Union[str, Path], **kwargs: Any) -> Session:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise StateError(f"Exported history in {path} must be a JSON list")
        return cls.from_export(data, **kwargs)
