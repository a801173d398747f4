"""Abstract base for the five phase orchestrators.

Every phase follows the same lifecycle:
1. Check that its predecessors are complete and current
2. Announce itself with a phase_start event carrying the step it will own
3. Process (conversations, batches, compilation and correction)
4. Emit a phase_complete event with the artifact and the aggregates spent

Concrete phases implement ``process()`` only and receive everything else
through the agent context; there is no global state.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from phaseforge.context.agent_context import AgentContext
from phaseforge.context.state import predicate_state_message
from phaseforge.core.exceptions import PhaseNotReadyError, StateError
from phaseforge.core.models import Phase, PhaseCompleteEvent, PhaseRecord, PhaseStartEvent


class PhaseOrchestrator(ABC):
    """Base class for Analyze, Schema, Interface, Test and Realize."""

    phase: Phase

    def __init__(self, name: str = ""):
        self.name = name or type(self).__name__
        self.logger = logging.getLogger(f"phaseforge.phase.{self.phase.value}")
        self._metrics: dict[str, Any] = {
            "total_processed": 0,
            "total_errors": 0,
            "last_duration_seconds": 0.0,
        }

    @abstractmethod
    async def process(self, ctx: AgentContext, reason: str) -> dict[str, Any]:
        """Produce the phase artifact.

        Args:
            ctx: Agent context of the running session.
            reason: Instruction that triggered the phase.

        Returns:
            JSON-able artifact stored on the completion record.
        """

    async def run(self, ctx: AgentContext, reason: str = "") -> PhaseRecord:
        """Execute the phase with readiness checks, events and metrics.

        Subclasses should override process(), not run().
        """
        message = predicate_state_message(ctx.state, self.phase)
        if message is not None:
            raise PhaseNotReadyError(self.phase.value, message)

        step = ctx.state.next_step(self.phase)
        start = await ctx.dispatch(PhaseStartEvent(phase=self.phase, reason=reason, step=step))
        self.logger.info("[%s] Starting: step=%d reason=%r", self.name, step, reason[:80])
        began = time.monotonic()

        try:
            artifact = await self.process(ctx, reason)
        except Exception as e:
            duration = time.monotonic() - began
            self._metrics["total_errors"] += 1
            self._metrics["last_duration_seconds"] = duration
            self.logger.error("[%s] Error: %s", self.name, e, exc_info=True)
            raise

        duration = time.monotonic() - began
        await ctx.dispatch(PhaseCompleteEvent(
            phase=self.phase,
            step=step,
            artifact=artifact,
            reason=reason,
            started_at=start.created_at,
            aggregates=ctx.get_current_aggregates(self.phase),
        ))
        self._metrics["total_processed"] += 1
        self._metrics["last_duration_seconds"] = duration
        self.logger.info("[%s] Complete: step=%d (%.2fs)", self.name, step, duration)

        record = ctx.state.latest(self.phase)
        if record is None:
            raise StateError(f"Completion of {self.phase.value} was not recorded")
        return record

    def get_metrics(self) -> dict[str, Any]:
        """Return a copy of the phase's runtime metrics."""
        return self._metrics.copy()
