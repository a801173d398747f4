"""Consent escalation for hesitant models.

When a model answers a mandatory function-calling request with free text,
a side conversation judges whether that text is really asking permission.
If so it produces a short directive to send back as a follow-up.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field

from phaseforge.agents.application import FunctionController, FunctionSpec
from phaseforge.agents.function_agent import (
    AssistantMessageHistory,
    FunctionCallingAgent,
    SystemMessageHistory,
)
from phaseforge.core.models import TelemetryEvent, TelemetryKind
from phaseforge.vendor.quirks import RequestOptions, apply_quirks

if TYPE_CHECKING:
    from phaseforge.context.agent_context import AgentContext

logger = logging.getLogger("phaseforge.orchestrate.consent")

JUDGE_MESSAGE = "Analyze and judge this assistant message please."

DEFAULT_CONSENT_PROMPT = (
    "Inspect the assistant message below. If it asks for permission or "
    "confirmation before executing a function, call `consent` with a short "
    "authoritative directive to execute immediately. Otherwise call "
    "`notApplicable`."
)


class ConsentParams(BaseModel):
    message: str = Field(
        description='Strong directive (1-2 sentences). E.g., "Execute immediately. Do not ask again."',
    )


class NotApplicableParams(BaseModel):
    pass


async def consent_function_call(
    ctx: AgentContext,
    source: str,
    assistant_message: str,
) -> Optional[str]:
    """Return a consent directive for ``assistant_message``, or None if not applicable."""
    result: dict[str, Any] = {}

    def consent(params: ConsentParams) -> None:
        result.update(type="consent", message=params.message)

    def not_applicable(params: NotApplicableParams) -> None:
        result.update(type="not_applicable")

    controller = FunctionController(
        name="consent",
        functions=[
            FunctionSpec(
                name="consent",
                description=(
                    "Generate authoritative consent message when assistant seeks "
                    "function execution approval."
                ),
                parameters=ConsentParams,
                execute=consent,
            ),
            FunctionSpec(
                name="notApplicable",
                description=(
                    "Indicate assistant message doesn't require function calling "
                    "consent (e.g., general conversation, asking for parameters, etc.)."
                ),
                parameters=NotApplicableParams,
                execute=not_applicable,
            ),
        ],
    )
    model = ctx.model_for("consent")
    agent = FunctionCallingAgent(
        vendor=ctx.vendor,
        controller=controller,
        histories=[
            SystemMessageHistory(ctx.prompts.load("consent_system.md", DEFAULT_CONSENT_PROMPT)),
            AssistantMessageHistory(assistant_message),
        ],
        retry=ctx.config.orchestrator.retry,
        model=model,
    )
    options = RequestOptions(use_tool_choice=ctx.vendor.use_tool_choice)

    def adapt(event: Any) -> None:
        event.body = apply_quirks(event.body, model, options)

    agent.on("request", adapt)

    histories = await agent.conversate(JUDGE_MESSAGE)
    if not result and histories and isinstance(histories[-1], AssistantMessageHistory):
        result.update(type="assistant_message", message=histories[-1].text)

    await ctx.dispatch(TelemetryEvent(
        kind=TelemetryKind.CONSENT_FUNCTION_CALL,
        source=source,
        payload={
            "assistant_message": assistant_message,
            "result": dict(result) or None,
        },
    ))
    logger.info("Consent judgement for %s: %s", source, result.get("type", "none"))
    if result.get("type") == "consent":
        return result["message"]
    return None
