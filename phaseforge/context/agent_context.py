"""Agent context: the conversation execution contract shared by every phase.

``AgentContext.conversate`` runs one function-calling turn with:

- vendor quirk adaptation and vendor request/response events,
- function-calling metrics and token usage credited to the stage bucket,
  the session total and the session token usage,
- an optional time budget that bypasses every retry once exceeded,
- consent escalation and a turn-level retry when a required function was
  never called.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from phaseforge.agents.application import FunctionController
from phaseforge.agents.function_agent import (
    AssistantMessageHistory,
    ExecuteHistory,
    FunctionCallingAgent,
)
from phaseforge.compiler import Compiler, CriticalCompiler
from phaseforge.context.aggregate import accumulate_metric, accumulate_usage
from phaseforge.context.session import Session
from phaseforge.context.state import PipelineState
from phaseforge.context.token_usage import bucket_of
from phaseforge.core.config import AppConfig, ModelRegistry, PromptLoader
from phaseforge.core.exceptions import (
    AuthenticationError,
    CompilerError,
    FunctionCallingError,
    JsonParseError,
    ModelNotFoundError,
    QuotaExceededError,
    ValidationFailedError,
    VendorError,
    VendorRequestError,
)
from phaseforge.core.models import (
    AggregateCollection,
    FunctionCallingMetric,
    Phase,
    ProcessAggregate,
    TelemetryEvent,
    TelemetryKind,
    TokenUsageComponent,
    VendorRequestEvent,
    VendorResponseEvent,
)
from phaseforge.orchestrate.consent import consent_function_call
from phaseforge.orchestrate.timed import timed_conversate
from phaseforge.vendor.quirks import RequestOptions, apply_quirks

logger = logging.getLogger("phaseforge.context")

T = TypeVar("T")


@dataclass
class ConversateRequest:
    source: str
    user_message: str
    controller: FunctionController
    histories: list[Any] = field(default_factory=list)
    enforce_function_call: bool = False
    prompt_cache_key: Optional[str] = None
    timeout: Optional[float] = None
    system_prompt: Optional[str] = None


@dataclass
class ConversateResult:
    histories: list[Any]
    metric: FunctionCallingMetric
    token_usage: TokenUsageComponent
    agent: Optional[FunctionCallingAgent] = None

    @property
    def executes(self) -> list[ExecuteHistory]:
        return [h for h in self.histories if isinstance(h, ExecuteHistory)]


def enforce_message(user_message: str, function_names: list[str]) -> str:
    """Suffix ``user_message`` with the mandatory function-calling directive."""
    listed = "\n".join(f"> - {name}" for name in function_names)
    return (
        f"{user_message}\n\n"
        "> You have to call function(s) of below to accomplish my request.\n"
        ">\n"
        "> Never hesitate the function calling. Never ask for me permission\n"
        "> to execute the function. Never explain me your plan with waiting\n"
        "> for my approval.\n"
        ">\n"
        "> I gave you every information for the function calling, so just\n"
        "> call it. I repeat that, never hesitate the function calling.\n"
        "> Just do it without any explanation.\n"
        ">\n"
        f"{listed}"
    )


def is_turn_retryable(error: BaseException) -> bool:
    """Errors that justify re-running a whole conversation turn."""
    if isinstance(error, (FunctionCallingError, JsonParseError, ValidationFailedError)):
        return True
    if isinstance(error, (AuthenticationError, QuotaExceededError, ModelNotFoundError, VendorRequestError)):
        return False
    return isinstance(error, (VendorError, httpx.TransportError))


async def force_retry(
    fn: Callable[[], Awaitable[T]],
    count: int,
    predicate: Callable[[BaseException], bool],
) -> T:
    """Call ``fn`` up to ``count`` times while it fails with a retryable error."""
    attempts = max(1, count)
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as e:
            if attempt == attempts - 1 or not predicate(e):
                raise
            logger.warning("Retrying turn (%d/%d) after %s: %s", attempt + 1, attempts, type(e).__name__, e)
    raise RuntimeError("unreachable")


class AgentContext:
    """Everything a phase needs: session, vendor, config, compiler and prompts."""

    def __init__(
        self,
        session: Session,
        vendor: Any,
        config: Optional[AppConfig] = None,
        registry: Optional[ModelRegistry] = None,
        compiler: Optional[Compiler] = None,
        prompts: Optional[PromptLoader] = None,
    ):
        self.session = session
        self.vendor = vendor
        self.config = config or AppConfig()
        self.registry = registry or ModelRegistry()
        self.prompts = prompts or PromptLoader()
        self._compiler = (
            CriticalCompiler(compiler, self.config.orchestrator.critical_permits)
            if compiler is not None else None
        )

    @property
    def state(self) -> PipelineState:
        return self.session.state()

    @property
    def aggregates(self) -> AggregateCollection:
        return self.session.aggregates

    @property
    def model(self) -> str:
        return self.vendor.model

    def model_for(self, role: str) -> str:
        """Model configured for a side-conversation ``role``, else the vendor model."""
        return self.registry.resolve(role, self.vendor.model)

    def compiler(self) -> CriticalCompiler:
        if self._compiler is None:
            raise CompilerError("No compiler configured for this context")
        return self._compiler

    async def dispatch(self, event: Any) -> Any:
        return await self.session.dispatch(event)

    def get_current_aggregates(self, phase: Optional[Phase] = None) -> AggregateCollection:
        return self.session.get_current_aggregates(phase)

    async def conversate(
        self,
        request: ConversateRequest,
        closure: Optional[Callable[[FunctionCallingAgent], None]] = None,
    ) -> ConversateResult:
        """Run one conversation turn under the retry/consent/timeout contract."""
        source = request.source
        aggregate = ProcessAggregate()
        progress = {"request": 0, "response": 0, "timeout": 0}
        timeout = (
            request.timeout if request.timeout is not None
            else self.config.orchestrator.timeout_seconds
        )
        options = RequestOptions(
            enforce_function_call=request.enforce_function_call,
            use_tool_choice=self.vendor.use_tool_choice,
            prompt_cache_key=request.prompt_cache_key,
        )

        def metric(key: str) -> None:
            aggregate.metric.add(key)
            accumulate_metric(self.session.aggregates, source, key)

        def consume(usage: TokenUsageComponent) -> None:
            aggregate.token_usage.increment(usage)
            accumulate_usage(self.session.aggregates, source, usage)
            self.session.token_usage.record(usage, [bucket_of(source)])

        async def execute() -> ConversateResult:
            agent = FunctionCallingAgent(
                vendor=self.vendor,
                controller=request.controller,
                histories=request.histories,
                system_prompt=request.system_prompt,
                retry=self.config.orchestrator.retry,
                model=self.model,
            )

            async def on_request(event: Any) -> None:
                event.body = apply_quirks(event.body, event.body.get("model") or self.model, options)
                retry = progress["request"]
                progress["request"] += 1
                await self.dispatch(VendorRequestEvent(source=source, retry=retry, body=event.body))

            async def on_response(event: Any) -> None:
                retry = progress["response"]
                progress["response"] += 1
                await self.dispatch(VendorResponseEvent(source=source, retry=retry, body=event.body))

            async def on_json_parse_error(event: Any) -> None:
                metric("invalid_json")
                await self.dispatch(TelemetryEvent(
                    kind=TelemetryKind.JSON_PARSE_ERROR,
                    source=source,
                    payload={
                        "function": event.function,
                        "arguments": event.arguments,
                        "message": event.message,
                        "life": event.life,
                    },
                ))

            async def on_validate(event: Any) -> None:
                metric("validation_failure")
                await self.dispatch(TelemetryEvent(
                    kind=TelemetryKind.JSON_VALIDATE_ERROR,
                    source=source,
                    payload={
                        "function": event.function,
                        "errors": [issue.to_dict() for issue in event.errors],
                        "life": event.life,
                    },
                ))

            agent.on("request", on_request)
            agent.on("response", on_response)
            agent.on("call", lambda _event: metric("attempt"))
            agent.on("json_parse_error", on_json_parse_error)
            agent.on("validate", on_validate)
            if closure is not None:
                closure(agent)

            message = (
                enforce_message(request.user_message, request.controller.function_names)
                if request.enforce_function_call
                else request.user_message
            )
            result = await timed_conversate(agent, message, timeout)
            usage = agent.token_usage.model_copy(deep=True)
            consume(usage)

            def success(histories: list[Any]) -> ConversateResult:
                metric("success")
                return ConversateResult(
                    histories=histories,
                    metric=aggregate.metric.model_copy(deep=True),
                    token_usage=aggregate.token_usage.model_copy(deep=True),
                    agent=agent,
                )

            if result.type == "error":
                raise result.error
            if result.type == "timeout":
                await self.dispatch(TelemetryEvent(
                    kind=TelemetryKind.VENDOR_TIMEOUT,
                    source=source,
                    payload={"timeout": timeout, "retry": progress["timeout"]},
                ))
                progress["timeout"] += 1
                logger.warning("Conversation %s timed out after %ss", source, timeout)
                raise result.error

            if request.enforce_function_call and not _has_execute(result.histories):
                last = result.histories[-1] if result.histories else None
                if isinstance(last, AssistantMessageHistory) and last.text.strip():
                    metric("consent")
                    directive = await consent_function_call(self, source, last.text)
                    if directive is not None:
                        try:
                            follow_up = await agent.conversate(directive)
                        finally:
                            consume(agent.token_usage.minus(usage))
                        if _has_execute(follow_up):
                            return success(follow_up)
                raise FunctionCallingError(source, [h.type for h in result.histories])
            return success(result.histories)

        return await force_retry(
            execute,
            self.config.orchestrator.function_calling_retry,
            is_turn_retryable,
        )


def _has_execute(histories: list[Any]) -> bool:
    return any(isinstance(h, ExecuteHistory) for h in histories)
