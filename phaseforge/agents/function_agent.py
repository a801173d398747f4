"""Minimal function-calling conversation runner.

Sends the accumulated messages plus the controller's tool schemas to the
vendor, parses and validates every tool call, executes the valid ones and
feeds validation feedback back to the model until it either executes a
call, answers in plain text, or exhausts its validation retry budget.
Messages persist across ``conversate`` calls so follow-ups (such as a
consent directive) continue the same conversation.
"""

from __future__ import annotations

import copy
import inspect
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import ValidationError

from phaseforge.agents.application import (
    FunctionController,
    ValidationIssue,
    issues_from_pydantic,
)
from phaseforge.core.exceptions import ConversationError, JsonParseError, ValidationFailedError
from phaseforge.core.models import TokenUsageComponent


# ---------------------------------------------------------------------------
# Histories
# ---------------------------------------------------------------------------

@dataclass
class SystemMessageHistory:
    text: str
    type: str = field(default="system_message", init=False)

    def to_messages(self) -> list[dict[str, Any]]:
        return [{"role": "system", "content": self.text}]


@dataclass
class UserMessageHistory:
    text: str
    type: str = field(default="user_message", init=False)

    def to_messages(self) -> list[dict[str, Any]]:
        return [{"role": "user", "content": self.text}]


@dataclass
class AssistantMessageHistory:
    text: str
    type: str = field(default="assistant_message", init=False)

    def to_messages(self) -> list[dict[str, Any]]:
        return [{"role": "assistant", "content": self.text}]


@dataclass
class ExecuteHistory:
    function: str
    arguments: dict[str, Any]
    value: Any = None
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex}")
    type: str = field(default="execute", init=False)

    def to_messages(self) -> list[dict[str, Any]]:
        return [
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [{
                    "id": self.id,
                    "type": "function",
                    "function": {"name": self.function, "arguments": json.dumps(self.arguments)},
                }],
            },
            {"role": "tool", "tool_call_id": self.id, "content": _tool_result(True, self.value)},
        ]


History = Union[SystemMessageHistory, UserMessageHistory, AssistantMessageHistory, ExecuteHistory]


# ---------------------------------------------------------------------------
# Listener payloads
# ---------------------------------------------------------------------------

@dataclass
class RequestEvent:
    """Outgoing request; listeners may replace or mutate ``body``."""
    body: dict[str, Any]


@dataclass
class ResponseEvent:
    body: dict[str, Any]
    usage: TokenUsageComponent


@dataclass
class CallEvent:
    function: str
    arguments: str


@dataclass
class ValidateEvent:
    function: str
    arguments: Any
    errors: list[ValidationIssue]
    life: int


@dataclass
class JsonParseErrorEvent:
    function: str
    arguments: str
    message: str
    life: int


AGENT_EVENTS = ("request", "response", "call", "validate", "json_parse_error")


def _tool_result(success: bool, value: Any) -> str:
    key = "value" if success else "errors"
    return json.dumps({"success": success, key: value}, default=str)


class FunctionCallingAgent:
    """One function-calling conversation over a vendor client."""

    def __init__(
        self,
        vendor: Any,
        controller: Optional[FunctionController] = None,
        histories: Iterable[Any] = (),
        system_prompt: Optional[str] = None,
        retry: int = 4,
        model: Optional[str] = None,
    ):
        self.vendor = vendor
        self.controller = controller
        self.retry = retry
        self.model = model
        self.histories: list[Any] = list(histories)
        self.token_usage = TokenUsageComponent()
        self.logger = logging.getLogger(
            f"phaseforge.agent.{controller.name.lower() if controller else 'chat'}"
        )
        self._listeners: dict[str, list[Callable[[Any], Any]]] = {name: [] for name in AGENT_EVENTS}
        self._messages: list[dict[str, Any]] = []
        if system_prompt:
            self._messages.append({"role": "system", "content": system_prompt})
        for history in self.histories:
            self._messages.extend(_history_messages(history))

    def on(self, event: str, listener: Callable[[Any], Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown agent event: {event}")
        self._listeners[event].append(listener)

    async def _emit(self, event: str, payload: Any) -> None:
        for listener in self._listeners[event]:
            result = listener(payload)
            if inspect.isawaitable(result):
                await result

    async def conversate(self, content: str) -> list[Any]:
        """Send ``content`` and run the tool-calling loop; returns this turn's histories."""
        produced: list[Any] = [UserMessageHistory(content)]
        self._messages.append({"role": "user", "content": content})

        failures = 0
        while True:
            body: dict[str, Any] = {"messages": copy.deepcopy(self._messages)}
            if self.model:
                body["model"] = self.model
            tools = self.controller.tools() if self.controller else []
            if tools:
                body["tools"] = tools

            request = RequestEvent(body=body)
            await self._emit("request", request)
            response = await self.vendor.chat(request.body)
            self.token_usage.increment(response.usage)
            await self._emit("response", ResponseEvent(body=response.raw, usage=response.usage))

            tool_calls = response.tool_calls
            if not tool_calls:
                text = response.content
                self._messages.append({"role": "assistant", "content": text})
                produced.append(AssistantMessageHistory(text))
                break

            self._messages.append({
                "role": "assistant",
                "content": response.message.get("content"),
                "tool_calls": tool_calls,
            })
            life = self.retry - failures
            executed: list[ExecuteHistory] = []
            error: Optional[ConversationError] = None
            for call in tool_calls:
                outcome = await self._call(call, life)
                if isinstance(outcome, ExecuteHistory):
                    executed.append(outcome)
                else:
                    error = outcome
            produced.extend(executed)

            if error is None:
                break
            failures += 1
            if failures > self.retry:
                self.logger.warning("Giving up after %d invalid function calls: %s", failures, error)
                raise error

        self.histories.extend(produced)
        return produced

    async def _call(self, call: dict[str, Any], life: int) -> Union[ExecuteHistory, ConversationError]:
        call_id = call.get("id") or f"call_{uuid.uuid4().hex}"
        name = call.get("function", {}).get("name", "")
        raw = call.get("function", {}).get("arguments") or "{}"
        await self._emit("call", CallEvent(function=name, arguments=raw))

        spec = self.controller.get(name) if self.controller else None
        if spec is None:
            valid = self.controller.function_names if self.controller else []
            issue = ValidationIssue(
                path="$function",
                expected=" | ".join(json.dumps(n) for n in valid) or "never",
                value=name,
                description="No such function.",
            )
            await self._emit("validate", ValidateEvent(name, raw, [issue], life))
            self._reply(call_id, _tool_result(False, [issue.to_dict()]))
            return ValidationFailedError(name, [issue.to_dict()])

        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError as e:
            await self._emit("json_parse_error", JsonParseErrorEvent(name, raw, str(e), life))
            self._reply(call_id, _tool_result(False, [{"path": "$input", "message": f"Invalid JSON: {e}"}]))
            return JsonParseError(name, raw)

        issues: list[ValidationIssue]
        try:
            parsed = spec.parameters.model_validate(arguments)
        except ValidationError as e:
            issues = issues_from_pydantic(e)
        else:
            issues = spec.validate(parsed) if spec.validate else []
        if issues:
            await self._emit("validate", ValidateEvent(name, arguments, issues, life))
            errors = [issue.to_dict() for issue in issues]
            self._reply(call_id, _tool_result(False, errors))
            return ValidationFailedError(name, errors)

        value = spec.execute(parsed)
        if inspect.isawaitable(value):
            value = await value
        self._reply(call_id, _tool_result(True, value))
        self.logger.debug("Executed %s", name)
        return ExecuteHistory(function=name, arguments=arguments, value=value, id=call_id)

    def _reply(self, call_id: str, content: str) -> None:
        self._messages.append({"role": "tool", "tool_call_id": call_id, "content": content})


def _history_messages(history: Any) -> list[dict[str, Any]]:
    if isinstance(history, dict):
        return [dict(history)]
    return history.to_messages()
