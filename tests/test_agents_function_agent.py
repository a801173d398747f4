"""Tests for phaseforge/agents/function_agent.py and agents/application.py."""

from __future__ import annotations

import json

import pytest
from pydantic import BaseModel, ValidationError

from phaseforge.agents.application import (
    FunctionController,
    FunctionSpec,
    ValidationIssue,
    issues_from_pydantic,
)
from phaseforge.agents.function_agent import (
    AssistantMessageHistory,
    ExecuteHistory,
    FunctionCallingAgent,
    SystemMessageHistory,
    UserMessageHistory,
)
from phaseforge.core.exceptions import JsonParseError, ValidationFailedError

from tests.fakes import ScriptedVendor, text_reply, tool_reply


class AddParams(BaseModel):
    a: int
    b: int


class NoteParams(BaseModel):
    tags: list[str]


def _controller(validate=None, execute=None) -> FunctionController:
    return FunctionController(
        name="Calculator",
        functions=[FunctionSpec(
            name="add",
            description="Add two integers.",
            parameters=AddParams,
            execute=execute or (lambda p: p.a + p.b),
            validate=validate,
        )],
    )


def _tool_messages(body: dict) -> list[dict]:
    return [m for m in body["messages"] if m["role"] == "tool"]


class TestApplication:
    def test_tool_schema(self):
        schema = _controller().tools()[0]
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "add"
        assert set(schema["function"]["parameters"]["properties"]) == {"a", "b"}

    def test_lookup(self):
        controller = _controller()
        assert controller.get("add").name == "add"
        assert controller.get("sub") is None
        assert controller.function_names == ["add"]

    def test_issues_from_pydantic_paths(self):
        with pytest.raises(ValidationError) as info:
            NoteParams.model_validate({"tags": ["ok", 3]})
        issues = issues_from_pydantic(info.value)
        assert issues[0].path == "$input.tags[1]"
        assert issues[0].value == 3

    def test_issue_to_dict(self):
        issue = ValidationIssue(path="$input.a", expected="int", value="x")
        assert issue.to_dict() == {"path": "$input.a", "expected": "int", "value": "x"}


class TestConversate:
    @pytest.mark.asyncio
    async def test_text_answer(self):
        vendor = ScriptedVendor([text_reply("Hello there", prompt=12, completion=3)])
        agent = FunctionCallingAgent(vendor, _controller(), model="gpt-4.1")
        histories = await agent.conversate("Hi")
        assert isinstance(histories[0], UserMessageHistory)
        assert isinstance(histories[1], AssistantMessageHistory)
        assert histories[1].text == "Hello there"
        assert agent.token_usage.total == 15
        assert vendor.requests[0]["model"] == "gpt-4.1"
        assert vendor.requests[0]["tools"][0]["function"]["name"] == "add"

    @pytest.mark.asyncio
    async def test_executes_valid_call(self):
        vendor = ScriptedVendor([tool_reply(("add", {"a": 1, "b": 2}))])
        agent = FunctionCallingAgent(vendor, _controller())
        histories = await agent.conversate("1 + 2")
        executes = [h for h in histories if isinstance(h, ExecuteHistory)]
        assert len(executes) == 1
        assert executes[0].value == 3
        assert executes[0].arguments == {"a": 1, "b": 2}
        assert len(vendor.requests) == 1

    @pytest.mark.asyncio
    async def test_async_execute_awaited(self):
        async def add(params: AddParams) -> int:
            return params.a * 10 + params.b

        vendor = ScriptedVendor([tool_reply(("add", {"a": 4, "b": 2}))])
        agent = FunctionCallingAgent(vendor, _controller(execute=add))
        histories = await agent.conversate("go")
        assert histories[-1].value == 42

    @pytest.mark.asyncio
    async def test_invalid_json_fed_back(self):
        vendor = ScriptedVendor([
            tool_reply(("add", "{a: 1, b: 2")),
            tool_reply(("add", {"a": 1, "b": 2})),
        ])
        agent = FunctionCallingAgent(vendor, _controller())
        parse_errors: list = []
        agent.on("json_parse_error", parse_errors.append)

        histories = await agent.conversate("1 + 2")
        assert histories[-1].value == 3
        assert len(parse_errors) == 1
        assert parse_errors[0].function == "add"
        assert parse_errors[0].life == 4
        feedback = json.loads(_tool_messages(vendor.requests[1])[0]["content"])
        assert feedback["success"] is False

    @pytest.mark.asyncio
    async def test_schema_validation_fed_back(self):
        vendor = ScriptedVendor([
            tool_reply(("add", {"a": "one", "b": 2})),
            tool_reply(("add", {"a": 1, "b": 2})),
        ])
        agent = FunctionCallingAgent(vendor, _controller())
        failures: list = []
        agent.on("validate", failures.append)

        await agent.conversate("1 + 2")
        assert len(failures) == 1
        assert failures[0].errors[0].path == "$input.a"
        feedback = json.loads(_tool_messages(vendor.requests[1])[0]["content"])
        assert feedback["errors"][0]["path"] == "$input.a"

    @pytest.mark.asyncio
    async def test_custom_validator(self):
        def positive(params: AddParams) -> list[ValidationIssue]:
            if params.a < 0:
                return [ValidationIssue(path="$input.a", expected="a >= 0", value=params.a)]
            return []

        vendor = ScriptedVendor([
            tool_reply(("add", {"a": -1, "b": 2})),
            tool_reply(("add", {"a": 1, "b": 2})),
        ])
        agent = FunctionCallingAgent(vendor, _controller(validate=positive))
        failures: list = []
        agent.on("validate", failures.append)
        histories = await agent.conversate("go")
        assert failures[0].errors[0].expected == "a >= 0"
        assert histories[-1].value == 3

    @pytest.mark.asyncio
    async def test_unknown_function(self):
        vendor = ScriptedVendor([
            tool_reply(("multiply", {"a": 1, "b": 2})),
            tool_reply(("add", {"a": 1, "b": 2})),
        ])
        agent = FunctionCallingAgent(vendor, _controller())
        failures: list = []
        agent.on("validate", failures.append)
        await agent.conversate("go")
        assert failures[0].errors[0].path == "$function"
        assert failures[0].errors[0].expected == "\"add\""

    @pytest.mark.asyncio
    async def test_validation_budget_exhausted(self):
        vendor = ScriptedVendor(handler=lambda body: tool_reply(("add", {"a": "x", "b": 2})))
        agent = FunctionCallingAgent(vendor, _controller(), retry=1)
        with pytest.raises(ValidationFailedError):
            await agent.conversate("go")
        assert len(vendor.requests) == 2

    @pytest.mark.asyncio
    async def test_json_budget_exhausted(self):
        vendor = ScriptedVendor(handler=lambda body: tool_reply(("add", "not json")))
        agent = FunctionCallingAgent(vendor, _controller(), retry=0)
        with pytest.raises(JsonParseError):
            await agent.conversate("go")
        assert len(vendor.requests) == 1

    @pytest.mark.asyncio
    async def test_every_call_receives_a_tool_reply(self):
        vendor = ScriptedVendor([
            tool_reply(("add", {"a": 1, "b": 1}), ("add", "oops")),
            text_reply("done"),
        ])
        agent = FunctionCallingAgent(vendor, _controller())
        histories = await agent.conversate("go")
        replies = _tool_messages(vendor.requests[1])
        assert [r["tool_call_id"] for r in replies] == ["call_add_0", "call_add_1"]
        assert sum(isinstance(h, ExecuteHistory) for h in histories) == 1


class TestConversationMemory:
    @pytest.mark.asyncio
    async def test_system_prompt_and_histories_come_first(self):
        vendor = ScriptedVendor([text_reply("ok")])
        agent = FunctionCallingAgent(
            vendor,
            _controller(),
            histories=[SystemMessageHistory("context A"), {"role": "user", "content": "earlier"}],
            system_prompt="You are a calculator.",
        )
        await agent.conversate("now")
        messages = vendor.requests[0]["messages"]
        assert messages[0] == {"role": "system", "content": "You are a calculator."}
        assert messages[1] == {"role": "system", "content": "context A"}
        assert messages[2] == {"role": "user", "content": "earlier"}
        assert messages[3] == {"role": "user", "content": "now"}

    @pytest.mark.asyncio
    async def test_follow_up_continues_conversation(self):
        vendor = ScriptedVendor([text_reply("Shall I proceed?"), tool_reply(("add", {"a": 2, "b": 2}))])
        agent = FunctionCallingAgent(vendor, _controller())
        await agent.conversate("add two and two")
        follow_up = await agent.conversate("Yes, execute.")
        assert follow_up[-1].value == 4
        roles = [m["role"] for m in vendor.requests[1]["messages"]]
        assert roles == ["user", "assistant", "user"]
        assert len(agent.histories) == 4

    @pytest.mark.asyncio
    async def test_request_listener_can_replace_body(self):
        vendor = ScriptedVendor([text_reply("ok")])
        agent = FunctionCallingAgent(vendor, _controller())

        def rewrite(event):
            event.body = {**event.body, "temperature": 0}

        agent.on("request", rewrite)
        await agent.conversate("hi")
        assert vendor.requests[0]["temperature"] == 0

    def test_unknown_listener(self):
        agent = FunctionCallingAgent(ScriptedVendor(), _controller())
        with pytest.raises(ValueError):
            agent.on("finish", lambda e: None)
