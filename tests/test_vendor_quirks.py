"""Tests for phaseforge/vendor/quirks.py."""

import string

from phaseforge.vendor.quirks import (
    TOOL_ACK_MESSAGE,
    RequestOptions,
    apply_quirks,
    quirks_for,
    short_tool_call_id,
    shorten_tool_call_ids,
)


def _body() -> dict:
    return {
        "model": "x",
        "parallel_tool_calls": True,
        "tools": [{"type": "function", "function": {"name": "add", "parameters": {}}}],
        "messages": [
            {"role": "user", "content": "add please"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [{
                    "id": "call_abcdefghijklmnopqrstuvwxyz",
                    "type": "function",
                    "function": {"name": "add", "arguments": "{}"},
                }],
            },
            {"role": "tool", "tool_call_id": "call_abcdefghijklmnopqrstuvwxyz", "content": "3"},
            {"role": "user", "content": "again"},
        ],
    }


class TestCommonQuirks:
    def test_tool_choice_required_when_enforcing(self):
        body = apply_quirks(_body(), "gpt-4.1", RequestOptions(enforce_function_call=True))
        assert body["tool_choice"] == "required"

    def test_no_tool_choice_without_enforcement(self):
        body = apply_quirks(_body(), "gpt-4.1", RequestOptions())
        assert "tool_choice" not in body

    def test_no_tool_choice_when_vendor_refuses_it(self):
        options = RequestOptions(enforce_function_call=True, use_tool_choice=False)
        assert "tool_choice" not in apply_quirks(_body(), "gpt-4.1", options)

    def test_no_tool_choice_without_tools(self):
        body = _body()
        del body["tools"]
        result = apply_quirks(body, "gpt-4.1", RequestOptions(enforce_function_call=True))
        assert "tool_choice" not in result

    def test_parallel_tool_calls_removed(self):
        assert "parallel_tool_calls" not in apply_quirks(_body(), "gpt-4.1", RequestOptions())

    def test_prompt_cache_key(self):
        body = apply_quirks(_body(), "gpt-4.1", RequestOptions(prompt_cache_key="batch-3"))
        assert body["prompt_cache_key"] == "batch-3"
        assert "prompt_cache_key" not in apply_quirks(_body(), "gpt-4.1", RequestOptions())

    def test_input_not_mutated(self):
        body = _body()
        apply_quirks(body, "mistral-large-latest", RequestOptions(enforce_function_call=True))
        assert body == _body()


class TestShortToolCallId:
    def test_length_and_alphabet(self):
        short = short_tool_call_id("call_abcdefghijklmnopqrstuvwxyz")
        assert len(short) == 9
        assert set(short) <= set(string.ascii_letters + string.digits)

    def test_deterministic_and_distinct(self):
        assert short_tool_call_id("call_1") == short_tool_call_id("call_1")
        assert short_tool_call_id("call_1") != short_tool_call_id("call_2")


class TestMistralQuirk:
    def test_selected_by_model_name(self):
        assert shorten_tool_call_ids in quirks_for("mistral-large-latest")
        assert shorten_tool_call_ids in quirks_for("Codestral-2501")
        assert shorten_tool_call_ids not in quirks_for("gpt-4.1")

    def test_ids_shortened_consistently(self):
        body = apply_quirks(_body(), "mistral-large-latest", RequestOptions())
        messages = body["messages"]
        call_id = messages[1]["tool_calls"][0]["id"]
        assert len(call_id) == 9
        assert messages[2]["tool_call_id"] == call_id

    def test_tool_message_acknowledged(self):
        body = apply_quirks(_body(), "mistral-large-latest", RequestOptions())
        roles = [m["role"] for m in body["messages"]]
        assert roles == ["user", "assistant", "tool", "assistant", "user"]
        assert body["messages"][3]["content"] == TOOL_ACK_MESSAGE

    def test_other_models_untouched(self):
        body = apply_quirks(_body(), "gpt-4.1", RequestOptions())
        assert body["messages"] == _body()["messages"]
