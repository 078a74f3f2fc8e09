"""Tests for translating between the tool-use protocol and chat completions."""
from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from careflow.core.protocol import (
    ModelRequest,
    Role,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
)
from careflow.services.llm_client import MalformedResponseError, OpenAIToolClient
from careflow.services.llm_pool import LLMPool


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeCompletions:
    def __init__(self, response: Any) -> None:
        self.response = response
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return self.response


def completion(content=None, tool_calls=None, finish_reason="stop", usage=(12, 4)) -> SimpleNamespace:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=usage[0], completion_tokens=usage[1]),
    )


def tool_call(call_id: str, name: str, arguments: str) -> SimpleNamespace:
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def make_request(**overrides: Any) -> ModelRequest:
    fields: Dict[str, Any] = dict(
        model="gpt-test",
        system_prompt="You are careful.",
        turns=(Turn(role=Role.USER, blocks=(TextBlock(text="Hello"),)),),
        tools=(),
        temperature=0.1,
        max_tokens=256,
    )
    fields.update(overrides)
    return ModelRequest(**fields)


@pytest.mark.anyio
async def test_complete_sends_tools_and_parses_tool_calls() -> None:
    completions = FakeCompletions(
        completion(
            content="Checking the note.",
            tool_calls=[tool_call("call_1", "get_clinical_note", '{"note_id": "n-1"}')],
            finish_reason="tool_calls",
        )
    )
    pool = LLMPool()
    pool.register_client("gpt-test", SimpleNamespace(chat=SimpleNamespace(completions=completions)))
    spec = {"name": "get_clinical_note", "description": "Fetch a note", "input_schema": {"type": "object"}}

    response = await OpenAIToolClient(pool).complete(make_request(tools=(spec,)))

    assert response.stop_reason is StopReason.TOOL_USE
    assert response.text() == "Checking the note."
    assert response.tool_uses() == [ToolUseBlock(id="call_1", name="get_clinical_note", input={"note_id": "n-1"})]
    assert response.usage.input_tokens == 12
    assert response.usage.output_tokens == 4

    sent = completions.calls[0]
    assert sent["model"] == "gpt-test"
    assert sent["max_tokens"] == 256
    assert sent["tools"][0]["function"]["parameters"] == {"type": "object"}
    assert sent["messages"][0] == {"role": "system", "content": "You are careful."}


def test_transcript_becomes_assistant_and_tool_messages() -> None:
    request = make_request(
        turns=(
            Turn(role=Role.USER, blocks=(TextBlock(text="Summarise the visit."),)),
            Turn(
                role=Role.ASSISTANT,
                blocks=(ToolUseBlock(id="call_1", name="get_clinical_note", input={"note_id": "n-1"}),),
            ),
            Turn(
                role=Role.USER,
                blocks=(ToolResultBlock(tool_use_id="call_1", content={"error": "missing"}, is_error=True),),
            ),
        )
    )

    messages = OpenAIToolClient.build_messages(request)

    assert messages[1] == {"role": "user", "content": "Summarise the visit."}
    assert messages[2]["role"] == "assistant"
    assert messages[2]["content"] is None
    assert json.loads(messages[2]["tool_calls"][0]["function"]["arguments"]) == {"note_id": "n-1"}
    assert messages[3]["role"] == "tool"
    assert messages[3]["tool_call_id"] == "call_1"
    assert json.loads(messages[3]["content"]) == {"status": "error", "content": {"error": "missing"}}


@pytest.mark.parametrize(
    "finish_reason, expected",
    [("stop", StopReason.END_TURN), ("length", StopReason.MAX_TOKENS), ("content_filter", StopReason.OTHER)],
)
def test_finish_reasons_map_to_stop_reasons(finish_reason: str, expected: StopReason) -> None:
    response = OpenAIToolClient.parse_response(completion(content="ok", finish_reason=finish_reason))

    assert response.stop_reason is expected
    assert response.raw_stop_reason == finish_reason


@pytest.mark.parametrize(
    "reply",
    [
        SimpleNamespace(choices=[], usage=None),
        completion(tool_calls=[tool_call("call_1", "lookup", "not json")], finish_reason="tool_calls"),
        completion(tool_calls=[tool_call("call_1", "lookup", "[1, 2]")], finish_reason="tool_calls"),
    ],
)
def test_malformed_replies_are_rejected(reply: Any) -> None:
    with pytest.raises(MalformedResponseError):
        OpenAIToolClient.parse_response(reply)


@pytest.mark.anyio
async def test_unregistered_model_is_rejected() -> None:
    with pytest.raises(KeyError):
        async with LLMPool().acquire("unknown-model"):
            pass
