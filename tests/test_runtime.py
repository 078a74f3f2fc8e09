"""Tests for the bounded tool-use loop."""
from __future__ import annotations

import asyncio
import dataclasses
from typing import Any, Dict, List

import pytest

from careflow.agents.runtime import AgentRuntime
from careflow.config import RetryConfig
from careflow.core.models import (
    AgentConfig,
    AgentContext,
    AgentResult,
    PipelineState,
    ToolDefinition,
    ToolOutput,
)
from careflow.core.protocol import ModelResponse, Role, StopReason, ToolResultBlock
from careflow.services.transport import ModelServiceError, RetryingTransport
from fakes import FakeTransport, ScriptedModelClient, text_reply, tool_reply


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


OBJECT_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}}


def make_context() -> AgentContext:
    state = PipelineState(pipeline_id="pipe_test", patient_id="patient-1", provider_id="doctor-1")
    return AgentContext(patient_id="patient-1", provider_id="doctor-1", pipeline_state=state)


def make_agent(*tools: ToolDefinition, max_iterations: int = 8) -> AgentConfig:
    return AgentConfig(
        name="Test Agent",
        description="test",
        model="test-model",
        system_prompt="You are a test agent.",
        tools=tools,
        max_iterations=max_iterations,
    )


def tool(name: str, handler, schema: Dict[str, Any] = OBJECT_SCHEMA) -> ToolDefinition:
    return ToolDefinition(name=name, description=f"{name} tool", input_schema=schema, handler=handler)


@pytest.mark.anyio
async def test_final_answer_joins_text_and_counts_tokens() -> None:
    transport = FakeTransport(text_reply("first line", "second line"))
    runtime = AgentRuntime(make_agent(), transport)

    result = await runtime.run("do the thing", make_context())

    assert result.success
    assert result.output == "first line\nsecond line"
    assert result.error is None
    assert result.usage.input_tokens == 10
    assert result.usage.output_tokens == 5

    request = transport.requests[0]
    assert request.system_prompt == "You are a test agent."
    assert request.turns[0].role is Role.USER
    assert request.turns[0].blocks[0].text == "do the thing"


@pytest.mark.anyio
async def test_max_tokens_is_treated_as_final_answer() -> None:
    transport = FakeTransport(text_reply("truncated", stop_reason=StopReason.MAX_TOKENS))

    result = await AgentRuntime(make_agent(), transport).run("task", make_context())

    assert result.success
    assert result.output == "truncated"


@pytest.mark.anyio
async def test_tool_call_records_and_strips_artifacts() -> None:
    seen: List[Dict[str, Any]] = []
    returned = {"note_id": "n-1", "_artifacts": {"clinical_note_id": "n-1"}}

    async def save(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        seen.append({"payload": payload, "patient": context.patient_id})
        return returned

    transport = FakeTransport(tool_reply(("save", {"value": 1})), text_reply("saved"))
    result = await AgentRuntime(make_agent(tool("save", save)), transport).run("task", make_context())

    assert result.success
    assert seen == [{"payload": {"value": 1}, "patient": "patient-1"}]
    assert result.artifacts == {"clinical_note_id": "n-1"}
    assert returned == {"note_id": "n-1", "_artifacts": {"clinical_note_id": "n-1"}}
    assert result.usage.input_tokens == 30

    record = result.tool_calls[0]
    assert record.success
    assert record.tool_name == "save"
    assert record.output == {"note_id": "n-1"}
    assert record.duration_ms >= 0

    follow_up = transport.requests[1]
    assert [turn.role for turn in follow_up.turns] == [Role.USER, Role.ASSISTANT, Role.USER]
    result_block = follow_up.turns[-1].blocks[0]
    assert isinstance(result_block, ToolResultBlock)
    assert result_block.tool_use_id == record.tool_use_id
    assert result_block.content == {"note_id": "n-1"}
    assert result_block.status == "success"


@pytest.mark.anyio
async def test_tool_output_splits_payload_and_artifacts() -> None:
    async def emit(payload: Dict[str, Any], context: AgentContext) -> ToolOutput:
        return ToolOutput(payload={"ok": True}, artifacts={"translation": {"summary": "plain"}})

    transport = FakeTransport(tool_reply(("emit", {})), text_reply("done"))
    result = await AgentRuntime(make_agent(tool("emit", emit)), transport).run("task", make_context())

    assert result.tool_calls[0].output == {"ok": True}
    assert result.artifacts == {"translation": {"summary": "plain"}}


@pytest.mark.anyio
async def test_unknown_tool_is_reported_without_invoking_anything() -> None:
    calls: List[str] = []

    async def known(payload: Dict[str, Any], context: AgentContext) -> str:
        calls.append("known")
        return "ok"

    transport = FakeTransport(tool_reply(("missing", {})), text_reply("recovered"))
    result = await AgentRuntime(make_agent(tool("known", known)), transport).run("task", make_context())

    assert result.success
    assert calls == []
    record = result.tool_calls[0]
    assert not record.success
    assert record.output is None
    assert record.error == "Unknown tool: missing"
    result_block = transport.requests[1].turns[-1].blocks[0]
    assert result_block.is_error
    assert result_block.content == {"error": "Unknown tool: missing"}


@pytest.mark.anyio
async def test_schema_violation_skips_handler() -> None:
    calls: List[Dict[str, Any]] = []

    async def lookup(payload: Dict[str, Any], context: AgentContext) -> str:
        calls.append(payload)
        return "found"

    schema = {
        "type": "object",
        "properties": {"paper_id": {"type": "string"}},
        "required": ["paper_id"],
    }
    transport = FakeTransport(tool_reply(("lookup", {"paper_id": 7})), text_reply("done"))
    result = await AgentRuntime(make_agent(tool("lookup", lookup, schema)), transport).run(
        "task", make_context()
    )

    assert calls == []
    record = result.tool_calls[0]
    assert not record.success
    assert "Invalid input for tool 'lookup' at paper_id" in record.error


@pytest.mark.anyio
async def test_handler_failure_is_not_fatal() -> None:
    async def broken(payload: Dict[str, Any], context: AgentContext) -> None:
        raise LookupError("Patient not found: patient-9")

    transport = FakeTransport(tool_reply(("broken", {})), text_reply("handled"))
    result = await AgentRuntime(make_agent(tool("broken", broken)), transport).run("task", make_context())

    assert result.success
    assert result.output == "handled"
    assert result.tool_calls[0].error == "Patient not found: patient-9"
    assert transport.requests[1].turns[-1].blocks[0].status == "error"


@pytest.mark.anyio
async def test_tool_calls_run_concurrently_but_keep_model_order() -> None:
    second_started = asyncio.Event()

    async def slow(payload: Dict[str, Any], context: AgentContext) -> str:
        await asyncio.wait_for(second_started.wait(), timeout=1)
        return "slow"

    async def fast(payload: Dict[str, Any], context: AgentContext) -> str:
        second_started.set()
        return "fast"

    transport = FakeTransport(tool_reply(("slow", {}), ("fast", {})), text_reply("done"))
    result = await AgentRuntime(
        make_agent(tool("slow", slow), tool("fast", fast)), transport
    ).run("task", make_context())

    assert [record.tool_name for record in result.tool_calls] == ["slow", "fast"]
    assert all(record.success for record in result.tool_calls)
    blocks = transport.requests[1].turns[-1].blocks
    assert [block.content for block in blocks] == ["slow", "fast"]


@pytest.mark.anyio
async def test_list_artifacts_accumulate_within_a_run() -> None:
    async def book(payload: Dict[str, Any], context: AgentContext) -> ToolOutput:
        return ToolOutput(payload="booked", artifacts={"appointments": [{"id": payload["id"]}]})

    schema = {"type": "object", "properties": {"id": {"type": "string"}}}
    transport = FakeTransport(
        tool_reply(("book", {"id": "a"}), ("book", {"id": "b"})),
        tool_reply(("book", {"id": "c"})),
        text_reply("done"),
    )
    result = await AgentRuntime(make_agent(tool("book", book, schema)), transport).run(
        "task", make_context()
    )

    assert result.artifacts == {"appointments": [{"id": "a"}, {"id": "b"}, {"id": "c"}]}


@pytest.mark.anyio
async def test_iteration_limit_preserves_partial_progress() -> None:
    async def step(payload: Dict[str, Any], context: AgentContext) -> ToolOutput:
        return ToolOutput(payload="again", artifacts={"clinical_note_id": "n-1"})

    transport = FakeTransport(tool_reply(("step", {})), tool_reply(("step", {})))
    result = await AgentRuntime(make_agent(tool("step", step), max_iterations=2), transport).run(
        "task", make_context()
    )

    assert not result.success
    assert result.error == "Iteration limit exceeded (2 iterations)"
    assert result.output == "Agent exceeded maximum iteration limit."
    assert len(result.tool_calls) == 2
    assert result.artifacts == {"clinical_note_id": "n-1"}
    assert len(transport.requests) == 2


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("failure", "expected"),
    [
        (ModelServiceError("throttled", transient=True, attempts=3), "Model service temporarily unavailable"),
        (ModelServiceError("bad request", transient=False, attempts=1), "Agent execution failed"),
        (RuntimeError("secret internal detail"), "Agent execution failed"),
    ],
)
async def test_transport_failures_are_sanitised(failure: BaseException, expected: str) -> None:
    result = await AgentRuntime(make_agent(), FakeTransport(failure)).run("task", make_context())

    assert not result.success
    assert result.error == expected
    assert "secret" not in result.error


@pytest.mark.anyio
async def test_unexpected_stop_reason_fails_the_run() -> None:
    reply = ModelResponse(stop_reason=StopReason.OTHER, raw_stop_reason="content_filter")

    result = await AgentRuntime(make_agent(), FakeTransport(reply)).run("task", make_context())

    assert not result.success
    assert result.error == "Unexpected stop reason: content_filter"


@pytest.mark.anyio
async def test_tool_use_without_tool_blocks_is_a_protocol_error() -> None:
    reply = ModelResponse(stop_reason=StopReason.TOOL_USE)

    result = await AgentRuntime(make_agent(), FakeTransport(reply)).run("task", make_context())

    assert not result.success
    assert result.error == "Unexpected stop reason: tool_use"


def without_timings(result: AgentResult) -> AgentResult:
    return dataclasses.replace(
        result,
        duration_ms=0.0,
        tool_calls=tuple(dataclasses.replace(record, duration_ms=0.0) for record in result.tool_calls),
    )


@pytest.mark.anyio
async def test_transient_failures_retried_below_the_runtime_do_not_change_the_result() -> None:
    async def lookup(payload: Dict[str, Any], context: AgentContext) -> ToolOutput:
        return ToolOutput(payload={"found": payload["code"]}, artifacts={"lab_orders": [{"test": "HbA1c"}]})

    schema = {"type": "object", "properties": {"code": {"type": "string"}}, "required": ["code"]}
    agent = make_agent(tool("lookup", lookup, schema))
    call = tool_reply(("lookup", {"code": "E11.9"}))
    answer = text_reply("Looked it up.")
    policy = RetryConfig(
        request_timeout_seconds=5.0, max_retries=2, base_delay_seconds=0.0, max_jitter_seconds=0.0
    )

    clean_client = ScriptedModelClient(call, answer)
    flaky_client = ScriptedModelClient(ConnectionResetError(), asyncio.TimeoutError(), call, answer)
    clean = await AgentRuntime(agent, RetryingTransport(clean_client, policy)).run("task", make_context())
    retried = await AgentRuntime(agent, RetryingTransport(flaky_client, policy)).run("task", make_context())

    assert retried.success
    assert without_timings(retried) == without_timings(clean)
    assert len(flaky_client.requests) == 4
    assert flaky_client.remaining == 0
