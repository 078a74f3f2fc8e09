"""Scripted stand-ins for the remote model used across the test suite."""
from __future__ import annotations

import itertools
from typing import Any, Callable, Dict, List, Tuple, Union

from careflow.core.models import TokenUsage
from careflow.core.protocol import ModelRequest, ModelResponse, StopReason, TextBlock, ToolUseBlock

ScriptItem = Union[ModelResponse, BaseException, Callable[[ModelRequest], ModelResponse]]

_call_ids = itertools.count(1)


def text_reply(*texts: str, stop_reason: StopReason = StopReason.END_TURN) -> ModelResponse:
    return ModelResponse(
        stop_reason=stop_reason,
        content=tuple(TextBlock(text=text) for text in texts),
        usage=TokenUsage(input_tokens=10, output_tokens=5),
    )


def tool_reply(*calls: Tuple[str, Dict[str, Any]]) -> ModelResponse:
    return ModelResponse(
        stop_reason=StopReason.TOOL_USE,
        content=tuple(
            ToolUseBlock(id=f"call_{next(_call_ids)}", name=name, input=payload)
            for name, payload in calls
        ),
        usage=TokenUsage(input_tokens=20, output_tokens=8),
        raw_stop_reason="tool_calls",
    )


class ScriptedModelClient:
    """Answers requests from a fixed script and records every request seen."""

    def __init__(self, *script: ScriptItem) -> None:
        self._script: List[ScriptItem] = list(script)
        self.requests: List[ModelRequest] = []

    @property
    def remaining(self) -> int:
        return len(self._script)

    async def complete(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if not self._script:
            raise AssertionError("Model called more times than scripted")
        item = self._script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(request)
        return item


class FakeTransport(ScriptedModelClient):
    """Transport double: no timeout and no retries, just the script."""

    async def send(self, request: ModelRequest) -> ModelResponse:
        return await self.complete(request)
