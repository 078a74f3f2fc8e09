"""Adapter between the neutral tool-use protocol and OpenAI chat completions."""
from __future__ import annotations

import json
import time
from json import JSONDecodeError
from typing import Any, Dict, List, Optional

from careflow.core.logger import log_model_call
from careflow.core.models import TokenUsage
from careflow.core.protocol import (
    ContentBlock,
    ModelRequest,
    ModelResponse,
    Role,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
)
from careflow.services.llm_pool import LLMPool

_FINISH_REASONS = {
    "tool_calls": StopReason.TOOL_USE,
    "stop": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
}


class MalformedResponseError(RuntimeError):
    """Raised when the model service returns a reply that cannot be interpreted."""


class OpenAIToolClient:
    """Send tool-use requests through an OpenAI-compatible chat completions API."""

    def __init__(self, pool: LLMPool) -> None:
        self._pool = pool

    async def complete(self, request: ModelRequest) -> ModelResponse:
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": self.build_messages(request),
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.tools:
            kwargs["tools"] = [self._tool_spec(spec) for spec in request.tools]

        start_time = time.perf_counter()
        async with self._pool.acquire(request.model) as client:
            response = await client.chat.completions.create(**kwargs)
        latency_ms = (time.perf_counter() - start_time) * 1000.0

        parsed = self.parse_response(response)
        log_model_call(
            request.model,
            parsed.usage.input_tokens,
            parsed.usage.output_tokens,
            latency_ms,
            parsed.raw_stop_reason or parsed.stop_reason.value,
        )
        return parsed

    # ------------------------------------------------------------------ #
    # Request translation
    # ------------------------------------------------------------------ #
    @classmethod
    def build_messages(cls, request: ModelRequest) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": request.system_prompt}]
        for turn in request.turns:
            messages.extend(cls._turn_messages(turn))
        return messages

    @staticmethod
    def _turn_messages(turn: Turn) -> List[Dict[str, Any]]:
        text = "\n".join(block.text for block in turn.blocks if isinstance(block, TextBlock))

        if turn.role is Role.ASSISTANT:
            message: Dict[str, Any] = {"role": "assistant", "content": text or None}
            tool_calls = [
                {
                    "id": block.id,
                    "type": "function",
                    "function": {"name": block.name, "arguments": json.dumps(block.input)},
                }
                for block in turn.blocks
                if isinstance(block, ToolUseBlock)
            ]
            if tool_calls:
                message["tool_calls"] = tool_calls
            return [message]

        messages: List[Dict[str, Any]] = [
            {
                "role": "tool",
                "tool_call_id": block.tool_use_id,
                "content": json.dumps({"status": block.status, "content": block.content}, default=str),
            }
            for block in turn.blocks
            if isinstance(block, ToolResultBlock)
        ]
        if text:
            messages.append({"role": "user", "content": text})
        return messages

    @staticmethod
    def _tool_spec(spec: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": spec["name"],
                "description": spec["description"],
                "parameters": spec["input_schema"],
            },
        }

    # ------------------------------------------------------------------ #
    # Response translation
    # ------------------------------------------------------------------ #
    @classmethod
    def parse_response(cls, response: Any) -> ModelResponse:
        choices = getattr(response, "choices", None)
        if not choices:
            raise MalformedResponseError("Model response contained no choices")
        choice = choices[0]
        message = getattr(choice, "message", None)
        if message is None:
            raise MalformedResponseError("Model response contained no message")

        raw_reason: Optional[str] = getattr(choice, "finish_reason", None)
        stop_reason = _FINISH_REASONS.get(raw_reason or "", StopReason.OTHER)

        content: List[ContentBlock] = []
        text = getattr(message, "content", None)
        if text:
            content.append(TextBlock(text=text))
        for call in getattr(message, "tool_calls", None) or []:
            content.append(cls._parse_tool_call(call))

        return ModelResponse(
            stop_reason=stop_reason,
            content=tuple(content),
            usage=cls._extract_usage(response),
            raw_stop_reason=raw_reason,
        )

    @staticmethod
    def _parse_tool_call(call: Any) -> ToolUseBlock:
        function = getattr(call, "function", None)
        if function is None or not getattr(function, "name", None):
            raise MalformedResponseError("Tool call without a function name")
        arguments = getattr(function, "arguments", None) or "{}"
        try:
            payload = json.loads(arguments)
        except JSONDecodeError as exc:
            raise MalformedResponseError(
                f"Tool call '{function.name}' carried non-JSON arguments"
            ) from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"Tool call '{function.name}' arguments must be an object")
        return ToolUseBlock(id=call.id, name=function.name, input=payload)

    @staticmethod
    def _extract_usage(response: Any) -> TokenUsage:
        usage = getattr(response, "usage", None)
        if usage:
            return TokenUsage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            )
        return TokenUsage()
