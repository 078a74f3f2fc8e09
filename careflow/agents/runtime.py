"""Bounded tool-use conversation between one agent and the remote model."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

from careflow.core.logger import get_logger, log_agent_step, log_error
from careflow.core.models import (
    ARTIFACTS_KEY,
    AgentConfig,
    AgentContext,
    AgentResult,
    TokenUsage,
    ToolCallRecord,
    ToolOutput,
    fold_artifacts,
)
from careflow.core.protocol import (
    ModelRequest,
    ModelTransport,
    Role,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
)
from careflow.core.tools import ToolInputError, ToolRegistry
from careflow.services.transport import ModelServiceError

SERVICE_UNAVAILABLE_ERROR = "Model service temporarily unavailable"
EXECUTION_FAILED_ERROR = "Agent execution failed"
ITERATION_LIMIT_OUTPUT = "Agent exceeded maximum iteration limit."


@dataclass
class _RunProgress:
    """Everything a run has accumulated so far, kept even when it fails."""

    started: float = field(default_factory=time.perf_counter)
    iterations: int = 0
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    artifacts: Dict[str, Any] = field(default_factory=dict)
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000.0


class AgentRuntime:
    """Drive one agent through request, tool dispatch and final answer.

    ``run`` never raises: transport failures, protocol errors and the
    iteration cap are all reported as ``AgentResult(success=False)``.
    """

    def __init__(self, config: AgentConfig, transport: ModelTransport) -> None:
        self.config = config
        self._transport = transport
        self._registry = ToolRegistry(config.tools)
        self._tool_specs = self._registry.specs()
        self._logger = get_logger("careflow.agents.runtime")

    async def run(self, task: str, context: AgentContext) -> AgentResult:
        progress = _RunProgress()
        transcript: List[Turn] = [Turn(role=Role.USER, blocks=(TextBlock(text=task),))]
        self._logger.info("Agent '%s' starting run.", self.config.name)

        for iteration in range(1, self.config.max_iterations + 1):
            progress.iterations = iteration
            request = ModelRequest(
                model=self.config.model,
                system_prompt=self.config.system_prompt,
                turns=tuple(transcript),
                tools=self._tool_specs,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )

            try:
                response = await self._transport.send(request)
            except ModelServiceError as exc:
                message = SERVICE_UNAVAILABLE_ERROR if exc.transient else EXECUTION_FAILED_ERROR
                return self._failure(progress, message)
            except Exception as exc:  # noqa: BLE001
                log_error(exc, {"agent": self.config.name, "iteration": iteration})
                return self._failure(progress, EXECUTION_FAILED_ERROR)

            progress.usage = progress.usage + response.usage
            transcript.append(Turn(role=Role.ASSISTANT, blocks=response.content))

            requested = response.tool_uses()
            if response.stop_reason is StopReason.TOOL_USE and requested:
                results = await self._dispatch(requested, context, progress)
                transcript.append(Turn(role=Role.USER, blocks=results))
                continue

            if response.stop_reason in (StopReason.END_TURN, StopReason.MAX_TOKENS):
                result = AgentResult(
                    agent_name=self.config.name,
                    success=True,
                    output=response.text(),
                    tool_calls=tuple(progress.tool_calls),
                    artifacts=dict(progress.artifacts),
                    usage=progress.usage,
                    duration_ms=progress.elapsed_ms,
                )
                self._log_outcome(progress, result)
                return result

            raw = response.raw_stop_reason or response.stop_reason.value
            return self._failure(progress, f"Unexpected stop reason: {raw}")

        return self._failure(
            progress,
            f"Iteration limit exceeded ({self.config.max_iterations} iterations)",
            output=ITERATION_LIMIT_OUTPUT,
        )

    async def _dispatch(
        self,
        requested: List[ToolUseBlock],
        context: AgentContext,
        progress: _RunProgress,
    ) -> Tuple[ToolResultBlock, ...]:
        # gather preserves argument order, so results line up with the model's request order.
        outcomes = await asyncio.gather(*(self._execute(block, context) for block in requested))
        blocks: List[ToolResultBlock] = []
        for record, artifacts in outcomes:
            progress.tool_calls.append(record)
            fold_artifacts(progress.artifacts, artifacts)
            content = record.output if record.success else {"error": record.error}
            blocks.append(
                ToolResultBlock(tool_use_id=record.tool_use_id, content=content, is_error=not record.success)
            )
        return tuple(blocks)

    async def _execute(
        self, block: ToolUseBlock, context: AgentContext
    ) -> Tuple[ToolCallRecord, Mapping[str, Any]]:
        tool = self._registry.get(block.name)
        started = time.perf_counter()

        def record(output: Any, success: bool, error: str | None = None) -> ToolCallRecord:
            return ToolCallRecord(
                tool_name=block.name,
                tool_use_id=block.id,
                input=block.input,
                output=output,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                success=success,
                error=error,
            )

        if tool is None:
            return record(None, False, f"Unknown tool: {block.name}"), {}

        self._logger.debug("Agent '%s' calling tool '%s'.", self.config.name, block.name)
        try:
            self._registry.validate_input(block.name, block.input)
            raw = await tool.handler(block.input, context)
        except ToolInputError as exc:
            return record(None, False, str(exc)), {}
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "Tool '%s' failed: %s", block.name, exc, extra={"context": {"agent": self.config.name}}
            )
            return record(None, False, str(exc) or type(exc).__name__), {}

        payload, artifacts = split_artifacts(raw)
        return record(payload, True), artifacts

    def _failure(self, progress: _RunProgress, error: str, *, output: str = "") -> AgentResult:
        result = AgentResult(
            agent_name=self.config.name,
            success=False,
            output=output,
            tool_calls=tuple(progress.tool_calls),
            artifacts=dict(progress.artifacts),
            usage=progress.usage,
            duration_ms=progress.elapsed_ms,
            error=error,
        )
        self._log_outcome(progress, result)
        return result

    def _log_outcome(self, progress: _RunProgress, result: AgentResult) -> None:
        log_agent_step(
            self.config.name,
            success=result.success,
            iterations=progress.iterations,
            tool_calls=len(result.tool_calls),
            duration_ms=result.duration_ms,
            error=result.error,
        )


def split_artifacts(raw: Any) -> Tuple[Any, Mapping[str, Any]]:
    """Separate the model-visible payload from artifacts meant for the orchestrator."""
    if isinstance(raw, ToolOutput):
        return raw.payload, dict(raw.artifacts)
    if isinstance(raw, Mapping) and ARTIFACTS_KEY in raw:
        artifacts = raw[ARTIFACTS_KEY]
        payload = {key: value for key, value in raw.items() if key != ARTIFACTS_KEY}
        return payload, dict(artifacts) if isinstance(artifacts, Mapping) else {}
    return raw, {}
