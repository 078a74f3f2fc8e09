"""Orchestrator that chains the specialised agents into a clinical pipeline."""
from __future__ import annotations

import copy
import secrets
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from careflow.agents.catalog import AgentCatalog
from careflow.agents.prompts import build_task_message
from careflow.agents.runtime import EXECUTION_FAILED_ERROR, AgentRuntime
from careflow.core.logger import bind_correlation_id, get_correlation_id, get_logger, log_error
from careflow.core.models import (
    STEP_ORDER,
    AgentContext,
    AgentResult,
    AgentStep,
    ArtifactSlot,
    PipelineConfig,
    PipelineError,
    PipelineState,
    PipelineStatus,
    fold_artifacts,
    is_slot_value,
    utcnow,
)
from careflow.core.protocol import ModelTransport
from careflow.orchestration.store import PipelineStore

_KNOWN_SLOTS = frozenset(slot.value for slot in ArtifactSlot)


class UnknownStepError(ValueError):
    """Raised when a caller names a step the orchestrator cannot run."""


def _new_run_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def step_failure_message(step: AgentStep) -> str:
    return f'Step "{step.value}" encountered an internal error'


def resolve_step(name: str, catalog: AgentCatalog) -> AgentStep:
    try:
        step = AgentStep(name)
    except ValueError:
        raise UnknownStepError(f"Unknown pipeline step: {name}") from None
    if step not in catalog:
        raise UnknownStepError(f"No agent configured for step: {name}")
    return step


def resolve_steps(requested: Optional[Sequence[str]], catalog: AgentCatalog) -> Tuple[AgentStep, ...]:
    """Filter the fixed step order down to ``requested``, never reordering it."""
    if requested is None:
        return tuple(resolve_step(step.value, catalog) for step in STEP_ORDER)
    if not requested:
        raise UnknownStepError("At least one pipeline step is required")

    unknown = [name for name in requested if name not in {step.value for step in AgentStep}]
    if unknown:
        raise UnknownStepError(f"Unknown pipeline step(s): {', '.join(unknown)}")
    selected = {resolve_step(name, catalog) for name in requested}
    return tuple(step for step in STEP_ORDER if step in selected)


def slot_artifacts(artifacts: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep the well-known slots whose values have the shape later steps read."""
    malformed = [
        key for key, value in artifacts.items() if key in _KNOWN_SLOTS and not is_slot_value(key, value)
    ]
    if malformed:
        get_logger("careflow.orchestration").warning(
            "Dropped malformed artifacts.", extra={"context": {"slots": malformed}}
        )
    return {key: value for key, value in artifacts.items() if is_slot_value(key, value)}


def merge_artifacts(state: PipelineState, result: AgentResult) -> None:
    """Apply a successful step's artifacts to the well-known state slots."""
    fold_artifacts(state.artifacts, slot_artifacts(result.artifacts))


class Orchestrator:
    """Run pipelines step by step and answer status queries for them."""

    def __init__(
        self,
        *,
        catalog: AgentCatalog,
        transport: ModelTransport,
        store: PipelineStore,
    ) -> None:
        self._catalog = catalog
        self._store = store
        self._runtimes: Dict[AgentStep, AgentRuntime] = {
            step: AgentRuntime(catalog.get(step), transport) for step in catalog
        }
        self._logger = get_logger("careflow.orchestration")

    async def run_pipeline(self, config: PipelineConfig) -> PipelineState:
        """Execute the configured steps in order, stopping at the first failure."""
        steps = resolve_steps(config.steps, self._catalog)
        state = PipelineState(
            pipeline_id=_new_run_id("pipe"),
            patient_id=config.patient_id,
            provider_id=config.provider_id,
            transcript=config.transcript or None,
            current_step=steps[0].value,
        )

        previous_correlation_id = get_correlation_id()
        bind_correlation_id(state.pipeline_id)
        self._logger.info(
            "Pipeline started.",
            extra={"context": {"steps": [step.value for step in steps], "patient_id": state.patient_id}},
        )
        try:
            async with self._store.claim(state) as lease:
                for step in steps:
                    state.current_step = step.value
                    lease.publish(state)

                    try:
                        result = await self._run_step(step, state)
                    except Exception as exc:  # noqa: BLE001
                        log_error(exc, {"pipeline_id": state.pipeline_id, "step": step.value})
                        state.errors.append(
                            PipelineError(step=step.value, error=step_failure_message(step))
                        )
                        state.status = PipelineStatus.FAILED
                        break
                    state.step_results[step.value] = result
                    if not result.success:
                        state.errors.append(
                            PipelineError(step=step.value, error=result.error or EXECUTION_FAILED_ERROR)
                        )
                        state.status = PipelineStatus.FAILED
                        break
                    merge_artifacts(state, result)
                else:
                    state.status = PipelineStatus.COMPLETED

                state.current_step = None
                state.completed_at = utcnow()
                lease.publish(state)

            self._logger.info(
                "Pipeline finished.",
                extra={
                    "context": {
                        "status": state.status.value,
                        "steps_run": len(state.step_results),
                        "errors": len(state.errors),
                    }
                },
            )
        finally:
            bind_correlation_id(previous_correlation_id)
        return copy.deepcopy(state)

    async def run_single_agent(
        self,
        step_name: str,
        config: PipelineConfig,
        extra_context: Optional[Mapping[str, Any]] = None,
    ) -> AgentResult:
        """Run one agent against a throwaway state that is never stored."""
        step = resolve_step(step_name, self._catalog)
        state = PipelineState(
            pipeline_id=_new_run_id("single"),
            patient_id=config.patient_id,
            provider_id=config.provider_id,
            transcript=config.transcript or None,
            current_step=step.value,
        )
        if extra_context:
            fold_artifacts(state.artifacts, copy.deepcopy(slot_artifacts(extra_context)))

        previous_correlation_id = get_correlation_id()
        bind_correlation_id(state.pipeline_id)
        try:
            return await self._run_step(step, state)
        finally:
            bind_correlation_id(previous_correlation_id)

    def get_status(self, pipeline_id: str) -> Optional[PipelineState]:
        return self._store.get(pipeline_id)

    def list_pipelines(self) -> List[PipelineState]:
        return self._store.list()

    async def _run_step(self, step: AgentStep, state: PipelineState) -> AgentResult:
        snapshot = copy.deepcopy(state)
        context = AgentContext(
            patient_id=state.patient_id,
            provider_id=state.provider_id,
            pipeline_state=snapshot,
        )
        return await self._runtimes[step].run(build_task_message(step, snapshot), context)
