"""HTTP API exposing pipeline runs, status queries and single-agent runs."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from careflow.core.models import AgentResult, PipelineConfig, PipelineState, ToolCallRecord
from careflow.orchestration.orchestrator import Orchestrator, UnknownStepError
from careflow.runtime import get_orchestrator

pipelines_router = APIRouter(prefix="/pipelines", tags=["pipelines"])
agents_router = APIRouter(prefix="/agents", tags=["agents"])


class PipelineRunRequest(BaseModel):
    patient_id: str = Field(..., min_length=1, description="Subject of the pipeline run")
    provider_id: str = Field(..., min_length=1, description="Provider acting on the patient's behalf")
    transcript: str = Field("", description="Encounter transcript handed to the documentation step")
    steps: Optional[List[str]] = Field(
        None, description="Subset of steps to run; order is always the fixed pipeline order"
    )

    def to_config(self) -> PipelineConfig:
        return PipelineConfig(
            patient_id=self.patient_id,
            provider_id=self.provider_id,
            transcript=self.transcript,
            steps=self.steps,
        )


class AgentRunRequest(BaseModel):
    patient_id: str = Field(..., min_length=1)
    provider_id: str = Field(..., min_length=1)
    transcript: str = ""
    context: Dict[str, Any] = Field(
        default_factory=dict, description="Artifacts from earlier runs, keyed by slot name"
    )


class ToolCallResponse(BaseModel):
    tool_name: str
    tool_use_id: str
    input: Any
    output: Any
    duration_ms: float
    success: bool
    error: Optional[str]

    @classmethod
    def from_record(cls, record: ToolCallRecord) -> "ToolCallResponse":
        return cls(**record.to_dict())


class TokensUsedResponse(BaseModel):
    input: int
    output: int


class AgentResultResponse(BaseModel):
    agent_name: str
    success: bool
    output: str
    tool_calls: List[ToolCallResponse]
    artifacts: Dict[str, Any]
    tokens_used: TokensUsedResponse
    duration_ms: float
    error: Optional[str]

    @classmethod
    def from_result(cls, result: AgentResult) -> "AgentResultResponse":
        return cls(
            agent_name=result.agent_name,
            success=result.success,
            output=result.output,
            tool_calls=[ToolCallResponse.from_record(record) for record in result.tool_calls],
            artifacts=result.artifacts,
            tokens_used=TokensUsedResponse(
                input=result.usage.input_tokens, output=result.usage.output_tokens
            ),
            duration_ms=result.duration_ms,
            error=result.error,
        )


class PipelineErrorResponse(BaseModel):
    step: str
    error: str
    timestamp: datetime


class PipelineResponse(BaseModel):
    pipeline_id: str
    patient_id: str
    provider_id: str
    transcript: Optional[str]
    status: str
    current_step: Optional[str]
    step_results: Dict[str, AgentResultResponse]
    artifacts: Dict[str, Any]
    errors: List[PipelineErrorResponse]
    started_at: datetime
    completed_at: Optional[datetime]

    @classmethod
    def from_state(cls, state: PipelineState) -> "PipelineResponse":
        return cls(
            pipeline_id=state.pipeline_id,
            patient_id=state.patient_id,
            provider_id=state.provider_id,
            transcript=state.transcript,
            status=state.status.value,
            current_step=state.current_step,
            step_results={
                step: AgentResultResponse.from_result(result)
                for step, result in state.step_results.items()
            },
            artifacts=state.artifacts,
            errors=[
                PipelineErrorResponse(step=error.step, error=error.error, timestamp=error.timestamp)
                for error in state.errors
            ],
            started_at=state.started_at,
            completed_at=state.completed_at,
        )


@pipelines_router.post("", response_model=PipelineResponse, status_code=status.HTTP_201_CREATED)
async def run_pipeline(
    request: PipelineRunRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> PipelineResponse:
    try:
        state = await orchestrator.run_pipeline(request.to_config())
    except UnknownStepError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return PipelineResponse.from_state(state)


@pipelines_router.get("", response_model=List[PipelineResponse])
async def list_pipelines(orchestrator: Orchestrator = Depends(get_orchestrator)) -> List[PipelineResponse]:
    return [PipelineResponse.from_state(state) for state in orchestrator.list_pipelines()]


@pipelines_router.get("/{pipeline_id}", response_model=PipelineResponse)
async def get_pipeline(
    pipeline_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> PipelineResponse:
    state = orchestrator.get_status(pipeline_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown pipeline")
    return PipelineResponse.from_state(state)


@agents_router.post("/{step}/run", response_model=AgentResultResponse)
async def run_agent(
    step: str,
    request: AgentRunRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AgentResultResponse:
    config = PipelineConfig(
        patient_id=request.patient_id,
        provider_id=request.provider_id,
        transcript=request.transcript,
    )
    try:
        result = await orchestrator.run_single_agent(step, config, request.context)
    except UnknownStepError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return AgentResultResponse.from_result(result)
