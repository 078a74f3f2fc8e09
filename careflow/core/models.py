"""Core data models shared across runtime and orchestrator components."""
from __future__ import annotations

import collections.abc
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

# Reserved key a handler may use to hand artifacts to the orchestrator.
ARTIFACTS_KEY = "_artifacts"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentStep(str, Enum):
    """Pipeline steps, one per specialised agent."""

    CLINICAL_DOCUMENTATION = "clinical-documentation"
    MEDICAL_TRANSLATOR = "medical-translator"
    PREDICTIVE_ANALYTICS = "predictive-analytics"
    RESEARCH_SYNTHESIS = "research-synthesis"
    WORKFLOW_AUTOMATION = "workflow-automation"


STEP_ORDER: Tuple[AgentStep, ...] = (
    AgentStep.CLINICAL_DOCUMENTATION,
    AgentStep.MEDICAL_TRANSLATOR,
    AgentStep.PREDICTIVE_ANALYTICS,
    AgentStep.RESEARCH_SYNTHESIS,
    AgentStep.WORKFLOW_AUTOMATION,
)


class ArtifactSlot(str, Enum):
    """Well-known artifact slots carried from one pipeline step to the next."""

    CLINICAL_NOTE_ID = "clinical_note_id"
    CLINICAL_NOTE = "clinical_note"
    TRANSLATION = "translation"
    RISK_ASSESSMENT_ID = "risk_assessment_id"
    RISK_ASSESSMENT = "risk_assessment"
    RESEARCH_RESULTS = "research_results"
    APPOINTMENTS = "appointments"
    INSURANCE_CLAIMS = "insurance_claims"
    LAB_ORDERS = "lab_orders"


# Slots whose values accumulate across tool calls and steps instead of being replaced.
LIST_SLOTS = frozenset(
    slot.value
    for slot in (ArtifactSlot.APPOINTMENTS, ArtifactSlot.INSURANCE_CLAIMS, ArtifactSlot.LAB_ORDERS)
)


_SLOT_SHAPES: Dict[str, Tuple[type, ...]] = {
    ArtifactSlot.CLINICAL_NOTE_ID.value: (str,),
    ArtifactSlot.RISK_ASSESSMENT_ID.value: (str,),
    ArtifactSlot.CLINICAL_NOTE.value: (collections.abc.Mapping,),
    ArtifactSlot.TRANSLATION.value: (collections.abc.Mapping,),
    ArtifactSlot.RISK_ASSESSMENT.value: (collections.abc.Mapping,),
    ArtifactSlot.RESEARCH_RESULTS.value: (collections.abc.Mapping,),
    # A single mapping is folded into a one-element list.
    **{slot: (list, tuple, collections.abc.Mapping) for slot in LIST_SLOTS},
}


def is_slot_value(key: str, value: Any) -> bool:
    """Return True when ``key`` is a well-known slot and ``value`` has the slot's shape."""
    shapes = _SLOT_SHAPES.get(key)
    return shapes is not None and isinstance(value, shapes)


def fold_artifacts(target: Dict[str, Any], incoming: Mapping[str, Any]) -> None:
    """Fold ``incoming`` into ``target``: list slots accumulate, other keys are replaced."""
    for key, value in incoming.items():
        if key in LIST_SLOTS:
            items = list(value) if isinstance(value, (list, tuple)) else [value]
            target[key] = [*(target.get(key) or []), *items]
        else:
            target[key] = value


class PipelineStatus(str, Enum):
    """Lifecycle states of a pipeline run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


ToolHandler = Callable[[Dict[str, Any], "AgentContext"], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    """A named capability the model may invoke during an agent run."""

    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler

    def spec(self) -> Dict[str, Any]:
        """Return the declaration sent to the model (handler excluded)."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass(frozen=True)
class ToolOutput:
    """Two-part handler return: what the model sees and what the orchestrator keeps."""

    payload: Any
    artifacts: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallRecord:
    """Audit entry for a single tool invocation."""

    tool_name: str
    tool_use_id: str
    input: Any
    output: Any
    duration_ms: float
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "tool_use_id": self.tool_use_id,
            "input": self.input,
            "output": self.output,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
        }


@dataclass(frozen=True)
class AgentConfig:
    """Static configuration of one agent, shared read-only across runs."""

    name: str
    description: str
    model: str
    system_prompt: str
    tools: Tuple[ToolDefinition, ...] = ()
    max_iterations: int = 8
    temperature: float = 0.1
    max_tokens: int = 4096


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(frozen=True)
class AgentResult:
    """Outcome of one agent run, successful or not."""

    agent_name: str
    success: bool
    output: str
    tool_calls: Tuple[ToolCallRecord, ...] = ()
    artifacts: Dict[str, Any] = field(default_factory=dict)
    usage: TokenUsage = field(default_factory=TokenUsage)
    duration_ms: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "success": self.success,
            "output": self.output,
            "tool_calls": [record.to_dict() for record in self.tool_calls],
            "artifacts": self.artifacts,
            "tokens_used": {
                "input": self.usage.input_tokens,
                "output": self.usage.output_tokens,
            },
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass(frozen=True)
class PipelineError:
    step: str
    error: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class PipelineState:
    """Unit of work tracked by the orchestrator for a single pipeline run."""

    pipeline_id: str
    patient_id: str
    provider_id: str
    transcript: Optional[str] = None
    step_results: Dict[str, AgentResult] = field(default_factory=dict)
    artifacts: Dict[str, Any] = field(default_factory=dict)
    errors: List[PipelineError] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    current_step: Optional[str] = None
    status: PipelineStatus = PipelineStatus.RUNNING

    def artifact(self, slot: ArtifactSlot, default: Any = None) -> Any:
        return self.artifacts.get(slot.value, default)

    @property
    def clinical_note_id(self) -> Optional[str]:
        return self.artifact(ArtifactSlot.CLINICAL_NOTE_ID)

    @property
    def clinical_note(self) -> Optional[Dict[str, Any]]:
        return self.artifact(ArtifactSlot.CLINICAL_NOTE)

    @property
    def risk_assessment(self) -> Optional[Dict[str, Any]]:
        return self.artifact(ArtifactSlot.RISK_ASSESSMENT)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON serialisable view of the state."""
        return {
            "pipeline_id": self.pipeline_id,
            "patient_id": self.patient_id,
            "provider_id": self.provider_id,
            "transcript": self.transcript,
            "status": self.status.value,
            "current_step": self.current_step,
            "step_results": {
                step: result.to_dict() for step, result in self.step_results.items()
            },
            "artifacts": self.artifacts,
            "errors": [
                {
                    "step": error.step,
                    "error": error.error,
                    "timestamp": error.timestamp.isoformat(),
                }
                for error in self.errors
            ],
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(slots=True)
class AgentContext:
    """Per-run context handed to every tool handler."""

    patient_id: str
    provider_id: str
    pipeline_state: PipelineState


@dataclass(frozen=True)
class PipelineConfig:
    """Caller-supplied parameters of a pipeline or single-agent run."""

    patient_id: str
    provider_id: str
    transcript: str = ""
    steps: Optional[Sequence[str]] = None
