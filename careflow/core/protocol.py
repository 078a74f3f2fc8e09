"""Provider-neutral shapes of the remote model's tool-use protocol."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

from careflow.core.models import TokenUsage


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class StopReason(str, Enum):
    """Why the model stopped generating."""

    TOOL_USE = "tool_use"
    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    OTHER = "other"


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    """A request from the model to execute one declared tool."""

    id: str
    name: str
    input: Dict[str, Any]


@dataclass(frozen=True)
class ToolResultBlock:
    """Result of a tool call, paired to the request by ``tool_use_id``."""

    tool_use_id: str
    content: Any
    is_error: bool = False

    @property
    def status(self) -> str:
        return "error" if self.is_error else "success"


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


@dataclass(frozen=True)
class Turn:
    role: Role
    blocks: Tuple[ContentBlock, ...]


@dataclass(frozen=True)
class ModelRequest:
    model: str
    system_prompt: str
    turns: Tuple[Turn, ...]
    tools: Tuple[Dict[str, Any], ...] = ()
    temperature: float = 0.1
    max_tokens: int = 4096


@dataclass(frozen=True)
class ModelResponse:
    stop_reason: StopReason
    content: Tuple[ContentBlock, ...] = ()
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw_stop_reason: Optional[str] = None

    def text(self) -> str:
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))

    def tool_uses(self) -> List[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]


class ModelClient(Protocol):
    """Anything able to answer a single tool-use request."""

    async def complete(self, request: ModelRequest) -> ModelResponse: ...


class ModelTransport(Protocol):
    """Reliable request path used by the agent runtime."""

    async def send(self, request: ModelRequest) -> ModelResponse: ...
