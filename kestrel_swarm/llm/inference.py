"""Inference capability contract.

The delegation engine only needs one thing from a language model: given
a composed message history and a tool list, return generated text,
optional tool invocations and token usage. Anything that satisfies
``InferenceClient`` can back a delegation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@dataclass
class ToolDefinition:
    """A tool offered to the model (JSON schema parameters)."""

    name: str
    description: str
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ChatMessage:
    role: str
    content: str = ""
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None


@dataclass
class Usage:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


@dataclass
class ChatRequest:
    messages: List[ChatMessage]
    tools: List[ToolDefinition] = field(default_factory=list)
    model: Optional[str] = None


@dataclass
class ChatResponse:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    stop_reason: str = "end_turn"


class InferenceErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    UNAVAILABLE = "unavailable"
    MALFORMED = "malformed"
    UNKNOWN = "unknown"


class InferenceError(Exception):
    """Failure reported by the inference capability."""

    def __init__(
        self,
        message: str,
        kind: InferenceErrorKind = InferenceErrorKind.UNKNOWN,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind in (InferenceErrorKind.RATE_LIMIT, InferenceErrorKind.UNAVAILABLE)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@runtime_checkable
class InferenceClient(Protocol):
    """Single-shot chat with tool calling."""

    async def chat(self, request: ChatRequest) -> ChatResponse:
        ...
