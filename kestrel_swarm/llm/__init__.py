"""Inference capability: the contract and an HTTP implementation."""

from kestrel_swarm.llm.http_client import HTTPClientWrapper, OpenAICompatibleClient
from kestrel_swarm.llm.inference import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    InferenceClient,
    InferenceError,
    InferenceErrorKind,
    ToolCall,
    ToolDefinition,
    Usage,
)

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "InferenceClient",
    "InferenceError",
    "InferenceErrorKind",
    "ToolCall",
    "ToolDefinition",
    "Usage",
    "HTTPClientWrapper",
    "OpenAICompatibleClient",
]
