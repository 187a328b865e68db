"""
HTTP inference client with retry logic and error mapping.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint and maps
transport and provider failures onto InferenceErrorKind so the delegation
engine can record them as failed delegations.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from kestrel_swarm.core.settings import InferenceSettings
from kestrel_swarm.llm.inference import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    InferenceError,
    InferenceErrorKind,
    ToolCall,
    ToolDefinition,
    Usage,
)


logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


class HTTPClientWrapper:
    """Wrapper for httpx with exponential backoff"""

    def __init__(
        self,
        base_timeout: float = 120.0,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 32.0,
        backoff_multiplier: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_timeout = base_timeout
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self._transport = transport

    async def post(
        self,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """POST request with retry logic"""
        actual_timeout = timeout if timeout is not None else self.base_timeout
        last_error: Optional[InferenceError] = None

        for attempt in range(self.max_retries + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=actual_timeout, transport=self._transport
                ) as client:
                    response = await client.post(url=url, json=json, headers=headers)
            except httpx.TimeoutException as e:
                last_error = InferenceError(
                    f"Request timed out: {e}", InferenceErrorKind.UNAVAILABLE
                )
            except httpx.RequestError as e:
                last_error = InferenceError(
                    f"Network error: {e}", InferenceErrorKind.UNAVAILABLE
                )
            else:
                if response.status_code < 400:
                    return response
                last_error = self._error_for_status(response)
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    raise last_error

            if attempt < self.max_retries:
                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    f"{last_error} on attempt {attempt + 1}/{self.max_retries + 1}: {url}. "
                    f"Retrying in {backoff}s..."
                )
                await asyncio.sleep(backoff)

        assert last_error is not None
        raise InferenceError(
            f"Failed after {self.max_retries + 1} attempts: {last_error.message}",
            last_error.kind,
            last_error.status_code,
        )

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff delay"""
        backoff = min(
            self.initial_backoff * (self.backoff_multiplier ** attempt),
            self.max_backoff,
        )
        return float(backoff)

    def _error_for_status(self, response: httpx.Response) -> InferenceError:
        status_code = response.status_code

        if status_code in (401, 403):
            return InferenceError(
                "Authentication failed: Invalid or expired API key",
                InferenceErrorKind.AUTH,
                status_code,
            )
        if status_code == 429:
            retry_after = response.headers.get("Retry-After", "60")
            return InferenceError(
                f"Rate limit exceeded. Retry after {retry_after}s",
                InferenceErrorKind.RATE_LIMIT,
                status_code,
            )
        if status_code >= 500:
            return InferenceError(
                f"Server error: {status_code}", InferenceErrorKind.UNAVAILABLE, status_code
            )
        return InferenceError(
            f"HTTP error {status_code}: {response.text[:200]}",
            InferenceErrorKind.UNKNOWN,
            status_code,
        )


class OpenAICompatibleClient:
    """InferenceClient for OpenAI-style chat completion endpoints."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        http: Optional[HTTPClientWrapper] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.http = http or HTTPClientWrapper()

    @classmethod
    def from_settings(cls, config: InferenceSettings) -> "OpenAICompatibleClient":
        return cls(
            base_url=config.base_url,
            model=config.model,
            api_key=config.api_key.get_secret_value() if config.api_key else None,
            http=HTTPClientWrapper(
                base_timeout=config.request_timeout, max_retries=config.max_retries
            ),
        )

    async def chat(self, request: ChatRequest) -> ChatResponse:
        payload: Dict[str, Any] = {
            "model": request.model or self.model,
            "messages": [_message_to_wire(m) for m in request.messages],
        }
        if request.tools:
            payload["tools"] = [_tool_to_wire(t) for t in request.tools]

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = await self.http.post(
            f"{self.base_url}/chat/completions", json=payload, headers=headers
        )
        try:
            return _parse_response(response.json())
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise InferenceError(
                f"Malformed chat completion response: {e}", InferenceErrorKind.MALFORMED
            ) from e


def _message_to_wire(message: ChatMessage) -> Dict[str, Any]:
    wire: Dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        wire["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in message.tool_calls
        ]
    if message.tool_call_id:
        wire["tool_call_id"] = message.tool_call_id
    return wire


def _tool_to_wire(tool: ToolDefinition) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


def _parse_response(data: Dict[str, Any]) -> ChatResponse:
    choice = data["choices"][0]
    message = choice["message"]

    tool_calls: List[ToolCall] = []
    for raw in message.get("tool_calls") or []:
        function = raw["function"]
        arguments = function.get("arguments") or "{}"
        tool_calls.append(
            ToolCall(
                id=raw["id"],
                name=function["name"],
                arguments=json.loads(arguments) if isinstance(arguments, str) else arguments,
            )
        )

    usage = data.get("usage") or {}
    finish_reason = choice.get("finish_reason") or "stop"
    return ChatResponse(
        content=message.get("content") or "",
        tool_calls=tool_calls,
        usage=Usage(
            input=int(usage.get("prompt_tokens", 0)),
            output=int(usage.get("completion_tokens", 0)),
        ),
        stop_reason="tool_use" if finish_reason == "tool_calls" else "end_turn",
    )
