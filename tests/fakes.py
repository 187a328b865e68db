"""Test doubles: a scripted inference client and response builders."""

import asyncio
import inspect
import itertools
from typing import Any, Callable, Dict, List, Optional, Union

from kestrel_swarm.delegation.engine import DelegationEngine
from kestrel_swarm.llm.inference import ChatRequest, ChatResponse, ToolCall, ToolDefinition, Usage

_call_ids = itertools.count(1)


def reply(text: str = "done", prompt: int = 10, completion: int = 5) -> ChatResponse:
    """A final answer with no tool calls."""
    return ChatResponse(content=text, usage=Usage(input=prompt, output=completion))


def tool_call(
    name: str, arguments: Optional[Dict[str, Any]] = None, prompt: int = 10, completion: int = 5
) -> ChatResponse:
    """A response asking for one tool call."""
    return ChatResponse(
        content="",
        tool_calls=[ToolCall(id=f"call_{next(_call_ids)}", name=name, arguments=arguments or {})],
        usage=Usage(input=prompt, output=completion),
        stop_reason="tool_use",
    )


async def hang(request: ChatRequest) -> ChatResponse:
    """Never answers; used to hold a delegation in ``running``."""
    await asyncio.sleep(3600)
    return reply()


ScriptStep = Union[ChatResponse, BaseException, Callable[[ChatRequest], Any]]


class ScriptedInference:
    """Fake InferenceClient.

    Responses are scripted per system prompt and consumed in order. A step
    may be a ChatResponse, an exception to raise, or a (possibly async)
    callable taking the request. Once a script runs out the default reply
    is returned.
    """

    def __init__(self, default: Optional[ChatResponse] = None):
        self.default = default or reply()
        self.scripts: Dict[str, List[ScriptStep]] = {}
        self.requests: List[ChatRequest] = []

    def on(self, system_prompt: str, *steps: ScriptStep) -> "ScriptedInference":
        self.scripts.setdefault(system_prompt, []).extend(steps)
        return self

    def requests_for(self, system_prompt: str) -> List[ChatRequest]:
        return [r for r in self.requests if r.messages[0].content == system_prompt]

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        script = self.scripts.get(request.messages[0].content, [])
        if not script:
            return self.default
        step = script.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            result = step(request)
            if inspect.isawaitable(result):
                result = await result
            return result
        return step


class FakeToolExecutor:
    """External tools backed by plain callables."""

    def __init__(self, **tools: Callable[[Dict[str, Any]], Any]):
        self.tools = tools
        self.calls: List[tuple] = []

    def list_tools(self) -> List[ToolDefinition]:
        return [ToolDefinition(name=name, description=f"{name} tool") for name in self.tools]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        self.calls.append((name, arguments))
        return self.tools[name](arguments)


async def make_profile(engine: DelegationEngine, name: str, **fields: Any):
    """Create a custom profile whose system prompt is its own name."""
    fields.setdefault("system_prompt", name)
    fields.setdefault("max_token_budget", 100_000)
    return await engine.create_profile(name=name, **fields)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
