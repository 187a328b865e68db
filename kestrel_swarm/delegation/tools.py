"""Delegation tool set.

The tools a running delegation can call, filtered by depth. Hiding
``delegate_task`` one level short of the limit is the only thing that
stops runaway recursion, so the set is derived per delegation from its
own depth and never cached across depths.
"""

from typing import Any, Dict, List, Protocol, runtime_checkable

from kestrel_swarm.llm.inference import ToolDefinition

DELEGATE_TASK = "delegate_task"
LIST_SUB_AGENTS = "list_sub_agents"
GET_DELEGATION_RESULT = "get_delegation_result"

DELEGATION_TOOL_NAMES = frozenset({DELEGATE_TASK, LIST_SUB_AGENTS, GET_DELEGATION_RESULT})


def delegate_task_tool() -> ToolDefinition:
    return ToolDefinition(
        name=DELEGATE_TASK,
        description=(
            "Delegate a sub-task to a specialised agent profile. "
            "Blocks until the sub-agent finishes and returns its result."
        ),
        parameters={
            "type": "object",
            "properties": {
                "profile": {
                    "type": "string",
                    "description": "Name or id of the agent profile to delegate to",
                },
                "task": {
                    "type": "string",
                    "description": "The task for the sub-agent",
                },
                "context": {
                    "type": "string",
                    "description": "Optional background the sub-agent needs",
                },
                "maxTokenBudget": {
                    "type": "integer",
                    "description": "Optional token ceiling for the sub-agent",
                },
            },
            "required": ["profile", "task"],
        },
    )


def list_sub_agents_tool() -> ToolDefinition:
    return ToolDefinition(
        name=LIST_SUB_AGENTS,
        description="List the delegations that are currently active",
        parameters={"type": "object", "properties": {}},
    )


def get_delegation_result_tool() -> ToolDefinition:
    return ToolDefinition(
        name=GET_DELEGATION_RESULT,
        description="Get the status and result of a delegation by id",
        parameters={
            "type": "object",
            "properties": {
                "delegationId": {
                    "type": "string",
                    "description": "Id of the delegation to look up",
                },
            },
            "required": ["delegationId"],
        },
    )


def tools_for(current_depth: int, max_depth: int) -> List[ToolDefinition]:
    """Return the delegation tools visible at ``current_depth``.

    ``delegate_task`` is included unless ``current_depth >= max_depth - 1``.
    Pure: no side effects, no I/O.
    """
    tools = []
    if current_depth < max_depth - 1:
        tools.append(delegate_task_tool())
    tools.append(list_sub_agents_tool())
    tools.append(get_delegation_result_tool())
    return tools


@runtime_checkable
class ToolExecutor(Protocol):
    """External (non-delegation) tools, e.g. an MCP bridge."""

    def list_tools(self) -> List[ToolDefinition]:
        ...

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        ...


def filter_allowed(tools: List[ToolDefinition], allowed: List[str]) -> List[ToolDefinition]:
    """Keep the tools a profile allows; an empty allow-list allows all."""
    if not allowed:
        return list(tools)
    allowed_set = set(allowed)
    return [t for t in tools if t.name in allowed_set]
