"""Tests for the depth-filtered delegation tool set."""

import pytest

from kestrel_swarm.delegation.tools import (
    DELEGATE_TASK,
    GET_DELEGATION_RESULT,
    LIST_SUB_AGENTS,
    filter_allowed,
    tools_for,
)
from kestrel_swarm.llm.inference import ToolDefinition


def _names(tools):
    return [t.name for t in tools]


class TestToolsFor:
    """tools_for hides delegate_task one level short of the limit."""

    @pytest.mark.parametrize("max_depth", [2, 3, 5])
    def test_last_allowed_depth_cannot_delegate(self, max_depth):
        """At depth = max_depth - 1 the delegate tool is gone."""
        names = _names(tools_for(max_depth - 1, max_depth))
        assert DELEGATE_TASK not in names
        assert LIST_SUB_AGENTS in names
        assert GET_DELEGATION_RESULT in names

    @pytest.mark.parametrize("max_depth", [2, 3, 5])
    def test_one_level_above_can_delegate(self, max_depth):
        """At depth = max_depth - 2 the delegate tool is still offered."""
        assert DELEGATE_TASK in _names(tools_for(max_depth - 2, max_depth))

    def test_max_depth_one_never_delegates(self):
        """A root with max_depth 1 only gets the read-only tools."""
        assert _names(tools_for(0, 1)) == [LIST_SUB_AGENTS, GET_DELEGATION_RESULT]

    def test_rederived_per_call(self):
        """Results at one depth do not leak into another."""
        shallow = tools_for(0, 3)
        deep = tools_for(2, 3)
        assert DELEGATE_TASK in _names(shallow)
        assert DELEGATE_TASK not in _names(deep)
        assert shallow is not deep

    def test_delegate_schema_requires_profile_and_task(self):
        """The delegate tool declares its required arguments."""
        delegate = tools_for(0, 3)[0]
        assert delegate.name == DELEGATE_TASK
        assert delegate.parameters["required"] == ["profile", "task"]
        assert "maxTokenBudget" in delegate.parameters["properties"]


class TestFilterAllowed:
    """External tools are limited by a profile's allow-list."""

    def test_empty_allow_list_allows_everything(self):
        tools = [ToolDefinition(name="a", description=""), ToolDefinition(name="b", description="")]
        assert _names(filter_allowed(tools, [])) == ["a", "b"]

    def test_allow_list_filters(self):
        tools = [ToolDefinition(name="a", description=""), ToolDefinition(name="b", description="")]
        assert _names(filter_allowed(tools, ["b", "zzz"])) == ["b"]
