"""Persisted records for profiles, delegations, transcripts and swarms.

Records are pydantic models serialised with ``model_dump(mode="json")`` by
the storage layer. The delegation tree is an arena of records keyed by id
with a ``parent_delegation_id`` back-reference; nothing holds live object
references to its children.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def new_id() -> str:
    return str(uuid.uuid4())


class DelegationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self not in (DelegationStatus.PENDING, DelegationStatus.RUNNING)


ACTIVE_STATUSES = (DelegationStatus.PENDING, DelegationStatus.RUNNING)


class ProfileType(str, Enum):
    LLM = "llm"
    TOOL = "tool"


class AgentProfile(BaseModel):
    """Reusable agent configuration (system prompt, tools, budget)."""

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    description: str = ""
    type: ProfileType = ProfileType.LLM
    system_prompt: str = ""
    allowed_tools: List[str] = Field(default_factory=list)
    max_token_budget: int = Field(default=50000, gt=0)
    default_model: Optional[str] = None
    tool_name: Optional[str] = None
    is_builtin: bool = False
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class DelegationRecord(BaseModel):
    """A single unit of recursive work."""

    id: str = Field(default_factory=new_id)
    parent_delegation_id: Optional[str] = None
    profile_id: str
    profile_name: str
    task: str
    context: Optional[str] = None
    status: DelegationStatus = DelegationStatus.PENDING
    depth: int = 0
    max_depth: int
    token_budget: int
    tokens_used_prompt: int = 0
    tokens_used_completion: int = 0
    timeout_ms: int
    result: Optional[str] = None
    error: Optional[str] = None
    initiated_by: Optional[str] = None
    correlation_id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def tokens_used(self) -> int:
        return self.tokens_used_prompt + self.tokens_used_completion


class DelegationMessage(BaseModel):
    """Append-only transcript entry scoped to one delegation."""

    id: str = Field(default_factory=new_id)
    delegation_id: str
    seq: int
    role: str
    content: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_result: Optional[Dict[str, Any]] = None
    token_count: int = 0
    created_at: float = Field(default_factory=time.time)


class SwarmStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    DYNAMIC = "dynamic"


class SwarmStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (SwarmStatus.PENDING, SwarmStatus.RUNNING)


class SwarmRole(BaseModel):
    role: str = Field(min_length=1)
    profile_name: str = Field(min_length=1)
    description: str = ""


class SwarmTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    description: str = ""
    strategy: SwarmStrategy
    roles: List[SwarmRole] = Field(default_factory=list)
    coordinator_profile: Optional[str] = None
    is_builtin: bool = False
    created_at: float = Field(default_factory=time.time)


class SwarmMember(BaseModel):
    id: str = Field(default_factory=new_id)
    swarm_run_id: str
    role: str
    profile_name: str
    delegation_id: Optional[str] = None
    status: DelegationStatus = DelegationStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None
    seq_order: int = 0
    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None


class SwarmRun(BaseModel):
    id: str = Field(default_factory=new_id)
    template_id: str
    template_name: str
    task: str
    context: Optional[str] = None
    strategy: SwarmStrategy
    status: SwarmStatus = SwarmStatus.PENDING
    token_budget: int
    tokens_used_prompt: int = 0
    tokens_used_completion: int = 0
    result: Optional[str] = None
    error: Optional[str] = None
    initiated_by: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    # Populated on read; never persisted with the run itself.
    members: List[SwarmMember] = Field(default_factory=list, exclude=True)
