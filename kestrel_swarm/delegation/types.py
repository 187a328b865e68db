from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kestrel_swarm.core.errors import InvalidInputError
from kestrel_swarm.core.models import DelegationStatus


@dataclass
class DelegationRequest:
    """What a caller asks the engine to do.

    ``profile`` is a profile id or name. Budget, depth and timeout values
    can only tighten the configured limits, never loosen them.
    ``allowed_profiles`` restricts which profiles this delegation may
    itself delegate to; ``correlation_id`` is inherited by children.
    """

    profile: str
    task: str
    context: Optional[str] = None
    max_token_budget: Optional[int] = None
    max_depth: Optional[int] = None
    timeout_ms: Optional[int] = None
    model: Optional[str] = None
    allowed_profiles: Optional[List[str]] = None
    correlation_id: Optional[str] = None
    initiated_by: Optional[str] = None

    def __post_init__(self):
        if not self.task or not self.task.strip():
            raise InvalidInputError("task must be a non-empty string")
        if not self.profile or not self.profile.strip():
            raise InvalidInputError("profile must be a non-empty string")
        if self.max_token_budget is not None and self.max_token_budget <= 0:
            raise InvalidInputError(f"max_token_budget must be > 0, got {self.max_token_budget}")
        if self.max_depth is not None and self.max_depth <= 0:
            raise InvalidInputError(f"max_depth must be > 0, got {self.max_depth}")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise InvalidInputError(f"timeout_ms must be > 0, got {self.timeout_ms}")


@dataclass
class CallContext:
    """Supplied only on recursive (tool-triggered) delegations."""

    depth: int
    parent_delegation_id: Optional[str] = None
    token_budget_remaining: Optional[int] = None
    max_depth: Optional[int] = None
    correlation_id: Optional[str] = None


@dataclass
class TokenUsage:
    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion

    def add(self, prompt: int, completion: int) -> None:
        self.prompt += prompt
        self.completion += completion

    def to_dict(self) -> Dict[str, int]:
        return {"prompt": self.prompt, "completion": self.completion, "total": self.total}


@dataclass
class DelegationResult:
    delegation_id: str
    profile: str
    status: DelegationStatus
    result: Optional[str] = None
    error: Optional[str] = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    duration_ms: int = 0
    sub_delegations: List["DelegationResult"] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == DelegationStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delegationId": self.delegation_id,
            "profile": self.profile,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "tokenUsage": self.token_usage.to_dict(),
            "durationMs": self.duration_ms,
            "subDelegations": [sub.to_dict() for sub in self.sub_delegations],
        }


@dataclass
class ActiveDelegationInfo:
    """Live view of a delegation currently held by the engine."""

    delegation_id: str
    profile_id: str
    profile_name: str
    task: str
    status: DelegationStatus
    depth: int
    tokens_used: int
    token_budget: int
    started_at: float
    elapsed_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delegationId": self.delegation_id,
            "profileId": self.profile_id,
            "profileName": self.profile_name,
            "task": self.task,
            "status": self.status.value,
            "depth": self.depth,
            "tokensUsed": self.tokens_used,
            "tokenBudget": self.token_budget,
            "startedAt": self.started_at,
            "elapsedMs": self.elapsed_ms,
        }
