"""Delegation Engine Package.

Provides recursive, budgeted delegation of tasks to agent profiles with
depth-bounded tool visibility, system-wide admission control, timeouts
and cascading cancellation.

Example:
    from kestrel_swarm.delegation import (
        DelegationEngine,
        DelegationRequest,
        ProfileRegistry,
    )

    engine = DelegationEngine(settings.delegation, client, registry, storage, mediator)
    await engine.initialize()
    result = await engine.delegate(
        DelegationRequest(
            profile="researcher",
            task="Survey async task schedulers in Python",
            max_token_budget=20000,
        )
    )
    print(result.status, result.result)
"""

from kestrel_swarm.delegation.admission import AdmissionController
from kestrel_swarm.delegation.budget import SharedTokenBudget
from kestrel_swarm.delegation.engine import DelegationEngine
from kestrel_swarm.delegation.profiles import BUILTIN_PROFILES, ProfileRegistry
from kestrel_swarm.delegation.tools import (
    DELEGATE_TASK,
    GET_DELEGATION_RESULT,
    LIST_SUB_AGENTS,
    ToolExecutor,
    tools_for,
)
from kestrel_swarm.delegation.types import (
    ActiveDelegationInfo,
    CallContext,
    DelegationRequest,
    DelegationResult,
    TokenUsage,
)

__all__ = [
    "DelegationEngine",
    "DelegationRequest",
    "DelegationResult",
    "CallContext",
    "TokenUsage",
    "ActiveDelegationInfo",
    "AdmissionController",
    "SharedTokenBudget",
    "ProfileRegistry",
    "BUILTIN_PROFILES",
    "ToolExecutor",
    "tools_for",
    "DELEGATE_TASK",
    "LIST_SUB_AGENTS",
    "GET_DELEGATION_RESULT",
]
