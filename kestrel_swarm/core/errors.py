"""Error taxonomy for delegation and swarm operations.

Validation and admission errors are raised synchronously to the caller of
``delegate`` / ``execute_swarm`` before any record is created. Execution
failures (inference errors, timeouts) are never raised: they end up on the
terminal Delegation or SwarmMember record instead.
"""

from typing import Optional


class KestrelSwarmError(Exception):
    """Base class for all caller-facing errors."""

    code = "KESTREL_SWARM_ERROR"
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)



class DelegationDisabledError(KestrelSwarmError):
    """Delegation is switched off by config or security policy."""

    code = "DELEGATION_DISABLED"


class MaxDepthExceededError(KestrelSwarmError):
    """Recursion guard tripped: depth >= effective max depth."""

    code = "MAX_DEPTH_EXCEEDED"

    def __init__(self, max_depth: int):
        self.max_depth = max_depth
        super().__init__(f"Maximum delegation depth ({max_depth}) reached")


class AdmissionRejectedError(KestrelSwarmError):
    """Capacity limit hit. Never queued; callers may retry later."""

    code = "ADMISSION_REJECTED"
    retryable = True


class BudgetExceededError(AdmissionRejectedError):
    """A shared token budget has no tokens left to grant."""

    code = "BUDGET_EXCEEDED"


class NotFoundError(KestrelSwarmError):
    """A referenced record does not exist."""

    code = "NOT_FOUND"
    kind = "Record"

    def __init__(self, ref: str, message: Optional[str] = None):
        self.ref = ref
        super().__init__(message or f"{self.kind} not found: {ref}")


class ProfileNotFoundError(NotFoundError):
    code = "PROFILE_NOT_FOUND"
    kind = "Agent profile"


class TemplateNotFoundError(NotFoundError):
    code = "TEMPLATE_NOT_FOUND"
    kind = "Swarm template"


class DelegationNotFoundError(NotFoundError):
    code = "DELEGATION_NOT_FOUND"
    kind = "Delegation"


class SwarmRunNotFoundError(NotFoundError):
    code = "SWARM_RUN_NOT_FOUND"
    kind = "Swarm run"


class ForbiddenError(KestrelSwarmError):
    """The operation is understood but not allowed (e.g. deleting a built-in)."""

    code = "FORBIDDEN"


class InvalidInputError(KestrelSwarmError, ValueError):
    """Bad arguments, duplicate names or invalid configuration values."""

    code = "INVALID_INPUT"


__all__ = [
    "KestrelSwarmError",
    "DelegationDisabledError",
    "MaxDepthExceededError",
    "AdmissionRejectedError",
    "BudgetExceededError",
    "NotFoundError",
    "ProfileNotFoundError",
    "TemplateNotFoundError",
    "DelegationNotFoundError",
    "SwarmRunNotFoundError",
    "ForbiddenError",
    "InvalidInputError",
]
