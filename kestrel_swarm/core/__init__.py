"""Core building blocks: results, errors, records, settings and events."""

from kestrel_swarm.core.errors import (
    AdmissionRejectedError,
    BudgetExceededError,
    DelegationDisabledError,
    DelegationNotFoundError,
    ForbiddenError,
    InvalidInputError,
    KestrelSwarmError,
    MaxDepthExceededError,
    NotFoundError,
    ProfileNotFoundError,
    SwarmRunNotFoundError,
    TemplateNotFoundError,
)
from kestrel_swarm.core.mediator import Event, EventMediatorImpl, EventType
from kestrel_swarm.core.result import Err, Ok, Result

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Event",
    "EventType",
    "EventMediatorImpl",
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
