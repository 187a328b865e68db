"""Mediator for delegation and swarm lifecycle events.

The delegation engine and swarm orchestrator publish lifecycle events
(created, completed, failed, cancelled, timeout) to an EventMediator
instead of calling the audit log or each other directly. Subscribers
include the audit sink and the swarm orchestrator itself, which uses
delegation events to record the members of a dynamic swarm as the
coordinator spawns them.

Publication is fire-and-forget from the publisher's point of view: a
handler that raises is logged and reported as an Err, but the remaining
handlers still run and the publisher is never interrupted.
"""

import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable

from kestrel_swarm.core.result import Err, Ok, Result


logger = logging.getLogger(__name__)

audit_logger = logging.getLogger("kestrel_swarm.audit")


class EventType(str, Enum):
    DELEGATION = "delegation"
    SWARM = "swarm"
    SYSTEM = "system"


@dataclass
class Event:
    """Lifecycle event.

    - event_type: category used for subscription routing
    - name: what happened, e.g. ``delegation_completed``
    - source: component that emitted the event
    - data: event payload
    """

    event_type: EventType
    name: str
    source: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Handler = Callable[[Event], Awaitable[None]]


@runtime_checkable
class EventMediator(Protocol):
    """Protocol for event mediator."""

    async def publish(self, event: Event) -> Result[None]:
        """Publish an event to all handlers subscribed to its type."""
        ...

    async def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        source: Optional[str] = None,
    ) -> Result[None]:
        """Subscribe to events of a type, optionally only from one source."""
        ...


class EventMediatorImpl:
    """In-memory event mediator.

    Handlers run in subscription order, awaited one after another, so a
    subscriber sees an event before the publisher continues.

    Thread safety: NOT thread-safe. Suitable for single-process async use.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[tuple[Handler, Optional[str]]]] = defaultdict(list)

    async def publish(self, event: Event) -> Result[None]:
        failures = []
        for handler, source_filter in list(self._handlers.get(event.event_type, [])):
            if source_filter is not None and source_filter != event.source:
                continue
            try:
                await handler(event)
            except Exception as e:
                logger.warning(f"Event handler failed for {event.name}: {e}", exc_info=True)
                failures.append(str(e))

        if failures:
            return Err(
                f"{len(failures)} handler(s) failed for {event.name}: {'; '.join(failures)}",
                code="MEDIATOR_ERROR",
            )
        return Ok(None)

    async def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        source: Optional[str] = None,
    ) -> Result[None]:
        self._handlers[event_type].append((handler, source))
        return Ok(None)


@runtime_checkable
class AuditSink(Protocol):
    """Accepts structured audit events."""

    async def record(self, event: Event) -> None:
        ...


class LoggingAuditSink:
    """Audit sink writing one structured log line per event."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._log = log or audit_logger

    async def record(self, event: Event) -> None:
        payload = {
            "event": event.name,
            "type": event.event_type.value,
            "source": event.source,
            "timestamp": event.timestamp,
            "data": event.data,
        }
        self._log.info(json.dumps(payload, default=str, sort_keys=True))


async def attach_audit_sink(mediator: EventMediator, sink: AuditSink) -> None:
    """Subscribe an audit sink to delegation and swarm events."""
    for event_type in (EventType.DELEGATION, EventType.SWARM):
        await mediator.subscribe(event_type, sink.record)


__all__ = [
    "EventType",
    "Event",
    "EventMediator",
    "EventMediatorImpl",
    "AuditSink",
    "LoggingAuditSink",
    "attach_audit_sink",
]

