"""Delegation Engine module for recursive, budgeted agent delegation.

Provides the DelegationEngine class, which owns the lifecycle of a single
delegation: admission, execution of the agentic inference loop, token
budget and timeout enforcement, cascading cancellation and completion.
Delegations spawn children recursively when the model calls the
``delegate_task`` tool; the tree is persisted as records keyed by id with
a parent back-reference.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from kestrel_swarm.core.errors import (
    AdmissionRejectedError,
    BudgetExceededError,
    DelegationDisabledError,
    DelegationNotFoundError,
    InvalidInputError,
    KestrelSwarmError,
    MaxDepthExceededError,
    ProfileNotFoundError,
)
from kestrel_swarm.core.mediator import Event, EventMediator, EventType
from kestrel_swarm.core.models import (
    ACTIVE_STATUSES,
    AgentProfile,
    DelegationMessage,
    DelegationRecord,
    DelegationStatus,
    ProfileType,
)
from kestrel_swarm.core.settings import DelegationSettings
from kestrel_swarm.llm.inference import (
    ChatMessage,
    ChatRequest,
    InferenceClient,
    InferenceError,
    ToolCall,
    ToolDefinition,
)
from kestrel_swarm.storage.store import DelegationStorage

from .admission import AdmissionController
from .profiles import ProfileRegistry
from .tools import (
    DELEGATE_TASK,
    DELEGATION_TOOL_NAMES,
    GET_DELEGATION_RESULT,
    LIST_SUB_AGENTS,
    ToolExecutor,
    filter_allowed,
    tools_for,
)
from .types import (
    ActiveDelegationInfo,
    CallContext,
    DelegationRequest,
    DelegationResult,
    TokenUsage,
)


logger = logging.getLogger(__name__)

ENGINE_SOURCE = "delegation_engine"

TERMINAL_EVENT_NAMES = {
    DelegationStatus.COMPLETED: "delegation_completed",
    DelegationStatus.FAILED: "delegation_failed",
    DelegationStatus.CANCELLED: "delegation_cancelled",
    DelegationStatus.TIMEOUT: "delegation_timeout",
}


@dataclass
class _ActiveDelegation:
    """In-process state of a delegation the engine is currently running."""

    record: DelegationRecord
    allowed_profiles: Optional[List[str]] = None
    task: Optional["asyncio.Task[DelegationResult]"] = None
    reason: Optional[DelegationStatus] = None
    error: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    children: List[DelegationResult] = field(default_factory=list)
    children_tokens: int = 0
    started: float = field(default_factory=time.time)

    @property
    def consumed(self) -> int:
        return self.usage.total + self.children_tokens


def _subtree_tokens(result: DelegationResult) -> int:
    return result.token_usage.total + sum(_subtree_tokens(sub) for sub in result.sub_delegations)


def _compose_user_message(task: str, context: Optional[str]) -> str:
    if context:
        return f"Context:\n{context}\n\nTask:\n{task}"
    return task


class DelegationEngine:
    """Recursion-bounded delegation engine.

    Attributes:
        config: Live delegation limits (see ``get_config``/``update_config``).
        inference: Inference capability used by ``llm`` profiles.
        profiles: Profile registry used to resolve ``request.profile``.
        storage: Persistence for delegation records and transcripts.
        mediator: Optional event mediator for lifecycle/audit events.
        tool_executor: Optional external tools (and tool-backed profiles).
        admission: System-wide cap on non-terminal delegations.
    """

    def __init__(
        self,
        config: DelegationSettings,
        inference: InferenceClient,
        profiles: ProfileRegistry,
        storage: DelegationStorage,
        mediator: Optional[EventMediator] = None,
        tool_executor: Optional[ToolExecutor] = None,
    ):
        self.config = config
        self.inference = inference
        self.profiles = profiles
        self.storage = storage
        self.mediator = mediator
        self.tool_executor = tool_executor
        self.admission = AdmissionController(config.max_concurrent)
        self._active: Dict[str, _ActiveDelegation] = {}

    async def initialize(self) -> None:
        """Seed built-in profiles."""
        await self.profiles.initialize()

    # ------------------------------------------------------------------
    # Delegation lifecycle
    # ------------------------------------------------------------------

    async def delegate(
        self,
        request: DelegationRequest,
        call_context: Optional[CallContext] = None,
    ) -> DelegationResult:
        """Run one delegation to a terminal state.

        Args:
            request: Profile, task and optional tighter limits.
            call_context: Present only on recursive (tool-triggered) calls.

        Returns:
            DelegationResult for the terminal record. Execution failures,
            timeouts and cancellations are reported here, not raised.

        Raises:
            DelegationDisabledError: Delegation is switched off.
            MaxDepthExceededError: ``depth >= effective max depth``.
            ProfileNotFoundError: ``request.profile`` does not resolve.
            AdmissionRejectedError: ``max_concurrent`` delegations are active.
        """
        config = self.config
        if not config.enabled or not config.allow_sub_agents:
            raise DelegationDisabledError("Delegation is disabled")

        depth = call_context.depth if call_context else 0
        max_depth = config.max_depth
        if call_context and call_context.max_depth is not None:
            max_depth = min(max_depth, call_context.max_depth)
        if request.max_depth is not None:
            max_depth = min(max_depth, request.max_depth)
        if depth >= max_depth:
            raise MaxDepthExceededError(max_depth)

        profile = await self.profiles.resolve(request.profile)
        if profile is None:
            raise ProfileNotFoundError(request.profile)

        slot = await self.admission.try_acquire()
        if slot.is_err():
            raise AdmissionRejectedError(slot.error)

        record = self._new_record(request, call_context, profile, depth, max_depth)
        try:
            active = _ActiveDelegation(record=record, allowed_profiles=request.allowed_profiles)
            self._active[record.id] = active
            await self.storage.create_delegation(record)
            logger.info(
                f"Delegation {record.id} created: profile={profile.name} depth={depth} "
                f"budget={record.token_budget}"
            )
            await self._publish("delegation_created", record)

            task = asyncio.create_task(self._execute(active, profile, request.model))
            active.task = task
            try:
                done, _ = await asyncio.wait({task}, timeout=record.timeout_ms / 1000)
                if not done:
                    logger.warning(f"Delegation {record.id} timed out after {record.timeout_ms}ms")
                    await self._terminate(
                        record.id,
                        DelegationStatus.TIMEOUT,
                        f"Delegation timed out after {record.timeout_ms}ms",
                    )
            except asyncio.CancelledError:
                try:
                    await self._terminate(
                        record.id, DelegationStatus.CANCELLED, None, missing_ok=True
                    )
                except Exception as e:
                    logger.error(
                        f"Delegation {record.id} cleanup after cancel failed: {e}", exc_info=True
                    )
                raise

            if task.cancelled():
                return await self.get_result(record.id)
            return task.result()
        finally:
            self._active.pop(record.id, None)
            await self.admission.release()

    def _new_record(
        self,
        request: DelegationRequest,
        call_context: Optional[CallContext],
        profile: AgentProfile,
        depth: int,
        max_depth: int,
    ) -> DelegationRecord:
        config = self.config
        requested = request.max_token_budget or config.token_budget_default
        ceilings = [profile.max_token_budget, config.token_budget_max]
        if call_context and call_context.token_budget_remaining is not None:
            ceilings.append(max(0, call_context.token_budget_remaining))
        token_budget = min(requested, *ceilings)
        if token_budget < requested:
            logger.warning(
                f"Token budget for profile {profile.name} clamped from {requested} to {token_budget}"
            )

        timeout_ms = min(request.timeout_ms or config.default_timeout_ms, config.default_timeout_ms)

        record = DelegationRecord(
            parent_delegation_id=call_context.parent_delegation_id if call_context else None,
            profile_id=profile.id,
            profile_name=profile.name,
            task=request.task,
            context=request.context,
            depth=depth,
            max_depth=max_depth,
            token_budget=token_budget,
            timeout_ms=timeout_ms,
            initiated_by="sub-agent" if call_context else (request.initiated_by or "user"),
        )
        inherited = call_context.correlation_id if call_context else None
        record.correlation_id = inherited or request.correlation_id or record.id
        return record

    async def _execute(
        self, active: _ActiveDelegation, profile: AgentProfile, model: Optional[str]
    ) -> DelegationResult:
        record = active.record
        started = await self.storage.start_delegation(record.id)
        if started is None:
            # Terminated before it got to run.
            return await self.get_result(record.id)
        active.record = started
        active.started = started.started_at or time.time()

        result: Optional[str] = None
        error: Optional[str] = None
        try:
            if profile.type == ProfileType.TOOL:
                result = await self._run_tool_profile(started, profile)
            else:
                result = await self._run_llm(active, profile, model)
            status = DelegationStatus.COMPLETED
        except BudgetExceededError as e:
            status, error = DelegationStatus.FAILED, e.message
        except InferenceError as e:
            logger.warning(f"Delegation {record.id} inference failed: {e}")
            status, error = DelegationStatus.FAILED, str(e)
        except asyncio.CancelledError:
            status = active.reason or DelegationStatus.CANCELLED
            error = active.error
        except Exception as e:
            logger.error(f"Delegation {record.id} failed unexpectedly: {e}", exc_info=True)
            status, error = DelegationStatus.FAILED, str(e) or type(e).__name__

        finished = await self.storage.finish_delegation(
            record.id,
            status,
            result=result,
            error=error,
            tokens_used_prompt=active.usage.prompt,
            tokens_used_completion=active.usage.completion,
        )
        if finished is not None:
            logger.info(f"Delegation {record.id} {status.value}")
            await self._publish(TERMINAL_EVENT_NAMES[status], finished)
            return self._to_result(finished, active.children)
        return await self._result_with_children(record.id, active.children)

    async def _terminate(
        self,
        root_id: str,
        status: DelegationStatus,
        error: Optional[str],
        missing_ok: bool = False,
    ) -> None:
        """Move a delegation and its non-terminal descendants to ``status``.

        Live work is cancelled and awaited; records with no live work are
        transitioned directly. With ``missing_ok`` an unknown root only has its
        live task cancelled.
        """
        root = await self.storage.get_delegation(root_id)
        if root is None:
            if missing_ok:
                logger.warning(f"Delegation {root_id} not found while terminating")
                active = self._active.get(root_id)
                if active is not None and active.task is not None and not active.task.done():
                    if active.reason is None:
                        active.reason, active.error = status, error
                        active.task.cancel()
                    await asyncio.gather(active.task, return_exceptions=True)
                return
            raise DelegationNotFoundError(root_id)
        descendants = await self.storage.list_descendants(root_id, statuses=ACTIVE_STATUSES)
        targets = [root] + descendants
        waiting = []
        for record in targets:
            if record.status.is_terminal:
                continue
            active = self._active.get(record.id)
            if active is None:
                continue
            if active.task is None or active.task.done():
                continue
            if active.reason is None:
                active.reason = status
                active.error = error
                active.task.cancel()
            waiting.append(active.task)

        if waiting:
            await asyncio.gather(*waiting, return_exceptions=True)

        for record in targets:
            if record.status.is_terminal:
                continue
            finished = await self.storage.finish_delegation(record.id, status, error=error)
            if finished is not None:
                await self._publish(TERMINAL_EVENT_NAMES[status], finished)

    async def cancel(self, delegation_id: str) -> DelegationRecord:
        """Cancel a delegation and every pending/running descendant.

        Idempotent: cancelling a terminal delegation returns it unchanged.
        """
        record = await self.get_delegation(delegation_id)
        if record.status.is_terminal:
            return record
        logger.info(f"Cancelling delegation {delegation_id}")
        await self._terminate(delegation_id, DelegationStatus.CANCELLED, None)
        return await self.get_delegation(delegation_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_tool_profile(self, record: DelegationRecord, profile: AgentProfile) -> str:
        if self.tool_executor is None:
            raise InvalidInputError(
                f"No tool executor configured for tool-backed profile {profile.name}"
            )
        output = await self.tool_executor.call_tool(
            profile.tool_name or "", {"task": record.task, "context": record.context}
        )
        if isinstance(output, str):
            return output
        return json.dumps(output, default=str)

    def _tools_for(self, record: DelegationRecord, profile: AgentProfile) -> List[ToolDefinition]:
        tools = tools_for(record.depth, record.max_depth)
        if self.tool_executor is not None:
            external = [
                t for t in self.tool_executor.list_tools() if t.name not in DELEGATION_TOOL_NAMES
            ]
            tools.extend(filter_allowed(external, profile.allowed_tools))
        return tools

    async def _run_llm(
        self, active: _ActiveDelegation, profile: AgentProfile, model: Optional[str]
    ) -> str:
        record = active.record
        tools = self._tools_for(record, profile)
        tool_names = {t.name for t in tools}

        user_message = _compose_user_message(record.task, record.context)
        messages = [
            ChatMessage(role="system", content=profile.system_prompt),
            ChatMessage(role="user", content=user_message),
        ]
        await self._record_message(record.id, "system", content=profile.system_prompt)
        await self._record_message(record.id, "user", content=user_message)

        while active.consumed < record.token_budget:
            response = await self.inference.chat(
                ChatRequest(
                    messages=list(messages),
                    tools=tools,
                    model=model or profile.default_model,
                )
            )
            active.usage.add(response.usage.input, response.usage.output)
            await self.storage.update_delegation(
                record.id,
                tokens_used_prompt=active.usage.prompt,
                tokens_used_completion=active.usage.completion,
            )

            messages.append(
                ChatMessage(
                    role="assistant",
                    content=response.content,
                    tool_calls=response.tool_calls or None,
                )
            )
            await self._record_message(
                record.id,
                "assistant",
                content=response.content,
                tool_calls=[tc.to_dict() for tc in response.tool_calls] or None,
                token_count=response.usage.total,
            )

            if not response.tool_calls:
                return response.content

            for call in response.tool_calls:
                output = await self._dispatch_tool(call, active, tool_names)
                content = json.dumps(output, default=str)
                messages.append(ChatMessage(role="tool", content=content, tool_call_id=call.id))
                await self._record_message(
                    record.id,
                    "tool",
                    content=content,
                    tool_result={"tool_call_id": call.id, "name": call.name, "output": output},
                )

        raise BudgetExceededError("Token budget exhausted")

    async def _dispatch_tool(
        self, call: ToolCall, active: _ActiveDelegation, tool_names: set
    ) -> Dict[str, Any]:
        """Run one tool call; failures become error results for the model."""
        if call.name not in tool_names:
            return {"error": f"Unknown tool: {call.name}"}
        try:
            if call.name == DELEGATE_TASK:
                return await self._delegate_from_tool(call.arguments, active)
            if call.name == LIST_SUB_AGENTS:
                return {"delegations": [info.to_dict() for info in self.list_active()]}
            if call.name == GET_DELEGATION_RESULT:
                result = await self.get_result(str(call.arguments.get("delegationId", "")))
                return result.to_dict()
            assert self.tool_executor is not None
            return {"result": await self.tool_executor.call_tool(call.name, call.arguments)}
        except KestrelSwarmError as e:
            return {"error": e.message, "code": e.code}
        except Exception as e:
            logger.warning(f"Tool {call.name} failed in delegation {active.record.id}: {e}")
            return {"error": str(e) or type(e).__name__}

    async def _delegate_from_tool(
        self, arguments: Dict[str, Any], active: _ActiveDelegation
    ) -> Dict[str, Any]:
        record = active.record
        budget = arguments.get("maxTokenBudget")
        try:
            budget = int(budget) if budget is not None else None
        except (TypeError, ValueError):
            raise InvalidInputError(f"maxTokenBudget must be an integer, got {budget!r}")

        request = DelegationRequest(
            profile=str(arguments.get("profile", "")),
            task=str(arguments.get("task", "")),
            context=arguments.get("context"),
            max_token_budget=budget,
        )

        if active.allowed_profiles is not None:
            profile = await self.profiles.resolve(request.profile)
            allowed = {name.lower() for name in active.allowed_profiles}
            if profile is None or profile.name.lower() not in allowed:
                raise InvalidInputError(
                    f"Profile {request.profile!r} is not available here; "
                    f"choose one of: {', '.join(active.allowed_profiles)}"
                )

        child = await self.delegate(
            request,
            CallContext(
                depth=record.depth + 1,
                parent_delegation_id=record.id,
                token_budget_remaining=record.token_budget - active.consumed,
                max_depth=record.max_depth,
                correlation_id=record.correlation_id,
            ),
        )
        active.children.append(child)
        active.children_tokens += _subtree_tokens(child)
        return {
            "delegationId": child.delegation_id,
            "profile": child.profile,
            "status": child.status.value,
            "result": child.result,
            "error": child.error,
            "tokenUsage": child.token_usage.to_dict(),
        }

    async def _record_message(self, delegation_id: str, role: str, **fields: Any) -> None:
        if not self.config.persist_transcripts:
            return
        await self.storage.append_message(delegation_id, role, **fields)

    async def _publish(self, name: str, record: DelegationRecord) -> None:
        if self.mediator is None:
            return
        await self.mediator.publish(
            Event(
                event_type=EventType.DELEGATION,
                name=name,
                source=ENGINE_SOURCE,
                data={
                    "delegation_id": record.id,
                    "parent_delegation_id": record.parent_delegation_id,
                    "correlation_id": record.correlation_id,
                    "depth": record.depth,
                    "profile_id": record.profile_id,
                    "profile_name": record.profile_name,
                    "status": record.status.value,
                    "result": record.result,
                    "error": record.error,
                    "tokens_used_prompt": record.tokens_used_prompt,
                    "tokens_used_completion": record.tokens_used_completion,
                    "initiated_by": record.initiated_by,
                },
            )
        )

    # ------------------------------------------------------------------
    # Results and queries
    # ------------------------------------------------------------------

    @staticmethod
    def _to_result(
        record: DelegationRecord, children: Optional[List[DelegationResult]] = None
    ) -> DelegationResult:
        duration_ms = 0
        if record.started_at is not None:
            end = record.completed_at or time.time()
            duration_ms = max(0, int((end - record.started_at) * 1000))
        return DelegationResult(
            delegation_id=record.id,
            profile=record.profile_name,
            status=record.status,
            result=record.result,
            error=record.error,
            token_usage=TokenUsage(record.tokens_used_prompt, record.tokens_used_completion),
            duration_ms=duration_ms,
            sub_delegations=list(children or []),
        )

    async def _result_with_children(
        self, delegation_id: str, children: List[DelegationResult]
    ) -> DelegationResult:
        record = await self.get_delegation(delegation_id)
        return self._to_result(record, children)

    async def get_result(self, delegation_id: str) -> DelegationResult:
        """Rebuild a DelegationResult, children included, from persisted records."""
        record = await self.get_delegation(delegation_id)
        children, _ = await self.storage.list_delegations(
            parent_delegation_id=delegation_id, limit=None
        )
        children.sort(key=lambda r: r.created_at)
        subs = [await self.get_result(child.id) for child in children]
        return self._to_result(record, subs)

    def list_active(self) -> List[ActiveDelegationInfo]:
        """Delegations currently held by this engine, oldest first."""
        now = time.time()
        infos = []
        for active in sorted(self._active.values(), key=lambda a: a.record.created_at):
            record = active.record
            infos.append(
                ActiveDelegationInfo(
                    delegation_id=record.id,
                    profile_id=record.profile_id,
                    profile_name=record.profile_name,
                    task=record.task,
                    status=record.status,
                    depth=record.depth,
                    tokens_used=active.usage.total,
                    token_budget=record.token_budget,
                    started_at=record.started_at or record.created_at,
                    elapsed_ms=int((now - (record.started_at or record.created_at)) * 1000),
                )
            )
        return infos

    async def get_delegation(self, delegation_id: str) -> DelegationRecord:
        record = await self.storage.get_delegation(delegation_id)
        if record is None:
            raise DelegationNotFoundError(delegation_id)
        return record

    async def list_delegations(
        self,
        status: Optional[DelegationStatus] = None,
        profile_id: Optional[str] = None,
        parent_delegation_id: Optional[str] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> Tuple[List[DelegationRecord], int]:
        return await self.storage.list_delegations(
            status=status,
            profile_id=profile_id,
            parent_delegation_id=parent_delegation_id,
            limit=limit,
            offset=offset,
        )

    async def get_delegation_tree(self, root_id: str) -> List[DelegationRecord]:
        """Root plus all descendants; each parent precedes its children."""
        tree = await self.storage.get_tree(root_id)
        if not tree:
            raise DelegationNotFoundError(root_id)
        return tree

    async def get_delegation_messages(self, delegation_id: str) -> List[DelegationMessage]:
        await self.get_delegation(delegation_id)
        return await self.storage.list_messages(delegation_id)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> DelegationSettings:
        return self.config.model_copy()

    def update_config(self, **changes: Any) -> DelegationSettings:
        """Validate and apply config changes for subsequent admissions.

        Raises:
            InvalidInputError: Unknown keys or invalid values. Config is
                left untouched.
        """
        unknown = set(changes) - set(DelegationSettings.model_fields)
        if unknown:
            raise InvalidInputError(f"Unknown delegation settings: {', '.join(sorted(unknown))}")
        try:
            updated = DelegationSettings(**{**self.config.model_dump(), **changes})
        except ValidationError as e:
            raise InvalidInputError(f"Invalid delegation settings: {e}") from e

        self.config = updated
        self.admission.set_limit(updated.max_concurrent)
        logger.info(f"Delegation config updated: {sorted(changes)}")
        return self.get_config()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def list_profiles(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> Tuple[List[AgentProfile], int]:
        return await self.profiles.list_profiles(limit=limit, offset=offset)

    async def get_profile(self, ref: str) -> AgentProfile:
        return await self.profiles.get_profile(ref)

    async def create_profile(self, **data: Any) -> AgentProfile:
        return await self.profiles.create_profile(**data)

    async def update_profile(self, ref: str, **changes: Any) -> AgentProfile:
        return await self.profiles.update_profile(ref, **changes)

    async def delete_profile(self, ref: str) -> AgentProfile:
        return await self.profiles.delete_profile(ref)
