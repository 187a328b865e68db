"""Swarm orchestration on top of the delegation engine.

A swarm run executes the roles of a template against one task under one
of three strategies:

- sequential: roles run in order, each seeing the results of the roles
  before it; the first failure stops the run and cancels the rest.
- parallel: roles run concurrently against a shared token budget; the run
  succeeds if at least one role completes. With a coordinator profile, the
  coordinator then merges the member results into the run result.
- dynamic: a coordinator delegation decides which roles to call through
  the delegate_task tool; each child it spawns is recorded as a member.

Members are linked to their delegations through lifecycle events: every
member delegation carries the correlation id ``swarm:<run id>:<member id>``,
inherited by everything it spawns.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from kestrel_swarm.core.errors import (
    DelegationDisabledError,
    DelegationNotFoundError,
    ForbiddenError,
    InvalidInputError,
    KestrelSwarmError,
    SwarmRunNotFoundError,
    TemplateNotFoundError,
)
from kestrel_swarm.core.mediator import Event, EventMediatorImpl, EventType
from kestrel_swarm.core.models import (
    DelegationStatus,
    SwarmMember,
    SwarmRole,
    SwarmRun,
    SwarmStatus,
    SwarmStrategy,
    SwarmTemplate,
)
from kestrel_swarm.delegation.budget import SharedTokenBudget
from kestrel_swarm.delegation.engine import DelegationEngine
from kestrel_swarm.delegation.types import DelegationRequest, DelegationResult
from kestrel_swarm.storage.store import SwarmStorage
from kestrel_swarm.swarm.templates import BUILTIN_TEMPLATES


logger = logging.getLogger(__name__)

ORCHESTRATOR_SOURCE = "swarm_orchestrator"
CORRELATION_PREFIX = "swarm"
COORDINATOR_ROLE = "coordinator"

Outcome = Tuple[SwarmStatus, Optional[str], Optional[str]]


@dataclass
class _DynamicRun:
    """Tracks the children a dynamic coordinator spawns."""

    run_id: str
    coordinator_member_id: str
    roles_by_profile: Dict[str, str]
    coordinator_delegation_id: Optional[str] = None
    next_seq: int = 1
    members_by_delegation: Dict[str, str] = field(default_factory=dict)


def _correlation_id(run_id: str, member_id: str) -> str:
    return f"{CORRELATION_PREFIX}:{run_id}:{member_id}"


def _parse_correlation_id(correlation_id: Optional[str]) -> Optional[Tuple[str, str]]:
    if not correlation_id:
        return None
    parts = correlation_id.split(":")
    if len(parts) != 3 or parts[0] != CORRELATION_PREFIX:
        return None
    return parts[1], parts[2]


def _subtree_total(result: DelegationResult) -> int:
    return result.token_usage.total + sum(_subtree_total(sub) for sub in result.sub_delegations)


class SwarmOrchestrator:
    """Drives template-based multi-role runs through a DelegationEngine.

    Attributes:
        engine: Delegation engine every member runs on.
        storage: Persistence for templates, runs and members.
        mediator: Event mediator shared with the engine.
        default_token_budget: Run budget used when none is requested.
    """

    def __init__(
        self,
        engine: DelegationEngine,
        storage: SwarmStorage,
        default_token_budget: int = 500_000,
    ):
        self.engine = engine
        self.storage = storage
        self.default_token_budget = default_token_budget
        if engine.mediator is None:
            engine.mediator = EventMediatorImpl()
        self.mediator = engine.mediator
        self._dynamic: Dict[str, _DynamicRun] = {}
        self._subscribed = False
        self._cancelling: Set[str] = set()

    async def initialize(self) -> None:
        """Seed built-in templates and start listening to delegation events."""
        for builtin in BUILTIN_TEMPLATES:
            existing = await self.storage.get_template(builtin.id)
            template = builtin.model_copy(deep=True)
            if existing is not None:
                template.created_at = existing.created_at
            await self.storage.create_template(template)

        if not self._subscribed:
            await self.mediator.subscribe(EventType.DELEGATION, self._on_delegation_event)
            self._subscribed = True
        logger.debug(f"Seeded {len(BUILTIN_TEMPLATES)} built-in swarm templates")

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def list_templates(self) -> List[SwarmTemplate]:
        return await self.storage.list_templates()

    async def get_template(self, ref: str) -> SwarmTemplate:
        """Find a template by id, then by case-insensitive name."""
        template = await self.storage.get_template(ref)
        if template is None:
            template = await self.storage.get_template_by_name(ref)
        if template is None:
            raise TemplateNotFoundError(ref)
        return template

    async def create_template(
        self,
        name: str,
        strategy: Union[SwarmStrategy, str],
        roles: Sequence[Union[SwarmRole, Dict[str, Any]]],
        description: str = "",
        coordinator_profile: Optional[str] = None,
    ) -> SwarmTemplate:
        """
        Create a custom template.

        Raises:
            InvalidInputError: Empty or duplicate name, no roles, a role or
                coordinator profile that does not resolve, or a dynamic
                template without a coordinator.
        """
        try:
            template = SwarmTemplate(
                name=name,
                description=description,
                strategy=strategy,
                roles=list(roles),
                coordinator_profile=coordinator_profile,
            )
        except ValidationError as e:
            raise InvalidInputError(f"Invalid swarm template: {e}") from e

        if not template.roles:
            raise InvalidInputError("A swarm template needs at least one role")
        if template.strategy == SwarmStrategy.DYNAMIC and not template.coordinator_profile:
            raise InvalidInputError("Dynamic swarm templates require a coordinator_profile")
        if await self.storage.get_template_by_name(template.name) is not None:
            raise InvalidInputError(f"Swarm template name already exists: {template.name}")

        profile_refs = [role.profile_name for role in template.roles]
        if template.coordinator_profile:
            profile_refs.append(template.coordinator_profile)
        for ref in profile_refs:
            if await self.engine.profiles.resolve(ref) is None:
                raise InvalidInputError(f"Unknown agent profile in template: {ref}")

        await self.storage.create_template(template)
        logger.info(f"Created swarm template: {template.name}")
        return template

    async def delete_template(self, ref: str) -> SwarmTemplate:
        """
        Delete a custom template.

        Raises:
            TemplateNotFoundError: If no template matches ``ref``.
            ForbiddenError: Built-in template, or runs still reference it.
        """
        template = await self.get_template(ref)
        if template.is_builtin:
            raise ForbiddenError(f"Cannot delete built-in swarm template: {template.name}")
        runs = await self.storage.count_runs_for_template(template.id)
        if runs:
            raise ForbiddenError(
                f"Swarm template {template.name} is referenced by {runs} run(s)"
            )
        await self.storage.delete_template(template.id)
        logger.info(f"Deleted swarm template: {template.name}")
        return template

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def execute_swarm(
        self,
        template_id: str,
        task: str,
        context: Optional[str] = None,
        token_budget: Optional[int] = None,
        initiated_by: Optional[str] = None,
    ) -> SwarmRun:
        """Run a template to completion and return the final run.

        Member failures shape the run status but are never raised.

        Raises:
            TemplateNotFoundError: ``template_id`` matches no template.
            InvalidInputError: Empty task or non-positive budget.
            DelegationDisabledError: Delegation is switched off.
        """
        template = await self.get_template(template_id)
        if not task or not task.strip():
            raise InvalidInputError("task must be a non-empty string")
        budget = token_budget if token_budget is not None else self.default_token_budget
        if budget <= 0:
            raise InvalidInputError(f"token_budget must be > 0, got {budget}")
        if not template.roles:
            raise InvalidInputError(f"Swarm template {template.name} has no roles")
        config = self.engine.config
        if not config.enabled or not config.allow_sub_agents:
            raise DelegationDisabledError("Delegation is disabled")

        run = SwarmRun(
            template_id=template.id,
            template_name=template.name,
            task=task,
            context=context,
            strategy=template.strategy,
            token_budget=budget,
            initiated_by=initiated_by or "user",
        )
        await self.storage.create_run(run)
        logger.info(
            f"Swarm run {run.id} created: template={template.name} "
            f"strategy={template.strategy.value} budget={budget}"
        )
        await self._publish("swarm_created", run)
        run = await self.storage.update_run(
            run.id, status=SwarmStatus.RUNNING, started_at=time.time()
        ) or run

        try:
            if template.strategy == SwarmStrategy.SEQUENTIAL:
                status, result, error = await self._run_sequential(run, template)
            elif template.strategy == SwarmStrategy.PARALLEL:
                status, result, error = await self._run_parallel(run, template)
            else:
                status, result, error = await self._run_dynamic(run, template)
        except asyncio.CancelledError:
            await self.cancel_swarm(run.id)
            raise
        except Exception as e:
            logger.error(f"Swarm run {run.id} failed unexpectedly: {e}", exc_info=True)
            status, result, error = SwarmStatus.FAILED, None, str(e) or type(e).__name__

        if run.id in self._cancelling:
            status, error = SwarmStatus.CANCELLED, None
        await self._finish_run(run.id, status, result=result, error=error)
        return await self.get_swarm_run(run.id)

    async def _run_sequential(self, run: SwarmRun, template: SwarmTemplate) -> Outcome:
        budget = SharedTokenBudget(run.token_budget)
        share = max(1, run.token_budget // len(template.roles))
        members = await self._create_members(run, template.roles)

        completed: List[Tuple[str, Optional[str]]] = []
        for index, (role, member) in enumerate(zip(template.roles, members)):
            if await self._run_is_terminal(run.id):
                return SwarmStatus.CANCELLED, None, None

            context = self._sequential_context(run.context, completed)
            finished = await self._run_member(
                run, member, role.profile_name, context, budget, share
            )
            if finished.status != DelegationStatus.COMPLETED:
                for rest in members[index + 1 :]:
                    await self.storage.finish_member(run.id, rest.id, DelegationStatus.CANCELLED)
                error = finished.error or f"Role {role.role} ended {finished.status.value}"
                last = completed[-1][1] if completed else None
                return SwarmStatus.FAILED, last, error
            completed.append((role.role, finished.result))

        return SwarmStatus.COMPLETED, completed[-1][1], None

    async def _run_parallel(self, run: SwarmRun, template: SwarmTemplate) -> Outcome:
        budget = SharedTokenBudget(run.token_budget)
        slots = len(template.roles) + (1 if template.coordinator_profile else 0)
        share = max(1, run.token_budget // slots)
        members = await self._create_members(run, template.roles)

        outcomes = await asyncio.gather(
            *(
                self._run_member(run, member, role.profile_name, run.context, budget, share)
                for role, member in zip(template.roles, members)
            ),
            return_exceptions=True,
        )

        finished: List[SwarmMember] = []
        for member, outcome in zip(members, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Swarm member {member.id} crashed: {outcome}", exc_info=outcome)
                failed = await self.storage.finish_member(
                    run.id, member.id, DelegationStatus.FAILED, error=str(outcome)
                )
                finished.append(failed or member)
            else:
                finished.append(outcome)

        succeeded = [m for m in finished if m.status == DelegationStatus.COMPLETED]
        if await self._run_is_terminal(run.id):
            return SwarmStatus.CANCELLED, None, None
        if succeeded:
            result = "\n\n".join(f"[{m.role}]:\n{m.result or ''}" for m in succeeded)
            if template.coordinator_profile:
                synthesis = await self._synthesize(
                    run, template.coordinator_profile, finished, budget, share
                )
                if synthesis.status == DelegationStatus.COMPLETED:
                    return SwarmStatus.COMPLETED, synthesis.result, None
                logger.warning(
                    f"Swarm run {run.id} synthesis ended {synthesis.status.value}; "
                    "using the joined member results"
                )
            return SwarmStatus.COMPLETED, result, None
        errors = "; ".join(f"{m.role}: {m.error or m.status.value}" for m in finished)
        return SwarmStatus.FAILED, None, f"All members failed ({errors})"

    async def _synthesize(
        self,
        run: SwarmRun,
        coordinator_profile: str,
        finished: Sequence[SwarmMember],
        budget: SharedTokenBudget,
        share: int,
    ) -> SwarmMember:
        """Hand every member's outcome to the coordinator for one merged answer."""
        coordinator = await self.storage.create_member(
            SwarmMember(
                swarm_run_id=run.id,
                role=COORDINATOR_ROLE,
                profile_name=coordinator_profile,
                seq_order=len(finished),
            )
        )
        outcomes = []
        for member in finished:
            if member.status == DelegationStatus.COMPLETED:
                outcomes.append((member.role, member.result))
            else:
                outcomes.append((member.role, f"Error: {member.error or member.status.value}"))
        context = self._sequential_context(run.context, outcomes)
        return await self._run_member(run, coordinator, coordinator_profile, context, budget, share)

    async def _run_dynamic(self, run: SwarmRun, template: SwarmTemplate) -> Outcome:
        coordinator_profile = template.coordinator_profile or template.roles[0].profile_name
        coordinator = await self.storage.create_member(
            SwarmMember(
                swarm_run_id=run.id,
                role=COORDINATOR_ROLE,
                profile_name=coordinator_profile,
                seq_order=0,
            )
        )
        self._dynamic[run.id] = _DynamicRun(
            run_id=run.id,
            coordinator_member_id=coordinator.id,
            roles_by_profile={r.profile_name.lower(): r.role for r in template.roles},
        )
        try:
            finished = await self._run_member(
                run,
                coordinator,
                coordinator_profile,
                self._dynamic_context(run.context, template.roles),
                SharedTokenBudget(run.token_budget),
                run.token_budget,
                allowed_profiles=[r.profile_name for r in template.roles],
            )
        finally:
            self._dynamic.pop(run.id, None)

        if finished.status == DelegationStatus.COMPLETED:
            return SwarmStatus.COMPLETED, finished.result, None
        return SwarmStatus.FAILED, None, finished.error or f"Coordinator ended {finished.status.value}"

    async def _create_members(
        self, run: SwarmRun, roles: Sequence[SwarmRole]
    ) -> List[SwarmMember]:
        members = []
        for index, role in enumerate(roles):
            member = SwarmMember(
                swarm_run_id=run.id,
                role=role.role,
                profile_name=role.profile_name,
                seq_order=index,
            )
            members.append(await self.storage.create_member(member))
        return members

    async def _run_member(
        self,
        run: SwarmRun,
        member: SwarmMember,
        profile: str,
        context: Optional[str],
        budget: SharedTokenBudget,
        share: int,
        allowed_profiles: Optional[List[str]] = None,
    ) -> SwarmMember:
        """Run one member's delegation and record its terminal state."""
        grant = await budget.reserve(share)
        if grant.is_err():
            logger.warning(f"Swarm member {member.role} rejected: {grant.error}")
            finished = await self.storage.finish_member(
                run.id, member.id, DelegationStatus.FAILED, error=grant.error
            )
            return finished or await self._get_member(run.id, member.id)

        granted = grant.unwrap()
        used = 0
        await self.storage.update_member(
            run.id, member.id, status=DelegationStatus.RUNNING, started_at=time.time()
        )
        try:
            result = await self.engine.delegate(
                DelegationRequest(
                    profile=profile,
                    task=run.task,
                    context=context,
                    max_token_budget=granted,
                    allowed_profiles=allowed_profiles,
                    correlation_id=_correlation_id(run.id, member.id),
                    initiated_by=f"swarm:{run.id}",
                )
            )
            used = _subtree_total(result)
            finished = await self.storage.finish_member(
                run.id,
                member.id,
                result.status,
                delegation_id=result.delegation_id,
                result=result.result,
                error=result.error,
            )
        except KestrelSwarmError as e:
            logger.warning(f"Swarm member {member.role} could not start: {e.message}")
            finished = await self.storage.finish_member(
                run.id, member.id, DelegationStatus.FAILED, error=e.message
            )
        finally:
            await budget.settle(granted, used)
        return finished or await self._get_member(run.id, member.id)

    @staticmethod
    def _sequential_context(
        context: Optional[str], completed: List[Tuple[str, Optional[str]]]
    ) -> Optional[str]:
        if not completed:
            return context
        prior = "\n\n".join(f"[{role} result]:\n{result or ''}" for role, result in completed)
        return f"{context}\n\n{prior}" if context else prior

    @staticmethod
    def _dynamic_context(context: Optional[str], roles: Sequence[SwarmRole]) -> str:
        lines = []
        for role in roles:
            line = f"- {role.role}: profile '{role.profile_name}'"
            if role.description:
                line += f" ({role.description})"
            lines.append(line)
        roster = (
            "Available roles (call delegate_task with the profile name; "
            "a role may be used more than once):\n" + "\n".join(lines)
        )
        return f"{context}\n\n{roster}" if context else roster

    # ------------------------------------------------------------------
    # Delegation events
    # ------------------------------------------------------------------

    async def _on_delegation_event(self, event: Event) -> None:
        data = event.data
        parsed = _parse_correlation_id(data.get("correlation_id"))
        if parsed is None:
            return
        run_id, member_id = parsed
        delegation_id = data["delegation_id"]
        state = self._dynamic.get(run_id)

        if event.name == "delegation_created":
            if data.get("parent_delegation_id") is None:
                await self._link_member(run_id, member_id, delegation_id)
                if state is not None and member_id == state.coordinator_member_id:
                    state.coordinator_delegation_id = delegation_id
            elif state is not None and data["parent_delegation_id"] == state.coordinator_delegation_id:
                await self._record_dynamic_member(state, data)
            return

        if state is not None and delegation_id in state.members_by_delegation:
            await self.storage.finish_member(
                run_id,
                state.members_by_delegation[delegation_id],
                DelegationStatus(data["status"]),
                result=data.get("result"),
                error=data.get("error"),
            )

    async def _link_member(self, run_id: str, member_id: str, delegation_id: str) -> None:
        await self.storage.update_member(run_id, member_id, delegation_id=delegation_id)
        if await self._run_is_terminal(run_id):
            # Cancelled between admission and link.
            await self.engine.cancel(delegation_id)

    async def _record_dynamic_member(self, state: _DynamicRun, data: Dict[str, Any]) -> None:
        profile_name = data["profile_name"]
        member = SwarmMember(
            swarm_run_id=state.run_id,
            role=state.roles_by_profile.get(profile_name.lower(), profile_name),
            profile_name=profile_name,
            delegation_id=data["delegation_id"],
            status=DelegationStatus.RUNNING,
            seq_order=state.next_seq,
            started_at=time.time(),
        )
        state.next_seq += 1
        state.members_by_delegation[member.delegation_id] = member.id
        await self.storage.create_member(member)
        logger.debug(f"Swarm run {state.run_id}: coordinator spawned {member.role}")

    # ------------------------------------------------------------------
    # Queries and cancellation
    # ------------------------------------------------------------------

    async def get_swarm_run(self, run_id: str) -> SwarmRun:
        """Return the run with its members and recomputed token totals."""
        run = await self.storage.get_run(run_id)
        if run is None:
            raise SwarmRunNotFoundError(run_id)
        members = await self.storage.list_members(run_id)
        prompt, completion = await self._token_totals(members)
        return run.model_copy(
            update={
                "members": members,
                "tokens_used_prompt": prompt,
                "tokens_used_completion": completion,
            }
        )

    async def list_swarm_runs(
        self,
        status: Optional[SwarmStatus] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> Tuple[List[SwarmRun], int]:
        return await self.storage.list_runs(status=status, limit=limit, offset=offset)

    async def cancel_swarm(self, run_id: str) -> SwarmRun:
        """Cancel a run and every member delegation that is still active.

        Cancelling an already terminal run returns it unchanged.
        """
        run = await self.storage.get_run(run_id)
        if run is None:
            raise SwarmRunNotFoundError(run_id)
        if run.status.is_terminal:
            return await self.get_swarm_run(run_id)

        logger.info(f"Cancelling swarm run {run_id}")
        # Strategies stop advancing once the run id is in _cancelling.
        self._cancelling.add(run_id)
        try:
            for member in await self.storage.list_members(run_id):
                if member.status.is_terminal:
                    continue
                if member.delegation_id:
                    try:
                        await self.engine.cancel(member.delegation_id)
                    except DelegationNotFoundError:
                        logger.debug(f"Member delegation {member.delegation_id} no longer exists")
                await self.storage.finish_member(run_id, member.id, DelegationStatus.CANCELLED)
            await self._finish_run(run_id, SwarmStatus.CANCELLED)
        finally:
            self._cancelling.discard(run_id)
        return await self.get_swarm_run(run_id)

    async def _finish_run(
        self,
        run_id: str,
        status: SwarmStatus,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        members = await self.storage.list_members(run_id)
        prompt, completion = await self._token_totals(members)
        finished = await self.storage.finish_run(
            run_id,
            status,
            result=result,
            error=error,
            tokens_used_prompt=prompt,
            tokens_used_completion=completion,
        )
        if finished is None:
            await self.storage.update_run(
                run_id, tokens_used_prompt=prompt, tokens_used_completion=completion
            )
            return
        logger.info(f"Swarm run {run_id} {status.value}")
        await self._publish(f"swarm_{status.value}", finished)

    async def _token_totals(self, members: Sequence[SwarmMember]) -> Tuple[int, int]:
        """Sum usage over every delegation under the run's members, once each."""
        seen = set()
        prompt = completion = 0
        for member in members:
            if not member.delegation_id:
                continue
            for record in await self.engine.storage.get_tree(member.delegation_id):
                if record.id in seen:
                    continue
                seen.add(record.id)
                prompt += record.tokens_used_prompt
                completion += record.tokens_used_completion
        return prompt, completion

    async def _run_is_terminal(self, run_id: str) -> bool:
        if run_id in self._cancelling:
            return True
        run = await self.storage.get_run(run_id)
        return run is None or run.status.is_terminal

    async def _get_member(self, run_id: str, member_id: str) -> SwarmMember:
        for member in await self.storage.list_members(run_id):
            if member.id == member_id:
                return member
        raise KestrelSwarmError(f"Swarm member not found: {member_id}")

    async def _publish(self, name: str, run: SwarmRun) -> None:
        await self.mediator.publish(
            Event(
                event_type=EventType.SWARM,
                name=name,
                source=ORCHESTRATOR_SOURCE,
                data={
                    "run_id": run.id,
                    "template_id": run.template_id,
                    "template_name": run.template_name,
                    "strategy": run.strategy.value,
                    "status": run.status.value,
                    "result": run.result,
                    "error": run.error,
                    "tokens_used_prompt": run.tokens_used_prompt,
                    "tokens_used_completion": run.tokens_used_completion,
                    "initiated_by": run.initiated_by,
                },
            )
        )
