"""
kestrel-swarm - Agent profile registry

Resolves profiles by id or case-insensitive name and provides CRUD over
ProfileStorage. Built-in profiles are seeded at startup and can be neither
overwritten nor deleted.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from pydantic import ValidationError

from kestrel_swarm.core.errors import (
    ForbiddenError,
    InvalidInputError,
    ProfileNotFoundError,
)
from kestrel_swarm.core.models import AgentProfile, ProfileType
from kestrel_swarm.storage.store import ProfileStorage


logger = logging.getLogger(__name__)


BUILTIN_PROFILES: List[AgentProfile] = [
    AgentProfile(
        id="builtin-researcher",
        name="researcher",
        description="Gathers information and summarises findings with sources",
        system_prompt=(
            "You are a research specialist. Investigate the task thoroughly, "
            "gather relevant facts, and report concise findings. Note any "
            "uncertainty explicitly."
        ),
        max_token_budget=50000,
        is_builtin=True,
    ),
    AgentProfile(
        id="builtin-coder",
        name="coder",
        description="Writes, reviews and fixes code",
        system_prompt=(
            "You are a senior software engineer. Produce correct, idiomatic, "
            "well-structured code for the task and explain key decisions briefly."
        ),
        max_token_budget=80000,
        is_builtin=True,
    ),
    AgentProfile(
        id="builtin-analyst",
        name="analyst",
        description="Analyses data, trade-offs and risks",
        system_prompt=(
            "You are an analyst. Break the problem down, weigh the options and "
            "their trade-offs, and give a clear recommendation."
        ),
        max_token_budget=50000,
        is_builtin=True,
    ),
    AgentProfile(
        id="builtin-summarizer",
        name="summarizer",
        description="Condenses long material into short summaries",
        system_prompt=(
            "You are a summarisation specialist. Produce a faithful, compact "
            "summary of the material that keeps every important point."
        ),
        max_token_budget=20000,
        is_builtin=True,
    ),
]

_UPDATABLE_FIELDS = {
    "name",
    "description",
    "type",
    "system_prompt",
    "allowed_tools",
    "max_token_budget",
    "default_model",
    "tool_name",
}


class ProfileRegistry:
    """
    Registry for agent profiles.

    Features:
    - Lookup by id, then by case-insensitive name
    - Built-in profiles seeded idempotently by ``initialize()``
    - Built-ins are immutable and undeletable
    """

    def __init__(self, storage: ProfileStorage):
        self.storage = storage

    @staticmethod
    def _normalize_name(name: str) -> str:
        return name.lower().strip()

    async def initialize(self) -> None:
        """Seed built-in profiles, refreshing any stored copies."""
        for builtin in BUILTIN_PROFILES:
            existing = await self.storage.get_profile(builtin.id)
            profile = builtin.model_copy(deep=True)
            if existing is not None:
                profile.created_at = existing.created_at
            await self.storage.save_profile(profile)
        logger.debug(f"Seeded {len(BUILTIN_PROFILES)} built-in profiles")

    async def resolve(self, ref: str) -> Optional[AgentProfile]:
        """Find a profile by id or by name (case-insensitive)."""
        profile = await self.storage.get_profile(ref)
        if profile is None:
            profile = await self.storage.get_profile_by_name(ref)
        return profile

    async def get_profile(self, ref: str) -> AgentProfile:
        profile = await self.resolve(ref)
        if profile is None:
            raise ProfileNotFoundError(ref)
        return profile

    async def list_profiles(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> tuple[List[AgentProfile], int]:
        profiles = await self.storage.list_profiles()
        total = len(profiles)
        end = None if limit is None else offset + limit
        return profiles[offset:end], total

    async def create_profile(self, **data: Any) -> AgentProfile:
        """
        Create a custom profile.

        Raises:
            InvalidInputError: On invalid fields, a missing ``tool_name`` for a
                tool-backed profile, or a name that is already taken.
        """
        data.pop("id", None)
        data["is_builtin"] = False
        try:
            profile = AgentProfile(**data)
        except ValidationError as e:
            raise InvalidInputError(f"Invalid agent profile: {e}") from e
        self._check_tool_backed(profile)

        if await self.storage.get_profile_by_name(profile.name) is not None:
            raise InvalidInputError(f"Agent profile name already exists: {profile.name}")

        await self.storage.create_profile(profile)
        logger.info(f"Created agent profile: {profile.name}")
        return profile

    async def update_profile(self, ref: str, **changes: Any) -> AgentProfile:
        profile = await self.get_profile(ref)
        if profile.is_builtin:
            raise ForbiddenError(f"Cannot modify built-in agent profile: {profile.name}")

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidInputError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

        new_name = changes.get("name")
        if new_name and self._normalize_name(new_name) != self._normalize_name(profile.name):
            if await self.storage.get_profile_by_name(new_name) is not None:
                raise InvalidInputError(f"Agent profile name already exists: {new_name}")

        try:
            updated = AgentProfile(**{**profile.model_dump(), **changes})
        except ValidationError as e:
            raise InvalidInputError(f"Invalid agent profile: {e}") from e
        self._check_tool_backed(updated)

        await self.storage.save_profile(updated)
        logger.info(f"Updated agent profile: {updated.name}")
        return updated

    async def delete_profile(self, ref: str) -> AgentProfile:
        """
        Delete a custom profile.

        Raises:
            ProfileNotFoundError: If no profile matches ``ref``.
            ForbiddenError: If the profile is built-in.
        """
        profile = await self.get_profile(ref)
        if profile.is_builtin:
            raise ForbiddenError(f"Cannot delete built-in agent profile: {profile.name}")

        await self.storage.delete_profile(profile.id)
        logger.info(f"Deleted agent profile: {profile.name}")
        return profile

    @staticmethod
    def _check_tool_backed(profile: AgentProfile) -> None:
        if profile.type == ProfileType.TOOL and not profile.tool_name:
            raise InvalidInputError(
                f"Tool-backed profile {profile.name!r} requires tool_name"
            )
