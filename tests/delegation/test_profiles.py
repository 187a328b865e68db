"""Tests for ProfileRegistry."""

import pytest

from kestrel_swarm.core.errors import ForbiddenError, InvalidInputError, ProfileNotFoundError
from kestrel_swarm.core.models import ProfileType
from kestrel_swarm.delegation.profiles import BUILTIN_PROFILES


@pytest.fixture
async def registry(profile_registry):
    await profile_registry.initialize()
    return profile_registry


class TestBuiltinProfiles:
    """Seeding and protection of built-in profiles."""

    @pytest.mark.asyncio
    async def test_initialize_seeds_builtins(self, registry):
        profiles, total = await registry.list_profiles()
        assert total == len(BUILTIN_PROFILES)
        assert {p.name for p in profiles} == {"researcher", "coder", "analyst", "summarizer"}
        assert all(p.is_builtin for p in profiles)

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, registry):
        before = await registry.get_profile("researcher")
        await registry.initialize()
        after = await registry.get_profile("researcher")
        _, total = await registry.list_profiles()
        assert total == len(BUILTIN_PROFILES)
        assert before.created_at == after.created_at

    @pytest.mark.asyncio
    async def test_cannot_delete_builtin(self, registry):
        with pytest.raises(ForbiddenError):
            await registry.delete_profile("researcher")
        assert await registry.resolve("researcher") is not None

    @pytest.mark.asyncio
    async def test_cannot_update_builtin(self, registry):
        with pytest.raises(ForbiddenError):
            await registry.update_profile("coder", system_prompt="something else")


class TestResolve:
    """Lookup by id, then case-insensitive name."""

    @pytest.mark.asyncio
    async def test_resolve_by_id(self, registry):
        profile = await registry.resolve("builtin-analyst")
        assert profile is not None
        assert profile.name == "analyst"

    @pytest.mark.asyncio
    async def test_resolve_by_name_ignores_case(self, registry):
        profile = await registry.resolve("ReSeArChEr")
        assert profile is not None
        assert profile.id == "builtin-researcher"

    @pytest.mark.asyncio
    async def test_unknown_profile(self, registry):
        assert await registry.resolve("nobody") is None
        with pytest.raises(ProfileNotFoundError):
            await registry.get_profile("nobody")


class TestCustomProfiles:
    """CRUD over custom profiles."""

    @pytest.mark.asyncio
    async def test_create_and_delete(self, registry):
        created = await registry.create_profile(
            name="reviewer", system_prompt="Review code", max_token_budget=1000
        )
        assert created.is_builtin is False
        assert (await registry.get_profile("reviewer")).id == created.id

        deleted = await registry.delete_profile(created.id)
        assert deleted.id == created.id
        with pytest.raises(ProfileNotFoundError):
            await registry.get_profile("reviewer")

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, registry):
        with pytest.raises(InvalidInputError):
            await registry.create_profile(name="Researcher")

    @pytest.mark.asyncio
    async def test_invalid_fields_rejected(self, registry):
        with pytest.raises(InvalidInputError):
            await registry.create_profile(name="cheap", max_token_budget=0)

    @pytest.mark.asyncio
    async def test_tool_profile_requires_tool_name(self, registry):
        with pytest.raises(InvalidInputError):
            await registry.create_profile(name="grep", type=ProfileType.TOOL)

    @pytest.mark.asyncio
    async def test_update_custom_profile(self, registry):
        await registry.create_profile(name="reviewer", system_prompt="v1")
        updated = await registry.update_profile("reviewer", system_prompt="v2")
        assert updated.system_prompt == "v2"
        assert (await registry.get_profile("reviewer")).system_prompt == "v2"

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, registry):
        await registry.create_profile(name="reviewer")
        with pytest.raises(InvalidInputError):
            await registry.update_profile("reviewer", is_builtin=True)

    @pytest.mark.asyncio
    async def test_rename_onto_existing_name_rejected(self, registry):
        await registry.create_profile(name="reviewer")
        with pytest.raises(InvalidInputError):
            await registry.update_profile("reviewer", name="coder")
