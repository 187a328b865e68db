"""Shared fixtures wiring the engine and orchestrator over tmp_path storage."""

import pytest

from kestrel_swarm.core.mediator import EventMediatorImpl
from kestrel_swarm.core.settings import DelegationSettings
from kestrel_swarm.delegation.engine import DelegationEngine
from kestrel_swarm.delegation.profiles import ProfileRegistry
from kestrel_swarm.storage.store import DelegationStorage, ProfileStorage, SwarmStorage
from kestrel_swarm.swarm.orchestrator import SwarmOrchestrator
from tests.fakes import ScriptedInference


@pytest.fixture
def fake_inference() -> ScriptedInference:
    return ScriptedInference()


@pytest.fixture
def mediator() -> EventMediatorImpl:
    return EventMediatorImpl()


@pytest.fixture
def delegation_settings() -> DelegationSettings:
    return DelegationSettings(default_timeout_ms=10_000)


@pytest.fixture
def profile_registry(tmp_path) -> ProfileRegistry:
    return ProfileRegistry(ProfileStorage(tmp_path))


@pytest.fixture
def delegation_storage(tmp_path) -> DelegationStorage:
    return DelegationStorage(tmp_path)


@pytest.fixture
async def engine(
    delegation_settings, fake_inference, profile_registry, delegation_storage, mediator
) -> DelegationEngine:
    engine = DelegationEngine(
        config=delegation_settings,
        inference=fake_inference,
        profiles=profile_registry,
        storage=delegation_storage,
        mediator=mediator,
    )
    await engine.initialize()
    return engine


@pytest.fixture
async def orchestrator(engine, tmp_path) -> SwarmOrchestrator:
    orchestrator = SwarmOrchestrator(engine, SwarmStorage(tmp_path), default_token_budget=90_000)
    await orchestrator.initialize()
    return orchestrator
