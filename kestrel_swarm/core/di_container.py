"""
Dependency Injection Container for kestrel-swarm.

This module provides a centralized DI container using the dependency-injector library
to manage service instantiation and wiring.

Services:
    - profile_storage / delegation_storage / swarm_storage: JSON persistence
    - mediator: EventMediatorImpl shared by the engine and the orchestrator
    - inference: InferenceClient (OpenAI-compatible HTTP client by default)
    - profile_registry: ProfileRegistry
    - engine: DelegationEngine
    - orchestrator: SwarmOrchestrator

Example:
    >>> from kestrel_swarm.core.di_container import container, initialize_container
    >>> await initialize_container(container)
    >>> engine = container.engine()
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from dependency_injector import containers, providers

from kestrel_swarm.core.mediator import EventMediatorImpl, LoggingAuditSink, attach_audit_sink
from kestrel_swarm.core.settings import DelegationSettings, get_settings
from kestrel_swarm.delegation.engine import DelegationEngine
from kestrel_swarm.delegation.profiles import ProfileRegistry
from kestrel_swarm.llm.http_client import OpenAICompatibleClient
from kestrel_swarm.llm.inference import InferenceClient
from kestrel_swarm.storage.store import DelegationStorage, ProfileStorage, SwarmStorage
from kestrel_swarm.swarm.orchestrator import SwarmOrchestrator


def _storage_dir(storage_path: Optional[Path]) -> Path:
    if storage_path:
        return Path(storage_path)
    return get_settings().storage_dir_path()


def _delegation_settings() -> DelegationSettings:
    return get_settings().delegation.model_copy()


def _swarm_token_budget() -> int:
    return get_settings().swarm.default_token_budget


def create_inference_client() -> InferenceClient:
    return OpenAICompatibleClient.from_settings(get_settings().inference)


class Container(containers.DeclarativeContainer):
    """
    Dependency Injection Container for kestrel-swarm services.

    Storage, engine and orchestrator are singletons so that every consumer
    shares one admission counter and one event mediator.
    """

    # Configuration
    config = providers.Configuration()

    storage_dir = providers.Callable(_storage_dir, config.storage_path)

    profile_storage = providers.Singleton(ProfileStorage, base_dir=storage_dir)
    delegation_storage = providers.Singleton(DelegationStorage, base_dir=storage_dir)
    swarm_storage = providers.Singleton(SwarmStorage, base_dir=storage_dir)

    mediator = providers.Singleton(EventMediatorImpl)
    audit_sink = providers.Singleton(LoggingAuditSink)

    inference = providers.Singleton(create_inference_client)

    profile_registry = providers.Singleton(ProfileRegistry, storage=profile_storage)

    engine = providers.Singleton(
        DelegationEngine,
        config=providers.Callable(_delegation_settings),
        inference=inference,
        profiles=profile_registry,
        storage=delegation_storage,
        mediator=mediator,
    )

    orchestrator = providers.Singleton(
        SwarmOrchestrator,
        engine=engine,
        storage=swarm_storage,
        default_token_budget=providers.Callable(_swarm_token_budget),
    )


# Global container instance
container = Container()


def configure_container(storage_path: Optional[Path] = None) -> Container:
    """
    Configure the global DI container with runtime values.

    Args:
        storage_path: Optional storage directory overriding settings

    Returns:
        Configured Container instance
    """
    container.config.set("storage_path", storage_path)
    return container


async def initialize_container(target: Container) -> None:
    """Attach the audit sink and seed built-in profiles and templates."""
    await attach_audit_sink(target.mediator(), target.audit_sink())
    await target.engine().initialize()
    await target.orchestrator().initialize()


def reset_container() -> None:
    """
    Reset the global container to its initial state.

    Drops every singleton instance and the configured storage path;
    provider overrides are left in place.
    """
    container.config.set("storage_path", None)
    container.reset_singletons()
