"""JSON persistence for profiles, delegations, transcripts and swarms."""

from kestrel_swarm.storage.store import (
    DelegationStorage,
    ProfileStorage,
    Storage,
    StorageKeyError,
    SwarmStorage,
)

__all__ = [
    "Storage",
    "StorageKeyError",
    "ProfileStorage",
    "DelegationStorage",
    "SwarmStorage",
]
