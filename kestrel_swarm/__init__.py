"""kestrel-swarm - recursive agent delegation and swarm orchestration"""

__version__ = "0.1.0"

from kestrel_swarm.delegation import DelegationEngine, DelegationRequest, DelegationResult
from kestrel_swarm.swarm import SwarmOrchestrator

__all__ = [
    "__version__",
    "DelegationEngine",
    "DelegationRequest",
    "DelegationResult",
    "SwarmOrchestrator",
]
