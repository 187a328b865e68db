"""Swarm orchestration: template-driven multi-role runs."""

from kestrel_swarm.swarm.orchestrator import SwarmOrchestrator
from kestrel_swarm.swarm.templates import BUILTIN_TEMPLATES

__all__ = ["SwarmOrchestrator", "BUILTIN_TEMPLATES"]
