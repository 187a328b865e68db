"""Built-in swarm templates seeded at startup."""

from typing import List

from kestrel_swarm.core.models import SwarmRole, SwarmStrategy, SwarmTemplate

BUILTIN_TEMPLATES: List[SwarmTemplate] = [
    SwarmTemplate(
        id="builtin-research-and-code",
        name="research-and-code",
        description="Research the problem, then implement a solution",
        strategy=SwarmStrategy.SEQUENTIAL,
        roles=[
            SwarmRole(
                role="researcher",
                profile_name="researcher",
                description="Investigate the problem and prior art",
            ),
            SwarmRole(
                role="coder",
                profile_name="coder",
                description="Implement a solution using the research",
            ),
        ],
        is_builtin=True,
    ),
    SwarmTemplate(
        id="builtin-analyze-and-summarize",
        name="analyze-and-summarize",
        description="Analyse the material, then condense the analysis",
        strategy=SwarmStrategy.SEQUENTIAL,
        roles=[
            SwarmRole(role="analyst", profile_name="analyst", description="Analyse in depth"),
            SwarmRole(
                role="summarizer",
                profile_name="summarizer",
                description="Summarise the analysis",
            ),
        ],
        is_builtin=True,
    ),
    SwarmTemplate(
        id="builtin-parallel-research",
        name="parallel-research",
        description="Research and analyse the same task independently",
        strategy=SwarmStrategy.PARALLEL,
        roles=[
            SwarmRole(role="researcher", profile_name="researcher", description="Gather facts"),
            SwarmRole(role="analyst", profile_name="analyst", description="Weigh the options"),
        ],
        is_builtin=True,
    ),
    SwarmTemplate(
        id="builtin-dynamic-team",
        name="dynamic-team",
        description="A coordinator picks which specialists to involve",
        strategy=SwarmStrategy.DYNAMIC,
        roles=[
            SwarmRole(role="researcher", profile_name="researcher", description="Gather facts"),
            SwarmRole(role="coder", profile_name="coder", description="Write code"),
            SwarmRole(role="analyst", profile_name="analyst", description="Weigh the options"),
        ],
        coordinator_profile="researcher",
        is_builtin=True,
    ),
]
